"""
DDI Exposure Extractors
=======================

Input loading and drug component extraction.
"""

from .table_loader import (
    load_table,
    load_dispensing,
    load_stays,
    prepare_dispensing,
    prepare_stays,
    drug_list_frame,
    drug_lists_from_table,
    load_drug_list_table,
)

from .component_extractor import (
    normalize_drug_name,
    split_combination_name,
    extract_component_records,
    clean_dispensing,
    extract_clean_component,
)

__all__ = [
    # Loading
    'load_table',
    'load_dispensing',
    'load_stays',
    'prepare_dispensing',
    'prepare_stays',
    'drug_list_frame',
    'drug_lists_from_table',
    'load_drug_list_table',
    # Component extraction
    'normalize_drug_name',
    'split_combination_name',
    'extract_component_records',
    'clean_dispensing',
    'extract_clean_component',
]
