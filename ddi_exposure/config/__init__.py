"""
DDI Exposure Configuration Package
"""

from .ddi_config import (
    # Paths
    MODULE_ROOT,
    PROJECT_ROOT,
    DATA_DIR,
    DISPENSING_FILE,
    STAYS_FILE,
    SILVER_DIR,
    GOLD_DIR,

    # Configs
    VARIANTS,
    SUPPLY_CONFIG,
    COMBINATION_CONFIG,
    EPISODE_CONFIG,
    RUN_CONFIG,
    VALIDATION_CONFIG,

    # Helpers
    load_drug_lists,
    load_ddi_definitions,
    ensure_directories,
)

from .ddi_definitions import (
    ComponentSpec,
    DDIDefinition,
    DefinitionConfigError,
    collect_definitions,
    parse_definitions,
)

__all__ = [
    'MODULE_ROOT',
    'PROJECT_ROOT',
    'DATA_DIR',
    'DISPENSING_FILE',
    'STAYS_FILE',
    'SILVER_DIR',
    'GOLD_DIR',
    'VARIANTS',
    'SUPPLY_CONFIG',
    'COMBINATION_CONFIG',
    'EPISODE_CONFIG',
    'RUN_CONFIG',
    'VALIDATION_CONFIG',
    'load_drug_lists',
    'load_ddi_definitions',
    'ensure_directories',
    'ComponentSpec',
    'DDIDefinition',
    'DefinitionConfigError',
    'collect_definitions',
    'parse_definitions',
]
