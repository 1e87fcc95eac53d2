"""
DDI Exposure Validation
=======================

Interval-invariant checks over episodes, overlaps and exposure tables.
"""

from .layer_validators import (
    ValidationResult,
    run_all_validations,
    validate_drug_episodes,
    validate_clipped_episodes,
    validate_overlaps,
    validate_exposures,
)

__all__ = [
    'ValidationResult',
    'run_all_validations',
    'validate_drug_episodes',
    'validate_clipped_episodes',
    'validate_overlaps',
    'validate_exposures',
]
