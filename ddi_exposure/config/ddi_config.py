"""
DDI Exposure Configuration
==========================

Central configuration for the nursing-home drug-drug interaction exposure
pipeline.
"""

from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import os
import yaml


# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Base paths
MODULE_ROOT = Path(__file__).parent.parent
PROJECT_ROOT = Path(os.environ.get('DDI_PROJECT_ROOT', MODULE_ROOT.parent))
DATA_DIR = PROJECT_ROOT / "Data"

# Input data (extracted upstream from the claims warehouse)
DISPENSING_FILE = DATA_DIR / "pde_dispensing.parquet"
STAYS_FILE = DATA_DIR / "nh_stays.parquet"

# Output directories
SILVER_DIR = MODULE_ROOT / "data" / "silver"
GOLD_DIR = MODULE_ROOT / "data" / "gold"

# Config files
CONFIG_DIR = MODULE_ROOT / "config"
DRUG_LISTS_YAML = CONFIG_DIR / "drug_lists.yaml"
DDI_DEFINITIONS_YAML = CONFIG_DIR / "ddi_definitions.yaml"


# =============================================================================
# DISPENSING CONFIGURATION
# =============================================================================

@dataclass
class SupplyConfig:
    """Days-supply cleaning and discontinuation settings."""

    min_days_supply: int = 1
    max_days_supply: int = 90  # Longer supplies are truncated, not dropped

    # Stability analysis: a fill is assumed discontinued after this share
    # of its supply
    discontinuation_fraction: float = 0.5


SUPPLY_CONFIG = SupplyConfig()


@dataclass
class CombinationConfig:
    """Combination-product ingredient resolution."""

    separator: str = '/'
    max_ingredients: int = 4

    # Names containing the separator that are still a single drug
    single_drug_literals: List[str] = field(default_factory=lambda: [
        'SULFAMETHOXAZOLE/TRIMETHOPRIM',
    ])

    # Products whose ingredients are not spelled out in the generic name
    combination_overrides: Dict[str, List[str]] = field(default_factory=lambda: {
        'ACETAMINOPHEN WITH CODEINE': ['ACETAMINOPHEN', 'CODEINE'],
    })


COMBINATION_CONFIG = CombinationConfig()


# =============================================================================
# EPISODE CONFIGURATION
# =============================================================================

@dataclass
class EpisodeConfig:
    """Interval merge settings."""

    # Fills starting at most this many days after the open episode's end
    # join it (1 = contiguous days only)
    max_gap_days: int = 1


EPISODE_CONFIG = EpisodeConfig()


# =============================================================================
# RUN CONFIGURATION
# =============================================================================

VARIANTS: Tuple[str, ...] = ('primary', 'stability')


@dataclass
class RunConfig:
    """Batch run settings."""

    n_jobs: Optional[int] = None  # None -> cpu_count() - 1
    variants: List[str] = field(default_factory=lambda: list(VARIANTS))
    save_intermediates: bool = False
    fail_fast: bool = False

    # Test mode
    test_n_benes: int = 1000


RUN_CONFIG = RunConfig()


# =============================================================================
# VALIDATION CONFIGURATION
# =============================================================================

@dataclass
class ValidationConfig:
    """Validation thresholds."""

    # Minimum uncovered days between consecutive episodes of one drug
    min_episode_gap_days: int = 2


VALIDATION_CONFIG = ValidationConfig()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def load_drug_lists(path: Optional[Path] = None) -> Dict:
    """Load drug list definitions from YAML."""
    with open(path or DRUG_LISTS_YAML, 'r') as f:
        return yaml.safe_load(f)


def load_ddi_definitions(path: Optional[Path] = None) -> Dict:
    """Load drug-drug interaction definitions from YAML."""
    with open(path or DDI_DEFINITIONS_YAML, 'r') as f:
        return yaml.safe_load(f)


def ensure_directories():
    """Create all required output directories."""
    for dir_path in [
        SILVER_DIR / "episodes",
        SILVER_DIR / "overlaps",
        GOLD_DIR,
    ]:
        dir_path.mkdir(parents=True, exist_ok=True)


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("DDI Exposure Configuration")
    print("=" * 60)
    print(f"\nModule Root: {MODULE_ROOT}")
    print(f"Dispensing File: {DISPENSING_FILE}")
    print(f"Stays File: {STAYS_FILE}")
    print(f"\nDays supply range: [{SUPPLY_CONFIG.min_days_supply}, {SUPPLY_CONFIG.max_days_supply}]")
    print(f"Discontinuation fraction: {SUPPLY_CONFIG.discontinuation_fraction:.0%}")
    print(f"Episode merge gap: {EPISODE_CONFIG.max_gap_days} day(s)")
    print(f"Variants: {', '.join(RUN_CONFIG.variants)}")
    definitions = load_ddi_definitions()
    print(f"\nDDI definitions: {len(definitions.get('definitions', []))}")
    print("=" * 60)
