"""
Drug Component Extractor
========================

Selects the dispensing records belonging to one DDI component's drug list
and resolves combination products into their active ingredients.

A combination product (generic name containing the separator, e.g.
'HYDROCODONE BITARTRATE/ACETAMINOPHEN') fans out into one row per ingredient
found in the drug list. Designated literals are kept whole, and configured
overrides expand products whose ingredients are not spelled out in the name.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional
import sys

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_config import COMBINATION_CONFIG, SUPPLY_CONFIG, CombinationConfig, SupplyConfig
from config.ddi_definitions import ComponentSpec
from extractors.table_loader import drug_list_frame

logger = logging.getLogger(__name__)


RECORD_COLUMNS = [
    'bene_id', 'drug_name', 'ingredient', 'core_drug', 'drug_class',
    'fill_date', 'days_supply', 'route',
]


# =============================================================================
# NAME RESOLUTION
# =============================================================================

def normalize_drug_name(name) -> Optional[str]:
    """Upper-case a generic name and collapse whitespace."""
    if name is None or (not isinstance(name, str) and pd.isna(name)):
        return None
    normalized = ' '.join(str(name).upper().split())
    return normalized or None


def split_combination_name(
    name: str,
    config: Optional[CombinationConfig] = None,
) -> List[str]:
    """
    Resolve a generic name into the ingredient names to match.

    Args:
        name: Generic drug name from the dispensing record
        config: Combination settings (default COMBINATION_CONFIG)

    Returns:
        Up to config.max_ingredients ingredient names (the name itself for
        single-ingredient drugs)
    """
    config = config or COMBINATION_CONFIG
    name = normalize_drug_name(name)
    if not name:
        return []

    overrides = {
        normalize_drug_name(product): [normalize_drug_name(i) for i in ingredients]
        for product, ingredients in config.combination_overrides.items()
    }
    if name in overrides:
        return overrides[name]

    literals = {normalize_drug_name(n) for n in config.single_drug_literals}
    if name in literals or config.separator not in name:
        return [name]

    parts = [normalize_drug_name(p) for p in name.split(config.separator)]
    parts = [p for p in parts if p]

    return parts[:config.max_ingredients]


# =============================================================================
# EXTRACTION
# =============================================================================

def build_ingredient_lookup(
    drug_names: pd.Series,
    drug_list: pd.DataFrame,
    config: Optional[CombinationConfig] = None,
) -> pd.DataFrame:
    """
    Map each distinct raw drug name to its matching drug-list entries.

    Args:
        drug_names: Raw generic names (duplicates allowed)
        drug_list: Lookup with drug_name, core_drug, drug_class
        config: Combination settings

    Returns:
        DataFrame with drug_name (raw), ingredient, core_drug, drug_class
    """
    lookup = pd.DataFrame({'drug_name': pd.Series(drug_names.dropna().unique(), dtype=object)})
    lookup['ingredient'] = [split_combination_name(n, config) for n in lookup['drug_name']]
    lookup = lookup.explode('ingredient').dropna(subset=['ingredient'])

    matches = drug_list.rename(columns={'drug_name': 'ingredient'})
    return lookup.merge(matches, on='ingredient', how='inner')


def extract_component_records(
    dispensing: pd.DataFrame,
    drug_list: pd.DataFrame,
    component: Optional[ComponentSpec] = None,
    routes: Optional[List[str]] = None,
    config: Optional[CombinationConfig] = None,
) -> pd.DataFrame:
    """
    Select and resolve the dispensing records of one DDI component.

    Args:
        dispensing: Standardized dispensing records
        drug_list: Lookup with drug_name, core_drug, drug_class
        component: Component exclusions to apply after matching
        routes: Allowed routes of administration; records with a known
            route outside this list are dropped
        config: Combination settings

    Returns:
        One row per (record, matched core drug) with RECORD_COLUMNS
    """
    lookup = build_ingredient_lookup(dispensing['drug_name'], drug_list, config)

    records = dispensing.assign(record_id=np.arange(len(dispensing)))
    records = records.merge(lookup, on='drug_name', how='inner')
    records = records.drop_duplicates(subset=['record_id', 'core_drug'])

    if component is not None:
        excluded = (
            records['core_drug'].isin(component.exclude_core_drugs)
            | records['drug_class'].isin(component.exclude_classes)
        )
        records = records[~excluded]

    if routes:
        allowed = {r.upper().strip() for r in routes}
        route = records['route'].map(lambda r: None if pd.isna(r) else str(r).upper().strip())
        records = records[route.isna() | route.isin(allowed)]

    return records[RECORD_COLUMNS].reset_index(drop=True)


# =============================================================================
# CLEANING
# =============================================================================

def clean_dispensing(
    records: pd.DataFrame,
    config: Optional[SupplyConfig] = None,
) -> pd.DataFrame:
    """
    Apply the days-supply and duplicate rules to resolved records.

    - missing beneficiary, fill date or days supply: dropped
    - days supply below the minimum (<= 0): dropped
    - days supply above the maximum: truncated to the maximum
    - same beneficiary, core drug and fill date: longest supply kept

    Args:
        records: Output of extract_component_records
        config: Supply settings (default SUPPLY_CONFIG)

    Returns:
        Cleaned copy sorted by bene_id, core_drug, fill_date
    """
    config = config or SUPPLY_CONFIG
    df = records.copy()
    n_input = len(df)

    df['days_supply'] = pd.to_numeric(df['days_supply'], errors='coerce')
    missing = df['bene_id'].isna() | df['fill_date'].isna() | df['days_supply'].isna()
    df = df[~missing].copy()

    df['days_supply'] = np.round(df['days_supply']).astype('int64')
    too_short = df['days_supply'] < config.min_days_supply
    df = df[~too_short]

    n_truncated = int((df['days_supply'] > config.max_days_supply).sum())
    df['days_supply'] = df['days_supply'].clip(upper=config.max_days_supply)

    df = df.sort_values(
        ['bene_id', 'core_drug', 'fill_date', 'days_supply'],
        ascending=[True, True, True, False],
        kind='mergesort',
    )
    n_before_dedup = len(df)
    df = df.drop_duplicates(subset=['bene_id', 'core_drug', 'fill_date'], keep='first')

    logger.debug(
        f"Cleaned {n_input:,} records: {int(missing.sum()):,} missing values, "
        f"{int(too_short.sum()):,} non-positive supply, {n_truncated:,} truncated, "
        f"{n_before_dedup - len(df):,} duplicate fills"
    )

    return df.reset_index(drop=True)


def extract_clean_component(
    dispensing: pd.DataFrame,
    drug_lists: Dict,
    component: ComponentSpec,
    combination_config: Optional[CombinationConfig] = None,
    supply_config: Optional[SupplyConfig] = None,
) -> pd.DataFrame:
    """
    Extract and clean the dispensing records of one DDI component.

    Args:
        dispensing: Standardized dispensing records
        drug_lists: Loaded drug lists (list_id -> definition)
        component: Component to extract
        combination_config: Combination settings
        supply_config: Supply settings

    Returns:
        Cleaned component records
    """
    drug_list = drug_list_frame(drug_lists, component.list_id)
    routes = drug_lists[component.list_id].get('routes')

    records = extract_component_records(
        dispensing,
        drug_list,
        component=component,
        routes=routes,
        config=combination_config,
    )
    return clean_dispensing(records, config=supply_config)
