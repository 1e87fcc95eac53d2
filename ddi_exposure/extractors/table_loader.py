"""
Input Table Loader
==================

Loads the upstream tables consumed by the DDI engine:

- Part D dispensing records (bene_id, drug_name, fill_date, days_supply, route)
- Nursing-home stay windows (bene_id, stay_start, stay_end[, stay_id])
- Drug lists (from drug_lists.yaml or a tabular file with a list_id column)

Tables may be parquet, csv or pipe-delimited txt.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)


DISPENSING_COLUMNS = ['bene_id', 'drug_name', 'fill_date', 'days_supply', 'route']
STAY_COLUMNS = ['bene_id', 'stay_start', 'stay_end']
DRUG_LIST_COLUMNS = ['drug_name', 'core_drug', 'drug_class']


# =============================================================================
# GENERIC LOADING
# =============================================================================

def load_table(
    filepath: Union[str, Path],
    date_columns: Optional[List[str]] = None,
    dtype: Optional[Dict] = None,
) -> pd.DataFrame:
    """
    Load a parquet, csv or pipe-delimited txt table.

    Args:
        filepath: Table path
        date_columns: Columns to parse as dates
        dtype: Column dtypes for text formats

    Returns:
        DataFrame with lower-case column names
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()

    if suffix == '.parquet':
        df = pd.read_parquet(filepath)
    elif suffix in ('.csv', '.txt'):
        sep = '|' if suffix == '.txt' else ','
        if isinstance(dtype, dict):
            # dtype keys are lower-case; match them to the file's header
            header = pd.read_csv(filepath, sep=sep, nrows=0).columns
            dtype = {c: dtype[c.strip().lower()] for c in header if c.strip().lower() in dtype}
        df = pd.read_csv(filepath, sep=sep, dtype=dtype, low_memory=False)
    else:
        raise ValueError(f"Unsupported table format: {filepath}")

    df.columns = [str(c).strip().lower() for c in df.columns]

    for col in date_columns or []:
        if col in df.columns:
            df[col] = normalize_dates(df[col])

    return df


def normalize_dates(values: pd.Series) -> pd.Series:
    """Parse to datetime64[ns] at midnight; unparseable values become NaT."""
    return pd.to_datetime(values, errors='coerce').dt.normalize()


def require_columns(df: pd.DataFrame, columns: List[str], table: str) -> None:
    """Raise if a required column is missing."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{table} table is missing columns: {missing}")


# =============================================================================
# DISPENSING
# =============================================================================

def prepare_dispensing(df: pd.DataFrame) -> pd.DataFrame:
    """
    Standardize a dispensing table.

    Args:
        df: Raw dispensing records

    Returns:
        Copy with typed columns and a route column (None when absent)
    """
    require_columns(df, ['bene_id', 'drug_name', 'fill_date', 'days_supply'], 'Dispensing')

    df = df.copy()
    df['bene_id'] = df['bene_id'].where(df['bene_id'].isna(), df['bene_id'].astype(str))
    df['drug_name'] = df['drug_name'].astype(object).where(df['drug_name'].notna(), None)
    df['fill_date'] = normalize_dates(df['fill_date'])
    df['days_supply'] = pd.to_numeric(df['days_supply'], errors='coerce')
    if 'route' not in df.columns:
        df['route'] = None

    return df[DISPENSING_COLUMNS]


def load_dispensing(filepath: Union[str, Path]) -> pd.DataFrame:
    """Load and standardize dispensing records."""
    df = load_table(filepath, dtype={'bene_id': str, 'drug_name': str, 'route': str})
    df = prepare_dispensing(df)
    logger.info(f"Loaded {len(df):,} dispensing records for {df['bene_id'].nunique():,} beneficiaries")
    return df


# =============================================================================
# FACILITY STAYS
# =============================================================================

def prepare_stays(df: pd.DataFrame) -> pd.DataFrame:
    """
    Standardize facility-stay windows.

    Stays missing a beneficiary or a bound, or ending before they start, are
    dropped. A stay_id is numbered per beneficiary in stay-start order when
    not supplied.

    Args:
        df: Raw stay windows

    Returns:
        Copy with bene_id, stay_id, stay_start, stay_end
    """
    require_columns(df, STAY_COLUMNS, 'Stay')

    df = df.copy()
    df['bene_id'] = df['bene_id'].where(df['bene_id'].isna(), df['bene_id'].astype(str))
    df['stay_start'] = normalize_dates(df['stay_start'])
    df['stay_end'] = normalize_dates(df['stay_end'])

    invalid = (
        df['bene_id'].isna() | df['stay_start'].isna() | df['stay_end'].isna()
        | (df['stay_end'] < df['stay_start'])
    )
    if invalid.any():
        logger.warning(f"Dropping {int(invalid.sum()):,} stays with a missing beneficiary or date, or reversed dates")
        df = df[~invalid]

    df = df.sort_values(['bene_id', 'stay_start', 'stay_end']).reset_index(drop=True)
    if 'stay_id' not in df.columns:
        df['stay_id'] = df.groupby('bene_id').cumcount() + 1

    return df[['bene_id', 'stay_id', 'stay_start', 'stay_end']]


def load_stays(filepath: Union[str, Path]) -> pd.DataFrame:
    """Load and standardize facility-stay windows."""
    df = load_table(filepath, dtype={'bene_id': str})
    df = prepare_stays(df)
    logger.info(f"Loaded {len(df):,} stays for {df['bene_id'].nunique():,} beneficiaries")
    return df


# =============================================================================
# DRUG LISTS
# =============================================================================

def drug_list_frame(drug_lists: Dict, list_id: str) -> pd.DataFrame:
    """
    Build the drug_name -> core_drug lookup for one drug list.

    Args:
        drug_lists: Mapping list_id -> {'drugs': [...], 'routes': [...]}
        list_id: List to build

    Returns:
        DataFrame with drug_name, core_drug, drug_class (names upper-case)
    """
    entries = drug_lists[list_id].get('drugs') or []
    df = pd.DataFrame(entries, columns=DRUG_LIST_COLUMNS)

    df['drug_name'] = df['drug_name'].astype(str).str.upper().str.strip()
    df['core_drug'] = df['core_drug'].astype(str).str.upper().str.strip()
    df['drug_class'] = df['drug_class'].fillna('').astype(str).str.strip()

    return df.drop_duplicates(subset=['drug_name', 'core_drug']).reset_index(drop=True)


def drug_lists_from_table(df: pd.DataFrame) -> Dict:
    """
    Convert a tabular drug list (one row per drug, list_id column) to the
    YAML drug-list structure.
    """
    require_columns(df, ['list_id', 'drug_name', 'core_drug'], 'Drug list')
    if 'drug_class' not in df.columns:
        df = df.assign(drug_class='')

    drug_lists = {}
    for list_id, group in df.groupby('list_id', sort=False):
        drug_lists[str(list_id)] = {
            'drugs': group[DRUG_LIST_COLUMNS].to_dict('records'),
        }
    return drug_lists


def load_drug_list_table(filepath: Union[str, Path]) -> Dict:
    """Load drug lists from a tabular file."""
    return drug_lists_from_table(load_table(filepath, dtype=str))
