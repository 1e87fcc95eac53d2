"""DDI exposure episodes: collapse a beneficiary's overlaps into continuous exposure."""
from pathlib import Path
from typing import Dict, Optional
import sys

import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_config import EPISODE_CONFIG, EpisodeConfig
from processing.interval_algebra import (
    IntervalInvariantError,
    assign_merged_episodes,
    inclusive_days,
    to_day_number,
)

COLLAPSE_KEYS = ['bene_id', 'ddi_id']

# Overlap bound columns per analysis variant
VARIANT_BOUNDS: Dict[str, tuple] = {
    'primary': ('start', 'end'),
    'stability': ('start_sens', 'end_sens'),
}

EXPOSURE_COLUMNS = [
    'bene_id', 'ddi_id', 'variant', 'episode_id',
    'start_date', 'end_date', 'days_with_ddi', 'n_overlaps',
]


def select_variant_overlaps(overlaps: pd.DataFrame, variant: str) -> pd.DataFrame:
    """Overlap intervals of one analysis variant as (bene_id, ddi_id, start, end).

    Args:
        overlaps: Output of detect_concurrent_use
        variant: 'primary' or 'stability'

    Returns:
        DataFrame with bene_id, ddi_id, start, end
    """
    if variant not in VARIANT_BOUNDS:
        raise ValueError(f"Unknown variant: {variant}")

    start, end = VARIANT_BOUNDS[variant]
    df = overlaps
    if variant == 'stability':
        df = df[df['ddi_sens'] == 1]

    return df[COLLAPSE_KEYS + [start, end]].rename(columns={start: 'start', end: 'end'})


def check_exposure_invariants(exposures: pd.DataFrame) -> None:
    """Raise on non-positive durations or overlapping/adjacent episodes."""
    bad_days = exposures['days_with_ddi'] <= 0
    if bad_days.any():
        row = exposures[bad_days].iloc[0]
        raise IntervalInvariantError(
            "Non-positive days_with_ddi",
            {'ddi_id': row['ddi_id'], 'bene_id': row['bene_id'], 'days_with_ddi': row['days_with_ddi']},
        )

    prev_end = to_day_number(exposures['end_date']).groupby(
        [exposures[k] for k in COLLAPSE_KEYS], sort=False
    ).shift(1)
    gap = to_day_number(exposures['start_date']) - prev_end
    touching = gap.notna() & (gap < 2)
    if touching.any():
        row = exposures[touching].iloc[0]
        raise IntervalInvariantError(
            "Exposure episodes overlap or are adjacent",
            {'ddi_id': row['ddi_id'], 'bene_id': row['bene_id'], 'episode_id': row['episode_id']},
        )


def collapse_exposures(
    overlaps: pd.DataFrame,
    variant: str = 'primary',
    config: Optional[EpisodeConfig] = None,
) -> pd.DataFrame:
    """Merge overlap episodes into continuous DDI exposure episodes.

    Overlaps separated by at most config.max_gap_days (touching or adjacent
    days) collapse into one episode; overlaps ending within the running
    episode are subsumed.

    Args:
        overlaps: Output of detect_concurrent_use for one definition
        variant: 'primary' or 'stability'
        config: Merge settings (default EPISODE_CONFIG)

    Returns:
        DDIExposureEpisode frame with EXPOSURE_COLUMNS
    """
    config = config or EPISODE_CONFIG
    df = select_variant_overlaps(overlaps, variant)
    if len(df) == 0:
        return pd.DataFrame(columns=EXPOSURE_COLUMNS)

    merged = assign_merged_episodes(
        df,
        keys=COLLAPSE_KEYS,
        start='start',
        end='end',
        max_gap_days=config.max_gap_days,
        episode_col='episode_id',
    )
    merged = merged[~merged['is_contained']]

    exposures = merged.groupby(COLLAPSE_KEYS + ['episode_id'], as_index=False, sort=True).agg(
        start_date=('start', 'min'),
        end_date=('end', 'max'),
        n_overlaps=('start', 'size'),
    )
    exposures['days_with_ddi'] = inclusive_days(exposures['start_date'], exposures['end_date'])
    exposures['variant'] = variant

    check_exposure_invariants(exposures)

    return exposures[EXPOSURE_COLUMNS].reset_index(drop=True)


def summarize_exposures(exposures: pd.DataFrame) -> Dict:
    """Counts handed to the run summary (not the prevalence statistics)."""
    return {
        'n_benes_exposed': int(exposures['bene_id'].nunique()),
        'n_exposure_episodes': int(len(exposures)),
        'total_days_with_ddi': int(exposures['days_with_ddi'].sum()),
    }
