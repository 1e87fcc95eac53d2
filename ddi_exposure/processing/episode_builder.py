"""Medication-use episode construction and facility-stay clipping.

Fills of one core drug are merged into non-overlapping episodes; an episode
absorbs every fill starting within it or on the day after its end. Episodes
are then clipped to nursing-home stays, once per overlapping stay.

The stability variant additionally tracks a discontinuation date per fill
(fill date + ceil(supply * fraction) - 1) and clips
[episode_start, max_discon_date] to the same stay.
"""
from pathlib import Path
from typing import Optional
import sys

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_config import EPISODE_CONFIG, SUPPLY_CONFIG, EpisodeConfig, SupplyConfig
from processing.interval_algebra import (
    OVERLAP_CASES,
    IntervalInvariantError,
    assign_merged_episodes,
    check_interval_order,
    intersect_series,
)

EPISODE_KEYS = ['bene_id', 'core_drug']

EPISODE_COLUMNS = EPISODE_KEYS + [
    'episode_id', 'drug_class', 'episode_start', 'episode_end', 'n_fills', 'max_discon_date',
]

CLIPPED_COLUMNS = [
    'bene_id', 'episode_new', 'core_drug', 'drug_class', 'episode_id',
    'stay_id', 'stay_start', 'stay_end',
    'episode_start', 'episode_end', 'n_fills', 'max_discon_date',
    'nh_start', 'nh_end', 'clip_case',
    'med_use_sens', 'nh_start_sens', 'nh_end_sens',
]


def add_fill_bounds(
    records: pd.DataFrame,
    config: Optional[SupplyConfig] = None,
) -> pd.DataFrame:
    """Add fill_end and discon_date to cleaned dispensing records.

    Args:
        records: Cleaned records with fill_date and days_supply
        config: Supply settings (default SUPPLY_CONFIG)

    Returns:
        Copy with fill_end and discon_date columns
    """
    config = config or SUPPLY_CONFIG
    df = records.copy()

    supply = df['days_supply'].astype('int64')
    discon_days = np.ceil(supply * config.discontinuation_fraction).astype('int64')

    df['fill_end'] = df['fill_date'] + pd.to_timedelta(supply - 1, unit='D')
    df['discon_date'] = df['fill_date'] + pd.to_timedelta(discon_days - 1, unit='D')

    return df


def build_drug_episodes(
    records: pd.DataFrame,
    episode_config: Optional[EpisodeConfig] = None,
    supply_config: Optional[SupplyConfig] = None,
) -> pd.DataFrame:
    """Merge fills into medication-use episodes per beneficiary and core drug.

    Fully contained fills are dropped and do not count towards n_fills or
    max_discon_date.

    Args:
        records: Cleaned component records
        episode_config: Merge settings (default EPISODE_CONFIG)
        supply_config: Supply settings

    Returns:
        One row per episode: bene_id, core_drug, drug_class, episode_id,
        episode_start, episode_end, n_fills, max_discon_date
    """
    episode_config = episode_config or EPISODE_CONFIG

    if len(records) == 0:
        return pd.DataFrame(columns=EPISODE_COLUMNS)

    fills = add_fill_bounds(records, supply_config)
    fills = assign_merged_episodes(
        fills,
        keys=EPISODE_KEYS,
        start='fill_date',
        end='fill_end',
        max_gap_days=episode_config.max_gap_days,
        episode_col='episode_id',
    )
    fills = fills[~fills['is_contained']]

    episodes = fills.groupby(EPISODE_KEYS + ['episode_id'], as_index=False, sort=True).agg(
        drug_class=('drug_class', 'first'),
        episode_start=('fill_date', 'min'),
        episode_end=('fill_end', 'max'),
        n_fills=('fill_date', 'size'),
        max_discon_date=('discon_date', 'max'),
    )

    check_interval_order(episodes, 'episode_start', 'episode_end', "Drug episode")
    if (episodes['max_discon_date'] > episodes['episode_end']).any():
        row = episodes[episodes['max_discon_date'] > episodes['episode_end']].iloc[0]
        raise IntervalInvariantError(
            "Discontinuation date after episode end",
            {'bene_id': row['bene_id'], 'core_drug': row['core_drug']},
        )

    return episodes


def clip_to_stays(episodes: pd.DataFrame, stays: pd.DataFrame) -> pd.DataFrame:
    """Clip drug episodes to every facility stay they intersect.

    Episodes outside all stays are dropped. episode_new is renumbered 1..n
    per beneficiary (core drug, nh_start order); the pre-clip episode_id is
    kept for tracing only.

    Args:
        episodes: Output of build_drug_episodes
        stays: Standardized stays (bene_id, stay_id, stay_start, stay_end)

    Returns:
        StayClippedEpisode frame with CLIPPED_COLUMNS
    """
    merged = episodes.merge(stays, on='bene_id', how='inner')
    if len(merged) == 0:
        return pd.DataFrame(columns=CLIPPED_COLUMNS)

    nh_start, nh_end, clip_case = intersect_series(
        merged['episode_start'], merged['episode_end'],
        merged['stay_start'], merged['stay_end'],
    )
    merged['nh_start'] = nh_start
    merged['nh_end'] = nh_end
    merged['clip_case'] = clip_case

    clipped = merged[merged['clip_case'].isin(OVERLAP_CASES)].copy()

    # Stability: [episode_start, max_discon_date] against the same stay
    sens_start, sens_end, sens_case = intersect_series(
        clipped['episode_start'], clipped['max_discon_date'],
        clipped['stay_start'], clipped['stay_end'],
    )
    clipped['med_use_sens'] = sens_case.isin(OVERLAP_CASES).astype('int64')
    clipped['nh_start_sens'] = sens_start
    clipped['nh_end_sens'] = sens_end

    clipped = clipped.sort_values(['bene_id', 'core_drug', 'nh_start', 'stay_id'], kind='mergesort')
    clipped['episode_new'] = clipped.groupby('bene_id').cumcount() + 1

    check_interval_order(clipped, 'nh_start', 'nh_end', "Stay-clipped episode")
    sens = clipped[clipped['med_use_sens'] == 1]
    check_interval_order(sens, 'nh_start_sens', 'nh_end_sens', "Discontinuation-clipped episode")
    if (sens['nh_end_sens'] > sens['nh_end']).any():
        row = sens[sens['nh_end_sens'] > sens['nh_end']].iloc[0]
        raise IntervalInvariantError(
            "Discontinuation-clipped end after stay-clipped end",
            {'bene_id': row['bene_id'], 'core_drug': row['core_drug']},
        )

    return clipped[CLIPPED_COLUMNS].reset_index(drop=True)


def build_stay_clipped_episodes(
    records: pd.DataFrame,
    stays: pd.DataFrame,
    episode_config: Optional[EpisodeConfig] = None,
    supply_config: Optional[SupplyConfig] = None,
) -> pd.DataFrame:
    """Build drug episodes from cleaned records and clip them to stays."""
    episodes = build_drug_episodes(records, episode_config, supply_config)
    return clip_to_stays(episodes, stays)
