"""
Concurrent Use Detector
=======================

Intersects the stay-clipped episodes of a DDI definition's components.

Pairwise: episodes of components 1 and 2 sharing a beneficiary and stay are
inner-joined and intersected with the six-case relation. Three-way: the
pairwise overlap plays the role of drug 1 against component 3's episode.

Stability variant: the component episode(s) that began first in stay time
are censored at their discontinuation-adjusted end (nh_end_sens) and the
same intersection is re-run. When every component starts on the same day no
adjustment applies. An adjusted episode without discontinuation-rule use
(med_use_sens = 0) voids the stability overlap.
"""

from pathlib import Path
from typing import Dict, List, Sequence
import sys

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_definitions import DDIDefinition
from processing.interval_algebra import (
    OVERLAP_CASES,
    UNDETERMINED,
    IntervalInvariantError,
    check_interval_order,
    intersect_series,
)

JOIN_KEYS = ['bene_id', 'stay_id']

COMPONENT_COLUMNS = [
    'episode_new', 'core_drug', 'drug_class',
    'nh_start', 'nh_end', 'med_use_sens', 'nh_start_sens', 'nh_end_sens',
]

SIMULTANEOUS = 'simultaneous'


# =============================================================================
# JOIN
# =============================================================================

def component_frame(clipped: pd.DataFrame, k: int) -> pd.DataFrame:
    """Select component k's episode columns, suffixed with _k."""
    df = clipped[JOIN_KEYS + COMPONENT_COLUMNS]
    return df.rename(columns={c: f'{c}_{k}' for c in COMPONENT_COLUMNS})


def pairing_mask(
    df: pd.DataFrame,
    pairs: Sequence[tuple],
    require_distinct_class: bool,
) -> pd.Series:
    """
    Rows whose component pairs are eligible to interact.

    Identical core drugs never pair; same-class drugs do not pair when the
    definition requires class distinctness.
    """
    mask = pd.Series(True, index=df.index)
    for i, j in pairs:
        mask &= df[f'core_drug_{i}'] != df[f'core_drug_{j}']
        if require_distinct_class:
            mask &= df[f'drug_class_{i}'] != df[f'drug_class_{j}']
    return mask


def _intersect_with(df: pd.DataFrame, k: int, a_start: str, a_end: str) -> pd.DataFrame:
    """Intersect [a_start, a_end] with component k and keep overlapping rows."""
    start, end, case = intersect_series(
        df[a_start], df[a_end], df[f'nh_start_{k}'], df[f'nh_end_{k}'],
    )
    df = df.assign(start=start, end=end, overlap_case=case)
    return df[df['overlap_case'].isin(OVERLAP_CASES)]


def join_overlapping_episodes(
    frames: List[pd.DataFrame],
    definition: DDIDefinition,
) -> pd.DataFrame:
    """
    Join component episodes on beneficiary and stay and intersect them.

    Args:
        frames: Suffixed component frames, one per component
        definition: DDI definition (pairing rules)

    Returns:
        Rows with start, end, overlap_case (and overlap_case_12 for triples)
    """
    pairs = frames[0].merge(frames[1], on=JOIN_KEYS, how='inner')
    pairs = pairs[pairing_mask(pairs, [(1, 2)], definition.require_distinct_class)]
    pairs = _intersect_with(pairs, 2, 'nh_start_1', 'nh_end_1')

    if definition.n_components == 2:
        return pairs

    triples = pairs.rename(columns={'overlap_case': 'overlap_case_12'})
    triples = triples.merge(frames[2], on=JOIN_KEYS, how='inner')
    triples = triples[pairing_mask(triples, [(1, 3), (2, 3)], definition.require_distinct_class)]
    return _intersect_with(triples, 3, 'start', 'end')


# =============================================================================
# REVERSE-DUPLICATE ELIMINATION
# =============================================================================

def episode_identity(df: pd.DataFrame, k: int) -> pd.Series:
    """Frame-independent key of component k's stay-clipped episode."""
    return (
        df[f'nh_start_{k}'].dt.strftime('%Y-%m-%d')
        + '|' + df[f'nh_end_{k}'].dt.strftime('%Y-%m-%d')
        + '|' + df[f'core_drug_{k}'].astype(str)
    )


def deduplicate_reverse_pairings(
    df: pd.DataFrame,
    definition: DDIDefinition,
) -> pd.DataFrame:
    """
    Keep one row per unordered set of episodes from the same drug list.

    Components drawing from the same list produce every pairing in each
    column order ((A, B) and (B, A)), also when their exclusions differ.
    Episodes are identified by (nh_start, nh_end, core_drug), which does not
    depend on the frame a component was numbered in. Identities of grouped
    components are sorted into a canonical tuple and the first row per
    (beneficiary, stay, canonical identities) is kept, so the earlier
    episode lands in the lower position.

    Args:
        df: Joined overlaps with nh_start_k, nh_end_k, core_drug_k columns
        definition: DDI definition

    Returns:
        Deduplicated copy
    """
    groups = definition.list_groups()
    if not groups or len(df) == 0:
        return df

    positions = range(1, definition.n_components + 1)
    identity = pd.DataFrame(
        {f'_identity_{k}': episode_identity(df, k) for k in positions}, index=df.index,
    )
    id_cols = list(identity.columns)
    keys = ['bene_id', 'stay_id']

    df = pd.concat([df, identity], axis=1).sort_values(keys + id_cols, kind='mergesort')

    canonical = df[keys + id_cols].copy()
    for group in groups:
        cols = [f'_identity_{k}' for k in group]
        canonical[cols] = np.sort(df[cols].to_numpy(dtype=object), axis=1)

    return df[~canonical.duplicated(keep='first')].drop(columns=id_cols)


# =============================================================================
# STABILITY (DISCONTINUATION-ADJUSTED) OVERLAP
# =============================================================================

def start_order_labels(df: pd.DataFrame, n_components: int) -> pd.DataFrame:
    """
    Determine which component episode(s) began first in stay time.

    Pairwise yields first_1, first_2 or simultaneous; three-way yields one of
    first_1, first_2, first_3, first_12, first_13, first_23, simultaneous.

    Returns:
        Frame with start_order and boolean adjusted_k per component
    """
    positions = range(1, n_components + 1)
    starts = df[[f'nh_start_{k}' for k in positions]]
    earliest = starts.min(axis=1)

    first = {k: (df[f'nh_start_{k}'] == earliest).to_numpy() for k in positions}
    n_first = sum(first[k].astype(int) for k in positions)
    simultaneous = n_first == n_components

    label = np.full(len(df), 'first_', dtype=object)
    for k in positions:
        label = label + np.where(first[k], str(k), '')
    label = np.where(simultaneous, SIMULTANEOUS, label)

    out = pd.DataFrame({'start_order': label}, index=df.index)
    for k in positions:
        out[f'adjusted_{k}'] = first[k] & ~simultaneous
    return out


def add_stability_overlap(df: pd.DataFrame, n_components: int) -> pd.DataFrame:
    """
    Compute the discontinuation-adjusted overlap for each primary overlap.

    Args:
        df: Primary overlaps with per-component columns
        n_components: 2 or 3

    Returns:
        Copy with start_order, ddi_sens, start_sens, end_sens
    """
    df = df.copy()
    positions = list(range(1, n_components + 1))
    order = start_order_labels(df, n_components)
    df['start_order'] = order['start_order']

    void = pd.Series(False, index=df.index)
    bounds: Dict[int, tuple] = {}
    for k in positions:
        adjusted = order[f'adjusted_{k}']
        void |= adjusted & (df[f'med_use_sens_{k}'] == 0)
        start = df[f'nh_start_{k}'].where(~adjusted, df[f'nh_start_sens_{k}'])
        end = df[f'nh_end_{k}'].where(~adjusted, df[f'nh_end_sens_{k}'])
        bounds[k] = (start, end)

    start, end = bounds[1]
    case = None
    for k in positions[1:]:
        start, end, case = intersect_series(start, end, bounds[k][0], bounds[k][1])
    case = case.where(~void, UNDETERMINED)

    df['ddi_sens'] = case.isin(OVERLAP_CASES).astype('int64')
    df['start_sens'] = start.where(df['ddi_sens'] == 1)
    df['end_sens'] = end.where(df['ddi_sens'] == 1)
    return df


# =============================================================================
# INVARIANTS
# =============================================================================

def check_overlap_invariants(df: pd.DataFrame, n_components: int, ddi_id: str) -> None:
    """
    Raise if an overlap is reversed, escapes a component episode, or the
    stability overlap extends beyond the primary overlap.
    """
    context = {'ddi_id': ddi_id}
    check_interval_order(df, 'start', 'end', "Overlap episode", context)

    for k in range(1, n_components + 1):
        outside = (df['start'] < df[f'nh_start_{k}']) | (df['end'] > df[f'nh_end_{k}'])
        if outside.any():
            row = df[outside].iloc[0]
            raise IntervalInvariantError(
                f"Overlap outside component {k} episode",
                {**context, 'bene_id': row['bene_id']},
            )

    sens = df[df['ddi_sens'] == 1]
    check_interval_order(sens, 'start_sens', 'end_sens', "Stability overlap episode", context)
    extends = (sens['start_sens'] < sens['start']) | (sens['end_sens'] > sens['end'])
    if extends.any():
        row = sens[extends].iloc[0]
        raise IntervalInvariantError(
            "Stability overlap extends beyond primary overlap",
            {**context, 'bene_id': row['bene_id']},
        )


# =============================================================================
# MAIN DETECTOR
# =============================================================================

def overlap_columns(n_components: int) -> List[str]:
    """Output column order for a definition with n components."""
    columns = ['bene_id', 'stay_id', 'ddi_id']
    for k in range(1, n_components + 1):
        columns += [f'{c}_{k}' for c in COMPONENT_COLUMNS]
    return columns + [
        'start', 'end', 'overlap_case', 'start_order', 'ddi_sens', 'start_sens', 'end_sens',
    ]


def detect_concurrent_use(
    component_episodes: List[pd.DataFrame],
    definition: DDIDefinition,
) -> pd.DataFrame:
    """
    Build OverlapEpisodes for one DDI definition.

    Args:
        component_episodes: Stay-clipped episodes per component, in
            definition order (the same frame may be passed for components
            sharing a drug list)
        definition: DDI definition

    Returns:
        One row per overlapping set of component episodes, with primary
        (start, end) and stability (start_sens, end_sens, ddi_sens) overlaps
    """
    n = definition.n_components
    if len(component_episodes) != n:
        raise ValueError(
            f"{definition.ddi_id}: expected {n} component episode frames, "
            f"got {len(component_episodes)}"
        )

    if any(len(e) == 0 for e in component_episodes):
        return pd.DataFrame(columns=overlap_columns(n))

    frames = [component_frame(e, k) for k, e in enumerate(component_episodes, start=1)]

    overlaps = join_overlapping_episodes(frames, definition)
    if len(overlaps) == 0:
        return pd.DataFrame(columns=overlap_columns(n))
    overlaps = deduplicate_reverse_pairings(overlaps, definition)
    overlaps = add_stability_overlap(overlaps, n)
    overlaps['ddi_id'] = definition.ddi_id

    check_overlap_invariants(overlaps, n, definition.ddi_id)

    overlaps = overlaps.sort_values(['bene_id', 'start', 'end'], kind='mergesort')
    return overlaps[overlap_columns(n)].reset_index(drop=True)
