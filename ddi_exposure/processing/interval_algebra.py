"""
Interval Algebra
================

Closed day-grid intervals shared by every stage of the DDI pipeline.

- The six-case relation table used to intersect two episodes (pairwise,
  three-way, primary and discontinuation-adjusted overlaps all reuse it).
- The adjacent-day merge rule used to build medication episodes from fills
  and DDI exposure episodes from overlaps.

All bounds are inclusive: an interval [start, end] covers end - start + 1 days.
"""

from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


DAY = pd.Timedelta(days=1)

# Relation cases; first matching case wins
NO_OVERLAP_BEFORE = 1   # A ends before B starts
NO_OVERLAP_AFTER = 2    # A starts after B ends
A_WITHIN_B = 3          # overlap = A
A_STARTS_IN_B = 4       # overlap = [A.start, B.end]
A_ENDS_IN_B = 5         # overlap = [B.start, A.end]
A_COVERS_B = 6          # overlap = B
UNDETERMINED = 0        # a bound is missing (NaT)

OVERLAP_CASES = (A_WITHIN_B, A_STARTS_IN_B, A_ENDS_IN_B, A_COVERS_B)


class IntervalInvariantError(RuntimeError):
    """An interval stage produced output violating its construction rules."""

    def __init__(self, message: str, context: Optional[Dict] = None):
        self.context = context or {}
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class Interval(NamedTuple):
    """Inclusive day interval."""

    start: pd.Timestamp
    end: pd.Timestamp

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


# =============================================================================
# SIX-CASE RELATION
# =============================================================================

def relation_conditions(a_start, a_end, b_start, b_end) -> List:
    """
    Ordered relation tests between interval A and interval B.

    Works on scalars and on aligned pandas Series alike.

    Returns:
        List of six boolean conditions, one per relation case
    """
    return [
        a_end < b_start,
        a_start > b_end,
        (a_start >= b_start) & (a_end <= b_end),
        (a_start >= b_start) & (a_start <= b_end),
        (a_end >= b_start) & (a_end <= b_end),
        (a_start <= b_start) & (a_end >= b_end),
    ]


def _overlap_bounds(a_start, a_end, b_start, b_end) -> Tuple[List, List]:
    """Overlap start/end chosen by each of the six cases."""
    starts = [None, None, a_start, a_start, b_start, b_start]
    ends = [None, None, a_end, b_end, a_end, b_end]
    return starts, ends


def classify_relation(a: Interval, b: Interval) -> int:
    """
    Classify the relation of interval A to interval B.

    Args:
        a: First interval
        b: Second interval

    Returns:
        Case number 1-6, or 0 if a bound is missing
    """
    if any(pd.isna(v) for v in (a.start, a.end, b.start, b.end)):
        return UNDETERMINED

    for case, condition in enumerate(relation_conditions(a.start, a.end, b.start, b.end), start=1):
        if bool(condition):
            return case

    return UNDETERMINED


def classify_and_intersect(a: Interval, b: Interval) -> Optional[Interval]:
    """
    Intersect two intervals using the six-case relation.

    Args:
        a: First interval
        b: Second interval

    Returns:
        Overlapping interval, or None if they do not overlap
    """
    case = classify_relation(a, b)
    if case not in OVERLAP_CASES:
        return None

    starts, ends = _overlap_bounds(a.start, a.end, b.start, b.end)
    return Interval(starts[case - 1], ends[case - 1])


def intersect_series(
    a_start: pd.Series,
    a_end: pd.Series,
    b_start: pd.Series,
    b_end: pd.Series,
) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """
    Vectorized six-case intersection over aligned Series.

    Args:
        a_start, a_end: Bounds of interval A per row
        b_start, b_end: Bounds of interval B per row

    Returns:
        (overlap_start, overlap_end, case) Series; rows without overlap get
        NaT bounds and case 1 or 2; rows with a missing bound get case 0
    """
    index = a_start.index
    missing = (a_start.isna() | a_end.isna() | b_start.isna() | b_end.isna()).to_numpy()
    conditions = [
        np.asarray(c, dtype=bool) & ~missing
        for c in relation_conditions(a_start, a_end, b_start, b_end)
    ]

    case = np.select(conditions, list(range(1, 7)), default=UNDETERMINED)

    nat = np.full(len(index), np.datetime64('NaT'), dtype='datetime64[ns]')
    starts, ends = _overlap_bounds(
        a_start.to_numpy(dtype='datetime64[ns]'),
        a_end.to_numpy(dtype='datetime64[ns]'),
        b_start.to_numpy(dtype='datetime64[ns]'),
        b_end.to_numpy(dtype='datetime64[ns]'),
    )
    starts = [nat if s is None else s for s in starts]
    ends = [nat if e is None else e for e in ends]

    overlap_start = np.select(conditions, starts, default=nat)
    overlap_end = np.select(conditions, ends, default=nat)

    return (
        pd.Series(overlap_start, index=index, dtype='datetime64[ns]'),
        pd.Series(overlap_end, index=index, dtype='datetime64[ns]'),
        pd.Series(case, index=index, dtype='int64'),
    )


# =============================================================================
# ADJACENT-DAY MERGE
# =============================================================================

def to_day_number(dates: pd.Series) -> pd.Series:
    """Whole days since 1970-01-01."""
    return pd.Series(
        dates.to_numpy(dtype='datetime64[ns]').astype('datetime64[D]').astype(np.int64),
        index=dates.index,
    )


def inclusive_days(start: pd.Series, end: pd.Series) -> pd.Series:
    """Days covered by [start, end], both ends inclusive."""
    return (pd.to_datetime(end) - pd.to_datetime(start)).dt.days.astype('int64') + 1


def check_interval_order(
    df: pd.DataFrame,
    start: str,
    end: str,
    what: str,
    context: Optional[Dict] = None,
) -> None:
    """
    Raise if any interval is missing a bound or ends before it starts.

    Args:
        df: Frame of intervals
        start, end: Bound columns
        what: Name of the entity for the error message
        context: Extra context for the error (e.g. ddi_id)

    Raises:
        IntervalInvariantError: On the first offending row
    """
    bad = df[start].isna() | df[end].isna() | (df[end] < df[start])
    if not bad.any():
        return

    row = df[bad].iloc[0]
    details = dict(context or {})
    if 'bene_id' in df.columns:
        details['bene_id'] = row['bene_id']
    details['start'] = row[start]
    details['end'] = row[end]
    details['n_bad'] = int(bad.sum())
    raise IntervalInvariantError(f"{what} with end before start or missing bound", details)


def assign_merged_episodes(
    df: pd.DataFrame,
    keys: Sequence[str],
    start: str,
    end: str,
    max_gap_days: int = 1,
    episode_col: str = 'episode_id',
) -> pd.DataFrame:
    """
    Assign rows to merged episodes with a left-to-right scan per group.

    Rows are sorted by (keys, start, longest first). For each row, compared
    with the running end of its group's open episode:

    - first row of the group: opens episode 1
    - end <= running end: fully contained (flagged is_contained)
    - start <= running end + max_gap_days: joins and extends the episode
    - otherwise: closes the episode and opens the next one

    Args:
        df: Intervals to merge
        keys: Grouping columns (e.g. bene_id, core_drug)
        start, end: Inclusive bound columns
        max_gap_days: Largest start - running_end that still merges
        episode_col: Name of the output episode number column

    Returns:
        Sorted copy with episode_col (1-based per group) and is_contained
    """
    keys = list(keys)
    check_interval_order(df, start, end, "interval")

    out = df.sort_values(
        keys + [start, end],
        ascending=[True] * len(keys) + [True, False],
        kind='mergesort',
    ).reset_index(drop=True)

    if len(out) == 0:
        out[episode_col] = pd.Series(dtype='int64')
        out['is_contained'] = pd.Series(dtype=bool)
        return out

    start_day = to_day_number(out[start])
    end_day = to_day_number(out[end])
    groups = [out[k] for k in keys]

    # Running end of the open episode before each row
    running_end = end_day.groupby(groups, sort=False).cummax()
    prev_end = running_end.groupby(groups, sort=False).shift(1)

    new_episode = prev_end.isna() | (start_day > prev_end + max_gap_days)
    out['is_contained'] = (~new_episode & (end_day <= prev_end)).astype(bool)
    out[episode_col] = new_episode.astype(np.int64).groupby(groups, sort=False).cumsum()

    return out
