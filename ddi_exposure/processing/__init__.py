"""
DDI Exposure Processing
=======================

Interval engine stages:

- Interval algebra: six-case intersection and adjacent-day merge
- Episode builder: fills -> drug episodes -> stay-clipped episodes
- Concurrent use: pairwise / three-way overlaps, primary and stability
- Exposure collapser: overlaps -> continuous DDI exposure episodes
"""

from .interval_algebra import (
    Interval,
    IntervalInvariantError,
    classify_relation,
    classify_and_intersect,
    intersect_series,
    assign_merged_episodes,
)

from .episode_builder import (
    add_fill_bounds,
    build_drug_episodes,
    clip_to_stays,
    build_stay_clipped_episodes,
)

from .concurrent_use import (
    deduplicate_reverse_pairings,
    add_stability_overlap,
    detect_concurrent_use,
)

from .exposure_collapser import (
    collapse_exposures,
    summarize_exposures,
)

__all__ = [
    # Interval algebra
    'Interval',
    'IntervalInvariantError',
    'classify_relation',
    'classify_and_intersect',
    'intersect_series',
    'assign_merged_episodes',
    # Episodes
    'add_fill_bounds',
    'build_drug_episodes',
    'clip_to_stays',
    'build_stay_clipped_episodes',
    # Concurrent use
    'deduplicate_reverse_pairings',
    'add_stability_overlap',
    'detect_concurrent_use',
    # Exposure
    'collapse_exposures',
    'summarize_exposures',
]
