"""
Layer Validators
================

Validation suite for the DDI exposure layers.

Validation targets:
- Drug episodes: start <= end, episodes of one drug separated by >= 2 days
- Stay-clipped episodes: inside both the stay and the drug episode
- Overlaps: inside every component episode, stability within primary
- Exposures: positive durations, episodes separated by >= 2 days
"""

import pandas as pd
from pathlib import Path
from typing import List, Optional
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_config import GOLD_DIR, SILVER_DIR, VARIANTS, VALIDATION_CONFIG
from config.ddi_definitions import DDIDefinition
from processing.interval_algebra import inclusive_days, to_day_number


class ValidationResult:
    """Container for validation results."""

    def __init__(self, name: str):
        self.name = name
        self.checks = []
        self.passed = 0
        self.failed = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def add_check(self, description: str, passed: bool, details: str = ""):
        self.checks.append({
            'description': description,
            'passed': bool(passed),
            'details': details,
        })
        if passed:
            self.passed += 1
        else:
            self.failed += 1

    def summary(self) -> str:
        status = "PASS" if self.ok else "FAIL"
        return f"{self.name}: {status} ({self.passed}/{self.passed + self.failed} checks)"

    def report(self) -> str:
        lines = [f"\n{'='*60}", f"{self.name}", "="*60]
        for check in self.checks:
            icon = "✓" if check['passed'] else "✗"
            lines.append(f"  {icon} {check['description']}")
            if check['details']:
                lines.append(f"      {check['details']}")
        lines.append(self.summary())
        return "\n".join(lines)


def _min_gap_days(df: pd.DataFrame, keys: List[str], start: str, end: str) -> Optional[int]:
    """Smallest start - previous end within each group (None if no pairs)."""
    if len(df) == 0:
        return None
    ordered = df.sort_values(keys + [start], kind='mergesort')
    prev_end = to_day_number(ordered[end]).groupby([ordered[k] for k in keys], sort=False).shift(1)
    gap = (to_day_number(ordered[start]) - prev_end).dropna()
    return int(gap.min()) if len(gap) else None


def _count_reversed(df: pd.DataFrame, start: str, end: str) -> int:
    return int((df[start].isna() | df[end].isna() | (df[end] < df[start])).sum())


def validate_drug_episodes(episodes: pd.DataFrame) -> ValidationResult:
    """Validate medication-use episodes (before stay clipping)."""
    result = ValidationResult("Drug Episodes")

    n_bad = _count_reversed(episodes, 'episode_start', 'episode_end')
    result.add_check("Episode start <= end", n_bad == 0, f"{n_bad:,} reversed of {len(episodes):,}")

    min_gap = _min_gap_days(episodes, ['bene_id', 'core_drug'], 'episode_start', 'episode_end')
    target = VALIDATION_CONFIG.min_episode_gap_days
    result.add_check(
        f"Episodes of one drug separated by >={target} days",
        min_gap is None or min_gap >= target,
        f"Smallest gap: {min_gap}"
    )

    late = int((episodes['max_discon_date'] > episodes['episode_end']).sum())
    result.add_check("Discontinuation date within episode", late == 0, f"{late:,} episodes")

    return result


def validate_clipped_episodes(clipped: pd.DataFrame) -> ValidationResult:
    """Validate stay-clipped episodes."""
    result = ValidationResult("Stay-Clipped Episodes")

    n_bad = _count_reversed(clipped, 'nh_start', 'nh_end')
    result.add_check("Clipped start <= end", n_bad == 0, f"{n_bad:,} reversed of {len(clipped):,}")

    outside_stay = int(((clipped['nh_start'] < clipped['stay_start']) |
                        (clipped['nh_end'] > clipped['stay_end'])).sum())
    result.add_check("Clipped episodes inside their stay", outside_stay == 0, f"{outside_stay:,} outside")

    outside_episode = int(((clipped['nh_start'] < clipped['episode_start']) |
                           (clipped['nh_end'] > clipped['episode_end'])).sum())
    result.add_check("Clipped episodes inside drug episode", outside_episode == 0, f"{outside_episode:,} outside")

    unique_ids = not clipped.duplicated(['bene_id', 'episode_new']).any()
    result.add_check("episode_new unique per beneficiary", unique_ids)

    sens = clipped[clipped['med_use_sens'] == 1]
    late = int((sens['nh_end_sens'] > sens['nh_end']).sum())
    result.add_check("Discontinuation-clipped end <= clipped end", late == 0, f"{late:,} episodes")

    return result


def validate_overlaps(overlaps: pd.DataFrame, n_components: int) -> ValidationResult:
    """Validate overlap episodes of one definition."""
    ddi_id = overlaps['ddi_id'].iloc[0] if len(overlaps) else "empty"
    result = ValidationResult(f"Overlaps: {ddi_id}")

    n_bad = _count_reversed(overlaps, 'start', 'end')
    result.add_check("Overlap start <= end", n_bad == 0, f"{n_bad:,} reversed of {len(overlaps):,}")

    for k in range(1, n_components + 1):
        outside = int(((overlaps['start'] < overlaps[f'nh_start_{k}']) |
                       (overlaps['end'] > overlaps[f'nh_end_{k}'])).sum())
        result.add_check(f"Overlap inside component {k} episode", outside == 0, f"{outside:,} outside")

    for i in range(1, n_components + 1):
        for j in range(i + 1, n_components + 1):
            same = int((overlaps[f'core_drug_{i}'] == overlaps[f'core_drug_{j}']).sum())
            result.add_check(f"Components {i} and {j} are distinct drugs", same == 0, f"{same:,} rows")

    sens = overlaps[overlaps['ddi_sens'] == 1]
    n_bad = _count_reversed(sens, 'start_sens', 'end_sens')
    result.add_check("Stability overlap start <= end", n_bad == 0, f"{n_bad:,} reversed")

    extends = int(((sens['start_sens'] < sens['start']) | (sens['end_sens'] > sens['end'])).sum())
    result.add_check("Stability overlap within primary overlap", extends == 0, f"{extends:,} rows")

    return result


def validate_exposures(exposures: pd.DataFrame) -> ValidationResult:
    """Validate DDI exposure episodes of one definition and variant."""
    if len(exposures):
        name = f"Exposures: {exposures['ddi_id'].iloc[0]} ({exposures['variant'].iloc[0]})"
    else:
        name = "Exposures: empty"
    result = ValidationResult(name)

    positive = int((exposures['days_with_ddi'] <= 0).sum())
    result.add_check("days_with_ddi > 0", positive == 0, f"{positive:,} non-positive")

    if len(exposures):
        mismatch = int((inclusive_days(exposures['start_date'], exposures['end_date'])
                        != exposures['days_with_ddi']).sum())
    else:
        mismatch = 0
    result.add_check("days_with_ddi = end - start + 1", mismatch == 0, f"{mismatch:,} rows")

    min_gap = _min_gap_days(exposures, ['bene_id', 'ddi_id'], 'start_date', 'end_date')
    target = VALIDATION_CONFIG.min_episode_gap_days
    result.add_check(
        f"Exposure episodes separated by >={target} days",
        min_gap is None or min_gap >= target,
        f"Smallest gap: {min_gap}"
    )

    return result


def run_all_validations(
    output_dir: Optional[Path] = None,
    definitions: Optional[List[DDIDefinition]] = None,
    variants: Optional[List[str]] = None,
    intermediate_dir: Optional[Path] = None,
) -> List[ValidationResult]:
    """
    Validate every written exposure table.

    Episode and overlap intermediates are validated when present.
    """
    output_dir = Path(output_dir) if output_dir else GOLD_DIR
    intermediate_dir = Path(intermediate_dir) if intermediate_dir else SILVER_DIR
    variants = list(variants or VARIANTS)

    print("=" * 60)
    print("DDI Exposure Validation Suite")
    print("=" * 60)

    results = []
    for definition in definitions or []:
        for k, component in enumerate(definition.components, start=1):
            episode_path = (
                intermediate_dir / "episodes"
                / f"episodes_{definition.ddi_id}_c{k}_{component.list_id}.parquet"
            )
            if episode_path.exists():
                clipped = pd.read_parquet(episode_path)
                results.append(validate_drug_episodes(
                    clipped.drop_duplicates(['bene_id', 'core_drug', 'episode_id'])
                ))
                results.append(validate_clipped_episodes(clipped))

        overlap_path = intermediate_dir / "overlaps" / f"overlaps_{definition.ddi_id}.parquet"
        if overlap_path.exists():
            results.append(validate_overlaps(pd.read_parquet(overlap_path), definition.n_components))

        for variant in variants:
            path = output_dir / f"ddi_exposure_{definition.ddi_id}_{variant}.parquet"
            try:
                results.append(validate_exposures(pd.read_parquet(path)))
            except (OSError, ValueError) as e:
                result = ValidationResult(f"Exposures: {definition.ddi_id} ({variant})")
                result.add_check("Exposure table accessible", False, str(e))
                results.append(result)

    for r in results:
        print(r.report())

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    total_passed = sum(r.passed for r in results)
    total_failed = sum(r.failed for r in results)
    print(f"Total: {total_passed} passed, {total_failed} failed")

    overall = "PASS" if total_failed == 0 else "NEEDS ATTENTION"
    print(f"Overall: {overall}")

    return results


if __name__ == "__main__":
    from config.ddi_config import load_ddi_definitions
    from config.ddi_definitions import parse_definitions

    run_all_validations(definitions=parse_definitions(load_ddi_definitions()))
