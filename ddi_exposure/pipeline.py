# pipeline.py
"""
DDI Exposure Pipeline
=====================

Runs the interval engine once per drug-drug interaction definition:

1. Extract and clean each component's dispensing records
2. Build medication-use episodes and clip them to nursing-home stays
3. Detect concurrent use (primary and stability overlaps)
4. Collapse overlaps into DDI exposure episodes per variant

Definitions are independent; they run in parallel worker processes and a
failing definition is logged and reported without stopping the others.
"""

import logging
import multiprocessing as mp
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import sys

import pandas as pd
from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).parent))

from config.ddi_config import (
    DISPENSING_FILE,
    STAYS_FILE,
    SILVER_DIR,
    GOLD_DIR,
    RUN_CONFIG,
    VARIANTS,
    load_drug_lists,
    load_ddi_definitions,
    ensure_directories,
)
from config.ddi_definitions import (
    ComponentSpec,
    DDIDefinition,
    DefinitionConfigError,
    collect_definitions,
)
from extractors.component_extractor import extract_clean_component
from extractors.table_loader import (
    load_dispensing,
    load_drug_list_table,
    load_stays,
    prepare_dispensing,
    prepare_stays,
)
from processing.concurrent_use import detect_concurrent_use
from processing.episode_builder import build_stay_clipped_episodes
from processing.exposure_collapser import collapse_exposures, summarize_exposures

logger = logging.getLogger(__name__)


@dataclass
class DefinitionRunResult:
    """Outcome of one definition's run."""

    ddi_id: str
    status: str = 'succeeded'
    error: str = ''
    n_overlaps: int = 0
    counts: Dict[str, Dict] = field(default_factory=dict)
    output_paths: Dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == 'succeeded'

    def to_row(self) -> Dict:
        row = {
            'ddi_id': self.ddi_id,
            'status': self.status,
            'error': self.error,
            'n_overlaps': self.n_overlaps,
            'elapsed_seconds': round(self.elapsed_seconds, 2),
        }
        for variant, counts in self.counts.items():
            for name, value in counts.items():
                row[f'{variant}_{name}'] = value
        return row


class DDIExposurePipeline:
    """Per-definition DDI exposure engine over shared input tables."""

    def __init__(
        self,
        dispensing: pd.DataFrame,
        stays: pd.DataFrame,
        drug_lists: Dict,
        definitions: List[DDIDefinition],
        output_dir: Optional[Path] = None,
        variants: Optional[List[str]] = None,
        save_intermediates: bool = False,
        intermediate_dir: Optional[Path] = None,
        config_errors: Optional[List[DefinitionConfigError]] = None,
    ):
        """
        Initialize pipeline.

        Args:
            dispensing: Standardized dispensing records
            stays: Standardized facility stays
            drug_lists: Mapping list_id -> drug list definition
            definitions: DDI definitions to run
            output_dir: Directory for exposure outputs (default GOLD_DIR)
            variants: Analysis variants to produce (default both)
            save_intermediates: Also write clipped episodes and overlaps
            intermediate_dir: Directory for intermediates (default SILVER_DIR)
            config_errors: Definitions rejected while parsing; each is reported
                as a failed run
        """
        self.dispensing = dispensing
        self.stays = stays
        self.drug_lists = drug_lists
        self.definitions = definitions
        self.output_dir = Path(output_dir) if output_dir else GOLD_DIR
        self.variants = list(variants or VARIANTS)
        self.save_intermediates = save_intermediates
        self.intermediate_dir = Path(intermediate_dir) if intermediate_dir else SILVER_DIR
        self.config_errors = list(config_errors or [])
        self._episode_cache: Dict[ComponentSpec, pd.DataFrame] = {}

        unknown = [v for v in self.variants if v not in VARIANTS]
        if unknown:
            raise ValueError(f"Unknown variants: {unknown}")

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def component_episodes(self, component: ComponentSpec) -> pd.DataFrame:
        """Stay-clipped episodes of one component (cached per component spec)."""
        if component not in self._episode_cache:
            records = extract_clean_component(self.dispensing, self.drug_lists, component)
            self._episode_cache[component] = build_stay_clipped_episodes(records, self.stays)
        return self._episode_cache[component]

    def run_definition(self, definition: DDIDefinition) -> Dict[str, pd.DataFrame]:
        """
        Run all stages for one definition.

        Args:
            definition: DDI definition

        Returns:
            Dict with 'overlaps' and one exposure frame per variant

        Raises:
            DefinitionConfigError: Before any stage runs, if the definition
                cannot be resolved against the drug lists
            IntervalInvariantError: If a stage violates its interval rules
        """
        definition.validate(self.drug_lists)

        episodes = [self.component_episodes(c) for c in definition.components]
        overlaps = detect_concurrent_use(episodes, definition)

        results = {'overlaps': overlaps}
        for variant in self.variants:
            results[variant] = collapse_exposures(overlaps, variant=variant)

        return results

    def process_definition(self, definition: DDIDefinition, fail_fast: bool = False) -> DefinitionRunResult:
        """Run one definition, save its outputs and capture any failure."""
        start_time = time.time()
        result = DefinitionRunResult(ddi_id=definition.ddi_id)

        try:
            outputs = self.run_definition(definition)
            result.n_overlaps = len(outputs['overlaps'])
            for variant in self.variants:
                result.counts[variant] = summarize_exposures(outputs[variant])
            result.output_paths = self.save_outputs(definition, outputs)
        except Exception as e:
            if fail_fast:
                raise
            logger.exception(f"DDI definition '{definition.ddi_id}' failed")
            result.status = 'failed'
            result.error = f"{type(e).__name__}: {e}"

        result.elapsed_seconds = time.time() - start_time
        return result

    def save_outputs(self, definition: DDIDefinition, outputs: Dict[str, pd.DataFrame]) -> Dict[str, str]:
        """Write per-variant exposure tables (and intermediates if enabled)."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        paths = {}

        for variant in self.variants:
            path = self.output_dir / f"ddi_exposure_{definition.ddi_id}_{variant}.parquet"
            outputs[variant].to_parquet(path, index=False)
            paths[variant] = str(path)

        if self.save_intermediates:
            overlap_dir = self.intermediate_dir / "overlaps"
            overlap_dir.mkdir(parents=True, exist_ok=True)
            path = overlap_dir / f"overlaps_{definition.ddi_id}.parquet"
            outputs['overlaps'].to_parquet(path, index=False)
            paths['overlaps'] = str(path)

            episode_dir = self.intermediate_dir / "episodes"
            episode_dir.mkdir(parents=True, exist_ok=True)
            for k, component in enumerate(definition.components, start=1):
                path = episode_dir / f"episodes_{definition.ddi_id}_c{k}_{component.list_id}.parquet"
                self.component_episodes(component).to_parquet(path, index=False)

        return paths

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def run(
        self,
        n_jobs: Optional[int] = None,
        fail_fast: bool = False,
        summary_path: Optional[Path] = None,
    ) -> pd.DataFrame:
        """
        Run every definition and write the batch summary.

        Args:
            n_jobs: Worker processes (1 runs in-process; default cpu_count - 1)
            fail_fast: Re-raise the first failure instead of continuing
            summary_path: Where to write run_summary.parquet

        Returns:
            Run summary, one row per definition
        """
        print("=" * 60)
        print("DDI Exposure Pipeline")
        print("=" * 60)
        print(f"   Definitions: {len(self.definitions)}")
        if self.config_errors:
            print(f"   Rejected definitions: {len(self.config_errors)}")
        print(f"   Variants: {', '.join(self.variants)}")
        print(f"   Beneficiaries with dispensing: {self.dispensing['bene_id'].nunique():,}")
        print(f"   Stays: {len(self.stays):,}")

        if n_jobs is None:
            n_jobs = RUN_CONFIG.n_jobs or max(1, mp.cpu_count() - 1)
        n_jobs = max(1, min(n_jobs, len(self.definitions) or 1))

        if fail_fast and self.config_errors:
            raise self.config_errors[0]
        results = [self.rejected_result(e) for e in self.config_errors]

        if n_jobs == 1 or fail_fast:
            results += [
                self.process_definition(d, fail_fast=fail_fast)
                for d in tqdm(self.definitions, desc="  DDI definitions", unit="ddi")
            ]
        else:
            results += self._run_parallel(n_jobs)

        summary = pd.DataFrame([r.to_row() for r in results])
        self.report(results)

        summary_path = Path(summary_path) if summary_path else self.output_dir / "run_summary.parquet"
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        summary.to_parquet(summary_path, index=False)
        print(f"\n   Summary: {summary_path}")
        print("=" * 60)

        return summary

    @staticmethod
    def rejected_result(error: DefinitionConfigError) -> DefinitionRunResult:
        """Failed result for a definition that could not be parsed."""
        logger.error(str(error))
        return DefinitionRunResult(
            ddi_id=str(error.ddi_id),
            status='failed',
            error=f"{type(error).__name__}: {error}",
        )

    def _run_parallel(self, n_jobs: int) -> List[DefinitionRunResult]:
        print(f"   Using {n_jobs} parallel workers...")

        results = []
        with ProcessPoolExecutor(max_workers=n_jobs, initializer=_init_worker, initargs=(self,)) as executor:
            futures = {executor.submit(_process_in_worker, d): d for d in self.definitions}
            with tqdm(total=len(futures), desc="  DDI definitions", unit="ddi") as pbar:
                for future in as_completed(futures):
                    definition = futures[future]
                    try:
                        results.append(future.result())
                    except Exception as e:
                        # Worker process died; the definition's own errors are caught in-worker
                        logger.exception(f"Worker for DDI definition '{definition.ddi_id}' crashed")
                        results.append(DefinitionRunResult(
                            ddi_id=definition.ddi_id,
                            status='failed',
                            error=f"{type(e).__name__}: {e}",
                        ))
                    pbar.update(1)

        order = {d.ddi_id: i for i, d in enumerate(self.definitions)}
        return sorted(results, key=lambda r: order[r.ddi_id])

    @staticmethod
    def report(results: List[DefinitionRunResult]) -> None:
        """Print the batch outcome."""
        succeeded = [r for r in results if r.succeeded]
        failed = [r for r in results if not r.succeeded]

        print("\n" + "=" * 60)
        print("Run Summary")
        print("=" * 60)
        print(f"   Succeeded: {len(succeeded)}/{len(results)}")
        for r in succeeded:
            exposed = ", ".join(
                f"{variant}={counts['n_benes_exposed']:,} benes"
                for variant, counts in r.counts.items()
            )
            print(f"     ✓ {r.ddi_id}: {r.n_overlaps:,} overlaps ({exposed})")
        if failed:
            print(f"   Failed: {len(failed)}")
            for r in failed:
                print(f"     ✗ {r.ddi_id}: {r.error}")


# =============================================================================
# WORKER PROCESS
# =============================================================================

_worker_pipeline: Optional[DDIExposurePipeline] = None


def _init_worker(pipeline: DDIExposurePipeline):
    global _worker_pipeline
    _worker_pipeline = pipeline


def _process_in_worker(definition: DDIDefinition) -> DefinitionRunResult:
    return _worker_pipeline.process_definition(definition)


# =============================================================================
# INPUT LOADING
# =============================================================================

def select_definitions(
    definitions: List[DDIDefinition],
    ddi_ids: Optional[List[str]],
    also_known: Iterable[str] = (),
) -> List[DDIDefinition]:
    """Subset definitions by ddi_id, keeping file order.

    Ids in also_known (definitions rejected while parsing) are accepted but
    select nothing.
    """
    if not ddi_ids:
        return definitions

    known = {d.ddi_id for d in definitions} | set(also_known)
    unknown = [i for i in ddi_ids if i not in known]
    if unknown:
        raise ValueError(f"Unknown DDI definitions: {unknown}")
    return [d for d in definitions if d.ddi_id in set(ddi_ids)]


def limit_beneficiaries(
    dispensing: pd.DataFrame,
    stays: pd.DataFrame,
    n_benes: int,
) -> tuple:
    """Restrict both tables to the first n beneficiaries (test mode)."""
    benes = sorted(dispensing['bene_id'].dropna().unique())[:n_benes]
    return (
        dispensing[dispensing['bene_id'].isin(benes)].reset_index(drop=True),
        stays[stays['bene_id'].isin(benes)].reset_index(drop=True),
    )


def build_pipeline(
    dispensing: pd.DataFrame,
    stays: pd.DataFrame,
    drug_lists: Optional[Dict] = None,
    definitions: Optional[List[DDIDefinition]] = None,
    **kwargs,
) -> DDIExposurePipeline:
    """Standardize raw tables and build a pipeline with default config files."""
    if drug_lists is None:
        drug_lists = load_drug_lists()['lists']
    if definitions is None:
        definitions, config_errors = collect_definitions(load_ddi_definitions())
        kwargs.setdefault('config_errors', config_errors)

    return DDIExposurePipeline(
        dispensing=prepare_dispensing(dispensing),
        stays=prepare_stays(stays),
        drug_lists=drug_lists,
        definitions=definitions,
        **kwargs,
    )


# =============================================================================
# CLI
# =============================================================================

def main():
    """Main entry point for CLI."""
    import argparse

    parser = argparse.ArgumentParser(description="Build nursing-home DDI exposure episodes")
    parser.add_argument('--dispensing', type=str, default=str(DISPENSING_FILE), help='Dispensing table')
    parser.add_argument('--stays', type=str, default=str(STAYS_FILE), help='Facility stay table')
    parser.add_argument('--drug-lists', type=str, default=None,
                        help='Tabular drug lists with a list_id column (default: drug_lists.yaml)')
    parser.add_argument('--ddi', action='append', default=None, help='DDI definition id (repeatable)')
    parser.add_argument('--variants', type=str, default=','.join(RUN_CONFIG.variants),
                        help="Comma-separated variants (e.g., 'primary,stability')")
    parser.add_argument('--n-jobs', type=int, default=RUN_CONFIG.n_jobs, help='Parallel workers')
    parser.add_argument('--output-dir', type=str, default=str(GOLD_DIR), help='Output directory')
    parser.add_argument('--save-intermediates', action='store_true', help='Write episodes and overlaps')
    parser.add_argument('--test', action='store_true', help='Run in test mode')
    parser.add_argument('--n', type=int, default=RUN_CONFIG.test_n_benes, help='Beneficiaries for test mode')
    parser.add_argument('--fail-fast', action='store_true', help='Stop at the first failing definition')
    parser.add_argument('--validate', action='store_true', help='Validate outputs after the run')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    ensure_directories()

    print("Loading inputs...")
    dispensing = load_dispensing(args.dispensing)
    stays = load_stays(args.stays)
    if args.test:
        dispensing, stays = limit_beneficiaries(dispensing, stays, args.n)
        print(f"Test mode: {dispensing['bene_id'].nunique()} beneficiaries")

    if args.drug_lists:
        drug_lists = load_drug_list_table(args.drug_lists)
    else:
        drug_lists = load_drug_lists()['lists']
    definitions, config_errors = collect_definitions(load_ddi_definitions())
    definitions = select_definitions(definitions, args.ddi, also_known=[e.ddi_id for e in config_errors])
    if args.ddi:
        config_errors = [e for e in config_errors if e.ddi_id in args.ddi]

    pipeline = DDIExposurePipeline(
        dispensing=dispensing,
        stays=stays,
        drug_lists=drug_lists,
        definitions=definitions,
        output_dir=Path(args.output_dir),
        variants=[v.strip() for v in args.variants.split(',') if v.strip()],
        save_intermediates=args.save_intermediates or RUN_CONFIG.save_intermediates,
        config_errors=config_errors,
    )
    summary = pipeline.run(n_jobs=args.n_jobs, fail_fast=args.fail_fast or RUN_CONFIG.fail_fast)

    if args.validate:
        from validation.layer_validators import run_all_validations
        run_all_validations(Path(args.output_dir), definitions, pipeline.variants)

    if (summary['status'] == 'failed').any():
        sys.exit(1)


if __name__ == "__main__":
    main()
