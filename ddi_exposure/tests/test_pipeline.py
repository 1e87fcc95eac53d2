# tests/test_pipeline.py
"""Tests for the end-to-end DDIExposurePipeline."""

import pytest
import pandas as pd
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))


DRUG_LISTS = {
    'opioid': {'drugs': [
        {'drug_name': 'OXYCODONE HCL', 'core_drug': 'OXYCODONE', 'drug_class': 'opioid'},
        {'drug_name': 'HYDROCODONE BITARTRATE', 'core_drug': 'HYDROCODONE', 'drug_class': 'opioid'},
    ]},
    'benzodiazepine': {'drugs': [
        {'drug_name': 'LORAZEPAM', 'core_drug': 'LORAZEPAM', 'drug_class': 'benzodiazepine'},
    ]},
}


def make_definitions(*extra):
    from config.ddi_definitions import parse_definitions

    raw = [{'ddi_id': 'opioid_benzo', 'components': [{'list_id': 'opioid'}, {'list_id': 'benzodiazepine'}]}]
    return parse_definitions({'definitions': raw + list(extra)})


@pytest.fixture
def dispensing():
    return pd.DataFrame({
        'bene_id': ['B1', 'B1', 'B2', 'B3'],
        'drug_name': ['OXYCODONE HCL', 'LORAZEPAM', 'HYDROCODONE BITARTRATE/ACETAMINOPHEN', 'LORAZEPAM'],
        'fill_date': ['2020-01-10', '2020-01-15', '2020-02-01', '2020-02-01'],
        'days_supply': [11, 11, 30, 30],
    })


@pytest.fixture
def stays():
    return pd.DataFrame({
        'bene_id': ['B1', 'B2', 'B3'],
        'stay_start': ['2020-01-01', '2020-01-01', '2020-01-01'],
        'stay_end': ['2020-03-01', '2020-03-01', '2020-03-01'],
    })


class TestPipelineRun:
    """Test a full run over in-memory inputs."""

    def test_run_definition(self, dispensing, stays, tmp_path):
        """Primary and stability exposures for one beneficiary."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(), output_dir=tmp_path)
        outputs = pipeline.run_definition(pipeline.definitions[0])

        primary = outputs['primary']
        assert primary['bene_id'].tolist() == ['B1']
        assert (primary.iloc[0]['start_date'], primary.iloc[0]['end_date']) == (
            pd.Timestamp('2020-01-15'), pd.Timestamp('2020-01-20'))
        assert primary.iloc[0]['days_with_ddi'] == 6

        stability = outputs['stability']
        assert stability.iloc[0]['days_with_ddi'] == 1

    def test_run_writes_outputs(self, dispensing, stays, tmp_path):
        """One exposure table per variant plus the run summary."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(), output_dir=tmp_path)
        summary = pipeline.run(n_jobs=1)

        assert summary['status'].tolist() == ['succeeded']
        assert summary.iloc[0]['primary_n_benes_exposed'] == 1
        assert (tmp_path / "ddi_exposure_opioid_benzo_primary.parquet").exists()
        assert (tmp_path / "ddi_exposure_opioid_benzo_stability.parquet").exists()
        assert (tmp_path / "run_summary.parquet").exists()

        saved = pd.read_parquet(tmp_path / "ddi_exposure_opioid_benzo_primary.parquet")
        assert saved['days_with_ddi'].tolist() == [6]

    def test_single_variant(self, dispensing, stays, tmp_path):
        """Only the requested variants are written."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(
            dispensing, stays, DRUG_LISTS, make_definitions(),
            output_dir=tmp_path, variants=['primary'],
        )
        pipeline.run(n_jobs=1)

        assert (tmp_path / "ddi_exposure_opioid_benzo_primary.parquet").exists()
        assert not (tmp_path / "ddi_exposure_opioid_benzo_stability.parquet").exists()

    def test_unknown_variant(self, dispensing, stays, tmp_path):
        """Variants are checked at construction."""
        from pipeline import build_pipeline

        with pytest.raises(ValueError, match="Unknown variants"):
            build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(), variants=['loose'])

    def test_save_intermediates(self, dispensing, stays, tmp_path):
        """Overlaps and component episodes are written when requested."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(
            dispensing, stays, DRUG_LISTS, make_definitions(),
            output_dir=tmp_path / "gold", save_intermediates=True, intermediate_dir=tmp_path / "silver",
        )
        pipeline.run(n_jobs=1)

        overlaps = pd.read_parquet(tmp_path / "silver" / "overlaps" / "overlaps_opioid_benzo.parquet")
        assert len(overlaps) == 1
        assert len(list((tmp_path / "silver" / "episodes").glob("*.parquet"))) == 2

    def test_validate_written_outputs(self, dispensing, stays, tmp_path):
        """Validation covers episode and overlap intermediates next to exposures."""
        from pipeline import build_pipeline
        from validation.layer_validators import run_all_validations

        pipeline = build_pipeline(
            dispensing, stays, DRUG_LISTS, make_definitions(),
            output_dir=tmp_path / "gold", save_intermediates=True, intermediate_dir=tmp_path / "silver",
        )
        pipeline.run(n_jobs=1)

        results = run_all_validations(
            tmp_path / "gold", pipeline.definitions, pipeline.variants, tmp_path / "silver",
        )

        names = [r.name for r in results]
        assert names.count("Drug Episodes") == 2
        assert names.count("Stay-Clipped Episodes") == 2
        assert all(r.ok for r in results)

    def test_no_exposure(self, dispensing, stays, tmp_path):
        """A definition nobody is exposed to yields empty tables."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(
            dispensing[dispensing['bene_id'] != 'B1'], stays, DRUG_LISTS, make_definitions(),
            output_dir=tmp_path,
        )
        summary = pipeline.run(n_jobs=1)

        assert summary['status'].tolist() == ['succeeded']
        assert summary.iloc[0]['n_overlaps'] == 0
        assert summary.iloc[0]['primary_n_benes_exposed'] == 0


class TestFailureIsolation:
    """A failing definition does not stop the batch."""

    BAD = {'ddi_id': 'opioid_statin', 'components': [{'list_id': 'opioid'}, {'list_id': 'statin'}]}

    def test_failed_definition_reported(self, dispensing, stays, tmp_path):
        """The bad definition is marked failed; the good one completes."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(self.BAD), output_dir=tmp_path)
        summary = pipeline.run(n_jobs=1).set_index('ddi_id')

        assert summary.loc['opioid_benzo', 'status'] == 'succeeded'
        assert summary.loc['opioid_statin', 'status'] == 'failed'
        assert 'DefinitionConfigError' in summary.loc['opioid_statin', 'error']
        assert not (tmp_path / "ddi_exposure_opioid_statin_primary.parquet").exists()

    def test_fail_fast(self, dispensing, stays, tmp_path):
        """fail_fast re-raises the first failure."""
        from config.ddi_definitions import DefinitionConfigError
        from pipeline import build_pipeline

        pipeline = build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(self.BAD), output_dir=tmp_path)
        with pytest.raises(DefinitionConfigError):
            pipeline.run(n_jobs=1, fail_fast=True)

    def test_parallel_run(self, dispensing, stays, tmp_path):
        """Worker processes give the same outcome as in-process runs."""
        from pipeline import build_pipeline

        pipeline = build_pipeline(dispensing, stays, DRUG_LISTS, make_definitions(self.BAD), output_dir=tmp_path)
        summary = pipeline.run(n_jobs=2)

        assert summary['ddi_id'].tolist() == ['opioid_benzo', 'opioid_statin']
        assert summary['status'].tolist() == ['succeeded', 'failed']

    def test_malformed_entry_does_not_block_others(self, dispensing, stays, tmp_path):
        """Entries rejected while parsing are reported; valid entries still run."""
        from config.ddi_definitions import collect_definitions
        from pipeline import build_pipeline

        good = {'ddi_id': 'opioid_benzo', 'components': [{'list_id': 'opioid'}, {'list_id': 'benzodiazepine'}]}
        bad = {'ddi_id': 'bad', 'components': [{'list_id': 'opioid'}, {'exclude_core_drugs': ['X']}]}
        definitions, errors = collect_definitions({'definitions': [good, bad, good]})

        pipeline = build_pipeline(
            dispensing, stays, DRUG_LISTS, definitions, output_dir=tmp_path, config_errors=errors,
        )
        summary = pipeline.run(n_jobs=1)

        assert summary['ddi_id'].tolist() == ['bad', 'opioid_benzo', 'opioid_benzo']
        assert summary['status'].tolist() == ['failed', 'failed', 'succeeded']
        assert 'without list_id' in summary.iloc[0]['error']
        assert 'duplicate' in summary.iloc[1]['error']
        assert (tmp_path / "ddi_exposure_opioid_benzo_primary.parquet").exists()

    def test_malformed_entry_fail_fast(self, dispensing, stays, tmp_path):
        """fail_fast raises a parse rejection before any definition runs."""
        from config.ddi_definitions import DefinitionConfigError, collect_definitions
        from pipeline import build_pipeline

        definitions, errors = collect_definitions({'definitions': [{'components': []}]})
        pipeline = build_pipeline(
            dispensing, stays, DRUG_LISTS, definitions, output_dir=tmp_path, config_errors=errors,
        )

        with pytest.raises(DefinitionConfigError, match=r"definitions\[0\]"):
            pipeline.run(n_jobs=1, fail_fast=True)


class TestInputHelpers:
    """Test definition selection and test-mode subsetting."""

    def test_select_definitions(self):
        from pipeline import select_definitions

        definitions = make_definitions(TestFailureIsolation.BAD)
        assert [d.ddi_id for d in select_definitions(definitions, ['opioid_statin'])] == ['opioid_statin']
        assert select_definitions(definitions, ['bad'], also_known=['bad']) == []
        assert len(select_definitions(definitions, None)) == 2
        with pytest.raises(ValueError, match="Unknown DDI definitions"):
            select_definitions(definitions, ['missing'])

    def test_limit_beneficiaries(self, dispensing, stays):
        from extractors.table_loader import prepare_dispensing, prepare_stays
        from pipeline import limit_beneficiaries

        d, s = limit_beneficiaries(prepare_dispensing(dispensing), prepare_stays(stays), 2)
        assert sorted(d['bene_id'].unique()) == ['B1', 'B2']
        assert sorted(s['bene_id']) == ['B1', 'B2']
