# tests/test_component_extractor.py
"""Tests for drug component extraction and dispensing cleaning."""

import pytest
import pandas as pd
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.ddi_config import CombinationConfig, SupplyConfig
from config.ddi_definitions import ComponentSpec
from extractors.component_extractor import (
    clean_dispensing,
    extract_clean_component,
    extract_component_records,
    split_combination_name,
)
from extractors.table_loader import drug_list_frame, prepare_dispensing


DRUG_LISTS = {
    'opioid': {
        'drugs': [
            {'drug_name': 'HYDROCODONE BITARTRATE', 'core_drug': 'HYDROCODONE', 'drug_class': 'opioid'},
            {'drug_name': 'OXYCODONE HCL', 'core_drug': 'OXYCODONE', 'drug_class': 'opioid'},
            {'drug_name': 'CODEINE', 'core_drug': 'CODEINE', 'drug_class': 'opioid'},
        ],
    },
    'acetaminophen': {
        'drugs': [
            {'drug_name': 'ACETAMINOPHEN', 'core_drug': 'ACETAMINOPHEN', 'drug_class': 'analgesic'},
        ],
    },
    'antiplatelet': {
        'drugs': [
            {'drug_name': 'ASPIRIN', 'core_drug': 'ASPIRIN', 'drug_class': 'antiplatelet'},
            {'drug_name': 'CLOPIDOGREL BISULFATE', 'core_drug': 'CLOPIDOGREL', 'drug_class': 'antiplatelet'},
        ],
    },
    'anticholinergic': {
        'routes': ['ORAL'],
        'drugs': [
            {'drug_name': 'OXYBUTYNIN CHLORIDE', 'core_drug': 'OXYBUTYNIN', 'drug_class': 'antimuscarinic'},
        ],
    },
    'sulfonamide': {
        'drugs': [
            {'drug_name': 'SULFAMETHOXAZOLE/TRIMETHOPRIM', 'core_drug': 'SULFAMETHOXAZOLE/TRIMETHOPRIM',
             'drug_class': 'sulfonamide'},
        ],
    },
}


def make_dispensing(rows):
    """rows: (bene_id, drug_name, fill_date, days_supply[, route])"""
    df = pd.DataFrame(
        [r if len(r) == 5 else r + (None,) for r in rows],
        columns=['bene_id', 'drug_name', 'fill_date', 'days_supply', 'route'],
    )
    return prepare_dispensing(df)


class TestSplitCombinationName:
    """Tests for ingredient resolution of generic names."""

    def test_single_ingredient(self):
        """A name without the separator is its own ingredient."""
        assert split_combination_name('oxycodone  hcl') == ['OXYCODONE HCL']

    def test_combination_product(self):
        """A combination fans out into its ingredients."""
        assert split_combination_name('HYDROCODONE BITARTRATE/ACETAMINOPHEN') == [
            'HYDROCODONE BITARTRATE', 'ACETAMINOPHEN',
        ]

    def test_single_drug_literal_is_not_split(self):
        """Designated literals stay whole despite the separator."""
        assert split_combination_name('Sulfamethoxazole/Trimethoprim') == ['SULFAMETHOXAZOLE/TRIMETHOPRIM']

    def test_override_expands_product(self):
        """Overrides supply ingredients missing from the name."""
        assert split_combination_name('ACETAMINOPHEN WITH CODEINE') == ['ACETAMINOPHEN', 'CODEINE']

    def test_ingredient_limit(self):
        """At most max_ingredients parts are kept."""
        config = CombinationConfig(max_ingredients=2)
        assert split_combination_name('A/B/C', config) == ['A', 'B']

    def test_missing_name(self):
        """Missing names resolve to nothing."""
        assert split_combination_name(None) == []


class TestExtractComponentRecords:
    """Tests for selecting one component's dispensing records."""

    def test_combination_matches_both_lists(self):
        """A combination fill is attributed to each ingredient's list."""
        dispensing = make_dispensing([('B1', 'HYDROCODONE BITARTRATE/ACETAMINOPHEN', '2020-01-01', 30)])

        opioid = extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'opioid'))
        apap = extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'acetaminophen'))

        assert opioid['core_drug'].tolist() == ['HYDROCODONE']
        assert apap['core_drug'].tolist() == ['ACETAMINOPHEN']

    def test_override_matches_codeine(self):
        """The overridden product contributes a codeine record."""
        dispensing = make_dispensing([('B1', 'ACETAMINOPHEN WITH CODEINE', '2020-01-01', 10)])
        records = extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'opioid'))
        assert records['core_drug'].tolist() == ['CODEINE']

    def test_literal_matches_whole_name(self):
        """The sulfamethoxazole/trimethoprim literal matches its list entry."""
        dispensing = make_dispensing([('B1', 'SULFAMETHOXAZOLE/TRIMETHOPRIM', '2020-01-01', 7)])
        records = extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'sulfonamide'))
        assert len(records) == 1

    def test_unlisted_drugs_are_dropped(self):
        """Records outside the list are not selected."""
        dispensing = make_dispensing([
            ('B1', 'OXYCODONE HCL', '2020-01-01', 10),
            ('B1', 'METFORMIN HCL', '2020-01-01', 30),
            ('B2', None, '2020-01-01', 30),
        ])
        records = extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'opioid'))
        assert records['drug_name'].tolist() == ['OXYCODONE HCL']

    def test_excluded_core_drug(self):
        """Component exclusions remove drugs from that component only."""
        dispensing = make_dispensing([
            ('B1', 'ASPIRIN', '2020-01-01', 30),
            ('B1', 'CLOPIDOGREL BISULFATE', '2020-01-01', 30),
        ])
        drug_list = drug_list_frame(DRUG_LISTS, 'antiplatelet')

        everything = extract_component_records(dispensing, drug_list)
        no_aspirin = extract_component_records(
            dispensing, drug_list, component=ComponentSpec('antiplatelet', exclude_core_drugs=('ASPIRIN',)),
        )

        assert sorted(everything['core_drug']) == ['ASPIRIN', 'CLOPIDOGREL']
        assert no_aspirin['core_drug'].tolist() == ['CLOPIDOGREL']

    def test_route_filter_keeps_unknown_route(self):
        """Known non-matching routes are dropped; missing routes are kept."""
        dispensing = make_dispensing([
            ('B1', 'OXYBUTYNIN CHLORIDE', '2020-01-01', 30, 'oral'),
            ('B2', 'OXYBUTYNIN CHLORIDE', '2020-01-01', 30, 'TRANSDERMAL'),
            ('B3', 'OXYBUTYNIN CHLORIDE', '2020-01-01', 30, None),
        ])
        records = extract_component_records(
            dispensing, drug_list_frame(DRUG_LISTS, 'anticholinergic'), routes=['ORAL'],
        )
        assert sorted(records['bene_id']) == ['B1', 'B3']


class TestCleanDispensing:
    """Tests for days-supply and duplicate rules."""

    def _records(self, rows):
        dispensing = make_dispensing(rows)
        return extract_component_records(dispensing, drug_list_frame(DRUG_LISTS, 'opioid'))

    def test_non_positive_and_missing_supply_dropped(self):
        """Zero, negative and missing supplies are removed."""
        records = self._records([
            ('B1', 'OXYCODONE HCL', '2020-01-01', 0),
            ('B1', 'OXYCODONE HCL', '2020-01-02', -5),
            ('B1', 'OXYCODONE HCL', '2020-01-03', None),
            ('B1', 'OXYCODONE HCL', '2020-01-04', 10),
        ])
        cleaned = clean_dispensing(records)
        assert cleaned['days_supply'].tolist() == [10]

    def test_missing_fill_date_dropped(self):
        """Records without a parseable fill date are removed."""
        records = self._records([
            ('B1', 'OXYCODONE HCL', '2020-01-04', 10),
            ('B1', 'OXYCODONE HCL', 'not a date', 10),
        ])
        assert len(clean_dispensing(records)) == 1

    def test_missing_beneficiary_dropped(self):
        """Fills without a beneficiary are removed, not pooled together."""
        records = self._records([
            ('B1', 'OXYCODONE HCL', '2020-01-04', 10),
            (None, 'OXYCODONE HCL', '2020-01-04', 10),
            (None, 'OXYCODONE HCL', '2020-01-10', 10),
        ])
        cleaned = clean_dispensing(records)
        assert cleaned['bene_id'].tolist() == ['B1']

    def test_long_supply_truncated(self):
        """Supplies above the maximum are truncated, not dropped."""
        records = self._records([('B1', 'OXYCODONE HCL', '2020-01-01', 120)])
        assert clean_dispensing(records)['days_supply'].tolist() == [90]
        assert clean_dispensing(records, SupplyConfig(max_days_supply=30))['days_supply'].tolist() == [30]

    def test_same_day_duplicates_keep_longest(self):
        """Same beneficiary, drug and day collapse to the longest supply."""
        records = self._records([
            ('B1', 'OXYCODONE HCL', '2020-01-01', 10),
            ('B1', 'OXYCODONE HCL', '2020-01-01', 30),
            ('B1', 'HYDROCODONE BITARTRATE', '2020-01-01', 5),
        ])
        cleaned = clean_dispensing(records)
        assert len(cleaned) == 2
        assert cleaned.set_index('core_drug')['days_supply'].to_dict() == {'HYDROCODONE': 5, 'OXYCODONE': 30}

    def test_extract_clean_component(self):
        """Extraction and cleaning run together from the list definitions."""
        dispensing = make_dispensing([
            ('B1', 'ASPIRIN', '2020-01-01', 30),
            ('B1', 'CLOPIDOGREL BISULFATE', '2020-01-01', 0),
            ('B1', 'CLOPIDOGREL BISULFATE', '2020-02-01', 30),
        ])
        records = extract_clean_component(
            dispensing, DRUG_LISTS, ComponentSpec('antiplatelet', exclude_core_drugs=('ASPIRIN',)),
        )
        assert records['core_drug'].tolist() == ['CLOPIDOGREL']
        assert records['fill_date'].tolist() == [pd.Timestamp('2020-02-01')]
