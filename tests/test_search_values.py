"""
test_search_values.py
---------------------
US Core Conformance Engine — Test Suite for search_values.py
------------------------------------------------------------
Tests cover:
    - value_for_search_param for each element shape
    - parse_date_range precision handling
    - date_matches prefix semantics against dates and Periods
    - comparator_value keeps precision and still matches its source

Run:
    pytest tests/test_search_values.py -v --tb=short

Project: US Core Conformance Engine
"""

import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from search_values import (
    DateFormatError,
    comparator_value,
    date_matches,
    parse_date_range,
    shift_date,
    value_for_search_param,
)


# ── value_for_search_param ─────────────────────────────────────────────────

def test_codeable_concept_uses_first_code():
    concept = {"coding": [{"system": "http://x", "code": "assess-plan"}, {"code": "other"}]}
    assert value_for_search_param([concept]) == "assess-plan"


def test_codeable_concept_with_system():
    concept = {"coding": [{"system": "http://x", "code": "assess-plan"}]}
    assert value_for_search_param([concept], include_system=True) == "http://x|assess-plan"


def test_reference_identifier_and_scalars():
    assert value_for_search_param([{"reference": "Patient/85"}]) == "Patient/85"
    assert value_for_search_param([{"system": "urn:mrn", "value": "123"}]) == "123"
    assert value_for_search_param(["active"]) == "active"
    assert value_for_search_param([True]) == "true"


def test_period_prefers_start_then_end():
    assert value_for_search_param([{"start": "2019-05-01", "end": "2019-06-01"}]) == "2019-05-01"
    assert value_for_search_param([{"end": "2019-06-01"}]) == "2019-06-01"


def test_human_name_and_address():
    assert value_for_search_param([{"family": "Shaw", "given": ["Amy"]}]) == "Shaw"
    assert value_for_search_param([{"given": ["Amy"]}]) == "Amy"
    assert value_for_search_param([{"line": ["1 Main"], "city": "Boston"}]) == "Boston"


def test_skips_unusable_elements():
    assert value_for_search_param([{"coding": []}, {"coding": [{"code": "x"}]}]) == "x"
    assert value_for_search_param([]) is None
    assert value_for_search_param(iter([])) is None


def test_single_element_accepted():
    assert value_for_search_param({"reference": "Practitioner/1"}) == "Practitioner/1"


# ── parse_date_range ───────────────────────────────────────────────────────

def test_parse_year_month_day_ranges():
    start, end = parse_date_range("2019")
    assert start == datetime(2019, 1, 1, tzinfo=timezone.utc)
    assert end == datetime(2019, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

    start, end = parse_date_range("2019-02")
    assert end == datetime(2019, 2, 28, 23, 59, 59, tzinfo=timezone.utc)

    start, end = parse_date_range("2019-12-31")
    assert start == datetime(2019, 12, 31, tzinfo=timezone.utc)
    assert end == datetime(2019, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def test_parse_datetime_is_an_instant():
    start, end = parse_date_range("2019-05-01T10:00:00+02:00")
    assert start == end
    assert start == datetime(2019, 5, 1, 8, 0, tzinfo=timezone.utc)


def test_parse_rejects_garbage():
    with pytest.raises(DateFormatError):
        parse_date_range("May 1st")


# ── date_matches ───────────────────────────────────────────────────────────

def test_eq_is_interval_overlap():
    assert date_matches("2019-05-01", "2019-05-01") is True
    assert date_matches("2019-05", "2019-05-01") is True
    assert date_matches("2019-05-01", "2019") is True
    assert date_matches("2019-05-01", "2019-05-01T09:00:00Z") is True
    assert date_matches("2019-05", "2019-06-01") is False
    assert date_matches("2019-05-01", {"start": "2019-05-01T09:00:00Z", "end": "2019-05-01T10:00:00Z"}) is True
    assert date_matches("2019-05-02", {"start": "2019-04-01", "end": "2019-05-01"}) is False


def test_ne_is_complement_of_eq():
    assert date_matches("ne2019-05", "2019-05-01") is False
    assert date_matches("ne2019-05", "2019-06-01") is True


def test_prefixes_against_period():
    period = {"start": "2019-05-01", "end": "2019-09-30"}
    assert date_matches("gt2019-04-30", period) is True
    assert date_matches("gt2019-09-30", period) is False
    assert date_matches("lt2019-05-02", period) is True
    assert date_matches("lt2019-05-01", period) is False
    assert date_matches("le2019-05-01", period) is True
    assert date_matches("ge2019-09-30", period) is True
    assert date_matches("sa2019-04-01", period) is True
    assert date_matches("eb2019-10-01", period) is True
    assert date_matches("ne2020-01-01", period) is True


def test_open_period_is_unbounded():
    assert date_matches("gt2999-01-01", {"start": "2019-05-01"}) is True
    assert date_matches("lt1900-01-01", {"end": "2019-05-01"}) is True


def test_ap_uses_margin():
    now = datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert date_matches("ap2019-12-31", "2019-12-30", now=now) is True
    assert date_matches("ap2019-12-31", "2019-06-01", now=now) is False


# ── comparator_value ───────────────────────────────────────────────────────

def test_comparators_keep_precision_for_dates():
    assert comparator_value("gt", "2019-05-01") == "gt2019-04-30"
    assert comparator_value("lt", "2019-05-01") == "lt2019-05-02"
    assert comparator_value("le", "2019-05-01") == "le2019-05-01"


def test_comparators_keep_precision_for_partial_dates():
    assert comparator_value("gt", "2019") == "gt2018"
    assert comparator_value("lt", "2019-12") == "lt2020-01"


def test_comparators_keep_datetime_text():
    assert comparator_value("gt", "2019-03-01T10:15:00-05:00") == "gt2019-02-28T10:15:00-05:00"
    assert shift_date("2020-02-28T23:00:00Z", 1) == "2020-02-29T23:00:00Z"


def test_period_comparators_use_start_for_gt_and_end_for_lt():
    period = {"start": "2019-05-01", "end": "2019-09-30"}
    assert comparator_value("gt", period) == "gt2019-04-30"
    assert comparator_value("lt", period) == "lt2019-10-01"
    assert comparator_value("le", period) == "le2019-09-30"


@pytest.mark.parametrize("comparator", ["gt", "lt", "le", "ge"])
@pytest.mark.parametrize("baseline", [
    "2019-05-01",
    "2019-05-01T10:00:00Z",
    {"start": "2019-05-01", "end": "2019-09-30"},
    {"start": "2019-05-01T08:00:00Z"},
    {"end": "2019-09-30"},
])
def test_derived_value_still_matches_baseline(comparator, baseline):
    assert date_matches(comparator_value(comparator, baseline), baseline) is True


def test_unsupported_comparator():
    with pytest.raises(ValueError):
        comparator_value("sa", "2019-05-01")
