"""
test_careplan_sequence.py
-------------------------
US Core Conformance Engine — Test Suite for the US Core CarePlan sequence
-------------------------------------------------------------------------
Tests cover:
    - sequence shape: 12 tests, USCCP-01..12, optional searches
    - first search by patient + category=assess-plan
    - date searches re-run with gt / lt / le derived from the found period
    - a comparator result that does not match fails the search
    - unresolvable search values skip the search
    - full run against a conforming mock server
    - profile and must-support failures, base-spec rejection

Run:
    pytest tests/test_careplan_sequence.py -v --tb=short

Project: US Core Conformance Engine
"""

import copy
import json
import os
import sys

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import uscore
from capabilities import AllowAllCapabilities
from engine import create_run_context, run_sequence
from fhir_client import FHIRServerClient
from schemas import OutcomeKind

MOCK_DATA = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "mock_data")
BASE_URL = "http://www.example.com/fhir"
TOKEN = "ABC"
PATIENT_ID = "example"

with open(os.path.join(MOCK_DATA, "us_core_careplan.json"), encoding="utf-8") as _fh:
    CAREPLAN = json.load(_fh)


def _bundle(*resources):
    return {"resourceType": "Bundle", "type": "searchset", "entry": [{"resource": r} for r in resources]}


class MockServer:
    """
    Conforming CarePlan server.

    ``comparator_answer`` replaces the resource returned for searches whose
    date value carries a prefix.
    """

    def __init__(self, careplan=None, comparator_answer=None):
        self.careplan = careplan or copy.deepcopy(CAREPLAN)
        self.comparator_answer = comparator_answer
        self.searches = []

    def handler(self, request):
        if not request.headers.get("authorization"):
            return httpx.Response(401)
        path = request.url.path
        careplan_id = self.careplan["id"]
        if path == "/fhir/CarePlan":
            params = dict(request.url.params)
            self.searches.append(params)
            if params.get("_revinclude"):
                provenance = {"resourceType": "Provenance", "id": "prov-1"}
                return httpx.Response(200, json=_bundle(self.careplan, provenance))
            date = params.get("date", "")
            if self.comparator_answer is not None and date[:2].isalpha():
                return httpx.Response(200, json=_bundle(self.comparator_answer))
            return httpx.Response(200, json=_bundle(self.careplan))
        if path in (f"/fhir/CarePlan/{careplan_id}", f"/fhir/CarePlan/{careplan_id}/_history/2"):
            return httpx.Response(200, json=self.careplan)
        if path == f"/fhir/CarePlan/{careplan_id}/_history":
            return httpx.Response(200, json=_bundle(self.careplan))
        if path == "/fhir/Patient/example":
            return httpx.Response(200, json={"resourceType": "Patient", "id": "example"})
        return httpx.Response(404, json={"resourceType": "OperationOutcome"})

    def client(self):
        return FHIRServerClient(BASE_URL, transport=httpx.MockTransport(self.handler))


def _run(server):
    sequence = uscore.build_sequence("CarePlan")
    pairs = run_sequence(sequence, create_run_context(PATIENT_ID, TOKEN), server.client(), AllowAllCapabilities())
    return {case.id: outcome for case, outcome in pairs}


# ── Shape ──────────────────────────────────────────────────────────────────

def test_sequence_has_twelve_numbered_tests():
    sequence = uscore.build_sequence("CarePlan")
    assert sequence.name == "USCore310CareplanSequence"
    assert [case.id for case in sequence.test_cases] == [f"USCCP-{n:02d}" for n in range(1, 13)]
    optional = [case.id for case in sequence.test_cases if case.optional]
    assert optional == ["USCCP-03", "USCCP-04", "USCCP-05", "USCCP-07", "USCCP-08"]


def test_search_titles_name_their_parameters():
    titles = [case.title for case in uscore.build_sequence("CarePlan").test_cases]
    assert "patient+category" in titles[1]
    assert "patient+category+date" in titles[2]
    assert "patient+category+status+date" in titles[3]


# ── Searches ───────────────────────────────────────────────────────────────

def test_full_run_against_conforming_server_passes():
    results = _run(MockServer())
    assert {test_id: outcome.kind for test_id, outcome in results.items()} == {
        f"USCCP-{n:02d}": OutcomeKind.PASS for n in range(1, 13)
    }


def test_first_search_uses_assess_plan_category():
    server = MockServer()
    _run(server)
    assert server.searches[0] == {"patient": PATIENT_ID, "category": "assess-plan"}


def test_date_search_runs_each_comparator():
    server = MockServer()
    _run(server)
    dates = [params["date"] for params in server.searches if set(params) == {"patient", "category", "date"}]
    assert dates == ["2019-05-01", "gt2019-04-30", "lt2019-10-01", "le2019-09-30"]


def test_status_date_search_carries_status():
    server = MockServer()
    _run(server)
    searches = [params for params in server.searches if set(params) == {"patient", "category", "status", "date"}]
    assert len(searches) == 4
    assert all(params["status"] == "active" for params in searches)


def test_comparator_mismatch_fails_search():
    earlier = dict(copy.deepcopy(CAREPLAN), period={"start": "2018-01-01", "end": "2018-02-01"})
    results = _run(MockServer(comparator_answer=earlier))
    assert results["USCCP-03"].kind == OutcomeKind.FAIL
    assert results["USCCP-03"].message == "date on resource does not match date requested"
    assert results["USCCP-05"].kind == OutcomeKind.PASS


def test_missing_period_skips_date_searches():
    careplan = copy.deepcopy(CAREPLAN)
    del careplan["period"]
    results = _run(MockServer(careplan=careplan))
    assert results["USCCP-03"].kind == OutcomeKind.SKIP
    assert results["USCCP-03"].message == "Could not resolve date in given resource"
    assert results["USCCP-04"].kind == OutcomeKind.SKIP
    assert results["USCCP-05"].kind == OutcomeKind.PASS


def test_searches_skip_when_first_search_found_nothing():
    class EmptyServer(MockServer):
        def handler(self, request):
            if request.url.path == "/fhir/CarePlan" and request.headers.get("authorization"):
                return httpx.Response(200, json=_bundle())
            return super().handler(request)

    results = _run(EmptyServer())
    assert results["USCCP-02"].kind == OutcomeKind.SKIP
    for test_id in ("USCCP-03", "USCCP-04", "USCCP-05", "USCCP-06", "USCCP-09", "USCCP-12"):
        assert results[test_id].kind == OutcomeKind.SKIP


# ── Profile / must support ─────────────────────────────────────────────────

def test_missing_text_fails_profile_and_skips_must_support():
    careplan = copy.deepcopy(CAREPLAN)
    del careplan["text"]
    results = _run(MockServer(careplan=careplan))
    assert results["USCCP-02"].kind == OutcomeKind.PASS
    assert results["USCCP-10"].kind == OutcomeKind.FAIL
    assert "text: minimum required = 1, but only found 0" in results["USCCP-10"].message
    assert results["USCCP-11"].kind == OutcomeKind.SKIP
    assert results["USCCP-11"].message == (
        "Could not find CarePlan.text in any of the 1 provided CarePlan resource(s)"
    )


def test_base_spec_rejects_missing_intent():
    careplan = copy.deepcopy(CAREPLAN)
    del careplan["intent"]
    results = _run(MockServer(careplan=careplan))
    assert results["USCCP-02"].kind == OutcomeKind.FAIL
    assert results["USCCP-02"].message.startswith("Invalid ")
