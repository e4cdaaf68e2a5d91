"""
test_engine.py
--------------
US Core Conformance Engine — Test Suite for engine.py
-----------------------------------------------------
Tests cover:
    - create_run_context defaults
    - capability gating skips without calling the step
    - credential gating omits token-only cases
    - exceptions become error outcomes; later cases still run
    - warnings are attached per case and drained
    - iter_sequence is lazy; missing requirements raise up front
    - sequence_verdict and build_sequence_result

Run:
    pytest tests/test_engine.py -v --tb=short

Project: US Core Conformance Engine
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from capabilities import AllowAllCapabilities, StaticCapabilities
from engine import (
    NO_TOKEN_MESSAGE,
    Sequence,
    SequenceConfigurationError,
    TestCase,
    build_sequence_result,
    create_run_context,
    iter_sequence,
    run_sequence,
    sequence_verdict,
)
from schemas import Outcome, OutcomeKind


def _sequence(*cases):
    return Sequence(
        name="DemoSequence",
        title="Demo",
        resource_type="CareTeam",
        test_cases=tuple(cases),
        test_id_prefix="DEMO",
    )


def _case(case_id, step, **kwargs):
    return TestCase(id=case_id, title=f"Case {case_id}", step=step, **kwargs)


def _passing(context, client):
    return Outcome.passed()


# ── RunContext ─────────────────────────────────────────────────────────────

def test_create_run_context_defaults():
    context = create_run_context("85", "ABC")
    assert context["patient_id"] == "85"
    assert context["bearer_token"] == "ABC"
    assert context["last_found_resources"] == []
    assert context["resources_found"] is False
    assert context["slots"] == {}
    assert context["warnings"] == []


def test_contexts_do_not_share_state():
    first = create_run_context("1")
    second = create_run_context("2")
    first["slots"]["x"] = 1
    assert second["slots"] == {}


# ── Gating ─────────────────────────────────────────────────────────────────

def test_unsupported_interaction_skips_without_running_step():
    calls = []

    def step(context, client):
        calls.append(1)
        return Outcome.passed()

    sequence = _sequence(_case("DEMO-01", step, required_interactions=("search",)))
    capabilities = StaticCapabilities({"CareTeam": ["read"]})
    [(case, outcome)] = run_sequence(sequence, create_run_context("85", "ABC"), None, capabilities)

    assert outcome.kind == OutcomeKind.SKIP
    assert outcome.message == (
        "This server does not support CareTeam search operation(s) according to conformance statement."
    )
    assert calls == []


def test_supported_interaction_alias_runs():
    sequence = _sequence(_case("DEMO-01", _passing, required_interactions=("search", "read")))
    capabilities = StaticCapabilities({"CareTeam": ["search-type", "read"]})
    [(_, outcome)] = run_sequence(sequence, create_run_context("85", "ABC"), None, capabilities)
    assert outcome.kind == OutcomeKind.PASS


@pytest.mark.parametrize("token", [None, "", "   "])
def test_blank_token_omits_token_cases(token):
    sequence = _sequence(_case("DEMO-01", _passing, requires_token=True), _case("DEMO-02", _passing))
    pairs = run_sequence(sequence, create_run_context("85", token), None, AllowAllCapabilities())
    assert pairs[0][1].kind == OutcomeKind.OMIT
    assert pairs[0][1].message == NO_TOKEN_MESSAGE
    assert pairs[1][1].kind == OutcomeKind.PASS


# ── Step execution ─────────────────────────────────────────────────────────

def test_exception_becomes_error_and_run_continues():
    def broken(context, client):
        raise RuntimeError("server exploded")

    def empty_message(context, client):
        raise KeyError()

    sequence = _sequence(
        _case("DEMO-01", broken), _case("DEMO-02", empty_message), _case("DEMO-03", _passing)
    )
    pairs = run_sequence(sequence, create_run_context("85", "ABC"), None, AllowAllCapabilities())

    assert [outcome.kind for _, outcome in pairs] == [OutcomeKind.ERROR, OutcomeKind.ERROR, OutcomeKind.PASS]
    assert pairs[0][1].message == "server exploded"
    assert pairs[1][1].message == "KeyError"


def test_none_from_step_counts_as_pass():
    sequence = _sequence(_case("DEMO-01", lambda context, client: None))
    [(_, outcome)] = run_sequence(sequence, create_run_context("85"), None, AllowAllCapabilities())
    assert outcome.kind == OutcomeKind.PASS


def test_context_flows_between_cases():
    def producer(context, client):
        context["slots"]["sample"] = {"id": "1"}
        return Outcome.passed()

    def consumer(context, client):
        if context["slots"].get("sample") is None:
            return Outcome.skipped("nothing to read")
        return Outcome.passed()

    sequence = _sequence(_case("DEMO-01", producer), _case("DEMO-02", consumer))
    pairs = run_sequence(sequence, create_run_context("85"), None, AllowAllCapabilities())
    assert pairs[1][1].kind == OutcomeKind.PASS


def test_warnings_attach_to_their_case_only():
    def warns(context, client):
        context["warnings"].append("heads up")
        return Outcome.passed()

    sequence = _sequence(_case("DEMO-01", warns), _case("DEMO-02", _passing))
    context = create_run_context("85")
    pairs = run_sequence(sequence, context, None, AllowAllCapabilities())
    assert pairs[0][1].warnings == ["heads up"]
    assert pairs[1][1].warnings == []
    assert context["warnings"] == []


def test_iter_sequence_is_lazy():
    calls = []

    def step(context, client):
        calls.append(1)
        return Outcome.passed()

    sequence = _sequence(_case("DEMO-01", step), _case("DEMO-02", step), _case("DEMO-03", step))
    iterator = iter_sequence(sequence, create_run_context("85"), None, AllowAllCapabilities())
    next(iterator)
    assert calls == [1]


def test_missing_patient_raises_before_running():
    calls = []

    def step(context, client):
        calls.append(1)
        return Outcome.passed()

    with pytest.raises(SequenceConfigurationError, match="patient_id"):
        run_sequence(_sequence(_case("DEMO-01", step)), create_run_context(""), None, AllowAllCapabilities())
    assert calls == []


# ── Verdict ────────────────────────────────────────────────────────────────

def _pairs(*kinds, optional=()):
    pairs = []
    for index, kind in enumerate(kinds):
        case = _case(f"DEMO-{index:02d}", _passing, optional=index in optional)
        pairs.append((case, Outcome(kind=kind)))
    return pairs


def test_verdict_rules():
    assert sequence_verdict(_pairs(OutcomeKind.PASS, OutcomeKind.SKIP)) == OutcomeKind.PASS
    assert sequence_verdict(_pairs(OutcomeKind.PASS, OutcomeKind.FAIL)) == OutcomeKind.FAIL
    assert sequence_verdict(_pairs(OutcomeKind.FAIL, OutcomeKind.ERROR)) == OutcomeKind.ERROR
    assert sequence_verdict(_pairs(OutcomeKind.SKIP, OutcomeKind.OMIT)) == OutcomeKind.SKIP


def test_optional_failures_do_not_fail_the_sequence():
    assert sequence_verdict(_pairs(OutcomeKind.PASS, OutcomeKind.FAIL, optional=(1,))) == OutcomeKind.PASS


def test_build_sequence_result():
    def warns(context, client):
        context["warnings"].append("w")
        return Outcome.failed("nope")

    sequence = _sequence(_case("DEMO-01", _passing), _case("DEMO-02", warns, optional=True))
    pairs = run_sequence(sequence, create_run_context("85"), None, AllowAllCapabilities())
    result = build_sequence_result(sequence, pairs)

    assert result.name == "DemoSequence"
    assert result.result == OutcomeKind.PASS
    assert [item.id for item in result.test_results] == ["DEMO-01", "DEMO-02"]
    assert result.test_results[1].message == "nope"
    assert result.test_results[1].warnings == ["w"]
    assert result.test_results[1].optional is True
    assert result.counts()["fail"] == 1
