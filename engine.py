"""
engine.py
---------
US Core Conformance Engine — Sequence execution engine
------------------------------------------------------
Runs the ordered test cases of a Sequence against one server, threading a
single RunContext from case to case.

Per test case:
    1. Capability gating: if the server does not declare every interaction
       the case needs, the case is skipped without touching the network.
    2. Credential gating: a case that needs a bearer token is omitted
       when the context holds none.
    3. The step runs and returns its Outcome.  Any exception escaping the
       step becomes an ``error`` outcome; the next case still runs.

Warnings that a step pushes onto ``context["warnings"]`` are attached to
that case's outcome and the buffer is cleared before the next case.

RunContext is owned by one run.  Steps publish data for later steps
through its fields and its ``slots`` dict; nothing else is shared.

Key functions:
    create_run_context:    Fresh RunContext with correct defaults.
    iter_sequence:         Lazily yield (TestCase, Outcome) pairs; stop
                           iterating to abandon a run and keep partials.
    run_sequence:          All pairs as a list.
    build_sequence_result: Pairs → SequenceResult contract.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypedDict

from langsmith import traceable

from capabilities import CapabilityLookup
from fhir_client import FHIRServerClient
from schemas import Outcome, OutcomeKind, SequenceResult, TestResult

logger = logging.getLogger(__name__)

NO_TOKEN_MESSAGE = "Do not test if no bearer token set"


class SequenceConfigurationError(Exception):
    """Raised when a sequence is started without the context it requires."""


class RunContext(TypedDict):
    patient_id: str
    bearer_token: Optional[str]
    last_found_resources: List[Dict[str, Any]]  # ordered; set by the first successful search
    resources_found: bool
    slots: Dict[str, Any]                       # named values passed between steps
    warnings: List[str]                         # drained by the engine after each case


def create_run_context(patient_id: str = "", bearer_token: Optional[str] = None) -> RunContext:
    """
    Create a fresh RunContext for one sequence run.

    Args:
        patient_id:   Patient whose data the searches target.
        bearer_token: Access token for authenticated requests.

    Returns:
        RunContext: Initialized context dict.
    """
    return {
        "patient_id": patient_id,
        "bearer_token": bearer_token,
        "last_found_resources": [],
        "resources_found": False,
        "slots": {},
        "warnings": [],
    }


StepFn = Callable[[RunContext, FHIRServerClient], Outcome]


@dataclass(frozen=True)
class TestCase:
    """One numbered check inside a sequence."""

    __test__ = False  # not a pytest test class

    id: str
    title: str
    step: StepFn
    description: str = ""
    link: str = ""
    versions: Tuple[str, ...] = ("r4",)
    optional: bool = False
    required_interactions: Tuple[str, ...] = ()
    requires_token: bool = False


@dataclass(frozen=True)
class Sequence:
    """An ordered list of test cases about one resource type."""

    name: str
    title: str
    resource_type: str
    test_cases: Tuple[TestCase, ...]
    test_id_prefix: str = ""
    description: str = ""
    requires: Tuple[str, ...] = ("patient_id",)


# ── Gating ───────────────────────────────────────────────────────────────────

def _capability_gate(
    case: TestCase,
    resource_type: str,
    capabilities: CapabilityLookup,
) -> Optional[Outcome]:
    if not case.required_interactions:
        return None
    if all(capabilities.supports(resource_type, code) for code in case.required_interactions):
        return None
    return Outcome.skipped(
        f"This server does not support {resource_type} {','.join(case.required_interactions)} "
        f"operation(s) according to conformance statement."
    )


def _credential_gate(case: TestCase, context: RunContext) -> Optional[Outcome]:
    if case.requires_token and not (context.get("bearer_token") or "").strip():
        return Outcome.omitted(NO_TOKEN_MESSAGE)
    return None


def _run_case(
    case: TestCase,
    sequence: Sequence,
    context: RunContext,
    client: FHIRServerClient,
    capabilities: CapabilityLookup,
) -> Outcome:
    gated = _capability_gate(case, sequence.resource_type, capabilities) or _credential_gate(case, context)
    if gated:
        return gated
    try:
        outcome = case.step(context, client)
    except Exception as exc:
        logger.exception("Engine: test %s raised", case.id)
        outcome = Outcome.errored(str(exc) or exc.__class__.__name__)
    if outcome is None:
        outcome = Outcome.passed()
    return outcome


# ── Execution ────────────────────────────────────────────────────────────────

def iter_sequence(
    sequence: Sequence,
    context: RunContext,
    client: FHIRServerClient,
    capabilities: CapabilityLookup,
) -> Iterator[Tuple[TestCase, Outcome]]:
    """
    Execute ``sequence`` case by case, yielding each result as it lands.

    Raises:
        SequenceConfigurationError: if a field named in
            ``sequence.requires`` is empty, before any case runs.
    """
    missing = [name for name in sequence.requires if not context.get(name)]
    if missing:
        raise SequenceConfigurationError(
            f"{sequence.name} requires {', '.join(missing)} to be set"
        )
    logger.info("Engine: running %s (%d tests)", sequence.name, len(sequence.test_cases))
    for case in sequence.test_cases:
        context["warnings"] = []
        outcome = _run_case(case, sequence, context, client, capabilities)
        outcome = outcome.with_warnings(context["warnings"])
        context["warnings"] = []
        logger.info("Engine: %s %s -> %s", case.id, case.title, outcome.kind.value)
        yield case, outcome


@traceable(name="run_sequence")
def run_sequence(
    sequence: Sequence,
    context: RunContext,
    client: FHIRServerClient,
    capabilities: CapabilityLookup,
) -> List[Tuple[TestCase, Outcome]]:
    """
    Execute every case of ``sequence`` in order.

    Args:
        sequence:     The sequence to run.
        context:      RunContext owned by this run; mutated by the steps.
        client:       Client for the server under test.
        capabilities: Capability lookup for gating.

    Returns:
        list: One (TestCase, Outcome) pair per case, in declaration order.
    """
    return list(iter_sequence(sequence, context, client, capabilities))


def sequence_verdict(pairs: List[Tuple[TestCase, Outcome]]) -> OutcomeKind:
    """error > fail among required cases > pass; all skip/omit → skip."""
    required = [outcome.kind for case, outcome in pairs if not case.optional]
    if OutcomeKind.ERROR in required:
        return OutcomeKind.ERROR
    if OutcomeKind.FAIL in required:
        return OutcomeKind.FAIL
    if any(outcome.kind == OutcomeKind.PASS for _, outcome in pairs):
        return OutcomeKind.PASS
    return OutcomeKind.SKIP


def to_test_result(case: TestCase, outcome: Outcome) -> TestResult:
    return TestResult(
        id=case.id,
        title=case.title,
        result=outcome.kind,
        message=outcome.message,
        warnings=list(outcome.warnings),
        optional=case.optional,
    )


def build_sequence_result(sequence: Sequence, pairs: List[Tuple[TestCase, Outcome]]) -> SequenceResult:
    return SequenceResult(
        name=sequence.name,
        resource_type=sequence.resource_type,
        result=sequence_verdict(pairs),
        test_results=[to_test_result(case, outcome) for case, outcome in pairs],
    )
