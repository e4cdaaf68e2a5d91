"""
schemas.py
----------
US Core Conformance Engine — Pydantic Data Contracts
----------------------------------------------------
Pydantic v2 models shared by the execution engine, the launch state
machine, the session store and the FastAPI layer.

Outcome policy
--------------
Every test step returns exactly one Outcome.  Checks never raise to signal
a failed assertion: a verification helper returns ``None`` when satisfied
and the Outcome to report otherwise, and the step returns it unchanged.
Only genuine faults (network errors, malformed payloads, runaway
pagination) raise, and the engine turns those into ``error`` outcomes.

Public API
----------
    OutcomeKind       pass / fail / skip / omit / error
    Outcome           Verdict of one step, with message and warnings.
    TestResult        Produced result of one test case.
    SequenceResult    Produced result of one sequence run.
    SearchResultSet   Resources aggregated over every page of a search.
    LaunchConfig      Client and endpoint configuration of a SMART launch.
    LaunchStatus      init / wait / exchanging / completed / failed
    TokenSet          Fields taken from a successful token response.
    AuthSession       Persisted state of one standalone launch.
    LaunchResult      Produced result of start/resume of a launch.

Project: US Core Conformance Engine
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Outcomes and results
# ---------------------------------------------------------------------------

class OutcomeKind(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    OMIT = "omit"
    ERROR = "error"


class Outcome(BaseModel):
    """Verdict of a single test step."""

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    message: str = ""
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def passed(cls, message: str = "") -> "Outcome":
        return cls(kind=OutcomeKind.PASS, message=message)

    @classmethod
    def failed(cls, message: str) -> "Outcome":
        return cls(kind=OutcomeKind.FAIL, message=message)

    @classmethod
    def skipped(cls, message: str) -> "Outcome":
        return cls(kind=OutcomeKind.SKIP, message=message)

    @classmethod
    def omitted(cls, message: str) -> "Outcome":
        return cls(kind=OutcomeKind.OMIT, message=message)

    @classmethod
    def errored(cls, message: str) -> "Outcome":
        return cls(kind=OutcomeKind.ERROR, message=message)

    def with_warnings(self, warnings: List[str]) -> "Outcome":
        """Return a copy carrying ``warnings`` after any already present."""
        if not warnings:
            return self
        return self.model_copy(update={"warnings": list(self.warnings) + list(warnings)})


class TestResult(BaseModel):
    """Result of one test case as handed to callers and reports."""

    __test__ = False  # not a pytest test class

    id: str
    title: str
    result: OutcomeKind
    message: str = ""
    warnings: List[str] = Field(default_factory=list)
    optional: bool = False


class SequenceResult(BaseModel):
    """Result of one sequence run; ``result`` is the sequence verdict."""

    name: str
    resource_type: str
    result: OutcomeKind
    test_results: List[TestResult] = Field(default_factory=list)
    started_at: str = Field(default_factory=_utcnow)

    def counts(self) -> Dict[str, int]:
        tally = {kind.value: 0 for kind in OutcomeKind}
        for item in self.test_results:
            tally[item.result.value] += 1
        return tally


class SearchResultSet(BaseModel):
    """Every resource returned by a search, across all pages, in page order."""

    resource_type: str
    params: Dict[str, str] = Field(default_factory=dict)
    resources: List[Dict[str, Any]] = Field(default_factory=list)
    page_count: int = 1


# ---------------------------------------------------------------------------
# SMART standalone launch
# ---------------------------------------------------------------------------

class LaunchConfig(BaseModel):
    """
    Client registration and server coordinates for a standalone launch.

    ``confidential`` clients authenticate to the token endpoint with an HTTP
    Basic header built from ``client_id:client_secret``; public clients send
    ``client_id`` in the form body instead.

    ``token_params`` are extra form fields some servers expect on the code
    exchange, e.g. ``{"aud": ...}``.
    """

    client_id: str
    client_secret: Optional[str] = None
    confidential: bool = False
    authorize_endpoint: str
    token_endpoint: str
    redirect_uri: str
    fhir_server: str
    scopes: str = "launch/patient openid fhirUser offline_access patient/*.read"
    token_params: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _secret_for_confidential(self) -> "LaunchConfig":
        if self.confidential and not self.client_secret:
            raise ValueError("a confidential client needs a client_secret")
        return self

    def requests_scope(self, scope: str) -> bool:
        return scope in self.scopes.split()


class LaunchStatus(str, Enum):
    INIT = "init"
    WAIT = "wait"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"


class TokenSet(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    scope: str = ""
    patient: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
    received_at: str = Field(default_factory=_utcnow)


class AuthSession(BaseModel):
    """
    One standalone launch, persisted across the browser redirect.

    Correlation between the authorization redirect and the callback relies
    solely on ``state``.  A session in ``completed`` or ``failed`` is
    terminal.
    """

    state: str
    config: LaunchConfig
    status: LaunchStatus = LaunchStatus.INIT
    redirect_url: Optional[str] = None
    token: Optional[TokenSet] = None
    failure_reason: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=_utcnow)
    updated_at: str = Field(default_factory=_utcnow)


class LaunchResult(BaseModel):
    """
    Produced result of the launch sequence.

    ``state`` is ``wait`` while the browser is away, then ``pass`` or
    ``fail``.  ``wait_at`` names the endpoint the callback must hit.
    """

    state: str
    redirect_url: Optional[str] = None
    wait_at: Optional[str] = None
    test_results: List[TestResult] = Field(default_factory=list)
    session: AuthSession
