"""
main.py
-------
US Core Conformance Engine — FastAPI server
-------------------------------------------
HTTP surface of the engine.  Hosts the OAuth redirect endpoint the
tester's browser returns to during a SMART standalone launch, and runs US
Core sequences on request.  Launch sessions are persisted in SQLite
(database.py) so the redirect can arrive in a different request, or a
different process, than the one that started the launch.

Endpoints:
    GET  /health                          — Service health check
    POST /launch                          — Start a standalone launch; returns the
                                            authorization URL and wait state
    GET  /redirect                        — OAuth callback; resumes the launch by state
    GET  /launch/{state}                  — Status of a stored launch
    POST /sequences/{resource_type}/run   — Run one US Core sequence

Project: US Core Conformance Engine
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ValidationError

import database
import uscore
from engine import SequenceConfigurationError
from launch import LaunchStateError, UnknownLaunchStateError, resume_by_state, start_launch
from runner import run_resource_sequences
from schemas import LaunchConfig, LaunchResult, SequenceResult
from settings import load_settings

_settings = load_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "US Core Conformance Engine"

# httpx client for token endpoint calls; None lets each launch create its own.
_token_http: Optional[httpx.Client] = None

# Ensure SQLite tables exist; idempotent.
database.init_db(_settings.launch_db_path)

# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Conformance tests for FHIR servers against US Core v3.1.0 and SMART App Launch.",
)


# ── Request / Response models ──────────────────────────────────────────────────

class LaunchRequest(BaseModel):
    """Request body for POST /launch; omitted fields come from settings."""
    config: Optional[LaunchConfig] = None


class LaunchStatusResponse(BaseModel):
    state: str
    status: str
    failure_reason: Optional[str] = None
    warnings: List[str] = []
    patient: Optional[str] = None


class SequenceRunRequest(BaseModel):
    """Request body for POST /sequences/{resource_type}/run."""
    fhir_server_url: Optional[str] = None
    patient_id: Optional[str] = None
    bearer_token: Optional[str] = None
    capabilities: Optional[Dict[str, List[str]]] = None


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health")
def health() -> dict:
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/launch", response_model=LaunchResult)
def launch(request: LaunchRequest) -> LaunchResult:
    try:
        config = request.config or _settings.launch_config()
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Launch is not configured: {exc.errors()[0]['msg']}")
    return start_launch(config, db_path=_settings.launch_db_path)


@app.get("/redirect", response_model=LaunchResult)
def redirect(request: Request) -> LaunchResult:
    params = dict(request.query_params)
    try:
        return resume_by_state(params, http=_token_http, db_path=_settings.launch_db_path)
    except UnknownLaunchStateError as exc:
        logger.warning("Redirect: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    except LaunchStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.get("/launch/{state}", response_model=LaunchStatusResponse)
def launch_status(state: str) -> LaunchStatusResponse:
    session = database.get_launch_session(state, _settings.launch_db_path)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No launch with state {state!r}")
    return LaunchStatusResponse(
        state=session.state,
        status=session.status.value,
        failure_reason=session.failure_reason,
        warnings=session.warnings,
        patient=session.token.patient if session.token else None,
    )


@app.post("/sequences/{resource_type}/run", response_model=SequenceResult)
def run_sequence_endpoint(resource_type: str, request: SequenceRunRequest) -> SequenceResult:
    if resource_type not in uscore.DEFINITIONS:
        raise HTTPException(status_code=404, detail=f"No sequence for resource type {resource_type}")
    overrides = {
        key: value
        for key, value in request.model_dump().items()
        if value is not None
    }
    settings = _settings.model_copy(update=overrides)
    if not settings.fhir_server_url:
        raise HTTPException(status_code=400, detail="fhir_server_url is required")
    try:
        return run_resource_sequences(settings, [resource_type])[0]
    except SequenceConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
