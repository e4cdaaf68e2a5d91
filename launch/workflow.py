"""
workflow.py
-----------
US Core Conformance Engine — SMART standalone launch workflow
-------------------------------------------------------------
Assembles the LangGraph state machines of the standalone launch and
exposes start_launch() / resume_launch() as the entry points for main.py
and tests.

A launch cannot run as a single graph invocation: it stops while the
tester's browser visits the authorization server.  It is therefore split
into two graphs around that pause, with the AuthSession persisted in
between (database.py) under its state nonce.

Graph topology:
    start:   authorize → END                          (init → wait)
    resume:  redirect_check → (failed → END; else → negative_exchange)
             negative_exchange → token_exchange
             token_exchange → (failed → END; else → token_response)
             token_response → END                     (→ completed)

Key functions:
    start_launch:         New session, authorization URL, result "wait".
    resume_launch:        Drive a waiting session with the callback params.
    resume_by_state:      Look the session up by the callback's state nonce.
    context_from_session: RunContext for US Core sequences after a launch.

Project: US Core Conformance Engine
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import httpx
from langgraph.graph import END, StateGraph
from langsmith import traceable

import database
from engine import RunContext, create_run_context
from launch.authorize_node import authorize_node, new_state_nonce, redirect_check_node
from launch.state import ROUTE_FAILED, LaunchState, create_launch_state
from launch.token_node import negative_exchange_node, token_exchange_node, token_response_node
from schemas import AuthSession, LaunchConfig, LaunchResult, LaunchStatus, OutcomeKind

logger = logging.getLogger(__name__)

WAIT_AT_ENDPOINT = "redirect"
_DEFAULT_TIMEOUT_S = 30.0

PathLike = Union[str, Path]


class UnknownLaunchStateError(Exception):
    """Raised when a callback's state nonce matches no stored session."""


class LaunchStateError(Exception):
    """Raised when resuming a session that is not waiting for a redirect."""


# ── Graphs ───────────────────────────────────────────────────────────────────

def _route(state: LaunchState) -> str:
    return "end" if state["routing_decision"] == ROUTE_FAILED else "next"


def _build_start_graph():
    graph = StateGraph(LaunchState)
    graph.add_node("authorize", authorize_node)
    graph.set_entry_point("authorize")
    graph.add_edge("authorize", END)
    return graph.compile()


def _build_resume_graph(http: httpx.Client):
    """Compile the resume graph with token-endpoint nodes bound to ``http``."""

    def negative_exchange(state: LaunchState) -> LaunchState:
        return negative_exchange_node(state, http)

    def token_exchange(state: LaunchState) -> LaunchState:
        return token_exchange_node(state, http)

    graph = StateGraph(LaunchState)
    graph.add_node("redirect_check", redirect_check_node)
    graph.add_node("negative_exchange", negative_exchange)
    graph.add_node("token_exchange", token_exchange)
    graph.add_node("token_response", token_response_node)

    graph.set_entry_point("redirect_check")
    graph.add_conditional_edges("redirect_check", _route, {"next": "negative_exchange", "end": END})
    graph.add_edge("negative_exchange", "token_exchange")
    graph.add_conditional_edges("token_exchange", _route, {"next": "token_response", "end": END})
    graph.add_edge("token_response", END)
    return graph.compile()


# ── Entry points ─────────────────────────────────────────────────────────────

def _launch_result(state: LaunchState) -> LaunchResult:
    session = state["session"]
    results = state["test_results"]
    if session.status == LaunchStatus.WAIT:
        verdict = "wait"
    elif session.status == LaunchStatus.COMPLETED and not any(
        item.result in (OutcomeKind.FAIL, OutcomeKind.ERROR) for item in results
    ):
        verdict = "pass"
    else:
        verdict = "fail"
    return LaunchResult(
        state=verdict,
        redirect_url=session.redirect_url if verdict == "wait" else None,
        wait_at=WAIT_AT_ENDPOINT if verdict == "wait" else None,
        test_results=results,
        session=session,
    )


@traceable(name="start_launch")
def start_launch(
    config: LaunchConfig,
    *,
    db_path: Optional[PathLike] = None,
    persist: bool = True,
) -> LaunchResult:
    """
    Begin a standalone launch.

    Args:
        config:  Client and endpoint configuration.
        db_path: Session store location override.
        persist: Save the session so the callback can find it.

    Returns:
        LaunchResult: state "wait", the authorization URL to send the
        browser to, and ``wait_at`` naming the callback endpoint.
    """
    session = AuthSession(state=new_state_nonce(), config=config)
    final = _build_start_graph().invoke(create_launch_state(session))
    if persist:
        final["session"] = database.save_launch_session(final["session"], db_path)
    logger.info("Launch: started state=%s client=%s", session.state, config.client_id)
    return _launch_result(final)


@traceable(name="resume_launch")
def resume_launch(
    session: AuthSession,
    callback_params: Dict[str, str],
    *,
    http: Optional[httpx.Client] = None,
    db_path: Optional[PathLike] = None,
    persist: bool = True,
) -> LaunchResult:
    """
    Resume a waiting launch from the browser callback.

    Args:
        session:         Session in ``wait``.
        callback_params: Query parameters the browser arrived with.
        http:            httpx client for the token endpoint; one is created
                         (and closed) when omitted.
        db_path:         Session store location override.
        persist:         Save the terminal session.

    Returns:
        LaunchResult: "pass" or "fail" with one TestResult per step run.

    Raises:
        LaunchStateError: if the session is not waiting for a redirect.
    """
    if session.status != LaunchStatus.WAIT:
        raise LaunchStateError(
            f"Launch {session.state} is {session.status.value}, not waiting for a redirect"
        )
    owns_http = http is None
    client = http or httpx.Client(timeout=_DEFAULT_TIMEOUT_S)
    try:
        final = _build_resume_graph(client).invoke(create_launch_state(session, callback_params))
    finally:
        if owns_http:
            client.close()
    if persist:
        final["session"] = database.save_launch_session(final["session"], db_path)
    logger.info("Launch: state=%s finished as %s", session.state, final["session"].status.value)
    return _launch_result(final)


def resume_by_state(
    callback_params: Dict[str, str],
    *,
    http: Optional[httpx.Client] = None,
    db_path: Optional[PathLike] = None,
) -> LaunchResult:
    """
    Resume the launch the callback belongs to, found by its state nonce.

    Raises:
        UnknownLaunchStateError: if no stored session has that state.
        LaunchStateError: if that session is not waiting for a redirect.
    """
    session = database.get_launch_session(callback_params.get("state"), db_path)
    if session is None:
        raise UnknownLaunchStateError(f"No launch is waiting for state {callback_params.get('state')!r}")
    return resume_launch(session, callback_params, http=http, db_path=db_path)


def context_from_session(session: AuthSession) -> RunContext:
    """
    RunContext for US Core sequences from a completed launch.

    Raises:
        LaunchStateError: if the session holds no token.
    """
    if session.status != LaunchStatus.COMPLETED or session.token is None:
        raise LaunchStateError(f"Launch {session.state} has not completed")
    return create_run_context(patient_id=session.token.patient or "", bearer_token=session.token.access_token)
