"""
state.py
--------
US Core Conformance Engine — LangGraph LaunchState schema
---------------------------------------------------------
Defines the LaunchState TypedDict that flows through every node of the
SMART standalone launch graphs.  Nodes read the AuthSession, record
TestResults and return an updated copy of the state; the AuthSession inside
is replaced, never mutated, so the persisted copy only changes when the
workflow saves it.

Key fields:
    session: The AuthSession being driven (status, nonce, token set).
    callback_params: Query parameters of the browser redirect (resume only).
    test_results: TestResults recorded so far, in test id order.
    token_reply: Reply of the successful token exchange, read by the
        response checks.
    routing_decision: "continue" or "failed"; read by conditional edges.

Project: US Core Conformance Engine
"""

from typing import Dict, List, Optional, TypedDict

from fhir_client import Reply
from schemas import AuthSession, TestResult

ROUTE_CONTINUE = "continue"
ROUTE_FAILED = "failed"


class LaunchState(TypedDict):
    session: AuthSession
    callback_params: Dict[str, str]
    test_results: List[TestResult]
    token_reply: Optional[Reply]
    routing_decision: str


def create_launch_state(session: AuthSession, callback_params: Optional[Dict[str, str]] = None) -> LaunchState:
    """
    Create a fresh LaunchState for one graph invocation.

    Args:
        session:         Session to drive.
        callback_params: Redirect query parameters, when resuming.

    Returns:
        LaunchState: Initialized state dict ready for graph invocation.
    """
    return {
        "session": session,
        "callback_params": dict(callback_params or {}),
        "test_results": [],
        "token_reply": None,
        "routing_decision": ROUTE_CONTINUE,
    }
