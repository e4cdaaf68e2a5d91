"""
authorize_node.py
-----------------
US Core Conformance Engine — Authorization redirect nodes
---------------------------------------------------------
The two ends of the browser round trip.

authorize_node builds the authorization URL the tester's browser is sent
to and moves the session to ``wait``.  redirect_check_node runs when the
browser comes back: it validates the callback parameters before any
token request is made.  A callback whose ``state`` differs from the
session's nonce fails the session on the spot.

Key functions:
    new_state_nonce:     Random, URL-safe OAuth state value.
    build_authorize_url: Authorization endpoint + SMART query parameters.
    authorize_node:      init → wait.
    redirect_check_node: wait → exchanging, or → failed.

Project: US Core Conformance Engine
"""

import logging
import secrets

import httpx

from launch.state import ROUTE_CONTINUE, ROUTE_FAILED, LaunchState
from schemas import AuthSession, LaunchConfig, LaunchStatus, OutcomeKind, TestResult

logger = logging.getLogger(__name__)

REDIRECT_TEST_ID = "SLS-01"
REDIRECT_TEST_TITLE = "OAuth server redirects client browser to app redirect URI"


def new_state_nonce() -> str:
    return secrets.token_urlsafe(24)


def build_authorize_url(config: LaunchConfig, state: str) -> str:
    """Authorization endpoint URL carrying the SMART launch parameters."""
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scopes,
        "state": state,
        "aud": config.fhir_server,
    }
    return str(httpx.URL(config.authorize_endpoint).copy_merge_params(params))


def fail_session(session: AuthSession, reason: str) -> AuthSession:
    return session.model_copy(update={"status": LaunchStatus.FAILED, "failure_reason": reason})


def authorize_node(state: LaunchState) -> LaunchState:
    """
    Build the authorization redirect and park the session in ``wait``.

    Args:
        state: LaunchState holding a session in ``init``.

    Returns:
        LaunchState: Session now carries ``redirect_url``.
    """
    session = state["session"]
    url = build_authorize_url(session.config, session.state)
    logger.info("Launch: redirecting browser to %s", session.config.authorize_endpoint)
    return {
        **state,
        "session": session.model_copy(update={"status": LaunchStatus.WAIT, "redirect_url": url}),
    }


def _check_callback(session: AuthSession, params: dict) -> str:
    if params.get("error"):
        description = params.get("error_description", "")
        return f"Error returned from authorization server: {params['error']} {description}".strip()
    returned = params.get("state")
    if not returned:
        return "No state parameter was returned in the redirect."
    if returned != session.state:
        return f"State provided in redirect ({returned}) does not match expected state ({session.state})."
    if not params.get("code"):
        return "No code parameter was returned in the redirect."
    return ""


def redirect_check_node(state: LaunchState) -> LaunchState:
    """
    Validate the redirect before anything is sent to the token endpoint.

    Args:
        state: LaunchState with ``callback_params`` set.

    Returns:
        LaunchState: routing_decision "continue" with the session in
        ``exchanging``, or "failed" with the session failed.
    """
    session = state["session"]
    problem = _check_callback(session, state["callback_params"])
    if problem:
        logger.warning("Launch: redirect rejected for state %s: %s", session.state, problem)
        result = TestResult(id=REDIRECT_TEST_ID, title=REDIRECT_TEST_TITLE, result=OutcomeKind.FAIL, message=problem)
        return {
            **state,
            "session": fail_session(session, problem),
            "test_results": state["test_results"] + [result],
            "routing_decision": ROUTE_FAILED,
        }

    result = TestResult(id=REDIRECT_TEST_ID, title=REDIRECT_TEST_TITLE, result=OutcomeKind.PASS)
    return {
        **state,
        "session": session.model_copy(update={"status": LaunchStatus.EXCHANGING}),
        "test_results": state["test_results"] + [result],
        "routing_decision": ROUTE_CONTINUE,
    }
