"""
token_node.py
-------------
US Core Conformance Engine — Token exchange nodes
-------------------------------------------------
Everything that talks to the token endpoint.

Client authentication:
    - Confidential client: ``Authorization: Basic base64(id:secret)``; the
      form body carries neither ``client_id`` nor ``client_secret``.
    - Public client: ``client_id`` in the form body, no Authorization header.
    ``LaunchConfig.token_params`` are added to every form body.  A request
    carrying credentials in both places is rejected before it goes out.

Node order on resume (after the redirect check):
    negative_exchange_node  SLS-02 invalid code must be refused (400/401)
                            SLS-03 ``INVALID_`` client id must get 401
    token_exchange_node     SLS-04 real exchange; anything but 200 fails the
                            session
    token_response_node     SLS-05 body: access_token, Bearer token_type,
                            scope (and patient for launch/patient)
                            SLS-06 Cache-Control no-store / Pragma no-cache,
                            warnings only

Key functions:
    build_token_request:       (headers, form) for a code exchange.
    check_client_credentials:  Duplicate-credential violation, or "".

Project: US Core Conformance Engine
"""

import base64
import logging
from typing import Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

import verification
from fhir_client import MalformedPayloadError, Reply
from launch.authorize_node import fail_session
from launch.state import ROUTE_CONTINUE, ROUTE_FAILED, LaunchState
from schemas import LaunchConfig, LaunchStatus, Outcome, OutcomeKind, TestResult, TokenSet

logger = logging.getLogger(__name__)

INVALID_PREFIX = "INVALID_"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

INVALID_CODE_TEST = ("SLS-02", "OAuth token exchange fails when supplied invalid code")
INVALID_CLIENT_TEST = ("SLS-03", "OAuth token exchange fails when supplied invalid client ID")
EXCHANGE_TEST = ("SLS-04", "OAuth token exchange request succeeds when supplied correct information")
BODY_TEST = ("SLS-05", "Token exchange response body contains required information encoded in JSON")
HEADERS_TEST = ("SLS-06", "Response includes correct HTTP Cache-Control and Pragma headers")


def _result(test: Tuple[str, str], kind: OutcomeKind, message: str = "", warnings: Optional[List[str]] = None) -> TestResult:
    return TestResult(id=test[0], title=test[1], result=kind, message=message, warnings=list(warnings or []))


def basic_auth_header(client_id: str, client_secret: str) -> str:
    token = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_token_request(
    config: LaunchConfig,
    code: str,
    client_id: Optional[str] = None,
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Headers and form body for an authorization-code exchange.

    Args:
        config:    Launch configuration.
        code:      Authorization code from the redirect.
        client_id: Override the configured client id (negative test).

    Returns:
        (headers, form)
    """
    identifier = client_id or config.client_id
    headers = {"Content-Type": FORM_CONTENT_TYPE, "Accept": "application/json"}
    form = {
        **config.token_params,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_uri,
    }
    if config.confidential:
        headers["Authorization"] = basic_auth_header(identifier, config.client_secret or "")
    else:
        form["client_id"] = identifier
    return headers, form


def check_client_credentials(headers: Dict[str, str], form: Dict[str, str]) -> str:
    """Return a violation message when credentials appear in header and body."""
    has_basic = any(
        key.lower() == "authorization" and value.startswith("Basic ")
        for key, value in headers.items()
    )
    if has_basic and ("client_id" in form or "client_secret" in form):
        return "Client credentials must not be sent in both the Authorization header and the request body."
    return ""


def _post(http: httpx.Client, url: str, headers: Dict[str, str], form: Dict[str, str]) -> Reply:
    response = http.post(url, data=form, headers=headers)
    logger.debug("Launch: POST %s -> %d", url, response.status_code)
    return Reply.from_response(response)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

def negative_exchange_node(state: LaunchState, http: httpx.Client) -> LaunchState:
    """
    Probe the token endpoint with a bad code and a bad client id.

    Failures here are recorded but do not end the launch.
    """
    config = state["session"].config
    code = state["callback_params"]["code"]
    probes = [
        (INVALID_CODE_TEST, build_token_request(config, INVALID_PREFIX + "CODE"),
         verification.assert_response_bad_or_unauthorized),
        (INVALID_CLIENT_TEST, build_token_request(config, code, client_id=INVALID_PREFIX + config.client_id),
         verification.assert_response_unauthorized),
    ]
    results = []
    for test, (headers, form), check in probes:
        problem = check_client_credentials(headers, form)
        if problem:
            results.append(_result(test, OutcomeKind.FAIL, problem))
            continue
        try:
            outcome = check(_post(http, config.token_endpoint, headers, form)) or Outcome.passed()
        except httpx.HTTPError as exc:
            logger.warning("Launch: %s request failed: %s", test[0], exc)
            outcome = Outcome.errored(f"Token request failed: {exc}")
        results.append(_result(test, outcome.kind, outcome.message))
    return {**state, "test_results": state["test_results"] + results}


def token_exchange_node(state: LaunchState, http: httpx.Client) -> LaunchState:
    """
    Exchange the authorization code for a token.

    Returns:
        LaunchState: ``token_reply`` set and routing "continue" on 200;
        otherwise the session is failed and routing is "failed".
    """
    session = state["session"]
    headers, form = build_token_request(session.config, state["callback_params"]["code"])
    problem = check_client_credentials(headers, form)
    reply = None
    if not problem:
        try:
            reply = _post(http, session.config.token_endpoint, headers, form)
        except httpx.HTTPError as exc:
            problem = f"Token request failed: {exc}"
    if reply is not None and reply.status_code != 200:
        problem = f"Bad response code: expected 200, but found {reply.status_code}"

    if problem:
        logger.warning("Launch: token exchange failed for state %s: %s", session.state, problem)
        return {
            **state,
            "session": fail_session(session, problem),
            "test_results": state["test_results"] + [_result(EXCHANGE_TEST, OutcomeKind.FAIL, problem)],
            "routing_decision": ROUTE_FAILED,
        }
    return {
        **state,
        "token_reply": reply,
        "test_results": state["test_results"] + [_result(EXCHANGE_TEST, OutcomeKind.PASS)],
        "routing_decision": ROUTE_CONTINUE,
    }


def _check_token_body(body: object, config: LaunchConfig) -> Tuple[str, List[str]]:
    if not isinstance(body, dict):
        return "Token response is not a JSON object.", []
    if not body.get("access_token"):
        return "Token response did not contain access_token as required.", []
    token_type = str(body.get("token_type") or "")
    if token_type.lower() != "bearer":
        return f"Token type must be Bearer, but found '{token_type}'.", []
    if not body.get("scope"):
        return "Token response did not contain scope as required.", []
    if config.requests_scope("launch/patient") and not body.get("patient"):
        return "No patient id provided in token exchange.", []

    warnings = []
    if body.get("expires_in") is None:
        warnings.append("Token response did not contain expires_in.")
    if config.requests_scope("offline_access") and not body.get("refresh_token"):
        warnings.append("Token response did not contain refresh_token although offline_access was requested.")
    return "", warnings


def _token_from_body(body: dict) -> Tuple[Optional[TokenSet], str]:
    """TokenSet from a body that passed _check_token_body, or the type problem."""
    try:
        token = TokenSet(
            access_token=body["access_token"],
            token_type=body.get("token_type", "Bearer"),
            scope=body.get("scope", ""),
            patient=body.get("patient"),
            refresh_token=body.get("refresh_token"),
            id_token=body.get("id_token"),
            expires_in=body.get("expires_in"),
        )
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "body"
        return None, f"Token response contained an invalid {field}: {error['msg']}."
    return token, ""


def _check_token_headers(reply: Reply) -> List[str]:
    warnings = []
    if "no-store" not in (reply.header("cache-control") or "").lower():
        warnings.append("Token response headers did not contain Cache-Control: no-store.")
    if "no-cache" not in (reply.header("pragma") or "").lower():
        warnings.append("Token response headers did not contain Pragma: no-cache.")
    return warnings


def token_response_node(state: LaunchState) -> LaunchState:
    """
    Check the token response and complete the session.

    A malformed body fails the session.  Missing cache headers only add
    warnings.
    """
    session = state["session"]
    reply = state["token_reply"]
    try:
        body = reply.resource
    except MalformedPayloadError:
        body = None
    problem, warnings = _check_token_body(body, session.config)
    token = None
    if not problem:
        token, problem = _token_from_body(body)
    if problem:
        logger.warning("Launch: token response rejected for state %s: %s", session.state, problem)
        return {
            **state,
            "session": fail_session(session, problem),
            "test_results": state["test_results"] + [_result(BODY_TEST, OutcomeKind.FAIL, problem)],
            "routing_decision": ROUTE_FAILED,
        }

    header_warnings = _check_token_headers(reply)
    logger.info("Launch: state %s completed (patient=%s)", session.state, token.patient)
    return {
        **state,
        "session": session.model_copy(update={
            "status": LaunchStatus.COMPLETED,
            "token": token,
            "warnings": list(session.warnings) + warnings + header_warnings,
        }),
        "test_results": state["test_results"] + [
            _result(BODY_TEST, OutcomeKind.PASS, warnings=warnings),
            _result(HEADERS_TEST, OutcomeKind.PASS, warnings=header_warnings),
        ],
        "routing_decision": ROUTE_CONTINUE,
    }
