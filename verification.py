"""
verification.py
---------------
US Core Conformance Engine — Conformance verification layer
-----------------------------------------------------------
Checks applied to server replies and the resources inside them.  Every
check returns ``None`` when satisfied and the Outcome the step should
report otherwise, so a step reads as a chain of
``outcome = check(...); if outcome: return outcome``.  Checks never raise
for a failed assertion.

Search replies are checked in a fixed order (validate_search_reply):
    1. status is 200 or 201
    2. body is a Bundle
    3. the Bundle holds resources of the searched type (else skip)
    4. every resource passes the base-spec oracle
    5. every resource matches every search parameter sent

Per-parameter matching is declarative: a resource's search table maps
each parameter to an element path and a comparison kind.

Key functions:
    - assert_response_ok / assert_response_unauthorized / assert_bundle_response
    - validate_resource_item: one resource against one parameter value
    - validate_search_reply: the ordered search checks above
    - validate_read_reply / validate_vread_reply / validate_history_reply
    - validate_must_support: every must-support path seen at least once
    - validate_reference_resolutions: every local reference resolvable
    - validate_profile_conformance / validate_revinclude_reply

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from langsmith import traceable

import path_resolver
from bundles import bundle_entries
from fhir_client import FHIRServerClient, Reply
from resource_oracle import DEFAULT_ORACLE, ResourceOracle
from schemas import Outcome
from search_values import DateFormatError, date_matches

logger = logging.getLogger(__name__)

OK_CODES = (200, 201)


class ComparisonKind(str, Enum):
    TOKEN = "token"
    REFERENCE = "reference"
    DATE = "date"
    STRING = "string"


class SearchParam(NamedTuple):
    path: str
    kind: ComparisonKind
    target: Optional[str] = None


SearchTable = Mapping[str, SearchParam]


# ── Messages ─────────────────────────────────────────────────────────────────

def no_resources_available(resource_type: str) -> str:
    return f"No {resource_type} resources appear to be available. Please use patients with more information."


def no_resources_for_patient(resource_type: str) -> str:
    return f"No {resource_type} resources could be found for this patient. Please use patients with more information."


# ── Response shape ───────────────────────────────────────────────────────────

def assert_response_ok(
    reply: Reply,
    codes: Sequence[int] = OK_CODES,
    error_message: str = "",
) -> Optional[Outcome]:
    """Fail unless the status is one of ``codes``."""
    if reply.status_code in codes:
        return None
    expected = ", ".join(str(code) for code in codes)
    return Outcome.failed(
        f"Bad response code: expected {expected}, but found {reply.status_code}. {error_message}"
    )


def assert_response_unauthorized(reply: Reply) -> Optional[Outcome]:
    """Fail unless the server answered 401."""
    if reply.status_code == 401:
        return None
    return Outcome.failed(f"Bad response code: expected 401, but found {reply.status_code}")


def assert_response_bad_or_unauthorized(reply: Reply) -> Optional[Outcome]:
    """Fail unless the server answered 400 or 401."""
    if reply.status_code in (400, 401):
        return None
    return Outcome.failed(f"Bad response code: expected 400 or 401, but found {reply.status_code}")


def assert_bundle_response(reply: Reply) -> Optional[Outcome]:
    """Fail unless the body is a FHIR Bundle."""
    found = reply.resource_type
    if found == "Bundle":
        return None
    return Outcome.failed(f"Expected FHIR Bundle but found: {found or 'no resource'}")


def check_base_spec(
    resources: Iterable[Dict[str, Any]],
    oracle: ResourceOracle = DEFAULT_ORACLE,
) -> Optional[Outcome]:
    """Fail on the first base-spec violation found in ``resources``."""
    for resource in resources:
        violations = oracle.validate_against_base_spec(resource)
        if violations:
            first = violations[0]
            return Outcome.failed(f"Invalid {first.path}: {first.message}")
    return None


# ── Search parameter semantics ───────────────────────────────────────────────

def _token_matches(value: str, found: List[Any], param: SearchParam) -> bool:
    wanted = []
    for option in value.split(","):
        wanted.append(option.split("|", 1)[1] if "|" in option else option)
    return any(str(item) in wanted for item in found)


def _reference_matches(value: str, found: List[Any], param: SearchParam) -> bool:
    # only the bare id or <target>/<id>; other types with the same id do not match
    accepted = {value}
    if param.target:
        accepted.add(f"{param.target}/{value}")
    return any(str(item) in accepted for item in found)


def _date_matches(value: str, found: List[Any], param: SearchParam) -> bool:
    for item in found:
        try:
            if date_matches(value, item):
                return True
        except DateFormatError:
            logger.debug("Verification: unparseable date %r ignored", item)
    return False


def _string_matches(value: str, found: List[Any], param: SearchParam) -> bool:
    needle = value.lower()
    return any(str(item).lower().startswith(needle) for item in found)


_MATCHERS = {
    ComparisonKind.TOKEN: _token_matches,
    ComparisonKind.REFERENCE: _reference_matches,
    ComparisonKind.DATE: _date_matches,
    ComparisonKind.STRING: _string_matches,
}


def validate_resource_item(
    resource: Dict[str, Any],
    param: str,
    value: str,
    table: SearchTable,
) -> Optional[Outcome]:
    """
    Check that ``resource`` satisfies ``param=value``.

    Args:
        resource: Resource returned by the search.
        param:    Search parameter name as sent.
        value:    Value as sent (may carry a date prefix or ``system|``).
        table:    The resource type's ``{param: SearchParam}`` table.

    Returns:
        None on match; Fail otherwise.  Parameters absent from the table
        (``_count``, ``_revinclude``) are not checked.
    """
    spec = table.get(param)
    if spec is None:
        logger.debug("Verification: no search semantics for %s, not checked", param)
        return None
    found = list(path_resolver.resolve(resource, spec.path))
    if _MATCHERS[spec.kind](str(value), found, spec):
        return None
    return Outcome.failed(f"{param} on resource does not match {param} requested")


@traceable
def validate_search_reply(
    reply: Reply,
    resource_type: str,
    params: Mapping[str, str],
    table: SearchTable,
    oracle: ResourceOracle = DEFAULT_ORACLE,
) -> Outcome:
    """
    Apply the ordered search checks to a search reply.

    Returns:
        Outcome: pass when every check holds, else the first failing check.
    """
    outcome = assert_response_ok(reply) or assert_bundle_response(reply)
    if outcome:
        return outcome
    resources = bundle_entries(reply.resource, resource_type)
    if not resources:
        return Outcome.skipped(no_resources_available(resource_type))
    outcome = check_base_spec(resources, oracle)
    if outcome:
        return outcome
    for resource in resources:
        for param, value in params.items():
            outcome = validate_resource_item(resource, param, value, table)
            if outcome:
                return outcome
    return Outcome.passed()


# ── Single-resource interactions ─────────────────────────────────────────────

def _check_single(reply: Reply, resource_type: str, resource_id: Optional[str]) -> Optional[Outcome]:
    outcome = assert_response_ok(reply)
    if outcome:
        return outcome
    resource = reply.resource
    if not isinstance(resource, dict) or not resource:
        return Outcome.failed(f"Expected {resource_type} resource to be present.")
    if resource.get("resourceType") != resource_type:
        return Outcome.failed(f"Expected resource to be of type {resource_type}.")
    if resource_id is not None and resource.get("id") != resource_id:
        return Outcome.failed(
            f"Expected {resource_type} resource with id {resource_id}, but found {resource.get('id')}."
        )
    return None


def validate_read_reply(reply: Reply, resource_type: str, resource_id: Optional[str] = None) -> Optional[Outcome]:
    """Checks for a ``read``: ok status, body present, right type and id."""
    return _check_single(reply, resource_type, resource_id)


def validate_vread_reply(
    reply: Reply,
    resource_type: str,
    resource_id: Optional[str],
    version_id: str,
) -> Optional[Outcome]:
    """Checks for a ``vread``: as for read, plus the requested version."""
    outcome = _check_single(reply, resource_type, resource_id)
    if outcome:
        return outcome
    found = path_resolver.first(reply.resource, "meta.versionId")
    if found is not None and str(found) != str(version_id):
        return Outcome.failed(f"Expected {resource_type} resource with version {version_id}, but found {found}.")
    return None


def validate_history_reply(reply: Reply, resource_type: str) -> Optional[Outcome]:
    """Checks for a ``history``: a non-empty Bundle of the resource's versions."""
    outcome = assert_response_ok(reply)
    if outcome:
        return outcome
    if not reply.resource:
        return Outcome.failed(f"Expected {resource_type} history Bundle to be present.")
    outcome = assert_bundle_response(reply)
    if outcome:
        return outcome
    entries = bundle_entries(reply.resource)
    if not entries:
        return Outcome.failed(f"No {resource_type} history entries were returned.")
    for entry in entries:
        if entry.get("resourceType") != resource_type:
            return Outcome.failed(f"Expected resource to be of type {resource_type}.")
    return None


# ── Coverage and integrity ───────────────────────────────────────────────────

def _element_path(path: str, resource_type: str) -> str:
    prefix = resource_type + "."
    return path[len(prefix):] if path.startswith(prefix) else path


def validate_must_support(
    paths: Sequence[str],
    resources: Sequence[Dict[str, Any]],
    resource_type: str,
) -> Optional[Outcome]:
    """
    Skip unless every must-support path is populated in at least one resource.

    Paths are checked in the order given and the first missing one is
    reported.  Paths may carry the resource type prefix
    (``CarePlan.text.status``); the message reports them as given.
    """
    if not resources:
        return Outcome.skipped(no_resources_available(resource_type))
    for path in paths:
        element = _element_path(path, resource_type)
        if not any(path_resolver.exists(resource, element) for resource in resources):
            return Outcome.skipped(
                f"Could not find {path} in any of the {len(resources)} provided {resource_type} resource(s)"
            )
    return None


def _references(node: Any) -> Iterable[str]:
    if isinstance(node, list):
        for item in node:
            yield from _references(item)
    elif isinstance(node, dict):
        reference = node.get("reference")
        if isinstance(reference, str) and reference:
            yield reference
        for key, value in node.items():
            if key != "contained":
                yield from _references(value)


def _split_reference(reference: str, base_url: str) -> Optional[Tuple[str, str, Optional[str]]]:
    relative = reference[len(base_url) + 1:] if reference.startswith(base_url + "/") else reference
    parts = relative.split("/")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1], None
    if len(parts) == 4 and parts[2] == "_history" and all(parts):
        return parts[0], parts[1], parts[3]
    return None


@traceable
def validate_reference_resolutions(
    resource: Dict[str, Any],
    client: FHIRServerClient,
    bearer_token: Optional[str] = None,
    resolved: Optional[Dict[str, Optional[str]]] = None,
) -> Outcome:
    """
    Read every local reference found in ``resource``.

    Contained (``#id``) references are ignored; references to other servers
    are not followed and come back as warnings.

    Args:
        resource:     Resource whose references are followed.
        client:       Client for the server under test.
        bearer_token: Token for the reads.
        resolved:     Per-run cache ``{reference: problem or None}``; updated.

    Returns:
        Outcome: pass (possibly with warnings) or fail listing each problem.
    """
    cache = resolved if resolved is not None else {}
    problems: List[str] = []
    warnings: List[str] = []
    for reference in dict.fromkeys(_references(resource)):
        if reference.startswith("#"):
            continue
        if not client.is_local(reference):
            warnings.append(f"Skipping external reference {reference}")
            continue
        if reference not in cache:
            cache[reference] = _resolve_one(reference, client, bearer_token)
        if cache[reference]:
            problems.append(cache[reference])
    if problems:
        return Outcome.failed(
            "The following references could not be resolved: " + "; ".join(problems)
        ).with_warnings(warnings)
    return Outcome.passed().with_warnings(warnings)


def _resolve_one(reference: str, client: FHIRServerClient, bearer_token: Optional[str]) -> Optional[str]:
    parts = _split_reference(reference, client.base_url)
    if parts is None:
        return f"{reference} is not a Type/id reference"
    ref_type, ref_id, version = parts
    if version:
        reply = client.vread(ref_type, ref_id, version, bearer_token=bearer_token)
    else:
        reply = client.read(ref_type, ref_id, bearer_token=bearer_token)
    if reply.status_code not in OK_CODES:
        return f"{reference} did not resolve (status {reply.status_code})"
    found = reply.resource_type
    if found != ref_type:
        return f"{reference} resolved to a {found}, expected {ref_type}"
    logger.debug("Verification: resolved %s", reference)
    return None


def validate_profile_conformance(
    resources: Sequence[Dict[str, Any]],
    resource_type: str,
    profile_url: str,
    oracle: ResourceOracle = DEFAULT_ORACLE,
) -> Optional[Outcome]:
    """Fail when any resource violates ``profile_url`` according to ``oracle``."""
    if not resources:
        return Outcome.skipped(no_resources_available(resource_type))
    failures = []
    for resource in resources:
        violations = oracle.validate_against_profile(resource, profile_url)
        if violations:
            detail = ", ".join(f"{v.path}: {v.message}" for v in violations)
            failures.append(f"{resource_type}/{resource.get('id')} ({detail})")
    if failures:
        return Outcome.failed(
            f"{len(failures)}/{len(resources)} {resource_type} resources failed profile validation "
            f"against {profile_url}: " + "; ".join(failures)
        )
    return None


def validate_revinclude_reply(reply: Reply, included_type: str = "Provenance") -> Optional[Outcome]:
    """Fail unless a ``_revinclude`` search returned resources of ``included_type``."""
    outcome = assert_response_ok(reply) or assert_bundle_response(reply)
    if outcome:
        return outcome
    if not bundle_entries(reply.resource, included_type):
        return Outcome.failed(f"No {included_type} resources were returned from this search")
    return None
