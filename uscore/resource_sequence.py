"""
resource_sequence.py
--------------------
US Core Conformance Engine — Resource sequence builder
------------------------------------------------------
Every US Core resource sequence follows the same script; only the data
differs.  A ResourceSequenceDefinition holds that data and
build_resource_sequence() turns it into an engine Sequence whose test
cases run, in order:

    NN  unauthorized search        search without a token must get 401
    NN  first search               patient + fixed values, tried in turn
                                   until the server returns resources
    NN  further searches           values taken from found resources,
                                   optionally re-run with date comparators
    NN  read / vread / history     on the representative resource
    NN  _revinclude Provenance     Provenance:target comes back
    NN  profile conformance        oracle check of every found resource
    NN  must support               each element seen at least once
    NN  reference resolution       every local reference can be read

Test ids are ``<prefix>-NN`` numbered in that order.

Context slots written here:
    sample              first resource found by the first search
    search_results      SearchResultSet of the first search
    provenance          Provenance resources from the _revinclude search
    resolved_references reference → problem cache for the run

Project: US Core Conformance Engine
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import path_resolver
import verification
from bundles import DEFAULT_MAX_PAGES, PageRetrievalError, bundle_entries, collect_search_results
from engine import RunContext, Sequence, TestCase
from fhir_client import FHIRServerClient
from resource_oracle import BasicResourceOracle, ResourceOracle
from schemas import Outcome, OutcomeKind
from search_values import comparator_value, value_for_search_param
from verification import SearchTable

logger = logging.getLogger(__name__)

SAMPLE_SLOT = "sample"
SEARCH_RESULTS_SLOT = "search_results"
PROVENANCE_SLOT = "provenance"
RESOLVED_REFERENCES_SLOT = "resolved_references"

REVINCLUDE_PROVENANCE = "Provenance:target"
_SEARCH_LINK = "https://www.hl7.org/fhir/us/core/CapabilityStatement-us-core-server.html"


@dataclass(frozen=True)
class SearchSpec:
    """
    One search combination.

    ``fixed_values`` lists candidate values per parameter for the first
    search; later searches take their values from resources already found.
    ``comparators`` re-runs the search with the date parameter prefixed.
    """

    params: Tuple[str, ...]
    fixed_values: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    comparators: Tuple[str, ...] = ()
    optional: bool = False

    @property
    def label(self) -> str:
        return "+".join(self.params)


@dataclass(frozen=True)
class ResourceSequenceDefinition:
    resource_type: str
    name: str
    title: str
    test_id_prefix: str
    profile_url: str
    search_table: SearchTable
    first_search: SearchSpec
    searches: Tuple[SearchSpec, ...] = ()
    must_support: Tuple[str, ...] = ()
    required_elements: Tuple[str, ...] = ()
    description: str = ""


def _resolved_params(
    spec: SearchSpec,
    table: SearchTable,
    context: RunContext,
    resources: List[Dict[str, Any]],
) -> Tuple[Optional[Dict[str, str]], Optional[Dict[str, Any]], Optional[str]]:
    """
    Search values for ``spec`` all taken from one resource.

    Returns:
        (params, source_resource, None) on success, or
        (None, None, first_unresolvable_param).
    """
    first_missing = None
    for resource in resources:
        params: Dict[str, str] = {}
        for name in spec.params:
            if name == "patient":
                params[name] = context["patient_id"]
                continue
            value = value_for_search_param(path_resolver.resolve(resource, table[name].path))
            if value is None:
                first_missing = first_missing or name
                break
            params[name] = value
        else:
            return params, resource, None
    return None, None, first_missing or spec.params[0]


class _Steps:
    """Step functions for one definition; each matches the engine's StepFn."""

    def __init__(
        self,
        definition: ResourceSequenceDefinition,
        oracle: ResourceOracle,
        max_pages: int,
    ) -> None:
        self.definition = definition
        self.oracle = oracle
        self.max_pages = max_pages
        self.resource_type = definition.resource_type
        self.table = definition.search_table

    def _search(self, client: FHIRServerClient, params: Dict[str, str], context: RunContext):
        logger.debug("Sequence: %s search %s", self.resource_type, params)
        return client.search(self.resource_type, params, bearer_token=context["bearer_token"])

    def _validate(self, reply, params: Dict[str, str]) -> Outcome:
        return verification.validate_search_reply(reply, self.resource_type, params, self.table, self.oracle)

    # ── Searches ─────────────────────────────────────────────────────────────

    def unauthorized_search(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        spec = self.definition.first_search
        params = {"patient": context["patient_id"]}
        for name, values in spec.fixed_values.items():
            params[name] = values[0]
        reply = client.search(self.resource_type, params, bearer_token=None)
        return verification.assert_response_unauthorized(reply) or Outcome.passed()

    def first_search(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        spec = self.definition.first_search
        names = [name for name in spec.params if name != "patient"]
        choices = [spec.fixed_values.get(name, ()) for name in names]
        for combination in itertools.product(*choices):
            params = {"patient": context["patient_id"], **dict(zip(names, combination))}
            reply = self._search(client, params, context)
            outcome = verification.assert_response_ok(reply) or verification.assert_bundle_response(reply)
            if outcome:
                return outcome
            found = bundle_entries(reply.resource, self.resource_type)
            if not found:
                continue

            context["resources_found"] = True
            context["slots"][SAMPLE_SLOT] = found[0]
            context["last_found_resources"] = found
            try:
                results = collect_search_results(
                    reply.resource, client, self.resource_type, params,
                    bearer_token=context["bearer_token"], max_pages=self.max_pages,
                )
            except PageRetrievalError as exc:
                return Outcome.failed(str(exc))
            context["last_found_resources"] = results.resources
            context["slots"][SEARCH_RESULTS_SLOT] = results
            return self._validate(reply, params)
        return Outcome.skipped(verification.no_resources_available(self.resource_type))

    def make_search(self, spec: SearchSpec):
        def search_step(context: RunContext, client: FHIRServerClient) -> Outcome:
            if not context["resources_found"]:
                return Outcome.skipped(verification.no_resources_available(self.resource_type))
            params, source, missing = _resolved_params(
                spec, self.table, context, context["last_found_resources"]
            )
            if params is None:
                return Outcome.skipped(f"Could not resolve {missing} in given resource")
            outcome = self._validate(self._search(client, params, context), params)
            if outcome.kind != OutcomeKind.PASS:
                return outcome

            date_params = [name for name in spec.params if self.table[name].kind == verification.ComparisonKind.DATE]
            for comparator in spec.comparators:
                for name in date_params:
                    baseline = path_resolver.first(source, self.table[name].path)
                    comparator_params = {**params, name: comparator_value(comparator, baseline)}
                    outcome = self._validate(self._search(client, comparator_params, context), comparator_params)
                    if outcome.kind != OutcomeKind.PASS:
                        return outcome
            return Outcome.passed()

        return search_step

    # ── Single-resource interactions ─────────────────────────────────────────

    def _sample(self, context: RunContext) -> Optional[Dict[str, Any]]:
        if not context["resources_found"]:
            return None
        return context["slots"].get(SAMPLE_SLOT)

    def read(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        sample = self._sample(context)
        if not sample:
            return Outcome.skipped(verification.no_resources_for_patient(self.resource_type))
        reply = client.read(self.resource_type, sample.get("id"), bearer_token=context["bearer_token"])
        return verification.validate_read_reply(reply, self.resource_type, sample.get("id")) or Outcome.passed()

    def vread(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        sample = self._sample(context)
        if not sample:
            return Outcome.skipped(verification.no_resources_for_patient(self.resource_type))
        version_id = path_resolver.first(sample, "meta.versionId")
        if not version_id:
            return Outcome.skipped(
                f"{self.resource_type}/{sample.get('id')} has no meta.versionId, so vread could not be tested."
            )
        reply = client.vread(self.resource_type, sample.get("id"), version_id, bearer_token=context["bearer_token"])
        return (
            verification.validate_vread_reply(reply, self.resource_type, sample.get("id"), version_id)
            or Outcome.passed()
        )

    def history(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        sample = self._sample(context)
        if not sample:
            return Outcome.skipped(verification.no_resources_for_patient(self.resource_type))
        reply = client.history(self.resource_type, sample.get("id"), bearer_token=context["bearer_token"])
        return verification.validate_history_reply(reply, self.resource_type) or Outcome.passed()

    # ── Provenance, profile, coverage, references ────────────────────────────

    def revinclude_provenance(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        if not context["resources_found"]:
            return Outcome.skipped(verification.no_resources_available(self.resource_type))
        params, _, missing = _resolved_params(
            self.definition.first_search, self.table, context, context["last_found_resources"]
        )
        if params is None:
            return Outcome.skipped(f"Could not resolve {missing} in given resource")
        params["_revinclude"] = REVINCLUDE_PROVENANCE
        reply = self._search(client, params, context)
        outcome = verification.validate_revinclude_reply(reply, "Provenance")
        if outcome:
            return outcome
        context["slots"][PROVENANCE_SLOT] = bundle_entries(reply.resource, "Provenance")
        return Outcome.passed()

    def profile_conformance(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        return verification.validate_profile_conformance(
            context["last_found_resources"], self.resource_type, self.definition.profile_url, self.oracle
        ) or Outcome.passed()

    def must_support(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        return verification.validate_must_support(
            self.definition.must_support, context["last_found_resources"], self.resource_type
        ) or Outcome.passed()

    def reference_resolution(self, context: RunContext, client: FHIRServerClient) -> Outcome:
        sample = self._sample(context)
        if not sample:
            return Outcome.skipped(verification.no_resources_available(self.resource_type))
        cache = context["slots"].setdefault(RESOLVED_REFERENCES_SLOT, {})
        return verification.validate_reference_resolutions(sample, client, context["bearer_token"], cache)


def build_resource_sequence(
    definition: ResourceSequenceDefinition,
    oracle: Optional[ResourceOracle] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> Sequence:
    """
    Build the engine Sequence for ``definition``.

    Args:
        definition: Declarative description of the resource's tests.
        oracle:     Validation oracle; defaults to a BasicResourceOracle
                    that knows the definition's required elements.
        max_pages:  Page cap for the first search's pagination.

    Returns:
        Sequence: Ready for ``engine.run_sequence``.
    """
    if oracle is None:
        oracle = BasicResourceOracle({definition.profile_url: definition.required_elements})
    steps = _Steps(definition, oracle, max_pages)
    resource = definition.resource_type
    first = definition.first_search

    entries = [
        dict(
            title=f"Server rejects {resource} search without authorization",
            description="A server SHALL reject any unauthorized requests by returning an HTTP 401 unauthorized response code.",
            step=steps.unauthorized_search,
            required_interactions=("search",),
            requires_token=True,
            link="http://hl7.org/fhir/us/core/CapabilityStatement/us-core-server",
        ),
        dict(
            title=f"Server returns valid results for {resource} search by {first.label}.",
            description=f"A server SHALL support searching by {first.label} on the {resource} resource.",
            step=steps.first_search,
            required_interactions=("search",),
            link=_SEARCH_LINK,
        ),
    ]
    for spec in definition.searches:
        comparators = f" with comparators {', '.join(spec.comparators)}" if spec.comparators else ""
        entries.append(dict(
            title=f"Server returns valid results for {resource} search by {spec.label}.",
            description=f"A server SHOULD support searching by {spec.label} on the {resource} resource{comparators}.",
            step=steps.make_search(spec),
            required_interactions=("search",),
            optional=spec.optional,
            link=_SEARCH_LINK,
        ))
    entries.extend([
        dict(
            title=f"Server returns correct {resource} resource from {resource} read interaction",
            description=f"A server SHALL support the {resource} read interaction.",
            step=steps.read,
            required_interactions=("read",),
        ),
        dict(
            title=f"Server returns correct {resource} resource from {resource} vread interaction",
            description=f"A server SHOULD support the {resource} vread interaction.",
            step=steps.vread,
            required_interactions=("vread",),
            optional=True,
        ),
        dict(
            title=f"Server returns correct {resource} resource from {resource} history interaction",
            description=f"A server SHOULD support the {resource} history interaction.",
            step=steps.history,
            required_interactions=("history",),
            optional=True,
        ),
        dict(
            title=f"Server returns Provenance resources from {resource} search by {first.label} + _revinclude",
            description=f"A server SHALL be capable of supporting _revincludes:Provenance:target for {resource}.",
            step=steps.revinclude_provenance,
            required_interactions=("search",),
        ),
        dict(
            title=f"{resource} resources returned from previous search conform to the {definition.title} profile.",
            description=f"Resources are validated against {definition.profile_url}.",
            step=steps.profile_conformance,
            link=definition.profile_url,
        ),
        dict(
            title=f"All must support elements are provided in the {resource} resources returned.",
            description="Each must support element is present in at least one returned resource.",
            step=steps.must_support,
            link=definition.profile_url,
        ),
        dict(
            title=f"Every reference within {resource} resource is valid and can be read.",
            description="All references in the resource are followed and read.",
            step=steps.reference_resolution,
            required_interactions=("search", "read"),
        ),
    ])

    cases = tuple(
        TestCase(id=f"{definition.test_id_prefix}-{index:02d}", **entry)
        for index, entry in enumerate(entries, start=1)
    )
    return Sequence(
        name=definition.name,
        title=definition.title,
        resource_type=resource,
        test_cases=cases,
        test_id_prefix=definition.test_id_prefix,
        description=definition.description,
        requires=("patient_id",),
    )
