"""
runner.py
---------
US Core Conformance Engine — Sequence runner
--------------------------------------------
Runs one or more US Core resource sequences against a configured server
and renders the results.  Used by the FastAPI ``/sequences`` endpoint and
as a command-line smoke run:

    python runner.py --resource CareTeam --config conformance.yaml
    python runner.py --resource CarePlan --resource CareTeam --format json

Exit status is 0 when no sequence ends in ``fail`` or ``error``.

Key functions:
    run_resource_sequences: Settings + resource types → SequenceResults.
    format_report:          Plain-text report of SequenceResults.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import uscore
from capabilities import CapabilityLookup
from engine import build_sequence_result, create_run_context, run_sequence
from fhir_client import FHIRServerClient
from schemas import OutcomeKind, SequenceResult
from settings import Settings, load_settings

logger = logging.getLogger(__name__)


def run_resource_sequences(
    settings: Settings,
    resource_types: Iterable[str],
    *,
    client: Optional[FHIRServerClient] = None,
    capabilities: Optional[CapabilityLookup] = None,
) -> List[SequenceResult]:
    """
    Run the US Core sequence of each resource type, each with its own
    RunContext.

    Args:
        settings:       Server URL, patient, token, page cap.
        resource_types: Resource types to test, in order.
        client:         Client to use; built from settings when omitted.
        capabilities:   Capability lookup; from settings when omitted.

    Returns:
        list: One SequenceResult per resource type.

    Raises:
        KeyError: for a resource type with no sequence definition.
    """
    lookup = capabilities or settings.capability_lookup()
    owns_client = client is None
    fhir = client or FHIRServerClient(settings.fhir_server_url, timeout=settings.http_timeout)
    results = []
    try:
        for resource_type in resource_types:
            sequence = uscore.build_sequence(resource_type, max_pages=settings.max_bundle_pages)
            context = create_run_context(settings.patient_id, settings.bearer_token)
            pairs = run_sequence(sequence, context, fhir, lookup)
            results.append(build_sequence_result(sequence, pairs))
    finally:
        if owns_client:
            fhir.close()
    return results


def format_report(results: List[SequenceResult]) -> str:
    lines = []
    for result in results:
        counts = result.counts()
        summary = ", ".join(f"{kind} {count}" for kind, count in counts.items() if count)
        lines.append(f"{result.name} [{result.result.value}] ({summary})")
        for item in result.test_results:
            flag = " (optional)" if item.optional else ""
            lines.append(f"  {item.id} {item.result.value:<5} {item.title}{flag}")
            if item.message:
                lines.append(f"        {item.message}")
            for warning in item.warnings:
                lines.append(f"        warning: {warning}")
    return "\n".join(lines)


def sequences_passed(results: List[SequenceResult]) -> bool:
    return not any(result.result in (OutcomeKind.FAIL, OutcomeKind.ERROR) for result in results)


if __name__ == "__main__":
    import argparse
    import json
    import sys

    parser = argparse.ArgumentParser(
        description="Run US Core conformance sequences against a FHIR server."
    )
    parser.add_argument(
        "--resource",
        action="append",
        choices=sorted(uscore.DEFINITIONS),
        help="Resource type to test; repeatable (default: all)",
    )
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--server-url", default=None, help="FHIR base URL (overrides config)")
    parser.add_argument("--patient-id", default=None, help="Patient id (overrides config)")
    parser.add_argument("--token", default=None, help="Bearer token (overrides config)")
    parser.add_argument("--format", choices=("text", "json"), default="text")
    args = parser.parse_args()

    settings = load_settings(args.config)
    overrides = {
        key: value
        for key, value in (
            ("fhir_server_url", args.server_url),
            ("patient_id", args.patient_id),
            ("bearer_token", args.token),
        )
        if value is not None
    }
    settings = settings.model_copy(update=overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(levelname)s [%(name)s] %(message)s",
    )

    results = run_resource_sequences(settings, args.resource or sorted(uscore.DEFINITIONS))
    if args.format == "json":
        print(json.dumps([result.model_dump(mode="json") for result in results], indent=2))
    else:
        print(format_report(results))
    sys.exit(0 if sequences_passed(results) else 1)
