"""
capabilities.py
---------------
US Core Conformance Engine — Capability lookup
----------------------------------------------
The engine only asks one question of a server's declared capabilities:
``supports(resource_type, interaction)``.  Parsing a CapabilityStatement
into that answer belongs to the caller; these classes answer it from data
the caller already has (the YAML config, a request body, a test).

Interactions use the FHIR RESTful interaction codes: ``read``, ``vread``,
``history-instance``, ``search-type`` and so on.  The short forms
``search`` and ``history`` are accepted as aliases.

Project: US Core Conformance Engine
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Protocol

INTERACTION_ALIASES = {
    "search": "search-type",
    "history": "history-instance",
}


def normalize_interaction(interaction: str) -> str:
    return INTERACTION_ALIASES.get(interaction, interaction)


class CapabilityLookup(Protocol):
    def supports(self, resource_type: str, interaction: str) -> bool:
        ...


class StaticCapabilities:
    """
    Capabilities from a ``{resource_type: [interaction, ...]}`` mapping.

    Args:
        interactions: Supported interactions per resource type.
    """

    def __init__(self, interactions: Mapping[str, Iterable[str]]) -> None:
        self._interactions: Dict[str, set] = {
            resource_type: {normalize_interaction(code) for code in codes}
            for resource_type, codes in interactions.items()
        }

    def supports(self, resource_type: str, interaction: str) -> bool:
        return normalize_interaction(interaction) in self._interactions.get(resource_type, set())

    def resource_types(self) -> list:
        return sorted(self._interactions)


class AllowAllCapabilities:
    """Answers yes to everything; used when no capabilities are configured."""

    def supports(self, resource_type: str, interaction: str) -> bool:
        return True
