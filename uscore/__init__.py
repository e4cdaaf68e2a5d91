"""
uscore
------
US Core Conformance Engine — US Core v3.1.0 sequences

Registry of the resource sequence definitions this engine ships, keyed by
resource type.  ``build_sequence("CareTeam")`` returns a ready-to-run
engine Sequence.

Project: US Core Conformance Engine
"""

from typing import Optional

from bundles import DEFAULT_MAX_PAGES
from engine import Sequence
from resource_oracle import ResourceOracle
from uscore.careplan import CAREPLAN
from uscore.careteam import CARETEAM
from uscore.resource_sequence import ResourceSequenceDefinition, build_resource_sequence

DEFINITIONS = {
    definition.resource_type: definition
    for definition in (CAREPLAN, CARETEAM)
}


def build_sequence(
    resource_type: str,
    oracle: Optional[ResourceOracle] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> Sequence:
    """
    Build the sequence for ``resource_type``.

    Raises:
        KeyError: if no definition exists for the resource type.
    """
    return build_resource_sequence(DEFINITIONS[resource_type], oracle=oracle, max_pages=max_pages)


__all__ = ["DEFINITIONS", "ResourceSequenceDefinition", "build_sequence"]
