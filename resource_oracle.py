"""
resource_oracle.py
------------------
US Core Conformance Engine — Resource Validation Oracle
-------------------------------------------------------
The engine does not own FHIR schema definitions; it asks an oracle whether
a resource is well formed.  Any object with the two ``ResourceOracle``
methods can be plugged in.  BasicResourceOracle is the built-in one:

  1. Base-spec conformance: the resource is validated against the FHIR R4
     model for its ``resourceType`` from ``fhir.resources`` (R4B package,
     pydantic based).  Element types, primitive formats, cardinality and
     unknown elements are all enforced there.  Each pydantic error becomes
     a Violation whose ``path`` is the dotted element location inside the
     resource.

  2. Profile conformance: a table of elements a profile requires
     (minimum cardinality 1), checked through the path resolver.

Public API
----------
    Violation               One problem: element path + message.
    ResourceOracle          Protocol the validator depends on.
    BasicResourceOracle     Built-in oracle described above.
    DEFAULT_ORACLE          Shared BasicResourceOracle instance.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence, Type

from fhir.resources.R4B import get_fhir_model_class
from pydantic import BaseModel, ConfigDict, ValidationError

import path_resolver

logger = logging.getLogger(__name__)


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    message: str


class ResourceOracle(Protocol):
    def validate_against_base_spec(self, resource: Dict[str, Any]) -> List[Violation]:
        ...

    def validate_against_profile(
        self, resource: Dict[str, Any], profile_url: str
    ) -> List[Violation]:
        ...


# ---------------------------------------------------------------------------
# Base-spec conformance
# ---------------------------------------------------------------------------

@lru_cache(maxsize=None)
def _model_for(resource_type: str) -> Optional[Type[BaseModel]]:
    try:
        return get_fhir_model_class(resource_type)
    except (KeyError, ValueError, ImportError):
        return None


def _element_location(resource: Dict[str, Any], loc: Sequence[Any]) -> str:
    """
    Dotted path of a pydantic error location, cut to the resource's elements.

    Locations may continue past the element into validator or union member
    names; those trailing parts are dropped.  A missing element is kept as
    the last part.
    """
    parts: List[str] = []
    node: Any = resource
    for part in loc:
        if isinstance(node, dict) and isinstance(part, str):
            parts.append(part)
            if part not in node:
                break
            node = node[part]
        elif isinstance(node, list) and isinstance(part, int) and 0 <= part < len(node):
            parts.append(str(part))
            node = node[part]
        else:
            break
    return ".".join(parts) or "resource"


def _violations_from(resource: Dict[str, Any], exc: ValidationError) -> List[Violation]:
    found: Dict[str, Violation] = {}
    for error in exc.errors():
        path = _element_location(resource, error["loc"])
        found.setdefault(path, Violation(path=path, message=error["msg"]))
    return list(found.values())


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class BasicResourceOracle:
    """
    Built-in oracle.

    Args:
        profile_requirements: ``{profile_url: [element paths]}`` naming the
            elements each profile requires.  Paths may carry the resource
            type prefix (``CarePlan.status``).
    """

    def __init__(self, profile_requirements: Optional[Dict[str, Sequence[str]]] = None) -> None:
        self.profile_requirements: Dict[str, List[str]] = {
            url: list(paths) for url, paths in (profile_requirements or {}).items()
        }

    def register_profile(self, profile_url: str, required_paths: Sequence[str]) -> None:
        self.profile_requirements[profile_url] = list(required_paths)

    def validate_against_base_spec(self, resource: Dict[str, Any]) -> List[Violation]:
        if not isinstance(resource, dict):
            return [Violation(path="resource", message="Resource is not a JSON object")]
        resource_type = resource.get("resourceType")
        if not resource_type:
            return [Violation(path="resourceType", message="Resource has no resourceType")]
        model = _model_for(str(resource_type))
        if model is None:
            return [Violation(path="resourceType", message=f"Unknown resource type '{resource_type}'")]
        try:
            model.model_validate(resource)
        except ValidationError as exc:
            return _violations_from(resource, exc)
        return []

    def validate_against_profile(
        self, resource: Dict[str, Any], profile_url: str
    ) -> List[Violation]:
        violations = self.validate_against_base_spec(resource)
        required = self.profile_requirements.get(profile_url)
        if required is None:
            logger.warning("ResourceOracle: no requirements known for profile %s", profile_url)
            return violations
        resource_type = resource.get("resourceType", "")
        for path in required:
            element = path[len(resource_type) + 1:] if path.startswith(resource_type + ".") else path
            if not path_resolver.exists(resource, element):
                violations.append(Violation(path=element, message="minimum required = 1, but only found 0"))
        return violations


DEFAULT_ORACLE = BasicResourceOracle()
