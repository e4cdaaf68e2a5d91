"""
search_params.py
----------------
US Core Conformance Engine — US Core v3.1.0 search parameter tables
-------------------------------------------------------------------
For each resource type, where every search parameter lives on the resource
and how a returned resource is compared with the value that was sent.
verification.validate_resource_item reads these tables; adding a resource
type means adding a table here, not new matching code.

Project: US Core Conformance Engine
"""

from verification import ComparisonKind, SearchParam

CAREPLAN_SEARCH_PARAMS = {
    "category": SearchParam("category.coding.code", ComparisonKind.TOKEN),
    "date": SearchParam("period", ComparisonKind.DATE),
    "patient": SearchParam("subject.reference", ComparisonKind.REFERENCE, target="Patient"),
    "status": SearchParam("status", ComparisonKind.TOKEN),
}

CARETEAM_SEARCH_PARAMS = {
    "patient": SearchParam("subject.reference", ComparisonKind.REFERENCE, target="Patient"),
    "status": SearchParam("status", ComparisonKind.TOKEN),
}

SEARCH_PARAMS = {
    "CarePlan": CAREPLAN_SEARCH_PARAMS,
    "CareTeam": CARETEAM_SEARCH_PARAMS,
}
