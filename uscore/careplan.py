"""
careplan.py
-----------
US Core Conformance Engine — US Core CarePlan sequence (v3.1.0)

Project: US Core Conformance Engine
"""

from uscore.resource_sequence import ResourceSequenceDefinition, SearchSpec
from uscore.search_params import CAREPLAN_SEARCH_PARAMS

CAREPLAN_PROFILE = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-careplan"

CAREPLAN = ResourceSequenceDefinition(
    resource_type="CarePlan",
    name="USCore310CareplanSequence",
    title="US Core CarePlan",
    test_id_prefix="USCCP",
    profile_url=CAREPLAN_PROFILE,
    search_table=CAREPLAN_SEARCH_PARAMS,
    first_search=SearchSpec(
        params=("patient", "category"),
        fixed_values={"category": ("assess-plan",)},
    ),
    searches=(
        SearchSpec(params=("patient", "category", "date"), comparators=("gt", "lt", "le"), optional=True),
        SearchSpec(params=("patient", "category", "status", "date"), comparators=("gt", "lt", "le"), optional=True),
        SearchSpec(params=("patient", "category", "status"), optional=True),
    ),
    must_support=(
        "CarePlan.text",
        "CarePlan.text.status",
        "CarePlan.status",
        "CarePlan.intent",
        "CarePlan.category",
        "CarePlan.subject",
    ),
    required_elements=(
        "CarePlan.text",
        "CarePlan.text.status",
        "CarePlan.status",
        "CarePlan.intent",
        "CarePlan.category",
        "CarePlan.subject",
    ),
    description="Verify that CarePlan resources on the FHIR server follow the US Core Implementation Guide.",
)
