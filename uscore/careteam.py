"""
careteam.py
-----------
US Core Conformance Engine — US Core CareTeam sequence (v3.1.0)

CareTeam is searched by patient+status only, so the first search walks
every status value until the server returns a team.

Project: US Core Conformance Engine
"""

from uscore.resource_sequence import ResourceSequenceDefinition, SearchSpec
from uscore.search_params import CARETEAM_SEARCH_PARAMS

CARETEAM_PROFILE = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-careteam"

CARETEAM_STATUS_VALUES = ("proposed", "active", "suspended", "inactive", "entered-in-error")

CARETEAM = ResourceSequenceDefinition(
    resource_type="CareTeam",
    name="USCore310CareteamSequence",
    title="US Core CareTeam",
    test_id_prefix="USCCT",
    profile_url=CARETEAM_PROFILE,
    search_table=CARETEAM_SEARCH_PARAMS,
    first_search=SearchSpec(
        params=("patient", "status"),
        fixed_values={"status": CARETEAM_STATUS_VALUES},
    ),
    must_support=(
        "CareTeam.status",
        "CareTeam.subject",
        "CareTeam.participant",
        "CareTeam.participant.role",
        "CareTeam.participant.member",
    ),
    required_elements=(
        "CareTeam.subject",
        "CareTeam.participant",
        "CareTeam.participant.role",
        "CareTeam.participant.member",
    ),
    description="Verify that CareTeam resources on the FHIR server follow the US Core Implementation Guide.",
)
