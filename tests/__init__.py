"""
tests/
------
US Core Conformance Engine — Test Package
-----------------------------------------
pytest suites for the conformance engine.  FHIR servers and token
endpoints are simulated with httpx.MockTransport; fixtures live in
mock_data/.

Test Modules:
    - test_path_resolver.py / test_search_values.py: path and value helpers
    - test_verification.py / test_resource_oracle.py: conformance checks
    - test_fhir_client.py / test_bundles.py: server client and pagination
    - test_engine.py / test_runner.py: sequence execution and reports
    - test_careplan_sequence.py / test_careteam_sequence.py: US Core sequences
    - test_launch_workflow.py / test_database.py: SMART standalone launch
    - test_settings.py / test_main.py: configuration and FastAPI routes

Project: US Core Conformance Engine
"""
