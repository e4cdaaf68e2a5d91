"""
test_settings.py
----------------
US Core Conformance Engine — Test Suite for settings.py
-------------------------------------------------------
Tests cover:
    - defaults when neither YAML nor environment set anything
    - YAML values, including the smart section and capabilities
    - environment variables override YAML
    - explicit missing config path raises FileNotFoundError
    - launch_config / capability_lookup helpers

Run:
    pytest tests/test_settings.py -v --tb=short

Project: US Core Conformance Engine
"""

import os
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import settings as settings_module
from capabilities import AllowAllCapabilities, StaticCapabilities
from settings import Settings, load_settings

YAML = """
fhir_server_url: http://www.example.com/fhir
patient_id: "85"
max_bundle_pages: 5
capabilities:
  CareTeam: [search-type, read]
smart:
  client_id: my-app
  authorize_endpoint: http://www.example.com/auth/authorize
  token_endpoint: http://www.example.com/auth/token
  redirect_uri: http://localhost:8000/redirect
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and any conformance.yaml."""
    for name in list(settings_module._ENV_KEYS) + ["CONFORMANCE_CONFIG"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(settings_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setattr(settings_module, "load_dotenv", lambda *args, **kwargs: False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "conformance.yaml"
    path.write_text(YAML, encoding="utf-8")
    return path


def test_defaults():
    loaded = load_settings()
    assert loaded.fhir_server_url == ""
    assert loaded.max_bundle_pages == 20
    assert loaded.http_timeout == 30.0
    assert loaded.log_level == "INFO"
    assert isinstance(loaded.capability_lookup(), AllowAllCapabilities)


def test_yaml_values(config_file):
    loaded = load_settings(config_file)
    assert loaded.fhir_server_url == "http://www.example.com/fhir"
    assert loaded.patient_id == "85"
    assert loaded.max_bundle_pages == 5
    assert loaded.smart["client_id"] == "my-app"


def test_config_from_env_path(config_file, monkeypatch):
    monkeypatch.setenv("CONFORMANCE_CONFIG", str(config_file))
    assert load_settings().patient_id == "85"


def test_env_overrides_yaml(config_file, monkeypatch):
    monkeypatch.setenv("FHIR_PATIENT_ID", "example")
    monkeypatch.setenv("FHIR_MAX_BUNDLE_PAGES", "7")
    monkeypatch.setenv("SMART_CONFIDENTIAL", "true")
    monkeypatch.setenv("SMART_CLIENT_SECRET", "s3cret")
    loaded = load_settings(config_file)
    assert loaded.patient_id == "example"
    assert loaded.max_bundle_pages == 7
    assert loaded.smart["confidential"] is True
    assert loaded.smart["client_id"] == "my-app"


def test_missing_explicit_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "nope.yaml")


def test_launch_config_from_smart_section(config_file):
    config = load_settings(config_file).launch_config()
    assert config.client_id == "my-app"
    assert config.fhir_server == "http://www.example.com/fhir"
    assert config.confidential is False


def test_launch_config_incomplete_raises():
    with pytest.raises(ValidationError):
        Settings(smart={"client_id": "my-app"}).launch_config()


def test_capability_lookup_from_yaml(config_file):
    lookup = load_settings(config_file).capability_lookup()
    assert isinstance(lookup, StaticCapabilities)
    assert lookup.supports("CareTeam", "search")
    assert not lookup.supports("CareTeam", "vread")
    assert not lookup.supports("CarePlan", "read")
