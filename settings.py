"""
settings.py
-----------
US Core Conformance Engine — Configuration
------------------------------------------
Loads run configuration from, in increasing priority:

  1. built-in defaults
  2. an optional YAML file (``conformance.yaml`` or ``--config``)
  3. environment variables, after ``load_dotenv()`` has read ``.env``

YAML example::

    fhir_server_url: https://server.example/fhir
    patient_id: "85"
    bearer_token: abc
    max_bundle_pages: 20
    capabilities:
      CarePlan: [search-type, read, vread, history-instance]
      CareTeam: [search-type, read]
    smart:
      client_id: my-app
      confidential: true
      client_secret: s3cret
      authorize_endpoint: https://server.example/auth/authorize
      token_endpoint: https://server.example/auth/token
      redirect_uri: http://localhost:8000/redirect
      token_params: {}

Key functions:
    load_settings: Settings from defaults, YAML and environment.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from capabilities import AllowAllCapabilities, CapabilityLookup, StaticCapabilities
from schemas import LaunchConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "conformance.yaml"

# env var → (settings key, nested under "smart")
_ENV_KEYS = {
    "FHIR_SERVER_URL": ("fhir_server_url", False),
    "FHIR_PATIENT_ID": ("patient_id", False),
    "FHIR_BEARER_TOKEN": ("bearer_token", False),
    "FHIR_HTTP_TIMEOUT": ("http_timeout", False),
    "FHIR_MAX_BUNDLE_PAGES": ("max_bundle_pages", False),
    "LAUNCH_DB_PATH": ("launch_db_path", False),
    "LOG_LEVEL": ("log_level", False),
    "SMART_CLIENT_ID": ("client_id", True),
    "SMART_CLIENT_SECRET": ("client_secret", True),
    "SMART_CONFIDENTIAL": ("confidential", True),
    "SMART_AUTHORIZE_URL": ("authorize_endpoint", True),
    "SMART_TOKEN_URL": ("token_endpoint", True),
    "SMART_REDIRECT_URI": ("redirect_uri", True),
    "SMART_SCOPES": ("scopes", True),
}


class Settings(BaseModel):
    fhir_server_url: str = ""
    patient_id: str = ""
    bearer_token: Optional[str] = None
    http_timeout: float = 30.0
    max_bundle_pages: int = 20
    launch_db_path: Optional[str] = None
    log_level: str = "INFO"
    capabilities: Dict[str, List[str]] = Field(default_factory=dict)
    smart: Dict[str, Any] = Field(default_factory=dict)

    def capability_lookup(self) -> CapabilityLookup:
        """Configured capabilities, or allow-all when none are configured."""
        if self.capabilities:
            return StaticCapabilities(self.capabilities)
        return AllowAllCapabilities()

    def launch_config(self) -> LaunchConfig:
        """
        LaunchConfig from the ``smart`` section.

        Raises:
            pydantic.ValidationError: if required launch settings are missing.
        """
        values = {"fhir_server": self.fhir_server_url, **self.smart}
        return LaunchConfig(**values)


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a YAML mapping")
    return data


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Build Settings from defaults, the YAML file and the environment.

    Args:
        config_path: YAML file to read.  When omitted, ``CONFORMANCE_CONFIG``
                     or ``conformance.yaml`` next to this module is used if
                     it exists.

    Returns:
        Settings: Validated settings.

    Raises:
        FileNotFoundError: if an explicitly given ``config_path`` is missing.
        pydantic.ValidationError: on values of the wrong type.
    """
    load_dotenv()
    values: Dict[str, Any] = {}
    explicit = config_path or os.getenv("CONFORMANCE_CONFIG")
    path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH
    if path.exists():
        values.update(_read_yaml(path))
        logger.info("Settings: loaded %s", path)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {path}")

    smart = dict(values.get("smart") or {})
    for env_name, (key, nested) in _ENV_KEYS.items():
        raw = os.getenv(env_name)
        if raw is None or raw == "":
            continue
        if nested:
            smart[key] = raw.lower() in ("1", "true", "yes") if key == "confidential" else raw
        else:
            values[key] = raw
    values["smart"] = smart
    return Settings(**values)
