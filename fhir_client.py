"""
fhir_client.py
--------------
US Core Conformance Engine — FHIR Server Client
-----------------------------------------------
Synchronous FHIR R4 client for the server under test.

Unlike an application client, this one never hides server behaviour: any
HTTP status is handed back to the caller inside a Reply so the validator
can judge it.  Only transport failures (DNS, refused connection, timeout)
raise, as FHIRClientError.

Authentication is per call.  The bearer token lives in the caller's
RunContext and is passed explicitly, so one client can issue both the
authenticated searches and the deliberately unauthenticated probe of a
sequence.

Usage (context manager):
    with FHIRServerClient("https://server.example/fhir") as client:
        reply = client.search("CareTeam", {"patient": "85"}, bearer_token=token)
        bundle = reply.resource

Tests inject an ``httpx.MockTransport`` through ``transport=``.

Key classes:
    Reply:            Status, lower-cased headers, body and parsed resource.
    FHIRServerClient: search / read / vread / history / get_url.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"
_DEFAULT_TIMEOUT_S = 30.0


class FHIRClientError(Exception):
    """Raised when a request cannot be completed at the transport level."""


class MalformedPayloadError(Exception):
    """Raised when a non-empty response body is not valid JSON."""

    def __init__(self, url: str, detail: str) -> None:
        self.url = url
        super().__init__(f"Response from {url} is not valid JSON: {detail}")


class Reply:
    """
    A server response, kept whole for the validator.

    Args:
        status_code: HTTP status.
        headers:     Response headers; stored with lower-cased names.
        text:        Raw response body.
        url:         Request URL.
        request:     The ``httpx.Request`` that produced it, when known.
    """

    def __init__(
        self,
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
        text: str = "",
        url: str = "",
        request: Optional[httpx.Request] = None,
    ) -> None:
        self.status_code = status_code
        self.headers: Dict[str, str] = {k.lower(): v for k, v in (headers or {}).items()}
        self.text = text or ""
        self.url = url
        self.request = request
        self._parsed = False
        self._resource: Optional[Any] = None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "Reply":
        return cls(
            status_code=response.status_code,
            headers=dict(response.headers),
            text=response.text,
            url=str(response.request.url),
            request=response.request,
        )

    @property
    def resource(self) -> Optional[Any]:
        """
        Parsed JSON body, or None for an empty body.

        Raises:
            MalformedPayloadError: if the body is present but not JSON.
        """
        if not self._parsed:
            body = self.text.strip()
            if body:
                try:
                    self._resource = json.loads(body)
                except ValueError as exc:
                    raise MalformedPayloadError(self.url, str(exc)) from exc
            self._parsed = True
        return self._resource

    @property
    def resource_type(self) -> Optional[str]:
        resource = self.resource
        if isinstance(resource, dict):
            return resource.get("resourceType")
        return None

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def __repr__(self) -> str:
        return f"Reply(status_code={self.status_code}, url={self.url!r})"


class FHIRServerClient:
    """
    Client for the FHIR server under test.

    Args:
        base_url:  FHIR base URL.  Defaults to the ``FHIR_SERVER_URL`` env var.
        timeout:   Request timeout in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
        http:      Optional pre-built ``httpx.Client``; takes precedence over
                   ``timeout`` and ``transport``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
        http: Optional[httpx.Client] = None,
    ) -> None:
        resolved = base_url or os.getenv("FHIR_SERVER_URL", "")
        if not resolved:
            raise ValueError("FHIRServerClient needs a base_url or FHIR_SERVER_URL")
        self.base_url = resolved.rstrip("/")
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=timeout, transport=transport)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def close(self) -> None:
        if self._owns_http:
            self._http.close()
            logger.debug("FHIRServerClient: HTTP transport closed.")

    def __enter__(self) -> "FHIRServerClient":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    @property
    def http(self) -> httpx.Client:
        """Underlying httpx client, shared with the launch token exchange."""
        return self._http

    # ── Request helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _headers(bearer_token: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": FHIR_JSON}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        return headers

    def _send(self, method: str, url: str, **kwargs: Any) -> Reply:
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise FHIRClientError(f"{method} {url} failed: {exc}") from exc
        logger.debug("FHIRServerClient: %s %s -> %d", method, url, response.status_code)
        return Reply.from_response(response)

    def url_for(self, path: str) -> str:
        """Absolute URL for a relative FHIR path or an already absolute URL."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def is_local(self, reference: str) -> bool:
        """True for relative references and absolute ones on this server."""
        if reference.startswith(("http://", "https://")):
            return reference.startswith(self.base_url + "/")
        return not reference.startswith(("#", "urn:"))

    # ── FHIR interactions ────────────────────────────────────────────────────

    def search(
        self,
        resource_type: str,
        params: Mapping[str, str],
        bearer_token: Optional[str] = None,
    ) -> Reply:
        """GET ``[base]/[type]?params``."""
        return self._send(
            "GET", self.url_for(resource_type), params=dict(params), headers=self._headers(bearer_token)
        )

    def read(self, resource_type: str, resource_id: str, bearer_token: Optional[str] = None) -> Reply:
        """GET ``[base]/[type]/[id]``."""
        return self._send(
            "GET", self.url_for(f"{resource_type}/{resource_id}"), headers=self._headers(bearer_token)
        )

    def vread(
        self,
        resource_type: str,
        resource_id: str,
        version_id: str,
        bearer_token: Optional[str] = None,
    ) -> Reply:
        """GET ``[base]/[type]/[id]/_history/[vid]``."""
        url = self.url_for(f"{resource_type}/{resource_id}/_history/{version_id}")
        return self._send("GET", url, headers=self._headers(bearer_token))

    def history(self, resource_type: str, resource_id: str, bearer_token: Optional[str] = None) -> Reply:
        """GET ``[base]/[type]/[id]/_history``."""
        url = self.url_for(f"{resource_type}/{resource_id}/_history")
        return self._send("GET", url, headers=self._headers(bearer_token))

    def get_url(self, url: str, bearer_token: Optional[str] = None) -> Reply:
        """GET an arbitrary URL, e.g. a Bundle ``next`` link."""
        return self._send("GET", self.url_for(url), headers=self._headers(bearer_token))
