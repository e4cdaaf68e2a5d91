"""
bundles.py
----------
US Core Conformance Engine — Bundle Aggregator
----------------------------------------------
Follows ``next`` links of a searchset Bundle and gathers every entry
resource in page order.

Pagination is bounded: a server whose ``next`` links never end (or loop
back to a page already read) must not hang a run.  Exceeding
``max_pages`` raises PaginationLimitError, which the engine reports as an
``error`` outcome.  A next page the server refuses to serve is a
conformance failure instead, raised as PageRetrievalError for the calling
step to turn into ``fail``.

Key functions:
    bundle_entries:          Entry resources of a Bundle, optionally by type.
    next_link:               URL of the ``next`` link, if any.
    fetch_all:               Resources from every page.
    collect_search_results:  fetch_all wrapped in a SearchResultSet.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from fhir_client import FHIRServerClient, MalformedPayloadError
from schemas import SearchResultSet

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 20


class PaginationLimitError(Exception):
    """Raised when ``next`` links run past the page cap or revisit a page."""

    def __init__(self, message: str = "pagination did not terminate") -> None:
        super().__init__(message)


class PageRetrievalError(Exception):
    """Raised when a ``next`` page is not a successful Bundle response."""


def bundle_entries(bundle: Optional[Dict[str, Any]], resource_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Return the entry resources of ``bundle``.

    Args:
        bundle:        Bundle dict (None yields an empty list).
        resource_type: Keep only resources of this type.
    """
    if not isinstance(bundle, dict):
        return []
    resources = []
    for entry in bundle.get("entry") or []:
        resource = (entry or {}).get("resource")
        if not isinstance(resource, dict):
            continue
        if resource_type is None or resource.get("resourceType") == resource_type:
            resources.append(resource)
    return resources


def next_link(bundle: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(bundle, dict):
        return None
    for link in bundle.get("link") or []:
        if (link or {}).get("relation") == "next" and link.get("url"):
            return link["url"]
    return None


def fetch_all(
    first_page_bundle: Dict[str, Any],
    client: FHIRServerClient,
    *,
    resource_type: Optional[str] = None,
    bearer_token: Optional[str] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> List[Dict[str, Any]]:
    """
    Concatenate entry resources from ``first_page_bundle`` and every page
    reachable through its ``next`` links.

    Args:
        first_page_bundle: Bundle already returned by the search.
        client:            Client used to request further pages.
        resource_type:     Keep only resources of this type (``_include``d
                           and ``_revinclude``d resources are dropped).
        bearer_token:      Token sent with page requests.
        max_pages:         Page cap, first page included.

    Returns:
        list: Resources in page order, then entry order.

    Raises:
        PaginationLimitError: more than ``max_pages`` pages, or a page URL
            seen twice.
        PageRetrievalError: a next page answered non-200 or not a Bundle.
    """
    resources, _ = _gather(first_page_bundle, client, resource_type, bearer_token, max_pages)
    return resources


def _gather(
    first_page_bundle: Dict[str, Any],
    client: FHIRServerClient,
    resource_type: Optional[str],
    bearer_token: Optional[str],
    max_pages: int,
) -> Tuple[List[Dict[str, Any]], int]:
    resources: List[Dict[str, Any]] = []
    bundle = first_page_bundle
    pages = 1
    seen = set()
    while True:
        resources.extend(bundle_entries(bundle, resource_type))
        url = next_link(bundle)
        if not url:
            break
        if url in seen or pages >= max_pages:
            logger.warning("BundleAggregator: stopped after %d pages at %s", pages, url)
            raise PaginationLimitError()
        seen.add(url)

        reply = client.get_url(url, bearer_token=bearer_token)
        if reply.status_code != 200:
            raise PageRetrievalError(f"Could not resolve next bundle. {url}")
        try:
            bundle = reply.resource
        except MalformedPayloadError as exc:
            raise PageRetrievalError(f"Could not resolve next bundle. {url}") from exc
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            raise PageRetrievalError(f"Could not resolve next bundle. {url}")
        pages += 1

    logger.debug("BundleAggregator: %d resources over %d page(s)", len(resources), pages)
    return resources, pages


def collect_search_results(
    first_page_bundle: Dict[str, Any],
    client: FHIRServerClient,
    resource_type: str,
    params: Dict[str, str],
    *,
    bearer_token: Optional[str] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
) -> SearchResultSet:
    """fetch_all, keeping the query and page count alongside the resources."""
    resources, pages = _gather(first_page_bundle, client, resource_type, bearer_token, max_pages)
    return SearchResultSet(
        resource_type=resource_type,
        params={key: str(value) for key, value in params.items()},
        resources=resources,
        page_count=pages,
    )
