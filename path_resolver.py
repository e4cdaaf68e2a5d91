"""
path_resolver.py
----------------
US Core Conformance Engine — Resource Path Resolver
---------------------------------------------------
Resolves dotted element paths (``subject.reference``,
``category.coding.code``) against FHIR resources held as plain JSON dicts.

Resolution rules:
    - Every list met along the way fans out: ``category.coding.code`` on a
      resource with two categories of two codings each yields four codes.
    - A missing segment yields nothing; it is never an error.
    - ``*`` selects every child value of an object.
    - A choice segment such as ``value[x]`` selects every key that starts
      with ``value`` (``valueQuantity``, ``valueString`` ...).

``resolve()`` is a generator, so callers that only need the first match
(``first()``, ``exists()``) stop walking as soon as they find one, and the
resolution can be restarted simply by calling it again.

Key functions:
    resolve: Lazily yield every value reachable through a path.
    first:   First resolved value or None.
    exists:  True when any resolved value satisfies a predicate.

Project: US Core Conformance Engine
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, Optional

_WILDCARD = "*"
_CHOICE_SUFFIX = "[x]"


def _split(path: str) -> list:
    return [segment for segment in path.split(".") if segment]


def _children(node: Any, segment: str) -> Iterator[Any]:
    """Yield the values one segment below a single (non-list) node."""
    if not isinstance(node, dict):
        return
    if segment == _WILDCARD:
        yield from node.values()
    elif segment.endswith(_CHOICE_SUFFIX):
        prefix = segment[: -len(_CHOICE_SUFFIX)]
        for key, value in node.items():
            if key.startswith(prefix) and key != prefix:
                yield value
    elif segment in node:
        yield node[segment]


def _flatten(value: Any) -> Iterator[Any]:
    if isinstance(value, list):
        for item in value:
            yield from _flatten(item)
    elif value is not None:
        yield value


def _walk(nodes: Iterable[Any], segments: list) -> Iterator[Any]:
    if not segments:
        for node in nodes:
            yield from _flatten(node)
        return
    head, rest = segments[0], segments[1:]
    for node in nodes:
        for item in _flatten(node):
            yield from _walk(_children(item, head), rest)


def resolve(node_or_list: Any, path: str) -> Iterator[Any]:
    """
    Yield every value found at ``path`` below ``node_or_list``.

    Args:
        node_or_list: A resource dict, any nested element, or a list of them.
        path:         Dotted element path.  An empty path yields the input
                      itself (flattened when it is a list).

    Yields:
        Resolved values in document order.  Lists at the leaf are flattened,
        ``None`` values are dropped.
    """
    return _walk([node_or_list], _split(path or ""))


def first(node_or_list: Any, path: str) -> Optional[Any]:
    """Return the first value resolved at ``path``, or None."""
    return next(resolve(node_or_list, path), None)


def is_present(value: Any) -> bool:
    """True for any value other than None, empty strings and empty containers."""
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def exists(
    node: Any,
    path: str,
    predicate: Optional[Callable[[Any], bool]] = None,
) -> bool:
    """
    Check whether any value resolved at ``path`` satisfies ``predicate``.

    Stops at the first match.  Without a predicate, any present, non-empty
    value counts.

    Args:
        node:      Resource, element, or list of either.
        path:      Dotted element path.
        predicate: Optional test applied to each resolved value.

    Returns:
        bool: True when at least one resolved value passes.
    """
    check = predicate or is_present
    return any(check(value) for value in resolve(node, path))
