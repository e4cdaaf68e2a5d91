"""
search_values.py
----------------
US Core Conformance Engine — Search Value Synthesizer
-----------------------------------------------------
Turns data found on a server's own resources into search parameter values
that are guaranteed to match those resources, and implements the FHIR date
search semantics used to check what the server sent back.

Date precision:
    FHIR dates are ranges.  ``2019`` covers the whole year, ``2019-05`` the
    whole month, ``2019-05-01`` the whole day, while a full dateTime is a
    single instant.  parse_date_range() returns the inclusive range a value
    covers; comparator_value() keeps the precision of the value it is given.

Key functions:
    value_for_search_param: Canonical search string for a resolved element.
    comparator_value:       Prefixed date value (gt/lt/le/ge) derived from
                            a date, dateTime or Period that must still match.
    parse_date_range:       FHIR date/dateTime → inclusive (start, end).
    period_range:           Period → (start, end) with open ends unbounded.
    date_matches:           Does a target date/Period satisfy a search value.

Project: US Core Conformance Engine
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Tuple

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DATE_PREFIXES = ("eq", "ne", "gt", "lt", "ge", "le", "sa", "eb", "ap")

PRECISION_YEAR = "year"
PRECISION_MONTH = "month"
PRECISION_DAY = "day"
PRECISION_DATETIME = "datetime"

_YEAR_RE = re.compile(r"^(\d{4})$")
_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DATETIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2})(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?$"
)

_MIN = datetime.min.replace(tzinfo=timezone.utc)
_MAX = datetime.max.replace(tzinfo=timezone.utc)
_ONE_SECOND = timedelta(seconds=1)
_ONE_DAY = timedelta(days=1)

_ADDRESS_KEYS = ("text", "city", "state", "postalCode", "country")


class DateFormatError(ValueError):
    """Raised when a value is not a FHIR date, dateTime or instant."""


# ---------------------------------------------------------------------------
# Canonical search values
# ---------------------------------------------------------------------------

def _canonical(element: Any, include_system: bool) -> Optional[str]:
    if element is None:
        return None
    if isinstance(element, bool):
        return "true" if element else "false"
    if isinstance(element, (int, float)):
        return str(element)
    if isinstance(element, str):
        return element or None
    if not isinstance(element, dict):
        return None

    if "coding" in element:
        for coding in element.get("coding") or []:
            value = _canonical(coding, include_system)
            if value:
                return value
        return None
    if "reference" in element:
        return element.get("reference") or None
    if "start" in element or "end" in element:
        return element.get("start") or element.get("end")
    if "family" in element or "given" in element:
        given = element.get("given") or []
        return element.get("family") or (given[0] if given else None) or element.get("text")
    if any(key in element for key in ("line", "city", "postalCode", "country")):
        for key in _ADDRESS_KEYS:
            if element.get(key):
                return element[key]
        return None
    if "code" in element:
        code = element.get("code")
        if code and include_system and element.get("system"):
            return f"{element['system']}|{code}"
        return code or None
    if "value" in element:
        value = element.get("value")
        if value is None:
            return None
        if include_system and element.get("system"):
            return f"{element['system']}|{value}"
        return str(value)
    return None


def value_for_search_param(
    resolved_values: Any,
    include_system: bool = False,
) -> Optional[str]:
    """
    Pick the canonical search value from elements resolved off a resource.

    Args:
        resolved_values: A single element or an iterable of elements as
                         produced by ``path_resolver.resolve``.
        include_system:  Emit ``system|code`` / ``system|value`` for coded
                         and identifier elements.

    Returns:
        The first usable value (CodeableConcept → first code, Reference →
        reference, Period → start else end, HumanName → family, Address →
        text/city/state/postalCode/country, scalars → their string), or
        None when no element yields one.
    """
    if isinstance(resolved_values, (dict, str, int, float, bool)) or resolved_values is None:
        candidates: Iterable[Any] = [resolved_values]
    else:
        candidates = resolved_values
    for element in candidates:
        value = _canonical(element, include_system)
        if value:
            return value
    return None


# ---------------------------------------------------------------------------
# Date parsing
# ---------------------------------------------------------------------------

def _tz(offset: Optional[str]) -> timezone:
    if not offset or offset == "Z":
        return timezone.utc
    sign = 1 if offset[0] == "+" else -1
    hours, minutes = offset[1:].split(":")
    return timezone(sign * timedelta(hours=int(hours), minutes=int(minutes)))


def precision_of(value: str) -> str:
    """Return the precision keyword of a FHIR date or dateTime string."""
    if _YEAR_RE.match(value):
        return PRECISION_YEAR
    if _MONTH_RE.match(value):
        return PRECISION_MONTH
    if _DAY_RE.match(value):
        return PRECISION_DAY
    if _DATETIME_RE.match(value):
        return PRECISION_DATETIME
    raise DateFormatError(f"Not a FHIR date or dateTime: {value!r}")


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def parse_date_range(value: str) -> Tuple[datetime, datetime]:
    """
    Return the inclusive instant range covered by a FHIR date or dateTime.

    Partial dates end one second before the next period starts.  Values
    without a timezone are read as UTC.

    Raises:
        DateFormatError: if ``value`` is not a FHIR date/dateTime.
    """
    precision = precision_of(value)
    if precision == PRECISION_YEAR:
        year = int(value)
        start = datetime(year, 1, 1, tzinfo=timezone.utc)
        return start, datetime(year + 1, 1, 1, tzinfo=timezone.utc) - _ONE_SECOND
    if precision == PRECISION_MONTH:
        year, month = (int(part) for part in _MONTH_RE.match(value).groups())
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        next_year, next_month = _add_months(year, month, 1)
        return start, datetime(next_year, next_month, 1, tzinfo=timezone.utc) - _ONE_SECOND
    if precision == PRECISION_DAY:
        start = datetime.combine(date.fromisoformat(value), datetime.min.time(), timezone.utc)
        return start, start + _ONE_DAY - _ONE_SECOND

    year, month, day, hour, minute, second, fraction, offset = _DATETIME_RE.match(value).groups()
    micro = int(round(float(fraction) * 1_000_000)) if fraction else 0
    instant = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second or 0),
        min(micro, 999_999), tzinfo=_tz(offset),
    )
    return instant, instant


def period_range(period: dict) -> Tuple[datetime, datetime]:
    """Range of a FHIR Period; a missing start or end is unbounded."""
    start = parse_date_range(period["start"])[0] if period.get("start") else _MIN
    end = parse_date_range(period["end"])[1] if period.get("end") else _MAX
    return start, end


def _target_range(target: Any) -> Tuple[datetime, datetime]:
    if isinstance(target, dict):
        return period_range(target)
    return parse_date_range(str(target))


def split_prefix(search_value: str) -> Tuple[str, str]:
    """Split ``gt2019-01-01`` into ``("gt", "2019-01-01")``; default prefix eq."""
    prefix = search_value[:2]
    if prefix in DATE_PREFIXES and search_value[2:3].isdigit():
        return prefix, search_value[2:]
    return "eq", search_value


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def date_matches(search_value: str, target: Any, now: Optional[datetime] = None) -> bool:
    """
    Check a target date, dateTime or Period against a date search value.

    Follows FHIR R4 search prefix semantics, comparing the range the search
    value covers with the range the target covers.

    Args:
        search_value: Value as sent in the query, e.g. ``le2019-05-01``.
        target:       Date/dateTime string or Period dict from the resource.
        now:          Reference instant for ``ap``; defaults to current UTC.

    Returns:
        bool: True when the target satisfies the search.

    Raises:
        DateFormatError: if either side is not a FHIR date.
    """
    prefix, raw = split_prefix(search_value)
    search_start, search_end = parse_date_range(raw)
    target_start, target_end = _target_range(target)

    if prefix == "eq":
        return target_start <= search_end and target_end >= search_start
    if prefix == "ne":
        return target_start > search_end or search_start > target_end
    if prefix == "gt":
        return target_end > search_end
    if prefix == "lt":
        return target_start < search_start
    if prefix == "ge":
        return target_end >= search_start
    if prefix == "le":
        return target_start <= search_end
    if prefix == "sa":
        return target_start > search_end
    if prefix == "eb":
        return target_end < search_start
    # ap: within ten percent of the distance from now, at least one day
    reference = now or datetime.now(timezone.utc)
    margin = max(abs(search_start - reference) * 0.1, _ONE_DAY)
    return target_start <= search_end + margin and target_end >= search_start - margin


# ---------------------------------------------------------------------------
# Comparator values
# ---------------------------------------------------------------------------

def shift_date(value: str, units: int) -> str:
    """
    Move a FHIR date/dateTime string by ``units`` of its own precision.

    Years, months and days shift the partial date; a full dateTime shifts
    by whole days so its time and timezone text stay untouched.
    """
    precision = precision_of(value)
    if precision == PRECISION_YEAR:
        return f"{int(value) + units:04d}"
    if precision == PRECISION_MONTH:
        year, month = (int(part) for part in _MONTH_RE.match(value).groups())
        year, month = _add_months(year, month, units)
        return f"{year:04d}-{month:02d}"
    day = date.fromisoformat(value[:10]) + timedelta(days=units)
    return day.isoformat() + value[10:]


def _boundary(baseline: Any, prefer: str) -> str:
    if isinstance(baseline, dict):
        other = "end" if prefer == "start" else "start"
        value = baseline.get(prefer) or baseline.get(other)
        if not value:
            raise DateFormatError("Period has neither start nor end")
        return value
    if not baseline:
        raise DateFormatError("No date value to derive a comparator from")
    return str(baseline)


def comparator_value(comparator: str, baseline: Any) -> str:
    """
    Build a prefixed date search value the baseline resource still matches.

    Args:
        comparator: ``gt``, ``lt``, ``le``, ``ge`` or ``eq``.
        baseline:   Date/dateTime string or Period dict taken from a
                    resource the server already returned.

    Returns:
        ``gt`` one unit before the lower boundary (Period start), ``lt`` one
        unit after the upper boundary (Period end), ``le`` the upper
        boundary itself, ``ge`` and ``eq`` the lower boundary itself.  The
        source precision is preserved.

    Raises:
        ValueError: for comparators that cannot be derived this way.
    """
    if comparator == "gt":
        return "gt" + shift_date(_boundary(baseline, "start"), -1)
    if comparator == "lt":
        return "lt" + shift_date(_boundary(baseline, "end"), 1)
    if comparator == "le":
        return "le" + _boundary(baseline, "end")
    if comparator == "ge":
        return "ge" + _boundary(baseline, "start")
    if comparator == "eq":
        return _boundary(baseline, "start")
    raise ValueError(f"Cannot derive a '{comparator}' search value")
