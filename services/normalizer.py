"""Turn document-store values into plain JSON-compatible structures.

Every temporal value is first classified into one of three explicit variants
(:class:`StoreTimestamp`, :class:`IsoString`, :class:`UnixSeconds`) and then
converted.  The recursive walk only classifies store-native shapes; strings and
numbers are reinterpreted as timestamps only through :func:`tag_temporal`,
which callers use for fields they know hold a date.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Set, Union

from dateutil.parser import parse as dateutil_parse

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64

# Numeric epochs above this are treated as milliseconds.
_MILLISECOND_THRESHOLD = 1e11

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Tagged temporal variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreTimestamp:
    seconds: int
    nanoseconds: int = 0

    kind = "store-timestamp"


@dataclass(frozen=True)
class IsoString:
    text: str

    kind = "iso-string"


@dataclass(frozen=True)
class UnixSeconds:
    value: float

    kind = "unix-seconds"


Temporal = Union[StoreTimestamp, IsoString, UnixSeconds]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _from_datetime(value: datetime) -> StoreTimestamp:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    nanoseconds = getattr(value, "nanosecond", None)
    if not isinstance(nanoseconds, int) or not nanoseconds:
        nanoseconds = delta.microseconds * 1000
    return StoreTimestamp(seconds=seconds, nanoseconds=nanoseconds)


def _pair(value: Mapping[str, Any], seconds_key: str, nanos_key: str) -> Optional[StoreTimestamp]:
    if set(value.keys()) != {seconds_key, nanos_key}:
        return None
    seconds, nanos = value[seconds_key], value[nanos_key]
    if not (_is_number(seconds) and _is_number(nanos)):
        return None
    return StoreTimestamp(seconds=int(seconds), nanoseconds=int(nanos))


def tag_store_value(value: Any) -> Optional[Temporal]:
    """Classify store-native timestamp shapes; ``None`` for anything else."""

    if isinstance(value, datetime):
        return _from_datetime(value)
    if isinstance(value, date):
        return _from_datetime(datetime(value.year, value.month, value.day))
    if isinstance(value, Mapping):
        tagged = _pair(value, "seconds", "nanoseconds") or _pair(value, "_seconds", "_nanoseconds")
        if tagged is not None:
            return tagged
        if set(value.keys()) == {"_seconds"} and _is_number(value["_seconds"]):
            return UnixSeconds(float(value["_seconds"]))
        return None
    for method in ("to_datetime", "ToDatetime"):
        converter = getattr(value, method, None)
        if callable(converter):
            try:
                converted = converter()
            except (TypeError, ValueError, OverflowError) as exc:
                LOGGER.warning("Timestamp-like %r failed to convert: %s", value, exc)
                return None
            if isinstance(converted, datetime):
                return _from_datetime(converted)
    return None


def tag_temporal(value: Any) -> Optional[Temporal]:
    """Classify a value read from a field known to hold a timestamp."""

    tagged = tag_store_value(value)
    if tagged is not None:
        return tagged
    if isinstance(value, str) and value.strip():
        return IsoString(value.strip())
    if _is_number(value) and not math.isnan(value):
        return UnixSeconds(float(value))
    return None


def to_datetime(tagged: Temporal) -> datetime:
    """Convert a tagged value to an aware UTC datetime.

    Raises ``ValueError`` when the value cannot be represented.
    """

    try:
        if isinstance(tagged, StoreTimestamp):
            return _EPOCH + timedelta(
                seconds=tagged.seconds, microseconds=tagged.nanoseconds // 1000
            )
        if isinstance(tagged, UnixSeconds):
            seconds = tagged.value
            if abs(seconds) >= _MILLISECOND_THRESHOLD:
                seconds = seconds / 1000.0
            return _EPOCH + timedelta(seconds=seconds)
        if isinstance(tagged, IsoString):
            parsed = dateutil_parse(tagged.text)
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (OverflowError, OSError, TypeError) as exc:
        raise ValueError(f"Could not convert {tagged!r}: {exc}") from exc
    raise ValueError(f"Unsupported temporal value {tagged!r}")


def to_iso(tagged: Temporal) -> str:
    moment = to_datetime(tagged)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort conversion of any timestamp representation to UTC."""

    tagged = tag_temporal(value)
    if tagged is None:
        return None
    try:
        return to_datetime(tagged)
    except ValueError:
        LOGGER.debug("Unparseable timestamp %r", value)
        return None


# ---------------------------------------------------------------------------
# Recursive normalisation
# ---------------------------------------------------------------------------


def normalize_value(value: Any, *, max_depth: int = DEFAULT_MAX_DEPTH) -> Any:
    """Return ``value`` with store-native types replaced by plain values.

    Timestamps become ISO-8601 strings, document references become their path
    and geo points become ``{"latitude", "longitude"}`` mappings.  A value that
    looks like a timestamp but cannot be converted is returned as-is.
    """

    return _normalize(value, 0, max_depth, set())


def _normalize(value: Any, depth: int, max_depth: int, active: Set[int]) -> Any:
    if value is None or isinstance(value, (str, bytes, bool, int, float)):
        return value

    tagged = tag_store_value(value)
    if tagged is not None:
        try:
            return to_iso(tagged)
        except ValueError as exc:
            LOGGER.warning("Leaving unconvertible timestamp as-is: %s", exc)
            return value

    if isinstance(value, (Mapping, list, tuple)):
        if depth >= max_depth:
            LOGGER.warning("Nesting deeper than %s levels left unnormalised", max_depth)
            return value
        marker = id(value)
        if marker in active:
            LOGGER.warning("Self-referential value replaced with null")
            return None
        active.add(marker)
        try:
            if isinstance(value, Mapping):
                return {
                    str(key): _normalize(item, depth + 1, max_depth, active)
                    for key, item in value.items()
                }
            return [_normalize(item, depth + 1, max_depth, active) for item in value]
        finally:
            active.discard(marker)

    path = getattr(value, "path", None)
    if isinstance(path, str) and hasattr(value, "id"):
        return path
    latitude = getattr(value, "latitude", None)
    longitude = getattr(value, "longitude", None)
    if _is_number(latitude) and _is_number(longitude):
        return {"latitude": latitude, "longitude": longitude}
    return value
