"""
Data models for the mode resolver.

This module defines the signal payloads (attribution records, deep-link
signals), the persisted state, and the records published to the
presentation layer.
"""

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Iterator, Optional, Union

from .enums import AppState, EvaluationReason, Mode

AttributionValue = Union[str, int, float, bool, None]

ORGANIC_STATUS = "Organic"
STATUS_KEYS = ("af_status", "status")


def normalize_value(value: Any) -> AttributionValue:
    """
    Coerce a loosely-typed payload value into the closed value variant.

    Scalars pass through unchanged; nested containers and other objects are
    flattened to their JSON (or ``str``) representation.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


class _FrozenPayload(Mapping):
    """Immutable string-keyed mapping of normalized values."""

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping] = None) -> None:
        normalized = {
            str(key): normalize_value(value) for key, value in (data or {}).items()
        }
        object.__setattr__(self, "_data", MappingProxyType(normalized))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __getitem__(self, key: str) -> AttributionValue:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({dict(self._data)!r})"

    def to_dict(self) -> dict:
        """Return a mutable copy of the payload."""
        return dict(self._data)


class DeepLinkSignal(_FrozenPayload):
    """Parameters extracted from a resolved deep link."""

    __slots__ = ()


class AttributionRecord(_FrozenPayload):
    """Normalized result of an install-attribution lookup."""

    __slots__ = ()

    @property
    def status(self) -> Optional[str]:
        """The attribution status (``af_status``, falling back to ``status``)."""
        for key in STATUS_KEYS:
            value = self._data.get(key)
            if value is not None:
                return str(value)
        return None

    @property
    def is_organic(self) -> bool:
        return self.status == ORGANIC_STATUS

    def merged_with(self, deep_link: Optional[Mapping]) -> "AttributionRecord":
        """
        Merge deep-link parameters into this record.

        Deep-link values only fill keys this record does not already have.
        """
        merged = dict(self._data)
        for key, value in (deep_link or {}).items():
            if str(key) not in merged:
                merged[str(key)] = value
        return AttributionRecord(merged)


@dataclass
class PersistentState:
    """Durable, process-wide engine state."""

    has_run_before: bool = False
    app_state: AppState = AppState.UNSET
    stored_destination_url: Optional[str] = None
    permission_granted: bool = False
    permission_denied: bool = False
    last_permission_request_at: Optional[float] = None  # unix seconds
    pending_temp_url: Optional[str] = None
    push_token: Optional[str] = None
    tracking_id: Optional[str] = None
    tracking_sent: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["app_state"] = self.app_state.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PersistentState":
        try:
            app_state = AppState(data.get("app_state", AppState.UNSET.value))
        except ValueError:
            app_state = AppState.UNSET
        last_request = data.get("last_permission_request_at")
        return cls(
            has_run_before=bool(data.get("has_run_before", False)),
            app_state=app_state,
            stored_destination_url=data.get("stored_destination_url"),
            permission_granted=bool(data.get("permission_granted", False)),
            permission_denied=bool(data.get("permission_denied", False)),
            last_permission_request_at=(
                float(last_request) if last_request is not None else None
            ),
            pending_temp_url=data.get("pending_temp_url"),
            push_token=data.get("push_token"),
            tracking_id=data.get("tracking_id"),
            tracking_sent=bool(data.get("tracking_sent", False)),
        )


@dataclass
class StoredState:
    """Complete stored state with HMAC protection."""

    version: int
    state: PersistentState
    last_updated: str
    hmac: str


@dataclass(frozen=True)
class Evaluation:
    """Result of a mode evaluation together with the rule that fired."""

    mode: Mode
    reason: EvaluationReason


@dataclass(frozen=True)
class ModeTransition:
    """A mode published to the presentation layer."""

    mode: Mode
    destination_url: Optional[str]
    epoch: int
    reason: str
    timestamp: str
    permission_prompt: bool = False
