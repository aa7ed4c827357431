"""
Typed events consumed by the orchestrator.

External collaborators submit the public events; the orchestrator queues the
internal completion events itself so that every state mutation happens on
its single consumer task.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from .exceptions import FetchError
from .models import AttributionRecord, DeepLinkSignal


@dataclass(frozen=True)
class AttributionReceived:
    """Attribution data delivered by the attribution collaborator."""

    record: AttributionRecord = field(default_factory=AttributionRecord)


@dataclass(frozen=True)
class DeepLinkReceived:
    """Deep-link parameters resolved by the attribution collaborator."""

    signal: DeepLinkSignal = field(default_factory=DeepLinkSignal)


@dataclass(frozen=True)
class TempUrlReceived:
    """A destination URL pushed in from outside (e.g. a notification)."""

    url: str


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool


@dataclass(frozen=True)
class PermissionAnswered:
    granted: bool


@dataclass(frozen=True)
class PermissionSkipped:
    pass


@dataclass(frozen=True)
class DeepLinkWaitElapsed:
    epoch: int


@dataclass(frozen=True)
class DateGateElapsed:
    epoch: int


@dataclass(frozen=True)
class AttributionFetchCompleted:
    epoch: int
    record: Optional[AttributionRecord] = None
    error: Optional[FetchError] = None


@dataclass(frozen=True)
class ConfigFetchCompleted:
    epoch: int
    url: Optional[str] = None
    error: Optional[FetchError] = None


ExternalEvent = Union[
    AttributionReceived,
    DeepLinkReceived,
    TempUrlReceived,
    ConnectivityChanged,
    PermissionAnswered,
    PermissionSkipped,
]

Event = Union[
    ExternalEvent,
    DeepLinkWaitElapsed,
    DateGateElapsed,
    AttributionFetchCompleted,
    ConfigFetchCompleted,
]
