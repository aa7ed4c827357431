"""
Interfaces of the collaborators that consume resolved modes.

The resolver only decides which experience to show. The native inventory
experience and the content host implement these protocols; ``HostBinding``
connects a content host to the orchestrator's transitions.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .audit_logger import AuditLogger
from .enums import LogLevel, Mode
from .models import ModeTransition


@runtime_checkable
class InventoryStore(Protocol):
    """Local data store behind the native (legacy) experience."""

    def load_items(self) -> list[Any]: ...

    def save_items(self, items: list[Any]) -> None: ...

    def load_categories(self) -> list[Any]: ...

    def save_categories(self, categories: list[Any]) -> None: ...

    def load_reminders(self) -> list[Any]: ...

    def save_reminders(self, reminders: list[Any]) -> None: ...


def needs_tutorial(store: InventoryStore) -> bool:
    """The native experience opens with a tutorial while the inventory is empty."""
    return not store.load_items()


@runtime_checkable
class ContentHost(Protocol):
    """Presentation surface that renders whichever mode is current."""

    def show(self, url: str, permission_prompt: bool = False) -> None: ...

    def show_native(self) -> None: ...

    def show_offline(self) -> None: ...


class HostBinding:
    """Mode listener that drives a ContentHost from published transitions."""

    def __init__(self, host: ContentHost, logger: Optional[AuditLogger] = None) -> None:
        self._host = host
        self._logger = logger

    def __call__(self, transition: ModeTransition) -> None:
        if transition.mode == Mode.OPERATIONAL and transition.destination_url:
            self._host.show(transition.destination_url)
        elif transition.mode == Mode.SETUP and transition.permission_prompt:
            self._host.show(transition.destination_url or "", permission_prompt=True)
        elif transition.mode == Mode.LEGACY:
            self._host.show_native()
        elif transition.mode == Mode.DISCONNECTED:
            self._host.show_offline()
        elif self._logger:
            self._logger.log(LogLevel.DEBUG, "HostBinding", "Nothing to show", {
                "mode": transition.mode.value,
            })
