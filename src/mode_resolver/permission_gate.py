"""
Permission Gate for the notification permission prompt.

Decides whether the user should be asked for permission now. Granting and
denying are both terminal; skipping only starts a cooldown.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from .state_store import StateStore

DEFAULT_COOLDOWN_SECONDS = 259200.0  # 3 days


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PermissionGate:
    """Cooldown-based permission prompt decision backed by the state store."""

    def __init__(
        self,
        store: StateStore,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock or _utc_now

    def should_prompt(self) -> bool:
        """
        True if the permission prompt should be shown now.

        False once permission was granted or denied, and for
        ``cooldown_seconds`` after the last skip.
        """
        if self._store.permission_granted or self._store.permission_denied:
            return False

        last_request = self._store.last_permission_request_at
        if last_request is not None:
            elapsed = self._clock().timestamp() - last_request
            if elapsed < self._cooldown_seconds:
                return False

        return True

    def record_skip(self) -> None:
        """Stamp the current time as the last request. Not a denial."""
        self._store.last_permission_request_at = self._clock().timestamp()

    def record_response(self, granted: bool) -> None:
        """Record the user's answer; a refusal is permanent."""
        self._store.permission_granted = granted
        if not granted:
            self._store.permission_denied = True

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds
