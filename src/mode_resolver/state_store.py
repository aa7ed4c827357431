"""
State Store module for the persistent engine state.

Holds the first-run flag, the sticky app-state marker, the cached destination
URL, permission-gate state, the pending pushed URL and cached device
identifiers. The state lives in memory and is mirrored to a JSON file
protected by HMAC-SHA256. Every write replaces the file atomically, so the
multi-field commits below are never observably split.
"""

import hashlib
import hmac
import json
import os
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .audit_logger import AuditLogger
from .enums import AppState
from .exceptions import PersistenceError, TamperingError
from .models import PersistentState, StoredState


def generate_tracking_id() -> str:
    """Generate a device tracking id of the form ``<epoch-ms>-<19 digits>``."""
    millis = int(time.time() * 1000)
    suffix = "".join(str(secrets.randbelow(10)) for _ in range(19))
    return f"{millis}-{suffix}"


class StateStore:
    """
    Persistent engine state with HMAC protection.

    When ``file_path`` is None the store is purely in-memory. Write failures
    are logged and the in-memory value is kept, so callers never see a
    PersistenceError from the typed setters.
    """

    VERSION = 1

    def __init__(
        self,
        file_path: Optional[Path],
        hmac_secret: str,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        """
        Initialize the state store.

        Args:
            file_path: Path to the state file (JSON), or None for memory only
            hmac_secret: Secret key for HMAC computation
            logger: Optional audit logger
        """
        self._file_path = file_path
        self._hmac_secret = hmac_secret.encode("utf-8")
        self._logger = logger
        self._state = PersistentState()
        self._last_updated = ""
        self._hmac = ""

    def load(self) -> Optional[StoredState]:
        """
        Load state from file and validate HMAC.

        Returns:
            StoredState if the file exists and is valid, None if it does not exist

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If the file cannot be read or parsed
        """
        if self._file_path is None or not self._file_path.exists():
            return None

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        if not isinstance(raw_data, dict):
            raise PersistenceError(
                code="parse_error",
                message="State file does not contain an object",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        data_for_hmac = {
            "version": raw_data.get("version"),
            "state": raw_data.get("state", {}),
            "last_updated": raw_data.get("last_updated"),
        }
        computed_hmac = self.compute_hmac(data_for_hmac)

        if not self.validate_hmac(stored_hmac, computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - state may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        self._state = PersistentState.from_dict(raw_data.get("state") or {})
        self._last_updated = raw_data.get("last_updated", "")
        self._hmac = stored_hmac

        return StoredState(
            version=raw_data.get("version", self.VERSION),
            state=self._state,
            last_updated=self._last_updated,
            hmac=stored_hmac,
        )

    def load_or_default(self) -> PersistentState:
        """
        Load state, falling back to defaults when the file is unusable.

        A corrupt or tampered file is logged and ignored; the next write
        replaces it.
        """
        try:
            self.load()
        except PersistenceError as e:
            self._state = PersistentState()
            self._log_error("Failed to load state, using defaults", e)
        return self._state

    def save(self) -> None:
        """
        Write the current state to file with HMAC protection.

        Raises:
            PersistenceError: If the file cannot be written
        """
        now = datetime.now(timezone.utc).isoformat()
        state_dict = self._state.to_dict()
        data_for_hmac = {
            "version": self.VERSION,
            "state": state_dict,
            "last_updated": now,
        }
        computed_hmac = self.compute_hmac(data_for_hmac)

        if self._file_path is not None:
            output_data = dict(data_for_hmac, hmac=computed_hmac)
            self._write_atomically(output_data)

        self._last_updated = now
        self._hmac = computed_hmac

    def _write_atomically(self, output_data: dict) -> None:
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._file_path.name}.",
                dir=str(self._file_path.parent),
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(output_data, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._file_path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            )

    def _commit(self, **changes) -> None:
        """Apply field changes and persist them in one write."""
        for name, value in changes.items():
            setattr(self._state, name, value)
        try:
            self.save()
        except PersistenceError as e:
            self._log_error("Failed to persist state, keeping in-memory values", e)

    # -- commits -------------------------------------------------------------

    def commit_operational(self, url: str) -> None:
        """Store a resolved destination URL, mark the app active and run."""
        self._commit(
            stored_destination_url=url,
            app_state=AppState.ACTIVE,
            has_run_before=True,
        )

    def commit_legacy(self) -> None:
        """Set the sticky legacy marker and mark the app as run."""
        self._commit(app_state=AppState.INACTIVE, has_run_before=True)

    def cache_destination(self, url: str) -> None:
        """Refresh the cached destination URL without touching the app state."""
        self._commit(stored_destination_url=url)

    def reset(self) -> None:
        """Forget all persisted state."""
        self._state = PersistentState()
        try:
            self.save()
        except PersistenceError as e:
            self._log_error("Failed to persist reset state", e)

    # -- typed accessors -----------------------------------------------------

    @property
    def has_run_before(self) -> bool:
        return self._state.has_run_before

    @property
    def is_first_run(self) -> bool:
        return not self._state.has_run_before

    @property
    def app_state(self) -> AppState:
        return self._state.app_state

    @property
    def stored_destination_url(self) -> Optional[str]:
        return self._state.stored_destination_url

    @property
    def permission_granted(self) -> bool:
        return self._state.permission_granted

    @permission_granted.setter
    def permission_granted(self, value: bool) -> None:
        self._commit(permission_granted=bool(value))

    @property
    def permission_denied(self) -> bool:
        return self._state.permission_denied

    @permission_denied.setter
    def permission_denied(self, value: bool) -> None:
        self._commit(permission_denied=bool(value))

    @property
    def last_permission_request_at(self) -> Optional[float]:
        return self._state.last_permission_request_at

    @last_permission_request_at.setter
    def last_permission_request_at(self, value: Optional[float]) -> None:
        self._commit(last_permission_request_at=value)

    @property
    def pending_temp_url(self) -> Optional[str]:
        return self._state.pending_temp_url

    @pending_temp_url.setter
    def pending_temp_url(self, value: Optional[str]) -> None:
        self._commit(pending_temp_url=value)

    @property
    def push_token(self) -> Optional[str]:
        return self._state.push_token

    @push_token.setter
    def push_token(self, value: Optional[str]) -> None:
        self._commit(push_token=value)

    @property
    def tracking_sent(self) -> bool:
        return self._state.tracking_sent

    @tracking_sent.setter
    def tracking_sent(self, value: bool) -> None:
        self._commit(tracking_sent=bool(value))

    def ensure_tracking_id(self, configured: Optional[str] = None) -> str:
        """
        Return the device tracking id, generating and caching one if needed.

        A configured id takes precedence and is cached as well.
        """
        if configured:
            if self._state.tracking_id != configured:
                self._commit(tracking_id=configured)
            return configured
        if not self._state.tracking_id:
            self._commit(tracking_id=generate_tracking_id())
        return self._state.tracking_id

    # -- integrity -----------------------------------------------------------

    def compute_hmac(self, data: dict) -> str:
        """Compute HMAC-SHA256 over the canonical JSON serialization."""
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        """Validate HMAC using constant-time comparison."""
        if not isinstance(stored_hmac, str):
            return False
        return hmac.compare_digest(stored_hmac, computed_hmac)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(
                "StateStore",
                message,
                error=error,
                additional_data={
                    "file_path": str(self._file_path) if self._file_path else None
                },
            )

    @property
    def state(self) -> PersistentState:
        """A copy of the current in-memory state."""
        return PersistentState.from_dict(self._state.to_dict())

    @property
    def file_path(self) -> Optional[Path]:
        return self._file_path
