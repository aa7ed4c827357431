"""
Mode Evaluator for launch mode determination.

Pure decision logic: given the current signals it names the mode the
engine should move towards. It performs no I/O and reads no global state;
the sticky app-state marker is passed in by the caller.

Rule order (first match wins):
1. Empty attribution -> LEGACY
2. Sticky legacy marker set -> LEGACY
3. First run with an "Organic" attribution status -> SETUP (await deep link)
4. Valid pending URL and no current URL -> OPERATIONAL
5. Otherwise -> SETUP (fetch server config)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional
from urllib.parse import urlparse

from .enums import AppState, EvaluationReason, Mode
from .models import AttributionRecord, Evaluation


def is_valid_url(value: Optional[str]) -> bool:
    """True if ``value`` parses as an absolute URL with a scheme and host."""
    if not value or not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def is_date_gate_open(now: datetime, cutoff: datetime) -> bool:
    """The operational path is only allowed on or after the cutoff instant."""
    return now >= cutoff


@dataclass
class EvaluationContext:
    """All inputs of a single evaluation."""

    attribution: Mapping
    is_first_run: bool
    current_url: Optional[str]
    pending_temp_url: Optional[str]
    app_state: AppState = AppState.UNSET


class ModeEvaluator:
    """Evaluates the target mode from the current signals."""

    def evaluate(
        self,
        attribution: Mapping,
        is_first_run: bool,
        current_url: Optional[str],
        pending_temp_url: Optional[str],
        app_state: AppState = AppState.UNSET,
    ) -> Mode:
        """
        Evaluate the target mode.

        Args:
            attribution: Current attribution record (any string-keyed mapping)
            is_first_run: True if the app has never completed a resolution
            current_url: Destination URL already held in memory, if any
            pending_temp_url: Pushed URL waiting to be shown, if any
            app_state: Persisted app-state marker

        Returns:
            The target Mode
        """
        return self.explain(
            attribution, is_first_run, current_url, pending_temp_url, app_state
        ).mode

    def explain(
        self,
        attribution: Mapping,
        is_first_run: bool,
        current_url: Optional[str],
        pending_temp_url: Optional[str],
        app_state: AppState = AppState.UNSET,
    ) -> Evaluation:
        """Evaluate and report which rule decided the mode."""
        if not attribution:
            return Evaluation(Mode.LEGACY, EvaluationReason.EMPTY_ATTRIBUTION)

        if app_state == AppState.INACTIVE:
            return Evaluation(Mode.LEGACY, EvaluationReason.STICKY_LEGACY)

        record = (
            attribution
            if isinstance(attribution, AttributionRecord)
            else AttributionRecord(attribution)
        )
        if is_first_run and record.is_organic:
            return Evaluation(Mode.SETUP, EvaluationReason.AWAIT_DEEP_LINK)

        if is_valid_url(pending_temp_url) and current_url is None:
            return Evaluation(Mode.OPERATIONAL, EvaluationReason.PENDING_URL)

        return Evaluation(Mode.SETUP, EvaluationReason.FETCH_CONFIG)

    def evaluate_context(self, context: EvaluationContext) -> Evaluation:
        return self.explain(
            context.attribution,
            context.is_first_run,
            context.current_url,
            context.pending_temp_url,
            context.app_state,
        )
