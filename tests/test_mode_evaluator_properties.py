"""
Property-based tests for the Mode Evaluator and Permission Gate.

Uses Hypothesis for property-based testing to verify the evaluation rule
order and the permission cooldown boundaries.
"""

from datetime import datetime, timedelta, timezone

from hypothesis import given, settings, assume
from hypothesis import strategies as st

from mode_resolver.enums import AppState, EvaluationReason, Mode
from mode_resolver.mode_evaluator import (
    EvaluationContext,
    ModeEvaluator,
    is_date_gate_open,
    is_valid_url,
)
from mode_resolver.models import AttributionRecord
from mode_resolver.permission_gate import PermissionGate
from mode_resolver.state_store import StateStore


# Strategies for generating test data

def attribution_value_strategy() -> st.SearchStrategy:
    return st.one_of(
        st.none(),
        st.booleans(),
        st.integers(min_value=-10**6, max_value=10**6),
        st.text(max_size=20),
    )


def non_empty_attribution_strategy() -> st.SearchStrategy[dict]:
    return st.dictionaries(
        keys=st.text(min_size=1, max_size=12).filter(
            lambda k: k not in ("af_status", "status")
        ),
        values=attribution_value_strategy(),
        min_size=1,
        max_size=6,
    )


def valid_url_strategy() -> st.SearchStrategy[str]:
    return st.builds(
        lambda host, path: f"https://{host}.example.com/{path}",
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=10),
        st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", max_size=10),
    )


def optional_url_strategy() -> st.SearchStrategy:
    return st.one_of(st.none(), valid_url_strategy(), st.just("not a url"))


class TestRuleOrderProperty:
    """
    Property 1: The first matching rule decides the mode.
    """

    @given(
        is_first_run=st.booleans(),
        current_url=optional_url_strategy(),
        pending_url=optional_url_strategy(),
        app_state=st.sampled_from(list(AppState)),
    )
    @settings(max_examples=100)
    def test_empty_attribution_is_legacy(
        self, is_first_run: bool, current_url, pending_url, app_state: AppState
    ) -> None:
        """
        Property 1a: An empty attribution always evaluates to LEGACY,
        regardless of every other input.
        """
        evaluation = ModeEvaluator().explain(
            {}, is_first_run, current_url, pending_url, app_state
        )
        assert evaluation.mode == Mode.LEGACY
        assert evaluation.reason == EvaluationReason.EMPTY_ATTRIBUTION

    @given(
        attribution=non_empty_attribution_strategy(),
        status=st.sampled_from(["Organic", "Non-organic", None]),
        is_first_run=st.booleans(),
        current_url=optional_url_strategy(),
        pending_url=optional_url_strategy(),
    )
    @settings(max_examples=100)
    def test_sticky_legacy_marker_wins(
        self, attribution: dict, status, is_first_run: bool, current_url, pending_url
    ) -> None:
        """
        Property 1b: Once the inactive marker is persisted, any non-empty
        attribution evaluates to LEGACY.
        """
        if status is not None:
            attribution = dict(attribution, af_status=status)
        mode = ModeEvaluator().evaluate(
            attribution, is_first_run, current_url, pending_url, AppState.INACTIVE
        )
        assert mode == Mode.LEGACY

    @given(
        attribution=non_empty_attribution_strategy(),
        current_url=optional_url_strategy(),
        pending_url=optional_url_strategy(),
        app_state=st.sampled_from([AppState.UNSET, AppState.ACTIVE]),
        status_key=st.sampled_from(["af_status", "status"]),
    )
    @settings(max_examples=100)
    def test_first_run_organic_waits_for_deep_link(
        self, attribution: dict, current_url, pending_url, app_state: AppState, status_key: str
    ) -> None:
        """
        Property 1c: A first-run organic install waits for a deep link even
        when a pushed URL is pending.
        """
        attribution = dict(attribution, **{status_key: "Organic"})
        evaluation = ModeEvaluator().explain(
            attribution, True, current_url, pending_url, app_state
        )
        assert evaluation.mode == Mode.SETUP
        assert evaluation.reason == EvaluationReason.AWAIT_DEEP_LINK

    @given(
        attribution=non_empty_attribution_strategy(),
        pending_url=valid_url_strategy(),
        is_first_run=st.booleans(),
    )
    @settings(max_examples=100)
    def test_pending_url_without_current_url_is_operational(
        self, attribution: dict, pending_url: str, is_first_run: bool
    ) -> None:
        """
        Property 1d: A valid pending URL with no current URL evaluates to
        OPERATIONAL for non-organic attribution.
        """
        attribution = dict(attribution, af_status="Non-organic")
        evaluation = ModeEvaluator().explain(attribution, is_first_run, None, pending_url)
        assert evaluation.mode == Mode.OPERATIONAL
        assert evaluation.reason == EvaluationReason.PENDING_URL

    @given(
        attribution=non_empty_attribution_strategy(),
        pending_url=optional_url_strategy(),
        current_url=valid_url_strategy(),
    )
    @settings(max_examples=100)
    def test_known_current_url_falls_through_to_config(
        self, attribution: dict, pending_url, current_url: str
    ) -> None:
        """
        Property 1e: With a current URL held, a pending URL does not apply
        and the evaluation falls through to the config rule.
        """
        evaluation = ModeEvaluator().explain(attribution, False, current_url, pending_url)
        assert evaluation.mode == Mode.SETUP
        assert evaluation.reason == EvaluationReason.FETCH_CONFIG

    def test_invalid_pending_url_is_ignored(self) -> None:
        evaluation = ModeEvaluator().explain(
            {"af_status": "Non-organic"}, False, None, "not a url"
        )
        assert evaluation.reason == EvaluationReason.FETCH_CONFIG

    def test_organic_after_first_run_fetches_config(self) -> None:
        evaluation = ModeEvaluator().explain({"af_status": "Organic"}, False, None, None)
        assert evaluation.reason == EvaluationReason.FETCH_CONFIG

    def test_context_and_record_inputs_agree(self) -> None:
        evaluator = ModeEvaluator()
        record = AttributionRecord({"af_status": "Organic", "campaign": "x"})
        context = EvaluationContext(
            attribution=record,
            is_first_run=True,
            current_url=None,
            pending_temp_url=None,
        )
        assert evaluator.evaluate_context(context) == evaluator.explain(
            record.to_dict(), True, None, None
        )


class TestEvaluatorPurityProperty:
    """
    Property 2: Evaluation is deterministic and has no side effects.
    """

    @given(
        attribution=st.one_of(st.just({}), non_empty_attribution_strategy()),
        is_first_run=st.booleans(),
        current_url=optional_url_strategy(),
        pending_url=optional_url_strategy(),
        app_state=st.sampled_from(list(AppState)),
    )
    @settings(max_examples=100)
    def test_repeated_evaluation_is_stable(
        self, attribution: dict, is_first_run: bool, current_url, pending_url, app_state
    ) -> None:
        evaluator = ModeEvaluator()
        snapshot = dict(attribution)
        first = evaluator.explain(attribution, is_first_run, current_url, pending_url, app_state)
        second = evaluator.explain(attribution, is_first_run, current_url, pending_url, app_state)
        assert first == second
        assert attribution == snapshot


class TestUrlAndDateGate:
    """URL validity and date gate boundaries."""

    @given(url=valid_url_strategy())
    @settings(max_examples=50)
    def test_https_urls_are_valid(self, url: str) -> None:
        assert is_valid_url(url)

    def test_invalid_urls(self) -> None:
        for value in (None, "", "example.com", "/relative/path", "https://", "not a url"):
            assert not is_valid_url(value)

    @given(offset_seconds=st.integers(min_value=-10**7, max_value=10**7))
    @settings(max_examples=100)
    def test_date_gate_opens_at_cutoff(self, offset_seconds: int) -> None:
        cutoff = datetime(2025, 12, 21, tzinfo=timezone.utc)
        now = cutoff + timedelta(seconds=offset_seconds)
        assert is_date_gate_open(now, cutoff) == (offset_seconds >= 0)


class _FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestPermissionGateProperty:
    """
    Property 3: The prompt is suppressed after an answer and during the
    cooldown following a skip.
    """

    BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _gate(self, cooldown: float = 259200.0):
        store = StateStore(file_path=None, hmac_secret="test-secret")
        clock = _FixedClock(self.BASE)
        return store, clock, PermissionGate(store, cooldown_seconds=cooldown, clock=clock)

    def test_fresh_state_prompts(self) -> None:
        _, _, gate = self._gate()
        assert gate.should_prompt()

    @given(granted=st.booleans(), later=st.integers(min_value=0, max_value=10**8))
    @settings(max_examples=50)
    def test_answer_is_terminal(self, granted: bool, later: int) -> None:
        store, clock, gate = self._gate()
        gate.record_response(granted)
        clock.now = self.BASE + timedelta(seconds=later)
        assert not gate.should_prompt()
        assert store.permission_granted == granted
        assert store.permission_denied == (not granted)

    def test_cooldown_boundaries(self) -> None:
        store, clock, gate = self._gate()
        gate.record_skip()
        assert not store.permission_denied

        clock.now = self.BASE + timedelta(seconds=259199)
        assert not gate.should_prompt()

        clock.now = self.BASE + timedelta(seconds=259201)
        assert gate.should_prompt()

    @given(
        cooldown=st.integers(min_value=1, max_value=10**6),
        elapsed=st.integers(min_value=0, max_value=2 * 10**6),
    )
    @settings(max_examples=100)
    def test_skip_suppresses_for_cooldown(self, cooldown: int, elapsed: int) -> None:
        assume(elapsed != cooldown)
        _, clock, gate = self._gate(cooldown=float(cooldown))
        gate.record_skip()
        clock.now = self.BASE + timedelta(seconds=elapsed)
        assert gate.should_prompt() == (elapsed > cooldown)
