"""Tests for the pending authorization registry."""

import re

from salesforce_auth.oauth.state import FlowStateTracker


class Ticker:
    """Monotonic clock stand-in."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class TestIssue:
    """Tests for FlowStateTracker.issue()."""

    def test_state_is_64_hex_chars(self):
        tracker = FlowStateTracker()

        state = tracker.issue("default_user")

        assert re.fullmatch(r"[0-9a-f]{64}", state)
        assert len(tracker) == 1

    def test_states_are_unique(self):
        tracker = FlowStateTracker()

        states = {tracker.issue("u") for _ in range(50)}

        assert len(states) == 50

    def test_issue_records_owner_and_verifier(self):
        ticker = Ticker()
        tracker = FlowStateTracker(clock=ticker)

        state = tracker.issue("hint@acme.com", code_verifier="v" * 43)
        pending = tracker.consume(state)

        assert pending is not None
        assert pending.owner_id == "hint@acme.com"
        assert pending.code_verifier == "v" * 43
        assert pending.redirect_uri is None
        assert pending.created_at == 1000.0

    def test_issue_records_redirect_override(self):
        tracker = FlowStateTracker()

        state = tracker.issue("u", redirect_uri="https://other.example/cb")

        assert tracker.consume(state).redirect_uri == "https://other.example/cb"

    def test_issue_sweeps_expired_entries(self):
        ticker = Ticker()
        tracker = FlowStateTracker(timeout=600, clock=ticker)
        tracker.issue("old")

        ticker.value += 601
        tracker.issue("new")

        assert len(tracker) == 1


class TestConsume:
    """Tests for single-use consumption."""

    def test_consume_succeeds_exactly_once(self):
        tracker = FlowStateTracker()
        state = tracker.issue("u")

        assert tracker.consume(state) is not None
        assert tracker.consume(state) is None

    def test_unknown_state_is_not_found(self):
        tracker = FlowStateTracker()

        assert tracker.consume("never-issued") is None

    def test_consume_returns_expired_entry_for_caller_to_reject(self):
        """An expired entry is still removed and handed back once."""
        ticker = Ticker()
        tracker = FlowStateTracker(timeout=600, clock=ticker)
        state = tracker.issue("u")

        ticker.value += 600.5
        pending = tracker.consume(state)

        assert pending is not None
        assert tracker.is_expired(pending)
        assert tracker.consume(state) is None


class TestSweepExpired:
    """Tests for timeout-based cleanup."""

    def test_sweep_removes_only_old_entries(self):
        ticker = Ticker()
        tracker = FlowStateTracker(timeout=600, clock=ticker)
        old = tracker.issue("old")
        ticker.value += 400
        fresh = tracker.issue("fresh")
        ticker.value += 250

        removed = tracker.sweep_expired()

        assert removed == 1
        assert tracker.consume(old) is None
        assert tracker.consume(fresh) is not None

    def test_entry_at_exact_timeout_is_kept(self):
        ticker = Ticker()
        tracker = FlowStateTracker(timeout=600, clock=ticker)
        tracker.issue("u")

        ticker.value += 600

        assert tracker.sweep_expired() == 0

    def test_clear(self):
        tracker = FlowStateTracker()
        tracker.issue("a")
        tracker.issue("b")

        tracker.clear()

        assert len(tracker) == 0
