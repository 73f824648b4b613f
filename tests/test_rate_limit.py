"""Tests for the admission gate, reset scheduler and response classifier."""

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from apipacer import (
    AdmissionGate,
    ClientClosedError,
    DispatchEventListener,
    PendingRequest,
    RateLimitHeaders,
    ResetScheduler,
    ResponseClassifier,
    WindowState,
)


def make_response(status_code: int = 200, headers: dict | None = None, text: str = "") -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers or {})
    response.text = text
    return response


def acquire_within(gate: AdmissionGate, timeout: float) -> bool:
    """Return True if gate.acquire() succeeded within `timeout` seconds."""
    acquired = threading.Event()

    def worker():
        if gate.acquire():
            acquired.set()

    threading.Thread(target=worker, daemon=True).start()
    return acquired.wait(timeout)


# =============================================================================
# AdmissionGate Tests
# =============================================================================


class TestAdmissionGate:
    """Tests for AdmissionGate."""

    def test_starts_with_a_single_probe_permit(self):
        gate = AdmissionGate()

        assert gate.state == WindowState(remaining=1)

    def test_acquire_takes_the_probe_then_blocks(self):
        gate = AdmissionGate()

        assert gate.acquire() is True
        assert gate.remaining == 0
        assert acquire_within(gate, timeout=0.1) is False

    def test_release_unblocks_waiter(self):
        gate = AdmissionGate()
        gate.acquire()
        acquired = threading.Event()

        threading.Thread(target=lambda: gate.acquire() and acquired.set(), daemon=True).start()
        assert not acquired.wait(0.05)

        gate.release()

        assert acquired.wait(1)
        assert gate.remaining == 0

    def test_release_rejects_non_positive_permits(self):
        with pytest.raises(AssertionError):
            AdmissionGate().release(0)

    def test_calibrate_admits_exactly_the_reported_quota(self):
        gate = AdmissionGate()
        gate.acquire()

        assert gate.calibrate(42) is True
        for _ in range(42):
            assert gate.acquire() is True

        assert gate.remaining == 0
        assert acquire_within(gate, timeout=0.1) is False

    def test_calibrate_only_applies_once_per_window(self):
        gate = AdmissionGate()
        gate.acquire()

        assert gate.calibrate(5) is True
        assert gate.calibrate(100) is False
        assert gate.state == WindowState(remaining=5, first_response_seen=True)

    def test_calibrate_clamps_negative_remaining(self):
        gate = AdmissionGate()
        gate.acquire()

        gate.calibrate(-3)

        assert gate.remaining == 0

    def test_calibrate_wakes_waiters(self):
        gate = AdmissionGate()
        gate.acquire()
        acquired = threading.Event()

        threading.Thread(target=lambda: gate.acquire() and acquired.set(), daemon=True).start()
        assert not acquired.wait(0.05)

        gate.calibrate(3)

        assert acquired.wait(1)

    def test_exhaust_zeroes_the_window_once(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(10)

        assert gate.exhaust() is True
        assert gate.exhaust() is False
        assert gate.state == WindowState(remaining=0, first_response_seen=True, overflow_clock_started=True)

    def test_reset_restores_probe_state(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(10)
        gate.exhaust()

        gate.reset()

        assert gate.state == WindowState(remaining=1)
        assert gate.calibrate(7) is True

    def test_reset_uses_initial_permits(self):
        gate = AdmissionGate(initial_permits=3)
        gate.calibrate(0)

        gate.reset()

        assert gate.remaining == 3

    def test_restore_probe_when_probe_got_no_response(self):
        gate = AdmissionGate()
        gate.acquire()

        assert gate.restore_probe() is True
        assert gate.remaining == 1

    def test_restore_probe_ignored_once_calibrated(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(0)

        assert gate.restore_probe() is False
        assert gate.remaining == 0

    def test_restore_probe_ignored_during_overflow(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.exhaust()

        assert gate.restore_probe() is False

    def test_restore_probe_ignored_when_permits_left(self):
        gate = AdmissionGate()

        assert gate.restore_probe() is False
        assert gate.remaining == 1

    # ---- Window ids ----

    def test_reset_starts_a_new_window_id(self):
        gate = AdmissionGate()
        first = gate.window_id

        gate.reset()

        assert gate.window_id == first + 1

    def test_acquire_window_returns_current_window_id(self):
        gate = AdmissionGate()
        gate.reset()

        assert gate.acquire_window() == gate.window_id

    def test_acquire_window_returns_none_when_closed(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.close()

        assert gate.acquire_window() is None

    def test_restore_probe_from_previous_window_is_ignored(self):
        gate = AdmissionGate()
        stale_window = gate.acquire_window()
        gate.reset()
        assert gate.acquire_window() == stale_window + 1

        # the old probe fails only now, while the new probe is in flight
        assert gate.restore_probe(window_id=stale_window) is False
        assert gate.remaining == 0

    def test_restore_probe_from_current_window(self):
        gate = AdmissionGate()
        window = gate.acquire_window()

        assert gate.restore_probe(window_id=window) is True
        assert gate.remaining == 1

    def test_release_into_previous_window_is_ignored(self):
        gate = AdmissionGate()
        stale_window = gate.acquire_window()
        gate.reset()

        assert gate.release(1, window_id=stale_window) is False
        assert gate.remaining == 1

    def test_release_into_current_window(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(5)
        window = gate.acquire_window()

        assert gate.release(1, window_id=window) is True
        assert gate.remaining == 5

    def test_close_wakes_waiters_with_false(self):
        gate = AdmissionGate()
        gate.acquire()
        results = []

        thread = threading.Thread(target=lambda: results.append(gate.acquire()))
        thread.start()
        time.sleep(0.05)
        gate.close()
        thread.join(timeout=1)

        assert results == [False]

    def test_concurrent_acquires_never_over_admit(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(20)
        admitted = []
        lock = threading.Lock()

        def worker():
            if gate.acquire():
                with lock:
                    admitted.append(1)

        threads = [threading.Thread(target=worker, daemon=True) for _ in range(50)]
        for thread in threads:
            thread.start()
        time.sleep(0.2)

        assert len(admitted) == 20
        assert gate.remaining == 0

        gate.close()
        for thread in threads:
            thread.join(timeout=1)


# =============================================================================
# ResetScheduler Tests
# =============================================================================


class TestResetScheduler:
    """Tests for ResetScheduler."""

    def test_schedule_returns_delay_including_margin(self):
        scheduler = ResetScheduler(AdmissionGate(), margin=2.0)

        assert scheduler.schedule(10) == 12.0

        scheduler.cancel()

    def test_fires_gate_reset_after_delay(self):
        gate = AdmissionGate()
        gate.acquire()
        gate.calibrate(0)
        scheduler = ResetScheduler(gate, margin=0.05)

        scheduler.schedule(0)
        assert scheduler.pending is True
        assert gate.remaining == 0

        time.sleep(0.3)

        assert gate.state == WindowState(remaining=1)
        assert scheduler.pending is False

    def test_notifies_listeners_on_reset(self):
        listener = MagicMock(spec=DispatchEventListener)
        scheduler = ResetScheduler(AdmissionGate(), margin=0.01, listeners=[listener])

        scheduler.schedule(0)
        time.sleep(0.2)

        listener.on_window_reset.assert_called_once_with()

    def test_newer_schedule_supersedes_pending_one(self):
        gate = MagicMock(spec=AdmissionGate)
        scheduler = ResetScheduler(gate, margin=0.05)

        scheduler.schedule(0)
        scheduler.schedule(0.2)
        time.sleep(0.15)

        gate.reset.assert_not_called()

        time.sleep(0.3)

        gate.reset.assert_called_once_with()

    def test_cancel_prevents_pending_reset(self):
        gate = MagicMock(spec=AdmissionGate)
        scheduler = ResetScheduler(gate, margin=0.05)

        scheduler.schedule(0)
        scheduler.cancel()
        time.sleep(0.2)

        gate.reset.assert_not_called()
        assert scheduler.pending is False

    def test_schedule_after_cancel_is_ignored(self):
        gate = MagicMock(spec=AdmissionGate)
        scheduler = ResetScheduler(gate, margin=0.0)
        scheduler.cancel()

        scheduler.schedule(0)
        time.sleep(0.1)

        gate.reset.assert_not_called()


# =============================================================================
# RateLimitHeaders Tests
# =============================================================================


class TestRateLimitHeaders:
    """Tests for RateLimitHeaders.parse()."""

    def test_reads_both_headers(self):
        limits = RateLimitHeaders.parse({"ratelimit-remaining": "42", "ratelimit-reset": "30"})

        assert limits == RateLimitHeaders(remaining=42, reset=30)

    def test_header_lookup_is_case_insensitive(self):
        headers = CaseInsensitiveDict({"RateLimit-Remaining": "7", "RATELIMIT-RESET": "3"})

        assert RateLimitHeaders.parse(headers) == RateLimitHeaders(remaining=7, reset=3)

    def test_missing_headers_use_fallbacks(self):
        assert RateLimitHeaders.parse({}) == RateLimitHeaders(remaining=110, reset=10)

    def test_invalid_values_use_fallbacks(self):
        limits = RateLimitHeaders.parse({"ratelimit-remaining": "lots", "ratelimit-reset": ""})

        assert limits == RateLimitHeaders(remaining=110, reset=10)

    def test_reset_is_floored(self):
        assert RateLimitHeaders.parse({"ratelimit-reset": "0"}).reset == 1
        assert RateLimitHeaders.parse({"ratelimit-reset": "-5"}).reset == 1

    def test_custom_fallbacks(self):
        limits = RateLimitHeaders.parse(None, fallback_remaining=5, fallback_reset=60, min_reset=2)

        assert limits == RateLimitHeaders(remaining=5, reset=60)


# =============================================================================
# ResponseClassifier Tests
# =============================================================================


class TestResponseClassifier:
    """Tests for ResponseClassifier."""

    def setup_method(self):
        self.gate = AdmissionGate()
        self.gate.acquire()
        self.scheduler = MagicMock(spec=ResetScheduler)
        self.scheduler.margin = 2.0
        self.requeue = MagicMock()
        self.listener = MagicMock(spec=DispatchEventListener)
        self.classifier = ResponseClassifier(
            self.gate,
            self.scheduler,
            requeue=self.requeue,
            listeners=[self.listener],
        )
        self.request = PendingRequest(url="https://api.example.com/a")

    def test_first_response_calibrates_and_schedules_reset(self):
        response = make_response(200, {"ratelimit-remaining": "42", "ratelimit-reset": "55"})

        outcome = self.classifier.classify(response, self.request)

        assert outcome.allow is True
        assert outcome.status_code == 200
        assert self.gate.state == WindowState(remaining=42, first_response_seen=True)
        self.scheduler.schedule.assert_called_once_with(55)
        self.listener.on_window_calibrated.assert_called_once_with(remaining=42, reset_seconds=55)
        self.requeue.assert_not_called()

    def test_later_responses_pass_through(self):
        self.classifier.classify(make_response(200, {"ratelimit-remaining": "10"}), self.request)
        self.gate.acquire()

        outcome = self.classifier.classify(
            make_response(200, {"ratelimit-remaining": "99", "ratelimit-reset": "1"}),
            PendingRequest(url="https://api.example.com/b"),
        )

        assert outcome.allow is True
        assert self.gate.remaining == 9
        self.scheduler.schedule.assert_called_once()

    def test_error_statuses_other_than_429_are_surfaced(self):
        outcome = self.classifier.classify(make_response(503, {"ratelimit-remaining": "3"}), self.request)

        assert outcome.allow is True
        assert outcome.status_code == 503
        assert self.gate.remaining == 3

    def test_first_response_without_headers_uses_fallbacks(self):
        self.classifier.classify(make_response(200), self.request)

        assert self.gate.remaining == 110
        self.scheduler.schedule.assert_called_once_with(10)

    def test_429_requeues_and_closes_window(self):
        response = make_response(429, {"ratelimit-reset": "5"})

        outcome = self.classifier.classify(response, self.request)

        assert outcome.allow is False
        assert outcome.status_code == 429
        self.requeue.assert_called_once_with(self.request)
        self.scheduler.schedule.assert_called_once_with(5)
        assert self.gate.state == WindowState(remaining=0, overflow_clock_started=True)
        self.listener.on_quota_exceeded.assert_called_once_with(request=self.request, reset_seconds=5)

    def test_only_first_429_schedules_reset(self):
        self.classifier.classify(make_response(429, {"ratelimit-reset": "5"}), self.request)
        other = PendingRequest(url="https://api.example.com/b")

        self.classifier.classify(make_response(429, {"ratelimit-reset": "4"}), other)

        self.scheduler.schedule.assert_called_once_with(5)
        assert self.requeue.call_count == 2

    def test_429_after_calibration_zeroes_remaining(self):
        self.classifier.classify(make_response(200, {"ratelimit-remaining": "10"}), self.request)

        self.classifier.classify(make_response(429, {"ratelimit-reset": "8"}), self.request)

        assert self.gate.remaining == 0
        assert self.scheduler.schedule.call_count == 2

    def test_bookkeeping_happens_before_requeue(self):
        calls = []
        self.scheduler.schedule.side_effect = lambda seconds: calls.append("schedule")
        self.requeue.side_effect = lambda request: calls.append("requeue")

        self.classifier.classify(make_response(429, {"ratelimit-reset": "5"}), self.request)

        assert calls == ["schedule", "requeue"]

    def test_requeue_failure_propagates(self):
        self.requeue.side_effect = ClientClosedError()

        with pytest.raises(ClientClosedError):
            self.classifier.classify(make_response(429), self.request)
