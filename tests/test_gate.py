"""Tests for the job dispatch gate: rate limit, debit, dispatch, compensate."""
import pytest

from core.errors import InsufficientCredits, RateLimited, UpstreamDispatchFailure
from ledger.pricing import ActionKind
from ledger.store import EntryKind
from pipeline import DispatchRequest
from providers.workflow import DispatchError, DispatchTimeout


def image_request(count=5, **kwargs):
    return DispatchRequest(
        action=ActionKind.IMAGE_SEARCH,
        account_id="user-1",
        limiter_key="user:user-1",
        owner_id="script-1",
        params={"count": count},
        payload={"keywords": "ocean", "count": count},
        **kwargs,
    )


@pytest.fixture
def gate(services):
    return services.gate


class TestDispatch:
    def test_success_debits_and_sends_correlation_ids(self, gate, meter, dispatcher):
        receipt = gate.dispatch(image_request(count=6))
        assert (receipt.cost, receipt.balance, receipt.status) == (2, 23, "dispatched")

        url, payload = dispatcher.calls[0]
        assert url == "http://workflow.test/images"
        assert payload["keywords"] == "ocean"
        assert payload["ownerId"] == payload["scriptId"] == "script-1"
        assert payload["dispatchId"] == receipt.dispatch_id
        assert payload["callbackUrl"] == "http://app.test/api/images/callback"

        debit = meter.store.find_reference(f"dispatch:{receipt.dispatch_id}")
        assert debit.amount == -2
        assert debit.metadata["owner_id"] == "script-1"

    def test_hooks_run_in_order(self, gate, dispatcher):
        seen = []
        gate.dispatch(image_request(on_debited=lambda: seen.append(len(dispatcher.calls))))
        assert seen == [0]

    def test_insufficient_credits_never_dispatches(self, gate, meter, dispatcher):
        request = DispatchRequest(
            action=ActionKind.SCRIPT_GENERATE,
            account_id="user-1",
            limiter_key="user:user-1",
            owner_id="script-1",
            params={"model": "gemini-2.5-pro", "duration": "3m"},
        )
        with pytest.raises(InsufficientCredits) as info:
            gate.dispatch(request)
        assert (info.value.required, info.value.available) == (53, 25)
        assert dispatcher.calls == []
        assert meter.balance("user-1").balance == 25

    def test_rate_limit_checked_before_debit(self, gate, meter, dispatcher, clock):
        for _ in range(10):
            gate.dispatch(image_request(count=1))
        with pytest.raises(RateLimited) as info:
            gate.dispatch(image_request(count=1))
        assert info.value.headers["X-RateLimit-Remaining"] == "0"
        assert info.value.headers["Retry-After"] == "60"
        assert len(dispatcher.calls) == 10
        assert meter.balance("user-1").balance == 15

        clock.advance(60)
        gate.dispatch(image_request(count=1))
        assert meter.balance("user-1").balance == 14


class TestDispatchFailures:
    def test_unreachable_worker_is_refunded(self, gate, meter, dispatcher):
        dispatcher.error = DispatchError("connection refused")
        failures = []
        with pytest.raises(UpstreamDispatchFailure):
            gate.dispatch(image_request(count=10, on_failed=failures.append))

        assert meter.balance("user-1").balance == 25
        assert failures and isinstance(failures[0], DispatchError)
        entries = meter.history("user-1")
        assert [(e.amount, e.kind) for e in entries[:2]] == [(2, EntryKind.USAGE), (-2, EntryKind.USAGE)]
        assert entries[0].metadata["reversal_of"] == entries[1].id
        assert meter.audit("user-1").consistent

    def test_timeout_keeps_debit_and_reports_pending(self, gate, meter, dispatcher):
        dispatcher.error = DispatchTimeout("read timed out")
        receipt = gate.dispatch(image_request(count=5))
        assert receipt.status == "pending"
        assert meter.balance("user-1").balance == 24
        assert len(meter.history("user-1")) == 2


class TestRateLimitHeadersOnErrors:
    def test_insufficient_credits_carries_limit_headers(self, gate):
        with pytest.raises(InsufficientCredits) as info:
            gate.dispatch(image_request(count=200))
        assert info.value.headers["X-RateLimit-Limit"] == "10"
        assert info.value.headers["X-RateLimit-Remaining"] == "9"

    def test_dispatch_failure_carries_limit_headers(self, gate, dispatcher):
        dispatcher.error = DispatchError("connection refused")
        with pytest.raises(UpstreamDispatchFailure) as info:
            gate.dispatch(image_request())
        assert info.value.headers["X-RateLimit-Remaining"] == "9"
