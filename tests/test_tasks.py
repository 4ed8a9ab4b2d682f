"""Tests for the Celery task wrappers; no broker is involved."""

import pytest

from coursepay.celery_app import celery_app
from coursepay.error_handlers import GatewayTimeout, GatewayUnavailable, RefundRejected
from coursepay.refunds import tasks as refund_tasks
from coursepay.refunds.models import RefundRequestStatus
from coursepay.orders import tasks as order_tasks


class TestBackoff:
    @pytest.mark.parametrize("attempt,expected", [(1, 60), (2, 120), (3, 240), (7, 3600), (20, 3600)])
    def test_doubles_up_to_an_hour(self, attempt, expected):
        assert refund_tasks.backoff_seconds(attempt) == expected


class TestScheduleRefundRetry:
    def test_queues_with_countdown(self, monkeypatch):
        calls = []
        monkeypatch.setattr(refund_tasks.retry_refund, "apply_async", lambda **kw: calls.append(kw))

        refund_tasks.schedule_refund_retry(42, 2)

        assert calls == [{"args": [42], "countdown": 120}]

    def test_broker_failure_is_not_raised(self, monkeypatch):
        """The sweep recovers retries that could not be queued"""
        def broken(**kw):
            raise ConnectionError("broker down")

        monkeypatch.setattr(refund_tasks.retry_refund, "apply_async", broken)

        refund_tasks.schedule_refund_retry(42, 1)


class TestRetryRefundTask:
    def test_reports_final_status(self, monkeypatch):
        async def fake_retry(request_id):
            return RefundRequestStatus.APPROVED, False, 1

        monkeypatch.setattr(refund_tasks, "_retry", fake_retry)

        assert refund_tasks.retry_refund(7) == {"status": "APPROVED", "needs_retry": False}

    def test_gateway_still_down(self, monkeypatch):
        async def fake_retry(request_id):
            raise GatewayUnavailable("VNPAY", "timeout")

        monkeypatch.setattr(refund_tasks, "_retry", fake_retry)

        assert refund_tasks.retry_refund(7) == {"status": "retry_scheduled"}

    def test_timeout_waits_for_an_admin(self, monkeypatch):
        async def fake_retry(request_id):
            raise GatewayTimeout("VNPAY", "read timed out")

        monkeypatch.setattr(refund_tasks, "_retry", fake_retry)

        assert refund_tasks.retry_refund(7) == {"status": "manual_retry_required"}

    def test_rejected_is_terminal(self, monkeypatch):
        async def fake_retry(request_id):
            raise RefundRejected("MOMO", 1001, "Transaction not refundable")

        monkeypatch.setattr(refund_tasks, "_retry", fake_retry)

        assert refund_tasks.retry_refund(7) == {"status": "rejected"}

    def test_exhausted_retries(self, monkeypatch):
        async def fake_retry(request_id):
            return RefundRequestStatus.PENDING, False, 3

        monkeypatch.setattr(refund_tasks, "_retry", fake_retry)

        assert refund_tasks.retry_refund(7) == {"status": "PENDING", "needs_retry": False}


class TestSweeps:
    def test_retry_pending_refunds_queues_each(self, monkeypatch):
        queued = []

        async def fake_pending():
            return [3, 5]

        monkeypatch.setattr(refund_tasks, "_pending_ids", fake_pending)
        monkeypatch.setattr(refund_tasks.retry_refund, "delay", queued.append)

        assert refund_tasks.retry_pending_refunds() == {"queued": 2}
        assert queued == [3, 5]

    def test_expire_stale_orders(self, monkeypatch):
        seen = []

        async def fake_expire(older_than_minutes=None):
            seen.append(older_than_minutes)
            return 4

        monkeypatch.setattr(order_tasks, "_expire", fake_expire)

        assert order_tasks.expire_stale_orders(30) == {"expired": 4}
        assert seen == [30]

    def test_beat_schedule_names_registered_tasks(self):
        for entry in celery_app.conf.beat_schedule.values():
            assert entry["task"] in celery_app.tasks
