"""Tests for the VNPay and MoMo adapters: signing, verification and refunds."""

from datetime import datetime, timezone
from types import SimpleNamespace
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest

from coursepay.error_handlers import (
    GatewayTimeout,
    GatewayUnavailable,
    InvalidSignature,
    OrderNotFound,
    RefundRejected,
)
from coursepay.payments.base import PaymentGateway, ReconciliationOutcome, RefundInstruction
from coursepay.payments.providers.vnpay_provider import canonical_query, format_vnpay_date

from tests.helpers import MOMO_CONFIG, VNPAY_CONFIG, momo_notification, vnpay_notification


def _order(code="ORD-20261019-101500-0042", final_price=460_000):
    return SimpleNamespace(order_code=code, final_price=final_price)


def _instruction(**overrides):
    fields = dict(
        gateway_transaction_id="14000001",
        amount=460_000,
        order_code="ORD-20261019-101500-0042",
        full=True,
        paid_at=datetime(2026, 10, 19, 3, 15, tzinfo=timezone.utc),
        reason="Course content did not match the description",
        requested_by="user_admin_1",
        request_key="5f0c1e8a9b2d4c6e8f0a1b2c3d4e5f60",
    )
    fields.update(overrides)
    return RefundInstruction(**fields)


class TestVNPayHelpers:
    """Date formatting and canonical query string."""

    def test_dates_are_rendered_in_vietnam_time(self):
        assert format_vnpay_date(datetime(2026, 10, 19, 3, 15, tzinfo=timezone.utc)) == "20261019101500"

    def test_naive_dates_are_treated_as_utc(self):
        assert format_vnpay_date(datetime(2026, 10, 19, 20, 0)) == "20261020030000"

    def test_canonical_query_is_sorted_and_form_encoded(self):
        params = {"vnp_TxnRef": "A B", "vnp_Amount": "100", "vnp_OrderInfo": "x/y"}
        assert canonical_query(params) == "vnp_Amount=100&vnp_OrderInfo=x%2Fy&vnp_TxnRef=A+B"


class TestVNPayProvider:
    """VNPay payment URL, notification verification and refunds."""

    @pytest.fixture
    def vnpay(self, providers):
        return providers.get(PaymentGateway.VNPAY)

    async def test_payment_url_is_signed_and_verifiable(self, vnpay):
        response = await vnpay.build_payment_url(
            _order(), "203.0.113.7", now=datetime(2026, 10, 19, 3, 15, tzinfo=timezone.utc)
        )

        parts = urlsplit(response.payment_url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == VNPAY_CONFIG["payment_url"]
        params = dict(parse_qsl(parts.query))
        assert params["vnp_Amount"] == "46000000"
        assert params["vnp_TxnRef"] == "ORD-20261019-101500-0042"
        assert params["vnp_CreateDate"] == "20261019101500"
        assert params["vnp_ExpireDate"] == "20261019103000"
        assert params["vnp_IpAddr"] == "203.0.113.7"

        signed = {k: v for k, v in params.items() if k != "vnp_SecureHash"}
        assert params["vnp_SecureHash"] == vnpay._sign(canonical_query(signed))

    def test_verifies_authentic_notification(self, vnpay):
        notification = vnpay.verify_notification(vnpay_notification("ORD-1", 460_000))

        assert notification.order_code == "ORD-1"
        assert notification.amount == 460_000
        assert notification.gateway_transaction_id == "14000001"
        assert notification.success is True
        assert len(notification.raw_payload_hash) == 64

    def test_fractional_amount_is_flagged(self, vnpay):
        notification = vnpay.verify_notification(vnpay_notification("ORD-1", 500_000, raw_amount="50000099"))

        assert notification.amount == 500_000
        assert notification.amount_exact is False

    def test_declined_payment_is_not_success(self, vnpay):
        notification = vnpay.verify_notification(
            vnpay_notification("ORD-1", 460_000, response_code="24", transaction_no="0")
        )

        assert notification.success is False
        assert notification.result_code == "24"
        # Abandoned payments carry no transaction number
        assert notification.gateway_transaction_id == "ORD-1:24:20261019101500"

    def test_tampered_amount_is_rejected(self, vnpay):
        params = vnpay_notification("ORD-1", 460_000)
        params["vnp_Amount"] = "100"

        with pytest.raises(InvalidSignature):
            vnpay.verify_notification(params)

    def test_wrong_secret_is_rejected(self, vnpay):
        with pytest.raises(InvalidSignature):
            vnpay.verify_notification(vnpay_notification("ORD-1", 460_000, secret="other-secret"))

    def test_missing_hash_is_rejected(self, vnpay):
        params = vnpay_notification("ORD-1", 460_000)
        del params["vnp_SecureHash"]

        with pytest.raises(InvalidSignature):
            vnpay.verify_notification(params)

    def test_other_merchant_is_rejected(self, vnpay):
        with pytest.raises(InvalidSignature) as exc_info:
            vnpay.verify_notification(vnpay_notification("ORD-1", 460_000, tmn_code="SOMEONE"))
        assert exc_info.value.details["reason"] == "Merchant code mismatch"

    def test_secure_hash_case_is_ignored(self, vnpay):
        params = vnpay_notification("ORD-1", 460_000)
        params["vnp_SecureHash"] = params["vnp_SecureHash"].upper()

        assert vnpay.verify_notification(params).success is True

    def test_ipn_acknowledgements(self, vnpay):
        assert vnpay.acknowledge(ReconciliationOutcome.PAID).body == {"RspCode": "00", "Message": "Confirm Success"}
        assert vnpay.acknowledge(ReconciliationOutcome.ALREADY_PROCESSED).body["RspCode"] == "02"
        assert vnpay.acknowledge(ReconciliationOutcome.AMOUNT_MISMATCH).body["RspCode"] == "04"
        assert vnpay.acknowledge_error(InvalidSignature("VNPAY")).body["RspCode"] == "97"
        assert vnpay.acknowledge_error(OrderNotFound("ORD-X")).body["RspCode"] == "01"

    async def test_full_refund(self, vnpay, gateway):
        result = await vnpay.issue_refund(_instruction())

        sent = gateway.sent_json()
        assert sent["vnp_Command"] == "refund"
        assert sent["vnp_TransactionType"] == "02"
        assert sent["vnp_Amount"] == "46000000"
        assert sent["vnp_TransactionDate"] == "20261019101500"
        assert result.status == "SUCCESS"
        assert result.refund_id == "15000001"

    async def test_partial_refund_uses_partial_type(self, vnpay, gateway):
        await vnpay.issue_refund(_instruction(amount=200_000, full=False))

        assert gateway.sent_json()["vnp_TransactionType"] == "03"

    async def test_declined_refund_raises_refund_rejected(self, vnpay, gateway):
        gateway.queue_json(VNPAY_CONFIG["api_url"], {"vnp_ResponseCode": "94", "vnp_Message": "Duplicate request"})

        with pytest.raises(RefundRejected) as exc_info:
            await vnpay.issue_refund(_instruction())
        assert exc_info.value.details["result_code"] == "94"

    async def test_server_error_is_retryable(self, vnpay, gateway):
        gateway.queue_json(VNPAY_CONFIG["api_url"], {}, status_code=502)

        with pytest.raises(GatewayUnavailable):
            await vnpay.issue_refund(_instruction())

    async def test_read_timeout_is_not_retryable(self, vnpay, gateway):
        """The request was sent, so the refund may already have happened"""
        gateway.queue_error(VNPAY_CONFIG["api_url"], httpx.ReadTimeout)

        with pytest.raises(GatewayTimeout) as exc_info:
            await vnpay.issue_refund(_instruction())
        assert exc_info.value.details["retryable"] is False
        assert exc_info.value.status_code == 504

    async def test_connect_timeout_is_retryable(self, vnpay, gateway):
        gateway.queue_error(VNPAY_CONFIG["api_url"], httpx.ConnectTimeout)

        with pytest.raises(GatewayUnavailable) as exc_info:
            await vnpay.issue_refund(_instruction())
        assert not isinstance(exc_info.value, GatewayTimeout)

    async def test_request_id_is_the_refund_key(self, vnpay, gateway):
        await vnpay.issue_refund(_instruction())
        await vnpay.issue_refund(_instruction())

        first, second = gateway.sent_json(0), gateway.sent_json(1)
        assert first["vnp_RequestId"] == "5f0c1e8a9b2d4c6e8f0a1b2c3d4e5f60"
        assert second["vnp_RequestId"] == first["vnp_RequestId"]


class TestMoMoProvider:
    """MoMo create, IPN verification and refunds."""

    @pytest.fixture
    def momo(self, providers):
        return providers.get(PaymentGateway.MOMO)

    async def test_create_returns_pay_url(self, momo, gateway):
        response = await momo.build_payment_url(_order(), "203.0.113.7")

        assert response.payment_url == "https://test-payment.momo.vn/pay/ORD-20261019-101500-0042"
        sent = gateway.sent_json()
        assert sent["amount"] == 460_000
        assert sent["ipnUrl"] == MOMO_CONFIG["notify_url"]
        # accessKey is signed over but never sent in the create body
        assert "accessKey" not in sent
        assert sent["signature"] == momo._sign({**sent, "accessKey": MOMO_CONFIG["access_key"]}, [
            "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
            "partnerCode", "redirectUrl", "requestId", "requestType",
        ])

    async def test_create_rejected_by_gateway(self, momo, gateway):
        gateway.queue_json(MOMO_CONFIG["endpoint"], {"resultCode": 22, "message": "Amount out of range"})

        with pytest.raises(GatewayUnavailable):
            await momo.build_payment_url(_order(), "203.0.113.7")

    def test_verifies_authentic_notification(self, momo):
        notification = momo.verify_notification(momo_notification("ORD-1", 460_000))

        assert notification.success is True
        assert notification.amount == 460_000
        assert notification.result_code == "0"
        assert notification.gateway_transaction_id == "4088878653"

    def test_user_cancelled_is_not_success(self, momo):
        notification = momo.verify_notification(momo_notification("ORD-1", 460_000, result_code=1006))

        assert notification.success is False
        assert notification.result_code == "1006"

    def test_tampered_result_code_is_rejected(self, momo):
        body = momo_notification("ORD-1", 460_000, result_code=1006)
        body["resultCode"] = "0"

        with pytest.raises(InvalidSignature):
            momo.verify_notification(body)

    def test_other_partner_is_rejected(self, momo):
        with pytest.raises(InvalidSignature):
            momo.verify_notification(momo_notification("ORD-1", 460_000, partner_code="SOMEONE"))

    def test_acknowledges_with_no_content(self, momo):
        ack = momo.acknowledge(ReconciliationOutcome.PAID)

        assert ack.status_code == 204
        assert ack.body is None
        assert momo.acknowledge_error(InvalidSignature("MOMO")) is None

    async def test_refund_sends_numeric_trans_id(self, momo, gateway):
        result = await momo.issue_refund(_instruction(gateway_transaction_id="4088878653"))

        sent = gateway.sent_json()
        assert sent["transId"] == 4088878653
        assert sent["orderId"].startswith("ORD-20261019-101500-0042-RF-")
        assert result.refund_id == "5000001"

    async def test_refund_order_id_is_stable_across_resends(self, momo, gateway):
        await momo.issue_refund(_instruction(gateway_transaction_id="4088878653"))
        await momo.issue_refund(_instruction(gateway_transaction_id="4088878653"))

        assert gateway.sent_json(0)["orderId"] == "ORD-20261019-101500-0042-RF-5f0c1e8a9b2d"
        assert gateway.sent_json(1)["orderId"] == gateway.sent_json(0)["orderId"]

    async def test_refund_declined(self, momo, gateway):
        gateway.queue_json(MOMO_CONFIG["refund_endpoint"], {"resultCode": 1080, "message": "Refund window closed"})

        with pytest.raises(RefundRejected):
            await momo.issue_refund(_instruction())

    async def test_refund_connection_error_is_retryable(self, momo, gateway):
        gateway.queue_error(MOMO_CONFIG["refund_endpoint"])

        with pytest.raises(GatewayUnavailable):
            await momo.issue_refund(_instruction())
