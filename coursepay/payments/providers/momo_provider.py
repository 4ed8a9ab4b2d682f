# coursepay/payments/providers/momo_provider.py
import hmac
import hashlib
import uuid
from typing import Dict, Iterable

from ..base import (
    BasePaymentProvider,
    PaymentGateway,
    PaymentUrlResponse,
    VerifiedNotification,
    RefundInstruction,
    RefundResult,
    ReconciliationOutcome,
    WebhookAck,
)
from ...error_handlers import (
    GatewayUnavailable,
    InvalidSignature,
    RefundRejected,
)

# Field lists of the MoMo v2 HMAC-SHA256 signatures, in signing order
CREATE_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
NOTIFICATION_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
)
REFUND_SIGNATURE_KEYS = (
    "accessKey", "amount", "description", "orderId", "partnerCode",
    "requestId", "transId",
)


class MoMoProvider(BasePaymentProvider):
    """MoMo v2 adapter (captureWallet create, IPN, refund)"""

    gateway = PaymentGateway.MOMO

    def _initialize_client(self):
        self.partner_code = self.config["partner_code"]
        self.access_key = self.config["access_key"]
        self.secret_key = self.config["secret_key"]
        self.endpoint = self.config["endpoint"]
        self.refund_endpoint = self.config["refund_endpoint"]
        self.return_url = self.config["return_url"]
        self.notify_url = self.config["notify_url"]
        self.request_type = self.config.get("request_type", "captureWallet")

    def _sign(self, values: Dict[str, object], keys: Iterable[str]) -> str:
        raw = "&".join(f"{key}={values.get(key, '')}" for key in keys)
        return hmac.new(
            self.secret_key.encode("utf-8"),
            raw.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def build_payment_url(self, order, client_ip: str) -> PaymentUrlResponse:
        """POST the signed create request; MoMo answers with a payUrl"""
        request_id = f"{order.order_code}-{uuid.uuid4().hex[:8]}"
        payload = {
            "partnerCode": self.partner_code,
            "requestId": request_id,
            "amount": int(order.final_price),
            "orderId": order.order_code,
            "orderInfo": f"Thanh toan don hang {order.order_code}",
            "redirectUrl": self.return_url,
            "ipnUrl": self.notify_url,
            "extraData": "",
            "requestType": self.request_type,
            "lang": "vi",
        }
        payload["signature"] = self._sign({**payload, "accessKey": self.access_key}, CREATE_SIGNATURE_KEYS)

        body = await self._post_json(self.endpoint, payload)

        if body.get("resultCode") != 0 or not body.get("payUrl"):
            raise GatewayUnavailable(
                self.gateway.value,
                f"Payment creation failed (resultCode: {body.get('resultCode')}): {body.get('message')}",
            )

        return PaymentUrlResponse(
            order_code=order.order_code,
            payment_url=body["payUrl"],
            provider_request_id=request_id,
            metadata={"deeplink": body.get("deeplink"), "qr_code_url": body.get("qrCodeUrl")},
        )

    def verify_notification(self, raw_params: Dict[str, str]) -> VerifiedNotification:
        received = raw_params.get("signature")
        if not received:
            raise InvalidSignature(self.gateway.value, "Missing signature")

        values = {key: raw_params.get(key, "") for key in NOTIFICATION_SIGNATURE_KEYS}
        # The notification itself never carries accessKey
        values["accessKey"] = self.access_key
        expected = self._sign(values, NOTIFICATION_SIGNATURE_KEYS)

        if not hmac.compare_digest(expected, str(received).lower()):
            raise InvalidSignature(self.gateway.value)

        if values["partnerCode"] != self.partner_code:
            raise InvalidSignature(self.gateway.value, "Partner code mismatch")

        try:
            amount = int(values["amount"])
            result_code = str(int(values["resultCode"]))
        except ValueError as e:
            raise InvalidSignature(self.gateway.value, f"Malformed notification: {e}") from e

        order_code = values["orderId"]
        trans_id = str(values["transId"])
        if not trans_id or trans_id == "0":
            trans_id = self.fallback_transaction_id(order_code, result_code, str(values["responseTime"]))

        canonical = "&".join(f"{key}={values[key]}" for key in NOTIFICATION_SIGNATURE_KEYS)
        return VerifiedNotification(
            order_code=order_code,
            gateway_transaction_id=trans_id,
            amount=amount,
            result_code=result_code,
            success=result_code == "0",
            raw_payload_hash=hashlib.sha256(canonical.encode("utf-8")).hexdigest(),
            message=values["message"] or None,
        )

    async def issue_refund(self, instruction: RefundInstruction) -> RefundResult:
        # One refund orderId per refund request; a resend reuses it and MoMo
        # refuses it as a duplicate instead of paying twice
        refund_order_id = f"{instruction.order_code}-RF-{instruction.request_key[:12]}"
        trans_id = instruction.gateway_transaction_id
        payload = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "orderId": refund_order_id,
            "requestId": refund_order_id,
            "amount": instruction.amount,
            "transId": int(trans_id) if trans_id.isdigit() else trans_id,
            "lang": "vi",
            "description": instruction.reason or f"Refund for order {instruction.order_code}",
        }
        payload["signature"] = self._sign(payload, REFUND_SIGNATURE_KEYS)

        body = await self._post_json(self.refund_endpoint, payload)

        if body.get("resultCode") != 0:
            raise RefundRejected(
                self.gateway.value,
                body.get("resultCode"),
                body.get("message") or "Refund declined",
            )

        return RefundResult(
            refund_id=str(body.get("transId") or refund_order_id),
            status="SUCCESS",
            metadata={
                "refund_order_id": refund_order_id,
                "result_code": body.get("resultCode"),
                "message": body.get("message"),
                "response_time": body.get("responseTime"),
            },
        )

    def acknowledge(self, outcome: ReconciliationOutcome) -> WebhookAck:
        # MoMo only needs a 204 to stop retrying
        return WebhookAck(status_code=204)
