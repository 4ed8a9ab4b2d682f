# coursepay/payments/providers/vnpay_provider.py
import hmac
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from urllib.parse import quote_plus, urlencode

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
    AppException,
    InvalidSignature,
    OrderNotFound,
    RefundRejected,
)

VNPAY_VERSION = "2.1.0"
VNPAY_TZ = timezone(timedelta(hours=7))
DATE_FORMAT = "%Y%m%d%H%M%S"

# Fields excluded from the signed data
SIGNATURE_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# Pipe-joined field order for the merchant_webapi refund checksum
REFUND_SIGNATURE_KEYS = (
    "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode",
    "vnp_TransactionType", "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo",
    "vnp_TransactionDate", "vnp_CreateBy", "vnp_CreateDate", "vnp_IpAddr",
    "vnp_OrderInfo",
)

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Amount deducted, transaction suspected of fraud",
    "09": "Card or account not registered for internet banking",
    "10": "Card or account authentication failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Wrong OTP",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Bank under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Unknown error",
}

# IPN replies VNPay understands
IPN_ACKS = {
    ReconciliationOutcome.PAID: ("00", "Confirm Success"),
    ReconciliationOutcome.FAILED: ("00", "Confirm Success"),
    ReconciliationOutcome.COUPON_EXHAUSTED: ("00", "Confirm Success"),
    ReconciliationOutcome.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    ReconciliationOutcome.ALREADY_PROCESSED: ("02", "Order already confirmed"),
}


def format_vnpay_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(VNPAY_TZ).strftime(DATE_FORMAT)


def canonical_query(params: Dict[str, str]) -> str:
    """Sorted key=value pairs with values form-encoded, as VNPay signs them"""
    return "&".join(
        f"{key}={quote_plus(str(params[key]))}"
        for key in sorted(params)
    )


class VNPayProvider(BasePaymentProvider):
    """VNPay 2.1.0 adapter (redirect payment, IPN, merchant_webapi refund)"""

    gateway = PaymentGateway.VNPAY

    def _initialize_client(self):
        self.tmn_code = self.config["tmn_code"]
        self.hash_secret = self.config["hash_secret"]
        self.payment_url = self.config["payment_url"]
        self.api_url = self.config["api_url"]
        self.return_url = self.config["return_url"]
        self.expiration_minutes = int(self.config.get("expiration_minutes", 15))

    def _sign(self, data: str) -> str:
        return hmac.new(
            self.hash_secret.encode("utf-8"),
            data.encode("utf-8"),
            hashlib.sha512,
        ).hexdigest()

    async def build_payment_url(
        self,
        order,
        client_ip: str,
        now: Optional[datetime] = None,
    ) -> PaymentUrlResponse:
        """
        VNPay needs no server call to start a payment: the signed query
        string is the whole request. The amount is sent multiplied by 100.
        """
        created = now or datetime.now(timezone.utc)
        params = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(int(order.final_price) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": order.order_code,
            "vnp_OrderInfo": f"Thanh toan don hang {order.order_code}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": format_vnpay_date(created),
            "vnp_ExpireDate": format_vnpay_date(created + timedelta(minutes=self.expiration_minutes)),
        }
        signature = self._sign(canonical_query(params))
        query = urlencode(sorted(params.items()), quote_via=quote_plus)

        return PaymentUrlResponse(
            order_code=order.order_code,
            payment_url=f"{self.payment_url}?{query}&vnp_SecureHash={signature}",
            metadata={"expire_date": params["vnp_ExpireDate"]},
        )

    def verify_notification(self, raw_params: Dict[str, str]) -> VerifiedNotification:
        received_hash = raw_params.get("vnp_SecureHash")
        if not received_hash:
            raise InvalidSignature(self.gateway.value, "Missing vnp_SecureHash")

        signed_params = {
            key: value
            for key, value in raw_params.items()
            if key.startswith("vnp_") and key not in SIGNATURE_FIELDS
        }
        sign_data = canonical_query(signed_params)
        expected_hash = self._sign(sign_data)

        if not hmac.compare_digest(expected_hash.lower(), str(received_hash).lower()):
            raise InvalidSignature(self.gateway.value)

        if signed_params.get("vnp_TmnCode") != self.tmn_code:
            raise InvalidSignature(self.gateway.value, "Merchant code mismatch")

        try:
            amount, minor_units = divmod(int(signed_params["vnp_Amount"]), 100)
            order_code = signed_params["vnp_TxnRef"]
        except (KeyError, ValueError) as e:
            raise InvalidSignature(self.gateway.value, f"Malformed notification: {e}") from e

        response_code = signed_params.get("vnp_ResponseCode", "")
        transaction_status = signed_params.get("vnp_TransactionStatus")
        success = response_code == "00" and transaction_status in (None, "00")

        transaction_no = signed_params.get("vnp_TransactionNo", "")
        if not transaction_no or transaction_no == "0":
            transaction_no = self.fallback_transaction_id(
                order_code, response_code, signed_params.get("vnp_PayDate", "")
            )

        return VerifiedNotification(
            order_code=order_code,
            gateway_transaction_id=transaction_no,
            amount=amount,
            amount_exact=minor_units == 0,
            result_code=response_code,
            success=success,
            raw_payload_hash=hashlib.sha256(sign_data.encode("utf-8")).hexdigest(),
            message=RESPONSE_MESSAGES.get(response_code, "Transaction failed"),
        )

    async def issue_refund(self, instruction: RefundInstruction) -> RefundResult:
        """
        Refund through the merchant_webapi. Transaction type "02" is a full
        refund and "03" a partial one.
        """
        now = datetime.now(timezone.utc)
        paid_at = instruction.paid_at or now
        payload = {
            "vnp_RequestId": instruction.request_key,
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.tmn_code,
            "vnp_TransactionType": "02" if instruction.full else "03",
            "vnp_TxnRef": instruction.order_code,
            "vnp_Amount": str(instruction.amount * 100),
            "vnp_TransactionNo": instruction.gateway_transaction_id,
            "vnp_TransactionDate": format_vnpay_date(paid_at),
            "vnp_CreateBy": instruction.requested_by,
            "vnp_CreateDate": format_vnpay_date(now),
            "vnp_IpAddr": "127.0.0.1",
            "vnp_OrderInfo": f"Hoan tien don hang {instruction.order_code}",
        }
        payload["vnp_SecureHash"] = self._sign(
            "|".join(str(payload[key]) for key in REFUND_SIGNATURE_KEYS)
        )

        body = await self._post_json(self.api_url, payload)

        response_code = str(body.get("vnp_ResponseCode", ""))
        if response_code != "00":
            raise RefundRejected(
                self.gateway.value,
                response_code,
                body.get("vnp_Message") or "Refund declined",
            )

        return RefundResult(
            refund_id=body.get("vnp_TransactionNo") or payload["vnp_RequestId"],
            status="SUCCESS",
            metadata={
                "request_id": payload["vnp_RequestId"],
                "transaction_type": payload["vnp_TransactionType"],
                "response_code": response_code,
                "message": body.get("vnp_Message"),
            },
        )

    def acknowledge(self, outcome: ReconciliationOutcome) -> WebhookAck:
        code, message = IPN_ACKS[outcome]
        return WebhookAck(status_code=200, body={"RspCode": code, "Message": message})

    def acknowledge_error(self, error: AppException) -> Optional[WebhookAck]:
        # VNPay expects HTTP 200 with a result code even for rejected IPNs
        if isinstance(error, InvalidSignature):
            return WebhookAck(status_code=200, body={"RspCode": "97", "Message": "Invalid signature"})
        if isinstance(error, OrderNotFound):
            return WebhookAck(status_code=200, body={"RspCode": "01", "Message": "Order not found"})
        return None
