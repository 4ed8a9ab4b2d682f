"""Signed gateway payloads and a scriptable gateway HTTP stub for tests."""

import hashlib
import hmac
import json
from typing import Callable, Dict, List, Optional

import httpx

from coursepay.payments.providers.momo_provider import NOTIFICATION_SIGNATURE_KEYS
from coursepay.payments.providers.vnpay_provider import canonical_query

VNPAY_CONFIG = {
    "tmn_code": "COURSE01",
    "hash_secret": "VNPAYTESTSECRET",
    "payment_url": "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
    "api_url": "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
    "return_url": "http://testserver/api/payments/vnpay/callback",
    "expiration_minutes": 15,
    "timeout": 5,
}

MOMO_CONFIG = {
    "partner_code": "MOMOCOURSE",
    "access_key": "momo-access",
    "secret_key": "momo-secret",
    "endpoint": "https://test-payment.momo.vn/v2/gateway/api/create",
    "refund_endpoint": "https://test-payment.momo.vn/v2/gateway/api/refund",
    "return_url": "http://testserver/api/payments/momo/callback",
    "notify_url": "http://testserver/api/payments/momo/webhook",
    "request_type": "captureWallet",
    "timeout": 5,
}

PROVIDER_CONFIGS = {"VNPAY": VNPAY_CONFIG, "MOMO": MOMO_CONFIG}


def vnpay_notification(
    order_code: str,
    amount: int,
    response_code: str = "00",
    transaction_no: str = "14000001",
    tmn_code: Optional[str] = None,
    secret: Optional[str] = None,
    raw_amount: Optional[str] = None,
) -> Dict[str, str]:
    """
    Query parameters of a VNPay return URL / IPN, signed like VNPay does.

    raw_amount overrides vnp_Amount verbatim (VNPay sends VND x 100).
    """
    params = {
        "vnp_Amount": raw_amount if raw_amount is not None else str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_OrderInfo": f"Thanh toan don hang {order_code}",
        "vnp_PayDate": "20261019101500",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": tmn_code or VNPAY_CONFIG["tmn_code"],
        "vnp_TransactionNo": transaction_no,
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": order_code,
    }
    key = (secret or VNPAY_CONFIG["hash_secret"]).encode("utf-8")
    params["vnp_SecureHash"] = hmac.new(
        key, canonical_query(params).encode("utf-8"), hashlib.sha512
    ).hexdigest()
    return params


def momo_notification(
    order_code: str,
    amount: int,
    result_code: int = 0,
    trans_id: str = "4088878653",
    partner_code: Optional[str] = None,
) -> Dict[str, str]:
    """Body of a MoMo IPN, with the accessKey-including signature"""
    body = {
        "partnerCode": partner_code or MOMO_CONFIG["partner_code"],
        "orderId": order_code,
        "requestId": f"{order_code}-req",
        "amount": str(amount),
        "orderInfo": f"Thanh toan don hang {order_code}",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": str(result_code),
        "message": "Successful." if result_code == 0 else "Transaction denied by user.",
        "payType": "qr",
        "responseTime": "1760850900000",
        "extraData": "",
    }
    signed = {**body, "accessKey": MOMO_CONFIG["access_key"]}
    raw = "&".join(f"{k}={signed[k]}" for k in NOTIFICATION_SIGNATURE_KEYS)
    body["signature"] = hmac.new(
        MOMO_CONFIG["secret_key"].encode("utf-8"), raw.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return body


class GatewayStub:
    """
    httpx.MockTransport handler answering gateway API calls.

    Responses are queued per URL; an unqueued URL answers with the
    default success body for that endpoint.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._queued: Dict[str, List[Callable[[httpx.Request], httpx.Response]]] = {}

    def queue(self, url: str, responder: Callable[[httpx.Request], httpx.Response]):
        self._queued.setdefault(url, []).append(responder)

    def queue_json(self, url: str, body: dict, status_code: int = 200):
        self.queue(url, lambda request: httpx.Response(status_code, json=body))

    def queue_error(self, url: str, exc_type=httpx.ConnectError):
        def raise_error(request):
            raise exc_type("gateway unreachable", request=request)
        self.queue(url, raise_error)

    def sent_json(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if self._queued.get(url):
            return self._queued[url].pop(0)(request)
        return httpx.Response(200, json=self._default_body(url, request))

    @staticmethod
    def _default_body(url: str, request: httpx.Request) -> dict:
        payload = json.loads(request.content)
        if url == MOMO_CONFIG["endpoint"]:
            return {
                "partnerCode": payload["partnerCode"],
                "orderId": payload["orderId"],
                "requestId": payload["requestId"],
                "amount": payload["amount"],
                "resultCode": 0,
                "message": "Successful.",
                "payUrl": f"https://test-payment.momo.vn/pay/{payload['orderId']}",
            }
        if url == MOMO_CONFIG["refund_endpoint"]:
            return {"resultCode": 0, "message": "Successful.", "transId": 5000001, "responseTime": 1760851000000}
        if url == VNPAY_CONFIG["api_url"]:
            return {"vnp_ResponseCode": "00", "vnp_Message": "Refund success", "vnp_TransactionNo": "15000001"}
        return {}
