"""
PayOS payment gateway client

Creates checkout links, looks up the authoritative status of an order
and verifies webhook signatures.

All requests are signed with HMAC-SHA256 using the merchant checksum key
over the alphabetically sorted ``key=value&...`` form of the payload.

API Docs: https://payos.vn/docs/api/
"""
import aiohttp
import asyncio
import hashlib
import hmac
import json
import logging
import random
import time
from typing import Dict, Optional
from dataclasses import dataclass

from rental.config import config


@dataclass
class PaymentLink:
    """Checkout link returned by the gateway"""
    checkout_url: str
    order_code: int
    qr_code: Optional[str] = None
    payment_link_id: Optional[str] = None


class PayOSError(Exception):
    """Gateway unreachable, timed out or answered with an error code"""


class WebhookSignatureError(PayOSError):
    pass


def new_order_code() -> int:
    """Positive integer order code: unix time + 3 random digits"""
    return int(f"{int(time.time())}{random.randint(100, 999)}")


def _query_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return json.dumps(
            [dict(sorted(v.items())) if isinstance(v, dict) else v for v in value],
            separators=(",", ":"), ensure_ascii=False,
        )
    if isinstance(value, dict):
        return json.dumps(dict(sorted(value.items())), separators=(",", ":"), ensure_ascii=False)
    return str(value)


class PayOSClient:
    """
    Usage:
        client = PayOSClient.from_config()
        link = await client.create_payment_link(
            amount=1500000,
            order_code=new_order_code(),
            description="Invoice payment",
            return_url="https://app/invoice-payment?success=true",
            cancel_url="https://app/invoice-payment?cancel=true",
        )
        info = await client.get_payment_info(link.order_code)
    """

    BASE_URL = "https://api-merchant.payos.vn"

    def __init__(
        self,
        client_id: str,
        api_key: str,
        checksum_key: str,
        base_url: Optional[str] = None,
        timeout: float = 15.0,
    ):
        if not (client_id and api_key and checksum_key):
            raise ValueError("PayOS credentials are not configured (PAYOS_CLIENT_ID/API_KEY/CHECKSUM_KEY)")
        self.client_id = client_id
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls) -> "PayOSClient":
        return cls(
            client_id=config.PAYOS_CLIENT_ID,
            api_key=config.PAYOS_API_KEY,
            checksum_key=config.PAYOS_CHECKSUM_KEY,
            base_url=config.PAYOS_BASE_URL,
            timeout=config.PAYOS_TIMEOUT,
        )

    def sign(self, data: Dict) -> str:
        message = "&".join(f"{key}={_query_value(data[key])}" for key in sorted(data))
        return hmac.new(
            self.checksum_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _headers(self) -> Dict[str, str]:
        return {
            "x-client-id": self.client_id,
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=self._headers(), json=payload) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise PayOSError(f"PayOS HTTP {resp.status}: {text[:200]}")
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PayOSError(f"PayOS request {method} {path} failed: {e!r}") from e

        if not isinstance(body, dict) or body.get("code") != "00":
            desc = body.get("desc") if isinstance(body, dict) else body
            raise PayOSError(f"PayOS error on {path}: {desc}")
        return body.get("data") or {}

    async def create_payment_link(
        self,
        amount: int,
        order_code: int,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> PaymentLink:
        signed = {
            "amount": int(amount),
            "cancelUrl": cancel_url,
            "description": description,
            "orderCode": int(order_code),
            "returnUrl": return_url,
        }
        payload = dict(signed, signature=self.sign(signed))
        data = await self._request("POST", "/v2/payment-requests", payload)

        logging.info(f"PayOS link created for order {order_code}, amount {amount}")
        return PaymentLink(
            checkout_url=data.get("checkoutUrl"),
            order_code=int(data.get("orderCode", order_code)),
            qr_code=data.get("qrCode"),
            payment_link_id=data.get("paymentLinkId"),
        )

    async def get_payment_info(self, order_code: int) -> Dict:
        """Authoritative order state; ``status`` is PAID, PENDING, CANCELLED, ..."""
        return await self._request("GET", f"/v2/payment-requests/{order_code}")

    def verify_webhook_data(self, payload: Dict) -> Dict:
        """
        Check the webhook signature and return its ``data`` block.

        Raises:
            WebhookSignatureError: missing or mismatching signature
        """
        data = payload.get("data")
        signature = payload.get("signature")
        if not isinstance(data, dict) or not signature:
            raise WebhookSignatureError("Webhook payload has no data or signature")

        expected = self.sign(data)
        if not hmac.compare_digest(expected, str(signature)):
            raise WebhookSignatureError(f"Invalid webhook signature for order {data.get('orderCode')}")
        return data
