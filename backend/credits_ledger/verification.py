"""
Receipt Verification

Server-side validation of platform purchase receipts.

The verifier defines the idempotency key of a purchase: the platform
transaction id it reports, namespaced by platform ("ios:1000000123").

Required Environment Variables (App Store):
- APPLE_SHARED_SECRET (auto-renewable subscriptions only, optional otherwise)
"""

import hashlib
import logging
import os
from typing import Optional, Protocol

import httpx

from .config import (
    APPLE_VERIFY_RECEIPT_URLS,
    APPLE_SANDBOX_RECEIPT_STATUS,
    CREDIT_PRODUCTS,
)
from .models import PurchaseReceipt, VerifiedReceipt

logger = logging.getLogger(__name__)


class ReceiptVerifier(Protocol):
    async def verify(self, receipt: PurchaseReceipt) -> VerifiedReceipt:
        ...


class MockReceiptVerifier:
    """
    Accepts any non-empty receipt for a known product.

    Receipts whose data starts with "invalid" are rejected. Without an explicit
    transaction id the receipt data itself is hashed, so resubmitting the same
    receipt maps to the same purchase.
    """

    async def verify(self, receipt: PurchaseReceipt) -> VerifiedReceipt:
        if not receipt.receipt_data or receipt.receipt_data.startswith("invalid"):
            return VerifiedReceipt(valid=False, product_id=receipt.product_id,
                                   platform=receipt.platform, error="Receipt rejected")

        if receipt.product_id not in CREDIT_PRODUCTS:
            return VerifiedReceipt(valid=False, product_id=receipt.product_id,
                                   platform=receipt.platform, error="Unknown product")

        transaction_id = receipt.transaction_id or hashlib.sha256(
            receipt.receipt_data.encode("utf-8")
        ).hexdigest()[:24]

        return VerifiedReceipt(
            valid=True,
            product_id=receipt.product_id,
            transaction_id=transaction_id,
            platform=receipt.platform
        )


class AppleReceiptVerifier:
    """App Store verifyReceipt client (production first, sandbox on 21007)."""

    def __init__(self, shared_secret: Optional[str] = None, timeout: float = 15.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.shared_secret = shared_secret if shared_secret is not None else os.environ.get("APPLE_SHARED_SECRET", "")
        self.timeout = timeout
        self._client = client

    async def _post(self, url: str, payload: dict) -> dict:
        if self._client is not None:
            response = await self._client.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json()

    async def verify(self, receipt: PurchaseReceipt) -> VerifiedReceipt:
        if receipt.platform != "ios":
            return VerifiedReceipt(valid=False, product_id=receipt.product_id, platform=receipt.platform,
                                   error=f"Unsupported platform: {receipt.platform}")

        payload = {"receipt-data": receipt.receipt_data, "exclude-old-transactions": False}
        if self.shared_secret:
            payload["password"] = self.shared_secret

        data = await self._post(APPLE_VERIFY_RECEIPT_URLS["production"], payload)
        if data.get("status") == APPLE_SANDBOX_RECEIPT_STATUS:
            logger.info("Sandbox receipt submitted to production, retrying against sandbox")
            data = await self._post(APPLE_VERIFY_RECEIPT_URLS["sandbox"], payload)

        status = data.get("status")
        if status != 0:
            logger.warning(f"App Store rejected receipt for {receipt.product_id}: status={status}")
            return VerifiedReceipt(valid=False, product_id=receipt.product_id, platform="ios",
                                   error=f"App Store status {status}")

        in_app = data.get("receipt", {}).get("in_app", []) or data.get("latest_receipt_info", [])
        matches = [item for item in in_app if item.get("product_id") == receipt.product_id]
        if receipt.transaction_id:
            matches = [item for item in matches if item.get("transaction_id") == receipt.transaction_id]

        if not matches:
            return VerifiedReceipt(valid=False, product_id=receipt.product_id, platform="ios",
                                   error="Product not present in receipt")

        item = matches[-1]
        if not item.get("transaction_id"):
            return VerifiedReceipt(valid=False, product_id=receipt.product_id, platform="ios",
                                   error="Receipt entry has no transaction id")
        return VerifiedReceipt(
            valid=True,
            product_id=item["product_id"],
            transaction_id=str(item.get("transaction_id")),
            platform="ios"
        )


def create_receipt_verifier() -> ReceiptVerifier:
    """Mock verifier outside production, App Store verifier otherwise."""
    from utils.environment import allow_mock_data

    if allow_mock_data():
        return MockReceiptVerifier()
    return AppleReceiptVerifier()
