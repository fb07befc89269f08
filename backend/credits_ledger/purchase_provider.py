"""
Purchase Providers

The platform purchase API behind one interface, picked once at construction:

- MockPurchaseProvider: issues fake receipts (development and tests)
- StoreKitPurchaseProvider: wraps receipts the device obtained from the App Store
"""

import logging
import uuid
from typing import Dict, List, Optional, Protocol

from .config import CREDIT_PRODUCTS
from .errors import CreditsApiError, INVALID_ARGUMENT, NOT_FOUND
from .models import CreditProduct, PurchaseReceipt

logger = logging.getLogger(__name__)


def get_catalog() -> List[CreditProduct]:
    return [
        CreditProduct(product_id=product_id, **product)
        for product_id, product in CREDIT_PRODUCTS.items()
    ]


class PurchaseProvider(Protocol):
    async def get_products(self) -> List[CreditProduct]:
        ...

    async def purchase(self, product_id: str) -> PurchaseReceipt:
        ...

    async def get_purchase_history(self) -> List[PurchaseReceipt]:
        ...


class MockPurchaseProvider:
    """Completes every purchase immediately with a unique mock receipt."""

    def __init__(self):
        self._history: List[PurchaseReceipt] = []

    async def get_products(self) -> List[CreditProduct]:
        return get_catalog()

    async def purchase(self, product_id: str) -> PurchaseReceipt:
        if product_id not in CREDIT_PRODUCTS:
            raise CreditsApiError(f"Invalid product_id: {product_id}", INVALID_ARGUMENT)

        transaction_id = uuid.uuid4().hex
        receipt = PurchaseReceipt(
            product_id=product_id,
            receipt_data=f"mock_receipt_{transaction_id}",
            platform="mock",
            transaction_id=transaction_id
        )
        self._history.append(receipt)
        logger.info(f"Mock purchase completed: {product_id} ({transaction_id})")
        return receipt

    async def get_purchase_history(self) -> List[PurchaseReceipt]:
        return list(self._history)


class StoreKitPurchaseProvider:
    """
    Server-side view of App Store purchases.

    The purchase sheet runs on the device; the device hands the resulting
    receipts over and this provider serves them to the reconciler.
    """

    def __init__(self, receipts: Optional[List[PurchaseReceipt]] = None):
        self._pending: Dict[str, PurchaseReceipt] = {}
        self._history: List[PurchaseReceipt] = []
        for receipt in receipts or []:
            self.add_receipt(receipt)

    def add_receipt(self, receipt: PurchaseReceipt):
        self._pending[receipt.product_id] = receipt
        self._history.append(receipt)

    async def get_products(self) -> List[CreditProduct]:
        return get_catalog()

    async def purchase(self, product_id: str) -> PurchaseReceipt:
        receipt = self._pending.pop(product_id, None)
        if receipt is None:
            raise CreditsApiError(f"No App Store receipt received for {product_id}", NOT_FOUND)
        return receipt

    async def get_purchase_history(self) -> List[PurchaseReceipt]:
        return list(self._history)


def create_purchase_provider(receipts: Optional[List[PurchaseReceipt]] = None) -> PurchaseProvider:
    """Mock provider outside production, App Store provider otherwise."""
    from utils.environment import allow_mock_data

    if allow_mock_data() and not receipts:
        return MockPurchaseProvider()
    return StoreKitPurchaseProvider(receipts)
