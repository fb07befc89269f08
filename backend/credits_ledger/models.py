"""
Credits Ledger Data Models

Pydantic models for ledger operations.
These define the canonical persisted/transmitted shapes of accounts,
transactions and purchase receipts, plus the results returned to callers.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, List, Literal

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_transaction_id(kind: str) -> str:
    return f"{kind}_{uuid.uuid4().hex}"


# ==================== ACCOUNT MODELS ====================

class CreditAccount(BaseModel):
    """Credit balance of a single account"""
    account_id: str
    balance: int = Field(0, ge=0)
    total_earned: int = Field(0, ge=0)
    total_spent: int = Field(0, ge=0)
    last_updated: str = Field(default_factory=utc_now_iso)  # ISO datetime string
    last_daily_claim: Optional[str] = None  # ISO date string (local calendar day)
    is_anonymous: bool = False

    def is_consistent(self) -> bool:
        return self.balance == self.total_earned - self.total_spent and self.balance >= 0


# ==================== TRANSACTION MODELS ====================

class CreditTransaction(BaseModel):
    """Immutable ledger entry"""
    id: str
    kind: Literal["earn", "spend"]
    amount: int = Field(..., gt=0)
    description: str
    timestamp: str = Field(default_factory=utc_now_iso)
    product_id: Optional[str] = None

    @classmethod
    def earn(cls, amount: int, description: str, product_id: Optional[str] = None) -> "CreditTransaction":
        return cls(
            id=new_transaction_id("earn"),
            kind="earn",
            amount=amount,
            description=description,
            product_id=product_id
        )

    @classmethod
    def spend(cls, amount: int, description: str) -> "CreditTransaction":
        return cls(
            id=new_transaction_id("spend"),
            kind="spend",
            amount=amount,
            description=description
        )


class DebitResult(BaseModel):
    """Result of an authoritative debit"""
    success: bool
    credits_left: int
    transaction: Optional[CreditTransaction] = None


class CreditResult(BaseModel):
    """Result of an authoritative credit; `transaction` is the entry the store recorded"""
    account: CreditAccount
    transaction: Optional[CreditTransaction] = None
    duplicate: bool = False


# ==================== PURCHASE MODELS ====================

class PurchaseReceipt(BaseModel):
    """Opaque proof of purchase issued by a platform store"""
    product_id: str
    receipt_data: str
    platform: Literal["ios", "android", "mock"] = "ios"
    transaction_id: Optional[str] = None


class VerifiedReceipt(BaseModel):
    """Answer of the receipt verification authority"""
    valid: bool
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    platform: str = "ios"
    error: Optional[str] = None

    @property
    def purchase_key(self) -> Optional[str]:
        if not self.transaction_id:
            return None
        return f"{self.platform}:{self.transaction_id}"


class PurchaseRecord(BaseModel):
    """Authority-side record of a verified purchase"""
    purchase_key: str
    account_id: str
    product_id: str
    platform: str
    transaction_id: str
    credits: int
    status: Literal["verified", "credited", "rejected"]
    created_at: str
    credited_at: Optional[str] = None


class VerifyPurchaseResult(BaseModel):
    """Response of VerifyPurchase"""
    success: bool
    credits_added: int = 0
    total_credits: Optional[int] = None
    duplicate: bool = False
    product_id: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class RestoreResult(BaseModel):
    """Response of a purchase restore"""
    status: Literal["restored", "rejected"]
    credited_count: int = 0
    credits_added: int = 0
    total_credits: Optional[int] = None
    error_code: Optional[str] = None
    user_message: Optional[str] = None


class ReconcileResult(BaseModel):
    """Client-facing outcome of reconciling one receipt"""
    status: Literal["credited", "rejected"]
    product_id: str
    credits_added: int = 0
    total_credits: Optional[int] = None
    duplicate: bool = False
    error_code: Optional[str] = None
    user_message: Optional[str] = None


class CreditProduct(BaseModel):
    """Catalog entry for a credit pack"""
    product_id: str
    title: str
    credits: int
    bonus: int
    price: str
    description: str

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus


# ==================== GRANT / USAGE MODELS ====================

class DailyClaimState(BaseModel):
    """Last successful daily claim (local calendar date)"""
    last_claim: Optional[str] = None


class DailyClaimResult(BaseModel):
    granted: bool
    amount: int = 0
    balance: int = 0


class UsageResult(BaseModel):
    """Result from the usage guard"""
    authorized: bool
    feature: str
    cost: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    remaining_balance: int = 0
    usage_id: Optional[str] = None


class HairstyleResult(BaseModel):
    image_url: str
    cost: int
    credits_left: int
    usage_id: Optional[str] = None


# ==================== API REQUEST / RESPONSE MODELS ====================

class CreditsResponse(BaseModel):
    """Response model for the credits endpoint"""
    success: bool = True
    account_id: str
    credits: int
    total_earned: int
    total_spent: int
    last_updated: str
    last_daily_claim: Optional[str] = None


class CreditGrantResponse(CreditsResponse):
    """Balance after a credit, with the recorded entry"""
    transaction: Optional[CreditTransaction] = None
    duplicate: bool = False


class DebitRequest(BaseModel):
    feature: Optional[str] = Field(None, description="Feature kind, e.g. basic_hairstyle")
    amount: Optional[int] = Field(None, gt=0, description="Explicit amount when no feature is given")
    description: Optional[str] = None


class DebitResponse(BaseModel):
    success: bool
    credits_left: int
    transaction: Optional[CreditTransaction] = None


class EarnRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: str
    product_id: Optional[str] = None


class VerifyPurchaseRequest(BaseModel):
    product_id: str
    receipt_data: str
    platform: Literal["ios", "android", "mock"] = "ios"
    transaction_id: Optional[str] = None


class RestoreRequest(BaseModel):
    receipts: List[VerifyPurchaseRequest] = Field(default_factory=list)


class RefundRequest(BaseModel):
    transaction_id: str = Field(..., description="Id of the Spend entry to refund")


class DailyClaimRequest(BaseModel):
    claim_date: str = Field(..., description="Local calendar date, YYYY-MM-DD")


class DailyClaimResponse(BaseModel):
    granted: bool
    account: Optional[CreditGrantResponse] = None
