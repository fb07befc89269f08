"""
Unit Tests for the Mongo Credits Store
======================================

Motor collections are mocked; the assertions check the exact conditional
filters that keep balances non-negative and receipts credited once.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

sys.path.insert(0, str(Path(__file__).parent.parent))

from credits_ledger.errors import (
    CreditsApiError,
    FAILED_PRECONDITION,
    INVALID_ARGUMENT,
    NOT_FOUND,
    PURCHASE_REJECTED,
)
from credits_ledger.models import CreditAccount, CreditResult, CreditTransaction, PurchaseReceipt
from credits_ledger.mongo_store import MongoCreditsStore, PurchaseAuthority
from credits_ledger.verification import MockReceiptVerifier

ACCOUNT = "mongo-1"


def account_doc(balance=5, earned=5, spent=0, **extra):
    return {
        "account_id": ACCOUNT,
        "balance": balance,
        "total_earned": earned,
        "total_spent": spent,
        "last_updated": "2026-01-01T00:00:00+00:00",
        "last_daily_claim": None,
        "is_anonymous": False,
        **extra
    }


def mock_db():
    db = MagicMock()
    db.credit_accounts.find_one = AsyncMock(return_value=account_doc())
    db.credit_accounts.update_one = AsyncMock()
    db.credit_accounts.find_one_and_update = AsyncMock()
    db.credit_purchases.insert_one = AsyncMock()
    db.credit_purchases.find_one = AsyncMock(return_value=None)
    db.credit_purchases.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=[])
    db.credit_purchases.find = MagicMock(return_value=cursor)
    return db


def mock_store(balance_after=65):
    store = MagicMock()
    account = CreditAccount(account_id=ACCOUNT, balance=balance_after, total_earned=balance_after)
    store.credit_purchase = AsyncMock(return_value=CreditResult(account=account))
    store.get_credits = AsyncMock(return_value=account)
    return store


class TestAccounts:

    @pytest.mark.asyncio
    async def test_existing_account_is_returned(self):
        db = mock_db()

        account = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).get_credits(ACCOUNT)

        assert account.balance == 5
        db.credit_accounts.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_access_upserts_welcome_credits(self):
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(side_effect=[None, account_doc()])

        account = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).get_credits(ACCOUNT, True)

        assert account.balance == 5
        args, kwargs = db.credit_accounts.update_one.call_args
        assert args[0] == {"account_id": ACCOUNT}
        seed = args[1]["$setOnInsert"]
        assert seed["balance"] == 5
        assert seed["is_anonymous"] is True
        assert seed["transactions"][0]["description"] == "Welcome credits"
        assert kwargs["upsert"] is True


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_is_conditional_on_balance(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=account_doc(3, 5, 2))

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).debit(
            ACCOUNT, 2, "Basic hairstyle change"
        )

        assert result.success is True
        assert result.credits_left == 3
        assert result.transaction.kind == "spend"

        args, kwargs = db.credit_accounts.find_one_and_update.call_args
        assert args[0] == {"account_id": ACCOUNT, "balance": {"$gte": 2}}
        assert args[1]["$inc"] == {"balance": -2, "total_spent": 2}
        assert args[1]["$push"]["transactions"]["$slice"] == -100
        assert kwargs["return_document"] == ReturnDocument.AFTER

    @pytest.mark.asyncio
    async def test_short_balance_is_denied(self):
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value=account_doc(1, 5, 4))
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=None)

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).debit(ACCOUNT, 2, "Basic hairstyle change")

        assert result.success is False
        assert result.credits_left == 1
        assert result.transaction is None

    @pytest.mark.asyncio
    async def test_non_positive_amount(self):
        with pytest.raises(CreditsApiError) as exc_info:
            await MongoCreditsStore(mock_db(), verifier=MockReceiptVerifier()).debit(ACCOUNT, 0, "x")

        assert exc_info.value.code == INVALID_ARGUMENT


class TestDailyClaim:

    @pytest.mark.asyncio
    async def test_claim_filter_only_matches_earlier_dates(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(
            return_value=account_doc(8, 8, 0, last_daily_claim="2026-03-14")
        )

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).claim_daily(
            ACCOUNT, "2026-03-14", 3, "Daily free credits"
        )

        assert result.account.balance == 8
        assert result.transaction.description == "Daily free credits"
        args, _ = db.credit_accounts.find_one_and_update.call_args
        assert args[0] == {
            "account_id": ACCOUNT,
            "$or": [{"last_daily_claim": None}, {"last_daily_claim": {"$lt": "2026-03-14"}}]
        }
        assert args[1]["$set"]["last_daily_claim"] == "2026-03-14"

    @pytest.mark.asyncio
    async def test_repeat_claim_returns_none(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=None)

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).claim_daily(
            ACCOUNT, "2026-03-14", 3, "Daily free credits"
        )

        assert result is None


class TestCredit:

    @pytest.mark.asyncio
    async def test_credit_returns_recorded_transaction(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=account_doc(8, 8, 0))

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).credit(ACCOUNT, 3, "Support gift")

        assert result.account.balance == 8
        pushed = db.credit_accounts.find_one_and_update.call_args.args[1]["$push"]["transactions"]["$each"][0]
        assert pushed["id"] == result.transaction.id

    @pytest.mark.asyncio
    async def test_reward_amount_comes_from_action_table(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=account_doc(10, 10, 0))

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).grant_reward(ACCOUNT, "rate_app")

        assert result.transaction.amount == 5
        assert result.transaction.description == "Rate app reward"

    @pytest.mark.asyncio
    async def test_unknown_reward_action(self):
        with pytest.raises(CreditsApiError) as exc_info:
            await MongoCreditsStore(mock_db(), verifier=MockReceiptVerifier()).grant_reward(ACCOUNT, "free_money")

        assert exc_info.value.code == INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_purchase_credit_is_conditional_on_key(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=account_doc(65, 65, 0))

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).credit_purchase(
            ACCOUNT, "ios:t1", "credits_50", 60
        )

        assert result.account.balance == 65
        args, _ = db.credit_accounts.find_one_and_update.call_args
        assert args[0] == {"account_id": ACCOUNT, "purchase_keys": {"$ne": "ios:t1"}}
        assert args[1]["$push"]["purchase_keys"] == "ios:t1"
        assert args[1]["$inc"] == {"balance": 60, "total_earned": 60}

    @pytest.mark.asyncio
    async def test_applied_purchase_key_returns_none(self):
        db = mock_db()
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=None)

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).credit_purchase(
            ACCOUNT, "ios:t1", "credits_50", 60
        )

        assert result is None


class TestRefund:

    @pytest.mark.asyncio
    async def test_refund_credits_spend_once(self):
        spend = CreditTransaction.spend(2, "Basic hairstyle change")
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value={
            "transactions": [spend.model_dump()], "refunded_spends": []
        })
        db.credit_accounts.find_one_and_update = AsyncMock(return_value=account_doc(5, 7, 2))

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).refund(ACCOUNT, spend.id)

        assert result.duplicate is False
        assert result.transaction.amount == 2
        assert result.transaction.description == "Refund: Basic hairstyle change"
        args, _ = db.credit_accounts.find_one_and_update.call_args
        assert args[0] == {"account_id": ACCOUNT, "refunded_spends": {"$ne": spend.id}}
        assert args[1]["$push"]["refunded_spends"]["$each"] == [spend.id]

    @pytest.mark.asyncio
    async def test_refunded_spend_is_duplicate(self):
        spend = CreditTransaction.spend(2, "Basic hairstyle change")
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(side_effect=[
            {"transactions": [spend.model_dump()], "refunded_spends": [spend.id]},
            account_doc(5, 7, 2)
        ])

        result = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).refund(ACCOUNT, spend.id)

        assert result.duplicate is True
        assert result.transaction is None
        db.credit_accounts.find_one_and_update.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_spend_is_not_found(self):
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value={"refunded_spends": []})

        with pytest.raises(CreditsApiError) as exc_info:
            await MongoCreditsStore(db, verifier=MockReceiptVerifier()).refund(ACCOUNT, "spend_missing")

        assert exc_info.value.code == NOT_FOUND

    @pytest.mark.asyncio
    async def test_earn_entry_cannot_be_refunded(self):
        earn = CreditTransaction.earn(5, "Welcome credits")
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value={"transactions": [earn.model_dump()]})

        with pytest.raises(CreditsApiError) as exc_info:
            await MongoCreditsStore(db, verifier=MockReceiptVerifier()).refund(ACCOUNT, earn.id)

        assert exc_info.value.code == NOT_FOUND

    @pytest.mark.asyncio
    async def test_old_spend_is_past_window(self):
        spend = CreditTransaction.spend(2, "Basic hairstyle change").model_copy(
            update={"timestamp": "2026-01-01T00:00:00+00:00"}
        )
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value={"transactions": [spend.model_dump()]})

        with pytest.raises(CreditsApiError) as exc_info:
            await MongoCreditsStore(db, verifier=MockReceiptVerifier()).refund(ACCOUNT, spend.id)

        assert exc_info.value.code == FAILED_PRECONDITION
        db.credit_accounts.find_one_and_update.assert_not_called()


class TestTransactions:

    @pytest.mark.asyncio
    async def test_slice_projection(self):
        db = mock_db()
        db.credit_accounts.find_one = AsyncMock(return_value={"transactions": [
            {"id": "earn_1", "kind": "earn", "amount": 5, "description": "Welcome credits"}
        ]})

        transactions = await MongoCreditsStore(db, verifier=MockReceiptVerifier()).get_transactions(ACCOUNT, 10)

        assert [tx.id for tx in transactions] == ["earn_1"]
        args, _ = db.credit_accounts.find_one.call_args
        assert args[1] == {"_id": 0, "transactions": {"$slice": -10}}


class TestPurchaseAuthority:

    @pytest.mark.asyncio
    async def test_first_submission_credits_product(self):
        db = mock_db()
        store = mock_store()
        authority = PurchaseAuthority(db, store, MockReceiptVerifier())

        result = await authority.verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_50", receipt_data="r1", transaction_id="t1")
        )

        assert result.success is True
        assert result.credits_added == 60
        assert result.duplicate is False
        inserted = db.credit_purchases.insert_one.call_args.args[0]
        assert inserted["purchase_key"] == "ios:t1"
        assert inserted["status"] == "verified"
        claim_filter = db.credit_purchases.update_one.call_args.args[0]
        assert claim_filter == {"purchase_key": "ios:t1", "status": "verified"}
        store.credit_purchase.assert_awaited_once_with(ACCOUNT, "ios:t1", "credits_50", 60)

    @pytest.mark.asyncio
    async def test_credited_receipt_is_duplicate(self):
        db = mock_db()
        db.credit_purchases.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        db.credit_purchases.find_one = AsyncMock(return_value={
            "purchase_key": "ios:t1", "account_id": ACCOUNT, "status": "credited"
        })
        store = mock_store()

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_50", receipt_data="r1", transaction_id="t1")
        )

        assert result.success is True
        assert result.duplicate is True
        assert result.credits_added == 0
        store.credit_purchase.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_verified_record_is_finished(self):
        db = mock_db()
        db.credit_purchases.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        db.credit_purchases.find_one = AsyncMock(return_value={
            "purchase_key": "ios:t1", "account_id": ACCOUNT, "status": "verified"
        })
        store = mock_store()

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_10", receipt_data="r1", transaction_id="t1")
        )

        assert result.duplicate is False
        assert result.credits_added == 10
        store.credit_purchase.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_receipt_of_other_account_is_rejected(self):
        db = mock_db()
        db.credit_purchases.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        db.credit_purchases.find_one = AsyncMock(return_value={
            "purchase_key": "ios:t1", "account_id": "someone-else", "status": "credited"
        })
        store = mock_store()

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_10", receipt_data="r1", transaction_id="t1")
        )

        assert result.success is False
        assert result.error_code == PURCHASE_REJECTED
        store.credit_purchase.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_receipt_is_rejected(self):
        db = mock_db()
        store = mock_store()

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_10", receipt_data="invalid-receipt")
        )

        assert result.success is False
        assert result.error_code == PURCHASE_REJECTED
        db.credit_purchases.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_product_is_invalid(self):
        result = await PurchaseAuthority(mock_db(), mock_store(), MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_9000", receipt_data="r1")
        )

        assert result.error_code == INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_failed_credit_leaves_record_verified(self):
        db = mock_db()
        store = mock_store()
        store.credit_purchase = AsyncMock(side_effect=CreditsApiError("gone"))

        with pytest.raises(CreditsApiError):
            await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
                ACCOUNT, PurchaseReceipt(product_id="credits_10", receipt_data="r1", transaction_id="t1")
            )

        # A later retry or restore finishes it; the account-side key stops a second credit
        db.credit_purchases.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_after_applied_credit_is_duplicate(self):
        db = mock_db()
        db.credit_purchases.insert_one = AsyncMock(side_effect=DuplicateKeyError("dup"))
        db.credit_purchases.find_one = AsyncMock(return_value={
            "purchase_key": "ios:t1", "account_id": ACCOUNT, "status": "verified"
        })
        store = mock_store(balance_after=15)
        store.credit_purchase = AsyncMock(return_value=None)

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).verify_and_credit(
            ACCOUNT, PurchaseReceipt(product_id="credits_10", receipt_data="r1", transaction_id="t1")
        )

        assert result.success is True
        assert result.duplicate is True
        assert result.credits_added == 0
        assert result.total_credits == 15
        claim_filter, claim_update = db.credit_purchases.update_one.call_args.args
        assert claim_filter == {"purchase_key": "ios:t1", "status": "verified"}
        assert claim_update["$set"]["status"] == "credited"

    @pytest.mark.asyncio
    async def test_restore_credits_pending_records(self):
        db = mock_db()
        db.credit_purchases.find.return_value.to_list = AsyncMock(return_value=[
            {"purchase_key": "ios:t9", "product_id": "credits_100", "credits": 125}
        ])
        store = mock_store(balance_after=130)

        result = await PurchaseAuthority(db, store, MockReceiptVerifier()).restore(ACCOUNT, [])

        assert result.status == "restored"
        assert result.credited_count == 1
        assert result.credits_added == 125
        assert result.total_credits == 130
        db.credit_purchases.find.assert_called_once_with(
            {"account_id": ACCOUNT, "status": "verified"}, {"_id": 0}
        )
