"""
Unit Tests for the Local Credits Cache
"""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from credits_ledger.config import CREDITS_CACHE_NAMESPACE, TRANSACTIONS_CACHE_NAMESPACE
from credits_ledger.local_cache import (
    JsonFileStore,
    LocalCreditsCache,
    MemoryKeyValueStore,
    cache_key,
)
from credits_ledger.models import CreditAccount, CreditTransaction, DailyClaimState

ACCOUNT = "cache-1"


def test_cache_key():
    assert cache_key(CREDITS_CACHE_NAMESPACE, "abc") == "@hairstyle_app_credits_abc"


class TestAccountCache:

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        cache = LocalCreditsCache(JsonFileStore(str(tmp_path)))
        account = CreditAccount(account_id=ACCOUNT, balance=7, total_earned=10, total_spent=3)

        await cache.save_account(account)
        loaded = await cache.load_account(ACCOUNT)

        assert loaded.balance == 7
        assert loaded.total_earned == 10
        assert list(tmp_path.glob("*.json"))

    @pytest.mark.asyncio
    async def test_similar_account_ids_get_separate_files(self, tmp_path):
        cache = LocalCreditsCache(JsonFileStore(str(tmp_path)))
        await cache.save_account(CreditAccount(account_id="a/b", balance=1, total_earned=1))
        await cache.save_account(CreditAccount(account_id="a_b", balance=9, total_earned=9))

        assert (await cache.load_account("a/b")).balance == 1
        assert (await cache.load_account("a_b")).balance == 9
        assert len(list(tmp_path.glob("*.json"))) == 2

    @pytest.mark.asyncio
    async def test_missing_is_none(self, tmp_path):
        cache = LocalCreditsCache(JsonFileStore(str(tmp_path)))
        assert await cache.load_account(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_corrupt_json_is_none(self):
        store = MemoryKeyValueStore()
        await store.set_item(cache_key(CREDITS_CACHE_NAMESPACE, ACCOUNT), "{not json")

        assert await LocalCreditsCache(store).load_account(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_inconsistent_totals_are_none(self):
        store = MemoryKeyValueStore()
        await store.set_item(
            cache_key(CREDITS_CACHE_NAMESPACE, ACCOUNT),
            json.dumps({"balance": 50, "total_earned": 5, "total_spent": 0})
        )

        assert await LocalCreditsCache(store).load_account(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_negative_balance_is_none(self):
        store = MemoryKeyValueStore()
        await store.set_item(
            cache_key(CREDITS_CACHE_NAMESPACE, ACCOUNT),
            json.dumps({"balance": -1, "total_earned": 0, "total_spent": 1})
        )

        assert await LocalCreditsCache(store).load_account(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self):
        store = MemoryKeyValueStore()
        store.set_item = AsyncMock(side_effect=OSError("disk full"))

        await LocalCreditsCache(store).save_account(CreditAccount(account_id=ACCOUNT))

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self):
        cache = LocalCreditsCache()
        await cache.save_account(CreditAccount(account_id=ACCOUNT, balance=5, total_earned=5))
        await cache.save_transactions(ACCOUNT, [CreditTransaction.earn(5, "Welcome credits")])
        await cache.save_daily_claim(ACCOUNT, DailyClaimState(last_claim="2026-01-01"))

        await cache.clear(ACCOUNT)

        assert await cache.load_account(ACCOUNT) is None
        assert await cache.load_transactions(ACCOUNT) == []
        assert (await cache.load_daily_claim(ACCOUNT)).last_claim is None


class TestTransactionCache:

    @pytest.mark.asyncio
    async def test_truncates_to_history_limit(self, tmp_path):
        cache = LocalCreditsCache(JsonFileStore(str(tmp_path)))
        transactions = [CreditTransaction.earn(1, f"Grant {i}") for i in range(120)]

        await cache.save_transactions(ACCOUNT, transactions)
        loaded = await cache.load_transactions(ACCOUNT)

        assert len(loaded) == 100
        assert loaded[0].description == "Grant 20"
        assert loaded[-1].description == "Grant 119"

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self):
        store = MemoryKeyValueStore()
        good = CreditTransaction.spend(2, "Basic hairstyle change").model_dump()
        await store.set_item(
            cache_key(TRANSACTIONS_CACHE_NAMESPACE, ACCOUNT),
            json.dumps([good, {"kind": "refund"}])
        )

        loaded = await LocalCreditsCache(store).load_transactions(ACCOUNT)

        assert [tx.id for tx in loaded] == [good["id"]]

    @pytest.mark.asyncio
    async def test_clear_transactions(self):
        cache = LocalCreditsCache()
        await cache.save_transactions(ACCOUNT, [CreditTransaction.earn(5, "Welcome credits")])

        await cache.clear_transactions(ACCOUNT)

        assert await cache.load_transactions(ACCOUNT) == []
