"""
Local Credits Cache

Single-device offline mirror of an account's balance, transactions and
daily-claim state. Keys are "<namespace>_<account_id>", values are JSON blobs.

The cache is advisory: the remote store is authoritative, and anything that
cannot be parsed is treated as absent. Write failures are logged and swallowed.
"""

import asyncio
import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import ValidationError

from .config import (
    CREDITS_CACHE_NAMESPACE,
    TRANSACTIONS_CACHE_NAMESPACE,
    DAILY_CLAIM_CACHE_NAMESPACE,
    TRANSACTION_HISTORY_LIMIT,
)
from .models import CreditAccount, CreditTransaction, DailyClaimState

logger = logging.getLogger(__name__)


def cache_key(namespace: str, account_id: str) -> str:
    return f"{namespace}_{account_id}"


class MemoryKeyValueStore:
    """Process-local key/value store."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_item(self, key: str, value: str):
        self._data[key] = value

    async def remove_item(self, key: str):
        self._data.pop(key, None)


class JsonFileStore:
    """
    Key/value store keeping one JSON file per key under a directory.

    File I/O runs on a small thread pool so the event loop is never blocked.
    """

    _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="credits-cache")

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        # Percent-encoding keeps distinct keys on distinct files
        return self.directory / f"{quote(key, safe='')}.json"

    def _read_sync(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write_sync(self, key: str, value: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, path)

    def _remove_sync(self, key: str):
        path = self._path_for(key)
        if path.exists():
            path.unlink()

    async def get_item(self, key: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._read_sync, key)

    async def set_item(self, key: str, value: str):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._write_sync, key, value)

    async def remove_item(self, key: str):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._remove_sync, key)


class LocalCreditsCache:
    """Typed access to the cached credits state of each account."""

    def __init__(self, store=None):
        self.store = store if store is not None else MemoryKeyValueStore()

    async def _read_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.store.get_item(key)
        except Exception as e:
            logger.error(f"Error reading cache key {key}: {e}")
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            logger.warning(f"Corrupt cache entry {key}, treating as absent")
            return None

    async def _write_json(self, key: str, value: Any):
        try:
            await self.store.set_item(key, json.dumps(value, ensure_ascii=False))
        except Exception as e:
            logger.error(f"Error saving cache key {key}: {e}")

    async def _remove(self, key: str):
        try:
            await self.store.remove_item(key)
        except Exception as e:
            logger.error(f"Error removing cache key {key}: {e}")

    # ==================== ACCOUNT ====================

    async def load_account(self, account_id: str) -> Optional[CreditAccount]:
        data = await self._read_json(cache_key(CREDITS_CACHE_NAMESPACE, account_id))
        if not isinstance(data, dict):
            return None

        try:
            account = CreditAccount.model_validate({**data, "account_id": account_id})
        except ValidationError:
            logger.warning(f"Malformed cached credits for {account_id}, treating as absent")
            return None

        if not account.is_consistent():
            logger.warning(f"Inconsistent cached credits for {account_id}, treating as absent")
            return None

        return account

    async def save_account(self, account: CreditAccount):
        await self._write_json(
            cache_key(CREDITS_CACHE_NAMESPACE, account.account_id),
            account.model_dump()
        )

    # ==================== TRANSACTIONS ====================

    async def load_transactions(self, account_id: str) -> List[CreditTransaction]:
        data = await self._read_json(cache_key(TRANSACTIONS_CACHE_NAMESPACE, account_id))
        if not isinstance(data, list):
            return []

        transactions = []
        for item in data:
            try:
                transactions.append(CreditTransaction.model_validate(item))
            except ValidationError:
                logger.warning(f"Skipping malformed cached transaction for {account_id}")
        return transactions[-TRANSACTION_HISTORY_LIMIT:]

    async def save_transactions(self, account_id: str, transactions: List[CreditTransaction]):
        await self._write_json(
            cache_key(TRANSACTIONS_CACHE_NAMESPACE, account_id),
            [tx.model_dump() for tx in transactions[-TRANSACTION_HISTORY_LIMIT:]]
        )

    async def clear_transactions(self, account_id: str):
        await self._remove(cache_key(TRANSACTIONS_CACHE_NAMESPACE, account_id))

    # ==================== DAILY CLAIM ====================

    async def load_daily_claim(self, account_id: str) -> DailyClaimState:
        data = await self._read_json(cache_key(DAILY_CLAIM_CACHE_NAMESPACE, account_id))
        if not isinstance(data, dict):
            return DailyClaimState()
        try:
            return DailyClaimState.model_validate(data)
        except ValidationError:
            return DailyClaimState()

    async def save_daily_claim(self, account_id: str, state: DailyClaimState):
        await self._write_json(
            cache_key(DAILY_CLAIM_CACHE_NAMESPACE, account_id),
            state.model_dump()
        )

    async def clear(self, account_id: str):
        """Drop everything cached for an account."""
        for namespace in (CREDITS_CACHE_NAMESPACE, TRANSACTIONS_CACHE_NAMESPACE, DAILY_CLAIM_CACHE_NAMESPACE):
            await self._remove(cache_key(namespace, account_id))


def create_local_cache(directory: Optional[str] = None) -> LocalCreditsCache:
    """File-backed cache under CREDITS_CACHE_DIR."""
    from . import config
    return LocalCreditsCache(JsonFileStore(directory or config.CREDITS_CACHE_DIR))
