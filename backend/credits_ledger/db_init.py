"""
Credits Ledger Database Initialization Script

Rules:
1. Production guard - requires CREDITS_INIT_CONFIRM=YES when APP_ENV=production
2. Idempotent - reruns never duplicate collections or indexes
3. Non-destructive - nothing is dropped, deleted or truncated
4. Accounts are created lazily on first access, never here
5. Version stamp in credits_meta

Usage:
    python -m credits_ledger.db_init
    python -m credits_ledger.db_init --dry-run
    APP_ENV=production CREDITS_INIT_CONFIRM=YES python -m credits_ledger.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "credit_accounts",
    "credit_purchases",
    "credits_meta"
]

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("credit_accounts", [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("credit_accounts", [("last_updated", -1)], {"name": "idx_last_updated"}),

    # One credited transaction per receipt
    ("credit_purchases", [("purchase_key", 1)], {"unique": True, "name": "idx_purchase_key_unique"}),
    ("credit_purchases", [("account_id", 1), ("status", 1)], {"name": "idx_account_status"}),
]


def check_environment() -> Tuple[bool, str]:
    """Block production runs unless explicitly confirmed."""
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("CREDITS_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDITS_INIT_CONFIRM=YES\n"
                f"Current value: CREDITS_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def ensure_collection(db, name: str, dry_run: bool = False) -> str:
    if name in await db.list_collection_names():
        return f"  [SKIP] Collection '{name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{name}'"

    try:
        await db.create_collection(name)
        return f"  [CREATE] Created collection '{name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{name}' already exists (race)"


async def ensure_index(db, name: str, index_spec: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[name]
    index_name = options.get("name", str(index_spec))

    if index_name in await collection.index_information():
        return f"  [SKIP] Index '{index_name}' on '{name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{name}' already exists (race)"
        raise


async def stamp_version(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would stamp version {INIT_VERSION}"

    await db.credits_meta.update_one(
        {"_id": "credits_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"  [UPDATE] Version stamp set to {INIT_VERSION}"


async def initialize(db, dry_run: bool = False) -> List[str]:
    """Create collections, indexes and the version stamp. Returns the report lines."""
    report = []
    for name in REQUIRED_COLLECTIONS:
        report.append(await ensure_collection(db, name, dry_run))
    for name, index_spec, options in REQUIRED_INDEXES:
        report.append(await ensure_index(db, name, index_spec, options, dry_run))
    report.append(await stamp_version(db, dry_run))
    return report


async def run_init(dry_run: bool = False) -> int:
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)
    if not allowed:
        logger.error("Init blocked by environment guard")
        return 1

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    logger.info(f"Database: {db_name} | Dry run: {dry_run}")

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        for line in await initialize(client[db_name], dry_run):
            logger.info(line)
    except Exception as e:
        logger.error(f"Credits DB init failed: {e}")
        return 1
    finally:
        client.close()

    logger.info("SUCCESS: Credits DB init completed")
    return 0


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(description="Credits Ledger Database Initialization")
    parser.add_argument('--dry-run', action='store_true', help='Print what would be done without making changes')
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
