"""
Credits Ledger Module
Virtual-credits economy for the hairstyle preview feature

This module provides:
- Account balances and an append-only transaction log (last 100 entries)
- Atomic, authoritative debits against the remote store
- Idempotent purchase reconciliation (one credit per receipt)
- Daily and action reward grants
- Usage metering with refunds for failed features

Collections used:
- credit_accounts: Balances with embedded transaction log
- credit_purchases: Verified purchases, unique on purchase_key
- credits_meta: Init version stamp
"""

__version__ = "1.0.0"
