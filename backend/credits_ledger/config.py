"""
Credits Ledger Configuration and Constants

Credit products, usage costs, reward grants and remote API settings are defined here.
Prices are display strings from the store listing; credit amounts are integers.
"""

import os

# ==================== ACCOUNT DEFAULTS ====================
INITIAL_CREDITS = 5
INITIAL_CREDITS_DESCRIPTION = "Welcome credits"

# Oldest entries are evicted first once the log grows past this size
TRANSACTION_HISTORY_LIMIT = 100

# ==================== CREDIT PRODUCTS (IN-APP PURCHASE) ====================
CREDIT_PRODUCTS = {
    "credits_10": {
        "title": "Basic Pack",
        "credits": 10,
        "bonus": 0,
        "price": "$0.99",
        "description": "10 credits"
    },
    "credits_50": {
        "title": "Popular Pack",
        "credits": 50,
        "bonus": 10,
        "price": "$4.99",
        "description": "50 credits + 10 bonus credits"
    },
    "credits_100": {
        "title": "Value Pack",
        "credits": 100,
        "bonus": 25,
        "price": "$9.99",
        "description": "100 credits + 25 bonus credits"
    },
    "credits_250": {
        "title": "Mega Pack",
        "credits": 250,
        "bonus": 75,
        "price": "$19.99",
        "description": "250 credits + 75 bonus credits"
    }
}

# ==================== FEATURE USAGE COSTS ====================
USAGE_COSTS = {
    "basic_hairstyle": 2,
    "premium_hairstyle": 5,
    "ai_recommendation": 3,
    "hd_export": 4,
    "style_comparison": 3
}

USAGE_DESCRIPTIONS = {
    "basic_hairstyle": "Basic hairstyle change",
    "premium_hairstyle": "Premium hairstyle change",
    "ai_recommendation": "AI style recommendation",
    "hd_export": "HD export",
    "style_comparison": "Style comparison"
}

# ==================== REWARDS ====================
DAILY_CREDIT_AMOUNT = 3
DAILY_CREDIT_DESCRIPTION = "Daily free credits"

REWARD_ACTIONS = {
    "share_app": {"label": "Share app", "amount": 2},
    "rate_app": {"label": "Rate app", "amount": 5},
    "watch_ad": {"label": "Watch ad", "amount": 1},
    "complete_profile": {"label": "Complete profile", "amount": 3},
    "first_hairstyle": {"label": "First hairstyle", "amount": 5}
}

# ==================== LOCAL CACHE NAMESPACES ====================
CREDITS_CACHE_NAMESPACE = "@hairstyle_app_credits"
TRANSACTIONS_CACHE_NAMESPACE = "@hairstyle_app_transactions"
DAILY_CLAIM_CACHE_NAMESPACE = "@hairstyle_app_daily_claim"

# ==================== ERROR MESSAGES (USER FACING) ====================
ERROR_MESSAGES = {
    "unauthenticated": "Please sign in to your account first.",
    "failed-precondition": "Not enough credits. Please purchase more credits.",
    "insufficient-credits": "Not enough credits. Please purchase more credits.",
    "internal": "The service is temporarily unavailable. Please try again later.",
    "unavailable": "Network connection error. Please check your connection.",
    "deadline-exceeded": "The request timed out. Please try again later.",
    "invalid-argument": "The request was invalid.",
    "not-found": "The requested item was not found.",
    "purchase-rejected": "The purchase could not be verified. Please try again or contact support.",
    "unknown": "An unknown error occurred."
}

# ==================== APP STORE RECEIPT VALIDATION ====================
APPLE_VERIFY_RECEIPT_URLS = {
    "production": "https://buy.itunes.apple.com/verifyReceipt",
    "sandbox": "https://sandbox.itunes.apple.com/verifyReceipt"
}

# Production endpoint answers 21007 when handed a sandbox receipt
APPLE_SANDBOX_RECEIPT_STATUS = 21007


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number if set, got: {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer if set, got: {raw!r}") from exc


# ==================== REMOTE API SETTINGS ====================
CREDITS_API_URL = os.environ.get("CREDITS_API_URL", "http://localhost:8001/api")
CREDITS_API_TIMEOUT_SECONDS = _env_float("CREDITS_API_TIMEOUT_SECONDS", 10.0)
CREDITS_API_MAX_RETRIES = _env_int("CREDITS_API_MAX_RETRIES", 3)
CREDITS_API_RETRY_DELAY_SECONDS = _env_float("CREDITS_API_RETRY_DELAY_SECONDS", 1.0)

CREDITS_CACHE_DIR = os.environ.get("CREDITS_CACHE_DIR", ".credits_cache")
CREDITS_TIMEZONE = os.environ.get("CREDITS_TIMEZONE", "UTC")
DAILY_CREDITS_ENABLED = _env_bool("DAILY_CREDITS_ENABLED", True)

# Spends older than this can no longer be refunded
REFUND_WINDOW_SECONDS = _env_int("CREDITS_REFUND_WINDOW_SECONDS", 900)

HAIRSTYLE_API_URL = os.environ.get("HAIRSTYLE_API_URL", "")
HAIRSTYLE_API_TIMEOUT_SECONDS = _env_float("HAIRSTYLE_API_TIMEOUT_SECONDS", 60.0)


def product_credits(product_id: str) -> int:
    """Total credits granted for a product (base credits plus bonus)."""
    product = CREDIT_PRODUCTS.get(product_id)
    if not product:
        raise ValueError(f"Invalid product_id: {product_id}")
    return product["credits"] + product["bonus"]
