"""
Environment Configuration Utility

Provides environment detection and the mock provider policy.

ENVIRONMENT values:
- production: Real App Store verification and hairstyle provider only
- development: Mock purchase, verification and hairstyle providers allowed
- test: Mock providers allowed for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def allow_mock_data() -> bool:
    """
    Check if mock providers may be used.

    Returns True only in development or test environments.
    Production must never accept a receipt it did not verify with the store.
    """
    return ENVIRONMENT in {"development", "test"}


logging.info(f"Environment: {ENVIRONMENT} | Mock providers allowed: {allow_mock_data()}")
