"""
Hairstyle Service - Metered hairstyle generation

All generation calls MUST go through this service so the credit cost is
debited before the provider runs and refunded if the provider fails.

Usage:
    from credits_ledger.hairstyle_service import HairstyleService

    service = HairstyleService(UsageGuard(ledger), create_hairstyle_provider())
    result = await service.generate(user_id, image_ref, "bob_cut")
    print(result.image_url, result.credits_left)
"""

import logging
import os
import uuid
from typing import Optional, Protocol

import httpx

from . import config
from .guard import UsageGuard
from .models import HairstyleResult, UsageResult

logger = logging.getLogger(__name__)


class HairstyleProvider(Protocol):
    async def generate(self, image_ref: str, style: str, premium: bool = False) -> str:
        ...


class MockHairstyleProvider:
    """Returns a placeholder image URL without calling any model."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def generate(self, image_ref: str, style: str, premium: bool = False) -> str:
        self.calls += 1
        if self.fail:
            raise RuntimeError("Mock hairstyle provider failure")
        return f"https://mock.hairstyle.local/{style}/{uuid.uuid4().hex}.png"


class HttpHairstyleProvider:
    """
    Client for the external image generation backend.

    Required Environment Variables:
    - HAIRSTYLE_API_URL
    - HAIRSTYLE_API_KEY
    """

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None):
        self.api_url = (api_url or config.HAIRSTYLE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get("HAIRSTYLE_API_KEY", "")

    async def generate(self, image_ref: str, style: str, premium: bool = False) -> str:
        if not self.api_url:
            raise RuntimeError("HAIRSTYLE_API_URL not configured")

        async with httpx.AsyncClient(timeout=config.HAIRSTYLE_API_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{self.api_url}/generate",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"image": image_ref, "style": style, "quality": "premium" if premium else "basic"}
            )

            if response.status_code not in [200, 201]:
                logger.error(f"Hairstyle generation failed: {response.status_code} {response.text[:200]}")
                response.raise_for_status()
                raise RuntimeError(f"Unexpected hairstyle API status {response.status_code}")

            image_url = response.json().get("image_url")
            if not image_url:
                raise RuntimeError("Hairstyle API returned no image_url")
            return image_url


def create_hairstyle_provider() -> HairstyleProvider:
    from utils.environment import allow_mock_data

    if allow_mock_data() and not config.HAIRSTYLE_API_URL:
        return MockHairstyleProvider()
    return HttpHairstyleProvider()


class HairstyleService:
    def __init__(self, guard: UsageGuard, provider: HairstyleProvider):
        self.guard = guard
        self.provider = provider

    async def generate(self, account_id: str, image_ref: str, style: str, premium: bool = False) -> HairstyleResult:
        """
        Generate a hairstyle preview, paying for it with credits.

        Raises:
            InsufficientCreditsError: balance does not cover the feature
            Exception: provider failure, after the credits were refunded
        """
        feature = "premium_hairstyle" if premium else "basic_hairstyle"

        async def _run(usage: UsageResult) -> HairstyleResult:
            image_url = await self.provider.generate(image_ref, style, premium)
            return HairstyleResult(
                image_url=image_url,
                cost=usage.cost,
                credits_left=self.guard.ledger.get_balance(account_id),
                usage_id=usage.usage_id
            )

        result = await self.guard.run_metered(account_id, feature, _run)
        logger.info(f"Generated {feature} '{style}' for {account_id}, {result.credits_left} credits left")
        return result
