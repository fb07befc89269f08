"""
Authentication lifecycle for the ledger.

AuthSession emits sign-in/sign-out events; CreditsSession subscribes and
loads the account on sign-in and clears it on sign-out.
"""

import logging
import uuid
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from .ledger_service import CreditsLedger

logger = logging.getLogger(__name__)

SIGNED_IN = "signed_in"
SIGNED_OUT = "signed_out"


class Identity(BaseModel):
    account_id: str
    is_anonymous: bool = False


AuthListener = Callable[[str, Identity], Awaitable[None]]


class AuthSession:
    """Current identity of this client plus its event subscribers."""

    def __init__(self):
        self.identity: Optional[Identity] = None
        self._listeners: List[AuthListener] = []

    def subscribe(self, listener: AuthListener):
        self._listeners.append(listener)

    async def _emit(self, event: str, identity: Identity):
        for listener in self._listeners:
            await listener(event, identity)

    async def sign_in(self, account_id: str, is_anonymous: bool = False) -> Identity:
        if self.identity is not None and self.identity.account_id != account_id:
            await self.sign_out()

        self.identity = Identity(account_id=account_id, is_anonymous=is_anonymous)
        logger.info(f"Signed in {account_id} (anonymous={is_anonymous})")
        await self._emit(SIGNED_IN, self.identity)
        return self.identity

    async def sign_in_anonymously(self) -> Identity:
        return await self.sign_in(f"anon_{uuid.uuid4().hex}", is_anonymous=True)

    async def sign_out(self):
        identity = self.identity
        if identity is None:
            return
        self.identity = None
        logger.info(f"Signed out {identity.account_id}")
        await self._emit(SIGNED_OUT, identity)


class CreditsSession:
    """Keeps the ledger's loaded accounts in step with authentication."""

    def __init__(self, ledger: CreditsLedger, auth: AuthSession):
        self.ledger = ledger
        self.auth = auth
        auth.subscribe(self._on_auth_event)

    @property
    def account_id(self) -> Optional[str]:
        return self.auth.identity.account_id if self.auth.identity else None

    @property
    def balance(self) -> int:
        return self.ledger.get_balance(self.account_id) if self.account_id else 0

    async def _on_auth_event(self, event: str, identity: Identity):
        if event == SIGNED_IN:
            await self.ledger.load_account(identity.account_id, identity.is_anonymous)
        elif event == SIGNED_OUT:
            await self.ledger.unload(identity.account_id)
