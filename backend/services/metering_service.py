"""Metered action runner.

Each metered request runs under a per-account lease so that the entitlement
check, the (mocked) work and the usage increment form one logical
transaction. Two concurrent requests for the same account are serialized:
the second one re-reads the account after the first has recorded its usage.

The usage write itself is a version-checked ``$inc`` (retried once), so
concurrent writers to the same account never lose each other's updates.
"""
import asyncio
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from models import Account
from services.account_repository import AccountRepository
from services.entitlement_service import (
    EntitlementDecision,
    evaluate_entitlement,
    usage_increment,
)
from services.errors import AccountNotFound, ConcurrencyConflict

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL_SECONDS = 0.05


def _lock_ttl_seconds() -> int:
    return int(os.getenv("METERING_LOCK_TTL_SECONDS", "30"))


def _lock_wait_seconds() -> float:
    return float(os.getenv("METERING_LOCK_WAIT_SECONDS", "10"))


def _worker_id() -> str:
    return os.getenv("WORKER_ID") or f"{socket.gethostname()}-{os.getpid()}"


class MeteredResult(BaseModel):
    allowed: bool
    decision: EntitlementDecision
    account: Account
    value: Any = None


class MeteringService:

    def __init__(self, repository: AccountRepository):
        self.repository = repository

    @asynccontextmanager
    async def account_guard(self, account_id: str):
        """Hold the per-account lease for the duration of the block."""
        owner = f"{_worker_id()}:{uuid.uuid4().hex[:8]}"
        deadline = asyncio.get_running_loop().time() + _lock_wait_seconds()
        while not await self.repository.acquire_lock(account_id, owner, _lock_ttl_seconds()):
            if asyncio.get_running_loop().time() >= deadline:
                logger.warning("METERING_LOCK_TIMEOUT account_id=%s", account_id)
                raise ConcurrencyConflict(
                    "Another request for this account is still in progress, please retry"
                )
            await asyncio.sleep(LOCK_POLL_INTERVAL_SECONDS)
        try:
            yield
        finally:
            await self.repository.release_lock(account_id, owner)

    async def run(
        self,
        account_id: str,
        work: Callable[[Account, EntitlementDecision], Awaitable[Any]],
        now: Optional[datetime] = None,
    ) -> MeteredResult:
        """Check entitlement, run ``work`` if allowed, then record usage.

        If ``work`` raises, nothing is recorded and the exception propagates.
        """
        async with self.account_guard(account_id):
            account = await self.repository.get(account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")

            decision = evaluate_entitlement(account, now)
            if not decision.allowed:
                logger.info(
                    "ENTITLEMENT_DENIED account_id=%s tier=%s reason=%s essays_used=%s max_essays=%s",
                    account_id, account.subscription_tier.value, decision.reason.value,
                    account.essays_used, account.max_essays,
                )
                return MeteredResult(allowed=False, decision=decision, account=account)

            value = await work(account, decision)

            updated = await self.record_usage(account_id, decision)
            logger.info(
                "METERED_ACTION_RECORDED account_id=%s source=%s essays_used=%s essay_credits=%s",
                account_id, decision.source.value, updated.essays_used, updated.essay_credits,
            )
            return MeteredResult(allowed=True, decision=decision, account=updated, value=value)

    async def record_usage(self, account_id: str, decision: EntitlementDecision) -> Account:
        """Increment usage for one successful metered action (version-checked)."""
        def mutate(account: Account):
            inc = usage_increment(decision)
            return {"inc": inc} if inc else None

        return await self.repository.apply(account_id, mutate)
