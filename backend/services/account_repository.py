"""Account repository.

The Account record is the only shared mutable resource. Reads return
immutable ``Account`` snapshots; writes are explicit field-level commands
(``$set`` / ``$inc`` / ``$unset``) guarded by the record's ``version``.
Nothing here replaces a whole account document.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models import Account, AccountBilling
from services.errors import AccountNotFound, ConcurrencyConflict, ValidationError

logger = logging.getLogger(__name__)

# mutate(account) -> {"set": {...}, "inc": {...}, "unset": [...]} or None for no-op
AccountMutation = Callable[[Account], Optional[Dict[str, Any]]]


class AccountRepository(ABC):
    """Storage interface for accounts, their billing metadata and metering locks."""

    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_subscription(self, subscription_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_verification_token(self, token_hash: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_stripe_customer(self, customer_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def insert(self, account: Account) -> Account:
        """Persist a new account. Duplicate email raises ValidationError."""

    @abstractmethod
    async def update(
        self,
        account_id: str,
        expected_version: int,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
        unset_fields: Optional[Iterable[str]] = None,
    ) -> Account:
        """Apply a field-level update iff the stored version matches.

        Bumps ``version``. Raises ConcurrencyConflict on mismatch,
        AccountNotFound if the account does not exist and ValidationError
        when a new email is already held by another account.
        """

    @abstractmethod
    async def acquire_lock(self, account_id: str, owner: str, ttl_seconds: int) -> bool:
        pass

    @abstractmethod
    async def release_lock(self, account_id: str, owner: str) -> None:
        pass

    @abstractmethod
    async def get_billing(self, account_id: str) -> AccountBilling:
        pass

    @abstractmethod
    async def update_billing(
        self,
        account_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
    ) -> AccountBilling:
        pass

    async def apply(self, account_id: str, mutate: AccountMutation) -> Account:
        """Read-modify-write with one retry on a version conflict.

        ``mutate`` sees the freshest snapshot each attempt and may return None
        to leave the account unchanged.
        """
        for attempt in range(2):
            account = await self.get(account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")
            change = mutate(account)
            if not change:
                return account
            try:
                return await self.update(
                    account_id,
                    account.version,
                    set_fields=change.get("set"),
                    inc_fields=change.get("inc"),
                    unset_fields=change.get("unset"),
                )
            except ConcurrencyConflict:
                if attempt:
                    logger.error("ACCOUNT_VERSION_CONFLICT account_id=%s retries_exhausted", account_id)
                    raise
                logger.warning("ACCOUNT_VERSION_CONFLICT account_id=%s retrying", account_id)
        raise AssertionError("unreachable")


class MongoAccountRepository(AccountRepository):
    """AccountRepository over the ``accounts``, ``account_billing`` and ``account_locks`` collections."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _to_account(doc: Optional[dict]) -> Optional[Account]:
        return Account(**doc) if doc else None

    async def get(self, account_id: str) -> Optional[Account]:
        doc = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0})
        return self._to_account(doc)

    async def get_by_email(self, email: str) -> Optional[Account]:
        doc = await self.db.accounts.find_one({"email": email.lower()}, {"_id": 0})
        return self._to_account(doc)

    async def get_by_subscription(self, subscription_id: str) -> Optional[Account]:
        doc = await self.db.accounts.find_one({"subscription_id": subscription_id}, {"_id": 0})
        return self._to_account(doc)

    async def get_by_verification_token(self, token_hash: str) -> Optional[Account]:
        doc = await self.db.accounts.find_one({"verification_token_hash": token_hash}, {"_id": 0})
        return self._to_account(doc)

    async def get_by_stripe_customer(self, customer_id: str) -> Optional[Account]:
        billing = await self.db.account_billing.find_one(
            {"stripe_customer_id": customer_id}, {"_id": 0, "account_id": 1}
        )
        if not billing:
            return None
        return await self.get(billing["account_id"])

    async def insert(self, account: Account) -> Account:
        try:
            await self.db.accounts.insert_one(account.model_dump())
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
        return account

    async def update(
        self,
        account_id: str,
        expected_version: int,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
        unset_fields: Optional[Iterable[str]] = None,
    ) -> Account:
        update: Dict[str, Any] = {
            "$set": {**(set_fields or {}), "updated_at": datetime.now(timezone.utc)},
            "$inc": {**(inc_fields or {}), "version": 1},
        }
        if unset_fields:
            update["$unset"] = {field: "" for field in unset_fields}

        try:
            doc = await self.db.accounts.find_one_and_update(
                {"account_id": account_id, "version": expected_version},
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # only accounts.email is unique among updatable fields
            raise ValidationError("Email already registered")
        if doc is None:
            current = await self.db.accounts.find_one({"account_id": account_id}, {"_id": 0, "version": 1})
            if current is None:
                raise AccountNotFound(f"Account {account_id} not found")
            raise ConcurrencyConflict(
                f"Account {account_id} changed (expected version {expected_version}, found {current.get('version')})"
            )
        return Account(**doc)

    async def acquire_lock(self, account_id: str, owner: str, ttl_seconds: int) -> bool:
        """Take the per-account lease; expired leases can be stolen."""
        now = datetime.now(timezone.utc)
        try:
            result = await self.db.account_locks.find_one_and_update(
                {
                    "account_id": account_id,
                    "$or": [
                        {"locked_until": None},
                        {"locked_until": {"$exists": False}},
                        {"locked_until": {"$lt": now}},
                    ],
                },
                {"$set": {"locked_until": now + timedelta(seconds=ttl_seconds), "lock_owner": owner}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # held by someone else: the upsert collided with the live lock document
            return False
        return result is not None and result.get("lock_owner") == owner

    async def release_lock(self, account_id: str, owner: str) -> None:
        await self.db.account_locks.update_one(
            {"account_id": account_id, "lock_owner": owner},
            {"$unset": {"locked_until": "", "lock_owner": ""}},
        )

    async def get_billing(self, account_id: str) -> AccountBilling:
        doc = await self.db.account_billing.find_one({"account_id": account_id}, {"_id": 0})
        return AccountBilling(**doc) if doc else AccountBilling(account_id=account_id)

    async def update_billing(
        self,
        account_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
    ) -> AccountBilling:
        update: Dict[str, Any] = {"$set": {**(set_fields or {}), "updated_at": datetime.now(timezone.utc)}}
        if inc_fields:
            update["$inc"] = dict(inc_fields)
        doc = await self.db.account_billing.find_one_and_update(
            {"account_id": account_id},
            update,
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return AccountBilling(**doc)
