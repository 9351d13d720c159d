"""FastAPI dependency providers for repositories and services.

Routes never build Mongo-backed objects themselves; tests swap the
storage providers through ``app.dependency_overrides``.
"""
from fastapi import Depends

from database import database
from services.account_repository import AccountRepository, MongoAccountRepository
from services.account_service import AccountService
from services.essay_service import EssayService, EssayStore, MongoEssayStore
from services.journal_search_service import MongoSavedArticleStore, SavedArticleStore
from services.metering_service import MeteringService
from services.payment_gateway import PaymentGateway
from services.payment_ledger import MongoPaymentLedger, PaymentLedger
from services.reconciliation_service import ReconciliationService


def get_account_repository() -> AccountRepository:
    return MongoAccountRepository(database.get_db())


def get_payment_ledger() -> PaymentLedger:
    return MongoPaymentLedger(database.get_db())


def get_essay_store() -> EssayStore:
    return MongoEssayStore(database.get_db())


def get_saved_article_store() -> SavedArticleStore:
    return MongoSavedArticleStore(database.get_db())


def get_account_service(repository: AccountRepository = Depends(get_account_repository)) -> AccountService:
    return AccountService(repository)


def get_payment_gateway(
    repository: AccountRepository = Depends(get_account_repository),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> PaymentGateway:
    return PaymentGateway(repository, ledger)


def get_reconciliation_service(
    repository: AccountRepository = Depends(get_account_repository),
    ledger: PaymentLedger = Depends(get_payment_ledger),
) -> ReconciliationService:
    return ReconciliationService(repository, ledger)


def get_essay_service(
    repository: AccountRepository = Depends(get_account_repository),
    store: EssayStore = Depends(get_essay_store),
) -> EssayService:
    return EssayService(MeteringService(repository), store)
