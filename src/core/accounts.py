"""
Account provisioning.

An account is created on first authentication together with its signup bonus
entry, in one transaction, so a new account never exists with an unexplained
balance.
"""

import secrets
import string
import uuid
from typing import Optional
import structlog

from persistence.database import Database, get_database
from persistence.models import AccountRecord
from persistence.repository import AccountRepository

from .config import BillingConfig
from .ledger import LedgerReason, LedgerStore

logger = structlog.get_logger()

REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(length: int = 6) -> str:
    return "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(length))


class AccountService:
    """Creates accounts and answers simple account lookups."""

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[LedgerStore] = None,
        config: Optional[BillingConfig] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or LedgerStore(self.db)
        self.config = config or BillingConfig.from_env()

    def provision(
        self,
        email: str,
        auth_method: str = "credentials",
        referral_code: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> AccountRecord:
        """
        Return the account for ``email``, creating it with a signup bonus if new.

        ``referral_code`` is the code of the referring account, if any; unknown
        codes are ignored.
        """
        email = email.strip().lower()

        with self.db.transaction() as tx:
            accounts = AccountRepository(tx)
            existing = accounts.get_by_email(email)
            if existing is not None:
                return existing

            referred_by = None
            if referral_code:
                referrer = accounts.get_by_referral_code(referral_code.strip().upper())
                referred_by = referrer.id if referrer else None

            code = generate_referral_code()
            while accounts.get_by_referral_code(code) is not None:
                code = generate_referral_code()

            account = accounts.create(AccountRecord(
                id=account_id or str(uuid.uuid4()),
                email=email,
                referral_code=code,
                referred_by=referred_by,
                auth_method=auth_method,
            ))

            bonus = self.config.signup_bonus_credits
            if bonus > 0:
                self.ledger.append(
                    account.id,
                    bonus,
                    LedgerReason.TRIAL,
                    meta={"message": "Welcome! Free trial credits"},
                    idempotency_key=f"trial:{account.id}",
                )
            account = accounts.get(account.id)

        logger.info(
            "account_provisioned",
            account_id=account.id,
            auth_method=auth_method,
            referred_by=referred_by,
            signup_bonus=bonus,
        )
        return account

    def get(self, account_id: str) -> Optional[AccountRecord]:
        with self.db.transaction() as tx:
            return AccountRepository(tx).get(account_id)
