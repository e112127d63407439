"""
Special referral codes.

Admin-issued promotional codes (``VIP4821``, ``GOLD1093``...) worth a fixed
number of credits. Each code is redeemable by exactly one account, and each
account can redeem at most one special code. Redemption writes its ledger entry
and marks the code used in the same transaction.
"""

import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from persistence.database import Database, get_database
from persistence.models import SpecialReferralCodeRecord
from persistence.repository import AccountRepository, SpecialReferralCodeRepository

from .errors import (
    AccountNotFound,
    BillingError,
    ErrorKind,
    InvalidAmount,
    InvalidReferralCode,
    ReferralAlreadyRedeemed,
    ReferralCodeUsed,
)
from .ledger import LedgerEntry, LedgerReason, LedgerStore

logger = structlog.get_logger()

CODE_PREFIXES = ("VIP", "ELITE", "PLATINUM", "PREMIUM", "GOLD", "DIAMOND", "ROYAL", "MASTER", "PRIME", "ULTRA")
MAX_CODES_PER_BATCH = 50
MAX_GENERATION_ATTEMPTS = 10
DEFAULT_CREDITS = 100
DEFAULT_DESCRIPTION = "VIP Realtor Program"
FALLBACK_DESCRIPTION = "Special VIP Credits"


def generate_special_code() -> str:
    """A prefix word followed by a 4-digit number."""
    return f"{secrets.choice(CODE_PREFIXES)}{1000 + secrets.randbelow(9000)}"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def special_referral_key(code: str) -> str:
    return f"special_referral:{code}"


@dataclass
class CodeValidation:
    """Whether a code could be redeemed right now."""
    code: str
    valid: bool
    credits: Optional[int] = None
    description: Optional[str] = None
    error: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            return {"code": self.code, "valid": False, "error": self.error.value if self.error else None}
        return {
            "code": self.code,
            "valid": True,
            "credits": self.credits,
            "description": self.description,
        }


@dataclass
class Redemption:
    code: str
    credits: int
    description: str
    entry: LedgerEntry
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "credits": self.credits,
            "description": self.description,
            "balance_after": self.entry.balance_after,
            "entry_id": self.entry.entry_id,
            "created": self.created,
        }


class SpecialReferralService:
    """Issues, checks and redeems special referral codes."""

    def __init__(self, db: Optional[Database] = None, ledger: Optional[LedgerStore] = None):
        self.db = db or get_database()
        self.ledger = ledger or LedgerStore(self.db)

    def generate(
        self,
        count: int = 1,
        credits: int = DEFAULT_CREDITS,
        description: Optional[str] = DEFAULT_DESCRIPTION,
        created_by: Optional[str] = None,
    ) -> List[SpecialReferralCodeRecord]:
        """
        Create ``count`` new unused codes worth ``credits`` each.

        Raises:
            InvalidAmount: count outside 1..50, or non-positive credits
            BillingError: no unique code found within the attempt limit
        """
        count, credits = int(count), int(credits)
        if not 1 <= count <= MAX_CODES_PER_BATCH:
            raise InvalidAmount(
                f"Can generate between 1 and {MAX_CODES_PER_BATCH} codes at once, got {count}",
                count=count,
            )
        if credits <= 0:
            raise InvalidAmount(f"Code credits must be positive, got {credits}", credits=credits)

        created = []
        with self.db.transaction() as tx:
            codes = SpecialReferralCodeRepository(tx)
            for _ in range(count):
                for _attempt in range(MAX_GENERATION_ATTEMPTS):
                    record = SpecialReferralCodeRecord(
                        code=generate_special_code(),
                        credits=credits,
                        description=description,
                        created_by=created_by,
                    )
                    if codes.create_if_absent(record):
                        created.append(record)
                        break
                else:
                    raise BillingError("Failed to generate a unique special referral code", generated=len(created))

        logger.info("special_codes_generated", count=len(created), credits=credits, created_by=created_by)
        return created

    def validate(self, code: str) -> CodeValidation:
        code = normalize_code(code)
        with self.db.transaction() as tx:
            record = SpecialReferralCodeRepository(tx).get(code)
        if record is None:
            return CodeValidation(code=code, valid=False, error=ErrorKind.REFERRAL_CODE_INVALID)
        if record.used:
            return CodeValidation(code=code, valid=False, error=ErrorKind.REFERRAL_CODE_USED)
        return CodeValidation(
            code=code,
            valid=True,
            credits=record.credits,
            description=record.description or FALLBACK_DESCRIPTION,
        )

    def redeem(self, account_id: str, code: str) -> Redemption:
        """
        Credit the account with the code's value and mark the code used.

        Redeeming the same code again for the same account returns the original
        entry without crediting twice.

        Raises:
            AccountNotFound: unknown account
            InvalidReferralCode: no such code
            ReferralCodeUsed: another account already redeemed it
            ReferralAlreadyRedeemed: this account already redeemed another code
        """
        code = normalize_code(code)

        with self.db.transaction() as tx:
            if AccountRepository(tx).get(account_id, lock=True) is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)

            codes = SpecialReferralCodeRepository(tx)
            record = codes.get(code, lock=True)
            if record is None:
                raise InvalidReferralCode(f"Invalid code {code}", code=code)
            description = record.description or FALLBACK_DESCRIPTION

            if record.used_by == account_id:
                entry = self.ledger.find_by_key(special_referral_key(code))
                return Redemption(code=code, credits=record.credits, description=description, entry=entry, created=False)
            if record.used:
                raise ReferralCodeUsed(f"Code {code} has already been used", code=code)

            previous = codes.get_used_by(account_id)
            if previous is not None:
                raise ReferralAlreadyRedeemed(
                    f"Account {account_id} has already used a special referral code",
                    account_id=account_id,
                    code=previous.code,
                )

            entry, created = self.ledger.append_once(
                account_id,
                record.credits,
                LedgerReason.SPECIAL_REFERRAL,
                meta={"code": code, "description": description},
                idempotency_key=special_referral_key(code),
            )
            codes.mark_used(code, account_id)

        logger.info(
            "special_code_redeemed",
            account_id=account_id,
            code=code,
            credits=record.credits,
            balance_after=entry.balance_after,
        )
        return Redemption(code=code, credits=record.credits, description=description, entry=entry, created=created)

    def list_codes(self, include_used: bool = True) -> List[SpecialReferralCodeRecord]:
        with self.db.transaction() as tx:
            return SpecialReferralCodeRepository(tx).list_codes(include_used=include_used)
