"""
Persistence Layer

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    AccountRecord,
    LedgerEntryRecord,
    PlanRecord,
    ArtifactRecord,
    SpecialReferralCodeRecord,
    WebhookEventRecord,
)
from .repository import (
    AccountRepository,
    LedgerRepository,
    PlanRepository,
    ArtifactRepository,
    SpecialReferralCodeRepository,
    WebhookEventRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "AccountRecord",
    "LedgerEntryRecord",
    "PlanRecord",
    "ArtifactRecord",
    "SpecialReferralCodeRecord",
    "WebhookEventRecord",
    "AccountRepository",
    "LedgerRepository",
    "PlanRepository",
    "ArtifactRepository",
    "SpecialReferralCodeRepository",
    "WebhookEventRepository",
]
