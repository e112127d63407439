"""
Charge Guard

At most one debit per billable unit, even under retried requests, duplicate
workers or two instances racing on the same artifact.

Flow (one transaction):
1. Lock the billable unit (artifact row / account row)
2. If its gating flag or idempotency-keyed entry already exists -> already settled
3. Verify balance >= cost, otherwise InsufficientCredits (nothing written)
4. Append the debit entry and set the gating flag

A racing second attempt blocks on the lock, then takes branch 2.

A bulk workflow download runs the same steps over every artifact of the
workflow at once, with step 3 checked against the total before any debit.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import structlog

from persistence.database import Database, get_database
from persistence.repository import AccountRepository, ArtifactRepository, LedgerRepository

from .config import BillingConfig
from .errors import AccountNotFound, ArtifactNotFound, EditLimitReached, InsufficientCredits, NotOwner
from .ledger import LedgerEntry, LedgerReason, LedgerStore

logger = structlog.get_logger()


class ChargeStatus(Enum):
    CHARGED = "charged"
    ALREADY_SETTLED = "already_settled"


@dataclass
class ChargeOutcome:
    """Result of a charge attempt that did not fail."""
    status: ChargeStatus
    idempotency_key: str
    cost: int
    balance_after: int
    entry: Optional[LedgerEntry] = None

    @property
    def charged(self) -> bool:
        return self.status == ChargeStatus.CHARGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "idempotency_key": self.idempotency_key,
            "charged": self.cost if self.charged else 0,
            "balance_after": self.balance_after,
            "entry_id": self.entry.entry_id if self.entry else None,
        }


@dataclass
class WorkflowDownloadOutcome:
    """Result of downloading every artifact of a workflow at once."""
    workflow_id: str
    cost: int
    balance_after: int
    charged: List[str] = field(default_factory=list)
    already_settled: List[str] = field(default_factory=list)
    entries: List[LedgerEntry] = field(default_factory=list)

    @property
    def total_charged(self) -> int:
        return self.cost * len(self.charged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "charged": self.charged,
            "already_settled": self.already_settled,
            "total_charged": self.total_charged,
            "balance_after": self.balance_after,
            "entry_ids": [e.entry_id for e in self.entries],
        }


def download_key(artifact_id: str) -> str:
    return f"download:{artifact_id}"


def refinement_key(workflow_id: str, edit_index: int) -> str:
    return f"refinement:{workflow_id}:{edit_index}"


class ChargeGuard:
    """Enforces the at-most-once charge protocol for downloads and refinements."""

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[LedgerStore] = None,
        config: Optional[BillingConfig] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or LedgerStore(self.db)
        self.config = config or BillingConfig.from_env()

    def charge_download(
        self,
        account_id: str,
        artifact_id: str,
        cost: Optional[int] = None,
    ) -> ChargeOutcome:
        """
        Charge for the first full-resolution download of an artifact.

        Re-downloads return ``ALREADY_SETTLED`` without touching the balance.
        """
        cost = self.config.download_cost_credits if cost is None else int(cost)
        key = download_key(artifact_id)

        with self.db.transaction() as tx:
            artifacts = ArtifactRepository(tx)
            artifact = artifacts.get(artifact_id, lock=True)
            if artifact is None:
                raise ArtifactNotFound(f"Artifact {artifact_id} not found", artifact_id=artifact_id)
            if artifact.account_id != account_id:
                raise NotOwner(
                    f"Artifact {artifact_id} does not belong to account {account_id}",
                    artifact_id=artifact_id,
                )

            existing = LedgerRepository(tx).get_by_key(key)
            if artifact.downloaded or existing is not None:
                if not artifact.downloaded:
                    artifacts.mark_downloaded(artifact_id)
                return self._settled(tx, account_id, key, cost, existing)

            entry = self.ledger.debit(
                account_id,
                cost,
                LedgerReason.DOWNLOAD,
                meta={"artifact_id": artifact_id, "workflow_id": artifact.workflow_id},
                idempotency_key=key,
            )
            artifacts.mark_downloaded(artifact_id)

        logger.info(
            "download_charged",
            account_id=account_id,
            artifact_id=artifact_id,
            cost=cost,
            balance_after=entry.balance_after,
        )
        return ChargeOutcome(
            status=ChargeStatus.CHARGED,
            idempotency_key=key,
            cost=cost,
            balance_after=entry.balance_after,
            entry=entry,
        )

    def charge_workflow_download(
        self,
        account_id: str,
        workflow_id: str,
        cost: Optional[int] = None,
    ) -> WorkflowDownloadOutcome:
        """
        Download every artifact of a workflow in one go.

        Each artifact not yet downloaded is debited under its own download key,
        so single and bulk downloads never charge the same artifact twice. The
        whole batch is checked against the balance first; when it does not fit,
        nothing is charged.
        """
        cost = self.config.download_cost_credits if cost is None else int(cost)

        with self.db.transaction() as tx:
            account = AccountRepository(tx).get(account_id, lock=True)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)

            artifacts = ArtifactRepository(tx)
            owned = artifacts.list_for_workflow(workflow_id, lock=True)
            if not owned:
                raise ArtifactNotFound(f"Workflow {workflow_id} has no results", workflow_id=workflow_id)
            if any(a.account_id != account_id for a in owned):
                raise NotOwner(
                    f"Workflow {workflow_id} does not belong to account {account_id}",
                    workflow_id=workflow_id,
                )

            ledger = LedgerRepository(tx)
            outcome = WorkflowDownloadOutcome(workflow_id=workflow_id, cost=cost, balance_after=account.credit_balance)
            pending = []
            for artifact in owned:
                if artifact.downloaded or ledger.get_by_key(download_key(artifact.id)) is not None:
                    if not artifact.downloaded:
                        artifacts.mark_downloaded(artifact.id)
                    outcome.already_settled.append(artifact.id)
                else:
                    pending.append(artifact)

            required = cost * len(pending)
            if account.credit_balance < required:
                raise InsufficientCredits(account_id, required, account.credit_balance)

            for artifact in pending:
                entry = self.ledger.debit(
                    account_id,
                    cost,
                    LedgerReason.DOWNLOAD,
                    meta={"artifact_id": artifact.id, "workflow_id": workflow_id, "bulk": True},
                    idempotency_key=download_key(artifact.id),
                )
                artifacts.mark_downloaded(artifact.id)
                outcome.charged.append(artifact.id)
                outcome.entries.append(entry)
                outcome.balance_after = entry.balance_after

        logger.info(
            "workflow_download_charged",
            account_id=account_id,
            workflow_id=workflow_id,
            charged=len(outcome.charged),
            already_settled=len(outcome.already_settled),
            total=outcome.total_charged,
            balance_after=outcome.balance_after,
        )
        return outcome

    def charge_refinement(
        self,
        account_id: str,
        workflow_id: str,
        edit_index: int,
        cost: Optional[int] = None,
    ) -> ChargeOutcome:
        """Charge for one refinement (re-enhancement) of a workflow's result."""
        cost = self.config.refinement_cost_credits if cost is None else int(cost)
        key = refinement_key(workflow_id, edit_index)

        with self.db.transaction() as tx:
            if AccountRepository(tx).get(account_id, lock=True) is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)

            owned = ArtifactRepository(tx).list_for_workflow(workflow_id)
            if not owned:
                raise ArtifactNotFound(f"Workflow {workflow_id} has no results", workflow_id=workflow_id)
            if any(a.account_id != account_id for a in owned):
                raise NotOwner(
                    f"Workflow {workflow_id} does not belong to account {account_id}",
                    workflow_id=workflow_id,
                )

            ledger = LedgerRepository(tx)
            existing = ledger.get_by_key(key)
            if existing is not None:
                return self._settled(tx, account_id, key, cost, existing)

            edits_used = ledger.count_with_key_prefix(f"refinement:{workflow_id}:")
            if edits_used >= self.config.max_edits_per_workflow:
                raise EditLimitReached(
                    f"Maximum edits reached for workflow {workflow_id}",
                    workflow_id=workflow_id,
                    limit=self.config.max_edits_per_workflow,
                )

            entry = self.ledger.debit(
                account_id,
                cost,
                LedgerReason.REFINEMENT,
                meta={"workflow_id": workflow_id, "edit_index": edit_index},
                idempotency_key=key,
            )

        logger.info(
            "refinement_charged",
            account_id=account_id,
            workflow_id=workflow_id,
            edit_index=edit_index,
            cost=cost,
            edits_used=edits_used + 1,
        )
        return ChargeOutcome(
            status=ChargeStatus.CHARGED,
            idempotency_key=key,
            cost=cost,
            balance_after=entry.balance_after,
            entry=entry,
        )

    def _settled(
        self,
        tx: Any,
        account_id: str,
        key: str,
        cost: int,
        entry: Optional[LedgerEntry],
    ) -> ChargeOutcome:
        account = AccountRepository(tx).get(account_id)
        logger.info("charge_already_settled", account_id=account_id, idempotency_key=key)
        return ChargeOutcome(
            status=ChargeStatus.ALREADY_SETTLED,
            idempotency_key=key,
            cost=cost,
            balance_after=account.credit_balance if account else 0,
            entry=entry,
        )
