"""
Tests for the Charge Guard

Downloads and refinements are debited at most once per billable unit.
"""

import threading
import pytest
from core.artifacts import ArtifactRegistry, GenerationResult
from core.charge import ChargeStatus, download_key
from core.errors import (
    AccountNotFound,
    ArtifactNotFound,
    EditLimitReached,
    ErrorKind,
    InsufficientCredits,
    NotOwner,
)


@pytest.fixture
def artifacts(db):
    return ArtifactRegistry(db)


@pytest.fixture
def artifact(artifacts, account):
    return artifacts.record_generation("wf_1", account.id, GenerationResult(success=True, artifact_id="art_1"))


class TestArtifacts:
    """Test recording generation results."""

    def test_failed_generation_is_not_chargeable(self, artifacts, account):
        result = GenerationResult(success=False, error="upstream timeout")

        assert artifacts.record_generation("wf_1", account.id, result) is None

    def test_record_is_idempotent(self, artifacts, account, artifact):
        """Recording the same result twice keeps one artifact."""
        again = artifacts.record_generation("wf_1", account.id, GenerationResult(success=True, artifact_id="art_1"))

        assert again.id == artifact.id
        assert again.created_at == artifact.created_at

    def test_unknown_account(self, artifacts):
        with pytest.raises(AccountNotFound):
            artifacts.record_generation("wf_1", "nobody", GenerationResult(success=True, artifact_id="art_x"))


class TestDownloadCharge:
    """Test download charging."""

    def test_first_download_charges(self, guard, ledger, artifacts, account, artifact):
        """The first download debits the cost and flags the artifact."""
        outcome = guard.charge_download(account.id, artifact.id)

        assert outcome.status == ChargeStatus.CHARGED
        assert outcome.charged
        assert outcome.balance_after == 2
        assert outcome.entry.reason == "download"
        assert outcome.entry.idempotency_key == download_key(artifact.id)
        assert artifacts.get(artifact.id).downloaded is True
        assert ledger.balance_of(account.id) == 2

    def test_redownload_is_settled(self, guard, ledger, account, artifact):
        """A second download is free and returns the original entry."""
        first = guard.charge_download(account.id, artifact.id)
        second = guard.charge_download(account.id, artifact.id)

        assert second.status == ChargeStatus.ALREADY_SETTLED
        assert second.entry.entry_id == first.entry.entry_id
        assert second.to_dict()["charged"] == 0
        assert ledger.balance_of(account.id) == 2

    def test_exact_balance_reaches_zero(self, guard, ledger, account, artifact):
        outcome = guard.charge_download(account.id, artifact.id, cost=3)

        assert outcome.balance_after == 0
        assert ledger.balance_of(account.id) == 0

    def test_insufficient_credits_changes_nothing(self, guard, ledger, artifacts, account, artifact):
        """A balance one short is refused; the artifact stays undownloaded."""
        with pytest.raises(InsufficientCredits) as exc:
            guard.charge_download(account.id, artifact.id, cost=4)

        assert exc.value.kind == ErrorKind.INSUFFICIENT_CREDITS
        assert exc.value.kind.http_status == 402
        assert ledger.balance_of(account.id) == 3
        assert artifacts.get(artifact.id).downloaded is False
        assert ledger.find_by_key(download_key(artifact.id)) is None

    def test_unknown_artifact(self, guard, account):
        with pytest.raises(ArtifactNotFound):
            guard.charge_download(account.id, "art_missing")

    def test_other_owner_rejected(self, guard, ledger, accounts, account, artifact):
        """Another account cannot download (or pay for) someone else's result."""
        other = accounts.provision("other@example.com")

        with pytest.raises(NotOwner):
            guard.charge_download(other.id, artifact.id)

        assert ledger.balance_of(other.id) == 3
        assert ledger.balance_of(account.id) == 3

    def test_concurrent_downloads_charge_once(self, guard, ledger, account, artifact):
        """Two racing downloads of one artifact produce a single debit."""
        barrier = threading.Barrier(2)
        outcomes = []
        errors = []

        def download():
            barrier.wait()
            try:
                outcomes.append(guard.charge_download(account.id, artifact.id))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=download) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["already_settled", "charged"]
        assert ledger.balance_of(account.id) == 2


class TestWorkflowDownload:
    """Test downloading all results of a workflow at once."""

    @pytest.fixture
    def workflow(self, artifacts, account, artifact):
        """wf_1 holds art_1, art_2 and art_3."""
        for artifact_id in ("art_2", "art_3"):
            artifacts.record_generation("wf_1", account.id, GenerationResult(success=True, artifact_id=artifact_id))
        return "wf_1"

    def test_charges_each_artifact(self, guard, ledger, artifacts, account, workflow):
        outcome = guard.charge_workflow_download(account.id, workflow)

        assert sorted(outcome.charged) == ["art_1", "art_2", "art_3"]
        assert outcome.already_settled == []
        assert outcome.total_charged == 3
        assert outcome.balance_after == 0
        assert ledger.balance_of(account.id) == 0
        for artifact_id in ("art_1", "art_2", "art_3"):
            assert artifacts.get(artifact_id).downloaded is True
            assert ledger.find_by_key(download_key(artifact_id)).meta["bulk"] is True

    def test_skips_already_downloaded(self, guard, ledger, account, workflow):
        """Only the artifacts not yet paid for are charged."""
        single = guard.charge_download(account.id, "art_2")

        outcome = guard.charge_workflow_download(account.id, workflow)

        assert sorted(outcome.charged) == ["art_1", "art_3"]
        assert outcome.already_settled == ["art_2"]
        assert outcome.to_dict()["total_charged"] == 2
        assert ledger.balance_of(account.id) == 0
        assert ledger.find_by_key(download_key("art_2")).entry_id == single.entry.entry_id

    def test_repeat_is_free(self, guard, ledger, account, workflow):
        guard.charge_workflow_download(account.id, workflow)

        again = guard.charge_workflow_download(account.id, workflow)

        assert again.charged == []
        assert len(again.already_settled) == 3
        assert again.total_charged == 0
        assert ledger.balance_of(account.id) == 0

    def test_single_download_after_bulk_is_settled(self, guard, ledger, account, workflow):
        guard.charge_workflow_download(account.id, workflow)

        assert guard.charge_download(account.id, "art_3").status == ChargeStatus.ALREADY_SETTLED
        assert ledger.balance_of(account.id) == 0

    def test_insufficient_credits_charges_nothing(self, guard, ledger, artifacts, account, workflow):
        """The batch is refused as a whole when it does not fit the balance."""
        with pytest.raises(InsufficientCredits) as exc:
            guard.charge_workflow_download(account.id, workflow, cost=2)

        assert exc.value.context["required"] == 6
        assert exc.value.context["available"] == 3
        assert ledger.balance_of(account.id) == 3
        for artifact_id in ("art_1", "art_2", "art_3"):
            assert artifacts.get(artifact_id).downloaded is False
            assert ledger.find_by_key(download_key(artifact_id)) is None

    def test_unknown_workflow(self, guard, account):
        with pytest.raises(ArtifactNotFound):
            guard.charge_workflow_download(account.id, "wf_missing")

    def test_other_owner_rejected(self, guard, ledger, accounts, account, workflow):
        other = accounts.provision("other@example.com")

        with pytest.raises(NotOwner):
            guard.charge_workflow_download(other.id, workflow)

        assert ledger.balance_of(other.id) == 3

    def test_unknown_account(self, guard, workflow):
        with pytest.raises(AccountNotFound):
            guard.charge_workflow_download("nobody", workflow)


class TestRefinementCharge:
    """Test refinement charging and the edit limit."""

    def test_refinement_charges_once_per_index(self, guard, ledger, account, artifact):
        first = guard.charge_refinement(account.id, "wf_1", 1)
        retry = guard.charge_refinement(account.id, "wf_1", 1)

        assert first.status == ChargeStatus.CHARGED
        assert retry.status == ChargeStatus.ALREADY_SETTLED
        assert ledger.balance_of(account.id) == 2

    def test_distinct_edits_each_charge(self, guard, ledger, account, artifact):
        guard.charge_refinement(account.id, "wf_1", 1)
        guard.charge_refinement(account.id, "wf_1", 2)

        assert ledger.balance_of(account.id) == 1

    def test_edit_limit(self, db, ledger, accounts, artifacts, config):
        """Once the workflow has used its edits, further ones are refused."""
        from core.charge import ChargeGuard
        config.max_edits_per_workflow = 2
        guard = ChargeGuard(db, ledger, config)
        account = accounts.provision("editor@example.com")
        artifacts.record_generation("wf_2", account.id, GenerationResult(success=True, artifact_id="art_2"))

        guard.charge_refinement(account.id, "wf_2", 1)
        guard.charge_refinement(account.id, "wf_2", 2)

        with pytest.raises(EditLimitReached):
            guard.charge_refinement(account.id, "wf_2", 3)

        # Retrying an edit already paid for is still settled, not refused
        assert guard.charge_refinement(account.id, "wf_2", 2).status == ChargeStatus.ALREADY_SETTLED
        assert ledger.balance_of(account.id) == 1

    def test_unknown_workflow(self, guard, account):
        with pytest.raises(ArtifactNotFound):
            guard.charge_refinement(account.id, "wf_missing", 1)

    def test_other_owner_rejected(self, guard, accounts, artifact):
        other = accounts.provision("other@example.com")

        with pytest.raises(NotOwner):
            guard.charge_refinement(other.id, "wf_1", 1)

    def test_insufficient_credits(self, guard, ledger, account, artifact):
        with pytest.raises(InsufficientCredits):
            guard.charge_refinement(account.id, "wf_1", 1, cost=5)

        assert ledger.balance_of(account.id) == 3
