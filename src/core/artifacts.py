"""
Chargeable artifacts.

The image generation pipeline is an external collaborator. All this module
needs from it is the outcome of one generation: a successful result becomes
exactly one artifact, a failed one becomes nothing.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from persistence.database import Database, get_database
from persistence.models import ArtifactRecord
from persistence.repository import AccountRepository, ArtifactRepository

from .errors import AccountNotFound

logger = structlog.get_logger()


@dataclass
class GenerationResult:
    """What the ImageGenerator reports for one (source image, prompt) call."""
    success: bool
    artifact_id: Optional[str] = None
    image_url: Optional[str] = None
    error: Optional[str] = None


class ArtifactRegistry:
    """Records generated results that can later be downloaded for a charge."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record_generation(
        self,
        workflow_id: str,
        account_id: str,
        result: GenerationResult,
    ) -> Optional[ArtifactRecord]:
        """Register the artifact for a successful generation. Safe to call twice."""
        if not result.success or not result.artifact_id:
            logger.warning(
                "generation_not_chargeable",
                workflow_id=workflow_id,
                account_id=account_id,
                error=result.error,
            )
            return None

        with self.db.transaction() as tx:
            if AccountRepository(tx).get(account_id) is None:
                raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
            artifact = ArtifactRepository(tx).create_if_absent(ArtifactRecord(
                id=result.artifact_id,
                workflow_id=workflow_id,
                account_id=account_id,
            ))

        logger.info("artifact_recorded", artifact_id=artifact.id, workflow_id=workflow_id, account_id=account_id)
        return artifact

    def get(self, artifact_id: str) -> Optional[ArtifactRecord]:
        with self.db.transaction() as tx:
            return ArtifactRepository(tx).get(artifact_id)
