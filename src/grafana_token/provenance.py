"""Run provenance for audit.

Every run emits one structured record answering:
- "Which token was handed out, and was it new?"
- "What was deleted or repaired on the way?"
- "Which pipeline run and commit did it?"

Token values never appear in the record.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .models import PruneResult, ReconcileResult

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
TOOL_VERSION = os.environ.get("GRAFANA_TOKEN_VERSION", "dev")


@dataclass
class RunProvenance:
    """Provenance record for one run."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    instance_name: str = ""
    service_account: str = ""
    output_mode: str = ""
    command: str = "reconcile"  # reconcile, cleanup
    dry_run: bool = False
    tool_version: str = TOOL_VERSION

    # Pipeline context (Azure DevOps predefined variables)
    pipeline_run_id: str = ""
    git_commit_sha: str = ""

    # Outcome
    status: str = ""
    token_name: str | None = None
    expired_deleted: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    prune_converged: bool = True
    name_repaired: bool = False
    stale_detected: bool = False

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def record_result(self, result: ReconcileResult) -> None:
        """Copy the outcome of a reconciliation into the record."""
        self.status = result.status.value
        self.token_name = result.token_name
        self.expired_deleted = list(result.expired_deleted)
        self.name_repaired = result.name_repaired
        self.stale_detected = result.stale_detected
        self.duration_seconds = result.duration_seconds
        if result.prune is not None:
            self.record_prune(result.prune)

    def record_prune(self, prune: PruneResult) -> None:
        self.pruned = list(prune.deleted)
        self.prune_converged = prune.converged

    def record_error(self, error: BaseException) -> None:
        self.status = "failed"
        self.error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._pipeline_run_id = os.environ.get("BUILD_BUILDID", "")
        self._git_commit_sha = os.environ.get("BUILD_SOURCEVERSION", "")

    def create_provenance(
        self,
        instance_name: str,
        service_account: str,
        output_mode: str,
        command: str,
        dry_run: bool,
    ) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            instance_name=instance_name,
            service_account=service_account,
            output_mode=output_mode,
            command=command,
            dry_run=dry_run,
            tool_version=TOOL_VERSION,
            pipeline_run_id=self._pipeline_run_id,
            git_commit_sha=self._git_commit_sha,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        ERROR for failed runs, WARNING when pruning did not converge.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif not provenance.prune_converged:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "instance_name": provenance.instance_name,
                "service_account": provenance.service_account,
                "status": provenance.status,
                "token_name": provenance.token_name,
                "dry_run": provenance.dry_run,
                "tool_version": provenance.tool_version,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
