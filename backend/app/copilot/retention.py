from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from app.copilot.models import to_iso, utc_now
from app.db.copilot_store import CopilotStore, DeletedCounts
from core.config import (
    COPILOT_RETENTION_EVENTS_DAYS,
    COPILOT_RETENTION_SESSIONS_DAYS,
    COPILOT_RETENTION_SUMMARIES_DAYS,
)
from core.logger import log_event

logger = logging.getLogger("app.copilot.retention")


@dataclass(frozen=True)
class RetentionPolicy:
    events_days: int = COPILOT_RETENTION_EVENTS_DAYS
    summaries_days: int = COPILOT_RETENTION_SUMMARIES_DAYS
    sessions_days: int = COPILOT_RETENTION_SESSIONS_DAYS


@dataclass(frozen=True)
class RetentionCutoffs:
    events_before: str
    summaries_before: str
    sessions_before: str


@dataclass
class RetentionResult:
    dry_run: bool
    policy: RetentionPolicy
    cutoffs: RetentionCutoffs
    deleted: DeletedCounts = field(default_factory=DeletedCounts)

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "policy": asdict(self.policy),
            "cutoffs": asdict(self.cutoffs),
            "deleted": self.deleted.to_dict(),
        }


def build_retention_cutoffs(now: datetime, policy: RetentionPolicy | None = None) -> RetentionCutoffs:
    policy = policy or RetentionPolicy()
    return RetentionCutoffs(
        events_before=to_iso(now - timedelta(days=policy.events_days)),
        summaries_before=to_iso(now - timedelta(days=policy.summaries_days)),
        sessions_before=to_iso(now - timedelta(days=policy.sessions_days)),
    )


async def run_retention_sweep(
    store: CopilotStore,
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
    dry_run: bool = True,
) -> RetentionResult:
    """Delete rows older than the policy allows.

    Only stopped or expired sessions are removed. A dry run reports the
    cutoffs without touching the store.
    """
    policy = policy or RetentionPolicy()
    cutoffs = build_retention_cutoffs(now or utc_now(), policy)
    result = RetentionResult(dry_run=dry_run, policy=policy, cutoffs=cutoffs)

    if not dry_run:
        result.deleted = await store.delete_before(
            cutoffs.events_before,
            cutoffs.summaries_before,
            cutoffs.sessions_before,
        )

    log_event("retention", "retention_sweep", "", **result.to_dict())
    return result
