"""Failed-webhook retry worker.

Each sweep picks up unprocessed failures that still have retries left,
waits out their exponential backoff (``2**retries`` seconds, capped at five
minutes), re-verifies the stored signature against the stored raw body and
replays the body through the ingestion stages after authentication.

Rows that run out of retries stay unprocessed for an operator to inspect;
they are never silently dropped.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from protean import UnitOfWork
from protean.utils.globals import current_domain
from sqlalchemy import select

from payments.webhook.ingestion import WebhookIngestionPipeline
from payments.webhook.records import FailedWebhook
from shared import database
from shared.database import utcnow
from shared.exceptions import InvalidSignatureError
from shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetryStats:
    examined: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "exhausted": self.exhausted,
        }


@dataclass(frozen=True)
class _Candidate:
    id: str
    body: bytes
    signature: str
    event_id: str | None


class WebhookRetryWorker:
    def __init__(
        self,
        pipeline: WebhookIngestionPipeline | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._pipeline = pipeline or WebhookIngestionPipeline()
        self._clock = clock

    def run_once(self, batch_size: int = 50) -> RetryStats:
        stats = RetryStats()
        now = self._clock()

        model = database.model_for(FailedWebhook)
        with UnitOfWork():
            rows = (
                database.session()
                .scalars(
                    select(model.id)
                    .where(model.processed.is_(False), model.retries < model.max_retries)
                    .order_by(model.created_at, model.id)
                    .limit(batch_size)
                )
                .all()
            )
        repository = current_domain.repository_for(FailedWebhook)
        candidates = []
        for row_id in rows:
            row = repository.get(row_id)
            if row.is_due(now):
                candidates.append(_Candidate(row.id, row.body, row.signature, row.event_id))
            else:
                stats.skipped += 1

        for candidate in candidates:
            stats.examined += 1
            self._retry(candidate, stats)

        if stats.examined or stats.skipped:
            logger.info("webhook_retry_sweep", **stats.to_dict())
        return stats

    def _retry(self, candidate: _Candidate, stats: RetryStats) -> None:
        try:
            if not self._pipeline.verify_signature(candidate.body, candidate.signature):
                raise InvalidSignatureError("Stored webhook no longer verifies")
            self._pipeline.process_verified(candidate.body, event_id=candidate.event_id)
        except Exception as exc:
            self._record_attempt(candidate.id, error=str(exc), stats=stats)
            return
        self._record_attempt(candidate.id, error=None, stats=stats)

    def _record_attempt(self, failed_id: str, error: str | None, stats: RetryStats) -> None:
        with UnitOfWork():
            row = database.lock(FailedWebhook, id=failed_id)
            now = self._clock()
            row.last_retry_at = now
            row.updated_at = now
            if error is None:
                row.processed = True
                row.processed_at = now
                current_domain.repository_for(FailedWebhook).add(row)
                stats.succeeded += 1
                logger.info("webhook_retry_succeeded", failed_webhook_id=failed_id, attempts=row.retries + 1)
                return

            row.retries += 1
            row.error = error[:4000]
            current_domain.repository_for(FailedWebhook).add(row)
            stats.failed += 1
            if row.retries >= row.max_retries:
                stats.exhausted += 1
                logger.error(
                    "webhook_retries_exhausted",
                    failed_webhook_id=failed_id,
                    retries=row.retries,
                    error=row.error,
                )
            else:
                logger.warning(
                    "webhook_retry_failed",
                    failed_webhook_id=failed_id,
                    retries=row.retries,
                    next_attempt_at=row.next_attempt_at().isoformat(),
                    error=row.error,
                )

    def list_exhausted(self, limit: int = 100) -> list[FailedWebhook]:
        model = database.model_for(FailedWebhook)
        with UnitOfWork():
            ids = (
                database.session()
                .scalars(
                    select(model.id)
                    .where(model.processed.is_(False), model.retries >= model.max_retries)
                    .order_by(model.created_at.desc())
                    .limit(limit)
                )
                .all()
            )
        repository = current_domain.repository_for(FailedWebhook)
        return [repository.get(row_id) for row_id in ids]
