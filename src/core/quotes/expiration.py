import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from src.core.quotes.clock import Clock, SystemClock
from src.core.quotes.models import (
    SYSTEM_EXPIRATION_ACTOR,
    TERMINAL_STATUSES,
    ExpirationSweepFailure,
    ExpirationSweepResult,
    TransitionContext,
)
from src.core.quotes.repository import QuoteRepository
from src.core.quotes.service import QuoteLifecycleService
from src.core.quotes.state_machine import VALID_TRANSITIONS

logger = logging.getLogger(__name__)

SWEEPABLE_STATUSES: tuple[str, ...] = tuple(
    status for status in VALID_TRANSITIONS if status not in TERMINAL_STATUSES
)


class ExpirationSweeper:
    """Expires quotes that have been idle for longer than the configured threshold.

    Each candidate goes through ``QuoteLifecycleService.transition_quote`` as
    ``system:expiration`` and is pinned to the version seen during the scan, so a quote
    touched by a user after the scan fails with a conflict instead of being expired.
    """

    def __init__(
        self,
        *,
        service: QuoteLifecycleService,
        repository: QuoteRepository,
        clock: Optional[Clock] = None,
        expiration_threshold_days: int = 30,
        max_quotes_per_run: int = 1000,
    ) -> None:
        if expiration_threshold_days < 1:
            raise ValueError("expiration_threshold_days must be at least 1")
        if max_quotes_per_run < 1:
            raise ValueError("max_quotes_per_run must be at least 1")
        self._service = service
        self._repository = repository
        self._clock = clock or SystemClock()
        self._threshold = timedelta(days=expiration_threshold_days)
        self._max_quotes_per_run = max_quotes_per_run

    def run(
        self, *, now: Optional[datetime] = None, dry_run: bool = False
    ) -> ExpirationSweepResult:
        now = now or self._clock.now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - self._threshold
        candidates = self._repository.list_stale_quotes(
            statuses=SWEEPABLE_STATUSES,
            last_activity_before=cutoff,
            limit=self._max_quotes_per_run,
        )
        result = ExpirationSweepResult(
            dry_run=dry_run,
            cutoff=cutoff,
            quotes_checked=len(candidates),
            quotes_expired=0,
            candidate_quote_ids=[quote.quote_id for quote in candidates],
        )
        if dry_run:
            return result

        for quote in candidates:
            try:
                self._service.transition_quote(
                    quote_id=quote.quote_id,
                    target_status="EXPIRED",
                    context=TransitionContext(
                        actor_id=SYSTEM_EXPIRATION_ACTOR,
                        actor_role="SYSTEM",
                        expected_version=quote.version,
                        comment=f"inactive since {quote.last_activity_at.isoformat()}",
                    ),
                )
            except Exception as exc:
                logger.exception("Expiration of quote %s failed: %s", quote.quote_id, exc)
                result.failures.append(
                    ExpirationSweepFailure(quote_id=quote.quote_id, error=str(exc))
                )
                continue
            result.expired_quote_ids.append(quote.quote_id)

        result.quotes_expired = len(result.expired_quote_ids)
        logger.info(
            "expiration.sweep.completed",
            extra={
                "extra_fields": {
                    "cutoff": cutoff.isoformat(),
                    "quotes_checked": result.quotes_checked,
                    "quotes_expired": result.quotes_expired,
                    "failures": len(result.failures),
                }
            },
        )
        return result
