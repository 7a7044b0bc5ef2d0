"""
Background generation runner.

Runs admitted generations outside the request that admitted them and, on
startup, settles records whose poller died with the previous process.
Each run opens its own database session.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.session import get_write_session
from app.exceptions import ServiceError
from app.models.api import GenerationKind
from app.observability import metrics
from app.services.generation import build_generation_service
from app.services.job_platform import JobPlatformClient

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

INTERRUPTED_MESSAGE = "Generation was interrupted before it was submitted"


async def run_generation(
    kind: GenerationKind,
    generation_id: UUID,
    job_client: JobPlatformClient,
    settings: Settings | None = None,
    session_factory: SessionFactory = get_write_session,
) -> None:
    """
    Submit, poll and settle one admitted record.

    Errors are already recorded on the generation record by the time they
    reach here, so they are logged and not re-raised.
    """
    async with session_factory() as session:
        service = build_generation_service(session, job_client, settings)
        record = await service.store.get(kind, generation_id)
        if record is None:
            logger.error("background_generation_missing", generation_id=str(generation_id))
            return
        if record.status.is_terminal:
            logger.info(
                "background_generation_already_settled",
                generation_id=str(generation_id),
                status=record.status.value,
            )
            return

        try:
            outcome = await service.execute(record)
        except ServiceError as e:
            metrics.record_error(type(e).__name__, "background_generation")
            logger.error(
                "background_generation_failed",
                generation_id=str(generation_id),
                kind=kind.value,
                error=str(e),
            )
            return

        logger.info(
            "background_generation_finished",
            generation_id=str(generation_id),
            kind=kind.value,
            success=outcome.success,
        )


async def recover_stale_generations(
    job_client: JobPlatformClient,
    settings: Settings | None = None,
    session_factory: SessionFactory = get_write_session,
    now: datetime | None = None,
) -> int:
    """
    Settle records left in ``generating`` longer than any poller could run.

    Submitted records get one more poll without resubmitting; records that
    never reached the platform are failed.

    Returns:
        Number of stale records handled
    """
    settings = settings or get_settings()
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(
        seconds=settings.max_poll_window_seconds + settings.generation_recovery_grace_seconds
    )

    handled = 0
    async with session_factory() as session:
        service = build_generation_service(session, job_client, settings)
        for kind in GenerationKind:
            for record in await service.store.find_stale(kind, cutoff):
                handled += 1
                try:
                    if record.submitted_at is None:
                        await service.abandon(record, INTERRUPTED_MESSAGE)
                        continue
                    outcome = await service.resume(record, max_attempts=1)
                except ServiceError as e:
                    logger.error(
                        "stale_generation_recovery_failed",
                        generation_id=str(record.generation_id),
                        error=str(e),
                    )
                    continue
                logger.info(
                    "stale_generation_recovered",
                    generation_id=str(record.generation_id),
                    success=outcome.success,
                )

    if handled:
        logger.info("stale_generations_recovered", count=handled, cutoff=cutoff.isoformat())
    return handled
