"""
Generation Service - Admission, submission, polling and settlement of generations.

NO DICTIONARIES - All data structures are typed dataclasses.

A generation is admitted (priced, balance checked, record created), submitted
to the job platform, polled to a terminal outcome, and settled. Settlement is
a conditional status transition out of ``generating``; only the caller that
performed the transition to ``completed`` debits the user, so a record is
charged at most once.
"""

import time
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import Settings, get_settings
from app.db.models import ImageGeneration, TTSGeneration, utc_now
from app.exceptions import (
    InsufficientFundsError,
    InvalidInputError,
    JobPlatformNotConfiguredError,
    PersistenceError,
    UpstreamPollError,
    UpstreamSubmitError,
)
from app.models.api import GenerationKind, GenerationStatus, TransactionType
from app.models.domain import (
    CallerIdentity,
    GenerationData,
    GenerationOutcome,
    GenerationRequest,
    JobProfile,
    PriceQuote,
    TerminalOutcome,
)
from app.observability import log_context, metrics
from app.observability.tracing import add_span_attributes, get_tracer, set_span_error
from app.services.job_platform import JobPlatformClient, build_job_profiles, compose_match_key
from app.services.ledger import LedgerService
from app.services.pricing import PricingService

logger = get_logger(__name__)
tracer = get_tracer(__name__)

ACTIVE_STATUSES = (GenerationStatus.PENDING, GenerationStatus.GENERATING)

GenerationModel = type[ImageGeneration] | type[TTSGeneration]

JOB_ID_SETTINGS = {
    GenerationKind.IMAGE: "IMAGE_JOB_ID",
    GenerationKind.SPEECH: "SPEECH_JOB_ID",
}

MISSING_RESULT_MESSAGES = {
    GenerationKind.IMAGE: "No image URL returned from service",
    GenerationKind.SPEECH: "No audio URL returned from service",
}


# ============================================================================
# Generation Store
# ============================================================================


class GenerationStore:
    """Generation records in ``image_generations`` and ``tts_generations``."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def model_for(kind: GenerationKind) -> GenerationModel:
        """ORM model holding records of the given kind."""
        if kind == GenerationKind.IMAGE:
            return ImageGeneration
        return TTSGeneration

    @staticmethod
    def _to_data(kind: GenerationKind, row: ImageGeneration | TTSGeneration) -> GenerationData:
        return GenerationData(
            generation_id=row.id,
            kind=kind,
            user_id=row.user_id,
            prompt=row.prompt,
            size=getattr(row, "size", None),
            status=row.status,
            result_url=row.result_url,
            error_message=row.error_message,
            cost=row.cost,
            submitted_at=row.submitted_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def create(self, user_id: UUID, request: GenerationRequest, cost: Decimal) -> GenerationData:
        """
        Insert a record in ``generating`` with the admission-time cost.

        Raises:
            PersistenceError: Insert failed
        """
        if request.kind == GenerationKind.IMAGE:
            row: ImageGeneration | TTSGeneration = ImageGeneration(size=request.size)
        else:
            row = TTSGeneration()
        row.user_id = user_id
        row.prompt = request.prompt
        row.status = GenerationStatus.GENERATING
        row.cost = cost

        self.session.add(row)
        try:
            await self.session.commit()
            await self.session.refresh(row)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("generation_record_create_failed", kind=request.kind.value, error=str(e))
            raise PersistenceError("Failed to create generation record") from e

        return self._to_data(request.kind, row)

    async def mark_submitted(self, kind: GenerationKind, generation_id: UUID) -> None:
        """Stamp the submission time; only startup recovery reads it."""
        model = self.model_for(kind)
        try:
            await self.session.execute(
                update(model).where(model.id == generation_id).values(submitted_at=utc_now())
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.warning(
                "generation_submitted_at_update_failed",
                generation_id=str(generation_id),
                error=str(e),
            )

    async def _transition(
        self,
        kind: GenerationKind,
        generation_id: UUID,
        status: GenerationStatus,
        result_url: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        model = self.model_for(kind)
        stmt = (
            update(model)
            .where(model.id == generation_id, model.status.in_(ACTIVE_STATUSES))
            .values(
                status=status,
                result_url=result_url,
                error_message=error_message,
                updated_at=utc_now(),
            )
            .returning(model.id)
        )
        try:
            result = await self.session.execute(stmt)
            transitioned = result.scalar_one_or_none() is not None
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "generation_record_update_failed",
                generation_id=str(generation_id),
                status=status.value,
                error=str(e),
            )
            raise PersistenceError("Failed to update generation record") from e
        return transitioned

    async def complete(self, kind: GenerationKind, generation_id: UUID, result_url: str) -> bool:
        """
        Move a record to ``completed``.

        Returns:
            True if this call performed the transition
        """
        return await self._transition(
            kind, generation_id, GenerationStatus.COMPLETED, result_url=result_url
        )

    async def fail(self, kind: GenerationKind, generation_id: UUID, error_message: str) -> bool:
        """
        Move a record to ``failed``.

        Returns:
            True if this call performed the transition
        """
        return await self._transition(
            kind, generation_id, GenerationStatus.FAILED, error_message=error_message
        )

    async def get(
        self, kind: GenerationKind, generation_id: UUID, user_id: UUID | None = None
    ) -> GenerationData | None:
        """Get a record, scoped to its owner when user_id is given."""
        model = self.model_for(kind)
        stmt = select(model).where(model.id == generation_id)
        if user_id is not None:
            stmt = stmt.where(model.user_id == user_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_data(kind, row) if row is not None else None

    async def list_for_user(
        self, user_id: UUID, kind: GenerationKind, limit: int = 100
    ) -> list[GenerationData]:
        """The owner's records of one kind, newest first."""
        model = self.model_for(kind)
        result = await self.session.execute(
            select(model)
            .where(model.user_id == user_id)
            .order_by(model.created_at.desc())
            .limit(limit)
        )
        return [self._to_data(kind, row) for row in result.scalars().all()]

    async def find_stale(self, kind: GenerationKind, created_before: datetime) -> list[GenerationData]:
        """Records still ``generating`` that were created before the cutoff."""
        model = self.model_for(kind)
        result = await self.session.execute(
            select(model)
            .where(model.status == GenerationStatus.GENERATING, model.created_at < created_before)
            .order_by(model.created_at)
        )
        return [self._to_data(kind, row) for row in result.scalars().all()]


# ============================================================================
# Generation Service
# ============================================================================


class GenerationService:
    """
    Orchestrates a generation from request to settled record.

    Default mode checks the balance at admission and debits after success.
    With ``reserve_balance_on_admission`` the cost is taken at admission by a
    conditional decrement and handed back if the generation fails.
    """

    def __init__(
        self,
        store: GenerationStore,
        pricing: PricingService,
        ledger: LedgerService,
        job_client: JobPlatformClient,
        settings: Settings | None = None,
        profiles: dict[GenerationKind, JobProfile] | None = None,
    ) -> None:
        self.store = store
        self.pricing = pricing
        self.ledger = ledger
        self.job_client = job_client
        self.settings = settings or get_settings()
        self.profiles = profiles or build_job_profiles(self.settings)

    @property
    def reserve_mode(self) -> bool:
        return self.settings.reserve_balance_on_admission

    def _check_configured(self, kind: GenerationKind) -> JobProfile:
        profile = self.profiles[kind]
        if not profile.job_id:
            raise JobPlatformNotConfiguredError(JOB_ID_SETTINGS[kind])
        if not self.settings.job_platform_api_token:
            raise JobPlatformNotConfiguredError("JOB_PLATFORM_API_TOKEN")
        return profile

    async def admit(
        self, caller: CallerIdentity, request: GenerationRequest
    ) -> tuple[GenerationData, PriceQuote]:
        """
        Validate, price and balance-check a request, then create its record.

        Nothing is written and nothing is submitted unless this returns.

        Raises:
            InvalidInputError: Empty prompt
            JobPlatformNotConfiguredError: Job id or platform token missing
            InsufficientFundsError: Balance below the quoted cost
            PersistenceError: Record could not be created
        """
        kind = request.kind
        prompt = request.prompt.strip()
        if not prompt:
            metrics.record_rejection(kind.value, "invalid_input")
            raise InvalidInputError("Prompt is required")

        self._check_configured(kind)

        request = GenerationRequest(kind=kind, prompt=prompt, size=request.size)
        quote = await self.pricing.quote(request)

        if self.reserve_mode:
            reserved = await self.ledger.reserve(caller.user_id, quote.cost)
            if reserved is None:
                balance = await self.ledger.get_balance(caller.user_id)
                metrics.record_rejection(kind.value, "insufficient_funds")
                logger.info(
                    "generation_rejected_insufficient_funds",
                    user_id=str(caller.user_id),
                    kind=kind.value,
                    balance=str(balance),
                    cost=str(quote.cost),
                )
                raise InsufficientFundsError(balance=balance, required=quote.cost)
        else:
            balance = await self.ledger.get_balance(caller.user_id)
            if balance < quote.cost:
                metrics.record_rejection(kind.value, "insufficient_funds")
                logger.info(
                    "generation_rejected_insufficient_funds",
                    user_id=str(caller.user_id),
                    kind=kind.value,
                    balance=str(balance),
                    cost=str(quote.cost),
                )
                raise InsufficientFundsError(balance=balance, required=quote.cost)

        try:
            record = await self.store.create(caller.user_id, request, quote.cost)
        except PersistenceError:
            if self.reserve_mode:
                await self.ledger.release(caller.user_id, quote.cost)
            raise

        metrics.generations_admitted_total.labels(kind=kind.value).inc()
        logger.info(
            "generation_admitted",
            generation_id=str(record.generation_id),
            user_id=str(caller.user_id),
            auth_method=caller.auth_method.value,
            kind=kind.value,
            cost=str(quote.cost),
            price_fallback=quote.is_fallback,
        )
        return record, quote

    async def execute(self, record: GenerationData) -> GenerationOutcome:
        """
        Submit an admitted record and drive it to a settled state.

        Raises:
            UpstreamSubmitError: Submission rejected (record marked failed)
            UpstreamPollError: Polling broke down (record marked failed)
        """
        profile = self._check_configured(record.kind)
        match_key = compose_match_key(record.kind, record.prompt, record.size)
        correlation_id = (
            str(record.generation_id) if self.settings.job_correlation_ids_enabled else None
        )
        input_payload = {profile.input_field: match_key}
        if correlation_id is not None:
            input_payload["requestId"] = correlation_id

        with log_context(generation_id=str(record.generation_id), kind=record.kind.value):
            with tracer.start_as_current_span("generation.submit") as span:
                add_span_attributes(
                    span,
                    **{"generation.id": record.generation_id, "generation.kind": record.kind.value},
                )
                try:
                    await self.job_client.submit(profile.job_id, input_payload)
                except UpstreamSubmitError as e:
                    set_span_error(span, e)
                    await self._settle_failure(record, e.message, "submit_failed")
                    raise

            await self.store.mark_submitted(record.kind, record.generation_id)
            logger.info("generation_submitted", correlated=correlation_id is not None)

            return await self._poll_and_settle(record, profile, match_key, correlation_id)

    async def resume(
        self, record: GenerationData, max_attempts: int | None = None
    ) -> GenerationOutcome:
        """
        Poll an already-submitted record again without resubmitting it.

        Used after a restart for records whose poller was lost.
        """
        profile = self._check_configured(record.kind)
        match_key = compose_match_key(record.kind, record.prompt, record.size)
        correlation_id = (
            str(record.generation_id) if self.settings.job_correlation_ids_enabled else None
        )
        with log_context(generation_id=str(record.generation_id), kind=record.kind.value):
            return await self._poll_and_settle(
                record,
                profile,
                match_key,
                correlation_id,
                max_attempts=max_attempts,
                initial_delay_seconds=0,
            )

    async def generate(
        self, caller: CallerIdentity, request: GenerationRequest
    ) -> GenerationOutcome:
        """Admit and execute a request in the caller's task."""
        record, _ = await self.admit(caller, request)
        return await self.execute(record)

    async def abandon(self, record: GenerationData, reason: str) -> None:
        """Fail a record that was never submitted and will not be."""
        with log_context(generation_id=str(record.generation_id), kind=record.kind.value):
            await self._settle_failure(record, reason, "interrupted")

    async def _poll_and_settle(
        self,
        record: GenerationData,
        profile: JobProfile,
        match_key: str,
        correlation_id: str | None,
        max_attempts: int | None = None,
        initial_delay_seconds: float | None = None,
    ) -> GenerationOutcome:
        started = time.monotonic()
        in_progress = metrics.generations_in_progress.labels(kind=record.kind.value)
        in_progress.inc()
        try:
            with tracer.start_as_current_span("generation.poll") as span:
                add_span_attributes(span, **{"generation.id": record.generation_id})
                try:
                    outcome = await self.job_client.poll(
                        profile,
                        match_key,
                        correlation_id=correlation_id,
                        max_attempts=max_attempts,
                        initial_delay_seconds=initial_delay_seconds,
                    )
                except UpstreamPollError as e:
                    set_span_error(span, e)
                    await self._settle_failure(record, e.message, "poll_error")
                    raise
                add_span_attributes(
                    span, **{"poll.attempts": outcome.attempts, "poll.succeeded": outcome.succeeded}
                )
        finally:
            in_progress.dec()

        duration = time.monotonic() - started
        if not outcome.succeeded:
            return await self._settle_unsuccessful(record, outcome, duration)
        if not outcome.result_url:
            return await self._settle_missing_result(record, profile, outcome, duration)
        return await self._settle_success(record, outcome.result_url, outcome, duration)

    async def _settle_success(
        self, record: GenerationData, result_url: str, outcome: TerminalOutcome, duration: float
    ) -> GenerationOutcome:
        transitioned = await self.store.complete(record.kind, record.generation_id, result_url)
        if not transitioned:
            logger.warning("generation_already_settled", result_url=result_url)
            return GenerationOutcome(
                generation_id=record.generation_id,
                kind=record.kind,
                success=True,
                cost=record.cost,
                result_url=result_url,
            )

        metrics.record_outcome(record.kind.value, "completed", duration, outcome.attempts)
        # Free variants have nothing to debit or log
        charged = await self._charge(record) if record.cost > 0 else False
        logger.info(
            "generation_completed",
            attempts=outcome.attempts,
            duration_seconds=round(duration, 2),
            charged=charged,
        )
        return GenerationOutcome(
            generation_id=record.generation_id,
            kind=record.kind,
            success=True,
            cost=record.cost,
            result_url=result_url,
            charged=charged,
        )

    async def _settle_unsuccessful(
        self, record: GenerationData, outcome: TerminalOutcome, duration: float
    ) -> GenerationOutcome:
        label = "timeout" if outcome.timed_out else "failed"
        # Task failures keep the worker's reason on the record; the caller gets the generic message
        error_message = outcome.message if outcome.timed_out else (outcome.detail or outcome.message)
        await self._settle_failure(record, error_message, label, duration, outcome.attempts)
        return GenerationOutcome(
            generation_id=record.generation_id,
            kind=record.kind,
            success=False,
            cost=record.cost,
            message=outcome.message,
        )

    async def _settle_missing_result(
        self,
        record: GenerationData,
        profile: JobProfile,
        outcome: TerminalOutcome,
        duration: float,
    ) -> GenerationOutcome:
        await self._settle_failure(
            record, MISSING_RESULT_MESSAGES[record.kind], "empty_result", duration, outcome.attempts
        )
        return GenerationOutcome(
            generation_id=record.generation_id,
            kind=record.kind,
            success=False,
            cost=record.cost,
            message=profile.failure_message,
        )

    async def _settle_failure(
        self,
        record: GenerationData,
        error_message: str,
        outcome_label: str,
        duration: float | None = None,
        attempts: int | None = None,
    ) -> None:
        transitioned = await self.store.fail(record.kind, record.generation_id, error_message)
        if not transitioned:
            logger.warning("generation_already_settled", outcome=outcome_label)
            return

        metrics.record_outcome(record.kind.value, outcome_label, duration, attempts)
        logger.info("generation_failed", outcome=outcome_label, error=error_message)

        if self.reserve_mode:
            try:
                await self.ledger.release(record.user_id, record.cost)
            except PersistenceError as e:
                metrics.record_error("PersistenceError", "release_reservation")
                logger.error("generation_reservation_release_failed", error=e.message)

    def _charge_description(self, record: GenerationData) -> str:
        if record.kind == GenerationKind.IMAGE:
            return f"Image generation ({record.size})"
        words = GenerationRequest(kind=record.kind, prompt=record.prompt).word_count
        return f"Text-to-speech generation ({words} words)"

    async def _charge(self, record: GenerationData) -> bool:
        """Debit the record's cost once it is completed; failures are logged only."""
        description = self._charge_description(record)
        amount = float(record.cost)

        if self.reserve_mode:
            logged = await self.ledger.append_transaction(
                record.user_id,
                TransactionType.DEBIT,
                record.cost,
                description,
                str(record.generation_id),
            )
            metrics.record_charge(record.kind.value, True, amount)
            if not logged:
                logger.error("generation_charge_log_failed", cost=str(record.cost))
            return True

        result = await self.ledger.charge(
            record.user_id, record.cost, description, record.generation_id
        )
        metrics.record_charge(record.kind.value, result.success, amount)
        if not result.success:
            logger.error(
                "generation_charge_failed",
                user_id=str(record.user_id),
                cost=str(record.cost),
                error=result.error,
            )
        return result.success


def build_generation_service(
    session: AsyncSession,
    job_client: JobPlatformClient,
    settings: Settings | None = None,
) -> GenerationService:
    """Wire a GenerationService whose store, pricing and ledger share one session."""
    settings = settings or get_settings()
    return GenerationService(
        store=GenerationStore(session),
        pricing=PricingService(session, settings),
        ledger=LedgerService(session),
        job_client=job_client,
        settings=settings,
    )
