"""
Job Platform Client - Submits generation tasks and polls them to completion.

The platform has no webhooks and returns no id for a submission, so a
submitted task is found again by listing every task attempt of the job and
matching the input string it was created with (newest first). When
correlation ids are enabled the generation id travels inside the input as
``requestId`` and wins over bare prompt matches.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
from structlog import get_logger

from app.config import Settings, get_settings
from app.exceptions import UpstreamPollError, UpstreamSubmitError
from app.models.api import GenerationKind
from app.models.domain import JobProfile, JobTask, TerminalOutcome
from app.observability import metrics

logger = get_logger(__name__)

FAILED_TASK_STATUSES = frozenset({"failed", "declined"})
COMPLETED_TASK_STATUS = "completed"
CORRELATION_FIELD = "requestId"
NO_TASK_MESSAGE = "No task found for this generation"
GENERIC_TASK_FAILURE = "Task failed without specific error"

SleepFunc = Callable[[float], Awaitable[None]]


def build_job_profiles(settings: Settings) -> dict[GenerationKind, JobProfile]:
    """Per-modality submission and result conventions."""
    return {
        GenerationKind.IMAGE: JobProfile(
            kind=GenerationKind.IMAGE,
            job_id=settings.image_job_id,
            input_field="imagePrompt",
            proof_field="imageUrl",
            failure_message="Image generation failed, please try again later",
            timeout_message="Timeout: Image generation took too long. Please try again.",
        ),
        GenerationKind.SPEECH: JobProfile(
            kind=GenerationKind.SPEECH,
            job_id=settings.speech_job_id,
            input_field="speechPrompt",
            proof_field="uploadedFileUrl",
            failure_message="Speech generation failed. Please try again.",
            timeout_message="Speech generation timed out. Please try again.",
        ),
    }


def compose_match_key(kind: GenerationKind, prompt: str, size: str | None) -> str:
    """The exact input string submitted for a generation."""
    if kind == GenerationKind.IMAGE:
        return f"{prompt} with this size {size}"
    return prompt


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _as_json_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _loads_object(text: str | None) -> dict[str, Any] | None:
    """Decode a JSON-encoded object field, or None if it is not one."""
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except (TypeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def parse_task(raw: dict[str, Any]) -> JobTask:
    """Build a JobTask from one entry of ``job_tasks``."""
    return JobTask(
        task_id=raw.get("_id"),
        status=str(raw.get("status") or ""),
        comment=raw.get("comment") or None,
        failure_reason=raw.get("failureReason") or None,
        job_proof=_as_json_text(raw.get("job_proof")),
        added=_parse_timestamp(raw.get("added")),
        planned_task=_as_json_text(raw.get("planned_task")),
    )


def find_matching_task(
    tasks: list[JobTask],
    input_field: str,
    match_key: str,
    correlation_id: str | None = None,
) -> JobTask | None:
    """
    Pick the task created by our submission.

    Tasks echoing our correlation id win. Tasks carrying somebody else's
    correlation id never match. Otherwise the input field must equal the
    match key exactly, and the most recently added candidate is returned.
    """
    correlated: list[JobTask] = []
    by_prompt: list[JobTask] = []

    for task in tasks:
        planned = _loads_object(task.planned_task)
        if planned is None:
            continue
        echoed_id = planned.get(CORRELATION_FIELD)
        if correlation_id is not None and echoed_id is not None:
            if str(echoed_id) == correlation_id:
                correlated.append(task)
            continue
        if planned.get(input_field) == match_key:
            by_prompt.append(task)

    candidates = correlated or by_prompt
    if not candidates:
        return None

    oldest = datetime.min.replace(tzinfo=UTC)
    return max(candidates, key=lambda task: task.added or oldest)


def extract_result_url(job_proof: str | None, proof_field: str) -> str | None:
    """Locator from a task's proof payload, or None if missing or unparseable."""
    proof = _loads_object(job_proof)
    if proof is None:
        return None
    url = proof.get(proof_field)
    if not isinstance(url, str):
        return None
    url = url.strip()
    return url or None


class JobPlatformClient:
    """HTTP client for the third-party job platform."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 60.0,
        initial_delay_seconds: float = 30.0,
        poll_interval_seconds: float = 30.0,
        max_attempts: int = 15,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> "JobPlatformClient":
        """Build a client from application settings."""
        settings = settings or get_settings()
        return cls(
            base_url=settings.job_platform_base_url,
            api_token=settings.job_platform_api_token,
            http_client=http_client,
            timeout_seconds=settings.job_platform_timeout_seconds,
            initial_delay_seconds=settings.poll_initial_delay_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
            sleep=sleep,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    async def submit(self, job_id: str, input_payload: dict[str, str]) -> None:
        """
        Submit one planned task. Not retried.

        Raises:
            UpstreamSubmitError: Non-2xx response or transport failure
        """
        body = {"job_id": job_id, "inputs": [json.dumps(input_payload)]}
        try:
            response = await self.http_client.post(
                f"{self.base_url}/planned_tasks/submit",
                json=body,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            metrics.record_job_platform_request("submit", False)
            logger.error("job_submit_transport_error", job_id=job_id, error=str(e))
            raise UpstreamSubmitError(f"Failed to submit task: {e}") from e

        if not response.is_success:
            metrics.record_job_platform_request("submit", False)
            logger.error(
                "job_submit_rejected",
                job_id=job_id,
                status_code=response.status_code,
                body_preview=response.text[:200],
            )
            raise UpstreamSubmitError(
                f"Failed to submit task: {response.status_code}",
                status_code=response.status_code,
            )

        metrics.record_job_platform_request("submit", True)
        logger.info("job_submitted", job_id=job_id)

    async def list_tasks(self, job_id: str) -> list[JobTask]:
        """
        Fetch every current task attempt of a job.

        Raises:
            UpstreamPollError: Non-2xx response, transport failure, or bad JSON
        """
        try:
            response = await self.http_client.post(
                f"{self.base_url}/jobs/applicants",
                json={"job_id": job_id},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            metrics.record_job_platform_request("poll", False)
            raise UpstreamPollError(f"Failed to fetch task result: {e}") from e

        if not response.is_success:
            metrics.record_job_platform_request("poll", False)
            raise UpstreamPollError(
                f"Failed to fetch task result: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            metrics.record_job_platform_request("poll", False)
            raise UpstreamPollError("Failed to fetch task result: invalid JSON") from e

        metrics.record_job_platform_request("poll", True)
        raw_tasks = data.get("job_tasks") if isinstance(data, dict) else None
        if not isinstance(raw_tasks, list):
            return []
        return [parse_task(raw) for raw in raw_tasks if isinstance(raw, dict)]

    async def poll(
        self,
        profile: JobProfile,
        match_key: str,
        correlation_id: str | None = None,
        max_attempts: int | None = None,
        initial_delay_seconds: float | None = None,
    ) -> TerminalOutcome:
        """
        Poll until the matching task reaches a terminal outcome.

        Waits the initial delay, then makes up to ``max_attempts`` list calls
        spaced by the poll interval. Failed or declined tasks, and attempts
        running out, are returned as failure outcomes. A task carrying a
        usable result is a success even if its status was not updated yet.

        Raises:
            UpstreamPollError: The poll request failed on the last attempt
        """
        attempts = max_attempts or self.max_attempts
        delay = self.initial_delay_seconds if initial_delay_seconds is None else initial_delay_seconds
        if delay > 0:
            await self._sleep(delay)

        found_on_last_attempt = False
        for attempt in range(1, attempts + 1):
            is_last = attempt == attempts
            try:
                tasks = await self.list_tasks(profile.job_id)
            except UpstreamPollError as e:
                if is_last:
                    logger.error("job_poll_failed", job_id=profile.job_id, attempt=attempt, error=e.message)
                    raise
                logger.warning(
                    "job_poll_request_failed", job_id=profile.job_id, attempt=attempt, error=e.message
                )
                await self._sleep(self.poll_interval_seconds)
                continue

            task = find_matching_task(tasks, profile.input_field, match_key, correlation_id)
            if task is None:
                logger.info("job_task_not_found", job_id=profile.job_id, attempt=attempt)
            else:
                found_on_last_attempt = is_last
                logger.info(
                    "job_task_status",
                    job_id=profile.job_id,
                    task_id=task.task_id,
                    status=task.status,
                    attempt=attempt,
                )

                if task.status in FAILED_TASK_STATUSES:
                    detail = task.comment or task.failure_reason or GENERIC_TASK_FAILURE
                    return TerminalOutcome.failure(profile.failure_message, detail, attempt)

                result_url = extract_result_url(task.job_proof, profile.proof_field)
                if result_url is not None:
                    return TerminalOutcome.success(result_url, attempt)

                if task.status == COMPLETED_TASK_STATUS:
                    # Completed without a usable proof; the caller treats it as a failure
                    return TerminalOutcome.success(None, attempt)

            if not is_last:
                await self._sleep(self.poll_interval_seconds)

        if not found_on_last_attempt:
            return TerminalOutcome.failure(
                NO_TASK_MESSAGE,
                "No matching task was listed on the last attempt",
                attempts,
                timed_out=True,
            )
        return TerminalOutcome.failure(
            profile.timeout_message, "Polling attempts exhausted", attempts, timed_out=True
        )
