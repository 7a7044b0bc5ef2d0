"""
Tests for the job platform client and task matching.

Uses httpx.MockTransport in place of the platform and a recording sleep so
polling runs without waiting.
"""

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.exceptions import UpstreamPollError, UpstreamSubmitError
from app.models.api import GenerationKind
from app.models.domain import JobTask
from app.services.job_platform import (
    GENERIC_TASK_FAILURE,
    NO_TASK_MESSAGE,
    JobPlatformClient,
    build_job_profiles,
    compose_match_key,
    extract_result_url,
    find_matching_task,
    parse_task,
)

BASE_TIME = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def make_task(
    planned: dict | None,
    status: str = "pending",
    minutes: int = 0,
    proof: dict | None = None,
    task_id: str | None = None,
) -> JobTask:
    return JobTask(
        task_id=task_id,
        status=status,
        comment=None,
        failure_reason=None,
        job_proof=json.dumps(proof) if proof is not None else None,
        added=BASE_TIME + timedelta(minutes=minutes),
        planned_task=json.dumps(planned) if planned is not None else None,
    )


class TestComposeMatchKey:
    """Tests for the submitted input string."""

    def test_image_key_includes_size(self):
        key = compose_match_key(GenerationKind.IMAGE, "a lighthouse", "1792x1024")
        assert key == "a lighthouse with this size 1792x1024"

    def test_speech_key_is_prompt(self):
        assert compose_match_key(GenerationKind.SPEECH, "good morning", None) == "good morning"


class TestParseTask:
    """Tests for reading job_tasks entries."""

    def test_parses_json_string_fields(self):
        raw = {
            "_id": "t1",
            "status": "completed",
            "comment": "",
            "failureReason": "Bad input",
            "job_proof": '{"imageUrl": "https://cdn.test/a.png"}',
            "planned_task": '{"imagePrompt": "x"}',
            "added": "2026-10-01T12:00:00Z",
        }

        task = parse_task(raw)

        assert task.task_id == "t1"
        assert task.comment is None
        assert task.failure_reason == "Bad input"
        assert task.added == BASE_TIME
        assert extract_result_url(task.job_proof, "imageUrl") == "https://cdn.test/a.png"

    def test_object_fields_are_reencoded(self):
        """Platforms that send objects instead of strings still parse."""
        task = parse_task({"status": "pending", "planned_task": {"speechPrompt": "hi"}})

        assert json.loads(task.planned_task) == {"speechPrompt": "hi"}
        assert task.added is None

    def test_bad_timestamp_ignored(self):
        assert parse_task({"status": "pending", "added": "yesterday"}).added is None


class TestExtractResultUrl:
    """Tests for reading the locator out of a proof payload."""

    @pytest.mark.parametrize(
        "job_proof",
        [None, "", "not json", "[1, 2]", '{"imageUrl": ""}', '{"imageUrl": 42}', '{"other": "x"}'],
    )
    def test_unusable_proofs_return_none(self, job_proof):
        assert extract_result_url(job_proof, "imageUrl") is None

    def test_url_is_trimmed(self):
        assert extract_result_url('{"imageUrl": " https://x/y.png "}', "imageUrl") == "https://x/y.png"


class TestFindMatchingTask:
    """Tests for correlating a submission with the platform's task list."""

    def test_exact_input_match_required(self):
        tasks = [
            make_task({"imagePrompt": "a cat with this size 512x512"}),
            make_task({"imagePrompt": "a cat with this size 1024x1024 "}),
        ]

        match = find_matching_task(tasks, "imagePrompt", "a cat with this size 1024x1024")

        assert match is None

    def test_latest_duplicate_wins(self):
        """Identical submissions are indistinguishable; the newest is chosen."""
        older = make_task({"speechPrompt": "hello"}, status="declined", minutes=1, task_id="old")
        newer = make_task({"speechPrompt": "hello"}, status="completed", minutes=5, task_id="new")

        match = find_matching_task([newer, older], "speechPrompt", "hello")

        assert match.task_id == "new"

    def test_correlation_id_disambiguates_duplicates(self):
        """With correlation ids, concurrent identical prompts resolve to their own task."""
        mine = make_task(
            {"speechPrompt": "hello", "requestId": "gen-1"}, status="declined", minutes=1, task_id="mine"
        )
        theirs = make_task(
            {"speechPrompt": "hello", "requestId": "gen-2"}, status="completed", minutes=5, task_id="theirs"
        )

        assert find_matching_task([mine, theirs], "speechPrompt", "hello", "gen-1").task_id == "mine"
        assert find_matching_task([mine, theirs], "speechPrompt", "hello", "gen-2").task_id == "theirs"

    def test_correlated_lookup_falls_back_to_uncorrelated_tasks(self):
        """Tasks without a requestId still match by input."""
        bare = make_task({"speechPrompt": "hello"}, task_id="bare")
        other = make_task({"speechPrompt": "hello", "requestId": "gen-2"}, minutes=3, task_id="other")

        assert find_matching_task([bare, other], "speechPrompt", "hello", "gen-1").task_id == "bare"

    def test_unparseable_planned_task_skipped(self):
        task = JobTask(
            task_id="x",
            status="completed",
            comment=None,
            failure_reason=None,
            job_proof=None,
            added=BASE_TIME,
            planned_task="{broken",
        )
        assert find_matching_task([task], "speechPrompt", "hello") is None

    @given(
        prompts=st.lists(st.sampled_from(["a", "b", "c"]), min_size=1, max_size=12),
        target=st.sampled_from(["a", "b", "c"]),
    )
    def test_match_is_latest_task_with_equal_input(self, prompts, target):
        """The chosen task always has the exact key and the latest timestamp among those."""
        tasks = [
            make_task({"speechPrompt": prompt}, minutes=index, task_id=str(index))
            for index, prompt in enumerate(prompts)
        ]

        match = find_matching_task(tasks, "speechPrompt", target)

        expected = [index for index, prompt in enumerate(prompts) if prompt == target]
        if not expected:
            assert match is None
        else:
            assert match.task_id == str(max(expected))


class TestSubmit:
    """Tests for task submission."""

    @pytest.mark.asyncio
    async def test_submit_posts_job_input(self, job_client, platform):
        await job_client.submit("image-job", {"imagePrompt": "x with this size 512x512"})

        request = platform.requests[0]
        assert request.url.path == "/api/v2/planned_tasks/submit"
        assert request.headers["Authorization"] == "Bearer test-platform-token"
        body = json.loads(request.content)
        assert body["job_id"] == "image-job"
        assert json.loads(body["inputs"][0]) == {"imagePrompt": "x with this size 512x512"}

    @pytest.mark.asyncio
    async def test_non_2xx_raises_without_retry(self, job_client, platform):
        platform.submit_status = 503

        with pytest.raises(UpstreamSubmitError) as exc_info:
            await job_client.submit("image-job", {"imagePrompt": "x"})

        assert exc_info.value.message == "Failed to submit task: 503"
        assert len(platform.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_error_raises_submit_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        client = JobPlatformClient(
            "https://jobs.test/api/v2",
            "token",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(UpstreamSubmitError):
            await client.submit("image-job", {"imagePrompt": "x"})


class TestListTasks:
    """Tests for fetching task attempts."""

    @pytest.mark.asyncio
    async def test_missing_job_tasks_is_empty(self):
        client = JobPlatformClient(
            "https://jobs.test/api/v2",
            "token",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
            ),
        )

        assert await client.list_tasks("image-job") == []

    @pytest.mark.asyncio
    async def test_invalid_json_raises_poll_error(self):
        client = JobPlatformClient(
            "https://jobs.test/api/v2",
            "token",
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
            ),
        )

        with pytest.raises(UpstreamPollError):
            await client.list_tasks("image-job")


class TestPoll:
    """Tests for the poll loop."""

    @pytest.fixture
    def image_profile(self, test_settings):
        return build_job_profiles(test_settings)[GenerationKind.IMAGE]

    @pytest.mark.asyncio
    async def test_zero_matching_tasks_terminates(self, job_client, image_profile, platform, fake_sleep):
        """Polling ends after the attempt budget even if nothing is ever listed."""
        outcome = await job_client.poll(image_profile, "never submitted")

        assert outcome.succeeded is False
        assert outcome.timed_out is True
        assert outcome.message == NO_TASK_MESSAGE
        assert outcome.attempts == 3
        assert platform.poll_count == 3
        assert fake_sleep.delays == [30, 30, 30]

    @pytest.mark.asyncio
    async def test_initial_delay_skipped_when_zero(self, job_client, image_profile, platform, fake_sleep):
        platform.submissions.append({"imagePrompt": "k"})

        outcome = await job_client.poll(image_profile, "k", initial_delay_seconds=0)

        assert outcome.succeeded is True
        assert outcome.result_url == "https://cdn.test/image.png"
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_success_after_pending_polls(self, job_client, image_profile, platform):
        platform.submissions.append({"imagePrompt": "k"})
        platform.pending_polls = 2

        outcome = await job_client.poll(image_profile, "k")

        assert outcome.succeeded is True
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_failed_task_without_reason_uses_generic_detail(self, job_client, image_profile, platform):
        platform.submissions.append({"imagePrompt": "k"})
        platform.task_status = "failed"
        platform.proof = None

        outcome = await job_client.poll(image_profile, "k")

        assert outcome.succeeded is False
        assert outcome.timed_out is False
        assert outcome.message == image_profile.failure_message
        assert outcome.detail == GENERIC_TASK_FAILURE

    @pytest.mark.asyncio
    async def test_pending_task_times_out_with_profile_message(self, job_client, image_profile, platform):
        platform.submissions.append({"imagePrompt": "k"})
        platform.pending_polls = 10

        outcome = await job_client.poll(image_profile, "k")

        assert outcome.timed_out is True
        assert outcome.message == image_profile.timeout_message

    @pytest.mark.asyncio
    async def test_task_missing_on_last_attempt_reports_no_task(self, job_client, image_profile, platform):
        """Only the last listing decides between a timeout and a missing task."""
        platform.submissions.append({"imagePrompt": "k"})
        platform.pending_polls = 10
        platform.hide_tasks_after = 2

        outcome = await job_client.poll(image_profile, "k")

        assert outcome.timed_out is True
        assert outcome.message == NO_TASK_MESSAGE
        assert platform.poll_count == 3

    @pytest.mark.asyncio
    async def test_max_attempts_override(self, job_client, image_profile, platform):
        outcome = await job_client.poll(image_profile, "k", max_attempts=1, initial_delay_seconds=0)

        assert outcome.attempts == 1
        assert platform.poll_count == 1

    @pytest.mark.asyncio
    async def test_last_attempt_error_raises(self, job_client, image_profile, platform):
        platform.poll_failures = [500, 500, 500]

        with pytest.raises(UpstreamPollError) as exc_info:
            await job_client.poll(image_profile, "k")

        assert exc_info.value.status_code == 500
