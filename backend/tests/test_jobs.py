"""
Tests for jobs.py

Lifecycle of background research jobs against a fake upstream and clock.
"""
from datetime import timedelta

import pytest

from gptcore.core.config import Settings
from gptcore.schemas.jobs import JobStatus
from gptcore.schemas.research import ResearchRequest
from gptcore.services.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    UpstreamError,
)
from gptcore.services.job_store import InMemoryJobStore
from gptcore.services.jobs import (
    ResearchJobManager,
    transition,
    upstream_error_message,
    upstream_status,
)

from tests.fixtures.research_fixtures import (
    FULL_LOG,
    T0,
    FakeClock,
    FakeUpstream,
    make_job,
    upstream_response,
)


@pytest.fixture
def settings():
    return Settings(
        RESEARCH_MODEL="o3-deep-research",
        DEFAULT_MAX_TOOL_CALLS=50,
        JOB_STALE_AFTER_SECONDS=None,
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(upstream, settings, clock):
    return ResearchJobManager(InMemoryJobStore(), upstream, settings=settings, clock=clock)


def _submit(manager, query="What happened to battery prices?"):
    return manager.submit(ResearchRequest(query=query, background=True))


class TestSubmit:
    def test_creates_in_progress_job(self, manager, upstream):
        """Submitting registers an in-progress job keyed by the response id."""
        job = _submit(manager)

        assert job.id == "resp_1"
        assert job.status is JobStatus.IN_PROGRESS
        assert job.start_time == T0
        assert job.model == "o3-deep-research"
        assert job.max_tool_calls == 50
        assert job.progress.current_activity == "initializing research"
        assert manager.get("resp_1") == job

        params = upstream.create_calls[0]
        assert params["background"] is True
        assert params["input"] == "What happened to battery prices?"

    def test_query_is_truncated_for_listing(self, manager):
        """Only a short query preview is kept on the job."""
        job = _submit(manager, query="q" * 500)
        assert len(job.query) == 100

    def test_background_forced_even_if_request_says_otherwise(self, manager, upstream):
        """submit always asks the provider for background mode."""
        manager.submit(ResearchRequest(query="x", background=False))
        assert upstream.create_calls[0]["background"] is True

    def test_upstream_failure_creates_no_job(self, manager, upstream):
        """A failed create leaves the store empty."""
        upstream.fail_create = UpstreamError("create failed: boom", status_code=500)
        with pytest.raises(UpstreamError):
            _submit(manager)
        assert manager.list() == []

    def test_response_without_id(self, manager, upstream):
        """A response without an id cannot be tracked."""
        upstream.create_response = upstream_response(response_id=None)
        with pytest.raises(UpstreamError):
            _submit(manager)
        assert manager.list() == []


class TestPoll:
    def test_in_progress_updates_progress(self, manager, upstream, clock):
        """Polling a running job refreshes its snapshot."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=FULL_LOG[:2])
        clock.advance(seconds=30)

        job = manager.poll("resp_1")

        assert job.status is JobStatus.IN_PROGRESS
        assert job.progress.tool_calls_count == 2
        assert job.progress.details.pages_accessed == 1
        assert job.last_progress_at == clock.now
        assert upstream.retrieve_calls == ["resp_1"]

    def test_completed_records_result(self, manager, upstream, clock):
        """Completion stores output text, citations and tool calls."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(
            status="completed", output=FULL_LOG, output_text="Prices fell [1]."
        )
        clock.advance(minutes=5)

        job = manager.poll("resp_1")

        assert job.status is JobStatus.COMPLETED
        assert job.completed_time == clock.now
        assert job.progress.current_activity == "research completed"
        assert job.progress.tool_calls_count == 4
        assert job.result.output_text == "Prices fell [1]."
        assert [c.url for c in job.result.citations] == ["https://a.com"]
        assert len(job.result.tool_calls) == 4

    def test_failed_records_error(self, manager, upstream):
        """Upstream failure records code and message."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(
            status="failed", error={"code": "server_error", "message": "boom"}
        )

        job = manager.poll("resp_1")

        assert job.status is JobStatus.FAILED
        assert job.error == "server_error: boom"
        assert job.failed_time is not None
        assert job.progress.current_activity == "research failed"

    def test_incomplete_is_a_failure(self, manager, upstream):
        """An incomplete response fails the job with its reason."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(
            status="incomplete", incomplete_details={"reason": "max_output_tokens"}
        )

        job = manager.poll("resp_1")

        assert job.status is JobStatus.FAILED
        assert job.error == "Research incomplete: max_output_tokens"

    def test_upstream_cancelled(self, manager, upstream):
        """A job cancelled upstream is cancelled locally."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(status="cancelled")

        job = manager.poll("resp_1")

        assert job.status is JobStatus.CANCELLED
        assert job.cancelled_time is not None

    def test_unknown_job(self, manager, upstream):
        with pytest.raises(JobNotFoundError):
            manager.poll("nope")
        assert upstream.retrieve_calls == []

    def test_terminal_job_skips_upstream(self, manager, upstream):
        """Finished jobs are served from the store."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(status="completed", output=FULL_LOG)
        first = manager.poll("resp_1")
        second = manager.poll("resp_1")

        assert second == first
        assert upstream.retrieve_calls == ["resp_1"]

    def test_repeated_polls_are_idempotent(self, manager, upstream):
        """Polling an unchanged upstream yields the same job."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=FULL_LOG[:3])
        first = manager.poll("resp_1")
        second = manager.poll("resp_1")
        assert first == second

    def test_counters_never_regress(self, manager, upstream):
        """A shorter log never moves counters backwards."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=FULL_LOG)
        manager.poll("resp_1")

        upstream.retrieve_responses["resp_1"] = upstream_response(output=FULL_LOG[:1])
        job = manager.poll("resp_1")

        assert job.progress.tool_calls_count == 4
        assert job.progress.details.sources_found == 2

    def test_upstream_error_leaves_job_untouched(self, manager, upstream):
        """A failed retrieve does not modify the job."""
        before = _submit(manager)
        upstream.fail_retrieve = UpstreamError("retrieve failed: down", status_code=503)

        with pytest.raises(UpstreamError):
            manager.poll("resp_1")
        assert manager.get("resp_1") == before

    def test_cancel_racing_a_poll_wins(self, manager, settings, clock):
        """A cancel landing mid-poll is not overwritten by the poll."""
        _submit(manager)
        store = manager.store

        class RacingUpstream(FakeUpstream):
            def retrieve(self, response_id):
                store.update(
                    response_id,
                    lambda job: transition(job, JobStatus.CANCELLED, now=clock.now),
                )
                return upstream_response(status="completed", output=FULL_LOG)

        racing = ResearchJobManager(store, RacingUpstream(), settings=settings, clock=clock)
        job = racing.poll("resp_1")

        assert job.status is JobStatus.CANCELLED
        assert job.result is None


class TestStall:
    @pytest.fixture
    def settings(self):
        return Settings(JOB_STALE_AFTER_SECONDS=60)

    def test_job_without_new_tool_calls_fails(self, manager, upstream, clock):
        """No new tool calls past the limit fails the job."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=[])

        clock.advance(seconds=30)
        assert manager.poll("resp_1").status is JobStatus.IN_PROGRESS

        clock.advance(seconds=31)
        job = manager.poll("resp_1")
        assert job.status is JobStatus.FAILED
        assert job.error == "Research stalled: no new tool calls for 60s"

    def test_new_tool_calls_reset_the_clock(self, manager, upstream, clock):
        """Progress pushes the stall deadline forward."""
        _submit(manager)
        clock.advance(seconds=50)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=FULL_LOG[:1])
        manager.poll("resp_1")

        clock.advance(seconds=50)
        job = manager.poll("resp_1")
        assert job.status is JobStatus.IN_PROGRESS

    def test_disabled_by_default(self, upstream, clock):
        """Without a limit a quiet job is never failed."""
        manager = ResearchJobManager(
            InMemoryJobStore(), upstream, settings=Settings(), clock=clock
        )
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(output=[])
        clock.advance(hours=10)
        assert manager.poll("resp_1").status is JobStatus.IN_PROGRESS


class TestCancel:
    def test_cancel_in_progress_job(self, manager, upstream, clock):
        """Cancel calls the provider and stamps the job cancelled."""
        _submit(manager)
        clock.advance(seconds=10)

        job = manager.cancel("resp_1")

        assert job.status is JobStatus.CANCELLED
        assert job.cancelled_time == clock.now
        assert job.progress.current_activity == "research cancelled"
        assert upstream.cancel_calls == ["resp_1"]

    def test_upstream_failure_still_cancels_locally(self, manager, upstream):
        """A rejected provider cancel still cancels the local job."""
        _submit(manager)
        upstream.fail_cancel = UpstreamError("cancel failed: gone", status_code=404)

        job = manager.cancel("resp_1")

        assert job.status is JobStatus.CANCELLED

    def test_unexpected_upstream_error_still_cancels_locally(self, settings, clock):
        """A cancel is recorded even when the provider call blows up outright."""

        class MisconfiguredUpstream(FakeUpstream):
            def cancel(self, response_id):
                raise RuntimeError("No upstream API key configured. Set OPENAI_API_KEY.")

        manager = ResearchJobManager(
            InMemoryJobStore(), MisconfiguredUpstream(), settings=settings, clock=clock
        )
        _submit(manager)

        job = manager.cancel("resp_1")

        assert job.status is JobStatus.CANCELLED
        assert manager.get("resp_1").status is JobStatus.CANCELLED

    def test_terminal_job_is_left_alone(self, manager, upstream):
        """Cancelling a finished job reports its real status."""
        _submit(manager)
        upstream.retrieve_responses["resp_1"] = upstream_response(status="completed", output=FULL_LOG)
        completed = manager.poll("resp_1")

        job = manager.cancel("resp_1")

        assert job == completed
        assert job.status is JobStatus.COMPLETED
        assert upstream.cancel_calls == []

    def test_poll_after_cancel_does_not_resurrect(self, manager, upstream):
        """A cancelled job never picks up a later upstream result."""
        _submit(manager)
        manager.cancel("resp_1")
        upstream.retrieve_responses["resp_1"] = upstream_response(status="completed", output=FULL_LOG)

        job = manager.poll("resp_1")

        assert job.status is JobStatus.CANCELLED
        assert upstream.retrieve_calls == []

    def test_unknown_job(self, manager):
        with pytest.raises(JobNotFoundError):
            manager.cancel("nope")


class TestRunImmediate:
    def test_returns_content_citations_and_tool_calls(self, manager, upstream):
        """The immediate path returns the report without tracking a job."""
        upstream.create_response = upstream_response(
            status="completed", output=FULL_LOG, output_text="Prices fell [1]."
        )

        result = manager.run_immediate(ResearchRequest(query="battery prices"))

        assert result.content == "Prices fell [1]."
        assert len(result.citations) == 1
        assert result.citations[0].start_index == 12
        assert [t.type for t in result.tool_calls] == [
            "web_search", "web_search", "code_interpreter", "web_search",
        ]
        assert "background" not in upstream.create_calls[0]
        assert manager.list() == []


class TestTransition:
    @pytest.mark.parametrize(
        "status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
    )
    def test_terminal_states_are_final(self, status):
        """No transition leaves completed, failed or cancelled."""
        job = make_job(status=status)
        for target in JobStatus:
            with pytest.raises(InvalidTransitionError):
                transition(job, target, now=T0)

    def test_failed_defaults_error_message(self):
        """Failing without a message uses a generic one."""
        job = transition(make_job(), JobStatus.FAILED, now=T0 + timedelta(seconds=1))
        assert job.error == "Research failed"
        assert job.failed_time == T0 + timedelta(seconds=1)

    def test_completed_without_result_gets_empty_result(self):
        """Completion always carries a result object."""
        job = transition(make_job(), JobStatus.COMPLETED, now=T0)
        assert job.result is not None
        assert job.result.output_text == ""

    def test_pending_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            transition(make_job(status=JobStatus.PENDING), JobStatus.COMPLETED, now=T0)


class TestUpstreamMapping:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("queued", JobStatus.IN_PROGRESS),
            ("in_progress", JobStatus.IN_PROGRESS),
            ("completed", JobStatus.COMPLETED),
            ("failed", JobStatus.FAILED),
            ("cancelled", JobStatus.CANCELLED),
            ("incomplete", JobStatus.FAILED),
            ("something_new", JobStatus.IN_PROGRESS),
            (None, JobStatus.IN_PROGRESS),
        ],
    )
    def test_status(self, raw, expected):
        """Provider statuses map onto local job statuses."""
        assert upstream_status(upstream_response(status=raw)) is expected

    def test_error_message_fallback(self):
        """A failure without details gets the generic message."""
        assert upstream_error_message(upstream_response(status="failed")) == "Research failed"

    def test_error_message_without_code(self):
        response = upstream_response(status="failed", error={"message": "quota"})
        assert upstream_error_message(response) == "quota"
