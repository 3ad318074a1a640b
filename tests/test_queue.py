import asyncio
from typing import List, Optional

import pytest

from postflow_server.clients.browser import BrowserSessionPool, SessionMode
from postflow_server.engine.retry import Backoff, RetryPolicy
from postflow_server.entities import Job
from postflow_server.errors import PersistenceError, TransientAutomationError
from postflow_server.jobs.queue import INTERRUPTED_MESSAGE, JobQueueProcessor
from postflow_server.jobs.scheduler import JobScheduler
from postflow_server.jobs.types import JobResult, JobStatus, JobType
from postflow_server.processors.base import ProcessorRegistry
from postflow_server.processors.comment import CommentJobProcessor
from postflow_server.processors.post import PostJobProcessor

COMMENT = {"post_urls": ["https://x.test/1"], "comment_text": "hi"}


class StubProcessor:
    job_type = JobType.COMMENT

    def __init__(self, fail_ids: Optional[set] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.fail_ids = fail_ids or set()
        self.gate = gate
        self.processed: List[int] = []
        self.running = 0
        self.max_running = 0

    def can_process(self, job: Job) -> bool:
        return job.type == self.job_type.value

    async def process(self, job_id: int) -> Optional[JobResult]:
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            self.processed.append(job_id)
            if job_id in self.fail_ids:
                raise TransientAutomationError("network down")
            return JobResult(result_url=f"https://x.test/result/{job_id}", result_msg="done")
        finally:
            self.running -= 1


class StubDeletion:
    job_type = JobType.POST

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.deleted: List[int] = []

    def can_process(self, job: Job) -> bool:
        return True

    async def process(self, job_id: int) -> Optional[JobResult]:
        if self.fail:
            raise TransientAutomationError("delete button missing")
        self.deleted.append(job_id)
        return JobResult(result_msg="Article deleted")


def make_queue(store, job_logger, clock, processor, **kwargs) -> JobQueueProcessor:
    return JobQueueProcessor(store, ProcessorRegistry([processor]), job_logger, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_recovery_sweep_fails_interrupted_jobs(store, job_logger, clock) -> None:
    running = await store.create_job(JobType.COMMENT, COMMENT)
    deleting = await store.create_job(JobType.POST, {"gallery_url": "https://g.test", "title": "t", "content_html": ""})
    untouched = await store.create_job(JobType.COMMENT, COMMENT)
    await store.transition_status(running.id, JobStatus.PROCESSING)
    await store.transition_status(deleting.id, JobStatus.PROCESSING)
    await store.transition_status(deleting.id, JobStatus.COMPLETED)
    await store.transition_status(deleting.id, JobStatus.DELETE_PROCESSING)

    queue = make_queue(store, job_logger, clock, StubProcessor())
    assert await queue.recover_interrupted_jobs() == 2

    recovered = await store.get_job(running.id)
    assert recovered.status == JobStatus.FAILED.value
    assert recovered.error_msg == INTERRUPTED_MESSAGE
    assert recovered.completed_at == clock.now
    assert (await store.get_job(deleting.id)).status == JobStatus.DELETE_FAILED.value
    assert (await store.get_job(untouched.id)).status == JobStatus.REQUEST.value
    assert (await store.get_latest_log(running.id)).level == "error"
    assert await store.count_by_status(JobStatus.PROCESSING) == 0


@pytest.mark.asyncio
async def test_tick_runs_job_to_completion(store, job_logger, clock) -> None:
    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    processor = StubProcessor()
    queue = make_queue(store, job_logger, clock, processor)

    assert await queue.process_ready_jobs(JobType.COMMENT) == 1

    done = await store.get_job(job.id)
    assert done.status == JobStatus.COMPLETED.value
    assert done.result_url == f"https://x.test/result/{job.id}"
    assert done.result_msg == "done"
    assert done.started_at == clock.now
    assert [log.message for log in await store.get_logs(job.id)] == ["Job started", "done"]


@pytest.mark.asyncio
async def test_future_jobs_are_not_claimed(store, job_logger, clock) -> None:
    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now + 60)
    queue = make_queue(store, job_logger, clock, StubProcessor())

    assert await queue.process_ready_jobs(JobType.COMMENT) == 0
    clock.advance(60)
    assert await queue.process_ready_jobs(JobType.COMMENT) == 1
    assert (await store.get_job(job.id)).status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_single_flight_per_kind(store, job_logger, clock) -> None:
    first = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    second = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    gate = asyncio.Event()
    processor = StubProcessor(gate=gate)
    queue = make_queue(store, job_logger, clock, processor)

    tick = asyncio.create_task(queue.process_ready_jobs(JobType.COMMENT))
    while processor.running == 0:
        await asyncio.sleep(0.01)

    # While the first job holds the only slot, another tick claims nothing.
    assert await queue.process_ready_jobs(JobType.COMMENT) == 0
    assert await store.count_by_status(JobStatus.PROCESSING, JobType.COMMENT) == 1
    assert (await store.get_job(second.id)).status == JobStatus.REQUEST.value

    gate.set()
    assert await tick == 1
    assert (await store.get_job(first.id)).status == JobStatus.COMPLETED.value
    assert await queue.process_ready_jobs(JobType.COMMENT) == 1
    assert processor.max_running == 1


@pytest.mark.asyncio
async def test_unlimited_kind_runs_jobs_concurrently(store, job_logger, clock) -> None:
    for _ in range(3):
        await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    processor = StubProcessor()
    queue = make_queue(store, job_logger, clock, processor, concurrency_limits={"comment": 0})

    assert queue.limit_for("comment") == 0
    assert await queue.process_ready_jobs(JobType.COMMENT) == 3


@pytest.mark.asyncio
async def test_lost_claim_is_a_no_op(store, job_logger, clock) -> None:
    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    processor = StubProcessor()
    queue = make_queue(store, job_logger, clock, processor)

    # Someone demoted the job between selection and claim.
    await store.transition_status(job.id, JobStatus.PENDING)
    assert await queue._run_job(job) is False
    assert processor.processed == []
    assert (await store.get_job(job.id)).status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_failure_is_recorded_and_isolated(store, job_logger, clock) -> None:
    bad = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now, priority=1)
    good = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    queue = make_queue(store, job_logger, clock, StubProcessor(fail_ids={bad.id}))

    assert await queue.process_ready_jobs(JobType.COMMENT) == 1
    assert await queue.process_ready_jobs(JobType.COMMENT) == 1

    failed = await store.get_job(bad.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_msg == "network down"
    assert failed.result_msg is None
    assert (await store.get_latest_log(bad.id)).level == "error"
    assert (await store.get_job(good.id)).status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_job_without_processor_fails(store, job_logger, clock) -> None:
    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    queue = JobQueueProcessor(store, ProcessorRegistry(), job_logger, clock=clock)

    assert await queue.process_ready_jobs(JobType.COMMENT) == 1
    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert "No processor" in failed.error_msg


@pytest.mark.asyncio
async def test_error_before_processing_still_fails_the_job(store, job_logger, clock) -> None:
    class BrokenCheck(StubProcessor):
        def can_process(self, job: Job) -> bool:
            raise RuntimeError("payload schema mismatch")

    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    processor = BrokenCheck()
    queue = make_queue(store, job_logger, clock, processor)

    assert await queue.process_ready_jobs(JobType.COMMENT) == 1

    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_msg == "payload schema mismatch"
    assert failed.completed_at == clock.now
    assert processor.processed == []
    latest = await store.get_latest_log(job.id)
    assert latest.level == "error"
    assert latest.message == "payload schema mismatch"


@pytest.mark.asyncio
async def test_error_while_completing_fails_the_job(store, job_logger, clock, monkeypatch) -> None:
    job = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)
    queue = make_queue(store, job_logger, clock, StubProcessor())

    async def broken_complete(job_id, result):
        raise ValueError("result_url too long")

    monkeypatch.setattr(queue, "_complete", broken_complete)
    assert await queue.process_ready_jobs(JobType.COMMENT) == 1

    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_msg == "result_url too long"
    assert await store.count_by_status(JobStatus.PROCESSING) == 0

@pytest.mark.asyncio
async def test_store_outage_skips_tick(store, job_logger, clock, monkeypatch) -> None:
    queue = make_queue(store, job_logger, clock, StubProcessor())

    async def unavailable(*args, **kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(store, "count_by_status", unavailable)
    assert await queue.process_ready_jobs(JobType.COMMENT) == 0
    assert await queue.process_deletions() == 0


async def _published_post(store, clock, delete_at: int) -> Job:
    job = await store.create_job(JobType.POST, {"gallery_url": "https://g.test", "title": "t", "content_html": ""})
    await store.transition_status(job.id, JobStatus.PROCESSING)
    await store.transition_status(job.id, JobStatus.COMPLETED)
    await store.update_payload(job.id, JobType.POST, result_url="https://g.test/view/1", delete_at=delete_at)
    return job


@pytest.mark.asyncio
async def test_deletion_tick_deletes_due_articles(store, job_logger, clock) -> None:
    due = await _published_post(store, clock, clock.now - 1)
    later = await _published_post(store, clock, clock.now + 600)
    deletion = StubDeletion()
    queue = make_queue(store, job_logger, clock, StubProcessor(), deletion_processor=deletion)

    assert await queue.process_deletions() == 1
    assert deletion.deleted == [due.id]

    assert (await store.get_job(due.id)).status == JobStatus.DELETE_COMPLETED.value
    assert (await store.get_payload(due.id, JobType.POST)).deleted_at == clock.now
    assert (await store.get_job(later.id)).status == JobStatus.COMPLETED.value
    # Nothing left to delete once the article is gone.
    assert await queue.process_deletions() == 0


@pytest.mark.asyncio
async def test_deletion_failure_marks_delete_failed(store, job_logger, clock) -> None:
    job = await _published_post(store, clock, clock.now - 1)
    queue = make_queue(store, job_logger, clock, StubProcessor(), deletion_processor=StubDeletion(fail=True))

    assert await queue.process_deletions() == 0
    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.DELETE_FAILED.value
    assert "delete button missing" in failed.error_msg


@pytest.mark.asyncio
async def test_deletion_tick_waits_for_running_deletion(store, job_logger, clock) -> None:
    busy = await _published_post(store, clock, clock.now - 1)
    await _published_post(store, clock, clock.now - 1)
    await store.transition_status(busy.id, JobStatus.DELETE_PROCESSING)
    deletion = StubDeletion()
    queue = make_queue(store, job_logger, clock, StubProcessor(), deletion_processor=deletion)

    assert await queue.process_deletions() == 0
    assert deletion.deleted == []


@pytest.mark.asyncio
async def test_scheduler_start_recovers_then_runs_ticks(store, job_logger, clock) -> None:
    interrupted = await store.create_job(JobType.COMMENT, COMMENT)
    await store.transition_status(interrupted.id, JobStatus.PROCESSING)
    ready = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)

    queue = make_queue(store, job_logger, clock, StubProcessor())
    scheduler = JobScheduler(queue, ready_interval=3600, deletion_interval=3600, shutdown_timeout=5)

    assert await scheduler.start() is True
    assert await scheduler.start() is False
    assert (await store.get_job(interrupted.id)).status == JobStatus.FAILED.value

    for _ in range(100):
        if (await store.get_job(ready.id)).status == JobStatus.COMPLETED.value:
            break
        await asyncio.sleep(0.02)
    assert (await store.get_job(ready.id)).status == JobStatus.COMPLETED.value

    assert await scheduler.stop() is True
    assert await scheduler.stop() is False
    assert not scheduler.running


@pytest.mark.asyncio
async def test_post_and_comment_ticks_drive_separate_browser_sessions(store, job_logger, clock, site, sleep) -> None:
    in_use: dict = {}
    overlaps: List[tuple] = []
    closed_mid_publish: List[bool] = []
    comment_done = asyncio.Event()
    publish = site.publish_article

    def enter(session, kind: str) -> None:
        if session.session_id in in_use:
            overlaps.append((kind, session.session_id))
        in_use[session.session_id] = kind

    async def publish_article(session, article):
        enter(session, "post")
        try:
            await asyncio.wait_for(comment_done.wait(), timeout=2)
            closed_mid_publish.append(session.closed)
            return await publish(session, article)
        finally:
            in_use.pop(session.session_id, None)

    async def write_comment(session, post_url, comment):
        enter(session, "comment")
        try:
            raise RuntimeError("comment box missing")
        finally:
            in_use.pop(session.session_id, None)
            comment_done.set()

    site.publish_article = publish_article
    site.write_comment = write_comment

    pool = BrowserSessionPool(site.open_session)
    options = {
        "session_mode": SessionMode.REUSE,
        "retry_policy": RetryPolicy(max_attempts=2, base_interval=0.5, backoff=Backoff.NONE),
        "sleep": sleep,
    }
    registry = ProcessorRegistry(
        [
            PostJobProcessor(store, job_logger, site, pool, **options),
            CommentJobProcessor(store, job_logger, site, pool, **options),
        ]
    )
    queue = JobQueueProcessor(store, registry, job_logger, clock=clock)
    post = await store.create_job(
        JobType.POST,
        {"gallery_url": "https://g.test", "title": "t", "content_html": "<p>x</p>"},
        scheduled_at=clock.now,
    )
    comment = await store.create_job(JobType.COMMENT, COMMENT, scheduled_at=clock.now)

    await asyncio.gather(queue.process_ready_jobs(JobType.POST), queue.process_ready_jobs(JobType.COMMENT))

    assert overlaps == []
    assert closed_mid_publish == [False]
    assert sorted(session.session_id for session in site.sessions) == ["site:comment", "site:post"]
    assert (await store.get_job(post.id)).status == JobStatus.COMPLETED.value
    assert (await store.get_job(comment.id)).status == JobStatus.FAILED.value
    sessions = {session.session_id: session for session in site.sessions}
    assert sessions["site:comment"].closed
    assert not sessions["site:post"].closed
    assert len(pool) == 1
