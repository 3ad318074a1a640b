import pytest

from postflow_server.errors import InvalidStateTransitionError, JobNotFoundError, ValidationError
from postflow_server.jobs.types import JobStatus, JobType, LogLevel, SelectionMode
from postflow_server.schemas.jobs import BulkActionRequest, JobFilters


def post_payload(**overrides):
    payload = {
        "gallery_url": "https://gall.example.com/board/lists?id=test",
        "title": "Hello",
        "content_html": "<p>hi</p>",
        "nickname": "anon",
        "password": "1234",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_create_job_with_payload(store) -> None:
    job = await store.create_job(JobType.POST, post_payload(unknown_field="dropped"), priority=5, subject="s")

    assert job.id is not None
    assert job.status == JobStatus.REQUEST.value
    assert job.priority == 5
    payload = await store.get_payload(job.id, JobType.POST)
    assert payload.title == "Hello"
    assert payload.image_paths == []


@pytest.mark.asyncio
async def test_create_job_rejects_non_initial_status(store) -> None:
    with pytest.raises(ValidationError):
        await store.create_job(JobType.POST, post_payload(), status=JobStatus.PROCESSING)


@pytest.mark.asyncio
async def test_get_job_missing(store) -> None:
    with pytest.raises(JobNotFoundError):
        await store.get_job(404)


@pytest.mark.asyncio
async def test_find_ready_jobs_orders_by_priority_then_schedule(store) -> None:
    late = await store.create_job(JobType.POST, post_payload(), scheduled_at=200, priority=0)
    early = await store.create_job(JobType.POST, post_payload(), scheduled_at=100, priority=0)
    urgent = await store.create_job(JobType.POST, post_payload(), scheduled_at=300, priority=9)
    await store.create_job(JobType.POST, post_payload(), scheduled_at=10_000)
    await store.create_job(JobType.POST, post_payload(), scheduled_at=50, status=JobStatus.PENDING)
    await store.create_job(JobType.COMMENT, {"post_urls": ["https://x.test/1"], "comment_text": "c"}, scheduled_at=1)

    jobs = await store.find_ready_jobs(JobType.POST, JobStatus.REQUEST, now=1000, limit=10)
    assert [j.id for j in jobs] == [urgent.id, early.id, late.id]

    first = await store.find_ready_jobs(JobType.POST, now=1000)
    assert [j.id for j in first] == [urgent.id]


@pytest.mark.asyncio
async def test_transition_status_is_conditional(store) -> None:
    job = await store.create_job(JobType.POST, post_payload())

    assert await store.transition_status(job.id, JobStatus.PROCESSING, expected=JobStatus.REQUEST, started_at=1)
    # A second claimer loses the race.
    assert not await store.transition_status(job.id, JobStatus.PROCESSING, expected=JobStatus.REQUEST)

    current = await store.get_job(job.id)
    assert current.status == JobStatus.PROCESSING.value
    assert current.started_at == 1


@pytest.mark.asyncio
async def test_transition_status_validates_table(store) -> None:
    job = await store.create_job(JobType.POST, post_payload(), status=JobStatus.PENDING)
    with pytest.raises(InvalidStateTransitionError):
        await store.transition_status(job.id, JobStatus.PROCESSING)
    with pytest.raises(ValueError):
        await store.transition_status(job.id, JobStatus.REQUEST, status="completed")


@pytest.mark.asyncio
async def test_update_job_refuses_status(store) -> None:
    job = await store.create_job(JobType.POST, post_payload())
    with pytest.raises(ValueError):
        await store.update_job(job.id, status="completed")
    await store.update_job(job.id, scheduled_at=42)
    assert (await store.get_job(job.id)).scheduled_at == 42


@pytest.mark.asyncio
async def test_logs_are_ordered_and_latest_is_tracked(store) -> None:
    a = await store.create_job(JobType.POST, post_payload())
    b = await store.create_job(JobType.POST, post_payload())
    await store.append_log(a.id, "first")
    await store.append_log(a.id, "second", LogLevel.WARN)
    await store.append_log(b.id, "only")

    logs = await store.get_logs(a.id)
    assert [log.message for log in logs] == ["first", "second"]
    assert logs[1].level == "warn"
    assert (await store.get_latest_log(a.id)).message == "second"

    latest = await store.get_latest_logs([a.id, b.id])
    assert latest[a.id].message == "second"
    assert latest[b.id].message == "only"
    assert await store.get_latest_logs([]) == {}


@pytest.mark.asyncio
async def test_bulk_select_page_and_all_modes(store) -> None:
    jobs = [await store.create_job(JobType.POST, post_payload(), subject=f"job {i}") for i in range(4)]
    await store.transition_status(jobs[0].id, JobStatus.PENDING)

    page = await store.bulk_select(BulkActionRequest(mode=SelectionMode.PAGE, include_ids=[jobs[1].id, jobs[3].id]))
    assert [j.id for j in page] == [jobs[1].id, jobs[3].id]

    everything = await store.bulk_select(
        BulkActionRequest(
            mode=SelectionMode.ALL,
            filters=JobFilters(status=JobStatus.REQUEST),
            exclude_ids=[jobs[2].id],
        )
    )
    assert [j.id for j in everything] == [jobs[1].id, jobs[3].id]

    searched = await store.bulk_select(BulkActionRequest(mode=SelectionMode.ALL, filters=JobFilters(search="job 2")))
    assert [j.id for j in searched] == [jobs[2].id]

    with pytest.raises(ValidationError):
        await store.bulk_select(BulkActionRequest(mode=SelectionMode.PAGE))


@pytest.mark.asyncio
async def test_list_jobs_paginates(store) -> None:
    for i in range(5):
        await store.create_job(JobType.POST, post_payload(), subject=f"job {i}")

    jobs, total = await store.list_jobs(None, page=2, limit=2, order_by="id", order="asc")
    assert total == 5
    assert [j.subject for j in jobs] == ["job 2", "job 3"]

    with pytest.raises(ValidationError):
        await store.list_jobs(None, order_by="password")


@pytest.mark.asyncio
async def test_find_due_deletions(store) -> None:
    due = await store.create_job(JobType.POST, post_payload())
    not_yet = await store.create_job(JobType.POST, post_payload())
    unpublished = await store.create_job(JobType.POST, post_payload())
    for job in (due, not_yet, unpublished):
        await store.transition_status(job.id, JobStatus.PROCESSING)
        await store.transition_status(job.id, JobStatus.COMPLETED)
    await store.update_payload(due.id, JobType.POST, result_url="https://x.test/1", delete_at=100)
    await store.update_payload(not_yet.id, JobType.POST, result_url="https://x.test/2", delete_at=5000)
    await store.update_payload(unpublished.id, JobType.POST, delete_at=100)

    jobs = await store.find_due_deletions(now=1000)
    assert [j.id for j in jobs] == [due.id]


@pytest.mark.asyncio
async def test_delete_job_removes_logs_and_payload(store) -> None:
    job = await store.create_job(JobType.POST, post_payload())
    await store.append_log(job.id, "hello")

    assert await store.delete_job(job.id) is True
    assert await store.delete_job(job.id) is False
    assert await store.get_payload(job.id, JobType.POST) is None
    assert await store.get_logs(job.id) == []


@pytest.mark.asyncio
async def test_find_coupas_job_by_post_url(store) -> None:
    payload = {
        "post_url": "https://gall.example.com/board/view?id=test&no=1",
        "wordpress_url": "https://blog.example.com",
        "wordpress_username": "admin",
        "wordpress_api_key": "key",
    }
    job = await store.create_job(JobType.COUPAS, payload)
    found = await store.find_coupas_job_by_post_url(payload["post_url"])
    assert found.id == job.id
    assert await store.find_coupas_job_by_post_url("https://elsewhere.test") is None
