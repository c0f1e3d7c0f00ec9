import datetime

import pytest
import pytest_asyncio
import redis

from crawlcore.extraction.records import ExtractedRecord
from crawlcore.jobs import ResultSummary, StopReason, TaskSpec, TaskStatus, TaskType
from crawlcore.reliability.errors import FailureReason, StorageFailure
from crawlcore.storage import InMemoryStorageService, RedisStorageService, create_storage


class FakeRedis:
    """The subset of redis.asyncio.Redis the storage service uses."""

    def __init__(self):
        self.strings = {}
        self.zsets = {}
        self.hashes = {}
        self.sets = {}

    async def ping(self):
        return True

    async def aclose(self):
        return None

    async def set(self, key, value):
        self.strings[key] = value

    async def get(self, key):
        return self.strings.get(key)

    async def delete(self, key):
        self.strings.pop(key, None)

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrevrange(self, key, start, end):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)
        return [member for member, _ in items]

    async def zrem(self, key, member):
        self.zsets.get(key, {}).pop(member, None)

    async def hset(self, key, field, value):
        bucket = self.hashes.setdefault(key, {})
        is_new = field not in bucket
        bucket[field] = value
        return 1 if is_new else 0

    async def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))


def post(post_id, target="123"):
    return ExtractedRecord(id=post_id, kind="post", target_id=target, content=f"post {post_id}")


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request):
    if request.param == "memory":
        service = InMemoryStorageService()
    else:
        service = RedisStorageService(client=FakeRedis())
    await service.connect()
    yield service
    await service.close()


TIMELINE = TaskSpec.build(task_type=TaskType.TIMELINE, target_id="123")
CHANNEL = TaskSpec.build(task_type=TaskType.CHANNEL, target_id="@chan")


@pytest.mark.asyncio
async def test_task_lifecycle_timestamps(store):
    task_id = await store.create_task(TIMELINE)
    record = await store.get_task(task_id)
    assert record.status == TaskStatus.CREATED

    await store.update_task_status(task_id, TaskStatus.QUEUED)
    running = await store.update_task_status(task_id, TaskStatus.RUNNING)
    assert running.started_at is not None

    summary = ResultSummary(item_count=3, stop_reason=StopReason.FEED_EXHAUSTED)
    done = await store.update_task_status(task_id, TaskStatus.COMPLETED, summary)
    assert done.completed_at is not None
    assert (await store.get_task(task_id)).result_summary.item_count == 3


@pytest.mark.asyncio
async def test_terminal_status_is_final(store):
    task_id = await store.create_task(TIMELINE)
    await store.update_task_status(
        task_id, TaskStatus.FAILED, ResultSummary.failure(FailureReason.USER_CANCELLED, "cancelled")
    )
    late = await store.update_task_status(task_id, TaskStatus.COMPLETED, ResultSummary(item_count=20))

    assert late.status == TaskStatus.FAILED
    assert late.error_kind == FailureReason.USER_CANCELLED


@pytest.mark.asyncio
async def test_progress_is_recorded_until_terminal(store):
    task_id = await store.create_task(TIMELINE)
    await store.update_task_status(task_id, TaskStatus.RUNNING)
    await store.record_progress(task_id, 15)
    assert (await store.get_task(task_id)).items_saved == 15

    await store.update_task_status(task_id, TaskStatus.CANCELLED)
    await store.record_progress(task_id, 30)
    record = await store.get_task(task_id)
    assert record.status == TaskStatus.CANCELLED
    assert record.items_saved == 15


@pytest.mark.asyncio
async def test_update_unknown_task_raises(store):
    with pytest.raises(KeyError):
        await store.update_task_status("missing", TaskStatus.RUNNING)


@pytest.mark.asyncio
async def test_list_tasks_filters_by_status(store):
    first = await store.create_task(TIMELINE)
    second = await store.create_task(CHANNEL)
    await store.update_task_status(second, TaskStatus.QUEUED)

    queued = await store.list_tasks(status=TaskStatus.QUEUED)
    assert [r.task_id for r in queued] == [second]
    assert {r.task_id for r in await store.list_tasks()} == {first, second}


@pytest.mark.asyncio
async def test_save_entities_counts_new_ids(store):
    assert await store.save_entities([post("1"), post("2")]) == 2
    assert await store.save_entities([post("2"), post("3")]) == 1
    assert await store.get_existing_ids("123", "post") == {"1", "2", "3"}
    assert await store.get_existing_ids("other", "post") == set()


@pytest.mark.asyncio
async def test_cleanup_only_removes_old_terminal_tasks(store):
    old = await store.create_task(TIMELINE)
    await store.update_task_status(old, TaskStatus.COMPLETED, ResultSummary())
    record = await store.get_task(old)
    record.completed_at = record.completed_at - datetime.timedelta(days=40)
    await store._put_task(record)

    active = await store.create_task(CHANNEL)

    assert await store.cleanup_old_tasks(30) == 1
    assert await store.get_task(old) is None
    assert await store.get_task(active) is not None


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    service = InMemoryStorageService()
    task_id = await service.create_task(TIMELINE)
    record = await service.get_task(task_id)
    record.status = TaskStatus.RUNNING
    assert (await service.get_task(task_id)).status == TaskStatus.CREATED


def test_create_storage_selects_backend():
    assert isinstance(create_storage("memory", redis_url="redis://x"), InMemoryStorageService)
    assert isinstance(create_storage("redis", redis_url="redis://x"), RedisStorageService)


class BrokenRedis(FakeRedis):
    async def hset(self, key, field, value):
        raise redis.ConnectionError("connection reset")


@pytest.mark.asyncio
async def test_redis_errors_surface_as_storage_failure():
    service = RedisStorageService(client=BrokenRedis())
    with pytest.raises(StorageFailure) as excinfo:
        await service.save_entities([post("1")])
    assert excinfo.value.reason == FailureReason.STORAGE_ERROR
