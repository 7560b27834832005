import json

import pytest
from conftest import URIT8031_TEXT

from hl7bridge.commons.errors import RecordNotFoundError
from hl7bridge.parsers.codec import HL7Codec
from hl7bridge.parsers.families import URIT_8031
from hl7bridge.storage.store import RecordStore, RetryPolicy


def parsed():
    return HL7Codec(URIT_8031).parse(URIT8031_TEXT)


async def save_one(store, **kwargs) -> str:
    return await store.save(
        parsed(),
        family="urit8031",
        raw=URIT8031_TEXT,
        results={"GLI01": "111", "ALT01": "35"},
        sample_id="0000966134",
        **kwargs,
    )


async def fail_attempt(store, record_id, error="sink caido"):
    await store.update_status(record_id, "processing")
    return await store.update_status(record_id, "failed", error)


@pytest.mark.asyncio
async def test_save_creates_pending_record(store, clock):
    record_id = await save_one(store)
    path = store.dirs["pending"] / f"{record_id}.json"
    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8"))["status"] == "pending"

    record = await store.get_by_id(record_id)
    assert record.status == "pending"
    assert record.retry_count == 0
    assert record.sample_id == "0000966134"
    assert record.results == {"GLI01": "111", "ALT01": "35"}
    assert record.timestamp == clock.now
    assert record.parsed_message.obx[0].observation_identifier == "GLI"
    assert record.parsed_message.obr.fields[1] == "0000966134"


@pytest.mark.asyncio
async def test_ids_are_unique(store):
    ids = {await save_one(store) for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.asyncio
async def test_processing_increments_retry_count(store, clock):
    record_id = await save_one(store)
    clock.advance(1000)
    record = await store.update_status(record_id, "processing")
    assert record.retry_count == 1
    assert record.last_attempt == clock.now
    assert (store.dirs["pending"] / f"{record_id}.json").exists()


@pytest.mark.asyncio
async def test_completed_moves_to_completed_partition(store):
    record_id = await save_one(store)
    await store.update_status(record_id, "processing")
    await store.update_status(record_id, "completed")
    assert not (store.dirs["pending"] / f"{record_id}.json").exists()
    assert (store.dirs["completed"] / f"{record_id}.json").exists()
    assert (await store.get_by_id(record_id)).status == "completed"


@pytest.mark.asyncio
async def test_failed_stays_pending_until_max_retries(store):
    record_id = await save_one(store)
    for attempt in (1, 2):
        record = await fail_attempt(store, record_id)
        assert record.retry_count == attempt
        assert (store.dirs["pending"] / f"{record_id}.json").exists()

    record = await fail_attempt(store, record_id, "ultimo error")
    assert record.retry_count == 3
    assert record.error_message == "ultimo error"
    assert not (store.dirs["pending"] / f"{record_id}.json").exists()
    assert [r.id for r in await store.get_failed()] == [record_id]


@pytest.mark.asyncio
async def test_backoff_schedule(store, clock):
    record_id = await save_one(store)
    await fail_attempt(store, record_id)

    clock.advance(4999)
    assert await store.get_retryable() == []
    clock.advance(1)
    assert [r.id for r in await store.get_retryable()] == [record_id]

    await fail_attempt(store, record_id)
    clock.advance(9999)
    assert await store.get_retryable() == []
    clock.advance(1)
    retryable = await store.get_retryable()
    assert [r.retry_count for r in retryable] == [2]

    record = await fail_attempt(store, record_id)
    assert record.retry_count == 3
    clock.advance(10_000_000)
    assert await store.get_retryable() == []


@pytest.mark.asyncio
async def test_exhausted_record_never_retryable(store, clock):
    record_id = await save_one(store)
    for _ in range(3):
        await fail_attempt(store, record_id)
    record = await store.get_by_id(record_id)
    clock.advance(10_000_000)
    assert not store.is_retryable(record)
    assert record_id not in [r.id for r in await store.get_retryable()]


@pytest.mark.asyncio
async def test_pending_and_processing_not_retryable(store, clock):
    pending_id = await save_one(store)
    processing_id = await save_one(store)
    await store.update_status(processing_id, "processing")
    clock.advance(60_000)
    assert await store.get_retryable() == []
    assert {r.id for r in await store.get_pending()} == {pending_id, processing_id}


@pytest.mark.asyncio
async def test_delete_and_missing_ids(store):
    record_id = await save_one(store)
    await store.delete(record_id)
    assert await store.get_by_id(record_id) is None
    with pytest.raises(RecordNotFoundError):
        await store.delete(record_id)
    with pytest.raises(RecordNotFoundError):
        await store.update_status("no-existe", "processing")


@pytest.mark.asyncio
async def test_statistics(store):
    a = await save_one(store)
    b = await save_one(store)
    await save_one(store)
    await store.update_status(a, "processing")
    await store.update_status(a, "completed")
    for _ in range(3):
        await fail_attempt(store, b)
    assert await store.get_statistics() == {"pending": 1, "completed": 1, "failed": 1, "total": 3}


@pytest.mark.asyncio
async def test_recover_interrupted_records(store, clock):
    pending_id = await save_one(store)
    processing_id = await save_one(store)
    failed_id = await save_one(store)
    await store.update_status(processing_id, "processing")
    await fail_attempt(store, failed_id)

    recovered = await store.recover_interrupted()
    assert set(recovered) == {pending_id, processing_id}
    for record_id in (pending_id, processing_id):
        record = await store.get_by_id(record_id)
        assert record.status == "failed"
        assert "Interrumpido" in record.error_message


@pytest.mark.asyncio
async def test_manual_revival_of_terminal_record(store):
    record_id = await save_one(store)
    for _ in range(3):
        await fail_attempt(store, record_id)
    await store.update_status(record_id, "processing")
    await store.update_status(record_id, "completed")
    assert (store.dirs["completed"] / f"{record_id}.json").exists()
    assert not (store.dirs["failed"] / f"{record_id}.json").exists()


@pytest.mark.asyncio
async def test_storage_errors_propagate(tmp_path):
    # sin initialize() no existen las particiones
    store = RecordStore(str(tmp_path / "no-init"))
    with pytest.raises(OSError):
        await save_one(store)


def test_retry_policy_delays():
    policy = RetryPolicy(max_retries=3, retry_delay_ms=5000, backoff_multiplier=2)
    assert policy.delay_for(1).total_seconds() == 5
    assert policy.delay_for(2).total_seconds() == 10
    assert policy.delay_for(3).total_seconds() == 20
    assert policy.delay_for(0).total_seconds() == 5


@pytest.mark.asyncio
async def test_update_retry_policy(store, clock):
    store.update_retry_policy(max_retries=1)
    record_id = await save_one(store)
    await fail_attempt(store, record_id)
    assert [r.id for r in await store.get_failed()] == [record_id]


@pytest.mark.asyncio
async def test_listing_skips_record_moved_during_scan(store, monkeypatch):
    moved = await save_one(store)
    kept = await save_one(store)
    original_read = store._read

    def read_after_unlink(path):
        # otro escritor lo saca de pending entre el glob y la lectura
        if path.stem == moved and path.exists():
            path.unlink()
        return original_read(path)

    monkeypatch.setattr(store, "_read", read_after_unlink)
    assert [r.id for r in await store.get_pending()] == [kept]
    assert [r.id for r in await store.get_retryable()] == []


@pytest.mark.asyncio
async def test_lookup_follows_record_moved_to_other_partition(store, monkeypatch):
    record_id = await save_one(store)
    original_read = store._read

    def move_then_read(path):
        if path.parent.name == "pending" and path.exists():
            target = store.dirs["completed"] / path.name
            target.write_text(path.read_text(encoding="utf-8"), encoding="utf-8")
            path.unlink()
        return original_read(path)

    monkeypatch.setattr(store, "_read", move_then_read)
    record = await store.get_by_id(record_id)
    assert record is not None and record.id == record_id

    updated = await store.update_status(record_id, "processing")
    assert updated.retry_count == 1
