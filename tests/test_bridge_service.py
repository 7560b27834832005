import asyncio
import json

import pytest
from conftest import URIT5160_TEXT, URIT8031_TEXT, block

from hl7bridge.commons.errors import PortUnavailableError
from hl7bridge.commons.types import Settings
from hl7bridge.helpers.tcp_transport import TcpSender
from hl7bridge.parsers.codec import HL7Codec
from hl7bridge.parsers.families import URIT_5160
from hl7bridge.services.bridge_service import BridgeService


def settings_for(tmp_path, **retry) -> Settings:
    return Settings.model_validate(
        {
            "paths": {
                "data_root": str(tmp_path / "data"),
                "logs_root": str(tmp_path / "logs"),
                "outbox": str(tmp_path / "outbox"),
            },
            "retry": {"check_interval_ms": 50, **retry},
            "sink": {"timeout_sec": 2},
            "listeners": [
                {"family": "URIT5160", "host": "127.0.0.1", "port": 0},
                {
                    "family": "urit8031",
                    "host": "127.0.0.1",
                    "port": 0,
                    "idle_timeout_ms": 200,
                    "observation_timeout_ms": 50,
                },
                {"family": "urit8031", "host": "127.0.0.1", "port": 0, "enabled": False},
            ],
        }
    )


async def wait_outbox(outbox, count, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        files = list(outbox.glob("*.json")) if outbox.exists() else []
        if len(files) >= count:
            return files
        await asyncio.sleep(0.05)
    raise AssertionError(f"outbox con menos de {count} archivo(s)")


@pytest.mark.asyncio
async def test_end_to_end_both_families(tmp_path):
    service = BridgeService(settings_for(tmp_path))
    assert len(service.listeners) == 2
    await service.start()
    try:
        hema, bio = service.listeners
        ack = await TcpSender("127.0.0.1", hema.port, timeout=2).send(block(URIT5160_TEXT).decode())
        assert "MSA|AA|0001" in ack
        ack = await TcpSender("127.0.0.1", bio.port, timeout=2).send(URIT8031_TEXT)
        assert "MSA|AA|202508090002" in ack

        await wait_outbox(tmp_path / "outbox", 2)
    finally:
        await service.stop()

    files = list((tmp_path / "outbox").glob("*.json"))
    sample_ids = {json.loads(f.read_text(encoding="utf-8"))["sample_id"] for f in files}
    assert sample_ids == {"959775", "0000966134"}

    stats = await service.store.get_statistics()
    assert stats == {"pending": 0, "completed": 2, "failed": 0, "total": 2}


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_by_scheduler(tmp_path, fake_sink):
    fake_sink.fail_times = 1
    service = BridgeService(settings_for(tmp_path, retry_delay_ms=50), sink=fake_sink)
    await service.start()
    try:
        port = service.listeners[0].port
        await TcpSender("127.0.0.1", port, timeout=2).send(block(URIT5160_TEXT).decode())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 3
        while loop.time() < deadline and (await service.store.get_statistics())["completed"] < 1:
            await asyncio.sleep(0.05)
    finally:
        await service.stop()

    [record] = await service.store.get_completed()
    assert record.retry_count == 2
    assert len(fake_sink.calls) == 2


@pytest.mark.asyncio
async def test_start_recovers_interrupted_records(tmp_path, fake_sink):
    settings = settings_for(tmp_path, enabled=False)
    first = BridgeService(settings, sink=fake_sink)
    await first.store.initialize()
    message = HL7Codec(URIT_5160).parse(URIT5160_TEXT)
    record_id = await first.store.save(
        message,
        family="urit5160",
        sample_id="959775",
    )

    second = BridgeService(settings, sink=fake_sink)
    await second.start()
    await second.stop()
    record = await second.store.get_by_id(record_id)
    assert record.status == "failed"


@pytest.mark.asyncio
async def test_start_fails_when_port_taken(tmp_path):
    blocker = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = blocker.sockets[0].getsockname()[1]
    settings = settings_for(tmp_path)
    settings.listeners[0].port = port
    service = BridgeService(settings)
    try:
        with pytest.raises(PortUnavailableError):
            await service.start()
        assert not any(listener.is_running for listener in service.listeners)
        assert not service.results.is_running
    finally:
        blocker.close()
        await blocker.wait_closed()
