import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hl7bridge.commons.errors import SubmissionError
from hl7bridge.services.sinks import ResultSink, SinkSession
from hl7bridge.storage.store import RecordStore, RetryPolicy

# ----------------- Muestras HL7 -----------------
URIT5160_TEXT = (
    "MSH|^~\\&|URIT|UT-5160|LIS|PC|20250809101500||ORU^R01|0001|P|2.3.1||||||UNICODE\r"
    "PID|1|1010051|A1123145|15|959775||19811011|M\r"
    "PV1|1|Clinic|Surgery|\r"
    "OBR|1|1010051|000001|URIT^UT-5160||20250809101500||20250809101500||sender|||diagnosis^remark||BLD|Inspector|\r"
    "OBX|1|NM|WBC||8.21|10^9/L|4.00-10.00|N|||F||\r"
    "OBX|2|NM|RBC||4.49|10^12/L|3.50-5.50|N|||F||\r"
    "OBX|3|NM|HGB||145|g/L|130-175|N|||F||\r"
    "OBX|4|NM|PLT||250|10^9/L|150-450|N|||F||\r"
)

URIT8031_TEXT = (
    "MSH|^~\\&|urit|8030|||20250809000200||ORU^R01|202508090002|P|2.3.1||||0||ASCII|||\r"
    "PID|1||||||0|||||0|||||||||||||||||||\r"
    "OBR|0000966134|0000966134|202508090002|urit^8030|N||2025-08-09|||\r"
    "OBX|1|NM|1|GLI|111|mg/dL|65-99|N|||F||0.2441|2025-08-09||Admin||\r"
    "OBX|2|NM|2|ALT|35|U/L|7-56|N|||F||0.2441|2025-08-09||Admin||\r"
)


def block(text: str) -> bytes:
    return b"\x0b" + text.encode("utf-8") + b"\x1c\r"


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 8, 9, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int):
        self.now += timedelta(milliseconds=ms)


class _FakeSession(SinkSession):
    def __init__(self, sink: "FakeSink"):
        self.sink = sink

    async def submit(self, sample_id, results):
        self.sink.calls.append((sample_id, dict(results)))
        if self.sink.delay:
            await asyncio.sleep(self.sink.delay)
        if self.sink.fail_times > 0:
            self.sink.fail_times -= 1
            raise SubmissionError(self.sink.error)


class FakeSink(ResultSink):
    """Sink de prueba: registra llamadas, puede fallar N veces o tardar."""

    def __init__(self):
        self.calls = []
        self.fail_times = 0
        self.delay = 0.0
        self.error = "Sisvida no disponible"
        self.opened = 0
        self.closed = 0

    async def open_session(self):
        self.opened += 1
        return _FakeSession(self)

    async def close_session(self, session):
        self.closed += 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def store(tmp_path, clock):
    s = RecordStore(str(tmp_path / "data"), RetryPolicy(max_retries=3, retry_delay_ms=5000, backoff_multiplier=2), clock)
    s._make_dirs()
    return s
