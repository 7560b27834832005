import asyncio
import json
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Dict


class SinkSession:
    """Una sesion prestada con el sistema destino."""

    async def submit(self, sample_id: str, results: Dict[str, str]) -> None:
        raise NotImplementedError


class ResultSink:
    """Frontera con el sistema que recibe los mapas de resultados.

    ``session()`` presta una sesion nueva por intento de envio y la libera al
    salir del ``async with``, con o sin error. ``submit`` termina normal si
    el envio fue aceptado y levanta excepcion si fallo.
    """

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SinkSession]:
        session = await self.open_session()
        try:
            yield session
        finally:
            await self.close_session(session)

    async def open_session(self) -> SinkSession:
        raise NotImplementedError

    async def close_session(self, session: SinkSession) -> None:
        pass


class _FileSession(SinkSession):
    def __init__(self, outbox: Path, pattern: str):
        self.outbox = outbox
        self.pattern = pattern

    async def submit(self, sample_id: str, results: Dict[str, str]) -> None:
        await asyncio.to_thread(self._write, sample_id, results)

    def _write(self, sample_id: str, results: Dict[str, str]) -> Path:
        fname = self.pattern.format(
            timestamp=datetime.now().strftime("%Y%m%d%H%M%S"),
            uuid=uuid.uuid4().hex[:8],
            sample_id=re.sub(r"[^a-zA-Z0-9_\-]", "_", sample_id),
        )
        p = self.outbox / fname
        payload = {
            "sample_id": sample_id,
            "results": results,
            "submitted_at": datetime.now().isoformat(timespec="seconds"),
        }
        p.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        return p


class FileResultSink(ResultSink):
    """Deja cada envio como JSON en una carpeta de salida (outbox)."""

    def __init__(self, outbox: str, pattern: str = "{timestamp}_{sample_id}_{uuid}.json"):
        self.outbox = Path(outbox)
        self.pattern = pattern

    async def open_session(self) -> SinkSession:
        await asyncio.to_thread(self.outbox.mkdir, parents=True, exist_ok=True)
        return _FileSession(self.outbox, self.pattern)
