# hl7bridge/storage/store.py
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel

from hl7bridge.commons.errors import RecordNotFoundError
from hl7bridge.commons.logger import logger
from hl7bridge.parsers.models import HL7Message

RecordStatus = Literal["pending", "processing", "completed", "failed"]

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
PARTITIONS = (PENDING, COMPLETED, FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy(BaseModel):
    max_retries: int = 3
    retry_delay_ms: int = 5000
    backoff_multiplier: float = 2.0

    def delay_for(self, retry_count: int) -> timedelta:
        """Espera minima desde el ultimo intento: delay * multiplier^(retry_count-1)."""
        exponent = max(retry_count - 1, 0)
        return timedelta(milliseconds=self.retry_delay_ms * self.backoff_multiplier**exponent)


class StoredRecord(BaseModel):
    id: str
    timestamp: datetime
    family: str
    raw_message: str = ""
    parsed_message: HL7Message
    sample_id: str = "UNKNOWN"
    results: Optional[Dict[str, str]] = None
    status: RecordStatus = "pending"
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    error_message: Optional[str] = None


class RecordStore:
    """Almacen en disco, un archivo JSON por registro.

    Los registros viven en tres particiones bajo ``data_dir``: ``pending``
    (nuevos y aun reintentables), ``completed`` y ``failed`` (terminales). Se
    escribe a un temporal con fsync y luego se renombra, asi un registro en
    disco siempre esta completo. El I/O corre en hilos para no frenar el loop.
    """

    def __init__(
        self,
        data_dir: str = "./data",
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_dir = Path(data_dir)
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.dirs: Dict[str, Path] = {p: self.data_dir / p for p in PARTITIONS}

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self._make_dirs)
        except OSError as ex:
            logger.error(f"No se pudieron crear los directorios de datos en {self.data_dir}: {ex}")
            raise
        logger.info(f"Almacen de registros listo en {self.data_dir}")

    def update_retry_policy(self, **changes) -> RetryPolicy:
        self.retry_policy = self.retry_policy.model_copy(update=changes)
        return self.retry_policy

    # ---------------- escritura ----------------
    async def save(
        self,
        message: HL7Message,
        family: str,
        raw: str = "",
        results: Optional[Dict[str, str]] = None,
        sample_id: str = "UNKNOWN",
    ) -> str:
        now = self.clock()
        record = StoredRecord(
            id=self._generate_id(now),
            timestamp=now,
            family=family,
            raw_message=raw,
            parsed_message=message,
            sample_id=sample_id,
            results=results,
        )
        path = self._path(PENDING, record.id)
        try:
            await asyncio.to_thread(self._write, path, record)
        except OSError as ex:
            logger.error(f"No se pudo guardar el mensaje {message.msh.message_control_id}: {ex}")
            raise
        logger.info(f"Registro {record.id} guardado (muestra {sample_id}, estado pending)")
        return record.id

    async def update_status(
        self, record_id: str, status: RecordStatus, error: Optional[str] = None
    ) -> StoredRecord:
        found = await asyncio.to_thread(self._find, record_id)
        if found is None:
            raise RecordNotFoundError(record_id)
        current, record = found
        try:
            record.status = status
            record.last_attempt = self.clock()
            if error:
                record.error_message = error
            if status == "processing":
                record.retry_count += 1

            target = self._path(self._partition_for(record), record_id)
            await asyncio.to_thread(self._write, target, record)
            if target != current:
                await asyncio.to_thread(current.unlink)
        except OSError as ex:
            logger.error(f"No se pudo actualizar el registro {record_id} a {status}: {ex}")
            raise

        logger.info(
            f"Registro {record_id} -> {status} (intentos {record.retry_count}"
            + (f", error: {error}" if error else "")
            + ")"
        )
        return record

    async def delete(self, record_id: str) -> None:
        path = await asyncio.to_thread(self._locate, record_id)
        if path is None:
            raise RecordNotFoundError(record_id)
        await asyncio.to_thread(path.unlink)
        logger.info(f"Registro {record_id} eliminado de {path.parent.name}")

    async def recover_interrupted(self) -> List[str]:
        """Marca como fallidos los registros que quedaron a medias tras una caida."""
        recovered = []
        for record in await self.get_pending():
            if record.status in ("pending", "processing"):
                await self.update_status(record.id, "failed", "Interrumpido antes de completar el envio")
                recovered.append(record.id)
        if recovered:
            logger.warning(f"{len(recovered)} registro(s) interrumpidos quedan para reintento")
        return recovered

    # ---------------- lectura ----------------
    async def get_pending(self) -> List[StoredRecord]:
        return await asyncio.to_thread(self._list, PENDING)

    async def get_completed(self) -> List[StoredRecord]:
        return await asyncio.to_thread(self._list, COMPLETED)

    async def get_failed(self) -> List[StoredRecord]:
        return await asyncio.to_thread(self._list, FAILED)

    async def get_retryable(self) -> List[StoredRecord]:
        now = self.clock()
        return [r for r in await self.get_pending() if self.is_retryable(r, now)]

    def is_retryable(self, record: StoredRecord, now: Optional[datetime] = None) -> bool:
        if record.status != "failed" or record.retry_count >= self.retry_policy.max_retries:
            return False
        if record.last_attempt is None:
            return True
        now = now or self.clock()
        return now - record.last_attempt >= self.retry_policy.delay_for(record.retry_count)

    async def get_by_id(self, record_id: str) -> Optional[StoredRecord]:
        found = await asyncio.to_thread(self._find, record_id)
        return found[1] if found is not None else None

    async def get_statistics(self) -> Dict[str, int]:
        counts = await asyncio.to_thread(
            lambda: {p: len(list(self.dirs[p].glob("*.json"))) for p in PARTITIONS}
        )
        counts["total"] = sum(counts.values())
        return counts

    # ---------------- helpers (sync, en hilo) ----------------
    def _make_dirs(self):
        for d in self.dirs.values():
            d.mkdir(parents=True, exist_ok=True)

    def _generate_id(self, now: datetime) -> str:
        return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}"

    def _partition_for(self, record: StoredRecord) -> str:
        if record.status == "completed":
            return COMPLETED
        if record.status == "failed" and record.retry_count >= self.retry_policy.max_retries:
            return FAILED
        return PENDING

    def _path(self, partition: str, record_id: str) -> Path:
        return self.dirs[partition] / f"{record_id}.json"

    def _locate(self, record_id: str) -> Optional[Path]:
        for partition in PARTITIONS:
            path = self._path(partition, record_id)
            if path.exists():
                return path
        return None

    def _find(self, record_id: str) -> Optional[Tuple[Path, StoredRecord]]:
        # otro escritor puede moverlo de particion mientras se busca
        for partition in PARTITIONS:
            path = self._path(partition, record_id)
            try:
                return path, self._read(path)
            except FileNotFoundError:
                continue
        return None

    def _read(self, path: Path) -> StoredRecord:
        return StoredRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, record: StoredRecord):
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _list(self, partition: str) -> List[StoredRecord]:
        records = []
        for p in self.dirs[partition].glob("*.json"):
            try:
                records.append(self._read(p))
            except FileNotFoundError:
                # movido por un update_status concurrente
                continue
        return sorted(records, key=lambda r: r.timestamp)
