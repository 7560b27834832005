# hl7bridge/services/retry_service.py
import asyncio
from typing import Callable, Dict, List, Optional, Set

from hl7bridge.commons.errors import RecordCompletedError, RecordNotFoundError, RetryInProgressError
from hl7bridge.commons.logger import logger
from hl7bridge.services.results_service import ResultSubmitter
from hl7bridge.storage.store import RecordStore, StoredRecord

OnSuccess = Callable[[StoredRecord], None]
OnFailure = Callable[[StoredRecord, str], None]


class RetryScheduler:
    """Reenvia periodicamente los registros fallidos cuyo backoff ya vencio.

    ``_in_flight`` guarda los ids reclamados por este scheduler; un id se
    reclama una sola vez a la vez. Un registro en ``processing`` pertenece a
    quien lo esta enviando (ingestion u otro reintento) y no se reclama.
    """

    def __init__(
        self,
        store: RecordStore,
        submitter: ResultSubmitter,
        check_interval_ms: int = 30000,
        max_concurrent_retries: int = 2,
        enabled: bool = True,
        on_success: Optional[OnSuccess] = None,
        on_failure: Optional[OnFailure] = None,
    ):
        self.store = store
        self.submitter = submitter
        self.check_interval_ms = check_interval_ms
        self.max_concurrent_retries = max_concurrent_retries
        self.enabled = enabled
        self.on_success = on_success
        self.on_failure = on_failure
        self._ticker: Optional[asyncio.Task] = None
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._ticker is not None

    async def start(self) -> None:
        if not self.enabled or self._ticker is not None:
            return
        logger.info(
            f"Reintentos activos cada {self.check_interval_ms} ms (max {self.max_concurrent_retries} simultaneos)"
        )
        # primera pasada inmediata
        await self.process_retries()
        self._ticker = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is None:
            return
        ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass
        if self._tasks:
            logger.info(f"Esperando {len(self._tasks)} reintento(s) en curso...")
        await self.wait_active()
        logger.info("Procesador de reintentos detenido")

    async def wait_active(self) -> None:
        """Espera a que terminen los reintentos lanzados por process_retries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_ms / 1000)
            await self.process_retries()

    async def process_retries(self) -> int:
        """Una pasada: reclama registros reintentables hasta el limite. Devuelve cuantos lanzo."""
        if len(self._in_flight) >= self.max_concurrent_retries:
            return 0
        try:
            candidates = await self.store.get_retryable()
        except Exception:
            logger.exception("Error leyendo registros para reintento")
            return 0

        launched = 0
        for record in candidates:
            if len(self._in_flight) >= self.max_concurrent_retries:
                break
            if record.id in self._in_flight:
                continue
            self._claim(record.id)
            task = asyncio.create_task(self._run_scheduled(record.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched += 1
        return launched

    async def retry_message(self, record_id: str) -> StoredRecord:
        """Reintento manual inmediato, sin esperar el backoff."""
        record = await self.store.get_by_id(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        if record.status == "completed":
            raise RecordCompletedError(record_id)
        if record_id in self._in_flight or record.status == "processing":
            raise RetryInProgressError(record_id)
        self._claim(record_id)
        try:
            return await self._run_claimed(record_id)
        except Exception:
            logger.exception(f"Error en el reintento manual del registro {record_id}")
            raise

    def get_active_retries(self) -> List[str]:
        return sorted(self._in_flight)

    def get_statistics(self) -> Dict[str, object]:
        return {
            "active_retries": len(self._in_flight),
            "max_concurrent_retries": self.max_concurrent_retries,
            "is_running": self.is_running,
        }

    def _claim(self, record_id: str) -> None:
        self._in_flight.add(record_id)

    async def _run_scheduled(self, record_id: str) -> Optional[StoredRecord]:
        # tarea suelta: nadie espera su resultado, el error se registra aqui
        try:
            return await self._run_claimed(record_id)
        except Exception:
            logger.exception(f"Error en el reintento del registro {record_id}")
            return None

    async def _run_claimed(self, record_id: str) -> StoredRecord:
        try:
            record = await self.store.update_status(record_id, "processing")
            logger.info(f"Reintentando registro {record_id} (intento {record.retry_count})")
            result = await self.submitter.deliver(record)
        finally:
            self._in_flight.discard(record_id)

        if result.status == "completed":
            logger.info(f"Reintento exitoso para registro {record_id}")
            if self.on_success:
                self.on_success(result)
        else:
            logger.warning(
                f"Reintento fallido para registro {record_id} ({result.retry_count}/{self.store.retry_policy.max_retries})"
            )
            if self.on_failure:
                self.on_failure(result, result.error_message or "")
        return result
