# hl7bridge/services/results_service.py
import asyncio
from typing import Optional, Set

from hl7bridge.commons.errors import EmptyResultError
from hl7bridge.commons.logger import logger
from hl7bridge.helpers.tcp_transport import ReceivedMessage
from hl7bridge.parsers.codec import HL7Codec
from hl7bridge.parsers.families import get_family
from hl7bridge.parsers.mapping import map_observations
from hl7bridge.services.sinks import ResultSink
from hl7bridge.storage.store import RecordStore, StoredRecord


class ResultSubmitter:
    """Envia un registro (ya en 'processing') al sink y deja el estado final."""

    def __init__(self, store: RecordStore, sink: ResultSink, timeout_sec: float = 120.0):
        self.store = store
        self.sink = sink
        self.timeout_sec = timeout_sec

    async def deliver(self, record: StoredRecord) -> StoredRecord:
        try:
            await self._submit(record)
        except Exception as ex:
            error = str(ex) or type(ex).__name__
            if isinstance(ex, asyncio.TimeoutError):
                error = f"Timeout del sink ({self.timeout_sec}s)"
            logger.error(f"Envio fallido para registro {record.id} (muestra {record.sample_id}): {error}")
            return await self.store.update_status(record.id, "failed", error)

        logger.info(f"Resultados de la muestra {record.sample_id} enviados (registro {record.id})")
        return await self.store.update_status(record.id, "completed")

    async def _submit(self, record: StoredRecord) -> None:
        family = get_family(record.family)
        # el mapeo es determinista: recalcularlo da el mismo mapa que al recibir
        mapping = map_observations(record.parsed_message.obx, family.table)
        if mapping.mapped_count == 0:
            raise EmptyResultError(
                f"Sin parametros reconocidos en el mensaje ({len(record.parsed_message.obx)} OBX)"
            )
        results = record.results if record.results is not None else mapping.results

        async with self.sink.session() as session:
            await asyncio.wait_for(session.submit(record.sample_id, results), timeout=self.timeout_sec)


class ResultsService:
    """Consume los mensajes de los listeners y hace el primer envio.

    Cada mensaje se mapea y se guarda como registro pendiente; el envio corre
    en una tarea aparte para que un sink lento no frene el siguiente mensaje.
    Un error al guardar se registra y el consumo sigue con el proximo mensaje.
    """

    def __init__(self, store: RecordStore, submitter: ResultSubmitter, messages: asyncio.Queue):
        self.store = store
        self.submitter = submitter
        self.messages = messages
        self._consumer: Optional[asyncio.Task] = None
        self._deliveries: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._consumer is not None

    async def handle(self, received: ReceivedMessage) -> str:
        family = get_family(received.family)
        message = received.message
        sample_id = HL7Codec(family).sample_id(message)
        mapping = map_observations(message.obx, family.table)

        record_id = await self.store.save(
            message,
            family=family.name,
            raw=received.raw,
            results=mapping.results,
            sample_id=sample_id,
        )
        logger.info(
            f"Registro {record_id}: muestra {sample_id}, {mapping.mapped_count} parametro(s) mapeados"
        )
        task = asyncio.create_task(self._deliver(record_id))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return record_id

    async def _deliver(self, record_id: str) -> None:
        try:
            record = await self.store.update_status(record_id, "processing")
            await self.submitter.deliver(record)
        except Exception:
            # error de almacenamiento: el registro queda en pending y se recupera al reiniciar
            logger.exception(f"Error procesando el registro {record_id}")

    async def run(self) -> None:
        while True:
            received = await self.messages.get()
            if received is None:
                return
            try:
                await self.handle(received)
            except Exception:
                # el equipo ya recibio AA; el mensaje crudo queda en el log
                logger.exception(
                    f"No se pudo guardar el mensaje {received.message.msh.message_control_id} de {received.peer}: {received.raw!r}"
                )

    async def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Procesa lo que quede en la cola y espera los envios en curso."""
        consumer, self._consumer = self._consumer, None
        if consumer is not None and not consumer.done():
            # None marca el fin: lo encolado antes se procesa en orden
            await self.messages.put(None)
            await consumer
        await self.wait_deliveries()

    async def wait_deliveries(self) -> None:
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
