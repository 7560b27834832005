# hl7bridge/services/bridge_service.py
import asyncio
from typing import List, Optional

from hl7bridge.commons.logger import logger
from hl7bridge.commons.types import Settings
from hl7bridge.helpers.tcp_transport import AnalyzerListener
from hl7bridge.parsers.families import get_family
from hl7bridge.services.results_service import ResultsService, ResultSubmitter
from hl7bridge.services.retry_service import RetryScheduler
from hl7bridge.services.sinks import FileResultSink, ResultSink
from hl7bridge.storage.store import RecordStore, RetryPolicy


def build_store(settings: Settings) -> RecordStore:
    policy = RetryPolicy(
        max_retries=settings.retry.max_retries,
        retry_delay_ms=settings.retry.retry_delay_ms,
        backoff_multiplier=settings.retry.backoff_multiplier,
    )
    return RecordStore(settings.paths.data_root, policy)


def build_sink(settings: Settings) -> ResultSink:
    return FileResultSink(settings.paths.outbox, settings.sink.filename_pattern)


class BridgeService:
    """Listeners + ingestion + reintentos, arrancados y detenidos juntos."""

    def __init__(self, settings: Settings, sink: Optional[ResultSink] = None):
        self.settings = settings
        self.messages: asyncio.Queue = asyncio.Queue()
        self.store = build_store(settings)
        self.submitter = ResultSubmitter(self.store, sink or build_sink(settings), settings.sink.timeout_sec)
        self.results = ResultsService(self.store, self.submitter, self.messages)
        self.retries = RetryScheduler(
            self.store,
            self.submitter,
            check_interval_ms=settings.retry.check_interval_ms,
            max_concurrent_retries=settings.retry.max_concurrent_retries,
            enabled=settings.retry.enabled,
        )
        self.listeners: List[AnalyzerListener] = [
            AnalyzerListener(
                get_family(cfg.family),
                host=cfg.host,
                port=cfg.port,
                messages=self.messages,
                idle_timeout=cfg.idle_timeout_ms / 1000,
                observation_timeout=cfg.observation_timeout_ms / 1000,
            )
            for cfg in settings.listeners
            if cfg.enabled
        ]

    async def start(self) -> None:
        await self.store.initialize()
        await self.store.recover_interrupted()
        await self.results.start()
        await self.retries.start()
        try:
            for listener in self.listeners:
                await listener.start()
        except Exception:
            await self.stop()
            raise
        logger.info(f"Servicio iniciado con {len(self.listeners)} listener(s), esperando mensajes...")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        # primero dejar de aceptar, luego drenar conexiones, ingestion y reintentos
        for listener in self.listeners:
            await listener.stop()
        for listener in self.listeners:
            remaining = await listener.wait_connections(timeout=drain_timeout)
            if remaining:
                logger.warning(f"[{listener.family.name}] {remaining} conexion(es) siguen abiertas")
        await self.results.stop()
        await self.retries.stop()
        logger.info("Servicio detenido")
