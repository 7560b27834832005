import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Set

from hl7bridge.commons.errors import HL7ParseError, PortUnavailableError
from hl7bridge.commons.logger import logger
from hl7bridge.parsers.codec import HL7Codec
from hl7bridge.parsers.families import DeviceFamily
from hl7bridge.parsers.models import HL7Message

from .framing import BlockFrameAssembler, Emit, FrameAssembler, HeuristicFrameAssembler


@dataclass
class ReceivedMessage:
    family: str
    peer: str
    raw: str
    message: HL7Message
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _peer_name(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return str(peer)


class TcpSender:
    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    async def send(self, hl7_text: str, wait_reply: bool = True) -> Optional[str]:
        """Envia el texto tal cual y devuelve la primera respuesta del servidor (ACK)."""
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.timeout
        )
        try:
            writer.write(hl7_text.encode("utf-8"))
            await writer.drain()
            if not wait_reply:
                return None
            reply = await asyncio.wait_for(reader.read(4096), timeout=self.timeout)
            return reply.decode("utf-8", errors="replace")
        finally:
            writer.close()
            await writer.wait_closed()


class AnalyzerListener:
    """Servidor TCP para una familia de equipos.

    El framing y las posiciones de campo salen de ``family``. Cada mensaje
    parseado se pone en ``messages`` (canal de salida) antes de escribir su
    ACK; un frame que no se puede parsear recibe NACK y la conexion sigue
    abierta.
    """

    def __init__(
        self,
        family: DeviceFamily,
        host: str = "0.0.0.0",
        port: int = 0,
        messages: Optional[asyncio.Queue] = None,
        idle_timeout: float = 0.5,
        observation_timeout: float = 0.1,
    ):
        self.family = family
        self.host = host
        self.port = port
        self.messages: asyncio.Queue = messages if messages is not None else asyncio.Queue()
        self.idle_timeout = idle_timeout
        self.observation_timeout = observation_timeout
        self.codec = HL7Codec(family)
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        if self._server is not None:
            return
        try:
            self._server = await asyncio.start_server(self._handle, self.host, self.port)
        except OSError as ex:
            logger.error(f"[{self.family.name}] No se pudo abrir {self.host}:{self.port}: {ex}")
            raise PortUnavailableError(self.host, self.port, str(ex)) from ex
        sockets = self._server.sockets or ()
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"[{self.family.name}] Servidor TCP escuchando en {self.host}:{self.port}")

    async def stop(self) -> None:
        """Cierra el socket de escucha; las conexiones abiertas terminan solas."""
        if self._server is None:
            return
        self._server.close()
        self._server = None
        logger.info(
            f"[{self.family.name}] Servidor TCP detenido ({self.active_connections} conexion(es) en curso)"
        )

    async def serve_forever(self) -> None:
        await self.start()
        await self._server.serve_forever()

    async def wait_connections(self, timeout: Optional[float] = None) -> int:
        """Espera a que las conexiones abiertas terminen; devuelve cuantas siguen activas."""
        if self._connections:
            await asyncio.wait(set(self._connections), timeout=timeout)
        return self.active_connections

    def _make_assembler(self, emit: Emit) -> FrameAssembler:
        if self.family.framing == "block":
            return BlockFrameAssembler(emit)
        return HeuristicFrameAssembler(
            emit, idle_timeout=self.idle_timeout, observation_timeout=self.observation_timeout
        )

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._connections.add(task)
        peer = _peer_name(writer)
        logger.info(f"[{self.family.name}] Equipo conectado desde {peer}")

        frames: asyncio.Queue = asyncio.Queue()
        assembler = self._make_assembler(frames.put_nowait)
        worker = asyncio.create_task(self._process_frames(frames, writer, peer))
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                assembler.feed(chunk)
        except (ConnectionError, OSError) as ex:
            logger.warning(f"[{self.family.name}] Error de socket con {peer}: {ex}")
        finally:
            # lo que quede acumulado se procesa antes de cerrar
            assembler.close()
            frames.put_nowait(None)
            await worker
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._connections.discard(task)
            logger.info(f"[{self.family.name}] Equipo desconectado {peer}")

    async def _process_frames(self, frames: asyncio.Queue, writer: asyncio.StreamWriter, peer: str):
        # un frame a la vez: los ACK salen en el orden de llegada
        while True:
            text = await frames.get()
            if text is None:
                return
            await self._process_frame(text, writer, peer)

    async def _process_frame(self, text: str, writer: asyncio.StreamWriter, peer: str):
        try:
            message = self.codec.parse(text)
        except HL7ParseError as ex:
            logger.error(f"[{self.family.name}] Mensaje invalido de {peer}: {ex}")
            nack = self.codec.create_negative_acknowledgment(ex.control_id or "UNKNOWN", ex.error_code)
            await self._write(writer, nack, peer)
            return

        control_id = message.msh.message_control_id
        logger.info(
            f"[{self.family.name}] Mensaje {control_id} recibido de {peer} ({len(message.obx)} OBX)"
        )
        await self.messages.put(ReceivedMessage(self.family.name, peer, text, message))
        await self._write(writer, self.codec.create_acknowledgment(control_id), peer)

    async def _write(self, writer: asyncio.StreamWriter, text: str, peer: str):
        try:
            writer.write(text.encode("utf-8"))
            await writer.drain()
        except (ConnectionError, OSError) as ex:
            logger.warning(f"[{self.family.name}] No se pudo enviar ACK a {peer}: {ex}")
