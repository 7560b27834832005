import asyncio
import codecs
import re
from typing import Callable, List, Optional, Tuple

from hl7bridge.commons.logger import logger

VT = b"\x0b"  # <VT>
FS = b"\x1c"  # <FS>
CR = b"\x0d"  # <CR>

# Algunos equipos envian las marcas de bloque ya "renderizadas" (CP437)
END_TOKENS: Tuple[str, ...] = ("\x1c", "∟")
START_TOKENS: Tuple[str, ...] = ("\x0b", "♂")

DEFAULT_SEGMENTS: Tuple[str, ...] = ("PID", "PV1", "OBR", "OBX")

Emit = Callable[[str], None]


def wrap_block(text: str) -> str:
    return VT.decode() + text + (FS + CR).decode()


def decode_payload(payload: bytes) -> str:
    # UTF-8 por defecto; latin-1 nunca falla
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return payload.decode("latin-1")


class FrameAssembler:
    """Acumula los bytes de una conexion y entrega mensajes completos.

    ``feed`` puede entregar cero o mas mensajes por el callback ``emit``;
    ``close`` se llama cuando el equipo se desconecta y vacia lo pendiente.
    """

    def __init__(self, emit: Emit):
        self.emit = emit

    def feed(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class BlockFrameAssembler(FrameAssembler):
    """Mensajes delimitados por VT ... FS CR (MLLP)."""

    def __init__(self, emit: Emit):
        super().__init__(emit)
        self._buf = bytearray()

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)
        while True:
            end = self._buf.find(FS + CR)
            if end < 0:
                break
            # VT mas cercano antes del fin de bloque
            start = self._buf.rfind(VT, 0, end)
            if start < 0:
                logger.debug(f"Fin de bloque sin inicio, descartando {end + 2} bytes")
            else:
                self.emit(decode_payload(bytes(self._buf[start + 1 : end])))
            del self._buf[: end + 2]

        if VT not in self._buf:
            # Sin VT lo acumulado es basura: nunca formara parte de un mensaje
            self._buf.clear()

    def close(self) -> None:
        if self._buf:
            logger.debug(f"Conexion cerrada con {len(self._buf)} bytes sin fin de bloque")
            self._buf.clear()


class HeuristicFrameAssembler(FrameAssembler):
    """Arma mensajes de equipos que no mandan un fin confiable.

    Una linea ``MSH|`` abre el mensaje y se le agregan los segmentos conocidos.
    Dos timers de inactividad deciden el cierre: ``idle_timeout`` tras el
    encabezado o un segmento no-OBX, y el mas corto ``observation_timeout``
    tras cada OBX. Al vencer un timer, llegar una marca de fin, un MSH nuevo
    o ``close``, el mensaje se entrega si tiene encabezado y al menos un OBX;
    si no, se descarta. Debe alimentarse dentro de un event loop activo.
    """

    def __init__(
        self,
        emit: Emit,
        idle_timeout: float = 0.5,
        observation_timeout: float = 0.1,
        segments: Tuple[str, ...] = DEFAULT_SEGMENTS,
    ):
        super().__init__(emit)
        self.idle_timeout = idle_timeout
        self.observation_timeout = observation_timeout
        self.segments = segments
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self._lines: List[str] = []
        self._has_obx = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def in_progress(self) -> bool:
        return bool(self._lines)

    def feed(self, data: bytes) -> None:
        text = self._partial + self._decoder.decode(data)
        lines = re.split(r"\r\n|\r|\n", text)
        # la ultima linea puede estar incompleta
        self._partial = lines.pop()
        for line in lines:
            self._on_line(line)

    def close(self) -> None:
        # sin mas datos, la linea parcial ya esta completa
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        if tail:
            self._on_line(tail)
        self.flush("desconexion")

    def flush(self, reason: str) -> None:
        self._cancel_timer()
        lines, has_obx = self._lines, self._has_obx
        self._lines, self._has_obx = [], False
        if not lines:
            return
        if has_obx:
            logger.debug(f"Mensaje completo por {reason} ({len(lines)} segmentos)")
            self.emit("\r".join(lines) + "\r")
        else:
            logger.warning(f"Descartando mensaje sin OBX ({reason}): {len(lines)} segmento(s)")

    # ---------- internos ----------
    def _on_line(self, line: str) -> None:
        for token in END_TOKENS:
            if token in line:
                head = line.split(token, 1)[0]
                self._on_line(head)
                self.flush("marca de fin")
                return
        for token in START_TOKENS:
            if line.startswith(token):
                self.flush("marca de inicio")
                line = line[len(token) :]

        line = line.strip()
        if not line:
            return

        if line.startswith("MSH|"):
            self.flush("nuevo MSH")
            self._lines = [line]
            self._arm(self.idle_timeout)
        elif self._lines and line[:3] in self.segments and line[3:4] == "|":
            self._lines.append(line)
            if line.startswith("OBX|"):
                self._has_obx = True
                self._arm(self.observation_timeout)
            else:
                self._arm(self.idle_timeout)

    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        self.flush("timeout")
