from typing import Optional

# HL7 ERR-1 codes
SEGMENT_SEQUENCE_ERROR = "101"
REQUIRED_FIELD_MISSING = "102"
DATA_TYPE_ERROR = "103"
KEY_NOT_FOUND = "104"
RESEND = "105"

# HL7 MSA-1 codes
ACK_ACCEPTED = "AA"
ACK_ERROR = "AE"
ACK_REJECTED = "AR"


class HL7BridgeError(Exception):
    """Base de todos los errores propios del puente."""


class HL7ParseError(HL7BridgeError):
    """No se pudo convertir un frame en mensaje.

    ``control_id`` es el MSH-10 que se alcanzo a leer, para que el equipo
    pueda correlacionar el NACK.
    """

    def __init__(self, message: str, error_code: str = DATA_TYPE_ERROR, control_id: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code
        self.control_id = control_id


class PortUnavailableError(HL7BridgeError):
    def __init__(self, host: str, port: int, reason: str):
        super().__init__(f"Puerto {host}:{port} no disponible: {reason}")
        self.host = host
        self.port = port


class RecordNotFoundError(HL7BridgeError):
    def __init__(self, record_id: str):
        super().__init__(f"Registro {record_id} no encontrado")
        self.record_id = record_id


class RecordCompletedError(HL7BridgeError):
    def __init__(self, record_id: str):
        super().__init__(f"El registro {record_id} ya esta completado")
        self.record_id = record_id


class RetryInProgressError(HL7BridgeError):
    def __init__(self, record_id: str):
        super().__init__(f"El registro {record_id} ya se esta enviando")
        self.record_id = record_id


class SubmissionError(HL7BridgeError):
    """El sink rechazo el envio o no pudo recibirlo."""


class EmptyResultError(SubmissionError):
    """Ninguna observacion del mensaje tiene codigo en el LIS."""
