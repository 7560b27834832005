import re
import time
from datetime import datetime
from typing import List, Optional

from hl7bridge.commons.errors import ACK_ACCEPTED, ACK_ERROR, DATA_TYPE_ERROR, HL7ParseError
from hl7bridge.helpers.framing import wrap_block
from hl7bridge.validation.validators import validate_msh_or_raise

from .families import DeviceFamily
from .models import (
    ERRSegment,
    HL7Message,
    MSASegment,
    MSHSegment,
    OBRSegment,
    OBXSegment,
    PIDSegment,
    PV1Segment,
)

FIELD_SEP = "|"
SEGMENT_SEP = "\r"
ENCODING_CHARS = "^~\\&"
HL7_VERSION = "2.3.1"

_BLOCK_CHARS = re.compile(r"[\x0b\x1c]")


def split_segments(hl7_text: str) -> List[str]:
    """Divide en segmentos HL7 (CR/LF/CRLF), omite vacios y marcas de bloque."""
    text = _BLOCK_CHARS.sub("", hl7_text)
    return [s.strip() for s in re.split(r"\r\n|\n|\r", text) if s.strip()]


def _split_fields(seg: str) -> List[str]:
    return seg.split(FIELD_SEP)


def _f(fields: List[str], idx: int) -> str:
    # campo fuera de rango -> "" (nunca error)
    return fields[idx] if 0 <= idx < len(fields) else ""


def encode_segment(*fields: str) -> str:
    return FIELD_SEP.join(fields) + SEGMENT_SEP


class HL7Codec:
    """Lee y arma texto HL7 v2.3.1 para una familia de equipos.

    No guarda estado entre llamadas: un mensaje malo no afecta al siguiente
    de la misma conexion.
    """

    def __init__(self, family: DeviceFamily):
        self.family = family
        self.layout = family.layout

    # ---------------- parse ----------------
    def parse(self, hl7_text: str) -> HL7Message:
        msh: Optional[MSHSegment] = None
        message = HL7Message(msh=MSHSegment())

        for seg in split_segments(hl7_text):
            fields = _split_fields(seg)
            seg_type = fields[0]

            if seg_type == "MSH":
                if msh is not None:
                    raise HL7ParseError("Mas de un MSH en el mensaje", DATA_TYPE_ERROR, msh.message_control_id)
                msh = self.parse_msh(fields)
                message.msh = msh
            elif seg_type == "PID":
                message.pid = self.parse_pid(fields)
            elif seg_type == "PV1":
                message.pv1 = self.parse_pv1(fields)
            elif seg_type == "OBR":
                message.obr = self.parse_obr(fields)
            elif seg_type == "OBX":
                message.obx.append(self.parse_obx(fields))
            elif seg_type == "MSA":
                message.msa = self.parse_msa(fields)
            elif seg_type == "ERR":
                message.err = self.parse_err(fields)
            # segmentos desconocidos (SFT, NTE, ...) se ignoran

        if msh is None:
            raise HL7ParseError("Mensaje sin segmento MSH")
        return message

    def parse_msh(self, fields: List[str]) -> MSHSegment:
        try:
            validate_msh_or_raise(fields)
        except ValueError as ex:
            raise HL7ParseError(f"MSH invalido: {ex}", DATA_TYPE_ERROR, _f(fields, 9) or None) from ex
        return MSHSegment(
            sending_application=_f(fields, 2),
            sending_facility=_f(fields, 3),
            receiving_application=_f(fields, 4),
            receiving_facility=_f(fields, 5),
            date_time=_f(fields, 6),
            message_type=_f(fields, 8),
            message_control_id=_f(fields, 9),
            processing_id=_f(fields, 10),
            version_id=_f(fields, 11),
        )

    def parse_pid(self, fields: List[str]) -> PIDSegment:
        return PIDSegment(
            sample_id=_f(fields, self.layout.pid_sample_field),
            patient_name=_f(fields, 4),
            date_of_birth=_f(fields, 6),
            sex=_f(fields, 7),
            fields=fields,
        )

    def parse_pv1(self, fields: List[str]) -> PV1Segment:
        return PV1Segment(patient_class=_f(fields, 1), assigned_patient_location=_f(fields, 2))

    def parse_obr(self, fields: List[str]) -> OBRSegment:
        return OBRSegment(
            placer_order_number=_f(fields, 1),
            universal_service_id=_f(fields, 3),
            requested_date_time=_f(fields, 5),
            relevant_clinical_info=_f(fields, 12),
            specimen_source=_f(fields, 14),
            ordering_provider=_f(fields, 15),
            fields=fields,
        )

    def parse_obx(self, fields: List[str]) -> OBXSegment:
        return OBXSegment(
            set_id=_f(fields, 1),
            value_type=_f(fields, 2),
            observation_identifier=_f(fields, self.layout.obx_code_field),
            observation_sub_id=_f(fields, self.layout.obx_sub_id_field),
            observation_value=_f(fields, 5),
            units=_f(fields, 6),
            references_range=_f(fields, 7),
            abnormal_flags=_f(fields, 8),
            observation_status=_f(fields, 10),
        )

    def parse_msa(self, fields: List[str]) -> MSASegment:
        return MSASegment(
            acknowledgment_code=_f(fields, 1),
            message_control_id=_f(fields, 2),
            text_message=_f(fields, 3),
            error_condition=_f(fields, 6),
        )

    def parse_err(self, fields: List[str]) -> ERRSegment:
        err = ERRSegment(error_code=_f(fields, 1))
        # codigos propios del equipo: 001-003 tubo, 004 gradilla
        if err.error_code in ("001", "002", "003"):
            err.test_tube_no = _f(fields, 2)
        elif err.error_code == "004":
            err.test_tube_rack_no = _f(fields, 2)
        return err

    def sample_id(self, message: HL7Message) -> str:
        """Primer valor no vacio de las fuentes configuradas para la familia."""
        for segment, idx in self.layout.sample_id_sources:
            value = _f(message.segment_fields(segment), idx).strip()
            if value:
                return value
        return "UNKNOWN"

    # ---------------- ACK / NACK ----------------
    def _ack_header(self) -> str:
        ts = datetime.now().strftime("%Y%m%d%H%M%S")
        return encode_segment(
            "MSH",
            ENCODING_CHARS,
            "LIS",
            "PC",
            self.family.device_application,
            self.family.device_facility,
            ts,
            "",
            "ACK^R01",
            f"ACK{int(time.time() * 1000)}",
            "P",
            HL7_VERSION,
            "",
            "",
            "",
            "",
            "",
            self.family.charset,
        )

    def _frame(self, text: str) -> str:
        if self.family.framing == "block":
            return wrap_block(text)
        return text

    def create_acknowledgment(self, control_id: str) -> str:
        return self._frame(self._ack_header() + encode_segment("MSA", ACK_ACCEPTED, control_id))

    def create_negative_acknowledgment(self, control_id: str, error_code: str = DATA_TYPE_ERROR) -> str:
        return self._frame(
            self._ack_header()
            + encode_segment("MSA", ACK_ERROR, control_id)
            + encode_segment("ERR", error_code)
        )
