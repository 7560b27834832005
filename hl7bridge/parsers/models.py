# ===============================
# File: hl7bridge/parsers/models.py
# ===============================
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class MSHSegment:
    sending_application: str = ""
    sending_facility: str = ""
    receiving_application: str = ""
    receiving_facility: str = ""
    date_time: str = ""
    message_type: str = ""
    message_control_id: str = ""
    processing_id: str = ""
    version_id: str = ""


@dataclass
class PIDSegment:
    sample_id: str = ""
    patient_name: str = ""
    date_of_birth: str = ""
    sex: str = ""
    fields: List[str] = field(default_factory=list, repr=False)


@dataclass
class PV1Segment:
    patient_class: str = ""
    assigned_patient_location: str = ""


@dataclass
class OBRSegment:
    placer_order_number: str = ""
    universal_service_id: str = ""
    requested_date_time: str = ""
    relevant_clinical_info: str = ""
    specimen_source: str = ""
    ordering_provider: str = ""
    fields: List[str] = field(default_factory=list, repr=False)


@dataclass
class OBXSegment:
    set_id: str = ""
    value_type: str = ""
    observation_identifier: str = ""  # vendor parameter code
    observation_sub_id: str = ""
    observation_value: str = ""
    units: str = ""
    references_range: str = ""
    abnormal_flags: str = ""
    observation_status: str = ""


@dataclass
class MSASegment:
    acknowledgment_code: str = ""
    message_control_id: str = ""
    text_message: str = ""
    error_condition: str = ""


@dataclass
class ERRSegment:
    error_code: str = ""
    test_tube_no: Optional[str] = None
    test_tube_rack_no: Optional[str] = None


@dataclass
class HL7Message:
    msh: MSHSegment
    pid: Optional[PIDSegment] = None
    pv1: Optional[PV1Segment] = None
    obr: Optional[OBRSegment] = None
    obx: List[OBXSegment] = field(default_factory=list)
    msa: Optional[MSASegment] = None
    err: Optional[ERRSegment] = None

    def segment_fields(self, segment: str) -> List[str]:
        """Campos crudos de PID u OBR; lista vacia si el segmento no vino."""
        seg = {"PID": self.pid, "OBR": self.obr}.get(segment.upper())
        return seg.fields if seg is not None else []


@dataclass
class MappingResult:
    results: Dict[str, str]
    mapped_count: int = 0
    unknown_codes: List[str] = field(default_factory=list)
