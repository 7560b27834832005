# hl7bridge/validation/validators.py
from typing import List

from pydantic import BaseModel, field_validator

# MSH-10 es el ultimo campo obligatorio que leemos del encabezado
MSH_MIN_FIELDS = 10


class HL7MessageMeta(BaseModel):
    msh_9: str  # Debe existir (ej: "ORU^R01")
    msh_10: str  # control id, correlaciona el ACK

    @field_validator("msh_9")
    @classmethod
    def _type_not_empty(cls, v: str):
        if not v or not v.strip():
            raise ValueError("MSH-9 es obligatorio")
        return v

    @field_validator("msh_10")
    @classmethod
    def _control_id_not_empty(cls, v: str):
        if not v or not v.strip():
            raise ValueError("MSH-10 es obligatorio")
        return v


def validate_msh_or_raise(fields: List[str]) -> HL7MessageMeta:
    """Construye el modelo desde los campos MSH y levanta ValueError/ValidationError si falta algo."""
    if len(fields) < MSH_MIN_FIELDS:
        raise ValueError(f"MSH incompleto: {len(fields)} campos, se requieren {MSH_MIN_FIELDS}")
    return HL7MessageMeta(msh_9=fields[8], msh_10=fields[9])
