from dataclasses import dataclass
from typing import Dict, Literal, Tuple

from .mapping import BIOCHEMISTRY_TABLE, HEMATOLOGY_TABLE, ParameterTable

Framing = Literal["block", "heuristic"]


@dataclass(frozen=True)
class FieldLayout:
    """Posiciones de campo que cambian entre familias de equipos."""

    obx_code_field: int
    obx_sub_id_field: int
    pid_sample_field: int
    # (segmento, campo) en orden de preferencia para el id de muestra
    sample_id_sources: Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class DeviceFamily:
    name: str
    framing: Framing
    layout: FieldLayout
    table: ParameterTable
    # identidad usada en el MSH de los ACK
    device_application: str
    device_facility: str
    charset: str


URIT_5160 = DeviceFamily(
    name="urit5160",
    framing="block",
    layout=FieldLayout(
        obx_code_field=3,
        obx_sub_id_field=4,
        pid_sample_field=5,
        sample_id_sources=(("PID", 5), ("OBR", 1)),
    ),
    table=HEMATOLOGY_TABLE,
    device_application="URIT",
    device_facility="UT-5160",
    charset="UNICODE",
)

URIT_8031 = DeviceFamily(
    name="urit8031",
    framing="heuristic",
    layout=FieldLayout(
        obx_code_field=4,
        obx_sub_id_field=3,
        pid_sample_field=1,
        sample_id_sources=(("OBR", 1), ("OBR", 3)),
    ),
    table=BIOCHEMISTRY_TABLE,
    device_application="URIT",
    device_facility="8031",
    charset="ASCII",
)

FAMILIES: Dict[str, DeviceFamily] = {f.name: f for f in (URIT_5160, URIT_8031)}


def get_family(name: str) -> DeviceFamily:
    try:
        return FAMILIES[name.lower()]
    except KeyError:
        raise ValueError(f"Familia de equipo desconocida: {name!r} (opciones: {', '.join(FAMILIES)})")
