from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

from hl7bridge.commons.logger import logger

from .models import MappingResult, OBXSegment

NOT_MEASURED = "0.0"


@dataclass(frozen=True)
class ParameterTable:
    """Tabla fija codigo del equipo -> codigo del LIS de una familia."""

    name: str
    codes: Dict[str, str]
    # codigo LIS -> factor aplicado antes de guardar
    scale: Dict[str, int] = field(default_factory=dict)
    # codigos LIS que siempre van en el mapa de resultados
    defaults: Dict[str, str] = field(default_factory=dict)


# URIT-5160 hematology analyzer
HEMATOLOGY_TABLE = ParameterTable(
    name="hemograma",
    codes={
        "WBC": "LEU01",
        "RBC": "HMC01",
        "HGB": "HGB01",
        "HCT": "HMT01",
        "RDW_CV": "RDW01",
        "PLT": "PTL01",
        "MPV": "VPM01",
        "LYM%": "LIN01",
        "MON%": "MON01",
        "NEU%": "SEG01",
        "EOS%": "EOS01",
        "BASO%": "BSF01",
        "MCV": "VGMX5",
        "MCH": "HGMX5",
        "MCHC": "CHMX5",
        "NRBC%": "ERITR",
    },
    # leucocitos y plaquetas llegan en miles
    scale={"LEU01": 1000, "PTL01": 1000},
    defaults={
        code: NOT_MEASURED
        for code in ("BTN01", "LAT01", "ERITR", "PRO01", "MIE01", "MTM01", "BLAST", "CELAT")
    },
)

# URIT-8031 biochemistry analyzer
BIOCHEMISTRY_TABLE = ParameterTable(
    name="bioquimica",
    codes={
        "GLI": "GLI01",
        "ALT": "ALT01",
        "AST": "AST01",
        "CRE": "CRE01",
        "URE": "URE01",
        "COL": "COL01",
        "TRI": "TRI01",
        "ALB": "ALB01",
        "BIL": "BIL01",
        "HDL": "HDL01",
        "LDL": "LDL01",
        "ALP": "ALP01",
        "GGT": "GGT01",
        "LDH": "LDH01",
        "AMY": "AMY01",
        "LIP": "LIP01",
        "CK": "CK01",
        "UA": "UA01",
        "TP": "TP01",
        "GLO": "GLO01",
    },
)


def _scaled(value: str, factor: int) -> Optional[str]:
    try:
        num = Decimal(value.strip()) * factor
    except InvalidOperation:
        return None
    return str(num.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_observations(observations: Iterable[OBXSegment], table: ParameterTable) -> MappingResult:
    """Arma el mapa de resultados del LIS para un mensaje.

    Solo cuentan las observaciones numericas (NM) con valor. Los codigos
    desconocidos se omiten y se reportan en ``unknown_codes``; si dos OBX dan
    el mismo codigo LIS, gana el ultimo.
    """
    results: Dict[str, str] = dict(table.defaults)
    out = MappingResult(results=results)

    for obx in observations:
        if obx.value_type != "NM" or not obx.observation_value:
            continue
        vendor_code = obx.observation_identifier
        canonical = table.codes.get(vendor_code)
        if canonical is None:
            out.unknown_codes.append(vendor_code)
            continue

        value = obx.observation_value
        factor = table.scale.get(canonical)
        if factor:
            value = _scaled(value, factor)
            if value is None:
                logger.warning(f"[{table.name}] Valor no numerico para {vendor_code}: {obx.observation_value!r}")
                out.unknown_codes.append(vendor_code)
                continue

        results[canonical] = value
        out.mapped_count += 1

    if out.unknown_codes:
        logger.info(f"[{table.name}] Codigos sin mapeo ignorados: {', '.join(out.unknown_codes)}")
    return out
