from typing import List, Literal

from pydantic import BaseModel, field_validator

from hl7bridge.parsers.families import FAMILIES


class PathsCfg(BaseModel):
    data_root: str = "./data"
    logs_root: str = "./logs"
    outbox: str = "./outbox"


class RetryCfg(BaseModel):
    max_retries: int = 3
    retry_delay_ms: int = 5000
    backoff_multiplier: float = 2.0
    check_interval_ms: int = 30000
    max_concurrent_retries: int = 2
    enabled: bool = True


class SinkCfg(BaseModel):
    type: Literal["file"] = "file"
    timeout_sec: float = 120.0
    filename_pattern: str = "{timestamp}_{sample_id}_{uuid}.json"


class ListenerCfg(BaseModel):
    family: str
    host: str = "0.0.0.0"
    port: int
    enabled: bool = True
    idle_timeout_ms: int = 500
    observation_timeout_ms: int = 100

    @field_validator("family")
    @classmethod
    def _known_family(cls, v: str):
        if v.lower() not in FAMILIES:
            raise ValueError(f"familia desconocida: {v} (opciones: {', '.join(FAMILIES)})")
        return v.lower()


class Settings(BaseModel):
    paths: PathsCfg = PathsCfg()
    retry: RetryCfg = RetryCfg()
    sink: SinkCfg = SinkCfg()
    listeners: List[ListenerCfg] = []
