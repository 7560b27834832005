import asyncio
import os
import signal
import sys
from datetime import datetime
from typing import List

import typer
import yaml

from hl7bridge.commons.errors import HL7BridgeError
from hl7bridge.commons.logger import setup_logging
from hl7bridge.commons.types import Settings
from hl7bridge.helpers.framing import wrap_block
from hl7bridge.helpers.tcp_transport import TcpSender
from hl7bridge.parsers.families import get_family
from hl7bridge.services.bridge_service import BridgeService, build_sink, build_store
from hl7bridge.services.results_service import ResultSubmitter
from hl7bridge.services.retry_service import RetryScheduler
from hl7bridge.storage.store import StoredRecord

app = typer.Typer(add_completion=False, help="Puente HL7 analizadores -> LIS")

DEFAULT_CONFIG = "hl7bridge/configs/settings.yaml"


def resource_path(relative_path: str) -> str:
    """Devuelve la ruta absoluta a un recurso, ya sea ejecutando como .exe o en desarrollo"""
    if os.path.isabs(relative_path):
        return relative_path
    if hasattr(sys, "_MEIPASS"):
        # Si es un ejecutable generado por PyInstaller
        base_path = sys._MEIPASS
    else:
        base_path = os.path.abspath(".")
    return os.path.join(base_path, relative_path)


def load_cfg(path: str = DEFAULT_CONFIG) -> Settings:
    with open(resource_path(path), "r", encoding="utf-8") as f:
        return Settings.model_validate(yaml.safe_load(f) or {})


def _init(config: str) -> Settings:
    cfg = load_cfg(config)
    setup_logging(cfg.paths.logs_root, os.getenv("LOG_LEVEL", "INFO"))
    return cfg


def _print_records(records: List[StoredRecord]):
    if not records:
        typer.echo("No hay registros.")
        return
    for r in records:
        typer.echo(f"ID: {r.id}")
        typer.echo(f"  Muestra: {r.sample_id}  Familia: {r.family}")
        typer.echo(f"  Estado: {r.status}  Intentos: {r.retry_count}")
        typer.echo(f"  Recibido: {r.timestamp.isoformat()}")
        if r.error_message:
            typer.echo(f"  Error: {r.error_message}")


ConfigOpt = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Ruta del settings.yaml")


@app.command()
def serve(config: str = ConfigOpt):
    """Arranca listeners, ingestion y reintentos hasta SIGINT/SIGTERM."""
    cfg = _init(config)

    async def _amain():
        service = BridgeService(cfg)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows: Ctrl+C llega como KeyboardInterrupt
                pass
        await service.start()
        try:
            await stop_event.wait()
        finally:
            await service.stop()

    try:
        asyncio.run(_amain())
    except HL7BridgeError as ex:
        typer.echo(f"Error: {ex}", err=True)
        raise typer.Exit(1)


@app.command()
def stats(config: str = ConfigOpt):
    """Conteo de registros por estado."""
    cfg = _init(config)
    result = asyncio.run(build_store(cfg).get_statistics())
    typer.echo(f"Pendientes: {result['pending']}")
    typer.echo(f"Completados: {result['completed']}")
    typer.echo(f"Fallidos: {result['failed']}")
    typer.echo(f"Total: {result['total']}")


@app.command()
def pending(config: str = ConfigOpt):
    """Registros pendientes o en espera de reintento."""
    cfg = _init(config)
    _print_records(asyncio.run(build_store(cfg).get_pending()))


@app.command()
def failed(config: str = ConfigOpt):
    """Registros que agotaron los reintentos."""
    cfg = _init(config)
    _print_records(asyncio.run(build_store(cfg).get_failed()))


@app.command()
def show(record_id: str, config: str = ConfigOpt):
    cfg = _init(config)
    record = asyncio.run(build_store(cfg).get_by_id(record_id))
    if record is None:
        typer.echo("Registro no encontrado.")
        raise typer.Exit(1)
    _print_records([record])
    if record.last_attempt:
        typer.echo(f"  Ultimo intento: {record.last_attempt.isoformat()}")
    for code, value in (record.results or {}).items():
        typer.echo(f"    {code} = {value}")


@app.command()
def retry(record_id: str, config: str = ConfigOpt):
    """Reintenta un registro ya, sin esperar el backoff."""
    cfg = _init(config)
    store = build_store(cfg)
    submitter = ResultSubmitter(store, build_sink(cfg), cfg.sink.timeout_sec)
    scheduler = RetryScheduler(store, submitter, enabled=False)
    try:
        record = asyncio.run(scheduler.retry_message(record_id))
    except HL7BridgeError as ex:
        typer.echo(f"Error: {ex}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Registro {record.id}: {record.status}")


@app.command()
def delete(
    record_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="No pedir confirmacion"),
    config: str = ConfigOpt,
):
    cfg = _init(config)
    if not yes and not typer.confirm(f"Eliminar el registro {record_id}?"):
        typer.echo("Cancelado.")
        return
    try:
        asyncio.run(build_store(cfg).delete(record_id))
    except HL7BridgeError as ex:
        typer.echo(f"Error: {ex}", err=True)
        raise typer.Exit(1)
    typer.echo("Registro eliminado.")


def sample_message(family_name: str, sample_id: str) -> str:
    """Mensaje ORU^R01 de ejemplo, enmarcado como lo envia cada equipo."""
    family = get_family(family_name)
    now = datetime.now().strftime("%Y%m%d%H%M%S")
    if family.framing == "block":
        segments = [
            f"MSH|^~\\&|URIT|UT-5160|LIS|PC|{now}||ORU^R01|{now}|P|2.3.1||||||UNICODE",
            f"PID|1||A1123145|15|{sample_id}||19811011|M",
            "PV1|1|Clinic|Surgery|",
            f"OBR|1|{sample_id}|000001|URIT^UT-5160||{now}||{now}||sender|||diagnosis^remark||BLD|Inspector|",
            "OBX|1|NM|WBC||8.21|10^9/L|4.00-10.00|N|||F||",
            "OBX|2|NM|RBC||4.49|10^12/L|3.50-5.50|N|||F||",
            "OBX|3|NM|HGB||145|g/L|130-175|N|||F||",
            "OBX|4|NM|HCT||42.4|%|37.0-50.0|N|||F||",
            "OBX|5|NM|PLT||250|10^9/L|150-450|N|||F||",
        ]
        return wrap_block("\r".join(segments))
    segments = [
        f"MSH|^~\\&|urit|8030|||{now}||ORU^R01|{now}|P|2.3.1||||0||ASCII|||",
        "PID|1||||||0|||||0|||||||||||||||||||",
        f"OBR|{sample_id}|{sample_id}|{now}|urit^8030|N||{now[:8]}|||",
        f"OBX|1|NM|1|GLI|111|mg/dL|65-99|N|||F||0.2441|{now[:8]}||Admin||",
        f"OBX|2|NM|2|ALT|35|U/L|7-56|N|||F||0.2441|{now[:8]}||Admin||",
    ]
    return "\r".join(segments) + "\r"


@app.command("send-sample")
def send_sample(
    family: str = typer.Option("urit5160", help="urit5160 | urit8031"),
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8080),
    sample_id: str = typer.Option("290626", help="Id de muestra del mensaje"),
):
    """Cliente de prueba: envia un mensaje de ejemplo y muestra el ACK."""
    text = sample_message(family, sample_id)
    reply = asyncio.run(TcpSender(host, port, timeout=5.0).send(text))
    typer.echo(f"ACK recibido: {reply!r}")


if __name__ == "__main__":
    app()
