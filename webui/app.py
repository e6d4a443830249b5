import logging
import sqlite3
import sys
import threading
import time
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, Response, g, jsonify, request, send_file

# Permite `python webui/app.py` desde la raíz del repo
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sifen_pipeline import __version__
from sifen_pipeline.anulacion import anular_documento
from sifen_pipeline.builder import crear_documento, regenerar_xml
from sifen_pipeline.config import WS_URL_COLUMNS, configure_logging, get_settings
from sifen_pipeline.db import connect, init_schema, log_audit, now_iso
from sifen_pipeline.documentos import listar_documentos, obtener_documento, obtener_fila
from sifen_pipeline.estados import validar_firmable
from sifen_pipeline.exceptions import SifenException, ValidationError
from sifen_pipeline.jobs import JOB_EMITIR_DE, crear_job
from sifen_pipeline.kude import generar_kude_pdf
from sifen_pipeline.lotes import armar_lote, listar_lotes, obtener_lote
from sifen_pipeline.metrics import obtener_metricas
from sifen_pipeline.numeracion import crear_serie, eliminar_serie, listar_series
from sifen_pipeline.poller import consultar_documento, consultar_lote
from sifen_pipeline.signer import emitir_documento
from sifen_pipeline.soap_client import crear_cliente
from sifen_pipeline.tenant_config import (
    cargar_material_firma, guardar_config, obtener_config, requerir_config,
)
from sifen_pipeline.transmitter import enviar_lote
from sifen_pipeline.worker import PipelineWorker

logger = logging.getLogger(__name__)

APP_TITLE = "SIFEN pipeline"
DB_PATH = get_settings().db_path

app = Flask(__name__)

_SCHEDULER_LOCK = threading.Lock()
_SCHEDULER_STARTED = False

PREFIX = "/tenants/<tenant_id>/sifen"


# -------------------------
# DB helpers
# -------------------------
def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = connect(DB_PATH)
    return g.db


@app.teardown_appcontext
def close_db(_exc):
    con = g.pop("db", None)
    if con is not None:
        con.close()


def init_db():
    init_schema(get_db())


# -------------------------
# Helpers
# -------------------------
def _ok(data: Any, status: int = 200):
    return jsonify({"ok": True, "data": data}), status


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("El body debe ser un objeto JSON")
    return data


def _clave_maestra() -> str:
    clave = get_settings().encryption_key
    if not clave:
        raise SifenException("SIFEN_ENCRYPTION_KEY no configurada", code="ENCRYPTION_KEY_MISSING")
    return clave


def _cliente_sifen(con: sqlite3.Connection, tenant_id: str):
    """Cliente SOAP con mTLS y las URLs configuradas del tenant."""
    config = requerir_config(con, tenant_id)
    material = cargar_material_firma(con, tenant_id, _clave_maestra(), requiere_csc=False)
    urls = {servicio: config.get(columna) for servicio, columna in WS_URL_COLUMNS.items()}
    return crear_cliente(material, urls, get_settings().timeouts)


def _worker() -> PipelineWorker:
    return PipelineWorker(lambda con, tenant_id: _cliente_sifen(con, tenant_id), get_settings(), _clave_maestra())


def _audit(con: sqlite3.Connection, tenant_id: str, accion: str, entidad_tipo: str, entidad_id, detalles=None):
    log_audit(
        con,
        tenant_id=tenant_id,
        accion=accion,
        entidad_tipo=entidad_tipo,
        entidad_id=str(entidad_id),
        usuario_id=request.headers.get("X-User-Id"),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        detalles=detalles,
    )
    con.commit()


@app.errorhandler(SifenException)
def _handle_sifen_error(exc: SifenException):
    error = {"type": exc.__class__.__name__, "code": exc.code, "message": exc.message}
    if getattr(exc, "estado_actual", None):
        error["estado_actual"] = exc.estado_actual
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.path}: {error}")
    return jsonify({"ok": False, "error": error}), exc.http_status


# -------------------------
# Health
# -------------------------
@app.route("/health")
@app.route("/healthz")
def health():
    return jsonify({"ok": True, "app": APP_TITLE, "version": __version__, "time": now_iso()})


# -------------------------
# Configuración del tenant
# -------------------------
@app.route(f"{PREFIX}/config", methods=["GET"])
def config_get(tenant_id: str):
    return _ok(obtener_config(get_db(), tenant_id))


@app.route(f"{PREFIX}/config", methods=["PUT"])
def config_put(tenant_id: str):
    data = guardar_config(
        get_db(), tenant_id, _body(),
        clave_maestra=_clave_maestra(),
        usuario_id=request.headers.get("X-User-Id"),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return _ok(data)


# -------------------------
# Documentos electrónicos
# -------------------------
@app.route(f"{PREFIX}/de", methods=["POST"])
def de_create(tenant_id: str):
    con = get_db()
    de_id = crear_documento(con, tenant_id, _body())
    _audit(con, tenant_id, "SIFEN_DE_CREATED", "sifen_de", de_id)
    return _ok(obtener_documento(con, tenant_id, de_id), 201)


@app.route(f"{PREFIX}/de", methods=["GET"])
def de_list(tenant_id: str):
    args = request.args
    items, total = listar_documentos(
        get_db(), tenant_id,
        estado=args.get("estado"),
        tipo_documento=args.get("tipo_documento") or args.get("tipo"),
        desde=args.get("desde"),
        hasta=args.get("hasta"),
        q=args.get("q"),
        limit=args.get("limit", 50),
        offset=args.get("offset", 0),
    )
    return _ok({"items": items, "total": total})


@app.route(f"{PREFIX}/de/<int:de_id>", methods=["GET"])
def de_detail(tenant_id: str, de_id: int):
    return _ok(obtener_documento(get_db(), tenant_id, de_id))


@app.route(f"{PREFIX}/de/<int:de_id>/generar", methods=["POST"])
def de_generar(tenant_id: str, de_id: int):
    con = get_db()
    regenerar_xml(con, tenant_id, de_id)
    return _ok(obtener_documento(con, tenant_id, de_id))


@app.route(f"{PREFIX}/de/<int:de_id>/sign", methods=["POST"])
def de_sign(tenant_id: str, de_id: int):
    """Firma y encola. Con {"async": true} deja un job SIFEN_EMITIR_DE."""
    con = get_db()
    fila = obtener_fila(con, tenant_id, de_id)
    validar_firmable(fila["estado"])
    if _body().get("async"):
        settings = get_settings()
        job_id = crear_job(con, tenant_id, JOB_EMITIR_DE, {"de_id": de_id}, max_intentos=settings.job_max_intentos)
        return _ok({"job_id": job_id, "de_id": de_id, "estado": fila["estado"]}, 202)
    emitir_documento(con, tenant_id, de_id, clave_maestra=_clave_maestra())
    return _ok(obtener_documento(con, tenant_id, de_id))


@app.route(f"{PREFIX}/de/<int:de_id>/consultar", methods=["POST"])
def de_consultar(tenant_id: str, de_id: int):
    con = get_db()
    obtener_fila(con, tenant_id, de_id)
    with _cliente_sifen(con, tenant_id) as cliente:
        doc = consultar_documento(con, tenant_id, de_id, cliente)
    return _ok(doc)


@app.route(f"{PREFIX}/de/<int:de_id>/anular", methods=["POST"])
def de_anular(tenant_id: str, de_id: int):
    con = get_db()
    motivo = _body().get("motivo")
    obtener_fila(con, tenant_id, de_id)
    with _cliente_sifen(con, tenant_id) as cliente:
        doc = anular_documento(con, tenant_id, de_id, motivo, cliente, clave_maestra=_clave_maestra())
    _audit(con, tenant_id, "SIFEN_DE_CANCELLED", "sifen_de", de_id, {"motivo": doc.get("motivo_anulacion")})
    return _ok(doc)


@app.route(f"{PREFIX}/de/<int:de_id>/xml", methods=["GET"])
def de_xml(tenant_id: str, de_id: int):
    fila = obtener_fila(get_db(), tenant_id, de_id)
    xml_text = fila.get("xml_signed") or fila.get("xml_unsigned")
    if not xml_text:
        raise ValidationError(f"DE {de_id} sin XML generado", code="XML_MISSING")
    sufijo = "" if fila.get("xml_signed") else "_sin_firma"
    return Response(
        xml_text,
        mimetype="application/xml",
        headers={"Content-Disposition": f'attachment; filename="DE_{fila["cdc"]}{sufijo}.xml"'},
    )


@app.route(f"{PREFIX}/de/<int:de_id>/kude", methods=["GET"])
def de_kude(tenant_id: str, de_id: int):
    con = get_db()
    doc = obtener_documento(con, tenant_id, de_id)
    pdf = generar_kude_pdf(doc, obtener_config(con, tenant_id))
    con.execute("UPDATE sifen_de SET kude_generado_at=? WHERE id=?", (now_iso(), de_id))
    con.commit()
    return send_file(
        BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"KUDE_{doc['cdc']}.pdf",
    )


# -------------------------
# Lotes
# -------------------------
@app.route(f"{PREFIX}/lotes/armar", methods=["POST"])
@app.route(f"{PREFIX}/armar-lote", methods=["POST"])
def lote_armar(tenant_id: str):
    con = get_db()
    max_docs = _body().get("max_documentos") or get_settings().lote_max_docs
    try:
        max_docs = int(max_docs)
    except (TypeError, ValueError):
        raise ValidationError("max_documentos debe ser entero")
    lote_id = armar_lote(con, tenant_id, max_docs)
    if lote_id is None:
        return _ok(None)
    return _ok(obtener_lote(con, tenant_id, lote_id), 201)


@app.route(f"{PREFIX}/lotes", methods=["GET"])
def lote_list(tenant_id: str):
    items, total = listar_lotes(
        get_db(), tenant_id,
        estado=request.args.get("estado"),
        limit=request.args.get("limit", 50),
        offset=request.args.get("offset", 0),
    )
    return _ok({"items": items, "total": total})


@app.route(f"{PREFIX}/lotes/<int:lote_id>", methods=["GET"])
def lote_detail(tenant_id: str, lote_id: int):
    return _ok(obtener_lote(get_db(), tenant_id, lote_id))


@app.route(f"{PREFIX}/lotes/<int:lote_id>/send", methods=["POST"])
def lote_send(tenant_id: str, lote_id: int):
    con = get_db()
    obtener_lote(con, tenant_id, lote_id)
    with _cliente_sifen(con, tenant_id) as cliente:
        lote = enviar_lote(con, tenant_id, lote_id, cliente, espera_consulta_sec=get_settings().poll_base_sec)
    return _ok(lote)


@app.route(f"{PREFIX}/lotes/<int:lote_id>/poll", methods=["POST"])
def lote_poll(tenant_id: str, lote_id: int):
    con = get_db()
    settings = get_settings()
    lote = obtener_lote(con, tenant_id, lote_id)
    if lote["estado"] == "COMPLETED":
        return _ok(lote)
    with _cliente_sifen(con, tenant_id) as cliente:
        lote = consultar_lote(
            con, tenant_id, lote_id, cliente,
            poll_base_sec=settings.poll_base_sec,
            poll_max_sec=settings.poll_max_sec,
            fallback_despues_sec=settings.lote_consulta_cdc_after,
        )
    return _ok(lote)


# -------------------------
# Numeración
# -------------------------
@app.route(f"{PREFIX}/numeracion", methods=["GET"])
def numeracion_list(tenant_id: str):
    return _ok(listar_series(get_db(), tenant_id))


@app.route(f"{PREFIX}/numeracion", methods=["POST"])
def numeracion_create(tenant_id: str):
    return _ok(crear_serie(get_db(), tenant_id, _body()), 201)


@app.route(f"{PREFIX}/numeracion/<int:serie_id>", methods=["DELETE"])
def numeracion_delete(tenant_id: str, serie_id: int):
    eliminar_serie(get_db(), tenant_id, serie_id)
    return _ok({"id": serie_id, "deleted": True})


# -------------------------
# Métricas
# -------------------------
@app.route(f"{PREFIX}/metrics", methods=["GET"])
def metrics(tenant_id: str):
    return _ok(obtener_metricas(get_db(), tenant_id, request.args.get("desde"), request.args.get("hasta")))


# -------------------------
# Scheduler
# -------------------------
def run_scheduler_tick() -> Dict[str, int]:
    with app.app_context():
        init_db()
        return _worker().tick(get_db())


def start_scheduler(interval_sec: Optional[int] = None) -> bool:
    """Arranca el hilo del scheduler una sola vez por proceso."""
    global _SCHEDULER_STARTED
    interval = interval_sec or get_settings().scheduler_interval
    with _SCHEDULER_LOCK:
        if _SCHEDULER_STARTED:
            return False
        _SCHEDULER_STARTED = True

    def worker():
        while True:
            try:
                run_scheduler_tick()
            except Exception:
                logger.exception("Tick del scheduler falló")
            time.sleep(interval)

    t = threading.Thread(target=worker, name="sifen-scheduler", daemon=True)
    t.start()
    logger.info(f"Scheduler iniciado (cada {interval}s)")
    return True


if __name__ == "__main__":
    configure_logging()
    # init_db() usa `g`, así que necesita application context
    with app.app_context():
        init_db()
    if get_settings().worker_enabled:
        start_scheduler()
    try:
        app.run(host="127.0.0.1", port=5055, debug=False, use_reloader=False)
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
