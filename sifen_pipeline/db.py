"""
Persistencia SQLite del pipeline SIFEN
"""
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

SCHEMA = """
CREATE TABLE IF NOT EXISTS sifen_config (
    tenant_id TEXT PRIMARY KEY,
    ambiente TEXT NOT NULL DEFAULT 'HOMOLOGACION',
    ruc TEXT NOT NULL,
    dv TEXT NOT NULL,
    razon_social TEXT NOT NULL,
    timbrado TEXT,
    inicio_vigencia TEXT,
    fin_vigencia TEXT,
    establecimiento TEXT NOT NULL DEFAULT '001',
    punto_expedicion TEXT NOT NULL DEFAULT '001',
    tipo_contribuyente TEXT NOT NULL DEFAULT '1',
    direccion TEXT,
    csc_id TEXT NOT NULL DEFAULT '0001',
    cert_subject TEXT,
    cert_serial TEXT,
    cert_not_before TEXT,
    cert_not_after TEXT,
    cert_pem_enc TEXT,
    private_key_enc TEXT,
    passphrase_enc TEXT,
    csc_enc TEXT,
    ws_url_recibe_lote TEXT,
    ws_url_consulta_lote TEXT,
    ws_url_consulta TEXT,
    ws_url_evento TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sifen_numeracion (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    tipo_documento TEXT NOT NULL,
    establecimiento TEXT NOT NULL,
    punto_expedicion TEXT NOT NULL,
    timbrado TEXT NOT NULL,
    ultimo_numero INTEGER NOT NULL DEFAULT 0,
    numero_maximo INTEGER NOT NULL DEFAULT 9999999,
    inicio_vigencia TEXT,
    fin_vigencia TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, tipo_documento, establecimiento, punto_expedicion, timbrado)
);

CREATE TABLE IF NOT EXISTS sifen_de (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    numeracion_id INTEGER NOT NULL REFERENCES sifen_numeracion(id),
    tipo_documento TEXT NOT NULL,
    establecimiento TEXT NOT NULL,
    punto_expedicion TEXT NOT NULL,
    numero_documento TEXT NOT NULL,
    timbrado TEXT NOT NULL,
    cdc TEXT NOT NULL UNIQUE,
    codigo_seguridad TEXT NOT NULL,
    fecha_emision TEXT NOT NULL,
    moneda TEXT NOT NULL DEFAULT 'PYG',
    estado TEXT NOT NULL,
    datos_receptor TEXT NOT NULL,
    datos_items TEXT NOT NULL,
    datos_adicionales TEXT,
    total_gravada_10 REAL NOT NULL DEFAULT 0,
    total_gravada_5 REAL NOT NULL DEFAULT 0,
    total_exento REAL NOT NULL DEFAULT 0,
    total_iva10 REAL NOT NULL DEFAULT 0,
    total_iva5 REAL NOT NULL DEFAULT 0,
    total_iva REAL NOT NULL DEFAULT 0,
    total_pago REAL NOT NULL DEFAULT 0,
    de_referenciado_cdc TEXT,
    xml_unsigned TEXT,
    xml_signed TEXT,
    qr_text TEXT,
    qr_png_base64 TEXT,
    sifen_codigo TEXT,
    sifen_mensaje TEXT,
    sifen_respuesta TEXT,
    sifen_prot_aut TEXT,
    error_mensaje TEXT,
    motivo_anulacion TEXT,
    signed_at TEXT,
    kude_generado_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sifen_de_historial (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    de_id INTEGER NOT NULL REFERENCES sifen_de(id),
    estado_anterior TEXT,
    estado_nuevo TEXT NOT NULL,
    detalle TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sifen_lote (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    tipo_documento TEXT NOT NULL,
    estado TEXT NOT NULL,
    numero_lote TEXT,
    d_id TEXT,
    cantidad INTEGER NOT NULL DEFAULT 0,
    respuesta_recibe_lote TEXT,
    respuesta_consulta TEXT,
    error_mensaje TEXT,
    consultas INTEGER NOT NULL DEFAULT 0,
    proxima_consulta_at TEXT,
    envio_iniciado_at TEXT,
    sent_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sifen_lote_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lote_id INTEGER NOT NULL REFERENCES sifen_lote(id),
    de_id INTEGER NOT NULL REFERENCES sifen_de(id),
    orden INTEGER NOT NULL,
    estado_item TEXT NOT NULL DEFAULT 'PENDING',
    codigo TEXT,
    mensaje TEXT,
    updated_at TEXT,
    UNIQUE (lote_id, de_id)
);

CREATE TABLE IF NOT EXISTS sifen_eventos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    de_id INTEGER NOT NULL REFERENCES sifen_de(id),
    tipo_evento TEXT NOT NULL,
    event_id TEXT NOT NULL,
    motivo TEXT,
    estado_res TEXT,
    codigo TEXT,
    mensaje TEXT,
    prot_aut TEXT,
    respuesta TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    tipo_job TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    estado TEXT NOT NULL DEFAULT 'PENDING',
    intentos INTEGER NOT NULL DEFAULT 0,
    max_intentos INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    next_run_at TEXT NOT NULL,
    last_run_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    usuario_id TEXT,
    accion TEXT NOT NULL,
    entidad_tipo TEXT,
    entidad_id TEXT,
    ip_address TEXT,
    user_agent TEXT,
    detalles TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_de_tenant_estado ON sifen_de(tenant_id, estado);
CREATE INDEX IF NOT EXISTS idx_de_tenant_fecha ON sifen_de(tenant_id, fecha_emision);
CREATE INDEX IF NOT EXISTS idx_de_numeracion ON sifen_de(numeracion_id);
CREATE INDEX IF NOT EXISTS idx_lote_tenant_estado ON sifen_lote(tenant_id, estado);
CREATE INDEX IF NOT EXISTS idx_lote_items_de ON sifen_lote_items(de_id);
CREATE INDEX IF NOT EXISTS idx_jobs_estado_next ON jobs(estado, next_run_at);
"""


def connect(db_path: str) -> sqlite3.Connection:
    con = sqlite3.connect(db_path, timeout=30)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON;")
    con.execute("PRAGMA journal_mode = WAL;")
    con.execute("PRAGMA synchronous = FULL;")
    con.execute("PRAGMA busy_timeout = 5000;")
    return con


def init_schema(con: sqlite3.Connection) -> None:
    con.executescript(SCHEMA)
    # Migraciones ligeras (SQLite): agregar columnas si faltan
    cols = {row["name"] for row in con.execute("PRAGMA table_info(sifen_config)")}
    if "ws_url_evento" not in cols:
        con.execute("ALTER TABLE sifen_config ADD COLUMN ws_url_evento TEXT")
    if "csc_enc" not in cols:
        con.execute("ALTER TABLE sifen_config ADD COLUMN csc_enc TEXT")
    if "cert_pem_enc" not in cols:
        con.execute("ALTER TABLE sifen_config ADD COLUMN cert_pem_enc TEXT")
    lote_cols = {row["name"] for row in con.execute("PRAGMA table_info(sifen_lote)")}
    if "envio_iniciado_at" not in lote_cols:
        con.execute("ALTER TABLE sifen_lote ADD COLUMN envio_iniciado_at TEXT")
    con.commit()


def now_iso(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).isoformat(timespec="seconds")


@contextmanager
def transaccion(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Transacción de escritura con lock (BEGIN IMMEDIATE).

    Si ya hay una transacción abierta en la conexión se suma a ella: el commit
    o rollback queda a cargo de quien la abrió.
    """
    if con.in_transaction:
        yield con
        return
    con.execute("BEGIN IMMEDIATE")
    try:
        yield con
    except BaseException:
        con.rollback()
        raise
    con.commit()


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def loads(raw: Optional[str], default: Any = None) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def rows_to_dicts(rows) -> List[Dict[str, Any]]:
    return [row_to_dict(r) for r in rows]


def log_audit(
    con: sqlite3.Connection,
    *,
    tenant_id: str,
    accion: str,
    entidad_tipo: Optional[str] = None,
    entidad_id: Optional[str] = None,
    usuario_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    detalles: Optional[dict] = None,
) -> None:
    con.execute(
        """
        INSERT INTO audit_log (tenant_id, usuario_id, accion, entidad_tipo, entidad_id,
                               ip_address, user_agent, detalles, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (tenant_id, usuario_id, accion, entidad_tipo, entidad_id,
         ip_address, user_agent, dumps(detalles or {}), now_iso()),
    )
