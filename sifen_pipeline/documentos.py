"""
Consultas de DE (detalle y listado paginado)
"""
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .builder import decodificar_documento
from .db import loads, rows_to_dicts
from .exceptions import NotFoundError, ValidationError

LIMIT_MAX = 200

# Columnas del listado (sin XML ni imagen QR)
COLUMNAS_LISTADO = (
    "id", "tipo_documento", "establecimiento", "punto_expedicion", "numero_documento",
    "timbrado", "cdc", "fecha_emision", "moneda", "estado", "datos_receptor",
    "total_iva", "total_pago", "sifen_codigo", "sifen_mensaje", "error_mensaje",
    "created_at", "updated_at",
)


def obtener_fila(con: sqlite3.Connection, tenant_id: str, de_id: int) -> Dict[str, Any]:
    row = con.execute("SELECT * FROM sifen_de WHERE id=? AND tenant_id=?", (de_id, tenant_id)).fetchone()
    if row is None:
        raise NotFoundError(f"DE {de_id} no encontrado")
    return dict(row)


def obtener_documento(con: sqlite3.Connection, tenant_id: str, de_id: int) -> Dict[str, Any]:
    """Detalle completo: XML, QR, respuesta de la SET, historial, lote y eventos."""
    doc = decodificar_documento(obtener_fila(con, tenant_id, de_id))
    doc["historial"] = rows_to_dicts(con.execute(
        "SELECT estado_anterior, estado_nuevo, detalle, created_at FROM sifen_de_historial WHERE de_id=? ORDER BY id",
        (de_id,),
    ).fetchall())
    lote = con.execute(
        """
        SELECT l.id, l.estado, l.numero_lote, i.estado_item, i.codigo, i.mensaje
        FROM sifen_lote_items i JOIN sifen_lote l ON l.id = i.lote_id
        WHERE i.de_id=? ORDER BY l.id DESC LIMIT 1
        """,
        (de_id,),
    ).fetchone()
    doc["lote"] = dict(lote) if lote else None
    doc["eventos"] = rows_to_dicts(con.execute(
        """
        SELECT id, tipo_evento, event_id, motivo, estado_res, codigo, mensaje, prot_aut, created_at
        FROM sifen_eventos WHERE de_id=? ORDER BY id
        """,
        (de_id,),
    ).fetchall())
    doc["kude_disponible"] = doc["estado"] in ("APPROVED", "CANCELLED")
    return doc


def _entero(valor, nombre: str, default: int) -> int:
    if valor in (None, ""):
        return default
    try:
        return int(valor)
    except (TypeError, ValueError):
        raise ValidationError(f"{nombre} debe ser entero")


def listar_documentos(
    con: sqlite3.Connection,
    tenant_id: str,
    *,
    estado: Optional[str] = None,
    tipo_documento: Optional[str] = None,
    desde: Optional[str] = None,
    hasta: Optional[str] = None,
    q: Optional[str] = None,
    limit=50,
    offset=0,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Listado filtrado. `desde`/`hasta` son fechas YYYY-MM-DD inclusivas sobre
    fecha_emision; `q` busca en CDC, número, razón social y RUC del receptor.
    Retorna (items, total sin paginar).
    """
    limit = max(1, min(_entero(limit, "limit", 50), LIMIT_MAX))
    offset = max(0, _entero(offset, "offset", 0))

    where = ["tenant_id = ?"]
    params: List[Any] = [tenant_id]
    if estado:
        estados = [e.strip().upper() for e in str(estado).split(",") if e.strip()]
        where.append(f"estado IN ({', '.join('?' for _ in estados)})")
        params.extend(estados)
    if tipo_documento:
        where.append("tipo_documento = ?")
        params.append(str(tipo_documento).lstrip("0"))
    if desde:
        where.append("substr(fecha_emision, 1, 10) >= ?")
        params.append(str(desde)[:10])
    if hasta:
        where.append("substr(fecha_emision, 1, 10) <= ?")
        params.append(str(hasta)[:10])
    if q:
        like = f"%{q.strip()}%"
        where.append(
            "(cdc LIKE ? OR numero_documento LIKE ? "
            "OR (establecimiento || '-' || punto_expedicion || '-' || numero_documento) LIKE ? "
            "OR json_extract(datos_receptor, '$.razon_social') LIKE ? "
            "OR json_extract(datos_receptor, '$.ruc') LIKE ?)"
        )
        params.extend([like] * 5)

    clausula = " AND ".join(where)
    total = con.execute(f"SELECT COUNT(*) FROM sifen_de WHERE {clausula}", params).fetchone()[0]
    rows = con.execute(
        f"""
        SELECT {", ".join(COLUMNAS_LISTADO)} FROM sifen_de
        WHERE {clausula}
        ORDER BY id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    items = []
    for r in rows:
        item = dict(r)
        item["numero"] = f"{item['establecimiento']}-{item['punto_expedicion']}-{item['numero_documento']}"
        item["datos_receptor"] = loads(item["datos_receptor"], {})
        items.append(item)
    return items, total
