"""
Armado de lotes.

Un lote agrupa DE firmados de un mismo tipo, en orden FIFO de alta, hasta el
máximo por lote. La membresía no cambia después de creado: un lote que no se
pudo enviar se cierra en ERROR y sus documentos vuelven a armarse en otro.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .db import loads, now_iso, row_to_dict, rows_to_dicts, transaccion
from .estados import (
    DE_ENQUEUED, DE_IN_LOTE, DE_SIGNED, ESTADOS_LOTE_ACTIVOS, LOTE_CREATED, LOTE_ERROR,
    cambiar_estado_de, cambiar_estado_lote,
)
from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_DOCUMENTOS_LOTE = 50

_SQL_ELEGIBLES = f"""
    SELECT d.id, d.tipo_documento FROM sifen_de d
    WHERE d.tenant_id = ?
      AND d.estado IN ('{DE_SIGNED}', '{DE_ENQUEUED}')
      AND NOT EXISTS (
          SELECT 1 FROM sifen_lote_items i JOIN sifen_lote l ON l.id = i.lote_id
          WHERE i.de_id = d.id AND l.estado IN ({", ".join(f"'{e}'" for e in ESTADOS_LOTE_ACTIVOS)})
      )
"""


def armar_lote(
    con: sqlite3.Connection,
    tenant_id: str,
    max_documentos: int = MAX_DOCUMENTOS_LOTE,
    ahora: Optional[datetime] = None,
) -> Optional[int]:
    """
    Crea un lote CREATED con los DE elegibles más antiguos (mismo tipo).

    Retorna el id del lote o None si no hay documentos elegibles.
    """
    max_documentos = max(1, min(int(max_documentos), MAX_DOCUMENTOS_LOTE))
    ts = now_iso(ahora)
    with transaccion(con):
        primero = con.execute(_SQL_ELEGIBLES + " ORDER BY d.id LIMIT 1", (tenant_id,)).fetchone()
        if primero is None:
            return None
        tipo = primero["tipo_documento"]
        ids = [
            r["id"] for r in con.execute(
                _SQL_ELEGIBLES + " AND d.tipo_documento = ? ORDER BY d.id LIMIT ?",
                (tenant_id, tipo, max_documentos),
            ).fetchall()
        ]
        cur = con.execute(
            """
            INSERT INTO sifen_lote (tenant_id, tipo_documento, estado, cantidad, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, tipo, LOTE_CREATED, len(ids), ts, ts),
        )
        lote_id = cur.lastrowid
        for orden, de_id in enumerate(ids, start=1):
            con.execute(
                "INSERT INTO sifen_lote_items (lote_id, de_id, orden, updated_at) VALUES (?, ?, ?, ?)",
                (lote_id, de_id, orden, ts),
            )
            cambiar_estado_de(con, de_id, DE_IN_LOTE, detalle=f"lote {lote_id}", ahora=ahora)

    logger.info(f"Lote armado id={lote_id} tenant={tenant_id} tipo={tipo} documentos={len(ids)}")
    return lote_id


def items_lote(con: sqlite3.Connection, lote_id: int) -> List[Dict[str, Any]]:
    return rows_to_dicts(con.execute(
        """
        SELECT i.de_id, i.orden, i.estado_item, i.codigo, i.mensaje, i.updated_at,
               d.cdc, d.estado AS estado_de, d.tipo_documento,
               d.establecimiento || '-' || d.punto_expedicion || '-' || d.numero_documento AS numero
        FROM sifen_lote_items i JOIN sifen_de d ON d.id = i.de_id
        WHERE i.lote_id = ?
        ORDER BY i.orden
        """,
        (lote_id,),
    ).fetchall())


def obtener_fila_lote(con: sqlite3.Connection, tenant_id: str, lote_id: int) -> Dict[str, Any]:
    row = con.execute("SELECT * FROM sifen_lote WHERE id=? AND tenant_id=?", (lote_id, tenant_id)).fetchone()
    if row is None:
        raise NotFoundError(f"Lote {lote_id} no encontrado")
    return row_to_dict(row)


def obtener_lote(con: sqlite3.Connection, tenant_id: str, lote_id: int) -> Dict[str, Any]:
    lote = obtener_fila_lote(con, tenant_id, lote_id)
    lote["respuesta_recibe_lote"] = loads(lote.get("respuesta_recibe_lote"), None)
    lote["respuesta_consulta"] = loads(lote.get("respuesta_consulta"), None)
    lote["items"] = items_lote(con, lote_id)
    return lote


def listar_lotes(
    con: sqlite3.Connection,
    tenant_id: str,
    estado: Optional[str] = None,
    limit=50,
    offset=0,
) -> Tuple[List[Dict[str, Any]], int]:
    try:
        limit = max(1, min(int(limit), 200))
        offset = max(0, int(offset))
    except (TypeError, ValueError):
        raise ValidationError("limit y offset deben ser enteros")
    where = "tenant_id = ?"
    params: List[Any] = [tenant_id]
    if estado:
        where += " AND estado = ?"
        params.append(estado.upper())
    total = con.execute(f"SELECT COUNT(*) FROM sifen_lote WHERE {where}", params).fetchone()[0]
    rows = con.execute(
        f"""
        SELECT id, tipo_documento, estado, numero_lote, cantidad, consultas, error_mensaje,
               proxima_consulta_at, sent_at, completed_at, created_at, updated_at
        FROM sifen_lote WHERE {where} ORDER BY id DESC LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    return rows_to_dicts(rows), total


def liberar_lotes_vencidos(
    con: sqlite3.Connection,
    timeout_sec: int,
    ahora: Optional[datetime] = None,
) -> List[int]:
    """
    Lotes que siguen CREATED pasado el timeout: el lote pasa a ERROR y sus
    documentos vuelven a SIGNED para re-armarse.
    """
    ahora = ahora or datetime.now()
    limite = now_iso(ahora - timedelta(seconds=timeout_sec))
    sql = """
        SELECT id FROM sifen_lote
        WHERE estado=? AND created_at < ? AND (envio_iniciado_at IS NULL OR envio_iniciado_at < ?)
    """
    candidatos = [r["id"] for r in con.execute(sql + " ORDER BY id", (LOTE_CREATED, limite, limite)).fetchall()]
    vencidos = []
    for lote_id in candidatos:
        with transaccion(con):
            # Un envío pudo reservar el lote entre la lectura y el lock
            if con.execute(sql + " AND id=?", (LOTE_CREATED, limite, limite, lote_id)).fetchone() is None:
                continue
            vencidos.append(lote_id)
            cambiar_estado_lote(
                con, lote_id, LOTE_ERROR, ahora=ahora,
                error_mensaje=f"Lote sin enviar luego de {timeout_sec}s; documentos liberados",
            )
            for item in items_lote(con, lote_id):
                if item["estado_de"] == DE_IN_LOTE:
                    cambiar_estado_de(con, item["de_id"], DE_SIGNED, detalle=f"liberado de lote {lote_id}", ahora=ahora)
        logger.warning(f"Lote {lote_id} vencido en CREATED: documentos liberados")
    return vencidos
