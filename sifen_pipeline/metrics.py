"""
Métricas de DE por tenant para el dashboard
"""
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .db import rows_to_dicts
from .estados import DE_APPROVED, DE_CANCELLED, DE_ERROR, DE_REJECTED, ESTADOS_DE_PENDIENTES


def _filtro_fechas(tenant_id: str, desde: Optional[str], hasta: Optional[str]) -> Tuple[str, List[Any]]:
    where = "tenant_id = ?"
    params: List[Any] = [tenant_id]
    if desde:
        where += " AND substr(fecha_emision, 1, 10) >= ?"
        params.append(str(desde)[:10])
    if hasta:
        where += " AND substr(fecha_emision, 1, 10) <= ?"
        params.append(str(hasta)[:10])
    return where, params


def obtener_metricas(
    con: sqlite3.Connection,
    tenant_id: str,
    desde: Optional[str] = None,
    hasta: Optional[str] = None,
) -> Dict[str, Any]:
    where, params = _filtro_fechas(tenant_id, desde, hasta)
    pendientes = ", ".join("?" for _ in ESTADOS_DE_PENDIENTES)
    row = con.execute(
        f"""
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN estado = ? THEN total_pago ELSE 0 END), 0) AS monto_total,
               SUM(CASE WHEN estado = ? THEN 1 ELSE 0 END) AS aprobados,
               SUM(CASE WHEN estado = ? THEN 1 ELSE 0 END) AS rechazados,
               SUM(CASE WHEN estado IN ({pendientes}) THEN 1 ELSE 0 END) AS pendientes,
               SUM(CASE WHEN estado = ? THEN 1 ELSE 0 END) AS errores,
               SUM(CASE WHEN estado = ? THEN 1 ELSE 0 END) AS anulados
        FROM sifen_de WHERE {where}
        """,
        (DE_APPROVED, DE_APPROVED, DE_REJECTED, *ESTADOS_DE_PENDIENTES, DE_ERROR, DE_CANCELLED, *params),
    ).fetchone()
    totales = {k: (row[k] or 0) for k in row.keys()}

    por_tipo = rows_to_dicts(con.execute(
        f"SELECT tipo_documento, COUNT(*) AS cantidad FROM sifen_de WHERE {where} "
        "GROUP BY tipo_documento ORDER BY tipo_documento",
        params,
    ).fetchall())
    por_estado = rows_to_dicts(con.execute(
        f"SELECT estado, COUNT(*) AS cantidad FROM sifen_de WHERE {where} GROUP BY estado ORDER BY estado",
        params,
    ).fetchall())
    recientes = rows_to_dicts(con.execute(
        f"""
        SELECT id, tipo_documento, establecimiento || '-' || punto_expedicion || '-' || numero_documento AS numero,
               cdc, estado, fecha_emision, total_pago,
               json_extract(datos_receptor, '$.razon_social') AS receptor
        FROM sifen_de WHERE {where} ORDER BY id DESC LIMIT 10
        """,
        params,
    ).fetchall())
    return {"totales": totales, "por_tipo": por_tipo, "por_estado": por_estado, "recientes": recientes}
