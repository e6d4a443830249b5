"""
Series de numeración (timbrado + establecimiento + punto de expedición).

La asignación es la única sección crítica del sistema: se hace en una
transacción BEGIN IMMEDIATE (lock de escritura de SQLite) que lee, incrementa
y escribe `ultimo_numero` como una unidad. Los números no se liberan nunca.
"""
import logging
import re
import sqlite3
from datetime import date
from typing import Any, Dict, List, NamedTuple, Optional

from .db import now_iso, row_to_dict, rows_to_dicts, transaccion
from .exceptions import ConflictError, NoActiveSeriesError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

NUMERO_MAXIMO = 9_999_999


class Asignacion(NamedTuple):
    serie_id: int
    timbrado: str
    numero: str
    inicio_vigencia: Optional[str]


def _hoy_iso(hoy: Optional[date]) -> str:
    return (hoy or date.today()).isoformat()


def _esta_abierta(serie: Dict[str, Any], hoy: str) -> bool:
    if serie["inicio_vigencia"] and serie["inicio_vigencia"][:10] > hoy:
        return False
    if serie["fin_vigencia"] and serie["fin_vigencia"][:10] < hoy:
        return False
    return serie["ultimo_numero"] < serie["numero_maximo"]


def _usable(serie: Dict[str, Any], hoy: str) -> bool:
    """Abierta hoy o con vigencia futura, y con números disponibles."""
    if serie["fin_vigencia"] and serie["fin_vigencia"][:10] < hoy:
        return False
    return serie["ultimo_numero"] < serie["numero_maximo"]


def _se_solapan(serie: Dict[str, Any], inicio: Optional[str], fin: Optional[str]) -> bool:
    # Sin fecha = intervalo abierto de ese lado
    desde_a = (serie["inicio_vigencia"] or "")[:10] or "0000-00-00"
    hasta_a = (serie["fin_vigencia"] or "")[:10] or "9999-99-99"
    desde_b = str(inicio or "")[:10] or "0000-00-00"
    hasta_b = str(fin or "")[:10] or "9999-99-99"
    return desde_a <= hasta_b and desde_b <= hasta_a


def _series_de_clave(con, tenant_id, tipo_documento, establecimiento, punto_expedicion) -> List[Dict[str, Any]]:
    rows = con.execute(
        """
        SELECT * FROM sifen_numeracion
        WHERE tenant_id=? AND tipo_documento=? AND establecimiento=? AND punto_expedicion=?
        ORDER BY id
        """,
        (tenant_id, str(tipo_documento), establecimiento, punto_expedicion),
    ).fetchall()
    return rows_to_dicts(rows)


def listar_series(con: sqlite3.Connection, tenant_id: str, hoy: Optional[date] = None) -> List[Dict[str, Any]]:
    rows = con.execute(
        """
        SELECT n.*, (SELECT COUNT(*) FROM sifen_de d WHERE d.numeracion_id = n.id) AS documentos
        FROM sifen_numeracion n
        WHERE n.tenant_id=?
        ORDER BY n.tipo_documento, n.establecimiento, n.punto_expedicion, n.id
        """,
        (tenant_id,),
    ).fetchall()
    series = rows_to_dicts(rows)
    h = _hoy_iso(hoy)
    for s in series:
        s["abierta"] = _esta_abierta(s, h)
    return series


def crear_serie(con: sqlite3.Connection, tenant_id: str, data: Dict[str, Any], hoy: Optional[date] = None) -> Dict[str, Any]:
    tipo = str(data.get("tipo_documento") or "").strip()
    est = str(data.get("establecimiento") or "").strip().zfill(3)
    pto = str(data.get("punto_expedicion") or "").strip().zfill(3)
    timbrado = str(data.get("timbrado") or "").strip()

    if not tipo.isdigit():
        raise ValidationError("tipo_documento requerido")
    if not re.fullmatch(r"\d{3}", est) or not re.fullmatch(r"\d{3}", pto):
        raise ValidationError("establecimiento y punto_expedicion deben tener 3 dígitos")
    if not re.fullmatch(r"\d{8}", timbrado):
        raise ValidationError("timbrado debe tener 8 dígitos")
    try:
        ultimo = int(data.get("ultimo_numero") or 0)
        maximo = int(data.get("numero_maximo") or NUMERO_MAXIMO)
    except (TypeError, ValueError):
        raise ValidationError("ultimo_numero y numero_maximo deben ser enteros")
    if ultimo < 0 or maximo < 1 or maximo > NUMERO_MAXIMO or ultimo > maximo:
        raise ValidationError(f"Rango inválido: 0 <= ultimo_numero <= numero_maximo <= {NUMERO_MAXIMO}")
    inicio = data.get("inicio_vigencia") or None
    fin = data.get("fin_vigencia") or None
    for nombre, valor in (("inicio_vigencia", inicio), ("fin_vigencia", fin)):
        if valor:
            try:
                date.fromisoformat(str(valor)[:10])
            except ValueError:
                raise ValidationError(f"{nombre} debe tener formato YYYY-MM-DD")
    if inicio and fin and str(fin)[:10] < str(inicio)[:10]:
        raise ValidationError("fin_vigencia anterior a inicio_vigencia")

    h = _hoy_iso(hoy)
    with transaccion(con):
        series = _series_de_clave(con, tenant_id, tipo, est, pto)
        for serie in series:
            if _esta_abierta(serie, h):
                raise ConflictError(
                    f"Ya existe una serie abierta para tipo {tipo} {est}-{pto} (timbrado {serie['timbrado']})",
                    code="SERIE_ABIERTA",
                )
        for serie in series:
            if _usable(serie, h) and _se_solapan(serie, inicio, fin):
                raise ConflictError(
                    f"La vigencia se superpone con la serie {serie['id']} (timbrado {serie['timbrado']})",
                    code="SERIE_SOLAPADA",
                )
        ts = now_iso()
        try:
            cur = con.execute(
                """
                INSERT INTO sifen_numeracion (tenant_id, tipo_documento, establecimiento, punto_expedicion,
                    timbrado, ultimo_numero, numero_maximo, inicio_vigencia, fin_vigencia, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, tipo, est, pto, timbrado, ultimo, maximo, inicio, fin, ts, ts),
            )
        except sqlite3.IntegrityError:
            raise ConflictError(
                f"Ya existe la serie tipo {tipo} {est}-{pto} timbrado {timbrado}", code="SERIE_DUPLICADA"
            )
        serie_id = cur.lastrowid
    logger.info(f"Serie creada id={serie_id} tenant={tenant_id} tipo={tipo} {est}-{pto} timbrado={timbrado}")
    return row_to_dict(con.execute("SELECT * FROM sifen_numeracion WHERE id=?", (serie_id,)).fetchone())


def asignar_numero(
    con: sqlite3.Connection,
    tenant_id: str,
    tipo_documento,
    establecimiento: str,
    punto_expedicion: str,
    hoy: Optional[date] = None,
) -> Asignacion:
    """
    Próximo número de la serie abierta de la clave.

    Si la conexión ya tiene una transacción abierta (alta de DE) se suma a
    ella: el número queda confirmado junto con el documento.
    """
    h = _hoy_iso(hoy)
    tipo = str(tipo_documento)
    with transaccion(con):
        series = _series_de_clave(con, tenant_id, tipo, establecimiento, punto_expedicion)
        abierta = next((s for s in series if _esta_abierta(s, h)), None)
        if abierta is None:
            if not series:
                motivo = "no hay serie registrada"
            elif all(s["ultimo_numero"] >= s["numero_maximo"] for s in series):
                motivo = "numeración agotada"
            else:
                motivo = "timbrado fuera de vigencia"
            raise NoActiveSeriesError(
                f"Sin serie activa para tipo {tipo} {establecimiento}-{punto_expedicion}: {motivo}",
                code="NO_ACTIVE_SERIES",
            )
        siguiente = abierta["ultimo_numero"] + 1
        cur = con.execute(
            "UPDATE sifen_numeracion SET ultimo_numero=?, updated_at=? WHERE id=? AND ultimo_numero=?",
            (siguiente, now_iso(), abierta["id"], abierta["ultimo_numero"]),
        )
        if cur.rowcount != 1:
            raise ConflictError(f"Serie {abierta['id']} modificada concurrentemente", code="SERIE_CONCURRENTE")

    logger.debug(f"Número asignado serie={abierta['id']} numero={siguiente}")
    return Asignacion(
        serie_id=abierta["id"],
        timbrado=abierta["timbrado"],
        numero=f"{siguiente:07d}",
        inicio_vigencia=abierta["inicio_vigencia"],
    )


def eliminar_serie(con: sqlite3.Connection, tenant_id: str, serie_id: int) -> None:
    with transaccion(con):
        row = con.execute(
            "SELECT id FROM sifen_numeracion WHERE id=? AND tenant_id=?", (serie_id, tenant_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Serie {serie_id} no encontrada")
        usados = con.execute("SELECT COUNT(*) FROM sifen_de WHERE numeracion_id=?", (serie_id,)).fetchone()[0]
        if usados:
            raise ConflictError(
                f"La serie {serie_id} tiene {usados} documento(s) emitidos", code="SERIE_EN_USO"
            )
        con.execute("DELETE FROM sifen_numeracion WHERE id=?", (serie_id,))
    logger.info(f"Serie eliminada id={serie_id} tenant={tenant_id}")
