"""
Consulta de resultados de lotes enviados (consulta-lote) y de DE
individuales (consulta por CDC, camino alternativo).
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .db import dumps, now_iso, transaccion
from .documentos import obtener_documento, obtener_fila
from .estados import (
    DE_APPROVED, DE_CANCELLED, DE_REJECTED, DE_SENT, ITEM_ACCEPTED, ITEM_PENDING, ITEM_REJECTED,
    LOTE_COMPLETED, LOTE_PROCESSING, LOTE_SENT,
    cambiar_estado_de, cambiar_estado_lote,
)
from .exceptions import AuthorityTransportError, InvalidStateError
from .lotes import items_lote, obtener_fila_lote, obtener_lote
from .soap_client import (
    COD_DE_ENCONTRADO, COD_LOTE_CONCLUIDO, COD_LOTE_INEXISTENTE, COD_LOTE_REQUIERE_CDC, veredicto,
)

logger = logging.getLogger(__name__)


def espera_backoff(consultas: int, base_sec: int, max_sec: int) -> int:
    """min(base * 2^n, max)"""
    return min(base_sec * (2 ** max(0, consultas)), max_sec)


def _lote_de_documento(con: sqlite3.Connection, de_id: int) -> Optional[int]:
    row = con.execute(
        "SELECT lote_id FROM sifen_lote_items WHERE de_id=? ORDER BY lote_id DESC LIMIT 1", (de_id,)
    ).fetchone()
    return row["lote_id"] if row else None


def _aplicar_veredicto(
    con: sqlite3.Connection,
    de_id: int,
    lote_id: Optional[int],
    resultado: str,
    datos: Dict[str, Any],
    ahora: Optional[datetime],
) -> None:
    """ACCEPTED -> DE APPROVED, REJECTED -> DE REJECTED; el ítem del lote acompaña."""
    nuevo = DE_APPROVED if resultado == ITEM_ACCEPTED else DE_REJECTED
    with transaccion(con):
        cambiar_estado_de(
            con, de_id, nuevo,
            detalle=f"SET: {datos.get('codigo') or ''} {datos.get('mensaje') or ''}".strip(),
            ahora=ahora,
            sifen_codigo=datos.get("codigo"),
            sifen_mensaje=datos.get("mensaje"),
            sifen_prot_aut=datos.get("prot_aut"),
            sifen_respuesta=dumps(datos),
            error_mensaje=None if nuevo == DE_APPROVED else datos.get("mensaje"),
        )
        if lote_id is not None:
            con.execute(
                """
                UPDATE sifen_lote_items SET estado_item=?, codigo=?, mensaje=?, updated_at=?
                WHERE lote_id=? AND de_id=?
                """,
                (resultado, datos.get("codigo"), datos.get("mensaje"), now_iso(ahora), lote_id, de_id),
            )
    logger.info(f"DE {de_id}: veredicto {resultado} ({datos.get('codigo')})")


def _consultar_cdc(cliente, cdc: str) -> Optional[Dict[str, Any]]:
    """Consulta por CDC; None si la SET no lo conoce o no tiene veredicto."""
    resp = cliente.consulta_de(cdc)
    if resp.get("codigo") != COD_DE_ENCONTRADO:
        return None
    resultado = veredicto(resp.get("estado")) if resp.get("estado") else "ACCEPTED"
    if resultado is None:
        return None
    return {**resp, "resultado": resultado}


def _cerrar_si_completo(
    con: sqlite3.Connection,
    lote_id: int,
    ahora: Optional[datetime],
    **campos: Any,
) -> bool:
    pendientes = [i for i in items_lote(con, lote_id) if i["estado_item"] == ITEM_PENDING]
    if pendientes:
        return False
    with transaccion(con):
        cambiar_estado_lote(con, lote_id, LOTE_COMPLETED, ahora=ahora, completed_at=now_iso(ahora), **campos)
    return True


def consultar_lote(
    con: sqlite3.Connection,
    tenant_id: str,
    lote_id: int,
    cliente,
    *,
    poll_base_sec: int = 30,
    poll_max_sec: int = 900,
    fallback_despues_sec: int = 3600,
    ahora: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    SENT/PROCESSING -> PROCESSING | COMPLETED.

    Un lote COMPLETED se devuelve tal cual, sin llamar a la SET.
    """
    lote = obtener_fila_lote(con, tenant_id, lote_id)
    if lote["estado"] == LOTE_COMPLETED:
        return obtener_lote(con, tenant_id, lote_id)
    if lote["estado"] not in (LOTE_SENT, LOTE_PROCESSING):
        raise InvalidStateError(
            f"Lote {lote_id} en estado {lote['estado']}: solo se consultan lotes SENT/PROCESSING",
            estado_actual=lote["estado"],
        )

    ahora = ahora or datetime.now()
    try:
        resp = cliente.consulta_lote(lote["numero_lote"])
    except AuthorityTransportError as exc:
        # Solo se anota el error: estado y contador de consultas no cambian
        with transaccion(con):
            con.execute(
                "UPDATE sifen_lote SET error_mensaje=?, updated_at=? WHERE id=?",
                (f"Consulta no completada: {exc.message}"[:1000], now_iso(ahora), lote_id),
            )
        logger.warning(f"Lote {lote_id}: consulta no completada ({exc.code}): {exc.message}")
        raise
    codigo = resp.get("codigo")

    pendientes = [i for i in items_lote(con, lote_id) if i["estado_item"] == ITEM_PENDING]
    por_cdc = {}
    usar_fallback = codigo in (COD_LOTE_INEXISTENTE, COD_LOTE_REQUIERE_CDC)

    if codigo == COD_LOTE_CONCLUIDO:
        por_cdc = {it["cdc"]: it for it in resp.get("items", []) if it.get("cdc")}
        usar_fallback = True
    elif lote.get("sent_at") and not usar_fallback:
        enviado = datetime.fromisoformat(lote["sent_at"])
        usar_fallback = (ahora - enviado).total_seconds() >= fallback_despues_sec

    for item in pendientes:
        if item["estado_de"] != DE_SENT:
            continue
        datos = por_cdc.get(item["cdc"])
        resultado = veredicto(datos.get("estado")) if datos else None
        if resultado is None and usar_fallback:
            logger.info(f"Lote {lote_id}: consulta por CDC {item['cdc']} (código lote {codigo})")
            datos = _consultar_cdc(cliente, item["cdc"])
            resultado = datos["resultado"] if datos else None
        if resultado is not None:
            _aplicar_veredicto(con, item["de_id"], lote_id, resultado, datos, ahora)

    campos = {"respuesta_consulta": dumps(resp), "consultas": (lote["consultas"] or 0) + 1, "error_mensaje": None}
    if not _cerrar_si_completo(con, lote_id, ahora, **campos):
        espera = espera_backoff(lote["consultas"] or 0, poll_base_sec, poll_max_sec)
        with transaccion(con):
            cambiar_estado_lote(
                con, lote_id, LOTE_PROCESSING, ahora=ahora,
                proxima_consulta_at=now_iso(ahora + timedelta(seconds=espera)),
                **campos,
            )
        logger.info(f"Lote {lote_id} en proceso ({codigo}); próxima consulta en {espera}s")
    else:
        logger.info(f"Lote {lote_id} COMPLETED")
    return obtener_lote(con, tenant_id, lote_id)


def consultar_documento(
    con: sqlite3.Connection,
    tenant_id: str,
    de_id: int,
    cliente,
    ahora: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Consulta por CDC de un DE SENT y aplica el veredicto. DE ya resueltos se
    devuelven sin llamar a la SET.
    """
    fila = obtener_fila(con, tenant_id, de_id)
    if fila["estado"] in (DE_APPROVED, DE_REJECTED, DE_CANCELLED):
        return obtener_documento(con, tenant_id, de_id)
    if fila["estado"] != DE_SENT:
        raise InvalidStateError(
            f"DE {de_id} en estado {fila['estado']}: solo se consultan DE enviados",
            estado_actual=fila["estado"],
        )

    datos = _consultar_cdc(cliente, fila["cdc"])
    if datos is not None:
        lote_id = _lote_de_documento(con, de_id)
        _aplicar_veredicto(con, de_id, lote_id, datos["resultado"], datos, ahora)
        if lote_id is not None:
            lote = con.execute("SELECT estado FROM sifen_lote WHERE id=?", (lote_id,)).fetchone()
            if lote["estado"] in (LOTE_SENT, LOTE_PROCESSING):
                _cerrar_si_completo(con, lote_id, ahora)
    else:
        logger.info(f"DE {de_id}: la SET aún no informa resultado para {fila['cdc']}")
    return obtener_documento(con, tenant_id, de_id)
