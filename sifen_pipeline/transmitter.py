"""
Envío de lotes al servicio async recibe-lote.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .db import dumps, now_iso, transaccion
from .estados import (
    DE_ERROR, DE_IN_LOTE, DE_SENT, LOTE_CREATED, LOTE_ERROR, LOTE_SENT,
    cambiar_estado_de, cambiar_estado_lote, validar_transicion_lote,
)
from .exceptions import InvalidStateError
from .lotes import items_lote, obtener_fila_lote, obtener_lote
from .soap_client import COD_LOTE_RECIBIDO

logger = logging.getLogger(__name__)

# Una reserva más vieja que esto se considera de un proceso caído
RESERVA_ENVIO_VENCIDA_SEC = 600


def _reservar_envio(con: sqlite3.Connection, lote_id: int, vencida_sec: int, ahora: datetime) -> None:
    with transaccion(con):
        cur = con.execute(
            """
            UPDATE sifen_lote SET envio_iniciado_at=?, updated_at=?
            WHERE id=? AND estado=? AND (envio_iniciado_at IS NULL OR envio_iniciado_at < ?)
            """,
            (now_iso(ahora), now_iso(ahora), lote_id, LOTE_CREATED,
             now_iso(ahora - timedelta(seconds=vencida_sec))),
        )
    if cur.rowcount != 1:
        row = con.execute("SELECT estado FROM sifen_lote WHERE id=?", (lote_id,)).fetchone()
        estado = row["estado"] if row else None
        raise InvalidStateError(f"Lote {lote_id} ya tiene un envío en curso", estado_actual=estado)


def _liberar_envio(con: sqlite3.Connection, lote_id: int, mensaje: str, ahora: datetime) -> None:
    """Quita la reserva y deja el último error en el lote, sin cambiar su estado."""
    with transaccion(con):
        con.execute(
            "UPDATE sifen_lote SET envio_iniciado_at=NULL, error_mensaje=?, updated_at=? WHERE id=? AND estado=?",
            (mensaje[:1000], now_iso(ahora), lote_id, LOTE_CREATED),
        )
    logger.warning(f"Lote {lote_id}: {mensaje}")


def marcar_lote_error(
    con: sqlite3.Connection,
    lote_id: int,
    mensaje: str,
    *,
    codigo: Optional[str] = None,
    respuesta: Optional[Dict[str, Any]] = None,
    ahora: Optional[datetime] = None,
) -> None:
    """Lote -> ERROR y sus DE pendientes -> ERROR (re-intentables de a uno)."""
    campos: Dict[str, Any] = {"error_mensaje": mensaje}
    if respuesta is not None:
        campos["respuesta_recibe_lote"] = dumps(respuesta)
    with transaccion(con):
        cambiar_estado_lote(con, lote_id, LOTE_ERROR, ahora=ahora, **campos)
        for item in items_lote(con, lote_id):
            if item["estado_de"] in (DE_IN_LOTE, DE_SENT):
                cambiar_estado_de(
                    con, item["de_id"], DE_ERROR,
                    detalle=f"lote {lote_id}: {mensaje}", ahora=ahora,
                    error_mensaje=mensaje, sifen_codigo=codigo,
                )
    logger.warning(f"Lote {lote_id} en ERROR: {mensaje}")


def enviar_lote(
    con: sqlite3.Connection,
    tenant_id: str,
    lote_id: int,
    cliente,
    *,
    espera_consulta_sec: int = 30,
    reserva_vencida_sec: int = RESERVA_ENVIO_VENCIDA_SEC,
    ahora: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    CREATED -> SENT (acuse 0300) o ERROR (rechazo sincrónico).

    Antes de llamar a la SET el lote se reserva (`envio_iniciado_at`); un
    segundo envío concurrente falla con InvalidStateError. Errores de
    transporte se propagan (AuthorityTransportError), se anotan en el lote
    y este queda CREATED y liberado para reintento.
    """
    lote = obtener_fila_lote(con, tenant_id, lote_id)
    validar_transicion_lote(lote["estado"], LOTE_SENT)
    items = items_lote(con, lote_id)
    xmls = []
    for item in items:
        if item["estado_de"] != DE_IN_LOTE:
            raise InvalidStateError(
                f"DE {item['de_id']} del lote {lote_id} está en {item['estado_de']}", estado_actual=item["estado_de"]
            )
        row = con.execute("SELECT xml_signed FROM sifen_de WHERE id=?", (item["de_id"],)).fetchone()
        xmls.append(row["xml_signed"])

    ahora = ahora or datetime.now()
    _reservar_envio(con, lote_id, reserva_vencida_sec, ahora)

    # Sin lock durante la llamada a la SET; la reserva evita un segundo envío
    try:
        respuesta = cliente.recibe_lote(xmls)
    except Exception as exc:
        _liberar_envio(con, lote_id, f"Envío no completado: {exc}", ahora)
        raise
    codigo = respuesta.get("codigo")

    if codigo == COD_LOTE_RECIBIDO and respuesta.get("numero_lote"):
        with transaccion(con):
            cambiar_estado_lote(
                con, lote_id, LOTE_SENT, ahora=ahora,
                numero_lote=respuesta["numero_lote"],
                d_id=respuesta.get("d_id"),
                respuesta_recibe_lote=dumps(respuesta),
                sent_at=now_iso(ahora),
                proxima_consulta_at=now_iso(ahora + timedelta(seconds=espera_consulta_sec)),
                envio_iniciado_at=None,
                error_mensaje=None,
            )
            for item in items:
                cambiar_estado_de(
                    con, item["de_id"], DE_SENT,
                    detalle=f"lote {lote_id} enviado ({respuesta['numero_lote']})", ahora=ahora,
                )
        logger.info(f"Lote {lote_id} enviado: numero_lote={respuesta['numero_lote']}")
    else:
        mensaje = f"SET rechazó el lote: {codigo or 'sin código'} {respuesta.get('mensaje') or ''}".strip()
        marcar_lote_error(con, lote_id, mensaje, codigo=codigo, respuesta=respuesta, ahora=ahora)

    return obtener_lote(con, tenant_id, lote_id)
