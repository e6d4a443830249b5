"""
Máquinas de estado de DE y lote.

Toda operación que cambia el estado de un DE o de un lote pasa por
`cambiar_estado_de` / `cambiar_estado_lote`, que validan la transición contra
las tablas de este módulo y la aplican con un UPDATE condicionado al estado
leído (si otro proceso ya lo movió, la operación falla con InvalidStateError).
"""
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

from .db import now_iso
from .exceptions import InvalidStateError

logger = logging.getLogger(__name__)

# -------------------------
# Documento electrónico
# -------------------------
DE_DRAFT = "DRAFT"
DE_GENERATED = "GENERATED"
DE_SIGNED = "SIGNED"
DE_ENQUEUED = "ENQUEUED"
DE_IN_LOTE = "IN_LOTE"
DE_SENT = "SENT"
DE_APPROVED = "APPROVED"
DE_REJECTED = "REJECTED"
DE_CANCELLED = "CANCELLED"
DE_ERROR = "ERROR"

ESTADOS_DE = (
    DE_DRAFT, DE_GENERATED, DE_SIGNED, DE_ENQUEUED, DE_IN_LOTE,
    DE_SENT, DE_APPROVED, DE_REJECTED, DE_CANCELLED, DE_ERROR,
)

TRANSICIONES_DE = {
    DE_DRAFT: {DE_GENERATED, DE_SIGNED, DE_ERROR},
    DE_GENERATED: {DE_GENERATED, DE_SIGNED, DE_ERROR},
    DE_SIGNED: {DE_ENQUEUED, DE_IN_LOTE, DE_ERROR},
    DE_ENQUEUED: {DE_IN_LOTE, DE_ERROR},
    # IN_LOTE -> SIGNED: lote huérfano liberado para re-armado
    DE_IN_LOTE: {DE_SENT, DE_SIGNED, DE_ERROR},
    DE_SENT: {DE_APPROVED, DE_REJECTED, DE_ERROR},
    DE_APPROVED: {DE_CANCELLED},
    DE_REJECTED: set(),
    DE_CANCELLED: set(),
    DE_ERROR: {DE_GENERATED, DE_SIGNED, DE_ERROR},
}

ESTADOS_DE_TERMINALES = (DE_REJECTED, DE_CANCELLED)
# IN_LOTE -> SIGNED es solo liberación de lote, no re-firma
ESTADOS_DE_FIRMABLES = (DE_DRAFT, DE_GENERATED, DE_ERROR)
ESTADOS_DE_PENDIENTES = (DE_SIGNED, DE_ENQUEUED, DE_IN_LOTE, DE_SENT)

# -------------------------
# Lote
# -------------------------
LOTE_CREATED = "CREATED"
LOTE_SENT = "SENT"
LOTE_PROCESSING = "PROCESSING"
LOTE_COMPLETED = "COMPLETED"
LOTE_ERROR = "ERROR"

ESTADOS_LOTE = (LOTE_CREATED, LOTE_SENT, LOTE_PROCESSING, LOTE_COMPLETED, LOTE_ERROR)

TRANSICIONES_LOTE = {
    LOTE_CREATED: {LOTE_SENT, LOTE_ERROR},
    LOTE_SENT: {LOTE_PROCESSING, LOTE_COMPLETED, LOTE_ERROR},
    LOTE_PROCESSING: {LOTE_PROCESSING, LOTE_COMPLETED, LOTE_ERROR},
    LOTE_COMPLETED: set(),
    LOTE_ERROR: set(),
}

ESTADOS_LOTE_ACTIVOS = (LOTE_CREATED, LOTE_SENT, LOTE_PROCESSING)

ITEM_PENDING = "PENDING"
ITEM_ACCEPTED = "ACCEPTED"
ITEM_REJECTED = "REJECTED"


def puede_transicionar_de(actual: str, nuevo: str) -> bool:
    return nuevo in TRANSICIONES_DE.get(actual, set())


def validar_transicion_de(actual: str, nuevo: str) -> None:
    if not puede_transicionar_de(actual, nuevo):
        raise InvalidStateError(
            f"Transición de DE inválida: {actual} -> {nuevo}", estado_actual=actual
        )


def validar_firmable(actual: str) -> None:
    if actual not in ESTADOS_DE_FIRMABLES:
        raise InvalidStateError(
            f"No se puede firmar un DE en estado {actual}", estado_actual=actual
        )


def puede_transicionar_lote(actual: str, nuevo: str) -> bool:
    return nuevo in TRANSICIONES_LOTE.get(actual, set())


def validar_transicion_lote(actual: str, nuevo: str) -> None:
    if not puede_transicionar_lote(actual, nuevo):
        raise InvalidStateError(
            f"Transición de lote inválida: {actual} -> {nuevo}", estado_actual=actual
        )


def _set_clause(campos: Dict[str, Any]) -> str:
    return "".join(f", {col}=?" for col in campos)


def cambiar_estado_de(
    con: sqlite3.Connection,
    de_id: int,
    nuevo: str,
    *,
    detalle: Optional[str] = None,
    ahora: Optional[datetime] = None,
    **campos: Any,
) -> str:
    """
    Mueve un DE a `nuevo` actualizando además las columnas de `campos`.

    Retorna el estado anterior. No hace commit.
    """
    row = con.execute("SELECT estado FROM sifen_de WHERE id=?", (de_id,)).fetchone()
    if row is None:
        raise InvalidStateError(f"DE {de_id} inexistente")
    actual = row["estado"]
    validar_transicion_de(actual, nuevo)

    ts = now_iso(ahora)
    cur = con.execute(
        f"UPDATE sifen_de SET estado=?, updated_at=?{_set_clause(campos)} WHERE id=? AND estado=?",
        (nuevo, ts, *campos.values(), de_id, actual),
    )
    if cur.rowcount != 1:
        raise InvalidStateError(f"DE {de_id} cambió de estado concurrentemente", estado_actual=actual)
    con.execute(
        """
        INSERT INTO sifen_de_historial (de_id, estado_anterior, estado_nuevo, detalle, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (de_id, actual, nuevo, detalle, ts),
    )
    logger.info(f"DE {de_id}: {actual} -> {nuevo}")
    return actual


def registrar_alta_de(con: sqlite3.Connection, de_id: int, ahora: Optional[datetime] = None) -> None:
    con.execute(
        """
        INSERT INTO sifen_de_historial (de_id, estado_anterior, estado_nuevo, detalle, created_at)
        VALUES (?, NULL, ?, ?, ?)
        """,
        (de_id, DE_DRAFT, "alta", now_iso(ahora)),
    )


def cambiar_estado_lote(
    con: sqlite3.Connection,
    lote_id: int,
    nuevo: str,
    *,
    ahora: Optional[datetime] = None,
    **campos: Any,
) -> str:
    row = con.execute("SELECT estado FROM sifen_lote WHERE id=?", (lote_id,)).fetchone()
    if row is None:
        raise InvalidStateError(f"Lote {lote_id} inexistente")
    actual = row["estado"]
    validar_transicion_lote(actual, nuevo)

    cur = con.execute(
        f"UPDATE sifen_lote SET estado=?, updated_at=?{_set_clause(campos)} WHERE id=? AND estado=?",
        (nuevo, now_iso(ahora), *campos.values(), lote_id, actual),
    )
    if cur.rowcount != 1:
        raise InvalidStateError(f"Lote {lote_id} cambió de estado concurrentemente", estado_actual=actual)
    if actual != nuevo:
        logger.info(f"Lote {lote_id}: {actual} -> {nuevo}")
    return actual
