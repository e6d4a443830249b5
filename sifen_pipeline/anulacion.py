"""
Evento de cancelación (anulación) de un DE aprobado.
"""
import logging
import random
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

from lxml import etree

from .db import dumps, now_iso, transaccion
from .documentos import obtener_documento, obtener_fila
from .estados import DE_CANCELLED, cambiar_estado_de, validar_transicion_de
from .exceptions import AuthorityRejectionError, AuthorityTransportError, ValidationError
from .signer import XmlSigner
from .soap_client import veredicto
from .tenant_config import cargar_material_firma

logger = logging.getLogger(__name__)

SIFEN_NS = "http://ekuatia.set.gov.py/sifen/xsd"

MOTIVO_MIN = 10
MOTIVO_MAX = 500

TIPO_EVENTO_CANCELACION = "CANCELACION"


def generar_event_id(ahora: Optional[datetime] = None) -> str:
    base = (ahora or datetime.now()).strftime("%Y%m%d%H%M%S") + str(random.randint(0, 9))
    return base[-10:]


def _sub(parent, tag: str, text=None):
    el = etree.SubElement(parent, f"{{{SIFEN_NS}}}{tag}")
    if text is not None:
        el.text = str(text)
    return el


def construir_evento_cancelacion(
    cdc: str, motivo: str, event_id: str, ahora: Optional[datetime] = None
) -> etree._Element:
    """rGesEve sin firmar; la firma se agrega como hija de rGesEve."""
    r_ges_eve = etree.Element(f"{{{SIFEN_NS}}}rGesEve", nsmap={None: SIFEN_NS})
    r_eve = _sub(r_ges_eve, "rEve")
    r_eve.set("Id", event_id)
    _sub(r_eve, "dFecFirma", (ahora or datetime.now()).strftime("%Y-%m-%dT%H:%M:%S"))
    _sub(r_eve, "dVerFor", "150")
    _sub(r_eve, "dTiGDE", "1")
    tipo = _sub(r_eve, "gGroupTiEvt")
    can = _sub(tipo, "rGeVeCan")
    _sub(can, "Id", cdc)
    _sub(can, "mOtEve", motivo)
    return r_ges_eve


def validar_motivo(motivo: Any) -> str:
    texto = str(motivo or "").strip()
    if not MOTIVO_MIN <= len(texto) <= MOTIVO_MAX:
        raise ValidationError(
            f"motivo debe tener entre {MOTIVO_MIN} y {MOTIVO_MAX} caracteres", code="MOTIVO_INVALIDO"
        )
    return texto


def _registrar_evento(con, tenant_id, de_id, event_id, motivo, resp: Dict[str, Any], ahora) -> None:
    con.execute(
        """
        INSERT INTO sifen_eventos (tenant_id, de_id, tipo_evento, event_id, motivo, estado_res,
                                   codigo, mensaje, prot_aut, respuesta, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (tenant_id, de_id, TIPO_EVENTO_CANCELACION, event_id, motivo, resp.get("estado"),
         resp.get("codigo"), resp.get("mensaje"), resp.get("prot_aut"), dumps(resp), now_iso(ahora)),
    )


def anular_documento(
    con: sqlite3.Connection,
    tenant_id: str,
    de_id: int,
    motivo: Any,
    cliente,
    *,
    clave_maestra: str,
    ahora: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    APPROVED -> CANCELLED.

    El rechazo de la SET queda registrado en sifen_eventos y se informa con
    AuthorityRejectionError; el DE sigue APPROVED.
    """
    fila = obtener_fila(con, tenant_id, de_id)
    validar_transicion_de(fila["estado"], DE_CANCELLED)
    motivo = validar_motivo(motivo)
    ahora = ahora or datetime.now()

    material = cargar_material_firma(con, tenant_id, clave_maestra, requiere_csc=False)
    signer = XmlSigner(material["cert_pem"], material["private_key_pem"], material["passphrase"])
    event_id = generar_event_id(ahora)
    r_ges_eve = signer.firmar(construir_evento_cancelacion(fila["cdc"], motivo, event_id, ahora), event_id)
    grupo = etree.Element(f"{{{SIFEN_NS}}}gGroupGesEve", nsmap={None: SIFEN_NS})
    grupo.append(r_ges_eve)

    resp = cliente.enviar_evento(grupo)
    resultado = veredicto(resp.get("estado"))

    with transaccion(con):
        _registrar_evento(con, tenant_id, de_id, event_id, motivo, resp, ahora)
        if resultado == "ACCEPTED":
            cambiar_estado_de(
                con, de_id, DE_CANCELLED,
                detalle=f"cancelación {event_id}: {resp.get('codigo') or ''}".strip(), ahora=ahora,
                motivo_anulacion=motivo,
            )

    if resultado == "ACCEPTED":
        logger.info(f"DE {de_id} cancelado (evento {event_id})")
        return obtener_documento(con, tenant_id, de_id)
    if resultado == "REJECTED":
        logger.warning(f"Cancelación de DE {de_id} rechazada: {resp.get('codigo')} {resp.get('mensaje')}")
        raise AuthorityRejectionError(
            f"La SET rechazó la cancelación: {resp.get('mensaje') or 'sin mensaje'}",
            code=resp.get("codigo"),
            respuesta=resp,
        )
    raise AuthorityTransportError(
        f"Respuesta de evento sin veredicto (dEstRes={resp.get('estado')!r})", code="EVENTO_SIN_VEREDICTO"
    )
