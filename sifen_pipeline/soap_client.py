"""
Cliente SOAP 1.2 (document/literal) para los web services de la SET, con mTLS.

Servicios: recibe-lote (async), consulta-lote, consulta (DE por CDC) y evento.
Los envelopes se arman con lxml y se envían con requests; toda falla de red,
HTTP o de parseo se reporta como AuthorityTransportError, sin tocar estado.
"""
import base64
import io
import logging
import os
import random
import re
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from cryptography.hazmat.primitives import serialization
from lxml import etree

from .exceptions import AuthorityTransportError

logger = logging.getLogger(__name__)

SIFEN_NS = "http://ekuatia.set.gov.py/sifen/xsd"
SOAP_NS = "http://www.w3.org/2003/05/soap-envelope"

# Códigos de respuesta SIFEN usados por el pipeline
COD_LOTE_RECIBIDO = "0300"
COD_LOTE_INEXISTENTE = "0360"
COD_LOTE_EN_PROCESO = "0361"
COD_LOTE_CONCLUIDO = "0362"
COD_LOTE_REQUIERE_CDC = "0364"
COD_DE_NO_ENCONTRADO = "0420"
COD_DE_ENCONTRADO = "0422"

ERROR_CODES = {
    "0300": "Lote recibido con éxito",
    "0301": "Lote no encolado para procesamiento",
    "0270": "Lote excede tamaño máximo (rEnvioLote)",
    "0360": "Número de lote inexistente",
    "0361": "Lote en procesamiento",
    "0362": "Procesamiento de lote concluido",
    "0364": "Consulta extemporánea de lote: consultar por CDC",
    "0420": "CDC inexistente",
    "0422": "CDC encontrado",
}

_XML_DECL_RE = re.compile(br"^\s*<\?xml[^>]*\?>\s*", re.I)
_XSI_ATTRS_RE = re.compile(br'\s+xmlns:xsi="[^"]*"|\s+xsi:schemaLocation="[^"]*"')


# ---------------------------------------------------------------------
# Armado de requests
# ---------------------------------------------------------------------
def generar_did(ahora: Optional[datetime] = None) -> str:
    """dId de 15 dígitos: YYYYMMDDHHMMSS + 1 dígito aleatorio."""
    return (ahora or datetime.now()).strftime("%Y%m%d%H%M%S") + str(random.randint(0, 9))


def _strip_rde_opening(xml_bytes: bytes) -> bytes:
    """Quita la declaración XML y los atributos xsi del tag de apertura de rDE."""
    sin_decl = _XML_DECL_RE.sub(b"", xml_bytes, count=1)
    fin_tag = sin_decl.find(b">")
    if fin_tag < 0:
        raise ValueError("rDE sin tag de apertura")
    apertura = _XSI_ATTRS_RE.sub(b"", sin_decl[:fin_tag])
    return apertura + sin_decl[fin_tag:]


def construir_lote_xml(xmls_firmados: List[str]) -> bytes:
    """
    rLoteDE con los rDE firmados, concatenados a nivel de bytes para no
    re-serializar el contenido firmado. No lleva dId ni xDE (son del SOAP).
    """
    if not xmls_firmados:
        raise ValueError("Lote vacío")
    partes = [_strip_rde_opening(x.encode("utf-8")) for x in xmls_firmados]
    return (
        b'<?xml version="1.0" encoding="UTF-8"?>'
        + f'<rLoteDE xmlns="{SIFEN_NS}">'.encode("utf-8")
        + b"".join(partes)
        + b"</rLoteDE>"
    )


def comprimir_lote(lote_xml: bytes) -> str:
    """ZIP con lote.xml, en base64 (contenido de xDE)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("lote.xml", lote_xml)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _envelope(payload: etree._Element) -> bytes:
    envelope = etree.Element(f"{{{SOAP_NS}}}Envelope", nsmap={"soap": SOAP_NS})
    etree.SubElement(envelope, f"{{{SOAP_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    body.append(payload)
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8", pretty_print=False)


def _payload(root_name: str, campos: List[Tuple[str, str]]) -> etree._Element:
    root = etree.Element(f"{{{SIFEN_NS}}}{root_name}", nsmap={None: SIFEN_NS})
    for tag, valor in campos:
        el = etree.SubElement(root, f"{{{SIFEN_NS}}}{tag}")
        el.text = str(valor)
    return root


def construir_envelope_recibe_lote(d_id: str, xde_b64: str) -> bytes:
    return _envelope(_payload("rEnvioLote", [("dId", d_id), ("xDE", xde_b64)]))


def construir_envelope_consulta_lote(d_id: str, numero_lote: str) -> bytes:
    if not numero_lote or not str(numero_lote).strip():
        raise ValueError("dProtConsLote no puede estar vacío")
    return _envelope(_payload("rEnviConsLoteDe", [("dId", d_id), ("dProtConsLote", numero_lote)]))


def construir_envelope_consulta_de(d_id: str, cdc: str) -> bytes:
    return _envelope(_payload("rEnviConsDeRequest", [("dId", d_id), ("dCDC", cdc)]))


def construir_envelope_evento(d_id: str, evento_firmado: etree._Element) -> bytes:
    payload = _payload("rEnviEventoDe", [("dId", d_id)])
    ev_reg = etree.SubElement(payload, f"{{{SIFEN_NS}}}dEvReg")
    ev_reg.append(evento_firmado)
    return _envelope(payload)


# ---------------------------------------------------------------------
# Parseo de respuestas
# ---------------------------------------------------------------------
def _local(el) -> str:
    return etree.QName(el).localname


def _payload_respuesta(contenido: bytes, esperado: str, contexto: str) -> etree._Element:
    """Primer hijo del Body SOAP; SOAP Fault o root inesperado -> AuthorityTransportError."""
    try:
        root = etree.fromstring(contenido)
    except etree.XMLSyntaxError as e:
        raise AuthorityTransportError(f"Respuesta no XML en {contexto}: {e}", code="RESPUESTA_INVALIDA")

    if _local(root) == "Envelope":
        body = root.find(f"{{{SOAP_NS}}}Body")
        if body is None:
            body_nodes = root.xpath("//*[local-name()='Body']")
            body = body_nodes[0] if body_nodes else None
        hijos = [c for c in body if isinstance(c.tag, str)] if body is not None else []
        if not hijos:
            raise AuthorityTransportError(f"Respuesta SOAP sin payload en {contexto}", code="RESPUESTA_INVALIDA")
        root = hijos[0]

    if _local(root) == "Fault":
        fault_code = root.xpath('string(.//*[local-name()="Value"][1])') or "N/A"
        fault_string = (
            root.xpath('string(.//*[local-name()="Text"][1])')
            or root.xpath('string(.//*[local-name()="faultstring"][1])')
            or "N/A"
        )
        raise AuthorityTransportError(
            f"SOAP Fault en {contexto}: fault_code={fault_code} fault_string={fault_string}",
            code="SOAP_FAULT",
        )
    if _local(root) != esperado:
        raise AuthorityTransportError(
            f"Respuesta inesperada en {contexto}: root={_local(root)!r}, esperado={esperado!r}",
            code="RESPUESTA_INESPERADA",
        )
    return root


def _texto(el, nombre: str) -> Optional[str]:
    nodos = el.xpath(f'.//*[local-name()="{nombre}"]')
    if nodos and nodos[0].text:
        return nodos[0].text.strip()
    return None


def parsear_recibe_lote(contenido: bytes) -> Dict[str, Any]:
    root = _payload_respuesta(contenido, "rResEnviLoteDe", "recibe_lote")
    return {
        "codigo": _texto(root, "dCodRes"),
        "mensaje": _texto(root, "dMsgRes"),
        "numero_lote": _texto(root, "dProtConsLote"),
        "tiempo_proceso": _texto(root, "dTpoProces"),
        "fecha": _texto(root, "dFecProc"),
    }


def parsear_consulta_lote(contenido: bytes) -> Dict[str, Any]:
    root = _payload_respuesta(contenido, "rResEnviConsLoteDe", "consulta_lote")
    items = []
    for res in root.xpath('.//*[local-name()="gResProcLote"]'):
        items.append({
            "cdc": _texto(res, "id"),
            "estado": _texto(res, "dEstRes"),
            "prot_aut": _texto(res, "dProtAut"),
            "codigo": _texto(res, "dCodRes"),
            "mensaje": _texto(res, "dMsgRes"),
        })
    return {
        "codigo": _texto(root, "dCodResLot"),
        "mensaje": _texto(root, "dMsgResLot"),
        "items": items,
    }


def parsear_consulta_de(contenido: bytes) -> Dict[str, Any]:
    root = _payload_respuesta(contenido, "rEnviConsDeResponse", "consulta")
    return {
        "codigo": _texto(root, "dCodRes"),
        "mensaje": _texto(root, "dMsgRes"),
        "estado": _texto(root, "dEstRes"),
        "prot_aut": _texto(root, "dProtAut"),
    }


def parsear_evento(contenido: bytes) -> Dict[str, Any]:
    root = _payload_respuesta(contenido, "rRetEnviEventoDe", "evento")
    return {
        "estado": _texto(root, "dEstRes"),
        "prot_aut": _texto(root, "dProtAut"),
        "event_id": _texto(root, "id"),
        "codigo": _texto(root, "dCodRes"),
        "mensaje": _texto(root, "dMsgRes"),
    }


def veredicto(estado: Optional[str]) -> Optional[str]:
    """dEstRes -> 'ACCEPTED' / 'REJECTED' / None (desconocido)."""
    s = (estado or "").strip().lower()
    if s.startswith("aprob") or s.startswith("acep"):
        return "ACCEPTED"
    if s.startswith("rech"):
        return "REJECTED"
    return None


# ---------------------------------------------------------------------
# Transporte
# ---------------------------------------------------------------------
def normalizar_endpoint(url: str) -> str:
    """
    Quita query string; recibe-lote y consulta-lote conservan .wsdl en el POST,
    el resto lo pierde (…/consulta.wsdl -> …/consulta).
    """
    url = (url or "").split("?")[0]
    if url.endswith(".wsdl") and "/recibe-lote.wsdl" not in url and "/consulta-lote.wsdl" not in url:
        url = url[:-5]
    return url


def pem_sin_cifrar(private_key_pem: str, passphrase: Optional[str]) -> bytes:
    """Clave privada en PKCS8 sin cifrar, para el handshake mTLS de requests."""
    key = serialization.load_pem_private_key(
        private_key_pem.encode("utf-8"),
        password=passphrase.encode("utf-8") if passphrase else None,
    )
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def escribir_pem_temporales(cert_pem: str, key_pem: bytes) -> Tuple[str, str]:
    cert_fd, cert_path = tempfile.mkstemp(suffix=".pem", prefix="sifen_cert_")
    key_fd, key_path = tempfile.mkstemp(suffix=".pem", prefix="sifen_key_")
    os.close(cert_fd)
    os.close(key_fd)
    with open(cert_path, "wb") as f:
        f.write(cert_pem.encode("utf-8"))
    with open(key_path, "wb") as f:
        f.write(key_pem)
    os.chmod(cert_path, 0o600)
    os.chmod(key_path, 0o600)
    logger.debug(f"PEM temporales para mTLS: cert={Path(cert_path).name}, key={Path(key_path).name}")
    return cert_path, key_path


def limpiar_pem_temporales(cert_path: str, key_path: str) -> None:
    for path in (cert_path, key_path):
        if path and os.path.exists(path):
            try:
                os.unlink(path)
            except OSError as e:
                logger.warning(f"No se pudo eliminar PEM temporal {Path(path).name}: {e}")


class SifenSoapClient:
    """Cliente de los web services SIFEN de un tenant."""

    def __init__(
        self,
        urls: Dict[str, str],
        cert_pem: Optional[str] = None,
        key_pem: Optional[bytes] = None,
        timeouts: Tuple[int, int] = (15, 45),
        session: Optional[requests.Session] = None,
    ):
        self.urls = {k: normalizar_endpoint(v) for k, v in urls.items() if v}
        self.timeouts = timeouts
        self.session = session or requests.Session()
        self._temp_pem_files: Optional[Tuple[str, str]] = None
        if cert_pem and key_pem:
            self._temp_pem_files = escribir_pem_temporales(cert_pem, key_pem)
            self.session.cert = self._temp_pem_files

    def _post(self, servicio: str, soap_bytes: bytes, action: Optional[str] = None) -> bytes:
        url = self.urls.get(servicio)
        if not url:
            raise AuthorityTransportError(f"URL del servicio '{servicio}' no configurada", code="URL_MISSING")
        content_type = "application/soap+xml; charset=utf-8"
        if action:
            content_type += f'; action="{action}"'
        headers = {"Content-Type": content_type, "Accept": "application/soap+xml, text/xml, */*"}

        logger.info(f"POST SOAP {servicio} -> {url} ({len(soap_bytes)} bytes)")
        try:
            resp = self.session.post(url, data=soap_bytes, headers=headers, timeout=self.timeouts)
        except requests.exceptions.Timeout as e:
            raise AuthorityTransportError(f"Timeout en {servicio}: {e}", code="TIMEOUT")
        except requests.exceptions.RequestException as e:
            raise AuthorityTransportError(f"Error de red en {servicio}: {e}", code="NETWORK")

        if resp.status_code >= 400 and not (resp.content or b"").lstrip().startswith(b"<"):
            raise AuthorityTransportError(
                f"HTTP {resp.status_code} en {servicio}", code=f"HTTP_{resp.status_code}", http_status=resp.status_code
            )
        if not resp.content:
            raise AuthorityTransportError(f"Respuesta vacía en {servicio} (HTTP {resp.status_code})",
                                          code="RESPUESTA_VACIA", http_status=resp.status_code)
        return resp.content

    def recibe_lote(self, xmls_firmados: List[str], d_id: Optional[str] = None) -> Dict[str, Any]:
        d_id = d_id or generar_did()
        xde = comprimir_lote(construir_lote_xml(xmls_firmados))
        resultado = parsear_recibe_lote(self._post("recibe_lote", construir_envelope_recibe_lote(d_id, xde)))
        resultado["d_id"] = d_id
        logger.info(f"recibe_lote dId={d_id} -> {resultado['codigo']} {resultado['mensaje']}")
        return resultado

    def consulta_lote(self, numero_lote: str, d_id: Optional[str] = None) -> Dict[str, Any]:
        d_id = d_id or generar_did()
        contenido = self._post(
            "consulta_lote", construir_envelope_consulta_lote(d_id, numero_lote), action="siConsLoteDE"
        )
        resultado = parsear_consulta_lote(contenido)
        logger.info(f"consulta_lote {numero_lote} -> {resultado['codigo']} ({len(resultado['items'])} items)")
        return resultado

    def consulta_de(self, cdc: str, d_id: Optional[str] = None) -> Dict[str, Any]:
        d_id = d_id or generar_did()
        resultado = parsear_consulta_de(
            self._post("consulta", construir_envelope_consulta_de(d_id, cdc), action="siConsDE")
        )
        logger.info(f"consulta_de {cdc} -> {resultado['codigo']} {resultado['estado']}")
        return resultado

    def enviar_evento(self, evento_firmado: etree._Element, d_id: Optional[str] = None) -> Dict[str, Any]:
        d_id = d_id or generar_did()
        resultado = parsear_evento(
            self._post("evento", construir_envelope_evento(d_id, evento_firmado), action="siRecepEvento")
        )
        logger.info(f"evento dId={d_id} -> {resultado['codigo']} {resultado['estado']}")
        return resultado

    def close(self) -> None:
        self.session.close()
        if self._temp_pem_files:
            limpiar_pem_temporales(*self._temp_pem_files)
            self._temp_pem_files = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def crear_cliente(material: Dict[str, Any], urls: Dict[str, str], timeouts: Tuple[int, int]) -> SifenSoapClient:
    """Cliente con mTLS a partir del material de firma descifrado del tenant."""
    key_pem = pem_sin_cifrar(material["private_key_pem"], material.get("passphrase"))
    return SifenSoapClient(urls, cert_pem=material["cert_pem"], key_pem=key_pem, timeouts=timeouts)
