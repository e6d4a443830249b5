"""
Firma XMLDSig de DE y eventos.

Enveloped, RSA-SHA256, digest SHA-256, C14N exclusiva, referencia al Id del
elemento firmado. La firma queda como hija del elemento raíz pasado a
`XmlSigner.firmar` (rDE para documentos, rGesEve para eventos).
"""
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from lxml import etree
from signxml import CanonicalizationMethod, DigestAlgorithm, SignatureMethod, XMLSigner, methods

from .db import now_iso, transaccion
from .documentos import obtener_fila
from .estados import DE_ENQUEUED, DE_ERROR, DE_SIGNED, cambiar_estado_de, validar_firmable
from .exceptions import SigningError
from .qr import QRError, construir_url_qr, insertar_qr, renderizar_png_base64
from .tenant_config import cargar_material_firma, requerir_config

logger = logging.getLogger(__name__)

SIFEN_NS = "http://ekuatia.set.gov.py/sifen/xsd"
C14N_EXCLUSIVA = CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0


class XmlSigner:
    """
    Firmador con el certificado del tenant.

    Valida al construir: certificado PEM legible, dentro de vigencia, clave
    RSA de al menos 2048 bits que descifra con la passphrase dada.
    """

    def __init__(self, cert_pem: str, private_key_pem: str, passphrase: Optional[str] = None,
                 ahora: Optional[datetime] = None):
        self.cert_pem = cert_pem
        try:
            self.certificate = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
        except ValueError as e:
            raise SigningError(f"Certificado PEM inválido: {e}", code="CERT_INVALID")

        try:
            self.private_key = serialization.load_pem_private_key(
                private_key_pem.encode("utf-8"),
                password=passphrase.encode("utf-8") if passphrase else None,
            )
        except TypeError as e:
            # passphrase faltante o sobrante
            raise SigningError(f"Passphrase inválida para la clave privada: {e}", code="PASSPHRASE_INVALID")
        except ValueError as e:
            raise SigningError(f"No se pudo cargar la clave privada (passphrase incorrecta?): {e}",
                               code="PASSPHRASE_INVALID")

        self._validar_certificado(ahora or datetime.now(timezone.utc))

    def _validar_certificado(self, ahora: datetime) -> None:
        if ahora.tzinfo is None:
            ahora = ahora.astimezone(timezone.utc)
        if self.certificate.not_valid_after_utc < ahora:
            raise SigningError(
                f"Certificado expirado. Válido hasta: {self.certificate.not_valid_after_utc}",
                code="CERT_EXPIRED",
            )
        if self.certificate.not_valid_before_utc > ahora:
            raise SigningError(
                f"Certificado aún no válido. Válido desde: {self.certificate.not_valid_before_utc}",
                code="CERT_NOT_YET_VALID",
            )
        if not isinstance(self.private_key, rsa.RSAPrivateKey):
            raise SigningError("La clave privada debe ser RSA", code="KEY_NOT_RSA")
        if self.private_key.key_size < 2048:
            raise SigningError(
                f"La clave RSA debe ser de al menos 2048 bits. Actual: {self.private_key.key_size} bits",
                code="KEY_TOO_SHORT",
            )
        if self.certificate.public_key().public_numbers() != self.private_key.public_key().public_numbers():
            raise SigningError("La clave privada no corresponde al certificado", code="KEY_CERT_MISMATCH")

    def firmar(self, root: etree._Element, reference_id: str) -> etree._Element:
        signer = XMLSigner(
            method=methods.enveloped,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=C14N_EXCLUSIVA,
        )
        try:
            return signer.sign(root, key=self.private_key, cert=self.cert_pem, reference_uri=f"#{reference_id}")
        except Exception as e:
            raise SigningError(f"Error al firmar XML: {e}", code="SIGN_FAILED") from e


def firmar_xml_de(xml_unsigned: str, signer: XmlSigner, ahora: Optional[datetime] = None) -> str:
    """Firma un rDE; actualiza dFecFirma al momento de la firma."""
    parser = etree.XMLParser(remove_blank_text=True)
    try:
        root = etree.fromstring(xml_unsigned.encode("utf-8"), parser)
    except etree.XMLSyntaxError as e:
        raise SigningError(f"XML del DE mal formado: {e}", code="XML_INVALID")
    de = root.find(f"{{{SIFEN_NS}}}DE")
    if de is None or not de.get("Id"):
        raise SigningError("XML sin DE/@Id", code="XML_INVALID")
    fec_firma = de.find(f"{{{SIFEN_NS}}}dFecFirma")
    if fec_firma is not None:
        fec_firma.text = (ahora or datetime.now()).strftime("%Y-%m-%dT%H:%M:%S")

    firmado = signer.firmar(root, de.get("Id"))
    return etree.tostring(firmado, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def firmar_documento(
    con: sqlite3.Connection,
    tenant_id: str,
    de_id: int,
    *,
    clave_maestra: str,
    ahora: Optional[datetime] = None,
) -> None:
    """
    DRAFT/GENERATED/ERROR -> SIGNED.

    Con error de certificado el DE queda en ERROR con el motivo y se
    re-lanza SigningError; se puede reintentar tras corregir la config.
    """
    fila = obtener_fila(con, tenant_id, de_id)
    validar_firmable(fila["estado"])
    ahora = ahora or datetime.now()

    try:
        material = cargar_material_firma(con, tenant_id, clave_maestra)
        config = requerir_config(con, tenant_id)
        signer = XmlSigner(material["cert_pem"], material["private_key_pem"], material["passphrase"])
        xml_signed = firmar_xml_de(fila["xml_unsigned"] or "", signer, ahora)
        try:
            qr_url, _ = construir_url_qr(xml_signed, material["csc"], material["csc_id"], config["ambiente"])
            xml_signed = insertar_qr(xml_signed, qr_url)
        except QRError as e:
            raise SigningError(f"No se pudo generar el QR: {e}", code="QR_FAILED")
        qr_png = renderizar_png_base64(qr_url)
    except SigningError as e:
        logger.warning(f"Firma fallida DE {de_id}: {e.message}")
        with transaccion(con):
            cambiar_estado_de(
                con, de_id, DE_ERROR,
                detalle=f"firma: {e.message}", ahora=ahora,
                error_mensaje=e.message,
            )
        raise

    with transaccion(con):
        cambiar_estado_de(
            con, de_id, DE_SIGNED,
            detalle="firmado", ahora=ahora,
            xml_signed=xml_signed, qr_text=qr_url, qr_png_base64=qr_png,
            signed_at=now_iso(ahora), error_mensaje=None,
        )
    logger.info(f"DE {de_id} firmado")


def encolar_documento(con: sqlite3.Connection, de_id: int, ahora: Optional[datetime] = None) -> None:
    with transaccion(con):
        cambiar_estado_de(con, de_id, DE_ENQUEUED, detalle="encolado para lote", ahora=ahora)


def emitir_documento(
    con: sqlite3.Connection,
    tenant_id: str,
    de_id: int,
    *,
    clave_maestra: str,
    ahora: Optional[datetime] = None,
) -> None:
    """Firma y encola (acción "emitir" de la UI)."""
    firmar_documento(con, tenant_id, de_id, clave_maestra=clave_maestra, ahora=ahora)
    encolar_documento(con, de_id, ahora)
