"""
Código QR del DE (Manual Técnico SIFEN V150)

1. Parámetros del documento firmado (fecha y DigestValue en hex)
2. Concatenar CSC (solo para el hash)
3. cHashQR = SHA-256(parámetros + CSC)
4. URL final SIN CSC
5. Escapar para XML (& -> &amp;)
"""
import base64
import hashlib
import logging
import re
from io import BytesIO
from typing import Dict, Tuple

import qrcode
from lxml import etree

from .config import AMBIENTE_PRODUCCION

logger = logging.getLogger(__name__)

NS = {"s": "http://ekuatia.set.gov.py/sifen/xsd", "ds": "http://www.w3.org/2000/09/xmldsig#"}

QR_URL_BASE = {
    "HOMOLOGACION": "https://www.ekuatia.set.gov.py/consultas-test/qr",
    AMBIENTE_PRODUCCION: "https://www.ekuatia.set.gov.py/consultas/qr",
}


class QRError(ValueError):
    """El XML firmado no tiene los datos necesarios para el QR"""


def construir_url_qr(xml_firmado: str, csc: str, csc_id: str, ambiente: str) -> Tuple[str, Dict[str, str]]:
    """
    URL del QR a partir del XML ya firmado. Retorna (url, datos usados).
    """
    if not csc:
        raise QRError("CSC vacío")
    root = etree.fromstring(xml_firmado.encode("utf-8"))

    def _t(path: str, default: str = "") -> str:
        el = root.find(path, NS)
        if el is not None and el.text:
            return el.text.strip()
        return default

    de = root.find(".//s:DE", NS)
    if de is None or not de.get("Id"):
        raise QRError("XML sin DE/@Id")
    cdc = de.get("Id")
    dfe = _t(".//s:gDatGralOpe/s:dFeEmiDE")
    digest = _t(".//ds:SignedInfo/ds:Reference/ds:DigestValue")
    if not dfe or not digest:
        raise QRError("XML sin dFeEmiDE o DigestValue (¿no está firmado?)")

    id_rec = re.sub(r"\D", "", _t(".//s:gDatRec/s:dRucRec")) or _t(".//s:gDatRec/s:dNumIDRec", "0")
    total = _t(".//s:gTotSub/s:dTotGralOpe") or _t(".//s:gTotSub/s:dTotOpe") or "0"
    total_iva = _t(".//s:gTotSub/s:dTotIVA", "0")
    items = str(len(root.findall(".//s:gDtipDE/s:gCamItem", NS)))

    params = (
        "nVersion=150"
        f"&Id={cdc}"
        f"&dFeEmiDE={dfe.encode('utf-8').hex()}"
        f"&dRucRec={id_rec}"
        f"&dTotGralOpe={total}"
        f"&dTotIVA={total_iva}"
        f"&cItems={items}"
        f"&DigestValue={digest.encode('utf-8').hex()}"
        f"&IdCSC={csc_id}"
    )
    hash_hex = hashlib.sha256((params + csc).encode("utf-8")).hexdigest()
    base = QR_URL_BASE.get(ambiente, QR_URL_BASE["HOMOLOGACION"])
    url = f"{base}?{params}&cHashQR={hash_hex}"
    return url, {"cdc": cdc, "dFeEmiDE": dfe, "dRucRec": id_rec, "cItems": items, "cHashQR": hash_hex}


def insertar_qr(xml_firmado: str, url: str) -> str:
    """
    Inserta (o reemplaza) gCamFuFD/dCarQR sin re-serializar el XML firmado.
    """
    url_xml = url.replace("&", "&amp;")
    nuevo, n = re.subn(r"<dCarQR>.*?</dCarQR>", f"<dCarQR>{url_xml}</dCarQR>", xml_firmado, flags=re.DOTALL)
    if n == 1:
        return nuevo
    if n > 1:
        raise QRError(f"Más de un dCarQR en el XML ({n})")
    pos = xml_firmado.rfind("</rDE>")
    if pos < 0:
        raise QRError("XML sin cierre </rDE>")
    bloque = f"<gCamFuFD><dCarQR>{url_xml}</dCarQR></gCamFuFD>"
    return xml_firmado[:pos] + bloque + xml_firmado[pos:]


def renderizar_png_base64(url: str) -> str:
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=4, border=2)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")
