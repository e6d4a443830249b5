from pathlib import Path
import sys
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from lxml import etree
from signxml import XMLVerifier

from sifen_pipeline.builder import crear_documento
from sifen_pipeline.documentos import obtener_documento
from sifen_pipeline.exceptions import InvalidStateError, SigningError
from sifen_pipeline.numeracion import crear_serie
from sifen_pipeline.qr import construir_url_qr, insertar_qr
from sifen_pipeline.signer import XmlSigner, emitir_documento, firmar_documento
from sifen_pipeline.tenant_config import guardar_config

from _sifen_fakes import CLAVE_MAESTRA, CSC, TENANT, certificado_de_prueba, config_tenant, factura, generar_certificado, serie

NS = {"s": "http://ekuatia.set.gov.py/sifen/xsd", "ds": "http://www.w3.org/2000/09/xmldsig#"}


def _estado(con, de_id):
    return con.execute("SELECT estado FROM sifen_de WHERE id=?", (de_id,)).fetchone()[0]


def test_firma_agrega_signature_y_qr(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    firmar_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    doc = obtener_documento(con, tenant, de_id)

    assert doc["estado"] == "SIGNED"
    assert doc["signed_at"]
    root = etree.fromstring(doc["xml_signed"].encode("utf-8"))
    firma = root.find("ds:Signature", NS)
    assert firma is not None
    assert firma.find(".//ds:Reference", NS).get("URI") == f"#{doc['cdc']}"
    assert root.findtext(".//s:gCamFuFD/s:dCarQR", namespaces=NS) == doc["qr_text"]
    assert doc["qr_png_base64"]

    url = urlparse(doc["qr_text"])
    params = parse_qs(url.query)
    assert params["Id"] == [doc["cdc"]]
    assert len(params["cHashQR"][0]) == 64
    assert CSC not in doc["qr_text"]


def test_firma_verificable_con_el_certificado(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    firmar_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    doc = obtener_documento(con, tenant, de_id)

    verificado = XMLVerifier().verify(
        doc["xml_signed"].encode("utf-8"), x509_cert=certificado_de_prueba()["cert_pem"]
    )
    assert verificado.signed_xml.get("Id") == doc["cdc"]


def test_emitir_deja_el_documento_encolado(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    doc = obtener_documento(con, tenant, de_id)

    assert doc["estado"] == "ENQUEUED"
    assert [h["estado_nuevo"] for h in doc["historial"]] == ["DRAFT", "SIGNED", "ENQUEUED"]


@pytest.mark.parametrize("estado", ["IN_LOTE", "SENT", "APPROVED", "REJECTED", "CANCELLED"])
def test_no_se_firma_en_estados_posteriores(con, tenant, estado):
    de_id = crear_documento(con, tenant, factura())
    con.execute("UPDATE sifen_de SET estado=? WHERE id=?", (estado, de_id))
    con.commit()

    with pytest.raises(InvalidStateError) as exc:
        firmar_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    assert exc.value.estado_actual == estado
    assert _estado(con, de_id) == estado


def test_sin_csc_queda_en_error_y_se_puede_reintentar(con):
    guardar_config(con, TENANT, config_tenant(csc=None), clave_maestra=CLAVE_MAESTRA)
    crear_serie(con, TENANT, serie("1"))
    de_id = crear_documento(con, TENANT, factura())

    with pytest.raises(SigningError) as exc:
        firmar_documento(con, TENANT, de_id, clave_maestra=CLAVE_MAESTRA)
    assert exc.value.code == "CSC_MISSING"
    doc = obtener_documento(con, TENANT, de_id)
    assert doc["estado"] == "ERROR"
    assert "CSC" in doc["error_mensaje"]

    guardar_config(con, TENANT, {"csc": CSC}, clave_maestra=CLAVE_MAESTRA)
    firmar_documento(con, TENANT, de_id, clave_maestra=CLAVE_MAESTRA)
    doc = obtener_documento(con, TENANT, de_id)
    assert doc["estado"] == "SIGNED"
    assert doc["error_mensaje"] is None


def test_certificado_expirado(con):
    vencido = generar_certificado(dias_validez=10, desde=datetime.now(timezone.utc) - timedelta(days=30))
    guardar_config(
        con, TENANT,
        config_tenant(cert_pem=vencido["cert_pem"], private_key=vencido["private_key_pem"], passphrase=None),
        clave_maestra=CLAVE_MAESTRA,
    )
    crear_serie(con, TENANT, serie("1"))
    de_id = crear_documento(con, TENANT, factura())

    with pytest.raises(SigningError) as exc:
        firmar_documento(con, TENANT, de_id, clave_maestra=CLAVE_MAESTRA)
    assert exc.value.code == "CERT_EXPIRED"
    assert _estado(con, de_id) == "ERROR"


def test_clave_maestra_incorrecta_no_descifra(con, tenant):
    de_id = crear_documento(con, tenant, factura())

    with pytest.raises(SigningError) as exc:
        firmar_documento(con, tenant, de_id, clave_maestra="otra-clave")
    assert exc.value.code == "DECRYPT_FAILED"


def test_passphrase_incorrecta():
    cert = certificado_de_prueba()
    with pytest.raises(SigningError) as exc:
        XmlSigner(cert["cert_pem"], cert["private_key_pem"], "incorrecta")
    assert exc.value.code == "PASSPHRASE_INVALID"


def test_clave_que_no_corresponde_al_certificado():
    cert = certificado_de_prueba()
    otra = generar_certificado()
    with pytest.raises(SigningError) as exc:
        XmlSigner(cert["cert_pem"], otra["private_key_pem"])
    assert exc.value.code == "KEY_CERT_MISMATCH"


def test_clave_rsa_corta():
    corta = generar_certificado(key_size=1024)
    with pytest.raises(SigningError) as exc:
        XmlSigner(corta["cert_pem"], corta["private_key_pem"])
    assert exc.value.code == "KEY_TOO_SHORT"


def test_qr_reemplaza_dcarqr_existente(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    firmar_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    xml = obtener_documento(con, tenant, de_id)["xml_signed"]

    url, datos = construir_url_qr(xml, "OTRO" + CSC[4:], "0002", "HOMOLOGACION")
    nuevo = insertar_qr(xml, url)

    assert nuevo.count("<dCarQR>") == 1
    assert "IdCSC=0002" in nuevo
    assert "&amp;cHashQR=" + datos["cHashQR"] in nuevo
