from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from lxml import etree

from sifen_pipeline.anulacion import anular_documento, construir_evento_cancelacion, generar_event_id
from sifen_pipeline.builder import crear_documento
from sifen_pipeline.documentos import obtener_documento
from sifen_pipeline.exceptions import AuthorityRejectionError, AuthorityTransportError, InvalidStateError, ValidationError
from sifen_pipeline.kude import generar_kude_pdf
from sifen_pipeline.tenant_config import obtener_config

from _sifen_fakes import CLAVE_MAESTRA, FakeSifenClient, documento_aprobado, factura

NS = {"s": "http://ekuatia.set.gov.py/sifen/xsd", "ds": "http://www.w3.org/2000/09/xmldsig#"}
MOTIVO = "Error en los datos del receptor"


def test_cancelacion_aprobada(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    cliente = FakeSifenClient()

    doc = anular_documento(con, tenant, de_id, MOTIVO, cliente, clave_maestra=CLAVE_MAESTRA)

    assert doc["estado"] == "CANCELLED"
    assert doc["motivo_anulacion"] == MOTIVO
    assert doc["eventos"][0]["tipo_evento"] == "CANCELACION"
    assert doc["eventos"][0]["prot_aut"] == "EV0001"
    assert doc["kude_disponible"] is True
    assert generar_kude_pdf(doc, obtener_config(con, tenant)).startswith(b"%PDF")


def test_evento_firmado_referencia_el_cdc(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    cdc = obtener_documento(con, tenant, de_id)["cdc"]
    cliente = FakeSifenClient()

    anular_documento(con, tenant, de_id, MOTIVO, cliente, clave_maestra=CLAVE_MAESTRA)
    grupo = cliente.eventos[0]

    r_eve = grupo.find("s:rGesEve/s:rEve", NS)
    assert grupo.findtext(".//s:rGeVeCan/s:Id", namespaces=NS) == cdc
    assert grupo.findtext(".//s:rGeVeCan/s:mOtEve", namespaces=NS) == MOTIVO
    referencia = grupo.find("s:rGesEve/ds:Signature//ds:Reference", NS)
    assert referencia.get("URI") == f"#{r_eve.get('Id')}"


def test_cancelacion_rechazada_queda_registrada(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    cliente = FakeSifenClient(estado_evento="Rechazado")

    with pytest.raises(AuthorityRejectionError) as exc:
        anular_documento(con, tenant, de_id, MOTIVO, cliente, clave_maestra=CLAVE_MAESTRA)
    assert exc.value.code == "4003"

    doc = obtener_documento(con, tenant, de_id)
    assert doc["estado"] == "APPROVED"
    assert doc["eventos"][0]["estado_res"] == "Rechazado"
    assert doc["eventos"][0]["mensaje"] == "Plazo de cancelación vencido"


def test_error_de_transporte_en_cancelacion_no_cambia_el_documento(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    cliente = FakeSifenClient(error_transporte=True)

    with pytest.raises(AuthorityTransportError):
        anular_documento(con, tenant, de_id, MOTIVO, cliente, clave_maestra=CLAVE_MAESTRA)

    doc = obtener_documento(con, tenant, de_id)
    assert cliente.llamadas == ["evento"]
    assert doc["estado"] == "APPROVED"
    assert doc["motivo_anulacion"] is None
    assert doc["eventos"] == []

    doc = anular_documento(con, tenant, de_id, MOTIVO, FakeSifenClient(), clave_maestra=CLAVE_MAESTRA)
    assert doc["estado"] == "CANCELLED"


def test_no_se_cancela_un_documento_no_aprobado(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    cliente = FakeSifenClient()

    with pytest.raises(InvalidStateError):
        anular_documento(con, tenant, de_id, MOTIVO, cliente, clave_maestra=CLAVE_MAESTRA)
    assert cliente.llamadas == []


def test_no_se_cancela_dos_veces(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    anular_documento(con, tenant, de_id, MOTIVO, FakeSifenClient(), clave_maestra=CLAVE_MAESTRA)

    with pytest.raises(InvalidStateError) as exc:
        anular_documento(con, tenant, de_id, MOTIVO, FakeSifenClient(), clave_maestra=CLAVE_MAESTRA)
    assert exc.value.estado_actual == "CANCELLED"


@pytest.mark.parametrize("motivo", [None, "corto", "x" * 501])
def test_motivo_invalido(con, tenant, motivo):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())
    cliente = FakeSifenClient()

    with pytest.raises(ValidationError):
        anular_documento(con, tenant, de_id, motivo, cliente, clave_maestra=CLAVE_MAESTRA)
    assert cliente.llamadas == []


def test_construir_evento_cancelacion():
    event_id = generar_event_id()
    evento = construir_evento_cancelacion("0" * 44, MOTIVO, event_id)
    xml = etree.tostring(evento).decode("utf-8")

    assert len(event_id) == 10
    assert evento.find("s:rEve", NS).get("Id") == event_id
    assert "<mOtEve>Error en los datos del receptor</mOtEve>" in xml
