from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from lxml import etree

from sifen_pipeline.builder import calcular_totales, crear_documento, regenerar_xml
from sifen_pipeline.cdc import extraer_campos_cdc
from sifen_pipeline.documentos import listar_documentos, obtener_documento
from sifen_pipeline.exceptions import InvalidStateError, ValidationError
from sifen_pipeline.numeracion import crear_serie

from _sifen_fakes import FakeSifenClient, documento_aprobado, factura, serie

NS = {"s": "http://ekuatia.set.gov.py/sifen/xsd"}


def _ultimo_numero(con, tipo="1"):
    return con.execute(
        "SELECT ultimo_numero FROM sifen_numeracion WHERE tipo_documento=?", (tipo,)
    ).fetchone()[0]


def test_iva_10_incluido_se_extrae_con_redondeo():
    items, totales = calcular_totales(
        [{"cantidad": 100, "precio_unitario": 15000, "tasa_iva": 10}]
    )

    assert items[0]["subtotal"] == 1500000
    assert items[0]["iva"] == 136364
    assert totales["total_iva10"] == 136364
    assert totales["total_gravada_10"] == 1500000
    assert totales["total_pago"] == 1500000


def test_totales_por_tasa():
    _, totales = calcular_totales([
        {"cantidad": 1, "precio_unitario": 110000, "tasa_iva": 10},
        {"cantidad": 2, "precio_unitario": 52500, "tasa_iva": 5},
        {"cantidad": 3, "precio_unitario": 1000, "tasa_iva": 0},
    ])

    assert totales["total_iva10"] == 10000
    assert totales["total_iva5"] == 5000
    assert totales["total_exento"] == 3000
    assert totales["total_iva"] == 15000
    assert totales["total_pago"] == 110000 + 105000 + 3000


def test_moneda_extranjera_redondea_a_dos_decimales():
    items, totales = calcular_totales(
        [{"cantidad": 3, "precio_unitario": "10.99", "tasa_iva": 10}], moneda="USD"
    )

    assert items[0]["subtotal"] == 32.97
    assert items[0]["iva"] == 3.0
    assert totales["total_pago"] == 32.97


@pytest.mark.parametrize(
    "item",
    [
        {"cantidad": 0, "precio_unitario": 1000, "tasa_iva": 10},
        {"cantidad": 1, "precio_unitario": -5, "tasa_iva": 10},
        {"cantidad": 1, "precio_unitario": 1000, "tasa_iva": 7},
        {"cantidad": "abc", "precio_unitario": 1000, "tasa_iva": 10},
    ],
)
def test_items_invalidos(item):
    with pytest.raises(ValidationError):
        calcular_totales([item])


def test_sin_items_es_invalido():
    with pytest.raises(ValidationError):
        calcular_totales([])


def test_crear_documento_queda_en_draft_con_xml(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    doc = obtener_documento(con, tenant, de_id)

    assert doc["estado"] == "DRAFT"
    assert doc["numero_documento"] == "0000001"
    assert doc["total_pago"] == 1600000
    assert doc["total_iva10"] == 136364
    assert doc["total_exento"] == 100000
    assert doc["historial"][0]["estado_nuevo"] == "DRAFT"

    root = etree.fromstring(doc["xml_unsigned"].encode("utf-8"))
    de = root.find("s:DE", NS)
    assert de.get("Id") == doc["cdc"]
    assert root.findtext(".//s:gTimb/s:dNumDoc", namespaces=NS) == "0000001"
    assert root.findtext(".//s:gTotSub/s:dTotGralOpe", namespaces=NS) == "1600000"
    assert root.findtext(".//s:gDatRec/s:dNomRec", namespaces=NS) == "Cliente Ejemplo SRL"
    assert len(root.findall(".//s:gDtipDE/s:gCamItem", NS)) == 2


def test_cdc_del_documento_codifica_numero_y_emisor(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    doc = obtener_documento(con, tenant, de_id)
    campos = extraer_campos_cdc(doc["cdc"])

    assert campos.tipo_documento == "01"
    assert campos.ruc == "80012345"
    assert campos.numero == doc["numero_documento"]
    assert campos.fecha.isoformat() == doc["fecha_emision"][:10]
    assert campos.codigo_seguridad == doc["codigo_seguridad"]


def test_receptor_sin_razon_social_no_consume_numero(con, tenant):
    data = factura()
    data["datos_receptor"]["razon_social"] = "  "

    with pytest.raises(ValidationError):
        crear_documento(con, tenant, data)
    assert _ultimo_numero(con) == 0


def test_nota_credito_sin_referencia_no_consume_numero(con, tenant):
    crear_serie(con, tenant, serie("5"))

    with pytest.raises(ValidationError) as exc:
        crear_documento(con, tenant, factura(tipo_documento="5", datos_adicionales={"motivo_emision": 2}))
    assert exc.value.code == "REFERENCIA_REQUERIDA"
    assert _ultimo_numero(con, "5") == 0
    assert con.execute("SELECT COUNT(*) FROM sifen_de").fetchone()[0] == 0


def test_nota_credito_referencia_debe_estar_aprobada(con, tenant):
    crear_serie(con, tenant, serie("5"))
    de_id = crear_documento(con, tenant, factura())
    cdc = obtener_documento(con, tenant, de_id)["cdc"]

    with pytest.raises(ValidationError) as exc:
        crear_documento(con, tenant, factura(tipo_documento="5", de_referenciado_cdc=cdc))
    assert exc.value.code == "REFERENCIA_NO_APROBADA"
    assert _ultimo_numero(con, "5") == 0


def test_nota_credito_sobre_factura_aprobada(con, tenant):
    crear_serie(con, tenant, serie("5"))
    original = documento_aprobado(con, tenant, FakeSifenClient())
    cdc = obtener_documento(con, tenant, original)["cdc"]

    nc_id = crear_documento(
        con, tenant,
        factura(tipo_documento="5", de_referenciado_cdc=cdc, datos_adicionales={"motivo_emision": 2}),
    )
    nc = obtener_documento(con, tenant, nc_id)
    root = etree.fromstring(nc["xml_unsigned"].encode("utf-8"))

    assert nc["de_referenciado_cdc"] == cdc
    assert root.findtext(".//s:gCamDEAsoc/s:dCdCDERef", namespaces=NS) == cdc
    assert root.findtext(".//s:gCamNCDE/s:iMotEmi", namespaces=NS) == "2"
    assert root.find(".//s:gCamCond", NS) is None


def test_tipo_documento_invalido(con, tenant):
    with pytest.raises(ValidationError):
        crear_documento(con, tenant, factura(tipo_documento="9"))


def test_moneda_extranjera_requiere_tipo_cambio(con, tenant):
    with pytest.raises(ValidationError):
        crear_documento(con, tenant, factura(moneda="USD"))


def test_regenerar_xml_pasa_a_generated(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    con.execute("UPDATE sifen_config SET razon_social='NUEVA RAZON S.A.'")
    con.commit()

    regenerar_xml(con, tenant, de_id)
    doc = obtener_documento(con, tenant, de_id)

    assert doc["estado"] == "GENERATED"
    assert "NUEVA RAZON S.A." in doc["xml_unsigned"]


def test_regenerar_xml_de_documento_aprobado_falla(con, tenant):
    de_id = documento_aprobado(con, tenant, FakeSifenClient())

    with pytest.raises(InvalidStateError):
        regenerar_xml(con, tenant, de_id)


def test_listar_documentos_filtra_y_busca(con, tenant):
    crear_documento(con, tenant, factura())
    otro = factura()
    otro["datos_receptor"] = {"naturaleza": 2, "documento": "1234567", "razon_social": "Juan Pérez"}
    crear_documento(con, tenant, otro)

    items, total = listar_documentos(con, tenant)
    assert total == 2
    assert items[0]["numero"] == "001-001-0000002"

    items, total = listar_documentos(con, tenant, q="Pérez")
    assert total == 1
    assert items[0]["datos_receptor"]["razon_social"] == "Juan Pérez"

    _, total = listar_documentos(con, tenant, q="4567890")
    assert total == 1

    _, total = listar_documentos(con, tenant, estado="SIGNED,APPROVED")
    assert total == 0

    items, total = listar_documentos(con, tenant, limit=1, offset=1)
    assert total == 2
    assert len(items) == 1
