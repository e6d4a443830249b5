"""
Armado de Documentos Electrónicos (DE).

Valida la solicitud, calcula totales, asigna número, calcula el CDC y
genera el XML rDE v150 sin firmar. Toda la validación ocurre antes de
asignar número: una solicitud inválida no consume numeración.
"""
import logging
import re
import sqlite3
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from lxml import etree

from .cdc import construir_cdc, es_cdc_valido, generar_codigo_seguridad
from .db import dumps, loads, now_iso, transaccion
from .estados import (
    DE_APPROVED, DE_DRAFT, DE_ERROR, DE_GENERATED,
    cambiar_estado_de, registrar_alta_de,
)
from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .numeracion import asignar_numero
from .tenant_config import requerir_config

logger = logging.getLogger(__name__)

SIFEN_NS = "http://ekuatia.set.gov.py/sifen/xsd"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

TIPO_FACTURA = "1"
TIPO_AUTOFACTURA = "4"
TIPO_NOTA_CREDITO = "5"
TIPO_NOTA_DEBITO = "6"

TIPOS_DOCUMENTO = {
    TIPO_FACTURA: "Factura electrónica",
    TIPO_AUTOFACTURA: "Autofactura electrónica",
    TIPO_NOTA_CREDITO: "Nota de crédito electrónica",
    TIPO_NOTA_DEBITO: "Nota de débito electrónica",
}
TIPOS_CON_REFERENCIA = (TIPO_NOTA_CREDITO, TIPO_NOTA_DEBITO)

TASAS_IVA = (0, 5, 10)

MONEDAS = {
    "PYG": "Guarani",
    "USD": "US Dollar",
    "EUR": "Euro",
    "BRL": "Real",
    "ARS": "Argentine Peso",
}

MOTIVOS_NOTA = {
    1: "Devolución y Ajuste de precios",
    2: "Devolución",
    3: "Descuento",
    4: "Bonificación",
    5: "Crédito incobrable",
    6: "Recupero de costo",
    7: "Recupero de gasto",
    8: "Ajuste de precio",
}

CONDICIONES_PAGO = {1: "Contado", 2: "Crédito"}

# Editables mientras el DE no fue firmado
ESTADOS_REGENERABLES = (DE_DRAFT, DE_GENERATED, DE_ERROR)


# -------------------------
# Cálculo de totales
# -------------------------
def _cuanto(moneda: str) -> Decimal:
    return Decimal("1") if moneda == "PYG" else Decimal("0.01")


def _redondear(valor: Decimal, moneda: str) -> Decimal:
    return valor.quantize(_cuanto(moneda), rounding=ROUND_HALF_UP)


def _num(valor: Decimal):
    """Decimal -> int si es entero, sino float (para JSON / SQLite)."""
    if valor == valor.to_integral_value():
        return int(valor)
    return float(valor)


def _fmt(valor, moneda: str = "PYG") -> str:
    d = Decimal(str(valor))
    if moneda == "PYG" and d == d.to_integral_value():
        return str(int(d))
    return f"{d.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def _fmt_cantidad(valor) -> str:
    d = Decimal(str(valor))
    return f"{d.quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP).normalize():f}"


def _decimal(valor, campo: str, indice: int) -> Decimal:
    if isinstance(valor, bool) or valor is None or valor == "":
        raise ValidationError(f"items[{indice}].{campo} requerido")
    try:
        d = Decimal(str(valor))
    except InvalidOperation:
        raise ValidationError(f"items[{indice}].{campo} debe ser numérico")
    if not d.is_finite():
        raise ValidationError(f"items[{indice}].{campo} debe ser numérico")
    return d


def calcular_totales(items: List[Dict[str, Any]], moneda: str = "PYG") -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """
    Totales con IVA incluido en el precio.

    Por ítem: subtotal = cantidad * precio_unitario; iva = subtotal * tasa / (100 + tasa),
    redondeado half-up (entero en PYG, 2 decimales en otras monedas).

    Retorna (items normalizados, totales).
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("datos_items debe tener al menos un ítem")

    gravada_10 = gravada_5 = exento = iva10 = iva5 = Decimal("0")
    normalizados = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{i}] inválido")
        cantidad = _decimal(item.get("cantidad"), "cantidad", i)
        precio = _decimal(item.get("precio_unitario"), "precio_unitario", i)
        if cantidad <= 0:
            raise ValidationError(f"items[{i}].cantidad debe ser > 0")
        if precio < 0:
            raise ValidationError(f"items[{i}].precio_unitario debe ser >= 0")
        tasa_d = _decimal(item.get("tasa_iva"), "tasa_iva", i)
        if tasa_d not in TASAS_IVA:
            raise ValidationError(f"items[{i}].tasa_iva debe ser 0, 5 o 10")
        tasa = int(tasa_d)

        subtotal = _redondear(cantidad * precio, moneda)
        iva = _redondear(subtotal * tasa / (100 + tasa), moneda) if tasa else Decimal("0")
        if tasa == 10:
            gravada_10 += subtotal
            iva10 += iva
        elif tasa == 5:
            gravada_5 += subtotal
            iva5 += iva
        else:
            exento += subtotal

        descripcion = str(item.get("descripcion") or "").strip() or f"Ítem {i + 1}"
        normalizados.append({
            "codigo": str(item.get("codigo") or f"{i + 1:03d}"),
            "descripcion": descripcion[:2000],
            "cantidad": _num(cantidad),
            "precio_unitario": _num(precio),
            "tasa_iva": tasa,
            "subtotal": _num(subtotal),
            "iva": _num(iva),
        })

    total = gravada_10 + gravada_5 + exento
    totales = {
        "total_gravada_10": _num(gravada_10),
        "total_gravada_5": _num(gravada_5),
        "total_exento": _num(exento),
        "total_iva10": _num(iva10),
        "total_iva5": _num(iva5),
        "total_iva": _num(iva10 + iva5),
        "total_pago": _num(total),
    }
    return normalizados, totales


# -------------------------
# Validación de la solicitud
# -------------------------
def _entero(valor, nombre: str, default: int) -> int:
    if valor in (None, ""):
        return default
    try:
        return int(valor)
    except (TypeError, ValueError):
        raise ValidationError(f"{nombre} debe ser entero")


def _validar_receptor(receptor: Any) -> Dict[str, Any]:
    if not isinstance(receptor, dict):
        raise ValidationError("datos_receptor requerido")
    razon = str(receptor.get("razon_social") or "").strip()
    if not razon:
        raise ValidationError("datos_receptor.razon_social es requerido")

    ruc = re.sub(r"\D", "", str(receptor.get("ruc") or ""))
    dv = str(receptor.get("dv") or "").strip()
    naturaleza = _entero(receptor.get("naturaleza"), "datos_receptor.naturaleza", 1 if ruc else 2)
    if naturaleza not in (1, 2):
        raise ValidationError("datos_receptor.naturaleza debe ser 1 (contribuyente) o 2 (no contribuyente)")
    if naturaleza == 1:
        if not ruc or len(ruc) > 8:
            raise ValidationError("datos_receptor.ruc requerido (hasta 8 dígitos) para contribuyentes")
        if not re.fullmatch(r"\d", dv):
            raise ValidationError("datos_receptor.dv requerido para contribuyentes")

    tipo_operacion = _entero(
        receptor.get("tipo_operacion"), "datos_receptor.tipo_operacion", 1 if naturaleza == 1 else 2
    )
    if tipo_operacion not in (1, 2, 3, 4):
        raise ValidationError("datos_receptor.tipo_operacion debe ser 1 (B2B), 2 (B2C), 3 (B2G) o 4 (B2F)")

    return {
        "naturaleza": naturaleza,
        "tipo_operacion": tipo_operacion,
        "ruc": ruc or None,
        "dv": dv or None,
        "documento": str(receptor.get("documento") or "").strip() or None,
        "razon_social": razon[:255],
        "email": (receptor.get("email") or None),
        "telefono": (receptor.get("telefono") or None),
        "direccion": (receptor.get("direccion") or None),
    }


def _validar_adicionales(tipo: str, adicionales: Any, moneda: str) -> Dict[str, Any]:
    if adicionales is None:
        adicionales = {}
    if not isinstance(adicionales, dict):
        raise ValidationError("datos_adicionales debe ser un objeto")
    data = dict(adicionales)
    if tipo in (TIPO_FACTURA, TIPO_AUTOFACTURA):
        cond = _entero(data.get("condicion_pago"), "datos_adicionales.condicion_pago", 1)
        if cond not in CONDICIONES_PAGO:
            raise ValidationError("datos_adicionales.condicion_pago debe ser 1 (contado) o 2 (crédito)")
        data["condicion_pago"] = cond
    if tipo in TIPOS_CON_REFERENCIA:
        motivo = _entero(data.get("motivo_emision"), "datos_adicionales.motivo_emision", 1)
        if motivo not in MOTIVOS_NOTA:
            raise ValidationError(f"datos_adicionales.motivo_emision debe ser uno de {sorted(MOTIVOS_NOTA)}")
        data["motivo_emision"] = motivo
    if moneda != "PYG":
        try:
            cambio = Decimal(str(data.get("tipo_cambio")))
        except InvalidOperation:
            cambio = Decimal("0")
        if not cambio.is_finite() or cambio <= 0:
            raise ValidationError("datos_adicionales.tipo_cambio requerido (> 0) para moneda extranjera")
        data["tipo_cambio"] = _num(cambio)
    return data


def _validar_referencia(con: sqlite3.Connection, tenant_id: str, tipo: str, cdc_ref: Any) -> Optional[str]:
    if tipo not in TIPOS_CON_REFERENCIA:
        return None
    cdc_ref = str(cdc_ref or "").strip()
    if not cdc_ref:
        raise ValidationError(
            "de_referenciado_cdc es obligatorio para notas de crédito/débito", code="REFERENCIA_REQUERIDA"
        )
    if not es_cdc_valido(cdc_ref):
        raise ValidationError("de_referenciado_cdc no es un CDC válido", code="REFERENCIA_INVALIDA")
    row = con.execute(
        "SELECT estado FROM sifen_de WHERE tenant_id=? AND cdc=?", (tenant_id, cdc_ref)
    ).fetchone()
    if row is None:
        raise ValidationError("de_referenciado_cdc no existe para este tenant", code="REFERENCIA_INEXISTENTE")
    if row["estado"] != DE_APPROVED:
        raise ValidationError(
            f"El DE referenciado debe estar APPROVED (estado actual {row['estado']})",
            code="REFERENCIA_NO_APROBADA",
        )
    return cdc_ref


def validar_solicitud(con: sqlite3.Connection, tenant_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Body JSON inválido")
    tipo = str(data.get("tipo_documento") or "").strip().lstrip("0")
    if tipo not in TIPOS_DOCUMENTO:
        raise ValidationError(
            f"tipo_documento debe ser uno de {', '.join(TIPOS_DOCUMENTO)}", code="TIPO_DOCUMENTO_INVALIDO"
        )
    moneda = str(data.get("moneda") or "PYG").strip().upper()
    if moneda not in MONEDAS:
        raise ValidationError(f"moneda no soportada: {moneda}")

    receptor = _validar_receptor(data.get("datos_receptor") or data.get("receptor"))
    items, totales = calcular_totales(data.get("datos_items") or data.get("items"), moneda)
    adicionales = _validar_adicionales(tipo, data.get("datos_adicionales"), moneda)
    cdc_ref = _validar_referencia(con, tenant_id, tipo, data.get("de_referenciado_cdc"))

    return {
        "tipo_documento": tipo,
        "moneda": moneda,
        "datos_receptor": receptor,
        "datos_items": items,
        "datos_adicionales": adicionales,
        "de_referenciado_cdc": cdc_ref,
        "totales": totales,
    }


# -------------------------
# XML rDE v150
# -------------------------
def _sub(parent, tag: str, text=None):
    el = etree.SubElement(parent, f"{{{SIFEN_NS}}}{tag}")
    if text is not None:
        el.text = str(text)
    return el


def construir_xml_de(doc: Dict[str, Any], config: Dict[str, Any]) -> str:
    """
    XML rDE sin firmar. `doc` es una fila de sifen_de con los JSON ya
    decodificados (datos_receptor, datos_items, datos_adicionales).
    """
    tipo = str(doc["tipo_documento"])
    moneda = doc.get("moneda") or "PYG"
    receptor = doc["datos_receptor"]
    adicionales = doc.get("datos_adicionales") or {}
    items, totales = calcular_totales(doc["datos_items"], moneda)
    fecha_emision = doc["fecha_emision"][:19]
    cdc = doc["cdc"]

    rde = etree.Element(f"{{{SIFEN_NS}}}rDE", nsmap={None: SIFEN_NS, "ds": DS_NS, "xsi": XSI_NS})
    rde.set(f"{{{XSI_NS}}}schemaLocation", f"{SIFEN_NS} siRecepDE_v150.xsd")
    _sub(rde, "dVerFor", "150")

    de = _sub(rde, "DE")
    de.set("Id", cdc)
    _sub(de, "dDVId", cdc[-1])
    _sub(de, "dFecFirma", fecha_emision)
    _sub(de, "dSisFact", "1")

    ope = _sub(de, "gOpeDE")
    _sub(ope, "iTipEmi", "1")
    _sub(ope, "dDesTipEmi", "Normal")
    _sub(ope, "dCodSeg", doc["codigo_seguridad"])

    timb = _sub(de, "gTimb")
    _sub(timb, "iTiDE", tipo)
    _sub(timb, "dDesTiDE", TIPOS_DOCUMENTO[tipo])
    _sub(timb, "dNumTim", doc["timbrado"])
    _sub(timb, "dEst", doc["establecimiento"])
    _sub(timb, "dPunExp", doc["punto_expedicion"])
    _sub(timb, "dNumDoc", doc["numero_documento"])
    _sub(timb, "dFeIniT", (doc.get("inicio_vigencia") or config.get("inicio_vigencia") or fecha_emision)[:10])

    gral = _sub(de, "gDatGralOpe")
    _sub(gral, "dFeEmiDE", fecha_emision)
    com = _sub(gral, "gOpeCom")
    if tipo in (TIPO_FACTURA, TIPO_AUTOFACTURA):
        _sub(com, "iTipTra", "1")
        _sub(com, "dDesTipTra", "Venta de mercadería")
    _sub(com, "iTImp", "1")
    _sub(com, "dDesTImp", "IVA")
    _sub(com, "cMoneOpe", moneda)
    _sub(com, "dDesMoneOpe", MONEDAS[moneda])
    if moneda != "PYG":
        _sub(com, "dCondTiCam", "1")
        _sub(com, "dTiCam", _fmt(adicionales.get("tipo_cambio"), moneda))

    emis = _sub(gral, "gEmis")
    _sub(emis, "dRucEm", config["ruc"])
    _sub(emis, "dDVEmi", config["dv"])
    _sub(emis, "iTipCont", config.get("tipo_contribuyente") or "1")
    _sub(emis, "dNomEmi", config["razon_social"])
    _sub(emis, "dDirEmi", config.get("direccion") or "-")
    _sub(emis, "dNumCas", "0")
    _sub(emis, "cDepEmi", "1")
    _sub(emis, "dDesDepEmi", "CAPITAL")
    _sub(emis, "cCiuEmi", "1")
    _sub(emis, "dDesCiuEmi", "ASUNCION (DISTRITO)")

    rec = _sub(gral, "gDatRec")
    _sub(rec, "iNatRec", receptor["naturaleza"])
    _sub(rec, "iTiOpe", receptor["tipo_operacion"])
    _sub(rec, "cPaisRec", "PRY")
    _sub(rec, "dDesPaisRe", "Paraguay")
    if receptor["naturaleza"] == 1:
        _sub(rec, "iTiContRec", "2" if (receptor["ruc"] or "").startswith("800") else "1")
        _sub(rec, "dRucRec", receptor["ruc"])
        _sub(rec, "dDVRec", receptor["dv"])
    else:
        _sub(rec, "iTipIDRec", "1")
        _sub(rec, "dDTipIDRec", "Cédula paraguaya")
        _sub(rec, "dNumIDRec", receptor.get("documento") or "0")
    _sub(rec, "dNomRec", receptor["razon_social"])
    if receptor.get("direccion"):
        _sub(rec, "dDirRec", receptor["direccion"])
    if receptor.get("telefono"):
        _sub(rec, "dTelRec", receptor["telefono"])
    if receptor.get("email"):
        _sub(rec, "dEmailRec", receptor["email"])

    dtip = _sub(de, "gDtipDE")
    if tipo == TIPO_AUTOFACTURA:
        ae = _sub(dtip, "gCamAE")
        _sub(ae, "iNatVen", "1")
        _sub(ae, "dDesNatVen", "No contribuyente")
        _sub(ae, "iTipIDVen", "1")
        _sub(ae, "dDTipIDVen", "Cédula paraguaya")
        _sub(ae, "dNumIDVen", receptor.get("documento") or receptor.get("ruc") or "0")
        _sub(ae, "dNomVen", receptor["razon_social"])
        _sub(ae, "dDirVen", receptor.get("direccion") or "-")
    if tipo in TIPOS_CON_REFERENCIA:
        nc = _sub(dtip, "gCamNCDE")
        motivo = int(adicionales.get("motivo_emision") or 1)
        _sub(nc, "iMotEmi", motivo)
        _sub(nc, "dDesMotEmi", MOTIVOS_NOTA[motivo])
    if tipo in (TIPO_FACTURA, TIPO_AUTOFACTURA):
        cond = _sub(dtip, "gCamCond")
        cond_pago = int(adicionales.get("condicion_pago") or 1)
        _sub(cond, "iCondOpe", cond_pago)
        _sub(cond, "dDCondOpe", CONDICIONES_PAGO[cond_pago])
        if cond_pago == 1:
            pago = _sub(cond, "gPaConEIni")
            _sub(pago, "iTiPago", "1")
            _sub(pago, "dDesTiPag", "Efectivo")
            _sub(pago, "dMonTiPag", _fmt(totales["total_pago"], moneda))
            _sub(pago, "cMoneTiPag", moneda)
            _sub(pago, "dDMoneTiPag", MONEDAS[moneda])
        else:
            cred = _sub(cond, "gPagCred")
            _sub(cred, "iCondCred", "1")
            _sub(cred, "dDCondCred", "Plazo")
            _sub(cred, "dPlazoCre", str(adicionales.get("plazo_credito") or "30 días"))

    for item in items:
        cam = _sub(dtip, "gCamItem")
        _sub(cam, "dCodInt", item["codigo"])
        _sub(cam, "dDesProSer", item["descripcion"])
        _sub(cam, "cUniMed", "77")
        _sub(cam, "dDesUniMed", "UNI")
        _sub(cam, "dCantProSer", _fmt_cantidad(item["cantidad"]))
        valor = _sub(cam, "gValorItem")
        _sub(valor, "dPUniProSer", _fmt(item["precio_unitario"], moneda))
        _sub(valor, "dTotBruOpeItem", _fmt(item["subtotal"], moneda))
        resta = _sub(valor, "gValorRestaItem")
        _sub(resta, "dDescItem", "0")
        _sub(resta, "dTotOpeItem", _fmt(item["subtotal"], moneda))
        iva = _sub(cam, "gCamIVA")
        tasa = item["tasa_iva"]
        _sub(iva, "iAfecIVA", "1" if tasa else "3")
        _sub(iva, "dDesAfecIVA", "Gravado IVA" if tasa else "Exento")
        _sub(iva, "dPropIVA", "100" if tasa else "0")
        _sub(iva, "dTasaIVA", tasa)
        base = Decimal(str(item["subtotal"])) - Decimal(str(item["iva"])) if tasa else Decimal("0")
        _sub(iva, "dBasGravIVA", _fmt(base, moneda))
        _sub(iva, "dLiqIVAItem", _fmt(item["iva"], moneda))

    tot = _sub(de, "gTotSub")
    base5 = Decimal(str(totales["total_gravada_5"])) - Decimal(str(totales["total_iva5"]))
    base10 = Decimal(str(totales["total_gravada_10"])) - Decimal(str(totales["total_iva10"]))
    for tag, valor in (
        ("dSubExe", totales["total_exento"]),
        ("dSubExo", 0),
        ("dSub5", totales["total_gravada_5"]),
        ("dSub10", totales["total_gravada_10"]),
        ("dTotOpe", totales["total_pago"]),
        ("dTotDesc", 0),
        ("dTotDescGlotem", 0),
        ("dTotAntItem", 0),
        ("dTotAnt", 0),
        ("dPorcDescTotal", 0),
        ("dDescTotal", 0),
        ("dAnticipo", 0),
        ("dRedon", 0),
        ("dTotGralOpe", totales["total_pago"]),
        ("dIVA5", totales["total_iva5"]),
        ("dIVA10", totales["total_iva10"]),
        ("dLiqTotIVA5", 0),
        ("dLiqTotIVA10", 0),
        ("dTotIVA", totales["total_iva"]),
        ("dBaseGrav5", base5),
        ("dBaseGrav10", base10),
        ("dTBasGraIVA", base5 + base10),
    ):
        _sub(tot, tag, _fmt(valor, moneda))
    if moneda != "PYG":
        cambio = Decimal(str(adicionales.get("tipo_cambio")))
        _sub(tot, "dTotalGs", _fmt(_redondear(Decimal(str(totales["total_pago"])) * cambio, "PYG")))

    if tipo in TIPOS_CON_REFERENCIA and doc.get("de_referenciado_cdc"):
        asoc = _sub(de, "gCamDEAsoc")
        _sub(asoc, "iTipDocAso", "1")
        _sub(asoc, "dDesTipDocAso", "Electrónico")
        _sub(asoc, "dCdCDERef", doc["de_referenciado_cdc"])

    return etree.tostring(rde, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def decodificar_documento(fila: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(fila)
    doc["datos_receptor"] = loads(doc.get("datos_receptor"), {})
    doc["datos_items"] = loads(doc.get("datos_items"), [])
    doc["datos_adicionales"] = loads(doc.get("datos_adicionales"), {})
    doc["sifen_respuesta"] = loads(doc.get("sifen_respuesta"), None)
    return doc


# -------------------------
# Operaciones
# -------------------------
def crear_documento(
    con: sqlite3.Connection,
    tenant_id: str,
    data: Dict[str, Any],
    ahora: Optional[datetime] = None,
) -> int:
    """
    Alta de un DE en DRAFT. Retorna el id.

    Número, CDC, fila y XML se confirman en una única transacción.
    """
    config = requerir_config(con, tenant_id)
    req = validar_solicitud(con, tenant_id, data)
    est = str(data.get("establecimiento") or config["establecimiento"]).zfill(3)
    pto = str(data.get("punto_expedicion") or config["punto_expedicion"]).zfill(3)
    ahora = ahora or datetime.now()
    ts = now_iso(ahora)
    totales = req["totales"]

    with transaccion(con):
        asignacion = asignar_numero(con, tenant_id, req["tipo_documento"], est, pto, hoy=ahora.date())
        codigo_seguridad = generar_codigo_seguridad()
        cdc = construir_cdc(
            tipo_documento=req["tipo_documento"],
            ruc=config["ruc"],
            dv_ruc=config["dv"],
            establecimiento=est,
            punto_expedicion=pto,
            numero=asignacion.numero,
            fecha=ahora,
            codigo_seguridad=codigo_seguridad,
            tipo_contribuyente=config.get("tipo_contribuyente") or "1",
        )
        doc = {
            "tenant_id": tenant_id,
            "numeracion_id": asignacion.serie_id,
            "tipo_documento": req["tipo_documento"],
            "establecimiento": est,
            "punto_expedicion": pto,
            "numero_documento": asignacion.numero,
            "timbrado": asignacion.timbrado,
            "inicio_vigencia": asignacion.inicio_vigencia,
            "cdc": cdc,
            "codigo_seguridad": codigo_seguridad,
            "fecha_emision": ts,
            "moneda": req["moneda"],
            "datos_receptor": req["datos_receptor"],
            "datos_items": req["datos_items"],
            "datos_adicionales": req["datos_adicionales"],
            "de_referenciado_cdc": req["de_referenciado_cdc"],
        }
        xml_unsigned = construir_xml_de(doc, config)
        cur = con.execute(
            """
            INSERT INTO sifen_de (
                tenant_id, numeracion_id, tipo_documento, establecimiento, punto_expedicion,
                numero_documento, timbrado, cdc, codigo_seguridad, fecha_emision, moneda, estado,
                datos_receptor, datos_items, datos_adicionales,
                total_gravada_10, total_gravada_5, total_exento, total_iva10, total_iva5, total_iva, total_pago,
                de_referenciado_cdc, xml_unsigned, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id, asignacion.serie_id, req["tipo_documento"], est, pto,
                asignacion.numero, asignacion.timbrado, cdc, codigo_seguridad, ts, req["moneda"], DE_DRAFT,
                dumps(req["datos_receptor"]), dumps(req["datos_items"]), dumps(req["datos_adicionales"]),
                totales["total_gravada_10"], totales["total_gravada_5"], totales["total_exento"],
                totales["total_iva10"], totales["total_iva5"], totales["total_iva"], totales["total_pago"],
                req["de_referenciado_cdc"], xml_unsigned, ts, ts,
            ),
        )
        de_id = cur.lastrowid
        registrar_alta_de(con, de_id, ahora)

    logger.info(
        f"DE creado id={de_id} tenant={tenant_id} tipo={req['tipo_documento']} "
        f"nro={est}-{pto}-{asignacion.numero} cdc={cdc}"
    )
    return de_id


def regenerar_xml(con: sqlite3.Connection, tenant_id: str, de_id: int, ahora: Optional[datetime] = None) -> None:
    """Reconstruye xml_unsigned con la configuración actual del emisor (DE pasa a GENERATED)."""
    config = requerir_config(con, tenant_id)
    fila = con.execute(
        """
        SELECT d.*, n.inicio_vigencia FROM sifen_de d
        JOIN sifen_numeracion n ON n.id = d.numeracion_id
        WHERE d.id=? AND d.tenant_id=?
        """,
        (de_id, tenant_id),
    ).fetchone()
    if fila is None:
        raise NotFoundError(f"DE {de_id} no encontrado")
    if fila["estado"] not in ESTADOS_REGENERABLES:
        raise InvalidStateError(
            f"No se puede regenerar el XML de un DE en estado {fila['estado']}", estado_actual=fila["estado"]
        )
    doc = decodificar_documento(dict(fila))
    xml_unsigned = construir_xml_de(doc, config)
    with transaccion(con):
        cambiar_estado_de(
            con, de_id, DE_GENERATED,
            detalle="XML regenerado", ahora=ahora,
            xml_unsigned=xml_unsigned, error_mensaje=None,
        )
