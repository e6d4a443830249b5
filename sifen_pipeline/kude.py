"""
KUDE: representación impresa (PDF A4) de un DE aprobado o cancelado.
"""
from io import BytesIO
from typing import Any, Dict, List, Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from .builder import TIPOS_DOCUMENTO
from .estados import DE_APPROVED, DE_CANCELLED
from .exceptions import InvalidStateError

ESTADOS_CON_KUDE = (DE_APPROVED, DE_CANCELLED)

_ND = "N/D"
GRAY_BORDER = colors.HexColor("#D9D9D9")
GRAY_TEXT = colors.HexColor("#666666")
DARK_TEXT = colors.HexColor("#222222")
RED_SOFT = colors.HexColor("#C75C5C")

MARGEN = 15 * mm


def _safe(value: Any, fallback: str = _ND) -> str:
    if value is None:
        return fallback
    texto = str(value).strip()
    return texto or fallback


def _fmt_num(value: Any, moneda: str = "PYG") -> str:
    try:
        num = float(value or 0)
    except (TypeError, ValueError):
        return _safe(value, "0")
    if moneda == "PYG":
        return f"{int(round(num)):,}".replace(",", ".")
    return f"{num:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


def _draw_qr(c: canvas.Canvas, x: float, y: float, size: float, value: str) -> None:
    qr = QrCodeWidget(value)
    bounds = qr.getBounds()
    width = bounds[2] - bounds[0]
    height = bounds[3] - bounds[1]
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(qr)
    renderPDF.draw(drawing, c, x, y)


def _draw_hr(c: canvas.Canvas, y: float, x_left: float, x_right: float) -> None:
    c.setStrokeColor(GRAY_BORDER)
    c.setLineWidth(0.6)
    c.line(x_left, y, x_right, y)


def _draw_lines(c: canvas.Canvas, x: float, y: float, lines: List[str], font: str = "Helvetica",
                size: int = 9, color=DARK_TEXT) -> float:
    c.setFont(font, size)
    c.setFillColor(color)
    for line in lines:
        c.drawString(x, y, line)
        y -= size + 3
    c.setFillColor(colors.black)
    return y


def generar_kude_pdf(documento: Dict[str, Any], emisor: Optional[Dict[str, Any]]) -> bytes:
    """PDF del DE. `documento` es el detalle de obtener_documento()."""
    if documento.get("estado") not in ESTADOS_CON_KUDE:
        raise InvalidStateError(
            f"KUDE disponible solo para DE aprobados o cancelados (estado {documento.get('estado')})",
            estado_actual=documento.get("estado"),
        )
    emisor = emisor or {}
    moneda = documento.get("moneda") or "PYG"
    receptor = documento.get("datos_receptor") or {}

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    ancho, alto = A4
    x_left, x_right = MARGEN, ancho - MARGEN
    y = alto - MARGEN

    # Encabezado
    c.setFont("Helvetica-Bold", 13)
    c.drawString(x_left, y - 12, _safe(emisor.get("razon_social")))
    y_emisor = _draw_lines(c, x_left, y - 28, [
        f"RUC: {_safe(emisor.get('ruc'))}-{_safe(emisor.get('dv'), '')}",
        f"Dirección: {_safe(emisor.get('direccion'))}",
        f"Timbrado: {_safe(documento.get('timbrado'))}",
    ])
    c.setFont("Helvetica-Bold", 11)
    c.drawRightString(x_right, y - 12, TIPOS_DOCUMENTO.get(str(documento.get("tipo_documento")), "Documento electrónico"))
    c.setFont("Helvetica", 10)
    numero = f"{documento['establecimiento']}-{documento['punto_expedicion']}-{documento['numero_documento']}"
    c.drawRightString(x_right, y - 28, f"N° {numero}")
    c.drawRightString(x_right, y - 41, f"Fecha: {_safe(documento.get('fecha_emision'))[:19].replace('T', ' ')}")
    if documento.get("estado") == DE_CANCELLED:
        c.setFillColor(RED_SOFT)
        c.setFont("Helvetica-Bold", 12)
        c.drawRightString(x_right, y - 56, "DOCUMENTO CANCELADO")
        c.setFillColor(colors.black)
    y = min(y_emisor, y - 62) - 4
    _draw_hr(c, y, x_left, x_right)

    # Receptor
    y -= 14
    ruc_rec = receptor.get("ruc")
    id_rec = f"{ruc_rec}-{receptor.get('dv') or ''}" if ruc_rec else _safe(receptor.get("documento"))
    y = _draw_lines(c, x_left, y, [
        f"Cliente: {_safe(receptor.get('razon_social'))}",
        f"RUC / Documento: {id_rec}",
        f"Dirección: {_safe(receptor.get('direccion'))}",
        f"Moneda: {moneda}",
    ])
    _draw_hr(c, y + 4, x_left, x_right)

    # Ítems
    col_cant, col_precio, col_iva, col_total = x_right - 95 * mm, x_right - 65 * mm, x_right - 35 * mm, x_right
    y -= 12
    c.setFont("Helvetica-Bold", 9)
    c.drawString(x_left, y, "Descripción")
    c.drawRightString(col_cant, y, "Cant.")
    c.drawRightString(col_precio, y, "Precio unit.")
    c.drawRightString(col_iva, y, "IVA %")
    c.drawRightString(col_total, y, "Subtotal")
    y -= 4
    _draw_hr(c, y, x_left, x_right)
    y -= 12
    c.setFont("Helvetica", 9)
    ancho_desc = col_cant - x_left - 20 * mm
    for item in documento.get("datos_items") or []:
        lineas = simpleSplit(_safe(item.get("descripcion")), "Helvetica", 9, ancho_desc) or [_ND]
        c.drawString(x_left, y, lineas[0])
        c.drawRightString(col_cant, y, str(item.get("cantidad")))
        c.drawRightString(col_precio, y, _fmt_num(item.get("precio_unitario"), moneda))
        c.drawRightString(col_iva, y, str(item.get("tasa_iva")))
        c.drawRightString(col_total, y, _fmt_num(item.get("subtotal"), moneda))
        for extra in lineas[1:3]:
            y -= 11
            c.drawString(x_left, y, extra)
        y -= 13
        if y < 80 * mm:
            break
    _draw_hr(c, y + 6, x_left, x_right)

    # Totales
    y -= 8
    for etiqueta, valor in (
        ("Exentas", documento.get("total_exento")),
        ("Gravadas 5%", documento.get("total_gravada_5")),
        ("Gravadas 10%", documento.get("total_gravada_10")),
        ("IVA 5%", documento.get("total_iva5")),
        ("IVA 10%", documento.get("total_iva10")),
        ("Total IVA", documento.get("total_iva")),
    ):
        c.setFont("Helvetica", 9)
        c.drawRightString(col_iva, y, etiqueta)
        c.drawRightString(col_total, y, _fmt_num(valor, moneda))
        y -= 12
    c.setFont("Helvetica-Bold", 11)
    c.drawRightString(col_iva, y - 2, "TOTAL A PAGAR")
    c.drawRightString(col_total, y - 2, _fmt_num(documento.get("total_pago"), moneda))

    # Pie: QR + CDC
    qr_size = 32 * mm
    if documento.get("qr_text"):
        _draw_qr(c, x_left, MARGEN, qr_size, documento["qr_text"])
    cdc = documento.get("cdc") or ""
    cdc_fmt = " ".join(cdc[i:i + 4] for i in range(0, len(cdc), 4))
    _draw_lines(c, x_left + qr_size + 6 * mm, MARGEN + qr_size - 10, [
        "Consulte la validez de este Documento Electrónico con el número de CDC impreso abajo en:",
        "https://ekuatia.set.gov.py/consultas/",
    ], size=8, color=GRAY_TEXT)
    c.setFont("Helvetica-Bold", 10)
    c.drawString(x_left + qr_size + 6 * mm, MARGEN + qr_size - 42, f"CDC: {cdc_fmt}")
    if documento.get("sifen_prot_aut"):
        _draw_lines(c, x_left + qr_size + 6 * mm, MARGEN + qr_size - 58,
                    [f"Protocolo de autorización: {documento['sifen_prot_aut']}"], size=8, color=GRAY_TEXT)
    _draw_lines(c, x_left + qr_size + 6 * mm, MARGEN + 6,
                ["ESTE DOCUMENTO ES UNA REPRESENTACIÓN GRÁFICA DE UN DOCUMENTO ELECTRÓNICO (XML)"],
                size=7, color=GRAY_TEXT)

    c.showPage()
    c.save()
    return buffer.getvalue()
