"""
CDC (Código de Control) de un DE.

44 dígitos: 43 de base + DV módulo 11.
Conformación de la base:
  2  Tipo de documento
  8  RUC emisor (sin DV, ceros a la izquierda)
  1  DV del RUC
  3  Establecimiento
  3  Punto de expedición
  7  Número de documento
  1  Tipo de contribuyente
  8  Fecha de emisión (YYYYMMDD)
  1  Tipo de emisión
  9  Código de seguridad
"""
import re
import secrets
from datetime import date, datetime
from typing import NamedTuple, Union

CDC_LEN = 44


class CamposCDC(NamedTuple):
    tipo_documento: str
    ruc: str
    dv_ruc: str
    establecimiento: str
    punto_expedicion: str
    numero: str
    tipo_contribuyente: str
    fecha: date
    tipo_emision: str
    codigo_seguridad: str


def calc_dv(base: str) -> int:
    """
    DV módulo 11 con pesos 2..11 desde la derecha (SifenUtil.generateDv).
    """
    s = (base or "").strip()
    if not s.isdigit():
        raise ValueError(f"base debe ser numérica, recibido: {base!r}")

    # Caso especial documentado en SifenUtil
    if s == "88888801":
        return 5

    k = 2
    total = 0
    for ch in reversed(s):
        if k > 11:
            k = 2
        total += int(ch) * k
        k += 1

    mod = total % 11
    return 0 if mod <= 1 else (11 - mod)


def es_cdc_valido(cdc: str) -> bool:
    s = (cdc or "").strip()
    if not s.isdigit() or len(s) != CDC_LEN:
        return False
    return int(s[43]) == calc_dv(s[:43])


def _digits(value, width: int, nombre: str) -> str:
    raw = re.sub(r"\D", "", str(value if value is not None else ""))
    if not raw:
        raise ValueError(f"{nombre} vacío para CDC")
    if len(raw) > width:
        raise ValueError(f"{nombre} excede {width} dígitos: {value!r}")
    return raw.zfill(width)


def _fecha8(fecha: Union[date, datetime, str]) -> str:
    if isinstance(fecha, (date, datetime)):
        return fecha.strftime("%Y%m%d")
    fecha8 = re.sub(r"\D", "", str(fecha or ""))[:8]
    if len(fecha8) != 8:
        raise ValueError(f"Fecha inválida para CDC: {fecha!r}")
    datetime.strptime(fecha8, "%Y%m%d")
    return fecha8


def generar_codigo_seguridad() -> str:
    """dCodSeg: 9 dígitos aleatorios."""
    return f"{secrets.randbelow(10 ** 9):09d}"


def construir_cdc(
    tipo_documento,
    ruc,
    dv_ruc,
    establecimiento,
    punto_expedicion,
    numero,
    fecha: Union[date, datetime, str],
    codigo_seguridad: str,
    tipo_contribuyente="1",
    tipo_emision="1",
) -> str:
    base = (
        _digits(tipo_documento, 2, "tipo_documento")
        + _digits(ruc, 8, "RUC")
        + _digits(dv_ruc, 1, "DV RUC")
        + _digits(establecimiento, 3, "establecimiento")
        + _digits(punto_expedicion, 3, "punto_expedicion")
        + _digits(numero, 7, "numero")
        + _digits(tipo_contribuyente, 1, "tipo_contribuyente")
        + _fecha8(fecha)
        + _digits(tipo_emision, 1, "tipo_emision")
        + _digits(codigo_seguridad, 9, "codigo_seguridad")
    )
    if len(base) != CDC_LEN - 1:
        raise ValueError(f"Base CDC inválida ({len(base)}): {base}")
    return base + str(calc_dv(base))


def extraer_campos_cdc(cdc: str) -> CamposCDC:
    s = (cdc or "").strip()
    if not s.isdigit() or len(s) != CDC_LEN:
        raise ValueError(f"CDC inválido (se esperan {CDC_LEN} dígitos): {cdc!r}")
    if not es_cdc_valido(s):
        raise ValueError(f"CDC con DV inválido: {cdc!r}")
    return CamposCDC(
        tipo_documento=s[0:2],
        ruc=s[2:10],
        dv_ruc=s[10],
        establecimiento=s[11:14],
        punto_expedicion=s[14:17],
        numero=s[17:24],
        tipo_contribuyente=s[24],
        fecha=datetime.strptime(s[25:33], "%Y%m%d").date(),
        tipo_emision=s[33],
        codigo_seguridad=s[34:43],
    )
