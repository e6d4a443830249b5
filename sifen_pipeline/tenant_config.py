"""
Configuración SIFEN por tenant.

Dos facetas:
- proyección pública (`obtener_config`): datos del emisor, metadatos del
  certificado y banderas has_* para los secretos.
- actualización con secretos de solo escritura (`guardar_config`): la clave
  privada, la passphrase, el CSC y el PEM del certificado se guardan cifrados
  y nunca se devuelven.

`cargar_material_firma` es el único punto que descifra, para uso inmediato
del firmador.
"""
import logging
import re
import sqlite3
from datetime import date
from typing import Any, Dict, Optional

from cryptography import x509

from .config import AMBIENTE_PRODUCCION, AMBIENTES, WS_URL_COLUMNS, default_ws_urls
from .crypto import cifrar, descifrar
from .db import log_audit, now_iso, row_to_dict
from .exceptions import SigningError, ValidationError

logger = logging.getLogger(__name__)

CAMPOS_PUBLICOS = (
    "tenant_id", "ambiente", "ruc", "dv", "razon_social", "timbrado",
    "inicio_vigencia", "fin_vigencia", "establecimiento", "punto_expedicion",
    "tipo_contribuyente", "direccion", "csc_id",
    "cert_subject", "cert_serial", "cert_not_before", "cert_not_after",
    "ws_url_recibe_lote", "ws_url_consulta_lote", "ws_url_consulta", "ws_url_evento",
    "created_at", "updated_at",
)

CAMPOS_EDITABLES = (
    "ambiente", "ruc", "dv", "razon_social", "timbrado", "inicio_vigencia",
    "fin_vigencia", "establecimiento", "punto_expedicion", "tipo_contribuyente",
    "direccion", "csc_id",
) + tuple(WS_URL_COLUMNS.values())

# campo del body -> columna cifrada
SECRETOS = {
    "private_key": "private_key_enc",
    "passphrase": "passphrase_enc",
    "csc": "csc_enc",
}


def _fila(con: sqlite3.Connection, tenant_id: str) -> Optional[Dict[str, Any]]:
    row = con.execute("SELECT * FROM sifen_config WHERE tenant_id=?", (tenant_id,)).fetchone()
    return row_to_dict(row)


def _proyeccion_publica(fila: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: fila.get(k) for k in CAMPOS_PUBLICOS}
    data["has_cert"] = bool(fila.get("cert_pem_enc"))
    data["has_private_key"] = bool(fila.get("private_key_enc"))
    data["has_passphrase"] = bool(fila.get("passphrase_enc"))
    data["has_csc"] = bool(fila.get("csc_enc"))
    return data


def obtener_config(con: sqlite3.Connection, tenant_id: str) -> Optional[Dict[str, Any]]:
    fila = _fila(con, tenant_id)
    return _proyeccion_publica(fila) if fila else None


def requerir_config(con: sqlite3.Connection, tenant_id: str) -> Dict[str, Any]:
    """Fila completa (con secretos cifrados) o ValidationError si el tenant no está configurado."""
    fila = _fila(con, tenant_id)
    if not fila:
        raise ValidationError(
            f"El tenant {tenant_id} no tiene configuración SIFEN", code="CONFIG_MISSING"
        )
    return fila


def _validar_fecha(nombre: str, valor: Optional[str]) -> None:
    if not valor:
        return
    try:
        date.fromisoformat(str(valor)[:10])
    except ValueError:
        raise ValidationError(f"{nombre} debe tener formato YYYY-MM-DD", code="INVALID_DATE")


def _metadatos_certificado(cert_pem: str) -> Dict[str, str]:
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    except ValueError as e:
        raise ValidationError(f"Certificado PEM inválido: {e}", code="INVALID_CERT")
    return {
        "cert_subject": cert.subject.rfc4514_string(),
        "cert_serial": format(cert.serial_number, "X"),
        "cert_not_before": cert.not_valid_before_utc.isoformat(),
        "cert_not_after": cert.not_valid_after_utc.isoformat(),
    }


def validar_config(data: Dict[str, Any]) -> None:
    ruc = str(data.get("ruc") or "").strip()
    if not re.fullmatch(r"\d{1,8}", ruc):
        raise ValidationError("ruc debe tener entre 1 y 8 dígitos (sin DV)", code="INVALID_RUC")
    if not re.fullmatch(r"\d", str(data.get("dv") or "").strip()):
        raise ValidationError("dv debe ser un dígito", code="INVALID_DV")
    razon = str(data.get("razon_social") or "").strip()
    if not 3 <= len(razon) <= 255:
        raise ValidationError("razon_social debe tener entre 3 y 255 caracteres", code="INVALID_RAZON_SOCIAL")
    if data.get("ambiente") not in AMBIENTES:
        raise ValidationError(f"ambiente debe ser {' o '.join(AMBIENTES)}", code="INVALID_AMBIENTE")
    for campo in ("establecimiento", "punto_expedicion"):
        if not re.fullmatch(r"\d{3}", str(data.get(campo) or "")):
            raise ValidationError(f"{campo} debe tener 3 dígitos", code="INVALID_" + campo.upper())
    if str(data.get("tipo_contribuyente") or "") not in ("1", "2"):
        raise ValidationError("tipo_contribuyente debe ser 1 (física) o 2 (jurídica)", code="INVALID_TIPO_CONTRIBUYENTE")
    if data.get("timbrado") and not re.fullmatch(r"\d{8}", str(data["timbrado"])):
        raise ValidationError("timbrado debe tener 8 dígitos", code="INVALID_TIMBRADO")
    if not re.fullmatch(r"\d{1,4}", str(data.get("csc_id") or "")):
        raise ValidationError("csc_id debe ser numérico de hasta 4 dígitos", code="INVALID_CSC_ID")
    _validar_fecha("inicio_vigencia", data.get("inicio_vigencia"))
    _validar_fecha("fin_vigencia", data.get("fin_vigencia"))
    for col in WS_URL_COLUMNS.values():
        url = data.get(col)
        if url and not str(url).startswith("https://"):
            raise ValidationError(f"{col} debe ser una URL https", code="INVALID_URL")


def guardar_config(
    con: sqlite3.Connection,
    tenant_id: str,
    data: Dict[str, Any],
    *,
    clave_maestra: str,
    usuario_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Upsert de la configuración. Campos omitidos conservan el valor guardado,
    incluidos los secretos. Retorna la proyección pública.
    """
    if not isinstance(data, dict):
        raise ValidationError("Body JSON inválido")

    actual = _fila(con, tenant_id) or {}
    merged: Dict[str, Any] = {
        "ambiente": "HOMOLOGACION",
        "establecimiento": "001",
        "punto_expedicion": "001",
        "tipo_contribuyente": "1",
        "csc_id": "0001",
    }
    merged.update({k: v for k, v in actual.items() if v is not None})
    for campo in CAMPOS_EDITABLES:
        if campo in data:
            valor = data[campo]
            merged[campo] = valor.strip() if isinstance(valor, str) else valor
    merged["ambiente"] = str(merged.get("ambiente") or "").upper()
    for campo in ("establecimiento", "punto_expedicion"):
        if merged.get(campo) and str(merged[campo]).isdigit():
            merged[campo] = str(merged[campo]).zfill(3)
    merged["tipo_contribuyente"] = str(merged.get("tipo_contribuyente") or "")

    validar_config(merged)

    ambiente_anterior = actual.get("ambiente")
    if merged["ambiente"] == AMBIENTE_PRODUCCION and ambiente_anterior != AMBIENTE_PRODUCCION:
        if data.get("confirmar_produccion") != "YES":
            raise ValidationError(
                "Pasar a PRODUCCION tiene efecto legal: enviar confirmar_produccion='YES'",
                code="PRODUCCION_NO_CONFIRMADA",
            )

    # URLs: vacías toman el default del ambiente; cambio de ambiente sin URLs explícitas las reemplaza
    cambio_ambiente = bool(ambiente_anterior) and ambiente_anterior != merged["ambiente"]
    for col, url in default_ws_urls(merged["ambiente"]).items():
        if not merged.get(col) or (cambio_ambiente and col not in data):
            merged[col] = url

    secretos_actualizados = []
    if "cert_pem" in data:
        cert_pem = str(data.get("cert_pem") or "")
        if cert_pem.strip():
            merged.update(_metadatos_certificado(cert_pem))
            try:
                merged["cert_pem_enc"] = cifrar(cert_pem, clave_maestra)
            except ValueError as e:
                raise ValidationError(str(e), code="ENCRYPTION_KEY_MISSING")
            secretos_actualizados.append("cert_pem")
        else:
            for col in ("cert_subject", "cert_serial", "cert_not_before", "cert_not_after", "cert_pem_enc"):
                merged[col] = None


    for campo, col in SECRETOS.items():
        valor = data.get(campo)
        if valor:
            try:
                merged[col] = cifrar(str(valor), clave_maestra)
            except ValueError as e:
                raise ValidationError(str(e), code="ENCRYPTION_KEY_MISSING")
            secretos_actualizados.append(campo)

    ts = now_iso()
    merged["tenant_id"] = tenant_id
    merged["updated_at"] = ts
    merged["created_at"] = actual.get("created_at") or ts

    columnas = ("tenant_id",) + CAMPOS_EDITABLES + (
        "cert_subject", "cert_serial", "cert_not_before", "cert_not_after", "cert_pem_enc",
        "private_key_enc", "passphrase_enc", "csc_enc", "created_at", "updated_at",
    )
    valores = tuple(merged.get(c) for c in columnas)
    updates = ", ".join(f"{c}=excluded.{c}" for c in columnas if c not in ("tenant_id", "created_at"))
    con.execute(
        f"""
        INSERT INTO sifen_config ({", ".join(columnas)})
        VALUES ({", ".join("?" for _ in columnas)})
        ON CONFLICT(tenant_id) DO UPDATE SET {updates}
        """,
        valores,
    )
    log_audit(
        con,
        tenant_id=tenant_id,
        accion="SIFEN_CONFIG_UPDATED",
        entidad_tipo="sifen_config",
        entidad_id=tenant_id,
        usuario_id=usuario_id,
        ip_address=ip_address,
        user_agent=user_agent,
        detalles={
            "ambiente": merged["ambiente"],
            "ambiente_anterior": ambiente_anterior,
            "secretos_actualizados": secretos_actualizados,
        },
    )
    con.commit()
    logger.info(f"Config SIFEN actualizada tenant={tenant_id} ambiente={merged['ambiente']}")
    return obtener_config(con, tenant_id)


def cargar_material_firma(
    con: sqlite3.Connection,
    tenant_id: str,
    clave_maestra: str,
    requiere_csc: bool = True,
) -> Dict[str, Any]:
    """
    Material de firma descifrado: cert_pem, private_key_pem, passphrase, csc, csc_id.

    Falla con SigningError si falta algo o no se puede descifrar.
    """
    fila = _fila(con, tenant_id)
    if not fila:
        raise SigningError(f"El tenant {tenant_id} no tiene configuración SIFEN", code="CONFIG_MISSING")
    if not fila.get("cert_pem_enc"):
        raise SigningError("Certificado no configurado", code="CERT_MISSING")
    if not fila.get("private_key_enc"):
        raise SigningError("Clave privada no configurada", code="KEY_MISSING")
    if requiere_csc and not fila.get("csc_enc"):
        raise SigningError("CSC no configurado (requerido para el QR)", code="CSC_MISSING")

    try:
        cert_pem = descifrar(fila["cert_pem_enc"], clave_maestra)
        private_key_pem = descifrar(fila["private_key_enc"], clave_maestra)
        passphrase = descifrar(fila["passphrase_enc"], clave_maestra) if fila.get("passphrase_enc") else None
        csc = descifrar(fila["csc_enc"], clave_maestra) if fila.get("csc_enc") else None
    except ValueError as e:
        raise SigningError(f"No se pudo descifrar el material de firma: {e}", code="DECRYPT_FAILED")

    return {
        "ambiente": fila["ambiente"],
        "cert_pem": cert_pem,
        "private_key_pem": private_key_pem,
        "passphrase": passphrase,
        "csc": csc,
        "csc_id": fila.get("csc_id") or "0001",
    }
