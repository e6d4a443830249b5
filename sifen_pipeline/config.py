"""
Configuración del proceso (variables de entorno / .env)
"""
import os
import logging
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

AMBIENTE_HOMOLOGACION = "HOMOLOGACION"
AMBIENTE_PRODUCCION = "PRODUCCION"
AMBIENTES = (AMBIENTE_HOMOLOGACION, AMBIENTE_PRODUCCION)

# Servicios Web SOAP según Manual Técnico SIFEN V150
SOAP_SERVICES: Dict[str, Dict[str, str]] = {
    AMBIENTE_HOMOLOGACION: {
        "recibe_lote": "https://sifen-test.set.gov.py/de/ws/async/recibe-lote.wsdl",
        "consulta_lote": "https://sifen-test.set.gov.py/de/ws/consultas/consulta-lote.wsdl",
        "consulta": "https://sifen-test.set.gov.py/de/ws/consultas/consulta.wsdl",
        "evento": "https://sifen-test.set.gov.py/de/ws/eventos/evento.wsdl",
    },
    AMBIENTE_PRODUCCION: {
        "recibe_lote": "https://sifen.set.gov.py/de/ws/async/recibe-lote.wsdl",
        "consulta_lote": "https://sifen.set.gov.py/de/ws/consultas/consulta-lote.wsdl",
        "consulta": "https://sifen.set.gov.py/de/ws/consultas/consulta.wsdl",
        "evento": "https://sifen.set.gov.py/de/ws/eventos/evento.wsdl",
    },
}

# Clave de servicio -> columna en sifen_config
WS_URL_COLUMNS = {
    "recibe_lote": "ws_url_recibe_lote",
    "consulta_lote": "ws_url_consulta_lote",
    "consulta": "ws_url_consulta",
    "evento": "ws_url_evento",
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def default_ws_urls(ambiente: str) -> Dict[str, str]:
    """URLs por defecto de cada servicio según ambiente, con nombre de columna."""
    if ambiente not in SOAP_SERVICES:
        raise ValueError(f"Ambiente inválido: {ambiente}. Debe ser {' o '.join(AMBIENTES)}")
    return {WS_URL_COLUMNS[key]: url for key, url in SOAP_SERVICES[ambiente].items()}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} debe ser entero, recibido: {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "si", "on")


class Settings:
    """Parámetros del proceso leídos del entorno"""

    def __init__(self):
        self.db_path = os.getenv("SIFEN_DB_PATH", os.path.join(os.getcwd(), "sifen.db"))
        self.encryption_key = os.getenv("SIFEN_ENCRYPTION_KEY", "")

        # Timeouts HTTP hacia la SET (connect, read)
        self.connect_timeout = _env_int("SIFEN_SOAP_TIMEOUT_CONNECT", 15)
        self.read_timeout = _env_int("SIFEN_SOAP_TIMEOUT_READ", 45)

        # Lotes
        self.lote_max_docs = _env_int("SIFEN_LOTE_MAX_DOCS", 50)
        self.lote_created_timeout = _env_int("SIFEN_LOTE_CREATED_TIMEOUT", 900)
        self.lote_consulta_cdc_after = _env_int("SIFEN_LOTE_CONSULTA_CDC_AFTER", 3600)
        self.poll_base_sec = _env_int("SIFEN_POLL_BASE_SEC", 30)
        self.poll_max_sec = _env_int("SIFEN_POLL_MAX_SEC", 900)

        # Jobs / worker
        self.job_max_intentos = _env_int("SIFEN_JOB_MAX_INTENTOS", 3)
        self.job_backoff_sec = _env_int("SIFEN_JOB_BACKOFF_SEC", 60)
        # RUNNING por más que esto = worker caído; debe superar los timeouts SOAP
        self.job_running_timeout = _env_int("SIFEN_JOB_RUNNING_TIMEOUT", 600)
        self.scheduler_interval = _env_int("SIFEN_SCHEDULER_INTERVAL", 60)
        self.worker_enabled = _env_bool("SIFEN_WORKER_ENABLED", False)

        self.log_level = (os.getenv("SIFEN_LOG_LEVEL") or "INFO").strip().upper()

    @property
    def timeouts(self) -> tuple:
        return (self.connect_timeout, self.read_timeout)


_SETTINGS: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    global _SETTINGS
    if _SETTINGS is None or reload:
        _SETTINGS = Settings()
    return _SETTINGS


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or get_settings().log_level), logging.INFO),
        format=LOG_FORMAT,
    )
