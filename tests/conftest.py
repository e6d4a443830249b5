from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import pytest

from sifen_pipeline.config import get_settings
from sifen_pipeline.db import connect, init_schema
from sifen_pipeline.numeracion import crear_serie
from sifen_pipeline.tenant_config import guardar_config

from _sifen_fakes import CLAVE_MAESTRA, TENANT, config_tenant, serie


@pytest.fixture
def con(tmp_path):
    conexion = connect(str(tmp_path / "sifen.db"))
    init_schema(conexion)
    yield conexion
    conexion.close()


@pytest.fixture
def tenant(con):
    """Tenant configurado con certificado, CSC y serie abierta de facturas."""
    guardar_config(con, TENANT, config_tenant(), clave_maestra=CLAVE_MAESTRA)
    crear_serie(con, TENANT, serie("1"))
    return TENANT


@pytest.fixture
def webapp(tmp_path, monkeypatch):
    from webui import app as webui_app

    monkeypatch.setattr(webui_app, "DB_PATH", str(tmp_path / "webui.db"))
    monkeypatch.setenv("SIFEN_ENCRYPTION_KEY", CLAVE_MAESTRA)
    monkeypatch.setenv("SIFEN_WORKER_ENABLED", "0")
    get_settings(reload=True)
    with webui_app.app.app_context():
        webui_app.init_db()
    yield webui_app
    get_settings(reload=True)


@pytest.fixture
def client(webapp):
    return webapp.app.test_client()
