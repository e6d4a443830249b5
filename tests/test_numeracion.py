from pathlib import Path
import sys
import threading
from datetime import date

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from sifen_pipeline.builder import crear_documento
from sifen_pipeline.db import connect, init_schema
from sifen_pipeline.exceptions import ConflictError, NoActiveSeriesError, ValidationError
from sifen_pipeline.numeracion import asignar_numero, crear_serie, eliminar_serie, listar_series

from _sifen_fakes import TENANT, factura, serie


def _ultimo(con, serie_id):
    return con.execute("SELECT ultimo_numero FROM sifen_numeracion WHERE id=?", (serie_id,)).fetchone()[0]


def test_asignacion_secuencial_sin_huecos(con):
    s = crear_serie(con, TENANT, serie("1"))
    numeros = [asignar_numero(con, TENANT, "1", "001", "001").numero for _ in range(5)]

    assert numeros == ["0000001", "0000002", "0000003", "0000004", "0000005"]
    assert _ultimo(con, s["id"]) == 5


def test_asignacion_devuelve_timbrado_de_la_serie(con):
    crear_serie(con, TENANT, serie("1", timbrado="87654321", ultimo_numero=41))
    asignacion = asignar_numero(con, TENANT, "1", "001", "001")

    assert asignacion.timbrado == "87654321"
    assert asignacion.numero == "0000042"


def test_asignacion_concurrente_sin_duplicados(tmp_path):
    db_path = str(tmp_path / "concurrente.db")
    setup = connect(db_path)
    init_schema(setup)
    crear_serie(setup, TENANT, serie("1"))
    setup.close()

    numeros = []
    errores = []
    lock = threading.Lock()

    def worker():
        local = connect(db_path)
        try:
            for _ in range(10):
                n = asignar_numero(local, TENANT, "1", "001", "001").numero
                with lock:
                    numeros.append(int(n))
        except Exception as exc:
            errores.append(exc)
        finally:
            local.close()

    hilos = [threading.Thread(target=worker) for _ in range(6)]
    for h in hilos:
        h.start()
    for h in hilos:
        h.join()

    assert errores == []
    assert sorted(numeros) == list(range(1, 61))


def test_serie_vencida_no_asigna(con):
    crear_serie(con, TENANT, serie("1", inicio_vigencia="2020-01-01", fin_vigencia="2020-12-31"))

    with pytest.raises(NoActiveSeriesError) as exc:
        asignar_numero(con, TENANT, "1", "001", "001", hoy=date(2025, 1, 15))
    assert "fuera de vigencia" in exc.value.message


def test_serie_agotada_no_asigna(con):
    crear_serie(con, TENANT, serie("1", ultimo_numero=3, numero_maximo=3))

    with pytest.raises(NoActiveSeriesError) as exc:
        asignar_numero(con, TENANT, "1", "001", "001")
    assert "agotada" in exc.value.message


def test_sin_serie_para_la_clave(con):
    crear_serie(con, TENANT, serie("1"))

    with pytest.raises(NoActiveSeriesError):
        asignar_numero(con, TENANT, "1", "001", "002")
    with pytest.raises(NoActiveSeriesError):
        asignar_numero(con, "otro-tenant", "1", "001", "001")


def test_serie_vencida_no_crea_documento(con, tenant):
    con.execute("UPDATE sifen_numeracion SET fin_vigencia='2020-12-31', inicio_vigencia='2020-01-01'")
    con.commit()

    with pytest.raises(NoActiveSeriesError):
        crear_documento(con, tenant, factura())
    assert con.execute("SELECT COUNT(*) FROM sifen_de").fetchone()[0] == 0


def test_crear_serie_con_otra_abierta_es_conflicto(con):
    crear_serie(con, TENANT, serie("1"))

    with pytest.raises(ConflictError) as exc:
        crear_serie(con, TENANT, serie("1", timbrado="99999999"))
    assert exc.value.code == "SERIE_ABIERTA"


def test_crear_serie_futura_que_se_superpone_es_conflicto(con):
    hoy = date(2025, 1, 15)
    crear_serie(con, TENANT, serie("1", inicio_vigencia="2025-01-01", fin_vigencia="2025-12-31"), hoy=hoy)

    with pytest.raises(ConflictError) as exc:
        crear_serie(con, TENANT, serie("1", timbrado="99999999", inicio_vigencia="2025-06-01"), hoy=hoy)
    assert exc.value.code == "SERIE_SOLAPADA"

    siguiente = crear_serie(
        con, TENANT, serie("1", timbrado="99999999", inicio_vigencia="2026-01-01"), hoy=hoy
    )
    assert siguiente["timbrado"] == "99999999"
    assert asignar_numero(con, TENANT, "1", "001", "001", hoy=hoy).timbrado == "12345678"
    assert asignar_numero(con, TENANT, "1", "001", "001", hoy=date(2026, 2, 1)).timbrado == "99999999"


def test_crear_serie_futura_que_se_superpone_con_otra_futura(con):
    hoy = date(2025, 1, 15)
    crear_serie(con, TENANT, serie("1", inicio_vigencia="2025-03-01"), hoy=hoy)

    with pytest.raises(ConflictError) as exc:
        crear_serie(con, TENANT, serie("1", timbrado="99999999", inicio_vigencia="2025-05-01"), hoy=hoy)
    assert exc.value.code == "SERIE_SOLAPADA"


def test_crear_serie_nueva_si_la_anterior_vencio(con):
    crear_serie(con, TENANT, serie("1", inicio_vigencia="2020-01-01", fin_vigencia="2020-12-31"))
    nueva = crear_serie(con, TENANT, serie("1", timbrado="99999999"), hoy=date(2025, 1, 15))

    assert nueva["timbrado"] == "99999999"
    assert asignar_numero(con, TENANT, "1", "001", "001", hoy=date(2025, 1, 15)).timbrado == "99999999"


def test_crear_serie_valida_campos(con):
    with pytest.raises(ValidationError):
        crear_serie(con, TENANT, serie("1", timbrado="123"))
    with pytest.raises(ValidationError):
        crear_serie(con, TENANT, serie("1", establecimiento="1234"))
    with pytest.raises(ValidationError):
        crear_serie(con, TENANT, serie("1", ultimo_numero=10, numero_maximo=5))


def test_eliminar_serie_sin_documentos(con):
    s = crear_serie(con, TENANT, serie("1"))
    eliminar_serie(con, TENANT, s["id"])
    assert listar_series(con, TENANT) == []


def test_eliminar_serie_con_documentos_es_conflicto(con, tenant):
    crear_documento(con, tenant, factura())
    s = listar_series(con, tenant)[0]

    with pytest.raises(ConflictError) as exc:
        eliminar_serie(con, tenant, s["id"])
    assert exc.value.code == "SERIE_EN_USO"
    assert listar_series(con, tenant)[0]["documentos"] == 1


def test_listar_series_marca_abiertas(con):
    crear_serie(con, TENANT, serie("1"))
    crear_serie(con, TENANT, serie("5", ultimo_numero=1, numero_maximo=1))
    series = {s["tipo_documento"]: s for s in listar_series(con, TENANT)}

    assert series["1"]["abierta"] is True
    assert series["5"]["abierta"] is False
