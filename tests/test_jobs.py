from pathlib import Path
import sys
from datetime import datetime, timedelta

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from sifen_pipeline.builder import crear_documento
from sifen_pipeline.config import Settings
from sifen_pipeline.exceptions import InvalidStateError
from sifen_pipeline.jobs import (
    JOB_CONSULTAR_LOTE, JOB_EMITIR_DE, JOB_ENVIAR_LOTE, crear_job, job_pendiente, obtener_job, procesar_jobs,
    recuperar_jobs_colgados, tomar_siguiente_job,
)
from sifen_pipeline.lotes import obtener_lote
from sifen_pipeline.signer import emitir_documento
from sifen_pipeline.worker import PipelineWorker

from _sifen_fakes import CLAVE_MAESTRA, FakeSifenClient, factura

T0 = datetime(2025, 1, 15, 10, 0, 0)


def _settings(**overrides):
    settings = Settings()
    settings.poll_base_sec = 30
    settings.poll_max_sec = 900
    settings.job_max_intentos = 3
    settings.job_backoff_sec = 60
    settings.job_running_timeout = 600
    settings.lote_created_timeout = 900
    settings.lote_consulta_cdc_after = 3600
    settings.lote_max_docs = 50
    for k, v in overrides.items():
        setattr(settings, k, v)
    return settings


def _worker(cliente, **overrides):
    return PipelineWorker(lambda con, tenant_id: cliente, _settings(**overrides), CLAVE_MAESTRA)


def _estado(con, de_id):
    return con.execute("SELECT estado FROM sifen_de WHERE id=?", (de_id,)).fetchone()[0]


def test_reintento_con_backoff_hasta_failed(con):
    def falla(con, job):
        raise RuntimeError("SET caída")

    job_id = crear_job(con, "t1", JOB_EMITIR_DE, {"de_id": 1}, max_intentos=3, ahora=T0)
    handlers = {JOB_EMITIR_DE: falla}

    assert procesar_jobs(con, handlers, backoff_sec=60, ahora=T0) == 1
    job = obtener_job(con, job_id)
    assert job["estado"] == "PENDING"
    assert job["intentos"] == 1
    assert job["next_run_at"] == (T0 + timedelta(seconds=60)).isoformat()
    assert job["error_message"] == "SET caída"

    assert procesar_jobs(con, handlers, backoff_sec=60, ahora=T0 + timedelta(seconds=59)) == 0

    procesar_jobs(con, handlers, backoff_sec=60, ahora=T0 + timedelta(seconds=60))
    job = obtener_job(con, job_id)
    assert job["intentos"] == 2
    assert job["next_run_at"] == (T0 + timedelta(seconds=180)).isoformat()

    procesar_jobs(con, handlers, backoff_sec=60, ahora=T0 + timedelta(seconds=180))
    job = obtener_job(con, job_id)
    assert job["estado"] == "FAILED"
    assert job["intentos"] == 3

    assert procesar_jobs(con, handlers, ahora=T0 + timedelta(days=1)) == 0


def test_estado_invalido_cierra_el_job(con):
    def nada_que_hacer(con, job):
        raise InvalidStateError("Lote ya enviado", estado_actual="SENT")

    job_id = crear_job(con, "t1", JOB_ENVIAR_LOTE, {"lote_id": 7}, ahora=T0)
    procesar_jobs(con, {JOB_ENVIAR_LOTE: nada_que_hacer}, ahora=T0)

    job = obtener_job(con, job_id)
    assert job["estado"] == "DONE"
    assert job["error_message"] == "Lote ya enviado"


def test_job_sin_handler_falla(con):
    job_id = crear_job(con, "t1", JOB_CONSULTAR_LOTE, {"lote_id": 1}, ahora=T0)
    procesar_jobs(con, {}, ahora=T0)
    assert obtener_job(con, job_id)["estado"] == "FAILED"


def test_tipo_de_job_desconocido(con):
    with pytest.raises(ValueError):
        crear_job(con, "t1", "OTRO", {})


def test_job_pendiente_por_payload(con):
    crear_job(con, "t1", JOB_ENVIAR_LOTE, {"lote_id": 5})

    assert job_pendiente(con, "t1", JOB_ENVIAR_LOTE, "lote_id", 5)
    assert not job_pendiente(con, "t1", JOB_ENVIAR_LOTE, "lote_id", 6)
    assert not job_pendiente(con, "t2", JOB_ENVIAR_LOTE, "lote_id", 5)


def test_emision_asincronica(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    worker = _worker(FakeSifenClient())

    job_id = worker.encolar_emision(con, tenant, de_id)
    worker.procesar(con)

    assert obtener_job(con, job_id)["estado"] == "DONE"
    assert _estado(con, de_id) == "ENQUEUED"


def test_tick_envia_y_consulta(con, tenant):
    cliente = FakeSifenClient()
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    worker = _worker(cliente)

    resumen = worker.tick(con, ahora=T0)
    assert resumen["envios_programados"] == 1
    assert resumen["jobs_procesados"] == 1
    assert _estado(con, de_id) == "SENT"
    assert cliente.llamadas == ["recibe_lote"]

    resumen = worker.tick(con, ahora=T0 + timedelta(seconds=10))
    assert resumen["consultas_programadas"] == 0

    resumen = worker.tick(con, ahora=T0 + timedelta(seconds=30))
    assert resumen["consultas_programadas"] == 1
    assert _estado(con, de_id) == "APPROVED"
    assert cliente.llamadas == ["recibe_lote", "consulta_lote"]

    resumen = worker.tick(con, ahora=T0 + timedelta(seconds=60))
    assert not any(resumen.values())


def test_tick_no_duplica_envios_pendientes(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    worker = _worker(FakeSifenClient(error_transporte=True))

    worker.tick(con, ahora=T0)
    resumen = worker.tick(con, ahora=T0 + timedelta(seconds=10))

    assert resumen["envios_programados"] == 0
    assert resumen["jobs_procesados"] == 0
    total = con.execute("SELECT COUNT(*) FROM jobs WHERE tipo_job=?", (JOB_ENVIAR_LOTE,)).fetchone()[0]
    assert total == 1
    assert _estado(con, de_id) == "IN_LOTE"


def test_envio_agotado_marca_lote_en_error(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    worker = _worker(FakeSifenClient(error_transporte=True), job_max_intentos=1)

    worker.tick(con, ahora=T0)

    lote_id = con.execute("SELECT id FROM sifen_lote").fetchone()[0]
    lote = obtener_lote(con, tenant, lote_id)
    assert lote["estado"] == "ERROR"
    assert "Envío fallido" in lote["error_mensaje"]
    assert _estado(con, de_id) == "ERROR"
    job = con.execute("SELECT estado FROM jobs WHERE tipo_job=?", (JOB_ENVIAR_LOTE,)).fetchone()
    assert job["estado"] == "FAILED"


def test_job_colgado_en_running_vuelve_a_pending(con):
    job_id = crear_job(con, "t1", JOB_CONSULTAR_LOTE, {"lote_id": 1}, max_intentos=3, ahora=T0)
    tomar_siguiente_job(con, ahora=T0)

    assert recuperar_jobs_colgados(con, 600, ahora=T0 + timedelta(seconds=599)) == 0
    assert obtener_job(con, job_id)["estado"] == "RUNNING"

    assert recuperar_jobs_colgados(con, 600, ahora=T0 + timedelta(seconds=601)) == 1
    job = obtener_job(con, job_id)
    assert job["estado"] == "PENDING"
    assert job["intentos"] == 1
    assert "600s" in job["error_message"]


def test_job_colgado_sin_intentos_queda_failed(con):
    job_id = crear_job(con, "t1", JOB_ENVIAR_LOTE, {"lote_id": 1}, max_intentos=1, ahora=T0)
    tomar_siguiente_job(con, ahora=T0)

    recuperar_jobs_colgados(con, 600, ahora=T0 + timedelta(hours=1))
    assert obtener_job(con, job_id)["estado"] == "FAILED"


def test_tick_retoma_consulta_de_job_colgado(con, tenant):
    cliente = FakeSifenClient()
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    worker = _worker(cliente, job_running_timeout=600)

    worker.tick(con, ahora=T0)
    assert _estado(con, de_id) == "SENT"
    lote_id = con.execute("SELECT id FROM sifen_lote").fetchone()[0]

    # el worker muere con la consulta en curso
    t1 = T0 + timedelta(seconds=30)
    crear_job(con, tenant, JOB_CONSULTAR_LOTE, {"lote_id": lote_id}, ahora=t1)
    assert tomar_siguiente_job(con, ahora=t1)["estado"] == "RUNNING"

    resumen = worker.tick(con, ahora=t1 + timedelta(seconds=60))
    assert resumen["jobs_recuperados"] == 0
    assert resumen["consultas_programadas"] == 0
    assert _estado(con, de_id) == "SENT"

    resumen = worker.tick(con, ahora=t1 + timedelta(hours=1))
    assert resumen["jobs_recuperados"] == 1
    assert resumen["jobs_procesados"] == 1
    assert _estado(con, de_id) == "APPROVED"
    assert cliente.llamadas == ["recibe_lote", "consulta_lote"]


def test_error_de_transporte_queda_anotado_en_el_lote(con, tenant):
    de_id = crear_documento(con, tenant, factura())
    emitir_documento(con, tenant, de_id, clave_maestra=CLAVE_MAESTRA)
    worker = _worker(FakeSifenClient(error_transporte=True))

    worker.tick(con, ahora=T0)

    lote_id = con.execute("SELECT id FROM sifen_lote").fetchone()[0]
    lote = obtener_lote(con, tenant, lote_id)
    assert lote["estado"] == "CREATED"
    assert "Timeout en recibe_lote" in lote["error_mensaje"]
    job = con.execute("SELECT estado, error_message FROM jobs WHERE tipo_job=?", (JOB_ENVIAR_LOTE,)).fetchone()
    assert job["estado"] == "PENDING"
