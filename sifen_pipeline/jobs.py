"""
Cola persistente de jobs (tabla `jobs`).

Cada job tiene un tipo, un payload JSON y un contador de intentos. Un worker
toma el siguiente job vencido con BEGIN IMMEDIATE, lo ejecuta con el handler
registrado para su tipo y lo marca DONE, PENDING (reintento con backoff) o
FAILED.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .db import dumps, loads, now_iso, row_to_dict, transaccion
from .exceptions import InvalidStateError

logger = logging.getLogger(__name__)

JOB_EMITIR_DE = "SIFEN_EMITIR_DE"
JOB_ENVIAR_LOTE = "SIFEN_ENVIAR_LOTE"
JOB_CONSULTAR_LOTE = "SIFEN_CONSULTAR_LOTE"
TIPOS_JOB = (JOB_EMITIR_DE, JOB_ENVIAR_LOTE, JOB_CONSULTAR_LOTE)

JOB_PENDING = "PENDING"
JOB_RUNNING = "RUNNING"
JOB_DONE = "DONE"
JOB_FAILED = "FAILED"

Handler = Callable[[sqlite3.Connection, Dict[str, Any]], Any]


def crear_job(
    con: sqlite3.Connection,
    tenant_id: str,
    tipo_job: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    max_intentos: int = 3,
    ahora: Optional[datetime] = None,
) -> int:
    if tipo_job not in TIPOS_JOB:
        raise ValueError(f"tipo_job desconocido: {tipo_job}")
    with transaccion(con):
        cur = con.execute(
            """
            INSERT INTO jobs (tenant_id, tipo_job, payload, estado, intentos, max_intentos, next_run_at, created_at)
            VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (tenant_id, tipo_job, dumps(payload or {}), JOB_PENDING, max_intentos, now_iso(ahora), now_iso(ahora)),
        )
    logger.info(f"Job {cur.lastrowid} {tipo_job} creado para tenant {tenant_id}")
    return cur.lastrowid


def job_pendiente(con: sqlite3.Connection, tenant_id: str, tipo_job: str, clave: str, valor: Any) -> bool:
    """True si ya hay un job PENDING/RUNNING del tipo con payload[clave] == valor."""
    row = con.execute(
        f"""
        SELECT 1 FROM jobs
        WHERE tenant_id=? AND tipo_job=? AND estado IN (?, ?)
          AND json_extract(payload, '$.{clave}') = ?
        LIMIT 1
        """,
        (tenant_id, tipo_job, JOB_PENDING, JOB_RUNNING, valor),
    ).fetchone()
    return row is not None


def obtener_job(con: sqlite3.Connection, job_id: int) -> Optional[Dict[str, Any]]:
    job = row_to_dict(con.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())
    if job is not None:
        job["payload"] = loads(job["payload"], {})
    return job


def tomar_siguiente_job(con: sqlite3.Connection, ahora: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Reserva el job PENDING más antiguo ya vencido (PENDING -> RUNNING)."""
    with transaccion(con):
        row = con.execute(
            """
            SELECT * FROM jobs
            WHERE estado=? AND next_run_at <= ?
            ORDER BY next_run_at, id
            LIMIT 1
            """,
            (JOB_PENDING, now_iso(ahora)),
        ).fetchone()
        if row is None:
            return None
        con.execute(
            "UPDATE jobs SET estado=?, intentos=intentos+1, last_run_at=? WHERE id=? AND estado=?",
            (JOB_RUNNING, now_iso(ahora), row["id"], JOB_PENDING),
        )
    job = row_to_dict(row)
    job["payload"] = loads(job["payload"], {})
    job["intentos"] = (job["intentos"] or 0) + 1
    job["estado"] = JOB_RUNNING
    return job


def recuperar_jobs_colgados(
    con: sqlite3.Connection,
    vencimiento_sec: int,
    ahora: Optional[datetime] = None,
) -> int:
    """
    Jobs RUNNING sin terminar tras `vencimiento_sec` (proceso caído a mitad
    de una llamada): vuelven a PENDING, o FAILED si ya agotaron los intentos.
    """
    ahora = ahora or datetime.now()
    limite = now_iso(ahora - timedelta(seconds=vencimiento_sec))
    with transaccion(con):
        colgados = con.execute(
            "SELECT id, tipo_job, intentos, max_intentos FROM jobs WHERE estado=? AND last_run_at < ?",
            (JOB_RUNNING, limite),
        ).fetchall()
        for job in colgados:
            estado = JOB_FAILED if job["intentos"] >= job["max_intentos"] else JOB_PENDING
            con.execute(
                "UPDATE jobs SET estado=?, next_run_at=?, error_message=? WHERE id=? AND estado=?",
                (estado, now_iso(ahora), f"Sin terminar luego de {vencimiento_sec}s", job["id"], JOB_RUNNING),
            )
            logger.warning(f"Job {job['id']} {job['tipo_job']} colgado en RUNNING -> {estado}")
    return len(colgados)


def marcar_job_hecho(con: sqlite3.Connection, job_id: int, nota: Optional[str] = None) -> None:
    with transaccion(con):
        con.execute("UPDATE jobs SET estado=?, error_message=? WHERE id=?", (JOB_DONE, nota, job_id))


def marcar_job_fallido(
    con: sqlite3.Connection,
    job: Dict[str, Any],
    mensaje: str,
    *,
    backoff_sec: int = 60,
    ahora: Optional[datetime] = None,
) -> str:
    """
    Reintento con backoff_sec * 2^(intentos-1); FAILED al agotar max_intentos.
    Devuelve el estado final del job.
    """
    ahora = ahora or datetime.now()
    intentos = job.get("intentos") or 1
    if intentos >= (job.get("max_intentos") or 1):
        estado, proximo = JOB_FAILED, job.get("next_run_at") or now_iso(ahora)
    else:
        estado = JOB_PENDING
        proximo = now_iso(ahora + timedelta(seconds=backoff_sec * (2 ** max(0, intentos - 1))))
    with transaccion(con):
        con.execute(
            "UPDATE jobs SET estado=?, error_message=?, next_run_at=? WHERE id=?",
            (estado, mensaje[:1000], proximo, job["id"]),
        )
    if estado == JOB_FAILED:
        logger.error(f"Job {job['id']} {job['tipo_job']} FAILED tras {intentos} intentos: {mensaje}")
    else:
        logger.warning(f"Job {job['id']} {job['tipo_job']} reintento {intentos} en {proximo}: {mensaje}")
    return estado


def ejecutar_job(
    con: sqlite3.Connection,
    job: Dict[str, Any],
    handlers: Dict[str, Handler],
    *,
    backoff_sec: int = 60,
    ahora: Optional[datetime] = None,
    al_fallar: Optional[Callable[[sqlite3.Connection, Dict[str, Any], str], None]] = None,
) -> str:
    """
    Ejecuta un job ya reservado. Ninguna excepción sale de acá: se registra en
    el job. `al_fallar` se invoca cuando el job queda FAILED.
    """
    handler = handlers.get(job["tipo_job"])
    if handler is None:
        return marcar_job_fallido(
            con, {**job, "max_intentos": job["intentos"]}, f"Sin handler para {job['tipo_job']}", ahora=ahora
        )
    try:
        handler(con, job)
    except InvalidStateError as exc:
        if con.in_transaction:
            con.rollback()
        logger.info(f"Job {job['id']} {job['tipo_job']}: nada que hacer ({exc.message})")
        marcar_job_hecho(con, job["id"], nota=exc.message)
        return JOB_DONE
    except Exception as exc:
        if con.in_transaction:
            con.rollback()
        logger.exception(f"Job {job['id']} {job['tipo_job']} falló")
        estado = marcar_job_fallido(con, job, str(exc) or exc.__class__.__name__, backoff_sec=backoff_sec, ahora=ahora)
        if estado == JOB_FAILED and al_fallar is not None:
            try:
                al_fallar(con, job, str(exc))
            except Exception:
                if con.in_transaction:
                    con.rollback()
                logger.exception(f"Job {job['id']}: error al registrar el fallo definitivo")
        return estado
    marcar_job_hecho(con, job["id"])
    return JOB_DONE


def procesar_jobs(
    con: sqlite3.Connection,
    handlers: Dict[str, Handler],
    *,
    limite: int = 20,
    backoff_sec: int = 60,
    ahora: Optional[datetime] = None,
    al_fallar: Optional[Callable[[sqlite3.Connection, Dict[str, Any], str], None]] = None,
) -> int:
    """Ejecuta hasta `limite` jobs vencidos. Devuelve cuántos se procesaron."""
    procesados = 0
    while procesados < limite:
        job = tomar_siguiente_job(con, ahora)
        if job is None:
            break
        ejecutar_job(con, job, handlers, backoff_sec=backoff_sec, ahora=ahora, al_fallar=al_fallar)
        procesados += 1
    return procesados
