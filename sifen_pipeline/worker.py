"""
Worker del pipeline: handlers de cada tipo de job y el tick del scheduler.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config import Settings
from .db import now_iso
from .estados import DE_ENQUEUED, DE_SIGNED, LOTE_CREATED, LOTE_PROCESSING, LOTE_SENT
from .jobs import (
    JOB_CONSULTAR_LOTE, JOB_EMITIR_DE, JOB_ENVIAR_LOTE, crear_job, job_pendiente, procesar_jobs,
    recuperar_jobs_colgados,
)
from .lotes import armar_lote, liberar_lotes_vencidos
from .poller import consultar_lote
from .signer import emitir_documento
from .transmitter import enviar_lote, marcar_lote_error

logger = logging.getLogger(__name__)

# (con, tenant_id) -> cliente SOAP (context manager)
FabricaCliente = Callable[[sqlite3.Connection, str], Any]


class PipelineWorker:
    """Ejecuta los jobs SIFEN_* y programa envíos y consultas de lotes."""

    def __init__(self, fabrica_cliente: FabricaCliente, settings: Settings, clave_maestra: str):
        self.fabrica_cliente = fabrica_cliente
        self.settings = settings
        self.clave_maestra = clave_maestra
        self._ahora: Optional[datetime] = None

    @property
    def handlers(self) -> Dict[str, Callable[[sqlite3.Connection, Dict[str, Any]], Any]]:
        return {
            JOB_EMITIR_DE: self._emitir_de,
            JOB_ENVIAR_LOTE: self._enviar_lote,
            JOB_CONSULTAR_LOTE: self._consultar_lote,
        }

    def _emitir_de(self, con: sqlite3.Connection, job: Dict[str, Any]) -> None:
        emitir_documento(
            con, job["tenant_id"], int(job["payload"]["de_id"]),
            clave_maestra=self.clave_maestra, ahora=self._ahora,
        )

    def _enviar_lote(self, con: sqlite3.Connection, job: Dict[str, Any]) -> None:
        with self.fabrica_cliente(con, job["tenant_id"]) as cliente:
            enviar_lote(
                con, job["tenant_id"], int(job["payload"]["lote_id"]), cliente,
                espera_consulta_sec=self.settings.poll_base_sec,
                reserva_vencida_sec=self.settings.job_running_timeout,
                ahora=self._ahora,
            )

    def _consultar_lote(self, con: sqlite3.Connection, job: Dict[str, Any]) -> None:
        with self.fabrica_cliente(con, job["tenant_id"]) as cliente:
            consultar_lote(
                con, job["tenant_id"], int(job["payload"]["lote_id"]), cliente,
                poll_base_sec=self.settings.poll_base_sec,
                poll_max_sec=self.settings.poll_max_sec,
                fallback_despues_sec=self.settings.lote_consulta_cdc_after,
                ahora=self._ahora,
            )

    def _al_fallar(self, con: sqlite3.Connection, job: Dict[str, Any], mensaje: str) -> None:
        """Reintentos agotados en el envío: el lote y sus DE pasan a ERROR."""
        if job["tipo_job"] != JOB_ENVIAR_LOTE:
            return
        lote_id = int(job["payload"]["lote_id"])
        row = con.execute("SELECT estado FROM sifen_lote WHERE id=?", (lote_id,)).fetchone()
        if row is not None and row["estado"] == LOTE_CREATED:
            marcar_lote_error(con, lote_id, f"Envío fallido tras {job['intentos']} intentos: {mensaje}", ahora=self._ahora)

    def encolar_emision(self, con: sqlite3.Connection, tenant_id: str, de_id: int) -> int:
        return crear_job(
            con, tenant_id, JOB_EMITIR_DE, {"de_id": de_id},
            max_intentos=self.settings.job_max_intentos, ahora=self._ahora,
        )

    def _programar_envios(self, con: sqlite3.Connection) -> int:
        creados = 0
        tenants = [
            r["tenant_id"] for r in con.execute(
                "SELECT DISTINCT tenant_id FROM sifen_de WHERE estado IN (?, ?) ORDER BY tenant_id",
                (DE_SIGNED, DE_ENQUEUED),
            ).fetchall()
        ]
        for tenant_id in tenants:
            armar_lote(con, tenant_id, self.settings.lote_max_docs, self._ahora)

        for lote in con.execute(
            "SELECT id, tenant_id FROM sifen_lote WHERE estado=? ORDER BY id", (LOTE_CREATED,)
        ).fetchall():
            if not job_pendiente(con, lote["tenant_id"], JOB_ENVIAR_LOTE, "lote_id", lote["id"]):
                crear_job(
                    con, lote["tenant_id"], JOB_ENVIAR_LOTE, {"lote_id": lote["id"]},
                    max_intentos=self.settings.job_max_intentos, ahora=self._ahora,
                )
                creados += 1
        return creados

    def _programar_consultas(self, con: sqlite3.Connection) -> int:
        creados = 0
        for lote in con.execute(
            """
            SELECT id, tenant_id FROM sifen_lote
            WHERE estado IN (?, ?) AND (proxima_consulta_at IS NULL OR proxima_consulta_at <= ?)
            ORDER BY id
            """,
            (LOTE_SENT, LOTE_PROCESSING, now_iso(self._ahora)),
        ).fetchall():
            if not job_pendiente(con, lote["tenant_id"], JOB_CONSULTAR_LOTE, "lote_id", lote["id"]):
                crear_job(
                    con, lote["tenant_id"], JOB_CONSULTAR_LOTE, {"lote_id": lote["id"]},
                    max_intentos=self.settings.job_max_intentos, ahora=self._ahora,
                )
                creados += 1
        return creados

    def procesar(self, con: sqlite3.Connection, ahora: Optional[datetime] = None) -> int:
        self._ahora = ahora
        try:
            return procesar_jobs(
                con, self.handlers, backoff_sec=self.settings.job_backoff_sec, ahora=ahora, al_fallar=self._al_fallar,
            )
        finally:
            self._ahora = None

    def tick(self, con: sqlite3.Connection, ahora: Optional[datetime] = None) -> Dict[str, int]:
        """Una pasada del scheduler."""
        self._ahora = ahora
        try:
            recuperados = recuperar_jobs_colgados(con, self.settings.job_running_timeout, ahora)
            liberados = liberar_lotes_vencidos(con, self.settings.lote_created_timeout, ahora)
            envios = self._programar_envios(con)
            consultas = self._programar_consultas(con)
        finally:
            self._ahora = None
        procesados = self.procesar(con, ahora)
        resumen = {
            "jobs_recuperados": recuperados,
            "lotes_liberados": len(liberados),
            "envios_programados": envios,
            "consultas_programadas": consultas,
            "jobs_procesados": procesados,
        }
        if any(resumen.values()):
            logger.info(f"Tick del scheduler: {resumen}")
        return resumen
