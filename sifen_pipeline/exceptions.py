"""
Excepciones del pipeline SIFEN
"""
from typing import Optional


class SifenException(Exception):
    """Excepción base para errores SIFEN"""
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(SifenException):
    """Solicitud mal formada (error del llamador, nunca se reintenta)"""
    http_status = 400


class NotFoundError(SifenException):
    http_status = 404


class NoActiveSeriesError(SifenException):
    """No hay serie de numeración abierta para la clave pedida"""
    http_status = 422


class ConflictError(SifenException):
    http_status = 409


class InvalidStateError(SifenException):
    """Operación sobre un DE o lote en un estado que no la admite"""
    http_status = 409

    def __init__(self, message: str, estado_actual: Optional[str] = None, code: Optional[str] = None):
        self.estado_actual = estado_actual
        super().__init__(message, code or "INVALID_STATE")


class SigningError(SifenException):
    """Problema con el certificado, la clave o el CSC del tenant"""
    http_status = 422


class AuthorityTransportError(SifenException):
    """Red, timeout o respuesta ilegible del web service de la SET"""
    http_status = 502

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message, code)
        self.upstream_status = http_status


class AuthorityRejectionError(SifenException):
    """La SET rechazó explícitamente el envío o el evento"""
    http_status = 422

    def __init__(self, message: str, code: Optional[str] = None, respuesta: Optional[dict] = None):
        self.respuesta = respuesta or {}
        super().__init__(message, code)
