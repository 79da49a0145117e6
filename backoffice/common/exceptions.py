"""
Errores de dominio compartidos por los módulos de ventas y fiscal.

Los servicios lanzan estas excepciones; la aplicación las convierte en
respuestas HTTP en el borde de cada acción (ver ``backoffice_error_handler``).
"""
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class BackofficeError(Exception):
    """Base exception for all back-office service failures."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def detail(self) -> Any:
        return self.message


class ValidationError(BackofficeError):
    """Datos inválidos detectados localmente, antes de cualquier llamada de red."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(BackofficeError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BackofficeError):
    """La acción no es válida para el estado actual del registro."""

    status_code = status.HTTP_409_CONFLICT


class RecordBusyError(ConflictError):
    """Ya hay una mutación en curso sobre el mismo registro."""


class ProviderError(BackofficeError):
    """
    Fallo devuelto por el proveedor fiscal externo.

    ``message`` se muestra al usuario tal cual; ``details`` conserva el cuerpo
    de la respuesta del proveedor. ``document_id`` se informa cuando el
    proveedor llegó a crear un borrador antes de fallar.
    """

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        details: Optional[str] = None,
        document_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_status = provider_status
        self.details = details
        self.document_id = document_id

    @property
    def detail(self) -> Any:
        body: Dict[str, Any] = {"message": self.message}
        if self.details:
            body["details"] = self.details
        if self.document_id is not None:
            body["document_id"] = self.document_id
        return body


class DriftError(BackofficeError):
    """No se pudo refrescar la copia local de un documento; se puede reintentar."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PartialSequenceError(BackofficeError):
    """
    Una secuencia de varios pasos falló a mitad de camino.

    Los pasos ya completados NO se revierten; ``completed`` los enumera para
    que el usuario sepa exactamente qué quedó creado.
    """

    status_code = status.HTTP_207_MULTI_STATUS

    def __init__(self, message: str, completed: List[Any], failed_step: int, total_steps: int, cause: Exception):
        super().__init__(message)
        self.completed = completed
        self.failed_step = failed_step
        self.total_steps = total_steps
        self.cause = cause

    @property
    def detail(self) -> Any:
        cause = self.cause.detail if isinstance(self.cause, BackofficeError) else str(self.cause)
        return {
            "message": self.message,
            "completed": [str(getattr(item, "id", item)) for item in self.completed],
            "failed_step": self.failed_step,
            "total_steps": self.total_steps,
            "error": cause,
        }


async def backoffice_error_handler(request: Request, exc: BackofficeError) -> JSONResponse:
    """Convierte los errores de dominio en la respuesta visible para el usuario."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
