"""
Registro de mutaciones en curso por registro.

Impide que dos acciones que modifican el mismo cobro (p. ej. editar y
eliminar, o emitir dos veces) estén en vuelo a la vez dentro del proceso.
No es un lock de base de datos: la segunda acción se rechaza, no espera.
"""
from contextlib import asynccontextmanager
from typing import Hashable, Set
import logging

from backoffice.common.exceptions import RecordBusyError

logger = logging.getLogger(__name__)


class InFlightRegistry:

    def __init__(self, name: str):
        self.name = name
        self._keys: Set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._keys

    @asynccontextmanager
    async def hold(self, key: Hashable):
        if key in self._keys:
            logger.info(f"Rejected concurrent {self.name} mutation for {key}")
            raise RecordBusyError("Ya hay una operación en curso sobre este registro")
        self._keys.add(key)
        try:
            yield
        finally:
            self._keys.discard(key)


record_guard = InFlightRegistry("record")
