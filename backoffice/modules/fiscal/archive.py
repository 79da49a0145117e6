"""
Archivo de PDFs fiscales en MinIO.

Las URLs de PDF del proveedor son temporales; cuando FISCAL_ARCHIVE_PDFS está
activo se guarda una copia y la clave del objeto pasa a ser la referencia del
archivo. Un fallo aquí nunca bloquea la emisión.
"""
from io import BytesIO
from typing import Optional
import asyncio
import logging

from minio import Minio
from minio.error import MinioException
from urllib3.exceptions import HTTPError

from backoffice.common.exceptions import ProviderError
from backoffice.core.config import settings

logger = logging.getLogger(__name__)


class PdfArchive:

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_USE_SSL
        )
        self.bucket_name = bucket_name or settings.MINIO_BUCKET_NAME
        self._bucket_ready = False

    def _ensure_bucket_exists(self):
        if self._bucket_ready:
            return
        if not self.client.bucket_exists(self.bucket_name):
            self.client.make_bucket(self.bucket_name)
            logger.info(f"Created MinIO bucket: {self.bucket_name}")
        self._bucket_ready = True

    def _put(self, key: str, data: bytes):
        self._ensure_bucket_exists()
        self.client.put_object(
            bucket_name=self.bucket_name,
            object_name=key,
            data=BytesIO(data),
            length=len(data),
            content_type="application/pdf"
        )

    async def store(self, provider, url: str, key: str) -> Optional[str]:
        """
        Descargar el PDF desde ``url`` y guardarlo con la clave ``key``.

        Returns:
            La clave guardada, o None si la descarga o la subida fallaron
        """
        try:
            data = await provider.download(url)
            await asyncio.to_thread(self._put, key, data)
        except ProviderError as e:
            logger.warning(f"PDF download for {key} failed (non-blocking): {e.message}")
            return None
        except (MinioException, HTTPError, OSError) as e:
            logger.warning(f"PDF upload for {key} failed (non-blocking): {e}")
            return None

        logger.info(f"Archived fiscal PDF {key} ({len(data)} bytes)")
        return key


def get_pdf_archive() -> Optional[PdfArchive]:
    if not settings.FISCAL_ARCHIVE_PDFS:
        return None
    return PdfArchive()
