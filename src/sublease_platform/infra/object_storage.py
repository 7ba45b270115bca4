"""Object storage for signature images and final agreement documents.

Files are written under ``settings.storage_dir`` and served by the app's
static mount at ``settings.storage_public_url``. Writes run in a worker
thread so the event loop never blocks on disk I/O.
"""

import asyncio
import logging
import time
import uuid
from pathlib import Path

from sublease_platform.app.config import get_settings
from sublease_platform.domain.enums import PartyRole
from sublease_platform.domain.exceptions import DependencyError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
PDF_MAGIC = b"%PDF"


class ObjectStorage:
    """Stores immutable blobs and returns a dereferenceable URL for each."""

    def __init__(self, root_dir: str | Path | None = None, public_url: str | None = None) -> None:
        settings = get_settings()
        self._root = Path(root_dir or settings.storage_dir).resolve()
        self._public_url = (public_url or settings.storage_public_url).rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Write *data* under *key* and return its public URL.

        Raises:
            DependencyError: the backing store could not be written.
        """
        safe_key = key.replace("\\", "/").lstrip("/")
        if ".." in Path(safe_key).parts:
            raise ValidationError(f"Invalid storage key: {key}")
        target = self._root / safe_key

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Exclusive create: stored objects are never overwritten
            with open(target, "xb") as fh:
                fh.write(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error("Object storage write failed for %s: %s", safe_key, exc)
            raise DependencyError("object storage", str(exc)) from exc

        logger.info("Stored %s (%d bytes, %s)", safe_key, len(data), content_type)
        return f"{self._public_url}/{safe_key}"

    async def read(self, url: str) -> bytes:
        """Return the bytes stored behind a URL previously returned by ``upload``.

        Raises:
            NotFoundError: the URL does not belong to this store or the object is gone.
            DependencyError: the backing store could not be read.
        """
        safe_key, target = self._locate(url)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Object {url} not found") from exc
        except OSError as exc:
            logger.error("Object storage read failed for %s: %s", safe_key, exc)
            raise DependencyError("object storage", str(exc)) from exc

    async def delete(self, url: str) -> None:
        """Remove an object that was stored but never committed to an agreement."""
        safe_key, target = self._locate(url)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Object {url} not found") from exc
        except OSError as exc:
            logger.error("Object storage delete failed for %s: %s", safe_key, exc)
            raise DependencyError("object storage", str(exc)) from exc
        logger.info("Deleted %s", safe_key)

    def _locate(self, url: str) -> tuple[str, Path]:
        prefix = f"{self._public_url}/"
        if not url or not url.startswith(prefix):
            raise NotFoundError(f"Object {url} is not in this store")
        safe_key = url[len(prefix):]
        if ".." in Path(safe_key).parts:
            raise NotFoundError(f"Object {url} is not in this store")
        return safe_key, self._root / safe_key

    async def upload_signature(self, agreement_id: str, role: PartyRole, image: bytes) -> str:
        """Store a party's PNG signature image."""
        if not image.startswith(PNG_MAGIC):
            raise ValidationError("Signature image must be a PNG")
        key = f"signatures/{role.value}_{agreement_id}_{int(time.time())}_{uuid.uuid4().hex[:8]}.png"
        return await self.upload(key, image, "image/png")

    async def upload_document(self, agreement_id: str, document: bytes) -> str:
        """Store the rendered final agreement PDF."""
        if not document.startswith(PDF_MAGIC):
            raise ValidationError("Final document must be a PDF")
        key = f"contracts/contract_{agreement_id}_{uuid.uuid4().hex[:8]}_final.pdf"
        return await self.upload(key, document, "application/pdf")


def get_object_storage() -> ObjectStorage:
    """FastAPI dependency: object storage configured from settings."""
    return ObjectStorage()
