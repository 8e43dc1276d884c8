"""File-system object storage for invoice documents with signed download URLs."""

import base64
import hmac
import os
import time
import uuid
from hashlib import sha256
from typing import Callable, Optional
from urllib.parse import quote, unquote, urlsplit

from backend.core.config import settings
from einvoice.errors import StorageError


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


class FileObjectStorage:
    """``ObjectStorage`` backed by a local directory (``file://`` base URI)."""

    def __init__(
        self,
        base_uri: str,
        *,
        public_base_url: str,
        hmac_key: str,
        default_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not base_uri.startswith("file://"):
            raise StorageError("STORAGE_BASE_URI must be file:///... for file backend")
        self._base_path = base_uri[len("file://") :]
        self._public_base_url = public_base_url.rstrip("/")
        self._key = hmac_key.encode()
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls) -> "FileObjectStorage":
        if settings.STORAGE_BACKEND != "file":
            raise StorageError("Unsupported STORAGE_BACKEND; expected 'file'")
        return cls(
            settings.STORAGE_BASE_URI,
            public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
            hmac_key=settings.PRESIGN_HMAC_KEY,
            default_ttl_seconds=settings.PRESIGN_DEFAULT_TTL_SEC,
        )

    def _path_for(self, key: str) -> str:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise StorageError(f"Invalid storage key: {key!r}")
        return os.path.join(self._base_path, *parts)

    def key_from_url(self, url: str) -> str:
        prefix = f"file://{self._base_path.rstrip('/')}/"
        if url.startswith(prefix):
            return url[len(prefix) :]
        if url.startswith(self._public_base_url + "/"):
            return unquote(urlsplit(url).path[len(urlsplit(self._public_base_url).path) + 1 :])
        return url

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Atomic write: temp → fsync → move. Returns the ``file://`` URI."""
        abs_path = self._path_for(key)
        dir_path = os.path.dirname(abs_path)
        try:
            os.makedirs(dir_path, exist_ok=True)
            tmp_path = os.path.join(dir_path, f".{uuid.uuid4().hex}.tmp")
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, abs_path)
        except OSError as exc:
            raise StorageError(f"Failed to persist {key}: {exc}") from exc
        return f"file://{abs_path}"

    def get(self, key: str) -> bytes:
        try:
            with open(self._path_for(self.key_from_url(key)), "rb") as f:
                return f.read()
        except OSError as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path_for(self.key_from_url(key)))
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def _signature(self, key: str, expires: int) -> str:
        payload = f"{key}:{expires}".encode()
        return _b64(hmac.new(self._key, payload, sha256).digest())

    def presign(self, url: str, ttl_seconds: Optional[int] = None) -> str:
        key = self.key_from_url(url)
        expires = int(self._clock()) + (ttl_seconds or self._default_ttl)
        return (
            f"{self._public_base_url}/{quote(key)}"
            f"?expires={expires}&signature={self._signature(key, expires)}"
        )

    def verify(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(self._clock()):
            return False
        return hmac.compare_digest(signature, self._signature(key, expires))

