"""
Path-addressed blob store on the local filesystem.

Paths are namespaced ``{category}/{owner}/{batch}/...``. Read access from
outside the process goes through time-limited URLs signed with
``BLOB_SIGNING_KEY`` and served by ``GET /v1/blobs/{path}``.
"""

import hashlib
import hmac
import time
from pathlib import Path, PurePosixPath
from urllib.parse import quote, urlencode

import structlog

from enhance_batch.config import settings

logger = structlog.get_logger(__name__)

CATEGORIES = {"uploads", "outputs", "bundles"}


class BlobStoreError(RuntimeError):
    pass


class BlobNotFoundError(BlobStoreError):
    pass


def upload_path(owner_id: str, batch_id: str, position: int, ext: str) -> str:
    return f"uploads/{owner_id}/{batch_id}/original_{position}.{ext}"


def output_path(owner_id: str, batch_id: str, position: int) -> str:
    return f"outputs/{owner_id}/{batch_id}/enhanced_{position}.jpg"


def bundle_path(owner_id: str, batch_id: str) -> str:
    return f"bundles/{owner_id}/{batch_id}/bundle.zip"


def _sign(path: str, expires: int) -> str:
    msg = f"{path}:{expires}".encode("utf-8")
    return hmac.new(settings.blob_signing_key.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_signature(path: str, expires: int, signature: str, now: float | None = None) -> bool:
    if expires < (now if now is not None else time.time()):
        return False
    return hmac.compare_digest(_sign(path, expires), signature)


class BlobStore:
    def __init__(self, root: str | None = None) -> None:
        self.root = Path(root or settings.blob_root)

    def _full_path(self, path: str) -> Path:
        parts = PurePosixPath(path).parts
        if len(parts) < 2 or parts[0] not in CATEGORIES or ".." in parts or path.startswith("/"):
            raise BlobStoreError(f"invalid blob path: {path}")
        return self.root.joinpath(*parts)

    def put(self, path: str, data: bytes, content_type: str) -> None:
        full = self._full_path(path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            tmp = full.with_name(full.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(full)
        except OSError as exc:
            raise BlobStoreError(f"write failed for {path}: {exc}") from exc
        logger.info("blob_stored", path=path, size_bytes=len(data), content_type=content_type)

    def get(self, path: str) -> bytes:
        full = self._full_path(path)
        if not full.is_file():
            raise BlobNotFoundError(f"blob not found: {path}")
        return full.read_bytes()

    def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    def remove(self, path: str) -> bool:
        full = self._full_path(path)
        if not full.is_file():
            return False
        full.unlink()
        logger.info("blob_removed", path=path)
        return True

    def remove_prefix(self, prefix: str) -> int:
        base = self._full_path(prefix)
        if not base.is_dir():
            return 0
        removed = 0
        for p in sorted(base.rglob("*"), reverse=True):
            if p.is_file():
                p.unlink()
                removed += 1
            else:
                p.rmdir()
        base.rmdir()
        return removed

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        self._full_path(path)
        expires = int(time.time()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "sig": _sign(path, expires)})
        return f"{settings.public_base_url.rstrip('/')}/v1/blobs/{quote(path)}?{query}"
