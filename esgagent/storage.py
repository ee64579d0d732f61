"""Blob store for uploaded documents.

Uploads go to the storage proxy (``{base}/v1/storage/upload?path=<key>``,
bearer auth) when ``STORAGE_API_URL`` and ``STORAGE_API_KEY`` are set.
Any proxy failure, or a missing configuration, falls back to writing under
the local uploads directory, served as ``/uploads/<key>``.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from esgagent.config import get_settings

log = logging.getLogger(__name__)

_TIMEOUT = 30.0
_VERSIONED_RE = re.compile(r"/v\d+$", re.IGNORECASE)


def normalize_key(key: str) -> str:
    """Forward slashes only, with empty, ``.`` and ``..`` segments removed."""
    parts = key.replace("\\", "/").split("/")
    return "/".join(p for p in parts if p and p not in (".", ".."))


def local_url(key: str) -> str:
    return "/uploads/" + "/".join(quote(seg, safe="") for seg in key.split("/") if seg)


def service_url(base_url: str, path: str) -> str:
    """Join *path* onto the proxy base, inserting ``/v1`` unless already versioned."""
    parts = urlsplit(base_url.strip())
    base_path = parts.path.rstrip("/")
    if not base_path:
        base_path = "/v1"
    elif not _VERSIONED_RE.search(base_path):
        base_path = f"{base_path}/v1"
    joined = re.sub(r"/{2,}", "/", f"{base_path}/{path.lstrip('/')}")
    return urlunsplit((parts.scheme, parts.netloc, joined, "", ""))


class BlobStore:
    def __init__(
        self,
        uploads_dir: Path | None = None,
        api_url: str | None = None,
        api_key: str | None = None,
    ):
        if uploads_dir is None or api_url is None or api_key is None:
            settings = get_settings()
            uploads_dir = uploads_dir or settings.uploads_dir
            api_url = settings.storage_api_url if api_url is None else api_url
            api_key = settings.storage_api_key if api_key is None else api_key
        self.uploads_dir = Path(uploads_dir)
        self.api_url = api_url
        self.api_key = api_key

    @property
    def remote_enabled(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def put(self, key: str, data: bytes | str, content_type: str = "application/octet-stream") -> dict[str, str]:
        """Store *data* under *key* and return ``{key, url}``."""
        key = normalize_key(key)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)

        if not self.remote_enabled:
            log.debug("Remote storage disabled, writing %s locally", key)
            return self._save_locally(key, payload)

        try:
            url = await self._upload(key, payload, content_type)
        except Exception as exc:
            log.warning("Remote upload failed for %s: %s. Falling back to local disk.", key, exc)
            return self._save_locally(key, payload)
        if not url:
            log.warning("Remote upload for %s returned no URL. Falling back to local disk.", key)
            return self._save_locally(key, payload)
        return {"key": key, "url": url}

    async def _upload(self, key: str, payload: bytes, content_type: str) -> str | None:
        filename = key.rsplit("/", 1)[-1] or key
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(_TIMEOUT),
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            resp = await client.post(
                service_url(self.api_url, "storage/upload"),
                params={"path": key},
                files={"file": (filename, payload, content_type)},
            )
            resp.raise_for_status()
            return (resp.json() or {}).get("url")

    def _save_locally(self, key: str, payload: bytes) -> dict[str, str]:
        path = self.uploads_dir / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        return {"key": key, "url": local_url(key)}
