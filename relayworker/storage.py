from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from .metrics import RELAY_ERRORS


LOGGER = logging.getLogger("relayworker.storage")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def extension_for(mimetype: Optional[str]) -> str:
    if not mimetype:
        return "bin"
    subtype = mimetype.split("/", 1)[-1] if "/" in mimetype else ""
    subtype = subtype.split(";", 1)[0].strip()
    return subtype or "bin"


def media_key(message_id: str, mimetype: Optional[str], *, prefix: str = "media") -> str:
    return f"{prefix}-{message_id}-{int(time.time() * 1000)}.{extension_for(mimetype)}"


class AssetStorage:
    """Uploads raw media bytes and returns their public reference."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        upload_url: str,
        public_url: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> None:
        self._http = http
        self._upload_url = upload_url.rstrip("/")
        self._public_url = (public_url or upload_url).rstrip("/")
        self._secret = secret

    async def upload(self, key: str, data: bytes, content_type: Optional[str]) -> Optional[str]:
        headers = {"Content-Type": content_type or DEFAULT_CONTENT_TYPE}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        try:
            response = await self._http.post(
                f"{self._upload_url}/{key}", content=data, headers=headers
            )
        except httpx.HTTPError as exc:
            RELAY_ERRORS.labels("media_upload").inc()
            LOGGER.error("stage=media_upload_fail key=%s error=%s", key, exc)
            return None
        if not response.is_success:
            RELAY_ERRORS.labels("media_upload").inc()
            LOGGER.error(
                "stage=media_upload_fail key=%s status=%s body=%s",
                key,
                response.status_code,
                response.text[:200],
            )
            return None
        url = f"{self._public_url}/{key}"
        LOGGER.info("stage=media_uploaded key=%s size=%s", key, len(data))
        return url


__all__ = ["AssetStorage", "extension_for", "media_key"]
