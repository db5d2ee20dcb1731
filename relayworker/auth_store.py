from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from .transport import StoredCredentials


LOGGER = logging.getLogger("relayworker.auth")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class AuthStore:
    """One credential file per account under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, account_id: str) -> Path:
        if _SAFE_ID.match(account_id) and not account_id.startswith("."):
            name = account_id
        else:
            encoded = base64.urlsafe_b64encode(account_id.encode("utf-8")).decode("ascii")
            name = "b64-" + encoded.rstrip("=")
        return self._root / f"{name}.json"

    def exists(self, account_id: str) -> bool:
        return self.path_for(account_id).exists()

    def load(self, account_id: str) -> Optional[StoredCredentials]:
        path = self.path_for(account_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
            blob = data["blob"]
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.warning(
                "event=credentials_corrupt account_id=%s path=%s error=%s",
                account_id,
                path,
                exc,
            )
            return None
        if not isinstance(blob, str) or not blob:
            return None
        return StoredCredentials(
            blob=blob,
            registered=bool(data.get("registered", False)),
            updated_at=data.get("updated_at"),
        )

    def save(self, account_id: str, blob: str, *, registered: bool) -> StoredCredentials:
        stored = StoredCredentials(blob=blob, registered=registered, updated_at=time.time())
        path = self.path_for(account_id)
        tmp = path.with_suffix(".tmp")
        payload = json.dumps(
            {
                "account_id": account_id,
                "blob": stored.blob,
                "registered": stored.registered,
                "updated_at": stored.updated_at,
            }
        )
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp, path)
        try:
            os.chmod(path, 0o600)
        except OSError as exc:
            LOGGER.warning(
                "event=credentials_chmod_failed path=%s error=%s",
                path,
                exc,
            )
        return stored

    def delete(self, account_id: str) -> bool:
        path = self.path_for(account_id)
        removed = False
        try:
            path.unlink()
            removed = True
        except FileNotFoundError:
            removed = False
        except OSError as exc:
            LOGGER.error(
                "event=credentials_delete_failed account_id=%s path=%s error=%s",
                account_id,
                path,
                exc,
            )
        with contextlib.suppress(OSError):
            path.with_suffix(".tmp").unlink()
        return removed


__all__ = ["AuthStore"]
