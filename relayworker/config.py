"""Environment-driven configuration for the relay worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_AUTH_DIR = "/app/auth_sessions"
DEFAULT_WEBHOOK_URL = "http://app:8000/webhook/messages"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _optional_url(raw: str | None) -> Optional[str]:
    cleaned = (raw or "").strip()
    if not cleaned:
        return None
    return cleaned.rstrip("/") or None


def _resolve_auth_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_AUTH_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/relay-auth-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class RelayConfig:
    auth_dir: Path
    webhook_url: str
    webhook_secret: Optional[str] = None
    connect_webhook_url: Optional[str] = None
    storage_upload_url: Optional[str] = None
    storage_public_url: Optional[str] = None
    control_secret: Optional[str] = None
    max_sessions: int = 5
    pairing_timeout: float = 180.0
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 2.0
    reconnect_max_delay: float = 10.0
    sweep_interval: float = 300.0
    init_timeout: float = 60.0
    http_timeout: float = 10.0
    logout_timeout: float = 10.0
    api_id: int = 0
    api_hash: str = ""
    device_model: str = "relayworker"
    system_version: str = "1.0"
    app_version: str = "1.0"
    lang_code: str = "en"
    system_lang_code: str = "en"

    @property
    def transport_configured(self) -> bool:
        return self.api_id > 0 and bool(self.api_hash)


def relay_config() -> RelayConfig:
    webhook_url = _optional_url(os.getenv("WEBHOOK_URL")) or DEFAULT_WEBHOOK_URL
    webhook_secret = (os.getenv("WEBHOOK_SECRET") or "").strip() or None
    control_secret = (os.getenv("MICROSERVICE_SECRET") or "").strip() or None
    lang = os.getenv("TG_LANG", "en").strip() or "en"

    return RelayConfig(
        auth_dir=_resolve_auth_dir(os.getenv("RELAY_AUTH_DIR")),
        webhook_url=webhook_url,
        webhook_secret=webhook_secret,
        connect_webhook_url=_optional_url(os.getenv("CONNECT_WEBHOOK_URL")),
        storage_upload_url=_optional_url(os.getenv("STORAGE_UPLOAD_URL")),
        storage_public_url=_optional_url(os.getenv("STORAGE_PUBLIC_URL")),
        control_secret=control_secret,
        max_sessions=max(1, _coerce_int(os.getenv("MAX_CONCURRENT_SESSIONS"), 5)),
        pairing_timeout=_parse_duration(os.getenv("PAIRING_TIMEOUT"), default=180.0),
        max_reconnect_attempts=max(0, _coerce_int(os.getenv("MAX_RECONNECT_ATTEMPTS"), 5)),
        reconnect_base_delay=_parse_duration(os.getenv("RECONNECT_BASE_DELAY"), default=2.0),
        reconnect_max_delay=_parse_duration(os.getenv("RECONNECT_MAX_DELAY"), default=10.0),
        sweep_interval=_parse_duration(os.getenv("CLEANUP_INTERVAL"), default=300.0),
        init_timeout=_parse_duration(os.getenv("INIT_TIMEOUT"), default=60.0),
        http_timeout=_parse_duration(os.getenv("HTTP_TIMEOUT"), default=10.0),
        logout_timeout=_parse_duration(os.getenv("LOGOUT_TIMEOUT"), default=10.0),
        api_id=_coerce_int(os.getenv("TELEGRAM_API_ID")),
        api_hash=(os.getenv("TELEGRAM_API_HASH") or "").strip(),
        device_model=os.getenv("TG_DEVICE_MODEL", "relayworker").strip() or "relayworker",
        system_version=os.getenv("TG_SYSTEM_VERSION", "1.0").strip() or "1.0",
        app_version=os.getenv("TG_APP_VERSION", "1.0").strip() or "1.0",
        lang_code=lang,
        system_lang_code=lang,
    )


__all__ = ["RelayConfig", "relay_config"]
