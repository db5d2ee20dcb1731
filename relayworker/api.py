from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import relay_config
from .errors import (
    CapacityError,
    NotConnectedError,
    NotFoundError,
    PairingTimeoutError,
    RelayError,
    TransportError,
)
from .manager import SessionLifecycleManager


logger = logging.getLogger("relayworker.api")

SERVICE_NAME = "relayworker"
MAX_MESSAGES_LIMIT = 200


class _AccountModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    account_id: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _alias_account(cls, values: Any) -> Any:
        if isinstance(values, dict) and "account_id" not in values and "agent_id" in values:
            data = dict(values)
            data["account_id"] = data.pop("agent_id")
            return data
        return values


class InitRequest(_AccountModel):
    pass


class SendRequest(_AccountModel):
    to: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)

    @field_validator("to", mode="before")
    @classmethod
    def _stringify_to(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @model_validator(mode="before")
    @classmethod
    def _alias_content(cls, values: Any) -> Any:
        if isinstance(values, dict) and "content" not in values and "text" in values:
            data = dict(values)
            data["content"] = data.pop("text")
            return data
        return values


def create_app() -> FastAPI:
    cfg = relay_config()
    manager = SessionLifecycleManager.from_config(cfg)
    logger.info(
        "stage=config_loaded webhook_url=%s max_sessions=%s secret_present=%s",
        cfg.webhook_url,
        cfg.max_sessions,
        "true" if cfg.control_secret else "false",
    )

    app = FastAPI(title=SERVICE_NAME)
    app.state.session_manager = manager

    NO_STORE_HEADERS = {
        "Cache-Control": "no-store, no-cache, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }

    def _json(body: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
        body: dict[str, Any] = {"success": False, "error": error}
        body.update(extra)
        return _json(body, status_code)

    def _enforce_secret(
        request: Request, route: str, *, account_id: Optional[str] = None
    ) -> JSONResponse | None:
        if not cfg.control_secret:
            return None
        header = request.headers.get("Authorization", "").strip()
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or token.strip() != cfg.control_secret:
            logger.warning(
                "event=control_secret_invalid route=%s account_id=%s", route, account_id
            )
            return _error(401, "not_authorized")
        return None

    def _relay_error_response(exc: RelayError, *, account_id: str) -> JSONResponse:
        if isinstance(exc, CapacityError):
            return _error(503, exc.code, active=exc.active, limit=exc.limit)
        if isinstance(exc, NotFoundError):
            return _error(404, exc.code)
        if isinstance(exc, NotConnectedError):
            return _error(409, exc.code)
        if isinstance(exc, PairingTimeoutError):
            return _error(504, exc.code)
        if isinstance(exc, TransportError):
            if exc.detail == "init_timeout":
                return _error(504, exc.detail)
            return _error(502, exc.code, detail=exc.detail)
        logger.error("stage=unexpected_relay_error account_id=%s error=%s", account_id, exc)
        return _error(500, exc.code)

    async def _parse(request: Request, model: type[BaseModel]) -> BaseModel | JSONResponse:
        try:
            raw = await request.json()
        except ValueError:
            return _error(400, "invalid_json")
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            missing = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
            return _error(400, "missing_fields", fields=missing)

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {"open": 0, "connecting": 0, "pairing": 0, "total": 0, "max_sessions": cfg.max_sessions}

    @app.on_event("startup")
    async def _startup() -> None:
        await manager.start()
        if not cfg.transport_configured:
            logger.warning("telegram api credentials are not configured")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await manager.shutdown()

    @app.get("/")
    async def root():
        stats = _safe_stats_snapshot()
        return _json(
            {
                "service": SERVICE_NAME,
                "status": "running",
                "active_sessions": int(stats.get("open", 0) or 0),
                "max_sessions": int(stats.get("max_sessions", cfg.max_sessions) or 0),
            }
        )

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return _json(
            {
                "ok": True,
                "open_count": int(stats.get("open", 0) or 0),
                "connecting_count": int(stats.get("connecting", 0) or 0),
                "pairing_count": int(stats.get("pairing", 0) or 0),
                "total": int(stats.get("total", 0) or 0),
                "max_sessions": int(stats.get("max_sessions", cfg.max_sessions) or 0),
            }
        )

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @app.post("/init")
    async def init_session(request: Request):
        unauthorized = _enforce_secret(request, "/init")
        if unauthorized is not None:
            return unauthorized
        parsed = await _parse(request, InitRequest)
        if isinstance(parsed, JSONResponse):
            return parsed
        account_id = parsed.account_id
        logger.info("stage=init_request account_id=%s", account_id)
        try:
            result = await manager.init(account_id)
        except ValueError:
            return _error(400, "account_id_required")
        except RelayError as exc:
            return _relay_error_response(exc, account_id=account_id)
        return _json(result.to_payload())

    @app.get("/status/{account_id}")
    async def session_status(request: Request, account_id: str):
        unauthorized = _enforce_secret(request, "/status", account_id=account_id)
        if unauthorized is not None:
            return unauthorized
        try:
            snapshot = await manager.status(account_id)
        except ValueError:
            return _error(400, "account_id_required")
        return _json(snapshot.to_payload())

    @app.post("/send")
    async def send_message(request: Request):
        unauthorized = _enforce_secret(request, "/send")
        if unauthorized is not None:
            return unauthorized
        parsed = await _parse(request, SendRequest)
        if isinstance(parsed, JSONResponse):
            return parsed
        account_id = parsed.account_id
        try:
            result = await manager.send(account_id, parsed.to, parsed.content)
        except ValueError:
            return _error(400, "account_id_required")
        except RelayError as exc:
            logger.warning(
                "stage=send_rejected account_id=%s error=%s", account_id, exc.code
            )
            return _relay_error_response(exc, account_id=account_id)
        body = {"success": True}
        body.update(result)
        return _json(body)

    @app.get("/chats/{account_id}")
    async def list_chats(request: Request, account_id: str):
        unauthorized = _enforce_secret(request, "/chats", account_id=account_id)
        if unauthorized is not None:
            return unauthorized
        try:
            conversations = await manager.list_conversations(account_id)
        except ValueError:
            return _error(400, "account_id_required")
        except RelayError as exc:
            return _relay_error_response(exc, account_id=account_id)
        return _json(
            {
                "success": True,
                "chats": [conversation.to_payload() for conversation in conversations],
            }
        )

    @app.get("/messages/{account_id}/{chat_id}")
    async def list_messages(
        request: Request,
        account_id: str,
        chat_id: str,
        limit: int = Query(100, ge=1, le=MAX_MESSAGES_LIMIT),
    ):
        unauthorized = _enforce_secret(request, "/messages", account_id=account_id)
        if unauthorized is not None:
            return unauthorized
        try:
            messages = await manager.list_messages(account_id, chat_id, limit)
        except ValueError:
            return _error(400, "account_id_required")
        except RelayError as exc:
            return _relay_error_response(exc, account_id=account_id)
        return _json({"success": True, "messages": messages})

    @app.post("/disconnect/{account_id}")
    async def disconnect(request: Request, account_id: str):
        unauthorized = _enforce_secret(request, "/disconnect", account_id=account_id)
        if unauthorized is not None:
            return unauthorized
        try:
            existed = await manager.disconnect(account_id)
        except ValueError:
            return _error(400, "account_id_required")
        logger.info("stage=disconnect_request account_id=%s existed=%s", account_id, existed)
        return _json({"success": True, "disconnected": existed})

    return app


__all__ = ["create_app"]
