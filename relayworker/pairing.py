from __future__ import annotations

import base64
import io
import time
from dataclasses import dataclass
from typing import Any, Optional

import qrcode


@dataclass(slots=True)
class PairingArtifact:
    account_id: str
    code: str
    rendered_code: str
    expires_at: float

    @property
    def seconds_left(self) -> float:
        return max(self.expires_at - time.time(), 0.0)

    def expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= (now if now is not None else time.time())

    def to_payload(self) -> dict[str, Any]:
        return {
            "qr_code": self.rendered_code,
            "qr_valid_until": int(self.expires_at * 1000),
        }


def build_qr_png(code: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(code)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_pairing_code(code: str) -> str:
    """Render ``code`` as a scannable ``data:image/png;base64`` URL."""

    encoded = base64.b64encode(build_qr_png(code)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def build_artifact(account_id: str, code: str, *, ttl: float) -> PairingArtifact:
    return PairingArtifact(
        account_id=account_id,
        code=code,
        rendered_code=render_pairing_code(code),
        expires_at=time.time() + ttl,
    )


__all__ = ["PairingArtifact", "build_artifact", "build_qr_png", "render_pairing_code"]
