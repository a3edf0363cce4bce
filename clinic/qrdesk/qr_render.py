"""QR rendering for the registration link."""
from __future__ import annotations

import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def _build(url: str, *, box_size: int = 10, border: int = 4) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(url)
    qr.make(fit=True)
    return qr


def render_png(url: str, *, box_size: int = 10, border: int = 4) -> bytes:
    """PNG bytes of the QR for ``url``."""
    img = _build(url, box_size=box_size, border=border).make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def render_text(url: str, *, invert: bool = False) -> str:
    """Terminal rendering of the QR for ``url``."""
    out = io.StringIO()
    _build(url, border=2).print_ascii(out=out, invert=invert)
    return out.getvalue()


__all__ = ["render_png", "render_text"]
