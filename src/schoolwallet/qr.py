"""Payment QR payload codec.

A payment QR carries base64 text of a compact JSON object::

    {"id": "...", "name": "...", "email": "...", "pin": "...", "walletBalance": 0}

``id``, ``name``, ``email`` and ``pin`` are required strings; everything else
is informational.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
from decimal import Decimal
from typing import Any, Mapping, Optional

import qrcode
import qrcode.image.pil
import qrcode.image.svg
from qrcode.constants import ERROR_CORRECT_H

from .exceptions import InvalidQRFormatError
from .models import PaymentIntent
from .money import AmountLike, to_decimal

REQUIRED_FIELDS = ("id", "name", "email", "pin")
ID_ALIASES = ("id", "userId", "_id")


def _b64decode(raw: str) -> bytes:
    text = "".join(raw.split()).translate(str.maketrans("-_", "+/"))
    if not text:
        raise InvalidQRFormatError()
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidQRFormatError() from exc


def _required_string(data: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise InvalidQRFormatError()


def _optional_balance(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    try:
        return to_decimal(value)
    except (TypeError, ArithmeticError):
        return Decimal("0.00")


def decode_payment_intent(raw: Optional[str]) -> PaymentIntent:
    """Turn scanned QR text into a :class:`PaymentIntent`.

    Raises :class:`InvalidQRFormatError` for anything that is not base64 JSON
    carrying the required recipient fields.
    """

    if not isinstance(raw, str):
        raise InvalidQRFormatError()
    decoded = _b64decode(raw)
    try:
        data = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidQRFormatError() from exc
    if not isinstance(data, dict):
        raise InvalidQRFormatError()

    return PaymentIntent(
        recipient_id=_required_string(data, *ID_ALIASES),
        recipient_name=_required_string(data, "name"),
        recipient_email=_required_string(data, "email"),
        pin=_required_string(data, "pin"),
        source_is_manual_entry=False,
        wallet_balance=_optional_balance(data.get("walletBalance")),
        role=str(data.get("role") or ""),
        account_number=str(data.get("accountNumber") or ""),
        currency=str(data.get("currency") or "NGN"),
    )


def encode_payment_intent(
    user_id: str,
    name: str,
    email: str,
    pin: str,
    *,
    wallet_balance: Optional[AmountLike] = None,
) -> str:
    """Build the base64 payload a kid presents to an agent."""

    payload: dict[str, Any] = {"id": user_id, "name": name, "email": email, "pin": pin}
    if wallet_balance is not None:
        payload["walletBalance"] = float(to_decimal(wallet_balance))
    text = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def render_qr_svg(payload: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``payload`` as an inline SVG QR image."""

    code = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    code.add_data(payload)
    code.make(fit=True)
    image = code.make_image()
    return image.to_string(encoding="unicode")


def render_qr_png(payload: str, *, box_size: int = 10, border: int = 4) -> bytes:
    """Render ``payload`` as PNG bytes for download."""

    code = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
        image_factory=qrcode.image.pil.PilImage,
    )
    code.add_data(payload)
    code.make(fit=True)
    image = code.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


__all__ = ["decode_payment_intent", "encode_payment_intent", "render_qr_png", "render_qr_svg", "REQUIRED_FIELDS"]
