"""Manual recipient entry, the fallback when a QR code cannot be scanned."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .exceptions import ValidationError
from .models import PaymentIntent

MISSING_FIELDS_MESSAGE = "Please fill in all required fields."


@dataclass(slots=True)
class ManualEntryForm:
    user_id: str = ""
    name: str = ""
    email: str = ""
    pin: str = ""

    @property
    def is_complete(self) -> bool:
        return all(value.strip() for value in (self.user_id, self.name, self.email, self.pin))

    def submit(self) -> PaymentIntent:
        """Build a manual-entry intent; the recipient is only checked by the backend on transfer."""

        if not self.is_complete:
            raise ValidationError(MISSING_FIELDS_MESSAGE)
        return PaymentIntent(
            recipient_id=self.user_id.strip(),
            recipient_name=self.name.strip(),
            recipient_email=self.email.strip(),
            pin=self.pin.strip(),
            source_is_manual_entry=True,
            wallet_balance=Decimal("0"),
        )

    def clear(self) -> None:
        self.user_id = ""
        self.name = ""
        self.email = ""
        self.pin = ""


__all__ = ["ManualEntryForm", "MISSING_FIELDS_MESSAGE"]
