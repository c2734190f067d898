"""Agent transfers out of the agent wallet, to the parent store or another user.

Unlike the scan wizard these transfers are addressed by email and go through
``/api/transaction/transfer``. The amount rules are the wizard's, checked
against the agent's own balance.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Protocol

from .exceptions import FormValidationError
from .models import StoreInfo, TransactionResult, amount_error
from .money import parse_amount
from .ops import StructuredLogger
from .security import validate_pin_format

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class TransferType(str, Enum):
    PARENT_STORE = "parentStore"
    OTHER_USER = "otherUser"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TransferType":
        for member in cls:
            if member.value == value:
                return member
        return cls.PARENT_STORE


class StoreTransferApi(Protocol):
    def transfer_to_store(self, receiver_email: str, amount: Decimal, pin: str) -> TransactionResult:
        ...


def _email_error(value: str, missing: str) -> Optional[str]:
    if not value:
        return missing
    if not EMAIL_PATTERN.match(value):
        return "Enter a valid email address"
    return None


def needs_store_email(store: Optional[StoreInfo]) -> bool:
    """True when the store address cannot be taken from a verified lookup."""

    return store is None or not store.verified or not store.email


@dataclass(slots=True)
class StoreTransferForm:
    transfer_type: TransferType = TransferType.PARENT_STORE
    amount_text: str = ""
    store_email: str = ""
    recipient_email: str = ""
    pin: str = field(default="", repr=False)
    description: str = ""

    def __post_init__(self) -> None:
        self.amount_text = self.amount_text.strip()
        self.store_email = self.store_email.strip()
        self.recipient_email = self.recipient_email.strip()
        self.pin = self.pin.strip()
        self.description = self.description.strip()

    @property
    def amount(self) -> Optional[Decimal]:
        return parse_amount(self.amount_text)

    def errors(self, available_balance: Optional[Decimal] = None, *, store: Optional[StoreInfo] = None) -> Dict[str, str]:
        """Map each invalid field name to its message; empty when the form can be sent."""

        problems: Dict[str, Optional[str]] = {"amount": amount_error(self.amount_text, available_balance)}
        if self.transfer_type is TransferType.PARENT_STORE:
            if needs_store_email(store):
                problems["store_email"] = _email_error(self.store_email, "Store email is required")
        else:
            problems["recipient_email"] = _email_error(self.recipient_email, "Recipient email is required")
        if not self.pin:
            problems["pin"] = "PIN is required"
        elif not validate_pin_format(self.pin):
            problems["pin"] = "PIN must be exactly 4 digits"
        return {name: message for name, message in problems.items() if message}

    def receiver_email(self, store: Optional[StoreInfo] = None) -> str:
        if self.transfer_type is TransferType.OTHER_USER:
            return self.recipient_email
        if needs_store_email(store):
            return self.store_email
        return store.email

    def submit(
        self,
        api: StoreTransferApi,
        available_balance: Optional[Decimal] = None,
        *,
        store: Optional[StoreInfo] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> TransactionResult:
        """Validate and send the transfer. The PIN is cleared whatever the outcome."""

        problems = self.errors(available_balance, store=store)
        if problems:
            self.pin = ""
            raise FormValidationError(problems)
        receiver = self.receiver_email(store)
        amount = self.amount
        pin, self.pin = self.pin, ""
        result = api.transfer_to_store(receiver, amount, pin)
        (logger or StructuredLogger()).log(
            "store_transfer_complete",
            transfer_type=self.transfer_type.value,
            receiver=receiver,
            amount=str(amount),
            transaction=result.transaction_id,
        )
        return result


__all__ = [
    "EMAIL_PATTERN",
    "StoreTransferApi",
    "StoreTransferForm",
    "TransferType",
    "needs_store_email",
]
