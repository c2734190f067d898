"""Domain models used by the SchoolWallet package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .money import DEFAULT_CURRENCY, parse_amount, to_decimal


class WizardState(str, Enum):
    """Enumerates the steps of the transfer wizard."""

    IDLE = "idle"
    STAGED = "staged"
    AUTHORIZING = "authorizing"
    SUBMITTING = "submitting"
    COMPLETE = "complete"
    FAILED = "failed"


class TransactionDirection(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    """Recipient details captured from a QR code or the manual entry form."""

    recipient_id: str
    recipient_name: str
    recipient_email: str
    pin: str = field(repr=False)
    source_is_manual_entry: bool = False
    wallet_balance: Decimal = Decimal("0.00")
    role: str = ""
    account_number: str = ""
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        object.__setattr__(self, "wallet_balance", to_decimal(self.wallet_balance))


@dataclass(slots=True)
class TransferDraft:
    """A staged transfer the user can still edit before authorising it."""

    intent: PaymentIntent
    amount_text: str = ""
    description: str = ""

    @property
    def amount(self) -> Optional[Decimal]:
        return parse_amount(self.amount_text)

    def validation_error(self, available_balance: Optional[Decimal] = None) -> Optional[str]:
        """Return why the draft cannot be confirmed, or ``None`` when it can."""

        return amount_error(self.amount_text, available_balance)


def amount_error(amount_text: str, available_balance: Optional[Decimal] = None) -> Optional[str]:
    if not (amount_text or "").strip():
        return "Amount is required"
    amount = parse_amount(amount_text)
    if amount is None or amount <= Decimal("0"):
        return "Enter a valid amount"
    if available_balance is not None and amount > available_balance:
        return "Insufficient balance"
    return None


@dataclass(frozen=True, slots=True)
class StoreInfo:
    """The store an agent belongs to.

    ``verified`` is false when the store lookup failed and the details were
    derived from the agent's ``store_id``; the email must then be typed in.
    """

    store_id: str
    name: str
    email: str = ""
    account_number: str = ""
    verified: bool = True

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], store_id: str) -> "StoreInfo":
        return cls(
            store_id=str(payload.get("_id") or payload.get("storeId") or store_id),
            name=str(payload.get("name") or payload.get("storeName") or "Parent Store"),
            email=str(payload.get("email") or ""),
            account_number=str(payload.get("accountNumber") or ""),
        )

    @classmethod
    def derived(cls, store_id: str) -> "StoreInfo":
        """Placeholder details from a ``<store code>/<id>`` reference."""

        code, _, actual = store_id.partition("/")
        actual = actual or code
        return cls(
            store_id=actual,
            name=f"Parent Store ({code})",
            account_number=f"STORE-{actual[:8]}",
            verified=False,
        )


@dataclass(frozen=True, slots=True)
class TransactionResult:
    """Outcome of a successful wallet to wallet transfer."""

    transaction_id: str
    message: str = ""


@dataclass(frozen=True, slots=True)
class WizardSnapshot:
    """Read-only view of a wizard used for rendering. Never carries the PIN."""

    state: WizardState
    intent_name: Optional[str] = None
    intent_email: Optional[str] = None
    intent_id: Optional[str] = None
    source_is_manual_entry: bool = False
    amount_text: str = ""
    description: str = ""
    can_confirm: bool = False
    pin_entered: bool = False
    result: Optional[TransactionResult] = None
    error: Optional[str] = None


@dataclass(slots=True)
class Wallet:
    balance: Decimal = Decimal("0.00")
    currency: str = DEFAULT_CURRENCY
    wallet_id: str = ""

    def __post_init__(self) -> None:
        self.balance = to_decimal(self.balance)


@dataclass(slots=True)
class UserProfile:
    """The signed in identity as returned by ``/api/users/getuserone``."""

    user_id: str
    name: str
    email: str
    role: str = ""
    account_number: str = ""
    store_id: str = ""
    is_pin_set: bool = False
    wallet: Wallet = field(default_factory=Wallet)

    @classmethod
    def from_payload(cls, profile: Mapping[str, Any], wallet: Optional[Mapping[str, Any]] = None) -> "UserProfile":
        first = str(profile.get("firstName") or "").strip()
        last = str(profile.get("lastName") or "").strip()
        name = str(profile.get("name") or " ".join(part for part in (first, last) if part))
        wallet_data = wallet if wallet is not None else profile.get("wallet")
        if isinstance(wallet_data, Mapping):
            wallet_obj = Wallet(
                balance=wallet_data.get("balance") or 0,
                currency=str(wallet_data.get("currency") or DEFAULT_CURRENCY),
                wallet_id=str(wallet_data.get("walletId") or ""),
            )
        else:
            wallet_obj = Wallet()
        return cls(
            user_id=str(profile.get("_id") or profile.get("id") or profile.get("userId") or ""),
            name=name,
            email=str(profile.get("email") or ""),
            role=str(profile.get("role") or ""),
            account_number=str(profile.get("accountNumber") or ""),
            store_id=str(profile.get("store_id") or ""),
            is_pin_set=bool(profile.get("isPinSet", False)),
            wallet=wallet_obj,
        )


@dataclass(slots=True)
class TransactionRecord:
    """A ledger entry from the backend history, normalised for display."""

    reference: str
    amount: Decimal
    direction: TransactionDirection
    description: str
    status: str = ""
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.amount = to_decimal(self.amount)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TransactionRecord":
        raw_amount = payload.get("amount") or 0
        try:
            amount = to_decimal(raw_amount)
        except (TypeError, ArithmeticError):
            amount = Decimal("0.00")
        is_debit = (
            payload.get("transactionType") == "debit"
            or payload.get("category") == "debit"
            or amount < 0
        )
        metadata = payload.get("metadata")
        metadata = dict(metadata) if isinstance(metadata, Mapping) else {}
        if is_debit and metadata.get("receiverEmail"):
            description = f"Transfer to {metadata['receiverEmail']}"
        elif not is_debit and metadata.get("senderEmail"):
            description = f"Payment from {metadata['senderEmail']}"
        else:
            description = str(payload.get("description") or payload.get("note") or "Transaction")
        return cls(
            reference=str(payload.get("reference") or payload.get("_id") or ""),
            amount=abs(amount),
            direction=TransactionDirection.DEBIT if is_debit else TransactionDirection.CREDIT,
            description=description,
            status=str(payload.get("status") or ""),
            created_at=_parse_timestamp(payload.get("createdAt")),
            metadata=metadata,
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


__all__ = [
    "PaymentIntent",
    "StoreInfo",
    "TransactionDirection",
    "TransactionRecord",
    "TransactionResult",
    "TransferDraft",
    "UserProfile",
    "Wallet",
    "WizardSnapshot",
    "WizardState",
    "amount_error",
]
