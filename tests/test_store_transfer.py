from decimal import Decimal
from typing import List, Optional

import pytest

from schoolwallet.exceptions import ApiError, FormValidationError
from schoolwallet.models import StoreInfo, TransactionResult
from schoolwallet.ops import StructuredLogger
from schoolwallet.store_transfer import StoreTransferForm, TransferType, needs_store_email

STORE = StoreInfo(store_id="st-1", name="Tuck Shop", email="shop@school.ng")
BALANCE = Decimal("1000")


class FakeStoreApi:
    def __init__(self, *, error: Optional[ApiError] = None) -> None:
        self.calls: List[tuple] = []
        self.error = error

    def transfer_to_store(self, receiver_email, amount, pin) -> TransactionResult:
        self.calls.append((receiver_email, amount, pin))
        if self.error is not None:
            raise self.error
        return TransactionResult(transaction_id="STX-1", message="Transfer successful")


def test_parent_store_transfer_uses_store_email() -> None:
    api = FakeStoreApi()
    form = StoreTransferForm(amount_text=" 250 ", pin="4321")

    result = form.submit(api, BALANCE, store=STORE)

    assert result.transaction_id == "STX-1"
    assert api.calls == [("shop@school.ng", Decimal("250.00"), "4321")]
    assert form.pin == ""


@pytest.mark.parametrize(
    "amount, pin, field, message",
    [
        ("", "4321", "amount", "Amount is required"),
        ("-3", "4321", "amount", "Enter a valid amount"),
        ("1e30", "4321", "amount", "Enter a valid amount"),
        ("1000.01", "4321", "amount", "Insufficient balance"),
        ("10", "", "pin", "PIN is required"),
        ("10", "12a4", "pin", "PIN must be exactly 4 digits"),
    ],
)
def test_field_errors(amount, pin, field, message) -> None:
    form = StoreTransferForm(amount_text=amount, pin=pin)

    assert form.errors(BALANCE, store=STORE) == {field: message}


def test_unverified_store_needs_typed_email() -> None:
    derived = StoreInfo.derived("GRE1/st-1")
    form = StoreTransferForm(amount_text="10", pin="4321")

    assert needs_store_email(derived) is True
    assert needs_store_email(None) is True
    assert needs_store_email(STORE) is False
    assert form.errors(BALANCE, store=derived) == {"store_email": "Store email is required"}

    form.store_email = "till@"
    assert form.errors(BALANCE, store=derived) == {"store_email": "Enter a valid email address"}

    form.store_email = "till@school.ng"
    assert form.errors(BALANCE, store=derived) == {}
    assert form.receiver_email(derived) == "till@school.ng"


def test_other_user_requires_recipient_email() -> None:
    form = StoreTransferForm(transfer_type=TransferType.OTHER_USER, amount_text="10", pin="4321")

    assert form.errors(BALANCE, store=STORE) == {"recipient_email": "Recipient email is required"}

    form.recipient_email = "ada@school.ng"
    assert form.receiver_email(STORE) == "ada@school.ng"


def test_invalid_form_raises_with_every_problem_and_sends_nothing() -> None:
    api = FakeStoreApi()
    form = StoreTransferForm(transfer_type=TransferType.OTHER_USER, amount_text="", pin="1")

    with pytest.raises(FormValidationError) as excinfo:
        form.submit(api, BALANCE, store=STORE)

    assert set(excinfo.value.errors) == {"amount", "recipient_email", "pin"}
    assert api.calls == []
    assert form.pin == ""


def test_backend_error_propagates_and_clears_pin() -> None:
    api = FakeStoreApi(error=ApiError("Receiver not found", status=404))
    form = StoreTransferForm(amount_text="10", pin="4321")

    with pytest.raises(ApiError):
        form.submit(api, BALANCE, store=STORE)

    assert form.pin == ""


def test_unknown_balance_skips_balance_check() -> None:
    form = StoreTransferForm(amount_text="50000", pin="4321")

    assert form.errors(None, store=STORE) == {}


def test_transfer_type_parse_defaults_to_parent_store() -> None:
    assert TransferType.parse("otherUser") is TransferType.OTHER_USER
    assert TransferType.parse("parentStore") is TransferType.PARENT_STORE
    assert TransferType.parse("bogus") is TransferType.PARENT_STORE


def test_log_entry_never_contains_pin() -> None:
    logger = StructuredLogger()
    StoreTransferForm(amount_text="10", pin="4321").submit(FakeStoreApi(), BALANCE, store=STORE, logger=logger)

    entry = logger.tail()[-1]
    assert entry["event"] == "store_transfer_complete"
    assert "4321" not in str(entry)
