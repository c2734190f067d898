from datetime import timezone
from decimal import Decimal

import pytest

from schoolwallet.models import (
    PaymentIntent,
    StoreInfo,
    TransactionDirection,
    TransactionRecord,
    TransferDraft,
    UserProfile,
)
from schoolwallet.money import format_currency, parse_amount, require_positive, to_decimal


def make_intent(**overrides) -> PaymentIntent:
    values = {"recipient_id": "u1", "recipient_name": "Ada", "recipient_email": "a@x", "pin": "1234"}
    values.update(overrides)
    return PaymentIntent(**values)


def test_to_decimal_quantizes_and_rejects_bool() -> None:
    assert to_decimal("12.345") == Decimal("12.35")
    assert to_decimal(3) == Decimal("3.00")
    with pytest.raises(TypeError):
        to_decimal(True)


def test_parse_amount_handles_blank_and_garbage() -> None:
    assert parse_amount("") is None
    assert parse_amount("abc") is None
    assert parse_amount("NaN") is None
    assert parse_amount("1,250.5") == Decimal("1250.50")


def test_parse_amount_rejects_values_beyond_decimal_precision() -> None:
    assert parse_amount("1e30") is None
    assert parse_amount("9" * 29) is None
    assert parse_amount("Infinity") is None
    assert parse_amount("9" * 20) == Decimal("9" * 20)


def test_require_positive() -> None:
    assert require_positive(Decimal("1")) == Decimal("1")
    assert require_positive(Decimal("0"), allow_zero=True) == Decimal("0")
    with pytest.raises(ValueError):
        require_positive(Decimal("0"))


def test_format_currency_uses_naira_symbol() -> None:
    assert format_currency(Decimal("12500")) == "₦12,500.00"
    assert format_currency(Decimal("3"), "USD") == "USD3.00"


def test_intent_repr_hides_pin() -> None:
    assert "1234" not in repr(make_intent())


@pytest.mark.parametrize(
    "amount,balance,expected",
    [
        ("", None, "Amount is required"),
        ("abc", None, "Enter a valid amount"),
        ("0", None, "Enter a valid amount"),
        ("-5", None, "Enter a valid amount"),
        ("600", Decimal("500"), "Insufficient balance"),
        ("500", Decimal("500"), None),
        ("100000", None, None),
        ("1e30", None, "Enter a valid amount"),
    ],
)
def test_draft_validation(amount, balance, expected) -> None:
    draft = TransferDraft(intent=make_intent(), amount_text=amount)

    assert draft.validation_error(balance) == expected


def test_user_profile_joins_first_and_last_name() -> None:
    profile = UserProfile.from_payload(
        {"_id": "p1", "firstName": "Ada", "lastName": "Obi", "email": "a@x", "role": "agent", "isPinSet": True},
        {"balance": 900, "currency": "NGN", "walletId": "w1"},
    )

    assert profile.user_id == "p1"
    assert profile.name == "Ada Obi"
    assert profile.is_pin_set is True
    assert profile.wallet.balance == Decimal("900.00")
    assert profile.wallet.wallet_id == "w1"


def test_transaction_record_debit_to_receiver() -> None:
    record = TransactionRecord.from_payload(
        {
            "reference": "r1",
            "amount": -250,
            "status": "success",
            "createdAt": "2024-03-01T10:00:00Z",
            "metadata": {"receiverEmail": "kid@x"},
        }
    )

    assert record.direction is TransactionDirection.DEBIT
    assert record.amount == Decimal("250.00")
    assert record.description == "Transfer to kid@x"
    assert record.created_at is not None and record.created_at.tzinfo == timezone.utc


def test_transaction_record_credit_from_sender() -> None:
    record = TransactionRecord.from_payload(
        {"_id": "t2", "amount": "75", "transactionType": "credit", "metadata": {"senderEmail": "agent@x"}}
    )

    assert record.direction is TransactionDirection.CREDIT
    assert record.reference == "t2"
    assert record.description == "Payment from agent@x"


def test_transaction_record_falls_back_to_description() -> None:
    record = TransactionRecord.from_payload({"amount": 10, "category": "debit", "createdAt": "bad date"})

    assert record.direction is TransactionDirection.DEBIT
    assert record.description == "Transaction"
    assert record.created_at is None


def test_store_info_from_payload() -> None:
    store = StoreInfo.from_payload({"_id": "st-1", "storeName": "Tuck Shop", "email": "shop@x.ng"}, "GRE1/st-1")

    assert store == StoreInfo(store_id="st-1", name="Tuck Shop", email="shop@x.ng")
    assert store.verified is True


def test_store_info_derived_from_reference() -> None:
    store = StoreInfo.derived("GRE343652/68302b8272d28bf99cc6f62b")

    assert store.store_id == "68302b8272d28bf99cc6f62b"
    assert store.name == "Parent Store (GRE343652)"
    assert store.account_number == "STORE-68302b82"
    assert store.email == ""
    assert store.verified is False
