import io
import json
from decimal import Decimal
from urllib.error import HTTPError, URLError

import pytest

from schoolwallet import client as client_module
from schoolwallet.client import WalletApiClient, unwrap_user_payload
from schoolwallet.exceptions import ApiError, ResponseShapeError
from schoolwallet.models import TransactionDirection

BASE = "https://wallet.test"


class FakeResponse:
    def __init__(self, body: str) -> None:
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class Recorder:
    """Stand-in for ``urlopen`` that replays queued responses."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return FakeResponse(response if isinstance(response, str) else json.dumps(response))


def http_error(code: int, body: dict) -> HTTPError:
    return HTTPError(f"{BASE}/x", code, "error", {}, io.BytesIO(json.dumps(body).encode("utf-8")))


@pytest.fixture
def install(monkeypatch):
    def _install(*responses) -> Recorder:
        recorder = Recorder(*responses)
        monkeypatch.setattr(client_module, "urlopen", recorder)
        return recorder

    return _install


def test_unwrap_prefers_nested_user_data_with_wallet() -> None:
    profile = unwrap_user_payload(
        {
            "user": {"data": {"_id": "a1", "name": "Agent", "email": "a@x"}, "wallet": {"balance": 40}},
            "data": {"_id": "ignored"},
        }
    )

    assert profile.user_id == "a1"
    assert profile.wallet.balance == Decimal("40.00")


def test_unwrap_falls_back_to_data_then_user() -> None:
    assert unwrap_user_payload({"data": {"_id": "d1", "email": "d@x"}}).user_id == "d1"
    assert unwrap_user_payload({"user": {"_id": "u1", "email": "u@x"}}).user_id == "u1"


@pytest.mark.parametrize("payload", [{}, {"user": "nope"}, [], None])
def test_unwrap_rejects_unknown_shapes(payload) -> None:
    with pytest.raises(ResponseShapeError) as excinfo:
        unwrap_user_payload(payload)

    assert str(excinfo.value) == "Invalid user data received"


def test_transfer_posts_expected_body_with_bearer(install) -> None:
    recorder = install({"transactionId": "TX-9", "message": "Transfer successful"})
    api = WalletApiClient(BASE, token="tok")

    result = api.wallet_to_wallet_transfer("u1", Decimal("500"), "Lunch", "1234")

    request = recorder.requests[0]
    assert request.full_url == f"{BASE}/api/wallet/walletToWalletTransfer"
    assert request.get_method() == "POST"
    assert request.get_header("Authorization") == "Bearer tok"
    assert json.loads(request.data) == {"recipientId": "u1", "amount": 500.0, "description": "Lunch", "pin": "1234"}
    assert result.transaction_id == "TX-9"
    assert result.message == "Transfer successful"


def test_transfer_without_transaction_id_reports_na(install) -> None:
    install({"message": "ok"})

    result = WalletApiClient(BASE, token="tok").wallet_to_wallet_transfer("u1", Decimal("1"), "", "1234")

    assert result.transaction_id == "N/A"


def test_transfer_rejection_surfaces_backend_message(install) -> None:
    install(http_error(400, {"message": "Insufficient funds"}))

    with pytest.raises(ApiError) as excinfo:
        WalletApiClient(BASE, token="tok").wallet_to_wallet_transfer("u1", Decimal("1"), "", "1234")

    assert excinfo.value.message == "Insufficient funds"
    assert excinfo.value.status == 400


def test_unreachable_backend_uses_generic_message(install) -> None:
    install(URLError("connection refused"))

    with pytest.raises(ApiError) as excinfo:
        WalletApiClient(BASE, token="tok").wallet_to_wallet_transfer("u1", Decimal("1"), "", "1234")

    assert excinfo.value.message == "Transaction failed. Please try again."
    assert excinfo.value.status is None


def test_login_stores_token_and_profile(install) -> None:
    recorder = install({"token": "abc", "user": {"_id": "a1", "name": "Agent", "email": "a@x", "role": "agent"}})
    api = WalletApiClient(BASE)

    token, profile = api.login("a@x", "secret")

    assert token == "abc"
    assert api.token == "abc"
    assert profile.role == "agent"
    assert recorder.requests[0].get_header("Authorization") is None


def test_login_without_token_is_an_error(install) -> None:
    install({"message": "ok"})

    with pytest.raises(ResponseShapeError):
        WalletApiClient(BASE).login("a@x", "secret")


def test_validate_token(install) -> None:
    install({"data": {"_id": "a1"}}, http_error(401, {"message": "jwt expired"}))
    api = WalletApiClient(BASE, token="tok")

    assert api.validate_token() is True
    assert api.validate_token() is False


def test_get_transactions_normalises_records(install) -> None:
    install({"data": [{"amount": -20, "metadata": {"receiverEmail": "kid@x"}}, "junk"]})

    records = WalletApiClient(BASE, token="tok").get_transactions()

    assert len(records) == 1
    assert records[0].direction is TransactionDirection.DEBIT
    assert records[0].description == "Transfer to kid@x"


def test_transfer_fee_picks_active_transfer_charge(install) -> None:
    install(
        [
            {"name": "Withdrawal fee", "status": "Active", "amount": 50},
            {"name": "Transfer charge", "status": "Inactive", "amount": 30},
            {"name": "Transfer charge", "status": "Active", "amount": 10},
        ]
    )

    assert WalletApiClient(BASE, token="tok").get_transfer_fee() == Decimal("10.00")


def test_transfer_fee_defaults_to_zero_on_error(install) -> None:
    install(http_error(500, {"message": "down"}))

    assert WalletApiClient(BASE, token="tok").get_transfer_fee() == Decimal("0.00")


def test_update_pin_maps_unauthorised(install) -> None:
    install(http_error(401, {"message": "nope"}))

    with pytest.raises(ApiError) as excinfo:
        WalletApiClient(BASE, token="tok").update_pin("1111", "2222")

    assert excinfo.value.message == "Current PIN is incorrect. Please try again."


def test_set_pin_posts_pin(install) -> None:
    recorder = install({"message": "PIN set"})

    WalletApiClient(BASE, token="tok").set_pin("4321")

    assert recorder.requests[0].full_url == f"{BASE}/api/pin/set"
    assert json.loads(recorder.requests[0].data) == {"pin": "4321"}


def test_non_json_body_is_a_shape_error(install) -> None:
    install("<html>oops</html>")

    with pytest.raises(ResponseShapeError):
        WalletApiClient(BASE, token="tok").get_current_user()


def test_transfer_to_store_posts_receiver_email(install) -> None:
    recorder = install({"message": "Transfer successful", "transaction": {"_id": "STX-3", "reference": "REF-3"}})
    api = WalletApiClient(BASE, token="tok")

    result = api.transfer_to_store("shop@school.ng", Decimal("2500"), "4321")

    request = recorder.requests[0]
    assert request.full_url == f"{BASE}/api/transaction/transfer"
    assert request.get_method() == "POST"
    assert request.get_header("Authorization") == "Bearer tok"
    assert json.loads(request.data) == {"receiverEmail": "shop@school.ng", "amount": 2500.0, "pin": "4321"}
    assert result.transaction_id == "STX-3"
    assert result.message == "Transfer successful"


def test_transfer_to_store_falls_back_to_top_level_id(install) -> None:
    install({"_id": "STX-4"})

    result = WalletApiClient(BASE, token="tok").transfer_to_store("shop@school.ng", Decimal("1"), "4321")

    assert result.transaction_id == "STX-4"


def test_transfer_to_store_surfaces_backend_message(install) -> None:
    install(http_error(404, {"message": "Receiver not found"}))

    with pytest.raises(ApiError) as excinfo:
        WalletApiClient(BASE, token="tok").transfer_to_store("nobody@school.ng", Decimal("1"), "4321")

    assert excinfo.value.message == "Receiver not found"
    assert excinfo.value.status == 404


def test_get_store_uses_id_segment_of_reference(install) -> None:
    recorder = install({"data": {"_id": "68302b", "name": "Tuck Shop", "email": "shop@school.ng"}})

    store = WalletApiClient(BASE, token="tok").get_store("GRE343652/68302b")

    assert recorder.requests[0].full_url == f"{BASE}/api/store/68302b"
    assert store is not None
    assert store.name == "Tuck Shop"
    assert store.email == "shop@school.ng"
    assert store.verified is True


def test_get_store_returns_none_when_lookup_fails(install) -> None:
    install(http_error(404, {"message": "Not found"}))

    assert WalletApiClient(BASE, token="tok").get_store("GRE343652/68302b") is None
