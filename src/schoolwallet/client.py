"""HTTP client for the SchoolWallet REST backend."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request as URLRequest, urlopen

from .exceptions import ApiError, ResponseShapeError
from .models import StoreInfo, TransactionRecord, TransactionResult, UserProfile
from .money import to_decimal
from .ops import StructuredLogger

USER_PATH = "/api/users/getuserone"
LOGIN_PATH = "/api/users/login"
TRANSFER_PATH = "/api/wallet/walletToWalletTransfer"
TRANSACTIONS_PATH = "/api/transaction/getusertransaction"
CHARGES_PATH = "/api/charge/getallcharges"
PIN_SET_PATH = "/api/pin/set"
PIN_UPDATE_PATH = "/api/pin/update"
STORE_TRANSFER_PATH = "/api/transaction/transfer"
STORE_PATH = "/api/store/"

TRANSFER_FAILED_MESSAGE = "Transaction failed. Please try again."


def unwrap_user_payload(data: Any) -> UserProfile:
    """Normalise the envelopes ``getuserone`` is known to answer with.

    Priority: ``data.user.data`` (wallet alongside in ``data.user.wallet``),
    then ``data.data``, then ``data.user``.
    """

    if not isinstance(data, Mapping):
        raise ResponseShapeError("Invalid user data received")
    user = data.get("user")
    if isinstance(user, Mapping) and isinstance(user.get("data"), Mapping):
        wallet = user.get("wallet")
        return UserProfile.from_payload(user["data"], wallet if isinstance(wallet, Mapping) else None)
    if isinstance(data.get("data"), Mapping):
        return UserProfile.from_payload(data["data"])
    if isinstance(user, Mapping):
        return UserProfile.from_payload(user)
    raise ResponseShapeError("Invalid user data received")


def _error_message(body: str) -> Optional[str]:
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, Mapping):
        return None
    message = payload.get("message") or payload.get("error")
    return str(message) if message else None


class WalletApiClient:
    """Thin JSON-over-HTTP wrapper with bearer authentication."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 50.0,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._logger = logger or StructuredLogger()

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        failure_message: str = "Request failed",
    ) -> Any:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = URLRequest(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace") if exc.fp is not None else ""
            message = _error_message(raw) or failure_message
            self._logger.log("api_error", method=method, path=path, status=exc.code, message=message)
            raise ApiError(message, status=exc.code) from exc
        except (URLError, TimeoutError) as exc:
            self._logger.log("api_unreachable", method=method, path=path, reason=str(exc))
            raise ApiError(failure_message) from exc
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ResponseShapeError(failure_message) from exc

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def login(self, email: str, password: str) -> Tuple[str, UserProfile]:
        data = self._request(
            "POST",
            LOGIN_PATH,
            payload={"email": email, "password": password},
            failure_message="Login failed. Please check your credentials.",
        )
        token = data.get("token") if isinstance(data, Mapping) else None
        if not token:
            raise ResponseShapeError("Login response did not include a token")
        self.token = str(token)
        user = data.get("user")
        profile = unwrap_user_payload({"user": user}) if isinstance(user, Mapping) else self.get_current_user()
        self._logger.log("login", user=profile.user_id, role=profile.role)
        return self.token, profile

    def get_current_user(self) -> UserProfile:
        data = self._request("GET", USER_PATH, failure_message="Failed to fetch user details")
        return unwrap_user_payload(data)

    def validate_token(self) -> bool:
        try:
            self._request("GET", USER_PATH, failure_message="Token validation failed")
        except ApiError:
            return False
        return True

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------
    def wallet_to_wallet_transfer(
        self,
        recipient_id: str,
        amount: Decimal,
        description: str,
        pin: str,
    ) -> TransactionResult:
        data = self._request(
            "POST",
            TRANSFER_PATH,
            payload={
                "recipientId": recipient_id,
                "amount": float(to_decimal(amount)),
                "description": description,
                "pin": pin,
            },
            failure_message=TRANSFER_FAILED_MESSAGE,
        )
        if not isinstance(data, Mapping):
            raise ResponseShapeError(TRANSFER_FAILED_MESSAGE)
        return TransactionResult(
            transaction_id=str(data.get("transactionId") or "N/A"),
            message=str(data.get("message") or ""),
        )

    def get_transactions(self) -> List[TransactionRecord]:
        data = self._request("GET", TRANSACTIONS_PATH, failure_message="Failed to fetch transactions")
        items = data.get("data") if isinstance(data, Mapping) else None
        if not isinstance(items, list):
            return []
        return [TransactionRecord.from_payload(item) for item in items if isinstance(item, Mapping)]

    def get_transfer_fee(self) -> Decimal:
        """Return the active transfer charge, or zero when none applies or lookup fails."""

        try:
            data = self._request("GET", CHARGES_PATH, failure_message="Failed to fetch charges")
        except ApiError:
            return Decimal("0.00")
        if not isinstance(data, list):
            return Decimal("0.00")
        for charge in data:
            if not isinstance(charge, Mapping):
                continue
            name = str(charge.get("name") or "").lower()
            if "transfer" in name and charge.get("status") == "Active":
                try:
                    return to_decimal(charge.get("amount") or 0)
                except (TypeError, ArithmeticError):
                    return Decimal("0.00")
        return Decimal("0.00")

    # ------------------------------------------------------------------
    # Store transfers
    # ------------------------------------------------------------------
    def get_store(self, store_id: str) -> Optional[StoreInfo]:
        """Look up the agent's store; ``None`` when the lookup is unavailable.

        Agent profiles carry ``store_id`` as ``<collection>/<id>``; only the
        last segment is sent.
        """

        lookup = store_id.rsplit("/", 1)[-1].strip()
        if not lookup:
            return None
        try:
            data = self._request("GET", f"{STORE_PATH}{lookup}", failure_message="Failed to fetch store details")
        except ApiError:
            return None
        if isinstance(data, Mapping) and isinstance(data.get("data"), Mapping):
            data = data["data"]
        if not isinstance(data, Mapping):
            return None
        return StoreInfo.from_payload(data, store_id)

    def transfer_to_store(self, receiver_email: str, amount: Decimal, pin: str) -> TransactionResult:
        data = self._request(
            "POST",
            STORE_TRANSFER_PATH,
            payload={
                "receiverEmail": receiver_email,
                "amount": float(to_decimal(amount)),
                "pin": pin,
            },
            failure_message=TRANSFER_FAILED_MESSAGE,
        )
        if not isinstance(data, Mapping):
            raise ResponseShapeError(TRANSFER_FAILED_MESSAGE)
        transaction = data.get("transaction")
        source = transaction if isinstance(transaction, Mapping) else data
        return TransactionResult(
            transaction_id=str(source.get("_id") or source.get("reference") or "unknown"),
            message=str(data.get("message") or ""),
        )

    # ------------------------------------------------------------------
    # PIN management
    # ------------------------------------------------------------------
    def set_pin(self, pin: str) -> Dict[str, Any]:
        return self._pin_request(PIN_SET_PATH, {"pin": pin}, "Failed to set PIN. Please try again.")

    def update_pin(self, current_pin: str, new_pin: str) -> Dict[str, Any]:
        return self._pin_request(
            PIN_UPDATE_PATH,
            {"currentPin": current_pin, "newPin": new_pin},
            "Failed to update PIN. Please try again.",
        )

    def _pin_request(self, path: str, payload: Mapping[str, Any], failure_message: str) -> Dict[str, Any]:
        try:
            data = self._request("POST", path, payload=payload, failure_message=failure_message)
        except ApiError as exc:
            if exc.status == 401:
                raise ApiError("Current PIN is incorrect. Please try again.", status=401) from exc
            if exc.status == 400:
                raise ApiError("Invalid PIN format. Please ensure your PIN is 4 digits.", status=400) from exc
            raise
        self._logger.log("pin_changed", path=path)
        return dict(data) if isinstance(data, Mapping) else {}


__all__ = ["WalletApiClient", "unwrap_user_payload", "STORE_TRANSFER_PATH", "TRANSFER_FAILED_MESSAGE"]
