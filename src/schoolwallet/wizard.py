"""The agent transfer wizard.

``IDLE -> STAGED -> AUTHORIZING -> SUBMITTING -> COMPLETE | FAILED``

The wizard owns the single draft of a transfer. The entered PIN lives only
while the wizard is authorising and is dropped the moment a submission starts,
is cancelled, or the wizard resets. Comparing it with the PIN carried by the
intent only short-circuits obviously wrong entries; the backend verifies the
PIN on every transfer.
"""

from __future__ import annotations

import hmac
import threading
from decimal import Decimal
from typing import Optional, Protocol

from .client import TRANSFER_FAILED_MESSAGE
from .exceptions import ApiError, SubmissionInProgressError, ValidationError, WizardStateError
from .models import PaymentIntent, TransactionResult, TransferDraft, WizardSnapshot, WizardState
from .money import AmountLike, to_decimal
from .ops import StructuredLogger
from .security import validate_pin_format

PIN_CANCELLED_MESSAGE = "Invalid PIN. Transaction cancelled."
PIN_FORMAT_MESSAGE = "PIN must be exactly 4 digits"


class TransferApi(Protocol):
    def wallet_to_wallet_transfer(
        self,
        recipient_id: str,
        amount: Decimal,
        description: str,
        pin: str,
    ) -> TransactionResult:
        ...


class TransferWizard:
    """Drive one transfer at a time from captured intent to backend result."""

    def __init__(
        self,
        api: TransferApi,
        *,
        available_balance: Optional[AmountLike] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._api = api
        self.available_balance = to_decimal(available_balance) if available_balance is not None else None
        self._logger = logger or StructuredLogger()
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._state = WizardState.IDLE
        self._intent: Optional[PaymentIntent] = None
        self._draft: Optional[TransferDraft] = None
        self._pin: Optional[str] = None
        self._result: Optional[TransactionResult] = None
        self._error: Optional[str] = None

    def _current_draft(self) -> TransferDraft:
        if self._draft is None:
            raise WizardStateError("No transfer has been staged.")
        return self._draft

    def _require(self, *states: WizardState) -> None:
        if self._state not in states:
            if self._state is WizardState.SUBMITTING:
                raise SubmissionInProgressError("A transfer is already being processed.")
            allowed = ", ".join(state.value for state in states)
            raise WizardStateError(f"Cannot do that while {self._state.value}; expected {allowed}.")

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def state(self) -> WizardState:
        return self._state

    @property
    def intent(self) -> Optional[PaymentIntent]:
        return self._intent

    @property
    def draft(self) -> Optional[TransferDraft]:
        return self._draft

    @property
    def result(self) -> Optional[TransactionResult]:
        return self._result

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def pin_entered(self) -> bool:
        return bool(self._pin)

    @property
    def known_balance(self) -> Optional[Decimal]:
        """Balance used to check amounts; a zero wallet balance on the intent means unknown."""

        if self.available_balance is not None:
            return self.available_balance
        if self._intent is not None and self._intent.wallet_balance > 0:
            return self._intent.wallet_balance
        return None

    @property
    def can_confirm(self) -> bool:
        if self._state is not WizardState.STAGED or self._draft is None:
            return False
        return self._draft.validation_error(self.known_balance) is None

    def snapshot(self) -> WizardSnapshot:
        intent = self._intent
        draft = self._draft
        return WizardSnapshot(
            state=self._state,
            intent_name=intent.recipient_name if intent else None,
            intent_email=intent.recipient_email if intent else None,
            intent_id=intent.recipient_id if intent else None,
            source_is_manual_entry=intent.source_is_manual_entry if intent else False,
            amount_text=draft.amount_text if draft else "",
            description=draft.description if draft else "",
            can_confirm=self.can_confirm,
            pin_entered=self.pin_entered,
            result=self._result,
            error=self._error,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def stage(self, intent: PaymentIntent) -> None:
        self._require(WizardState.IDLE)
        self._clear()
        self._intent = intent
        self._draft = TransferDraft(intent=intent)
        self._state = WizardState.STAGED
        self._logger.log(
            "transfer_staged",
            recipient=intent.recipient_id,
            manual=intent.source_is_manual_entry,
        )

    def update_draft(self, amount: Optional[str] = None, description: Optional[str] = None) -> None:
        self._require(WizardState.STAGED)
        draft = self._current_draft()
        if amount is not None:
            draft.amount_text = amount.strip()
        if description is not None:
            draft.description = description.strip()

    def confirm(self, amount: Optional[str] = None, description: Optional[str] = None) -> None:
        self.update_draft(amount, description)
        draft = self._current_draft()
        problem = draft.validation_error(self.known_balance)
        if problem is not None:
            self._error = problem
            raise ValidationError(problem)
        self._error = None
        self._state = WizardState.AUTHORIZING
        self._logger.log("transfer_confirmed", recipient=draft.intent.recipient_id, amount=str(draft.amount))

    def enter_pin(self, pin: str) -> None:
        self._require(WizardState.AUTHORIZING)
        self._pin = (pin or "").strip()

    def submit(self, pin: Optional[str] = None) -> Optional[TransactionResult]:
        """Authorise and send the transfer.

        Returns the result on success and ``None`` when the transfer was
        cancelled locally or the backend refused it; :attr:`state` and
        :attr:`error` tell which.
        """

        if not self._lock.acquire(blocking=False):
            raise SubmissionInProgressError("A transfer is already being processed.")
        try:
            self._require(WizardState.AUTHORIZING)
            if pin is not None:
                self.enter_pin(pin)
            entered, self._pin = self._pin, None
            if not entered or not validate_pin_format(entered):
                self._error = PIN_FORMAT_MESSAGE
                raise ValidationError(PIN_FORMAT_MESSAGE)

            intent, draft = self._intent, self._draft
            if intent is None or draft is None or draft.amount is None:
                raise WizardStateError("No confirmed transfer to submit.")
            if not hmac.compare_digest(entered.encode("utf-8"), intent.pin.encode("utf-8")):
                self._clear()
                self._error = PIN_CANCELLED_MESSAGE
                self._logger.log("transfer_cancelled_pin_mismatch", recipient=intent.recipient_id)
                return None

            self._state = WizardState.SUBMITTING
            self._error = None
            self._logger.log("transfer_submitting", recipient=intent.recipient_id, amount=str(draft.amount))
            try:
                result = self._api.wallet_to_wallet_transfer(
                    intent.recipient_id,
                    draft.amount,
                    draft.description,
                    entered,
                )
            except ApiError as exc:
                self._state = WizardState.FAILED
                self._error = exc.message or TRANSFER_FAILED_MESSAGE
                self._logger.log("transfer_failed", recipient=intent.recipient_id, status=exc.status, message=self._error)
                return None
            except Exception as exc:
                self._state = WizardState.FAILED
                self._error = TRANSFER_FAILED_MESSAGE
                self._logger.log("transfer_failed", recipient=intent.recipient_id, error=repr(exc))
                return None
            self._state = WizardState.COMPLETE
            self._result = result
            self._logger.log("transfer_complete", recipient=intent.recipient_id, transaction=result.transaction_id)
            return result
        finally:
            self._lock.release()

    def retry(self) -> None:
        """Go back to PIN entry after a failed submission, keeping the draft."""

        self._require(WizardState.FAILED)
        self._pin = None
        self._error = None
        self._state = WizardState.AUTHORIZING

    def cancel(self) -> None:
        self._require(WizardState.STAGED, WizardState.AUTHORIZING)
        self.reset()

    def reset(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise SubmissionInProgressError("A transfer is already being processed.")
        try:
            if self._state is WizardState.SUBMITTING:
                raise SubmissionInProgressError("A transfer is already being processed.")
            self._clear()
        finally:
            self._lock.release()


__all__ = ["TransferWizard", "TransferApi", "PIN_CANCELLED_MESSAGE", "PIN_FORMAT_MESSAGE"]
