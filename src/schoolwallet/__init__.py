"""SchoolWallet package for agent QR transfers between school wallets."""

from .client import WalletApiClient, unwrap_user_payload
from .exceptions import (
    ApiError,
    CameraBusyError,
    CameraError,
    CameraPermissionError,
    FormValidationError,
    InvalidQRFormatError,
    NoCameraError,
    ResponseShapeError,
    SchoolWalletError,
    SubmissionInProgressError,
    ValidationError,
    WizardStateError,
)
from .manual_entry import ManualEntryForm
from .models import (
    PaymentIntent,
    StoreInfo,
    TransactionDirection,
    TransactionRecord,
    TransactionResult,
    TransferDraft,
    UserProfile,
    Wallet,
    WizardSnapshot,
    WizardState,
)
from .ops import StructuredLogger
from .qr import decode_payment_intent, encode_payment_intent, render_qr_png, render_qr_svg
from .scanner import CameraDevice, ScanController, ScanOutcome, ScanSession
from .security import SessionMonitor, SessionRegistry
from .store_transfer import StoreTransferForm, TransferType
from .wizard import TransferWizard

__all__ = [
    "ApiError",
    "CameraBusyError",
    "CameraDevice",
    "CameraError",
    "CameraPermissionError",
    "FormValidationError",
    "InvalidQRFormatError",
    "ManualEntryForm",
    "NoCameraError",
    "PaymentIntent",
    "ResponseShapeError",
    "ScanController",
    "ScanOutcome",
    "ScanSession",
    "SchoolWalletError",
    "SessionMonitor",
    "SessionRegistry",
    "StoreInfo",
    "StoreTransferForm",
    "StructuredLogger",
    "SubmissionInProgressError",
    "TransactionDirection",
    "TransactionRecord",
    "TransactionResult",
    "TransferDraft",
    "TransferType",
    "TransferWizard",
    "UserProfile",
    "ValidationError",
    "Wallet",
    "WalletApiClient",
    "WizardSnapshot",
    "WizardState",
    "decode_payment_intent",
    "encode_payment_intent",
    "render_qr_png",
    "render_qr_svg",
    "unwrap_user_payload",
]
