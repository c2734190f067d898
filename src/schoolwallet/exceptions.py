"""Custom exception hierarchy for the SchoolWallet package."""

from __future__ import annotations

from typing import Dict, Optional


class SchoolWalletError(Exception):
    """Base class for all SchoolWallet specific errors."""


class ValidationError(SchoolWalletError):
    """Raised when user supplied input is incomplete or malformed."""


class FormValidationError(ValidationError):
    """Raised with one message per invalid field of a multi-field form."""

    def __init__(self, errors: Dict[str, str]) -> None:
        super().__init__("; ".join(errors.values()))
        self.errors = dict(errors)


class InvalidQRFormatError(SchoolWalletError):
    """Raised when a scanned payload cannot be turned into a payment intent."""

    def __init__(self, message: str = "Invalid QR code format") -> None:
        super().__init__(message)


class CameraError(SchoolWalletError):
    """Raised when the camera cannot be opened or read."""


class CameraPermissionError(CameraError):
    """Raised when access to the camera is refused."""


class NoCameraError(CameraError):
    """Raised when no video input device is available."""


class CameraBusyError(CameraError):
    """Raised when the camera is held by another console session."""


class WizardStateError(SchoolWalletError):
    """Raised when a transfer wizard action is not valid in the current state."""


class SubmissionInProgressError(WizardStateError):
    """Raised when a second submission is attempted while one is in flight."""


class ApiError(SchoolWalletError):
    """Raised when the wallet backend rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class ResponseShapeError(ApiError):
    """Raised when a backend response does not match any known envelope."""
