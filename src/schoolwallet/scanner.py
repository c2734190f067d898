"""Camera lifecycle and QR decode loop for agent scanning.

The controller never reaches for a global camera: the backend and the frame
decoder are handed in, and every started scan is represented by an explicit
:class:`ScanSession` handle that the controller releases on stop, on a decoded
payload and on camera errors.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Sequence

from .exceptions import CameraBusyError, CameraError, CameraPermissionError, InvalidQRFormatError, NoCameraError
from .models import PaymentIntent
from .ops import StructuredLogger
from .qr import decode_payment_intent

CAMERA_ACCESS_MESSAGE = "Could not access camera. Please ensure permissions are granted and a camera is available."
INVALID_PAYMENT_QR_MESSAGE = "Couldn't read QR code. Please ensure this is a valid payment QR code."
CAMERA_BUSY_MESSAGE = "The camera is in use by another agent."


@dataclass(frozen=True, slots=True)
class CameraDevice:
    device_id: str
    label: str = ""


class MediaStream(Protocol):
    def read_frame(self) -> Any:
        """Return the next frame or raise :class:`CameraError`."""

    def stop(self) -> None:
        """Release every track of the stream. Must tolerate repeated calls."""


class CameraBackend(Protocol):
    def open_stream(self, device_id: Optional[str] = None) -> MediaStream:
        """Open a stream; raise :class:`CameraPermissionError` when access is refused."""

    def list_devices(self) -> Sequence[CameraDevice]:
        """Return the available video input devices."""


class FrameDecoder(Protocol):
    def decode(self, frame: Any) -> Optional[str]:
        """Return QR text found in ``frame`` or ``None`` when there is none."""


@dataclass(slots=True)
class ScanSession:
    """Handle for one open camera stream, owned by one console session."""

    device: CameraDevice
    stream: MediaStream
    owner: Optional[str] = None
    frames_read: int = 0
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.stream.stop()


@dataclass(frozen=True, slots=True)
class ScanOutcome:
    intent: Optional[PaymentIntent] = None
    error: Optional[str] = None
    stopped: bool = False
    frames: int = 0

    @property
    def found(self) -> bool:
        return self.intent is not None


@dataclass(slots=True)
class ScanController:
    """Drive one camera for whichever session currently owns it.

    Every call that touches ``devices`` or ``active_session`` holds ``_lock``.
    The frame loop in :meth:`scan` only takes it between frames, so a stop
    request from the owner is seen on the next iteration. Calls that pass an
    ``owner`` are refused with :class:`CameraBusyError` while a different owner
    is scanning.
    """

    backend: CameraBackend
    decoder: FrameDecoder
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    devices: List[CameraDevice] = field(default_factory=list)
    device_index: int = 0
    active_session: Optional[ScanSession] = None
    camera_error: Optional[str] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    @property
    def scanning(self) -> bool:
        return self.active_session is not None

    @property
    def owner(self) -> Optional[str]:
        session = self.active_session
        return session.owner if session is not None else None

    @property
    def current_device(self) -> Optional[CameraDevice]:
        if not self.devices:
            return None
        return self.devices[self.device_index % len(self.devices)]

    def _check_owner(self, owner: Optional[str]) -> None:
        session = self.active_session
        if session is not None and session.owner != owner:
            self.logger.log("camera_busy", owner=session.owner, requested_by=owner)
            raise CameraBusyError(CAMERA_BUSY_MESSAGE)

    def request_camera_access(self, *, owner: Optional[str] = None) -> List[CameraDevice]:
        """Trigger the permission prompt with a throwaway stream and enumerate devices."""

        with self._lock:
            self._check_owner(owner)
            self.camera_error = None
            try:
                permission_stream = self.backend.open_stream(None)
            except NoCameraError:
                self.devices = []
                self.camera_error = CAMERA_ACCESS_MESSAGE
                self.logger.log("camera_not_found")
                raise
            except CameraError as exc:
                self.camera_error = CAMERA_ACCESS_MESSAGE
                self.logger.log("camera_access_denied", reason=str(exc))
                raise CameraPermissionError(CAMERA_ACCESS_MESSAGE) from exc
            try:
                devices = list(self.backend.list_devices())
            finally:
                permission_stream.stop()
            if not devices:
                self.devices = []
                self.camera_error = CAMERA_ACCESS_MESSAGE
                self.logger.log("camera_not_found")
                raise NoCameraError("No cameras found")
            self.devices = devices
            if self.device_index >= len(devices):
                self.device_index = 0
            self.logger.log("camera_access_granted", devices=len(devices))
            return list(devices)

    def start_scanning(self, device_id: Optional[str] = None, *, owner: Optional[str] = None) -> ScanSession:
        with self._lock:
            self._check_owner(owner)
            self._release_active()
            if not self.devices:
                self.request_camera_access(owner=owner)
            if device_id is not None:
                for index, device in enumerate(self.devices):
                    if device.device_id == device_id:
                        self.device_index = index
                        break
                else:
                    raise NoCameraError(f"Unknown camera '{device_id}'.")
            device = self.current_device
            if device is None:
                raise NoCameraError("No cameras found")
            try:
                stream = self.backend.open_stream(device.device_id)
            except CameraError as exc:
                self.camera_error = CAMERA_ACCESS_MESSAGE
                self.logger.log("camera_open_failed", device=device.device_id, reason=str(exc))
                raise
            self.camera_error = None
            session = ScanSession(device=device, stream=stream, owner=owner)
            self.active_session = session
            self.logger.log("scan_started", device=device.device_id, owner=owner)
            return session

    def scan(self, max_frames: Optional[int] = None) -> ScanOutcome:
        """Read frames until a payload decodes, scanning stops, or the budget runs out."""

        session = self.active_session
        if session is None:
            raise CameraError("Scanning has not been started.")
        frames = 0
        while self.active_session is session:
            if max_frames is not None and frames >= max_frames:
                return ScanOutcome(frames=frames)
            try:
                frame = session.stream.read_frame()
            except CameraError as exc:
                if not self._end_session(session):
                    break
                self.camera_error = f"Camera error: {exc}"
                self.logger.log("scan_camera_error", reason=str(exc))
                return ScanOutcome(error=self.camera_error, frames=frames)
            frames += 1
            session.frames_read += 1
            payload = self.decoder.decode(frame)
            if payload is None:
                continue
            if not self._end_session(session):
                break
            try:
                intent = decode_payment_intent(payload)
            except InvalidQRFormatError:
                self.logger.log("scan_invalid_payload", frames=frames)
                return ScanOutcome(error=INVALID_PAYMENT_QR_MESSAGE, frames=frames)
            self.logger.log("scan_decoded", recipient=intent.recipient_id, frames=frames)
            return ScanOutcome(intent=intent, frames=frames)
        return ScanOutcome(stopped=True, frames=frames)

    def _end_session(self, session: ScanSession) -> bool:
        with self._lock:
            if self.active_session is not session:
                return False
            self._release_active()
            return True

    def _release_active(self) -> None:
        session = self.active_session
        self.active_session = None
        if session is not None:
            session.release()
            self.logger.log("scan_stopped", device=session.device.device_id, frames=session.frames_read)

    def stop_scanning(self, *, owner: Optional[str] = None) -> None:
        with self._lock:
            self._check_owner(owner)
            self._release_active()

    def release_owner(self, owner: str) -> None:
        """Stop the scan held by ``owner``, if any; used when a session ends."""

        with self._lock:
            if self.owner == owner:
                self._release_active()

    def switch_camera(self, *, owner: Optional[str] = None) -> Optional[CameraDevice]:
        with self._lock:
            self._check_owner(owner)
            if not self.devices:
                raise NoCameraError("No cameras found")
            self.device_index = (self.device_index + 1) % len(self.devices)
            if self.active_session is not None:
                self.start_scanning(owner=owner)
            return self.current_device


class OpenCVCameraBackend:
    """Camera backend for kiosks with a locally attached camera."""

    def __init__(self, *, max_devices: int = 4, width: int = 1280, height: int = 720) -> None:
        import cv2

        self._cv2 = cv2
        self._max_devices = max_devices
        self._width = width
        self._height = height

    def open_stream(self, device_id: Optional[str] = None) -> "OpenCVStream":
        index = int(device_id) if device_id else 0
        capture = self._cv2.VideoCapture(index)
        if not capture.isOpened():
            capture.release()
            raise CameraPermissionError(f"Could not open camera {index}.")
        capture.set(self._cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(self._cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        return OpenCVStream(capture)

    def list_devices(self) -> List[CameraDevice]:
        devices: List[CameraDevice] = []
        for index in range(self._max_devices):
            capture = self._cv2.VideoCapture(index)
            try:
                if capture.isOpened():
                    devices.append(CameraDevice(device_id=str(index), label=f"Camera {index}"))
            finally:
                capture.release()
        return devices


class OpenCVStream:
    def __init__(self, capture: Any) -> None:
        self._capture = capture

    def read_frame(self) -> Any:
        ok, frame = self._capture.read()
        if not ok:
            raise CameraError("Failed to capture frame.")
        return frame

    def stop(self) -> None:
        self._capture.release()


class OpenCVQRDecoder:
    def __init__(self) -> None:
        import cv2

        self._cv2 = cv2
        self._detector = cv2.QRCodeDetector()

    def decode(self, frame: Any) -> Optional[str]:
        try:
            data, points, _ = self._detector.detectAndDecode(frame)
        except self._cv2.error:
            return None
        if points is None or not data:
            return None
        return data


__all__ = [
    "CameraBackend",
    "CameraDevice",
    "FrameDecoder",
    "MediaStream",
    "OpenCVCameraBackend",
    "OpenCVQRDecoder",
    "ScanController",
    "ScanOutcome",
    "ScanSession",
    "CAMERA_ACCESS_MESSAGE",
    "CAMERA_BUSY_MESSAGE",
    "INVALID_PAYMENT_QR_MESSAGE",
]
