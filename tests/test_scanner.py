import threading
from typing import List, Optional

import pytest

from schoolwallet.exceptions import CameraBusyError, CameraError, CameraPermissionError, NoCameraError
from schoolwallet.qr import encode_payment_intent
from schoolwallet.scanner import (
    CAMERA_ACCESS_MESSAGE,
    CAMERA_BUSY_MESSAGE,
    INVALID_PAYMENT_QR_MESSAGE,
    CameraDevice,
    ScanController,
)


class FakeStream:
    def __init__(self, frames: List[object], *, fail_after: Optional[int] = None) -> None:
        self.frames = list(frames)
        self.fail_after = fail_after
        self.reads = 0
        self.stop_calls = 0

    def read_frame(self):
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise CameraError("device unplugged")
        self.reads += 1
        return self.frames.pop(0) if self.frames else None

    def stop(self) -> None:
        self.stop_calls += 1


class FakeBackend:
    def __init__(self, devices=None, *, frames=None, deny: bool = False, list_error: bool = False) -> None:
        self.devices = [CameraDevice("0", "Front"), CameraDevice("1", "Back")] if devices is None else devices
        self.frames = frames or []
        self.deny = deny
        self.list_error = list_error
        self.streams: List[FakeStream] = []
        self.opened_ids: List[Optional[str]] = []

    def open_stream(self, device_id=None):
        if self.deny:
            raise CameraPermissionError("NotAllowedError")
        stream = FakeStream(self.frames)
        self.streams.append(stream)
        self.opened_ids.append(device_id)
        return stream

    def list_devices(self):
        if self.list_error:
            raise CameraError("enumeration failed")
        return list(self.devices)


class FrameDecoder:
    """Frames are either ``None`` or the QR text they contain."""

    def decode(self, frame):
        return frame


def payload() -> str:
    return encode_payment_intent("u1", "Ada", "a@x", "1234")


def test_request_access_releases_permission_stream_and_lists_devices() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())

    devices = controller.request_camera_access()

    assert [device.device_id for device in devices] == ["0", "1"]
    assert backend.streams[0].stop_calls == 1
    assert controller.camera_error is None


def test_request_access_releases_permission_stream_when_listing_fails() -> None:
    backend = FakeBackend(list_error=True)
    controller = ScanController(backend, FrameDecoder())

    with pytest.raises(CameraError):
        controller.request_camera_access()

    assert backend.streams[0].stop_calls == 1


def test_denied_permission_sets_camera_error() -> None:
    controller = ScanController(FakeBackend(deny=True), FrameDecoder())

    with pytest.raises(CameraPermissionError):
        controller.request_camera_access()

    assert controller.camera_error == CAMERA_ACCESS_MESSAGE


def test_no_devices_raises() -> None:
    controller = ScanController(FakeBackend(devices=[]), FrameDecoder())

    with pytest.raises(NoCameraError):
        controller.start_scanning()


def test_scan_skips_empty_frames_until_payload_found() -> None:
    backend = FakeBackend(frames=[None, None, payload()])
    controller = ScanController(backend, FrameDecoder())
    controller.start_scanning()

    outcome = controller.scan(max_frames=10)

    assert outcome.found
    assert outcome.intent.recipient_id == "u1"
    assert outcome.frames == 3
    assert controller.scanning is False
    assert backend.streams[-1].stop_calls == 1


def test_scan_reports_invalid_payload_and_stops() -> None:
    backend = FakeBackend(frames=["garbage"])
    controller = ScanController(backend, FrameDecoder())
    controller.start_scanning()

    outcome = controller.scan(max_frames=5)

    assert outcome.intent is None
    assert outcome.error == INVALID_PAYMENT_QR_MESSAGE
    assert controller.scanning is False


def test_scan_budget_exhausted_keeps_scanning() -> None:
    controller = ScanController(FakeBackend(frames=[None] * 5), FrameDecoder())
    controller.start_scanning()

    outcome = controller.scan(max_frames=3)

    assert outcome.found is False
    assert outcome.error is None
    assert outcome.frames == 3
    assert controller.scanning is True


def test_camera_failure_mid_scan_stops() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())
    controller.start_scanning()
    backend.streams[-1].fail_after = 0

    outcome = controller.scan(max_frames=3)

    assert outcome.error is not None and "device unplugged" in outcome.error
    assert controller.scanning is False


def test_stop_scanning_is_idempotent() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())
    controller.start_scanning()
    stream = backend.streams[-1]

    controller.stop_scanning()
    controller.stop_scanning()

    assert stream.stop_calls == 1
    assert controller.scanning is False


def test_scan_without_start_raises() -> None:
    controller = ScanController(FakeBackend(), FrameDecoder())

    with pytest.raises(CameraError):
        controller.scan()


def test_switch_camera_restarts_on_next_device() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())
    controller.start_scanning()
    first = backend.streams[-1]

    device = controller.switch_camera()

    assert device == CameraDevice("1", "Back")
    assert first.stop_calls == 1
    assert backend.opened_ids[-1] == "1"
    assert controller.scanning is True

    assert controller.switch_camera() == CameraDevice("0", "Front")


def test_start_with_unknown_device_raises() -> None:
    controller = ScanController(FakeBackend(), FrameDecoder())

    with pytest.raises(NoCameraError):
        controller.start_scanning("9")


def test_other_owner_cannot_start_stop_or_switch() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())
    session = controller.start_scanning(owner="agent-a")

    with pytest.raises(CameraBusyError) as excinfo:
        controller.start_scanning(owner="agent-b")
    assert str(excinfo.value) == CAMERA_BUSY_MESSAGE
    with pytest.raises(CameraBusyError):
        controller.stop_scanning(owner="agent-b")
    with pytest.raises(CameraBusyError):
        controller.switch_camera(owner="agent-b")

    assert controller.active_session is session
    assert controller.owner == "agent-a"
    assert backend.streams[-1].stop_calls == 0

    controller.stop_scanning(owner="agent-a")
    assert controller.scanning is False
    controller.start_scanning(owner="agent-b")
    assert controller.owner == "agent-b"


def test_release_owner_only_stops_that_owners_scan() -> None:
    controller = ScanController(FakeBackend(), FrameDecoder())
    controller.start_scanning(owner="agent-a")

    controller.release_owner("agent-b")
    assert controller.scanning is True

    controller.release_owner("agent-a")
    assert controller.scanning is False


def test_scan_loop_ends_when_owner_stops_from_another_thread() -> None:
    class GatedDecoder:
        def __init__(self) -> None:
            self.reads = threading.Event()

        def decode(self, frame):
            self.reads.set()
            return None

    decoder = GatedDecoder()
    controller = ScanController(FakeBackend(), decoder)
    controller.start_scanning(owner="agent-a")
    outcomes = []
    worker = threading.Thread(target=lambda: outcomes.append(controller.scan()))
    worker.start()
    assert decoder.reads.wait(5)

    controller.stop_scanning(owner="agent-a")
    worker.join(5)

    assert outcomes and outcomes[0].stopped is True
    assert controller.scanning is False


def test_start_after_cameras_disappear_raises() -> None:
    backend = FakeBackend()
    controller = ScanController(backend, FrameDecoder())
    controller.request_camera_access()
    backend.devices = []
    controller.devices = []

    with pytest.raises(NoCameraError):
        controller.start_scanning()
