"""Session, routing and PIN helpers for the SchoolWallet console."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Tuple
from uuid import uuid4

from .exceptions import ValidationError
from .ops import StructuredLogger

PIN_PATTERN = re.compile(r"^[0-9]{4}$")

ROLE_ROUTES: Dict[str, str] = {
    "school": "/schools",
    "parent": "/parent",
    "student": "/kid",
    "store": "/store",
    "agent": "/agent",
    "admin": "/admin",
}

ROLE_SPECIFIC_ROUTES: Dict[str, Tuple[str, ...]] = {
    "school": ("/schools", "/settings"),
    "parent": ("/parent", "/settings"),
    "student": ("/kid", "/settings"),
    "store": ("/store", "/settings"),
    "agent": ("/agent", "/settings"),
    "admin": ("/admin",),
}

PUBLIC_PATHS: Tuple[str, ...] = ("/", "/login", "/health")


def validate_pin_format(pin: Optional[str]) -> bool:
    """Return ``True`` when ``pin`` is exactly four ASCII digits."""

    return bool(pin) and PIN_PATTERN.match(pin or "") is not None


def validate_new_pin(pin: str, confirmation: str, *, current_pin: Optional[str] = None, pin_is_set: bool = False) -> None:
    """Check a PIN change form before it is sent to the backend."""

    if pin != confirmation:
        raise ValidationError("PINs do not match. Please ensure both PIN fields are identical.")
    if len(pin) != 4:
        raise ValidationError("PIN must be exactly 4 digits long.")
    if not validate_pin_format(pin):
        raise ValidationError("PIN must contain only numbers (0-9).")
    if pin_is_set and not validate_pin_format(current_pin):
        raise ValidationError("Please enter your current 4-digit PIN.")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS


def home_for_role(role: str) -> str:
    return ROLE_ROUTES.get(role, "/")


def is_route_allowed(role: str, path: str) -> bool:
    if is_public_path(path):
        return True
    return any(path.startswith(prefix) for prefix in ROLE_SPECIFIC_ROUTES.get(role, ()))


class SessionMonitor:
    """Revalidate a bearer token on a fixed interval until stopped.

    ``on_invalid`` runs once, from the monitor thread, the first time
    ``validate`` reports the token as no longer accepted.
    """

    def __init__(
        self,
        validate: Callable[[], bool],
        on_invalid: Callable[[], None],
        *,
        interval_seconds: float = 600.0,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self._validate = validate
        self._on_invalid = on_invalid
        self._interval = interval_seconds
        self._logger = logger or StructuredLogger()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="session-monitor", daemon=True)
        self._thread.start()

    def check_now(self) -> bool:
        if self._stop.is_set():
            return False
        valid = self._validate()
        if not valid:
            self._stop.set()
            self._logger.log("session_invalidated")
            self._on_invalid()
        return valid

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            if not self.check_now():
                return

    def stop(self, *, timeout: float = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


@dataclass(slots=True)
class Session:
    """A signed in user as seen by the console."""

    id: str
    token: str
    user_id: str
    role: str
    name: str = ""
    email: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)
    valid: bool = True


class SessionRegistry:
    """Keep bearer tokens server side and tear sessions down on logout or expiry.

    ``on_end`` is called with the session id once per ended session, whether
    it ended by logout or because the token stopped validating, so callers can
    drop whatever per-session state they hold.
    """

    def __init__(
        self,
        *,
        validator_factory: Optional[Callable[[str], Callable[[], bool]]] = None,
        interval_seconds: float = 600.0,
        logger: Optional[StructuredLogger] = None,
        on_end: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._validator_factory = validator_factory
        self._interval = interval_seconds
        self._logger = logger or StructuredLogger()
        self._on_end = on_end
        self._sessions: Dict[str, Session] = {}
        self._monitors: Dict[str, SessionMonitor] = {}
        self._lock = threading.Lock()

    def create(self, token: str, *, user_id: str, role: str, name: str = "", email: str = "") -> Session:
        session = Session(id=str(uuid4()), token=token, user_id=user_id, role=role, name=name, email=email)
        with self._lock:
            self._sessions[session.id] = session
        if self._validator_factory is not None:
            monitor = SessionMonitor(
                self._validator_factory(token),
                lambda: self.end(session.id),
                interval_seconds=self._interval,
                logger=self._logger,
            )
            with self._lock:
                self._monitors[session.id] = monitor
            monitor.start()
        self._logger.log("session_created", user=user_id, role=role)
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or not session.valid:
            return None
        return session

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def invalidate(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            monitor = self._monitors.pop(session_id, None)
        if session is not None:
            session.valid = False
        if monitor is not None:
            monitor.stop()

    def end(self, session_id: str) -> None:
        self.invalidate(session_id)
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self._logger.log("session_ended", user=session.user_id)
        if self._on_end is not None:
            self._on_end(session_id)

    def monitor_for(self, session_id: str) -> Optional[SessionMonitor]:
        with self._lock:
            return self._monitors.get(session_id)

    def active_sessions(self) -> Iterable[Session]:
        with self._lock:
            return tuple(session for session in self._sessions.values() if session.valid)

    def shutdown(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.end(session_id)


__all__ = [
    "PIN_PATTERN",
    "ROLE_ROUTES",
    "ROLE_SPECIFIC_ROUTES",
    "Session",
    "SessionMonitor",
    "SessionRegistry",
    "home_for_role",
    "is_public_path",
    "is_route_allowed",
    "validate_new_pin",
    "validate_pin_format",
]
