"""FastAPI console for SchoolWallet agents and kids.

Pages are rendered server side. Each signed in browser session owns one
:class:`~schoolwallet.wizard.TransferWizard`; the wizard (and therefore any
entered PIN) lives in process memory only, never in the session cookie or the
database. Bearer tokens are kept server side in a
:class:`~schoolwallet.security.SessionRegistry` that revalidates them on a
schedule and forgets them on logout.
"""

from __future__ import annotations

import re
import threading
from decimal import Decimal
from html import escape as html_escape
from typing import Callable, Dict, Optional, Tuple

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from ..client import WalletApiClient
from ..exceptions import (
    ApiError,
    CameraBusyError,
    CameraError,
    FormValidationError,
    InvalidQRFormatError,
    SubmissionInProgressError,
    ValidationError,
    WizardStateError,
)
from ..manual_entry import ManualEntryForm
from ..models import StoreInfo, WizardSnapshot, WizardState
from ..money import format_currency
from ..ops import StructuredLogger
from ..qr import decode_payment_intent, encode_payment_intent, render_qr_png, render_qr_svg
from ..scanner import INVALID_PAYMENT_QR_MESSAGE, OpenCVCameraBackend, OpenCVQRDecoder, ScanController
from ..security import (
    Session as AuthSession,
    SessionRegistry,
    home_for_role,
    is_route_allowed,
    validate_new_pin,
    validate_pin_format,
)
from ..store_transfer import StoreTransferForm, TransferType, needs_store_email
from ..wizard import TransferWizard
from .config import (
    API_BASE_URL,
    CAMERA_BACKEND,
    DEFAULT_CURRENCY,
    EVENT_LOG_PATH,
    HTTP_TIMEOUT_SECONDS,
    SCAN_FRAME_BUDGET,
    SESSION_CHECK_MINUTES,
    SESSION_SECRET,
)
from .persistence import create_db_and_tables, list_receipts, record_receipt

# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
app = FastAPI(title="SchoolWallet")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)

event_log = StructuredLogger(path=EVENT_LOG_PATH)


def default_api_client_factory(token: Optional[str]) -> WalletApiClient:
    return WalletApiClient(API_BASE_URL, token=token, timeout=HTTP_TIMEOUT_SECONDS, logger=event_log)


def default_scan_controller_factory() -> Optional[ScanController]:
    if CAMERA_BACKEND != "opencv":
        return None
    return ScanController(OpenCVCameraBackend(), OpenCVQRDecoder(), logger=event_log)


api_client_factory: Callable[[Optional[str]], WalletApiClient] = default_api_client_factory
scan_controller_factory: Callable[[], Optional[ScanController]] = default_scan_controller_factory


def _token_validator(token: str) -> Callable[[], bool]:
    return lambda: api_client_factory(token).validate_token()


class WizardRegistry:
    """One transfer wizard per signed in session."""

    def __init__(self) -> None:
        self._wizards: Dict[str, TransferWizard] = {}
        self._lock = threading.Lock()

    def get(self, auth: AuthSession) -> TransferWizard:
        with self._lock:
            wizard = self._wizards.get(auth.id)
            if wizard is None:
                wizard = TransferWizard(api_client_factory(auth.token), logger=event_log)
                self._wizards[auth.id] = wizard
            return wizard

    def drop(self, session_id: str) -> None:
        with self._lock:
            self._wizards.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._wizards


wizards = WizardRegistry()
_scanner_lock = threading.Lock()
_scanner: Optional[ScanController] = None


def get_scanner() -> Optional[ScanController]:
    global _scanner
    with _scanner_lock:
        if _scanner is None:
            _scanner = scan_controller_factory()
        return _scanner


def _session_ended(session_id: str) -> None:
    """Drop everything held for a session that logged out or expired."""

    wizards.drop(session_id)
    scanner = _scanner
    if scanner is not None:
        scanner.release_owner(session_id)


sessions = SessionRegistry(
    validator_factory=_token_validator,
    interval_seconds=SESSION_CHECK_MINUTES * 60,
    logger=event_log,
    on_end=_session_ended,
)

create_db_and_tables()


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def current_auth(request: Request) -> Optional[AuthSession]:
    return sessions.get(request.session.get("sid"))


def forget_session(session_id: str) -> None:
    sessions.end(session_id)
    wizards.drop(session_id)


def require_route(request: Request, path: str) -> Tuple[Optional[AuthSession], Optional[RedirectResponse]]:
    auth = current_auth(request)
    if auth is None:
        session_id = request.session.pop("sid", None)
        if session_id:
            forget_session(session_id)
        return None, RedirectResponse("/", status_code=302)
    if not is_route_allowed(auth.role, path):
        return None, RedirectResponse(home_for_role(auth.role), status_code=302)
    return auth, None


def set_notice(request: Request, message: str, kind: str = "info") -> None:
    request.session["notice"] = message
    request.session["notice_kind"] = kind


def pop_notice(request: Request) -> Tuple[Optional[str], str]:
    message = request.session.pop("notice", None)
    kind = request.session.pop("notice_kind", "info")
    return message, kind


def base_styles() -> str:
    return """
    <style>
      :root{ --bg:#f8faff; --card:#ffffff; --muted:#64748b; --accent:#3f51b5; --good:#4caf50; --bad:#dc2626; --text:#0f172a; }
      body{ font-family: system-ui,-apple-system,Segoe UI,Roboto,Arial; background:var(--bg); color:var(--text); max-width:880px; margin:0 auto; padding:24px 16px; }
      .card{ background:var(--card); border-radius:14px; padding:18px; margin-bottom:16px; box-shadow:0 1px 3px rgba(15,23,42,0.12); }
      .muted{ color:var(--muted); }
      .notice{ border-radius:10px; padding:10px 14px; margin-bottom:14px; }
      .notice.error{ background:#fee2e2; color:#991b1b; }
      .notice.info{ background:#e0e7ff; color:#312e81; }
      .notice.success{ background:#dcfce7; color:#166534; }
      label{ display:block; margin-top:10px; font-weight:600; }
      input, textarea{ width:100%; box-sizing:border-box; padding:9px; border:1px solid #cbd5e1; border-radius:8px; font:inherit; }
      button{ margin-top:12px; padding:10px 14px; border:none; border-radius:10px; background:var(--accent); color:#fff; font-weight:600; cursor:pointer; }
      button.secondary{ background:#e2e8f0; color:var(--text); }
      button[disabled]{ background:#94a3b8; cursor:not-allowed; }
      .row{ display:flex; gap:10px; flex-wrap:wrap; align-items:center; }
      .row form{ margin:0; }
      table{ width:100%; border-collapse:collapse; }
      th, td{ text-align:left; padding:8px; border-bottom:1px solid #e2e8f0; font-size:14px; }
      .amount-debit{ color:var(--bad); }
      .amount-credit{ color:var(--good); }
      .qr svg{ width:240px; height:240px; }
    </style>
    """


def frame(title: str, inner: str, head_extra: str = "") -> str:
    return (
        "<html><head><meta charset='utf-8'><meta name='viewport' "
        f"content='width=device-width,initial-scale=1'>{head_extra}<title>{html_escape(title)}</title>"
        f"{base_styles()}</head><body>{inner}</body></html>"
    )


def render_page(request: Optional[Request], title: str, inner: str, *, status_code: int = 200) -> HTMLResponse:
    notice_html = ""
    if request is not None:
        message, kind = pop_notice(request)
        if message:
            notice_html = f"<div class='notice {html_escape(kind)}'>{html_escape(message)}</div>"
    return HTMLResponse(frame(title, notice_html + inner), status_code=status_code)


def nav_html(auth: AuthSession) -> str:
    links = [(home_for_role(auth.role), "Home")]
    if auth.role == "agent":
        links.append(("/agent/transfer", "Transfer"))
        links.append(("/agent/transactions", "Transactions"))
    if auth.role == "student":
        links.append(("/kid/pay-agent", "Pay Agent"))
    links.append(("/settings/pin", "PIN"))
    items = " ".join(f"<a href='{href}'>{label}</a>" for href, label in links)
    return (
        f"<div class='row' style='justify-content:space-between;margin-bottom:12px;'><div class='row'>{items}</div>"
        f"<form method='post' action='/logout'><span class='muted'>{html_escape(auth.name or auth.email)}</span> "
        "<button type='submit' class='secondary'>Log out</button></form></div>"
    )


def money(amount: Optional[Decimal]) -> str:
    if amount is None:
        return "-"
    return html_escape(format_currency(amount, DEFAULT_CURRENCY))


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def login_form(error: Optional[str] = None) -> str:
    error_html = f"<div class='notice error'>{html_escape(error)}</div>" if error else ""
    return (
        "<div class='card'><h2>SchoolWallet</h2>"
        f"{error_html}"
        "<form method='post' action='/login'>"
        "<label for='email'>Email</label><input id='email' name='email' type='email' required>"
        "<label for='password'>Password</label><input id='password' name='password' type='password' required>"
        "<button type='submit'>Sign in</button></form></div>"
    )


@app.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    auth = current_auth(request)
    if auth is not None:
        return RedirectResponse(home_for_role(auth.role), status_code=302)
    return render_page(request, "Sign in", login_form())


@app.post("/login", response_class=HTMLResponse)
def login(request: Request, email: str = Form(""), password: str = Form("")) -> HTMLResponse:
    if not email.strip() or not password:
        return render_page(request, "Sign in", login_form("Email and password are required."))
    client = api_client_factory(None)
    try:
        token, profile = client.login(email.strip(), password)
    except ApiError as exc:
        return render_page(request, "Sign in", login_form(exc.message))
    auth = sessions.create(token, user_id=profile.user_id, role=profile.role, name=profile.name, email=profile.email)
    request.session["sid"] = auth.id
    return RedirectResponse(home_for_role(profile.role), status_code=302)


@app.post("/logout")
def logout(request: Request) -> RedirectResponse:
    session_id = request.session.get("sid")
    if session_id:
        forget_session(session_id)
    request.session.clear()
    return RedirectResponse("/", status_code=302)


# ---------------------------------------------------------------------------
# Agent transfer wizard
# ---------------------------------------------------------------------------
def _scan_section(session_id: str) -> str:
    scanner = get_scanner()
    camera_html = ""
    if scanner is not None:
        device = scanner.current_device
        device_label = html_escape(device.label or device.device_id) if device else "Camera access required"
        busy = scanner.owner is not None and scanner.owner != session_id
        if busy:
            device_label += " (in use by another agent)"
        start_disabled = "" if scanner.devices and not busy else " disabled"
        switch_html = (
            "<form method='post' action='/agent/camera/switch'><button type='submit' class='secondary'>Switch Camera</button></form>"
            if len(scanner.devices) > 1
            else ""
        )
        allow_html = (
            ""
            if scanner.devices
            else "<form method='post' action='/agent/camera/allow'><button type='submit' class='secondary'>Allow Camera Access</button></form>"
        )
        camera_html = (
            f"<p class='muted'>Camera: {device_label}</p><div class='row'>{allow_html}"
            f"<form method='post' action='/agent/camera/start'><button type='submit'{start_disabled}>Start Scanning</button></form>"
            "<form method='post' action='/agent/camera/stop'><button type='submit' class='secondary'>Stop Scanning</button></form>"
            f"{switch_html}</div>"
        )
    return (
        "<div class='card'><h3>Scan payment QR code</h3>"
        f"{camera_html}"
        "<form method='post' action='/agent/scan'>"
        "<label for='payload'>Scanned code</label>"
        "<textarea id='payload' name='payload' rows='3' placeholder='Paste or scan the QR payload'></textarea>"
        "<button type='submit'>Use Scanned Code</button></form></div>"
    )


def _manual_section() -> str:
    return (
        "<div class='card'><h3>Manual entry</h3>"
        "<form method='post' action='/agent/manual'>"
        "<label for='user_id'>User ID</label><input id='user_id' name='user_id'>"
        "<label for='name'>Name</label><input id='name' name='name'>"
        "<label for='email'>Email</label><input id='email' name='email' type='email'>"
        "<label for='pin'>PIN</label><input id='pin' name='pin' type='password' inputmode='numeric' maxlength='4'>"
        "<button type='submit'>Continue with Manual Entry</button></form></div>"
    )


def _recipient_html(snapshot: WizardSnapshot) -> str:
    source = "Manual entry" if snapshot.source_is_manual_entry else "QR code"
    return (
        f"<p><strong>{html_escape(snapshot.intent_name or '')}</strong><br>"
        f"<span class='muted'>{html_escape(snapshot.intent_email or '')} &middot; ID {html_escape(snapshot.intent_id or '')} &middot; {source}</span></p>"
    )


def _cancel_form(label: str = "Cancel") -> str:
    return f"<form method='post' action='/agent/reset'><button type='submit' class='secondary'>{label}</button></form>"


def render_wizard(auth: AuthSession, wizard: TransferWizard) -> str:
    snapshot = wizard.snapshot()
    error_html = f"<div class='notice error'>{html_escape(snapshot.error)}</div>" if snapshot.error else ""
    state = snapshot.state
    if state is WizardState.IDLE:
        return error_html + _scan_section(auth.id) + _manual_section()
    if state is WizardState.STAGED:
        fee = api_client_factory(auth.token).get_transfer_fee()
        fee_html = f"<p class='muted'>Transaction fee: {money(fee)}</p>" if fee > 0 else ""
        balance = wizard.known_balance
        balance_html = f"<p class='muted'>Available balance: {money(balance)}</p>" if balance is not None else ""
        return (
            f"<div class='card'><h3>Confirm transaction</h3>{error_html}{_recipient_html(snapshot)}{balance_html}"
            "<form method='post' action='/agent/confirm'>"
            f"<label for='amount'>Payment Amount ({html_escape(DEFAULT_CURRENCY)})</label>"
            f"<input id='amount' name='amount' type='number' min='0.01' step='0.01' required value='{html_escape(snapshot.amount_text)}'>"
            "<label for='description'>Description</label>"
            f"<input id='description' name='description' value='{html_escape(snapshot.description)}'>"
            f"{fee_html}<button type='submit'>Confirm</button></form>{_cancel_form()}</div>"
        )
    if state is WizardState.AUTHORIZING:
        draft = wizard.draft
        return (
            f"<div class='card'><h3>Enter PIN</h3>{error_html}{_recipient_html(snapshot)}"
            f"<p>Amount: {money(draft.amount if draft else None)}</p>"
            "<form method='post' action='/agent/authorize'>"
            "<label for='pin'>Customer PIN</label>"
            "<input id='pin' name='pin' type='password' inputmode='numeric' pattern='[0-9]{4}' maxlength='4' required autocomplete='off'>"
            f"<button type='submit'>Process Payment</button></form>{_cancel_form()}</div>"
        )
    if state is WizardState.SUBMITTING:
        return (
            "<div class='card'><h3>Processing transaction</h3>"
            "<p class='muted'>Please wait while the payment is processed.</p>"
            "<button type='button' disabled>Processing...</button></div>"
        )
    if state is WizardState.COMPLETE:
        result = snapshot.result
        draft = wizard.draft
        return (
            "<div class='card'><h3>Transaction complete</h3>"
            f"{_recipient_html(snapshot)}<p>Amount: {money(draft.amount if draft else None)}</p>"
            f"<p>Transaction ID: <strong>{html_escape(result.transaction_id if result else '')}</strong></p>"
            f"<p class='muted'>{html_escape(result.message if result else '')}</p>"
            f"{_cancel_form('Scan Another')}</div>"
        )
    draft = wizard.draft
    return (
        f"<div class='card'><h3>Transaction failed</h3>{error_html}{_recipient_html(snapshot)}"
        f"<p>Amount: {money(draft.amount if draft else None)}</p><div class='row'>"
        "<form method='post' action='/agent/retry'><button type='submit'>Try Again</button></form>"
        f"{_cancel_form('Start Over')}</div></div>"
    )


@app.get("/agent", response_class=HTMLResponse)
def agent_home(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/agent")
    if redirect is not None:
        return redirect
    wizard = wizards.get(auth)
    body = nav_html(auth) + "<h2>Scan to Pay</h2>" + render_wizard(auth, wizard)
    return render_page(request, "Scan to Pay", body)


def _agent_wizard(request: Request, path: str) -> Tuple[Optional[TransferWizard], Optional[RedirectResponse]]:
    auth, redirect = require_route(request, path)
    if redirect is not None:
        return None, redirect
    return wizards.get(auth), None


def _back_to_agent() -> RedirectResponse:
    return RedirectResponse("/agent", status_code=303)


@app.post("/agent/scan")
def agent_scan(request: Request, payload: str = Form("")) -> RedirectResponse:
    wizard, redirect = _agent_wizard(request, "/agent/scan")
    if redirect is not None:
        return redirect
    try:
        intent = decode_payment_intent(payload)
        wizard.stage(intent)
    except InvalidQRFormatError:
        set_notice(request, INVALID_PAYMENT_QR_MESSAGE, "error")
    except WizardStateError as exc:
        set_notice(request, str(exc), "error")
    return _back_to_agent()


@app.post("/agent/manual")
def agent_manual(
    request: Request,
    user_id: str = Form(""),
    name: str = Form(""),
    email: str = Form(""),
    pin: str = Form(""),
) -> RedirectResponse:
    wizard, redirect = _agent_wizard(request, "/agent/manual")
    if redirect is not None:
        return redirect
    form = ManualEntryForm(user_id=user_id, name=name, email=email, pin=pin)
    try:
        wizard.stage(form.submit())
    except (ValidationError, WizardStateError) as exc:
        set_notice(request, str(exc), "error")
    return _back_to_agent()


@app.post("/agent/confirm")
def agent_confirm(request: Request, amount: str = Form(""), description: str = Form("")) -> RedirectResponse:
    wizard, redirect = _agent_wizard(request, "/agent/confirm")
    if redirect is not None:
        return redirect
    try:
        wizard.confirm(amount, description)
    except (ValidationError, WizardStateError) as exc:
        set_notice(request, str(exc), "error")
    return _back_to_agent()


@app.post("/agent/authorize")
def agent_authorize(request: Request, pin: str = Form("")) -> RedirectResponse:
    auth, redirect = require_route(request, "/agent/authorize")
    if redirect is not None:
        return redirect
    wizard = wizards.get(auth)
    try:
        result = wizard.submit(pin)
    except SubmissionInProgressError:
        set_notice(request, "This transaction is already being processed.", "info")
        return _back_to_agent()
    except (ValidationError, WizardStateError) as exc:
        set_notice(request, str(exc), "error")
        return _back_to_agent()
    intent, draft = wizard.intent, wizard.draft
    if result is not None and intent is not None and draft is not None and draft.amount is not None:
        try:
            record_receipt(
                agent_user_id=auth.user_id,
                recipient_id=intent.recipient_id,
                recipient_name=intent.recipient_name,
                recipient_email=intent.recipient_email,
                amount=draft.amount,
                description=draft.description,
                result=result,
                manual_entry=intent.source_is_manual_entry,
            )
        except SQLAlchemyError as exc:
            # The transfer already went through; only the local copy is missing.
            event_log.log("receipt_write_failed", transaction=result.transaction_id, error=repr(exc))
        set_notice(request, "Transaction completed successfully.", "success")
    return _back_to_agent()


@app.post("/agent/retry")
def agent_retry(request: Request) -> RedirectResponse:
    wizard, redirect = _agent_wizard(request, "/agent/retry")
    if redirect is not None:
        return redirect
    try:
        wizard.retry()
    except WizardStateError as exc:
        set_notice(request, str(exc), "error")
    return _back_to_agent()


@app.post("/agent/reset")
def agent_reset(request: Request) -> RedirectResponse:
    wizard, redirect = _agent_wizard(request, "/agent/reset")
    if redirect is not None:
        return redirect
    try:
        wizard.reset()
    except SubmissionInProgressError:
        set_notice(request, "This transaction is already being processed.", "info")
    return _back_to_agent()


# ---------------------------------------------------------------------------
# Console camera
# ---------------------------------------------------------------------------
def _camera_or_notice(request: Request) -> Optional[ScanController]:
    scanner = get_scanner()
    if scanner is None:
        set_notice(request, "No camera is attached to this console. Paste the code or use manual entry.", "error")
    return scanner


@app.post("/agent/camera/allow")
def agent_camera_allow(request: Request) -> RedirectResponse:
    auth, redirect = require_route(request, "/agent/camera")
    if redirect is not None:
        return redirect
    scanner = _camera_or_notice(request)
    if scanner is not None:
        try:
            devices = scanner.request_camera_access(owner=auth.id)
            set_notice(request, f"{len(devices)} camera(s) ready. Ready to scan payment QR code.", "info")
        except CameraBusyError as exc:
            set_notice(request, str(exc), "error")
        except CameraError:
            set_notice(request, scanner.camera_error or "Camera unavailable.", "error")
    return _back_to_agent()


@app.post("/agent/camera/start")
def agent_camera_start(request: Request) -> RedirectResponse:
    auth, redirect = require_route(request, "/agent/camera")
    if redirect is not None:
        return redirect
    wizard = wizards.get(auth)
    scanner = _camera_or_notice(request)
    if scanner is None:
        return _back_to_agent()
    if wizard.state is not WizardState.IDLE:
        set_notice(request, "Finish or cancel the current transaction before scanning.", "error")
        return _back_to_agent()
    try:
        scanner.start_scanning(owner=auth.id)
        outcome = scanner.scan(max_frames=SCAN_FRAME_BUDGET)
    except CameraBusyError as exc:
        set_notice(request, str(exc), "error")
        return _back_to_agent()
    except CameraError:
        scanner.release_owner(auth.id)
        set_notice(request, scanner.camera_error or "Camera unavailable.", "error")
        return _back_to_agent()
    if outcome.intent is not None:
        wizard.stage(outcome.intent)
    elif outcome.error:
        set_notice(request, outcome.error, "error")
    elif not outcome.stopped:
        scanner.release_owner(auth.id)
        set_notice(request, "No QR code detected. Hold the code steady and try again.", "info")
    return _back_to_agent()


@app.post("/agent/camera/stop")
def agent_camera_stop(request: Request) -> RedirectResponse:
    auth, redirect = require_route(request, "/agent/camera")
    if redirect is not None:
        return redirect
    scanner = get_scanner()
    if scanner is not None:
        try:
            scanner.stop_scanning(owner=auth.id)
        except CameraBusyError as exc:
            set_notice(request, str(exc), "error")
    return _back_to_agent()


@app.post("/agent/camera/switch")
def agent_camera_switch(request: Request) -> RedirectResponse:
    auth, redirect = require_route(request, "/agent/camera")
    if redirect is not None:
        return redirect
    scanner = _camera_or_notice(request)
    if scanner is not None:
        try:
            device = scanner.switch_camera(owner=auth.id)
            if device is not None:
                set_notice(request, f"Using {device.label or device.device_id}.", "info")
        except CameraBusyError as exc:
            set_notice(request, str(exc), "error")
        except CameraError:
            set_notice(request, scanner.camera_error or "No cameras found", "error")
    return _back_to_agent()


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
@app.get("/agent/transactions", response_class=HTMLResponse)
def agent_transactions(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/agent/transactions")
    if redirect is not None:
        return redirect
    receipts = list_receipts(auth.user_id)
    receipt_rows = "".join(
        "<tr>"
        f"<td>{receipt.created_at:%Y-%m-%d %H:%M}</td>"
        f"<td>{html_escape(receipt.transaction_id)}</td>"
        f"<td>{html_escape(receipt.recipient_name)}</td>"
        f"<td>{money(Decimal(receipt.amount_cents) / 100)}</td>"
        f"<td>{html_escape(receipt.description)}</td>"
        "</tr>"
        for receipt in receipts
    ) or "<tr><td colspan='5' class='muted'>No transfers from this console yet.</td></tr>"

    history_error = ""
    try:
        records = api_client_factory(auth.token).get_transactions()
    except ApiError as exc:
        records = []
        history_error = f"<div class='notice error'>{html_escape(exc.message)}</div>"
    history_rows = "".join(
        "<tr>"
        f"<td>{record.created_at.strftime('%Y-%m-%d %H:%M') if record.created_at else '-'}</td>"
        f"<td>{html_escape(record.description)}</td>"
        f"<td class='amount-{record.direction.value}'>{'-' if record.direction.value == 'debit' else '+'}{money(record.amount)}</td>"
        f"<td>{html_escape(record.status)}</td>"
        "</tr>"
        for record in records
    ) or "<tr><td colspan='4' class='muted'>No transactions found.</td></tr>"

    body = (
        nav_html(auth)
        + "<h2>Transactions</h2>"
        + "<div class='card'><h3>This console</h3><table><thead><tr><th>When</th><th>Transaction</th>"
        + f"<th>Recipient</th><th>Amount</th><th>Description</th></tr></thead><tbody>{receipt_rows}</tbody></table></div>"
        + f"<div class='card'><h3>Wallet history</h3>{history_error}<table><thead><tr><th>When</th>"
        + f"<th>Description</th><th>Amount</th><th>Status</th></tr></thead><tbody>{history_rows}</tbody></table></div>"
    )
    return render_page(request, "Transactions", body)


# ---------------------------------------------------------------------------
# Agent transfers to the store or another user
# ---------------------------------------------------------------------------
def _agent_store(client: WalletApiClient, store_id: str) -> Optional[StoreInfo]:
    if not store_id:
        return None
    return client.get_store(store_id) or StoreInfo.derived(store_id)


def _field_error(errors: Dict[str, str], name: str) -> str:
    message = errors.get(name)
    return f"<div class='notice error'>{html_escape(message)}</div>" if message else ""


def render_store_transfer(
    balance: Decimal,
    store: Optional[StoreInfo],
    form: Optional[StoreTransferForm] = None,
    errors: Optional[Dict[str, str]] = None,
) -> str:
    form = form or StoreTransferForm()
    errors = errors or {}
    if store is not None:
        store_html = (
            f"<p><strong>{html_escape(store.name)}</strong><br>"
            f"<span class='muted'>{html_escape(store.email or 'Email not on file')}"
            f"{' &middot; ' + html_escape(store.account_number) if store.account_number else ''}</span></p>"
        )
    else:
        store_html = "<p class='muted'>No parent store is linked to this account.</p>"
    if not (store is not None and store.verified):
        store_html += "<p class='muted'>Store details could not be verified. Enter the store email to continue.</p>"
    store_email_html = ""
    if needs_store_email(store):
        store_email_html = (
            "<label for='store_email'>Store email</label>"
            f"<input id='store_email' name='store_email' type='email' value='{html_escape(form.store_email)}'>"
            f"{_field_error(errors, 'store_email')}"
        )
    checked_store = " checked" if form.transfer_type is TransferType.PARENT_STORE else ""
    checked_user = " checked" if form.transfer_type is TransferType.OTHER_USER else ""
    return (
        "<div class='card'><h3>Transfer funds</h3>"
        f"<p>Available balance: <strong>{money(balance)}</strong></p>{store_html}"
        "<form method='post' action='/agent/transfer'>"
        "<div class='row'>"
        f"<label><input type='radio' name='transfer_type' value='{TransferType.PARENT_STORE.value}'{checked_store}> Parent store</label>"
        f"<label><input type='radio' name='transfer_type' value='{TransferType.OTHER_USER.value}'{checked_user}> Another user</label>"
        "</div>"
        f"{store_email_html}"
        "<label for='recipient_email'>Recipient email (another user)</label>"
        f"<input id='recipient_email' name='recipient_email' type='email' value='{html_escape(form.recipient_email)}'>"
        f"{_field_error(errors, 'recipient_email')}"
        f"<label for='amount'>Amount ({html_escape(DEFAULT_CURRENCY)})</label>"
        f"<input id='amount' name='amount' type='number' min='0.01' step='0.01' value='{html_escape(form.amount_text)}'>"
        f"{_field_error(errors, 'amount')}"
        "<label for='description'>Description</label>"
        f"<input id='description' name='description' value='{html_escape(form.description)}'>"
        "<label for='pin'>Your PIN</label>"
        "<input id='pin' name='pin' type='password' inputmode='numeric' maxlength='4' autocomplete='off'>"
        f"{_field_error(errors, 'pin')}"
        "<button type='submit'>Transfer</button></form></div>"
    )


@app.get("/agent/transfer", response_class=HTMLResponse)
def agent_transfer(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/agent/transfer")
    if redirect is not None:
        return redirect
    client = api_client_factory(auth.token)
    try:
        profile = client.get_current_user()
    except ApiError as exc:
        set_notice(request, exc.message, "error")
        return render_page(request, "Transfer", nav_html(auth) + "<h2>Transfer</h2>")
    store = _agent_store(client, profile.store_id)
    body = nav_html(auth) + "<h2>Transfer</h2>" + render_store_transfer(profile.wallet.balance, store)
    return render_page(request, "Transfer", body)


@app.post("/agent/transfer", response_class=HTMLResponse)
def agent_transfer_submit(
    request: Request,
    transfer_type: str = Form(TransferType.PARENT_STORE.value),
    amount: str = Form(""),
    store_email: str = Form(""),
    recipient_email: str = Form(""),
    pin: str = Form(""),
    description: str = Form(""),
) -> HTMLResponse:
    auth, redirect = require_route(request, "/agent/transfer")
    if redirect is not None:
        return redirect
    client = api_client_factory(auth.token)
    try:
        profile = client.get_current_user()
    except ApiError as exc:
        set_notice(request, exc.message, "error")
        return RedirectResponse("/agent/transfer", status_code=303)
    store = _agent_store(client, profile.store_id)
    balance = profile.wallet.balance
    form = StoreTransferForm(
        transfer_type=TransferType.parse(transfer_type),
        amount_text=amount,
        store_email=store_email,
        recipient_email=recipient_email,
        pin=pin,
        description=description,
    )
    receiver = form.receiver_email(store)
    try:
        result = form.submit(client, balance, store=store, logger=event_log)
    except FormValidationError as exc:
        body = nav_html(auth) + "<h2>Transfer</h2>" + render_store_transfer(balance, store, form, exc.errors)
        return render_page(request, "Transfer", body)
    except ApiError as exc:
        set_notice(request, f"Transfer failed: {exc.message}", "error")
        body = nav_html(auth) + "<h2>Transfer</h2>" + render_store_transfer(balance, store, form)
        return render_page(request, "Transfer", body)

    to_store = form.transfer_type is TransferType.PARENT_STORE and store is not None
    try:
        record_receipt(
            agent_user_id=auth.user_id,
            recipient_id=store.store_id if to_store else receiver,
            recipient_name=store.name if to_store else receiver,
            recipient_email=receiver,
            amount=form.amount,
            description=form.description or ("Transfer to parent store" if to_store else "Transfer to user"),
            result=result,
        )
    except SQLAlchemyError as exc:
        event_log.log("receipt_write_failed", transaction=result.transaction_id, error=repr(exc))
    set_notice(request, "Transfer completed successfully.", "success")
    body = (
        nav_html(auth)
        + "<div class='card'><h3>Transfer complete</h3>"
        + f"<p>{money(form.amount)} sent to {html_escape(receiver)}</p>"
        + f"<p>Transaction ID: <strong>{html_escape(result.transaction_id)}</strong></p>"
        + f"<p class='muted'>{html_escape(result.message)}</p>"
        + "<a href='/agent/transfer'>New transfer</a></div>"
    )
    return render_page(request, "Transfer", body)


# ---------------------------------------------------------------------------
# Kid pages
# ---------------------------------------------------------------------------
def _pay_agent_form() -> str:
    return (
        "<div class='card'><h2>Pay to Agent</h2>"
        "<p class='muted'>Present this QR Code to the agent. The agent will scan your unique QR Code to process your payment safely.</p>"
        "<form method='post' action='/kid/pay-agent'>"
        "<label for='pin'>Your PIN</label>"
        "<input id='pin' name='pin' type='password' inputmode='numeric' pattern='[0-9]{4}' maxlength='4' required autocomplete='off'>"
        "<button type='submit'>Show my QR code</button></form></div>"
    )


@app.get("/kid", response_class=HTMLResponse)
def kid_home(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/kid")
    if redirect is not None:
        return redirect
    try:
        profile = api_client_factory(auth.token).get_current_user()
        balance_html = f"<p>Wallet balance: <strong>{money(profile.wallet.balance)}</strong></p>"
    except ApiError as exc:
        balance_html = f"<div class='notice error'>{html_escape(exc.message)}</div>"
    body = nav_html(auth) + f"<div class='card'><h2>Hello, {html_escape(auth.name)}</h2>{balance_html}</div>"
    return render_page(request, "My Wallet", body)


@app.get("/kid/pay-agent", response_class=HTMLResponse)
def kid_pay_agent(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/kid/pay-agent")
    if redirect is not None:
        return redirect
    return render_page(request, "Pay to Agent", nav_html(auth) + _pay_agent_form())


def qr_filename(name: str) -> str:
    slug = re.sub(r"\s+", "-", name.strip()).lower()
    slug = re.sub(r"[^a-z0-9._-]", "", slug) or "kid"
    return f"{slug}-qr-code.png"


def _kid_qr_payload(request: Request, auth: AuthSession, pin: str) -> Optional[Tuple[str, str]]:
    """Return ``(payload, user id)`` for the signed in kid, or set a notice and return ``None``."""

    if not validate_pin_format(pin):
        set_notice(request, "PIN must be exactly 4 digits", "error")
        return None
    try:
        profile = api_client_factory(auth.token).get_current_user()
    except ApiError as exc:
        set_notice(request, exc.message, "error")
        return None
    payload = encode_payment_intent(
        profile.user_id,
        profile.name,
        profile.email,
        pin,
        wallet_balance=profile.wallet.balance,
    )
    return payload, profile.user_id


@app.post("/kid/pay-agent", response_class=HTMLResponse)
def kid_pay_agent_qr(request: Request, pin: str = Form("")) -> HTMLResponse:
    auth, redirect = require_route(request, "/kid/pay-agent")
    if redirect is not None:
        return redirect
    pin = pin.strip()
    generated = _kid_qr_payload(request, auth, pin)
    if generated is None:
        return render_page(request, "Pay to Agent", nav_html(auth) + _pay_agent_form())
    payload, user_id = generated
    hidden_pin = f"<input type='hidden' name='pin' value='{html_escape(pin)}'>"
    body = (
        nav_html(auth)
        + "<div class='card'><h2>Pay to Agent</h2>"
        + f"<div class='qr'>{render_qr_svg(payload)}</div>"
        + f"<p class='muted'>Unique ID: {html_escape(user_id)}</p>"
        + "<div class='row'>"
        + f"<form method='post' action='/kid/pay-agent/download'>{hidden_pin}<button type='submit'>Download QR</button></form>"
        + f"<form method='post' action='/kid/pay-agent'>{hidden_pin}<button type='submit' class='secondary'>Refresh QR</button></form>"
        + "</div><a href='/kid/pay-agent'>Hide QR code</a></div>"
    )
    return render_page(request, "Pay to Agent", body)


@app.post("/kid/pay-agent/download")
def kid_pay_agent_download(request: Request, pin: str = Form("")) -> Response:
    auth, redirect = require_route(request, "/kid/pay-agent")
    if redirect is not None:
        return redirect
    generated = _kid_qr_payload(request, auth, pin.strip())
    if generated is None:
        return RedirectResponse("/kid/pay-agent", status_code=303)
    payload, _ = generated
    return Response(
        content=render_qr_png(payload),
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{qr_filename(auth.name or "kid")}"'},
    )


# ---------------------------------------------------------------------------
# PIN settings
# ---------------------------------------------------------------------------
def _pin_form(pin_is_set: bool) -> str:
    current = (
        "<label for='current_pin'>Current PIN</label>"
        "<input id='current_pin' name='current_pin' type='password' inputmode='numeric' maxlength='4'>"
        if pin_is_set
        else ""
    )
    title = "Update PIN" if pin_is_set else "Set PIN"
    return (
        f"<div class='card'><h2>{title}</h2><form method='post' action='/settings/pin'>{current}"
        "<label for='pin'>New PIN</label><input id='pin' name='pin' type='password' inputmode='numeric' maxlength='4'>"
        "<label for='confirm_pin'>Confirm new PIN</label>"
        "<input id='confirm_pin' name='confirm_pin' type='password' inputmode='numeric' maxlength='4'>"
        f"<button type='submit'>{title}</button></form></div>"
    )


@app.get("/settings/pin", response_class=HTMLResponse)
def pin_settings(request: Request) -> HTMLResponse:
    auth, redirect = require_route(request, "/settings/pin")
    if redirect is not None:
        return redirect
    try:
        pin_is_set = api_client_factory(auth.token).get_current_user().is_pin_set
    except ApiError as exc:
        set_notice(request, exc.message, "error")
        pin_is_set = False
    return render_page(request, "PIN", nav_html(auth) + _pin_form(pin_is_set))


@app.post("/settings/pin")
def pin_settings_submit(
    request: Request,
    current_pin: str = Form(""),
    pin: str = Form(""),
    confirm_pin: str = Form(""),
) -> RedirectResponse:
    auth, redirect = require_route(request, "/settings/pin")
    if redirect is not None:
        return redirect
    client = api_client_factory(auth.token)
    try:
        pin_is_set = client.get_current_user().is_pin_set
        validate_new_pin(pin, confirm_pin, current_pin=current_pin, pin_is_set=pin_is_set)
        if pin_is_set:
            client.update_pin(current_pin, pin)
            set_notice(request, "PIN updated successfully! Your new PIN is now active.", "success")
        else:
            client.set_pin(pin)
            set_notice(request, "PIN set successfully! Your account is now more secure.", "success")
    except ValidationError as exc:
        set_notice(request, str(exc), "error")
    except ApiError as exc:
        set_notice(request, exc.message, "error")
    return RedirectResponse("/settings/pin", status_code=303)


@app.get("/health", include_in_schema=False)
def health() -> JSONResponse:
    scanner = _scanner
    return JSONResponse(
        {
            "status": "ok",
            "api_base_url": API_BASE_URL,
            "active_sessions": len(tuple(sessions.active_sessions())),
            "camera": "scanning" if scanner is not None and scanner.scanning else CAMERA_BACKEND,
        }
    )


__all__ = [
    "WizardRegistry",
    "api_client_factory",
    "app",
    "event_log",
    "get_scanner",
    "scan_controller_factory",
    "sessions",
    "wizards",
]
