"""
Nudge -- HTTP API

FastAPI application exposing the daily cron trigger and the JSON API the
web client uses.  Every user route identifies the caller from the
``X-Nudge-User`` header set by the identity provider in front of the
app; ``X-Nudge-User-Email`` (optional) becomes the reply-to address.

Responses are ``{"ok": true, ...}`` on success and
``{"ok": false, "error": "..."}`` on failure, with the status code taken
from the ``NudgeError`` subclass.

Usage:
    uvicorn app:app --reload

    from nudge.api import create_app
    app = create_app(config, store=DocumentStore(tmp_path / "t.db"))
"""

from __future__ import annotations

import hmac
import logging
import math
import time
from typing import Any, Callable, Optional, Union

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import NudgeConfig, get_config
from .directory import ClientService, FlowService, WorkspaceService
from .email_sender import EmailSender, build_email_sender
from .errors import (
    ConfigurationError,
    EmailDeliveryError,
    NudgeError,
    RateLimitExceeded,
    UnauthorizedError,
    safe_error_message,
)
from .invoices import InvoiceService
from .models import Invoice, InvoiceStatus
from .placeholders import validate_rewritten_content
from .rate_limit import RateLimiter, build_rate_limiter
from .reminder_scheduler import run_daily_reminders
from .schedules import REMINDER_SCHEDULES
from .sending import SendingService
from .store import DocumentStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class InvoiceCreate(BaseModel):
    client_id: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    currency: str = "USD"
    due_date: Optional[str] = None
    status: str = "draft"
    payment_link: str = ""
    notes: str = ""
    cc_emails: list[str] = Field(default_factory=list)
    reminder_schedule: Optional[str] = None
    email_flow: Optional[str] = None
    templates: Optional[list[dict[str, Any]]] = None
    send_now: bool = False


class InvoiceUpdate(BaseModel):
    client_id: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    currency: Optional[str] = None
    due_date: Optional[str] = None
    status: Optional[str] = None
    payment_link: Optional[str] = None
    notes: Optional[str] = None
    cc_emails: Optional[list[str]] = None
    reminder_schedule: Optional[str] = None
    email_flow: Optional[str] = None
    templates: Optional[list[dict[str, Any]]] = None


class ClientIn(BaseModel):
    name: str = ""
    email: str = ""
    first_name: str = ""
    company_name: str = ""


class WorkspaceIn(BaseModel):
    workspace_name: str = ""
    display_name: str = ""
    business_email: str = ""
    default_due_date_terms: str = "net-30"
    default_email_tone: str = "professional"
    auto_reminders_enabled: bool = True


class FlowIn(BaseModel):
    name: str = ""
    schedule: str = ""
    templates: list[dict[str, Any]] = Field(default_factory=list)


class ResendIn(BaseModel):
    template_id: Optional[str] = None


class ApplyFlowIn(BaseModel):
    flow_id: str = ""


class TemplateEditIn(BaseModel):
    tone: str
    subject: str = ""
    body: str = ""


class ToneIn(BaseModel):
    tone: str


class RewriteCheckIn(BaseModel):
    original_subject: str = ""
    original_body: str = ""
    subject: str = ""
    body: str = ""


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def client_ip(request: Request) -> str:
    """Best-effort caller IP from proxy headers.

    Checks ``x-forwarded-for`` (first entry), ``cf-connecting-ip`` and
    ``x-real-ip`` in that order.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value
    return "unknown"


def current_user(x_nudge_user: Optional[str] = Header(default=None)) -> str:
    if not x_nudge_user or not x_nudge_user.strip():
        raise UnauthorizedError()
    return x_nudge_user.strip()


def identity_email(x_nudge_user_email: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_nudge_user_email.strip() if x_nudge_user_email else None


def rate_limited(rule_name: str) -> Callable[..., str]:
    """Dependency: the current user, after counting one hit against ``rule_name``."""

    def dependency(request: Request, user_id: str = Depends(current_user)) -> str:
        request.app.state.rate_limiter.enforce(rule_name, user_id)
        return user_id

    return dependency


def _invoice_payload(invoice: Invoice) -> dict[str, Any]:
    return invoice.to_document()


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(EmailDeliveryError)
    async def email_delivery_error(request: Request, exc: EmailDeliveryError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={
            "ok": False,
            "error": exc.user_message,
            "invoice_changed": exc.invoice_changed,
            "invoice_id": exc.invoice_id,
        })

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        retry_after = max(0, math.ceil(exc.reset_at - time.time()))
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.message},
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(NudgeError)
    async def nudge_error(request: Request, exc: NudgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        field = ".".join(str(p) for p in errors[0].get("loc", ())[1:]) if errors else ""
        message = f"Validation failed for {field}: {detail}" if field else f"Validation failed: {detail}"
        return JSONResponse(status_code=400, content={"ok": False, "error": message})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"ok": False, "error": safe_error_message(exc)})


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[NudgeConfig] = None,
    store: Optional[DocumentStore] = None,
    email_sender: Optional[EmailSender] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the FastAPI app.

    Any collaborator left as None is built from ``config``.
    """
    config = config or get_config()
    store = store or DocumentStore(config.database.resolved_path)
    email_sender = email_sender or build_email_sender(config)
    rate_limiter = rate_limiter or build_rate_limiter(config)

    app = FastAPI(title="Nudge", version="1.0.0")
    app.state.config = config
    app.state.store = store
    app.state.email_sender = email_sender
    app.state.rate_limiter = rate_limiter
    app.state.invoices = InvoiceService(store, config)
    app.state.clients = ClientService(store)
    app.state.workspaces = WorkspaceService(store)
    app.state.flows = FlowService(store)
    app.state.sending = SendingService(store, config, email_sender)

    _install_error_handlers(app)
    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

def _register_routes(app: FastAPI) -> None:
    state = app.state

    # --- cron -------------------------------------------------------------

    @app.get("/api/cron/reminders")
    def cron_reminders(request: Request, secret: str = Query(default="")) -> dict[str, Any]:
        """Run the daily reminder batch.  Called once a day by the scheduler."""
        state.rate_limiter.enforce("auth", client_ip(request))
        expected = state.config.cron.secret
        if not expected:
            raise ConfigurationError("Cron secret is not configured")
        if not hmac.compare_digest(secret.encode(), expected.encode()):
            logger.warning("Rejected cron call from %s", client_ip(request))
            raise UnauthorizedError()

        result = run_daily_reminders(state.store, state.email_sender, state.config)
        return {"ok": True, "processed": result.processed, "reminders_sent": result.reminders_sent}

    # --- reference data ---------------------------------------------------

    @app.get("/api/schedules")
    def list_schedules(user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "schedules": [
            {
                "key": s.key,
                "name": s.name,
                "description": s.description,
                "slots": [{"id": slot.id, "label": slot.label, "offset": slot.offset} for slot in s.slots],
            }
            for s in REMINDER_SCHEDULES.values()
        ]}

    @app.post("/api/templates/validate-rewrite")
    def validate_rewrite(body: RewriteCheckIn,
                         user_id: str = Depends(rate_limited("ai"))) -> dict[str, Any]:
        """Check a rewritten subject/body against the original's placeholders."""
        check = validate_rewritten_content(body.original_subject, body.original_body,
                                           body.subject, body.body)
        return {"ok": check.is_valid, "errors": check.errors}

    # --- invoices ---------------------------------------------------------

    @app.get("/api/invoices")
    def list_invoices(user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "invoices": [_invoice_payload(i) for i in state.invoices.list(user_id)]}

    @app.post("/api/invoices")
    def create_invoice(
        body: InvoiceCreate,
        user_id: str = Depends(rate_limited("standard")),
        reply_to: Optional[str] = Depends(identity_email),
    ) -> dict[str, Any]:
        data = body.model_dump(exclude={"send_now"})
        if body.send_now:
            state.rate_limiter.enforce("email", user_id)
            data["status"] = InvoiceStatus.DRAFT.value

        invoice = state.invoices.create(user_id, data)
        if not body.send_now:
            return {"ok": True, "invoice": _invoice_payload(invoice)}

        try:
            invoice = state.sending.send_initial(user_id, invoice.id, identity_email=reply_to)
        except EmailDeliveryError as exc:
            raise EmailDeliveryError(exc.message, context=exc.context, invoice_changed=True,
                                     occurred_at=exc.occurred_at, invoice_id=invoice.id) from exc
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.get("/api/invoices/{invoice_id}")
    def get_invoice(invoice_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "invoice": _invoice_payload(state.invoices.get(user_id, invoice_id))}

    @app.patch("/api/invoices/{invoice_id}")
    def update_invoice(invoice_id: str, body: InvoiceUpdate,
                       user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        invoice = state.invoices.update(user_id, invoice_id, body.model_dump(exclude_unset=True))
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.delete("/api/invoices/{invoice_id}")
    def delete_invoice(invoice_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        state.invoices.delete(user_id, invoice_id)
        return {"ok": True}

    @app.post("/api/invoices/{invoice_id}/send")
    def send_invoice(
        invoice_id: str,
        user_id: str = Depends(rate_limited("email")),
        reply_to: Optional[str] = Depends(identity_email),
    ) -> dict[str, Any]:
        invoice = state.sending.send_initial(user_id, invoice_id, identity_email=reply_to)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.post("/api/invoices/{invoice_id}/send-reminder")
    def send_next_reminder(
        invoice_id: str,
        user_id: str = Depends(rate_limited("email")),
        reply_to: Optional[str] = Depends(identity_email),
    ) -> dict[str, Any]:
        invoice, slot_id = state.sending.send_next_reminder(user_id, invoice_id, identity_email=reply_to)
        return {"ok": True, "reminder": slot_id, "invoice": _invoice_payload(invoice)}

    @app.post("/api/invoices/{invoice_id}/resend")
    def resend_invoice(
        invoice_id: str,
        body: ResendIn,
        user_id: str = Depends(rate_limited("email")),
        reply_to: Optional[str] = Depends(identity_email),
    ) -> dict[str, Any]:
        invoice = state.sending.resend(user_id, invoice_id, body.template_id or "", identity_email=reply_to)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.post("/api/invoices/{invoice_id}/duplicate")
    def duplicate_invoice(invoice_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "invoice": _invoice_payload(state.invoices.duplicate(user_id, invoice_id))}

    @app.patch("/api/invoices/{invoice_id}/mark-paid")
    def mark_invoice_paid(invoice_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "invoice": _invoice_payload(state.invoices.mark_paid(user_id, invoice_id))}

    @app.post("/api/invoices/{invoice_id}/apply-flow")
    def apply_flow(invoice_id: str, body: ApplyFlowIn,
                   user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        invoice = state.invoices.apply_flow(user_id, invoice_id, body.flow_id)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.put("/api/invoices/{invoice_id}/templates/{template_id}")
    def save_template(invoice_id: str, template_id: str, body: TemplateEditIn,
                      user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        invoice = state.invoices.save_template(user_id, invoice_id, template_id,
                                               body.tone, body.subject, body.body)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.post("/api/invoices/{invoice_id}/templates/{template_id}/revert")
    def revert_template(invoice_id: str, template_id: str, body: ToneIn,
                        user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        invoice = state.invoices.revert_template(user_id, invoice_id, template_id, body.tone)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    @app.post("/api/invoices/{invoice_id}/templates/{template_id}/tone")
    def select_template_tone(invoice_id: str, template_id: str, body: ToneIn,
                             user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        invoice = state.invoices.select_tone(user_id, invoice_id, template_id, body.tone)
        return {"ok": True, "invoice": _invoice_payload(invoice)}

    # --- clients ----------------------------------------------------------

    @app.get("/api/clients")
    def list_clients(user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "clients": [c.to_document() for c in state.clients.list(user_id)]}

    @app.post("/api/clients")
    def create_client(body: ClientIn, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "client": state.clients.create(user_id, body.model_dump()).to_document()}

    @app.get("/api/clients/{client_id}")
    def get_client(client_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "client": state.clients.get(user_id, client_id).to_document()}

    @app.put("/api/clients/{client_id}")
    def update_client(client_id: str, body: ClientIn,
                      user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "client": state.clients.update(user_id, client_id, body.model_dump()).to_document()}

    @app.delete("/api/clients/{client_id}")
    def delete_client(client_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        state.clients.delete(user_id, client_id)
        return {"ok": True}

    # --- workspace --------------------------------------------------------

    @app.get("/api/workspace")
    def get_workspace(user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "workspace": state.workspaces.get(user_id).to_document()}

    @app.post("/api/workspace")
    def save_workspace(body: WorkspaceIn, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "workspace": state.workspaces.upsert(user_id, body.model_dump()).to_document()}

    # --- email flows ------------------------------------------------------

    @app.get("/api/email-flows")
    def list_flows(user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "flows": [f.to_document() for f in state.flows.list(user_id)]}

    @app.post("/api/email-flows")
    def create_flow(body: FlowIn, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        return {"ok": True, "flow": state.flows.create(user_id, body.model_dump()).to_document()}

    @app.delete("/api/email-flows/{flow_id}")
    def delete_flow(flow_id: str, user_id: str = Depends(rate_limited("standard"))) -> dict[str, Any]:
        state.flows.delete(user_id, flow_id)
        return {"ok": True}
