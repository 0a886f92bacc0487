"""
Nudge -- Daily Reminder Scheduler

Decides which reminder emails are due today and sends them.

Decision (pure, ``plan_reminders``), per invoice:

    1. No templates                    -> skip
    2. No / unparseable due date       -> skip
    3. Due date more than N days ago   -> skip (stale, never revisited)
    4. Anything sent today (UTC)       -> skip the whole invoice
    5. Each reminder slot whose registry offset lands on today and whose
       slot id is not already in the ledger is due

Run (``run_daily_reminders``):
    - Loads every invoice with status sent or overdue
    - Sends each due slot, at most one per invoice per run
    - Records a ``scheduled`` ledger entry with a conditional append, so
      a slot recorded by an overlapping run is never recorded twice
    - Logs and continues on any per-invoice or per-slot failure
    - Persists a batch-run summary

Usage:
    from nudge.reminder_scheduler import run_daily_reminders

    result = run_daily_reminders(store, email_sender, config)
    print(result.processed, result.reminders_sent)
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from .config import NudgeConfig, SchedulerSettings
from .directory import ClientService, WorkspaceService
from .email_sender import EmailSender
from .errors import NudgeError
from .invoices import COLLECTION, error_fields_cleared, hydrate_invoice
from .models import (
    REMINDABLE_STATUSES,
    Invoice,
    ReminderKind,
    ReminderRecord,
    SkipReason,
    Workspace,
    utc_now,
)
from .schedules import slot_offset
from .sending import compose_email
from .store import DocumentStore
from .template_engine import TemplateEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

@dataclass
class ReminderPlan:
    """What the batch should do for one invoice today."""

    invoice_id: str
    due_slots: list[str] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None

    @property
    def has_work(self) -> bool:
        return bool(self.due_slots)


def _is_due(target: date, today: date, catch_up_days: int) -> bool:
    """Exact match, or within the catch-up window after the target date."""
    if catch_up_days <= 0:
        return target == today
    return 0 <= (today - target).days <= catch_up_days


def plan_reminders(invoice: Invoice, today: date, settings: SchedulerSettings) -> ReminderPlan:
    """Work out which reminder slots are due for ``invoice`` on ``today``.

    Offsets come from the schedule registry for the invoice's
    ``reminder_schedule``; the offset stored on each template is ignored.

    Args:
        invoice: A hydrated invoice.
        today: The UTC calendar date of the run.
        settings: Staleness and catch-up policy.

    Returns:
        A ReminderPlan.  ``due_slots`` is in template order; when it is
        empty, ``skip_reason`` says why.

    >>> plan_reminders(Invoice(id="x", user_id="u", client_id="c"), date(2024, 6, 30),
    ...                SchedulerSettings()).skip_reason
    <SkipReason.NO_TEMPLATES: 'Invoice has no templates'>
    """
    plan = ReminderPlan(invoice_id=invoice.id)

    if not invoice.templates:
        plan.skip_reason = SkipReason.NO_TEMPLATES
        return plan
    if not invoice.due_date:
        plan.skip_reason = SkipReason.NO_DUE_DATE
        return plan

    due = invoice.due_date_value
    if due is None:
        logger.warning("Invoice %s has an unparseable due date %r", invoice.id, invoice.due_date)
        plan.skip_reason = SkipReason.BAD_DUE_DATE
        return plan

    if (today - due).days > settings.stale_after_days:
        plan.skip_reason = SkipReason.STALE
        return plan

    if invoice.sent_on(today):
        plan.skip_reason = SkipReason.SENT_TODAY
        return plan

    already_sent = invoice.sent_slot_ids
    for template in invoice.templates:
        if not template.is_reminder:
            continue
        offset = slot_offset(invoice.reminder_schedule, template.id)
        if offset is None:
            logger.debug("Slot %s is not in schedule %s", template.id, invoice.reminder_schedule)
            continue
        if not _is_due(due + timedelta(days=offset), today, settings.catch_up_days):
            continue
        if template.id in already_sent:
            continue
        plan.due_slots.append(template.id)

    if not plan.due_slots:
        plan.skip_reason = SkipReason.NOTHING_DUE
    return plan


# ---------------------------------------------------------------------------
# Batch Result
# ---------------------------------------------------------------------------

@dataclass
class BatchResult:
    """Summary of one daily run."""

    run_date: str = ""
    processed: int = 0
    reminders_sent: int = 0
    failures: int = 0
    skipped: Counter = field(default_factory=Counter)
    sent: list[tuple[str, str]] = field(default_factory=list)     # (invoice_id, slot_id)
    dry_run: bool = False
    batch_id: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def to_details(self) -> dict[str, Any]:
        return {
            "skipped": {reason.name.lower(): count for reason, count in self.skipped.items()},
            "sent": [{"invoice_id": i, "slot_id": s} for i, s in self.sent],
            "dry_run": self.dry_run,
        }


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

class _WorkspaceCache:
    """Per-run workspace lookups; most users own several invoices."""

    def __init__(self, service: WorkspaceService) -> None:
        self._service = service
        self._cache: dict[str, Optional[Workspace]] = {}

    def get(self, user_id: str) -> Optional[Workspace]:
        if user_id not in self._cache:
            self._cache[user_id] = self._service.find(user_id)
        return self._cache[user_id]


def run_daily_reminders(
    store: DocumentStore,
    email_sender: EmailSender,
    config: NudgeConfig,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    engine: Optional[TemplateEngine] = None,
) -> BatchResult:
    """Send every reminder due today.

    Args:
        store: Document store holding the invoices.
        email_sender: Delivery backend.
        config: Scheduler policy and sender identity.
        now: Run time (UTC); defaults to the current time.
        dry_run: Plan only.  Nothing is sent, claimed or recorded.
        engine: Template engine; built from ``config`` when omitted.

    Returns:
        A BatchResult.  ``processed`` counts every invoice loaded.
    """
    now = now or utc_now()
    today = now.astimezone(timezone.utc).date() if now.tzinfo else now.date()
    engine = engine or TemplateEngine(config=config)
    clients = ClientService(store)
    workspaces = _WorkspaceCache(WorkspaceService(store))
    settings = config.scheduler

    result = BatchResult(run_date=today.isoformat(), dry_run=dry_run, started_at=utc_now())
    statuses = sorted(s.value for s in REMINDABLE_STATUSES)
    docs = store.find(COLLECTION, newest_first=False, status=statuses)
    logger.info("Reminder run for %s: %d invoice(s) to check%s",
                result.run_date, len(docs), " [DRY RUN]" if dry_run else "")

    for doc in docs:
        result.processed += 1
        try:
            _process_invoice(doc, today, now, store, email_sender, config, engine,
                             clients, workspaces, settings, result)
        except Exception:
            result.failures += 1
            logger.exception("Reminder run failed on invoice %s", doc.get("id"))

    result.completed_at = utc_now()
    if not dry_run:
        result.batch_id = store.record_batch_run(
            run_date=result.run_date,
            processed=result.processed,
            reminders_sent=result.reminders_sent,
            failures=result.failures,
            started_at=result.started_at,
            completed_at=result.completed_at,
            details=result.to_details(),
        )

    logger.info(
        "Reminder run complete: processed=%d sent=%d failures=%d (%.1fs)",
        result.processed, result.reminders_sent, result.failures, result.duration_seconds,
    )
    return result


def _process_invoice(
    doc: dict[str, Any],
    today: date,
    now: datetime,
    store: DocumentStore,
    email_sender: EmailSender,
    config: NudgeConfig,
    engine: TemplateEngine,
    clients: ClientService,
    workspaces: _WorkspaceCache,
    settings: SchedulerSettings,
    result: BatchResult,
) -> None:
    user_id = str(doc.get("user_id", ""))
    workspace = workspaces.get(user_id)
    tone = (workspace.default_email_tone if workspace else "") or settings.default_tone
    invoice = hydrate_invoice(doc, tone)

    plan = plan_reminders(invoice, today, settings)
    if not plan.has_work:
        result.skipped[plan.skip_reason] += 1
        logger.debug("Invoice %s: %s", invoice.id, plan.skip_reason.value)
        return

    client = clients.find(user_id, invoice.client_id)
    if client is None:
        logger.error("Client %s not found for invoice %s", invoice.client_id, invoice.id)
        result.failures += 1
        return

    for slot_id in plan.due_slots:
        if _record_dry_run(result, invoice, slot_id):
            return
        template = invoice.find_template(slot_id)
        try:
            with store.claim_slot(invoice.id, slot_id, now) as claimed:
                if not claimed:
                    logger.info("Slot %s on invoice %s is being sent by another run", slot_id, invoice.id)
                    continue
                if _sent_since_loaded(store, invoice.id, slot_id, today):
                    logger.info("Invoice %s was reminded by another run today", invoice.id)
                    result.skipped[SkipReason.SENT_TODAY] += 1
                    return

                email = compose_email(engine, config, invoice, template, client, workspace)
                email_sender.send(email)

                record = ReminderRecord(kind=ReminderKind.SCHEDULED, slot_id=slot_id, sent_at=now)
                if not store.append_reminder_if_absent(invoice.id, record,
                                                       extra_fields=error_fields_cleared(),
                                                       actor="scheduler"):
                    logger.warning("Slot %s on invoice %s was already recorded", slot_id, invoice.id)
        except NudgeError as exc:
            result.failures += 1
            logger.error("Failed to send %s for invoice %s: %s", slot_id, invoice.id, exc.message)
            continue

        result.reminders_sent += 1
        result.sent.append((invoice.id, slot_id))
        logger.info("Sent %s for invoice %s", slot_id, invoice.id)
        # One reminder per invoice per day.
        return


def _sent_since_loaded(store: DocumentStore, invoice_id: str, slot_id: str, today: date) -> bool:
    """Re-check the stored ledger once the claim is held."""
    for record in store.load_ledger(invoice_id):
        if record.sent_on == today:
            return True
        if record.kind is ReminderKind.SCHEDULED and record.slot_id == slot_id:
            return True
    return False


def _record_dry_run(result: BatchResult, invoice: Invoice, slot_id: str) -> bool:
    """In a dry run, count the first due slot as sent and stop."""
    if not result.dry_run:
        return False
    logger.info("[DRY RUN] Would send %s for invoice %s", slot_id, invoice.id)
    result.reminders_sent += 1
    result.sent.append((invoice.id, slot_id))
    return True
