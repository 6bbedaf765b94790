from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from stageflow.app.models import QueuedStageEmailRecord, ReminderStatus, utc_now
from stageflow.app.services.email_dispatch import EmailDispatcher, EmailDispatchError
from stageflow.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("stageflow.reminders")

# Supplied by the email integration: True when the candidate answered the
# stage email, which makes the follow-up unnecessary.
ResponsePredicate = Callable[[QueuedStageEmailRecord], bool]


@dataclass
class ReminderRunSummary:
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


def never_responded(_: QueuedStageEmailRecord) -> bool:
    return False


def process_due_reminders(
    store: InMemoryStore,
    dispatcher: EmailDispatcher,
    *,
    now: Optional[datetime] = None,
    has_response: ResponsePredicate = never_responded,
) -> ReminderRunSummary:
    summary = ReminderRunSummary()
    now = now or utc_now()
    if now.tzinfo is not None:
        # Records carry naive UTC timestamps.
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    for reminder in store.list_due_reminders(now):
        summary.processed += 1
        try:
            candidate = store.get_candidate(reminder.candidate_id)
            queued = store.get_queued_email(reminder.queued_email_id)
        except StoreNotFoundError as exc:
            store.mark_reminder(reminder.id, ReminderStatus.skipped, detail=str(exc))
            summary.skipped += 1
            continue

        if candidate.current_stage != reminder.stage:
            store.mark_reminder(
                reminder.id,
                ReminderStatus.skipped,
                detail=f"candidate moved to {candidate.current_stage.value}",
            )
            summary.skipped += 1
            continue
        if has_response(queued):
            store.mark_reminder(reminder.id, ReminderStatus.skipped, detail="candidate responded")
            summary.skipped += 1
            continue

        try:
            result = dispatcher.send(reminder.template_id, reminder.candidate_id, 0)
        except EmailDispatchError as exc:
            logger.warning("reminder_send_failed reminder_id=%s error=%s", reminder.id, exc)
            store.mark_reminder(reminder.id, ReminderStatus.failed, detail=str(exc))
            summary.failed += 1
            continue
        except Exception as exc:
            logger.exception("reminder_dispatcher_crashed reminder_id=%s", reminder.id)
            store.mark_reminder(
                reminder.id, ReminderStatus.failed, detail=f"email dispatcher error: {exc}"
            )
            summary.failed += 1
            continue
        if not result.accepted:
            store.mark_reminder(
                reminder.id,
                ReminderStatus.failed,
                detail=result.detail or "email dispatcher did not accept reminder",
            )
            summary.failed += 1
            continue
        store.mark_reminder(reminder.id, ReminderStatus.sent, detail=result.message_id)
        summary.sent += 1

    if summary.processed:
        logger.info(
            "reminders_processed processed=%s sent=%s skipped=%s failed=%s",
            summary.processed,
            summary.sent,
            summary.skipped,
            summary.failed,
        )
    return summary
