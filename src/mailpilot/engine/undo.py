"""Undo of automated actions recorded in the audit ledger.

Three kinds of entry can be undone, each with its own reversal:

- `rule_executed`: reverse the rule's actions in reverse order. A message that
  vanished upstream makes the undo partial; it still completes.
- `email_executed`: a staged delete that was carried out. Move the message
  back from Deleted Items; if it is gone the undo is best effort.
- `email_staged`: a delete still in (or rescued from) its grace period.
  Rescue the staged record if needed, then move the message back.

Any entry is undone at most once, and only within the undo window.

Usage:
    from mailpilot.engine.undo import UndoService

    undo = UndoService(store, provider, config)
    result = await undo.undo(audit_entry_id, user_id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailpilot.core.errors import (
    ActionValidationError,
    EntityNotFoundError,
    MessageNotFoundError,
    StateConflictError,
)
from mailpilot.core.logging import get_logger, short_id
from mailpilot.db.store import (
    DEFAULT_PAGE_SIZE,
    ActionSpec,
    AuditAction,
    AuditEntry,
    StagedStatus,
    utcnow,
)
from mailpilot.engine.actions import reverse_action, sort_actions

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore
    from mailpilot.graph.messages import MailProvider

logger = get_logger(__name__)

MESSAGE_GONE_REASON = "Message no longer available"


class UndoOutcome(StrEnum):
    COMPLETE = "complete"
    PARTIAL = "partial"  # some reversals skipped, message gone
    BEST_EFFORT = "best_effort"  # message could not be restored


# ---------------------------------------------------------------------------
# Undo plans, one per undoable audit action
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleExecutedUndo:
    message_id: str
    original_folder: str | None
    actions: list[ActionSpec] = field(default_factory=list)


@dataclass(frozen=True)
class StagedExecutedUndo:
    message_id: str
    original_folder: str


@dataclass(frozen=True)
class StillStagedUndo:
    message_id: str
    original_folder: str
    staged_action_id: str | None = None


UndoPlan = RuleExecutedUndo | StagedExecutedUndo | StillStagedUndo


def _required(details: dict[str, Any], key: str, entry: AuditEntry) -> str:
    value = details.get(key)
    if not value:
        raise ActionValidationError(f"Audit entry {entry.id} is missing {key}; cannot undo")
    return value


def plan_undo(entry: AuditEntry) -> UndoPlan:
    """Build the reversal plan for an audit entry.

    Raises:
        StateConflictError: The entry's action has no undo
        ActionValidationError: The entry lacks the data needed to reverse it
    """
    details = entry.details
    if entry.action == AuditAction.RULE_EXECUTED:
        return RuleExecutedUndo(
            message_id=details.get("message_id") or entry.target_id or "",
            original_folder=details.get("original_folder"),
            actions=[ActionSpec.from_dict(a) for a in details.get("actions", [])],
        )
    if entry.action == AuditAction.EMAIL_EXECUTED:
        return StagedExecutedUndo(
            message_id=_required(details, "message_id", entry),
            original_folder=_required(details, "original_folder", entry),
        )
    if entry.action == AuditAction.EMAIL_STAGED:
        return StillStagedUndo(
            message_id=_required(details, "message_id", entry),
            original_folder=_required(details, "original_folder", entry),
            staged_action_id=details.get("staged_action_id"),
        )
    raise StateConflictError(f"Undo is not supported for action '{entry.action}'")


@dataclass
class UndoResult:
    entry: AuditEntry
    outcome: UndoOutcome
    undo_entry: AuditEntry
    reason: str | None = None


class UndoService:
    """Reverses undoable audit entries within the configured window."""

    def __init__(self, store: DatabaseStore, provider: MailProvider, config: AppConfig):
        self._store = store
        self._provider = provider
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def list_audit_entries(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        action: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[AuditEntry], int]:
        return await self._store.list_audit_entries(
            user_id, mailbox_id=mailbox_id, action=action, page=page, limit=limit
        )

    async def undo(self, entry_id: str, user_id: str, now: datetime | None = None) -> UndoResult:
        """Undo one audit entry.

        Raises:
            EntityNotFoundError: Entry or its mailbox missing, or not the caller's
            StateConflictError: Not undoable, already undone, outside the
                window, or the staged delete already ran
            ActionValidationError: Entry lacks the data needed to reverse it
        """
        now = now or utcnow()
        entry = await self._store.get_audit_entry(entry_id, user_id=user_id)
        if entry is None:
            raise EntityNotFoundError(
                f"Audit entry {entry_id} not found", entity="audit_entry", entity_id=entry_id
            )
        if not entry.undoable:
            raise StateConflictError(f"Action '{entry.action}' cannot be undone")
        if entry.undone_at is not None:
            raise StateConflictError(f"Audit entry {entry_id} has already been undone")

        window = timedelta(hours=self._config.undo.window_hours)
        if now - entry.created_at > window:
            raise StateConflictError(
                f"Undo window has expired ({self._config.undo.window_hours}h limit)"
            )

        if not entry.mailbox_id:
            raise ActionValidationError(f"Audit entry {entry_id} has no mailbox; cannot undo")
        mailbox = await self._store.get_mailbox(entry.mailbox_id)
        if mailbox is None:
            raise EntityNotFoundError(
                f"Mailbox {entry.mailbox_id} not found",
                entity="mailbox",
                entity_id=entry.mailbox_id,
            )

        plan = plan_undo(entry)
        details = dict(entry.details)

        if isinstance(plan, RuleExecutedUndo):
            outcome = await self._undo_rule_executed(plan, mailbox.email, details)
        elif isinstance(plan, StagedExecutedUndo):
            outcome = await self._restore_message(plan, mailbox.email, details)
        else:
            outcome = await self._undo_still_staged(plan, user_id, mailbox.email, details, now)

        if not await self._store.mark_audit_undone(entry.id, user_id, now, details):
            raise StateConflictError(f"Audit entry {entry_id} has already been undone")

        undo_entry = await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.UNDO_ACTION,
            mailbox_id=entry.mailbox_id,
            target_type=entry.target_type,
            target_id=entry.target_id,
            details={
                "original_audit_id": entry.id,
                "original_action": entry.action,
                "outcome": str(outcome),
            },
            undoable=False,
            created_at=now,
        )

        logger.info(
            "audit_entry_undone",
            audit_entry_id=entry.id,
            original_action=entry.action,
            outcome=str(outcome),
        )
        updated = await self._store.get_audit_entry(entry.id, user_id=user_id)
        return UndoResult(
            entry=updated or entry,
            outcome=outcome,
            undo_entry=undo_entry,
            reason=details.get("undo_reason"),
        )

    async def _undo_rule_executed(
        self, plan: RuleExecutedUndo, mailbox_email: str, details: dict[str, Any]
    ) -> UndoOutcome:
        outcome = UndoOutcome.COMPLETE
        for action in reversed(sort_actions(plan.actions)):
            try:
                await reverse_action(
                    self._provider, mailbox_email, plan.message_id, action, plan.original_folder
                )
            except MessageNotFoundError:
                logger.warning(
                    "undo_message_missing",
                    message_id=short_id(plan.message_id),
                    action_type=action.action_type,
                )
                details["undo_partial"] = True
                details["undo_reason"] = MESSAGE_GONE_REASON
                outcome = UndoOutcome.PARTIAL
        return outcome

    async def _restore_message(
        self,
        plan: StagedExecutedUndo | StillStagedUndo,
        mailbox_email: str,
        details: dict[str, Any],
    ) -> UndoOutcome:
        try:
            await self._provider.move_message(
                mailbox_email, plan.message_id, plan.original_folder
            )
        except MessageNotFoundError:
            logger.warning("undo_restore_message_missing", message_id=short_id(plan.message_id))
            details["undo_failed"] = True
            details["undo_reason"] = MESSAGE_GONE_REASON
            return UndoOutcome.BEST_EFFORT
        return UndoOutcome.COMPLETE

    async def _undo_still_staged(
        self,
        plan: StillStagedUndo,
        user_id: str,
        mailbox_email: str,
        details: dict[str, Any],
        now: datetime,
    ) -> UndoOutcome:
        if plan.staged_action_id:
            staged = await self._store.get_staged_action(plan.staged_action_id, user_id=user_id)
            if staged is not None and staged.status == StagedStatus.STAGED:
                if not await self._store.transition_staged_action(
                    staged.id, StagedStatus.RESCUED, now, user_id=user_id
                ):
                    staged = await self._store.get_staged_action(staged.id, user_id=user_id)
            if staged is not None and staged.status in (
                StagedStatus.EXECUTED,
                StagedStatus.EXPIRED,
            ):
                raise StateConflictError(
                    f"Staged action {staged.id} is already {staged.status}; "
                    "undo the execution entry instead",
                    current_status=str(staged.status),
                )

        return await self._restore_message(plan, mailbox_email, details)
