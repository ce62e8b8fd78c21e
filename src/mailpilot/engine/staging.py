"""Staging pipeline for destructive actions.

A delete is never applied straight away. The message is moved into a holding
folder and a staged record starts a grace period. During that window the user
can rescue it; once the window passes, the sweep carries out the deletion.

Staged record lifecycle (all transitions are conditional updates):
    staged -> rescued   (user rescue, single or batch)
    staged -> executed  (sweep or execute-now succeeded upstream)
    staged -> expired   (message no longer exists upstream)

Sweep per run:
1. Select up to `sweep_batch_size` records whose expiry has passed
2. Process them in chunks of `sweep_chunk_size`, concurrently within a chunk
3. A failure on one record never affects the others in its chunk
4. Checkpoint the WAL when the run is done

Notifications are fire-and-forget: the hook runs after the database commit
and its failures are logged, never raised.

Usage:
    from mailpilot.engine.staging import StagingPipeline

    pipeline = StagingPipeline(store, provider, holding_cache, config)
    staged = await pipeline.stage(mailbox, message_id, "inbox", actions, rule_id=rule.id)
    result = await pipeline.sweep()
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailpilot.core.errors import (
    EntityNotFoundError,
    MessageNotFoundError,
    RateLimitExceeded,
    StateConflictError,
)
from mailpilot.core.logging import get_logger, run_context, short_id
from mailpilot.db.store import (
    DEFAULT_PAGE_SIZE,
    ActionSpec,
    AuditAction,
    StagedAction,
    StagedStatus,
    new_id,
    to_db_timestamp,
    utcnow,
)
from mailpilot.engine.actions import apply_action, sort_actions

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore, Mailbox
    from mailpilot.graph.folders import HoldingFolderCache
    from mailpilot.graph.messages import MailProvider

logger = get_logger(__name__)

# (event, user_id, payload) -> None or awaitable
NotificationHook = Callable[[str, str, dict[str, Any]], Awaitable[None] | None]

NOTIFY_STAGED = "staging:new"
NOTIFY_RESCUED = "staging:rescued"
NOTIFY_EXECUTED = "staging:executed"


class ExecutionOutcome(StrEnum):
    """What happened when a staged record's actions were carried out."""

    EXECUTED = "executed"
    EXPIRED = "expired"  # message gone upstream
    RATE_LIMITED = "rate_limited"  # left staged for the next sweep
    FAILED = "failed"  # left staged for the next sweep
    SUPERSEDED = "superseded"  # record left `staged` while its actions ran


@dataclass
class SweepResult:
    """Counters for one sweep run (or one batch execute)."""

    run_id: str
    duration_ms: int = 0
    selected: int = 0
    executed: int = 0
    expired: int = 0
    rate_limited: int = 0
    failed: int = 0
    superseded: int = 0
    outcomes: dict[str, ExecutionOutcome] = field(default_factory=dict)

    @property
    def handled(self) -> int:
        """Records that reached a terminal status."""
        return self.executed + self.expired

    def record(self, staged_id: str, outcome: ExecutionOutcome) -> None:
        self.outcomes[staged_id] = outcome
        if outcome == ExecutionOutcome.EXECUTED:
            self.executed += 1
        elif outcome == ExecutionOutcome.EXPIRED:
            self.expired += 1
        elif outcome == ExecutionOutcome.RATE_LIMITED:
            self.rate_limited += 1
        elif outcome == ExecutionOutcome.SUPERSEDED:
            self.superseded += 1
        else:
            self.failed += 1


@dataclass
class RescueResult:
    staged: StagedAction
    changed: bool


def _chunks(items: list[StagedAction], size: int) -> list[list[StagedAction]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class StagingPipeline:
    """Owns the staged-action lifecycle for every mailbox.

    Attributes:
        _store: DatabaseStore for staged records and audit entries
        _provider: MailProvider used to move and patch messages
        _holding: Per-mailbox holding folder id cache
        _config: Application configuration
        _notifier: Optional hook called after staging events commit
        _pending_notifications: Async notification tasks still running
    """

    def __init__(
        self,
        store: DatabaseStore,
        provider: MailProvider,
        holding: HoldingFolderCache,
        config: AppConfig,
        notifier: NotificationHook | None = None,
    ):
        self._store = store
        self._provider = provider
        self._holding = holding
        self._config = config
        self._notifier = notifier
        self._pending_notifications: set[asyncio.Task[Any]] = set()

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    async def stage(
        self,
        mailbox: Mailbox,
        message_id: str,
        original_folder: str,
        actions: list[ActionSpec],
        rule_id: str | None = None,
        now: datetime | None = None,
    ) -> StagedAction:
        """Move a message into the holding folder and open its grace period.

        Provider errors from the move propagate; no record is created then.
        """
        now = now or utcnow()
        staging = self._config.staging
        holding_folder_id = await self._holding.get_folder_id(mailbox.email)
        await self._provider.move_message(mailbox.email, message_id, holding_folder_id)

        expires_at = now + timedelta(hours=staging.grace_period_hours)
        staged = StagedAction(
            id=new_id(),
            user_id=mailbox.user_id,
            mailbox_id=mailbox.id,
            rule_id=rule_id,
            message_id=message_id,
            original_folder=original_folder,
            staged_at=now,
            expires_at=expires_at,
            cleanup_at=expires_at + timedelta(days=staging.cleanup_buffer_days),
            status=StagedStatus.STAGED,
            actions=list(actions),
        )
        await self._store.create_staged_action(staged)

        await self._store.log_audit(
            user_id=mailbox.user_id,
            action=AuditAction.EMAIL_STAGED,
            mailbox_id=mailbox.id,
            target_type="email",
            target_id=message_id,
            details={
                "rule_id": rule_id,
                "staged_action_id": staged.id,
                "message_id": message_id,
                "original_folder": original_folder,
                "actions": [a.to_dict() for a in staged.actions],
                "expires_at": to_db_timestamp(expires_at),
            },
            undoable=True,
            created_at=now,
        )
        logger.info(
            "email_staged",
            staged_action_id=staged.id,
            message_id=short_id(message_id),
            rule_id=rule_id,
            expires_at=expires_at.isoformat(),
        )
        self._notify(
            NOTIFY_STAGED,
            mailbox.user_id,
            {
                "staged_action_id": staged.id,
                "mailbox_id": mailbox.id,
                "message_id": message_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        return staged

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Execute every staged record whose grace period has passed."""
        with run_context() as run_id:
            start = time.monotonic()
            now = now or utcnow()
            result = SweepResult(run_id=run_id)

            logger.info("sweep_started")
            due = await self._store.list_expired_staged_actions(
                now, limit=self._config.staging.sweep_batch_size
            )
            result.selected = len(due)

            await self._process_chunked(due, now, result)

            await self._store.checkpoint_wal()

            result.duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "sweep_completed",
                duration_ms=result.duration_ms,
                selected=result.selected,
                executed=result.executed,
                expired=result.expired,
                rate_limited=result.rate_limited,
                failed=result.failed,
            )
        return result

    async def _process_chunked(
        self, records: list[StagedAction], now: datetime, result: SweepResult
    ) -> None:
        for chunk in _chunks(records, self._config.staging.sweep_chunk_size):
            outcomes = await asyncio.gather(
                *(self._execute_record(record, now) for record in chunk),
                return_exceptions=True,
            )
            for record, outcome in zip(chunk, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "staged_action_processing_error",
                        staged_action_id=record.id,
                        error=str(outcome),
                        exc_info=outcome,
                    )
                    outcome = ExecutionOutcome.FAILED
                result.record(record.id, outcome)

    async def _execute_record(self, staged: StagedAction, now: datetime) -> ExecutionOutcome:
        """Carry out one record's actions upstream and settle its status."""
        mailbox = await self._store.get_mailbox(staged.mailbox_id)
        if mailbox is None:
            logger.warning(
                "staged_action_mailbox_missing",
                staged_action_id=staged.id,
                mailbox_id=staged.mailbox_id,
            )
            return ExecutionOutcome.FAILED

        try:
            for action in sort_actions(staged.actions):
                await apply_action(self._provider, mailbox.email, staged.message_id, action)
        except MessageNotFoundError:
            if await self._store.transition_staged_action(staged.id, StagedStatus.EXPIRED, now):
                logger.info(
                    "staged_action_expired",
                    staged_action_id=staged.id,
                    message_id=short_id(staged.message_id),
                )
                return ExecutionOutcome.EXPIRED
            return ExecutionOutcome.SUPERSEDED
        except RateLimitExceeded as e:
            logger.warning(
                "staged_action_rate_limited",
                staged_action_id=staged.id,
                retry_after=e.retry_after,
            )
            return ExecutionOutcome.RATE_LIMITED
        except Exception as e:
            logger.error(
                "staged_action_execution_failed",
                staged_action_id=staged.id,
                error=str(e),
                exc_info=True,
            )
            return ExecutionOutcome.FAILED

        if not await self._store.transition_staged_action(staged.id, StagedStatus.EXECUTED, now):
            logger.warning("staged_action_superseded", staged_action_id=staged.id)
            return ExecutionOutcome.SUPERSEDED

        await self._store.log_audit(
            user_id=staged.user_id,
            action=AuditAction.EMAIL_EXECUTED,
            mailbox_id=staged.mailbox_id,
            target_type="email",
            target_id=staged.message_id,
            details={
                "rule_id": staged.rule_id,
                "staged_action_id": staged.id,
                "message_id": staged.message_id,
                "original_folder": staged.original_folder,
                "actions": [a.to_dict() for a in staged.actions],
            },
            undoable=True,
            created_at=now,
        )
        logger.info(
            "staged_action_executed",
            staged_action_id=staged.id,
            message_id=short_id(staged.message_id),
        )
        self._notify(
            NOTIFY_EXECUTED,
            staged.user_id,
            {"staged_action_id": staged.id, "mailbox_id": staged.mailbox_id},
        )
        return ExecutionOutcome.EXECUTED

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def get_staged(self, staged_id: str, user_id: str) -> StagedAction:
        """Fetch a record owned by the user.

        Raises:
            EntityNotFoundError: If missing or owned by someone else
        """
        staged = await self._store.get_staged_action(staged_id, user_id=user_id)
        if staged is None:
            raise EntityNotFoundError(
                f"Staged action {staged_id} not found",
                entity="staged_action",
                entity_id=staged_id,
            )
        return staged

    async def rescue(
        self, staged_id: str, user_id: str, now: datetime | None = None
    ) -> RescueResult:
        """Cancel a staged action before its grace period ends.

        Rescuing an already-rescued record is a no-op (`changed` is False).
        The message itself stays in the holding folder; moving it back is the
        job of undo on the staging audit entry.

        Raises:
            EntityNotFoundError: Record missing or not the caller's
            StateConflictError: Record was already executed or expired
        """
        now = now or utcnow()
        staged = await self.get_staged(staged_id, user_id)
        if staged.status == StagedStatus.RESCUED:
            return RescueResult(staged=staged, changed=False)
        if not staged.status.can_transition_to(StagedStatus.RESCUED):
            raise StateConflictError(
                f"Staged action {staged_id} is already {staged.status}",
                current_status=str(staged.status),
            )

        if not await self._store.transition_staged_action(
            staged_id, StagedStatus.RESCUED, now, user_id=user_id
        ):
            latest = await self.get_staged(staged_id, user_id)
            if latest.status == StagedStatus.RESCUED:
                return RescueResult(staged=latest, changed=False)
            raise StateConflictError(
                f"Staged action {staged_id} is already {latest.status}",
                current_status=str(latest.status),
            )

        await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.EMAIL_RESCUED,
            mailbox_id=staged.mailbox_id,
            target_type="email",
            target_id=staged.message_id,
            details={"staged_action_id": staged_id, "rule_id": staged.rule_id},
            undoable=False,
            created_at=now,
        )
        logger.info("staged_action_rescued", staged_action_id=staged_id)
        self._notify(
            NOTIFY_RESCUED,
            user_id,
            {"staged_action_ids": [staged_id], "mailbox_id": staged.mailbox_id},
        )
        return RescueResult(staged=await self.get_staged(staged_id, user_id), changed=True)

    async def batch_rescue(
        self, staged_ids: list[str], user_id: str, now: datetime | None = None
    ) -> list[StagedAction]:
        """Rescue many records at once.

        Ids that are unknown, foreign, or no longer staged are ignored.

        Returns:
            The records this call rescued
        """
        now = now or utcnow()
        rescued = await self._store.rescue_staged_actions(staged_ids, user_id, now=now)
        for staged in rescued:
            await self._store.log_audit(
                user_id=user_id,
                action=AuditAction.EMAIL_RESCUED,
                mailbox_id=staged.mailbox_id,
                target_type="email",
                target_id=staged.message_id,
                details={
                    "staged_action_id": staged.id,
                    "rule_id": staged.rule_id,
                    "batch_rescue": True,
                },
                undoable=False,
                created_at=now,
            )

        logger.info("staged_actions_batch_rescued", requested=len(staged_ids), rescued=len(rescued))
        if rescued:
            self._notify(
                NOTIFY_RESCUED, user_id, {"staged_action_ids": [s.id for s in rescued]}
            )
        return rescued

    async def execute_now(
        self, staged_id: str, user_id: str, now: datetime | None = None
    ) -> tuple[StagedAction, ExecutionOutcome]:
        """Carry out a staged record immediately, skipping the rest of its grace period.

        Raises:
            EntityNotFoundError: Record missing or not the caller's
            StateConflictError: Record is not staged
        """
        now = now or utcnow()
        staged = await self.get_staged(staged_id, user_id)
        if staged.status != StagedStatus.STAGED:
            raise StateConflictError(
                f"Staged action {staged_id} is already {staged.status}",
                current_status=str(staged.status),
            )

        with run_context():
            outcome = await self._execute_record(staged, now)
        return await self.get_staged(staged_id, user_id), outcome

    async def batch_execute(
        self, staged_ids: list[str], user_id: str, now: datetime | None = None
    ) -> SweepResult:
        """Execute many of the user's staged records now, with per-record isolation.

        Ids that are unknown, foreign, or no longer staged are ignored.
        """
        with run_context() as run_id:
            start = time.monotonic()
            now = now or utcnow()
            result = SweepResult(run_id=run_id)

            records = [
                s
                for s in await self._store.get_staged_actions(
                    list(dict.fromkeys(staged_ids)), user_id
                )
                if s.status == StagedStatus.STAGED
            ]
            result.selected = len(records)
            await self._process_chunked(records, now, result)

            result.duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "batch_execute_completed",
                requested=len(staged_ids),
                executed=result.executed,
                expired=result.expired,
                failed=result.failed + result.rate_limited,
            )
        return result

    async def list_staged(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        status: StagedStatus = StagedStatus.STAGED,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[StagedAction], int]:
        return await self._store.list_staged_actions(
            user_id, mailbox_id=mailbox_id, status=status, page=page, limit=limit
        )

    async def count_staged(self, user_id: str, mailbox_id: str | None = None) -> int:
        return await self._store.count_staged_actions(user_id, mailbox_id=mailbox_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, event: str, user_id: str, payload: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            result = self._notifier(event, user_id, payload)
        except Exception as e:
            logger.warning("notification_failed", notify_event=event, error=str(e))
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending_notifications.add(task)
            task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task[Any]) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("notification_failed", error=str(error))

    async def drain_notifications(self) -> None:
        """Wait for outstanding async notifications (used at shutdown)."""
        if self._pending_notifications:
            await asyncio.gather(*self._pending_notifications, return_exceptions=True)
