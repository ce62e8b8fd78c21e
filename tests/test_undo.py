"""Tests for undoing automated actions from the audit ledger."""

from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from mailpilot.config_schema import AppConfig
from mailpilot.core.errors import (
    ActionValidationError,
    EntityNotFoundError,
    MessageNotFoundError,
    StateConflictError,
)
from mailpilot.db.store import (
    ActionSpec,
    AuditAction,
    AuditEntry,
    DatabaseStore,
    Mailbox,
    StagedStatus,
)
from mailpilot.engine.staging import StagingPipeline
from mailpilot.engine.undo import (
    MESSAGE_GONE_REASON,
    RuleExecutedUndo,
    StagedExecutedUndo,
    UndoOutcome,
    UndoService,
    plan_undo,
)
from mailpilot.graph.folders import HoldingFolderCache

from conftest import MAILBOX_EMAIL, MAILBOX_ID, NOW, USER_ID


@pytest.fixture
def undo(
    store: DatabaseStore, mock_provider: MagicMock, sample_config: AppConfig, mailbox: Mailbox
) -> UndoService:
    return UndoService(store, mock_provider, sample_config)


@pytest.fixture
def pipeline(
    store: DatabaseStore, mock_provider: MagicMock, sample_config: AppConfig
) -> StagingPipeline:
    holding = HoldingFolderCache(mock_provider, sample_config.staging.holding_folder_name)
    return StagingPipeline(store, mock_provider, holding, sample_config)


async def rule_executed_entry(
    store: DatabaseStore, actions: list[dict[str, Any]] | None = None, **overrides: Any
) -> AuditEntry:
    details = {
        "rule_id": "rule-1",
        "message_id": "msg-1",
        "original_folder": "inbox",
        "actions": actions
        if actions is not None
        else [
            {"action_type": "move", "to_folder": "deals", "order": 0},
            {"action_type": "markRead", "order": 1},
        ],
    }
    return await store.log_audit(
        user_id=USER_ID,
        action=overrides.pop("action", AuditAction.RULE_EXECUTED),
        mailbox_id=overrides.pop("mailbox_id", MAILBOX_ID),
        target_type="email",
        target_id="msg-1",
        details=overrides.pop("details", details),
        undoable=overrides.pop("undoable", True),
        created_at=NOW,
    )


class TestPlanUndo:
    """Tests for building reversal plans."""

    def test_rule_executed_plan(self) -> None:
        entry = AuditEntry(
            id="a-1",
            user_id=USER_ID,
            mailbox_id=MAILBOX_ID,
            action="rule_executed",
            target_type="email",
            target_id="msg-1",
            details={"original_folder": "inbox", "actions": [{"action_type": "flag"}]},
            undoable=True,
            created_at=NOW,
        )
        assert plan_undo(entry) == RuleExecutedUndo(
            message_id="msg-1",
            original_folder="inbox",
            actions=[ActionSpec(action_type="flag")],
        )

    def test_staged_execution_requires_original_folder(self) -> None:
        entry = AuditEntry(
            id="a-1",
            user_id=USER_ID,
            mailbox_id=MAILBOX_ID,
            action="email_executed",
            target_type="email",
            target_id="msg-1",
            details={"message_id": "msg-1"},
            undoable=True,
            created_at=NOW,
        )
        with pytest.raises(ActionValidationError, match="original_folder"):
            plan_undo(entry)

    def test_staged_execution_plan(self) -> None:
        entry = AuditEntry(
            id="a-1",
            user_id=USER_ID,
            mailbox_id=MAILBOX_ID,
            action="email_executed",
            target_type="email",
            target_id="msg-1",
            details={"message_id": "msg-1", "original_folder": "inbox"},
            undoable=True,
            created_at=NOW,
        )
        assert plan_undo(entry) == StagedExecutedUndo(message_id="msg-1", original_folder="inbox")


class TestUndoWindow:
    """Tests for the undo window boundary."""

    @pytest.mark.asyncio
    async def test_just_past_window_rejected(
        self, store: DatabaseStore, undo: UndoService, mock_provider: MagicMock
    ) -> None:
        """Should refuse an undo 48h and 1ms after the action."""
        entry = await rule_executed_entry(store)

        with pytest.raises(StateConflictError, match="Undo window has expired"):
            await undo.undo(
                entry.id, USER_ID, now=NOW + timedelta(hours=48, milliseconds=1)
            )

        mock_provider.move_message.assert_not_awaited()
        assert (await store.get_audit_entry(entry.id)).undone_at is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "elapsed", [timedelta(hours=47, minutes=59), timedelta(hours=48)]
    )
    async def test_within_window_accepted(
        self, store: DatabaseStore, undo: UndoService, elapsed: timedelta
    ) -> None:
        entry = await rule_executed_entry(store)

        result = await undo.undo(entry.id, USER_ID, now=NOW + elapsed)

        assert result.outcome == UndoOutcome.COMPLETE


class TestUndoRuleExecuted:
    """Tests for reversing rule executions."""

    @pytest.mark.asyncio
    async def test_reverses_in_reverse_order(
        self, store: DatabaseStore, undo: UndoService, mock_provider: MagicMock
    ) -> None:
        """Should undo markRead before moving the message back."""
        entry = await rule_executed_entry(store)
        now = NOW + timedelta(hours=1)

        result = await undo.undo(entry.id, USER_ID, now=now)

        assert [c[0] for c in mock_provider.mock_calls] == ["patch_message", "move_message"]
        mock_provider.patch_message.assert_awaited_once_with(
            MAILBOX_EMAIL, "msg-1", {"isRead": False}
        )
        mock_provider.move_message.assert_awaited_once_with(MAILBOX_EMAIL, "msg-1", "inbox")

        assert result.outcome == UndoOutcome.COMPLETE
        assert result.reason is None
        assert result.entry.undone_at == now
        assert result.entry.undone_by == USER_ID
        assert result.undo_entry.action == AuditAction.UNDO_ACTION
        assert result.undo_entry.details == {
            "original_audit_id": entry.id,
            "original_action": "rule_executed",
            "outcome": "complete",
        }

    @pytest.mark.asyncio
    async def test_second_undo_conflicts(
        self, store: DatabaseStore, undo: UndoService, mock_provider: MagicMock
    ) -> None:
        """Should undo an entry at most once."""
        entry = await rule_executed_entry(store)
        await undo.undo(entry.id, USER_ID, now=NOW)

        with pytest.raises(StateConflictError, match="already been undone"):
            await undo.undo(entry.id, USER_ID, now=NOW)

        assert mock_provider.move_message.await_count == 1
        undo_entries, _ = await store.list_audit_entries(USER_ID, action=AuditAction.UNDO_ACTION)
        assert len(undo_entries) == 1

    @pytest.mark.asyncio
    async def test_concurrent_undo_loses_cleanly(
        self,
        store: DatabaseStore,
        undo: UndoService,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        entry = await rule_executed_entry(store)
        original = store.mark_audit_undone

        async def marked_elsewhere(entry_id, undone_by, undone_at, details):
            await original(entry_id, "other-session", undone_at, details)
            return await original(entry_id, undone_by, undone_at, details)

        monkeypatch.setattr(store, "mark_audit_undone", marked_elsewhere)

        with pytest.raises(StateConflictError):
            await undo.undo(entry.id, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_missing_message_makes_undo_partial(
        self, store: DatabaseStore, undo: UndoService, mock_provider: MagicMock
    ) -> None:
        """Should complete the undo but flag it partial when the message is gone."""
        mock_provider.patch_message.side_effect = MessageNotFoundError("gone")
        mock_provider.move_message.side_effect = MessageNotFoundError("gone")
        entry = await rule_executed_entry(store)

        result = await undo.undo(entry.id, USER_ID, now=NOW)

        assert result.outcome == UndoOutcome.PARTIAL
        assert result.reason == MESSAGE_GONE_REASON
        assert result.entry.undone_at == NOW
        assert result.entry.details["undo_partial"] is True
        assert result.entry.details["undo_reason"] == MESSAGE_GONE_REASON

    @pytest.mark.asyncio
    async def test_delete_in_rule_is_not_reversed(
        self, store: DatabaseStore, undo: UndoService, mock_provider: MagicMock
    ) -> None:
        entry = await rule_executed_entry(store, actions=[{"action_type": "delete", "order": 0}])

        result = await undo.undo(entry.id, USER_ID, now=NOW)

        assert result.outcome == UndoOutcome.COMPLETE
        mock_provider.move_message.assert_not_awaited()


class TestUndoStaged:
    """Tests for undoing staged and executed deletes."""

    @pytest.mark.asyncio
    async def test_undo_still_staged_rescues_and_restores(
        self,
        store: DatabaseStore,
        undo: UndoService,
        pipeline: StagingPipeline,
        mock_provider: MagicMock,
        mailbox: Mailbox,
    ) -> None:
        """Should rescue the record and move the message back."""
        staged = await pipeline.stage(
            mailbox, "msg-1", "inbox", [ActionSpec(action_type="delete")], now=NOW
        )
        [entry], _ = await store.list_audit_entries(USER_ID, action=AuditAction.EMAIL_STAGED)
        mock_provider.move_message.reset_mock()

        result = await undo.undo(entry.id, USER_ID, now=NOW + timedelta(hours=1))

        assert result.outcome == UndoOutcome.COMPLETE
        record = await store.get_staged_action(staged.id)
        assert record.status == StagedStatus.RESCUED
        mock_provider.move_message.assert_awaited_once_with(MAILBOX_EMAIL, "msg-1", "inbox")

    @pytest.mark.asyncio
    async def test_undo_already_rescued_restores(
        self,
        store: DatabaseStore,
        undo: UndoService,
        pipeline: StagingPipeline,
        mock_provider: MagicMock,
        mailbox: Mailbox,
    ) -> None:
        staged = await pipeline.stage(
            mailbox, "msg-1", "inbox", [ActionSpec(action_type="delete")], now=NOW
        )
        await pipeline.rescue(staged.id, USER_ID, now=NOW)
        [entry], _ = await store.list_audit_entries(USER_ID, action=AuditAction.EMAIL_STAGED)

        result = await undo.undo(entry.id, USER_ID, now=NOW)

        assert result.outcome == UndoOutcome.COMPLETE
        mock_provider.move_message.assert_awaited_with(MAILBOX_EMAIL, "msg-1", "inbox")

    @pytest.mark.asyncio
    async def test_undo_staged_after_execution_conflicts(
        self,
        store: DatabaseStore,
        undo: UndoService,
        pipeline: StagingPipeline,
        mailbox: Mailbox,
    ) -> None:
        """Should point at the execution entry once the delete has run."""
        staged = await pipeline.stage(
            mailbox, "msg-1", "inbox", [ActionSpec(action_type="delete")], now=NOW
        )
        await pipeline.execute_now(staged.id, USER_ID, now=NOW)
        [entry], _ = await store.list_audit_entries(USER_ID, action=AuditAction.EMAIL_STAGED)

        with pytest.raises(StateConflictError) as exc_info:
            await undo.undo(entry.id, USER_ID, now=NOW)

        assert exc_info.value.current_status == "executed"
        assert (await store.get_audit_entry(entry.id)).undone_at is None

    @pytest.mark.asyncio
    async def test_undo_executed_delete_restores_message(
        self,
        store: DatabaseStore,
        undo: UndoService,
        pipeline: StagingPipeline,
        mock_provider: MagicMock,
        mailbox: Mailbox,
    ) -> None:
        staged = await pipeline.stage(
            mailbox, "msg-1", "inbox", [ActionSpec(action_type="delete")], now=NOW
        )
        await pipeline.execute_now(staged.id, USER_ID, now=NOW)
        [entry], _ = await store.list_audit_entries(USER_ID, action=AuditAction.EMAIL_EXECUTED)

        result = await undo.undo(entry.id, USER_ID, now=NOW)

        assert result.outcome == UndoOutcome.COMPLETE
        mock_provider.move_message.assert_awaited_with(MAILBOX_EMAIL, "msg-1", "inbox")

    @pytest.mark.asyncio
    async def test_purged_message_is_best_effort(
        self,
        store: DatabaseStore,
        undo: UndoService,
        pipeline: StagingPipeline,
        mock_provider: MagicMock,
        mailbox: Mailbox,
    ) -> None:
        """Should still mark the entry undone when the message was purged."""
        staged = await pipeline.stage(
            mailbox, "msg-1", "inbox", [ActionSpec(action_type="delete")], now=NOW
        )
        await pipeline.execute_now(staged.id, USER_ID, now=NOW)
        [entry], _ = await store.list_audit_entries(USER_ID, action=AuditAction.EMAIL_EXECUTED)
        mock_provider.move_message.side_effect = MessageNotFoundError("purged")

        result = await undo.undo(entry.id, USER_ID, now=NOW)

        assert result.outcome == UndoOutcome.BEST_EFFORT
        assert result.entry.undone_at == NOW
        assert result.entry.details["undo_failed"] is True
        assert result.undo_entry.details["outcome"] == "best_effort"


class TestUndoRejections:
    """Tests for entries that cannot be undone."""

    @pytest.mark.asyncio
    async def test_unknown_entry(self, undo: UndoService) -> None:
        with pytest.raises(EntityNotFoundError):
            await undo.undo("missing", USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_other_users_entry(self, store: DatabaseStore, undo: UndoService) -> None:
        entry = await rule_executed_entry(store)
        with pytest.raises(EntityNotFoundError):
            await undo.undo(entry.id, "intruder", now=NOW)

    @pytest.mark.asyncio
    async def test_not_undoable(self, store: DatabaseStore, undo: UndoService) -> None:
        entry = await rule_executed_entry(
            store, action=AuditAction.EMAIL_RESCUED, undoable=False, details={}
        )
        with pytest.raises(StateConflictError, match="cannot be undone"):
            await undo.undo(entry.id, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_unsupported_action(self, store: DatabaseStore, undo: UndoService) -> None:
        entry = await rule_executed_entry(store, action=AuditAction.PATTERN_APPROVED)
        with pytest.raises(StateConflictError, match="not supported"):
            await undo.undo(entry.id, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_entry_without_mailbox(self, store: DatabaseStore, undo: UndoService) -> None:
        entry = await rule_executed_entry(store, mailbox_id=None)
        with pytest.raises(ActionValidationError):
            await undo.undo(entry.id, USER_ID, now=NOW)

    @pytest.mark.asyncio
    async def test_mailbox_gone(self, store: DatabaseStore, undo: UndoService) -> None:
        entry = await rule_executed_entry(store, mailbox_id="removed-mailbox")
        with pytest.raises(EntityNotFoundError):
            await undo.undo(entry.id, USER_ID, now=NOW)
