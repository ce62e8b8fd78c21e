"""Tests for the database layer.

Covers schema initialization and the store operations for the 6 tables:
- mailboxes
- email_events (recording and aggregation)
- patterns
- staged_actions
- audit_log
- rules
"""

from datetime import timedelta
from pathlib import Path

import aiosqlite
import pytest

from mailpilot.core.errors import StateConflictError
from mailpilot.db import (
    ActionSpec,
    AuditAction,
    DatabaseStore,
    EmailEvent,
    EventType,
    Mailbox,
    Pattern,
    PatternCondition,
    PatternStatus,
    PatternType,
    Rule,
    StagedAction,
    StagedStatus,
    init_database,
    verify_schema,
)
from mailpilot.db.store import from_db_timestamp, new_id, to_db_timestamp

from conftest import MAILBOX_ID, NOW, USER_ID


def _event(event_type: str, days_ago: float, sender: str = "news@shop.com", **kwargs) -> EmailEvent:
    return EmailEvent(
        user_id=kwargs.pop("user_id", USER_ID),
        mailbox_id=kwargs.pop("mailbox_id", MAILBOX_ID),
        event_type=event_type,
        timestamp=NOW - timedelta(days=days_ago),
        message_id=kwargs.pop("message_id", f"msg-{new_id()[:8]}"),
        sender_email=sender,
        sender_domain=sender.split("@")[1],
        **kwargs,
    )


def _pattern(
    status: PatternStatus = PatternStatus.DETECTED,
    sender: str = "news@shop.com",
    action_type: str = "delete",
    to_folder: str | None = None,
    confidence: int = 90,
) -> Pattern:
    return Pattern(
        id=new_id(),
        user_id=USER_ID,
        mailbox_id=MAILBOX_ID,
        pattern_type=PatternType.FOLDER_ROUTING if to_folder else PatternType.SENDER,
        status=status,
        condition=PatternCondition(sender_email=sender, to_folder=to_folder),
        suggested_action=ActionSpec(action_type=action_type, to_folder=to_folder),
        confidence=confidence,
        sample_size=20,
        last_analyzed_at=NOW,
    )


def _staged(expires_in: timedelta, user_id: str = USER_ID) -> StagedAction:
    expires_at = NOW + expires_in
    return StagedAction(
        id=new_id(),
        user_id=user_id,
        mailbox_id=MAILBOX_ID,
        rule_id="rule-1",
        message_id=f"msg-{new_id()[:8]}",
        original_folder="inbox",
        staged_at=expires_at - timedelta(hours=24),
        expires_at=expires_at,
        cleanup_at=expires_at + timedelta(days=7),
        actions=[ActionSpec(action_type="delete")],
    )


class TestDatabaseInitialization:
    """Tests for database initialization."""

    @pytest.mark.asyncio
    async def test_init_database_enables_wal_mode(self, data_dir: Path) -> None:
        db_path = data_dir / "init.db"
        await init_database(db_path)

        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode")
            row = await cursor.fetchone()
            assert row[0].lower() == "wal"

    @pytest.mark.asyncio
    async def test_init_database_creates_all_tables(self, data_dir: Path) -> None:
        db_path = data_dir / "init.db"
        await init_database(db_path)
        assert await verify_schema(db_path)

    @pytest.mark.asyncio
    async def test_verify_schema_false_for_empty_db(self, data_dir: Path) -> None:
        db_path = data_dir / "empty.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE dummy (id INTEGER)")
            await db.commit()

        assert not await verify_schema(db_path)

    @pytest.mark.asyncio
    async def test_init_is_idempotent(self, data_dir: Path) -> None:
        db_path = data_dir / "init.db"
        await init_database(db_path)
        await init_database(db_path)
        assert await verify_schema(db_path)


class TestTimestamps:
    def test_round_trip_keeps_utc_microseconds(self) -> None:
        value = NOW + timedelta(microseconds=123)
        assert from_db_timestamp(to_db_timestamp(value)) == value

    def test_naive_values_are_treated_as_utc(self) -> None:
        assert to_db_timestamp(NOW.replace(tzinfo=None)) == to_db_timestamp(NOW)


class TestMailboxOperations:
    """Tests for the mailbox registry."""

    @pytest.mark.asyncio
    async def test_save_and_list(self, store: DatabaseStore, mailbox: Mailbox) -> None:
        other = Mailbox(id="mailbox-2", user_id="user-2", email="sam@example.com")
        await store.save_mailbox(other)

        assert [m.id for m in await store.list_mailboxes()] == [MAILBOX_ID, "mailbox-2"]
        assert [m.id for m in await store.list_mailboxes(user_id=USER_ID)] == [MAILBOX_ID]

    @pytest.mark.asyncio
    async def test_disconnected_mailboxes_hidden_by_default(
        self, store: DatabaseStore, mailbox: Mailbox
    ) -> None:
        mailbox.is_connected = False
        await store.save_mailbox(mailbox)

        assert await store.list_mailboxes() == []
        assert len(await store.list_mailboxes(connected_only=False)) == 1
        assert (await store.get_mailbox(MAILBOX_ID)).is_connected is False


class TestEventAggregation:
    """Tests for event recording and the aggregation queries."""

    @pytest.mark.asyncio
    async def test_record_events_lowercases_senders(self, store: DatabaseStore) -> None:
        count = await store.record_events([_event("arrived", 1, sender="News@Shop.COM")])
        assert count == 1
        assert await store.count_sender_events(
            USER_ID, MAILBOX_ID, "news@shop.com", EventType.ARRIVED
        ) == 1

    @pytest.mark.asyncio
    async def test_record_no_events(self, store: DatabaseStore) -> None:
        assert await store.record_events([]) == 0

    @pytest.mark.asyncio
    async def test_automated_event_not_learned(self, store: DatabaseStore) -> None:
        """Should record single events but leave rule-caused ones out of aggregation."""
        await store.record_events([_event("arrived", 20 + i) for i in range(10)])
        await store.record_event(_event("read", 20))
        await store.record_event(_event("deleted", 20, automated_by_rule_id="rule-1"))

        [activity] = await store.aggregate_sender_activity(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90)
        )
        assert activity.total_events == 11
        assert activity.read_count == 1
        assert activity.deleted_count == 0

    @pytest.mark.asyncio
    async def test_sender_activity_counts(self, store: DatabaseStore) -> None:
        events = [_event("arrived", 20 + i) for i in range(8)]
        events += [_event("deleted", 20 + i) for i in range(6)]
        events += [_event("read", 20)]
        await store.record_events(events)

        [activity] = await store.aggregate_sender_activity(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90)
        )
        assert activity.sender_email == "news@shop.com"
        assert activity.sender_domain == "shop.com"
        assert activity.total_events == 15
        assert activity.arrived_count == 8
        assert activity.deleted_count == 6
        assert activity.read_count == 1
        assert activity.first_seen == NOW - timedelta(days=27)

    @pytest.mark.asyncio
    async def test_sender_activity_min_events(self, store: DatabaseStore) -> None:
        await store.record_events([_event("arrived", 5) for _ in range(9)])
        assert await store.aggregate_sender_activity(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90)
        ) == []

    @pytest.mark.asyncio
    async def test_sender_activity_excludes_automated_and_old_events(
        self, store: DatabaseStore
    ) -> None:
        events = [_event("arrived", 5) for _ in range(10)]
        events += [_event("deleted", 5, automated_by_rule_id="rule-1") for _ in range(10)]
        events += [_event("deleted", 120) for _ in range(10)]
        await store.record_events(events)

        [activity] = await store.aggregate_sender_activity(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90)
        )
        assert activity.total_events == 10
        assert activity.deleted_count == 0

    @pytest.mark.asyncio
    async def test_evidence_is_newest_first_and_capped(self, store: DatabaseStore) -> None:
        await store.record_events(
            [_event("arrived", day, message_id=f"msg-{day}") for day in range(1, 16)]
        )

        [activity] = await store.aggregate_sender_activity(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90), max_evidence=10
        )
        assert len(activity.evidence) == 10
        assert activity.evidence[0].message_id == "msg-1"
        assert activity.evidence[-1].message_id == "msg-10"

    @pytest.mark.asyncio
    async def test_folder_routing_groups_by_destination(self, store: DatabaseStore) -> None:
        events = [_event("moved", 10 + i, to_folder="receipts") for i in range(5)]
        events += [_event("moved", 10 + i, to_folder="archive-2019") for i in range(4)]
        await store.record_events(events)

        routings = await store.aggregate_folder_routing(
            USER_ID, MAILBOX_ID, since=NOW - timedelta(days=90)
        )
        assert [(r.to_folder, r.move_count) for r in routings] == [("receipts", 5)]
        assert len(routings[0].evidence) == 5

    @pytest.mark.asyncio
    async def test_recency_stats(self, store: DatabaseStore) -> None:
        events = [_event("arrived", 2) for _ in range(3)]
        events += [_event("deleted", 2) for _ in range(2)]
        events += [_event("deleted", 30) for _ in range(5)]
        await store.record_events(events)

        stats = await store.get_recency_stats(
            USER_ID, MAILBOX_ID, "news@shop.com", EventType.DELETED, since=NOW - timedelta(days=7)
        )
        assert stats.action_count == 2
        assert stats.total_events == 5


class TestPatternOperations:
    """Tests for pattern persistence and transitions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        assert await store.create_pattern(pattern)

        stored = await store.get_pattern(pattern.id, user_id=USER_ID)
        assert stored is not None
        assert stored.status == PatternStatus.DETECTED
        assert stored.condition.sender_email == "news@shop.com"
        assert stored.suggested_action.action_type == "delete"
        assert await store.get_pattern(pattern.id, user_id="someone-else") is None

    @pytest.mark.asyncio
    async def test_second_open_pattern_for_tuple_rejected(self, store: DatabaseStore) -> None:
        assert await store.create_pattern(_pattern())
        assert not await store.create_pattern(_pattern(status=PatternStatus.SUGGESTED))

    @pytest.mark.asyncio
    async def test_open_pattern_allowed_next_to_terminal_one(self, store: DatabaseStore) -> None:
        assert await store.create_pattern(_pattern(status=PatternStatus.APPROVED))
        assert await store.create_pattern(_pattern())

    @pytest.mark.asyncio
    async def test_one_open_routing_pattern_per_sender(self, store: DatabaseStore) -> None:
        """Should treat the destination folder as an attribute, not part of the key."""
        assert await store.create_pattern(_pattern(action_type="move", to_folder="a"))
        assert not await store.create_pattern(_pattern(action_type="move", to_folder="b"))

    @pytest.mark.asyncio
    async def test_find_pattern_with_active_cooldown(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        await store.create_pattern(pattern)
        await store.transition_pattern(
            pattern.id,
            USER_ID,
            PatternStatus.REJECTED,
            NOW,
            cooldown_until=NOW + timedelta(days=30),
        )
        lookup = dict(
            user_id=USER_ID,
            mailbox_id=MAILBOX_ID,
            pattern_type=PatternType.SENDER,
            sender_email="news@shop.com",
            action_type="delete",
            statuses=[PatternStatus.REJECTED],
        )

        assert await store.find_pattern(**lookup, cooldown_active_at=NOW) is not None
        assert (
            await store.find_pattern(**lookup, cooldown_active_at=NOW + timedelta(days=31))
            is None
        )

    @pytest.mark.asyncio
    async def test_transition_only_from_open_status(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        await store.create_pattern(pattern)

        assert await store.transition_pattern(pattern.id, USER_ID, PatternStatus.APPROVED, NOW)
        assert not await store.transition_pattern(
            pattern.id, USER_ID, PatternStatus.REJECTED, NOW
        )
        stored = await store.get_pattern(pattern.id)
        assert stored.status == PatternStatus.APPROVED
        assert stored.approved_at == NOW

    @pytest.mark.asyncio
    async def test_transition_requires_owner(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        await store.create_pattern(pattern)
        assert not await store.transition_pattern(
            pattern.id, "someone-else", PatternStatus.APPROVED, NOW
        )

    @pytest.mark.asyncio
    async def test_refresh_skips_decided_pattern(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        await store.create_pattern(pattern)
        await store.transition_pattern(pattern.id, USER_ID, PatternStatus.APPROVED, NOW)

        refreshed = await store.refresh_pattern(
            pattern.id,
            status=PatternStatus.SUGGESTED,
            confidence=99,
            sample_size=30,
            exception_count=1,
            evidence=[],
            analyzed_at=NOW,
        )
        assert not refreshed
        assert (await store.get_pattern(pattern.id)).confidence == 90

    @pytest.mark.asyncio
    async def test_refresh_retargets_routing_destination(self, store: DatabaseStore) -> None:
        pattern = _pattern(action_type="move", to_folder="receipts")
        await store.create_pattern(pattern)

        assert await store.refresh_pattern(
            pattern.id,
            status=PatternStatus.DETECTED,
            confidence=40,
            sample_size=30,
            exception_count=18,
            evidence=[],
            analyzed_at=NOW,
            to_folder="invoices",
        )

        stored = await store.get_pattern(pattern.id)
        assert stored.condition.to_folder == "invoices"
        assert stored.suggested_action.to_folder == "invoices"

    @pytest.mark.asyncio
    async def test_refresh_cannot_set_terminal_status(self, store: DatabaseStore) -> None:
        pattern = _pattern()
        await store.create_pattern(pattern)
        with pytest.raises(StateConflictError):
            await store.refresh_pattern(
                pattern.id,
                status=PatternStatus.APPROVED,
                confidence=99,
                sample_size=30,
                exception_count=1,
                evidence=[],
                analyzed_at=NOW,
            )

    @pytest.mark.asyncio
    async def test_list_patterns_ordered_and_paginated(self, store: DatabaseStore) -> None:
        for i, confidence in enumerate([70, 95, 80]):
            await store.create_pattern(_pattern(sender=f"s{i}@x.com", confidence=confidence))

        page, total = await store.list_patterns(USER_ID, page=1, limit=2)
        assert total == 3
        assert [p.confidence for p in page] == [95, 80]

        page, _ = await store.list_patterns(USER_ID, page=2, limit=2)
        assert [p.confidence for p in page] == [70]

    @pytest.mark.asyncio
    async def test_list_patterns_status_filter(self, store: DatabaseStore) -> None:
        await store.create_pattern(_pattern(status=PatternStatus.APPROVED))
        await store.create_pattern(_pattern())

        items, total = await store.list_patterns(USER_ID, statuses=[PatternStatus.APPROVED])
        assert total == 1
        assert items[0].status == PatternStatus.APPROVED


class TestStagedActionOperations:
    """Tests for staged action persistence and transitions."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store: DatabaseStore) -> None:
        staged = _staged(timedelta(hours=1))
        await store.create_staged_action(staged)

        stored = await store.get_staged_action(staged.id, user_id=USER_ID)
        assert stored == staged

    @pytest.mark.asyncio
    async def test_transition_is_one_way(self, store: DatabaseStore) -> None:
        staged = _staged(timedelta(hours=1))
        await store.create_staged_action(staged)

        assert await store.transition_staged_action(staged.id, StagedStatus.RESCUED, NOW)
        assert not await store.transition_staged_action(staged.id, StagedStatus.EXECUTED, NOW)
        stored = await store.get_staged_action(staged.id)
        assert stored.status == StagedStatus.RESCUED
        assert stored.rescued_at == NOW

    @pytest.mark.asyncio
    async def test_cannot_transition_back_to_staged(self, store: DatabaseStore) -> None:
        staged = _staged(timedelta(hours=1))
        await store.create_staged_action(staged)
        with pytest.raises(StateConflictError):
            await store.transition_staged_action(staged.id, StagedStatus.STAGED, NOW)

    @pytest.mark.asyncio
    async def test_list_expired(self, store: DatabaseStore) -> None:
        due_later = _staged(timedelta(hours=-1))
        due_first = _staged(timedelta(hours=-5))
        not_due = _staged(timedelta(hours=3))
        for s in (due_later, due_first, not_due):
            await store.create_staged_action(s)

        expired = await store.list_expired_staged_actions(NOW)
        assert [s.id for s in expired] == [due_first.id, due_later.id]
        assert len(await store.list_expired_staged_actions(NOW, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_expired_includes_exact_expiry(self, store: DatabaseStore) -> None:
        staged = _staged(timedelta(0))
        await store.create_staged_action(staged)
        assert [s.id for s in await store.list_expired_staged_actions(NOW)] == [staged.id]

    @pytest.mark.asyncio
    async def test_batch_rescue_returns_only_transitioned(self, store: DatabaseStore) -> None:
        first, second, foreign = (
            _staged(timedelta(hours=1)),
            _staged(timedelta(hours=2)),
            _staged(timedelta(hours=3), user_id="someone-else"),
        )
        for s in (first, second, foreign):
            await store.create_staged_action(s)
        await store.transition_staged_action(second.id, StagedStatus.EXECUTED, NOW)

        rescued = await store.rescue_staged_actions(
            [first.id, second.id, foreign.id, "missing"], USER_ID, now=NOW
        )
        assert [s.id for s in rescued] == [first.id]
        assert (await store.get_staged_action(foreign.id)).status == StagedStatus.STAGED

    @pytest.mark.asyncio
    async def test_list_and_count(self, store: DatabaseStore) -> None:
        for hours in (3, 1, 2):
            await store.create_staged_action(_staged(timedelta(hours=hours)))

        items, total = await store.list_staged_actions(USER_ID)
        assert total == 3
        assert [s.expires_at for s in items] == sorted(s.expires_at for s in items)
        assert await store.count_staged_actions(USER_ID) == 3
        assert await store.count_staged_actions(USER_ID, mailbox_id="other") == 0


class TestAuditOperations:
    """Tests for the audit ledger."""

    @pytest.mark.asyncio
    async def test_log_and_get(self, store: DatabaseStore) -> None:
        entry = await store.log_audit(
            user_id=USER_ID,
            action=AuditAction.RULE_EXECUTED,
            mailbox_id=MAILBOX_ID,
            target_type="email",
            target_id="msg-1",
            details={"actions": [{"action_type": "move", "to_folder": "x"}]},
            undoable=True,
            created_at=NOW,
        )

        stored = await store.get_audit_entry(entry.id, user_id=USER_ID)
        assert stored == entry
        assert await store.get_audit_entry(entry.id, user_id="someone-else") is None

    @pytest.mark.asyncio
    async def test_mark_undone_only_once(self, store: DatabaseStore) -> None:
        entry = await store.log_audit(USER_ID, AuditAction.RULE_EXECUTED, undoable=True)

        assert await store.mark_audit_undone(entry.id, USER_ID, NOW, {"undo_partial": True})
        assert not await store.mark_audit_undone(entry.id, USER_ID, NOW, {})

        stored = await store.get_audit_entry(entry.id)
        assert stored.undone_at == NOW
        assert stored.undone_by == USER_ID
        assert stored.details == {"undo_partial": True}

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filter(self, store: DatabaseStore) -> None:
        for hours, action in [(3, "email_staged"), (1, "rule_executed"), (2, "email_staged")]:
            await store.log_audit(
                USER_ID, action, mailbox_id=MAILBOX_ID, created_at=NOW - timedelta(hours=hours)
            )

        items, total = await store.list_audit_entries(USER_ID)
        assert total == 3
        assert [e.created_at for e in items] == sorted(
            (e.created_at for e in items), reverse=True
        )

        staged, staged_total = await store.list_audit_entries(USER_ID, action="email_staged")
        assert staged_total == 2
        assert {e.action for e in staged} == {"email_staged"}

    @pytest.mark.asyncio
    async def test_page_size_is_capped(self, store: DatabaseStore) -> None:
        for _ in range(105):
            await store.log_audit(USER_ID, AuditAction.EMAIL_RESCUED)

        items, total = await store.list_audit_entries(USER_ID, limit=500)
        assert total == 105
        assert len(items) == 100


class TestRuleOperations:
    """Tests for rules."""

    @pytest.mark.asyncio
    async def test_one_rule_per_source_pattern(self, store: DatabaseStore) -> None:
        def rule(priority: int) -> Rule:
            return Rule(
                id=new_id(),
                user_id=USER_ID,
                mailbox_id=MAILBOX_ID,
                name="Auto: Delete from news@shop.com",
                source_pattern_id="pattern-1",
                priority=priority,
                actions=[ActionSpec(action_type="delete", order=0)],
                created_at=NOW,
            )

        first = rule(0)
        assert await store.create_rule(first)
        assert not await store.create_rule(rule(1))
        assert (await store.get_rule_by_source_pattern("pattern-1")).id == first.id
        assert await store.get_max_rule_priority(USER_ID, MAILBOX_ID) == 0

    @pytest.mark.asyncio
    async def test_record_execution(self, store: DatabaseStore) -> None:
        rule = Rule(
            id=new_id(),
            user_id=USER_ID,
            mailbox_id=MAILBOX_ID,
            name="Auto: Archive from a@b.com",
            source_pattern_id=None,
            created_at=NOW,
        )
        await store.create_rule(rule)
        await store.record_rule_execution(rule.id, NOW)
        await store.record_rule_execution(rule.id, NOW + timedelta(minutes=1))

        stored = await store.get_rule(rule.id)
        assert stored.total_executions == 2
        assert stored.last_executed_at == NOW + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_max_priority_none_without_rules(self, store: DatabaseStore) -> None:
        assert await store.get_max_rule_priority(USER_ID, MAILBOX_ID) is None
