"""Convert approved patterns into automation rules.

Conversion is idempotent: a pattern maps to at most one rule (enforced by a
UNIQUE source_pattern_id), and converting it again returns that rule.

Usage:
    from mailpilot.classifier.rule_converter import RuleConverter

    converter = RuleConverter(store)
    rule = await converter.convert_pattern_to_rule(pattern_id, user_id)
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailpilot.core.errors import DatabaseError, EntityNotFoundError, StateConflictError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import (
    ActionSpec,
    ActionType,
    AuditAction,
    Pattern,
    PatternStatus,
    Rule,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from mailpilot.db.store import DatabaseStore

logger = get_logger(__name__)

# Primary actions that are paired with markRead in the generated rule
ACTIONS_PAIRED_WITH_MARK_READ = frozenset({ActionType.MOVE, ActionType.ARCHIVE})


def build_rule_name(pattern: Pattern) -> str:
    """Human-readable rule name, e.g. 'Auto: Delete from news@example.com'."""
    action_type = pattern.suggested_action.action_type
    target = pattern.condition.sender_email or pattern.condition.sender_domain or "matched emails"
    return f"Auto: {action_type[:1].upper()}{action_type[1:]} from {target}"


def build_rule_conditions(pattern: Pattern) -> dict[str, Any]:
    conditions: dict[str, Any] = {}
    if pattern.condition.sender_email:
        conditions["sender_email"] = pattern.condition.sender_email
    if pattern.condition.sender_domain:
        conditions["sender_domain"] = pattern.condition.sender_domain
    return conditions


def build_rule_actions(pattern: Pattern) -> list[ActionSpec]:
    """Primary action first, then markRead for move/archive."""
    suggested = pattern.suggested_action
    actions = [
        ActionSpec(
            action_type=suggested.action_type,
            to_folder=suggested.to_folder,
            category=suggested.category,
            order=0,
        )
    ]
    if suggested.action_type in ACTIONS_PAIRED_WITH_MARK_READ:
        actions.append(ActionSpec(action_type=ActionType.MARK_READ, order=1))
    return actions


class RuleConverter:
    """Creates rules from approved patterns."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def convert_pattern_to_rule(
        self, pattern_id: str, user_id: str, now: datetime | None = None
    ) -> Rule:
        """Create (or return the existing) rule for an approved pattern.

        Raises:
            EntityNotFoundError: Pattern missing or not the caller's
            StateConflictError: Pattern is not approved
        """
        pattern = await self._store.get_pattern(pattern_id, user_id=user_id)
        if pattern is None:
            raise EntityNotFoundError(
                f"Pattern {pattern_id} not found", entity="pattern", entity_id=pattern_id
            )
        if pattern.status != PatternStatus.APPROVED:
            raise StateConflictError(
                f"Pattern must be approved to convert to rule (current status: {pattern.status})",
                current_status=str(pattern.status),
            )

        existing = await self._store.get_rule_by_source_pattern(pattern.id)
        if existing is not None:
            logger.info("rule_already_exists", pattern_id=pattern.id, rule_id=existing.id)
            return existing

        now = now or utcnow()
        highest = await self._store.get_max_rule_priority(user_id, pattern.mailbox_id)
        rule = Rule(
            id=new_id(),
            user_id=user_id,
            mailbox_id=pattern.mailbox_id,
            name=build_rule_name(pattern),
            source_pattern_id=pattern.id,
            is_enabled=True,
            priority=0 if highest is None else highest + 1,
            conditions=build_rule_conditions(pattern),
            actions=build_rule_actions(pattern),
            created_at=now,
        )

        if not await self._store.create_rule(rule):
            # A concurrent conversion got there first
            existing = await self._store.get_rule_by_source_pattern(pattern.id)
            if existing is None:
                raise DatabaseError(
                    f"Rule insert for pattern {pattern.id} conflicted but no rule was found"
                )
            return existing

        await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.RULE_CREATED,
            mailbox_id=pattern.mailbox_id,
            target_type="rule",
            target_id=rule.id,
            details={
                "source_pattern_id": pattern.id,
                "conditions": rule.conditions,
                "actions": [a.to_dict() for a in rule.actions],
                "name": rule.name,
            },
            undoable=False,
            created_at=now,
        )
        logger.info(
            "rule_created_from_pattern",
            pattern_id=pattern.id,
            rule_id=rule.id,
            name=rule.name,
            actions_count=len(rule.actions),
        )
        return rule
