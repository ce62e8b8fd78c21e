"""User decisions on detected patterns: approve, reject, customize.

Only open patterns (detected/suggested) can be decided. Every decision is a
conditional status update, so two reviewers acting on the same pattern
cannot both win; the loser gets a StateConflictError.

Usage:
    from mailpilot.classifier.pattern_review import PatternReviewService

    review = PatternReviewService(store, config)
    pattern = await review.approve(pattern_id, user_id)
    pattern = await review.customize(pattern_id, user_id, action_type="move", to_folder=folder_id)
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from mailpilot.core.errors import ActionValidationError, EntityNotFoundError, StateConflictError
from mailpilot.core.logging import get_logger
from mailpilot.db.store import (
    DEFAULT_PAGE_SIZE,
    ActionSpec,
    ActionType,
    AuditAction,
    Pattern,
    PatternStatus,
    utcnow,
)

if TYPE_CHECKING:
    from mailpilot.config_schema import AppConfig
    from mailpilot.db.store import DatabaseStore

logger = get_logger(__name__)

VALID_CUSTOM_ACTION_TYPES = frozenset(ActionType)


def validate_action(
    action_type: str, to_folder: str | None = None, category: str | None = None
) -> ActionSpec:
    """Build an ActionSpec from user input, rejecting malformed combinations.

    Raises:
        ActionValidationError: Unknown action type, move without a folder,
            or categorize without a category
    """
    if not action_type:
        raise ActionValidationError("action_type is required")
    if action_type not in VALID_CUSTOM_ACTION_TYPES:
        raise ActionValidationError(
            f"Invalid action_type '{action_type}'. "
            f"Must be one of: {', '.join(sorted(VALID_CUSTOM_ACTION_TYPES))}"
        )
    if action_type == ActionType.MOVE and not to_folder:
        raise ActionValidationError("A move action requires a destination folder (to_folder)")
    if action_type == ActionType.CATEGORIZE and not category:
        raise ActionValidationError("A categorize action requires a category")

    return ActionSpec(
        action_type=action_type,
        to_folder=to_folder or None,
        category=category or None,
    )


def _pattern_details(pattern: Pattern) -> dict[str, Any]:
    return {
        "pattern_type": str(pattern.pattern_type),
        "confidence": pattern.confidence,
        "condition": {k: v for k, v in asdict(pattern.condition).items() if v},
        "suggested_action": pattern.suggested_action.to_dict(),
    }


class PatternReviewService:
    """Applies review decisions to patterns and records them in the audit log."""

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def get_pattern(self, pattern_id: str, user_id: str) -> Pattern:
        """Fetch a pattern owned by the user.

        Raises:
            EntityNotFoundError: If missing or owned by someone else
        """
        pattern = await self._store.get_pattern(pattern_id, user_id=user_id)
        if pattern is None:
            raise EntityNotFoundError(
                f"Pattern {pattern_id} not found", entity="pattern", entity_id=pattern_id
            )
        return pattern

    async def list_patterns(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        statuses: list[PatternStatus] | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[Pattern], int]:
        """List a user's patterns, highest confidence first."""
        return await self._store.list_patterns(
            user_id, mailbox_id=mailbox_id, statuses=statuses, page=page, limit=limit
        )

    async def approve(
        self, pattern_id: str, user_id: str, now: datetime | None = None
    ) -> Pattern:
        """Approve an open pattern as suggested.

        Raises:
            EntityNotFoundError: Pattern missing or not the caller's
            StateConflictError: Pattern is not detected/suggested
        """
        now = now or utcnow()
        pattern = await self._decide(pattern_id, user_id, PatternStatus.APPROVED, now)
        await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.PATTERN_APPROVED,
            mailbox_id=pattern.mailbox_id,
            target_type="pattern",
            target_id=pattern.id,
            details=_pattern_details(pattern),
            created_at=now,
        )
        logger.info("pattern_approved", pattern_id=pattern.id, confidence=pattern.confidence)
        return pattern

    async def reject(self, pattern_id: str, user_id: str, now: datetime | None = None) -> Pattern:
        """Reject an open pattern and start its re-detection cooldown.

        Raises:
            EntityNotFoundError: Pattern missing or not the caller's
            StateConflictError: Pattern is not detected/suggested
        """
        now = now or utcnow()
        cooldown_until = now + timedelta(days=self._config.analysis.rejection_cooldown_days)
        pattern = await self._decide(
            pattern_id, user_id, PatternStatus.REJECTED, now, cooldown_until=cooldown_until
        )
        await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.PATTERN_REJECTED,
            mailbox_id=pattern.mailbox_id,
            target_type="pattern",
            target_id=pattern.id,
            details=_pattern_details(pattern),
            created_at=now,
        )
        logger.info(
            "pattern_rejected",
            pattern_id=pattern.id,
            cooldown_until=cooldown_until.isoformat(),
        )
        return pattern

    async def customize(
        self,
        pattern_id: str,
        user_id: str,
        action_type: str,
        to_folder: str | None = None,
        category: str | None = None,
        now: datetime | None = None,
    ) -> Pattern:
        """Replace an open pattern's suggested action and approve it.

        Raises:
            ActionValidationError: Malformed action
            EntityNotFoundError: Pattern missing or not the caller's
            StateConflictError: Pattern is not detected/suggested
        """
        action = validate_action(action_type, to_folder=to_folder, category=category)
        now = now or utcnow()

        current = await self.get_pattern(pattern_id, user_id)
        original_action = current.suggested_action

        pattern = await self._decide(
            pattern_id, user_id, PatternStatus.APPROVED, now, action=action
        )
        details = _pattern_details(pattern)
        details["customized"] = True
        details["original_action"] = original_action.to_dict()
        await self._store.log_audit(
            user_id=user_id,
            action=AuditAction.PATTERN_APPROVED,
            mailbox_id=pattern.mailbox_id,
            target_type="pattern",
            target_id=pattern.id,
            details=details,
            created_at=now,
        )
        logger.info(
            "pattern_customized",
            pattern_id=pattern.id,
            original_action=original_action.action_type,
            action_type=action.action_type,
        )
        return pattern

    async def _decide(
        self,
        pattern_id: str,
        user_id: str,
        target: PatternStatus,
        now: datetime,
        cooldown_until: datetime | None = None,
        action: ActionSpec | None = None,
    ) -> Pattern:
        pattern = await self.get_pattern(pattern_id, user_id)
        if not pattern.status.can_transition_to(target):
            raise StateConflictError(
                f"Pattern {pattern_id} is already {pattern.status}",
                current_status=str(pattern.status),
            )

        updated = await self._store.transition_pattern(
            pattern_id,
            user_id,
            target,
            now,
            cooldown_until=cooldown_until,
            action=action,
        )
        if not updated:
            # Someone else decided between our read and write
            latest = await self.get_pattern(pattern_id, user_id)
            raise StateConflictError(
                f"Pattern {pattern_id} is already {latest.status}",
                current_status=str(latest.status),
            )

        return await self.get_pattern(pattern_id, user_id)
