"""Execute a rule's actions against one message.

Actions run in their `order`. A delete is routed through the staging
pipeline unless the caller explicitly skips staging, in which case the
message goes straight to Deleted Items. If the message disappears
upstream mid-run, the remaining actions are abandoned quietly; any other
provider error propagates to the caller.

After the actions run, the rule's execution stats are bumped and an
undoable `rule_executed` audit entry records what was done.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from mailpilot.core.errors import MessageNotFoundError
from mailpilot.core.logging import get_logger, short_id
from mailpilot.db.store import ActionSpec, ActionType, AuditAction, AuditEntry, utcnow
from mailpilot.engine.actions import apply_action, sort_actions

if TYPE_CHECKING:
    from mailpilot.db.store import DatabaseStore, Mailbox, Rule, StagedAction
    from mailpilot.engine.staging import StagingPipeline
    from mailpilot.graph.messages import MailProvider

logger = get_logger(__name__)


@dataclass
class ExecutionReport:
    """What a rule execution did to one message."""

    rule_id: str
    message_id: str
    executed_actions: list[ActionSpec] = field(default_factory=list)
    staged: StagedAction | None = None
    message_missing: bool = False
    audit_entry: AuditEntry | None = None


class ActionExecutor:
    """Applies rule actions, staging deletes through the pipeline."""

    def __init__(self, store: DatabaseStore, provider: MailProvider, staging: StagingPipeline):
        self._store = store
        self._provider = provider
        self._staging = staging

    async def execute(
        self,
        rule: Rule,
        mailbox: Mailbox,
        message_id: str,
        original_folder: str,
        skip_staging: bool = False,
        now: datetime | None = None,
    ) -> ExecutionReport:
        """Run every action of `rule` on one message.

        Args:
            rule: Rule whose actions to apply
            mailbox: Mailbox that holds the message
            message_id: Graph message id
            original_folder: Folder the message was in before any action
            skip_staging: Delete immediately instead of staging
            now: Timestamp for records (defaults to current UTC time)

        Raises:
            GraphAPIError: Any provider failure other than a missing message
        """
        now = now or utcnow()
        report = ExecutionReport(rule_id=rule.id, message_id=message_id)

        for action in sort_actions(rule.actions):
            try:
                if action.action_type == ActionType.DELETE and not skip_staging:
                    report.staged = await self._staging.stage(
                        mailbox,
                        message_id,
                        original_folder,
                        [action],
                        rule_id=rule.id,
                        now=now,
                    )
                elif not await apply_action(self._provider, mailbox.email, message_id, action):
                    continue
            except MessageNotFoundError:
                logger.warning(
                    "rule_target_message_missing",
                    rule_id=rule.id,
                    message_id=short_id(message_id),
                    action_type=action.action_type,
                )
                report.message_missing = True
                break
            report.executed_actions.append(action)

        await self._store.record_rule_execution(rule.id, now)

        details = {
            "rule_id": rule.id,
            "message_id": message_id,
            "original_folder": original_folder,
            "actions": [a.to_dict() for a in report.executed_actions],
        }
        if report.staged is not None:
            details["staged_action_id"] = report.staged.id
        report.audit_entry = await self._store.log_audit(
            user_id=mailbox.user_id,
            action=AuditAction.RULE_EXECUTED,
            mailbox_id=mailbox.id,
            target_type="email",
            target_id=message_id,
            details=details,
            undoable=True,
            created_at=now,
        )

        logger.info(
            "rule_executed",
            rule_id=rule.id,
            message_id=short_id(message_id),
            actions=[a.action_type for a in report.executed_actions],
            staged=report.staged is not None,
            message_missing=report.message_missing,
        )
        return report
