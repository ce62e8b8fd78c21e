"""Apply and reverse single mailbox actions.

These are the only places that translate an ActionSpec into mail provider
calls. Deletes are soft: the message is moved to Deleted Items, never purged.

Provider errors (MessageNotFoundError, RateLimitExceeded, GraphAPIError)
propagate to the caller, which decides what a failure means in its context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mailpilot.core.logging import get_logger, short_id
from mailpilot.db.store import ActionSpec, ActionType

if TYPE_CHECKING:
    from mailpilot.graph.messages import MailProvider

logger = get_logger(__name__)

# Well-known Graph folder names accepted as move destinations
DELETED_ITEMS_FOLDER = "deleteditems"
ARCHIVE_FOLDER = "archive"


def sort_actions(actions: list[ActionSpec]) -> list[ActionSpec]:
    """Order actions by their `order` field; unordered actions keep their place at the end."""
    return sorted(actions, key=lambda a: float("inf") if a.order is None else a.order)


async def apply_action(
    provider: MailProvider, mailbox_email: str, message_id: str, action: ActionSpec
) -> bool:
    """Perform one action on a message.

    Returns:
        True if a provider call was made, False if the action was skipped
        (missing destination or category, or an unknown action type)
    """
    action_type = action.action_type

    if action_type == ActionType.DELETE:
        await provider.move_message(mailbox_email, message_id, DELETED_ITEMS_FOLDER)
    elif action_type == ActionType.MOVE:
        if not action.to_folder:
            logger.warning("move_action_missing_folder", message_id=short_id(message_id))
            return False
        await provider.move_message(mailbox_email, message_id, action.to_folder)
    elif action_type == ActionType.ARCHIVE:
        await provider.move_message(mailbox_email, message_id, ARCHIVE_FOLDER)
    elif action_type == ActionType.MARK_READ:
        await provider.patch_message(mailbox_email, message_id, {"isRead": True})
    elif action_type == ActionType.CATEGORIZE:
        if not action.category:
            logger.warning("categorize_action_missing_category", message_id=short_id(message_id))
            return False
        await provider.patch_message(mailbox_email, message_id, {"categories": [action.category]})
    elif action_type == ActionType.FLAG:
        await provider.patch_message(
            mailbox_email, message_id, {"flag": {"flagStatus": "flagged"}}
        )
    else:
        logger.warning(
            "unknown_action_type", action_type=action_type, message_id=short_id(message_id)
        )
        return False

    return True


async def reverse_action(
    provider: MailProvider,
    mailbox_email: str,
    message_id: str,
    action: ActionSpec,
    original_folder: str | None,
) -> bool:
    """Undo the effect of one action.

    Each reversal sets an absolute state (folder, unread, no categories,
    not flagged), so repeating it is harmless. Deletes are not reversed
    here; they are undone through their staging audit entries.

    Returns:
        True if a provider call was made
    """
    action_type = action.action_type

    if action_type in (ActionType.MOVE, ActionType.ARCHIVE):
        if not original_folder:
            logger.warning("undo_move_missing_original_folder", message_id=short_id(message_id))
            return False
        await provider.move_message(mailbox_email, message_id, original_folder)
    elif action_type == ActionType.MARK_READ:
        await provider.patch_message(mailbox_email, message_id, {"isRead": False})
    elif action_type == ActionType.CATEGORIZE:
        await provider.patch_message(mailbox_email, message_id, {"categories": []})
    elif action_type == ActionType.FLAG:
        await provider.patch_message(
            mailbox_email, message_id, {"flag": {"flagStatus": "notFlagged"}}
        )
    elif action_type == ActionType.DELETE:
        logger.info("undo_delete_handled_by_staging", message_id=short_id(message_id))
        return False
    else:
        logger.warning(
            "unknown_action_type_in_undo",
            action_type=action_type,
            message_id=short_id(message_id),
        )
        return False

    return True
