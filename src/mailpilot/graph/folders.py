"""Holding folder lookup for staged messages.

Staged messages wait in a dedicated top-level folder until their grace
period ends. The folder is created on first use in each mailbox and its ID
is cached by this object for the lifetime of the process.

Concurrent cold lookups for the same mailbox may both reach the provider;
find_or_create_folder is idempotent, so both resolve to the same folder and
the cache stores the same ID twice.

Usage:
    from mailpilot.graph.folders import HoldingFolderCache

    holding = HoldingFolderCache(provider, "MailPilot Staging")
    folder_id = await holding.get_folder_id("ops@contoso.com")
"""

from typing import TYPE_CHECKING

from mailpilot.core.logging import get_logger

if TYPE_CHECKING:
    from mailpilot.graph.messages import MailProvider

logger = get_logger(__name__)


class HoldingFolderCache:
    """Per-mailbox holding folder IDs.

    Attributes:
        provider: MailProvider used to find or create the folder
        folder_name: Display name of the holding folder
    """

    def __init__(self, provider: "MailProvider", folder_name: str):
        self.provider = provider
        self.folder_name = folder_name
        self._folder_ids: dict[str, str] = {}

    async def get_folder_id(self, mailbox_email: str) -> str:
        """Get the holding folder ID for a mailbox, resolving it on a miss."""
        key = mailbox_email.lower()
        folder_id = self._folder_ids.get(key)
        if folder_id is not None:
            return folder_id

        folder_id = await self.provider.find_or_create_folder(mailbox_email, self.folder_name)
        self._folder_ids[key] = folder_id
        logger.debug("Holding folder resolved", mailbox=mailbox_email, folder=self.folder_name)
        return folder_id

    def __contains__(self, mailbox_email: str) -> bool:
        return mailbox_email.lower() in self._folder_ids

    def clear(self) -> None:
        self._folder_ids.clear()
