"""Mail provider operations for Microsoft Graph API.

The automation core only ever needs four things from a mail service: move a
message, patch message properties, page through a folder, and find (or
create) a folder by display name. MailProvider names that contract so the
staging pipeline and undo service can run against Graph in production and a
fake in tests.

Every method raises MessageNotFoundError for a missing message or folder and
RateLimitExceeded when throttled; the sweep depends on that distinction.

Usage:
    from mailpilot.graph.client import GraphClient
    from mailpilot.graph.messages import GraphMailProvider

    provider = GraphMailProvider(GraphClient(auth))

    await provider.move_message("ops@contoso.com", message_id, "deleteditems")
    await provider.patch_message("ops@contoso.com", message_id, {"isRead": True})
"""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import quote

from mailpilot.core.errors import GraphAPIError
from mailpilot.core.logging import get_logger, short_id

if TYPE_CHECKING:
    from mailpilot.graph.client import GraphClient

logger = get_logger(__name__)

DEFAULT_MESSAGE_FIELDS = "id,subject,from,receivedDateTime,parentFolderId,isRead,categories,flag"

# Graph page size ceiling for message listing
MAX_PAGE_SIZE = 50


@dataclass
class MessagePage:
    """One page of a folder listing.

    Attributes:
        messages: Raw Graph message dicts
        next_page_token: Opaque token for the next page, None on the last page
    """

    messages: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


class MailProvider(Protocol):
    """Operations the automation core performs against a mailbox."""

    async def move_message(
        self, mailbox_email: str, message_id: str, destination: str
    ) -> dict[str, Any]: ...

    async def patch_message(
        self, mailbox_email: str, message_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def list_messages(
        self, mailbox_email: str, folder: str, page_token: str | None = None
    ) -> MessagePage: ...

    async def find_or_create_folder(self, mailbox_email: str, display_name: str) -> str: ...


def _odata_quote(value: str) -> str:
    """Escape a string literal for an OData $filter expression."""
    return value.replace("'", "''")


class GraphMailProvider:
    """MailProvider backed by the synchronous GraphClient.

    Each call runs the blocking request in a worker thread so a sweep chunk
    can have several Graph calls in flight at once.

    Attributes:
        client: GraphClient instance for API calls
    """

    def __init__(self, client: "GraphClient"):
        self.client = client

    def _message_path(self, mailbox_email: str, message_id: str, suffix: str = "") -> str:
        return self.client.mailbox_path(
            mailbox_email, f"/messages/{quote(message_id, safe='')}{suffix}"
        )

    # ------------------------------------------------------------------
    # Sync implementations (run in worker threads)
    # ------------------------------------------------------------------

    def _move_message_sync(
        self, mailbox_email: str, message_id: str, destination: str
    ) -> dict[str, Any]:
        result = self.client.post(
            self._message_path(mailbox_email, message_id, "/move"),
            json={"destinationId": destination},
        )
        logger.debug(
            "Message moved",
            message_id=short_id(message_id),
            destination=destination,
        )
        return result

    def _patch_message_sync(
        self, mailbox_email: str, message_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        result = self.client.patch(self._message_path(mailbox_email, message_id), json=fields)
        logger.debug(
            "Message patched",
            message_id=short_id(message_id),
            fields=sorted(fields),
        )
        return result

    def _list_messages_sync(
        self, mailbox_email: str, folder: str, page_token: str | None
    ) -> MessagePage:
        if page_token:
            # nextLink already carries every query parameter
            response = self.client.get(page_token)
        else:
            response = self.client.get(
                self.client.mailbox_path(
                    mailbox_email, f"/mailFolders/{quote(folder, safe='')}/messages"
                ),
                params={
                    "$select": DEFAULT_MESSAGE_FIELDS,
                    "$orderby": "receivedDateTime desc",
                    "$top": MAX_PAGE_SIZE,
                },
            )
        return MessagePage(
            messages=response.get("value", []),
            next_page_token=response.get("@odata.nextLink"),
        )

    def _find_folder_sync(self, mailbox_email: str, display_name: str) -> str | None:
        response = self.client.get(
            self.client.mailbox_path(mailbox_email, "/mailFolders"),
            params={
                "$filter": f"displayName eq '{_odata_quote(display_name)}'",
                "$select": "id,displayName",
            },
        )
        folders = response.get("value", [])
        return folders[0]["id"] if folders else None

    def _find_or_create_folder_sync(self, mailbox_email: str, display_name: str) -> str:
        folder_id = self._find_folder_sync(mailbox_email, display_name)
        if folder_id:
            return folder_id

        try:
            created = self.client.post(
                self.client.mailbox_path(mailbox_email, "/mailFolders"),
                json={"displayName": display_name},
            )
        except GraphAPIError as e:
            # Another worker created it between our lookup and create
            if e.status_code != 409:
                raise
            folder_id = self._find_folder_sync(mailbox_email, display_name)
            if folder_id is None:
                raise
            return folder_id

        logger.info("Folder created", folder=display_name, mailbox=mailbox_email)
        return created["id"]

    # ------------------------------------------------------------------
    # MailProvider interface
    # ------------------------------------------------------------------

    async def move_message(
        self, mailbox_email: str, message_id: str, destination: str
    ) -> dict[str, Any]:
        """Move a message to a folder ID or well-known name (e.g. 'deleteditems')."""
        return await asyncio.to_thread(
            self._move_message_sync, mailbox_email, message_id, destination
        )

    async def patch_message(
        self, mailbox_email: str, message_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Update message properties such as isRead, categories or flag."""
        return await asyncio.to_thread(self._patch_message_sync, mailbox_email, message_id, fields)

    async def list_messages(
        self, mailbox_email: str, folder: str, page_token: str | None = None
    ) -> MessagePage:
        """Fetch one page of a folder, newest first."""
        return await asyncio.to_thread(self._list_messages_sync, mailbox_email, folder, page_token)

    async def find_or_create_folder(self, mailbox_email: str, display_name: str) -> str:
        """Return the ID of the top-level folder with this name, creating it if needed."""
        return await asyncio.to_thread(
            self._find_or_create_folder_sync, mailbox_email, display_name
        )
