"""Microsoft Graph API client module.

Provides the pieces MailPilot uses to act on mailboxes:
- Base client with retry logic and typed 404/429 errors
- MailProvider protocol and its Graph implementation
- Per-mailbox holding folder cache for staged messages

Usage:
    from mailpilot.auth import GraphAuth
    from mailpilot.graph import GraphClient, GraphMailProvider, HoldingFolderCache

    client = GraphClient(GraphAuth.from_config(config.auth))
    provider = GraphMailProvider(client)
    holding = HoldingFolderCache(provider, config.staging.holding_folder_name)
"""

from mailpilot.graph.client import GraphClient
from mailpilot.graph.folders import HoldingFolderCache
from mailpilot.graph.messages import GraphMailProvider, MailProvider, MessagePage

__all__ = [
    "GraphClient",
    "GraphMailProvider",
    "HoldingFolderCache",
    "MailProvider",
    "MessagePage",
]
