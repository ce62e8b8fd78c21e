"""Authentication module for Microsoft Graph API.

Provides MSAL-based app-only (client credentials) authentication.

Usage:
    from mailpilot.auth import GraphAuth

    auth = GraphAuth(
        client_id="your-client-id",
        tenant_id="your-tenant-id",
        client_secret=os.environ["MAILPILOT_CLIENT_SECRET"],
        scopes=["https://graph.microsoft.com/.default"],
    )

    token = auth.get_access_token()
"""

from mailpilot.auth.msal_auth import GraphAuth

__all__ = ["GraphAuth"]
