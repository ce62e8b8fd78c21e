"""MSAL app-only authentication for Microsoft Graph API.

MailPilot acts on many mailboxes from a background service, so it uses the
OAuth2 client credentials grant rather than a per-user sign-in. The client
secret is read from an environment variable (usually via .env), never from
config.yaml.

Key features:
- In-memory token cache (MSAL reuses a token until shortly before expiry)
- Retry with jittered backoff for transient network errors
- Actionable error messages for the common Azure AD misconfigurations

Usage:
    from mailpilot.auth.msal_auth import GraphAuth
    from mailpilot.config import get_config

    config = get_config()
    auth = GraphAuth.from_config(config.auth)

    token = auth.get_access_token()
"""

import os
import random
import time

import msal
import requests

from mailpilot.config_schema import AuthConfig
from mailpilot.core.errors import AuthenticationError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

# Retry configuration for MSAL operations
MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]  # Exponential backoff with jitter


class GraphAuth:
    """Acquires app-only Graph tokens via MSAL client credentials.

    Attributes:
        client_id: Azure AD Application (client) ID
        tenant_id: Azure AD Directory (tenant) ID
        scopes: Scopes for the client credentials grant (normally '/.default')
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        client_secret: str,
        scopes: list[str],
    ):
        """Initialize the Graph authentication handler.

        Raises:
            ValueError: If client_id or client_secret is empty
        """
        if not client_id or not client_id.strip():
            raise ValueError(
                "client_id is required. "
                "Register an app in Azure Portal: https://portal.azure.com → "
                "Microsoft Entra ID → App registrations → New registration"
            )
        if not client_secret:
            raise ValueError(
                "client_secret is required for app-only access. "
                "Create one under App registrations → Your app → Certificates & secrets"
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes

        self.app = msal.ConfidentialClientApplication(
            client_id=client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            client_credential=client_secret,
        )

        logger.debug(
            "GraphAuth initialized",
            client_id=client_id[:8] + "...",
            tenant_id=tenant_id[:8] + "...",
            scopes=scopes,
        )

    @classmethod
    def from_config(cls, auth_config: AuthConfig) -> "GraphAuth":
        """Build from the auth config section, reading the secret from the environment.

        Raises:
            AuthenticationError: If the secret environment variable is not set
        """
        secret = os.environ.get(auth_config.client_secret_env)
        if not secret:
            raise AuthenticationError(
                f"Environment variable {auth_config.client_secret_env} is not set. "
                "Add it to .env or export it before starting MailPilot."
            )
        return cls(
            client_id=auth_config.client_id,
            tenant_id=auth_config.tenant_id,
            client_secret=secret,
            scopes=auth_config.scopes,
        )

    def get_access_token(self) -> str:
        """Get a valid app-only access token.

        Returns:
            Access token string for Microsoft Graph API

        Raises:
            AuthenticationError: If Azure AD refuses the request or the network
                keeps failing
        """
        result = self._acquire_token_with_retry()

        if "access_token" in result:
            return result["access_token"]

        error = result.get("error", "unknown_error")
        error_desc = result.get("error_description", "Authentication failed")

        if error == "invalid_client" or "AADSTS7000215" in error_desc:
            logger.error("Client secret rejected")
            raise AuthenticationError(
                "The client secret was rejected. It may be expired or copied incorrectly; "
                "create a new one under App registrations → Certificates & secrets"
            )
        if "AADSTS700016" in error_desc:
            logger.error("Application not found in tenant")
            raise AuthenticationError(
                f"Application {self.client_id} was not found in tenant {self.tenant_id}. "
                "Check auth.client_id and auth.tenant_id in config.yaml"
            )

        logger.error("App-only authentication failed", error=error, description=error_desc)
        raise AuthenticationError(f"Authentication failed: {error_desc}")

    def _acquire_token_with_retry(self) -> dict:
        """Run the client credentials grant with retry for transient network errors.

        Returns:
            Token result dict from MSAL (an error dict after exhausting retries)
        """
        last_error: Exception | None = None

        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return self.app.acquire_token_for_client(scopes=self.scopes)
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt < MSAL_MAX_RETRIES - 1:
                    delay = MSAL_RETRY_DELAYS[attempt]
                    jitter = delay * 0.2 * (2 * random.random() - 1)
                    actual_delay = delay + jitter
                    logger.warning(
                        "Token acquisition failed, retrying",
                        attempt=attempt + 1,
                        max_retries=MSAL_MAX_RETRIES,
                        delay=actual_delay,
                        error=str(e),
                    )
                    time.sleep(actual_delay)

        return {
            "error": "network_error",
            "error_description": f"Network error after {MSAL_MAX_RETRIES} retries: {last_error}",
        }
