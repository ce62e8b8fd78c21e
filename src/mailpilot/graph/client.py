"""Microsoft Graph API client with retry logic and typed errors.

This module provides the HTTP client that every mailbox operation goes
through:
- Automatic retry with exponential backoff for 5xx, timeouts and 429
- Typed errors: MessageNotFoundError (404) and RateLimitExceeded (429 after
  retries) are distinguished from every other failure, because the staging
  sweep treats the three very differently
- App-only addressing: all mailbox endpoints live under /users/{mailbox}

Usage:
    from mailpilot.auth.msal_auth import GraphAuth
    from mailpilot.graph.client import GraphClient

    auth = GraphAuth.from_config(config.auth)
    client = GraphClient(auth)

    folder = client.get(client.mailbox_path("ops@contoso.com", "/mailFolders/inbox"))
"""

import random
import time
from typing import Any
from urllib.parse import quote

import requests

from mailpilot.auth.msal_auth import GraphAuth
from mailpilot.core.errors import (
    AuthenticationError,
    GraphAPIError,
    MessageNotFoundError,
    RateLimitExceeded,
)
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

# Microsoft Graph API base URL
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]  # Exponential backoff delays in seconds


def _parse_retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GraphClient:
    """Microsoft Graph API client with retry logic and error handling.

    The client is synchronous (requests); async callers run it in a worker
    thread. One instance can serve every mailbox the app has access to.

    Attributes:
        auth: GraphAuth instance for token management
        base_url: Microsoft Graph API base URL
        max_retries: Maximum number of retry attempts
        retry_delays: List of delay times (seconds) for each retry
    """

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS

        # Connection pooling across worker threads
        self.session = requests.Session()

        logger.debug(
            "GraphClient initialized",
            base_url=self.base_url,
            max_retries=self.max_retries,
        )

    @staticmethod
    def mailbox_path(mailbox_email: str, suffix: str) -> str:
        """Build an endpoint under a specific mailbox (``/users/{email}{suffix}``)."""
        if not suffix.startswith("/"):
            suffix = "/" + suffix
        return f"/users/{quote(mailbox_email, safe='@')}{suffix}"

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with a current access token.

        Raises:
            AuthenticationError: If token cannot be acquired
        """
        try:
            token = self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            logger.error("Failed to get access token", error=str(e))
            raise AuthenticationError(
                f"Cannot authenticate with Microsoft Graph: {e}. "
                "Run 'mailpilot validate-config' to check your auth settings."
            ) from e

        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            # Message IDs survive folder moves, which staging and undo depend on
            "Prefer": 'IdType="ImmutableId"',
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # Already a full URL (e.g., @odata.nextLink)
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _handle_error_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> None:
        """Translate an error response into the matching exception.

        Raises:
            MessageNotFoundError: For 404
            RateLimitExceeded: For 429
            GraphAPIError: For everything else
        """
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        if response.status_code == 404:
            # Routine for automation (message deleted by the user); not an error log
            logger.info(
                "Graph API resource not found",
                method=method,
                endpoint=endpoint,
                error_code=error_code,
            )
            raise MessageNotFoundError(
                f"Resource not found (404) at '{endpoint}': {error_message}",
                error_code=error_code,
            )

        if response.status_code == 429:
            retry_after = _parse_retry_after(response)
            logger.warning(
                "Graph API rate limit persisted after retries",
                method=method,
                endpoint=endpoint,
                retry_after=retry_after,
            )
            raise RateLimitExceeded(
                f"Rate limit exceeded (429) for '{endpoint}'. "
                f"Retry after: {retry_after if retry_after is not None else 'unknown'} seconds.",
                retry_after=retry_after,
            )

        logger.error(
            "Graph API error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise GraphAPIError(
                f"Authentication failed (401): {error_message}. "
                "Check the client secret and that admin consent was granted.",
                status_code=401,
                error_code=error_code,
            )
        if response.status_code == 403:
            raise GraphAPIError(
                f"Permission denied (403): {error_message}. "
                "The app needs the Mail.ReadWrite application permission, "
                "and an application access policy may restrict which mailboxes it can reach.",
                status_code=403,
                error_code=error_code,
            )
        raise GraphAPIError(
            f"Graph API error ({response.status_code}): {error_message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _get_retry_delay(self, response: requests.Response, attempt: int) -> float:
        """Delay before the next attempt, with ±20% jitter.

        For 429 the Retry-After header wins over the backoff schedule.
        """
        base_delay = None
        if response.status_code == 429:
            base_delay = _parse_retry_after(response)
        if base_delay is None:
            base_delay = self._backoff(attempt)

        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def _backoff(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    def _transport_error(
        self, error: requests.exceptions.RequestException, endpoint: str, timeout: float
    ) -> GraphAPIError:
        if isinstance(error, requests.exceptions.Timeout):
            message = (
                f"Request to {endpoint} timed out after {timeout}s "
                f"and {self.max_retries} retries."
            )
        else:
            message = f"Connection to Microsoft Graph failed: {error}. Check network connectivity."
        logger.error("graph_transport_failed", endpoint=endpoint, error_type=type(error).__name__)
        return GraphAPIError(message, status_code=None)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Graph API with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API endpoint path or absolute URL
            params: URL query parameters
            json: JSON body for POST/PATCH requests
            timeout: Request timeout in seconds

        Returns:
            Parsed JSON response as a dictionary ({} for 204)

        Raises:
            MessageNotFoundError: The resource does not exist (404)
            RateLimitExceeded: Still throttled after all retries (429)
            GraphAPIError: Any other API or transport failure
            AuthenticationError: When no token can be acquired
        """
        url = self._make_url(endpoint)
        last_response = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(
                    "Graph API request",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                )

                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                    timeout=timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204 or not response.content:
                        return {}
                    return response.json()

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "Retrying Graph API request",
                        method=method,
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, method, endpoint)

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt >= self.max_retries:
                    raise self._transport_error(e, endpoint, timeout) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "graph_transport_retry",
                    method=method,
                    endpoint=endpoint,
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                    delay=delay,
                )
                time.sleep(delay)

        if last_response is not None:
            self._handle_error_response(last_response, method, endpoint)

        raise GraphAPIError(
            f"Request to {endpoint} failed after {self.max_retries} retries",
            status_code=None,
        )

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)

    def patch(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json, timeout=timeout)
