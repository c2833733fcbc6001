"""User directory clients for display-name lookup."""

import logging
from typing import Protocol

import httpx

from ..exceptions import DirectoryAPIError

logger = logging.getLogger(__name__)


class DirectoryClient(Protocol):
    """Anything that can turn a user id into a display name."""

    def get_display_name(self, user_id: int) -> str: ...


class HttpDirectoryClient:
    """Client for a user directory service exposing GET /users/{id}."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the directory client."""
        self.base_url = base_url
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def get_display_name(self, user_id: int) -> str:
        """
        Look up a user's display name.

        Raises:
            DirectoryAPIError: If the request fails or the user has no name
        """
        try:
            response = self.client.get(f"/users/{user_id}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DirectoryAPIError(f"Failed to look up user {user_id}: {e}") from e

        name = data.get("name") if isinstance(data, dict) else None
        if not name:
            raise DirectoryAPIError(f"Directory returned no name for user {user_id}")
        return str(name)


class StaticDirectory:
    """In-memory directory for tests and offline use."""

    def __init__(self, names: dict[int, str] | None = None):
        self.names = dict(names or {})

    def add(self, user_id: int, name: str):
        self.names[user_id] = name

    def get_display_name(self, user_id: int) -> str:
        try:
            return self.names[user_id]
        except KeyError:
            raise DirectoryAPIError(f"Unknown user {user_id}") from None


def fallback_name(user_id: int) -> str:
    return f"User {user_id}"


def resolve_display_name(directory: DirectoryClient | None, user_id: int) -> str:
    """
    Resolve a display name, never failing.

    Any directory error degrades to "User {id}" with a warning.
    """
    if directory is None:
        return fallback_name(user_id)
    try:
        return directory.get_display_name(user_id)
    except Exception as e:
        logger.warning(f"Falling back to default name for user {user_id}: {e}")
        return fallback_name(user_id)
