"""Account provisioning through the mail server's HTTP management API.

Endpoints of the WebAdmin-style user API:
- GET    /users              -> [{"username": "..."}]
- PUT    /users/{username}   {"password": "..."}  create or change password
- DELETE /users/{username}
"""

from __future__ import annotations

from urllib.parse import quote

import httpx

from ..exceptions import PostageError
from ..logging_config import get_logger
from ..models import UserGroup

logger = get_logger("clients.webadmin")

DEFAULT_TIMEOUT_SEC = 30.0


class WebAdminProvisioner:
    """Creates (or resets) the internal test accounts before a run."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WebAdminProvisioner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            r = self._client.request(method, path, **kwargs)
            r.raise_for_status()
            return r
        except httpx.HTTPStatusError as e:
            raise PostageError(
                f"management API rejected {method} {path}: HTTP {e.response.status_code}",
                context={"url": self.base_url},
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise PostageError(
                f"management API request {method} {path} failed: {e}",
                context={"url": self.base_url},
                original_error=e,
            ) from e

    def list_users(self) -> set[str]:
        data = self._request("GET", "/users").json()
        users: set[str] = set()
        for entry in data or []:
            if isinstance(entry, dict) and entry.get("username"):
                users.add(str(entry["username"]))
            elif isinstance(entry, str):
                users.add(entry)
        return users

    def add_user(self, username: str, password: str) -> None:
        self._request("PUT", f"/users/{quote(username, safe='@')}", json={"password": password})

    def delete_user(self, username: str) -> None:
        self._request("DELETE", f"/users/{quote(username, safe='@')}")

    def provision(self, group: UserGroup) -> list[str]:
        """Make sure prefix1..prefixN exist with the group password. Returns the usernames."""
        existing = self.list_users()
        provisioned: list[str] = []
        for username in group.usernames():
            if username in existing:
                if group.reuse_existing:
                    logger.info("user already exists: %s", username)
                else:
                    self.delete_user(username)
                    logger.info("user deleted and re-created: %s", username)
                # PUT on an existing user only sets the password
                self.add_user(username, group.password)
            else:
                self.add_user(username, group.password)
                logger.info("user created: %s", username)
            provisioned.append(username)
        return provisioned
