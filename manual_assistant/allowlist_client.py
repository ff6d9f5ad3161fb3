"""HTTP client for a remote allowlist service (GET/POST /api/users, POST /api/login)."""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from .exceptions import AccessDeniedError, AllowlistError, DuplicateUserError, ProtectedUserError
from .models import User, UserRole

logger = logging.getLogger("manual_assistant.allowlist")


class AllowlistClient:
    """Allowlist implementation that talks to the users API over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        admin_user_id: str = "admin",
    ) -> None:
        self._client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)
        self._admin_user_id = admin_user_id

    def close(self) -> None:
        self._client.close()

    def list_users(self) -> List[User]:
        response = self._request("GET", "/api/users")
        return [User.model_validate(item) for item in response.json()]

    def login(self, user_id: str, name: Optional[str] = None) -> User:
        """Purpose: Resolve an allowlisted user through POST /api/login.
        Inputs/Outputs: Input is the user id and optional name; returns the User.
        Failure Modes: AccessDeniedError on 403; AllowlistError on other failures.
        If Removed: Sessions backed by a remote allowlist cannot log in.
        """
        # Name is sent as-is; the service decides whether to store it.
        response = self._request("POST", "/api/login", json={"id": user_id, "name": name})
        return User.model_validate(response.json())

    def add_user(self, user_id: str, role: UserRole, name: Optional[str] = None) -> User:
        if not user_id.strip():
            raise ValueError("User ID cannot be empty.")
        response = self._request(
            "POST",
            "/api/users",
            json={"id": user_id, "role": UserRole(role).value, "name": name},
        )
        return User.model_validate(response.json())

    def remove_user(self, user_id: str) -> None:
        # Checked here so the request is never sent.
        if user_id.lower() == self._admin_user_id.lower():
            raise ProtectedUserError("Cannot remove the default admin user")
        self._request("DELETE", f"/api/users/{user_id}")

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("allowlist request failed method=%s path=%s: %s", method, path, exc)
            raise AllowlistError(f"Allowlist service unreachable: {exc}") from exc
        if response.is_success:
            return response
        message = _error_message(response)
        logger.info("allowlist %s %s -> %s", method, path, response.status_code)
        if response.status_code == 403:
            raise AccessDeniedError(message)
        if method == "POST" and path == "/api/users" and response.status_code == 500:
            raise DuplicateUserError(message)
        raise AllowlistError(message)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or f"Request failed: {response.reason_phrase}"
