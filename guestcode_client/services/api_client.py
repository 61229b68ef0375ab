"""
REST client for the GuestCode backend.
Injects the bearer token on every request and applies the auth-expired policy:
one coalesced token refresh, then a single retry of the original request.
"""

import time
from typing import Any

import httpx

from guestcode_client.config import settings
from guestcode_client.errors import ApiError, AuthExpiredError
from guestcode_client.infrastructure.observability.logging import get_logger, log_request
from guestcode_client.services.token_service import TokenLifecycleManager

logger = get_logger(__name__)

# Endpoint paths (relative to API_BASE_URL)
LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh-token"
LOGOUT_PATH = "/auth/logout"
CURRENT_USER_PATH = "/auth/user"
PING_PATH = "/auth/ping"
CHATS_PATH = "/chats"
SEND_MESSAGE_PATH = "/messages/send"
NOTIFICATIONS_PATH = "/notifications"

AUTH_FAILURE_STATUS_CODES = {401}


class GuestCodeApiClient:
    """
    Thin async wrapper over httpx for the endpoints the session layer needs.

    Binds itself as the refresh and ping transport of the given token manager.
    """

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tokens = tokens
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.REQUEST_TIMEOUT,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        tokens.bind_transport(self.refresh_token, self.ping)

    async def __aenter__(self) -> "GuestCodeApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        headers = {}
        token = self.tokens.access_token if authenticated else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        start_time = time.perf_counter()
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.RequestError as exc:
            log_request(method, path, None, (time.perf_counter() - start_time) * 1000)
            raise ApiError(
                f"{method} {path} failed: {type(exc).__name__}: {exc}", status_code=None
            ) from exc

        log_request(method, path, response.status_code, (time.perf_counter() - start_time) * 1000)
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
        authenticated: bool = True,
        retry_on_auth_failure: bool = True,
    ) -> Any:
        response = await self._send(
            method, path, json=json, params=params, authenticated=authenticated
        )

        if (
            response.status_code in AUTH_FAILURE_STATUS_CODES
            and authenticated
            and retry_on_auth_failure
        ):
            logger.info("Request rejected as unauthenticated, refreshing token", path=path)
            try:
                await self.tokens.refresh()
            except Exception as e:
                raise AuthExpiredError(
                    f"{method} {path} unauthorized and token refresh failed: {e}",
                    response_data=_safe_json(response),
                ) from e

            response = await self._send(
                method, path, json=json, params=params, authenticated=authenticated
            )
            if response.status_code in AUTH_FAILURE_STATUS_CODES:
                raise AuthExpiredError(
                    f"{method} {path} still unauthorized after token refresh",
                    response_data=_safe_json(response),
                )

        return self._parse(method, path, response)

    @staticmethod
    def _parse(method: str, path: str, response: httpx.Response) -> Any:
        data = _safe_json(response)
        if response.is_error:
            message = data.get("message") if isinstance(data, dict) else None
            if response.status_code in AUTH_FAILURE_STATUS_CODES:
                raise AuthExpiredError(
                    f"{method} {path} unauthorized: {message or response.reason_phrase}",
                    response_data=data if isinstance(data, dict) else None,
                )
            raise ApiError(
                f"{method} {path} failed with {response.status_code}: "
                f"{message or response.reason_phrase}",
                status_code=response.status_code,
                response_data=data if isinstance(data, dict) else None,
                recoverable=response.status_code >= 500,
            )
        return data

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> dict:
        return await self._request(
            "POST", LOGIN_PATH, json={"email": email, "password": password}, authenticated=False
        )

    async def refresh_token(self, refresh_token: str | None = None) -> dict:
        """Exchange the refresh token; a 401 here means the session is over."""
        body = {"refreshToken": refresh_token} if refresh_token else {}
        return await self._request(
            "POST", REFRESH_PATH, json=body, authenticated=False, retry_on_auth_failure=False
        )

    async def logout(self) -> dict:
        return await self._request("POST", LOGOUT_PATH, json={}, retry_on_auth_failure=False)

    async def get_current_user(self) -> dict:
        return await self._request("GET", CURRENT_USER_PATH)

    async def ping(self) -> dict:
        # ping reports 401 to the token manager instead of refreshing here
        return await self._request(
            "GET",
            PING_PATH,
            params={"_t": int(time.time() * 1000)},
            retry_on_auth_failure=False,
        )

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def list_chats(self) -> list[dict]:
        return await self._request("GET", CHATS_PATH)

    async def create_chat(self, other_user_id: str) -> dict:
        return await self._request(
            "POST", CHATS_PATH, json={"type": "private", "participants": [other_user_id]}
        )

    async def send_message(self, chat_id: str, content: str, client_id: str | None = None) -> dict:
        body = {"chatId": chat_id, "content": content}
        if client_id:
            body["clientId"] = client_id
        return await self._request("POST", SEND_MESSAGE_PATH, json=body)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def list_notifications(self, user_id: str) -> list[dict]:
        return await self._request("GET", f"{NOTIFICATIONS_PATH}/user/{user_id}")

    async def mark_notification_read(self, notification_id: str) -> dict:
        return await self._request("PUT", f"{NOTIFICATIONS_PATH}/{notification_id}/read")

    async def delete_notification(self, notification_id: str) -> dict:
        return await self._request("DELETE", f"{NOTIFICATIONS_PATH}/{notification_id}")


def _safe_json(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"message": response.text[:200]}
