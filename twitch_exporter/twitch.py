from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from twitch_exporter.collector.runtime_metrics import RuntimeMetrics

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
HELIX_BASE = "https://api.twitch.tv/helix"
MAX_LOGINS_PER_REQUEST = 100
APP_TOKEN_MAX_AGE = timedelta(hours=24)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OAuthToken:
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass(slots=True)
class CreateSubscriptionResult:
    accepted: bool
    status_code: int
    error_message: str = ""
    subscription: dict[str, Any] = field(default_factory=dict)


class TwitchApiError(RuntimeError):
    pass


class TwitchClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        runtime_metrics: RuntimeMetrics | None = None,
        timeout: float = 30,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.runtime_metrics = runtime_metrics
        self._http = httpx.AsyncClient(
            timeout=timeout,
            event_hooks={"response": [self._observe_response]},
        )
        self._app_token: str | None = None
        self._app_token_expiry: datetime | None = None

    async def close(self) -> None:
        await self._http.aclose()

    async def _observe_response(self, response: httpx.Response) -> None:
        if self.runtime_metrics is None:
            return
        url = response.request.url
        api = "oauth" if url.host == "id.twitch.tv" else "helix"
        self.runtime_metrics.observe_api_response(
            api,
            endpoint_label(url.path),
            response.status_code,
            response.headers,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TwitchApiError(f"{method} {url} failed: {exc}") from exc
        if resp.status_code == httpx.codes.UNAUTHORIZED and url.startswith(HELIX_BASE):
            # Revoked or expired early; fetch a fresh app token on the next call.
            self.invalidate_app_token()
        return resp

    def invalidate_app_token(self) -> None:
        self._app_token = None
        self._app_token_expiry = None

    async def _helix_headers(self) -> dict[str, str]:
        token = await self.app_access_token()
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    async def app_access_token(self) -> str:
        if self._app_token and self._app_token_expiry and datetime.now(UTC) < self._app_token_expiry:
            return self._app_token

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
        }
        resp = await self._request("POST", TOKEN_URL, params=payload)
        if resp.status_code >= 300:
            raise TwitchApiError(f"Failed to get app token: status {resp.status_code} {resp.text}")
        data = resp.json()
        self._app_token = data["access_token"]
        lifetime = min(timedelta(seconds=int(data["expires_in"]) - 60), APP_TOKEN_MAX_AGE)
        self._app_token_expiry = datetime.now(UTC) + lifetime
        logger.info("Obtained Twitch app access token")
        return self._app_token

    async def refresh_token(self, refresh_token: str) -> OAuthToken:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        resp = await self._request("POST", TOKEN_URL, params=payload)
        if resp.status_code >= 300:
            raise TwitchApiError(f"Failed to refresh token: status {resp.status_code} {resp.text}")
        data = resp.json()
        return OAuthToken(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", refresh_token),
            expires_at=datetime.now(UTC) + timedelta(seconds=int(data.get("expires_in", 0))),
        )

    async def validate_user_token(self, access_token: str) -> dict[str, Any]:
        # The validate endpoint expects "OAuth", not "Bearer".
        resp = await self._request(
            "GET",
            VALIDATE_URL,
            headers={"Authorization": f"OAuth {access_token}"},
        )
        if resp.status_code >= 300:
            raise TwitchApiError(f"Failed to validate token: status {resp.status_code}")
        return resp.json()

    async def get_users(self, logins: list[str]) -> list[dict[str, Any]]:
        headers = await self._helix_headers()
        params = [("login", login) for login in logins[:MAX_LOGINS_PER_REQUEST]]
        resp = await self._request("GET", f"{HELIX_BASE}/users", headers=headers, params=params)
        if resp.status_code >= 300:
            raise TwitchApiError(f"Failed users lookup: status {resp.status_code} {resp.text}")
        return resp.json().get("data", [])

    async def get_streams(self, logins: list[str]) -> list[dict[str, Any]]:
        """Live streams for up to 100 logins. Offline channels are simply absent."""
        if len(logins) > MAX_LOGINS_PER_REQUEST:
            raise ValueError(f"get_streams accepts at most {MAX_LOGINS_PER_REQUEST} logins")
        headers = await self._helix_headers()
        params: list[tuple[str, str | int]] = [("user_login", login) for login in logins]
        params.append(("first", max(1, len(logins))))
        resp = await self._request("GET", f"{HELIX_BASE}/streams", headers=headers, params=params)
        if resp.status_code >= 300:
            raise TwitchApiError(f"Failed streams lookup: status {resp.status_code} {resp.text}")
        return resp.json().get("data", [])

    async def list_eventsub_subscriptions(
        self,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        # Helix accepts a single filter per request; user_id narrows the most.
        base_params: dict[str, str] = {}
        if user_id:
            base_params["user_id"] = user_id
        elif event_type:
            base_params["type"] = event_type
        headers = await self._helix_headers()
        cursor = None
        out: list[dict[str, Any]] = []
        while True:
            params = dict(base_params)
            if cursor:
                params["after"] = cursor
            resp = await self._request(
                "GET",
                f"{HELIX_BASE}/eventsub/subscriptions",
                headers=headers,
                params=params or None,
            )
            if resp.status_code >= 300:
                raise TwitchApiError(f"Failed listing subscriptions: status {resp.status_code} {resp.text}")
            payload = resp.json()
            out.extend(payload.get("data", []))
            cursor = payload.get("pagination", {}).get("cursor")
            if not cursor:
                break
        return out

    async def create_eventsub_subscription(
        self,
        event_type: str,
        version: str,
        condition: dict[str, str],
        transport: dict[str, str],
    ) -> CreateSubscriptionResult:
        headers = await self._helix_headers()
        body = {
            "type": event_type,
            "version": version,
            "condition": condition,
            "transport": transport,
        }
        resp = await self._request(
            "POST",
            f"{HELIX_BASE}/eventsub/subscriptions",
            headers=headers,
            json=body,
        )
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code != httpx.codes.ACCEPTED:
            return CreateSubscriptionResult(
                accepted=False,
                status_code=resp.status_code,
                error_message=str(payload.get("message") or resp.text),
            )
        data = payload.get("data", [])
        return CreateSubscriptionResult(
            accepted=True,
            status_code=resp.status_code,
            subscription=data[0] if data else {},
        )


def endpoint_label(path: str) -> str:
    # Helix paths are stable and carry ids in the query string, so the path
    # alone is a bounded label.
    path = path.strip().removeprefix("/")
    return path or "/"
