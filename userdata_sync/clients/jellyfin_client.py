import logging
import re
import httpx
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from ..config import settings
from ..errors import RemoteError, RemoteUnavailableError
from ..models import PushResult, RemoteUserData, Server, User, UserPlaybackState

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """Jellyfin dates carry 7 fractional digits and a trailing Z."""
    if not value:
        return None
    try:
        value = value.replace("Z", "+00:00")
        value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except ValueError:
        logger.debug(f"Unparseable timestamp {value!r}")
        return None


def parse_user_data(item_id: str, data: Dict[str, Any]) -> RemoteUserData:
    version = data.get("Version")
    return RemoteUserData(
        item_id=data.get("ItemId") or item_id,
        played=bool(data.get("Played", False)),
        favorite=bool(data.get("IsFavorite", False)),
        playback_position_ticks=max(0, int(data.get("PlaybackPositionTicks") or 0)),
        updated_at=parse_timestamp(data.get("LastPlayedDate")),
        version=int(version) if version is not None else None,
    )


def remote_is_newer(state: UserPlaybackState, remote: RemoteUserData) -> bool:
    """Has the server moved past what this row last observed?"""
    if remote.version is not None and state.server_version is not None:
        return remote.version > state.server_version
    if remote.updated_at is not None:
        return state.server_updated_at is None or remote.updated_at > state.server_updated_at
    return False


class JellyfinClient:
    """User data endpoints of a Jellyfin compatible media server, for one user."""

    def __init__(self, server: Server, user: User,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.server = server
        self.user = user
        auth = (
            f'MediaBrowser Client="{settings.CLIENT_NAME}", Device="{settings.DEVICE_NAME}", '
            f'DeviceId="{settings.DEVICE_ID}", Version="{settings.CLIENT_VERSION}", '
            f'Token="{user.access_token or ""}"'
        )
        self.client = httpx.AsyncClient(
            base_url=server.address.rstrip('/'),
            headers={"Authorization": auth},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{self.server.name} unreachable: {e}") from e
        except httpx.RequestError as e:
            raise RemoteError(f"{method} {url} failed: {e}") from e

    def _json(self, resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteError(f"Unreadable response from {resp.request.url.path}: {e}", resp.status_code) from e
        if not isinstance(data, dict):
            raise RemoteError(f"Unexpected response from {resp.request.url.path}", resp.status_code)
        return data

    async def get_current_user_id(self) -> Optional[str]:
        resp = await self._request("GET", "/Users/Me")
        if resp.status_code in (401, 403):
            logger.warning(f"Access token for {self.user.name} on {self.server.name} was rejected")
            return None
        if resp.is_error:
            raise RemoteError(f"GET /Users/Me returned {resp.status_code}", resp.status_code)
        return self._json(resp).get("Id")

    async def fetch_user_data(self, item_id: str) -> RemoteUserData:
        resp = await self._request(
            "GET", f"/UserItems/{item_id}/UserData", params={"userId": self.user.id}
        )
        if resp.is_error:
            raise RemoteError(f"Fetching user data for {item_id} returned {resp.status_code}", resp.status_code)
        try:
            return parse_user_data(item_id, self._json(resp))
        except ValueError as e:
            raise RemoteError(f"Invalid user data for {item_id}: {e}", resp.status_code) from e

    async def push_user_data(self, state: UserPlaybackState, force: bool = False) -> PushResult:
        """
        Send the absolute played/favorite/position values for one item.

        Unless forced, the current server value is fetched first; if it differs
        from ours and is newer than what the row last saw, nothing is sent and a
        CONFLICT carrying the server snapshot is returned.
        """
        item_id = state.item_id

        if not force and settings.SYNC_FETCH_BEFORE_PUSH:
            try:
                remote = await self.fetch_user_data(item_id)
            except RemoteUnavailableError:
                raise
            except RemoteError as e:
                if e.status_code != 404:
                    return PushResult.error(str(e))
                remote = None

            if remote is not None:
                if state.same_fields(remote):
                    logger.debug(f"Item {item_id} already up to date on {self.server.name}")
                    return PushResult.ack(remote)
                if remote_is_newer(state, remote):
                    logger.info(f"Server has newer user data for {item_id}")
                    return PushResult.conflict(remote)

        if settings.DRY_RUN:
            logger.info(f"[DRY RUN] Would update {item_id} for {self.user.name}: "
                        f"played={state.played} favorite={state.favorite} ticks={state.playback_position_ticks}")
            return PushResult.ack()

        payload = {
            "Played": state.played,
            "IsFavorite": state.favorite,
            "PlaybackPositionTicks": state.playback_position_ticks,
        }
        resp = await self._request(
            "POST", f"/UserItems/{item_id}/UserData", params={"userId": self.user.id}, json=payload
        )

        if resp.status_code == 409:
            try:
                return PushResult.conflict(parse_user_data(item_id, self._json(resp)))
            except (RemoteError, ValueError):
                return PushResult.error(f"Unreadable conflict response for {item_id}")
        if resp.is_error:
            return PushResult.error(f"Update of {item_id} returned {resp.status_code}")

        logger.info(f"Updated {item_id} for {self.user.name} on {self.server.name}")
        try:
            return PushResult.ack(parse_user_data(item_id, self._json(resp)))
        except (RemoteError, ValueError):
            return PushResult.ack()
