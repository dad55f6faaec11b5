"""
Remote gateway: the narrow contract the feed engine consumes from the backend,
and an HTTP adapter for a REST document store.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

import httpx
import structlog

from .config import Settings, get_settings
from .errors import RemoteUnavailable
from .models import Comment, Like, Video

logger = structlog.get_logger(__name__)

RecordList = List[Dict[str, Any]]
SnapshotCallback = Callable[[RecordList], None]
ErrorCallback = Callable[[Exception], None]

T = TypeVar("T")


class GatewayError(Exception):
    """Transport or backend failure reported by a gateway"""


class SubscriptionHandle(Protocol):
    def cancel(self) -> None:
        ...


class RemoteGateway(Protocol):
    async def fetch_videos(self) -> RecordList:
        """All videos, newest first"""

    async def fetch_users(self, user_ids: Sequence[str]) -> RecordList:
        ...

    async def create_video(self, video: Video) -> None:
        ...

    async def delete_video(self, video_id: str) -> None:
        ...

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> None:
        ...

    async def create_like(self, like: Like) -> None:
        ...

    async def delete_likes_matching(self, video_id: str, user_id: str) -> None:
        ...

    async def create_comment(self, comment: Comment) -> None:
        ...

    async def delete_comment(self, comment_id: str) -> None:
        ...

    async def subscribe_likes(
        self, video_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> SubscriptionHandle:
        ...

    async def subscribe_comments(
        self, video_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> SubscriptionHandle:
        """Snapshots are ordered newest first"""


async def call_remote(operation: str, call: Awaitable[T], timeout: Optional[float] = None) -> T:
    """Await a gateway call, translating its failures into RemoteUnavailable"""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RemoteUnavailable(operation, "timed out") from exc
    except GatewayError as exc:
        raise RemoteUnavailable(operation, str(exc)) from exc


class PollingSubscription:
    """Live stream backed by a polling task; cancel() stops it"""

    def __init__(self, poller: Awaitable[None]):
        self.error: Optional[BaseException] = None
        self._task = asyncio.ensure_future(poller)
        self._task.add_done_callback(self._collect)

    def _collect(self, task: "asyncio.Future[None]") -> None:
        if task.cancelled():
            return
        self.error = task.exception()
        if self.error is not None:
            logger.error("poll_task_crashed", error=repr(self.error))

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def active(self) -> bool:
        return not self._task.done()


class HttpGateway:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        s = settings or get_settings()
        self.base = s.api_base_url.rstrip('/')
        self.token = s.api_token
        self.poll_interval = s.poll_interval
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        self._client = httpx.AsyncClient(
            base_url=self.base,
            headers=headers,
            timeout=s.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.base:
            raise GatewayError("FEED_API_BASE_URL is not configured")
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise GatewayError(f"{method} {path} returned invalid JSON") from exc

    async def _query(self, path: str, params: Dict[str, str]) -> RecordList:
        data = await self._request("GET", path, params=params)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return data.get("items", [])
        return []

    # ── Queries ──────────────────────────────────────────────────────────

    async def fetch_videos(self) -> RecordList:
        return await self._query("/videos", {"orderBy": "timestamp", "direction": "desc"})

    async def fetch_users(self, user_ids: Sequence[str]) -> RecordList:
        if not user_ids:
            return []
        return await self._query("/users", {"ids": ",".join(user_ids)})

    # ── Writes ───────────────────────────────────────────────────────────

    async def create_video(self, video: Video) -> None:
        await self._request("PUT", f"/videos/{video.id}", json=video.to_record())

    async def delete_video(self, video_id: str) -> None:
        await self._request("DELETE", f"/videos/{video_id}")

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> None:
        await self._request("PATCH", f"/users/{user_id}", json=changes)

    async def create_like(self, like: Like) -> None:
        # deterministic id, so PUT keeps one like per user per video
        await self._request("PUT", f"/likes/{like.id}", json=like.to_record())

    async def delete_likes_matching(self, video_id: str, user_id: str) -> None:
        await self._request("DELETE", "/likes", params={"videoId": video_id, "userId": user_id})

    async def create_comment(self, comment: Comment) -> None:
        await self._request("POST", "/comments", json=comment.to_record())

    async def delete_comment(self, comment_id: str) -> None:
        await self._request("DELETE", f"/comments/{comment_id}")

    # ── Live streams ─────────────────────────────────────────────────────

    async def subscribe_likes(
        self, video_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> PollingSubscription:
        return await self._subscribe("/likes", {"videoId": video_id}, on_snapshot, on_error)

    async def subscribe_comments(
        self, video_id: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback
    ) -> PollingSubscription:
        params = {"videoId": video_id, "orderBy": "timestamp", "direction": "desc"}
        return await self._subscribe("/comments", params, on_snapshot, on_error)

    async def _subscribe(
        self,
        path: str,
        params: Dict[str, str],
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> PollingSubscription:
        # the first query is the handshake, its failure goes to the caller
        records = await self._query(path, params)
        on_snapshot(records)
        return PollingSubscription(self._poll(path, params, records, on_snapshot, on_error))

    async def _poll(
        self,
        path: str,
        params: Dict[str, str],
        last: RecordList,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                records = await self._query(path, params)
            except GatewayError as exc:
                logger.warning("poll_failed", path=path, params=params, error=str(exc))
                on_error(exc)
                return
            if records != last:
                last = records
                on_snapshot(records)
