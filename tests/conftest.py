"""
Test configuration and fixtures
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest

from feedsync.config import Settings
from feedsync.feed import FeedCache
from feedsync.gateway import GatewayError
from feedsync.models import Comment, Kind, Like, Video

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def video_record(video_id: str, minutes: int, user_id: str = "author1") -> Dict[str, Any]:
    return {
        "id": video_id,
        "caption": f"caption {video_id}",
        "videoUrl": f"https://cdn.example.com/{video_id}.mp4",
        "userId": user_id,
        "timestamp": (BASE_TIME + timedelta(minutes=minutes)).timestamp(),
    }


def like_record(user_id: str, video_id: str) -> Dict[str, Any]:
    return {
        "id": Like.make_id(user_id, video_id),
        "userId": user_id,
        "videoId": video_id,
        "timestamp": BASE_TIME.timestamp(),
    }


def comment_record(comment_id: str, video_id: str, minutes: int, user_id: str = "u2") -> Dict[str, Any]:
    return {
        "id": comment_id,
        "userId": user_id,
        "videoId": video_id,
        "text": f"comment {comment_id}",
        "timestamp": (BASE_TIME + timedelta(minutes=minutes)).timestamp(),
    }


class FakeHandle:
    def __init__(self, kind: Kind, video_id: str, on_snapshot, on_error):
        self.kind = kind
        self.video_id = video_id
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeGateway:
    """In-memory backend that records calls and can fail or hold operations"""

    def __init__(self):
        self.videos: List[Dict[str, Any]] = []
        self.users: List[Dict[str, Any]] = []
        self.likes: Dict[str, Dict[str, Any]] = {}
        self.comments: Dict[str, Dict[str, Any]] = {}
        self.handles: List[FakeHandle] = []
        self.calls: List[str] = []
        self.failing: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}

    def hold(self, operation: str) -> asyncio.Event:
        """Block an operation until the returned event is set"""
        gate = asyncio.Event()
        self.gates[operation] = gate
        return gate

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        if operation in self.failing:
            raise GatewayError(f"{operation} failed")

    async def fetch_videos(self):
        await self._enter("fetch_videos")
        return sorted(self.videos, key=lambda r: r["timestamp"], reverse=True)

    async def fetch_users(self, user_ids):
        await self._enter("fetch_users")
        return [u for u in self.users if u["id"] in user_ids]

    async def create_video(self, video: Video):
        await self._enter("create_video")
        self.videos.append(video.to_record())

    async def delete_video(self, video_id: str):
        await self._enter("delete_video")
        self.videos = [v for v in self.videos if v["id"] != video_id]

    async def update_user(self, user_id: str, changes: Dict[str, Any]):
        await self._enter("update_user")
        for user in self.users:
            if user["id"] == user_id:
                user.update(changes)

    async def create_like(self, like: Like):
        await self._enter("create_like")
        self.likes[like.id] = like.to_record()

    async def delete_likes_matching(self, video_id: str, user_id: str):
        await self._enter("delete_likes")
        for like_id, rec in list(self.likes.items()):
            if rec["videoId"] == video_id and rec["userId"] == user_id:
                del self.likes[like_id]

    async def create_comment(self, comment: Comment):
        await self._enter("create_comment")
        self.comments[comment.id] = comment.to_record()

    async def delete_comment(self, comment_id: str):
        await self._enter("delete_comment")
        self.comments.pop(comment_id, None)

    def server_records(self, kind: Kind, video_id: str) -> List[Dict[str, Any]]:
        table = self.likes if kind is Kind.LIKES else self.comments
        records = [r for r in table.values() if r["videoId"] == video_id]
        return sorted(records, key=lambda r: r["timestamp"], reverse=True)

    async def _subscribe(self, kind: Kind, video_id: str, on_snapshot, on_error):
        await self._enter(f"subscribe_{kind.value}")
        handle = FakeHandle(kind, video_id, on_snapshot, on_error)
        self.handles.append(handle)
        on_snapshot(self.server_records(kind, video_id))
        return handle

    async def subscribe_likes(self, video_id, on_snapshot, on_error):
        return await self._subscribe(Kind.LIKES, video_id, on_snapshot, on_error)

    async def subscribe_comments(self, video_id, on_snapshot, on_error):
        return await self._subscribe(Kind.COMMENTS, video_id, on_snapshot, on_error)

    def open_handles(self, kind: Optional[Kind] = None, video_id: Optional[str] = None) -> List[FakeHandle]:
        return [
            h for h in self.handles
            if not h.cancelled
            and (kind is None or h.kind is kind)
            and (video_id is None or h.video_id == video_id)
        ]

    def push(self, kind: Kind, video_id: str, records: List[Dict[str, Any]], include_cancelled: bool = False) -> int:
        """Deliver a snapshot; returns how many handles it was sent to"""
        targets = [
            h for h in self.handles
            if h.kind is kind and h.video_id == video_id and (include_cancelled or not h.cancelled)
        ]
        for handle in targets:
            handle.on_snapshot(records)
        return len(targets)

    def break_stream(self, kind: Kind, video_id: str) -> None:
        for handle in self.open_handles(kind, video_id):
            handle.on_error(GatewayError("stream dropped"))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url="https://backend.test/api",
        api_token="token",
        request_timeout=1.0,
        poll_interval=0.01,
        write_timeout=0.2,
        max_live_videos=3,
        log_level="DEBUG",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.videos = [video_record(f"v{i}", minutes=i) for i in range(1, 6)]
    gw.users = [{"id": "author1", "username": "author", "email": "a@example.com", "dateJoined": BASE_TIME.timestamp()}]
    return gw


@pytest.fixture
def feed(gateway: FakeGateway, settings: Settings) -> FeedCache:
    return FeedCache(gateway, settings)


@pytest.fixture
async def loaded_feed(feed: FeedCache) -> FeedCache:
    await feed.load_feed()
    return feed
