"""
Feed cache facade.

The one object screens bind to: loads the feed, exposes derived reads over the
entity store, routes user actions through the mutation coordinator and
attaches or detaches live updates as videos appear and disappear.

Per-video state as seen from here:

    UNLOADED -> LOADED -> LIVE -> DETACHED -> LIVE ...

A DETACHED video keeps its record in the feed but its likes and comments are
dropped until it goes live again. At most `max_live_videos` videos are live;
attaching one more detaches the least recently attached.
"""

from collections import OrderedDict
from enum import Enum
from typing import List, Optional, Set

import structlog

from .config import Settings, get_settings
from .errors import AuthRequired, NotFound, RemoteUnavailable, ValidationFailed
from .gateway import RemoteGateway, call_remote
from .models import Comment, Kind, Like, User, Video, parse_records
from .mutations import MutationCoordinator
from .store import EntityStore, Listener
from .subscriptions import SubscriptionManager

logger = structlog.get_logger(__name__)


class VideoState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    LIVE = "live"
    DETACHED = "detached"


class FeedCache:
    def __init__(
        self,
        gateway: RemoteGateway,
        settings: Optional[Settings] = None,
        store: Optional[EntityStore] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.store = store or EntityStore()
        self.subscriptions = SubscriptionManager(gateway, self.store, on_failure=self._stream_failed)
        self.mutations = MutationCoordinator(self.store, gateway, self.settings)
        # live videos in attach order, oldest first, mapped to their attach token
        self._live: "OrderedDict[str, object]" = OrderedDict()
        self._detached: Set[str] = set()

    # ── Loading ──────────────────────────────────────────────────────────

    async def load_feed(self) -> List[Video]:
        """
        Fetch the full video list, newest first, and replace the cached feed.

        On failure the previously cached feed is left untouched and
        RemoteUnavailable is raised.
        """
        try:
            records = await call_remote("fetch_videos", self.gateway.fetch_videos(), self.settings.request_timeout)
        except RemoteUnavailable:
            logger.warning("feed_load_failed", cached=len(self.store.videos()))
            raise

        videos = await self._attach_authors(parse_records(Video, records))
        ids = {v.id for v in videos}
        for video in self.store.videos():
            if video.id not in ids:
                self.detach_live_updates(video.id)
        self._detached &= ids
        self.store.replace_videos(videos)
        logger.info("feed_loaded", count=len(videos))
        return self.store.videos()

    async def _attach_authors(self, videos: List[Video]) -> List[Video]:
        author_ids = sorted({v.user_id for v in videos})
        if not author_ids:
            return videos
        try:
            records = await call_remote(
                "fetch_users", self.gateway.fetch_users(author_ids), self.settings.request_timeout
            )
        except RemoteUnavailable as exc:
            # author snapshots are decoration, the feed is still usable
            logger.warning("author_snapshots_unavailable", error=exc.message)
            return videos
        users = {u.id: u for u in parse_records(User, records)}
        return [v.with_author(users.get(v.user_id)) for v in videos]

    # ── Derived reads ────────────────────────────────────────────────────

    def videos(self) -> List[Video]:
        return self.store.videos()

    def video(self, video_id: str) -> Optional[Video]:
        return self.store.get_video(video_id)

    def likes_of(self, video_id: str) -> List[Like]:
        return self.store.likes_of(video_id)

    def like_count_of(self, video_id: str) -> int:
        return len(self.store.likes_of(video_id))

    def is_liked_by(self, video_id: str, user_id: str) -> bool:
        return any(like.user_id == user_id for like in self.store.likes_of(video_id))

    def comments_of(self, video_id: str) -> List[Comment]:
        return self.store.comments_of(video_id)

    def comment_count_of(self, video_id: str) -> int:
        return len(self.store.visible(Kind.COMMENTS, video_id))

    def liked_videos(self, user_id: str) -> List[Video]:
        """Cached videos the user currently likes, newest first"""
        return [v for v in self.store.videos() if self.is_liked_by(v.id, user_id)]

    def state_of(self, video_id: str) -> VideoState:
        if self.subscriptions.is_live(video_id):
            return VideoState.LIVE
        if not self.store.has_video(video_id):
            return VideoState.UNLOADED
        if video_id in self._detached:
            return VideoState.DETACHED
        return VideoState.LOADED

    # ── Live updates ─────────────────────────────────────────────────────

    async def attach_live_updates(self, video_id: str) -> None:
        if not self.store.has_video(video_id):
            raise ValidationFailed(f"Video {video_id} is not loaded", field="video_id", value=video_id)

        if video_id not in self._live:
            limit = self.settings.max_live_videos
            while limit > 0 and len(self._live) >= limit:
                oldest = next(iter(self._live))
                logger.info("live_updates_evicted", video_id=oldest)
                self.detach_live_updates(oldest)
        token = object()
        self._live[video_id] = token
        self._live.move_to_end(video_id)
        self._detached.discard(video_id)

        for kind in (Kind.LIKES, Kind.COMMENTS):
            try:
                await self.subscriptions.subscribe(kind, video_id)
            except RemoteUnavailable:
                if self._live.get(video_id) is token:
                    self.subscriptions.unsubscribe(video_id)
                    self._live.pop(video_id, None)
                raise
            if self._live.get(video_id) is not token:
                # detached or re-attached while the handshake was pending
                if video_id not in self._live:
                    self.subscriptions.unsubscribe(video_id)
                logger.info("attach_superseded", video_id=video_id)
                return

    def _stream_failed(self, kind: Kind, video_id: str) -> None:
        # a video whose streams have all failed no longer holds a live slot
        if video_id in self._live and not self.subscriptions.is_live(video_id):
            self._live.pop(video_id, None)
            logger.warning("live_updates_lost", video_id=video_id, kind=kind.value)

    def detach_live_updates(self, video_id: str) -> None:
        self.subscriptions.unsubscribe(video_id)
        self._live.pop(video_id, None)
        if self.store.has_video(video_id):
            self._detached.add(video_id)
        self.store.forget(video_id)

    def live_videos(self) -> List[str]:
        return list(self._live)

    # ── User actions ─────────────────────────────────────────────────────

    async def like_video(self, video_id: str, acting_user_id: str) -> Optional[Like]:
        return await self.mutations.like_video(video_id, acting_user_id)

    async def unlike_video(self, video_id: str, acting_user_id: str) -> None:
        await self.mutations.unlike_video(video_id, acting_user_id)

    async def add_comment(
        self,
        video_id: str,
        text: str,
        acting_user_id: str,
        username: Optional[str] = None,
    ) -> Comment:
        return await self.mutations.add_comment(video_id, text, acting_user_id, username)

    async def delete_comment(self, comment_id: str, video_id: str, acting_user_id: str) -> None:
        await self.mutations.delete_comment(comment_id, video_id, acting_user_id)

    async def publish_video(self, video: Video, acting_user_id: str) -> Video:
        """Record a video whose media upload has been confirmed"""
        if not acting_user_id:
            raise AuthRequired("publish a video")
        if video.user_id != acting_user_id:
            raise ValidationFailed("Videos can only be published by their author", field="user_id", value=video.user_id)
        await call_remote("create_video", self.gateway.create_video(video), self.settings.write_timeout)
        self.store.put_video(video)
        return video

    async def delete_video(self, video_id: str, acting_user_id: str) -> None:
        if not acting_user_id:
            raise AuthRequired("delete a video")
        video = self.store.get_video(video_id)
        if video is None:
            raise NotFound("video", video_id)
        if video.user_id != acting_user_id:
            raise ValidationFailed("Only the author can delete this video", field="video_id", value=video_id)
        await call_remote("delete_video", self.gateway.delete_video(video_id), self.settings.write_timeout)
        self.detach_live_updates(video_id)
        self._detached.discard(video_id)
        self.store.remove_video(video_id)

    async def update_profile(self, user_id: str, username: str, acting_user_id: str) -> Optional[User]:
        """
        Change a user's username, then refresh the author snapshot on that
        user's cached videos. Returns the refreshed snapshot, or None when no
        cached video carries one.
        """
        if not acting_user_id:
            raise AuthRequired("update a profile")
        if user_id != acting_user_id:
            raise ValidationFailed("Users can only update their own profile", field="user_id", value=user_id)
        if not (username or "").strip():
            raise ValidationFailed("Please enter a valid username", field="username")

        await call_remote(
            "update_user", self.gateway.update_user(user_id, {"username": username}), self.settings.write_timeout
        )

        updated: Optional[User] = None
        videos = []
        for video in self.store.videos():
            if video.user_id == user_id and video.user is not None:
                updated = video.user.model_copy(update={"username": username})
                video = video.with_author(updated)
            videos.append(video)
        if updated is not None:
            self.store.replace_videos(videos)
        logger.info("profile_updated", user_id=user_id)
        return updated

    # ── Observers / teardown ─────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self.store.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.store.remove_listener(listener)

    def close(self) -> None:
        self.subscriptions.unsubscribe_all()
        self._live.clear()
