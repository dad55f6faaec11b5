"""
Optimistic mutations.

Each action changes the entity store synchronously, then confirms against the
gateway. A failed or timed out write rolls its change back and re-raises
RemoteUnavailable. Completions are dropped when the video's social state was
forgotten (detached) while the write was in flight.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .config import Settings, get_settings
from .errors import AuthRequired, RemoteUnavailable, ValidationFailed
from .gateway import RemoteGateway, call_remote
from .models import Comment, Kind, Like, utcnow
from .store import EntityStore

logger = structlog.get_logger(__name__)


class MutationCoordinator:
    def __init__(self, store: EntityStore, gateway: RemoteGateway, settings: Optional[Settings] = None):
        self.store = store
        self.gateway = gateway
        self.write_timeout = (settings or get_settings()).write_timeout
        self._last_comment_at: Optional[datetime] = None

    @staticmethod
    def _require_user(acting_user_id: Optional[str], operation: str) -> None:
        if not acting_user_id:
            raise AuthRequired(operation)

    def _still_tracked(self, video_id: str, epoch: int, operation: str) -> bool:
        if self.store.epoch(video_id) != epoch:
            logger.info("stale_completion_discarded", video_id=video_id, op=operation)
            return False
        return True

    def _next_comment_time(self) -> datetime:
        now = utcnow()
        if self._last_comment_at is not None and now <= self._last_comment_at:
            now = self._last_comment_at + timedelta(microseconds=1)
        self._last_comment_at = now
        return now

    async def like_video(self, video_id: str, acting_user_id: str) -> Optional[Like]:
        """Like a video. Returns None when the viewer already likes it."""
        self._require_user(acting_user_id, "like a video")
        like_id = Like.make_id(acting_user_id, video_id)
        if self.store.contains(Kind.LIKES, video_id, like_id):
            return None

        like = Like(id=like_id, user_id=acting_user_id, video_id=video_id, timestamp=utcnow())
        epoch = self.store.epoch(video_id)
        self.store.stage(Kind.LIKES, like)
        try:
            await call_remote("create_like", self.gateway.create_like(like), self.write_timeout)
        except RemoteUnavailable as exc:
            if self._still_tracked(video_id, epoch, "create_like"):
                self.store.unstage(Kind.LIKES, video_id, like_id)
                logger.warning("like_rolled_back", video_id=video_id, error=exc.message)
            raise

        if self._still_tracked(video_id, epoch, "create_like"):
            self.store.confirm(Kind.LIKES, video_id, like_id)
        return like

    async def unlike_video(self, video_id: str, acting_user_id: str) -> None:
        self._require_user(acting_user_id, "unlike a video")
        epoch = self.store.epoch(video_id)
        hidden = [
            like.id for like in self.store.likes_of(video_id)
            if like.user_id == acting_user_id
        ]
        for like_id in hidden:
            self.store.hide(Kind.LIKES, video_id, like_id)

        try:
            await call_remote(
                "delete_likes",
                self.gateway.delete_likes_matching(video_id, acting_user_id),
                self.write_timeout,
            )
        except RemoteUnavailable as exc:
            if self._still_tracked(video_id, epoch, "delete_likes"):
                for like_id in hidden:
                    self.store.reveal(Kind.LIKES, video_id, like_id)
                logger.warning("unlike_rolled_back", video_id=video_id, error=exc.message)
            raise

        if self._still_tracked(video_id, epoch, "delete_likes"):
            for like_id in hidden:
                self.store.drop(Kind.LIKES, video_id, like_id)

    async def add_comment(
        self,
        video_id: str,
        text: str,
        acting_user_id: str,
        username: Optional[str] = None,
    ) -> Comment:
        self._require_user(acting_user_id, "comment")
        text = text or ""
        if not text.strip():
            raise ValidationFailed("Comment text cannot be empty", field="text")

        comment = Comment(
            id=uuid.uuid4().hex,
            user_id=acting_user_id,
            video_id=video_id,
            text=text,
            timestamp=self._next_comment_time(),
            username=username,
        )
        epoch = self.store.epoch(video_id)
        self.store.stage(Kind.COMMENTS, comment)
        try:
            await call_remote("create_comment", self.gateway.create_comment(comment), self.write_timeout)
        except RemoteUnavailable as exc:
            if self._still_tracked(video_id, epoch, "create_comment"):
                self.store.unstage(Kind.COMMENTS, video_id, comment.id)
                logger.warning("comment_rolled_back", video_id=video_id, comment_id=comment.id, error=exc.message)
            raise

        if self._still_tracked(video_id, epoch, "create_comment"):
            self.store.confirm(Kind.COMMENTS, video_id, comment.id)
        return comment

    async def delete_comment(self, comment_id: str, video_id: str, acting_user_id: str) -> None:
        self._require_user(acting_user_id, "delete a comment")
        existing = self.store.get(Kind.COMMENTS, video_id, comment_id)
        if existing is not None and existing.user_id != acting_user_id:
            raise ValidationFailed("Only the author can delete this comment", field="comment_id", value=comment_id)

        epoch = self.store.epoch(video_id)
        self.store.hide(Kind.COMMENTS, video_id, comment_id)
        try:
            await call_remote("delete_comment", self.gateway.delete_comment(comment_id), self.write_timeout)
        except RemoteUnavailable as exc:
            if self._still_tracked(video_id, epoch, "delete_comment"):
                self.store.reveal(Kind.COMMENTS, video_id, comment_id)
                logger.warning("comment_delete_rolled_back", video_id=video_id, comment_id=comment_id, error=exc.message)
            raise

        if self._still_tracked(video_id, epoch, "delete_comment"):
            self.store.drop(Kind.COMMENTS, video_id, comment_id)
