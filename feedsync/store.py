"""
In-memory entity store

Videos are held in a flat table. Likes and comments are held per video in two
layers: a confirmed layer that snapshot deliveries replace wholesale, and a
pending layer of optimistic inserts. Optimistic removals are tombstones over
the confirmed layer until the backend confirms them.
"""

from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set, Union

import structlog

from .models import Comment, Kind, Like, Video

logger = structlog.get_logger(__name__)

Social = Union[Like, Comment]
Listener = Callable[[Optional[str]], None]


class Layers:
    """Confirmed and optimistic state for one (kind, video) pair"""

    def __init__(self):
        self.confirmed: Dict[str, Social] = {}
        self.pending: Dict[str, Social] = {}
        self.tombstones: Set[str] = set()
        # pending records hidden by an optimistic removal, kept for rollback
        self.hidden: Dict[str, Social] = {}

    def visible(self) -> List[Social]:
        merged = {
            rid: rec for rid, rec in self.confirmed.items()
            if rid not in self.tombstones
        }
        merged.update(self.pending)
        return list(merged.values())

    def get(self, record_id: str) -> Optional[Social]:
        if record_id in self.pending:
            return self.pending[record_id]
        if record_id in self.tombstones:
            return None
        return self.confirmed.get(record_id)

    def replace(self, records: List[Social]) -> None:
        self.confirmed = {r.id: r for r in records}
        self.pending.clear()
        self.tombstones.clear()
        self.hidden.clear()

    def stage(self, record: Social) -> None:
        self.tombstones.discard(record.id)
        self.hidden.pop(record.id, None)
        self.pending[record.id] = record

    def unstage(self, record_id: str) -> bool:
        return self.pending.pop(record_id, None) is not None

    def confirm(self, record_id: str) -> bool:
        record = self.pending.pop(record_id, None)
        if record is None:
            return False
        self.confirmed[record_id] = record
        return True

    def hide(self, record_id: str) -> Optional[Social]:
        record = self.get(record_id)
        if record is None:
            return None
        if self.pending.pop(record_id, None) is not None:
            self.hidden[record_id] = record
        if record_id in self.confirmed:
            self.tombstones.add(record_id)
        return record

    def reveal(self, record_id: str) -> bool:
        restored = False
        if record_id in self.tombstones:
            self.tombstones.discard(record_id)
            restored = True
        record = self.hidden.pop(record_id, None)
        if record is not None:
            self.pending[record_id] = record
            restored = True
        return restored

    def drop(self, record_id: str) -> None:
        self.confirmed.pop(record_id, None)
        self.tombstones.discard(record_id)
        self.hidden.pop(record_id, None)


class EntityStore:
    """Typed in-memory tables for videos, likes and comments"""

    def __init__(self):
        self._videos: Dict[str, Video] = {}
        self._social: Dict[Kind, Dict[str, Layers]] = {
            Kind.LIKES: {},
            Kind.COMMENTS: {},
        }
        self._epochs: Dict[str, int] = defaultdict(int)
        self._listeners: List[Listener] = []

    # ── Change notification ──────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, video_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(video_id)
            except Exception:
                logger.exception("store_listener_failed", video_id=video_id)

    # ── Videos ───────────────────────────────────────────────────────────

    def videos(self) -> List[Video]:
        """All cached videos, newest first"""
        return sorted(self._videos.values(), key=lambda v: v.timestamp, reverse=True)

    def get_video(self, video_id: str) -> Optional[Video]:
        return self._videos.get(video_id)

    def has_video(self, video_id: str) -> bool:
        return video_id in self._videos

    def replace_videos(self, videos: List[Video]) -> None:
        self._videos = {v.id: v for v in videos}
        self._notify(None)

    def put_video(self, video: Video) -> None:
        self._videos[video.id] = video
        self._notify(None)

    def remove_video(self, video_id: str) -> Optional[Video]:
        video = self._videos.pop(video_id, None)
        if video is not None:
            self._notify(None)
        return video

    # ── Likes / comments ─────────────────────────────────────────────────

    def _layers(self, kind: Kind, video_id: str) -> Layers:
        table = self._social[kind]
        if video_id not in table:
            table[video_id] = Layers()
        return table[video_id]

    def visible(self, kind: Kind, video_id: str) -> List[Social]:
        layers = self._social[kind].get(video_id)
        return layers.visible() if layers else []

    def get(self, kind: Kind, video_id: str, record_id: str) -> Optional[Social]:
        layers = self._social[kind].get(video_id)
        return layers.get(record_id) if layers else None

    def contains(self, kind: Kind, video_id: str, record_id: str) -> bool:
        return self.get(kind, video_id, record_id) is not None

    def likes_of(self, video_id: str) -> List[Like]:
        return self.visible(Kind.LIKES, video_id)

    def comments_of(self, video_id: str) -> List[Comment]:
        """Visible comments, newest first"""
        comments = self.visible(Kind.COMMENTS, video_id)
        return sorted(comments, key=lambda c: c.timestamp, reverse=True)

    def replace(self, kind: Kind, video_id: str, records: List[Social]) -> None:
        """Apply a full snapshot: it becomes the confirmed layer, optimistic state is dropped"""
        self._layers(kind, video_id).replace(records)
        self._notify(video_id)

    def stage(self, kind: Kind, record: Social) -> None:
        self._layers(kind, record.video_id).stage(record)
        self._notify(record.video_id)

    def unstage(self, kind: Kind, video_id: str, record_id: str) -> bool:
        removed = self._layers(kind, video_id).unstage(record_id)
        if removed:
            self._notify(video_id)
        return removed

    def confirm(self, kind: Kind, video_id: str, record_id: str) -> bool:
        # no visible change, pending and confirmed both show the record
        return self._layers(kind, video_id).confirm(record_id)

    def hide(self, kind: Kind, video_id: str, record_id: str) -> Optional[Social]:
        record = self._layers(kind, video_id).hide(record_id)
        if record is not None:
            self._notify(video_id)
        return record

    def reveal(self, kind: Kind, video_id: str, record_id: str) -> bool:
        restored = self._layers(kind, video_id).reveal(record_id)
        if restored:
            self._notify(video_id)
        return restored

    def drop(self, kind: Kind, video_id: str, record_id: str) -> None:
        self._layers(kind, video_id).drop(record_id)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def epoch(self, video_id: str) -> int:
        return self._epochs[video_id]

    def forget(self, video_id: str) -> None:
        """Drop all social state for a video and invalidate in-flight completions"""
        self._epochs[video_id] += 1
        dropped = False
        for table in self._social.values():
            dropped = table.pop(video_id, None) is not None or dropped
        if dropped:
            self._notify(video_id)

