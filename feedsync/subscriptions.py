"""
Live subscription lifecycle.

Exactly one stream is kept per (kind, video id). Opening a stream for a key
that already has one closes the old one first. Every stream is its own
identity token: deliveries from a stream that is no longer current for its key
(replaced, unsubscribed, failed) are discarded.
"""

from functools import partial
from typing import Callable, Dict, List, Optional, Tuple, Union

import structlog

from .errors import RemoteUnavailable
from .gateway import GatewayError, RecordList, RemoteGateway, SubscriptionHandle
from .models import Comment, Kind, Like, parse_records
from .store import EntityStore

logger = structlog.get_logger(__name__)

Key = Tuple[Kind, str]


class Stream:
    def __init__(self, kind: Kind, video_id: str):
        self.kind = kind
        self.video_id = video_id
        self.handle: Optional[SubscriptionHandle] = None
        self.active = True

    @property
    def key(self) -> Key:
        return (self.kind, self.video_id)

    def close(self) -> None:
        self.active = False
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


class SubscriptionManager:
    def __init__(
        self,
        gateway: RemoteGateway,
        store: EntityStore,
        on_failure: Optional[Callable[[Kind, str], None]] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.on_failure = on_failure
        self._streams: Dict[Key, Stream] = {}

    async def subscribe(self, kind: Union[Kind, str], video_id: str) -> None:
        """Open the live stream for a key, replacing any existing one"""
        kind = Kind(kind)
        key = (kind, video_id)
        previous = self._streams.pop(key, None)
        if previous is not None:
            previous.close()
            logger.debug("stream_replaced", kind=kind.value, video_id=video_id)

        stream = Stream(kind, video_id)
        self._streams[key] = stream
        opener = self.gateway.subscribe_likes if kind is Kind.LIKES else self.gateway.subscribe_comments
        try:
            handle = await opener(
                video_id,
                partial(self._deliver, stream),
                partial(self._fail, stream),
            )
        except GatewayError as exc:
            stream.active = False
            if self._streams.get(key) is stream:
                del self._streams[key]
            raise RemoteUnavailable(f"subscribe_{kind.value}", str(exc)) from exc

        if not self._is_current(stream):
            # replaced, torn down or failed during the handshake
            handle.cancel()
            return
        stream.handle = handle
        logger.debug("stream_opened", kind=kind.value, video_id=video_id)

    def unsubscribe(self, video_id: str) -> None:
        for key in [k for k in self._streams if k[1] == video_id]:
            self._streams.pop(key).close()

    def unsubscribe_all(self) -> None:
        streams = list(self._streams.values())
        self._streams.clear()
        for stream in streams:
            stream.close()

    def is_live(self, video_id: str) -> bool:
        return any(s.active for key, s in self._streams.items() if key[1] == video_id)

    def active_keys(self) -> List[Key]:
        return [key for key, stream in self._streams.items() if stream.active]

    def _is_current(self, stream: Stream) -> bool:
        return stream.active and self._streams.get(stream.key) is stream

    def _deliver(self, stream: Stream, records: RecordList) -> None:
        if not self._is_current(stream):
            logger.debug("stale_snapshot_discarded", kind=stream.kind.value, video_id=stream.video_id)
            return
        model = Like if stream.kind is Kind.LIKES else Comment
        snapshot = [
            rec for rec in parse_records(model, records)
            if rec.video_id == stream.video_id
        ]
        self.store.replace(stream.kind, stream.video_id, snapshot)

    def _fail(self, stream: Stream, error: Exception) -> None:
        if not self._is_current(stream):
            return
        # prior snapshot stays in place, no retry
        logger.error(
            "stream_failed",
            kind=stream.kind.value,
            video_id=stream.video_id,
            error=str(error),
        )
        stream.close()
        if self.on_failure is not None:
            self.on_failure(stream.kind, stream.video_id)
