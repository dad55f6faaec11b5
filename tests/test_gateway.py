import asyncio
import json

import httpx
import pytest

from feedsync.config import Settings
from feedsync.errors import RemoteUnavailable
from feedsync.gateway import GatewayError, HttpGateway, call_remote
from feedsync.models import Comment, Like

from .conftest import BASE_TIME, comment_record, like_record, video_record


def make_gateway(settings: Settings, handler) -> HttpGateway:
    return HttpGateway(settings, transport=httpx.MockTransport(handler))


class TestHttpGateway:
    async def test_fetch_videos_sends_order_and_token(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"items": [video_record("v1", minutes=0)]})

        gateway = make_gateway(settings, handler)
        records = await gateway.fetch_videos()
        await gateway.aclose()

        assert records[0]["id"] == "v1"
        assert seen["path"] == "/api/videos"
        assert seen["params"] == {"orderBy": "timestamp", "direction": "desc"}
        assert seen["auth"] == "Bearer token"

    async def test_http_error_becomes_gateway_error(self, settings):
        gateway = make_gateway(settings, lambda request: httpx.Response(503))
        with pytest.raises(GatewayError):
            await gateway.fetch_videos()
        await gateway.aclose()

    async def test_missing_base_url_is_a_gateway_error(self, settings):
        gateway = HttpGateway(settings.model_copy(update={"api_base_url": ""}))
        with pytest.raises(GatewayError):
            await gateway.fetch_videos()
        await gateway.aclose()

    async def test_writes_use_wire_records(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        gateway = make_gateway(settings, handler)
        like = Like.model_validate(like_record("u1", "v1"))
        await gateway.create_like(like)
        await gateway.delete_likes_matching("v1", "u1")
        await gateway.create_comment(Comment.model_validate(comment_record("c1", "v1", 1)))
        await gateway.delete_comment("c1")
        await gateway.aclose()

        assert [(r.method, r.url.path) for r in requests] == [
            ("PUT", "/api/likes/u1_v1"),
            ("DELETE", "/api/likes"),
            ("POST", "/api/comments"),
            ("DELETE", "/api/comments/c1"),
        ]
        assert json.loads(requests[0].content) == like_record("u1", "v1")
        assert dict(requests[1].url.params) == {"videoId": "v1", "userId": "u1"}

    async def test_subscription_delivers_handshake_and_changes(self, settings):
        snapshots = [[], [like_record("u1", "v1")]]
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            index = min(calls["n"], len(snapshots) - 1)
            calls["n"] += 1
            return httpx.Response(200, json=snapshots[index])

        gateway = make_gateway(settings, handler)
        delivered = []
        errors = []
        handle = await gateway.subscribe_likes("v1", delivered.append, errors.append)
        assert delivered == [[]]

        for _ in range(50):
            if len(delivered) > 1:
                break
            await asyncio.sleep(settings.poll_interval)
        handle.cancel()
        await gateway.aclose()

        # unchanged polls are not re-delivered
        assert delivered == [[], [like_record("u1", "v1")]]
        assert errors == []

    async def test_subscription_reports_error_once_and_stops(self, settings):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(200, json=[comment_record("c1", "v1", 1)])
            return httpx.Response(500)

        gateway = make_gateway(settings, handler)
        errors = []
        handle = await gateway.subscribe_comments("v1", lambda records: None, errors.append)
        for _ in range(50):
            if not handle.active:
                break
            await asyncio.sleep(settings.poll_interval)
        await gateway.aclose()

        assert len(errors) == 1
        assert isinstance(errors[0], GatewayError)
        assert not handle.active

    async def test_update_user_patches_changes(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        gateway = make_gateway(settings, handler)
        await gateway.update_user("u1", {"username": "alice"})
        await gateway.aclose()

        assert (requests[0].method, requests[0].url.path) == ("PATCH", "/api/users/u1")
        assert json.loads(requests[0].content) == {"username": "alice"}

    async def test_crashing_snapshot_callback_is_collected(self, settings):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(200, json=[] if calls["n"] == 1 else [like_record("u1", "v1")])

        def on_snapshot(records):
            if records:
                raise RuntimeError("render failed")

        gateway = make_gateway(settings, handler)
        errors = []
        handle = await gateway.subscribe_likes("v1", on_snapshot, errors.append)
        for _ in range(50):
            if not handle.active:
                break
            await asyncio.sleep(settings.poll_interval)
        await asyncio.sleep(0)
        await gateway.aclose()

        assert not handle.active
        assert isinstance(handle.error, RuntimeError)
        assert errors == []

    async def test_subscription_handshake_failure_raises(self, settings):
        gateway = make_gateway(settings, lambda request: httpx.Response(500))
        with pytest.raises(GatewayError):
            await gateway.subscribe_likes("v1", lambda records: None, lambda exc: None)
        await gateway.aclose()


class TestCallRemote:
    async def test_gateway_error_is_translated(self):
        async def failing():
            raise GatewayError("boom")

        with pytest.raises(RemoteUnavailable) as excinfo:
            await call_remote("create_like", failing())
        assert excinfo.value.details == {"operation": "create_like"}
        assert isinstance(excinfo.value.__cause__, GatewayError)

    async def test_timeout_is_translated(self):
        with pytest.raises(RemoteUnavailable):
            await call_remote("create_like", asyncio.sleep(1), timeout=0.01)

    async def test_result_is_returned(self):
        async def ok():
            return BASE_TIME

        assert await call_remote("fetch", ok()) == BASE_TIME
