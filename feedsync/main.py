from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import get_settings
from .errors import AuthRequired, FeedError, NotFound, RemoteUnavailable, ValidationFailed, error_payload
from .feed import FeedCache
from .gateway import HttpGateway
from .logging_config import configure_logging
from .models import Comment, Video

settings = get_settings()
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)

STATUS_CODES = {
    AuthRequired: 401,
    NotFound: 404,
    ValidationFailed: 422,
    RemoteUnavailable: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = HttpGateway(settings)
    feed = FeedCache(gateway, settings)
    app.state.feed = feed
    try:
        await feed.load_feed()
    except RemoteUnavailable as exc:
        logger.warning("initial_feed_load_failed", error=exc.message)
    yield
    feed.close()
    await gateway.aclose()


app = FastAPI(title="Feed Sync API", version="0.1.0", lifespan=lifespan)


def get_feed(request: Request) -> FeedCache:
    return request.app.state.feed


@app.exception_handler(FeedError)
async def feed_error_handler(request: Request, exc: FeedError):
    return JSONResponse(status_code=STATUS_CODES.get(type(exc), 400), content=error_payload(exc))


class CommentCreate(BaseModel):
    text: str = Field(..., description="Comment body")
    username: Optional[str] = None


class ProfileUpdate(BaseModel):
    username: str


def feed_item(feed: FeedCache, video: Video, viewer_id: Optional[str]) -> dict:
    return {
        **video.model_dump(by_alias=True, mode="json"),
        "likeCount": feed.like_count_of(video.id),
        "commentCount": feed.comment_count_of(video.id),
        "isLiked": bool(viewer_id) and feed.is_liked_by(video.id, viewer_id),
        "state": feed.state_of(video.id).value,
    }


def comment_item(comment: Comment) -> dict:
    return comment.model_dump(by_alias=True, mode="json")


@app.get("/health")
async def health(feed: FeedCache = Depends(get_feed)):
    return {
        "status": "ok",
        "videos": len(feed.videos()),
        "live": feed.live_videos(),
    }


@app.get("/feed")
async def list_feed(
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    return [feed_item(feed, v, x_user_id) for v in feed.videos()]


@app.post("/feed/reload")
async def reload_feed(feed: FeedCache = Depends(get_feed)):
    videos = await feed.load_feed()
    return {"loaded": len(videos)}


@app.get("/videos/{video_id}")
async def get_video(
    video_id: str,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    video = feed.video(video_id)
    if not video:
        raise NotFound("video", video_id)
    return feed_item(feed, video, x_user_id)


@app.delete("/videos/{video_id}")
async def delete_video(
    video_id: str,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    await feed.delete_video(video_id, x_user_id)
    return {"deleted": True}


@app.put("/videos/{video_id}/live")
async def attach_live(video_id: str, feed: FeedCache = Depends(get_feed)):
    await feed.attach_live_updates(video_id)
    return {"state": feed.state_of(video_id).value}


@app.delete("/videos/{video_id}/live")
async def detach_live(video_id: str, feed: FeedCache = Depends(get_feed)):
    feed.detach_live_updates(video_id)
    return {"state": feed.state_of(video_id).value}


@app.post("/videos/{video_id}/likes")
async def like_video(
    video_id: str,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    await feed.like_video(video_id, x_user_id)
    return {"isLiked": True, "likeCount": feed.like_count_of(video_id)}


@app.delete("/videos/{video_id}/likes")
async def unlike_video(
    video_id: str,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    await feed.unlike_video(video_id, x_user_id)
    return {"isLiked": False, "likeCount": feed.like_count_of(video_id)}


@app.get("/videos/{video_id}/comments")
async def list_comments(video_id: str, feed: FeedCache = Depends(get_feed)) -> List[dict]:
    return [comment_item(c) for c in feed.comments_of(video_id)]


@app.post("/videos/{video_id}/comments", status_code=201)
async def add_comment(
    video_id: str,
    payload: CommentCreate,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    comment = await feed.add_comment(video_id, payload.text, x_user_id, payload.username)
    return comment_item(comment)


@app.delete("/videos/{video_id}/comments/{comment_id}")
async def delete_comment(
    video_id: str,
    comment_id: str,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    await feed.delete_comment(comment_id, video_id, x_user_id)
    return {"deleted": True}


@app.patch("/users/{user_id}")
async def update_profile(
    user_id: str,
    payload: ProfileUpdate,
    feed: FeedCache = Depends(get_feed),
    x_user_id: Optional[str] = Header(default=None),
):
    user = await feed.update_profile(user_id, payload.username, x_user_id)
    return {"id": user_id, "username": payload.username, "cached": user is not None}


@app.get("/users/{user_id}/liked")
async def liked_videos(user_id: str, feed: FeedCache = Depends(get_feed)):
    return [feed_item(feed, v, user_id) for v in feed.liked_videos(user_id)]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("feedsync.main:app", host="0.0.0.0", port=8000, reload=True)
