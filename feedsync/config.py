from pydantic import BaseModel
from functools import lru_cache
from dotenv import load_dotenv
import os

load_dotenv()


class Settings(BaseModel):
    api_base_url: str = os.getenv("FEED_API_BASE_URL", "")
    api_token: str = os.getenv("FEED_API_TOKEN", "")
    request_timeout: float = float(os.getenv("FEED_REQUEST_TIMEOUT", "10"))
    # seconds between snapshot polls of a live stream
    poll_interval: float = float(os.getenv("FEED_POLL_INTERVAL", "2"))
    # an optimistic write still unconfirmed after this is rolled back
    write_timeout: float = float(os.getenv("FEED_WRITE_TIMEOUT", "10"))
    # visible video plus neighbours
    max_live_videos: int = int(os.getenv("FEED_MAX_LIVE_VIDEOS", "3"))
    log_level: str = os.getenv("FEED_LOG_LEVEL", "INFO")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
