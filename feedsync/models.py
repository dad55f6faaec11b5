from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)


class Kind(str, Enum):
    LIKES = "likes"
    COMMENTS = "comments"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Immutable backend record. Accepts camelCase wire names or field names."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("*")
    @classmethod
    def ensure_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_record(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.timestamp()
        return data


class User(Record):
    id: str
    username: str
    email: str = ""
    date_joined: datetime
    profile_image_url: Optional[str] = None


class Video(Record):
    id: str
    caption: str = ""
    video_url: str
    thumbnail_url: Optional[str] = None
    user_id: str
    timestamp: datetime
    user: Optional[User] = None

    def with_author(self, user: Optional[User]) -> "Video":
        return self.model_copy(update={"user": user})

    def to_record(self) -> Dict[str, Any]:
        # author snapshot is attached at read time, never written back
        data = super().to_record()
        data.pop("user", None)
        return data


class Like(Record):
    id: str
    user_id: str
    video_id: str
    timestamp: datetime

    @staticmethod
    def make_id(user_id: str, video_id: str) -> str:
        return f"{user_id}_{video_id}"


class Comment(Record):
    id: str
    user_id: str
    video_id: str
    text: str
    timestamp: datetime
    username: Optional[str] = None


R = TypeVar("R", bound=Record)


def parse_records(model: Type[R], records: Iterable[Dict[str, Any]]) -> List[R]:
    """Validate wire records, skipping the ones that do not parse"""
    parsed = []
    for record in records:
        try:
            parsed.append(model.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "record_rejected",
                model=model.__name__,
                record_id=record.get("id") if isinstance(record, dict) else None,
                errors=exc.error_count(),
            )
    return parsed
