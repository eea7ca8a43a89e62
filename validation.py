"""Input validation, sanitisation and request rate limiting."""

from __future__ import annotations

import os
import re
import threading
import time
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

SITE_URL = (os.getenv("SITE_URL", "") or "http://localhost:8080").rstrip("/")

_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
YOUTUBE_URL_RE = re.compile(
    r"^https://(www\.)?(youtube\.com/watch\?v=|youtu\.be/)([a-zA-Z0-9_-]{11})$"
)

M = TypeVar("M", bound=BaseModel)


def _strip(v: Any) -> Any:
    return v.strip() if isinstance(v, str) else v


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


# =============================================================================
# Course / section / lesson payloads
# =============================================================================
class CourseIn(BaseModel):
    title: str = Field(..., max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    thumbnail_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator("title", mode="before")
    @classmethod
    def _title_required(cls, v):
        v = _strip(v) if v is not None else ""
        if not v:
            raise ValueError("Title is required")
        return v

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return _blank_to_none(v)

    @field_validator("thumbnail_url", mode="before")
    @classmethod
    def _thumbnail(cls, v):
        v = _blank_to_none(v)
        if v is not None and not _URL_RE.match(v):
            raise ValueError("Invalid thumbnail URL")
        return v


class CourseUpdate(CourseIn):
    id: UUID


class CourseDelete(BaseModel):
    id: UUID


class SectionIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    course_id: UUID
    order_index: int = Field(..., ge=0)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v):
        return _strip(v)


class LessonIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    youtube_url: str
    section_id: UUID
    duration: Optional[int] = Field(default=None, ge=1, le=86400)
    order_index: int = Field(..., ge=0)
    is_free: bool = False

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, v):
        return _strip(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return _blank_to_none(v)

    @field_validator("youtube_url", mode="before")
    @classmethod
    def _youtube(cls, v):
        v = _strip(v) or ""
        if not YOUTUBE_URL_RE.match(v):
            raise ValueError("Enter a valid YouTube URL")
        return v


class VideoIn(BaseModel):
    """Back-office "add video" form; duration is entered in minutes."""
    section_title: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    youtube_url: str
    duration_minutes: int = Field(default=0, ge=0, le=1440)
    is_free: bool = False

    @field_validator("section_title", "title", mode="before")
    @classmethod
    def _titles(cls, v):
        return _strip(v) if v is not None else ""

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return _blank_to_none(v)

    @field_validator("youtube_url", mode="before")
    @classmethod
    def _youtube(cls, v):
        v = _strip(v) or ""
        if not YOUTUBE_URL_RE.match(v):
            raise ValueError("Enter a valid YouTube URL")
        return v

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _minutes(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return 0
        return v

    @property
    def duration_seconds(self) -> Optional[int]:
        return self.duration_minutes * 60 or None


class LessonUpdate(VideoIn):
    section_title: Optional[str] = None


class ProgressIn(BaseModel):
    lesson_id: UUID
    progress_percentage: float = 0
    completed: bool = False


# =============================================================================
# Search payloads
# =============================================================================
class SearchQuery(BaseModel):
    q: str = Field(default="", max_length=200)
    category: Optional[str] = Field(default=None, max_length=50)
    duration: Optional[Literal["short", "medium", "long"]] = None
    difficulty: Optional[Literal["beginner", "intermediate", "advanced"]] = None
    isFree: Optional[Literal["true", "false"]] = None
    limit: int = 20

    @field_validator("q", mode="before")
    @classmethod
    def _q(cls, v):
        return _strip(v) if v is not None else ""

    @field_validator("limit", mode="before")
    @classmethod
    def _limit(cls, v):
        if v is None or v == "":
            return 20
        if isinstance(v, int):
            value = v
        elif isinstance(v, str) and v.isdigit():
            value = int(v)
        else:
            raise ValueError("Invalid limit")
        if not 1 <= value <= 100:
            raise ValueError("Limit must be between 1 and 100")
        return value

    @property
    def is_free(self) -> Optional[bool]:
        if self.isFree is None:
            return None
        return self.isFree == "true"

    def filters(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "duration": self.duration,
            "difficulty": self.difficulty,
            "is_free": self.is_free,
        }


class SearchSuggestionsQuery(BaseModel):
    q: str = Field(default="", max_length=200)

    @field_validator("q", mode="before")
    @classmethod
    def _q(cls, v):
        return _strip(v) if v is not None else ""


class RedirectTarget(BaseModel):
    target: Optional[str] = Field(default=None, max_length=200)

    @field_validator("target")
    @classmethod
    def _same_site(cls, v):
        if v is None:
            return v
        if v.startswith("//"):
            raise ValueError("Invalid redirect target")
        if v.startswith("/") or v.startswith(SITE_URL):
            return v
        raise ValueError("Invalid redirect target")


# =============================================================================
# Validation helpers
# =============================================================================
class ValidationError(Exception):
    def __init__(self, errors: PydanticValidationError):
        super().__init__("Validation error")
        self.errors = errors

    @property
    def messages(self) -> List[str]:
        out = []
        for err in self.errors.errors():
            msg = str(err.get("msg") or "")
            # pydantic prefixes custom errors with "Value error, "
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            out.append(msg)
        return out

    def details(self) -> List[Dict[str, Any]]:
        return [
            {"loc": list(e.get("loc") or ()), "msg": e.get("msg"), "type": e.get("type")}
            for e in self.errors.errors()
        ]


def validate_data(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(e) from None


def safe_validate_data(model: Type[M], data: Any) -> Tuple[bool, Optional[M], Optional[ValidationError]]:
    try:
        return True, validate_data(model, data), None
    except ValidationError as e:
        return False, None, e


def is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


# =============================================================================
# XSS sanitisation
# =============================================================================
_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_html(text: str) -> str:
    """Strip ``<script>`` blocks first, then every remaining tag."""
    return _TAG_RE.sub("", _SCRIPT_RE.sub("", text)).strip()


def sanitize_input(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return sanitize_html(value)


# =============================================================================
# Rate limiting (fixed window, per process)
# =============================================================================
_rate_limit_lock = threading.Lock()
_request_counts: Dict[str, Dict[str, float]] = {}


def check_rate_limit(identifier: str, max_requests: int = 10, window_seconds: float = 60.0) -> bool:
    """Return True if the request is allowed, False once the window is full."""
    now = time.monotonic()
    with _rate_limit_lock:
        current = _request_counts.get(identifier)
        if current is None or now > current["reset_at"]:
            _request_counts[identifier] = {"count": 1, "reset_at": now + window_seconds}
            return True
        if current["count"] >= max_requests:
            return False
        current["count"] += 1
        return True


def reset_rate_limits() -> None:
    with _rate_limit_lock:
        _request_counts.clear()


def rate_limit_key(request, prefix: str = "api") -> str:
    forwarded = request.headers.get("X-Forwarded-For") if request is not None else None
    real_ip = request.headers.get("X-Real-IP") if request is not None else None
    ip = None
    if forwarded:
        ip = forwarded.split(",")[0].strip() or None
    ip = ip or real_ip or (getattr(request, "remote_addr", None) if request is not None else None) or "unknown"
    return f"{prefix}:{ip}"


__all__ = [
    "CourseIn", "CourseUpdate", "CourseDelete", "SectionIn", "LessonIn", "VideoIn", "LessonUpdate",
    "ProgressIn", "SearchQuery", "SearchSuggestionsQuery", "RedirectTarget",
    "ValidationError", "validate_data", "safe_validate_data", "is_uuid",
    "sanitize_html", "sanitize_input",
    "check_rate_limit", "reset_rate_limits", "rate_limit_key",
    "YOUTUBE_URL_RE",
]
