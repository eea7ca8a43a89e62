"""Helpers for course thumbnails and YouTube artwork."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

# Static 10x6 grey JPEG used as a blurred placeholder while thumbnails load.
BLUR_DATA_URL = (
    "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAAYEBQYFBAYGBQYHBwYIChAKCgkJChQODwwQFxQYGBcUFhYa"
    "HSUfGhsjHBYWICwgIyYnKSopGR8tMC0oMCUoKSj/2wBDAQcHBwoIChMKChMoGhYaKCgoKCgoKCgoKCgoKCgoKCgoKCgoKCgoKCgo"
    "KCgoKCgoKCgoKCgoKCgoKCgoKCgoKCj/wAARCAAGAAoDASIAAhEBAxEB/8QAFQABAQAAAAAAAAAAAAAAAAAAAAv/xAAhEAACAQMD"
    "BQAAAAAAAAAAAAABAgMABAUGIWGRkqGx0f/EABUBAQEAAAAAAAAAAAAAAAAAAAMF/8QAGhEAAgIDAAAAAAAAAAAAAAAAAAECEgMR"
    "kf/aAAwDAQACEQMRAD8AltJagyeH0AthI5xdrLcNM91BF5pX2HaH9bcfaSXWGaRmknyJckliyjqTzSlT54b6bk+h0R//2Q=="
)

_YOUTUBE_ID_RE = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=)([^#&?]*).*")
_IMAGE_EXT_RE = re.compile(r"\.(jpg|jpeg|png|webp|gif)(\?.*)?$", re.IGNORECASE)

# str.strip() covers most of these; the explicit set also catches the BOM.
_EDGE_WHITESPACE = (
    " \t\n\r\x0b\x0c\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007"
    "\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)

PLACEHOLDER_GRADIENTS = [
    "bg-gradient-to-br from-blue-500 to-blue-600",
    "bg-gradient-to-br from-green-500 to-green-600",
    "bg-gradient-to-br from-purple-500 to-purple-600",
    "bg-gradient-to-br from-orange-500 to-orange-600",
    "bg-gradient-to-br from-pink-500 to-pink-600",
    "bg-gradient-to-br from-indigo-500 to-indigo-600",
    "bg-gradient-to-br from-red-500 to-red-600",
    "bg-gradient-to-br from-teal-500 to-teal-600",
]


def extract_youtube_video_id(url: Optional[str]) -> Optional[str]:
    """Return the 11-character video id of a YouTube URL, or ``None``.

    Anything after the first ``&`` is dropped before matching so tracking
    parameters such as ``&t=42s`` or ``&list=...`` never leak into the id.
    """

    if not url or not isinstance(url, str):
        return None
    clean = url.split("&", 1)[0]
    match = _YOUTUBE_ID_RE.match(clean)
    if match and len(match.group(2)) == 11:
        return match.group(2)
    return None


def youtube_thumbnail_urls(video_id: str) -> Dict[str, str]:
    base = f"https://img.youtube.com/vi/{video_id}"
    return {
        "maxres": f"{base}/maxresdefault.jpg",
        "hq": f"{base}/hqdefault.jpg",
        "mq": f"{base}/mqdefault.jpg",
        "sd": f"{base}/sddefault.jpg",
        "default": f"{base}/default.jpg",
    }


def youtube_embed_url(url: Optional[str]) -> Optional[str]:
    video_id = extract_youtube_video_id(url)
    if not video_id:
        return None
    return f"https://www.youtube.com/embed/{video_id}?enablejsapi=1&rel=0"


def sanitize_image_url(url: Any) -> Optional[str]:
    if not url or not isinstance(url, str):
        return None
    trimmed = url.strip(_EDGE_WHITESPACE)
    return trimmed or None


def is_valid_image_url(url: Any) -> bool:
    sanitized = sanitize_image_url(url)
    if not sanitized:
        return False
    if "example.com" in sanitized:
        return False
    if not (sanitized.startswith("https://") or sanitized.startswith("http://")):
        return False
    return bool(
        _IMAGE_EXT_RE.search(sanitized)
        or "youtube.com" in sanitized
        or "youtu.be" in sanitized
    )


def placeholder_class(title: Optional[str]) -> str:
    return PLACEHOLDER_GRADIENTS[len(title or "") % len(PLACEHOLDER_GRADIENTS)]


__all__ = [
    "BLUR_DATA_URL",
    "extract_youtube_video_id",
    "youtube_thumbnail_urls",
    "youtube_embed_url",
    "sanitize_image_url",
    "is_valid_image_url",
    "placeholder_class",
]
