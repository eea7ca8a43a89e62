# cache_config.py: revalidation intervals per page type and per data type
import os
from typing import Any, Dict, List, Optional

APP_ENV = (os.getenv("APP_ENV") or os.getenv("FLASK_ENV") or "production").lower()

# =============================================================================
# Strategies (seconds)
# =============================================================================
CACHE_STRATEGIES: Dict[str, Dict[str, Any]] = {
    "STATIC": {
        "revalidate": 3600,
        "description": "Home page, about, terms",
    },
    "SEMI_STATIC": {
        "revalidate": 1800,
        "description": "Course list and course detail for the public",
    },
    "DYNAMIC": {
        "revalidate": 300,
        "description": "Dashboard and progress pages",
    },
    "REALTIME": {
        "revalidate": 0,
        "description": "Admin screens; never cached",
    },
    "LONG_TERM": {
        "revalidate": 86400,
        "description": "Sitemap, privacy policy",
    },
}

PAGE_CACHE_CONFIG: Dict[str, Dict[str, Any]] = {
    # public pages
    "home": CACHE_STRATEGIES["STATIC"],
    "courses": CACHE_STRATEGIES["SEMI_STATIC"],
    "courseDetail": CACHE_STRATEGIES["SEMI_STATIC"],
    "lessonDetail": CACHE_STRATEGIES["SEMI_STATIC"],

    # per-user pages
    "dashboard": CACHE_STRATEGIES["DYNAMIC"],
    "progress": CACHE_STRATEGIES["DYNAMIC"],
    "search": CACHE_STRATEGIES["SEMI_STATIC"],

    # back office
    "admin": CACHE_STRATEGIES["REALTIME"],
    "adminCourses": CACHE_STRATEGIES["REALTIME"],
    "adminVideos": CACHE_STRATEGIES["REALTIME"],
    "adminUsers": CACHE_STRATEGIES["REALTIME"],

    # static pages
    "privacy": CACHE_STRATEGIES["LONG_TERM"],
    "terms": CACHE_STRATEGIES["LONG_TERM"],
    "about": CACHE_STRATEGIES["LONG_TERM"],
    "help": CACHE_STRATEGIES["LONG_TERM"],
}

DATA_CACHE_CONFIG: Dict[str, Dict[str, Any]] = {
    "courses": {
        "revalidate": 1800,
        "tags": ["courses"],
        "description": "Course list data",
    },
    "courseDetail": {
        "revalidate": 3600,
        "tags": ["courses", "lessons"],
        "description": "Course detail with lessons",
    },
    "userProgress": {
        "revalidate": 300,
        "tags": ["progress"],
        "description": "Per-user learning progress",
    },
    "userProfile": {
        "revalidate": 600,
        "tags": ["users"],
        "description": "User profile information",
    },
    "thumbnails": {
        "revalidate": 7200,
        "tags": ["thumbnails"],
        "description": "YouTube thumbnail lookups",
    },
}

ISR_CONFIG: Dict[str, Any] = {
    "generate_static_params": {
        "courses": {"limit": 50, "description": "Popular courses rendered ahead of time"},
        "lessons": {"limit": 100, "description": "Frequently visited lessons rendered ahead of time"},
    },
    "on_demand": {
        "max_age": 3600,
        "stale_while_revalidate": 7200,
        "description": "Rendered on first hit, refreshed in the background",
    },
}

DEV_CACHE_CONFIG: Dict[str, Any] = {
    "revalidate": 10 if APP_ENV == "development" else None,
    "description": "Short cache in development",
}

_USER_DATA_PAGES = ("dashboard", "progress")


def optimal_cache_strategy(is_authenticated: bool, is_admin: bool, page_type: str) -> Dict[str, Any]:
    """Pick the revalidation interval and tags for a page render.

    Admins on admin pages always get a fresh render; signed-in users on their
    own data pages get the DYNAMIC interval under a shared ``user-data`` tag.
    Everything else uses the page table, falling back to SEMI_STATIC.
    """
    if is_admin and page_type.startswith("admin"):
        return {"revalidate": 0, "tags": ["admin"]}

    if is_authenticated and page_type in _USER_DATA_PAGES:
        return {
            "revalidate": CACHE_STRATEGIES["DYNAMIC"]["revalidate"],
            "tags": ["user-data"],
        }

    page = PAGE_CACHE_CONFIG.get(page_type) or {}
    revalidate = page.get("revalidate") or CACHE_STRATEGIES["SEMI_STATIC"]["revalidate"]
    return {"revalidate": revalidate, "tags": [page_type]}


def page_revalidate(page_type: str) -> int:
    page = PAGE_CACHE_CONFIG.get(page_type)
    if page is None:
        return CACHE_STRATEGIES["SEMI_STATIC"]["revalidate"]
    dev = DEV_CACHE_CONFIG.get("revalidate")
    if dev is not None and page["revalidate"]:
        return min(dev, page["revalidate"])
    return page["revalidate"]


def data_tags(content_type: str) -> List[str]:
    return list((DATA_CACHE_CONFIG.get(content_type) or {}).get("tags") or [])


def data_revalidate(content_type: str) -> Optional[int]:
    entry = DATA_CACHE_CONFIG.get(content_type)
    return entry["revalidate"] if entry else None
