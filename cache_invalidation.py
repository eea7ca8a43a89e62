# cache_invalidation.py: in-process page cache and the invalidation rules
import functools
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from flask import g, make_response, request, session

from cache_config import APP_ENV, DATA_CACHE_CONFIG, optimal_cache_strategy, page_revalidate

PAGE_CACHE_ENABLED = os.getenv("PAGE_CACHE", "1").lower() in {"1", "true", "yes"}
PAGE_CACHE_MAX_ENTRIES = int(os.getenv("PAGE_CACHE_MAX_ENTRIES") or 500)


@dataclass
class CachedPage:
    body: bytes
    status: int
    mimetype: str
    expires_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    stored_at: float = field(default_factory=time.monotonic)

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.monotonic()) >= self.expires_at

    @property
    def age(self) -> int:
        return int(time.monotonic() - self.stored_at)


class PageCache:
    """Rendered GET responses keyed by request path, each with a TTL and tags."""

    def __init__(self, max_entries: int = PAGE_CACHE_MAX_ENTRIES):
        self._entries: Dict[str, CachedPage] = {}
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[CachedPage]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expired():
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    def set(self, key: str, body: bytes, status: int, mimetype: str, ttl: float,
            tags: Iterable[str] = ()) -> None:
        if ttl <= 0:
            return
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._drop_expired_locked()
                if len(self._entries) >= self._max_entries:
                    # oldest insertion goes first
                    self._entries.pop(next(iter(self._entries)))
            self._entries[key] = CachedPage(
                body=body,
                status=status,
                mimetype=mimetype,
                expires_at=time.monotonic() + ttl,
                tags=frozenset(tags),
            )

    def revalidate_path(self, path: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.split("?", 1)[0] == path]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def revalidate_tag(self, tag: str) -> int:
        with self._lock:
            doomed = [k for k, v in self._entries.items() if tag in v.tags]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def _drop_expired_locked(self) -> None:
        now = time.monotonic()
        for k in [k for k, v in self._entries.items() if v.expired(now)]:
            del self._entries[k]


page_cache = PageCache()


def revalidate_path(path: str) -> int:
    return page_cache.revalidate_path(path)


def revalidate_tag(tag: str) -> int:
    return page_cache.revalidate_tag(tag)


def cache_control_value(ttl: int) -> str:
    if ttl <= 0:
        return "private, no-store"
    return f"public, s-maxage={ttl}, stale-while-revalidate={ttl * 2}"


def skip_page_cache() -> None:
    """Keep the current response out of ``page_cache`` (error renders)."""
    g.no_page_cache = True


def _is_anonymous() -> bool:
    return not (getattr(g, "user_id", None) or getattr(g, "user_email", None) or session.get("user"))


def _request_key() -> str:
    full = request.full_path or request.path
    return full[:-1] if full.endswith("?") else full


def cached_page(page_type: str, tags: Iterable[str] = ()):
    """Serve anonymous GETs of a view from ``page_cache``.

    Signed-in visitors always get a fresh render (pages show their progress)
    and a ``private`` Cache-Control header.
    """
    extra_tags = tuple(tags)

    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            anonymous = _is_anonymous()
            strategy = optimal_cache_strategy(
                is_authenticated=not anonymous,
                is_admin=bool(getattr(g, "is_admin", False)),
                page_type=page_type,
            )
            ttl = min(strategy["revalidate"], page_revalidate(page_type))
            cacheable = PAGE_CACHE_ENABLED and request.method == "GET" and anonymous and ttl > 0
            key = _request_key()

            if cacheable:
                entry = page_cache.get(key)
                if entry is not None:
                    resp = make_response(entry.body, entry.status)
                    resp.mimetype = entry.mimetype
                    resp.headers["X-Cache"] = "HIT"
                    resp.headers["Age"] = str(entry.age)
                    resp.headers["Cache-Control"] = cache_control_value(ttl)
                    return resp

            resp = make_response(view(*args, **kwargs))
            if cacheable and getattr(g, "no_page_cache", False):
                print(f"[cache] not storing {key}: view reported an error", flush=True)
                cacheable = False
            if cacheable and resp.status_code == 200 and not resp.direct_passthrough:
                page_cache.set(
                    key,
                    resp.get_data(),
                    resp.status_code,
                    resp.mimetype,
                    ttl,
                    tags=tuple(strategy.get("tags") or ()) + extra_tags,
                )
                resp.headers["X-Cache"] = "MISS"
                resp.headers["Cache-Control"] = cache_control_value(ttl)
            elif "Cache-Control" not in resp.headers:
                resp.headers["Cache-Control"] = "private, no-store"
            return resp

        return wrapper

    return decorator


# =============================================================================
# Invalidation rules
# =============================================================================
class CacheInvalidationManager:

    @staticmethod
    def invalidate_course_cache(course_id: Optional[str] = None):
        revalidate_path("/courses")
        if course_id:
            revalidate_path(f"/courses/{course_id}")
        revalidate_tag("courses")
        print(f"[cache] course cache invalidated: {course_id or 'all courses'}", flush=True)

    @staticmethod
    def invalidate_lesson_cache(course_id: str, lesson_id: Optional[str] = None):
        revalidate_path(f"/courses/{course_id}")
        if lesson_id:
            revalidate_path(f"/courses/{course_id}/lessons/{lesson_id}")
        revalidate_tag("lessons")
        print(f"[cache] lesson cache invalidated: course={course_id} lesson={lesson_id}", flush=True)

    @staticmethod
    def invalidate_progress_cache(user_id: str):
        revalidate_path("/dashboard")
        revalidate_tag("progress")
        revalidate_tag(f"user-{user_id}")
        print(f"[cache] progress cache invalidated: {user_id}", flush=True)

    @staticmethod
    def invalidate_search_cache():
        revalidate_path("/search")
        revalidate_tag("search")
        print("[cache] search cache invalidated", flush=True)

    @staticmethod
    def invalidate_admin_cache():
        revalidate_path("/admin")
        revalidate_path("/admin/courses")
        revalidate_tag("admin")
        revalidate_tag("courses")
        revalidate_tag("lessons")
        print("[cache] admin cache invalidated", flush=True)

    @staticmethod
    def invalidate_thumbnail_cache():
        revalidate_tag("thumbnails")
        revalidate_path("/courses")
        revalidate_path("/")
        print("[cache] thumbnail cache invalidated", flush=True)


class TimeBasedCacheStrategy:

    @staticmethod
    def optimal_cache_time(content_type: str, hour: Optional[int] = None) -> float:
        """Scale a data type's interval by time of day.

        Night (0-6) doubles it, office hours (9-18) keep it, the evening peak
        (18-24) halves it with a 5 minute floor, early morning (6-9) is x1.5.
        """
        base = DATA_CACHE_CONFIG[content_type]["revalidate"]
        if hour is None:
            hour = datetime.now().hour

        if 0 <= hour < 6:
            return base * 2
        if 9 <= hour < 18:
            return base
        if 18 <= hour < 24:
            return max(base * 0.5, 300)
        return base * 1.5

    @staticmethod
    def frequency_based_cache_time(content_type: str, access_count: int) -> float:
        base = DATA_CACHE_CONFIG[content_type]["revalidate"]
        if access_count > 100:
            return max(base * 0.3, 180)
        if access_count > 10:
            return base
        return base * 3


class CachePerformanceMonitor:
    LOW_HIT_RATE = 70.0
    SLOW_RESPONSE_MS = 1000

    @staticmethod
    def hit_rate(hits: int, total: int) -> float:
        return (hits / total) * 100 if total > 0 else 0.0

    @classmethod
    def log_cache_performance(cls, page: str, hit_rate: float, response_time_ms: float,
                              cache_age: int) -> List[str]:
        print(f"[cache] performance {page}: hit_rate={hit_rate:.1f}% "
              f"response_time={response_time_ms}ms cache_age={cache_age}s", flush=True)
        warnings: List[str] = []
        if hit_rate < cls.LOW_HIT_RATE:
            warnings.append(f"Low cache hit rate for {page}: {hit_rate:.1f}%")
        if response_time_ms > cls.SLOW_RESPONSE_MS:
            warnings.append(f"Slow response time for {page}: {response_time_ms}ms")
        for w in warnings:
            print(f"[cache] WARNING {w}", flush=True)
        return warnings

    @classmethod
    def snapshot(cls, cache: Optional[PageCache] = None) -> Dict[str, Any]:
        cache = cache or page_cache
        total = cache.hits + cache.misses
        return {
            "entries": len(cache.keys()),
            "hits": cache.hits,
            "misses": cache.misses,
            "hit_rate": round(cls.hit_rate(cache.hits, total), 1),
        }


class ProductionCacheOptimizer:
    PRODUCTION_CONFIG: Dict[str, int] = {
        "home": 7200,
        "courses": 3600,
        "courseDetail": 1800,
        "lessonDetail": 1800,
        "search": 900,
        "dashboard": 0,
        "admin": 0,
    }
    DEFAULT_REVALIDATE = 1800

    @classmethod
    def production_cache_config(cls, page_type: str, env: Optional[str] = None) -> Dict[str, int]:
        if (env or APP_ENV) != "production":
            return {"revalidate": 10}
        return {"revalidate": cls.PRODUCTION_CONFIG.get(page_type, cls.DEFAULT_REVALIDATE)}

    @classmethod
    def cdn_cache_headers(cls, page_type: str, env: Optional[str] = None) -> Dict[str, str]:
        ttl = cls.production_cache_config(page_type, env=env)["revalidate"]
        return {
            "Cache-Control": f"public, s-maxage={ttl}, stale-while-revalidate={ttl * 2}",
            "CDN-Cache-Control": f"public, max-age={ttl}",
            "Surrogate-Control": f"max-age={ttl}, stale-while-revalidate={ttl * 10}",
        }
