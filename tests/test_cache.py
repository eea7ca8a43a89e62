import sys
from pathlib import Path

import pytest
from flask import Flask, abort, g, session


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import cache_config
import cache_invalidation
from cache_config import data_revalidate, data_tags, optimal_cache_strategy, page_revalidate
from cache_invalidation import (
    CacheInvalidationManager,
    CachePerformanceMonitor,
    PageCache,
    ProductionCacheOptimizer,
    TimeBasedCacheStrategy,
    cache_control_value,
    cached_page,
    page_cache,
    skip_page_cache,
)


# ---------- policy tables ----------
def test_optimal_cache_strategy():
    assert optimal_cache_strategy(True, True, "adminCourses") == {"revalidate": 0, "tags": ["admin"]}
    assert optimal_cache_strategy(True, False, "dashboard") == {"revalidate": 300, "tags": ["user-data"]}
    assert optimal_cache_strategy(False, False, "home") == {"revalidate": 3600, "tags": ["home"]}
    assert optimal_cache_strategy(False, False, "privacy")["revalidate"] == 86400
    assert optimal_cache_strategy(False, False, "unknown")["revalidate"] == 1800


def test_page_revalidate_honours_dev_override(monkeypatch):
    monkeypatch.setitem(cache_config.DEV_CACHE_CONFIG, "revalidate", None)
    assert page_revalidate("courses") == 1800
    assert page_revalidate("admin") == 0
    assert page_revalidate("nope") == 1800

    monkeypatch.setitem(cache_config.DEV_CACHE_CONFIG, "revalidate", 10)
    assert page_revalidate("courses") == 10
    assert page_revalidate("admin") == 0


def test_isr_config_table():
    isr = cache_config.ISR_CONFIG
    assert isr["generate_static_params"]["courses"]["limit"] == 50
    assert isr["generate_static_params"]["lessons"]["limit"] == 100
    assert isr["on_demand"]["stale_while_revalidate"] == 2 * isr["on_demand"]["max_age"]


def test_data_config_lookups():
    assert data_tags("courseDetail") == ["courses", "lessons"]
    assert data_tags("missing") == []
    assert data_revalidate("thumbnails") == 7200
    assert data_revalidate("missing") is None


@pytest.mark.parametrize("hour,expected", [(3, 3600), (7, 2700), (10, 1800), (20, 900)])
def test_time_based_cache_time(hour, expected):
    assert TimeBasedCacheStrategy.optimal_cache_time("courses", hour=hour) == expected


def test_time_based_evening_floor():
    assert TimeBasedCacheStrategy.optimal_cache_time("userProgress", hour=21) == 300


def test_frequency_based_cache_time():
    assert TimeBasedCacheStrategy.frequency_based_cache_time("courses", 500) == 540
    assert TimeBasedCacheStrategy.frequency_based_cache_time("courses", 50) == 1800
    assert TimeBasedCacheStrategy.frequency_based_cache_time("courses", 3) == 5400
    assert TimeBasedCacheStrategy.frequency_based_cache_time("userProgress", 500) == 180


def test_performance_monitor_warnings():
    assert CachePerformanceMonitor.hit_rate(0, 0) == 0.0
    assert CachePerformanceMonitor.hit_rate(3, 4) == 75.0
    warnings = CachePerformanceMonitor.log_cache_performance("home", 50.0, 1500, 12)
    assert len(warnings) == 2
    assert warnings[0].startswith("Low cache hit rate for home")
    assert CachePerformanceMonitor.log_cache_performance("home", 95.0, 80, 12) == []


def test_performance_snapshot():
    cache = PageCache()
    cache.set("/a", b"x", 200, "text/html", 60)
    cache.get("/a")
    cache.get("/missing")
    assert CachePerformanceMonitor.snapshot(cache) == {"entries": 1, "hits": 1, "misses": 1, "hit_rate": 50.0}


def test_production_optimizer():
    assert ProductionCacheOptimizer.production_cache_config("home", env="production") == {"revalidate": 7200}
    assert ProductionCacheOptimizer.production_cache_config("other", env="production") == {"revalidate": 1800}
    assert ProductionCacheOptimizer.production_cache_config("home", env="development") == {"revalidate": 10}

    headers = ProductionCacheOptimizer.cdn_cache_headers("search", env="production")
    assert headers["Cache-Control"] == "public, s-maxage=900, stale-while-revalidate=1800"
    assert headers["CDN-Cache-Control"] == "public, max-age=900"
    assert headers["Surrogate-Control"] == "max-age=900, stale-while-revalidate=9000"


def test_cache_control_value():
    assert cache_control_value(0) == "private, no-store"
    assert cache_control_value(60) == "public, s-maxage=60, stale-while-revalidate=120"


# ---------- page cache ----------
def test_page_cache_expiry(monkeypatch):
    clock = [100.0]
    monkeypatch.setattr(cache_invalidation.time, "monotonic", lambda: clock[0])
    cache = PageCache()
    cache.set("/courses", b"body", 200, "text/html", ttl=30)
    cache.set("/zero", b"body", 200, "text/html", ttl=0)

    assert cache.get("/courses").body == b"body"
    assert cache.get("/zero") is None

    clock[0] += 31
    assert cache.get("/courses") is None
    assert cache.keys() == []


def test_page_cache_evicts_oldest_when_full():
    cache = PageCache(max_entries=2)
    for key in ("/a", "/b", "/c"):
        cache.set(key, b"x", 200, "text/html", 60)
    assert cache.keys() == ["/b", "/c"]


def test_revalidate_path_and_tag():
    cache = PageCache()
    cache.set("/courses", b"1", 200, "text/html", 60, tags=("courses",))
    cache.set("/courses?page=2", b"2", 200, "text/html", 60)
    cache.set("/courses/abc", b"3", 200, "text/html", 60, tags=("lessons",))
    cache.set("/search?q=x", b"4", 200, "text/html", 60, tags=("lessons",))

    assert cache.revalidate_path("/courses") == 2
    assert sorted(cache.keys()) == ["/courses/abc", "/search?q=x"]
    assert cache.revalidate_tag("lessons") == 2
    assert cache.keys() == []


def test_invalidation_manager_course_rules():
    page_cache.set("/courses", b"", 200, "text/html", 60)
    page_cache.set("/courses/c1", b"", 200, "text/html", 60)
    page_cache.set("/courses/c2", b"", 200, "text/html", 60)
    page_cache.set("/", b"", 200, "text/html", 60, tags=("courses",))
    page_cache.set("/courses/c1/lessons/l1", b"", 200, "text/html", 60, tags=("lessonDetail", "lessons"))

    CacheInvalidationManager.invalidate_course_cache("c1")
    assert sorted(page_cache.keys()) == ["/courses/c1/lessons/l1", "/courses/c2"]

    CacheInvalidationManager.invalidate_lesson_cache("c1", "l1")
    assert page_cache.keys() == ["/courses/c2"]


def test_invalidation_manager_thumbnail_and_search_rules():
    page_cache.set("/", b"", 200, "text/html", 60)
    page_cache.set("/search?q=py", b"", 200, "text/html", 60)
    page_cache.set("/help", b"", 200, "text/html", 60)

    CacheInvalidationManager.invalidate_thumbnail_cache()
    CacheInvalidationManager.invalidate_search_cache()
    assert page_cache.keys() == ["/help"]


# ---------- cached_page decorator ----------
@pytest.fixture
def app_and_calls():
    app = Flask(__name__)
    app.testing = True
    calls = []
    app.secret_key = "test"
    identity = {}

    @app.before_request
    def _set_user():
        g.user_id = identity.get("user_id")
        g.user_email = identity.get("email")
        g.is_admin = identity.get("is_admin", False)

    @app.get("/page")
    @cached_page("courses", tags=("courses",))
    def page():
        calls.append("page")
        return f"page {len(calls)}"

    @app.get("/missing")
    @cached_page("courses")
    def missing():
        calls.append("missing")
        abort(404)

    @app.get("/flaky")
    @cached_page("courses")
    def flaky():
        calls.append("flaky")
        if len(calls) == 1:
            skip_page_cache()
            return "unavailable"
        return "listing"

    @app.get("/sign-in")
    def sign_in():
        session["user"] = {"email": "alice@example.com", "name": "Alice"}
        return "ok"

    @app.get("/admin-page")
    @cached_page("admin")
    def admin_page():
        calls.append("admin")
        return "admin"

    return app, calls, identity


def test_cached_page_hit_and_miss(app_and_calls):
    app, calls, _ = app_and_calls
    client = app.test_client()

    first = client.get("/page")
    second = client.get("/page")
    other_query = client.get("/page?sort=new")

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.get_data(as_text=True) == "page 1"
    assert other_query.headers["X-Cache"] == "MISS"
    assert calls == ["page", "page"]


def test_cached_page_tags_allow_invalidation(app_and_calls):
    app, calls, _ = app_and_calls
    client = app.test_client()
    client.get("/page")
    CacheInvalidationManager.invalidate_course_cache()
    assert client.get("/page").headers["X-Cache"] == "MISS"
    assert len(calls) == 2


def test_cached_page_skips_signed_in_errors_and_zero_ttl(app_and_calls):
    app, calls, identity = app_and_calls
    client = app.test_client()

    assert client.get("/missing").status_code == 404
    assert client.get("/missing").status_code == 404
    assert calls.count("missing") == 2

    client.get("/admin-page")
    resp = client.get("/admin-page")
    assert "X-Cache" not in resp.headers
    assert resp.headers["Cache-Control"] == "private, no-store"

    identity["user_id"] = "u1"
    client.get("/page")
    resp = client.get("/page")
    assert "X-Cache" not in resp.headers
    assert resp.headers["Cache-Control"] == "private, no-store"
    assert calls.count("page") == 2


def test_cached_page_can_be_switched_off(app_and_calls, monkeypatch):
    monkeypatch.setattr(cache_invalidation, "PAGE_CACHE_ENABLED", False)
    app, calls, _ = app_and_calls
    client = app.test_client()
    client.get("/page")
    client.get("/page")
    assert calls == ["page", "page"]


def test_cached_page_skips_session_and_email_only_visitors(app_and_calls):
    app, calls, identity = app_and_calls
    client = app.test_client()

    identity["email"] = "alice@example.com"
    resp = client.get("/page")
    assert "X-Cache" not in resp.headers
    identity.clear()

    client.get("/sign-in")
    resp = client.get("/page")
    assert "X-Cache" not in resp.headers
    assert resp.headers["Cache-Control"] == "private, no-store"

    assert page_cache.keys() == []
    assert app.test_client().get("/page").headers["X-Cache"] == "MISS"
    assert calls.count("page") == 3


def test_cached_page_does_not_store_error_renders(app_and_calls):
    app, calls, _ = app_and_calls
    client = app.test_client()

    failed = client.get("/flaky")
    assert failed.get_data(as_text=True) == "unavailable"
    assert "X-Cache" not in failed.headers

    recovered = client.get("/flaky")
    assert recovered.get_data(as_text=True) == "listing"
    assert recovered.headers["X-Cache"] == "MISS"
    assert client.get("/flaky").headers["X-Cache"] == "HIT"
    assert calls == ["flaky", "flaky"]
