import sys
import uuid
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
from flask import Flask, g


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import course
import home
from course import register_course_routes
from home import course_cover, register_home_routes


COURSE_ID = uuid.UUID("aaaaaaaa-0000-0000-0000-000000000001")
S1 = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000001")
S2 = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000002")
FREE_LESSON = uuid.UUID("cccccccc-0000-0000-0000-000000000001")
PAID_LESSON = uuid.UUID("cccccccc-0000-0000-0000-000000000002")
LAST_LESSON = uuid.UUID("cccccccc-0000-0000-0000-000000000003")
USER_ID = uuid.UUID("dddddddd-0000-0000-0000-000000000001")


def _lesson_row(section_id, section_order, lesson_id, lesson_order, title, is_free, video):
    return {
        "course_id": COURSE_ID,
        "section_id": section_id,
        "section_title": f"Section {section_order}",
        "section_order": section_order,
        "lesson_id": lesson_id,
        "lesson_title": title,
        "lesson_description": None,
        "youtube_url": f"https://www.youtube.com/watch?v={video}",
        "duration": 600,
        "lesson_order": lesson_order,
        "is_free": is_free,
    }


class FakeDB:
    def __init__(self):
        self.course = {
            "id": COURSE_ID,
            "title": "Data Basics",
            "description": "Intro",
            "thumbnail_url": None,
            "created_at": None,
            "updated_at": None,
        }
        self.rows = [
            _lesson_row(S2, 2, LAST_LESSON, 1, "Wrap", False, "ccccccccccc"),
            _lesson_row(S1, 1, PAID_LESSON, 2, "Deeper", False, "bbbbbbbbbbb"),
            _lesson_row(S1, 1, FREE_LESSON, 1, "Welcome", True, "aaaaaaaaaaa"),
        ]
        self.completed = {FREE_LESSON}
        self.content_queries = 0

    def fetch_one(self, sql, params=()):
        if "FROM courses WHERE id" in sql:
            return dict(self.course) if str(params[0]) == str(COURSE_ID) else None
        if "FROM user_lesson_progress" in sql:
            return None
        return None

    def fetch_all(self, sql, params=()):
        if "LEFT JOIN user_lesson_progress p" in sql:
            return [
                {
                    "section_id": r["section_id"],
                    "section_title": r["section_title"],
                    "section_order": r["section_order"],
                    "lesson_id": r["lesson_id"],
                    "lesson_title": r["lesson_title"],
                    "lesson_order": r["lesson_order"],
                    "completed": r["lesson_id"] in self.completed,
                    "progress_percentage": 100 if r["lesson_id"] in self.completed else 0,
                    "last_watched_at": None,
                }
                for r in self.rows
            ]
        if "FROM user_lesson_progress p" in sql:
            return []
        if "LEFT JOIN lessons l" in sql:
            self.content_queries += 1
            return [dict(r) for r in self.rows]
        if "FROM courses" in sql:
            return [dict(self.course)]
        return []


@pytest.fixture
def identity():
    return {}


@pytest.fixture
def rendered():
    return []


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def client(monkeypatch, identity, rendered, db):
    app = Flask(__name__)
    app.testing = True

    def fake_render_template(template_name, **context):
        rendered.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(course, "render_template", fake_render_template)
    monkeypatch.setattr(home, "render_template", fake_render_template)

    @app.before_request
    def _set_user():
        g.user_id = identity.get("user_id")
        g.user_email = identity.get("email")

    @app.get("/login")
    def login():
        return "login"

    deps = {"fetch_one": db.fetch_one, "fetch_all": db.fetch_all}
    register_home_routes(app, deps)
    register_course_routes(app, deps)
    return app.test_client()


def test_free_lesson_is_open_to_visitors(client, rendered):
    resp = client.get(f"/courses/{COURSE_ID}/lessons/{FREE_LESSON}")

    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "lesson.html"
    assert ctx["lesson"]["title"] == "Welcome"
    assert ctx["prev_lesson"] is None
    assert ctx["next_lesson"]["id"] == PAID_LESSON
    assert ctx["lesson_number"] == 1
    assert ctx["lessons_total"] == 3
    assert ctx["video_id"] == "aaaaaaaaaaa"
    assert ctx["embed_url"].startswith("https://www.youtube.com/embed/aaaaaaaaaaa")
    assert ctx["saved_progress"] is None
    assert ctx["progress"] is None


def test_paid_lesson_sends_visitors_to_sign_in(client):
    path = f"/courses/{COURSE_ID}/lessons/{PAID_LESSON}"
    resp = client.get(path)

    assert resp.status_code == 302
    location = urlsplit(resp.headers["Location"])
    assert location.path == "/login"
    assert parse_qs(location.query)["next"] == [path]


def test_signed_in_learner_sees_paid_lesson_with_progress(client, identity, rendered):
    identity.update(user_id=USER_ID, email="learner@example.com")

    resp = client.get(f"/courses/{COURSE_ID}/lessons/{LAST_LESSON}")

    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "private, no-store"
    _, ctx = rendered[-1]
    assert ctx["prev_lesson"]["id"] == PAID_LESSON
    assert ctx["next_lesson"] is None
    assert ctx["lesson_number"] == 3
    assert ctx["progress"].completed_lessons == 1
    assert ctx["progress"].progress_percentage == 33
    assert ctx["completed_ids"] == {str(FREE_LESSON)}


def test_unknown_lesson_or_course_is_404(client):
    assert client.get(f"/courses/{COURSE_ID}/lessons/{uuid.uuid4()}").status_code == 404
    assert client.get(f"/courses/{uuid.uuid4()}/lessons/{FREE_LESSON}").status_code == 404
    assert client.get(f"/courses/{COURSE_ID}/lessons/not-a-uuid").status_code == 404


def test_anonymous_lesson_page_is_served_from_cache(client, db):
    path = f"/courses/{COURSE_ID}/lessons/{FREE_LESSON}"

    first = client.get(path)
    second = client.get(path)

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert second.get_data(as_text=True) == "rendered lesson.html"
    assert db.content_queries == 1
    assert second.headers["Cache-Control"].startswith("public, s-maxage=")


def test_course_detail_context(client, rendered):
    resp = client.get(f"/courses/{COURSE_ID}")

    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "course_detail.html"
    assert ctx["first_lesson"]["id"] == FREE_LESSON
    assert ctx["course"]["lessons_count"] == 3
    assert ctx["course"]["sections_count"] == 2
    assert ctx["course"]["duration_total"] == "30m"
    assert ctx["course"]["cover_url"] == "https://img.youtube.com/vi/aaaaaaaaaaa/maxresdefault.jpg"


def test_course_detail_unknown_course_is_404(client):
    assert client.get(f"/courses/{uuid.uuid4()}").status_code == 404


def test_courses_list_attaches_covers_and_progress(client, identity, rendered):
    identity.update(user_id=USER_ID, email="learner@example.com")

    resp = client.get("/courses")

    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "courses.html"
    listed = ctx["courses"][0]
    assert listed["cover_url"] == "https://img.youtube.com/vi/aaaaaaaaaaa/maxresdefault.jpg"
    assert listed["placeholder"].startswith("bg-gradient-to-br")
    assert listed["progress"] is None


def test_course_cover_prefers_valid_own_thumbnail():
    assert course_cover({"thumbnail_url": " https://cdn.test/a.png "}, "fallback") == "https://cdn.test/a.png"
    assert course_cover({"thumbnail_url": "https://example.com/a.png"}, "fallback") == "fallback"
    assert course_cover({"thumbnail_url": None}) is None


def test_profile_lookup_failure_is_not_cached_for_visitors(client, identity, rendered):
    identity.update(email="alice@example.com")

    own = client.get("/")
    assert "X-Cache" not in own.headers
    assert own.headers["Cache-Control"] == "private, no-store"

    identity.clear()
    stranger = client.get("/")
    assert stranger.headers["X-Cache"] == "MISS"
    assert len(rendered) == 2


def test_home_error_page_is_not_cached(client, monkeypatch, rendered):
    calls = []

    def flaky_latest_courses(fetch_all, limit):
        calls.append(limit)
        if len(calls) == 1:
            raise RuntimeError("database is down")
        return []

    monkeypatch.setattr(home, "latest_courses", flaky_latest_courses)

    failed = client.get("/")
    assert failed.status_code == 200
    assert "X-Cache" not in failed.headers
    assert rendered[-1][1]["err"] == "Courses are unavailable right now."

    recovered = client.get("/")
    assert recovered.headers["X-Cache"] == "MISS"
    assert rendered[-1][1]["err"] is None
    assert len(calls) == 2


def test_courses_error_page_is_not_cached(client, monkeypatch):
    monkeypatch.setattr(
        home, "all_courses_with_thumbnails",
        lambda fetch_all: {"courses": [], "thumbnails": {}, "error": "boom"},
    )

    first = client.get("/courses")
    second = client.get("/courses")

    assert "X-Cache" not in first.headers
    assert "X-Cache" not in second.headers
