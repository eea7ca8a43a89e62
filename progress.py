# progress.py: per-user lesson progress: aggregation, recording, dashboard + API
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from flask import Blueprint, g, jsonify, redirect, render_template, request, url_for

from cache_invalidation import CacheInvalidationManager
from catalog import lesson_sort_key, section_sort_key
from image_utils import sanitize_image_url
from validation import ProgressIn, ValidationError, check_rate_limit, validate_data

PROGRESS_RATE_LIMIT = 60


@dataclass
class LessonProgress:
    lesson_id: Any
    lesson_title: str
    completed: bool = False
    progress_percentage: int = 0
    last_watched_at: Any = None


@dataclass
class SectionProgress:
    section_id: Any
    section_title: str
    total_lessons: int
    completed_lessons: int
    progress_percentage: int
    lessons: List[LessonProgress] = field(default_factory=list)


@dataclass
class CourseProgress:
    course_id: Any
    total_lessons: int
    completed_lessons: int
    progress_percentage: int
    sections: List[SectionProgress] = field(default_factory=list)


def percent(completed: int, total: int) -> int:
    """completed/total as a whole percentage, halves rounded up; 0 for an empty total."""
    if total <= 0:
        return 0
    return (completed * 200 + total) // (total * 2)


def clamp_percentage(value: Any) -> int:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0
    if v != v:  # NaN
        return 0
    v = min(100.0, max(0.0, v))
    return int(v + 0.5)


# =============================================================================
# Aggregation
# =============================================================================
def build_course_progress(course_id: Any, rows: List[Dict[str, Any]]) -> Optional[CourseProgress]:
    """Fold section/lesson/progress rows of one course into a CourseProgress.

    ``rows`` come from an inner join of sections and lessons with the user's
    progress left-joined, so sections without lessons never appear. Returns
    None when there is no lesson at all.
    """
    if not rows:
        return None

    sections: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        sid = str(r["section_id"])
        sec = sections.setdefault(sid, {
            "id": r["section_id"],
            "title": r.get("section_title") or "",
            "order_index": r.get("section_order"),
            "lessons": [],
        })
        sec["lessons"].append({
            "id": r["lesson_id"],
            "title": r.get("lesson_title") or "",
            "order_index": r.get("lesson_order"),
            "completed": bool(r.get("completed")),
            "progress_percentage": r.get("progress_percentage") or 0,
            "last_watched_at": r.get("last_watched_at"),
        })

    total = completed = 0
    out: List[SectionProgress] = []
    for sec in sorted(sections.values(), key=section_sort_key):
        lessons = sorted(sec["lessons"], key=lesson_sort_key)
        done = sum(1 for l in lessons if l["completed"])
        out.append(SectionProgress(
            section_id=sec["id"],
            section_title=sec["title"],
            total_lessons=len(lessons),
            completed_lessons=done,
            progress_percentage=percent(done, len(lessons)),
            lessons=[
                LessonProgress(
                    lesson_id=l["id"],
                    lesson_title=l["title"],
                    completed=l["completed"],
                    progress_percentage=l["progress_percentage"],
                    last_watched_at=l["last_watched_at"],
                )
                for l in lessons
            ],
        ))
        total += len(lessons)
        completed += done

    return CourseProgress(
        course_id=course_id,
        total_lessons=total,
        completed_lessons=completed,
        progress_percentage=percent(completed, total),
        sections=out,
    )


def course_progress(fetch_one, fetch_all, course_id: Any, user_id: Any) -> Optional[CourseProgress]:
    course = fetch_one("SELECT id FROM courses WHERE id = %s;", (course_id,))
    if not course:
        return None
    rows = fetch_all("""
        SELECT s.id AS section_id, s.title AS section_title, s.order_index AS section_order,
               l.id AS lesson_id, l.title AS lesson_title, l.order_index AS lesson_order,
               p.progress_percentage, p.completed, p.last_watched_at
          FROM sections s
          JOIN lessons l ON l.section_id = s.id
          LEFT JOIN user_lesson_progress p ON p.lesson_id = l.id AND p.user_id = %s
         WHERE s.course_id = %s;
    """, (user_id, course_id))
    return build_course_progress(course_id, rows)


_USER_COURSE_PROGRESS_SQL = """
    SELECT p.lesson_id, p.completed, p.progress_percentage, p.last_watched_at,
           c.id AS course_id, c.title AS course_title, c.thumbnail_url
      FROM user_lesson_progress p
      JOIN lessons l ON l.id = p.lesson_id
      JOIN sections s ON s.id = l.section_id
      JOIN courses c ON c.id = s.course_id
     WHERE p.user_id = %s
     ORDER BY p.last_watched_at DESC NULLS LAST;
"""


def summarize_by_course(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Group progress records by course, most recently watched course first.

    ``total_lessons`` counts the user's records for the course (lessons they
    have opened), not every lesson the course has.
    """
    courses: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        key = str(r["course_id"])
        entry = courses.get(key)
        if entry is None:
            entry = courses[key] = {
                "course_id": r["course_id"],
                "title": r.get("course_title"),
                "thumbnail_url": sanitize_image_url(r.get("thumbnail_url")),
                "last_watched_at": r.get("last_watched_at"),
                "total_lessons": 0,
                "completed_lessons": 0,
            }
        entry["total_lessons"] += 1
        if r.get("completed"):
            entry["completed_lessons"] += 1
    out = list(courses.values())
    for entry in out:
        entry["progress_percentage"] = percent(entry["completed_lessons"], entry["total_lessons"])
    return out


def user_overall_progress(fetch_all, user_id: Any) -> List[Dict[str, Any]]:
    return summarize_by_course(fetch_all(_USER_COURSE_PROGRESS_SQL, (user_id,)))


def all_user_progress(fetch_all, user_id: Any) -> Dict[str, Any]:
    """{"progress_data": {course_id: {completed, total, percentage}}, "error": ...}"""
    try:
        rows = fetch_all(_USER_COURSE_PROGRESS_SQL, (user_id,))
    except Exception as e:
        print(f"[progress] batch lookup failed for {user_id}: {e}", flush=True)
        return {"progress_data": {}, "error": str(e)}
    data = {
        str(c["course_id"]): {
            "completed": c["completed_lessons"],
            "total": c["total_lessons"],
            "percentage": c["progress_percentage"],
        }
        for c in summarize_by_course(rows)
    }
    return {"progress_data": data, "error": None}


def lesson_progress(fetch_one, user_id: Any, lesson_id: Any) -> Optional[Dict[str, Any]]:
    return fetch_one("""
        SELECT id, user_id, lesson_id, progress_percentage, completed, last_watched_at
          FROM user_lesson_progress
         WHERE user_id = %s AND lesson_id = %s;
    """, (user_id, lesson_id))


def save_progress(execute_returning, user_id: Any, lesson_id: Any,
                  progress_percentage: Any, completed: bool = False) -> Optional[Dict[str, Any]]:
    """Upsert one progress record; a completed lesson stays completed."""
    pct = clamp_percentage(progress_percentage)
    done = bool(completed) or pct >= 100
    rows = execute_returning("""
        INSERT INTO user_lesson_progress (user_id, lesson_id, progress_percentage, completed, last_watched_at)
        VALUES (%s, %s, %s, %s, now())
        ON CONFLICT (user_id, lesson_id) DO UPDATE
           SET progress_percentage = EXCLUDED.progress_percentage,
               completed = user_lesson_progress.completed OR EXCLUDED.completed,
               last_watched_at = EXCLUDED.last_watched_at
        RETURNING id, user_id, lesson_id, progress_percentage, completed, last_watched_at;
    """, (user_id, lesson_id, pct, done))
    return rows[0] if rows else None


# =============================================================================
# Routes
# =============================================================================
def create_progress_blueprint(deps: Dict[str, Any], name: str = "progress") -> Blueprint:
    """
    Registers:
      - GET  /dashboard               -> signed-in learner's course progress
      - GET  /api/progress/<lesson>   -> saved progress for one lesson
      - POST /api/progress            -> record progress (JSON)
    """
    fetch_one = deps["fetch_one"]
    fetch_all = deps["fetch_all"]
    execute_returning = deps["execute_returning"]

    bp = Blueprint(name, __name__)

    @bp.get("/dashboard")
    def dashboard():
        if not getattr(g, "user_id", None):
            return redirect(url_for("login", next=request.path))
        courses: List[Dict[str, Any]] = []
        err = None
        try:
            courses = user_overall_progress(fetch_all, g.user_id)
        except Exception as e:
            print(f"[progress] dashboard load failed for {g.user_id}: {e}", flush=True)
            err = "Could not load your progress. Please try again."
        completed_courses = sum(1 for c in courses if c["progress_percentage"] >= 100)
        return render_template(
            "dashboard.html",
            courses=courses,
            err=err,
            courses_started=len(courses),
            courses_completed=completed_courses,
            lessons_completed=sum(c["completed_lessons"] for c in courses),
        )

    @bp.get("/api/progress/<uuid:lesson_id>")
    def api_get_progress(lesson_id):
        if not getattr(g, "user_id", None):
            return jsonify({"error": "Authentication required"}), 401
        row = lesson_progress(fetch_one, g.user_id, lesson_id)
        return jsonify({"progress": row})

    @bp.post("/api/progress")
    def api_save_progress():
        if not getattr(g, "user_id", None):
            return jsonify({"error": "Authentication required"}), 401
        if not check_rate_limit(f"progress:{g.user_id}", PROGRESS_RATE_LIMIT, 60):
            return jsonify({"error": "Too many requests. Please wait a moment and try again."}), 429
        try:
            payload = validate_data(ProgressIn, request.get_json(silent=True) or {})
        except ValidationError as e:
            return jsonify({"error": "Invalid parameters", "details": e.messages}), 400

        lesson = fetch_one("SELECT id FROM lessons WHERE id = %s;", (payload.lesson_id,))
        if not lesson:
            return jsonify({"error": "Lesson not found"}), 404
        try:
            row = save_progress(
                execute_returning, g.user_id, payload.lesson_id,
                payload.progress_percentage, payload.completed,
            )
        except Exception as e:
            print(f"[progress] save failed for {g.user_id}/{payload.lesson_id}: {e}", flush=True)
            return jsonify({"error": "Could not save progress"}), 500
        CacheInvalidationManager.invalidate_progress_cache(str(g.user_id))
        return jsonify({"progress": row})

    return bp
