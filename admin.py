import math
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flask import (
    Blueprint, render_template, abort, request,
    redirect, url_for, g
)

from cache_invalidation import CacheInvalidationManager
from catalog import course_with_stats, format_duration
from progress import percent
from validation import (
    CourseIn, CourseUpdate, CourseDelete, SectionIn, VideoIn, LessonUpdate,
    ValidationError, check_rate_limit, rate_limit_key, sanitize_input, validate_data,
)

# =========================
# Admin gating / constants
# =========================
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}

ADMIN_ACTIONS_PER_MINUTE = 5
ADMIN_DELETES_PER_MINUTE = 3
RATE_LIMITED = "Rate limit reached. Please wait a moment and try again."


def is_admin_email(email: Optional[str]) -> bool:
    return bool(email) and email.strip().lower() in ADMIN_EMAILS


# =========================
# Aggregates
# =========================
def admin_stats(fetch_one) -> Dict[str, int]:
    row = fetch_one("""
        SELECT (SELECT COUNT(*) FROM courses)  AS total_courses,
               (SELECT COUNT(*) FROM sections) AS total_sections,
               (SELECT COUNT(*) FROM lessons)  AS total_lessons,
               (SELECT COUNT(*) FROM profiles) AS total_users;
    """) or {}
    return {k: int(row.get(k) or 0) for k in ("total_courses", "total_sections", "total_lessons", "total_users")}


def _as_utc(ts: Any) -> Optional[datetime]:
    if ts is None:
        return None
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _month_start(d: datetime, back: int = 0) -> datetime:
    year, month = d.year, d.month - back
    while month <= 0:
        month += 12
        year -= 1
    return d.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def compute_analytics(
    courses: List[Dict[str, Any]],
    profiles: List[Dict[str, Any]],
    lessons: List[Dict[str, Any]],
    progress: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Platform figures for the analytics screen.

    ``lessons`` rows carry ``id`` and ``course_id``; ``progress`` rows carry
    ``user_id``, ``lesson_id``, ``completed`` and ``last_watched_at``.
    """
    now = _as_utc(now or datetime.now(timezone.utc))

    total_progress = len(progress)
    completed = sum(1 for p in progress if p.get("completed"))

    def _count_in_month(month: datetime) -> int:
        n = 0
        for p in profiles:
            created = _as_utc(p.get("created_at"))
            if created and created.year == month.year and created.month == month.month:
                n += 1
        return n

    this_month = _count_in_month(now)
    last_month = _count_in_month(_month_start(now, 1))
    growth = math.floor((this_month - last_month) * 100 / last_month + 0.5) if last_month > 0 else 0

    week_ago = now - timedelta(days=7)
    active_users = {
        str(p.get("user_id"))
        for p in progress
        if _as_utc(p.get("last_watched_at")) and _as_utc(p.get("last_watched_at")) > week_ago
    }

    lesson_course = {str(l["id"]): str(l.get("course_id")) for l in lessons}
    engagement: Dict[str, Dict[str, int]] = {}
    for p in progress:
        cid = lesson_course.get(str(p.get("lesson_id")))
        if cid is None:
            continue
        e = engagement.setdefault(cid, {"enrollments": 0, "completions": 0})
        e["enrollments"] += 1
        if p.get("completed"):
            e["completions"] += 1
    top_courses = sorted(
        (
            {
                "id": c["id"],
                "title": c.get("title"),
                "enrollments": engagement.get(str(c["id"]), {}).get("enrollments", 0),
                "completions": engagement.get(str(c["id"]), {}).get("completions", 0),
            }
            for c in courses
        ),
        key=lambda x: x["enrollments"],
        reverse=True,
    )[:5]

    monthly = []
    for back in range(5, -1, -1):
        month = _month_start(now, back)
        monthly.append({"month": month.strftime("%b %Y"), "count": _count_in_month(month)})

    return {
        "total_courses": len(courses),
        "total_users": len(profiles),
        "total_lessons": len(lessons),
        "total_progress": total_progress,
        "completed_lessons": completed,
        "completion_rate": percent(completed, total_progress),
        "this_month_users": this_month,
        "last_month_users": last_month,
        "user_growth": growth,
        "active_users": len(active_users),
        "top_courses": top_courses,
        "monthly_signups": monthly,
    }


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Back office, mounted at <url_prefix>/admin:
      • dashboard counts, analytics, users
      • course create / update / delete
      • per-course video (lesson) management
    deps:
      - fetch_one(sql, params), fetch_all(sql, params)
      - execute(sql, params), execute_returning(sql, params)
    """
    fetch_one = deps["fetch_one"]
    fetch_all = deps["fetch_all"]
    execute = deps["execute"]
    execute_returning = deps["execute_returning"]

    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    @bp.before_request
    def require_admin():
        if not getattr(g, "user_id", None):
            return redirect(url_for("login", next=mount_prefix))
        if not getattr(g, "is_admin", False):
            return redirect(url_for("index"))
        return None

    def _limited(suffix: str = "", limit: int = ADMIN_ACTIONS_PER_MINUTE) -> bool:
        key = rate_limit_key(request, "admin_actions") + suffix
        return not check_rate_limit(key, limit, 60)

    def _course_form() -> Dict[str, str]:
        return {
            "title": sanitize_input(request.form.get("title")),
            "description": sanitize_input(request.form.get("description")),
            "thumbnail_url": sanitize_input(request.form.get("thumbnail_url")),
        }

    def _video_form() -> Dict[str, Any]:
        return {
            "section_title": sanitize_input(request.form.get("section_title")),
            "title": sanitize_input(request.form.get("title")),
            "description": sanitize_input(request.form.get("description")),
            "youtube_url": (request.form.get("youtube_url") or "").strip(),
            "duration_minutes": (request.form.get("duration") or "").strip(),
            "is_free": request.form.get("is_free") == "on",
        }

    def _input_error(e: ValidationError) -> str:
        return "Input error: " + ", ".join(e.messages)

    # ---------- Dashboard ----------
    @bp.get("/")
    def admin_home():
        stats = admin_stats(fetch_one)
        recent = fetch_all("""
            SELECT id, title, created_at FROM courses ORDER BY created_at DESC LIMIT 5;
        """)
        return render_template(
            "admin/index.html",
            stats=stats,
            recent_courses=recent,
            msg=request.args.get("msg"),
            err=request.args.get("err"),
        )

    # ---------- Courses ----------
    @bp.get("/courses")
    def admin_courses():
        rows = fetch_all("""
            SELECT c.id, c.title, c.description, c.thumbnail_url, c.created_at, c.updated_at,
                   COUNT(DISTINCT s.id) AS section_count,
                   COUNT(l.id)          AS lesson_count
              FROM courses c
              LEFT JOIN sections s ON s.course_id = c.id
              LEFT JOIN lessons  l ON l.section_id = s.id
             GROUP BY c.id
             ORDER BY c.created_at DESC;
        """)
        return render_template(
            "admin/courses.html",
            courses=rows,
            msg=request.args.get("msg"),
            err=request.args.get("err"),
        )

    @bp.get("/courses/new")
    def admin_new_course():
        return render_template("admin/course_form.html", course=None, err=request.args.get("err"))

    @bp.post("/courses")
    def admin_create_course():
        if _limited():
            return redirect(url_for(f"{name}.admin_courses", err=RATE_LIMITED))
        try:
            data = validate_data(CourseIn, _course_form())
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_new_course", err=_input_error(e)))
        try:
            rows = execute_returning("""
                INSERT INTO courses (title, description, thumbnail_url)
                VALUES (%s, %s, %s)
                RETURNING id;
            """, (data.title, data.description, data.thumbnail_url))
        except Exception as e:
            print(f"[admin] course create failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_courses", err="Could not create the course"))
        CacheInvalidationManager.invalidate_course_cache()
        CacheInvalidationManager.invalidate_admin_cache()
        CacheInvalidationManager.invalidate_search_cache()
        new_id = rows[0]["id"] if rows else None
        print(f"[admin] course created: {new_id} by {getattr(g, 'user_email', None)}", flush=True)
        return redirect(url_for(f"{name}.admin_courses", msg="Course created"))

    @bp.get("/courses/<uuid:course_id>/edit")
    def admin_edit_course(course_id):
        data = course_with_stats(fetch_one, fetch_all, course_id)
        if not data["course"]:
            abort(404)
        return render_template(
            "admin/course_form.html",
            course=data["course"],
            sections=data["sections"],
            section_count=data["section_count"],
            lesson_count=data["lesson_count"],
            duration_total=format_duration(data["total_duration"]),
            msg=request.args.get("msg"),
            err=request.args.get("err"),
        )

    @bp.post("/courses/<uuid:course_id>/edit")
    def admin_update_course(course_id):
        if _limited():
            return redirect(url_for(f"{name}.admin_edit_course", course_id=course_id, err=RATE_LIMITED))
        try:
            data = validate_data(CourseUpdate, {**_course_form(), "id": str(course_id)})
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_edit_course", course_id=course_id, err=_input_error(e)))
        try:
            rows = execute_returning("""
                UPDATE courses
                   SET title = %s, description = %s, thumbnail_url = %s, updated_at = now()
                 WHERE id = %s
                RETURNING id;
            """, (data.title, data.description, data.thumbnail_url, data.id))
        except Exception as e:
            print(f"[admin] course update failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_edit_course", course_id=course_id, err="Save failed"))
        if not rows:
            abort(404)
        CacheInvalidationManager.invalidate_course_cache(str(data.id))
        CacheInvalidationManager.invalidate_admin_cache()
        CacheInvalidationManager.invalidate_search_cache()
        CacheInvalidationManager.invalidate_thumbnail_cache()
        return redirect(url_for(f"{name}.admin_edit_course", course_id=course_id, msg="Saved"))

    @bp.post("/courses/<uuid:course_id>/delete")
    def admin_delete_course(course_id):
        if _limited("_delete", ADMIN_DELETES_PER_MINUTE):
            return redirect(url_for(f"{name}.admin_courses", err=RATE_LIMITED))
        try:
            data = validate_data(CourseDelete, {"id": str(course_id)})
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_courses", err=_input_error(e)))
        try:
            # sections, lessons and their progress rows go with it (ON DELETE CASCADE)
            execute("DELETE FROM courses WHERE id = %s;", (data.id,))
        except Exception as e:
            print(f"[admin] course delete failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_courses", err="Could not delete the course"))
        CacheInvalidationManager.invalidate_course_cache(str(data.id))
        CacheInvalidationManager.invalidate_admin_cache()
        CacheInvalidationManager.invalidate_search_cache()
        print(f"[admin] course deleted: {data.id} by {getattr(g, 'user_email', None)}", flush=True)
        return redirect(url_for(f"{name}.admin_courses", msg="Course deleted"))

    # ---------- Videos (lessons) ----------
    @bp.get("/courses/<uuid:course_id>/videos")
    def admin_videos(course_id):
        data = course_with_stats(fetch_one, fetch_all, course_id)
        if not data["course"]:
            abort(404)
        return render_template(
            "admin/videos.html",
            course=data["course"],
            sections=data["sections"],
            lesson_count=data["lesson_count"],
            msg=request.args.get("msg"),
            err=request.args.get("err"),
        )

    def _section_for(course_id, title: str) -> Dict[str, Any]:
        existing = fetch_one(
            "SELECT id, title, order_index FROM sections WHERE course_id = %s AND title = %s LIMIT 1;",
            (course_id, title),
        )
        if existing:
            return existing
        last = fetch_one(
            "SELECT COALESCE(MAX(order_index), 0) AS max_order FROM sections WHERE course_id = %s;",
            (course_id,),
        ) or {}
        section = validate_data(SectionIn, {
            "title": title,
            "course_id": course_id,
            "order_index": int(last.get("max_order") or 0) + 1,
        })
        rows = execute_returning("""
            INSERT INTO sections (course_id, title, order_index)
            VALUES (%s, %s, %s)
            RETURNING id, title, order_index;
        """, (section.course_id, section.title, section.order_index))
        return rows[0]

    @bp.post("/courses/<uuid:course_id>/videos")
    def admin_add_video(course_id):
        if _limited():
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=RATE_LIMITED))
        if not fetch_one("SELECT id FROM courses WHERE id = %s;", (course_id,)):
            abort(404)
        try:
            data = validate_data(VideoIn, _video_form())
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=_input_error(e)))
        try:
            section = _section_for(course_id, data.section_title)
            last = fetch_one(
                "SELECT COALESCE(MAX(order_index), 0) AS max_order FROM lessons WHERE section_id = %s;",
                (section["id"],),
            ) or {}
            rows = execute_returning("""
                INSERT INTO lessons (section_id, title, description, youtube_url, duration, order_index, is_free)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id;
            """, (
                section["id"], data.title, data.description, data.youtube_url,
                data.duration_seconds, int(last.get("max_order") or 0) + 1, data.is_free,
            ))
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=_input_error(e)))
        except Exception as e:
            print(f"[admin] add video failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err="Could not add the video"))
        lesson_id = rows[0]["id"] if rows else None
        CacheInvalidationManager.invalidate_lesson_cache(str(course_id), str(lesson_id) if lesson_id else None)
        CacheInvalidationManager.invalidate_course_cache(str(course_id))
        CacheInvalidationManager.invalidate_search_cache()
        CacheInvalidationManager.invalidate_thumbnail_cache()
        return redirect(url_for(f"{name}.admin_videos", course_id=course_id, msg="Video added"))

    @bp.post("/courses/<uuid:course_id>/videos/<uuid:lesson_id>/edit")
    def admin_update_lesson(course_id, lesson_id):
        if _limited():
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=RATE_LIMITED))
        try:
            data = validate_data(LessonUpdate, _video_form())
        except ValidationError as e:
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=_input_error(e)))
        try:
            rows = execute_returning("""
                UPDATE lessons l
                   SET title = %s, description = %s, youtube_url = %s, duration = %s, is_free = %s
                  FROM sections s
                 WHERE l.id = %s AND s.id = l.section_id AND s.course_id = %s
                RETURNING l.id;
            """, (
                data.title, data.description, data.youtube_url, data.duration_seconds,
                data.is_free, lesson_id, course_id,
            ))
        except Exception as e:
            print(f"[admin] lesson update failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err="Could not update the video"))
        if not rows:
            abort(404)
        CacheInvalidationManager.invalidate_lesson_cache(str(course_id), str(lesson_id))
        CacheInvalidationManager.invalidate_search_cache()
        CacheInvalidationManager.invalidate_thumbnail_cache()
        return redirect(url_for(f"{name}.admin_videos", course_id=course_id, msg="Video updated"))

    @bp.post("/courses/<uuid:course_id>/videos/<uuid:lesson_id>/delete")
    def admin_delete_lesson(course_id, lesson_id):
        if _limited("_delete", ADMIN_DELETES_PER_MINUTE):
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err=RATE_LIMITED))
        try:
            # progress rows and the lesson go in one statement, scoped to the course
            rows = execute_returning("""
                WITH target AS (
                    SELECT l.id FROM lessons l
                      JOIN sections s ON s.id = l.section_id
                     WHERE l.id = %s AND s.course_id = %s
                ), cleared AS (
                    DELETE FROM user_lesson_progress
                     WHERE lesson_id IN (SELECT id FROM target)
                )
                DELETE FROM lessons
                 WHERE id IN (SELECT id FROM target)
                RETURNING id;
            """, (lesson_id, course_id))
        except Exception as e:
            print(f"[admin] lesson delete failed: {e}", flush=True)
            return redirect(url_for(f"{name}.admin_videos", course_id=course_id, err="Could not delete the video"))
        if not rows:
            abort(404)
        CacheInvalidationManager.invalidate_lesson_cache(str(course_id), str(lesson_id))
        CacheInvalidationManager.invalidate_course_cache(str(course_id))
        CacheInvalidationManager.invalidate_search_cache()
        CacheInvalidationManager.invalidate_thumbnail_cache()
        return redirect(url_for(f"{name}.admin_videos", course_id=course_id, msg="Video deleted"))

    # ---------- Users ----------
    @bp.get("/users")
    def admin_users():
        rows = fetch_all("""
            SELECT p.id, p.email, p.full_name, p.avatar_url, p.google_id, p.is_admin,
                   p.created_at, p.updated_at,
                   COUNT(ulp.id) AS total_lessons,
                   COUNT(ulp.id) FILTER (WHERE ulp.completed) AS completed_lessons
              FROM profiles p
              LEFT JOIN user_lesson_progress ulp ON ulp.user_id = p.id
             GROUP BY p.id
             ORDER BY p.created_at DESC;
        """)
        for r in rows:
            r["total_lessons"] = int(r.get("total_lessons") or 0)
            r["completed_lessons"] = int(r.get("completed_lessons") or 0)
            r["progress_percentage"] = percent(r["completed_lessons"], r["total_lessons"])
        return render_template("admin/users.html", users=rows)

    # ---------- Analytics ----------
    @bp.get("/analytics")
    def admin_analytics():
        courses = fetch_all("SELECT id, title, created_at FROM courses;")
        profiles = fetch_all("SELECT id, created_at FROM profiles;")
        lessons = fetch_all("""
            SELECT l.id, s.course_id FROM lessons l JOIN sections s ON s.id = l.section_id;
        """)
        progress = fetch_all("""
            SELECT id, user_id, lesson_id, completed, last_watched_at FROM user_lesson_progress;
        """)
        return render_template(
            "admin/analytics.html",
            analytics=compute_analytics(courses, profiles, lessons, progress),
        )

    return bp
