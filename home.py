# home.py
from typing import Any, Dict, Optional

from flask import abort, g, render_template

from cache_invalidation import cached_page, skip_page_cache
from catalog import (
    all_courses_with_thumbnails, course_with_stats, first_video_thumbnail,
    format_duration, latest_courses,
)
from image_utils import is_valid_image_url, placeholder_class, sanitize_image_url
from progress import all_user_progress, course_progress

FEATURED_COURSES = 6


def course_cover(course: Dict[str, Any], fallback: Optional[str] = None) -> Optional[str]:
    """The course's own thumbnail when usable, else the first video's artwork."""
    own = sanitize_image_url(course.get("thumbnail_url"))
    if own and is_valid_image_url(own):
        return own
    return fallback


def register_home_routes(app, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/"                      -> endpoint 'index'
      - GET "/courses"               -> endpoint 'courses'
      - GET "/courses/<uuid:id>"     -> endpoint 'course_detail'
      - GET "/privacy", "/terms", "/help"
    """
    fetch_one = deps["fetch_one"]
    fetch_all = deps["fetch_all"]

    # ----- Routes -----
    @cached_page("home", tags=("courses", "thumbnails"))
    def index():
        courses = []
        err = None
        try:
            courses = latest_courses(fetch_all, FEATURED_COURSES)
        except Exception as e:
            print(f"[index] featured courses failed: {e}", flush=True)
            err = "Courses are unavailable right now."
            skip_page_cache()
        for c in courses:
            c["cover_url"] = course_cover(c)
            c["placeholder"] = placeholder_class(c.get("title"))
        return render_template("home.html", courses=courses, err=err)

    @cached_page("courses", tags=("courses", "thumbnails"))
    def courses():
        data = all_courses_with_thumbnails(fetch_all)
        progress_by_course: Dict[str, Any] = {}
        if getattr(g, "user_id", None):
            progress_by_course = all_user_progress(fetch_all, g.user_id)["progress_data"]
        rows = data["courses"]
        if data["error"]:
            skip_page_cache()
        for c in rows:
            cid = str(c["id"])
            c["cover_url"] = course_cover(c, data["thumbnails"].get(cid))
            c["placeholder"] = placeholder_class(c.get("title"))
            c["progress"] = progress_by_course.get(cid)
        return render_template(
            "courses.html",
            courses=rows,
            err="Courses could not be loaded." if data["error"] else None,
        )

    @cached_page("courseDetail", tags=("courses", "lessons"))
    def course_detail(course_id):
        data = course_with_stats(fetch_one, fetch_all, course_id)
        course = data["course"]
        if not course:
            if data["error"] and data["error"] != "Course not found":
                abort(500)
            abort(404)
        sections = data["sections"]
        course["cover_url"] = course_cover(course, first_video_thumbnail(sections))
        course["placeholder"] = placeholder_class(course.get("title"))
        course["duration_total"] = format_duration(data["total_duration"])
        course["lessons_count"] = data["lesson_count"]
        course["sections_count"] = data["section_count"]

        first_lesson = None
        for sec in sections:
            if sec["lessons"]:
                first_lesson = sec["lessons"][0]
                break

        progress = None
        if getattr(g, "user_id", None):
            try:
                progress = course_progress(fetch_one, fetch_all, course_id, g.user_id)
            except Exception as e:
                print(f"[course] progress lookup failed: {e}", flush=True)

        completed_ids = set()
        if progress:
            completed_ids = {
                str(l.lesson_id) for s in progress.sections for l in s.lessons if l.completed
            }

        return render_template(
            "course_detail.html",
            course=course,
            sections=sections,
            first_lesson=first_lesson,
            progress=progress,
            completed_ids=completed_ids,
        )

    @cached_page("privacy")
    def privacy():
        return render_template("privacy.html")

    @cached_page("terms")
    def terms():
        return render_template("terms.html")

    @cached_page("help")
    def help_page():
        return render_template("help.html")

    app.add_url_rule("/", view_func=index, methods=["GET"], endpoint="index")
    app.add_url_rule("/courses", view_func=courses, methods=["GET"], endpoint="courses")
    app.add_url_rule("/courses/<uuid:course_id>", view_func=course_detail, methods=["GET"], endpoint="course_detail")
    app.add_url_rule("/privacy", view_func=privacy, methods=["GET"], endpoint="privacy")
    app.add_url_rule("/terms", view_func=terms, methods=["GET"], endpoint="terms")
    app.add_url_rule("/help", view_func=help_page, methods=["GET"], endpoint="help")
