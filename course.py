# course.py
from typing import Any, Dict

from flask import abort, g, redirect, render_template, request, url_for

from cache_invalidation import cached_page
from catalog import course_with_content, find_lesson, flatten_lessons, format_duration, prev_next_lessons
from image_utils import extract_youtube_video_id, youtube_embed_url
from progress import course_progress, lesson_progress


def register_course_routes(app, deps: Dict[str, Any]):
    """
    Registers:
      - GET "/courses/<uuid:course_id>/lessons/<uuid:lesson_id>" -> endpoint 'lesson'

    Free lessons are open to everyone; the rest need a signed-in user.
    """
    fetch_one = deps["fetch_one"]
    fetch_all = deps["fetch_all"]

    @cached_page("lessonDetail", tags=("lessons",))
    def lesson(course_id, lesson_id):
        data = course_with_content(fetch_one, fetch_all, course_id)
        course = data["course"]
        if not course:
            abort(404)
        sections = data["sections"]
        section, current = find_lesson(sections, lesson_id)
        if current is None:
            abort(404)

        user_id = getattr(g, "user_id", None)
        if not current.get("is_free") and not user_id:
            return redirect(url_for("login", next=request.path))

        prev_lesson, next_lesson = prev_next_lessons(sections, lesson_id)
        flat = flatten_lessons(sections)
        position = next(
            (i for i, (_, l) in enumerate(flat) if str(l.get("id")) == str(lesson_id)), 0
        )

        saved = None
        progress = None
        if user_id:
            try:
                saved = lesson_progress(fetch_one, user_id, lesson_id)
                progress = course_progress(fetch_one, fetch_all, course_id, user_id)
            except Exception as e:
                print(f"[lesson] progress lookup failed: {e}", flush=True)

        completed_ids = set()
        if progress:
            completed_ids = {
                str(l.lesson_id) for s in progress.sections for l in s.lessons if l.completed
            }

        return render_template(
            "lesson.html",
            course=course,
            sections=sections,
            section=section,
            lesson=current,
            video_id=extract_youtube_video_id(current.get("youtube_url")),
            embed_url=youtube_embed_url(current.get("youtube_url")),
            duration_label=format_duration(current.get("duration")),
            prev_lesson=prev_lesson,
            next_lesson=next_lesson,
            lesson_number=position + 1,
            lessons_total=len(flat),
            saved_progress=saved,
            progress=progress,
            completed_ids=completed_ids,
        )

    app.add_url_rule(
        "/courses/<uuid:course_id>/lessons/<uuid:lesson_id>",
        view_func=lesson, methods=["GET"], endpoint="lesson",
    )
