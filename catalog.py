# catalog.py: course / section / lesson queries and ordering helpers
from typing import Any, Callable, Dict, List, Optional, Tuple

from image_utils import extract_youtube_video_id, youtube_thumbnail_urls

FetchAll = Callable[..., List[Dict[str, Any]]]
FetchOne = Callable[..., Optional[Dict[str, Any]]]

COURSE_COLUMNS = "id, title, description, thumbnail_url, created_at, updated_at"

# =============================================================================
# Ordering
# =============================================================================
def section_sort_key(section: Any) -> Tuple[Any, Any]:
    if isinstance(section, dict):
        return (section.get("order_index") or 0, section.get("title") or "")
    return (0, "")

def lesson_sort_key(lesson: Any) -> Tuple[Any, Any]:
    if isinstance(lesson, dict):
        return (lesson.get("order_index") or 0, lesson.get("title") or "")
    return (0, "")

def sort_sections(sections: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Copy of ``sections`` ordered by order_index, each with ordered lessons."""
    out = []
    for sec in sorted(sections or [], key=section_sort_key):
        sec_copy = dict(sec)
        sec_copy["lessons"] = sorted(sec.get("lessons") or [], key=lesson_sort_key)
        out.append(sec_copy)
    return out

def flatten_lessons(sections: List[Dict[str, Any]]) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
    return [(sec, lesson) for sec in sections for lesson in (sec.get("lessons") or [])]

def find_lesson(sections: List[Dict[str, Any]], lesson_id: Any):
    for sec, lesson in flatten_lessons(sections):
        if str(lesson.get("id")) == str(lesson_id):
            return sec, lesson
    return None, None

def prev_next_lessons(sections: List[Dict[str, Any]], lesson_id: Any):
    flat = [lesson for _, lesson in flatten_lessons(sections)]
    for i, lesson in enumerate(flat):
        if str(lesson.get("id")) == str(lesson_id):
            prev_l = flat[i - 1] if i > 0 else None
            next_l = flat[i + 1] if i + 1 < len(flat) else None
            return prev_l, next_l
    return None, None

def total_duration(sections: List[Dict[str, Any]]) -> int:
    total = 0
    for _, lesson in flatten_lessons(sections):
        dur = lesson.get("duration") or 0
        if isinstance(dur, int):
            total += max(0, dur)
    return total

def format_duration(total_sec: Optional[int]) -> str:
    if not total_sec: return "—"
    m, _ = divmod(int(total_sec), 60)
    h, m = divmod(m, 60)
    if h: return f"{h}h {m}m"
    return f"{m}m"

def first_video_thumbnail(sections: List[Dict[str, Any]]) -> Optional[str]:
    """maxres artwork of the first section-opening lesson with a YouTube URL."""
    for sec in sorted(sections or [], key=section_sort_key):
        lessons = sorted(sec.get("lessons") or [], key=lesson_sort_key)
        if not lessons:
            continue
        video_id = extract_youtube_video_id(lessons[0].get("youtube_url"))
        if video_id:
            return youtube_thumbnail_urls(video_id)["maxres"]
    return None

def _group_section_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Fold section LEFT JOIN lesson rows into nested section dicts."""
    sections: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        sid = str(r["section_id"])
        sec = sections.get(sid)
        if sec is None:
            sec = sections[sid] = {
                "id": r["section_id"],
                "course_id": r.get("course_id"),
                "title": r.get("section_title"),
                "order_index": r.get("section_order"),
                "lessons": [],
            }
        if r.get("lesson_id") is None:
            continue
        sec["lessons"].append({
            "id": r["lesson_id"],
            "section_id": r["section_id"],
            "title": r.get("lesson_title"),
            "description": r.get("lesson_description"),
            "youtube_url": r.get("youtube_url"),
            "duration": r.get("duration"),
            "order_index": r.get("lesson_order"),
            "is_free": bool(r.get("is_free")),
        })
    return sort_sections(list(sections.values()))

_SECTION_LESSON_SQL = """
    SELECT s.course_id, s.id AS section_id, s.title AS section_title, s.order_index AS section_order,
           l.id AS lesson_id, l.title AS lesson_title, l.description AS lesson_description,
           l.youtube_url, l.duration, l.order_index AS lesson_order, l.is_free
      FROM sections s
      LEFT JOIN lessons l ON l.section_id = s.id
"""

# =============================================================================
# Queries
# =============================================================================
def all_courses_with_thumbnails(fetch_all: FetchAll) -> Dict[str, Any]:
    """All courses newest first plus {course_id: first-video thumbnail}.

    Two queries regardless of course count. Failures are logged and returned
    under ``error`` with whatever was loaded so far.
    """
    try:
        courses = fetch_all(f"SELECT {COURSE_COLUMNS} FROM courses ORDER BY created_at DESC;")
    except Exception as e:
        print(f"[catalog] course list failed: {e}", flush=True)
        return {"courses": [], "thumbnails": {}, "error": str(e)}

    if not courses:
        return {"courses": [], "thumbnails": {}, "error": None}

    try:
        rows = fetch_all(
            _SECTION_LESSON_SQL + " WHERE s.course_id = ANY(%s) AND l.id IS NOT NULL;",
            ([c["id"] for c in courses],),
        )
    except Exception as e:
        print(f"[catalog] lesson lookup failed: {e}", flush=True)
        return {"courses": courses, "thumbnails": {}, "error": str(e)}

    by_course: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows:
        by_course.setdefault(str(r["course_id"]), []).append(r)

    thumbnails: Dict[str, str] = {}
    for course_id, course_rows in by_course.items():
        thumb = first_video_thumbnail(_group_section_rows(course_rows))
        if thumb:
            thumbnails[course_id] = thumb
    return {"courses": courses, "thumbnails": thumbnails, "error": None}


def course_with_content(fetch_one: FetchOne, fetch_all: FetchAll, course_id: Any) -> Dict[str, Any]:
    try:
        course = fetch_one(f"SELECT {COURSE_COLUMNS} FROM courses WHERE id = %s;", (course_id,))
        if not course:
            return {"course": None, "sections": [], "error": "Course not found"}
        rows = fetch_all(_SECTION_LESSON_SQL + " WHERE s.course_id = %s;", (course_id,))
    except Exception as e:
        print(f"[catalog] course {course_id} load failed: {e}", flush=True)
        return {"course": None, "sections": [], "error": str(e)}
    return {"course": course, "sections": _group_section_rows(rows), "error": None}


def course_with_stats(fetch_one: FetchOne, fetch_all: FetchAll, course_id: Any) -> Dict[str, Any]:
    data = course_with_content(fetch_one, fetch_all, course_id)
    sections = data["sections"]
    data["section_count"] = len(sections)
    data["lesson_count"] = len(flatten_lessons(sections))
    data["total_duration"] = total_duration(sections)
    return data


def latest_courses(fetch_all: FetchAll, limit: int = 6) -> List[Dict[str, Any]]:
    return fetch_all(
        f"SELECT {COURSE_COLUMNS} FROM courses ORDER BY created_at DESC LIMIT %s;",
        (limit,),
    )
