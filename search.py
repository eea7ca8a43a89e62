# search.py: substring search over courses and lessons + search page/API
from typing import Any, Dict, List, Optional

from flask import Blueprint, jsonify, render_template, request

from cache_invalidation import cached_page, skip_page_cache
from database import table_exists
from validation import (
    SearchQuery, SearchSuggestionsQuery, ValidationError,
    check_rate_limit, rate_limit_key, validate_data,
)

SEARCH_RATE_LIMIT = 20
SUGGEST_RATE_LIMIT = 30
CATEGORIES_RATE_LIMIT = 10
TOO_MANY = "Too many requests. Please wait a moment and try again."

# lesson length buckets, seconds: short < 10 min <= medium <= 30 min < long
DURATION_BUCKETS = {
    "short": (None, 600),
    "medium": (600, 1800),
    "long": (1800, None),
}


def like_pattern(query: str) -> str:
    """``%query%`` with LIKE wildcards in the user's text taken literally."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _duration_clause(bucket: Optional[str]):
    if bucket not in DURATION_BUCKETS:
        return "", ()
    low, high = DURATION_BUCKETS[bucket]
    if low is None:
        return " AND COALESCE(l.duration, 0) < %s", (high,)
    if high is None:
        return " AND COALESCE(l.duration, 0) > %s", (low,)
    return " AND COALESCE(l.duration, 0) BETWEEN %s AND %s", (low, high)


def search_content(fetch_all, query: str, filters: Optional[Dict[str, Any]] = None,
                   limit: int = 20) -> Dict[str, Any]:
    """Courses and lessons whose title or description contains ``query``.

    A blank query matches everything. ``filters`` may carry ``is_free``
    (lessons only) and ``duration`` (short/medium/long lesson bucket);
    ``category`` and ``difficulty`` are accepted but courses carry neither.
    """
    filters = filters or {}
    q = (query or "").strip()
    pattern = like_pattern(q) if q else None

    course_sql = """
        SELECT c.id, c.title, c.description, c.thumbnail_url, c.created_at,
               COUNT(l.id) AS lesson_count,
               COALESCE(SUM(l.duration), 0) AS total_duration
          FROM courses c
          LEFT JOIN sections s ON s.course_id = c.id
          LEFT JOIN lessons l ON l.section_id = s.id
    """
    course_params: List[Any] = []
    if pattern:
        course_sql += " WHERE (c.title ILIKE %s OR c.description ILIKE %s)"
        course_params += [pattern, pattern]
    course_sql += " GROUP BY c.id ORDER BY c.created_at DESC LIMIT %s;"
    course_params.append(limit)
    courses = fetch_all(course_sql, tuple(course_params))
    for c in courses:
        c["lesson_count"] = int(c.get("lesson_count") or 0)
        c["total_duration"] = int(c.get("total_duration") or 0)

    lesson_sql = """
        SELECT l.id, l.title, l.description, l.duration, l.is_free,
               s.title AS section_title, c.id AS course_id, c.title AS course_title
          FROM lessons l
          JOIN sections s ON s.id = l.section_id
          JOIN courses c ON c.id = s.course_id
         WHERE TRUE
    """
    lesson_params: List[Any] = []
    if pattern:
        lesson_sql += " AND (l.title ILIKE %s OR l.description ILIKE %s)"
        lesson_params += [pattern, pattern]
    if filters.get("is_free") is not None:
        lesson_sql += " AND l.is_free = %s"
        lesson_params.append(bool(filters["is_free"]))
    clause, clause_params = _duration_clause(filters.get("duration"))
    lesson_sql += clause
    lesson_params += list(clause_params)
    lesson_sql += " ORDER BY c.title, s.order_index, l.order_index LIMIT %s;"
    lesson_params.append(limit)
    lessons = fetch_all(lesson_sql, tuple(lesson_params))

    return {
        "courses": courses,
        "lessons": lessons,
        "total_results": len(courses) + len(lessons),
    }


def search_suggestions(fetch_all, query: str) -> List[str]:
    if len(query or "") < 2:
        return []
    pattern = like_pattern(query)
    courses = fetch_all("SELECT title FROM courses WHERE title ILIKE %s LIMIT 5;", (pattern,))
    lessons = fetch_all("SELECT title FROM lessons WHERE title ILIKE %s LIMIT 3;", (pattern,))
    seen = set()
    out: List[str] = []
    for row in courses + lessons:
        title = row.get("title")
        if title and title not in seen:
            seen.add(title)
            out.append(title)
    return out[:8]


def categories(fetch_all, fetch_one) -> List[Dict[str, Any]]:
    if not table_exists("course_categories", fetch=fetch_one):
        print("[search] course_categories table missing; run setup_database.py --apply", flush=True)
        return []
    return fetch_all("SELECT id, name, description FROM course_categories ORDER BY name;")


# =============================================================================
# Routes
# =============================================================================
def create_search_blueprint(deps: Dict[str, Any], name: str = "search") -> Blueprint:
    fetch_all = deps["fetch_all"]
    fetch_one = deps["fetch_one"]

    bp = Blueprint(name, __name__)

    @bp.get("/search")
    @cached_page("search", tags=("courses", "lessons"))
    def search_page():
        raw = {k: v for k, v in request.args.items() if v != ""}
        results = None
        err = None
        params = None
        try:
            params = validate_data(SearchQuery, raw)
        except ValidationError as e:
            err = "; ".join(e.messages)
        if params is not None and (params.q or params.is_free is not None or params.duration):
            try:
                results = search_content(fetch_all, params.q, params.filters(), params.limit)
            except Exception as e:
                print(f"[search] page query failed: {e}", flush=True)
                err = "Search failed. Please try again."
                skip_page_cache()
        return render_template(
            "search.html",
            q=(params.q if params else request.args.get("q", "")),
            params=params,
            results=results,
            err=err,
        )

    @bp.get("/api/search")
    def api_search():
        if not check_rate_limit(rate_limit_key(request, "search"), SEARCH_RATE_LIMIT, 60):
            return jsonify({"error": TOO_MANY}), 429
        raw = {
            "q": request.args.get("q") or "",
            "category": request.args.get("category"),
            "duration": request.args.get("duration"),
            "difficulty": request.args.get("difficulty"),
            "isFree": request.args.get("isFree"),
            "limit": request.args.get("limit") or "20",
        }
        try:
            params = validate_data(SearchQuery, raw)
        except ValidationError as e:
            return jsonify({"error": "Invalid parameters", "details": e.details()}), 400
        try:
            return jsonify(search_content(fetch_all, params.q, params.filters(), params.limit))
        except Exception as e:
            print(f"[search] api query failed: {e}", flush=True)
            return jsonify({"error": "Search failed"}), 500

    @bp.get("/api/search/suggestions")
    def api_suggestions():
        if not check_rate_limit(rate_limit_key(request, "suggest"), SUGGEST_RATE_LIMIT, 60):
            return jsonify({"error": TOO_MANY}), 429
        try:
            params = validate_data(SearchSuggestionsQuery, {"q": request.args.get("q") or ""})
        except ValidationError as e:
            return jsonify({"error": "Invalid parameters", "details": e.details()}), 400
        try:
            return jsonify(search_suggestions(fetch_all, params.q))
        except Exception as e:
            print(f"[search] suggestions failed: {e}", flush=True)
            return jsonify({"error": "Could not load suggestions"}), 500

    @bp.get("/api/search/categories")
    def api_categories():
        if not check_rate_limit(rate_limit_key(request, "categories"), CATEGORIES_RATE_LIMIT, 60):
            return jsonify({"error": TOO_MANY}), 429
        try:
            return jsonify(categories(fetch_all, fetch_one))
        except Exception as e:
            print(f"[search] categories failed: {e}", flush=True)
            return jsonify({"error": "Could not load categories"}), 500

    return bp
