# setup_database.py: apply schema.sql and report which tables are present
import argparse
import sys
from pathlib import Path

from database import execute, fetch_one, table_exists

SCHEMA_FILE = Path(__file__).with_name("schema.sql")
REQUIRED_TABLES = ["profiles", "courses", "sections", "lessons", "user_lesson_progress"]
OPTIONAL_TABLES = ["course_categories"]


def apply_schema(path: Path = SCHEMA_FILE, run=execute) -> None:
    sql = path.read_text(encoding="utf-8")
    print(f"[setup] applying {path.name}", flush=True)
    run(sql)


def check_tables(fetch=fetch_one) -> dict:
    status = {}
    for name in REQUIRED_TABLES + OPTIONAL_TABLES:
        present = table_exists(name, fetch=fetch)
        status[name] = present
        mark = "ok" if present else ("missing (optional)" if name in OPTIONAL_TABLES else "MISSING")
        print(f"[setup] {name}: {mark}", flush=True)
    return status


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create or verify the course portal tables.")
    parser.add_argument("--apply", action="store_true", help=f"run {SCHEMA_FILE.name} before checking")
    args = parser.parse_args(argv)

    if args.apply:
        apply_schema()
    status = check_tables()
    missing = [t for t in REQUIRED_TABLES if not status.get(t)]
    if missing:
        print(f"[setup] missing tables: {', '.join(missing)}; rerun with --apply", flush=True)
        return 1
    print("[setup] database ready", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
