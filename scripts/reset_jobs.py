"""
terminal-failed 잡 일괄 리셋(upstream 장애 복구 후 재수집용).
로컬: 프로젝트 루트에서 python scripts/reset_jobs.py [--term=202610] [--permanent-only] [--dry-run]
"""
import argparse
import os
import sys

# 프로젝트 루트 (스크립트 디렉터리의 상위)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.database_sync import get_sync_session, init_sync_db  # noqa: E402
from app.repositories.scrape_job_repository import list_terminal_jobs, reset_job  # noqa: E402
from app.services.scheduling import utcnow  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Reset terminal-failed scrape jobs.")
    parser.add_argument("--term", help="term_code filter (e.g. 202610). Optional.")
    parser.add_argument("--permanent-only", action="store_true", help="Only jobs flagged as permanent failures.")
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    init_sync_db()
    now = utcnow()
    with get_sync_session() as session:
        targets = [
            j
            for j in list_terminal_jobs(session, args.limit)
            if (args.term is None or j.term_code == args.term)
            and (not args.permanent_only or j.permanent_failure)
        ]
        for job in targets:
            print(f"{'[dry-run] ' if args.dry_run else ''}reset job_id={job.id} target={job.target_key} error={job.last_error}")
            if not args.dry_run:
                reset_job(session, job.id, now=now)
    print(f"{len(targets)} job(s) {'would be ' if args.dry_run else ''}reset")


if __name__ == "__main__":
    main()
