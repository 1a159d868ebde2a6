"""
upstream 학기 목록 동기화 + 스케줄러 tick 1회 (초기 구동·로컬 확인용).
로컬: 프로젝트 루트에서 python scripts/sync_terms.py [--no-tick]
"""
import argparse
import os
import sys

# 프로젝트 루트 (스크립트 디렉터리의 상위)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.database_sync import get_sync_session, init_sync_db  # noqa: E402
from app.core.logging_config import setup_logging  # noqa: E402
from app.services.catalog_client import CatalogClient  # noqa: E402
from app.services.scheduler_service import run_tick, sync_terms  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync terms from upstream and run one scheduler tick.")
    parser.add_argument("--no-tick", action="store_true", help="Only sync terms, skip the scheduler tick.")
    args = parser.parse_args()

    setup_logging()
    init_sync_db()
    client = CatalogClient()
    with get_sync_session() as session:
        count = sync_terms(session, client)
    print(f"Synced {count} terms")
    if args.no_tick:
        return
    with get_sync_session() as session:
        summary = run_tick(session, client)
    print(f"Tick: {summary.as_dict()}")


if __name__ == "__main__":
    main()
