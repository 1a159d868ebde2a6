"""
Worker Pool 진입점. python -m app.pool

SIGTERM/SIGINT 시 새 claim만 멈추고 종료. 진행 중 잡의 lease는 Lease Reaper가 회수.
DB 연결 불가로 워커가 멈추면 종료 코드 1(supervisor 재시작).
"""

import logging
import signal
import sys

from app.core.config import settings
from app.core.database_sync import init_sync_db
from app.core.logging_config import init_sentry, setup_logging
from app.services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def main() -> int:
    setup_logging()
    init_sentry("pool")
    init_sync_db()

    pool = WorkerPool(settings.worker_pool_size)

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, stopping worker pool", signum)
        pool.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    pool.start()
    code = pool.wait()
    logger.info("Worker pool exited with code %d", code)
    return code


if __name__ == "__main__":
    sys.exit(main())
