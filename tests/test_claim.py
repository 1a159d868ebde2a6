"""Job Store claim 테스트. 상호 배제·우선순위·적격 조건·stale 회수."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.models import ScrapeJob, Term
from app.models.scrape_job import KIND_SUBJECT, subject_target_key
from app.repositories import scrape_job_repository as jobs
from app.services.scheduling import MAX_PRIORITY

LEASE = timedelta(minutes=5)


def _reload(session, job_id: int) -> ScrapeJob:
    return session.get(ScrapeJob, job_id, populate_existing=True)


def test_same_candidate_only_one_winner(session_factory, make_term, make_job, now) -> None:
    """두 워커가 같은 후보를 골라도 조건부 UPDATE는 한 쪽만 성공."""
    make_term()
    job = make_job()
    a, b = session_factory(), session_factory()
    try:
        assert jobs.select_candidate(a, now, LEASE)[0] == job.id
        assert jobs.select_candidate(b, now, LEASE)[0] == job.id
        locked = jobs.try_lock(a, job.id, "worker-a", now, LEASE)
        a.commit()
        assert locked.locked_by == "worker-a"
        with pytest.raises(jobs.ClaimConflict):
            jobs.try_lock(b, job.id, "worker-b", now, LEASE)
        b.rollback()
    finally:
        a.close()
        b.close()


@pytest.mark.parametrize("claimants", [2, 8])
def test_concurrent_claims_have_exactly_one_winner(file_session_factory, now, claimants) -> None:
    """스레드 N개가 각자 연결로 동시에 claim_next → 정확히 1개만 Claim."""
    with file_session_factory() as s:
        s.add(Term(code="202610", description="Fall 2026", tier="active", scrape_enabled=True))
        s.add(
            ScrapeJob(
                kind=KIND_SUBJECT,
                target_key=subject_target_key("202610", "CS"),
                term_code="202610",
                subject="CS",
                priority=1000,
                next_run_at=now - timedelta(minutes=1),
            )
        )
        s.commit()

    barrier = threading.Barrier(claimants)

    def claim(i: int):
        with file_session_factory() as s:
            barrier.wait()
            return jobs.claim_next(s, f"worker-{i}", now=now, lease_timeout=LEASE)

    with ThreadPoolExecutor(max_workers=claimants) as executor:
        claims = list(executor.map(claim, range(claimants)))

    winners = [c for c in claims if c is not None]
    assert len(winners) == 1
    with file_session_factory() as s:
        job = s.execute(select(ScrapeJob)).scalar_one()
    assert job.locked_by == winners[0].token
    assert job.locked_at == now
    assert job.retry_count == 0


def test_claim_next_moves_past_taken_jobs(session, make_term, make_job, now) -> None:
    """각 claim은 서로 다른 잡. 더 없으면 None."""
    make_term()
    make_job(subject="CS")
    make_job(subject="MATH")
    first = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    second = jobs.claim_next(session, "w2", now=now, lease_timeout=LEASE)
    assert first is not None and second is not None
    assert first.job.id != second.job.id
    assert jobs.claim_next(session, "w3", now=now, lease_timeout=LEASE) is None


def test_claim_order_priority_then_next_run_then_id(session, make_term, make_job, now) -> None:
    make_term()
    low = make_job(subject="ART", priority=10)
    older = make_job(subject="BIO", priority=500, next_run_at=now - timedelta(hours=2))
    newer = make_job(subject="CHEM", priority=500, next_run_at=now - timedelta(minutes=1))
    order = [jobs.claim_next(session, f"w{i}", now=now, lease_timeout=LEASE).job.id for i in range(3)]
    assert order == [older.id, newer.id, low.id]


def test_manual_override_claimed_first(session, make_term, make_job, now) -> None:
    make_term()
    make_job(subject="CS", priority=1500)
    manual = make_job(subject="HIST", priority=MAX_PRIORITY, manual_override=True)
    claim = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    assert claim.job.id == manual.id


def test_disabled_term_excluded(session, make_term, make_job, now) -> None:
    make_term("202510", enabled=False)
    make_job("202510", priority=MAX_PRIORITY)
    assert jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE) is None


def test_entity_job_without_term_is_eligible(session, make_job, now) -> None:
    job = make_job(None, subject="X")
    claim = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    assert claim.job.id == job.id


def test_terminal_and_future_jobs_excluded(session, make_term, make_job, now) -> None:
    make_term()
    make_job(subject="CS", retry_count=3, max_retries=3)
    make_job(subject="MATH", next_run_at=now + timedelta(minutes=5))
    assert jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE) is None
    assert jobs.count_due(session, now=now, lease_timeout=LEASE) == 0


def test_fresh_lease_not_reclaimed(session, make_term, make_job, now) -> None:
    make_term()
    make_job(locked_at=now - timedelta(minutes=1), locked_by="w0")
    assert jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE) is None


def test_stale_lease_reclaimed_counts_as_failure(session, make_term, make_job, now) -> None:
    """만료 lease 회수: retry_count +1, 새 소유자, 이전 소유자 기록."""
    make_term()
    job = make_job(locked_at=now - timedelta(minutes=10), locked_by="crashed-worker")
    claim = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    assert claim.job.id == job.id
    assert claim.reclaimed_from == "crashed-worker"
    fresh = _reload(session, job.id)
    assert fresh.retry_count == 1
    assert fresh.locked_by == "w1"
    assert fresh.locked_at == now


def test_stale_lease_at_ceiling_left_for_reaper(session, make_term, make_job, now) -> None:
    make_term()
    make_job(locked_at=now - timedelta(minutes=10), locked_by="w0", retry_count=2, max_retries=3)
    assert jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE) is None


def test_release_requires_ownership(session, make_term, make_job, now) -> None:
    make_term()
    job = make_job()
    claim = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    assert not jobs.release_success(
        session,
        job.id,
        "someone-else",
        next_run_at=now + timedelta(minutes=15),
        priority=1000,
        volatility=0.0,
        consecutive_zero_changes=0,
        fetched=0,
        now=now,
    )
    assert jobs.release_success(
        session,
        job.id,
        claim.token,
        next_run_at=now + timedelta(minutes=15),
        priority=1000,
        volatility=0.0,
        consecutive_zero_changes=0,
        fetched=0,
        now=now,
    )
    session.commit()
    fresh = _reload(session, job.id)
    assert fresh.locked_at is None
    assert fresh.last_success_at == now


def test_queue_summary(session, make_term, make_job, now) -> None:
    make_term()
    make_job(subject="A")
    make_job(subject="B", next_run_at=now + timedelta(hours=1))
    make_job(subject="C", locked_at=now, locked_by="w1")
    make_job(subject="D", locked_at=now - timedelta(hours=1), locked_by="w2")
    make_job(subject="E", retry_count=3)
    summary = jobs.queue_summary(session, now=now, lease_timeout=LEASE)
    assert summary["total"] == 5
    assert summary["due"] == 1
    assert summary["waiting"] == 1
    assert summary["claimed"] == 1
    assert summary["stale"] == 1
    assert summary["terminal_failed"] == 1
