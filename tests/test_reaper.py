"""Lease Reaper 테스트."""

from datetime import timedelta

from app.models.scrape_job import ScrapeJob
from app.repositories import scrape_job_repository as jobs
from app.services.reaper import reap_stale_leases
from app.services.retry_policy import FailureKind, decide_failure

LEASE = timedelta(minutes=5)


def test_reaps_expired_lease(session, make_term, make_job, emitter, now) -> None:
    make_term()
    job = make_job(locked_at=now - timedelta(minutes=10), locked_by="crashed-worker")
    summary = reap_stale_leases(session, now=now, lease_timeout=LEASE, emitter=emitter)
    session.commit()
    assert (summary.scanned, summary.reaped, summary.terminal) == (1, 1, 0)
    fresh = session.get(ScrapeJob, job.id, populate_existing=True)
    assert fresh.locked_at is None
    assert fresh.locked_by is None
    assert fresh.retry_count == 1
    assert fresh.next_run_at == now + timedelta(seconds=30)
    assert "crashed-worker" in fresh.last_error
    assert emitter.kinds() == ["reaped"]
    assert emitter.events[0].details["previous_owner"] == "crashed-worker"


def test_reap_at_ceiling_marks_terminal(session, make_term, make_job, emitter, now) -> None:
    make_term()
    job = make_job(locked_at=now - timedelta(minutes=10), locked_by="w0", retry_count=2, max_retries=3)
    summary = reap_stale_leases(session, now=now, lease_timeout=LEASE, emitter=emitter)
    session.commit()
    assert summary.terminal == 1
    fresh = session.get(ScrapeJob, job.id, populate_existing=True)
    assert fresh.retry_count == 3
    assert fresh.is_terminal
    assert emitter.kinds() == ["reaped", "terminal"]


def test_fresh_leases_untouched(session, make_term, make_job, emitter, now) -> None:
    make_term()
    job = make_job(locked_at=now - timedelta(minutes=1), locked_by="w1")
    summary = reap_stale_leases(session, now=now, lease_timeout=LEASE, emitter=emitter)
    assert summary.scanned == 0
    fresh = session.get(ScrapeJob, job.id, populate_existing=True)
    assert fresh.locked_by == "w1"
    assert emitter.events == []


def test_reap_skips_job_reclaimed_meanwhile(session, make_term, make_job, now) -> None:
    """조회 이후 다른 워커가 재claim해 locked_at이 바뀐 잡은 회수하지 않음."""
    make_term()
    old_locked_at = now - timedelta(minutes=10)
    job = make_job(locked_at=old_locked_at, locked_by="w0")
    claim = jobs.claim_next(session, "w1", now=now, lease_timeout=LEASE)
    assert claim.job.id == job.id
    seen = ScrapeJob(id=job.id, target_key=job.target_key, locked_at=old_locked_at, locked_by="w0")
    decision = decide_failure(1, 3, kind=FailureKind.TRANSIENT, now=now)
    assert not jobs.reap(session, seen, decision, now=now)
    session.commit()
    assert session.get(ScrapeJob, job.id, populate_existing=True).locked_by == "w1"


def test_reap_keeps_trigger_sent_after_lease(session, make_term, make_job, emitter, now) -> None:
    """만료된 lease 동안 들어온 트리거: retry 증가·백오프 없이 트리거 시각에 재실행."""
    make_term()
    job = make_job(locked_at=now - timedelta(minutes=10), locked_by="w0", retry_count=2, max_retries=3)
    triggered_at = now - timedelta(minutes=2)
    jobs.trigger_jobs(
        session,
        [jobs.JobSpec(kind=job.kind, target_key=job.target_key, priority=0, term_code="202610", subject="CS")],
        now=triggered_at,
        max_retries=3,
    )
    session.commit()
    summary = reap_stale_leases(session, now=now, lease_timeout=LEASE, emitter=emitter)
    session.commit()
    assert (summary.reaped, summary.terminal) == (1, 0)
    fresh = session.get(ScrapeJob, job.id, populate_existing=True)
    assert fresh.locked_at is None
    assert fresh.retry_count == 0
    assert fresh.next_run_at == triggered_at
    assert emitter.kinds() == ["reaped"]
