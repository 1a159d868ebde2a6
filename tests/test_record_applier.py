"""content_hash 기반 diff/persist 테스트."""

import pytest
from sqlalchemy import func, select

from app.core.catalog_http import PermanentResponseError
from app.models import CatalogRecord
from app.repositories.scrape_result_repository import normalize_counts
from app.services.catalog_client import Listing
from app.services.record_applier import ApplyCounts, ContentHashApplier, content_hash

SCOPE = "202610:CS"


def test_first_apply_creates_then_detects_changes(session) -> None:
    applier = ContentHashApplier()
    first = applier.apply(
        session,
        Listing(SCOPE, [{"crn": "1", "seats": 30}, {"crn": "2", "seats": 20}]),
    )
    assert first == ApplyCounts(created=2, changed=0, unchanged=0)

    second = applier.apply(
        session,
        Listing(SCOPE, [{"crn": "1", "seats": 29}, {"crn": "2", "seats": 20}, {"crn": "3", "seats": 10}]),
    )
    assert second == ApplyCounts(created=1, changed=1, unchanged=1)
    session.commit()

    count = session.execute(select(func.count(CatalogRecord.id)).where(CatalogRecord.scope == SCOPE)).scalar_one()
    assert count == 3
    row = session.execute(
        select(CatalogRecord).where(CatalogRecord.scope == SCOPE, CatalogRecord.external_id == "1")
    ).scalar_one()
    assert row.payload == {"crn": "1", "seats": 29}
    assert row.content_hash == content_hash({"seats": 29, "crn": "1"})


def test_scopes_are_independent(session) -> None:
    applier = ContentHashApplier()
    applier.apply(session, Listing(SCOPE, [{"crn": "1"}]))
    counts = applier.apply(session, Listing("202610:MATH", [{"crn": "1"}]))
    assert counts.created == 1


def test_empty_listing(session) -> None:
    assert ContentHashApplier().apply(session, Listing(SCOPE, [])) == ApplyCounts(0, 0, 0)


@pytest.mark.parametrize("record", [{"title": "no id"}, "not-an-object", {"crn": ""}])
def test_unidentifiable_record_is_permanent(session, record) -> None:
    with pytest.raises(PermanentResponseError):
        ContentHashApplier().apply(session, Listing(SCOPE, [record]))


def test_normalize_counts() -> None:
    counts = normalize_counts(10, 2, 3)
    assert (counts.fetched, counts.created, counts.changed, counts.unchanged) == (10, 2, 3, 5)
    assert counts.touched == 5
    clamped = normalize_counts(-1, -4, -9)
    assert (clamped.fetched, clamped.created, clamped.changed, clamped.unchanged) == (0, 0, 0, 0)
    over = normalize_counts(3, 1, 10)
    assert over.unchanged == 0
