# ORM models
from app.models.base import Base
from app.models.catalog_record import CatalogRecord
from app.models.review_profile import ReviewProfile
from app.models.scrape_job import ScrapeJob, ScrapeJobResult
from app.models.term import Term, TermSubject

__all__ = [
    "Base",
    "CatalogRecord",
    "ReviewProfile",
    "ScrapeJob",
    "ScrapeJobResult",
    "Term",
    "TermSubject",
]
