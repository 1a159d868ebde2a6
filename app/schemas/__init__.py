# Pydantic schemas (내부 API)
from app.schemas.scrape import (
    ScrapeJobResponse,
    TermResponse,
    TermToggleRequest,
    TriggerRequest,
    TriggerResponse,
)

__all__ = [
    "ScrapeJobResponse",
    "TermResponse",
    "TermToggleRequest",
    "TriggerRequest",
    "TriggerResponse",
]
