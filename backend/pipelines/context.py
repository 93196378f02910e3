from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.core.config import Settings
from app.repositories import Store


@dataclass(slots=True)
class PipelineContext:
    """Runtime context shared by the phases of a scheduled job."""

    run_id: str
    run_time: datetime
    settings: Settings
    store: Store
    dry_run: bool
