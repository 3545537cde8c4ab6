from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import TYPE_CHECKING, Any

import psycopg

from .models import Vital

if TYPE_CHECKING:
    from .db import PostgresStore

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"


def banded_status(value: float, healthy_at: float, degraded_at: float) -> str:
    if value >= healthy_at:
        return HEALTHY
    if value >= degraded_at:
        return DEGRADED
    return CRITICAL


def accuracy_status(value: float) -> str:
    return banded_status(value, 0.55, 0.45)


def integrity_status(ratio: float) -> str:
    return banded_status(ratio, 0.8, 0.5)


def collector_status(real_ticks: int, expected_symbols: int, min_coverage: float) -> str:
    if expected_symbols <= 0:
        return HEALTHY
    if real_ticks / expected_symbols >= min_coverage:
        return HEALTHY
    return DEGRADED


class VitalReporter:
    """Best-effort vital writer; never raises into the phase it reports on."""

    def __init__(self, store: "PostgresStore") -> None:
        self.store = store

    def pulse(
        self,
        name: str,
        status: str,
        value: float,
        metadata: dict[str, Any] | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> Vital:
        vital = Vital(
            name=name,
            status=status,
            value=float(value),
            metadata=metadata or {},
            updated_at=now_utc or datetime.now(timezone.utc),
        )
        try:
            self.store.upsert_vital(vital)
        except psycopg.Error:
            logger.warning("vital_write_failed name=%s status=%s", name, status, exc_info=True)
            try:
                self.store.rollback()
            except psycopg.Error:
                logger.warning("rollback_failed after=vital_write name=%s", name, exc_info=True)
        return vital
