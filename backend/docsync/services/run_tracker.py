"""Sync run records, the run lease and the incremental-fetch watermark.

Only one pipeline run may be active at a time. :meth:`RunTracker.start_run`
claims the ``sync_lease`` row (``SELECT ... FOR UPDATE`` on Postgres) before
creating the run, so two schedulers firing at once cannot both start. A run
that stopped heart-beating for ``RUN_STALE_MINUTES`` loses the lease.

The watermark comes from the last run that finished without recorded
errors. A run with any error text, including a single failed project, is
never a watermark source; the next run then re-scans from the previous
clean run and change detection filters out what was already committed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from docsync.config import settings
from docsync.errors import RunStateError
from docsync.models_sqlalchemy.models import SyncLease, SyncRun
from docsync.utils.logger import logger


LEASE_NAME = "documentation_pipeline"


class RunPhase(str, Enum):
    STARTED = "STARTED"
    FETCHING = "FETCHING"
    DIFFING = "DIFFING"
    DOCUMENTING = "DOCUMENTING"
    PUBLISHING = "PUBLISHING"
    COMMITTING = "COMMITTING"
    SUMMARIZING = "SUMMARIZING"
    FINISHED = "FINISHED"


@dataclass
class SyncRunStats:
    tenants_processed: int = 0
    recipes_fetched: int = 0
    recipes_changed: int = 0
    recipes_documented: int = 0
    errors: Optional[str] = None
    summary: Optional[str] = None
    # completed | partial | error; derived from ``errors`` when omitted.
    status: Optional[str] = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timezone-aware columns back as naive datetimes.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_watermark(value: Optional[datetime]) -> Optional[str]:
    """ISO8601 UTC string ending with ``Z`` as expected by ``updated_after``."""
    if value is None:
        return None
    return _as_utc(value).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RunTracker:
    def __init__(self, db: Session, *, stale_minutes: Optional[int] = None):
        self.db = db
        self.stale_minutes = settings.RUN_STALE_MINUTES if stale_minutes is None else stale_minutes

    def _is_fresh(self, run: SyncRun, now: datetime) -> bool:
        heartbeat = _as_utc(run.heartbeat_at) or _as_utc(run.started_at)
        return heartbeat is not None and heartbeat >= now - timedelta(minutes=self.stale_minutes)

    def get_active_run(self) -> Optional[SyncRun]:
        """Return the run holding the lease if it is still alive."""
        lease = self.db.get(SyncLease, LEASE_NAME)
        if lease is None or lease.run_id is None:
            return None
        run = self.db.get(SyncRun, lease.run_id)
        if run and run.finished_at is None and self._is_fresh(run, _now_utc()):
            return run
        return None

    def start_run(self) -> Optional[int]:
        """Claim the lease and create a run; None if a live run holds it."""
        now = _now_utc()
        lease = (
            self.db.query(SyncLease)
            .filter(SyncLease.name == LEASE_NAME)
            .with_for_update()
            .first()
        )
        if lease is None:
            lease = SyncLease(name=LEASE_NAME, run_id=None)
            self.db.add(lease)
            self.db.flush()

        if lease.run_id is not None:
            holder = self.db.get(SyncRun, lease.run_id)
            if holder is not None and holder.finished_at is None:
                if self._is_fresh(holder, now):
                    self.db.commit()
                    logger.info(f"Sync run already active run_id={holder.id}; skipping")
                    return None
                holder.status = "stale"
                holder.phase = RunPhase.FINISHED.value
                holder.finished_at = now
                holder.errors = (holder.errors + "; " if holder.errors else "") + "Run lease expired without heartbeat"
                logger.warning(f"Taking over stale run lease from run_id={holder.id}")

        run = SyncRun(
            status="running",
            phase=RunPhase.STARTED.value,
            started_at=now,
            heartbeat_at=now,
            tenants_processed=0,
            recipes_fetched=0,
            recipes_changed=0,
            recipes_documented=0,
        )
        self.db.add(run)
        self.db.flush()
        lease.run_id = run.id
        lease.acquired_at = now
        self.db.commit()
        logger.info(f"Started sync run id={run.id}")
        return run.id

    def _get_open_run(self, run_id: int) -> SyncRun:
        run = self.db.get(SyncRun, run_id)
        if run is None:
            raise RunStateError(f"Sync run {run_id} does not exist")
        if run.finished_at is not None:
            raise RunStateError(f"Sync run {run_id} is already finished")
        return run

    def heartbeat(self, run_id: int, phase: Optional[RunPhase] = None) -> None:
        run = self._get_open_run(run_id)
        run.heartbeat_at = _now_utc()
        if phase is not None and run.phase != phase.value:
            logger.info(f"Sync run id={run_id} phase {run.phase} -> {phase.value}")
            run.phase = phase.value
        self.db.commit()

    def finish_run(self, run_id: int, stats: SyncRunStats) -> SyncRun:
        """Finalize counters, errors and summary; allowed once per run."""
        run = self._get_open_run(run_id)
        now = _now_utc()
        errors = stats.errors or None
        run.tenants_processed = stats.tenants_processed
        run.recipes_fetched = stats.recipes_fetched
        run.recipes_changed = stats.recipes_changed
        run.recipes_documented = stats.recipes_documented
        run.errors = errors
        run.summary = stats.summary
        run.status = stats.status or ("error" if errors else "completed")
        run.phase = RunPhase.FINISHED.value
        run.finished_at = now
        run.heartbeat_at = now

        lease = self.db.get(SyncLease, LEASE_NAME)
        if lease is not None and lease.run_id == run.id:
            lease.run_id = None
            lease.acquired_at = None
        self.db.commit()

        if errors:
            logger.error(f"Sync run id={run.id} finished status={run.status}: {errors}")
        else:
            logger.info(f"Sync run id={run.id} finished status={run.status}")
        return run

    def get_last_successful_run(self) -> Optional[SyncRun]:
        return (
            self.db.query(SyncRun)
            .filter(
                SyncRun.finished_at.isnot(None),
                or_(SyncRun.errors.is_(None), SyncRun.errors == ""),
            )
            .order_by(SyncRun.finished_at.desc(), SyncRun.id.desc())
            .first()
        )

    def last_successful_run_finished_at(self) -> Optional[datetime]:
        run = self.get_last_successful_run()
        return _as_utc(run.finished_at) if run else None

    def next_watermark(
        self,
        *,
        source: Optional[str] = None,
        overlap_minutes: Optional[int] = None,
    ) -> Optional[datetime]:
        """Lower bound for the next ``updated_after`` filter.

        ``source`` selects ``started_at`` (default) or ``finished_at`` of the
        last clean run; the overlap window is subtracted from it.
        """
        source = source or settings.WATERMARK_SOURCE
        overlap = settings.WATERMARK_OVERLAP_MINUTES if overlap_minutes is None else overlap_minutes
        run = self.get_last_successful_run()
        if run is None:
            return None
        base = _as_utc(run.finished_at if source == "finished_at" else run.started_at)
        return base - timedelta(minutes=max(0, overlap))
