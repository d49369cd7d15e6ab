# OzWallet Cancellation Processor
# Queued server deletions. A grace cancellation runs 30 days after the
# request, an immediate one after 5 minutes. Each due row is claimed
# (queued -> processing) before the provisioning call, so a crash
# mid-run never picks the same row up twice.
#
# Failed deletions stay `failed` for an operator; they are not retried.

import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from db import decode_ts, encode_ts, get_engine, q, utcnow
from errors import CancellationConflict, RunSummary, classify
from processors import PeriodicTask
from provisioning import get_provisioning_client
from servers import BillingStatus, set_status_in

log = logging.getLogger("ozwallet")

CANCELLATION_INTERVAL_SEC = float(os.environ.get("OZWALLET_CANCELLATION_INTERVAL_SEC", "30"))
GRACE_DAYS = int(os.environ.get("OZWALLET_GRACE_DAYS", "30"))
IMMEDIATE_MINUTES = int(os.environ.get("OZWALLET_IMMEDIATE_MINUTES", "5"))


class CancellationMode(str, Enum):
    GRACE = "grace"
    IMMEDIATE = "immediate"


class CancellationStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"           # Never stored: the row is removed on success
    FAILED = "failed"


def scheduled_deletion_for(mode, requested_at: datetime) -> datetime:
    mode = CancellationMode(mode)
    if mode == CancellationMode.GRACE:
        return requested_at + timedelta(days=GRACE_DAYS)
    return requested_at + timedelta(minutes=IMMEDIATE_MINUTES)


@dataclass
class ServerCancellation:
    id: int
    server_id: str
    owner_id: str
    mode: CancellationMode
    status: CancellationStatus
    requested_at: datetime
    scheduled_deletion_at: datetime
    server_name: str = ""
    reason: str = ""
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def revocable(self) -> bool:
        return self.mode == CancellationMode.GRACE and self.status == CancellationStatus.QUEUED

    def to_dict(self) -> dict:
        d = asdict(self)
        d["mode"] = self.mode.value
        d["status"] = self.status.value
        for key, value in d.items():
            if isinstance(value, datetime):
                d[key] = value.isoformat()
        d["revocable"] = self.revocable
        return d

    @classmethod
    def from_row(cls, row) -> "ServerCancellation":
        return cls(
            id=int(row["id"]),
            server_id=row["server_id"],
            owner_id=row["owner_id"],
            mode=CancellationMode(row["mode"]),
            status=CancellationStatus(row["status"]),
            requested_at=decode_ts(row["requested_at"]),
            scheduled_deletion_at=decode_ts(row["scheduled_deletion_at"]),
            server_name=row["server_name"] or "",
            reason=row["reason"] or "",
            completed_at=decode_ts(row["completed_at"]),
            error_message=row["error_message"],
        )


# ── Requests ──────────────────────────────────────────────────────────


def _get_in(conn, backend, server_id):
    row = conn.execute(
        q("SELECT * FROM server_cancellations WHERE server_id = ?", backend), (server_id,)
    ).fetchone()
    return ServerCancellation.from_row(row) if row else None


def request_cancellation(server_id: str, owner_id: str, mode="grace", reason: str = "",
                         server_name: str = "", now: Optional[datetime] = None,
                         engine=None) -> ServerCancellation:
    """Queue a server for deletion. One open cancellation per server."""
    mode = CancellationMode(mode)
    engine = engine or get_engine()
    now = now or utcnow()
    with engine.transaction() as (conn, backend):
        existing = _get_in(conn, backend, server_id)
        if existing is not None:
            raise CancellationConflict(
                f"Server {server_id} already has a {existing.status.value} cancellation"
            )
        conn.execute(
            q(
                """INSERT INTO server_cancellations
                   (server_id, owner_id, server_name, reason, mode, status,
                    requested_at, scheduled_deletion_at)
                   VALUES (?, ?, ?, ?, ?, 'queued', ?, ?)""",
                backend,
            ),
            (server_id, owner_id, server_name, reason, mode.value,
             encode_ts(now, backend),
             encode_ts(scheduled_deletion_for(mode, now), backend)),
        )
        cancellation = _get_in(conn, backend, server_id)
    log.info("CANCELLATION REQUESTED server=%s owner=%s mode=%s at=%s",
             server_id, owner_id, mode.value, cancellation.scheduled_deletion_at.isoformat())
    return cancellation


def get_cancellation(server_id: str, engine=None) -> Optional[ServerCancellation]:
    engine = engine or get_engine()
    with engine.connection() as (conn, backend):
        return _get_in(conn, backend, server_id)


def has_open_cancellation(server_id: str, engine=None) -> bool:
    return get_cancellation(server_id, engine=engine) is not None


def list_cancellations(status=None, owner_id: Optional[str] = None,
                       engine=None) -> list[ServerCancellation]:
    engine = engine or get_engine()
    clauses, params = [], []
    if status is not None:
        clauses.append("status = ?")
        params.append(CancellationStatus(status).value)
    if owner_id:
        clauses.append("owner_id = ?")
        params.append(owner_id)
    sql = "SELECT * FROM server_cancellations"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY scheduled_deletion_at ASC, id ASC"
    with engine.connection() as (conn, backend):
        rows = conn.execute(q(sql, backend), tuple(params)).fetchall()
    return [ServerCancellation.from_row(r) for r in rows]


def revoke_cancellation(server_id: str, owner_id: Optional[str] = None,
                        engine=None) -> bool:
    """Withdraw a queued grace cancellation.

    Returns False if the server has no cancellation. Raises
    CancellationConflict if it has one that can no longer be revoked.
    """
    engine = engine or get_engine()
    with engine.transaction() as (conn, backend):
        existing = _get_in(conn, backend, server_id)
        if existing is None or (owner_id and existing.owner_id != owner_id):
            return False
        if not existing.revocable:
            raise CancellationConflict(
                f"Cancellation for server {server_id} is {existing.mode.value}/"
                f"{existing.status.value} and cannot be revoked"
            )
        cur = conn.execute(
            q(
                "DELETE FROM server_cancellations "
                "WHERE id = ? AND mode = 'grace' AND status = 'queued'",
                backend,
            ),
            (existing.id,),
        )
        revoked = cur.rowcount > 0
    if revoked:
        log.info("CANCELLATION REVOKED server=%s", server_id)
    return revoked


def retry_cancellation(server_id: str, now: Optional[datetime] = None, engine=None) -> bool:
    """Operator action: requeue a failed deletion for the next tick."""
    engine = engine or get_engine()
    now = now or utcnow()
    with engine.transaction() as (conn, backend):
        cur = conn.execute(
            q(
                """UPDATE server_cancellations
                   SET status = 'queued', scheduled_deletion_at = ?,
                       error_message = NULL, completed_at = NULL
                   WHERE server_id = ? AND status = 'failed'""",
                backend,
            ),
            (encode_ts(now, backend), server_id),
        )
        retried = cur.rowcount > 0
    if retried:
        log.warning("CANCELLATION REQUEUED server=%s by operator", server_id)
    return retried


# ── Processing ────────────────────────────────────────────────────────


@dataclass
class CancellationRunSummary(RunSummary):
    due: int = 0
    completed: int = 0
    failed: int = 0


def _claim(cancellation_id: int, engine) -> bool:
    with engine.transaction() as (conn, backend):
        cur = conn.execute(
            q(
                "UPDATE server_cancellations SET status = 'processing' "
                "WHERE id = ? AND status = 'queued'",
                backend,
            ),
            (cancellation_id,),
        )
        return cur.rowcount == 1


def _complete(c: ServerCancellation, now: datetime, engine):
    with engine.transaction() as (conn, backend):
        set_status_in(conn, backend, c.server_id, BillingStatus.CANCELLED, now)
        conn.execute(
            q("DELETE FROM server_cancellations WHERE id = ?", backend), (c.id,)
        )


def _fail(c: ServerCancellation, error: str, now: datetime, engine):
    with engine.transaction() as (conn, backend):
        conn.execute(
            q(
                """UPDATE server_cancellations
                   SET status = 'failed', error_message = ?, completed_at = ?
                   WHERE id = ?""",
                backend,
            ),
            (error[:1000], encode_ts(now, backend), c.id),
        )


def process_cancellation(c: ServerCancellation, provisioning, now: datetime,
                         engine) -> CancellationStatus:
    """Delete one claimed server. Returns DONE or FAILED."""
    try:
        if provisioning.server_exists(c.server_id):
            provisioning.delete_server(c.server_id)
        else:
            log.info("Server %s already deleted upstream", c.server_id)
    except Exception as e:
        _fail(c, str(e), now, engine)
        log.warning("CANCELLATION FAILED server=%s (%s): %s", c.server_id, classify(e), e)
        raise
    _complete(c, now, engine)
    log.info("CANCELLATION DONE server=%s mode=%s", c.server_id, c.mode.value)
    return CancellationStatus.DONE


def run_cancellation_cycle(now: Optional[datetime] = None, provisioning=None,
                           engine=None) -> CancellationRunSummary:
    """Process every queued cancellation whose deletion time has arrived."""
    engine = engine or get_engine()
    provisioning = provisioning or get_provisioning_client()
    now = now or utcnow()
    summary = CancellationRunSummary(started_at=now)

    with engine.connection() as (conn, backend):
        rows = conn.execute(
            q(
                """SELECT * FROM server_cancellations
                   WHERE status = 'queued' AND scheduled_deletion_at <= ?
                   ORDER BY scheduled_deletion_at ASC, id ASC""",
                backend,
            ),
            (encode_ts(now, backend),),
        ).fetchall()
    due = [ServerCancellation.from_row(r) for r in rows]
    summary.due = len(due)

    for c in due:
        if not _claim(c.id, engine):
            summary.record("skipped")
            continue
        c.status = CancellationStatus.PROCESSING
        try:
            process_cancellation(c, provisioning, now, engine)
        except Exception as e:
            summary.failed += 1
            summary.record(classify(e))
            continue
        summary.completed += 1
        summary.record("done")

    summary.finished_at = utcnow()
    if summary.due:
        log.info("Cancellation run: due=%d %s", summary.due, summary.describe())
    return summary


def start_cancellation_processor(interval=None, callback=None):
    """Run the cancellation cycle in a background thread every 30 seconds."""
    task = PeriodicTask(
        "cancellation-processor",
        run_cancellation_cycle,
        interval if interval is not None else CANCELLATION_INTERVAL_SEC,
        initial_delay=0,
        callback=callback,
    )
    return task.start()
