from __future__ import annotations

import time
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import OperationalError

from gule.database import SessionLocal, engine
from gule.models import EscrowStatus, EscrowTransaction, utcnow


def check_database_health() -> Dict[str, object]:
    """Attempt a lightweight DB query to ensure connectivity."""
    started = time.perf_counter()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}
    return {"status": "UP", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}


def check_escrow_backlog(now: Optional[datetime] = None) -> Dict[str, object]:
    """Held escrows past their hold period that auto-release has not picked up yet."""
    session = SessionLocal()
    try:
        overdue = (
            session.query(func.count(EscrowTransaction.escrowID))
            .filter(
                EscrowTransaction.status == EscrowStatus.HELD,
                EscrowTransaction.hold_until < (now or utcnow()),
            )
            .scalar()
        )
    except OperationalError as exc:
        return {"status": "UNKNOWN", "detail": str(exc)}
    finally:
        session.close()
    return {"status": "UP", "overdue_holds": overdue or 0}
