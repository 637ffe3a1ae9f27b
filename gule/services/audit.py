"""
Audit trail for marketplace mutations.

Services receive an ``AuditLogger`` through their constructor. The database
implementation writes through its own session so a failed audit insert never
rolls back the business transaction that triggered it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from gule.config import Config
from gule.database import SessionLocal
from gule.identity import Identity
from gule.models import AuditLog
from gule.observability import increment_counter


@dataclass
class AuditEntry:
    action: str
    resource: str
    resource_id: Optional[int] = None
    actor_id: Optional[int] = None
    actor_type: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLogger:
    """Base port. ``log`` never raises."""

    def log(
        self,
        action: str,
        resource: str,
        resource_id: Optional[int] = None,
        actor: Optional[Identity] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        try:
            self.write(self._build_entry(action, resource, resource_id, actor, details, success))
        except Exception:
            logging.getLogger(__name__).exception("Audit backend failed to record %s", action)
            increment_counter("audit_failures_total", labels={"action": action})
            return
        increment_counter("audit_entries_total", labels={"action": action})

    def write(self, entry: AuditEntry) -> None:
        raise NotImplementedError

    @staticmethod
    def _build_entry(
        action: str,
        resource: str,
        resource_id: Optional[int],
        actor: Optional[Identity],
        details: Optional[Dict[str, Any]],
        success: bool,
    ) -> AuditEntry:
        ip_address = user_agent = None
        if has_request_context():
            ip_address = request.remote_addr
            user_agent = (request.user_agent.string or None) if request.user_agent else None
        return AuditEntry(
            action=action,
            resource=resource,
            resource_id=resource_id,
            actor_id=actor.id if actor else None,
            actor_type=actor.user_type.value if actor else None,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
            success=success,
        )


class DatabaseAuditLogger(AuditLogger):
    def __init__(self, session_factory=SessionLocal) -> None:
        self.session_factory = session_factory

    def write(self, entry: AuditEntry) -> None:
        session = self.session_factory()
        try:
            session.add(
                AuditLog(
                    actor_id=entry.actor_id,
                    actor_type=entry.actor_type,
                    action=entry.action,
                    resource=entry.resource,
                    resource_id=entry.resource_id,
                    details=entry.details,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    success=entry.success,
                    created_at=entry.created_at,
                )
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()


class LoggingAuditLogger(AuditLogger):
    def __init__(self) -> None:
        self.logger = logging.getLogger("gule.audit")

    def write(self, entry: AuditEntry) -> None:
        self.logger.info(
            "AUDIT %s %s:%s",
            entry.action,
            entry.resource,
            entry.resource_id,
            extra={
                "actor_id": entry.actor_id,
                "actor_type": entry.actor_type,
                "details": entry.details,
                "success": entry.success,
            },
        )


class InMemoryAuditLogger(AuditLogger):
    """Keeps entries in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []
        self._lock = Lock()

    def write(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def actions(self) -> List[str]:
        return [entry.action for entry in self.entries]

    def clear(self) -> None:
        with self._lock:
            self.entries.clear()


class NullAuditLogger(AuditLogger):
    def write(self, entry: AuditEntry) -> None:
        return None


_BACKENDS = {
    "database": DatabaseAuditLogger,
    "logging": LoggingAuditLogger,
    "memory": InMemoryAuditLogger,
    "none": NullAuditLogger,
}

_default_logger: Optional[AuditLogger] = None
_default_lock = Lock()


def build_audit_logger(backend: Optional[str] = None) -> AuditLogger:
    name = (backend or Config.AUDIT_LOG_BACKEND).strip().lower()
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown audit log backend: {name}") from None


def get_audit_logger() -> AuditLogger:
    """Process-wide logger for the configured backend."""
    global _default_logger
    if _default_logger is None:
        with _default_lock:
            if _default_logger is None:
                _default_logger = build_audit_logger()
    return _default_logger
