"""Audit logging helper for consistent audit trail creation."""

from typing import Optional, Dict, Any
from fastapi import Request
from sqlalchemy.orm import Session

from schoolsync.models.audit_log import AuditLog


def _client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def create_audit_log(
    db: Session,
    request: Request,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    user: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Create audit log entry with automatic IP and user agent extraction.

    Args:
        db: Database session
        request: FastAPI Request object (for IP/user-agent extraction)
        action: Action being performed (e.g., 'sync_triggered', 'schedule_deleted')
        entity_type: Type of entity affected ('sync_run', 'sync_schedule')
        entity_id: ID of affected entity
        user: Principal performing the action
        details: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user=user,
        details=details,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    db.add(audit_log)
    db.commit()
    db.refresh(audit_log)

    return audit_log
