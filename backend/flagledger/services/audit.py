from sqlalchemy.orm import Session

from flagledger.models.schema import AuditLog


def audit(
    session: Session,
    actor_user_id: str | None,
    action: str,
    target_type: str,
    target_id: str,
    details: dict | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction so it commits or rolls back with the change."""
    entry = AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
    )
    session.add(entry)
    return entry
