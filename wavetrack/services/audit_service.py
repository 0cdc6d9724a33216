from __future__ import annotations

from sqlalchemy.orm import Session

from wavetrack.models import AuditLog


def log_audit(
    db: Session,
    *,
    action: str,
    actor: str | None = None,
    wave_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            wave_id=wave_id,
            ip=ip,
            meta=metadata or {},
        )
    )
