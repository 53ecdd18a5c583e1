"""
Audit trail for scheduling changes.

Every write stages an AuditLog row on the caller's session, so the entry
lands in the same commit as the change it records. Rows carry a SHA-256
hash over their canonical JSON, keyed by a secret, so tampering can be
detected later with verify_integrity().
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # UUIDs, dates and enums become strings inside JSON columns
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _canonical(fields: Dict[str, Any]) -> str:
    present = {k: v for k, v in fields.items() if v is not None}
    return json.dumps(present, sort_keys=True, default=str)


def integrity_hash(fields: Dict[str, Any], secret: Optional[str] = None) -> Optional[str]:
    secret = settings.jwt_secret if secret is None else secret
    if not secret:
        return None
    return hashlib.sha256(f"{_canonical(fields)}:{secret}".encode()).hexdigest()


def _hashed_fields(entry: AuditLog, timestamp: datetime) -> Dict[str, Any]:
    return {
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "source": entry.source,
        "timestamp_utc": timestamp.replace(tzinfo=None).isoformat(),
        "changes": entry.changes_json,
        "context": entry.context,
    }


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Stage an audit entry on the session. The caller commits.

    Args:
        db: Database session
        entity_type: job|time_off|daily_progress
        entity_id: Id of the changed entity (job id, time-off entry id, progress id)
        action: CREATE|UPDATE|DELETE|ASSIGN|OFFER|ACCEPT|PREFERENCES|REQUEST_NEW_TIMES|EXPIRE|HANDOFF|PAUSE|RESUME
        actor_id: User who made the change; None for system sweeps
        actor_role: admin|contractor|technician|homeowner|system
        source: api|system|cron (defaults to system)
        changes_json: {field: {before, after}} diff
        context: Extra facts worth keeping (contractor id, slot ids, day number)
        integrity_secret: Key for the integrity hash (defaults to JWT_SECRET)
    """
    timestamp = datetime.utcnow()
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=timestamp,
        context=_jsonable(context),
    )
    entry.integrity_hash = integrity_hash(_hashed_fields(entry, timestamp), integrity_secret)
    db.add(entry)
    return entry


def verify_integrity(entry: AuditLog, secret: Optional[str] = None) -> bool:
    """True when the stored hash still matches the entry's contents."""
    if not entry.integrity_hash:
        return False
    expected = integrity_hash(_hashed_fields(entry, entry.timestamp_utc), secret)
    return expected == entry.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    return query.order_by(AuditLog.timestamp_utc.desc()).offset(offset).limit(limit).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """{key: {"before", "after"}} for every key whose value changed."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }
