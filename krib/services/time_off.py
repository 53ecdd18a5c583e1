"""
Time-off entries on a contractor's scheduling document.

Entries live in contractors.scheduling["timeOff"] and are replaced wholesale
on every write; each write commits together with its audit entry.
"""
import copy
import secrets
import string
import time
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from ..db import commit_or_rollback
from ..errors import NotFound, PolicyViolation
from ..models.models import Contractor, Technician
from .audit import create_audit_log, compute_diff
from .availability import get_time_off_for_tech, normalize_date, tech_time_off
from .time_rules import utc_now

log = structlog.get_logger(__name__)

TIME_OFF_TYPES = ("vacation", "sick", "personal", "holiday", "training", "other")
TIME_OFF_STATUSES = ("approved", "pending", "denied")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_time_off_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"timeoff_{int(time.time() * 1000)}_{suffix}"


def list_time_off(contractor: Contractor) -> List[Dict[str, Any]]:
    return list((contractor.scheduling or {}).get("timeOff") or [])


def time_off_for_technician(contractor: Contractor, tech: Technician) -> List[Dict[str, Any]]:
    """Contractor-level entries for the technician plus any carried on the technician record."""
    return get_time_off_for_tech(list_time_off(contractor), tech.id) + tech_time_off(tech)


def _find_entry(contractor: Contractor, entry_id: str) -> Dict[str, Any]:
    for entry in list_time_off(contractor):
        if entry.get("id") == entry_id:
            return entry
    raise NotFound("Time-off entry not found")


def _check_tech(contractor: Contractor, tech_id) -> None:
    if not any(str(t.id) == str(tech_id) for t in contractor.technicians):
        raise NotFound("Technician not found for this contractor")


def _validated_window(start_raw: Any, end_raw: Any) -> tuple:
    start = normalize_date(start_raw)
    if start is None:
        raise PolicyViolation("A valid start date is required")
    end = normalize_date(end_raw) if end_raw else start
    if end is None:
        raise PolicyViolation("Invalid end date")
    if end < start:
        raise PolicyViolation("End date must be on or after start date")
    return start, end


def _check_choice(value: str, allowed: tuple, label: str) -> str:
    if value not in allowed:
        raise PolicyViolation(f"Invalid {label}: {value}")
    return value


def _write_entries(contractor: Contractor, entries: List[Dict[str, Any]]) -> None:
    scheduling = copy.deepcopy(contractor.scheduling or {})
    scheduling["timeOff"] = entries
    scheduling["updatedAt"] = utc_now().isoformat()
    contractor.scheduling = scheduling
    flag_modified(contractor, "scheduling")


def add_time_off(
    db: Session,
    contractor: Contractor,
    tech_id,
    data: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add a time-off entry for one of the contractor's technicians.

    Args:
        db: Database session
        contractor: Owning contractor
        tech_id: Technician the entry applies to
        data: {startDate, endDate?, type?, status?, notes?}
        actor_id: User performing the change ("system" when absent)
        actor_role: Role recorded on the audit entry

    Returns:
        The stored entry
    """
    _check_tech(contractor, tech_id)
    start, end = _validated_window(data.get("startDate"), data.get("endDate"))
    entry = {
        "id": new_time_off_id(),
        "techId": str(tech_id),
        "startDate": start.isoformat(),
        "endDate": end.isoformat(),
        "type": _check_choice(data.get("type") or "other", TIME_OFF_TYPES, "time-off type"),
        "status": _check_choice(data.get("status") or "approved", TIME_OFF_STATUSES, "time-off status"),
        "notes": data.get("notes") or "",
        "createdAt": utc_now().isoformat(),
        "createdBy": str(actor_id) if actor_id else "system",
    }

    _write_entries(contractor, list_time_off(contractor) + [entry])
    create_audit_log(
        db,
        entity_type="time_off",
        entity_id=entry["id"],
        action="CREATE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api" if actor_id else "system",
        changes_json={"after": entry},
        context={"contractor_id": str(contractor.id), "tech_id": str(tech_id)},
    )
    commit_or_rollback(db, "time off", contractor_id=str(contractor.id))
    log.info("time_off_added", contractor_id=str(contractor.id), entry_id=entry["id"], tech_id=str(tech_id))
    return entry


def remove_time_off(
    db: Session,
    contractor: Contractor,
    entry_id: str,
    actor_id=None,
    actor_role: Optional[str] = None,
) -> Dict[str, Any]:
    entry = _find_entry(contractor, entry_id)
    _write_entries(contractor, [e for e in list_time_off(contractor) if e.get("id") != entry_id])
    create_audit_log(
        db,
        entity_type="time_off",
        entity_id=entry_id,
        action="DELETE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api" if actor_id else "system",
        changes_json={"before": entry},
        context={"contractor_id": str(contractor.id), "tech_id": entry.get("techId")},
    )
    commit_or_rollback(db, "time off", contractor_id=str(contractor.id))
    log.info("time_off_removed", contractor_id=str(contractor.id), entry_id=entry_id)
    return entry


def update_time_off(
    db: Session,
    contractor: Contractor,
    entry_id: str,
    changes: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Replace an entry with its updated version. Removal of the old entry and
    insertion of the new one land in the same commit.
    """
    old = _find_entry(contractor, entry_id)
    changes = {k: v for k, v in changes.items() if v is not None}

    start_raw = changes.get("startDate") or old.get("startDate")
    if changes.get("endDate"):
        end_raw = changes["endDate"]
    elif changes.get("startDate") and normalize_date(old.get("endDate")) and normalize_date(old["endDate"]) < normalize_date(start_raw):
        # Moving the start past the old end collapses the entry to a single day
        end_raw = start_raw
    else:
        end_raw = old.get("endDate") or start_raw
    start, end = _validated_window(start_raw, end_raw)

    updated = dict(old)
    updated.update(changes)
    updated["startDate"] = start.isoformat()
    updated["endDate"] = end.isoformat()
    updated["type"] = _check_choice(updated.get("type") or "other", TIME_OFF_TYPES, "time-off type")
    updated["status"] = _check_choice(updated.get("status") or "approved", TIME_OFF_STATUSES, "time-off status")
    updated["updatedAt"] = utc_now().isoformat()

    remaining = [e for e in list_time_off(contractor) if e.get("id") != entry_id]
    _write_entries(contractor, remaining + [updated])
    create_audit_log(
        db,
        entity_type="time_off",
        entity_id=entry_id,
        action="UPDATE",
        actor_id=actor_id,
        actor_role=actor_role,
        source="api" if actor_id else "system",
        changes_json=compute_diff(old, updated),
        context={"contractor_id": str(contractor.id), "tech_id": updated.get("techId")},
    )
    commit_or_rollback(db, "time off", contractor_id=str(contractor.id))
    log.info("time_off_updated", contractor_id=str(contractor.id), entry_id=entry_id)
    return updated


def entry_payload(model) -> Dict[str, Any]:
    """Map a TimeOffCreate/TimeOffUpdate body to stored camelCase keys."""
    data = model.model_dump(exclude_unset=True)
    mapping = {"start_date": "startDate", "end_date": "endDate", "type": "type", "status": "status", "notes": "notes"}
    out = {}
    for key, target in mapping.items():
        if key in data:
            value = data[key]
            if isinstance(value, date):
                value = value.isoformat()
            elif hasattr(value, "value"):
                value = value.value
            out[target] = value
    return out
