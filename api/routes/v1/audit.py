"""
api/routes/v1/audit.py -- Admin-only audit log listing.

Routes:
  GET /api/v1/audit-log  -- paged entries, newest first; filters: action,
                            entity_type, actor_id, startDate, endDate

startDate/endDate bound created_at inclusively (ISO-8601; naive values are UTC).
The admin gate is require_admin(), i.e. role == administrator and nothing else.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, AuditLogResponse
from audit.store import AuditLog
from auth.dependencies import require_admin
from auth.models import Session

router = APIRouter()


@router.get("/audit-log", response_model=AuditLogResponse)
def list_audit_log(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    action: Optional[str] = Query(default=None, max_length=50),
    entity_type: Optional[str] = Query(default=None, max_length=50),
    actor_id: Optional[int] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    session: Session = Depends(require_admin),
) -> AuditLogResponse:
    """Return one page of audit entries. Administrator only."""
    audit: AuditLog = request.app.state.audit
    filters = {
        "action": action,
        "entity_type": entity_type,
        "actor_id": actor_id,
        "start": start_date,
        "end": end_date,
    }
    total = audit.count_entries(**filters)
    entries = audit.list_entries(**filters, limit=limit, offset=(page - 1) * limit)
    return AuditLogResponse(
        logs=[AuditEntryResponse.from_entry(e) for e in entries],
        total=total,
        page=page,
        total_pages=math.ceil(total / limit) if total else 0,
    )
