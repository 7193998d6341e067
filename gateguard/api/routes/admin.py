from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gateguard.api.deps import require_roles
from gateguard.core.context import AuthContext
from gateguard.db.session import get_db
from gateguard.services.audit_service import list_audit_logs

router = APIRouter()


@router.get("/audit-logs")
def audit_logs(
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_roles("admin")),
):
    return {"data": list_audit_logs(db, ctx.society_name, limit=limit)}
