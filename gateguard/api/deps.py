from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from gateguard.core.context import AuthContext
from gateguard.core.security import decode_token
from gateguard.db.session import get_db
from gateguard.services.gate_pass_scheduler import GatePassScheduler, get_scheduler
from gateguard.services.membership_service import resolve_auth_context
from gateguard.services.push_service import NotificationDispatcher, get_dispatcher

bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> AuthContext:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = decode_token(credentials.credentials)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
    return resolve_auth_context(db, user_id)


def require_roles(*roles: str):
    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if ctx.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return ctx

    return dependency


def get_notification_dispatcher() -> NotificationDispatcher:
    return get_dispatcher()


def get_gate_pass_scheduler() -> GatePassScheduler:
    return get_scheduler()
