from fastapi import Cookie, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.services.tenant_service import resolve_session_tenant

SESSION_HEADER = "X-Session-ID"
SESSION_COOKIE = "sessionId"


def get_current_tenant(
    x_session_id: str | None = Header(default=None, alias=SESSION_HEADER),
    session_cookie: str | None = Cookie(default=None, alias=SESSION_COOKIE),
    db: Session = Depends(get_db),
) -> str:
    session_id = x_session_id or session_cookie
    if not session_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    tenant = resolve_session_tenant(db, session_id)
    if not tenant:
        raise HTTPException(status_code=401, detail="Session expired or invalid")
    return tenant
