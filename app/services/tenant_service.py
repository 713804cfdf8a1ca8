import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.tenant import MessagingCredential, TenantSession


def normalize_tenant_id(value: str | None) -> str:
    return (value or "").strip().lower()


def create_session(
    db: Session,
    *,
    tenant_id: str,
    ttl_seconds: int | None = None,
    now: datetime | None = None,
) -> TenantSession:
    tenant = normalize_tenant_id(tenant_id)
    if not tenant:
        raise ValueError("tenant_id is required")
    issued_at = now or datetime.now(timezone.utc)
    session_row = TenantSession(
        id=secrets.token_urlsafe(32),
        tenant_id=tenant,
        created_at=issued_at,
        expires_at=issued_at + timedelta(seconds=ttl_seconds or settings.session_ttl_seconds),
    )
    db.add(session_row)
    db.flush()
    return session_row


def resolve_session_tenant(db: Session, session_id: str | None, *, now: datetime | None = None) -> str | None:
    normalized = (session_id or "").strip()
    if not normalized:
        return None
    row = db.execute(select(TenantSession).where(TenantSession.id == normalized)).scalar_one_or_none()
    if not row:
        return None
    if _as_utc(row.expires_at) <= (now or datetime.now(timezone.utc)):
        return None
    return row.tenant_id


def store_messaging_token(
    db: Session,
    *,
    tenant_id: str,
    access_token: str,
    expires_in_seconds: int | None = None,
    provider: str = "solapi",
    now: datetime | None = None,
) -> MessagingCredential:
    tenant = normalize_tenant_id(tenant_id)
    token = (access_token or "").strip()
    if not tenant or not token:
        raise ValueError("tenant_id and access_token are required")
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=expires_in_seconds) if expires_in_seconds else None

    credential = db.execute(
        select(MessagingCredential).where(MessagingCredential.tenant_id == tenant)
    ).scalar_one_or_none()
    if credential:
        credential.provider = provider
        credential.access_token = token
        credential.expires_at = expires_at
        credential.updated_at = issued_at
    else:
        credential = MessagingCredential(
            tenant_id=tenant,
            provider=provider,
            access_token=token,
            expires_at=expires_at,
        )
        db.add(credential)
    db.flush()
    return credential


def get_messaging_credential(db: Session, tenant_id: str) -> MessagingCredential | None:
    return db.execute(
        select(MessagingCredential).where(MessagingCredential.tenant_id == normalize_tenant_id(tenant_id))
    ).scalar_one_or_none()


def is_credential_live(credential: MessagingCredential | None, *, now: datetime | None = None) -> bool:
    if not credential or not (credential.access_token or "").strip():
        return False
    if credential.expires_at is None:
        return True
    return _as_utc(credential.expires_at) > (now or datetime.now(timezone.utc))


def resolve_messaging_tokens(
    db: Session,
    tenant_ids: list[str],
    *,
    now: datetime | None = None,
) -> dict[str, str]:
    """Live bearer tokens keyed by tenant; tenants without one are simply absent."""
    if not tenant_ids:
        return {}
    rows = db.execute(
        select(MessagingCredential).where(MessagingCredential.tenant_id.in_(tenant_ids))
    ).scalars().all()
    current = now or datetime.now(timezone.utc)
    return {row.tenant_id: row.access_token for row in rows if is_credential_live(row, now=current)}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
