from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.observability import automation_logger, log_event
from app.core.security_current import get_current_tenant
from app.models.tenant import MessagingCredential
from app.schemas.messaging import MessagingCredentialIn, MessagingCredentialStatusOut
from app.services.tenant_service import get_messaging_credential, is_credential_live, store_messaging_token

router = APIRouter(prefix="/messaging", tags=["messaging"])


def _status_out(credential: MessagingCredential | None) -> MessagingCredentialStatusOut:
    return MessagingCredentialStatusOut(
        provider="solapi",
        connected=is_credential_live(credential),
        expires_at=credential.expires_at if credential else None,
    )


@router.put(
    "/credentials",
    response_model=MessagingCredentialStatusOut,
    summary="Store the tenant's messaging provider token",
    responses=error_responses(401, 422, 500),
)
def put_messaging_credentials(
    payload: MessagingCredentialIn,
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    credential = store_messaging_token(
        db,
        tenant_id=tenant,
        access_token=payload.access_token,
        expires_in_seconds=payload.expires_in_seconds,
        provider=payload.provider,
    )
    db.commit()
    db.refresh(credential)
    log_event(
        automation_logger,
        "messaging.credentials.stored",
        tenant=tenant,
        provider=credential.provider,
        expires_at=credential.expires_at,
    )
    return _status_out(credential)


@router.get(
    "/credentials",
    response_model=MessagingCredentialStatusOut,
    summary="Messaging provider connection status",
    responses=error_responses(401, 500),
)
def get_messaging_credentials(
    db: Session = Depends(get_db),
    tenant: str = Depends(get_current_tenant),
):
    return _status_out(get_messaging_credential(db, tenant))
