from datetime import datetime
from typing import Literal

from pydantic import Field

from app.schemas.common import CamelModel


MessagingProviderName = Literal["solapi"]


class MessagingCredentialIn(CamelModel):
    provider: MessagingProviderName = "solapi"
    access_token: str = Field(min_length=1, max_length=4096)
    expires_in_seconds: int | None = Field(default=None, ge=60, le=90 * 86_400)


class MessagingCredentialStatusOut(CamelModel):
    provider: MessagingProviderName
    connected: bool
    expires_at: datetime | None = None
