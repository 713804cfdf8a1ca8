import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from app.core.config import settings
from app.core.observability import automation_logger, log_event, mask_phone
from app.services.automation_errors import ProviderFailure


SOLAPI_SEND_PATH = "/messages/v4/send"


@dataclass(frozen=True)
class MessageSendRequest:
    tenant_id: str
    access_token: str
    message_type: str
    sender: str
    recipient: str
    text: str


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str
    status: str


class MessagingProvider(Protocol):
    name: str

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubMessagingProvider:
    name = "stub"

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        log_event(
            automation_logger,
            "messaging.send.stub",
            tenant=request.tenant_id,
            message_type=request.message_type,
            recipient=mask_phone(request.recipient),
        )
        return MessageSendResult(
            provider=self.name,
            message_id=f"msg-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


class SolapiMessagingProvider:
    name = "solapi"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        body = {
            "message": {
                "type": request.message_type,
                "from": request.sender,
                "to": request.recipient,
                "text": request.text,
            }
        }
        headers = {"Authorization": f"Bearer {request.access_token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(SOLAPI_SEND_PATH, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderFailure(f"SOLAPI {request.message_type} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderFailure(f"SOLAPI {request.message_type} request failed: {exc}") from exc

        if not response.is_success:
            raise ProviderFailure(
                f"SOLAPI rejected {request.message_type} with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        data = _json_or_empty(response)
        if data.get("errorCode"):
            raise ProviderFailure(
                f"SOLAPI {request.message_type} error {data.get('errorCode')}: {data.get('errorMessage') or ''}".strip(),
                status_code=response.status_code,
            )
        status_code = str(data.get("statusCode") or "")
        if status_code and not status_code.startswith("2"):
            raise ProviderFailure(
                f"SOLAPI {request.message_type} not accepted (statusCode {status_code})",
                status_code=response.status_code,
            )

        return MessageSendResult(
            provider=self.name,
            message_id=str(data.get("messageId") or ""),
            status=status_code or "accepted",
        )


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        parsed = response.json()
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


_MESSAGING_PROVIDERS: dict[str, Callable[[], MessagingProvider]] = {
    "solapi": lambda: SolapiMessagingProvider(
        base_url=settings.solapi_base_url,
        timeout_seconds=settings.solapi_timeout_seconds,
    ),
    "stub": StubMessagingProvider,
}


def get_messaging_provider(name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    factory = _MESSAGING_PROVIDERS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return factory()
