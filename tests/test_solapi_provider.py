import asyncio
import json

import httpx
import pytest

from app.services.automation_errors import ProviderFailure
from app.services.messaging_provider import (
    MessageSendRequest,
    SolapiMessagingProvider,
    StubMessagingProvider,
    get_messaging_provider,
)


def _request(message_type: str = "SMS") -> MessageSendRequest:
    return MessageSendRequest(
        tenant_id="kim@example.com",
        access_token="solapi-token",
        message_type=message_type,
        sender="0212345678",
        recipient="01011112222",
        text="Kim님, 배송이 완료되었습니다.",
    )


def _provider(handler) -> SolapiMessagingProvider:
    return SolapiMessagingProvider(
        base_url="https://api.solapi.test/",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_solapi_send_posts_message_with_bearer_token():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messageId": "M4V-1", "statusCode": "2000"})

    result = asyncio.run(_provider(handler).send_message(_request("ATA")))

    assert result.message_id == "M4V-1"
    assert result.provider == "solapi"
    assert len(seen) == 1
    sent = seen[0]
    assert sent.method == "POST"
    assert str(sent.url) == "https://api.solapi.test/messages/v4/send"
    assert sent.headers["Authorization"] == "Bearer solapi-token"
    assert json.loads(sent.content) == {
        "message": {
            "type": "ATA",
            "from": "0212345678",
            "to": "01011112222",
            "text": "Kim님, 배송이 완료되었습니다.",
        }
    }


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(401, json={"errorCode": "Unauthorized"}),
        httpx.Response(200, json={"errorCode": "InvalidPhoneNumber", "errorMessage": "bad number"}),
        httpx.Response(200, json={"statusCode": "3059"}),
    ],
)
def test_solapi_rejections_raise_provider_failure(response):
    with pytest.raises(ProviderFailure):
        asyncio.run(_provider(lambda request: response).send_message(_request()))


def test_solapi_transport_errors_raise_provider_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderFailure) as exc_info:
        asyncio.run(_provider(handler).send_message(_request()))
    assert "failed" in str(exc_info.value)

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderFailure) as exc_info:
        asyncio.run(_provider(slow).send_message(_request()))
    assert "timed out" in str(exc_info.value)


def test_provider_registry():
    assert isinstance(get_messaging_provider("stub"), StubMessagingProvider)
    assert isinstance(get_messaging_provider(" SOLAPI "), SolapiMessagingProvider)
    with pytest.raises(ValueError):
        get_messaging_provider("carrier-pigeon")

    result = asyncio.run(get_messaging_provider("stub").send_message(_request()))
    assert result.status == "sent"
