import asyncio

import httpx
import pytest

from relay_core.domain.exceptions import (
    BackendFaultError,
    NetworkError,
    RateLimitError,
    StreamFault,
    ValidationError,
)
from relay_core.domain.models import Message
from relay_core.providers.workers_ai import WorkersAIClient


class SettingsStub:
    workers_ai_account_id = "acct"
    workers_ai_api_token = "token-1234567890"
    workers_ai_base_url = "https://api.example.test/client/v4"
    http_timeout = 1.0


MESSAGES = [Message(role="system", content="sys"), Message(role="user", content="hi")]


def _client_factory(calls, response=None, stream_response=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            calls.append(("init", kw))

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            calls.append(("post", url, json, headers))
            if error is not None:
                raise error
            return response

        def stream(self, method, url, json=None, headers=None):
            calls.append(("stream", url, json, headers))
            if error is not None:
                raise error
            return StreamContext(stream_response)

    return Client


class Resp:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class StreamResp:
    def __init__(self, status_code=200, chunks=(), body=b"", fail_with=None):
        self.status_code = status_code
        self._chunks = list(chunks)
        self._body = body
        self._fail_with = fail_with

    async def aread(self):
        return self._body

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            raise self._fail_with


class StreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *a):
        return False


async def _collect(stream):
    return [chunk async for chunk in stream]


def test_complete_returns_response_text(monkeypatch):
    calls = []
    resp = Resp(data={"result": {"response": "hello"}, "success": True})
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, response=resp))

    text = asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat"))

    assert text == "hello"
    _, url, payload, headers = calls[1]
    assert url == "https://api.example.test/client/v4/accounts/acct/ai/run/@cf/meta/llama-2-7b-chat-int8"
    assert payload["stream"] is False
    assert payload["messages"][1] == {"role": "user", "content": "hi"}
    assert headers["Authorization"] == "Bearer token-1234567890"


def test_complete_falls_back_through_result_fields(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.AsyncClient",
        _client_factory(calls, response=Resp(data={"result": {"content": "from content"}})),
    )
    assert asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat")) == "from content"

    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, response=Resp(data={"result": {"odd": 1}})))
    assert asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat")) == '{"odd": 1}'


def test_complete_maps_rate_limit_and_backend_fault(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, response=Resp(status_code=429, text="slow")))
    with pytest.raises(RateLimitError):
        asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat"))

    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, response=Resp(status_code=500, text="oops")))
    with pytest.raises(BackendFaultError) as exc:
        asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat"))
    assert exc.value.extra["backend_status"] == 500
    assert exc.value.details == "oops"


def test_complete_network_error(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, error=httpx.ConnectError("refused")))
    with pytest.raises(NetworkError):
        asyncio.run(WorkersAIClient(SettingsStub()).complete(MESSAGES, "chat"))


def test_complete_requires_credentials():
    class NoToken(SettingsStub):
        workers_ai_api_token = None

    with pytest.raises(ValidationError) as exc:
        asyncio.run(WorkersAIClient(NoToken()).complete(MESSAGES, "chat"))
    assert exc.value.code == "MISSING_API_KEY"


def test_stream_yields_raw_chunks(monkeypatch):
    calls = []
    chunks = [b'data: {"response": "a"}\n\n', b"", b"data: [DONE]\n\n"]
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, stream_response=StreamResp(chunks=chunks)))

    got = asyncio.run(_collect(WorkersAIClient(SettingsStub()).complete_streaming(MESSAGES, "chat")))

    assert got == [chunks[0], chunks[2]]
    assert calls[1][2]["stream"] is True


def test_stream_http_errors(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "httpx.AsyncClient",
        _client_factory(calls, stream_response=StreamResp(status_code=429, body=b"limited")),
    )
    with pytest.raises(RateLimitError) as exc:
        asyncio.run(_collect(WorkersAIClient(SettingsStub()).complete_streaming(MESSAGES, "chat")))
    assert exc.value.details == "limited"

    monkeypatch.setattr(
        "httpx.AsyncClient",
        _client_factory(calls, stream_response=StreamResp(status_code=503, body=b"down")),
    )
    with pytest.raises(BackendFaultError):
        asyncio.run(_collect(WorkersAIClient(SettingsStub()).complete_streaming(MESSAGES, "chat")))


def test_stream_interrupted_after_first_chunk_is_stream_fault(monkeypatch):
    calls = []
    resp = StreamResp(chunks=[b'data: {"response": "a"}\n\n'], fail_with=httpx.ReadError("reset"))
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, stream_response=resp))
    with pytest.raises(StreamFault):
        asyncio.run(_collect(WorkersAIClient(SettingsStub()).complete_streaming(MESSAGES, "chat")))


def test_stream_unreachable_before_first_chunk_is_network_error(monkeypatch):
    calls = []
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(calls, error=httpx.ConnectError("refused")))
    with pytest.raises(NetworkError):
        asyncio.run(_collect(WorkersAIClient(SettingsStub()).complete_streaming(MESSAGES, "chat")))
