import httpx
import pytest

from explainer_core.domain.exceptions import ProviderResponseError, ValidationError
from explainer_core.domain.models import ChatMessage, ChatRequest
from explainer_core.providers.openai_client import OpenAIClient


class SettingsStub:
    http_timeout = 1.0
    openai_base_url = "https://api.openai.com/v1"
    openai_model = None


def _request():
    return ChatRequest(
        messages=[
            ChatMessage(role="system", content="sys"),
            ChatMessage(role="user", content="hi"),
        ],
        max_tokens=50,
        temperature=0.7,
    )


class Resp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class FakeStreamResponse:
    def __init__(self, lines, status_code=200, body=b""):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body

    def iter_lines(self):
        for line in self._lines:
            yield line

    def read(self):
        return self._body


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def _patch_client(monkeypatch, post=None, stream=None, captured=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update({"url": url, "payload": json, "headers": headers})
            if post is None:
                raise AssertionError("post should not be called")
            return post

        def stream(self, method, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update({"url": url, "payload": json, "headers": headers})
            if stream is None:
                raise AssertionError("stream should not be called")
            return StreamContext(stream)

    monkeypatch.setattr("httpx.Client", Client)


def test_openai_client_requires_credential():
    with pytest.raises(ValidationError):
        OpenAIClient("", SettingsStub())
    with pytest.raises(ValidationError):
        OpenAIClient(None, SettingsStub())


def test_openai_client_complete(monkeypatch):
    captured = {}
    resp = Resp(payload={
        "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
    })
    _patch_client(monkeypatch, post=resp, captured=captured)

    res = OpenAIClient("sk-test-key", SettingsStub()).complete(_request())

    assert res.text == "ok"
    assert res.usage.total_tokens == 2
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test-key"
    payload = captured["payload"]
    assert payload["model"] == "gpt-4-turbo"
    assert payload["stream"] is False
    assert payload["max_tokens"] == 50
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


def test_openai_client_http_error_is_raw(monkeypatch):
    body = '{"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}}'
    _patch_client(monkeypatch, post=Resp(status_code=401, text=body))

    with pytest.raises(ProviderResponseError) as info:
        OpenAIClient("sk-test-key", SettingsStub()).complete(_request())

    assert info.value.status_code == 401
    assert info.value.message == "Incorrect API key provided"
    assert "invalid_api_key" in info.value.body


def test_openai_client_stream(monkeypatch):
    captured = {}
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "hel"}}]}',
        "",
        "data: not-json",
        'data: {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
    ]
    _patch_client(monkeypatch, stream=FakeStreamResponse(lines), captured=captured)

    chunks = list(OpenAIClient("sk-test-key", SettingsStub()).stream(_request()))

    assert [c.text for c in chunks] == ["", "hel", "lo"]
    assert chunks[-1].finish_reason == "stop"
    assert captured["payload"]["stream"] is True


def test_openai_client_stream_content_filter(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "par"}}]}',
        'data: {"choices": [{"index": 0, "delta": {}, "finish_reason": "content_filter"}]}',
    ]
    _patch_client(monkeypatch, stream=FakeStreamResponse(lines))

    stream = OpenAIClient("sk-test-key", SettingsStub()).stream(_request())
    assert next(iter(stream)).text == "par"
    with pytest.raises(ProviderResponseError) as info:
        list(stream)
    assert "content_filter" in info.value.body


def test_openai_client_stream_http_error(monkeypatch):
    body = b'{"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}}'
    _patch_client(monkeypatch, stream=FakeStreamResponse([], status_code=429, body=body))

    with pytest.raises(ProviderResponseError) as info:
        list(OpenAIClient("sk-test-key", SettingsStub()).stream(_request()))
    assert info.value.status_code == 429
    assert info.value.message == "Rate limit reached"


def test_openai_client_network_error_propagates(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("httpx.Client", Client)
    with pytest.raises(httpx.ConnectError):
        OpenAIClient("sk-test-key", SettingsStub()).complete(_request())
