import httpx
import pytest

from explainer_core.domain.exceptions import (
    ContentFilteredError,
    InvalidCredentialError,
    NotReadyError,
    ProviderResponseError,
    RateLimitError,
    TransportError,
    UnknownProviderError,
    ValidationError,
)
from explainer_core.domain.models import (
    CancellationToken,
    ChatResult,
    ChatStreamChunk,
    CodingSession,
    ProviderConfig,
    ProviderKind,
)
from explainer_core.providers.gateway import ProviderGateway


class FakeClient:
    """记录调用次数的 Provider 客户端替身。"""

    def __init__(self, name="openai", text="done", chunks=(), error=None, stream_error=None):
        self.name = name
        self.model = "fake-model"
        self.text = text
        self.chunks = list(chunks)
        self.error = error
        self.stream_error = stream_error
        self.requests = []
        self.pulled = 0

    def complete(self, req):
        self.requests.append(req)
        if self.error:
            raise self.error
        return ChatResult(provider=self.name, model=self.model, text=self.text)

    def stream(self, req):
        self.requests.append(req)
        for text in self.chunks:
            self.pulled += 1
            yield ChatStreamChunk(provider=self.name, model=self.model, text=text)
        if self.stream_error:
            raise self.stream_error


def _gateway(client, kind=ProviderKind.OPENAI, credential="valid-key-1"):
    gw = ProviderGateway(client_factory=lambda cfg: client)
    assert gw.initialize(ProviderConfig(kind=kind, credential=credential))
    return gw


def test_initialize_and_describe():
    gw = _gateway(FakeClient(), kind=ProviderKind.GEMINI)
    assert gw.is_ready()
    info = gw.describe_provider()
    assert info.kind is ProviderKind.GEMINI
    assert info.display_name == "Google Gemini"
    assert info.model == "gemini-1.5-flash"


def test_initialize_with_default_factory():
    gw = ProviderGateway()
    assert gw.initialize(ProviderConfig(kind=ProviderKind.OPENAI, credential="valid-key-1"))
    assert gw.describe_provider().model == "gpt-4-turbo"
    assert gw.initialize(ProviderConfig(kind="gemini", credential="valid-key-2"))
    assert gw.kind is ProviderKind.GEMINI


def test_initialize_failure_leaves_not_ready():
    gw = _gateway(FakeClient())

    def broken_factory(cfg):
        raise ValidationError(code="MISSING_API_KEY", message="missing")

    gw._client_factory = broken_factory
    assert gw.initialize(ProviderConfig(kind=ProviderKind.OPENAI, credential="")) is False
    assert not gw.is_ready()
    assert gw.describe_provider() is None
    assert gw.kind is None


def test_initialize_unknown_provider():
    gw = ProviderGateway(client_factory=lambda cfg: FakeClient())
    assert gw.initialize(ProviderConfig(kind="claude", credential="valid-key-1")) is False
    assert not gw.is_ready()
    assert gw.describe_provider() is None


def test_not_ready_makes_no_calls():
    client = FakeClient()
    gw = ProviderGateway(client_factory=lambda cfg: client)

    assert gw.describe_provider() is None
    with pytest.raises(NotReadyError):
        gw.analyze("print(1)", "python")
    with pytest.raises(NotReadyError):
        gw.stream_analyze("print(1)", "python", lambda chunk: None)
    with pytest.raises(NotReadyError):
        gw.get_coding_insights([CodingSession(language="python")])
    assert client.requests == []


def test_analyze_builds_prompt():
    client = FakeClient(text="This prints 1.")
    gw = _gateway(client)

    assert gw.analyze("print(1)", "python") == "This prints 1."
    req = client.requests[0]
    assert req.messages[0].role == "system"
    assert "Code Structure" in req.messages[0].content
    assert "Learning Points" in req.messages[0].content
    assert req.messages[1].content == "Please analyze this python code:\n\n```python\nprint(1)\n```"
    assert req.max_tokens == 2000
    assert req.temperature == 0.7


def test_stream_analyze_skips_empty_chunks_in_order():
    client = FakeClient(chunks=["Hello", "", " ", "world"])
    gw = _gateway(client)
    received = []

    assert gw.stream_analyze("x = 1", "python", received.append) is None
    assert received == ["Hello", " ", "world"]


def test_stream_analyze_mid_stream_error_propagates():
    client = FakeClient(
        chunks=["part"],
        stream_error=ProviderResponseError("openai", "boom", status_code=500, body="server exploded"),
    )
    gw = _gateway(client)
    received = []

    with pytest.raises(UnknownProviderError) as info:
        gw.stream_analyze("x = 1", "python", received.append)
    assert received == ["part"]
    assert info.value.message == "boom"


def test_stream_analyze_cancellation_stops_consuming():
    client = FakeClient(chunks=["a", "b", "c", "d"])
    gw = _gateway(client)
    token = CancellationToken()
    received = []

    def on_chunk(text):
        received.append(text)
        if text == "b":
            token.cancel()

    gw.stream_analyze("x", "python", on_chunk, cancel_token=token)
    assert received == ["a", "b"]
    assert client.pulled == 2


def test_callback_errors_are_not_translated():
    gw = _gateway(FakeClient(chunks=["a"]))

    def on_chunk(text):
        raise RuntimeError("ui failure")

    with pytest.raises(RuntimeError):
        gw.stream_analyze("x", "python", on_chunk)


@pytest.mark.parametrize(
    "kind, error, expected",
    [
        (ProviderKind.OPENAI, ProviderResponseError("openai", "bad key", status_code=401), InvalidCredentialError),
        (ProviderKind.OPENAI, ProviderResponseError("openai", "slow down", status_code=429), RateLimitError),
        (
            ProviderKind.OPENAI,
            ProviderResponseError("openai", "quota", status_code=403, body='{"error": {"code": "insufficient_quota"}}'),
            RateLimitError,
        ),
        (
            ProviderKind.OPENAI,
            ProviderResponseError("openai", "Response blocked by content_filter"),
            ContentFilteredError,
        ),
        (
            ProviderKind.GEMINI,
            ProviderResponseError("gemini", "API key not valid. Please pass a valid API key.", status_code=400),
            InvalidCredentialError,
        ),
        (
            ProviderKind.GEMINI,
            ProviderResponseError("gemini", "Quota exceeded", status_code=403, body='{"status": "RESOURCE_EXHAUSTED"}'),
            RateLimitError,
        ),
        (
            ProviderKind.GEMINI,
            ProviderResponseError("gemini", "blocked", body='{"promptFeedback": {"blockReason": "SAFETY"}}'),
            ContentFilteredError,
        ),
        (ProviderKind.GEMINI, httpx.ConnectTimeout("timed out"), TransportError),
        (ProviderKind.OPENAI, ValueError("weird"), UnknownProviderError),
    ],
)
def test_error_mapping(kind, error, expected):
    client = FakeClient(error=error)
    gw = _gateway(client, kind=kind)

    with pytest.raises(expected) as info:
        gw.analyze("x", "python")
    assert info.value.extra["provider"] == kind.value


def test_invalid_credential_message_names_provider():
    gw = _gateway(FakeClient(error=ProviderResponseError("openai", "nope", status_code=401)))

    with pytest.raises(InvalidCredentialError) as info:
        gw.analyze("x", "python")
    assert info.value.message == "Invalid OpenAI API key. Please check your API key in the settings."


def test_unknown_error_preserves_message():
    gw = _gateway(FakeClient(error=ProviderResponseError("openai", "model overloaded", status_code=503)))

    with pytest.raises(UnknownProviderError) as info:
        gw.analyze("x", "python")
    assert info.value.message == "model overloaded"


def test_test_connection_success():
    client = FakeClient(text="Connection successful")
    gw = _gateway(client)

    result = gw.test_connection()
    assert result.success
    assert result.message == "Connection successful"
    assert result.provider_label == "OpenAI (GPT)"
    assert client.requests[0].max_tokens == 20


def test_test_connection_never_raises():
    gw = ProviderGateway(client_factory=lambda cfg: FakeClient())
    result = gw.test_connection()
    assert not result.success
    assert result.error == "Service not initialized"

    gw = _gateway(FakeClient(error=httpx.ConnectError("unreachable")), kind=ProviderKind.GEMINI)
    result = gw.test_connection()
    assert not result.success
    assert result.provider_label == "Google Gemini"
    assert result.error.startswith("Network error")

    gw = _gateway(FakeClient(error=ProviderResponseError("gemini", "API_KEY_INVALID")), kind=ProviderKind.GEMINI)
    result = gw.test_connection()
    assert result.error == "Invalid Gemini API key. Please check your API key in the settings."


def test_get_coding_insights_prompt():
    client = FakeClient(text="Keep going!")
    gw = _gateway(client)
    history = [CodingSession(language="python", topic="loops")] + [
        {"language": "javascript"} for _ in range(11)
    ]

    assert gw.get_coding_insights(history) == "Keep going!"
    req = client.requests[0]
    assert req.messages[0].content.startswith("You are a supportive coding mentor")
    prompt = req.messages[1].content
    assert "Total code analysis sessions: 12" in prompt
    assert "Languages used: python, javascript" in prompt
    assert "1. javascript: General analysis" in prompt
    assert "10. javascript: General analysis" in prompt
    assert "python: loops" not in prompt
    assert req.max_tokens == 1500
    assert req.temperature == 0.8


def test_failed_reinitialize_clears_previous_provider():
    gw = _gateway(FakeClient(), kind=ProviderKind.GEMINI)

    def broken_factory(cfg):
        raise ValidationError(code="MISSING_API_KEY", message="missing")

    gw._client_factory = broken_factory
    assert gw.initialize(ProviderConfig(kind=ProviderKind.OPENAI, credential="")) is False
    assert not gw.is_ready()
    assert gw.describe_provider() is None


@pytest.mark.parametrize("entry", [{"topic": "loops"}, {"language": ""}, "python"])
def test_get_coding_insights_rejects_invalid_history(entry):
    client = FakeClient()
    gw = _gateway(client)

    with pytest.raises(ValidationError) as info:
        gw.get_coding_insights([entry])

    assert info.value.code == "INVALID_HISTORY"
    assert client.requests == []
