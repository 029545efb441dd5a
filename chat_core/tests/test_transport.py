import asyncio
import json
import logging

import httpx
import pytest

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, TemplateError
from chat_core.domain.models import BackendProfile, Message, RequestTemplate
from chat_core.providers.transport import StreamState, StreamTransport

from conftest import T0


def _delta(text):
    return f'data: {json.dumps({"choices": [{"delta": {"content": text}}]})}\n\n'.encode("utf-8")


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), content_type="text/event-stream", body=b""):
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self._chunks = list(chunks)
        self._body = body

    @property
    def text(self):
        return self._body.decode("utf-8")

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk

    async def aread(self):
        return self._body

    def json(self):
        return json.loads(self._body)


class StreamContext:
    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self._response

    async def __aexit__(self, *args):
        return False


def install_client(monkeypatch, stream=None, post=None, stream_error=None):
    calls = {"stream": [], "post": []}
    stream_queue = list(stream or [])
    post_queue = list(post or [])

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            calls["stream"].append(kw)
            if stream_error is not None:
                raise stream_error
            return StreamContext(stream_queue.pop(0))

        async def post(self, url, **kw):
            calls["post"].append(kw)
            return post_queue.pop(0)

    monkeypatch.setattr("httpx.AsyncClient", Client)
    return calls


class Recorder:
    def __init__(self):
        self.updates = []
        self.completed = []
        self.errors = []

    def kwargs(self):
        return {
            "on_update": self.updates.append,
            "on_complete": self.completed.append,
            "on_error": self.errors.append,
        }


def _history():
    return [Message(id="u1", role="user", content="hi", timestamp=T0)]


@pytest.mark.asyncio
async def test_updates_are_growing_prefixes(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(chunks=[_delta("He"), _delta("llo"), b"data: [DONE]\n\n"])])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert rec.updates == ["He", "Hello"]
    assert rec.completed == ["Hello"]
    assert rec.errors == []
    assert result.state is StreamState.COMPLETED
    assert result.content == "Hello"


@pytest.mark.asyncio
async def test_single_delta_then_sentinel(monkeypatch, profile):
    calls = install_client(monkeypatch, stream=[FakeResponse(chunks=[_delta("Hi"), b"data: [DONE]\n\n", _delta("late")])])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert rec.updates == ["Hi"]
    assert rec.completed == ["Hi"]
    assert result.state is StreamState.COMPLETED
    assert calls["stream"][0]["json"]["stream"] is True


@pytest.mark.asyncio
async def test_ndjson_stream(monkeypatch):
    profile = BackendProfile(id="o", name="Ollama", family="local", endpoint="http://localhost:11434/api/chat", model_name="llama3")
    lines = [
        json.dumps({"message": {"content": "A"}}).encode() + b"\n",
        json.dumps({"message": {"content": "B"}, "done": True}).encode() + b"\n",
    ]
    install_client(monkeypatch, stream=[FakeResponse(chunks=lines, content_type="application/x-ndjson")])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert rec.updates == ["A", "AB"]
    assert result.content == "AB"


@pytest.mark.asyncio
async def test_abort_after_first_delta(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(chunks=[_delta("A"), _delta("B"), b"data: [DONE]\n\n"])])
    cancel = asyncio.Event()
    rec = Recorder()

    def on_update(text):
        rec.updates.append(text)
        cancel.set()

    result = await StreamTransport().send(
        profile,
        _history(),
        on_update=on_update,
        on_complete=rec.completed.append,
        on_error=rec.errors.append,
        cancel=cancel,
    )
    assert result.state is StreamState.ABORTED
    assert result.content == "A"
    assert rec.updates == ["A"]
    assert rec.completed == []
    assert rec.errors == []


class StalledResponse(FakeResponse):
    """推送完已有分片后不再有数据，也不关闭连接。"""

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_abort_while_stream_stalls(monkeypatch, profile):
    install_client(monkeypatch, stream=[StalledResponse(chunks=[_delta("A")])])
    cancel = asyncio.Event()
    rec = Recorder()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    result = await asyncio.wait_for(
        StreamTransport().send(profile, _history(), cancel=cancel, **rec.kwargs()),
        timeout=2,
    )

    assert result.state is StreamState.ABORTED
    assert result.content == "A"
    assert rec.updates == ["A"]
    assert rec.completed == []
    assert rec.errors == []


@pytest.mark.asyncio
async def test_http_error_fails_once(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(status_code=500, body=b"internal")])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0], ApiError)
    assert rec.errors[0].http_status == 500
    assert rec.completed == []
    assert rec.updates == []


@pytest.mark.asyncio
async def test_rate_limit(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(status_code=429, body=b"slow down")])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert isinstance(result.error, RateLimitError)
    assert rec.errors == [result.error]


@pytest.mark.asyncio
async def test_network_error(monkeypatch, profile):
    install_client(monkeypatch, stream_error=httpx.ConnectError("connection refused"))
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert isinstance(rec.errors[0], NetworkError)


@pytest.mark.asyncio
async def test_unrecognized_stream_fails(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(chunks=[b"data: <html>\n\n", b"data: oops\n\n"])])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert rec.errors[0].code == "UNRECOGNIZED_STREAM"


@pytest.mark.asyncio
async def test_unknown_shapes_yield_no_content_but_complete(monkeypatch, profile):
    install_client(monkeypatch, stream=[FakeResponse(chunks=[b'data: {"ping": 1}\n\n', _delta("ok")])])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.COMPLETED
    assert rec.updates == ["ok"]


@pytest.mark.asyncio
async def test_baidu_401_falls_back_to_non_stream(monkeypatch):
    profile = BackendProfile(
        id="b",
        name="文心",
        family="baidu",
        endpoint="https://qianfan.baidubce.com/v2/chat/completions",
        credential="bce-key",
        model_name="ernie-4.0-turbo-8k",
    )
    body = json.dumps({"choices": [{"message": {"content": "full answer"}}]}).encode("utf-8")
    calls = install_client(
        monkeypatch,
        stream=[FakeResponse(status_code=401, body=b"unauthorized")],
        post=[FakeResponse(status_code=200, content_type="application/json", body=body)],
    )
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.COMPLETED
    assert result.used_fallback
    assert rec.updates == ["full answer"]
    assert rec.completed == ["full answer"]
    assert rec.errors == []
    assert "stream" not in calls["post"][0]["json"]
    assert calls["post"][0]["json"]["model"] == "ernie-4.0-turbo-8k"


@pytest.mark.asyncio
async def test_fallback_empty_response_fails(monkeypatch):
    profile = BackendProfile(id="b", name="文心", family="baidu", endpoint="https://qianfan.baidubce.com/v2/chat/completions")
    install_client(
        monkeypatch,
        stream=[FakeResponse(status_code=401)],
        post=[FakeResponse(status_code=200, content_type="application/json", body=b"{}")],
    )
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert rec.errors[0].code == "EMPTY_RESPONSE"


@pytest.mark.asyncio
async def test_401_without_fallback_family_fails(monkeypatch, profile):
    calls = install_client(monkeypatch, stream=[FakeResponse(status_code=401)])
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert calls["post"] == []


@pytest.mark.asyncio
async def test_template_error_reported_without_request(monkeypatch, profile):
    calls = install_client(monkeypatch)
    profile.template = RequestTemplate(body="{not json")
    rec = Recorder()
    result = await StreamTransport().send(profile, _history(), **rec.kwargs())
    assert result.state is StreamState.FAILED
    assert isinstance(rec.errors[0], TemplateError)
    assert calls["stream"] == []


@pytest.mark.asyncio
async def test_credentials_never_logged(monkeypatch, profile, caplog):
    install_client(monkeypatch, stream=[FakeResponse(chunks=[_delta("x")])])
    with caplog.at_level(logging.DEBUG, logger="chat_core"):
        await StreamTransport().send(profile, _history(), on_update=lambda _t: None)
    assert caplog.records
    for record in caplog.records:
        assert "sk-secret" not in json.dumps(getattr(record, "extra", {}), default=str)
        assert "sk-secret" not in record.getMessage()
