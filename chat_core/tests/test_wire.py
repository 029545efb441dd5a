import pytest

from chat_core.providers.wire import Framing, WireFormatParser, framing_for_content_type, is_sentinel


async def _chunks(*parts):
    for p in parts:
        yield p


async def _collect(parser, *parts):
    return [p async for p in parser.parse(_chunks(*parts))]


def test_framing_selection():
    assert framing_for_content_type("text/event-stream; charset=utf-8") is Framing.EVENT_STREAM
    assert framing_for_content_type("text/plain") is Framing.EVENT_STREAM
    assert framing_for_content_type("application/x-ndjson") is Framing.NDJSON
    assert framing_for_content_type(None) is Framing.NDJSON


def test_sentinel_forms():
    assert is_sentinel("[DONE]")
    assert is_sentinel("data: [DONE]")
    assert is_sentinel("  data:[DONE]  ")
    assert not is_sentinel('{"done": true}')


def test_sse_record_split_across_chunks():
    parser = WireFormatParser(Framing.EVENT_STREAM)
    assert parser.feed('data: {"a"') == []
    assert parser.feed(': 1}\n') == []
    assert parser.feed("\n") == ['{"a": 1}']


def test_sse_multiline_data_and_ignored_fields():
    parser = WireFormatParser(Framing.EVENT_STREAM)
    out = parser.feed(": keep-alive\nevent: message\nid: 7\ndata: line1\ndata: line2\n\n")
    assert out == ["line1\nline2"]


def test_sse_crlf_normalized():
    parser = WireFormatParser(Framing.EVENT_STREAM)
    assert parser.feed('data: {"x": 1}\r\n\r\n') == ['{"x": 1}']


def test_sse_sentinel_stops_stream():
    parser = WireFormatParser(Framing.EVENT_STREAM)
    out = parser.feed('data: {"x": 1}\n\ndata: [DONE]\n\ndata: {"x": 2}\n\n')
    assert out == ['{"x": 1}']
    assert parser.done
    assert parser.feed('data: {"x": 3}\n\n') == []


def test_ndjson_skips_blank_and_invalid_lines():
    parser = WireFormatParser(Framing.NDJSON)
    out = parser.feed('{"a": 1}\n\nnot json\ndata: {"b": 2}\n{"c"')
    assert out == ['{"a": 1}', '{"b": 2}']
    assert parser.flush() == []


def test_ndjson_flush_emits_last_line_without_newline():
    parser = WireFormatParser(Framing.NDJSON)
    assert parser.feed('{"a": 1}') == []
    assert parser.flush() == ['{"a": 1}']
    assert parser.done


@pytest.mark.asyncio
async def test_parse_handles_split_utf8_sequence():
    raw = 'data: {"t": "你好"}\n\n'.encode("utf-8")
    # 在多字节字符中间切开
    cut = raw.index("你".encode("utf-8")) + 1
    payloads = await _collect(WireFormatParser(Framing.EVENT_STREAM), raw[:cut], raw[cut:])
    assert payloads == ['{"t": "你好"}']


@pytest.mark.asyncio
async def test_parse_stops_at_sentinel_and_flushes_tail():
    payloads = await _collect(
        WireFormatParser(Framing.NDJSON),
        b'{"a": 1}\n',
        b"[DONE]\n",
        b'{"a": 2}\n',
    )
    assert payloads == ['{"a": 1}']

    payloads = await _collect(WireFormatParser(Framing.EVENT_STREAM), b'data: {"a": 1}')
    assert payloads == ['{"a": 1}']
