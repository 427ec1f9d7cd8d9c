from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from gemini_gateway.config import Settings
from gemini_gateway.core.errors import EmptyGeneration, UpstreamError
from gemini_gateway.core.mapping import (
    FINISH_REASON_MAP,
    build_generation_parameters,
    generation_config,
    map_finish_reason,
)
from gemini_gateway.core.types import (
    CompletionStamp,
    CompletionStamper,
    FinishReason,
    NormalizedTurn,
    UpstreamFinishReason,
)
from gemini_gateway.core.upstream import GeminiUpstream, build_request_body
from gemini_gateway.openai.adapter import (
    create_chat_completion_stream,
    transcode_completion,
    transcode_delta,
    transcode_stream,
)
from gemini_gateway.openai.schemas import ChatCompletionRequest

STAMP = CompletionStamp(id="chatcmpl-fixed", created=1700000000)


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


def run_stream(*parts: bytes) -> list[bytes]:
    async def collect() -> list[bytes]:
        return [
            frame
            async for frame in transcode_stream(
                _chunks(*parts), "gemini-pro", STAMP, buffer_limit=4096
            )
        ]

    return asyncio.run(collect())


def frame_payloads(frames: list[bytes]) -> list[object]:
    payloads: list[object] = []
    for frame in frames:
        raw = frame.decode("utf-8")
        assert raw.startswith("data: ") and raw.endswith("\n\n")
        data = raw[len("data: ") : -2]
        payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


@pytest.mark.parametrize(
    ("upstream", "expected"),
    [
        ("STOP", "stop"),
        ("MAX_TOKENS", "length"),
        ("SAFETY", "content_filter"),
        ("RECITATION", "stop"),
        ("OTHER", "stop"),
        ("BLOCKLIST", "stop"),
        ("FINISH_REASON_UNSPECIFIED", "stop"),
    ],
)
def test_finish_reason_mapping(upstream, expected):
    assert map_finish_reason(upstream) == FinishReason(expected)


def test_finish_reason_table_covers_every_upstream_value():
    assert set(FINISH_REASON_MAP) == set(UpstreamFinishReason)
    assert map_finish_reason(None) is None


def test_generation_parameters_default_temperature():
    params = build_generation_parameters(None, None, 0.7)

    assert generation_config(params) == {"temperature": 0.7, "maxOutputTokens": None}


def test_request_body_shape():
    params = build_generation_parameters(0.2, 64, 0.7)
    body = build_request_body([NormalizedTurn(role="user", text="hi")], params)

    assert body == {
        "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
        "generationConfig": {"temperature": 0.2, "maxOutputTokens": 64},
    }


def test_completion_joins_parts_and_maps_usage():
    body = {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": "  Hello"}, {"text": ", world \n"}]},
                "finishReason": "MAX_TOKENS",
            }
        ],
        "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": 15},
    }

    payload = transcode_completion(body, "gemini-pro", STAMP)

    assert payload == {
        "id": "chatcmpl-fixed",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gemini-pro",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "Hello, world"},
                "finish_reason": "length",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def test_completion_without_usage_reports_zeroes():
    body = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}

    payload = transcode_completion(body, "m", STAMP)

    assert payload["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    assert payload["choices"][0]["finish_reason"] == "stop"


def test_empty_candidates_raise_empty_generation():
    with pytest.raises(EmptyGeneration) as exc_info:
        transcode_completion({"candidates": []}, "m", STAMP)

    assert exc_info.value.reason == "unknown"
    assert exc_info.value.status_code == 502


def test_candidate_parts_without_text_raise_empty_generation():
    body = {
        "candidates": [
            {
                "content": {"parts": [{"functionCall": {"name": "lookup"}}, {}]},
                "finishReason": "STOP",
            }
        ]
    }

    with pytest.raises(EmptyGeneration) as exc_info:
        transcode_completion(body, "m", STAMP)

    assert exc_info.value.reason == "STOP"


def test_candidate_without_parts_reports_its_finish_reason():
    with pytest.raises(EmptyGeneration) as exc_info:
        transcode_completion({"candidates": [{"finishReason": "SAFETY"}]}, "m", STAMP)

    assert exc_info.value.reason == "SAFETY"
    assert "safety" in exc_info.value.message


def test_blocked_prompt_reports_block_reason():
    body = {"promptFeedback": {"blockReason": "RECITATION"}}

    with pytest.raises(EmptyGeneration) as exc_info:
        transcode_completion(body, "m", STAMP)

    assert exc_info.value.reason == "RECITATION"
    assert "recited" in exc_info.value.message


def test_delta_without_candidate_is_empty_text():
    event = transcode_delta({"usageMetadata": {"promptTokenCount": 3}})

    assert event.text == ""
    assert event.finish_reason is None


def test_delta_error_element_raises_upstream_error():
    with pytest.raises(UpstreamError) as exc_info:
        transcode_delta({"error": {"code": 503, "message": "overloaded"}})

    assert exc_info.value.status_code == 503


def test_stream_emits_one_frame_per_element_then_done():
    body = (
        b'[{"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},\r\n'
        b'{"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]}]'
    )

    payloads = frame_payloads(run_stream(body[:30], body[30:70], body[70:]))

    assert payloads[-1] == "[DONE]"
    assert payloads.count("[DONE]") == 1
    chunks = payloads[:-1]
    assert [c["choices"][0]["delta"]["content"] for c in chunks] == ["Hel", "lo"]
    assert [c["choices"][0]["finish_reason"] for c in chunks] == [None, "stop"]
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)
    assert all(c["id"] == "chatcmpl-fixed" and c["model"] == "gemini-pro" for c in chunks)


def test_stream_ending_without_finish_reason_still_terminates_once():
    payloads = frame_payloads(
        run_stream(b'[{"candidates": [{"content": {"parts": [{"text": "cut"}]}}]}')
    )

    assert payloads[0]["choices"][0]["finish_reason"] is None
    assert payloads[1:] == ["[DONE]"]


def test_empty_upstream_stream_only_emits_done():
    assert frame_payloads(run_stream()) == ["[DONE]"]


def test_malformed_stream_emits_error_frame_then_done():
    payloads = frame_payloads(
        run_stream(b'[{"candidates": [{"content": {"parts": [{"text": "a"}]}}]}, <html>')
    )

    assert payloads[0]["choices"][0]["delta"]["content"] == "a"
    assert payloads[1]["error"]["code"] == "stream_decode_error"
    assert payloads[1]["error"]["type"] == "server_error"
    assert payloads[2:] == ["[DONE]"]


def test_truncated_stream_emits_error_frame_then_done():
    payloads = frame_payloads(run_stream(b'[{"candidates": [{"content": '))

    assert payloads[0]["error"]["code"] == "stream_decode_error"
    assert payloads[1:] == ["[DONE]"]


class _FakeUpstreamStream:
    def __init__(self, parts: list[bytes]) -> None:
        self.parts = parts
        self.closed = False

    async def __aiter__(self):
        for part in self.parts:
            yield part

    async def aclose(self) -> None:
        self.closed = True


class _FakeUpstream:
    def __init__(self, stream: _FakeUpstreamStream) -> None:
        self.stream = stream

    async def open_stream(self, model, api_key, turns, params):
        return self.stream


def test_closing_outbound_stream_closes_upstream_transfer():
    upstream_stream = _FakeUpstreamStream(
        [
            b'[{"candidates": [{"content": {"parts": [{"text": "one"}]}}]},',
            b'{"candidates": [{"content": {"parts": [{"text": "two"}]}}]}]',
        ]
    )
    request = ChatCompletionRequest(
        model="gemini-pro",
        stream=True,
        messages=[{"role": "user", "content": "hi"}],
    )

    async def consume_one_then_disconnect() -> bytes:
        iterator, _warnings = await create_chat_completion_stream(
            request,
            upstream=_FakeUpstream(upstream_stream),
            api_key="key",
            stamper=CompletionStamper(new_id=lambda: "chatcmpl-x", clock=lambda: 1),
            settings=Settings(),
        )
        first = await iterator.__anext__()
        await iterator.aclose()
        return first

    first = asyncio.run(consume_one_then_disconnect())

    assert b'"one"' in first
    assert upstream_stream.closed is True


def _open_stream(upstream_stream: _FakeUpstreamStream):
    request = ChatCompletionRequest(
        model="gemini-pro",
        stream=True,
        messages=[{"role": "user", "content": "hi"}],
    )
    return create_chat_completion_stream(
        request,
        upstream=_FakeUpstream(upstream_stream),
        api_key="key",
        stamper=CompletionStamper(new_id=lambda: "chatcmpl-x", clock=lambda: 1),
        settings=Settings(),
    )


def test_closing_unstarted_stream_closes_upstream_transfer():
    upstream_stream = _FakeUpstreamStream(
        [b'[{"candidates": [{"content": {"parts": [{"text": "never"}]}}]}]']
    )

    async def disconnect_before_first_frame() -> None:
        iterator, _warnings = await _open_stream(upstream_stream)
        await iterator.aclose()

    asyncio.run(disconnect_before_first_frame())

    assert upstream_stream.closed is True


def test_exhausted_stream_closes_upstream_and_tolerates_second_close():
    upstream_stream = _FakeUpstreamStream(
        [b'[{"candidates": [{"content": {"parts": [{"text": "all"}]}, "finishReason": "STOP"}]}]']
    )

    async def consume_all() -> list[bytes]:
        iterator, _warnings = await _open_stream(upstream_stream)
        frames = [frame async for frame in iterator]
        await iterator.aclose()
        return frames

    frames = asyncio.run(consume_all())

    assert frames[-1] == b"data: [DONE]\n\n"
    assert upstream_stream.closed is True


def test_upstream_stream_can_be_closed_twice():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, content=b'[{"candidates": []}]')
    )
    upstream = GeminiUpstream("https://gemini.test", transport=transport)

    async def open_and_close_twice() -> None:
        stream = await upstream.open_stream(
            "m",
            "key",
            [NormalizedTurn(role="user", text="hi")],
            build_generation_parameters(None, None, 0.7),
        )
        await stream.aclose()
        await stream.aclose()

    asyncio.run(open_and_close_twice())
