"""Tests for ChannelDispatcher: retries, cancellation, errors and streaming."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from open_channel.cancel import CancelToken
from open_channel.channel.dispatcher import ChannelDispatcher, is_retryable_error
from open_channel.channel.stream import ChunkStream
from open_channel.config import AppSettings, ChannelStore, GeminiConfig, OpenAIConfig
from open_channel.errors import ChannelError, ErrorType, cancelled_error
from open_channel.formatters import FormatterRegistry, GeminiFormatter
from open_channel.tools import ToolCatalog
from open_channel.types import (
    Content,
    GenerateRequest,
    HttpResponse,
    RetryEventType,
    TextPart,
)

_STALL = object()


def _gemini_body(text: str = "hi", finish: str | None = "STOP") -> dict[str, Any]:
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": [{"text": text}]}}
    if finish:
        candidate["finishReason"] = finish
    return {
        "candidates": [candidate],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
        "modelVersion": "gemini-2.5-flash",
    }


def _ok(text: str = "hi") -> HttpResponse:
    return HttpResponse(status=200, body=_gemini_body(text))


def _fail(status: int = 503) -> HttpResponse:
    return HttpResponse(status=status, body={"error": {"message": "overloaded"}})


class _FakeSession:
    def __init__(self, transport: FakeTransport, script: Any, cancel: CancelToken | None):
        self._transport = transport
        self._script = script
        self._cancel = cancel

    async def __aenter__(self) -> _FakeSession:
        if isinstance(self._script, BaseException):
            raise self._script
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._transport.sessions_closed += 1

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for item in self._script:
            if item is _STALL:
                # hangs until cancelled, like a silent connection
                waiter = self._cancel or CancelToken()
                await waiter.wait()
                raise cancelled_error()
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeTransport:
    """Scripted stand-in for HttpTransport."""

    def __init__(self, responses: list[Any] | None = None, streams: list[Any] | None = None):
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.requests: list[Any] = []
        self.sessions_closed = 0

    async def execute_request(self, options, cancel=None):
        self.requests.append(options)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def open_stream(self, options, cancel=None):
        self.requests.append(options)
        return _FakeSession(self, self.streams.pop(0), cancel)

    async def close(self):
        pass


def _make_config(**overrides: Any) -> GeminiConfig:
    values: dict[str, Any] = {"id": "g", "api_key": "k", "retry_interval": 0.0}
    values.update(overrides)
    return GeminiConfig(**values)


def _make_dispatcher(
    transport: FakeTransport,
    *configs: Any,
    **kwargs: Any,
) -> tuple[ChannelDispatcher, list]:
    store = ChannelStore(list(configs) or [_make_config()])
    dispatcher = ChannelDispatcher(store, transport=transport, **kwargs)
    events: list = []
    dispatcher.on_retry_status(events.append)
    return dispatcher, events


def _request(**kwargs: Any) -> GenerateRequest:
    values: dict[str, Any] = {
        "config_id": "g",
        "history": [Content(role="user", parts=[TextPart(text="hello")])],
    }
    values.update(kwargs)
    return GenerateRequest(**values)


class TestRetryClassification:
    @pytest.mark.parametrize("error_type,expected", [
        (ErrorType.CANCELLED_ERROR, False),
        (ErrorType.API_ERROR, True),
        (ErrorType.NETWORK_ERROR, True),
        (ErrorType.TIMEOUT_ERROR, True),
        (ErrorType.CONFIG_ERROR, False),
        (ErrorType.VALIDATION_ERROR, False),
        (ErrorType.PARSE_ERROR, False),
    ])
    def test_domain_errors(self, error_type, expected):
        assert is_retryable_error(ChannelError(error_type, "x")) is expected

    def test_generic_exception_is_retryable(self):
        assert is_retryable_error(RuntimeError("socket reset")) is True


class TestBlockingGenerate:
    @pytest.mark.asyncio
    async def test_success(self):
        transport = FakeTransport([_ok("hello there")])
        dispatcher, events = _make_dispatcher(transport)

        content = await dispatcher.generate(_request(stream=False))

        assert content.text == "hello there"
        assert content.usage.total_token_count == 4
        assert content.response_duration_ms is not None
        await dispatcher.events.drain()
        assert events == []
        assert transport.requests[0].url.endswith("models/gemini-2.5-flash:generateContent")

    @pytest.mark.asyncio
    async def test_always_failing_makes_three_attempts(self):
        transport = FakeTransport([_fail(), _fail(), _fail()])
        dispatcher, events = _make_dispatcher(transport)

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())

        assert exc_info.value.type is ErrorType.API_ERROR
        assert exc_info.value.details == {"error": {"message": "overloaded"}}
        assert len(transport.requests) == 3
        await dispatcher.events.drain()
        assert [e.type for e in events] == [
            RetryEventType.RETRYING,
            RetryEventType.RETRYING,
            RetryEventType.RETRY_FAILED,
        ]
        assert [e.attempt for e in events] == [2, 3, 3]
        assert all(e.max_attempts == 3 for e in events)
        assert events[-1].error_details == {"error": {"message": "overloaded"}}

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self):
        transport = FakeTransport([_fail(500), _ok("second")])
        dispatcher, events = _make_dispatcher(transport, _make_config(retry_interval=0.5))

        content = await dispatcher.generate(_request())

        assert content.text == "second"
        await dispatcher.events.drain()
        assert [e.type for e in events] == [RetryEventType.RETRYING, RetryEventType.RETRY_SUCCESS]
        assert events[0].next_retry_in == 0.5
        assert events[0].config_id == "g"
        assert events[1].attempt == 2

    @pytest.mark.asyncio
    async def test_single_failure_emits_nothing(self):
        transport = FakeTransport([_fail()])
        dispatcher, events = _make_dispatcher(transport, _make_config(retry_enabled=False))

        with pytest.raises(ChannelError):
            await dispatcher.generate(_request())
        await dispatcher.events.drain()
        assert events == []
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_skip_retry(self):
        transport = FakeTransport([_fail(), _ok()])
        dispatcher, events = _make_dispatcher(transport)

        with pytest.raises(ChannelError):
            await dispatcher.generate(_request(skip_retry=True))
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_generic_exception_wrapped_as_network_error(self):
        boom = OSError("connection reset")
        transport = FakeTransport([boom, boom])
        dispatcher, _ = _make_dispatcher(transport, _make_config(retry_count=2))

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.NETWORK_ERROR
        assert exc_info.value.details is boom
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_parse_error_not_retried(self):
        transport = FakeTransport([HttpResponse(status=200, body="<html>oops</html>"), _ok()])
        dispatcher, events = _make_dispatcher(transport)

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.PARSE_ERROR
        assert len(transport.requests) == 1
        await dispatcher.events.drain()
        assert events == []

    @pytest.mark.asyncio
    async def test_model_override(self):
        transport = FakeTransport([_ok()])
        dispatcher, _ = _make_dispatcher(transport)

        await dispatcher.generate(_request(model_override="gemini-2.5-pro"))
        assert "models/gemini-2.5-pro:generateContent" in transport.requests[0].url


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_retry_delay(self):
        transport = FakeTransport([_fail(), _fail(), _fail()])
        dispatcher, events = _make_dispatcher(transport, _make_config(retry_interval=5.0))
        token = CancelToken()

        def cancel_soon(status):
            if status.type is RetryEventType.RETRYING:
                asyncio.get_running_loop().call_later(0.05, token.cancel)

        dispatcher.on_retry_status(cancel_soon)
        started = time.monotonic()
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request(cancel=token))

        assert exc_info.value.type is ErrorType.CANCELLED_ERROR
        assert time.monotonic() - started < 2
        await dispatcher.events.drain()
        assert [e.type for e in events] == [RetryEventType.RETRYING]
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        transport = FakeTransport([_ok()])
        dispatcher, _ = _make_dispatcher(transport)
        token = CancelToken()
        token.cancel()

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request(cancel=token))
        assert exc_info.value.type is ErrorType.CANCELLED_ERROR
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_cancel_raised_by_transport_short_circuits(self):
        transport = FakeTransport([_fail(), cancelled_error(), _ok()])
        dispatcher, events = _make_dispatcher(transport)

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.CANCELLED_ERROR
        await dispatcher.events.drain()
        assert [e.type for e in events] == [RetryEventType.RETRYING]


class TestConfigErrors:
    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        dispatcher, _ = _make_dispatcher(FakeTransport())
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request(config_id="missing"))
        assert exc_info.value.type is ErrorType.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_disabled_channel(self):
        dispatcher, _ = _make_dispatcher(FakeTransport(), _make_config(enabled=False))
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_unsupported_type(self):
        dispatcher, _ = _make_dispatcher(
            FakeTransport(), _make_config(), formatters=FormatterRegistry([]),
        )
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        transport = FakeTransport([_ok()])
        dispatcher, _ = _make_dispatcher(transport, _make_config(url=""))
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.VALIDATION_ERROR
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_build_failure_is_validation_error(self):
        class Broken(GeminiFormatter):
            def build_request(self, request, config, tools, *, stream=False):
                raise KeyError("contents")

        transport = FakeTransport([_ok()])
        dispatcher, _ = _make_dispatcher(
            transport, _make_config(), formatters=FormatterRegistry([Broken()]),
        )
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate(_request())
        assert exc_info.value.type is ErrorType.VALIDATION_ERROR
        assert transport.requests == []


class TestTools:
    _catalog = ToolCatalog([
        {"name": "read_file", "description": "Read", "parameters": {"type": "object"}},
        {"name": "shell", "description": "Run", "parameters": {"type": "object"}},
    ])

    @pytest.mark.asyncio
    async def test_declarations_sent(self):
        transport = FakeTransport([_ok()])
        settings = AppSettings(disabled_tools=["shell"])
        dispatcher, _ = _make_dispatcher(transport, tools=self._catalog, settings=settings)

        await dispatcher.generate(_request())
        decls = transport.requests[0].body["tools"][0]["functionDeclarations"]
        assert [d["name"] for d in decls] == ["read_file"]

    @pytest.mark.asyncio
    async def test_skip_tools(self):
        transport = FakeTransport([_ok()])
        dispatcher, _ = _make_dispatcher(transport, tools=self._catalog)

        await dispatcher.generate(_request(skip_tools=True))
        assert "tools" not in transport.requests[0].body

    @pytest.mark.asyncio
    async def test_default_tool_mode_from_settings(self):
        transport = FakeTransport([_ok()])
        settings = AppSettings(default_tool_mode="json")
        dispatcher, _ = _make_dispatcher(transport, tools=self._catalog, settings=settings)

        await dispatcher.generate(_request())
        body = transport.requests[0].body
        assert "tools" not in body
        assert "<<<TOOL_CALL>>>" in body["systemInstruction"]["parts"][0]["text"]
        assert dispatcher.create_accumulator("g").tool_mode == "json"


class TestStreaming:
    @staticmethod
    def _events() -> list[dict[str, Any]]:
        return [_gemini_body("Hel", finish=None), _gemini_body("lo", finish="STOP")]

    @pytest.mark.asyncio
    async def test_stream_collects(self):
        transport = FakeTransport(streams=[self._events()])
        dispatcher, events = _make_dispatcher(transport)

        stream = await dispatcher.generate(_request(stream=True))
        assert isinstance(stream, ChunkStream)
        content = await stream.collect(dispatcher.create_accumulator("g"))

        assert content.text == "Hello"
        assert content.finish_reason == "STOP"
        assert content.chunk_count == 2
        await dispatcher.events.drain()
        assert events == []
        assert "streamGenerateContent?alt=sse" in transport.requests[0].url
        assert transport.sessions_closed == 1

    @pytest.mark.asyncio
    async def test_prefer_stream_from_config(self):
        transport = FakeTransport(streams=[self._events()])
        dispatcher, _ = _make_dispatcher(transport, _make_config(prefer_stream=True))

        result = await dispatcher.generate(_request())
        assert isinstance(result, ChunkStream)
        await result.aclose()

    @pytest.mark.asyncio
    async def test_open_failure_retried(self):
        failure = ChannelError(ErrorType.API_ERROR, "API error: HTTP 429", {"error": "rate"})
        transport = FakeTransport(streams=[failure, self._events()])
        dispatcher, events = _make_dispatcher(transport)

        stream = dispatcher.generate_stream(_request())
        content = await stream.collect(dispatcher.create_accumulator("g"))

        assert content.text == "Hello"
        await dispatcher.events.drain()
        assert [e.type for e in events] == [RetryEventType.RETRYING, RetryEventType.RETRY_SUCCESS]

    @pytest.mark.asyncio
    async def test_mid_stream_failure_replays_from_start(self):
        timeout = ChannelError(ErrorType.TIMEOUT_ERROR, "Request timed out", {"timeout": 1})
        first = [_gemini_body("Hel", finish=None), timeout]
        transport = FakeTransport(streams=[first, self._events()])
        dispatcher, _ = _make_dispatcher(transport)

        stream = dispatcher.generate_stream(_request())
        content = await stream.collect(dispatcher.create_accumulator("g"))

        assert content.text == "Hello"
        assert stream.attempt == 2

    @pytest.mark.asyncio
    async def test_parse_error_ends_stream_after_delivered_chunks(self):
        transport = FakeTransport(streams=[[_gemini_body("ok", finish=None), "garbage"], self._events()])
        dispatcher, _ = _make_dispatcher(transport)

        received = []
        async with dispatcher.generate_stream(_request()) as stream:
            with pytest.raises(ChannelError) as exc_info:
                async for chunk in stream:
                    received.append(chunk)

        assert exc_info.value.type is ErrorType.PARSE_ERROR
        assert len(received) == 1
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_error_event_in_stream_is_api_error(self):
        error_event = {"error": {"code": 500, "message": "internal"}}
        transport = FakeTransport(streams=[[error_event]])
        dispatcher, _ = _make_dispatcher(transport, _make_config(retry_enabled=False))

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.generate_stream(_request()).collect(dispatcher.create_accumulator("g"))
        assert exc_info.value.type is ErrorType.API_ERROR

    @pytest.mark.asyncio
    async def test_config_error_surfaces_on_iteration(self):
        dispatcher, _ = _make_dispatcher(FakeTransport())
        stream = dispatcher.generate_stream(_request(config_id="missing"))
        with pytest.raises(ChannelError) as exc_info:
            async for _ in stream:
                pass
        assert exc_info.value.type is ErrorType.CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        token = CancelToken()
        transport = FakeTransport(streams=[[_gemini_body("partial", finish=None), _STALL]])
        dispatcher, events = _make_dispatcher(transport)

        chunks = aiter(dispatcher.generate_stream(_request(cancel=token)))
        first = await anext(chunks)
        assert first.delta[0].text == "partial"
        token.cancel()
        with pytest.raises(ChannelError) as exc_info:
            await anext(chunks)
        assert exc_info.value.type is ErrorType.CANCELLED_ERROR
        await dispatcher.events.drain()
        assert events == []
        assert transport.sessions_closed == 1

    @pytest.mark.asyncio
    async def test_aclose_stops_producer(self):
        transport = FakeTransport(streams=[[_gemini_body("x", finish=None), _STALL]])
        dispatcher, _ = _make_dispatcher(transport)

        stream = dispatcher.generate_stream(_request())
        chunks = aiter(stream)
        await anext(chunks)
        await stream.aclose()
        assert transport.sessions_closed == 1

    @pytest.mark.asyncio
    async def test_break_releases_session(self):
        script = [_gemini_body(str(i), finish=None) for i in range(5)] + [_STALL]
        transport = FakeTransport(streams=[script])
        dispatcher, _ = _make_dispatcher(transport, stream_buffer=2)

        stream = dispatcher.generate_stream(_request())
        async for chunk in stream:
            assert chunk.delta[0].text == "0"
            break

        for _ in range(50):
            if stream._producer.done():
                break
            await asyncio.sleep(0.01)
        assert stream._producer.done()
        assert transport.sessions_closed == 1


class TestRetryStatusSubscription:
    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        transport = FakeTransport([_fail(), _ok()])
        dispatcher, events = _make_dispatcher(transport)
        late: list = []
        unsubscribe = dispatcher.on_retry_status(late.append)
        unsubscribe()

        await dispatcher.generate(_request())
        await dispatcher.events.drain()
        assert len(events) == 2
        assert late == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_request(self):
        transport = FakeTransport([_fail(), _ok()])
        dispatcher, events = _make_dispatcher(transport)

        def broken(status):
            raise RuntimeError("listener bug")

        dispatcher.on_retry_status(broken)
        content = await dispatcher.generate(_request())
        assert content.text == "hi"
        await dispatcher.events.drain()
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_independent_listeners(self):
        transport = FakeTransport([_fail(), _ok()])
        dispatcher, first = _make_dispatcher(transport)
        second: list = []
        dispatcher.events.subscribe(RetryEventType.RETRYING, second.append)

        await dispatcher.generate(_request())
        await dispatcher.events.drain()
        assert len(first) == 2
        assert [e.type for e in second] == [RetryEventType.RETRYING]

    @pytest.mark.asyncio
    async def test_stuck_listener_does_not_delay_retries(self):
        transport = FakeTransport([_fail(), _fail(), _ok("late")])
        dispatcher, events = _make_dispatcher(transport)
        release = asyncio.Event()

        async def stuck(status):
            await release.wait()

        unsubscribe = dispatcher.on_retry_status(stuck)
        content = await asyncio.wait_for(dispatcher.generate(_request()), timeout=2)

        assert content.text == "late"
        unsubscribe()
        await dispatcher.events.drain()
        assert [e.type for e in events] == [
            RetryEventType.RETRYING,
            RetryEventType.RETRYING,
            RetryEventType.RETRY_SUCCESS,
        ]


class TestListModels:
    @pytest.mark.asyncio
    async def test_lists_models_with_get(self):
        body = {"models": [{"name": "models/gemini-2.5-pro", "supportedGenerationMethods": ["generateContent"]}]}
        transport = FakeTransport([HttpResponse(status=200, body=body)])
        dispatcher, events = _make_dispatcher(transport)

        models = await dispatcher.list_models("g")

        assert [m.id for m in models] == ["gemini-2.5-pro"]
        assert transport.requests[0].method == "GET"
        await dispatcher.events.drain()
        assert events == []

    @pytest.mark.asyncio
    async def test_http_error_is_api_error_without_retry(self):
        transport = FakeTransport([_fail(401), _ok()])
        dispatcher, _ = _make_dispatcher(transport)

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.list_models("g")
        assert exc_info.value.type is ErrorType.API_ERROR
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_malformed_body_is_parse_error(self):
        transport = FakeTransport([HttpResponse(status=200, body="<html>")])
        dispatcher, _ = _make_dispatcher(transport)

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.list_models("g")
        assert exc_info.value.type is ErrorType.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_missing_key_is_validation_error(self):
        transport = FakeTransport()
        dispatcher, _ = _make_dispatcher(transport, _make_config(api_key=""))

        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.list_models("g")
        assert exc_info.value.type is ErrorType.VALIDATION_ERROR
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_provider_without_listing_returns_empty(self):
        class NoListing(GeminiFormatter):
            def build_models_request(self, config):
                return None

        transport = FakeTransport()
        dispatcher, _ = _make_dispatcher(
            transport, _make_config(), formatters=FormatterRegistry([NoListing()]),
        )
        assert await dispatcher.list_models("g") == []
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        dispatcher, _ = _make_dispatcher(FakeTransport())
        with pytest.raises(ChannelError) as exc_info:
            await dispatcher.list_models("missing")
        assert exc_info.value.type is ErrorType.CONFIG_ERROR


class TestOwnedTransport:
    @pytest.mark.asyncio
    async def test_close_without_requests(self):
        store = ChannelStore([OpenAIConfig(id="o", api_key="k")])
        dispatcher = ChannelDispatcher(store, settings=AppSettings())
        await dispatcher.close()
