"""Request dispatch with retries for every configured channel.

``ChannelDispatcher.generate`` resolves the channel config, picks the
formatter for its type, builds the HTTP request once and runs it through
the retry loop, either as one blocking call or as a stream pushed into a
``ChunkStream``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, NamedTuple, TypeVar

from open_channel.cancel import CancelToken
from open_channel.config import DEFAULT_TOOL_MODE, BaseChannelConfig, ConfigSource, SettingsSource
from open_channel.errors import ChannelError, ErrorType, cancelled_error
from open_channel.events.bus import EventBus, Handler
from open_channel.formatters import BaseFormatter, FormatterRegistry, default_registry
from open_channel.tools import McpSource, ToolSource, build_tool_declarations
from open_channel.types import (
    Content,
    GenerateRequest,
    HttpRequestOptions,
    ModelInfo,
    RetryEventType,
    RetryStatus,
)

from .accumulator import StreamAccumulator
from .stream import ChunkChannel, ChunkStream
from .transport import HttpTransport

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = frozenset({
    ErrorType.API_ERROR,
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT_ERROR,
})


def is_retryable_error(error: BaseException) -> bool:
    """Whether another attempt may succeed after *error*.

    Unclassified exceptions are assumed to be transient network faults.
    """
    if isinstance(error, ChannelError):
        return error.type in _RETRYABLE
    return True


def _now_ms() -> float:
    return time.time() * 1000


class _Prepared(NamedTuple):
    config: BaseChannelConfig
    formatter: BaseFormatter
    options: HttpRequestOptions


class ChannelDispatcher:
    """Uniform ``generate`` over every configured channel.

    Parameters
    ----------
    configs:
        Source of channel configs, read fresh on every call.
    formatters:
        Registry of provider formatters (the default registry when omitted).
    tools, settings, mcp:
        Collaborators used to assemble tool declarations.  ``settings`` also
        supplies the default tool mode and the proxy URL.
    transport:
        HTTP transport; one is created (and owned) when omitted.
    events:
        Bus receiving ``RetryStatus`` notifications.
    """

    def __init__(
        self,
        configs: ConfigSource,
        *,
        formatters: FormatterRegistry | None = None,
        tools: ToolSource | None = None,
        settings: SettingsSource | None = None,
        mcp: McpSource | None = None,
        transport: Any = None,
        events: EventBus | None = None,
        stream_buffer: int = 64,
    ) -> None:
        self._configs = configs
        self._formatters = formatters or default_registry
        self._tools = tools
        self._settings = settings
        self._mcp = mcp
        self._owns_transport = transport is None
        if transport is None:
            transport = HttpTransport(
                settings.get_effective_proxy_url if settings is not None else None
            )
        self._transport = transport
        self._owns_events = events is None
        self.events = events or EventBus()
        self._stream_buffer = stream_buffer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, request: GenerateRequest) -> Content | ChunkStream:
        """Run one generation; a ``ChunkStream`` is returned in stream mode."""
        config = self._resolve_config(request.config_id)
        if self._use_stream(request, config):
            return self._start_stream(request, config)
        return await self.generate_content(request, config)

    async def generate_content(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig | None = None,
    ) -> Content:
        """Blocking generation, retried per the channel policy."""
        start = _now_ms()
        if config is None:
            config = self._resolve_config(request.config_id)
        prepared = self._prepare(request, config, stream=False)

        async def attempt(n: int) -> Any:
            response = await self._transport.execute_request(prepared.options, request.cancel)
            if response.status != 200:
                raise ChannelError(
                    ErrorType.API_ERROR, f"API error: HTTP {response.status}", response.body,
                )
            return response.body

        body = await self._with_retry(prepared.config, request, attempt)

        try:
            content = prepared.formatter.parse_response(body)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(
                ErrorType.PARSE_ERROR, f"Failed to parse response: {e}", body,
            ) from e
        content.response_duration_ms = _now_ms() - start
        return content

    def generate_stream(self, request: GenerateRequest) -> ChunkStream:
        """Start a streamed generation in a producer task.

        Config and validation errors surface from the first iteration.
        """
        return self._start_stream(request, None)

    def create_accumulator(self, config_id: str) -> StreamAccumulator:
        """Accumulator wired with the channel's tool mode and provider type."""
        config = self._resolve_config(config_id)
        accumulator = StreamAccumulator(
            tool_mode=self._resolve_tool_mode(config),
            provider_type=config.type,
        )
        accumulator.set_request_start_time()
        return accumulator

    async def list_models(
        self,
        config_id: str,
        cancel: CancelToken | None = None,
    ) -> list[ModelInfo]:
        """Models offered by the channel's provider, in one unretried request.

        Providers without a listing endpoint report an empty list.
        """
        config = self._resolve_config(config_id)
        formatter = self._formatter_for(config)
        _check(cancel)
        try:
            options = formatter.build_models_request(config)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(
                ErrorType.VALIDATION_ERROR, f"Failed to build model list request: {e}", e,
            ) from e
        if options is None:
            return []

        try:
            response = await self._transport.execute_request(options, cancel)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(ErrorType.NETWORK_ERROR, f"Request failed: {e}", e) from e
        if response.status != 200:
            raise ChannelError(
                ErrorType.API_ERROR, f"API error: HTTP {response.status}", response.body,
            )

        try:
            models = formatter.parse_models(response.body)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(
                ErrorType.PARSE_ERROR, f"Failed to parse model list: {e}", response.body,
            ) from e
        _logger.debug("Channel %s lists %d models", config.id, len(models))
        return models

    def on_retry_status(self, handler: Handler) -> Callable[[], None]:
        """Subscribe *handler* to every retry event; returns an unsubscriber."""
        return self.events.subscribe("*", handler).close

    async def close(self) -> None:
        """Flush pending retry notifications and release owned resources."""
        await self.events.drain()
        if self._owns_events:
            await self.events.close()
        if self._owns_transport:
            await self._transport.close()

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_config(self, config_id: str) -> BaseChannelConfig:
        config = self._configs.get_config(config_id)
        if config is None:
            raise ChannelError(ErrorType.CONFIG_ERROR, f"Channel config not found: {config_id}")
        if not config.enabled:
            raise ChannelError(ErrorType.CONFIG_ERROR, f"Channel is disabled: {config_id}")
        return config

    def _resolve_tool_mode(self, config: BaseChannelConfig) -> str:
        if config.tool_mode:
            return config.tool_mode
        if self._settings is not None:
            return self._settings.get_default_tool_mode()
        return DEFAULT_TOOL_MODE

    def _formatter_for(self, config: BaseChannelConfig) -> BaseFormatter:
        formatter = self._formatters.get(config.type)
        if formatter is None:
            raise ChannelError(
                ErrorType.CONFIG_ERROR, f"Unsupported channel type: {config.type}",
            )
        return formatter

    @staticmethod
    def _use_stream(request: GenerateRequest, config: BaseChannelConfig) -> bool:
        if request.stream is not None:
            return request.stream
        option = getattr(config.options, "stream", None)
        if option is not None:
            return option
        return config.prefer_stream

    def _prepare(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig,
        *,
        stream: bool,
    ) -> _Prepared:
        updates: dict[str, Any] = {"tool_mode": self._resolve_tool_mode(config)}
        if request.model_override:
            updates["model"] = request.model_override
        config = config.model_copy(update=updates)

        formatter = self._formatter_for(config)
        if not formatter.validate_config(config):
            raise ChannelError(
                ErrorType.VALIDATION_ERROR, f"Invalid configuration for channel {config.id}",
            )

        tools = None
        if not request.skip_tools:
            tools = build_tool_declarations(
                self._tools,
                settings=self._settings,
                mcp=self._mcp,
                multimodal_enabled=config.multimodal_tools_enabled,
                channel_type=config.type,
                tool_mode=config.tool_mode or DEFAULT_TOOL_MODE,
            )

        try:
            options = formatter.build_request(request, config, tools, stream=stream)
        except ChannelError:
            raise
        except Exception as e:
            raise ChannelError(
                ErrorType.VALIDATION_ERROR, f"Failed to build request: {e}", e,
            ) from e

        _logger.debug(
            "Built %s request for %s (model=%s, stream=%s, tools=%d)",
            config.type, config.id, config.model, stream, len(tools or []),
        )
        return _Prepared(config, formatter, options)

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _emit(
        self,
        config: BaseChannelConfig,
        event_type: RetryEventType,
        attempt: int,
        max_attempts: int,
        error: BaseException | None = None,
        next_retry_in: float | None = None,
    ) -> None:
        self.events.emit(RetryStatus(
            type=event_type,
            attempt=attempt,
            max_attempts=max_attempts,
            error=str(error) if error is not None else None,
            error_details=error.details if isinstance(error, ChannelError) else None,
            next_retry_in=next_retry_in,
            config_id=config.id,
        ))

    async def _with_retry(
        self,
        config: BaseChannelConfig,
        request: GenerateRequest,
        attempt_fn: Callable[[int], Awaitable[T]],
        *,
        announce_success: bool = True,
    ) -> T:
        cancel = request.cancel
        max_attempts = _max_attempts(config, request)
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            _check(cancel)
            try:
                result = await attempt_fn(attempt)
            except ChannelError as e:
                if e.type is ErrorType.CANCELLED_ERROR:
                    raise
                last_error = e
            except Exception as e:
                last_error = e
            else:
                if attempt > 1 and announce_success:
                    _logger.info("Channel %s succeeded on attempt %d", config.id, attempt)
                    self._emit(config, RetryEventType.RETRY_SUCCESS, attempt, max_attempts)
                return result

            _check(cancel)
            _logger.warning(
                "Channel %s request failed (attempt %d/%d): %s",
                config.id, attempt, max_attempts, last_error,
            )
            if not is_retryable_error(last_error) or attempt >= max_attempts:
                if attempt > 1:
                    self._emit(
                        config, RetryEventType.RETRY_FAILED, attempt, max_attempts, last_error,
                    )
                break

            _check(cancel)
            self._emit(
                config, RetryEventType.RETRYING, attempt + 1, max_attempts,
                last_error, config.retry_interval,
            )
            if cancel is not None:
                await cancel.sleep(config.retry_interval)
            else:
                await asyncio.sleep(config.retry_interval)

        if isinstance(last_error, ChannelError):
            raise last_error
        raise ChannelError(
            ErrorType.NETWORK_ERROR, f"Request failed: {last_error}", last_error,
        ) from last_error

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _start_stream(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig | None,
    ) -> ChunkStream:
        channel = ChunkChannel(self._stream_buffer)
        producer = asyncio.create_task(self._produce(request, config, channel))
        return ChunkStream(channel, producer)

    async def _produce(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig | None,
        channel: ChunkChannel,
    ) -> None:
        error: BaseException | None = None
        try:
            await self._run_stream(request, config, channel)
        except asyncio.CancelledError:
            error = cancelled_error()
            raise
        except Exception as e:
            error = e
        finally:
            channel.close(error)

    async def _run_stream(
        self,
        request: GenerateRequest,
        config: BaseChannelConfig | None,
        channel: ChunkChannel,
    ) -> None:
        if config is None:
            config = self._resolve_config(request.config_id)
        prepared = self._prepare(request, config, stream=True)
        formatter = prepared.formatter

        async def attempt(n: int) -> None:
            async with self._transport.open_stream(prepared.options, request.cancel) as events:
                if n > 1:
                    _logger.info("Channel %s stream reopened on attempt %d", prepared.config.id, n)
                    self._emit(
                        prepared.config, RetryEventType.RETRY_SUCCESS, n,
                        _max_attempts(prepared.config, request),
                    )
                async for event in events:
                    try:
                        chunk = formatter.parse_stream_chunk(event)
                    except ChannelError:
                        raise
                    except Exception as e:
                        raise ChannelError(
                            ErrorType.PARSE_ERROR, f"Failed to parse stream chunk: {e}", event,
                        ) from e
                    await channel.send((n, chunk))

        await self._with_retry(prepared.config, request, attempt, announce_success=False)


def _check(cancel: CancelToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def _max_attempts(config: BaseChannelConfig, request: GenerateRequest) -> int:
    if config.retry_enabled and not request.skip_retry:
        return config.retry_count
    return 1
