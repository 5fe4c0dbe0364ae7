"""HTTP transport for channel requests.

Owns the ``httpx.AsyncClient`` instances (direct and proxied), the flat
timeout for blocking calls, the per-read idle timeout for streams, and the
wiring of the caller's ``CancelToken`` into every network wait.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from open_channel.cancel import CancelToken
from open_channel.errors import ChannelError, ErrorType, cancelled_error
from open_channel.types import HttpRequestOptions, HttpResponse

from .parser import parse_stream_buffer

_logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0  # seconds
_CONNECT_TIMEOUT = 30.0

T = TypeVar("T")


class _WindowExpired(Exception):
    """The timeout window closed before the awaited operation finished."""


async def _race(
    awaitable: Awaitable[T],
    cancel: CancelToken | None,
    timeout: float,
    discard: Callable[[T], Awaitable[Any]] | None = None,
) -> T:
    """Await *awaitable* against the cancel token and a timeout window.

    Cancellation wins over both completion and timeout.  Whatever is still
    pending when this returns is cancelled and reaped; a result that was
    produced but not returned is handed to *discard*.
    """
    work = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future[Any]] = {work}
    if cancel is not None:
        waiters.add(asyncio.ensure_future(cancel.wait()))
    returned = False
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
        if cancel is not None and cancel.cancelled:
            raise cancelled_error()
        if work in done:
            returned = True
            return work.result()
        raise _WindowExpired()
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        if (
            discard is not None
            and not returned
            and not work.cancelled()
            and work.exception() is None
        ):
            await discard(work.result())


def _timeout_error(timeout: float) -> ChannelError:
    return ChannelError(
        ErrorType.TIMEOUT_ERROR,
        f"Request timed out: no response within {timeout:g}s",
        {"timeout": timeout},
    )


def _map_http_error(exc: httpx.HTTPError, timeout: float) -> ChannelError:
    if isinstance(exc, httpx.TimeoutException):
        return _timeout_error(timeout)
    return ChannelError(ErrorType.NETWORK_ERROR, f"Request failed: {exc}", exc)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpTransport:
    """Executes ``HttpRequestOptions`` over httpx.

    Parameters
    ----------
    proxy_url_provider:
        Called before every request; a non-empty URL routes the request
        through a proxied client created for that URL.
    client:
        Direct client to use instead of creating one (mainly for tests).
    """

    def __init__(
        self,
        proxy_url_provider: Callable[[], str | None] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._proxy_url_provider = proxy_url_provider
        self._client = client
        self._owns_client = client is None
        self._proxy_clients: dict[str, httpx.AsyncClient] = {}

    def _select_client(self) -> httpx.AsyncClient:
        proxy_url = self._proxy_url_provider() if self._proxy_url_provider else None
        if proxy_url:
            client = self._proxy_clients.get(proxy_url)
            if client is None:
                _logger.debug("Creating proxied client for %s", proxy_url)
                client = httpx.AsyncClient(
                    proxy=proxy_url,
                    timeout=httpx.Timeout(None, connect=_CONNECT_TIMEOUT),
                )
                self._proxy_clients[proxy_url] = client
            return client
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=_CONNECT_TIMEOUT),
            )
        return self._client

    # ------------------------------------------------------------------
    # Blocking requests
    # ------------------------------------------------------------------

    async def execute_request(
        self,
        options: HttpRequestOptions,
        cancel: CancelToken | None = None,
    ) -> HttpResponse:
        """Send one request and read the whole body within a flat timeout."""
        timeout = options.timeout or DEFAULT_TIMEOUT
        client = self._select_client()
        try:
            response = await _race(
                client.request(
                    options.method,
                    options.url,
                    headers=options.headers,
                    json=options.body,
                ),
                cancel,
                timeout,
            )
        except _WindowExpired:
            raise _timeout_error(timeout) from None
        except httpx.HTTPError as e:
            raise _map_http_error(e, timeout) from e

        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=_decode_body(response),
        )

    # ------------------------------------------------------------------
    # Streaming requests
    # ------------------------------------------------------------------

    def open_stream(
        self,
        options: HttpRequestOptions,
        cancel: CancelToken | None = None,
    ) -> StreamSession:
        """Return a session that yields decoded JSON events when iterated.

        Use as ``async with transport.open_stream(opts, cancel) as events``.
        """
        return StreamSession(
            self._select_client(), options, cancel, options.timeout or DEFAULT_TIMEOUT,
        )

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
        for client in self._proxy_clients.values():
            await client.aclose()
        self._proxy_clients.clear()


class StreamSession:
    """One streaming HTTP exchange.

    Every read is raced against the cancel token and a fresh *timeout*
    window, so any received bytes (keep-alive pings included) restart the
    idle timer.  Raw text is fed through ``parse_stream_buffer``; at end of
    stream the residual buffer is flushed with ``final=True``.  If the stream
    ended because the window expired, the buffered events are drained first
    and ``TIMEOUT_ERROR`` is raised after them.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        options: HttpRequestOptions,
        cancel: CancelToken | None,
        timeout: float,
    ) -> None:
        self._client = client
        self._options = options
        self._cancel = cancel
        self._timeout = timeout
        self._response: httpx.Response | None = None
        self._chunks: Any = None
        self._buffer = ""
        self._pending: collections.deque[Any] = collections.deque()
        self._exhausted = False
        self._timed_out = False

    async def __aenter__(self) -> StreamSession:
        opts = self._options
        request = self._client.build_request(
            opts.method, opts.url, headers=opts.headers, json=opts.body,
        )
        try:
            self._response = await _race(
                self._client.send(request, stream=True), self._cancel, self._timeout,
                discard=lambda response: response.aclose(),
            )
        except _WindowExpired:
            raise _timeout_error(self._timeout) from None
        except httpx.HTTPError as e:
            raise _map_http_error(e, self._timeout) from e

        if not self._response.is_success:
            status = self._response.status_code
            try:
                await self._response.aread()
                body = _decode_body(self._response)
            finally:
                await self.aclose()
            raise ChannelError(ErrorType.API_ERROR, f"API error: HTTP {status}", body)

        self._chunks = self._response.aiter_text()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._response is not None:
            await self._response.aclose()
            self._response = None

    def __aiter__(self) -> StreamSession:
        return self

    async def __anext__(self) -> Any:
        while not self._pending:
            if self._exhausted:
                if self._timed_out:
                    self._timed_out = False
                    raise _timeout_error(self._timeout)
                raise StopAsyncIteration
            await self._read_more()
        return self._pending.popleft()

    async def _next_text(self) -> str | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None

    async def _read_more(self) -> None:
        if self._chunks is None:
            raise RuntimeError("StreamSession must be entered before iteration")
        try:
            text = await _race(self._next_text(), self._cancel, self._timeout)
        except _WindowExpired:
            _logger.debug("Stream idle for %ss, closing", self._timeout)
            self._timed_out = True
            self._flush()
            return
        except httpx.HTTPError as e:
            raise _map_http_error(e, self._timeout) from e

        if text is None:
            self._flush()
            return

        self._buffer += text
        parsed = parse_stream_buffer(self._buffer)
        self._buffer = parsed.remaining
        self._pending.extend(parsed.events)

    def _flush(self) -> None:
        self._exhausted = True
        if self._buffer.strip():
            self._pending.extend(parse_stream_buffer(self._buffer, final=True).events)
        self._buffer = ""
