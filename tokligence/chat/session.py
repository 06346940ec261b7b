"""Streaming chat session against the gateway's chat completions endpoint."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, TypeVar

import httpx

from tokligence.chat.sse import SSEParser, extract_delta
from tokligence.config import ConfigView, GatewayConfig
from tokligence.schemas import ChatMessage, ChatRequest, ChatRole

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatError(Exception):
    """Base class for errors scoped to one chat exchange."""

    pass


class ChatHttpError(ChatError):
    """Raised when the chat endpoint answers with a non-success status."""

    def __init__(self, status: int, detail: str = ""):
        message = f"HTTP {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.status = status


class StreamHttpError(ChatHttpError):
    """Raised when a streaming request is rejected or has no body."""

    pass


class RequestTimeout(ChatError):
    """Raised when a chat request exceeds its deadline."""

    pass


class ChatTransportError(ChatError):
    """Raised when the gateway cannot be reached."""

    pass


class Cancelled(Exception):
    """Internal signal that an exchange was aborted; never surfaced."""

    pass


class CancelToken:
    """Cooperative abort signal for one exchange.

    The optional deadline trips the same signal as a user cancel, with
    ``timed_out`` set so callers can tell the two apart.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None
        self.timed_out = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        self.disarm()

    def arm(self, timeout: float) -> None:
        """Start the wall-clock deadline on the running loop."""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout, self._expire)

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self) -> None:
        self.timed_out = True
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.timed_out:
            raise RequestTimeout("Chat request timed out")
        if self.cancelled:
            raise Cancelled()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await something unless the token fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        signal = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, signal}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            signal.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except (asyncio.CancelledError, Exception):
                pass
            self.raise_if_cancelled()
        return work.result()


def extract_message_content(response: httpx.Response) -> str:
    """Pull the assistant text out of a buffered chat response.

    Falls back to a JSON string body verbatim, a non-JSON body verbatim, or
    the serialized body when no known shape matches.
    """
    try:
        body: Any = response.json()
    except ValueError:
        return response.text

    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if isinstance(content, str) and content:
        return content
    if isinstance(body, str):
        return body
    return json.dumps(body)


class ChatSession:
    """One linear conversation with the gateway.

    At most one exchange is in flight per session; starting a new one
    cancels the previous.
    """

    def __init__(
        self,
        config_view: ConfigView,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config_view = config_view
        self.api_key = api_key
        self._transport = transport
        self._inflight: CancelToken | None = None
        self.history: list[ChatMessage] = []
        self.clear()

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    def clear(self) -> None:
        """Reset history to the configured system prompt."""
        config = self.config_view.get()
        self.history = [ChatMessage(role=ChatRole.SYSTEM, content=config.system_prompt)]

    def cancel(self) -> None:
        """Abort the in-flight exchange, if any."""
        if self._inflight is not None:
            logger.info("Cancelling in-flight chat request")
            self._inflight.cancel()
            self._inflight = None

    def _headers(self, config: GatewayConfig, streaming: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key or config.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        headers.update(config.request_headers)
        if streaming:
            headers["Accept"] = "text/event-stream"
        return headers

    def send(self, text: str) -> AsyncIterator[str]:
        """Send a user message and return the reply as text fragments.

        The previous in-flight exchange is cancelled and the user message is
        appended before this returns. The reply is read lazily: streaming
        mode yields fragments as they arrive, buffered mode yields the full
        reply once. The assistant message is committed only when the reply
        completes.
        """
        self.cancel()
        config = self.config_view.get()
        self.history.append(ChatMessage(role=ChatRole.USER, content=text))
        request = ChatRequest(
            model=config.model,
            messages=list(self.history),
            stream=config.use_streaming,
        )
        token = CancelToken()
        self._inflight = token
        return self._exchange(config, request, token)

    async def _exchange(
        self,
        config: GatewayConfig,
        request: ChatRequest,
        token: CancelToken,
    ) -> AsyncIterator[str]:
        timeout = config.request_timeout_ms / 1000.0
        url = config.endpoint(config.api_path)
        headers = self._headers(config, request.stream)
        payload = request.model_dump(mode="json")

        try:
            token.arm(timeout)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                if request.stream:
                    reply = ""
                    fragments = self._stream(client, url, headers, payload, token)
                    async with aclosing(fragments):
                        async for fragment in fragments:
                            reply += fragment
                            yield fragment
                else:
                    reply = await self._buffered(client, url, headers, payload, token)
                    token.raise_if_cancelled()
                    yield reply

            token.raise_if_cancelled()
            self.history.append(ChatMessage(role=ChatRole.ASSISTANT, content=reply))
        except Cancelled:
            logger.info("Chat request cancelled")
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"Chat request timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Chat request to {url} failed: {e}")
            raise ChatTransportError(f"Chat request failed: {e}") from e
        finally:
            token.disarm()
            if self._inflight is token:
                self._inflight = None

    async def _buffered(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        token: CancelToken,
    ) -> str:
        response = await token.race(client.post(url, json=payload, headers=headers))
        if not response.is_success:
            raise ChatHttpError(response.status_code, response.text[:200])
        return extract_message_content(response)

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        token: CancelToken,
    ) -> AsyncIterator[str]:
        request = client.build_request("POST", url, json=payload, headers=headers)
        response = await token.race(client.send(request, stream=True))
        try:
            if not response.is_success:
                raise StreamHttpError(response.status_code)

            parser = SSEParser()
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            chunks = response.aiter_bytes()

            async def next_chunk() -> bytes | None:
                try:
                    return await chunks.__anext__()
                except StopAsyncIteration:
                    return None

            while True:
                chunk = await token.race(next_chunk())
                if chunk is None:
                    break
                for event in parser.feed(decoder.decode(chunk)):
                    fragment = extract_delta(event.data)
                    if fragment is None:
                        return
                    if not fragment:
                        continue
                    token.raise_if_cancelled()
                    yield fragment

            # Flush a trailing partial UTF-8 sequence
            for event in parser.feed(decoder.decode(b"", final=True)):
                fragment = extract_delta(event.data)
                if fragment is None:
                    return
                if fragment:
                    token.raise_if_cancelled()
                    yield fragment
        finally:
            await response.aclose()
