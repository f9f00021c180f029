"""
Asynchronous JSON-RPC 2.0 connection with LSP Content-Length framing.

One ``JsonRpcConnection`` wraps the byte streams of a spawned server:
requests are correlated with responses by id, server notifications are
dispatched to registered handlers, and server-initiated requests are answered
from registered request handlers (or with ``MethodNotFound``).
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any

import anyio
from anyio.abc import ByteReceiveStream, ByteSendStream

from .errors import TransportError

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
_MAX_CONTENT_LENGTH = 256 * 1024 * 1024

NotificationHandler = Callable[[Any], None]
RequestHandler = Callable[[Any], Any]


class ResponseError(TransportError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str) -> None:
        self.method = method
        self.code = code
        super().__init__(f"{method} failed ({code}): {message}")


def encode_message(payload: dict[str, Any]) -> bytes:
    """Frame one JSON-RPC payload for the wire."""
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


class MessageReader:
    """Buffered reader for Content-Length framed messages."""

    def __init__(self, stream: ByteReceiveStream) -> None:
        self._stream = stream
        self._buf = b""

    async def _fill(self, min_bytes: int) -> None:
        while len(self._buf) < min_bytes:
            try:
                chunk = await self._stream.receive()
            except (anyio.EndOfStream, anyio.ClosedResourceError, anyio.BrokenResourceError):
                raise EOFError("server stream closed") from None
            self._buf += chunk

    async def read_message(self) -> bytes:
        """Return the body of the next framed message.

        Raises:
            EOFError: the stream ended.
            ValueError: the header block had no usable Content-Length.
        """
        header_end = -1
        delim_len = 0
        while True:
            for delimiter in (b"\r\n\r\n", b"\n\n"):
                if delimiter in self._buf:
                    header_end = self._buf.index(delimiter)
                    delim_len = len(delimiter)
                    break
            if header_end >= 0:
                break
            await self._fill(len(self._buf) + 1)

        headers = self._buf[:header_end].decode("ascii", errors="replace")
        self._buf = self._buf[header_end + delim_len :]

        content_length = None
        for header_line in headers.splitlines():
            if ":" not in header_line:
                continue
            name, value = header_line.split(":", 1)
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise ValueError(f"Invalid Content-Length header: {value.strip()!r}") from None
                break

        if content_length is None:
            raise ValueError("Missing Content-Length header in framed message")
        if content_length > _MAX_CONTENT_LENGTH:
            raise ValueError(
                f"Content-Length {content_length} exceeds maximum {_MAX_CONTENT_LENGTH}"
            )

        await self._fill(content_length)
        body = self._buf[:content_length]
        self._buf = self._buf[content_length:]
        return body


def _error_code(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return INTERNAL_ERROR


class _PendingRequest:
    def __init__(self, method: str) -> None:
        self.method = method
        self.event = anyio.Event()
        self.result: Any = None
        self.error: TransportError | None = None


class JsonRpcConnection:
    """Duplex JSON-RPC connection over a pair of byte streams."""

    def __init__(
        self,
        send_stream: ByteSendStream,
        receive_stream: ByteReceiveStream,
    ) -> None:
        self._send_stream = send_stream
        self._reader = MessageReader(receive_stream)
        self._send_lock = anyio.Lock()
        self._pending: dict[int, _PendingRequest] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._next_id = 1
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers[method] = handler

    def remove_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        if self._notification_handlers.get(method) == handler:
            del self._notification_handlers[method]

    def on_request(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError("connection is closed")

        data = encode_message(payload)
        async with self._send_lock:
            try:
                await self._send_stream.send(data)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as exc:
                raise TransportError(f"failed to write to server: {exc}") from exc

    async def notify(self, method: str, params: Any = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._send(payload)

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            TransportError: the connection closed, the write failed, or no
                response arrived within ``timeout`` seconds.
            ResponseError: the server answered with an error object.
        """
        request_id = self._next_id
        self._next_id += 1

        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        pending = _PendingRequest(method)
        self._pending[request_id] = pending
        try:
            await self._send(payload)
            with anyio.fail_after(timeout):
                await pending.event.wait()
        except TimeoutError:
            raise TransportError(f"Timed out waiting for response to {method}") from None
        finally:
            self._pending.pop(request_id, None)

        if pending.error is not None:
            raise pending.error
        return pending.result

    async def serve(self) -> None:
        """Read and dispatch messages until the server stream ends."""
        try:
            while True:
                try:
                    body = await self._reader.read_message()
                except EOFError:
                    break
                except ValueError as exc:
                    logger.warning("Skipping malformed frame from server: %s", exc)
                    continue

                message = self._decode(body)
                if message is None:
                    continue
                try:
                    await self._dispatch(message)
                except Exception:
                    logger.exception("Error dispatching message from server: %r", message)
        finally:
            self._fail_pending(TransportError("connection closed by server"))

    def _decode(self, body: bytes) -> dict[str, Any] | None:
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Skipping undecodable message from server: %s", exc)
            return None
        if not isinstance(decoded, dict):
            logger.warning("Skipping non-object message from server: %r", decoded)
            return None
        return decoded

    async def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")

        if isinstance(method, str) and "id" in message:
            await self._answer_request(message["id"], method, message.get("params"))
            return

        if isinstance(method, str):
            handler = self._notification_handlers.get(method)
            if handler is None:
                logger.debug("Ignoring server notification %s", method)
                return
            try:
                handler(message.get("params"))
            except Exception:
                logger.exception("Error handling server notification %s", method)
            return

        request_id = message.get("id")
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            logger.warning("Ignoring response with invalid id %r", request_id)
            return
        pending = self._pending.get(request_id)
        if pending is None:
            logger.debug("Ignoring response for unknown request id %r", request_id)
            return

        error = message.get("error")
        if isinstance(error, dict):
            pending.error = ResponseError(
                pending.method, _error_code(error.get("code")), str(error.get("message", ""))
            )
        else:
            pending.result = message.get("result")
        pending.event.set()

    async def _answer_request(self, request_id: Any, method: str, params: Any) -> None:
        handler = self._request_handlers.get(method)
        response: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if handler is None:
            response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Unhandled method {method}"}
        else:
            try:
                response["result"] = handler(params)
            except Exception as exc:
                logger.exception("Error answering server request %s", method)
                response["error"] = {"code": INTERNAL_ERROR, "message": str(exc)}

        try:
            await self._send(response)
        except TransportError as exc:
            logger.debug("Could not answer server request %s: %s", method, exc)

    def _fail_pending(self, error: TransportError) -> None:
        self._closed = True
        for pending in self._pending.values():
            if not pending.event.is_set():
                pending.error = error
                pending.event.set()

    async def aclose(self) -> None:
        """Close the outbound stream and fail any outstanding requests."""
        self._fail_pending(TransportError("connection closed"))
        with contextlib.suppress(Exception):
            await self._send_stream.aclose()
