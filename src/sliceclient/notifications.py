"""Relay server-pushed notifications to user-facing message channels."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ValidationError

from .errors import NotificationDecodeError
from .models import NotificationEvent, Severity

if TYPE_CHECKING:
    from .supervisor import ClientSession

logger = logging.getLogger(__name__)

SHOW_NOTIFICATION = "custom/showNotification"
SHOW_MESSAGE = "window/showMessage"

# LSP MessageType values used by window/showMessage.
_LSP_MESSAGE_TYPES = {
    1: Severity.ERROR,
    2: Severity.WARNING,
    3: Severity.INFO,
    4: Severity.INFO,
}

NotificationSink = Callable[[NotificationEvent], None]


class ShowNotificationParams(BaseModel):
    message: str
    message_type: str


class MessageDisplay(Protocol):
    """User-facing message capability of the host."""

    def show_info(self, message: str) -> None: ...

    def show_warning(self, message: str) -> None: ...

    def show_error(self, message: str) -> None: ...


def display_sink(display: MessageDisplay) -> NotificationSink:
    """Adapt a host message display into a notification sink."""

    def _sink(event: NotificationEvent) -> None:
        if event.severity is Severity.ERROR:
            display.show_error(event.message)
        elif event.severity is Severity.WARNING:
            display.show_warning(event.message)
        else:
            display.show_info(event.message)

    return _sink


def decode_notification(params: Any) -> NotificationEvent:
    """Decode ``custom/showNotification`` params into an event.

    Raises:
        NotificationDecodeError: params are malformed or the severity tag is
            not one of ``Error``, ``Warning`` or ``Info``.
    """
    try:
        parsed = ShowNotificationParams.model_validate(params)
    except ValidationError as exc:
        raise NotificationDecodeError(f"malformed showNotification params: {params!r}") from exc

    try:
        severity = Severity(parsed.message_type)
    except ValueError:
        raise NotificationDecodeError(
            f"unrecognized message_type {parsed.message_type!r}"
        ) from None
    return NotificationEvent(severity=severity, message=parsed.message)


class NotificationRelay:
    """Subscribes to one session's notification channel at a time."""

    def __init__(self) -> None:
        self._session: ClientSession | None = None
        self._sink: NotificationSink | None = None

    @property
    def attached(self) -> bool:
        return self._session is not None

    def attach(self, session: ClientSession, sink: NotificationSink) -> None:
        if self._session is not None:
            self.detach()

        self._session = session
        self._sink = sink
        session.connection.on_notification(SHOW_NOTIFICATION, self._on_show_notification)
        session.connection.on_notification(SHOW_MESSAGE, self._on_show_message)

    def detach(self) -> None:
        session = self._session
        if session is None:
            return

        session.connection.remove_notification_handler(SHOW_NOTIFICATION, self._on_show_notification)
        session.connection.remove_notification_handler(SHOW_MESSAGE, self._on_show_message)
        self._session = None
        self._sink = None

    def _deliver(self, event: NotificationEvent) -> None:
        if self._sink is None:
            return
        self._sink(event)

    def _on_show_notification(self, params: Any) -> None:
        try:
            event = decode_notification(params)
        except NotificationDecodeError as exc:
            logger.error("Dropping server notification: %s", exc)
            return
        self._deliver(event)

    def _on_show_message(self, params: Any) -> None:
        if not isinstance(params, dict) or not isinstance(params.get("message"), str):
            logger.error("Dropping malformed %s params: %r", SHOW_MESSAGE, params)
            return
        message_type = params.get("type")
        severity = _LSP_MESSAGE_TYPES.get(message_type) if isinstance(message_type, int) else None
        if severity is None:
            logger.error("Dropping %s with unrecognized type %r", SHOW_MESSAGE, message_type)
            return
        self._deliver(NotificationEvent(severity=severity, message=params["message"]))
