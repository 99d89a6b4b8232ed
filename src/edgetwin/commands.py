"""Direct method routing.

Maps method names to handlers, with one default handler for names that
have no registration. Handlers may be plain functions or coroutine
functions taking a :class:`CommandInvocation`.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

from edgetwin.models.command import CommandInvocation, CommandResponse

_logger = logging.getLogger(__name__)

Handler = Callable[[CommandInvocation], CommandResponse | Awaitable[CommandResponse]]

SHOW_MESSAGE = "showMessage"

STATUS_OK = 200
STATUS_NOT_IMPLEMENTED = 404
STATUS_HANDLER_FAILED = 500


def not_implemented(invocation: CommandInvocation) -> CommandResponse:
    """Fallback for methods with no registered handler."""
    _logger.warning(
        "Unregistered direct method called name=%s payload=%s",
        invocation.name,
        invocation.payload_json,
    )
    return CommandResponse(
        status=STATUS_NOT_IMPLEMENTED,
        payload={"response": "The method is not implemented"},
    )


def show_message(invocation: CommandInvocation) -> CommandResponse:
    """Surface the received payload to the operator and acknowledge it."""
    _logger.info("Direct message received: %s", invocation.payload_json)
    return CommandResponse(status=STATUS_OK, payload={"response": "Message shown!"})


class CommandDispatcher:
    """Name to handler registry with a default fallback.

    Names are case-sensitive. Registering a name again replaces the
    previous handler.
    """

    def __init__(self, default: Handler = not_implemented) -> None:
        self._handlers: dict[str, Handler] = {}
        self._default: Handler = default

    @classmethod
    def with_builtin_handlers(cls) -> CommandDispatcher:
        dispatcher = cls()
        dispatcher.register(SHOW_MESSAGE, show_message)
        return dispatcher

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            _logger.debug("Replacing handler for direct method %s", name)
        self._handlers[name] = handler

    def register_default(self, handler: Handler) -> None:
        self._default = handler

    def names(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, invocation: CommandInvocation) -> CommandResponse:
        """Route *invocation* and always return a response.

        Unknown names go to the default handler. A handler that raises is
        reported to the caller as a 500 response.
        """
        handler = self._handlers.get(invocation.name, self._default)
        try:
            result = handler(invocation)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            _logger.exception("Direct method handler failed name=%s", invocation.name)
            return CommandResponse(
                status=STATUS_HANDLER_FAILED,
                payload={"response": "Method handler failed"},
            )
        return result
