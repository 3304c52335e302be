"""Host-exposed callback registry for the child's side channel.

The child names an operation and sends JSON arguments; the host looks the
name up in an explicit registry and calls the matching handler.  Handlers
are wrapped with ``pydantic.validate_call`` so the JSON arguments are
validated and coerced against the handler's annotations before it runs.
Nothing outside the registry is reachable.

Example:
    ```python
    backend = CallbackBackend()

    @backend.register("display")
    def display(text: str, *, mime: str = "text/plain") -> None:
        ...

    backend.invoke("display", ["hello"], {"mime": "text/html"})
    ```
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any, overload

from pydantic import ValidationError, validate_call

from kernel_bridge._logging import get_logger
from kernel_bridge.exceptions import CallbackArgumentError, UnknownCallbackError

logger = get_logger(__name__)

Handler = Callable[..., Any]


class CallbackBackend:
    """Statically enumerated mapping of operation name -> typed handler."""

    def __init__(self, handlers: Mapping[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    @overload
    def register(self, name: str, handler: Handler) -> Handler: ...

    @overload
    def register(self, name: str, handler: None = ...) -> Callable[[Handler], Handler]: ...

    def register(self, name: str, handler: Handler | None = None) -> Handler | Callable[[Handler], Handler]:
        """Register ``handler`` under ``name``; usable as a decorator.

        Re-registering a name replaces the previous handler.

        Returns:
            The original handler (so decorated functions stay callable as-is).
        """
        if not name:
            raise ValueError("Callback name must be non-empty")

        def _register(fn: Handler) -> Handler:
            validated = validate_call(fn)
            with self._lock:
                replaced = name in self._handlers
                self._handlers[name] = validated
            logger.debug("Callback registered", extra={"callback": name, "replaced": replaced})
            return fn

        if handler is None:
            return _register
        return _register(handler)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._handlers.pop(name, None) is not None

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handlers

    def invoke(self, name: str, args: Sequence[Any] = (), kwargs: Mapping[str, Any] | None = None) -> Any:
        """Invoke the handler registered under ``name``.

        Raises:
            UnknownCallbackError: No handler with that name.
            CallbackArgumentError: Arguments don't match the handler signature.
            Exception: Whatever the handler itself raises.
        """
        with self._lock:
            handler = self._handlers.get(name)
        if handler is None:
            raise UnknownCallbackError(
                f"No callback registered as {name!r}",
                context={"callback": name, "registered": self.names()},
            )
        try:
            return handler(*args, **dict(kwargs or {}))
        except ValidationError as e:
            raise CallbackArgumentError(
                f"Invalid arguments for callback {name!r}: {e.error_count()} validation error(s)",
                context={"callback": name, "errors": e.errors(include_url=False)},
            ) from e
