"""Ambient request context for correlation across async call chains.

Every inbound request gets one ``RequestContext`` holding its request, trace and
span identifiers. The context lives in a ``ContextVar`` so any code running on
behalf of the request (including code after an ``await``) can read it with
``current()`` without a context parameter being threaded through.

The value stored in the variable is a mutable holder. ``merge()`` updates the
holder in place, so fields attached late (the authenticated owner id, say) are
seen by every reader of the same request, including tasks copied from it.
Concurrent requests never share a holder because each ``TracingContext`` entry
installs its own.
"""

import re
import secrets
import time
from collections.abc import Awaitable, Callable, Mapping
from contextvars import ContextVar, Token
from dataclasses import dataclass, field, fields
from types import TracebackType
from typing import Any, ParamSpec, TypeVar

REQUEST_ID_HEADER = "X-Request-ID"
TRACE_ID_HEADER = "X-Trace-ID"

_VALID_INBOUND_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

P = ParamSpec("P")
R = TypeVar("R")


@dataclass
class RequestContext:
    """Correlation identifiers for one in-flight request.

    Attributes:
        request_id: Globally unique request id (client-supplied or generated).
        trace_id: Distributed trace id (client-supplied or generated).
        span_id: Id of this process's hop, always generated.
        user_id: Owner of the authenticated credential, once known.
        start_time: Epoch seconds at which handling started.
        extra: Any additional merged fields.
    """

    request_id: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    user_id: str | None = None
    start_time: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def update(self, **values: Any) -> None:
        """Set known fields as attributes and everything else under ``extra``."""
        for name, value in values.items():
            if name in _FIELD_NAMES and name != "extra":
                setattr(self, name, value)
            else:
                self.extra[name] = value

    def merged(self, other: "RequestContext") -> "RequestContext":
        """Return a new context with ``other``'s non-empty fields laid over this one."""
        result = RequestContext(
            request_id=self.request_id,
            trace_id=self.trace_id,
            span_id=self.span_id,
            user_id=self.user_id,
            start_time=self.start_time,
            extra=dict(self.extra),
        )
        for name in _FIELD_NAMES:
            if name == "extra":
                continue
            value = getattr(other, name)
            if value is not None:
                setattr(result, name, value)
        result.extra.update(other.extra)
        return result

    def is_empty(self) -> bool:
        return self == RequestContext()

    def as_log_fields(self) -> dict[str, Any]:
        """Return the correlation fields stamped on log entries."""
        return {
            "request_id": self.request_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "user_id": self.user_id,
        }


_FIELD_NAMES = tuple(f.name for f in fields(RequestContext))

_request_context_var: ContextVar[RequestContext | None] = ContextVar(
    "request_context", default=None
)


def generate_request_id() -> str:
    """Generate a new request id (``req_`` + 24 hex chars)."""
    return f"req_{secrets.token_hex(12)}"


def generate_trace_id() -> str:
    """Generate a new 32 hex char trace id."""
    return secrets.token_hex(16)


def generate_span_id() -> str:
    """Generate a new 16 hex char span id."""
    return secrets.token_hex(8)


def _inbound_id(carrier: Mapping[str, str], header: str) -> str | None:
    value = carrier.get(header.lower())
    if value and _VALID_INBOUND_ID.match(value):
        return value
    return None


def begin(carrier: Mapping[str, str] | None = None) -> RequestContext:
    """Build the context for a new inbound request.

    Request and trace ids are taken from the carrier headers when present and
    well-formed, otherwise generated. The span id is always generated since it
    identifies this hop, not the end-to-end transaction.

    Args:
        carrier: Inbound headers (any mapping; lookup is case-insensitive).

    Returns:
        RequestContext: A fully populated context.

    Example:
        >>> ctx = begin({"X-Request-ID": "req_client_1"})
        >>> ctx.request_id
        'req_client_1'
    """
    normalized = {str(k).lower(): v for k, v in (carrier or {}).items()}
    return RequestContext(
        request_id=_inbound_id(normalized, REQUEST_ID_HEADER) or generate_request_id(),
        trace_id=_inbound_id(normalized, TRACE_ID_HEADER) or generate_trace_id(),
        span_id=generate_span_id(),
        start_time=time.time(),
    )


def current() -> RequestContext:
    """Return the ambient context, or an empty one outside any scope.

    Never raises; the empty context is detached, so writes to it go nowhere.
    """
    ctx = _request_context_var.get()
    if ctx is None:
        return RequestContext()
    return ctx


def merge(**values: Any) -> None:
    """Extend the active context in place (no-op outside any scope).

    Example:
        >>> with TracingContext(begin()):
        ...     merge(user_id="user_42")
        ...     current().user_id
        'user_42'
    """
    ctx = _request_context_var.get()
    if ctx is None:
        return
    ctx.update(**values)


def get_correlation_id() -> str | None:
    """Get the request id of the ambient context, if any."""
    return current().request_id


class TracingContext:
    """Context manager installing a request context for a code block.

    At the outermost level the given context object itself becomes ambient, so
    the caller keeps a handle on fields merged later. Nested entries install a
    copy of the outer context with the inner fields laid over it; the outer
    context is restored untouched on exit.

    Example:
        >>> with TracingContext(begin()) as ctx:
        ...     assert current() is ctx
    """

    def __init__(self, context: RequestContext | None = None) -> None:
        """Initialize the tracing context.

        Args:
            context: Context to install. If None, a fresh one is generated.
        """
        self.context = context if context is not None else begin()
        self._token: Token[RequestContext | None] | None = None

    def __enter__(self) -> RequestContext:
        """Enter the scope and return the now-ambient context."""
        outer = _request_context_var.get()
        active = self.context if outer is None else outer.merged(self.context)
        self._token = _request_context_var.set(active)
        return active

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Restore whatever context was ambient before entry."""
        if self._token is not None:
            _request_context_var.reset(self._token)
            self._token = None


def run(
    context: RequestContext, fn: Callable[P, R], *args: P.args, **kwargs: P.kwargs
) -> R:
    """Call ``fn`` with ``context`` ambient for its whole extent."""
    with TracingContext(context):
        return fn(*args, **kwargs)


async def run_async(
    context: RequestContext,
    fn: Callable[P, Awaitable[R]],
    *args: P.args,
    **kwargs: P.kwargs,
) -> R:
    """Await ``fn`` with ``context`` ambient, including across its suspensions."""
    with TracingContext(context):
        return await fn(*args, **kwargs)


# Export public API
__all__ = [
    "REQUEST_ID_HEADER",
    "TRACE_ID_HEADER",
    "RequestContext",
    "TracingContext",
    "begin",
    "current",
    "generate_request_id",
    "generate_span_id",
    "generate_trace_id",
    "get_correlation_id",
    "merge",
    "run",
    "run_async",
]
