"""
Telemetry capability used by the CDC pipeline.

The pipeline only ever needs two things from telemetry:
- capture_exception(error): report an exception
- capture_async_function(name, attributes, fn): run ``fn`` inside a span

OpenTelemetryTelemetry implements them with the opentelemetry API (a no-op
tracer unless the process installs an SDK). RecordingTelemetry keeps
everything in memory for tests.

Cold start tracking lives in a ProcessContext that the entry point owns
and passes to every handler, so there is no module-level mutable flag.

Invariants:
    - ProcessContext.invocation_attributes reports faas.coldstart=True
      exactly once per ProcessContext
    - capture_async_function never swallows the exception raised by fn
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attributes = Dict[str, Any]

_recording_span: ContextVar[Optional[Tuple[str, Attributes]]] = ContextVar(
    "recording_span", default=None
)


class Telemetry(Protocol):
    """What the pipeline needs from a telemetry backend."""

    def capture_exception(self, error: BaseException) -> None:
        ...

    async def capture_async_function(
        self,
        name: str,
        attributes: Attributes,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        ...


def _clean(attributes: Attributes) -> Attributes:
    """Drop None values, which span attributes do not accept."""
    return {k: v for k, v in attributes.items() if v is not None}


class OpenTelemetryTelemetry:
    """Telemetry backed by an OpenTelemetry tracer.

    Example:
        >>> telemetry = OpenTelemetryTelemetry()
        >>> await telemetry.capture_async_function("work", {"faas.trigger": "datasource"}, do_work)
    """

    def __init__(self, tracer: Optional[trace.Tracer] = None) -> None:
        self._tracer = tracer or trace.get_tracer("dataplane.tabledata")

    def capture_exception(self, error: BaseException) -> None:
        span = trace.get_current_span()
        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, str(error)))
        logger.error(
            f"Captured exception: {error}",
            exc_info=(type(error), error, error.__traceback__),
            extra={"error_type": type(error).__name__},
        )

    async def capture_async_function(
        self,
        name: str,
        attributes: Attributes,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        with self._tracer.start_as_current_span(name, attributes=_clean(attributes)):
            return await fn()


@dataclass(frozen=True)
class InvocationContext:
    """The parts of a function invocation context telemetry reports.

    Attributes:
        request_id: Invocation request id
        function_arn: ARN the function was invoked through
        function_version: Function version
    """

    request_id: Optional[str] = None
    function_arn: Optional[str] = None
    function_version: Optional[str] = None

    @classmethod
    def from_lambda(cls, context: Any) -> InvocationContext:
        """Build from an AWS Lambda context object (or None)."""
        if context is None:
            return cls()
        if isinstance(context, InvocationContext):
            return context
        return cls(
            request_id=getattr(context, "aws_request_id", None),
            function_arn=getattr(context, "invoked_function_arn", None),
            function_version=getattr(context, "function_version", None),
        )


class ProcessContext:
    """Per-process state shared by every invocation handled in the process.

    Create one at startup and pass it to each handler.
    """

    def __init__(self) -> None:
        self._cold = True

    @property
    def cold(self) -> bool:
        return self._cold

    def invocation_attributes(self, context: Any = None) -> Attributes:
        """Span attributes for one invocation.

        The first call on a ProcessContext reports ``faas.coldstart`` True,
        every later call False.
        """
        was_cold = self._cold
        self._cold = False

        invocation = InvocationContext.from_lambda(context)
        attributes: Attributes = {
            "faas.coldstart": was_cold,
            "faas.execution": invocation.request_id,
            "aws.lambda.invoked_arn": invocation.function_arn,
        }
        if invocation.function_arn:
            parts = invocation.function_arn.split(":")
            if len(parts) > 4:
                attributes["cloud.account.id"] = parts[4]
            attributes["faas.id"] = f"{':'.join(parts[:7])}:{invocation.function_version}"
        return _clean(attributes)


@dataclass
class RecordingTelemetry:
    """In-memory telemetry for tests.

    Attributes:
        exceptions: Every captured exception, in capture order
        exception_spans: The (name, attributes) of the span that was
            current when each exception was captured, or None
        spans: (name, attributes) of every span started
    """

    exceptions: List[BaseException] = field(default_factory=list)
    exception_spans: List[Optional[Tuple[str, Attributes]]] = field(default_factory=list)
    spans: List[Tuple[str, Attributes]] = field(default_factory=list)

    def capture_exception(self, error: BaseException) -> None:
        self.exceptions.append(error)
        self.exception_spans.append(_recording_span.get())

    async def capture_async_function(
        self,
        name: str,
        attributes: Attributes,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        span = (name, dict(attributes))
        self.spans.append(span)
        token = _recording_span.set(span)
        try:
            return await fn()
        finally:
            _recording_span.reset(token)

    def span_names(self) -> List[str]:
        return [name for name, _ in self.spans]
