"""Spans around chat submissions, model turns and vault function calls.

Tracing stays off until :func:`instrument` is called, and the span helpers
below yield ``None`` while it is off. Only ``opentelemetry-api`` is needed
here; exporters are configured by the application.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "vaultkeeper") -> None:
    """Start emitting ``chat``, ``turn`` and ``execute_tool`` spans.

    Spans go to the TracerProvider registered with ``opentelemetry.trace``;
    ``examples/vault_chat_example.py --trace`` prints them to the console.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed
            (``pip install vaultkeeper[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "Tracing needs opentelemetry-api: pip install vaultkeeper[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured; chat spans are dropped")
    else:
        logger.info(f"Tracing chats with tracer {tracer_name!r}")


def uninstrument() -> None:
    """Stop emitting spans. Open spans still close normally."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def chat_span(provider: str, model: str):
    """Wrap one ChatOrchestrator.submit() in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"chat {model}",
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def turn_span(provider: str, model: str, turn: int):
    """Wrap one streamed model turn in a ``turn`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"turn {turn}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "turn",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
            "vaultkeeper.turn": turn,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Span for one vault function the model asked for, keyed by its call id."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_error(span, error: BaseException | str) -> None:
    """Record an error and set ERROR status on a span.

    *error* is either an exception or the message of an error reported
    by the provider stream. No-ops when *span* is ``None``.
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    if isinstance(error, BaseException):
        span.set_status(StatusCode.ERROR, str(error))
        span.record_exception(error)
        span.set_attribute("error.type", type(error).__qualname__)
    else:
        span.set_status(StatusCode.ERROR, error)
        span.set_attribute("error.type", "provider_error")
