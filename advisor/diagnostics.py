from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticEvent:
    """One observation from the provider path or the fallback decision.

    Events are write-only: nothing in the engine reads them back.
    """

    stage: str
    attempt: Optional[int] = None
    duration_ms: Optional[int] = None
    status: Optional[int] = None
    ok: Optional[bool] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    provider: Optional[str] = None
    trace_id: Optional[str] = None
    retry_after_sec: Optional[int] = None

    def as_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


class DiagnosticSink(Protocol):
    def emit(self, event: DiagnosticEvent) -> None: ...


class NullSink:
    def emit(self, event: DiagnosticEvent) -> None:
        return None


class LoggingSink:
    def __init__(self, log: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self.log = log or logger
        self.level = level

    def emit(self, event: DiagnosticEvent) -> None:
        self.log.log(self.level, "advisor diagnostic %s", event.stage, extra={"diagnostic": event.as_dict()})


@dataclass(frozen=True)
class CallbackSink:
    callback: Callable[[DiagnosticEvent], None]

    def emit(self, event: DiagnosticEvent) -> None:
        self.callback(event)


class FanoutSink:
    """Deliver each event to every wrapped sink, in order."""

    def __init__(self, sinks: Iterable[DiagnosticSink]) -> None:
        self.sinks = tuple(sinks)

    def emit(self, event: DiagnosticEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception:
                logger.exception("Diagnostic sink %r failed for stage %s", sink, event.stage)


def combine_sinks(
    base: DiagnosticSink | None, callback: Callable[[DiagnosticEvent], None] | None
) -> DiagnosticSink:
    sinks = [sink for sink in (base,) if sink is not None]
    if callback is not None:
        sinks.append(CallbackSink(callback))
    if not sinks:
        return NullSink()
    if len(sinks) == 1:
        return sinks[0]
    return FanoutSink(sinks)
