"""
Structured diagnostics for the optimization core.

Core services emit events (unassigned places, segment reuse decisions, provider
fallbacks) through a DiagnosticsSink. Callers choose whether events are dropped,
logged, or collected and returned to the user.
"""
import logging
from typing import Any, Dict, List, Protocol

logger = logging.getLogger("diagnostics")


class DiagnosticsSink(Protocol):
    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        ...


class NullDiagnostics:
    """이벤트를 버리는 sink"""

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        return None


class LoggingDiagnostics:
    """이벤트를 logging으로 전달 (extra에 구조화 필드 포함)"""

    def __init__(self, target: logging.Logger = logger):
        self.logger = target

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        summary = ", ".join(f"{key}={value}" for key, value in fields.items())
        self.logger.log(
            level,
            f"{event}: {summary}" if summary else event,
            extra={"event": event, "fields": fields},
        )


class CollectingDiagnostics:
    """
    이벤트를 메모리에 모으는 sink

    min_level 이상의 이벤트만 warnings로 노출하며, forward가 있으면 함께 전달한다.
    """

    def __init__(self, min_level: int = logging.WARNING, forward: DiagnosticsSink = None):
        self.min_level = min_level
        self.forward = forward
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        self.events.append({"event": event, "level": logging.getLevelName(level), **fields})
        if self.forward is not None:
            self.forward.emit(event, level, **fields)

    @property
    def warnings(self) -> List[Dict[str, Any]]:
        return [
            e for e in self.events
            if logging.getLevelName(e["level"]) >= self.min_level
        ]

    def count(self, event: str) -> int:
        return sum(1 for e in self.events if e["event"] == event)


null_diagnostics = NullDiagnostics()
