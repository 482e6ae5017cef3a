"""Structured logging context and per-attempt metrics for capture runs."""

import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, DefaultDict, Dict, List, Optional

from .logging_config import setup_logger


class LogLevel(Enum):
    """Levels accepted by StructuredLogger."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


@dataclass(frozen=True)
class LogContext:
    """
    Who and what a log line is about.

    The correlation id is the run's idempotency key where one exists, so every
    retry of one logical action shares it.
    """

    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    operation: str = ""
    component: str = ""
    owner_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        return replace(self, operation=operation, metadata=dict(self.metadata))

    def with_metadata(self, **kwargs: Any) -> "LogContext":
        return replace(self, metadata={**self.metadata, **kwargs})

    def fields(self) -> Dict[str, Any]:
        merged = dict(self.metadata)
        if self.owner_id:
            merged["owner_id"] = self.owner_id
        return merged


def render(message: str, context: Optional[LogContext], extra: Dict[str, Any]) -> str:
    """``[operation] [correlation id] message (key=value, ...)``."""
    fields = {**context.fields(), **extra} if context else dict(extra)
    if context:
        prefix = f"[{context.correlation_id}] "
        if context.operation:
            prefix = f"[{context.operation}] {prefix}"
        message = prefix + message
    if fields:
        message += " (" + ", ".join(f"{k}={v}" for k, v in fields.items()) + ")"
    return message


class StructuredLogger:
    """LoggerProtocol implementation on top of a configured stdlib logger."""

    def __init__(self, name: str, level: Optional[str] = None):
        self._logger = setup_logger(name, level=level)

    @property
    def name(self) -> str:
        return self._logger.name

    def _emit(
        self,
        level: LogLevel,
        message: str,
        context: Optional[LogContext],
        extra: Dict[str, Any],
    ) -> None:
        if self._logger.isEnabledFor(level.value):
            self._logger.log(level.value, render(message, context, extra))

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._emit(LogLevel.DEBUG, message, context, kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._emit(LogLevel.INFO, message, context, kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._emit(LogLevel.WARNING, message, context, kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs):
        self._emit(LogLevel.ERROR, message, context, kwargs)


@dataclass
class PerformanceMetrics:
    """Timing of one operation, e.g. one remote invocation attempt."""

    operation: str
    start_time: float
    end_time: float
    success: bool
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000


class MetricsCollector:
    """In-process metrics, grouped by operation name."""

    def __init__(self):
        self._by_operation: DefaultDict[str, List[PerformanceMetrics]] = defaultdict(list)

    def record_metric(self, metric: PerformanceMetrics) -> None:
        self._by_operation[metric.operation].append(metric)

    def record(
        self,
        operation: str,
        start_time: float,
        success: bool,
        error_message: Optional[str] = None,
        **metadata: Any,
    ) -> PerformanceMetrics:
        """Record an operation that started at ``start_time`` and ends now."""
        metric = PerformanceMetrics(
            operation=operation,
            start_time=start_time,
            end_time=time.time(),
            success=success,
            error_message=error_message,
            metadata=metadata,
        )
        self.record_metric(metric)
        return metric

    def get_metrics(self, operation: Optional[str] = None) -> List[PerformanceMetrics]:
        if operation:
            return list(self._by_operation.get(operation, ()))
        return [metric for group in self._by_operation.values() for metric in group]

    def get_summary(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """
        Counts, success rate and durations; failures are also counted per error.

        Returns an empty dict when nothing was recorded.
        """
        metrics = self.get_metrics(operation)
        if not metrics:
            return {}

        durations = [m.duration for m in metrics]
        failures: Dict[str, int] = defaultdict(int)
        for metric in metrics:
            if not metric.success:
                failures[metric.error_message or "unknown"] += 1
        failed = sum(failures.values())

        return {
            "total_operations": len(metrics),
            "successful_operations": len(metrics) - failed,
            "failed_operations": failed,
            "failures_by_error": dict(failures),
            "success_rate": (len(metrics) - failed) / len(metrics),
            "avg_duration": sum(durations) / len(durations),
            "min_duration": min(durations),
            "max_duration": max(durations),
        }

    def clear_metrics(self) -> None:
        self._by_operation.clear()
