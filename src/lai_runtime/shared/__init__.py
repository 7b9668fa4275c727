"""Shared utilities used across lai-runtime components."""

from .logging import (
    Event,
    EventCategory,
    EventCollector,
    EventLevel,
    EventRenderer,
    LogConfig,
    collector_context,
    emit_event,
    log_operation,
    set_current_collector,
)
from .token_filter import DEFAULT_CONTROL_TOKENS, TokenFilter, filter_control_tokens

__all__ = [
    "DEFAULT_CONTROL_TOKENS",
    "Event",
    "EventCategory",
    "EventCollector",
    "EventLevel",
    "EventRenderer",
    "LogConfig",
    "TokenFilter",
    "collector_context",
    "emit_event",
    "filter_control_tokens",
    "log_operation",
    "set_current_collector",
]
