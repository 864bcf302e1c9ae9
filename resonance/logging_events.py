"""Structured logging helpers for queue and stage lifecycle events."""

from __future__ import annotations

from typing import Any

_JSON_PRIMITIVES = (str, int, float, bool, type(None))


def _validate_flat_value(name: str, value: Any) -> None:
    if isinstance(value, _JSON_PRIMITIVES):
        return
    raise TypeError(f"Field '{name}' must be a flat JSON-compatible value")


def log_event(logger: Any, event: str, /, **fields: Any) -> None:
    """Emit a structured log event; ``None`` fields are dropped."""

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")

    extra: dict[str, Any] = {"event": event}
    for name, value in fields.items():
        if value is None:
            continue
        _validate_flat_value(name, value)
        extra[name] = value

    logger.info(event, extra=extra)
