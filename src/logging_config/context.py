"""Delivery Context Management.

Task-local delivery context using contextvars for binding the loop name,
user ID and queue item ID to log entries. Contexts nest: an item context
opened inside a loop context keeps the loop name.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# Context variables for delivery-scoped data
_tick_id_var: ContextVar[str] = ContextVar("tick_id", default="")
_loop_var: ContextVar[str] = ContextVar("loop", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_item_id_var: ContextVar[str] = ContextVar("item_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_tick_id() -> str:
    """Generate a short unique tick ID."""
    return uuid.uuid4().hex[:12]


def get_tick_id() -> str:
    return _tick_id_var.get()


def get_user_id() -> str:
    return _user_id_var.get()


def get_item_id() -> str:
    return _item_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    for key, var in (
        ("tick_id", _tick_id_var),
        ("loop", _loop_var),
        ("user_id", _user_id_var),
        ("item_id", _item_id_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class DeliveryContext:
    """Context manager binding delivery identifiers to log entries.

    Only non-empty fields are bound; on exit the previous values are
    restored.

    Example:
        with DeliveryContext(loop="queue", tick_id=generate_tick_id()):
            with DeliveryContext(user_id=item.user_id, item_id=item.item_id):
                logger.info("delivering")  # includes loop, tick_id, user_id, item_id
    """

    loop: str = ""
    tick_id: str = ""
    user_id: str = ""
    item_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "DeliveryContext":
        for var, value in (
            (_loop_var, self.loop),
            (_tick_id_var, self.tick_id),
            (_user_id_var, self.user_id),
            (_item_id_var, self.item_id),
        ):
            if value:
                self._tokens.append((var, var.set(value)))
        if self.extra:
            merged = {**_extra_context_var.get(), **self.extra}
            self._tokens.append((_extra_context_var, _extra_context_var.set(merged)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        current = _extra_context_var.get()
        self._tokens.append((_extra_context_var, _extra_context_var.set({**current, **kwargs})))
        self.extra.update(kwargs)
