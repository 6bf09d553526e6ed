"""
Run telemetry for the step loop.

Every event names the step and role it belongs to (run-level events
leave both empty), so the audit log can be filtered per step without
digging through payloads.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from tddmachine.step import Role


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StepEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=_now)
    event_type: str
    source: str
    step: int | None = Field(default=None, ge=1)
    role: Role | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[StepEvent], None]


class EventBus:
    """Synchronous fan-out of run telemetry (step started, attempt failed, commit...)."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: str,
        source: str,
        payload: dict[str, Any] | None = None,
        step: int | None = None,
        role: Role | None = None,
    ) -> StepEvent:
        event = StepEvent(
            event_type=event_type, source=source, step=step, role=role,
            payload=payload or {},
        )
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A broken sink must not stop the run.
                logger.warning(f"[EVENTS] subscriber failed on {event_type}: {e}")
        return event
