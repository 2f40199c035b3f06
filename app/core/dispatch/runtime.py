# app/core/dispatch/runtime.py
"""
Process-wide handles for the job handlers.

The HTTP lifespan (or a standalone worker) builds one orchestrator and
one event sink and registers them here; job handlers look them up when a
job runs, the same way repositories are looked up through ``get_*``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from app.core.dispatch.orchestrator import IncidentOrchestrator
    from app.infra.event_publisher import EventSink

_orchestrator: Optional["IncidentOrchestrator"] = None
_event_sink: Optional["EventSink"] = None


def configure(orchestrator: "IncidentOrchestrator", event_sink: Optional["EventSink"] = None) -> None:
    global _orchestrator, _event_sink
    _orchestrator = orchestrator
    _event_sink = event_sink


def reset() -> None:
    global _orchestrator, _event_sink
    _orchestrator = None
    _event_sink = None


def get_orchestrator() -> "IncidentOrchestrator":
    if _orchestrator is None:
        raise RuntimeError("Dispatch runtime not configured. Call configure() at startup.")
    return _orchestrator


def get_event_sink() -> "EventSink":
    if _event_sink is None:
        raise RuntimeError("No event sink configured")
    return _event_sink
