# app/core/dispatch/__init__.py
"""
Dispatch core: matches roadside incidents to vendors and drives them
through their fulfillment lifecycle.

This package is layered bottom-up:
- ``scoring``: pure vendor scoring (no I/O)
- ``matching``: roster query + ranking (``MatchEngine``)
- ``offers``: offer lifecycle, first-accept-wins (``OfferLifecycleManager``)
- ``orchestrator``: durable incident state machine (``IncidentOrchestrator``)
- ``jobs``: job handlers that redeliver timers and outbound events

Collaborators (stores, roster, publisher, scheduler, config) are injected
through the protocols in ``ports``; nothing here imports ``app.transport``.
"""
