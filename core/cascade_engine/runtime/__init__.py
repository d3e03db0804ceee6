"""Runtime pieces shared by the executor and its observers."""

from cascade_engine.runtime.event_bus import CascadeEvent, EventBus, EventType
from cascade_engine.runtime.run_state_store import RunStateStore

__all__ = ["CascadeEvent", "EventBus", "EventType", "RunStateStore"]
