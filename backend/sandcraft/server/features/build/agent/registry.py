import asyncio
from uuid import UUID


class InFlightRegistry:
    """Process-wide set of projects with an agent turn in flight.

    Each entry holds the turn's cancellation event. A second registration
    for the same project is rejected immediately, never queued. All access
    happens on the event loop thread, so check-and-insert is atomic.
    """

    def __init__(self) -> None:
        self._turns: dict[UUID, asyncio.Event] = {}

    def register(self, project_id: UUID) -> asyncio.Event | None:
        """Claim the project. Returns None if a turn is already in flight."""
        if project_id in self._turns:
            return None
        cancel_event = asyncio.Event()
        self._turns[project_id] = cancel_event
        return cancel_event

    def deregister(self, project_id: UUID, cancel_event: asyncio.Event) -> None:
        # Only the owner of the entry may remove it
        if self._turns.get(project_id) is cancel_event:
            del self._turns[project_id]

    def cancel(self, project_id: UUID) -> bool:
        cancel_event = self._turns.get(project_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def is_running(self, project_id: UUID) -> bool:
        return project_id in self._turns


_registry_instance: InFlightRegistry | None = None


def get_in_flight_registry() -> InFlightRegistry:
    global _registry_instance

    if _registry_instance is None:
        _registry_instance = InFlightRegistry()
    return _registry_instance
