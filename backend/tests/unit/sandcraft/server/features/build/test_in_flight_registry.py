from uuid import uuid4

import pytest

from sandcraft.server.features.build.agent.registry import InFlightRegistry


@pytest.mark.asyncio
async def test_second_registration_is_rejected() -> None:
    registry = InFlightRegistry()
    project_id = uuid4()

    first = registry.register(project_id)
    assert first is not None
    assert registry.register(project_id) is None
    assert registry.is_running(project_id)

    # Other projects are independent
    other_project_id = uuid4()
    assert registry.register(other_project_id) is not None
    assert registry.is_running(other_project_id)


@pytest.mark.asyncio
async def test_only_owner_can_deregister() -> None:
    registry = InFlightRegistry()
    project_id = uuid4()
    first = registry.register(project_id)
    assert first is not None

    registry.deregister(project_id, first)
    second = registry.register(project_id)
    assert second is not None

    # A stale owner must not release the newer turn
    registry.deregister(project_id, first)
    assert registry.is_running(project_id)
    registry.deregister(project_id, second)
    assert not registry.is_running(project_id)


@pytest.mark.asyncio
async def test_cancel_signals_the_turn() -> None:
    registry = InFlightRegistry()
    project_id = uuid4()
    assert registry.cancel(project_id) is False

    cancel_event = registry.register(project_id)
    assert cancel_event is not None
    assert registry.cancel(project_id) is True
    assert cancel_event.is_set()
    # Cancelling does not release the slot, the turn does that itself
    assert registry.is_running(project_id)
