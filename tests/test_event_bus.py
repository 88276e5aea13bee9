from __future__ import annotations


import pytest

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import SessionListChanged


@pytest.mark.asyncio
async def test_consume_yields_in_order_until_closed() -> None:
    bus = EventBus()
    await bus.emit(SessionListChanged(session_id="a", reason="created"))
    bus.emit_nowait(SessionListChanged(session_id="b", reason="switched"))

    seen = []
    async for event in bus.consume():
        seen.append(event.session_id)
        if len(seen) == 2:
            bus.close()

    assert seen == ["a", "b"]
    assert bus.closed is True


@pytest.mark.asyncio
async def test_full_bus_drops_sync_emits_and_drain_empties() -> None:
    bus = EventBus(maxsize=1)
    bus.emit_nowait(SessionListChanged(reason="one"))
    bus.emit_nowait(SessionListChanged(reason="two"))

    assert [e.reason for e in bus.drain()] == ["one"]
    assert bus.drain() == []


@pytest.mark.asyncio
async def test_closed_bus_ignores_emits() -> None:
    bus = EventBus()
    bus.close()
    await bus.emit(SessionListChanged(reason="late"))
    bus.emit_nowait(SessionListChanged(reason="late"))

    assert bus.drain() == []
