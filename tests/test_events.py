import pytest
from unittest.mock import AsyncMock, MagicMock

from chat_gateway.events import EventEmitter, GatewayEvent


@pytest.mark.asyncio
async def test_emit_calls_sync_and_async_listeners():
    emitter = EventEmitter()
    sync_handler = MagicMock()
    async_handler = AsyncMock()
    emitter.on(GatewayEvent.AUTHENTICATED, sync_handler)
    emitter.on(GatewayEvent.AUTHENTICATED, async_handler)

    bus_event = await emitter.emit(GatewayEvent.AUTHENTICATED, {"user_id": "C"})

    sync_handler.assert_called_once_with(bus_event)
    async_handler.assert_awaited_once_with(bus_event)
    assert bus_event.seq == 1
    assert bus_event.payload == {"user_id": "C"}


@pytest.mark.asyncio
async def test_listener_failure_is_contained():
    emitter = EventEmitter()
    emitter.on(GatewayEvent.MESSAGE_APPENDED, MagicMock(side_effect=RuntimeError("boom")))
    emitter.on(GatewayEvent.MESSAGE_APPENDED, AsyncMock(side_effect=RuntimeError("boom")))

    bus_event = await emitter.emit(GatewayEvent.MESSAGE_APPENDED, {})
    assert bus_event.event == GatewayEvent.MESSAGE_APPENDED


@pytest.mark.asyncio
async def test_off_and_clear_listeners():
    emitter = EventEmitter()
    handler = MagicMock()
    emitter.on(GatewayEvent.CONNECTED, handler)
    emitter.off(GatewayEvent.CONNECTED, handler)
    await emitter.emit(GatewayEvent.CONNECTED, {})
    handler.assert_not_called()

    emitter.on(GatewayEvent.CONNECTED, handler)
    emitter.clear_listeners()
    await emitter.emit(GatewayEvent.CONNECTED, {})
    handler.assert_not_called()


@pytest.mark.asyncio
async def test_history_is_bounded_and_filterable():
    emitter = EventEmitter(max_history=3)
    for i in range(5):
        await emitter.emit(GatewayEvent.CONNECTED, {"i": i})
    await emitter.emit(GatewayEvent.DISCONNECTED, {"i": 5})

    history = emitter.get_history()
    assert [e.payload["i"] for e in history] == [3, 4, 5]
    assert [e.seq for e in emitter.get_history(GatewayEvent.DISCONNECTED)] == [6]
