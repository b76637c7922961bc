"""
Tests for EventBus system.

Verifies:
- Event structure (scope, phase, serialization)
- Typed and wildcard subscriptions
- A failing subscriber never breaks emit()
"""

import logging

import pytest

from event_bus import Event, EventBus, EventType


@pytest.mark.unit
def test_event_creation():
    event = Event(
        event_type=EventType.UPDATER_CONTAINER_STEP,
        scope_type='container',
        scope_id='abc123',
        scope_name='web',
        data={'phase': 'container', 'step': 'stop'}
    )

    assert event.phase == 'container'
    assert event.timestamp is not None

    data = event.to_dict()
    assert data['event_type'] == 'updater_container_step'
    assert data['scope_name'] == 'web'
    assert data['data']['step'] == 'stop'


@pytest.mark.unit
def test_event_without_data_has_no_phase():
    event = Event(EventType.SYSTEM_STARTUP, 'system', 'refit', 'Refit')
    assert event.data == {}
    assert event.phase is None


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_typed_subscriber_only_sees_its_type(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.subscribe(EventType.UPDATER_STACK_UPDATED, handler)
        await bus.emit(Event(EventType.UPDATER_STACK_UPDATED, 'stack', 'media', 'media'))
        await bus.emit(Event(EventType.UPDATER_STACK_FAILED, 'stack', 'media', 'media'))

        assert seen == [EventType.UPDATER_STACK_UPDATED]

    @pytest.mark.asyncio
    async def test_wildcard_subscriber_sees_everything(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.subscribe_all(handler)
        await bus.emit(Event(EventType.UPDATER_RUN_STARTED, 'system', 'updater', 'run'))
        await bus.emit(Event(EventType.UPDATER_RUN_COMPLETED, 'system', 'updater', 'run'))

        assert seen == [EventType.UPDATER_RUN_STARTED, EventType.UPDATER_RUN_COMPLETED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        bus.subscribe(EventType.UPDATER_RUN_FAILED, handler)
        bus.unsubscribe(EventType.UPDATER_RUN_FAILED, handler)
        bus.unsubscribe(EventType.UPDATER_RUN_FAILED, handler)
        await bus.emit(Event(EventType.UPDATER_RUN_FAILED, 'system', 'updater', 'run'))

        assert seen == []
        assert 'updater_run_failed' not in bus.subscribers

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event)

        bus.subscribe(EventType.UPDATER_ITEM_SKIPPED, broken)
        bus.subscribe(EventType.UPDATER_ITEM_SKIPPED, working)
        await bus.emit(Event(EventType.UPDATER_ITEM_SKIPPED, 'container', 'c1', 'web'))

        assert len(seen) == 1


class TestEventLogging:

    @pytest.mark.asyncio
    async def test_failures_log_at_warning(self, caplog):
        bus = EventBus()
        with caplog.at_level(logging.INFO, logger='event_bus'):
            await bus.emit(Event(EventType.UPDATER_CONTAINER_FAILED, 'container', 'c1', 'web',
                                 data={'phase': 'container', 'error': 'stop failed'}))

        record = [r for r in caplog.records if 'Update Failed' in r.getMessage()][0]
        assert record.levelno == logging.WARNING
        assert '[container]' in record.getMessage()
        assert 'stop failed' in record.getMessage()

    @pytest.mark.asyncio
    async def test_update_available_message(self, caplog):
        bus = EventBus()
        with caplog.at_level(logging.INFO, logger='event_bus'):
            await bus.emit(Event(EventType.UPDATER_UPDATE_AVAILABLE, 'image', 'sha256:abc', 'nginx:1.25',
                                 data={'current': '1.25', 'latest': '1.26'}))

        messages = [r.getMessage() for r in caplog.records]
        assert any('Update available: 1.25 → 1.26' in m for m in messages)
