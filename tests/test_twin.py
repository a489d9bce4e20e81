"""Tests for desired-to-reported twin synchronization."""

import asyncio
import logging

import pytest

from simdevice.adapters import TransportSendError
from simdevice.core import TwinDelta
from simdevice.twin import TwinState, TwinSynchronizer, build_reported, extract_delta


def test_extract_delta_reads_present_field():
    assert extract_delta({"FPS": 30, "$version": 4}, "FPS") == TwinDelta("FPS", 30)


def test_extract_delta_keeps_null_values():
    delta = extract_delta({"FPS": None}, "FPS")

    assert delta is not None
    assert delta.value is None


def test_extract_delta_returns_none_when_missing():
    assert extract_delta({"other": 1}, "FPS") is None


def test_build_reported_nests_dotted_path_under_section():
    delta = TwinDelta("camera.FPS", 24)

    assert build_reported(delta, "weather") == {"weather": {"camera": {"FPS": 24}}}
    assert build_reported(delta, "") == {"camera": {"FPS": 24}}


@pytest.mark.asyncio
async def test_desired_value_is_echoed_to_reported(fake_session, caplog):
    twin = TwinSynchronizer(fake_session)
    await twin.register()

    with caplog.at_level(logging.INFO, logger="simdevice.twin"):
        await fake_session.twin_callbacks[0]({"FPS": 30})

    assert fake_session.reported == [{"weather": {"FPS": 30}}]
    assert twin.updates == 1
    assert twin.state is TwinState.IDLE
    assert any(r.getMessage() == "Received desired FPS: 30" for r in caplog.records)


@pytest.mark.asyncio
async def test_value_is_not_validated(fake_session):
    twin = TwinSynchronizer(fake_session)

    await twin.handle_desired({"FPS": "not-a-number"})
    await twin.handle_desired({"FPS": -5})

    assert fake_session.reported == [
        {"weather": {"FPS": "not-a-number"}},
        {"weather": {"FPS": -5}},
    ]


@pytest.mark.asyncio
async def test_patch_without_field_makes_no_update(fake_session):
    twin = TwinSynchronizer(fake_session)

    await twin.handle_desired({"brightness": 80})

    assert fake_session.reported == []
    assert twin.updates == 0


@pytest.mark.asyncio
async def test_custom_field_and_section(fake_session):
    twin = TwinSynchronizer(fake_session, property_path="camera.FPS", section="video")

    await twin.handle_desired({"camera": {"FPS": 60, "zoom": 2}})

    assert fake_session.reported == [{"video": {"camera": {"FPS": 60}}}]


@pytest.mark.asyncio
async def test_failed_update_returns_to_idle(session_factory):
    session = session_factory(update_error=TransportSendError("rejected"))
    twin = TwinSynchronizer(session)

    with pytest.raises(TransportSendError):
        await twin.handle_desired({"FPS": 30})

    assert twin.state is TwinState.IDLE
    assert twin.updates == 0


@pytest.mark.asyncio
async def test_register_twice_raises(fake_session):
    twin = TwinSynchronizer(fake_session)
    await twin.register()

    with pytest.raises(RuntimeError):
        await twin.register()

    assert len(fake_session.twin_callbacks) == 1


@pytest.mark.asyncio
async def test_state_stays_updating_while_any_update_is_in_flight(fake_session):
    release_second = asyncio.Event()
    calls = []

    async def update(document):
        calls.append(document)
        if len(calls) == 2:
            await release_second.wait()
        fake_session.reported.append(document)

    fake_session.update_reported_properties = update
    twin = TwinSynchronizer(fake_session)

    first = asyncio.create_task(twin.handle_desired({"FPS": 30}))
    second = asyncio.create_task(twin.handle_desired({"FPS": 60}))
    await first
    await asyncio.sleep(0)

    assert not second.done()
    assert twin.state is TwinState.UPDATING

    release_second.set()
    await second

    assert twin.state is TwinState.IDLE
    assert twin.updates == 2
