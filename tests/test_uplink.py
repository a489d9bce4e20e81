"""Tests for the telemetry uplink loop."""

import asyncio
import json
import logging
import random

import pytest

from simdevice.adapters import TransportSendError
from simdevice.telemetry import TelemetryGenerator
from simdevice.uplink import UplinkLoop


async def _run_for(loop: UplinkLoop, seconds: float) -> None:
    stop_event = asyncio.Event()
    task = asyncio.create_task(loop.run(stop_event))
    await asyncio.sleep(seconds)
    stop_event.set()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_uplink_sends_valid_messages_on_short_interval(fake_session) -> None:
    loop = UplinkLoop(
        fake_session,
        generator=TelemetryGenerator(random.Random(7)),
        interval=0.001,
    )

    await _run_for(loop, 0.010)

    assert len(fake_session.sent) >= 5
    for message in fake_session.sent:
        document = json.loads(message.payload)
        assert set(document) == {"temperature", "humidity"}
        assert 20 <= document["temperature"] < 35
        assert 60 <= document["humidity"] < 80
        expected = "true" if document["temperature"] > 30 else "false"
        assert message.properties["temperatureAlert"] == expected
    assert loop.stats.sent == len(fake_session.sent)
    assert loop.stats.failed == 0


@pytest.mark.asyncio
async def test_uplink_logs_each_send(fake_session, caplog) -> None:
    loop = UplinkLoop(fake_session, interval=1.0)

    with caplog.at_level(logging.INFO, logger="simdevice.uplink"):
        assert await loop.send_once() is True

    payload = fake_session.sent[0].payload.decode("utf-8")
    assert any(
        "Sending message" in record.getMessage() and payload in record.getMessage()
        for record in caplog.records
    )


@pytest.mark.asyncio
async def test_uplink_continues_after_send_failure(session_factory, caplog) -> None:
    session = session_factory(send_error=TransportSendError("broker unavailable"))
    loop = UplinkLoop(session, interval=0.001)

    with caplog.at_level(logging.WARNING, logger="simdevice.uplink"):
        await _run_for(loop, 0.03)

    assert loop.stats.failed >= 2
    assert loop.stats.sent == 0
    assert any("Telemetry send failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_uplink_recovers_once_sends_succeed(session_factory) -> None:
    session = session_factory(send_error=TransportSendError("offline"))
    loop = UplinkLoop(session, interval=0.001)

    assert await loop.send_once() is False
    session.send_error = None
    assert await loop.send_once() is True

    assert loop.stats.failed == 1
    assert loop.stats.sent == 1
    assert len(session.sent) == 1


@pytest.mark.asyncio
async def test_uplink_send_timeout_counts_as_failure(fake_session) -> None:
    async def _stuck_send(message) -> None:
        await asyncio.sleep(10)

    fake_session.send = _stuck_send
    loop = UplinkLoop(fake_session, interval=0.001, send_timeout=0.01)

    assert await loop.send_once() is False
    assert loop.stats.failed == 1


@pytest.mark.asyncio
async def test_uplink_stops_promptly_during_long_interval(fake_session) -> None:
    loop = UplinkLoop(fake_session, interval=60.0)
    stop_event = asyncio.Event()
    task = asyncio.create_task(loop.run(stop_event))

    await asyncio.sleep(0.01)
    stop_event.set()
    await asyncio.wait_for(task, timeout=0.5)

    assert len(fake_session.sent) == 1
