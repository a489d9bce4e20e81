import aiohttp
import pytest

from simdevice.health import HealthReporter, HealthServer


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("transport", True)
    await reporter.update("uplink", False, "failed: boom")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["transport"]["healthy"] is True
    assert components["uplink"]["healthy"] is False
    assert components["uplink"]["detail"] == "failed: boom"


@pytest.mark.asyncio
async def test_health_reporter_merges_counters():
    reporter = HealthReporter()

    await reporter.update("uplink", True, counters={"sent": 3, "failed": 0})
    await reporter.update("uplink", True, counters={"sent": 5})

    snapshot = await reporter.snapshot()

    uplink = snapshot["components"][0]
    assert uplink["counters"] == {"sent": 5, "failed": 0}


@pytest.mark.asyncio
async def test_health_reporter_agent_state_affects_status():
    reporter = HealthReporter()

    await reporter.update("transport", True)
    await reporter.set_agent_state("recovering", healthy=False)

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    agent = snapshot["agentState"]
    assert agent["state"] == "recovering"
    assert agent["healthy"] is False


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("transport", True)

    host = "127.0.0.1"
    port = unused_tcp_port
    server = HealthServer(reporter, host, port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"

            await reporter.update("downlink", False, "failed")
            async with session.get(f"http://{host}:{port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()
