import httpx
import pytest

from trainer_service.protocol.delivery.connectivity import HttpProbeConnectivity, ManualConnectivity


@pytest.mark.asyncio
async def test_listeners_only_fire_on_change():
    signal = ManualConnectivity(connected=True)
    seen = []
    signal.subscribe(seen.append)
    signal.set_connected(True)
    signal.set_connected(False)
    signal.set_connected(False)
    signal.set_connected(True)
    assert seen == [False, True]


@pytest.mark.asyncio
async def test_async_listeners_are_scheduled():
    signal = ManualConnectivity(connected=False)
    seen = []

    async def listener(connected):
        seen.append(connected)

    signal.subscribe(listener)
    signal.set_connected(True)
    await signal.wait_idle()
    assert seen == [True]


@pytest.mark.asyncio
async def test_probe_reports_transport_errors_as_offline(monkeypatch):
    probe = HttpProbeConnectivity("https://example.test/health", timeout_sec=0.1)

    async def fail(self, url, **kwargs):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(httpx.AsyncClient, "head", fail)
    assert await probe.probe() is False


@pytest.mark.asyncio
async def test_probe_counts_any_response_as_online(monkeypatch):
    probe = HttpProbeConnectivity("https://example.test/health")

    async def ok(self, url, **kwargs):
        return httpx.Response(503)

    monkeypatch.setattr(httpx.AsyncClient, "head", ok)
    assert await probe.probe() is True
