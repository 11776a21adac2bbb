from __future__ import annotations

import asyncio

import httpx
import pytest

from field_sync_client.connectivity import ConnectivityEvent, ConnectivityMonitor, HttpHealthProbe


async def _next(sub, timeout=0.5):
    return await asyncio.wait_for(sub.__anext__(), timeout=timeout)


async def test_only_transitions_are_reported():
    monitor = ConnectivityMonitor()
    with monitor.events() as sub:
        assert monitor.report(True)
        assert not monitor.report(True)
        assert monitor.report(False)
        assert not monitor.report(False)

        assert await _next(sub) is ConnectivityEvent.BECAME_ONLINE
        assert await _next(sub) is ConnectivityEvent.BECAME_OFFLINE
        with pytest.raises(asyncio.TimeoutError):
            await _next(sub, timeout=0.05)


async def test_initial_state_counts_as_known():
    monitor = ConnectivityMonitor(initial_online=True)
    assert monitor.online
    assert not monitor.report(True)


async def test_subscription_restarts_cleanly():
    monitor = ConnectivityMonitor()
    sub = monitor.events()
    monitor.report(True)
    sub.close()
    monitor.report(False)

    assert await _next(sub) is ConnectivityEvent.BECAME_ONLINE
    with pytest.raises(asyncio.TimeoutError):
        await _next(sub, timeout=0.05)

    with monitor.events() as fresh:
        monitor.report(True)
        assert await _next(fresh) is ConnectivityEvent.BECAME_ONLINE


async def test_every_subscriber_sees_each_transition():
    monitor = ConnectivityMonitor()
    with monitor.events() as a, monitor.events() as b:
        monitor.report(True)
        assert await _next(a) is ConnectivityEvent.BECAME_ONLINE
        assert await _next(b) is ConnectivityEvent.BECAME_ONLINE


async def test_probe_loop_reports_results():
    monitor = ConnectivityMonitor()
    answers = iter([True, True, False])

    async def probe():
        try:
            return next(answers)
        except StopIteration:
            await asyncio.sleep(3600)

    with monitor.events() as sub:
        task = asyncio.create_task(monitor.run(probe, interval=0))
        try:
            assert await _next(sub) is ConnectivityEvent.BECAME_ONLINE
            assert await _next(sub) is ConnectivityEvent.BECAME_OFFLINE
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task


async def test_probe_exception_means_offline():
    monitor = ConnectivityMonitor(initial_online=True)

    async def probe():
        raise RuntimeError("radio off")

    task = asyncio.create_task(monitor.run(probe, interval=3600))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert not monitor.online
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_http_health_probe():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
        assert await HttpHealthProbe(client)()
        assert not await HttpHealthProbe(client, path="/missing")()


async def test_http_health_probe_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
        assert not await HttpHealthProbe(client)()
