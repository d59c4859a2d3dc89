"""Tests for connectivity observers."""
import httpx
import pytest

from tsoam.services.connectivity import HttpProbeConnectivity, ManualConnectivity

from conftest import BASE_URL


class TestManualConnectivity:
    def test_notifies_on_transitions_only(self):
        connectivity = ManualConnectivity(online=False)
        seen = []
        connectivity.subscribe(seen.append)

        connectivity.set_online(True)
        connectivity.set_online(True)
        connectivity.set_online(False)

        assert seen == [True, False]
        assert connectivity.is_online() is False

    def test_unsubscribe(self):
        connectivity = ManualConnectivity(online=False)
        seen = []
        unsubscribe = connectivity.subscribe(seen.append)
        unsubscribe()
        connectivity.set_online(True)
        assert seen == []

    def test_raising_subscriber_does_not_stop_others(self):
        connectivity = ManualConnectivity(online=False)
        seen = []

        def broken(online):
            raise RuntimeError("boom")

        connectivity.subscribe(broken)
        connectivity.subscribe(seen.append)
        connectivity.set_online(True)
        assert seen == [True]


class TestHttpProbeConnectivity:
    @pytest.mark.asyncio
    async def test_any_response_means_online(self):
        requests = []

        def handler(request):
            requests.append(request.url.path)
            return httpx.Response(503)

        probe = HttpProbeConnectivity(BASE_URL, transport=httpx.MockTransport(handler))
        assert await probe.probe() is True
        assert probe.is_online() is True
        assert requests == ["/api/health"]
        await probe.stop()

    @pytest.mark.asyncio
    async def test_transport_error_means_offline(self):
        state = {"up": True}

        def handler(request):
            if not state["up"]:
                raise httpx.ConnectError("network unreachable", request=request)
            return httpx.Response(200, json={"status": "healthy"})

        probe = HttpProbeConnectivity(BASE_URL, transport=httpx.MockTransport(handler))
        seen = []
        probe.subscribe(seen.append)

        await probe.start()
        state["up"] = False
        await probe.probe()
        await probe.stop()

        assert seen == [True, False]
        assert probe.is_online() is False
