"""Tests for the discovery service state machine.

These tests drive the service through FakeChannel; no sockets are opened.
"""

import asyncio
import threading

import pytest

from discovery.models import PeerHandle
from discovery.service import DiscoveryError, DiscoveryService
from fakes import BULB_IP, DISCOVERY_REPLY, HOST_MAC, REGISTRATION_BYTES, FakeChannel


def make_service(channel, **kwargs):
    kwargs.setdefault("interval", 60)
    return DiscoveryService(
        390198, "192.168.0.100", HOST_MAC, channel_factory=lambda: channel, **kwargs
    )


@pytest.fixture
def channel():
    return FakeChannel(replies={REGISTRATION_BYTES: [(DISCOVERY_REPLY, BULB_IP)]})


class TestConstruction:
    """Construction validates the host identity up front."""

    def test_registration_is_precomputed(self, channel):
        service = make_service(channel)
        assert service.registration.params.phone_mac == "f01898091ad8"
        assert service.running is False

    @pytest.mark.parametrize("host_mac", [b"\x01\x02\x03", "f01898091ad8", b"\x00" * 7])
    def test_bad_mac(self, host_mac):
        with pytest.raises(ValueError):
            DiscoveryService(1, "192.168.0.100", host_mac)

    def test_bad_ip(self):
        with pytest.raises(ValueError):
            DiscoveryService(1, "192.168.0.300", HOST_MAC)


class TestDiscovery:
    """Tests for the announce / reply path."""

    @pytest.mark.asyncio
    async def test_happy_path(self, channel):
        found = []
        service = make_service(channel)

        await service.start(found.append)

        assert found == [PeerHandle("a8bb5088cfc2", "192.168.0.154")]
        assert channel.sent == [(REGISTRATION_BYTES, ("255.255.255.255", 38899))]
        service.stop()

    @pytest.mark.asyncio
    async def test_malformed_datagram_is_ignored(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        channel.deliver(b"not json")

        assert found == []
        assert service.running
        service.stop()

    @pytest.mark.asyncio
    async def test_error_envelope_is_ignored(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        channel.deliver(b'{"error":{"code":1000}}')
        channel.deliver(b'{"error":{"code":1000,"message":"invalid params"}}')

        assert found == []
        assert service.running
        service.stop()

    @pytest.mark.asyncio
    async def test_listening_continues_after_bad_datagrams(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        channel.deliver(b"not json")
        channel.deliver(b'{"error":{"code":1000}}')
        channel.deliver(b'{"method":"registration","result":{"mac":"a8bb5088cfc3","success":true}}', "192.168.0.155")

        assert found == [PeerHandle("a8bb5088cfc3", "192.168.0.155")]
        service.stop()

    @pytest.mark.asyncio
    async def test_envelope_without_result_is_ignored(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        # Our own broadcast looping back
        channel.deliver(REGISTRATION_BYTES, "192.168.0.100")
        channel.deliver(b'{"method":"getPilot","result":{"state":true}}')

        assert found == []
        service.stop()

    @pytest.mark.asyncio
    async def test_invalid_mac_in_reply_is_ignored(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        channel.deliver(b'{"method":"registration","result":{"mac":"nope"}}')

        assert found == []
        assert service.running
        service.stop()

    @pytest.mark.asyncio
    async def test_repeat_replies_are_not_deduplicated(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)

        channel.deliver(DISCOVERY_REPLY)

        assert found == [PeerHandle("a8bb5088cfc2", BULB_IP)] * 2
        service.stop()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_service(self, channel):
        calls = []

        def explode(handle):
            calls.append(handle)
            raise RuntimeError("listener bug")

        service = make_service(channel)
        await service.start(explode)
        channel.deliver(DISCOVERY_REPLY)

        assert len(calls) == 2
        assert service.running
        service.stop()

    @pytest.mark.asyncio
    async def test_async_callback_is_scheduled(self, channel):
        found = []

        async def on_discover(handle):
            found.append(handle)

        service = make_service(channel)
        await service.start(on_discover)
        await asyncio.sleep(0)

        assert found == [PeerHandle("a8bb5088cfc2", BULB_IP)]
        service.stop()

    @pytest.mark.asyncio
    async def test_periodic_announce(self):
        channel = FakeChannel()
        service = make_service(channel, interval=0.01)
        await service.start(lambda handle: None)

        await asyncio.sleep(0.1)
        service.stop()

        assert len(channel.sent) >= 3
        assert all(data == REGISTRATION_BYTES for data, _ in channel.sent)

    @pytest.mark.asyncio
    async def test_no_announce_after_stop(self):
        channel = FakeChannel()
        service = make_service(channel, interval=0.01)
        await service.start(lambda handle: None)
        service.stop()
        sent = len(channel.sent)

        await asyncio.sleep(0.05)

        assert len(channel.sent) == sent == 1


class TestLifecycle:
    """Tests for start/stop transitions."""

    @pytest.mark.asyncio
    async def test_start_with_none_callback_is_noop(self, channel):
        service = make_service(channel)
        await service.start(None)
        assert service.running is False
        assert channel.opened is False

    @pytest.mark.asyncio
    async def test_start_twice(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        await service.start(found.append)

        assert len(channel.sent) == 1
        assert len(found) == 1
        service.stop()

    @pytest.mark.asyncio
    async def test_stop_twice(self, channel):
        service = make_service(channel)
        await service.start(lambda handle: None)

        service.stop()
        service.stop()

        assert channel.closed
        assert service.running is False

    def test_stop_when_idle(self, channel):
        service = make_service(channel)
        service.stop()
        assert service.running is False

    @pytest.mark.asyncio
    async def test_no_callback_after_stop(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        service.stop()
        found.clear()

        # A reply to an earlier announce lands after stop()
        channel.deliver(DISCOVERY_REPLY)

        assert found == []

    @pytest.mark.asyncio
    async def test_restart_uses_fresh_channel(self):
        channels = [
            FakeChannel(replies={REGISTRATION_BYTES: [(DISCOVERY_REPLY, BULB_IP)]}),
            FakeChannel(replies={REGISTRATION_BYTES: [(DISCOVERY_REPLY, BULB_IP)]}),
        ]
        found = []
        service = DiscoveryService(
            390198, "192.168.0.100", HOST_MAC, interval=60, channel_factory=lambda: channels.pop(0)
        )

        await service.start(found.append)
        service.stop()
        await service.start(found.append)

        assert len(found) == 2
        assert service.running
        service.stop()

    @pytest.mark.asyncio
    async def test_bind_failure_reverts_to_idle(self):
        channel = FakeChannel(fail_open=True)
        service = make_service(channel)

        with pytest.raises(DiscoveryError):
            await service.start(lambda handle: None)

        assert service.running is False
        assert channel.closed

    @pytest.mark.asyncio
    async def test_stop_while_binding_is_not_a_failure(self):
        channel = FakeChannel(open_delay=0.05)
        service = make_service(channel)

        starting = asyncio.create_task(service.start(lambda handle: None))
        await asyncio.sleep(0.01)
        service.stop()
        await starting

        assert service.running is False
        assert channel.closed
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_reverts_to_idle(self):
        channel = FakeChannel(fail_send=True)
        service = make_service(channel)

        with pytest.raises(DiscoveryError):
            await service.start(lambda handle: None)

        assert service.running is False
        assert channel.closed

    @pytest.mark.asyncio
    async def test_transport_error_stops_service(self, channel):
        found = []
        service = make_service(channel)
        await service.start(found.append)
        found.clear()

        channel.fail(OSError(101, "Network is unreachable"))
        channel.deliver(DISCOVERY_REPLY)

        assert service.running is False
        assert channel.closed
        assert found == []

    @pytest.mark.asyncio
    async def test_stop_from_another_thread(self, channel):
        service = make_service(channel)
        await service.start(lambda handle: None)

        worker = threading.Thread(target=service.stop)
        worker.start()
        worker.join()
        assert service.running is False

        # Release runs on the loop thread
        await asyncio.sleep(0.01)
        assert channel.closed
