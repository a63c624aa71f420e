"""
UDP broadcast discovery of bulbs.

Broadcasts the host's registration every DISCOVERY_INTERVAL seconds and
reports every bulb that answers. Bulbs may miss a broadcast, hence the
periodic re-announce. Replies are reported as they arrive; a bulb that
answers twice is reported twice, deduplication is up to the listener.
"""

import asyncio
import functools
import inspect
import logging
from typing import Awaitable, Callable, Union

from pydantic import ValidationError

from config import BROADCAST_ADDRESS, DISCOVERY_INTERVAL, DISCOVERY_PORT
from discovery.models import PeerHandle
from protocol.codec import DecodeFailure, make_registration
from protocol.models import Envelope
from transport.channel import Address, BulbChannel

logger = logging.getLogger(__name__)

DiscoveryCallback = Callable[[PeerHandle], Union[Awaitable[None], None]]


class DiscoveryError(ConnectionError):
    """The discovery socket could not be bound or the first announce failed."""


class DiscoveryService:
    """Manages bulb discovery via UDP broadcast.

    Idle until ``start`` succeeds, Running until ``stop``. The callback
    passed to ``start`` is called from the receive path with a PeerHandle
    for every reply; if it returns an awaitable, that is scheduled as a task.
    """

    def __init__(
        self,
        home_id: int,
        host_ip: str,
        host_mac: bytes,
        *,
        port: int = DISCOVERY_PORT,
        broadcast_address: str = BROADCAST_ADDRESS,
        interval: float = DISCOVERY_INTERVAL,
        channel_factory: Callable[[], BulbChannel] | None = None,
    ) -> None:
        if not isinstance(host_mac, (bytes, bytearray)) or len(host_mac) != 6:
            raise ValueError("Host MAC must be exactly 6 bytes")

        # Built once, re-sent on every announce
        self._registration: Envelope = make_registration(home_id, host_ip, host_mac)
        self._host_ip = host_ip
        self._port = port
        self._broadcast_address = broadcast_address
        self._interval = interval
        self._channel_factory = channel_factory or self._default_channel

        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._channel: BulbChannel | None = None
        self._announce_task: asyncio.Task | None = None
        self._on_discover: DiscoveryCallback | None = None
        self._callback_tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def registration(self) -> Envelope:
        """The registration envelope broadcast to bulbs."""
        return self._registration

    def _default_channel(self) -> BulbChannel:
        return BulbChannel(
            "0.0.0.0",
            self._port,
            broadcast=True,
            reuse_address=True,
            remote_port=self._port,
        )

    async def start(self, on_discover: DiscoveryCallback | None) -> None:
        """Bind the discovery socket, announce, and keep listening.

        Does nothing if already running or if ``on_discover`` is None.

        Raises:
            DiscoveryError: If the socket cannot be bound or the first
                announce fails. The service is Idle again afterwards.
        """
        if self._running or on_discover is None:
            return

        logger.info(f"Starting discovery on UDP port {self._port} as {self._host_ip}")
        self._loop = asyncio.get_running_loop()
        self._on_discover = on_discover

        channel = self._channel_factory()
        channel.on_datagram(self._handle_datagram)
        channel.on_error(self._handle_transport_error)
        self._channel = channel
        # Set before awaiting so a concurrent start() is a no-op
        self._running = True

        try:
            await channel.open()
            if not self._running:
                # stop() ran while the socket was being bound
                channel.close()
                return
            self._announce()
        except OSError as e:
            if not self._running:
                # stop() closed the channel while it was being bound
                logger.info("Discovery start abandoned by stop()")
                return
            logger.error(f"Failed to start discovery: {e}")
            self._running = False
            self._channel = None
            channel.close()
            raise DiscoveryError(f"Could not start discovery on port {self._port}: {e}") from e

        self._announce_task = asyncio.create_task(self._announce_loop())
        logger.info("Discovery service started")

    def stop(self) -> None:
        """Stop announcing and release the socket. Safe from any thread.

        No discovery callback fires after this returns.
        """
        if not self._running:
            return
        self._running = False
        logger.info("Stopping discovery service")

        channel, self._channel = self._channel, None
        task, self._announce_task = self._announce_task, None
        release = functools.partial(self._release, channel, task)

        loop = self._loop
        if loop is not None and loop.is_running() and not self._on_loop_thread(loop):
            loop.call_soon_threadsafe(release)
        else:
            release()

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    @staticmethod
    def _release(channel: BulbChannel | None, task: asyncio.Task | None) -> None:
        if task is not None:
            task.cancel()
        if channel is not None:
            channel.close()
        logger.info("Discovery service stopped")

    def _announce(self) -> None:
        self._channel.send_to(self._registration, (self._broadcast_address, self._port))
        logger.debug(f"Broadcast registration to {self._broadcast_address}:{self._port}")

    async def _announce_loop(self) -> None:
        """Periodically re-send the registration broadcast."""
        while self._running:
            await asyncio.sleep(self._interval)
            if not self._running:
                break
            try:
                self._announce()
            except OSError as e:
                logger.warning(f"Registration broadcast failed: {e}")

    def _handle_datagram(self, message: Envelope | DecodeFailure, addr: Address) -> None:
        # A receive that was in flight when stop() ran must not be acted on
        if not self._running:
            return

        sender = addr[0]
        if isinstance(message, DecodeFailure):
            logger.warning(f"Got bad json message from {sender}: {message.reason}")
            logger.debug(f"\t{message.raw!r}")
            return

        if message.error is not None:
            code = "unknown error" if message.error.code is None else f"error {message.error.code}"
            detail = f" -- {message.error.message}" if message.error.message else ""
            logger.warning(f"Encountered {code}{detail} from {sender}")
            return

        if message.result is None:
            # Includes our own registration broadcast looping back
            logger.debug(f"Ignoring {message.method.value} message without result from {sender}")
            return

        if message.result.mac is None:
            logger.debug(f"Ignoring reply without MAC from {sender}")
            return

        try:
            handle = PeerHandle(message.result.mac, sender)
        except ValidationError as e:
            logger.warning(f"Ignoring reply from {sender} with invalid identity: {e}")
            return

        logger.info(f"Discovered bulb {handle.mac} at {handle.ip}")
        self._notify(handle)

    def _notify(self, handle: PeerHandle) -> None:
        try:
            outcome = self._on_discover(handle)
        except Exception:
            logger.exception("Discovery callback error")
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Discovery callback error: {task.exception()}")

    def _handle_transport_error(self, exc: Exception) -> None:
        if not self._running:
            return
        logger.error(f"Discovery socket failed, stopping: {exc}")
        self.stop()
