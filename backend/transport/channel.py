"""
UDP channel for exchanging envelopes with bulbs.

A channel owns exactly one socket. Every incoming datagram is decoded and
routed by sender IP: if a receive is pending for that address it resolves
with the decoded envelope, otherwise the datagram goes to the unsolicited
handler (syncPilot pushes, discovery replies). Pending receives live in an
explicit table and are removed as soon as they resolve, time out, get
cancelled or the channel closes.
"""

import asyncio
import logging
import socket
from ipaddress import IPv4Address
from typing import Callable, Union

from config import DISCOVERY_PORT, REQUEST_TIMEOUT
from discovery.models import PeerHandle
from protocol.codec import DecodeFailure, decode, encode
from protocol.models import Envelope

logger = logging.getLogger(__name__)

Address = tuple[str, int]
Destination = Union[PeerHandle, IPv4Address, str, Address]
Received = Union[Envelope, DecodeFailure]
DatagramHandler = Callable[[Received, Address], None]
ErrorHandler = Callable[[Exception], None]


class ChannelError(ConnectionError):
    """Base class for channel failures."""


class ChannelClosedError(ChannelError):
    """The channel was closed before or while the operation ran."""


class ReceivePendingError(ChannelError):
    """A receive from the same address is already outstanding."""


class ChannelProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol feeding datagrams into a BulbChannel."""

    def __init__(self, channel: "BulbChannel"):
        self.channel = channel

    def datagram_received(self, data: bytes, addr: Address) -> None:
        self.channel._dispatch(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.channel._transport_error(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self.channel._connection_lost(exc)


class BulbChannel:
    """Sends and receives envelopes over one UDP socket.

    Unconnected mode addresses every call explicitly (``send_to`` /
    ``receive_from``). After ``connect(handle)`` the ``send`` / ``receive``
    shortcuts target that bulb. Each operation has an awaitable form and a
    ``begin_*`` form that returns an ``asyncio.Future`` at once.

    Example:
        async with BulbChannel() as channel:
            await channel.connect(PeerHandle("a8bb5088cfc2", "192.168.0.154"))
            reply = await channel.request(make_get_pilot())
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 0,
        *,
        broadcast: bool = False,
        reuse_address: bool = False,
        remote_port: int = DISCOVERY_PORT,
    ) -> None:
        self._host = host
        self._port = port
        self._broadcast = broadcast
        self._reuse_address = reuse_address
        self._remote_port = remote_port

        self._loop: asyncio.AbstractEventLoop | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._closed = False
        self._peer: PeerHandle | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._on_datagram: DatagramHandler | None = None
        self._on_error: ErrorHandler | None = None

        # Errors raised synchronously by the transport while sendto() runs
        self._sending = False
        self._send_error: Exception | None = None

    # --- Lifecycle ---

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def local_address(self) -> Address | None:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    @property
    def peer(self) -> PeerHandle | None:
        """The bulb this channel is connected to, if any."""
        return self._peer

    def on_datagram(self, callback: DatagramHandler | None) -> None:
        """Register the handler for datagrams no pending receive claims."""
        self._on_datagram = callback

    def on_error(self, callback: ErrorHandler | None) -> None:
        """Register a handler called when the socket fails and the channel closes."""
        self._on_error = callback

    async def open(self) -> None:
        """Create and bind the socket. Does nothing if already open.

        Raises:
            ChannelClosedError: If the channel was closed before
            OSError: If the socket cannot be created or bound
        """
        if self._transport is not None:
            return
        if self._closed:
            raise ChannelClosedError("Channel has been closed")

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            if self._reuse_address:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if self._broadcast:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind((self._host, self._port))

            transport, _ = await loop.create_datagram_endpoint(
                lambda: ChannelProtocol(self),
                sock=sock,
            )
        except OSError:
            sock.close()
            raise

        if self._closed:
            # close() ran while the endpoint was being created
            transport.close()
            raise ChannelClosedError("Channel has been closed")

        self._loop = loop
        self._transport = transport
        logger.debug(f"Channel bound to {self.local_address}")

    def close(self) -> None:
        """Release the socket and fail every pending receive. Safe to repeat."""
        if self._closed:
            return
        self._closed = True
        self._peer = None

        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        self._fail_pending(ChannelClosedError("Channel closed"))
        logger.debug("Channel closed")

    async def __aenter__(self) -> "BulbChannel":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    # --- Unconnected mode ---

    def send_to(self, envelope: Envelope, destination: Destination) -> int:
        """Encode and send an envelope. Returns the number of bytes sent.

        Raises:
            ChannelClosedError: If the channel is not open
            OSError: If the socket rejects the datagram
        """
        transport = self._require_open()
        address = self._address(destination)
        data = encode(envelope)

        self._sending = True
        self._send_error = None
        try:
            transport.sendto(data, address)
        finally:
            self._sending = False
        if self._send_error is not None:
            error, self._send_error = self._send_error, None
            raise error

        logger.debug(f"Sent {len(data)} bytes to {address[0]}:{address[1]}: {data!r}")
        return len(data)

    def begin_send_to(self, envelope: Envelope, destination: Destination) -> asyncio.Future:
        """Send on the next loop iteration. The future resolves to the byte count.

        Raises:
            ChannelClosedError: If the channel is not open
            ValueError: If ``destination`` is not an IPv4 address
        """
        self._require_open()
        address = self._address(destination)
        future = self._loop.create_future()

        def _run() -> None:
            if future.done():
                return
            try:
                future.set_result(self.send_to(envelope, address))
            except OSError as e:
                future.set_exception(e)

        self._loop.call_soon(_run)
        return future

    def begin_receive_from(self, source: PeerHandle | IPv4Address | str) -> asyncio.Future:
        """Reserve the next datagram from ``source``.

        The returned future resolves to an Envelope, or to a DecodeFailure if
        the datagram could not be parsed. Cancelling it abandons the receive.

        Raises:
            ReceivePendingError: If a receive from this address is outstanding
        """
        self._require_open()
        key = self._source_key(source)

        current = self._pending.get(key)
        if current is not None and not current.done():
            raise ReceivePendingError(f"A receive from {key} is already pending")

        future = self._loop.create_future()
        self._pending[key] = future
        future.add_done_callback(lambda done: self._release(key, done))
        return future

    async def receive_from(
        self,
        source: PeerHandle | IPv4Address | str,
        timeout: float | None = None,
    ) -> Received:
        """Wait for the next datagram from ``source``.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout`` seconds
            ChannelClosedError: If the channel closes while waiting
        """
        future = self.begin_receive_from(source)
        return await asyncio.wait_for(future, timeout)

    # --- Connected mode ---

    async def connect(self, handle: PeerHandle) -> None:
        """Direct ``send`` / ``receive`` at one bulb, opening the socket if needed."""
        await self.open()
        self._peer = handle
        logger.debug(f"Channel connected to {handle.mac} at {handle.ip}")

    def disconnect(self) -> None:
        """Forget the connected bulb and abandon its pending receive."""
        if self._peer is None:
            return
        future = self._pending.pop(str(self._peer.ip), None)
        if future is not None and not future.done():
            future.cancel()
        self._peer = None

    def send(self, envelope: Envelope) -> int:
        return self.send_to(envelope, self._require_peer())

    def begin_send(self, envelope: Envelope) -> asyncio.Future:
        return self.begin_send_to(envelope, self._require_peer())

    async def receive(self, timeout: float | None = None) -> Received:
        return await self.receive_from(self._require_peer(), timeout)

    def begin_receive(self) -> asyncio.Future:
        return self.begin_receive_from(self._require_peer())

    async def request(self, envelope: Envelope, timeout: float | None = REQUEST_TIMEOUT) -> Received:
        """Send to the connected bulb and wait for its reply.

        The receive is reserved before sending so a fast reply is not lost.
        """
        peer = self._require_peer()
        future = self.begin_receive_from(peer)
        try:
            self.send_to(envelope, peer)
        except BaseException:
            future.cancel()
            raise
        return await asyncio.wait_for(future, timeout)

    # --- Internals ---

    def _require_open(self) -> asyncio.DatagramTransport:
        if self._transport is None:
            if self._closed:
                raise ChannelClosedError("Channel has been closed")
            raise ChannelClosedError("Channel is not open")
        return self._transport

    def _require_peer(self) -> PeerHandle:
        if self._peer is None:
            raise ChannelError("Channel is not connected to a bulb")
        return self._peer

    def _address(self, destination: Destination) -> Address:
        if isinstance(destination, PeerHandle):
            return (str(destination.ip), self._remote_port)
        if isinstance(destination, tuple):
            return destination
        return (str(IPv4Address(destination)), self._remote_port)

    @staticmethod
    def _source_key(source: PeerHandle | IPv4Address | str) -> str:
        if isinstance(source, PeerHandle):
            return str(source.ip)
        return str(IPv4Address(source))

    def _release(self, key: str, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]

    def _fail_pending(self, error: ChannelError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                failure = type(error)(*error.args)
                failure.__cause__ = error.__cause__
                future.set_exception(failure)
                # Mark retrieved; the receiver may have been abandoned
                future.exception()

    def _dispatch(self, data: bytes, addr: Address) -> None:
        message = decode(data)
        if isinstance(message, DecodeFailure):
            logger.debug(f"Unparseable datagram from {addr[0]}: {message.reason}")
        else:
            logger.debug(f"Received from {addr[0]}:{addr[1]}: {data!r}")

        future = self._pending.pop(addr[0], None)
        if future is not None and not future.done():
            future.set_result(message)
            return

        if self._on_datagram is None:
            logger.debug(f"Dropping unsolicited datagram from {addr[0]}")
            return
        try:
            self._on_datagram(message, addr)
        except Exception:
            logger.exception("Datagram handler error")

    def _transport_error(self, exc: Exception) -> None:
        if self._sending:
            self._send_error = exc
            return
        logger.warning(f"Channel UDP error: {exc}")
        self._abort(exc)

    def _connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning(f"Channel socket lost: {exc}")
            self._abort(exc)
        elif not self._closed:
            self.close()

    def _abort(self, exc: Exception) -> None:
        if self._closed:
            return
        closed = ChannelClosedError(f"Channel closed after socket error: {exc}")
        closed.__cause__ = exc
        self._closed = True
        self._peer = None
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
        self._fail_pending(closed)
        if self._on_error is not None:
            self._on_error(exc)
