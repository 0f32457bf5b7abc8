"""
Player Relay - one UDP bridge per connected player

Each admitted player gets a socket bound to its own proxy port and two
threads:

    remote peer ──UDP──> [receive loop] ──> shared inbound queue ──> router
    router ──> outbound queue ──> [send loop] ──UDP──> packet.dst_addr

The receive loop blocks in a selector on the UDP socket and a private
wakeup socket pair. The send loop blocks on its outbound queue. close()
wakes both without touching any other relay, so a targeted close and the
global shutdown broadcast are both O(1) per relay and never poll.
"""

import logging
import queue
import selectors
import socket
import threading
from typing import Optional

from .exceptions import RelayBindError
from .packet import BUFFER_SIZE, Address, UdpPacket
from .shutdown import ShutdownSignal

logger = logging.getLogger("gamerelay.relay")

# Enqueued by close() to unblock the send loop
_STOP = object()


def _check_destination(addr) -> None:
    if (not isinstance(addr, tuple) or len(addr) != 2
            or not isinstance(addr[0], str) or not isinstance(addr[1], int)):
        raise ValueError(f"Destination must be an (ip, port) pair, got {addr!r}")
    if not 0 < addr[1] <= 65535:
        raise ValueError(f"Destination port {addr[1]} is out of range")


class PlayerRelay:
    """
    Bidirectional UDP bridge bound to a single proxy port.

    The socket, the outbound queue and the wakeup pair are owned by this
    relay; the inbound queue is shared with every other relay.
    """

    def __init__(self, proxy_port: int, player_addr: Address,
                 rx_queue: "queue.Queue[UdpPacket]",
                 shutdown: Optional[ShutdownSignal] = None,
                 bind_ip: str = "0.0.0.0",
                 buffer_size: int = BUFFER_SIZE):
        self.proxy_port = proxy_port
        self.player_addr = player_addr
        self.rx_queue = rx_queue
        self.tx_queue: "queue.Queue" = queue.Queue()
        self.bind_ip = bind_ip
        self.buffer_size = buffer_size

        self._shutdown = shutdown
        self._sock: Optional[socket.socket] = None
        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None

        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._rx_thread: Optional[threading.Thread] = None
        self._tx_thread: Optional[threading.Thread] = None

    @classmethod
    def open(cls, proxy_port: int, player_addr: Address,
             rx_queue: "queue.Queue[UdpPacket]",
             shutdown: Optional[ShutdownSignal] = None,
             bind_ip: str = "0.0.0.0",
             buffer_size: int = BUFFER_SIZE) -> "PlayerRelay":
        """Create and start a relay. Raises RelayBindError if the port is taken."""
        relay = cls(proxy_port, player_addr, rx_queue, shutdown, bind_ip, buffer_size)
        relay.start()
        return relay

    def start(self) -> None:
        """Bind the proxy port and start both loops."""
        logger.info(f"[RELAY] Creating proxy: {self.proxy_port} => "
                    f"{self.player_addr[0]}:{self.player_addr[1]}")

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.bind_ip, self.proxy_port))
        except OSError as e:
            sock.close()
            logger.error(f"[RELAY] Failed to bind UDP port {self.proxy_port}: {e}")
            raise RelayBindError(self.proxy_port, str(e)) from e
        sock.setblocking(False)

        self._sock = sock
        self._wake_r, self._wake_w = socket.socketpair()

        # Registered here so a close() racing with thread start finds both
        # sockets already watched
        self._selector = selectors.DefaultSelector()
        self._selector.register(sock, selectors.EVENT_READ, data="udp")
        self._selector.register(self._wake_r, selectors.EVENT_READ, data="wake")

        self._rx_thread = threading.Thread(
            target=self._receive_loop, name=f"relay-rx-{self.proxy_port}", daemon=True
        )
        self._tx_thread = threading.Thread(
            target=self._send_loop, name=f"relay-tx-{self.proxy_port}", daemon=True
        )
        self._rx_thread.start()
        self._tx_thread.start()

        if self._shutdown is not None:
            self._shutdown.subscribe(self.close)

    def send(self, packet: UdpPacket) -> bool:
        """
        Queue a packet for transmission to packet.dst_addr.

        Returns:
            False if the relay is already closed and the packet was dropped

        Raises:
            ValueError: packet.dst_addr is not an (ip, port) pair
        """
        if packet.dst_addr is None:
            raise ValueError("Outbound packet has no destination address")
        _check_destination(packet.dst_addr)
        if self._closed.is_set():
            return False
        self.tx_queue.put(packet)
        return True

    def close(self) -> bool:
        """
        Targeted close of this relay only. Idempotent.

        The socket is closed before returning, so the proxy port can be
        rebound as soon as this call completes.
        """
        with self._close_lock:
            if self._closed.is_set():
                return False
            self._closed.set()

        if self._shutdown is not None:
            self._shutdown.unsubscribe(self.close)

        # EOF on the wakeup pair unblocks the receive loop's selector
        if self._wake_w is not None:
            self._wake_w.close()
        if self._sock is not None:
            self._sock.close()
        self.tx_queue.put(_STOP)

        logger.debug(f"[RELAY] Close requested for UDP port {self.proxy_port}")
        return True

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def done(self) -> bool:
        """True once both loops have exited."""
        threads = [t for t in (self._rx_thread, self._tx_thread) if t is not None]
        return all(not t.is_alive() for t in threads)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join both loops. Returns True if they have exited."""
        for thread in (self._rx_thread, self._tx_thread):
            if thread is not None:
                thread.join(timeout)
        return self.done

    def _receive_loop(self):
        selector = self._selector
        try:
            while not self._closed.is_set():
                for key, _mask in selector.select():
                    if key.data == "wake":
                        return

                    try:
                        data, addr = self._sock.recvfrom(self.buffer_size)
                    except (BlockingIOError, InterruptedError):
                        continue
                    except OSError as e:
                        # Reads on a socket closed by close() are expected
                        if not self._closed.is_set():
                            logger.error(f"[RELAY] Read error on UDP port {self.proxy_port}: {e}")
                        return

                    self.rx_queue.put(UdpPacket.inbound(addr, self.proxy_port, data))
        finally:
            selector.close()
            self._wake_r.close()
            logger.info(f"[RELAY] Stopped listening on UDP port {self.proxy_port}")

    def _send_loop(self):
        try:
            while True:
                packet = self.tx_queue.get()
                if packet is _STOP or self._closed.is_set():
                    return

                try:
                    self._sock.sendto(packet.payload, packet.dst_addr)
                except (OSError, OverflowError, TypeError, ValueError) as e:
                    if self._closed.is_set():
                        return
                    logger.warning(f"[RELAY] Write to {packet.dst_addr[0]}:{packet.dst_addr[1]} "
                                   f"on UDP port {self.proxy_port} failed: {e}")
        finally:
            logger.info(f"[RELAY] Stopped transmitting on UDP port {self.proxy_port}")

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (f"PlayerRelay(port={self.proxy_port}, "
                f"player={self.player_addr[0]}:{self.player_addr[1]}, {state})")


__all__ = ["PlayerRelay"]
