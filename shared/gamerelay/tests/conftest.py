"""Shared fixtures for the game relay tests."""

import socket

import pytest

from shared.gamerelay.events import RegistryEvents
from shared.gamerelay.port_pool import PortPool
from shared.gamerelay.registry import Registry


GAME_A = bytes(range(1, 9))
GAME_B = bytes(range(11, 19))


class FakeRelay:
    """Socket-free stand-in for PlayerRelay that records outbound packets."""

    def __init__(self, proxy_port, player_addr, rx_queue, shutdown=None,
                 bind_ip="0.0.0.0", buffer_size=1024):
        self.proxy_port = proxy_port
        self.player_addr = player_addr
        self.rx_queue = rx_queue
        self.sent = []
        self.closed = False
        self.close_calls = 0
        if shutdown is not None:
            shutdown.subscribe(self.close)

    def send(self, packet):
        if self.closed:
            return False
        self.sent.append(packet)
        return True

    def close(self):
        self.close_calls += 1
        if self.closed:
            return False
        self.closed = True
        return True

    @property
    def done(self):
        return self.closed

    def wait(self, timeout=None):
        return self.closed


def free_udp_port() -> int:
    """A UDP port that was free a moment ago on 127.0.0.1."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


@pytest.fixture
def events():
    return RegistryEvents()


@pytest.fixture
def registry(events):
    return Registry(port_pool=PortPool(), events=events, relay_factory=FakeRelay)


@pytest.fixture
def udp_client():
    """Factory for client sockets bound to 127.0.0.1, closed after the test."""
    sockets = []

    def make():
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))
        sock.settimeout(2.0)
        sockets.append(sock)
        return sock

    yield make

    for sock in sockets:
        sock.close()
