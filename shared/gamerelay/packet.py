"""
Relay value types: game ids, player identities and UDP packets.
"""

import ipaddress
from dataclasses import dataclass
from typing import Optional, Tuple

# Largest datagram a relay reads in one call. The largest safe UDP payload
# is 576 bytes for IPv4 and 1280 for IPv6.
BUFFER_SIZE = 1024

GAME_ID_SIZE = 8

# Game id used for players that have not reported a game yet
ZERO_GAME_ID = bytes(GAME_ID_SIZE)

Address = Tuple[str, int]


def ensure_game_id(value) -> bytes:
    """Validate and normalize a game id to 8 immutable bytes."""
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValueError(f"Game id must be bytes, got {type(value).__name__}")
    value = bytes(value)
    if len(value) != GAME_ID_SIZE:
        raise ValueError(f"Game id must be {GAME_ID_SIZE} bytes, got {len(value)}")
    return value


def normalize_ip(ip: str) -> str:
    """
    Canonical text form of an IP address.

    IPv4-mapped IPv6 addresses collapse to their IPv4 form so that
    ``::ffff:1.2.3.4`` and ``1.2.3.4`` compare equal.
    """
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    return str(addr)


@dataclass(frozen=True)
class PlayerAddr:
    """Identity of a connected player: real socket address plus proxy port."""
    ip: str
    port: int
    proxy_port: int

    @property
    def address(self) -> Address:
        return (self.ip, self.port)

    def matches(self, ip: str, port: int, proxy_port: int) -> bool:
        return (
            self.port == port
            and self.proxy_port == proxy_port
            and normalize_ip(self.ip) == normalize_ip(ip)
        )

    def __str__(self) -> str:
        return f"{self.ip}:{self.port} (proxy port {self.proxy_port})"


@dataclass(frozen=True)
class UdpPacket:
    """A datagram travelling through the relay."""
    src_addr: Optional[Address]
    dst_addr: Optional[Address]
    dst_port: int
    length: int
    payload: bytes

    @classmethod
    def inbound(cls, src_addr: Address, proxy_port: int, payload: bytes) -> "UdpPacket":
        """Packet read from a relay socket, tagged with the port it arrived on."""
        return cls(src_addr, None, proxy_port, len(payload), payload)

    def forward_to(self, dst_addr: Address, dst_port: int) -> "UdpPacket":
        """Copy of this packet readdressed to a peer's real socket."""
        return UdpPacket(self.src_addr, dst_addr, dst_port, self.length, self.payload)


__all__ = [
    "BUFFER_SIZE",
    "GAME_ID_SIZE",
    "ZERO_GAME_ID",
    "Address",
    "ensure_game_id",
    "normalize_ip",
    "PlayerAddr",
    "UdpPacket",
]
