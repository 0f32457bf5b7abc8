"""
Peer-forwarding router.

Consumes packets from the shared inbound queue and decides where they go.
Player A reaches player B by sending to B's proxy port; the router then
sends the payload to B's real socket from A's own proxy port, so each
player only ever sees proxy addresses:

    A ──> relay(B).port ──> router ──> relay(A).send ──> B.real_addr

Packets sent to the lobby port admit the sender and are echoed back from
its new proxy port, which tells the client which port is its own.

Game payloads are opaque here. A PacketDecoder may inspect them and report
what it learned (game id, player id, name, NAT port); the router records
that in the registry.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .exceptions import (
    PlayerExistsError,
    PlayerNotFoundError,
    PortPoolExhaustedError,
    RegistryClosedError,
    RelayBindError,
)
from .packet import ZERO_GAME_ID, UdpPacket
from .registry import Player, Registry

logger = logging.getLogger("gamerelay.router")


@dataclass
class PacketObservation:
    """What a protocol decoder learned from one packet. None means unknown."""
    game_id: Optional[bytes] = None
    player_id: Optional[int] = None
    player_name: Optional[str] = None
    # In-game id the name belongs to; defaults to the sender's own id
    name_player_id: Optional[int] = None
    nat_port: Optional[int] = None

    @property
    def empty(self) -> bool:
        return (self.game_id is None and self.player_id is None
                and self.player_name is None and self.nat_port is None)


PacketDecoder = Callable[[UdpPacket], Optional[PacketObservation]]


def null_decoder(packet: UdpPacket) -> Optional[PacketObservation]:
    return None


class PeerForwardRouter:
    """Routes inbound packets between members of the same game."""

    def __init__(self, registry: Registry, decoder: Optional[PacketDecoder] = None,
                 lobby_port: Optional[int] = None):
        self.registry = registry
        self.decoder = decoder or null_decoder
        self.lobby_port = lobby_port

        self.forwarded = 0
        self.dropped = 0

    def route(self, packet: UdpPacket) -> bool:
        """Handle one inbound packet. Returns True if something was sent."""
        observation = self.decoder(packet) or PacketObservation()

        sender = self._resolve_sender(packet, observation)
        if sender is None:
            return self._drop(f"no route for {packet.src_addr[0]}:{packet.src_addr[1]} "
                              f"to port {packet.dst_port}")

        # Any packet from a player counts as activity, even one that is dropped
        self.registry.touch(sender.player_addr)

        if not observation.empty:
            sender = self._apply_observation(sender, observation)

        if packet.dst_port == self.lobby_port:
            return sender.relay.send(packet.forward_to(sender.address, sender.proxy_port))

        try:
            _, target = self.registry.find_by_proxy_port(packet.dst_port)
        except PlayerNotFoundError:
            return self._drop(f"proxy port {packet.dst_port} is no longer assigned")

        if target.proxy_port == sender.proxy_port:
            return self._drop(f"{sender.player_addr} addressed its own proxy port")
        if target.game_id != sender.game_id:
            return self._drop(f"{sender.player_addr} and {target.player_addr} are in different games")

        outbound = packet.forward_to(target.address, target.proxy_port)
        if target.player_id >= 0:
            self.registry.touch(sender.player_addr, target.player_id, outbound)

        if sender.relay.send(outbound):
            self.forwarded += 1
            return True
        return self._drop(f"relay for {sender.player_addr} is closed")

    def _resolve_sender(self, packet: UdpPacket,
                        observation: PacketObservation) -> Optional[Player]:
        try:
            return self.registry.find_by_address(packet.src_addr)
        except PlayerNotFoundError:
            pass

        # First packet from a new address: admit into the lobby's reported
        # game, or into the game of the player it was sent to
        if packet.dst_port == self.lobby_port:
            game_id = observation.game_id or ZERO_GAME_ID
        else:
            try:
                game_id, _ = self.registry.find_by_proxy_port(packet.dst_port)
            except PlayerNotFoundError:
                return None

        nat_port = observation.nat_port if observation.nat_port is not None else packet.src_addr[1]
        try:
            return self.registry.admit(packet.src_addr, game_id, nat_port)
        except PlayerExistsError:
            return self.registry.find_by_address(packet.src_addr)
        except (PortPoolExhaustedError, RelayBindError, RegistryClosedError) as e:
            logger.warning(f"[ROUTER] Admission of {packet.src_addr[0]}:{packet.src_addr[1]} failed: {e}")
            return None

    def _apply_observation(self, sender: Player, observation: PacketObservation) -> Player:
        player_addr = sender.player_addr

        if observation.game_id is not None and observation.game_id != sender.game_id:
            self.registry.change_game(sender.proxy_port, observation.game_id)
        if observation.player_id is not None:
            self.registry.set_player_id(player_addr, observation.player_id)
        if observation.nat_port is not None:
            self.registry.set_nat_port(player_addr, observation.nat_port)

        if observation.player_name is not None:
            name_player_id = observation.name_player_id
            if name_player_id is None:
                name_player_id = observation.player_id
            if name_player_id is None:
                name_player_id = sender.player_id
            self.registry.set_name(player_addr, name_player_id, observation.player_name)

        try:
            return self.registry.find_by_address(sender.address)
        except PlayerNotFoundError:
            return sender

    def _drop(self, reason: str) -> bool:
        self.dropped += 1
        logger.debug(f"[ROUTER] Dropped packet: {reason}")
        return False


__all__ = [
    "PacketObservation",
    "PacketDecoder",
    "null_decoder",
    "PeerForwardRouter",
]
