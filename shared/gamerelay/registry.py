"""
Player Registry

Authoritative list of connected players and active games. One
reader/writer lock guards every field: lookups take it shared, mutations
exclusive. Public methods take the lock exactly once and compose through
the private ``_``-prefixed variants, which assume it is already held.

Invariants kept under the lock:
    - at most one player per (ip, port) and per proxy port
    - games[gid].player_count == number of players with game_id == gid
    - a game with no players is not stored

Admission binds the new relay socket before taking the lock, so slow
socket setup never stalls lookups.
"""

import logging
import queue
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from .events import RegistryEvents
from .exceptions import PlayerExistsError, PlayerNotFoundError, RegistryClosedError
from .packet import (
    BUFFER_SIZE,
    Address,
    PlayerAddr,
    UdpPacket,
    ensure_game_id,
    normalize_ip,
)
from .player_relay import PlayerRelay
from .port_pool import PortPool
from .rwlock import ReadWriteLock
from .shutdown import ShutdownSignal

logger = logging.getLogger("gamerelay.registry")

UNKNOWN_PLAYER_ID = -1
UNKNOWN_PLAYER_NAME = "<unknown>"

# Suffix the game appends to names of players whose host name it could not
# resolve, e.g. "PLAYER1@Unknown Machine Name"
PLACEHOLDER_HOST_SUFFIX = "Unknown Machine Name"

RelayFactory = Callable[..., PlayerRelay]


def clean_player_name(name: str) -> str:
    """Strip a trailing "@<placeholder host>" segment from a reported name."""
    if name.endswith(PLACEHOLDER_HOST_SUFFIX) and "@" in name:
        return "".join(name.split("@")[:-1])
    return name


@dataclass
class Player:
    """A connected player and its relay."""
    ip: str
    port: int
    proxy_port: int
    relay: PlayerRelay
    game_id: bytes
    player_id: int = UNKNOWN_PLAYER_ID
    name: str = UNKNOWN_PLAYER_NAME
    nat_port: int = 0
    peers: Dict[int, float] = field(default_factory=dict)
    peer_packets: Dict[int, UdpPacket] = field(default_factory=dict)
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def address(self) -> Address:
        return (self.ip, self.port)

    @property
    def player_addr(self) -> PlayerAddr:
        return PlayerAddr(self.ip, self.port, self.proxy_port)

    def matches(self, player: PlayerAddr) -> bool:
        return player.matches(self.ip, self.port, self.proxy_port)

    def snapshot(self) -> "Player":
        """Copy safe to hand out of the lock. The relay is shared."""
        return replace(self, peers=dict(self.peers), peer_packets=dict(self.peer_packets))


@dataclass
class Game:
    """An active game. Only exists while it has players."""
    game_id: bytes
    player_count: int = 0


class Registry:
    """
    Shared player/game state driving the per-player relays.

    Args:
        port_pool: Proxy port allocator; a fresh PortPool by default
        rx_queue: Inbound conduit shared by every relay
        events: Notification conduits for the event log
        relay_factory: Builds and starts a relay; PlayerRelay.open by default
        bind_ip: Local address relay sockets bind to
        buffer_size: Largest datagram a relay reads
    """

    def __init__(self, port_pool: Optional[PortPool] = None,
                 rx_queue: Optional[queue.Queue] = None,
                 events: Optional[RegistryEvents] = None,
                 relay_factory: Optional[RelayFactory] = None,
                 bind_ip: str = "0.0.0.0",
                 buffer_size: int = BUFFER_SIZE):
        self.port_pool = port_pool if port_pool is not None else PortPool()
        self.rx_queue: queue.Queue = rx_queue if rx_queue is not None else queue.Queue()
        self.events = events if events is not None else RegistryEvents()
        self.relay_factory = relay_factory or PlayerRelay.open
        self.bind_ip = bind_ip
        self.buffer_size = buffer_size
        self.shutdown_signal = ShutdownSignal()

        self._players: List[Player] = []
        self._games: Dict[bytes, Game] = {}
        self._lock = ReadWriteLock()
        self._closed = False

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    def find_by_address(self, addr: Address) -> Player:
        """Player whose real socket is addr. Raises PlayerNotFoundError."""
        with self._lock.read():
            return self._find_by_address(addr).snapshot()

    def find_by_proxy_port(self, port: int) -> Tuple[bytes, Player]:
        """(game id, player) owning a proxy port. Raises PlayerNotFoundError."""
        with self._lock.read():
            player = self._find_by_proxy_port(port)
            return player.game_id, player.snapshot()

    def players(self) -> List[Player]:
        with self._lock.read():
            return [p.snapshot() for p in self._players]

    def game_members(self, game_id: bytes) -> List[Player]:
        with self._lock.read():
            return [p.snapshot() for p in self._players if p.game_id == game_id]

    def games(self) -> Dict[bytes, Game]:
        with self._lock.read():
            return {gid: replace(game) for gid, game in self._games.items()}

    def get_game(self, game_id: bytes) -> Optional[Game]:
        with self._lock.read():
            game = self._games.get(game_id)
            return replace(game) if game else None

    def idle_players(self, max_idle_s: float,
                     now: Optional[float] = None) -> List[PlayerAddr]:
        """Players that have not sent anything for longer than max_idle_s."""
        now = time.monotonic() if now is None else now
        with self._lock.read():
            return [p.player_addr for p in self._players if now - p.last_seen > max_idle_s]

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._players)

    @property
    def closed(self) -> bool:
        return self._closed

    def format_state(self, newline: str = "\n") -> str:
        """Player table: real socket, proxy port and game id per player."""
        with self._lock.read():
            lines = [f"   {'Player':<21}    {'Proxy Port':<10}    Game Id"]
            for player in self._players:
                ip_addr = f"{player.ip}:{player.port}"
                lines.append(f"   {ip_addr:<21}    {player.proxy_port:<10}    {player.game_id.hex()}")
            return newline.join(lines) + newline

    # ------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------

    def admit(self, addr: Address, game_id: bytes, nat_port: int) -> Player:
        """
        Register a newly observed player and start its relay.

        Raises:
            PortPoolExhaustedError: no proxy port left
            RelayBindError: the proxy port could not be bound
            PlayerExistsError: addr is already registered
            RegistryClosedError: global shutdown has happened
        """
        game_id = ensure_game_id(game_id)
        ip, port = normalize_ip(addr[0]), addr[1]

        if self._closed:
            raise RegistryClosedError()

        proxy_port = self.port_pool.allocate()
        try:
            relay = self.relay_factory(
                proxy_port, (ip, port), self.rx_queue,
                shutdown=self.shutdown_signal,
                bind_ip=self.bind_ip,
                buffer_size=self.buffer_size,
            )
        except Exception:
            self.port_pool.release(proxy_port)
            raise

        with self._lock.write():
            error = None
            if self._closed:
                error = RegistryClosedError()
            elif self._has_address(ip, port):
                error = PlayerExistsError(ip, port)

            if error is not None:
                relay.close()
                self.port_pool.release(proxy_port)
                raise error

            player = Player(
                ip=ip,
                port=port,
                proxy_port=proxy_port,
                relay=relay,
                game_id=game_id,
                nat_port=nat_port,
            )
            self._players.append(player)
            self.events.emit_player_joined(player.player_addr)
            self._recompute_player_count(game_id)

            logger.info(f"[REGISTRY] Admitted {ip}:{port} on proxy port {proxy_port} "
                        f"(game {game_id.hex()})")
            return player.snapshot()

    def change_game(self, proxy_port: int, new_game_id: bytes) -> bool:
        """
        Move a player to another game.

        The in-game player id is reset because it has no meaning in the new
        game. Both the new and the old game's counts are recomputed.
        """
        new_game_id = ensure_game_id(new_game_id)
        with self._lock.write():
            try:
                player = self._find_by_proxy_port(proxy_port)
            except PlayerNotFoundError:
                return False

            old_game_id = player.game_id
            player.game_id = new_game_id
            player.player_id = UNKNOWN_PLAYER_ID

            self._recompute_player_count(new_game_id)
            if old_game_id != new_game_id:
                self._recompute_player_count(old_game_id)
                logger.debug(f"[REGISTRY] Proxy port {proxy_port} moved from game "
                             f"{old_game_id.hex()} to {new_game_id.hex()}")
            return True

    def recompute_player_count(self, game_id: bytes) -> int:
        with self._lock.write():
            return self._recompute_player_count(ensure_game_id(game_id))

    def remove(self, player_addr: PlayerAddr) -> bool:
        """
        Disconnect a player: close its relay, free its proxy port and
        update its game. Returns False if no player matches exactly.
        """
        with self._lock.write():
            index = self._index_of(player_addr)
            if index < 0:
                return False

            player = self._players[index]
            player.relay.close()
            self.port_pool.release(player.proxy_port)

            # Swap with last; order is not meaningful
            self._players[index] = self._players[-1]
            self._players.pop()

            self.events.emit_player_left(player.player_addr)
            self._recompute_player_count(player.game_id)

            logger.info(f"[REGISTRY] Removed {player_addr}")
            return True

    def set_nat_port(self, player_addr: PlayerAddr, nat_port: int) -> bool:
        with self._lock.write():
            index = self._index_of(player_addr)
            if index < 0:
                return False
            self._players[index].nat_port = nat_port
            return True

    def set_player_id(self, player_addr: PlayerAddr, player_id: int) -> bool:
        with self._lock.write():
            index = self._index_of(player_addr)
            if index < 0:
                return False
            self._players[index].player_id = player_id
            return True

    def set_name(self, player_addr: PlayerAddr, player_id: int, name: str) -> bool:
        """
        Record a display name reported by player_addr for player_id.

        Names arrive keyed by in-game identity, so the target is looked up
        by (reporter's game id, player_id) rather than by address.
        """
        with self._lock.write():
            index = self._index_of(player_addr)
            if index < 0:
                return False
            game_id = self._players[index].game_id

            for player in self._players:
                if player.game_id == game_id and player.player_id == player_id:
                    player.name = clean_player_name(name)
                    return True
            return False

    def touch(self, player_addr: PlayerAddr, peer_id: Optional[int] = None,
              packet: Optional[UdpPacket] = None) -> bool:
        """Record activity from a player and, optionally, traffic to a peer."""
        with self._lock.write():
            index = self._index_of(player_addr)
            if index < 0:
                return False

            player = self._players[index]
            now = time.monotonic()
            player.last_seen = now
            if peer_id is not None:
                player.peers[peer_id] = now
                if packet is not None:
                    player.peer_packets[peer_id] = packet
            return True

    def shutdown(self) -> List[PlayerRelay]:
        """
        Global shutdown: close every relay and free every port.

        Idempotent. Returns the relays that were closed so the caller can
        wait for their loops to exit.
        """
        with self._lock.write():
            if self._closed:
                return []
            self._closed = True
            players, self._players = self._players, []
            self._games.clear()

        self.shutdown_signal.trigger()
        for player in players:
            player.relay.close()
            self.port_pool.release(player.proxy_port)

        logger.info(f"[REGISTRY] Shut down, {len(players)} relays closed")
        return [p.relay for p in players]

    # ------------------------------------------------------------
    # Unlocked core (caller holds the lock)
    # ------------------------------------------------------------

    def _find_by_address(self, addr: Address) -> Player:
        ip, port = normalize_ip(addr[0]), addr[1]
        for player in self._players:
            if player.ip == ip and player.port == port:
                return player
        raise PlayerNotFoundError(f"Player with socket {addr[0]}:{addr[1]} not found")

    def _find_by_proxy_port(self, port: int) -> Player:
        for player in self._players:
            if player.proxy_port == port:
                return player
        raise PlayerNotFoundError(f"Player with proxy port {port} not found")

    def _has_address(self, ip: str, port: int) -> bool:
        return any(p.ip == ip and p.port == port for p in self._players)

    def _index_of(self, player_addr: PlayerAddr) -> int:
        for i, player in enumerate(self._players):
            if player.matches(player_addr):
                return i
        return -1

    def _count_players(self, game_id: bytes) -> int:
        return sum(1 for p in self._players if p.game_id == game_id)

    def _recompute_player_count(self, game_id: bytes) -> int:
        count = self._count_players(game_id)
        if count == 0:
            if self._games.pop(game_id, None) is not None:
                self.events.emit_game_ended(game_id)
                logger.info(f"[REGISTRY] Game {game_id.hex()} ended")
        else:
            game = self._games.get(game_id)
            if game is None:
                self._games[game_id] = Game(game_id, count)
                logger.info(f"[REGISTRY] Game {game_id.hex()} started")
            else:
                game.player_count = count
        return count


__all__ = [
    "UNKNOWN_PLAYER_ID",
    "UNKNOWN_PLAYER_NAME",
    "PLACEHOLDER_HOST_SUFFIX",
    "clean_player_name",
    "Player",
    "Game",
    "Registry",
]
