"""
Game Relay - NAT traversal proxy for peer-style multiplayer games

Every remote player talks to a dedicated proxy port instead of directly to
its peers, so the relay can rewrite addresses, group players into games and
forward traffic between game members whatever NAT they sit behind.

Components:
    - PortPool: lowest-hole proxy port allocation
    - PlayerRelay: per-player UDP receive/send loops with targeted close
    - Registry: lock-protected player/game state
    - PeerForwardRouter: forwards packets between members of a game
    - RelayServer: lobby, dispatch and maintenance coordinator
"""

__version__ = "1.0.0"

from .config import RelayConfig, LoggingConfig, load_config
from .events import EventLogger, RegistryEvents
from .exceptions import (
    GameRelayError,
    PlayerExistsError,
    PlayerNotFoundError,
    PortPoolExhaustedError,
    RegistryClosedError,
    RelayBindError,
)
from .packet import ZERO_GAME_ID, PlayerAddr, UdpPacket, ensure_game_id
from .player_relay import PlayerRelay
from .port_pool import FIRST_PROXY_PORT, PortPool
from .registry import Game, Player, Registry, clean_player_name
from .router import PacketDecoder, PacketObservation, PeerForwardRouter
from .server import RelayServer
from .shutdown import ShutdownSignal

__all__ = [
    # Config
    "RelayConfig",
    "LoggingConfig",
    "load_config",
    # Errors
    "GameRelayError",
    "PlayerExistsError",
    "PlayerNotFoundError",
    "PortPoolExhaustedError",
    "RegistryClosedError",
    "RelayBindError",
    # Values
    "ZERO_GAME_ID",
    "PlayerAddr",
    "UdpPacket",
    "ensure_game_id",
    # Relay engine
    "FIRST_PROXY_PORT",
    "PortPool",
    "PlayerRelay",
    "ShutdownSignal",
    # State
    "Game",
    "Player",
    "Registry",
    "clean_player_name",
    "EventLogger",
    "RegistryEvents",
    # Routing
    "PacketDecoder",
    "PacketObservation",
    "PeerForwardRouter",
    "RelayServer",
]
