"""
Game Relay Exceptions

Error taxonomy for the relay core. Lookup misses, setup failures and
lifecycle violations are raised; transient socket I/O errors are logged by
the relay loops and never raised.
"""

from typing import Optional


class GameRelayError(Exception):
    """Base exception for relay errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or 'relay_error'
        super().__init__(self.message)


class PlayerNotFoundError(GameRelayError):
    """Raised when no player matches an address or proxy port."""

    def __init__(self, message: str = "Player not found"):
        super().__init__(message, "player_not_found")


class PlayerExistsError(GameRelayError):
    """Raised when admitting an address that already has a player."""

    def __init__(self, ip: str, port: int):
        self.ip = ip
        self.port = port
        super().__init__(f"Player with socket {ip}:{port} already exists", "player_exists")


class PortPoolExhaustedError(GameRelayError):
    """Raised when every proxy port in the configured range is assigned."""

    def __init__(self, first_port: int, last_port: int):
        self.first_port = first_port
        self.last_port = last_port
        super().__init__(
            f"No free proxy port in range {first_port}-{last_port}",
            "port_pool_exhausted",
        )


class RelayBindError(GameRelayError):
    """Raised when a relay socket cannot be bound to its proxy port."""

    def __init__(self, port: int, reason: str):
        self.port = port
        super().__init__(f"Failed to bind UDP port {port}: {reason}", "relay_bind_failed")


class RegistryClosedError(GameRelayError):
    """Raised when admitting a player after global shutdown."""

    def __init__(self, message: str = "Registry is shut down"):
        super().__init__(message, "registry_closed")
