"""
Game Relay Server

Central coordinator. Owns the port pool, the registry, the lobby relay,
the router dispatch loop, the maintenance loop and the event logger.

    lobby (listen_port) ──┐
    player relays ────────┴──> inbound queue ──> dispatch loop ──> router

The server is the main entry point for running the relay standalone.
"""

import logging
import logging.handlers
import queue
import signal
import threading
import time
from typing import Dict, List, Optional

from .config import RelayConfig, load_config
from .events import EventLogger, RegistryEvents
from .exceptions import RelayBindError
from .player_relay import PlayerRelay
from .port_pool import PortPool
from .registry import Registry
from .router import PacketDecoder, PeerForwardRouter

logger = logging.getLogger("gamerelay.server")

# Enqueued on the inbound queue by stop() to end the dispatch loop
_STOP = object()

# Seconds to wait for each loop to exit on stop()
JOIN_TIMEOUT = 5.0


class RelayServer:
    """
    UDP relay for peer-style multiplayer games.

    Args:
        config: Relay configuration; defaults when omitted
        decoder: Game protocol decoder handed to the router
    """

    def __init__(self, config: Optional[RelayConfig] = None,
                 decoder: Optional[PacketDecoder] = None):
        self.config = config or RelayConfig()
        self.config.validate()

        self.rx_queue: queue.Queue = queue.Queue()
        self.events = RegistryEvents(self.config.event_queue_size)
        self.port_pool = PortPool(self.config.first_proxy_port, self.config.last_proxy_port)
        self.registry = Registry(
            port_pool=self.port_pool,
            rx_queue=self.rx_queue,
            events=self.events,
            bind_ip=self.config.listen_ip,
            buffer_size=self.config.buffer_size,
        )
        self.router = PeerForwardRouter(
            self.registry, decoder=decoder, lobby_port=self.config.listen_port
        )
        self.event_logger = EventLogger(self.events)

        self.lobby: Optional[PlayerRelay] = None
        self.running = False
        self.started_at = 0.0
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> bool:
        """Start the relay server"""
        if self.running:
            return True

        try:
            self.lobby = PlayerRelay.open(
                self.config.listen_port,
                (self.config.listen_ip, self.config.listen_port),
                self.rx_queue,
                shutdown=self.registry.shutdown_signal,
                bind_ip=self.config.listen_ip,
                buffer_size=self.config.buffer_size,
            )
        except RelayBindError as e:
            logger.error(f"[SERVER] Failed to start: {e}")
            return False

        self.running = True
        self.started_at = time.time()
        self.event_logger.start()

        for name, target in (("dispatch", self._dispatch_loop),
                             ("maintenance", self._maintenance_loop)):
            thread = threading.Thread(target=target, name=f"gamerelay-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

        public_ip = self.config.proxy_ip or self.config.listen_ip
        logger.info(f"[SERVER] Relay started, lobby on {public_ip}:{self.config.listen_port}, "
                    f"proxy ports from {self.config.first_proxy_port}")
        return True

    def stop(self):
        """Stop the relay server. Safe to call more than once."""
        if not self.running:
            return
        self.running = False
        self._stop_event.set()

        relays = self.registry.shutdown()
        self.rx_queue.put(_STOP)

        for thread in self._threads:
            thread.join(JOIN_TIMEOUT)
        self._threads = []

        if self.lobby is not None:
            relays.append(self.lobby)
        for relay in relays:
            if not relay.wait(JOIN_TIMEOUT):
                logger.warning(f"[SERVER] {relay} did not stop in time")

        self.event_logger.stop()
        logger.info("[SERVER] Relay stopped")

    def serve_forever(self):
        """Block until stop() is called or a stop is requested."""
        self._stop_event.wait()

    def request_stop(self):
        """Ask serve_forever() to return; usable from a signal handler."""
        self._stop_event.set()

    def get_stats(self) -> Dict:
        games = self.registry.games()
        return {
            "players": len(self.registry),
            "games": len(games),
            "proxy_ports_assigned": len(self.port_pool),
            "packets_forwarded": self.router.forwarded,
            "packets_dropped": self.router.dropped,
            "events_dropped": self.events.dropped,
            "uptime": time.time() - self.started_at if self.started_at else 0,
        }

    def _dispatch_loop(self):
        while True:
            packet = self.rx_queue.get()
            if packet is _STOP:
                return
            try:
                self.router.route(packet)
            except Exception as e:
                logger.error(f"[SERVER] Routing error for packet from {packet.src_addr}: {e}")

    def _maintenance_loop(self):
        timeout = self.config.player_timeout_s
        while not self._stop_event.wait(self.config.maintenance_interval_s):
            if timeout > 0:
                for player_addr in self.registry.idle_players(timeout):
                    logger.info(f"[SERVER] Player {player_addr} idle for {timeout}s, disconnecting")
                    self.registry.remove(player_addr)

            if self.config.debug:
                logger.debug("[SERVER] State:\n" + self.registry.format_state())


def setup_logging(config: RelayConfig) -> None:
    level = logging.DEBUG if config.debug else getattr(
        logging, config.logging.level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if config.logging.file:
        handler = logging.handlers.RotatingFileHandler(
            config.logging.file,
            maxBytes=config.logging.max_size_mb * 1024 * 1024,
            backupCount=config.logging.backup_count,
        )
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        logging.getLogger().addHandler(handler)


def main():
    """Main entry point for standalone execution."""
    import argparse

    parser = argparse.ArgumentParser(description="UDP relay for peer-to-peer multiplayer games")
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--port", "-p", type=int, help="Lobby UDP port")
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.port:
        config.listen_port = args.port
        config.validate()
    if args.debug:
        config.debug = True

    setup_logging(config)

    server = RelayServer(config=config)
    if not server.start():
        raise SystemExit(1)

    def handle_signal(signum, frame):
        server.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    try:
        server.serve_forever()
    finally:
        server.stop()


if __name__ == "__main__":
    main()
