"""
Registry notifications.

The registry reports player joins, player leaves and game ends on three
one-way queues. Emitting never blocks a registry mutation: a full queue
drops the event with a warning. EventLogger is the default consumer and
drains all three into the log.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from .packet import PlayerAddr

logger = logging.getLogger("gamerelay.events")

DEFAULT_EVENT_QUEUE_SIZE = 1024

PLAYER_JOINED = "player_joined"
PLAYER_LEFT = "player_left"
GAME_ENDED = "game_ended"

_STOP = object()


class RegistryEvents:
    """Notification conduits for player-joined, player-left and game-ended."""

    def __init__(self, maxsize: int = DEFAULT_EVENT_QUEUE_SIZE):
        self.player_joined: "queue.Queue[PlayerAddr]" = queue.Queue(maxsize)
        self.player_left: "queue.Queue[PlayerAddr]" = queue.Queue(maxsize)
        self.game_ended: "queue.Queue[bytes]" = queue.Queue(maxsize)
        self.dropped = 0

    def emit_player_joined(self, player: PlayerAddr) -> bool:
        return self._emit(self.player_joined, PLAYER_JOINED, player)

    def emit_player_left(self, player: PlayerAddr) -> bool:
        return self._emit(self.player_left, PLAYER_LEFT, player)

    def emit_game_ended(self, game_id: bytes) -> bool:
        return self._emit(self.game_ended, GAME_ENDED, game_id)

    def _emit(self, conduit: queue.Queue, kind: str, value) -> bool:
        try:
            conduit.put_nowait(value)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"[EVENTS] {kind} queue full, dropping event for {value}")
            return False

    def conduits(self):
        return (
            (PLAYER_JOINED, self.player_joined),
            (PLAYER_LEFT, self.player_left),
            (GAME_ENDED, self.game_ended),
        )


class EventLogger:
    """
    Drains RegistryEvents into the log, one thread per conduit.

    An optional callback receives (kind, value) for every event, after it
    has been logged.
    """

    def __init__(self, events: RegistryEvents,
                 callback: Optional[Callable[[str, object], None]] = None):
        self.events = events
        self.callback = callback
        self._threads: List[threading.Thread] = []
        self._running = False

    def start(self):
        if self._running:
            return
        self._running = True
        for kind, conduit in self.events.conduits():
            thread = threading.Thread(
                target=self._drain, args=(kind, conduit),
                name=f"events-{kind}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = 5.0):
        if not self._running:
            return
        self._running = False
        for _, conduit in self.events.conduits():
            conduit.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _drain(self, kind: str, conduit: queue.Queue):
        while True:
            value = conduit.get()
            if value is _STOP:
                return

            if kind == GAME_ENDED:
                logger.info(f"[EVENTS] Game ended: {value.hex()}")
            elif kind == PLAYER_JOINED:
                logger.info(f"[EVENTS] Player joined: {value}")
            else:
                logger.info(f"[EVENTS] Player left: {value}")

            if self.callback is not None:
                try:
                    self.callback(kind, value)
                except Exception as e:
                    logger.error(f"[EVENTS] Callback failed for {kind}: {e}")
