"""
Registry Test Suite

Tests for player/game bookkeeping:
    - admission and removal
    - game membership counts
    - name, player id and NAT port updates
    - concurrent admission
    - global shutdown
"""

import queue
import random
import threading
import time

import pytest

from shared.gamerelay.exceptions import (
    PlayerExistsError,
    PlayerNotFoundError,
    RegistryClosedError,
    RelayBindError,
)
from shared.gamerelay.packet import PlayerAddr, UdpPacket
from shared.gamerelay.port_pool import PortPool
from shared.gamerelay.registry import (
    UNKNOWN_PLAYER_ID,
    UNKNOWN_PLAYER_NAME,
    Registry,
    clean_player_name,
)
from shared.gamerelay.rwlock import ReadWriteLock

from conftest import GAME_A, GAME_B, FakeRelay


def drain(conduit):
    items = []
    while True:
        try:
            items.append(conduit.get_nowait())
        except queue.Empty:
            return items


def assert_counts_consistent(registry):
    """Stored game counts match membership and no empty game is stored."""
    members = {}
    for player in registry.players():
        members[player.game_id] = members.get(player.game_id, 0) + 1

    games = registry.games()
    assert set(games) == set(members)
    for game_id, game in games.items():
        assert game.player_count == members[game_id] > 0


class TestAdmission:

    def test_admit_defaults(self, registry, events):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert player.proxy_port == 40001
        assert player.player_id == UNKNOWN_PLAYER_ID
        assert player.name == UNKNOWN_PLAYER_NAME
        assert player.nat_port == 9000
        assert player.game_id == GAME_A
        assert isinstance(player.relay, FakeRelay)
        assert player.relay.player_addr == ("1.2.3.4", 9000)

        assert drain(events.player_joined) == [PlayerAddr("1.2.3.4", 9000, 40001)]
        assert registry.get_game(GAME_A).player_count == 1

    def test_end_to_end_scenario(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        first = registry.find_by_address(("1.2.3.4", 9000))
        assert first.proxy_port == 40001

        second = registry.admit(("5.6.7.8", 9000), GAME_A, 9000)
        assert second.proxy_port == 40002
        assert registry.get_game(GAME_A).player_count == 2

        assert registry.remove(first.player_addr) is True
        assert 40001 not in registry.port_pool
        assert registry.get_game(GAME_A).player_count == 1

    def test_duplicate_address_rejected(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        with pytest.raises(PlayerExistsError):
            registry.admit(("1.2.3.4", 9000), GAME_B, 9000)

        assert len(registry) == 1
        assert registry.port_pool.assigned == (40001,)
        assert registry.get_game(GAME_B) is None

    def test_same_ip_different_port_is_new_player(self, registry):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        b = registry.admit(("1.2.3.4", 9001), GAME_A, 9001)
        assert a.proxy_port != b.proxy_port

    def test_bind_failure_releases_port(self, events):
        def failing_factory(proxy_port, *args, **kwargs):
            raise RelayBindError(proxy_port, "Address already in use")

        registry = Registry(events=events, relay_factory=failing_factory)

        with pytest.raises(RelayBindError):
            registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert len(registry) == 0
        assert len(registry.port_pool) == 0
        assert events.player_joined.empty()

    def test_uses_given_port_pool(self, events):
        pool = PortPool(50000, 50010)
        registry = Registry(port_pool=pool, events=events, relay_factory=FakeRelay)

        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert registry.port_pool is pool
        assert player.proxy_port == 50000
        assert 50000 in pool

    def test_invalid_game_id(self, registry):
        with pytest.raises(ValueError):
            registry.admit(("1.2.3.4", 9000), b"short", 9000)
        assert len(registry.port_pool) == 0

    def test_concurrent_admission(self, registry):
        count = 32
        results = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(count)

        def admit(i):
            barrier.wait()
            try:
                player = registry.admit((f"10.0.0.{i + 1}", 5000), GAME_A, 5000)
                with lock:
                    results.append(player)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=admit, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        ports = [p.proxy_port for p in results]
        assert sorted(ports) == list(range(40001, 40001 + count))

        registered = registry.players()
        assert len(registered) == count
        assert len({(p.ip, p.port) for p in registered}) == count
        assert registry.get_game(GAME_A).player_count == count


class TestLookup:

    def test_find_by_address_miss(self, registry):
        with pytest.raises(PlayerNotFoundError) as exc:
            registry.find_by_address(("9.9.9.9", 1))
        assert exc.value.code == "player_not_found"

    def test_find_by_address_ipv4_mapped(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        player = registry.find_by_address(("::ffff:1.2.3.4", 9000))
        assert player.ip == "1.2.3.4"

    def test_find_by_proxy_port(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.admit(("5.6.7.8", 9000), GAME_B, 9000)

        game_id, player = registry.find_by_proxy_port(40002)
        assert game_id == GAME_B
        assert player.address == ("5.6.7.8", 9000)

        with pytest.raises(PlayerNotFoundError):
            registry.find_by_proxy_port(40099)

    def test_lookups_return_snapshots(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        player = registry.find_by_address(("1.2.3.4", 9000))
        player.name = "mutated"
        player.peers[3] = 1.0

        fresh = registry.find_by_address(("1.2.3.4", 9000))
        assert fresh.name == UNKNOWN_PLAYER_NAME
        assert fresh.peers == {}

    def test_game_members(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.admit(("5.6.7.8", 9000), GAME_B, 9000)
        registry.admit(("9.9.9.9", 9000), GAME_A, 9000)

        members = registry.game_members(GAME_A)
        assert sorted(p.ip for p in members) == ["1.2.3.4", "9.9.9.9"]

    def test_format_state(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        text = registry.format_state()

        lines = text.splitlines()
        assert "Proxy Port" in lines[0]
        assert "1.2.3.4:9000" in lines[1]
        assert "40001" in lines[1]
        assert GAME_A.hex() in lines[1]


class TestRemoval:

    def test_admit_remove_round_trip(self, registry, events):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        before = len(registry)

        player = registry.admit(("5.6.7.8", 9000), GAME_B, 9000)
        assert registry.remove(player.player_addr) is True

        assert len(registry) == before
        assert player.relay.closed
        assert registry.port_pool.allocate() == player.proxy_port

        assert drain(events.player_left) == [player.player_addr]
        assert drain(events.game_ended) == [GAME_B]
        assert registry.get_game(GAME_B) is None

    def test_remove_requires_exact_identity(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert registry.remove(PlayerAddr("1.2.3.4", 9000, 40050)) is False
        assert registry.remove(PlayerAddr("1.2.3.4", 9001, player.proxy_port)) is False
        assert len(registry) == 1
        assert not player.relay.closed

    def test_remove_closes_only_target_relay(self, registry):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        b = registry.admit(("5.6.7.8", 9000), GAME_A, 9000)

        registry.remove(a.player_addr)

        assert a.relay.closed
        assert not b.relay.closed
        assert registry.find_by_address(b.address).proxy_port == b.proxy_port

    def test_remove_middle_player_keeps_others(self, registry):
        players = [registry.admit((f"10.0.0.{i}", 7000), GAME_A, 7000) for i in range(1, 5)]
        registry.remove(players[1].player_addr)

        remaining = {p.proxy_port for p in registry.players()}
        assert remaining == {players[0].proxy_port, players[2].proxy_port, players[3].proxy_port}
        assert registry.get_game(GAME_A).player_count == 3


class TestGames:

    def test_change_game_resets_player_id(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.set_player_id(player.player_addr, 2)

        assert registry.change_game(player.proxy_port, GAME_B) is True

        moved = registry.find_by_address(player.address)
        assert moved.game_id == GAME_B
        assert moved.player_id == UNKNOWN_PLAYER_ID

    def test_change_game_updates_both_counts(self, registry, events):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.admit(("5.6.7.8", 9000), GAME_A, 9000)

        registry.change_game(a.proxy_port, GAME_B)

        assert registry.get_game(GAME_A).player_count == 1
        assert registry.get_game(GAME_B).player_count == 1
        assert drain(events.game_ended) == []

    def test_change_game_deletes_empty_source(self, registry, events):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.admit(("5.6.7.8", 9000), GAME_B, 9000)

        registry.change_game(a.proxy_port, GAME_B)

        assert registry.get_game(GAME_A) is None
        assert registry.get_game(GAME_B).player_count == 2
        assert drain(events.game_ended) == [GAME_A]

    def test_change_to_same_game(self, registry):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.set_player_id(a.player_addr, 5)

        registry.change_game(a.proxy_port, GAME_A)

        assert registry.get_game(GAME_A).player_count == 1
        assert registry.find_by_address(a.address).player_id == UNKNOWN_PLAYER_ID

    def test_change_game_unknown_port(self, registry):
        assert registry.change_game(40123, GAME_A) is False
        assert registry.games() == {}

    def test_recompute_player_count(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        assert registry.recompute_player_count(GAME_A) == 1
        assert registry.recompute_player_count(GAME_B) == 0
        assert registry.get_game(GAME_B) is None

    def test_counts_consistent_under_random_operations(self, registry):
        rng = random.Random(42)
        games = [GAME_A, GAME_B, bytes(8)]
        live = []

        for i in range(300):
            op = rng.random()
            if op < 0.4 or not live:
                player = registry.admit((f"10.1.{i // 250}.{i % 250}", 6000), rng.choice(games), 6000)
                live.append(player)
            elif op < 0.7:
                player = rng.choice(live)
                registry.change_game(player.proxy_port, rng.choice(games))
            else:
                player = live.pop(rng.randrange(len(live)))
                assert registry.remove(player.player_addr)

            assert_counts_consistent(registry)


class TestPlayerFields:

    def test_set_nat_port(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert registry.set_nat_port(player.player_addr, 12345) is True
        assert registry.find_by_address(player.address).nat_port == 12345

        assert registry.set_nat_port(PlayerAddr("1.2.3.4", 9000, 40077), 1) is False
        assert registry.find_by_address(player.address).nat_port == 12345

    def test_set_player_id(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        assert registry.set_player_id(player.player_addr, 3) is True
        assert registry.find_by_address(player.address).player_id == 3

    def test_set_name_strips_placeholder_host(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        registry.set_player_id(player.player_addr, 0)

        assert registry.set_name(player.player_addr, 0, "PLAYER1@Unknown Machine Name") is True
        assert registry.find_by_address(player.address).name == "PLAYER1"

    def test_set_name_targets_player_by_game_and_id(self, registry):
        reporter = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        target = registry.admit(("5.6.7.8", 9000), GAME_A, 9000)
        other_game = registry.admit(("9.9.9.9", 9000), GAME_B, 9000)
        registry.set_player_id(reporter.player_addr, 0)
        registry.set_player_id(target.player_addr, 1)
        registry.set_player_id(other_game.player_addr, 1)

        assert registry.set_name(reporter.player_addr, 1, "alice@workstation") is True

        assert registry.find_by_address(target.address).name == "alice@workstation"
        assert registry.find_by_address(reporter.address).name == UNKNOWN_PLAYER_NAME
        assert registry.find_by_address(other_game.address).name == UNKNOWN_PLAYER_NAME

    def test_set_name_unknown_reporter(self, registry):
        assert registry.set_name(PlayerAddr("1.2.3.4", 9000, 40001), 0, "bob") is False

    def test_set_name_no_matching_player_id(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        assert registry.set_name(player.player_addr, 7, "bob") is False

    def test_touch_records_peer(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        packet = UdpPacket(("1.2.3.4", 9000), ("5.6.7.8", 9000), 40002, 2, b"hi")

        assert registry.touch(player.player_addr, peer_id=4, packet=packet) is True

        updated = registry.find_by_address(player.address)
        assert 4 in updated.peers
        assert updated.peer_packets[4] == packet
        assert updated.last_seen >= player.last_seen

    def test_idle_players(self, registry):
        player = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        now = time.monotonic()

        assert registry.idle_players(60, now=now) == []
        assert registry.idle_players(60, now=now + 120) == [player.player_addr]


class TestShutdown:

    def test_shutdown_closes_all_relays(self, registry):
        a = registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        b = registry.admit(("5.6.7.8", 9000), GAME_B, 9000)

        relays = registry.shutdown()

        assert {r.proxy_port for r in relays} == {a.proxy_port, b.proxy_port}
        assert a.relay.closed and b.relay.closed
        assert len(registry) == 0
        assert registry.games() == {}
        assert len(registry.port_pool) == 0

    def test_shutdown_is_idempotent(self, registry):
        registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        assert len(registry.shutdown()) == 1
        assert registry.shutdown() == []

    def test_admit_after_shutdown(self, registry):
        registry.shutdown()
        with pytest.raises(RegistryClosedError):
            registry.admit(("1.2.3.4", 9000), GAME_A, 9000)
        assert len(registry.port_pool) == 0

    def test_admission_racing_shutdown_does_not_leak_port(self, events):
        registry = None

        def racing_factory(*args, **kwargs):
            relay = FakeRelay(*args, **kwargs)
            # Shutdown lands while the relay is being set up
            registry.shutdown()
            return relay

        registry = Registry(port_pool=PortPool(), events=events, relay_factory=racing_factory)

        with pytest.raises(RegistryClosedError):
            registry.admit(("1.2.3.4", 9000), GAME_A, 9000)

        assert len(registry.port_pool) == 0
        assert len(registry) == 0


class TestCleanPlayerName:

    def test_placeholder_stripped(self):
        assert clean_player_name("PLAYER1@Unknown Machine Name") == "PLAYER1"

    def test_real_host_kept(self):
        assert clean_player_name("PLAYER1@desktop") == "PLAYER1@desktop"

    def test_multiple_separators(self):
        assert clean_player_name("a@b@Unknown Machine Name") == "ab"

    def test_placeholder_without_separator(self):
        assert clean_player_name("Unknown Machine Name") == "Unknown Machine Name"


class TestReadWriteLock:

    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader():
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(3)
        assert not inside.broken

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order = []
        writer_in = threading.Event()

        def writer():
            with lock.write():
                writer_in.set()
                time.sleep(0.1)
                order.append("writer")

        def reader():
            writer_in.wait(2)
            with lock.read():
                order.append("reader")

        w = threading.Thread(target=writer)
        r = threading.Thread(target=reader)
        w.start()
        r.start()
        w.join(3)
        r.join(3)

        assert order == ["writer", "reader"]
