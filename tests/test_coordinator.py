"""Tests for the session coordinator."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from boardbank.ledger.analytics import balance_evolution
from boardbank.ledger.coordinator import SessionCoordinator, generate_join_code
from boardbank.ledger.errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    JoinCodeTaken,
    PlayerNotFound,
    SessionNotFound,
    ValidationError,
)


async def start_game(coordinator, *names, balance=1500):
    """Create a session hosted by the first name and join the others."""
    session, host = await coordinator.create_session(names[0], host_balance=balance)
    players = [host]
    for name in names[1:]:
        _, player = await coordinator.join_session(session.join_code, name, balance)
        players.append(player)
    return session, players


class TestJoinCodes:
    """Join code generation."""

    def test_code_shape(self):
        code = generate_join_code(6)
        assert len(code) == 6
        assert code == code.upper()
        assert code.isalnum()


class TestCreateSession:
    """Creating sessions."""

    @pytest.mark.asyncio
    async def test_create_session_defaults(self, coordinator):
        session, host = await coordinator.create_session("  Ana  ")

        assert host.name == "Ana"
        assert host.is_host is True
        assert host.balance == host.initial_balance == 15000
        assert session.host_player_id == host.id
        assert session.buttons == [100, 200, 500, 1000, 2000, 5000]
        assert len(session.join_code) == 6

    @pytest.mark.asyncio
    async def test_create_session_custom(self, coordinator):
        session, host = await coordinator.create_session("Ana", [50, 100], 2000)
        assert session.buttons == [50, 100]
        assert host.balance == 2000

    @pytest.mark.asyncio
    async def test_create_session_empty_name(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.create_session("   ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("buttons", [[], [1, 2, 3, 4, 5, 6, 7, 8, 9], [100, 0], [100, -5], [100, 2**31]])
    async def test_create_session_bad_buttons(self, coordinator, buttons):
        with pytest.raises(ValidationError):
            await coordinator.create_session("Ana", buttons)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("balance", [-1, 2**31, 2**40])
    async def test_create_session_balance_out_of_range(self, coordinator, balance):
        with pytest.raises(ValidationError):
            await coordinator.create_session("Ana", host_balance=balance)

    @pytest.mark.asyncio
    async def test_join_code_collision_regenerates(self, coordinator, store):
        """A taken code is replaced by a fresh one."""
        with patch(
            "boardbank.ledger.coordinator.generate_join_code",
            side_effect=["TAKEN1", "FRESH2"],
        ):
            store.taken_codes.add("TAKEN1")
            session, _ = await coordinator.create_session("Ana")

        assert session.join_code == "FRESH2"
        assert store.created_codes == ["TAKEN1", "FRESH2"]

    @pytest.mark.asyncio
    async def test_join_code_collisions_exhausted(self, coordinator, store):
        with patch("boardbank.ledger.coordinator.generate_join_code", return_value="TAKEN1"):
            store.taken_codes.add("TAKEN1")
            with pytest.raises(JoinCodeTaken):
                await coordinator.create_session("Ana")

        assert len(store.created_codes) == 3


class TestJoinSession:
    """Joining by code."""

    @pytest.mark.asyncio
    async def test_join_is_case_insensitive(self, coordinator):
        session, _ = await coordinator.create_session("Ana")
        joined, player = await coordinator.join_session(f"  {session.join_code.lower()} ", "Beto")

        assert joined.id == session.id
        assert player.is_host is False
        assert player.balance == 15000

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, coordinator):
        with pytest.raises(SessionNotFound):
            await coordinator.join_session("NOPE00", "Beto")

    @pytest.mark.asyncio
    async def test_join_blank_code(self, coordinator):
        with pytest.raises(SessionNotFound):
            await coordinator.join_session("   ", "Beto")

    @pytest.mark.asyncio
    async def test_join_empty_name(self, coordinator):
        session, _ = await coordinator.create_session("Ana")
        with pytest.raises(ValidationError):
            await coordinator.join_session(session.join_code, "")

    @pytest.mark.asyncio
    async def test_players_listed_in_join_order(self, coordinator):
        session, players = await start_game(coordinator, "Ana", "Beto", "Caio")
        listed = await coordinator.list_players(session.id)
        assert [p.name for p in listed] == ["Ana", "Beto", "Caio"]


class TestHostActions:
    """Host-only operations."""

    @pytest.mark.asyncio
    async def test_configure_buttons(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.configure_buttons(session.id, host.id, [10, 20, 30])

        assert (await coordinator.get_session_config(session.id)) == {"buttons": [10, 20, 30]}

    @pytest.mark.asyncio
    async def test_configure_buttons_not_host(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        with pytest.raises(Forbidden):
            await coordinator.configure_buttons(session.id, beto.id, [10])

    @pytest.mark.asyncio
    async def test_host_of_other_session_is_forbidden(self, coordinator):
        session, _ = await start_game(coordinator, "Ana")
        _, (other_host,) = await start_game(coordinator, "Zeca")
        with pytest.raises(Forbidden):
            await coordinator.configure_buttons(session.id, other_host.id, [10])

    @pytest.mark.asyncio
    async def test_remove_player_keeps_history(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, beto.id, 200)
        await coordinator.remove_player(session.id, host.id, beto.id)

        players = await coordinator.list_players(session.id)
        history = await coordinator.list_transactions(session.id)
        assert [p.name for p in players] == ["Ana"]
        assert len(history) == 1
        assert history[0].to_player_name is None
        assert history[0].to_label == "Removed player"

    @pytest.mark.asyncio
    async def test_cannot_remove_host(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        with pytest.raises(Forbidden):
            await coordinator.remove_player(session.id, host.id, host.id)

    @pytest.mark.asyncio
    async def test_non_host_cannot_remove(self, coordinator):
        session, (host, beto, caio) = await start_game(coordinator, "Ana", "Beto", "Caio")
        with pytest.raises(Forbidden):
            await coordinator.remove_player(session.id, beto.id, caio.id)

    @pytest.mark.asyncio
    async def test_remove_unknown_player(self, coordinator):
        session, (host,) = await start_game(coordinator, "Ana")
        with pytest.raises(PlayerNotFound):
            await coordinator.remove_player(session.id, host.id, "missing")

    @pytest.mark.asyncio
    async def test_add_player(self, coordinator):
        session, (host,) = await start_game(coordinator, "Ana")
        player = await coordinator.add_player(session.id, host.id, "Dora", 800)

        assert player.balance == 800
        assert player.is_host is False

    @pytest.mark.asyncio
    async def test_end_session_cascades(self, coordinator, store):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, beto.id, 100)
        await coordinator.end_session(session.id, host.id)

        assert store.sessions == {}
        assert store.players == {}
        assert store.transactions == []
        with pytest.raises(SessionNotFound):
            await coordinator.join_session(session.join_code, "Caio")

    @pytest.mark.asyncio
    async def test_end_session_not_host(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        with pytest.raises(Forbidden):
            await coordinator.end_session(session.id, beto.id)

    @pytest.mark.asyncio
    async def test_reset_balances(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, host.id, 700)
        await coordinator.quick_pay(session.id, beto.id, 400)

        once = await coordinator.reset_balances(session.id, host.id)
        twice = await coordinator.reset_balances(session.id, host.id)

        assert [p.balance for p in once] == [1500, 1500]
        assert [p.balance for p in twice] == [1500, 1500]
        # resets leave no trace in the history
        assert len(await coordinator.list_transactions(session.id)) == 2

    @pytest.mark.asyncio
    async def test_reset_uses_conditional_writes(self, coordinator, store):
        """A balance moving under the reset is retried from a fresh read."""
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, beto.id, 300)
        store.conflicts_to_raise = 1

        players = await coordinator.reset_balances(session.id, host.id)

        assert [p.balance for p in players] == [1500, 1500]
        assert store.conflicts_to_raise == 0

    @pytest.mark.asyncio
    async def test_reset_not_host(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        with pytest.raises(Forbidden):
            await coordinator.reset_balances(session.id, beto.id)


class TestMoneyMovements:
    """Credits, payments, edits and transfers through the store."""

    @pytest.mark.asyncio
    async def test_bank_credit(self, coordinator, store):
        session, (host,) = await start_game(coordinator, "Ana")
        result = await coordinator.bank_credit(session.id, host.id, 500)

        assert result.players[0].balance == 2000
        assert store.players[host.id].balance == 2000
        txn = result.transactions[0]
        assert txn.source.is_bank
        assert txn.destination.player_id == host.id
        assert txn.amount == 500
        assert txn.to_player_name == "Ana"

    @pytest.mark.asyncio
    async def test_quick_pay_insufficient_leaves_balance(self, coordinator, store):
        session, (host,) = await start_game(coordinator, "Ana", balance=100)
        with pytest.raises(InsufficientFunds):
            await coordinator.quick_pay(session.id, host.id, 150)

        assert store.players[host.id].balance == 100
        assert store.transactions == []

    @pytest.mark.asyncio
    async def test_credit_past_storage_range_writes_nothing(self, coordinator, store):
        session, (host,) = await start_game(coordinator, "Ana")
        with pytest.raises(ValidationError):
            await coordinator.bank_credit(session.id, host.id, 2**40)

        assert store.players[host.id].balance == 1500
        assert store.transactions == []

    @pytest.mark.asyncio
    async def test_set_balance_negative(self, coordinator):
        session, (host,) = await start_game(coordinator, "Ana")
        result = await coordinator.set_balance(session.id, host.id, -200)

        assert result.players[0].balance == -200
        assert result.transactions[0].amount == -1700

    @pytest.mark.asyncio
    async def test_transfer_bank_to_player(self, coordinator):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        result = await coordinator.transfer(session.id, "bank", beto.id, 500)

        assert [p.balance for p in result.players] == [2000]
        assert len(result.transactions) == 1
        assert result.transactions[0].amount == 500

    @pytest.mark.asyncio
    async def test_transfer_player_to_bank(self, coordinator):
        session, (host,) = await start_game(coordinator, "Ana", balance=1000)
        result = await coordinator.transfer(session.id, host.id, "bank", 300)

        assert result.players[0].balance == 700
        assert len(result.transactions) == 1
        debit = result.transactions[0]
        assert debit.source.player_id == host.id
        assert debit.destination.is_bank
        assert debit.amount == -300
        assert debit.from_label == "Ana"
        assert debit.to_label == "Bank"

    @pytest.mark.asyncio
    async def test_transfer_between_players(self, coordinator, store):
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        result = await coordinator.transfer(session.id, host.id, beto.id, 600, "Rent")

        assert store.players[host.id].balance == 900
        assert store.players[beto.id].balance == 2100
        assert [t.amount for t in result.transactions] == [600, -600]
        assert all(t.description == "Rent" for t in result.transactions)

    @pytest.mark.asyncio
    async def test_transfer_bank_to_bank(self, coordinator):
        session, _ = await start_game(coordinator, "Ana")
        with pytest.raises(ValidationError):
            await coordinator.transfer(session.id, "bank", "BANK", 100)

    @pytest.mark.asyncio
    async def test_transfer_player_from_other_session(self, coordinator):
        session, (host,) = await start_game(coordinator, "Ana")
        _, (stranger,) = await start_game(coordinator, "Zeca")
        with pytest.raises(PlayerNotFound):
            await coordinator.transfer(session.id, stranger.id, host.id, 100)

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back_everything(self, coordinator, store):
        """A failure after the first balance write leaves no partial transfer."""
        session, (host, beto) = await start_game(coordinator, "Ana", "Beto")
        store.record_transaction = AsyncMock(side_effect=RuntimeError("disk full"))

        with pytest.raises(RuntimeError):
            await coordinator.transfer(session.id, host.id, beto.id, 600)

        assert store.players[host.id].balance == 1500
        assert store.players[beto.id].balance == 1500

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, coordinator, store):
        session, (host,) = await start_game(coordinator, "Ana")
        store.conflicts_to_raise = 2

        result = await coordinator.bank_credit(session.id, host.id, 100)

        assert result.players[0].balance == 1600
        assert len(store.transactions) == 1

    @pytest.mark.asyncio
    async def test_conflict_surfaces_when_retries_exhausted(self, coordinator, store):
        session, (host,) = await start_game(coordinator, "Ana")
        store.conflicts_to_raise = 3

        with pytest.raises(Conflict):
            await coordinator.bank_credit(session.id, host.id, 100)

        assert store.players[host.id].balance == 1500
        assert store.transactions == []

    @pytest.mark.asyncio
    async def test_opposing_transfers_write_in_same_order(self, coordinator, store):
        """Both directions update balance rows in the same player order."""
        session, (ana, beto) = await start_game(coordinator, "Ana", "Beto")
        written = []
        update = store.update_player_balance

        async def record_order(player_id, new_balance, expected_balance=None):
            written.append(player_id)
            return await update(player_id, new_balance, expected_balance)

        store.update_player_balance = record_order
        await coordinator.transfer(session.id, ana.id, beto.id, 100)
        forward = list(written)
        written.clear()
        await coordinator.transfer(session.id, beto.id, ana.id, 100)

        assert forward == written == sorted([ana.id, beto.id])

    @pytest.mark.asyncio
    async def test_unknown_session(self, coordinator):
        with pytest.raises(SessionNotFound):
            await coordinator.bank_credit("missing", "player", 100)


class TestHistoryRoundTrip:
    """History listing and replay."""

    @pytest.mark.asyncio
    async def test_history_newest_first_and_replayable(self, coordinator):
        session, (ana, beto, caio) = await start_game(coordinator, "Ana", "Beto", "Caio")
        await coordinator.bank_credit(session.id, ana.id, 500)
        await coordinator.quick_pay(session.id, beto.id, 200)
        await coordinator.transfer(session.id, caio.id, ana.id, 300)
        await coordinator.transfer(session.id, beto.id, "bank", 100)
        await coordinator.set_balance(session.id, caio.id, 1000)

        history = await coordinator.list_transactions(session.id)
        players = await coordinator.list_players(session.id)

        # transfer between players records two entries
        assert len(history) == 6
        stamps = [t.created_at for t in history]
        assert stamps == sorted(stamps, reverse=True)

        series = balance_evolution(players, history)
        assert series[-1].balances == {p.id: p.balance for p in players}

    @pytest.mark.asyncio
    async def test_history_limit(self, coordinator):
        session, (ana,) = await start_game(coordinator, "Ana")
        for _ in range(5):
            await coordinator.bank_credit(session.id, ana.id, 10)

        assert len(await coordinator.list_transactions(session.id, limit=3)) == 3


class TestDashboard:
    """Dashboard with and without a cache."""

    @pytest.mark.asyncio
    async def test_dashboard_computed(self, coordinator):
        session, (ana, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, beto.id, 100)

        dashboard = await coordinator.dashboard(session.id)
        assert dashboard["totals"]["total"] == 3100
        assert dashboard["ranking"][0]["name"] == "Beto"
        assert len(dashboard["series"]) == 2

    @pytest.mark.asyncio
    async def test_dashboard_cache_hit_and_invalidation(self, store, settings):
        cache = MagicMock()
        cache.get_dashboard = AsyncMock(return_value=None)
        cache.generation = AsyncMock(return_value=4)
        cache.set_dashboard = AsyncMock()
        cache.invalidate = AsyncMock()
        coordinator = SessionCoordinator(store, cache, settings)

        session, (ana,) = await start_game(coordinator, "Ana")
        dashboard = await coordinator.dashboard(session.id)
        cache.set_dashboard.assert_awaited_once_with(session.id, dashboard, 4)

        cache.get_dashboard.return_value = {"cached": True}
        assert await coordinator.dashboard(session.id) == {"cached": True}

        await coordinator.bank_credit(session.id, ana.id, 10)
        cache.invalidate.assert_awaited_with(session.id)

    @pytest.mark.asyncio
    async def test_dashboard_stored_under_generation_read_before_compute(self, store, settings):
        """A write landing while the dashboard is computed makes the result stale, not served."""
        cache = MagicMock()
        cache.get_dashboard = AsyncMock(return_value=None)
        cache.generation = AsyncMock(return_value=7)
        cache.set_dashboard = AsyncMock()
        cache.invalidate = AsyncMock()
        coordinator = SessionCoordinator(store, cache, settings)
        session, _ = await start_game(coordinator, "Ana")

        list_transactions = store.list_transactions

        async def write_meanwhile(session_id, limit=None):
            cache.generation.return_value = 8
            return await list_transactions(session_id, limit)

        store.list_transactions = write_meanwhile
        await coordinator.dashboard(session.id)

        assert cache.set_dashboard.await_args.args[2] == 7

    @pytest.mark.asyncio
    async def test_dashboard_not_cached_when_redis_down(self, store, settings):
        cache = MagicMock()
        cache.get_dashboard = AsyncMock(return_value=None)
        cache.generation = AsyncMock(return_value=None)
        cache.set_dashboard = AsyncMock()
        coordinator = SessionCoordinator(store, cache, settings)
        session, _ = await start_game(coordinator, "Ana")

        dashboard = await coordinator.dashboard(session.id)

        assert dashboard["totals"]["player_count"] == 1
        cache.set_dashboard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_snapshot(self, coordinator):
        session, (ana, beto) = await start_game(coordinator, "Ana", "Beto")
        await coordinator.bank_credit(session.id, ana.id, 10)

        snapshot = await coordinator.snapshot(session.id)
        assert snapshot.session.id == session.id
        assert snapshot.get_player(beto.id).name == "Beto"
        assert len(snapshot.transactions) == 1
