"""
Lifecycle Scheduler Test Suite

Tests scheduled starts and finishes against a frozen clock.

Run: python -m pytest tests/test_secret_santa_scheduler.py -v
"""

import asyncio
import datetime as dt
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import TODAY, make_recruiting_game

from cogs.secret_santa_i18n import StringKey, localize
from cogs.secret_santa_models import AwaitingWishlist, GameStatus, Language
from cogs.secret_santa_scheduler import LifecycleScheduler


class TestSweep:
    """One scheduler pass"""

    def test_starts_game_due_today(self, flow, store, messenger):
        game = make_recruiting_game(store, 1, [2, 3], start=TODAY, end=TODAY + dt.timedelta(days=10))
        scheduler = LifecycleScheduler(flow)

        started, finished = asyncio.run(scheduler.sweep())

        assert started == [game.game_id]
        assert finished == []
        loaded = store.find_game(game.game_id)
        assert loaded.status == GameStatus.IN_PROGRESS
        assert len(loaded.pairings) == 3
        for user_id in (1, 2, 3):
            last = messenger.last_for(user_id)
            assert "has started!" in last.text
            assert last.keyboard.rows[0][0].data == f"anon_message_{game.game_id}"

    def test_too_few_players_deletes_game(self, flow, store, context, messenger):
        game = make_recruiting_game(store, 1, [2], start=TODAY)
        context.set_state(2, AwaitingWishlist(game.game_id))
        scheduler = LifecycleScheduler(flow)

        asyncio.run(scheduler.sweep())

        assert store.find_game(game.game_id) is None
        assert context.get_state(2) is None
        expected = localize(StringKey.GAME_FAILED_NOT_ENOUGH_PLAYERS, Language.EN).format(game="Office Party")
        for user_id in (1, 2):
            assert messenger.texts_for(user_id) == [expected]

    def test_finishes_game_ending_today(self, flow, store, messenger):
        game = make_recruiting_game(store, 1, [2, 3], start=TODAY - dt.timedelta(days=5), end=TODAY)
        asyncio.run(flow.start_game(game.game_id))
        messenger.clear()

        started, finished = asyncio.run(LifecycleScheduler(flow).sweep())

        assert started == []
        assert finished == [game.game_id]
        assert store.find_game(game.game_id).status == GameStatus.FINISHED
        for user_id in (1, 2, 3):
            last = messenger.last_for(user_id)
            assert last.silent
            assert "is over" in last.text

    def test_games_not_due_untouched(self, flow, store, messenger):
        later = make_recruiting_game(store, 1, [2, 3], start=TODAY + dt.timedelta(days=2))
        missed = make_recruiting_game(store, 4, [5, 6], start=TODAY - dt.timedelta(days=1))
        running = make_recruiting_game(store, 7, [8, 9], end=TODAY + dt.timedelta(days=3))
        asyncio.run(flow.start_game(running.game_id))
        messenger.clear()

        started, finished = asyncio.run(LifecycleScheduler(flow).sweep())

        assert (started, finished) == ([], [])
        assert store.find_game(later.game_id).status == GameStatus.RECRUITING
        assert store.find_game(missed.game_id).status == GameStatus.RECRUITING
        assert store.find_game(running.game_id).status == GameStatus.IN_PROGRESS
        assert messenger.sent == []

    def test_second_sweep_is_noop(self, flow, store, messenger):
        make_recruiting_game(store, 1, [2, 3], start=TODAY)
        scheduler = LifecycleScheduler(flow)

        async def run():
            await scheduler.sweep()
            messenger.clear()
            return await scheduler.sweep()

        assert asyncio.run(run()) == ([], [])
        assert messenger.sent == []


class TestLoop:
    """Background task start/stop"""

    def test_loop_runs_and_stops(self, flow, store):
        game = make_recruiting_game(store, 1, [2, 3], start=TODAY)
        scheduler = LifecycleScheduler(flow, interval=0.01)

        async def run():
            scheduler.start()
            assert scheduler.running
            await asyncio.sleep(0.1)
            await scheduler.stop()

        asyncio.run(run())
        assert not scheduler.running
        assert store.find_game(game.game_id).status == GameStatus.IN_PROGRESS

    def test_loop_survives_errors(self, flow, store):
        scheduler = LifecycleScheduler(flow, interval=0.01)
        calls = []

        async def broken_sweep():
            calls.append(1)
            raise RuntimeError("disk on fire")

        scheduler.sweep = broken_sweep

        async def run():
            scheduler.start()
            await asyncio.sleep(0.1)
            assert scheduler.running
            await scheduler.stop()

        asyncio.run(run())
        print(f"Sweeps attempted: {len(calls)}")
        assert len(calls) > 1
