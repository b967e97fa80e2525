"""
Storage Test Suite

Tests JsonSantaStore against a temporary directory:
- Persistence across restarts
- Backup fallback for a corrupt main file
- Invite codes, status ordering, participants, settings

Run: python -m pytest tests/test_secret_santa_storage.py -v
"""

import datetime as dt
import json
import re
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.secret_santa_models import (
    AwaitingLanguage, AwaitingWishlist, GameNotFound, GameStatus, JoinGame, Language, Player,
)
from cogs.secret_santa_storage import (
    STATE_FILENAME, JsonSantaStore, read_json, save_json, validate_state_structure,
)


class TestFileHelpers:
    """read_json / save_json / validate_state_structure"""

    def test_save_and_read(self, tmp_path):
        path = tmp_path / "doc.json"
        save_json(path, {"name": "Ёлка 🎄"})
        assert read_json(path) == {"name": "Ёлка 🎄"}
        assert not path.with_suffix(".tmp").exists()

    def test_empty_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text("   ", encoding="utf-8")
        assert read_json(path) == {}

    def test_malformed_file_raises(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            read_json(path)

    def test_structure_repair(self):
        repaired = validate_state_structure({"players": [], "game_participants": {"ghost": {}}})
        assert repaired["players"] == {}
        assert repaired["games"] == {}
        assert repaired["game_participants"] == {}
        assert validate_state_structure("nonsense")["settings"] == {}


class TestPlayers:
    """register_player / get_player / set_player_language"""

    def test_register_new(self, store):
        player, is_new = store.register_player(1, "Alice", "alice", "ru")
        assert is_new
        assert player.language == Language.RU
        assert store.get_player(1) == Player(1, "Alice", "alice", Language.RU)

    def test_register_existing_updates_name_only(self, store):
        store.register_player(1, "Alice", "alice", "ru")
        player, is_new = store.register_player(1, "Alicia", "other", "en")
        assert not is_new
        assert player.name == "Alicia"
        assert player.handle == "alice"
        assert player.language == Language.RU

    def test_default_language(self, store):
        player, _ = store.register_player(2, "Bob", default_language=Language.UK)
        assert player.language == Language.UK

    def test_set_language(self, store):
        store.register_player(1, "Alice")
        store.set_player_language(1, Language.KK)
        assert store.get_player(1).language == Language.KK
        store.set_player_language(404, Language.KK)
        assert store.get_player(404) is None


class TestGames:
    """Game rows, participants and pairings"""

    def test_create_game(self, store):
        game = store.create_game(1, "Party")
        loaded = store.find_game(game.game_id)
        assert loaded.name == "Party"
        assert loaded.status == GameStatus.CREATING
        assert loaded.invite_code is None
        assert loaded.participants == {}

    def test_invite_code(self, store):
        game = store.create_game(1, "Party")
        code = store.issue_invite_code(game.game_id)
        assert re.fullmatch(r"[A-Z0-9]{6}", code)
        assert store.find_game(game.game_id).status == GameStatus.RECRUITING
        assert store.find_game_by_invite_code(code).game_id == game.game_id
        assert store.find_game_by_invite_code("ZZZZZZZ") is None

    def test_invite_codes_are_unique(self, store):
        codes = {store.issue_invite_code(store.create_game(1, f"G{i}").game_id) for i in range(50)}
        assert len(codes) == 50

    def test_participants_and_wishlists(self, store):
        game = store.create_game(1, "Party")
        for user_id in (1, 2):
            player, _ = store.register_player(user_id, f"P{user_id}")
            store.add_participant(game.game_id, player)
        store.add_participant(game.game_id, store.get_player(2))
        store.update_wishlist(game.game_id, 2, "Socks")

        loaded = store.find_game(game.game_id)
        assert sorted(loaded.participants) == [1, 2]
        assert loaded.wishlists == {2: "Socks"}
        assert [g.game_id for g in store.find_games_for_player(2)] == [game.game_id]

        store.remove_participant(game.game_id, 2)
        loaded = store.find_game(game.game_id)
        assert sorted(loaded.participants) == [1]
        assert loaded.wishlists == {}
        assert store.find_games_for_player(2) == []

    def test_add_participant_to_missing_game(self, store):
        with pytest.raises(GameNotFound):
            store.add_participant("nope", Player(1, "Alice"))

    def test_dates(self, store):
        game = store.create_game(1, "Party")
        store.update_game_dates(game.game_id, dt.date(2026, 12, 2), None)
        store.update_game_dates(game.game_id, dt.date(2026, 12, 2), dt.date(2026, 12, 24))
        loaded = store.find_game(game.game_id)
        assert loaded.start_date == dt.date(2026, 12, 2)
        assert loaded.end_date == dt.date(2026, 12, 24)

    def test_status_cannot_move_backwards(self, store):
        game = store.create_game(1, "Party")
        store.update_game_status(game.game_id, GameStatus.IN_PROGRESS)
        store.update_game_status(game.game_id, GameStatus.IN_PROGRESS)
        with pytest.raises(ValueError):
            store.update_game_status(game.game_id, GameStatus.RECRUITING)
        store.update_game_status(game.game_id, GameStatus.FINISHED)
        assert store.find_game(game.game_id).status == GameStatus.FINISHED

    def test_pairings(self, store):
        game = store.create_game(1, "Party")
        for user_id in (1, 2, 3):
            player, _ = store.register_player(user_id, f"P{user_id}")
            store.add_participant(game.game_id, player)
        store.save_pairings(game.game_id, {1: 2, 2: 3, 3: 1})
        assert store.find_game(game.game_id).pairings == {1: 2, 2: 3, 3: 1}

    def test_delete_game_removes_participants(self, store):
        game = store.create_game(1, "Party")
        player, _ = store.register_player(1, "Alice")
        store.add_participant(game.game_id, player)
        store.delete_game(game.game_id)

        assert store.find_game(game.game_id) is None
        assert game.game_id not in store.state["game_participants"]
        assert store.find_games_for_player(1) == []
        store.delete_game(game.game_id)


class TestStatesAndSettings:
    """Conversation states, settings, stats"""

    def test_user_states(self, store):
        store.set_user_state(1, AwaitingWishlist("g-1", is_creator=True))
        store.set_user_state(2, AwaitingLanguage(JoinGame("g-2")))
        store.set_user_state(3, AwaitingWishlist("g-3"))
        store.set_user_state(3, None)

        assert store.load_user_states() == {
            1: AwaitingWishlist("g-1", is_creator=True),
            2: AwaitingLanguage(JoinGame("g-2")),
        }

    def test_unreadable_state_skipped(self, store):
        store.state["user_states"]["7"] = {"state_type": "Bogus", "state_data": "x"}
        assert 7 not in store.load_user_states()

    def test_settings(self, store):
        assert store.get_setting("bot_username") is None
        store.set_setting("bot_username", "SantaBot")
        assert store.get_setting("bot_username") == "SantaBot"
        store.set_setting("bot_username", None)
        assert store.get_setting("bot_username") is None

    def test_stats(self, store):
        store.register_player(1, "Alice")
        store.register_player(2, "Bob")
        store.create_game(1, "Draft")
        recruiting = store.create_game(1, "Open")
        store.issue_invite_code(recruiting.game_id)
        running = store.create_game(2, "Running")
        store.update_game_status(running.game_id, GameStatus.IN_PROGRESS)

        stats = store.stats()
        assert stats.player_count == 2
        assert stats.recruiting_games == 1
        assert stats.active_games == 1
        assert stats.finished_games == 0


class TestPersistence:
    """Reopening the store from disk"""

    def test_reopen(self, tmp_path):
        data_dir = tmp_path / "data"
        store = JsonSantaStore(data_dir)
        player, _ = store.register_player(1, "Alice", locale="cs")
        game = store.create_game(1, "Party")
        store.add_participant(game.game_id, player)
        store.update_wishlist(game.game_id, 1, "Book")
        code = store.issue_invite_code(game.game_id)
        store.set_user_state(1, AwaitingWishlist(game.game_id))

        reopened = JsonSantaStore(data_dir)
        loaded = reopened.find_game_by_invite_code(code)
        assert loaded.name == "Party"
        assert loaded.wishlists == {1: "Book"}
        assert reopened.get_player(1).language == Language.CS
        assert reopened.load_user_states() == {1: AwaitingWishlist(game.game_id)}

    def test_corrupt_main_uses_backup(self, tmp_path):
        data_dir = tmp_path / "data"
        store = JsonSantaStore(data_dir)
        store.register_player(1, "Alice")
        state_file = data_dir / STATE_FILENAME

        backup = state_file.with_suffix(".backup")
        backup.write_text(state_file.read_text(encoding="utf-8"), encoding="utf-8")
        state_file.write_text("{broken", encoding="utf-8")

        reopened = JsonSantaStore(data_dir)
        assert reopened.get_player(1).name == "Alice"

    def test_corrupt_everything_uses_defaults(self, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / STATE_FILENAME).write_text("[[[", encoding="utf-8")
        store = JsonSantaStore(data_dir)
        assert store.all_games() == []
        assert store.stats().player_count == 0
