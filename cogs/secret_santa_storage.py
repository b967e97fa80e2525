"""
Secret Santa Storage Module - Persistence for Players, Games and States

RESPONSIBILITIES:
- JSON file operations (load/save with atomic writes)
- Store interface used by the flow controller
- JSON-backed store with backup fallback
- Invite code generation

ISOLATION:
- No Discord dependencies
- Pure file/state operations
- Can be tested independently (point it at a temp directory)

DOCUMENT LAYOUT (santa_state.json):
{
    "players": {"<user_id>": {"name", "handle", "language"}},
    "games": {"<game_id>": {"name", "invite_code", "creator_id", "status", "start_date", "end_date"}},
    "game_participants": {"<game_id>": {"<user_id>": {"wishlist", "giftee_id"}}},
    "user_states": {"<user_id>": {"state_type", "state_data"}},
    "settings": {"<key>": "<value>"}
}
"""

import datetime as dt
import json
import logging
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .secret_santa_models import (
    GameInstance, GameNotFound, GameStatus, Language, Player, UserState,
    deserialize_state, serialize_state,
)

STATE_FILENAME = "santa_state.json"
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6


def read_json(path: Path) -> Any:
    """
    Read a JSON document (cross-platform compatible).
    An empty file reads as an empty dict; unreadable or malformed files raise.
    """
    text = path.read_text(encoding="utf-8").strip()
    return json.loads(text) if text else {}


def save_json(path: Path, data: Any):
    """Save JSON atomically (temp file + rename)"""
    temp = path.with_suffix('.tmp')
    try:
        temp.write_text(
            json.dumps(data, indent=2, ensure_ascii=False),
            encoding='utf-8'
        )
        temp.replace(path)
    except Exception:
        if temp.exists():
            try:
                temp.unlink()
            except OSError:
                pass
        raise


def get_default_state() -> dict:
    return {
        "players": {},
        "games": {},
        "game_participants": {},
        "user_states": {},
        "settings": {},
    }


def validate_state_structure(state: Any, logger: Optional[logging.Logger] = None) -> dict:
    """Validate and repair the document structure"""
    if not isinstance(state, dict):
        if logger:
            logger.error("State is not a dict, using defaults")
        return get_default_state()

    for key, default in get_default_state().items():
        if not isinstance(state.get(key), dict):
            if key in state and logger:
                logger.error(f"Invalid state section '{key}', resetting")
            state[key] = default

    # Drop participant rows of games that no longer exist
    orphaned = [gid for gid in state["game_participants"] if gid not in state["games"]]
    for gid in orphaned:
        if logger:
            logger.warning(f"Dropping participants of missing game {gid}")
        del state["game_participants"][gid]

    return state


@dataclass
class StoreStats:
    player_count: int
    recruiting_games: int
    active_games: int
    finished_games: int


class SantaStore(ABC):
    """Operations the flow controller needs from persistent storage"""

    # Players
    @abstractmethod
    def register_player(self, user_id: int, name: str, handle: Optional[str] = None,
                        locale: Optional[str] = None, default_language: Language = Language.EN) -> Tuple[Player, bool]:
        """Create or rename a player. Returns (player, is_new)."""

    @abstractmethod
    def get_player(self, user_id: int) -> Optional[Player]: ...

    @abstractmethod
    def set_player_language(self, user_id: int, language: Language): ...

    # Games
    @abstractmethod
    def create_game(self, creator_id: int, name: str) -> GameInstance: ...

    @abstractmethod
    def find_game(self, game_id: str) -> Optional[GameInstance]: ...

    @abstractmethod
    def find_game_by_invite_code(self, invite_code: str) -> Optional[GameInstance]: ...

    @abstractmethod
    def find_games_for_player(self, user_id: int) -> List[GameInstance]: ...

    @abstractmethod
    def all_games(self) -> List[GameInstance]: ...

    @abstractmethod
    def issue_invite_code(self, game_id: str) -> str:
        """Generate a unique invite code and move the game to RECRUITING"""

    @abstractmethod
    def delete_game(self, game_id: str): ...

    @abstractmethod
    def add_participant(self, game_id: str, player: Player): ...

    @abstractmethod
    def remove_participant(self, game_id: str, user_id: int): ...

    @abstractmethod
    def update_wishlist(self, game_id: str, user_id: int, wishlist: Optional[str]): ...

    @abstractmethod
    def update_game_dates(self, game_id: str, start_date: Optional[dt.date], end_date: Optional[dt.date]): ...

    @abstractmethod
    def update_game_status(self, game_id: str, status: GameStatus): ...

    @abstractmethod
    def save_pairings(self, game_id: str, pairings: Dict[int, int]): ...

    # Conversation states
    @abstractmethod
    def load_user_states(self) -> Dict[int, UserState]: ...

    @abstractmethod
    def set_user_state(self, user_id: int, state: Optional[UserState]): ...

    # Settings
    @abstractmethod
    def get_setting(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set_setting(self, key: str, value: Optional[str]): ...

    @abstractmethod
    def stats(self) -> StoreStats: ...


class JsonSantaStore(SantaStore):
    """
    Store backed by a single JSON document.

    Every mutation is written through immediately (atomic temp-file write).
    Reads build fresh entity objects, so callers always get snapshots they
    can mutate freely.
    """

    def __init__(self, data_dir: Path, logger: Optional[logging.Logger] = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.state_file = self.data_dir / STATE_FILENAME
        self.backup_file = self.state_file.with_suffix('.backup')
        self.logger = logger or logging.getLogger("bot.santa.store")
        self.state = self._load_state_with_fallback()

    # ---------- file handling ----------

    def _load_state_with_fallback(self) -> dict:
        """
        Fallback chain:
        1. Main state file
        2. Backup file
        3. Clean defaults
        """
        for path in (self.state_file, self.backup_file):
            if not path.exists():
                continue
            try:
                state = validate_state_structure(read_json(path), self.logger)
                self.logger.info(
                    f"State loaded from {path.name}: {len(state['players'])} players, {len(state['games'])} games"
                )
                return state
            except Exception as e:
                self.logger.error(f"Failed to load {path.name}: {e}", exc_info=True)

        self.logger.info("Using clean default state")
        return get_default_state()

    def _save(self) -> bool:
        try:
            save_json(self.state_file, self.state)
            return True
        except Exception as e:
            self.logger.error(f"CRITICAL: Failed to save state: {e}", exc_info=True)
            try:
                save_json(self.backup_file, self.state)
                self.logger.warning(f"Saved to backup file: {self.backup_file}")
            except Exception as backup_error:
                self.logger.error(f"Backup save also failed: {backup_error}")
            return False

    # ---------- row mapping ----------

    def _row_to_player(self, user_id: int, row: dict) -> Player:
        return Player(
            user_id=int(user_id),
            name=row.get("name", ""),
            handle=row.get("handle"),
            language=Language.from_code(row.get("language")),
        )

    def _row_to_game(self, game_id: str, row: dict) -> GameInstance:
        participants: Dict[int, Player] = {}
        wishlists: Dict[int, str] = {}
        pairings: Dict[int, int] = {}

        for uid_str, p_row in self.state["game_participants"].get(game_id, {}).items():
            uid = int(uid_str)
            player_row = self.state["players"].get(uid_str)
            if player_row is None:
                continue
            participants[uid] = self._row_to_player(uid, player_row)
            if p_row.get("wishlist") is not None:
                wishlists[uid] = p_row["wishlist"]
            if p_row.get("giftee_id") is not None:
                pairings[uid] = int(p_row["giftee_id"])

        return GameInstance(
            name=row["name"],
            game_id=game_id,
            invite_code=row.get("invite_code"),
            creator_id=int(row["creator_id"]),
            status=GameStatus(row.get("status", GameStatus.CREATING.value)),
            participants=participants,
            wishlists=wishlists,
            pairings=pairings,
            start_date=_parse_date(row.get("start_date")),
            end_date=_parse_date(row.get("end_date")),
        )

    def _game_row(self, game_id: str) -> dict:
        row = self.state["games"].get(game_id)
        if row is None:
            raise GameNotFound(game_id)
        return row

    # ---------- players ----------

    def register_player(self, user_id: int, name: str, handle: Optional[str] = None,
                        locale: Optional[str] = None, default_language: Language = Language.EN) -> Tuple[Player, bool]:
        key = str(user_id)
        existing = self.state["players"].get(key)
        if existing is not None:
            existing["name"] = name
            self._save()
            return self._row_to_player(user_id, existing), False

        language = Language.from_code(locale, default=default_language)
        self.state["players"][key] = {"name": name, "handle": handle, "language": language.code}
        self._save()
        self.logger.info(f"Registered player {user_id} ({language.code})")
        return Player(user_id, name, handle, language), True

    def get_player(self, user_id: int) -> Optional[Player]:
        row = self.state["players"].get(str(user_id))
        return self._row_to_player(user_id, row) if row is not None else None

    def set_player_language(self, user_id: int, language: Language):
        row = self.state["players"].get(str(user_id))
        if row is None:
            return
        row["language"] = language.code
        self._save()

    # ---------- games ----------

    def create_game(self, creator_id: int, name: str) -> GameInstance:
        game = GameInstance(name=name, creator_id=creator_id)
        self.state["games"][game.game_id] = {
            "name": name,
            "invite_code": None,
            "creator_id": creator_id,
            "status": GameStatus.CREATING.value,
            "start_date": None,
            "end_date": None,
        }
        self.state["game_participants"][game.game_id] = {}
        self._save()
        self.logger.info(f"Game {game.game_id} created by {creator_id}")
        return game

    def find_game(self, game_id: str) -> Optional[GameInstance]:
        row = self.state["games"].get(game_id)
        return self._row_to_game(game_id, row) if row is not None else None

    def find_game_by_invite_code(self, invite_code: str) -> Optional[GameInstance]:
        for game_id, row in self.state["games"].items():
            if invite_code and row.get("invite_code") == invite_code:
                return self._row_to_game(game_id, row)
        return None

    def find_games_for_player(self, user_id: int) -> List[GameInstance]:
        key = str(user_id)
        return [
            self._row_to_game(game_id, row)
            for game_id, row in self.state["games"].items()
            if key in self.state["game_participants"].get(game_id, {})
        ]

    def all_games(self) -> List[GameInstance]:
        return [self._row_to_game(game_id, row) for game_id, row in self.state["games"].items()]

    def _generate_invite_code(self) -> str:
        taken = {row.get("invite_code") for row in self.state["games"].values()}
        while True:
            code = "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))
            if code not in taken:
                return code

    def issue_invite_code(self, game_id: str) -> str:
        row = self._game_row(game_id)
        code = self._generate_invite_code()
        row["invite_code"] = code
        row["status"] = GameStatus.RECRUITING.value
        self._save()
        self.logger.info(f"Game {game_id} is recruiting with code {code}")
        return code

    def delete_game(self, game_id: str):
        self.state["game_participants"].pop(game_id, None)
        if self.state["games"].pop(game_id, None) is not None:
            self._save()
            self.logger.info(f"Game {game_id} deleted")

    def add_participant(self, game_id: str, player: Player):
        self._game_row(game_id)
        rows = self.state["game_participants"].setdefault(game_id, {})
        rows.setdefault(str(player.user_id), {"wishlist": None, "giftee_id": None})
        self._save()

    def remove_participant(self, game_id: str, user_id: int):
        rows = self.state["game_participants"].get(game_id, {})
        if rows.pop(str(user_id), None) is not None:
            self._save()

    def update_wishlist(self, game_id: str, user_id: int, wishlist: Optional[str]):
        row = self.state["game_participants"].get(game_id, {}).get(str(user_id))
        if row is None:
            return
        row["wishlist"] = wishlist
        self._save()

    def update_game_dates(self, game_id: str, start_date: Optional[dt.date], end_date: Optional[dt.date]):
        row = self._game_row(game_id)
        if start_date is not None:
            row["start_date"] = start_date.isoformat()
        if end_date is not None:
            row["end_date"] = end_date.isoformat()
        self._save()

    def update_game_status(self, game_id: str, status: GameStatus):
        row = self._game_row(game_id)
        current = GameStatus(row["status"])
        if status.rank < current.rank:
            raise ValueError(f"Game {game_id} cannot move from {current.value} back to {status.value}")
        row["status"] = status.value
        self._save()

    def save_pairings(self, game_id: str, pairings: Dict[int, int]):
        rows = self.state["game_participants"].get(game_id, {})
        for giver_id, receiver_id in pairings.items():
            row = rows.get(str(giver_id))
            if row is not None:
                row["giftee_id"] = receiver_id
        self._save()

    # ---------- conversation states ----------

    def load_user_states(self) -> Dict[int, UserState]:
        states: Dict[int, UserState] = {}
        for uid_str, row in self.state["user_states"].items():
            state = deserialize_state(row.get("state_type", ""), row.get("state_data"))
            if state is None:
                self.logger.warning(f"Skipping unreadable state for user {uid_str}: {row}")
                continue
            states[int(uid_str)] = state
        return states

    def set_user_state(self, user_id: int, state: Optional[UserState]):
        key = str(user_id)
        if state is None:
            if self.state["user_states"].pop(key, None) is not None:
                self._save()
            return
        state_type, state_data = serialize_state(state)
        self.state["user_states"][key] = {"state_type": state_type, "state_data": state_data}
        self._save()

    # ---------- settings ----------

    def get_setting(self, key: str) -> Optional[str]:
        return self.state["settings"].get(key)

    def set_setting(self, key: str, value: Optional[str]):
        if value is None:
            self.state["settings"].pop(key, None)
        else:
            self.state["settings"][key] = value
        self._save()

    def stats(self) -> StoreStats:
        counts: Dict[str, int] = {}
        for row in self.state["games"].values():
            counts[row.get("status")] = counts.get(row.get("status"), 0) + 1
        return StoreStats(
            player_count=len(self.state["players"]),
            recruiting_games=counts.get(GameStatus.RECRUITING.value, 0),
            active_games=counts.get(GameStatus.IN_PROGRESS.value, 0),
            finished_games=counts.get(GameStatus.FINISHED.value, 0),
        )


def _parse_date(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        return None
