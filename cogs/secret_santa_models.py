"""
Secret Santa Models Module - Entities, Lifecycle and Conversation States

RESPONSIBILITIES:
- Player / GameInstance entities
- Game lifecycle (CREATING -> RECRUITING -> IN_PROGRESS -> FINISHED)
- Per-user conversation states (tagged variants) and their storage encoding
- Inbound event shapes handed over by the transport

ISOLATION:
- No Discord dependencies
- No I/O (persistence and notification belong to the flow controller)
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from .secret_santa_derangement import generate_derangement

MIN_PARTICIPANTS = 3
MAX_GAME_NAME_LENGTH = 100
MAX_PLAYER_NAME_LENGTH = 50
MAX_WISHLIST_LENGTH = 2000
MAX_ANONYMOUS_MESSAGE_LENGTH = 1000


class SantaError(Exception):
    """Base class for Secret Santa domain errors"""


class GameNotFound(SantaError):
    def __init__(self, game_id: str):
        super().__init__(f"Game {game_id} not found")
        self.game_id = game_id


class InvalidDate(SantaError):
    """Rejected date input. `reason` is one of the class constants below."""

    FORMAT = "format"
    PAST = "past"
    TOO_FAR = "too_far"
    NOT_AFTER_START = "not_after_start"
    END_TOO_FAR = "end_too_far"

    def __init__(self, reason: str):
        super().__init__(f"Invalid date: {reason}")
        self.reason = reason


class NotEnoughParticipants(SantaError):
    def __init__(self, count: int):
        super().__init__(f"Need at least {MIN_PARTICIPANTS} participants, got {count}")
        self.count = count


# ============ ENUMS ============

class GameStatus(str, Enum):
    CREATING = "CREATING"
    RECRUITING = "RECRUITING"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [GameStatus.CREATING, GameStatus.RECRUITING, GameStatus.IN_PROGRESS, GameStatus.FINISHED]


class Language(str, Enum):
    RU = "ru"
    EN = "en"
    CS = "cs"
    UK = "uk"
    UZ = "uz"
    KK = "kk"

    @property
    def code(self) -> str:
        return self.value

    @property
    def native_name(self) -> str:
        return _NATIVE_NAMES[self]

    @classmethod
    def from_code(cls, code: Optional[str], default: Optional["Language"] = None) -> "Language":
        """
        Resolve a language code or client locale ("en-US", "uk", "pt_BR").
        Unknown codes resolve to `default` (English when not given).
        """
        fallback = default or cls.EN
        if not code:
            return fallback
        prefix = str(code).replace("_", "-").split("-")[0].lower()
        for lang in cls:
            if lang.value == prefix:
                return lang
        return fallback


_NATIVE_NAMES = {
    Language.RU: "🇷🇺 Русский",
    Language.EN: "🇬🇧 English",
    Language.CS: "🇨🇿 Čeština",
    Language.UK: "🇺🇦 Українська",
    Language.UZ: "🇺🇿 O'zbekcha",
    Language.KK: "🇰🇿 Қазақша",
}


# ============ ENTITIES ============

@dataclass
class Player:
    user_id: int
    name: str
    handle: Optional[str] = None
    language: Language = Language.EN


@dataclass
class GameInstance:
    name: str
    creator_id: int
    game_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    invite_code: Optional[str] = None
    status: GameStatus = GameStatus.CREATING
    participants: Dict[int, Player] = field(default_factory=dict)
    wishlists: Dict[int, str] = field(default_factory=dict)
    pairings: Dict[int, int] = field(default_factory=dict)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    def add_participant(self, player: Player):
        """Insert or refresh a participant (idempotent by user id)"""
        self.participants[player.user_id] = player

    def remove_participant(self, user_id: int):
        self.participants.pop(user_id, None)
        self.wishlists.pop(user_id, None)

    def start(self):
        """
        Start the game in memory.

        With fewer than MIN_PARTICIPANTS players the game goes straight to
        FINISHED with no pairings; the caller must tear it down. Otherwise
        every participant gets a giftee via a derangement and the game moves
        to IN_PROGRESS.
        """
        if len(self.participants) < MIN_PARTICIPANTS:
            self.status = GameStatus.FINISHED
            self.pairings.clear()
            return

        ids = list(self.participants.keys())
        shuffled = generate_derangement(ids)
        self.pairings = dict(zip(ids, shuffled))
        self.status = GameStatus.IN_PROGRESS

    def ensure_startable(self):
        """Raise NotEnoughParticipants when a manual start must be refused"""
        if len(self.participants) < MIN_PARTICIPANTS:
            raise NotEnoughParticipants(len(self.participants))

    def finish(self):
        self.status = GameStatus.FINISHED


# ============ CONVERSATION STATES ============

@dataclass(frozen=True)
class ShowWelcome:
    pass


@dataclass(frozen=True)
class JoinGame:
    game_id: str


PostLanguageAction = Union[ShowWelcome, JoinGame]


@dataclass(frozen=True)
class AwaitingLanguage:
    next_action: PostLanguageAction = ShowWelcome()


@dataclass(frozen=True)
class AwaitingGameName:
    pass


@dataclass(frozen=True)
class AwaitingStartDate:
    game_id: str


@dataclass(frozen=True)
class AwaitingEndDate:
    game_id: str


@dataclass(frozen=True)
class AwaitingPlayerName:
    game_id: str
    is_creator: bool = False


@dataclass(frozen=True)
class AwaitingWishlist:
    game_id: str
    is_creator: bool = False


@dataclass(frozen=True)
class AwaitingAnonymousMessage:
    game_id: str


UserState = Union[
    AwaitingLanguage,
    AwaitingGameName,
    AwaitingStartDate,
    AwaitingEndDate,
    AwaitingPlayerName,
    AwaitingWishlist,
    AwaitingAnonymousMessage,
]


def serialize_state(state: UserState) -> Tuple[str, Optional[str]]:
    """Encode a conversation state as (tag, payload) for storage"""
    if isinstance(state, AwaitingLanguage):
        if isinstance(state.next_action, JoinGame):
            return "AwaitingLanguage", f"JoinGame:{state.next_action.game_id}"
        return "AwaitingLanguage", "ShowWelcome"
    if isinstance(state, AwaitingGameName):
        return "AwaitingGameName", None
    if isinstance(state, (AwaitingPlayerName, AwaitingWishlist)):
        return type(state).__name__, f"{state.game_id}|{str(state.is_creator).lower()}"
    if isinstance(state, (AwaitingStartDate, AwaitingEndDate, AwaitingAnonymousMessage)):
        return type(state).__name__, state.game_id
    raise TypeError(f"Unknown user state: {state!r}")


def deserialize_state(tag: str, payload: Optional[str]) -> Optional[UserState]:
    """Decode a stored (tag, payload) pair. Corrupt rows decode to None."""
    if tag == "AwaitingLanguage":
        if payload and payload.startswith("JoinGame:"):
            return AwaitingLanguage(JoinGame(payload[len("JoinGame:"):]))
        return AwaitingLanguage(ShowWelcome())
    if tag == "AwaitingGameName":
        return AwaitingGameName()
    if not payload:
        return None
    if tag in ("AwaitingPlayerName", "AwaitingWishlist"):
        game_id, _, flag = payload.partition("|")
        cls = AwaitingPlayerName if tag == "AwaitingPlayerName" else AwaitingWishlist
        return cls(game_id, flag.lower() == "true")
    simple = {
        "AwaitingStartDate": AwaitingStartDate,
        "AwaitingEndDate": AwaitingEndDate,
        "AwaitingAnonymousMessage": AwaitingAnonymousMessage,
    }
    if tag in simple:
        return simple[tag](payload)
    return None


# ============ INBOUND EVENTS ============

@dataclass
class TextEvent:
    sender_id: int
    display_name: str
    text: str
    handle: Optional[str] = None
    locale: Optional[str] = None


@dataclass
class CallbackEvent:
    sender_id: int
    callback_id: str
    data: str
    message_id: Optional[int] = None
    display_name: str = ""
    handle: Optional[str] = None
    locale: Optional[str] = None
