"""
Secret Santa Localization Module - Message Keys and String Tables

String tables live in cogs/locales/<code>.json. Placeholders use str.format
names ({game}, {link}, {giftee}, {wishlist}).
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict

from .secret_santa_models import Language

LOCALES_DIR = Path(__file__).parent / "locales"
FALLBACK_LANGUAGE = Language.EN

logger = logging.getLogger("bot.santa.i18n")


class StringKey(str, Enum):
    # Menus and buttons
    CREATE_GAME_BUTTON = "CREATE_GAME_BUTTON"
    ACTIVE_GAMES_BUTTON = "ACTIVE_GAMES_BUTTON"
    CHANGE_LANGUAGE_BUTTON = "CHANGE_LANGUAGE_BUTTON"
    CANCEL_BUTTON = "CANCEL_BUTTON"
    DONE_BUTTON = "DONE_BUTTON"
    ADD_WISHLIST_BUTTON = "ADD_WISHLIST_BUTTON"
    EDIT_WISHLIST_BUTTON = "EDIT_WISHLIST_BUTTON"
    START_GAME_NOW_BUTTON = "START_GAME_NOW_BUTTON"
    DELETE_GAME_BUTTON = "DELETE_GAME_BUTTON"
    LEAVE_GAME_BUTTON = "LEAVE_GAME_BUTTON"
    ANONYMOUS_MESSAGE_BUTTON = "ANONYMOUS_MESSAGE_BUTTON"

    # Welcome and language
    LANGUAGE_PROMPT = "LANGUAGE_PROMPT"
    WELCOME_TITLE = "WELCOME_TITLE"
    WELCOME_BODY = "WELCOME_BODY"
    WELCOME_BACK = "WELCOME_BACK"
    LANGUAGE_CHANGED = "LANGUAGE_CHANGED"

    # Game creation
    PROMPT_GAME_NAME = "PROMPT_GAME_NAME"
    GAME_NAME_EMPTY_ERROR = "GAME_NAME_EMPTY_ERROR"
    GAME_NAME_TOO_LONG_ERROR = "GAME_NAME_TOO_LONG_ERROR"
    PROMPT_START_DATE = "PROMPT_START_DATE"
    PROMPT_END_DATE = "PROMPT_END_DATE"
    DATE_FORMAT_ERROR = "DATE_FORMAT_ERROR"
    DATE_IN_PAST_ERROR = "DATE_IN_PAST_ERROR"
    START_DATE_TOO_FAR_ERROR = "START_DATE_TOO_FAR_ERROR"
    END_DATE_ERROR = "END_DATE_ERROR"
    END_DATE_TOO_FAR_ERROR = "END_DATE_TOO_FAR_ERROR"
    PROMPT_CREATOR_NAME = "PROMPT_CREATOR_NAME"
    GAME_CREATION_CANCELLED = "GAME_CREATION_CANCELLED"
    CREATOR_IN_GAME = "CREATOR_IN_GAME"
    INVITE_INSTRUCTIONS = "INVITE_INSTRUCTIONS"

    # Joining
    GAME_NOT_FOUND = "GAME_NOT_FOUND"
    GAME_ALREADY_STARTED = "GAME_ALREADY_STARTED"
    ALREADY_IN_GAME = "ALREADY_IN_GAME"
    WELCOME_TO_GAME = "WELCOME_TO_GAME"
    PLAYER_NAME_EMPTY_ERROR = "PLAYER_NAME_EMPTY_ERROR"
    PLAYER_NAME_TOO_LONG_ERROR = "PLAYER_NAME_TOO_LONG_ERROR"
    PROMPT_WISHLIST = "PROMPT_WISHLIST"
    WISHLIST_TOO_LONG_ERROR = "WISHLIST_TOO_LONG_ERROR"
    PLAYER_IN_GAME = "PLAYER_IN_GAME"

    # Game management
    NO_ACTIVE_GAMES = "NO_ACTIVE_GAMES"
    SELECT_GAME_DETAILS = "SELECT_GAME_DETAILS"
    GAME_DETAILS_TITLE = "GAME_DETAILS_TITLE"
    STATUS_LABEL = "STATUS_LABEL"
    STATUS_CREATING = "STATUS_CREATING"
    STATUS_RECRUITING = "STATUS_RECRUITING"
    STATUS_IN_PROGRESS = "STATUS_IN_PROGRESS"
    STATUS_FINISHED = "STATUS_FINISHED"
    START_DATE_LABEL = "START_DATE_LABEL"
    END_DATE_LABEL = "END_DATE_LABEL"
    PARTICIPANTS_LABEL = "PARTICIPANTS_LABEL"
    YOUR_GIFTEE = "YOUR_GIFTEE"
    NOT_SET = "NOT_SET"
    YOU_LEFT_GAME = "YOU_LEFT_GAME"
    YOU_LEFT_GAME_SUCCESS = "YOU_LEFT_GAME_SUCCESS"
    ONLY_CREATOR_CAN_DELETE = "ONLY_CREATOR_CAN_DELETE"
    ONLY_CREATOR_CAN_START = "ONLY_CREATOR_CAN_START"
    GAME_CANCELLED_NOTIFICATION = "GAME_CANCELLED_NOTIFICATION"
    GAME_DELETED = "GAME_DELETED"
    GAME_DELETED_SUCCESS = "GAME_DELETED_SUCCESS"

    # Lifecycle
    NOT_ENOUGH_PLAYERS_ERROR = "NOT_ENOUGH_PLAYERS_ERROR"
    GAME_STARTED_SUCCESS = "GAME_STARTED_SUCCESS"
    GAME_FAILED_NOT_ENOUGH_PLAYERS = "GAME_FAILED_NOT_ENOUGH_PLAYERS"
    GAME_START_NOTIFICATION = "GAME_START_NOTIFICATION"
    GAME_END_NOTIFICATION = "GAME_END_NOTIFICATION"

    # Anonymous messages
    PROMPT_ANONYMOUS_MESSAGE = "PROMPT_ANONYMOUS_MESSAGE"
    MESSAGE_TOO_LONG_ERROR = "MESSAGE_TOO_LONG_ERROR"
    ANONYMOUS_MESSAGE_HEADER = "ANONYMOUS_MESSAGE_HEADER"
    ANONYMOUS_MESSAGE_SENT = "ANONYMOUS_MESSAGE_SENT"


class Strings:
    """Loaded string tables, one dict per language"""

    _tables: Dict[Language, Dict[str, str]] = {}

    @classmethod
    def preload_all(cls, locales_dir: Path = LOCALES_DIR):
        tables = {}
        for lang in Language:
            path = locales_dir / f"{lang.code}.json"
            try:
                tables[lang] = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                logger.warning(f"No string table for {lang.code}, using {FALLBACK_LANGUAGE.code}")
                tables[lang] = {}
            except (json.JSONDecodeError, OSError) as e:
                logger.error(f"Failed to load string table {path.name}: {e}")
                tables[lang] = {}
        cls._tables = tables

    @classmethod
    def get(cls, key: StringKey, language: Language) -> str:
        if not cls._tables:
            cls.preload_all()
        name = key.value if isinstance(key, StringKey) else str(key)
        text = cls._tables.get(language, {}).get(name)
        if text is None:
            text = cls._tables.get(FALLBACK_LANGUAGE, {}).get(name)
        if text is None:
            logger.warning(f"Missing string {name}")
            return name
        return text


def localize(key: StringKey, language: Language) -> str:
    return Strings.get(key, language)
