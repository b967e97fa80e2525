"""
Secret Santa Flow Module - Conversation Routing and Game Orchestration

RESPONSIBILITIES:
- Route inbound text and button events by the sender's conversation state
- Validate input (names, dates, wishlists, anonymous messages)
- Drive the game lifecycle (create, recruit, start, finish, delete)
- Emit localized messages through the Messenger

CONCURRENCY:
- One asyncio.Lock per user serializes that user's events
- One asyncio.Lock per game serializes participant/wishlist/pairing writes
- Lock order is always user -> game; the scheduler only takes game locks
- Every store write happens before the message that reports it is sent

ISOLATION:
- No Discord dependencies (transport is behind Messenger)
- Storage is behind SantaStore
"""

from __future__ import annotations

import asyncio
import calendar
import datetime as dt
import html
import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from .secret_santa_i18n import StringKey, localize
from .secret_santa_messenger import Button, Keyboard, Messenger
from .secret_santa_models import (
    MAX_ANONYMOUS_MESSAGE_LENGTH, MAX_GAME_NAME_LENGTH, MAX_PLAYER_NAME_LENGTH,
    MAX_WISHLIST_LENGTH,
    AwaitingAnonymousMessage, AwaitingEndDate, AwaitingGameName, AwaitingLanguage,
    AwaitingPlayerName, AwaitingStartDate, AwaitingWishlist, CallbackEvent,
    GameInstance, GameStatus, InvalidDate, JoinGame, Language, NotEnoughParticipants, Player,
    PostLanguageAction, ShowWelcome, TextEvent, UserState,
)
from .secret_santa_storage import SantaStore

START_COMMAND = "/start"
JOIN_PREFIX = "join_"
DATE_FORMAT = "%d.%m.%Y"

MAX_START_DAYS_AHEAD = 7
MAX_GAME_MONTHS = 3

BOT_USERNAME_SETTING = "bot_username"

_DATE_ERRORS = {
    InvalidDate.FORMAT: StringKey.DATE_FORMAT_ERROR,
    InvalidDate.PAST: StringKey.DATE_IN_PAST_ERROR,
    InvalidDate.TOO_FAR: StringKey.START_DATE_TOO_FAR_ERROR,
    InvalidDate.NOT_AFTER_START: StringKey.END_DATE_ERROR,
    InvalidDate.END_TOO_FAR: StringKey.END_DATE_TOO_FAR_ERROR,
}

_STATUS_KEYS = {
    GameStatus.CREATING: StringKey.STATUS_CREATING,
    GameStatus.RECRUITING: StringKey.STATUS_RECRUITING,
    GameStatus.IN_PROGRESS: StringKey.STATUS_IN_PROGRESS,
    GameStatus.FINISHED: StringKey.STATUS_FINISHED,
}


# ============ HELPERS ============

def escape_html(text: str) -> str:
    """Escape &, < and > so user text cannot inject markup"""
    return html.escape(text, quote=False)


def user_link(player: Player) -> str:
    return f'<a href="user:{player.user_id}">{player.name}</a>'


def format_date(value: Optional[dt.date]) -> Optional[str]:
    return value.strftime(DATE_FORMAT) if value else None


def add_months(value: dt.date, months: int) -> dt.date:
    """Calendar month arithmetic; the day is clamped to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return dt.date(year, month, day)


def parse_date(text: str) -> dt.date:
    """
    Parse a d.m.yyyy date.

    Raises:
        InvalidDate(FORMAT): wrong shape, non-numeric parts or no such calendar day
    """
    parts = text.strip().split(".")
    if len(parts) != 3:
        raise InvalidDate(InvalidDate.FORMAT)
    try:
        day, month, year = (int(part) for part in parts)
        return dt.date(year, month, day)
    except ValueError:
        raise InvalidDate(InvalidDate.FORMAT)


def validate_start_date(value: dt.date, today: dt.date):
    if value <= today:
        raise InvalidDate(InvalidDate.PAST)
    if value > today + dt.timedelta(days=MAX_START_DAYS_AHEAD):
        raise InvalidDate(InvalidDate.TOO_FAR)


def validate_end_date(value: dt.date, start_date: dt.date):
    if value <= start_date:
        raise InvalidDate(InvalidDate.NOT_AFTER_START)
    if value > add_months(start_date, MAX_GAME_MONTHS):
        raise InvalidDate(InvalidDate.END_TOO_FAR)


def _state_game_id(state: UserState) -> Optional[str]:
    if isinstance(state, AwaitingLanguage):
        action = state.next_action
        return action.game_id if isinstance(action, JoinGame) else None
    return getattr(state, "game_id", None)


# ============ CONTEXT ============

class FlowContext:
    """
    Shared state of the flow controller: the store, the cache of active
    conversation states and the lock registries.

    init() loads the cache from the store, close() flushes it back.
    """

    def __init__(self, store: SantaStore, default_language: Language = Language.EN,
                 today: Optional[Callable[[], dt.date]] = None):
        self.store = store
        self.default_language = default_language
        self.today = today or dt.date.today
        self.states: Dict[int, UserState] = {}
        self._user_locks: Dict[int, asyncio.Lock] = {}
        self._user_lock_holders: Dict[int, int] = {}
        self._game_locks: Dict[str, asyncio.Lock] = {}

    def init(self):
        self.states = self.store.load_user_states()

    def close(self):
        for user_id, state in self.states.items():
            self.store.set_user_state(user_id, state)

    def get_state(self, user_id: int) -> Optional[UserState]:
        return self.states.get(user_id)

    def set_state(self, user_id: int, state: Optional[UserState]):
        self.store.set_user_state(user_id, state)
        if state is None:
            self.states.pop(user_id, None)
        else:
            self.states[user_id] = state

    def drop_states_for_game(self, game_id: str) -> List[int]:
        """Clear every conversation state that targets a game"""
        affected = [uid for uid, state in self.states.items() if _state_game_id(state) == game_id]
        for user_id in affected:
            self.set_state(user_id, None)
        return affected

    @asynccontextmanager
    async def user_session(self, user_id: int):
        """
        Hold the per-user lock for one event.

        The lock is dropped from the registry once no event holds or awaits it.
        """
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._user_lock_holders[user_id] = self._user_lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._user_lock_holders[user_id] - 1
            if remaining:
                self._user_lock_holders[user_id] = remaining
            else:
                del self._user_lock_holders[user_id]
                self._user_locks.pop(user_id, None)

    def game_lock(self, game_id: str) -> asyncio.Lock:
        return self._game_locks.setdefault(game_id, asyncio.Lock())

    def forget_game_lock(self, game_id: str):
        lock = self._game_locks.get(game_id)
        if lock is not None and not lock.locked():
            del self._game_locks[game_id]


# ============ FLOW CONTROLLER ============

class SantaFlow:
    """Conversation state machine and game orchestration"""

    def __init__(self, context: FlowContext, messenger: Messenger, logger: Optional[logging.Logger] = None):
        self.context = context
        self.store = context.store
        self.messenger = messenger
        self.logger = logger or logging.getLogger("bot.santa.flow")

        self._callback_routes = [
            ("lang_", self._on_language_selected),
            ("view_game_", self._on_view_game),
            ("edit_wishlist_", self._on_edit_wishlist),
            ("leave_game_", self._on_leave_game),
            ("delete_game_", self._on_delete_game),
            ("start_now_", self._on_start_now),
            ("anon_message_", self._on_anonymous_message_start),
        ]

    # ---------- small helpers ----------

    def language_of(self, user_id: int) -> Language:
        player = self.store.get_player(user_id)
        return player.language if player else self.context.default_language

    @staticmethod
    def t(key: StringKey, lang: Language, **kwargs) -> str:
        text = localize(key, lang)
        return text.format(**kwargs) if kwargs else text

    def main_menu_keyboard(self, lang: Language) -> Keyboard:
        return Keyboard(rows=[
            [Button(self.t(StringKey.CREATE_GAME_BUTTON, lang)), Button(self.t(StringKey.ACTIVE_GAMES_BUTTON, lang))],
            [Button(self.t(StringKey.CHANGE_LANGUAGE_BUTTON, lang))],
        ])

    def cancel_keyboard(self, lang: Language) -> Keyboard:
        return Keyboard(rows=[[Button(self.t(StringKey.CANCEL_BUTTON, lang))]])

    def wishlist_keyboard(self, lang: Language) -> Keyboard:
        return Keyboard(rows=[
            [Button(self.t(StringKey.DONE_BUTTON, lang))],
            [Button(self.t(StringKey.CANCEL_BUTTON, lang))],
        ])

    async def _send(self, user_id: int, key: StringKey, lang: Language,
                    keyboard: Optional[Keyboard] = None, **kwargs) -> Optional[int]:
        return await self.messenger.send_text(user_id, self.t(key, lang, **kwargs), html=True, keyboard=keyboard)

    def _register(self, user_id: int, display_name: str, handle: Optional[str], locale: Optional[str]):
        return self.store.register_player(
            user_id, escape_html(display_name), handle, locale,
            default_language=self.context.default_language,
        )

    # ============ TEXT EVENTS ============

    async def handle_text(self, event: TextEvent):
        async with self.context.user_session(event.sender_id):
            await self._route_text(event)

    async def _route_text(self, event: TextEvent):
        user_id = event.sender_id
        text = event.text
        state = self.context.get_state(user_id)

        if text.startswith(START_COMMAND):
            if isinstance(state, AwaitingPlayerName):
                return
            await self._handle_start(event)
            return

        lang = self.language_of(user_id)

        if text.strip() == self.t(StringKey.CANCEL_BUTTON, lang) and not isinstance(state, AwaitingAnonymousMessage):
            await self._handle_cancel(user_id, state, lang)
            return

        if state is None:
            await self._handle_main_menu(event, text.strip(), lang)
        elif isinstance(state, AwaitingLanguage):
            pass
        elif isinstance(state, AwaitingGameName):
            await self._handle_game_name(user_id, text, lang)
        elif isinstance(state, AwaitingStartDate):
            await self._handle_start_date(user_id, text, state, lang)
        elif isinstance(state, AwaitingEndDate):
            await self._handle_end_date(user_id, text, state, lang)
        elif isinstance(state, AwaitingPlayerName):
            await self._handle_player_name(event, state, lang)
        elif isinstance(state, AwaitingWishlist):
            await self._handle_wishlist_line(user_id, text, state, lang)
        elif isinstance(state, AwaitingAnonymousMessage):
            await self._handle_anonymous_message(user_id, text, state, lang)

    # ---------- /start ----------

    async def _handle_start(self, event: TextEvent):
        parts = event.text.split()
        param = parts[1] if len(parts) > 1 else ""

        if param.startswith(JOIN_PREFIX):
            await self._handle_join_link(event, param[len(JOIN_PREFIX):])
            return

        _, is_new = self._register(event.sender_id, event.display_name, event.handle, event.locale)
        if is_new:
            await self.prompt_language(event.sender_id, ShowWelcome())
            return

        lang = self.language_of(event.sender_id)
        await self._send(event.sender_id, StringKey.WELCOME_BACK, lang, self.main_menu_keyboard(lang))

    async def _handle_join_link(self, event: TextEvent, invite_code: str):
        user_id = event.sender_id
        game = self.store.find_game_by_invite_code(invite_code.strip().upper())
        if game is None:
            self.logger.info(f"User {user_id} used unknown invite code {invite_code!r}")
            await self._send(user_id, StringKey.GAME_NOT_FOUND, self.language_of(user_id))
            return

        _, is_new = self._register(user_id, event.display_name, event.handle, event.locale)
        if is_new:
            await self.prompt_language(user_id, JoinGame(game.game_id))
        else:
            await self.join_game(user_id, game.game_id)

    async def join_game(self, user_id: int, game_id: str):
        lang = self.language_of(user_id)
        game = self.store.find_game(game_id)

        if game is None:
            await self._send(user_id, StringKey.GAME_NOT_FOUND, lang, self.main_menu_keyboard(lang))
        elif game.status != GameStatus.RECRUITING:
            await self._send(user_id, StringKey.GAME_ALREADY_STARTED, lang, self.main_menu_keyboard(lang), game=game.name)
        elif user_id in game.participants:
            await self._send(user_id, StringKey.ALREADY_IN_GAME, lang, game=game.name)
            await self.show_game_details(user_id, game_id, lang)
        else:
            self.context.set_state(user_id, AwaitingPlayerName(game_id))
            await self._send(user_id, StringKey.WELCOME_TO_GAME, lang, self.cancel_keyboard(lang), game=game.name)

    # ---------- cancel ----------

    async def _handle_cancel(self, user_id: int, state: Optional[UserState], lang: Language):
        if state is None:
            return

        if isinstance(state, (AwaitingStartDate, AwaitingEndDate, AwaitingPlayerName, AwaitingWishlist)):
            game_id = state.game_id
            deleted = False
            async with self.context.game_lock(game_id):
                game = self.store.find_game(game_id)
                creating = game is not None and game.status == GameStatus.CREATING
                if creating and game.creator_id == user_id:
                    self.store.delete_game(game_id)
                    deleted = True
                elif (game is not None
                      and game.status == GameStatus.RECRUITING
                      and game.creator_id != user_id
                      and isinstance(state, (AwaitingPlayerName, AwaitingWishlist))):
                    # the creator and started games keep their roster
                    self.store.remove_participant(game_id, user_id)

            if deleted:
                self.context.forget_game_lock(game_id)
                self.logger.info(f"Game {game_id} abandoned during creation by {user_id}")

        self.context.set_state(user_id, None)

        key = StringKey.WELCOME_BACK if isinstance(state, AwaitingLanguage) else StringKey.GAME_CREATION_CANCELLED
        await self._send(user_id, key, lang, self.main_menu_keyboard(lang))

    # ---------- main menu ----------

    async def _handle_main_menu(self, event: TextEvent, text: str, lang: Language):
        user_id = event.sender_id
        if text == self.t(StringKey.CREATE_GAME_BUTTON, lang):
            self.context.set_state(user_id, AwaitingGameName())
            await self._send(user_id, StringKey.PROMPT_GAME_NAME, lang, self.cancel_keyboard(lang))
        elif text == self.t(StringKey.ACTIVE_GAMES_BUTTON, lang):
            await self.show_active_games(user_id, lang)
        elif text == self.t(StringKey.CHANGE_LANGUAGE_BUTTON, lang):
            await self.prompt_language(user_id, ShowWelcome())

    async def send_welcome(self, user_id: int, lang: Language):
        text = f"<b>{self.t(StringKey.WELCOME_TITLE, lang)}</b> 🎅\n\n{self.t(StringKey.WELCOME_BODY, lang)}"
        await self.messenger.send_text(user_id, text, html=True, keyboard=self.main_menu_keyboard(lang))

    async def prompt_language(self, user_id: int, next_action: PostLanguageAction):
        self.context.set_state(user_id, AwaitingLanguage(next_action))
        lang = self.language_of(user_id)

        await self._send(user_id, StringKey.CANCEL_BUTTON, lang, self.cancel_keyboard(lang))

        buttons = [Button(language.native_name, f"lang_{language.code}") for language in Language]
        await self.messenger.send_text(
            user_id,
            self.t(StringKey.LANGUAGE_PROMPT, lang),
            keyboard=Keyboard.columns(buttons, 2),
        )

    # ---------- game creation ----------

    async def _handle_game_name(self, user_id: int, text: str, lang: Language):
        name = text.strip()
        if not name:
            await self._send(user_id, StringKey.GAME_NAME_EMPTY_ERROR, lang, self.cancel_keyboard(lang))
            return
        if len(name) > MAX_GAME_NAME_LENGTH:
            await self._send(user_id, StringKey.GAME_NAME_TOO_LONG_ERROR, lang, self.cancel_keyboard(lang))
            return

        game = self.store.create_game(user_id, escape_html(name))
        self.context.set_state(user_id, AwaitingStartDate(game.game_id))
        await self._send(user_id, StringKey.PROMPT_START_DATE, lang, self.cancel_keyboard(lang))

    async def _game_or_reset(self, user_id: int, game_id: str, lang: Language) -> Optional[GameInstance]:
        """Load the game a state points at; a vanished game clears the state"""
        game = self.store.find_game(game_id)
        if game is None:
            self.context.set_state(user_id, None)
            await self._send(user_id, StringKey.GAME_NOT_FOUND, lang, self.main_menu_keyboard(lang))
        return game

    async def _handle_start_date(self, user_id: int, text: str, state: AwaitingStartDate, lang: Language):
        game = await self._game_or_reset(user_id, state.game_id, lang)
        if game is None:
            return

        try:
            start_date = parse_date(text)
            validate_start_date(start_date, self.context.today())
        except InvalidDate as e:
            await self._send(user_id, _DATE_ERRORS[e.reason], lang, self.cancel_keyboard(lang))
            return

        self.store.update_game_dates(game.game_id, start_date, None)
        self.context.set_state(user_id, AwaitingEndDate(game.game_id))
        await self._send(user_id, StringKey.PROMPT_END_DATE, lang, self.cancel_keyboard(lang))

    async def _handle_end_date(self, user_id: int, text: str, state: AwaitingEndDate, lang: Language):
        game = await self._game_or_reset(user_id, state.game_id, lang)
        if game is None:
            return

        if game.start_date is None:
            self.context.set_state(user_id, AwaitingStartDate(game.game_id))
            await self._send(user_id, StringKey.PROMPT_START_DATE, lang, self.cancel_keyboard(lang))
            return

        try:
            end_date = parse_date(text)
            validate_end_date(end_date, game.start_date)
        except InvalidDate as e:
            await self._send(user_id, _DATE_ERRORS[e.reason], lang, self.cancel_keyboard(lang))
            return

        self.store.update_game_dates(game.game_id, game.start_date, end_date)
        self.context.set_state(user_id, AwaitingPlayerName(game.game_id, is_creator=True))
        await self._send(user_id, StringKey.PROMPT_CREATOR_NAME, lang, self.cancel_keyboard(lang))

    # ---------- joining ----------

    async def _handle_player_name(self, event: TextEvent, state: AwaitingPlayerName, lang: Language):
        user_id = event.sender_id
        name = event.text.strip()
        if not name:
            await self._send(user_id, StringKey.PLAYER_NAME_EMPTY_ERROR, lang, self.cancel_keyboard(lang))
            return
        if len(name) > MAX_PLAYER_NAME_LENGTH:
            await self._send(user_id, StringKey.PLAYER_NAME_TOO_LONG_ERROR, lang, self.cancel_keyboard(lang))
            return

        player, _ = self.store.register_player(
            user_id, escape_html(name), event.handle, lang.code,
            default_language=self.context.default_language,
        )

        async with self.context.game_lock(state.game_id):
            game = self.store.find_game(state.game_id)
            joinable = game is not None and (state.is_creator or game.status == GameStatus.RECRUITING)
            if joinable:
                self.store.add_participant(game.game_id, player)

        if game is None:
            self.context.set_state(user_id, None)
            await self._send(user_id, StringKey.GAME_NOT_FOUND, lang, self.main_menu_keyboard(lang))
            return
        if not joinable:
            self.context.set_state(user_id, None)
            await self._send(user_id, StringKey.GAME_ALREADY_STARTED, lang, self.main_menu_keyboard(lang), game=game.name)
            return

        self.logger.info(f"Player {user_id} joined game {game.game_id}")
        await self.prompt_wishlist(user_id, game.game_id, state.is_creator, lang)

    async def prompt_wishlist(self, user_id: int, game_id: str, is_creator: bool, lang: Language):
        self.context.set_state(user_id, AwaitingWishlist(game_id, is_creator))
        async with self.context.game_lock(game_id):
            self.store.update_wishlist(game_id, user_id, None)
        await self._send(user_id, StringKey.PROMPT_WISHLIST, lang, self.wishlist_keyboard(lang))

    async def _handle_wishlist_line(self, user_id: int, text: str, state: AwaitingWishlist, lang: Language):
        if text.strip() == self.t(StringKey.DONE_BUTTON, lang):
            await self._finish_wishlist(user_id, state, lang)
            return

        line = escape_html(text.strip())
        if not line:
            return

        async with self.context.game_lock(state.game_id):
            game = self.store.find_game(state.game_id)
            too_long = False
            if game is not None:
                current = game.wishlists.get(user_id, "")
                updated = f"{current}\n{line}" if current else line
                too_long = len(updated) > MAX_WISHLIST_LENGTH
                if not too_long:
                    self.store.update_wishlist(state.game_id, user_id, updated)

        if game is None:
            self.context.set_state(user_id, None)
            await self._send(user_id, StringKey.GAME_NOT_FOUND, lang, self.main_menu_keyboard(lang))
        elif too_long:
            await self._send(user_id, StringKey.WISHLIST_TOO_LONG_ERROR, lang, self.wishlist_keyboard(lang))

    def invite_instructions(self, invite_code: str, lang: Language) -> str:
        bot_name = self.store.get_setting(BOT_USERNAME_SETTING) or "Secret Santa"
        return self.t(StringKey.INVITE_INSTRUCTIONS, lang, code=invite_code, bot=f"@{escape_html(bot_name)}")

    async def _finish_wishlist(self, user_id: int, state: AwaitingWishlist, lang: Language):
        self.context.set_state(user_id, None)

        if not state.is_creator:
            await self._send(user_id, StringKey.PLAYER_IN_GAME, lang, self.main_menu_keyboard(lang))
            return

        async with self.context.game_lock(state.game_id):
            game = self.store.find_game(state.game_id)
            invite_code = self.store.issue_invite_code(game.game_id) if game is not None else None

        if game is None:
            await self._send(user_id, StringKey.GAME_NOT_FOUND, lang, self.main_menu_keyboard(lang))
            return

        await self._send(
            user_id, StringKey.CREATOR_IN_GAME, lang, self.main_menu_keyboard(lang),
            game=game.name, link=self.invite_instructions(invite_code, lang),
        )

    # ---------- anonymous messages ----------

    async def _handle_anonymous_message(self, user_id: int, text: str, state: AwaitingAnonymousMessage, lang: Language):
        game = await self._game_or_reset(user_id, state.game_id, lang)
        if game is None:
            return

        receiver_id = game.pairings.get(user_id)
        if receiver_id is None:
            self.context.set_state(user_id, None)
            return

        if len(text) > MAX_ANONYMOUS_MESSAGE_LENGTH:
            await self._send(user_id, StringKey.MESSAGE_TOO_LONG_ERROR, lang)
            return

        self.context.set_state(user_id, None)

        receiver_lang = self.language_of(receiver_id)
        header = self.t(StringKey.ANONYMOUS_MESSAGE_HEADER, receiver_lang, game=game.name)
        await self.messenger.send_text(receiver_id, f"{header}\n\n<i>{escape_html(text)}</i>", html=True)
        self.logger.info(f"Anonymous message delivered in game {game.game_id}")

        await self._send(user_id, StringKey.ANONYMOUS_MESSAGE_SENT, lang, self.main_menu_keyboard(lang))

    # ============ CALLBACK EVENTS ============

    async def handle_callback(self, event: CallbackEvent):
        async with self.context.user_session(event.sender_id):
            for prefix, handler in self._callback_routes:
                if event.data.startswith(prefix):
                    await handler(event, event.data[len(prefix):])
                    return
            self.logger.debug(f"Unhandled callback data {event.data!r} from {event.sender_id}")
            await self.messenger.acknowledge_callback(event.callback_id)

    async def _reject(self, event: CallbackEvent, key: StringKey, lang: Language, **kwargs):
        await self.messenger.acknowledge_callback(event.callback_id, self.t(key, lang, **kwargs), alert=True)

    async def _on_language_selected(self, event: CallbackEvent, code: str):
        user_id = event.sender_id
        selected = Language.from_code(code)

        if self.store.get_player(user_id) is None:
            self._register(user_id, event.display_name or str(user_id), event.handle, event.locale)
        self.store.set_player_language(user_id, selected)

        state = self.context.get_state(user_id)
        self.context.set_state(user_id, None)

        await self.messenger.acknowledge_callback(event.callback_id)
        if event.message_id is not None:
            await self.messenger.delete_message(user_id, event.message_id)

        if isinstance(state, AwaitingLanguage):
            if isinstance(state.next_action, JoinGame):
                await self.join_game(user_id, state.next_action.game_id)
            else:
                await self.send_welcome(user_id, selected)
        else:
            await self._send(user_id, StringKey.LANGUAGE_CHANGED, selected, self.main_menu_keyboard(selected))

    async def _on_view_game(self, event: CallbackEvent, game_id: str):
        lang = self.language_of(event.sender_id)
        if not await self.show_game_details(event.sender_id, game_id, lang, event.message_id):
            await self._reject(event, StringKey.GAME_NOT_FOUND, lang)
            return
        await self.messenger.acknowledge_callback(event.callback_id)

    async def _on_edit_wishlist(self, event: CallbackEvent, game_id: str):
        user_id = event.sender_id
        lang = self.language_of(user_id)

        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            if game is None or user_id not in game.participants:
                rejection = StringKey.GAME_NOT_FOUND
            elif game.status != GameStatus.RECRUITING:
                rejection = StringKey.GAME_ALREADY_STARTED
            else:
                rejection = None
                self.store.update_wishlist(game_id, user_id, None)

        if rejection is not None:
            await self._reject(event, rejection, lang, game=game.name if game is not None else "")
            return

        self.context.set_state(user_id, AwaitingWishlist(game_id))
        await self._send(user_id, StringKey.PROMPT_WISHLIST, lang, self.wishlist_keyboard(lang))
        await self.messenger.acknowledge_callback(event.callback_id)

    async def _on_leave_game(self, event: CallbackEvent, game_id: str):
        user_id = event.sender_id
        lang = self.language_of(user_id)

        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            allowed = (
                game is not None
                and user_id in game.participants
                and game.status == GameStatus.RECRUITING
            )
            if allowed:
                self.store.remove_participant(game_id, user_id)

        if game is None or user_id not in game.participants:
            await self._reject(event, StringKey.GAME_NOT_FOUND, lang)
            return
        if not allowed:
            await self._reject(event, StringKey.GAME_ALREADY_STARTED, lang, game=game.name)
            return

        if _state_game_id(self.context.get_state(user_id)) == game_id:
            self.context.set_state(user_id, None)

        self.logger.info(f"Player {user_id} left game {game_id}")
        await self.messenger.acknowledge_callback(event.callback_id, self.t(StringKey.YOU_LEFT_GAME, lang, game=game.name))
        if event.message_id is not None:
            await self.messenger.delete_message(user_id, event.message_id)
        await self._send(user_id, StringKey.YOU_LEFT_GAME_SUCCESS, lang, game=game.name)

    async def _on_delete_game(self, event: CallbackEvent, game_id: str):
        user_id = event.sender_id
        lang = self.language_of(user_id)

        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            if game is None:
                rejection = StringKey.GAME_NOT_FOUND
            elif game.creator_id != user_id:
                rejection = StringKey.ONLY_CREATOR_CAN_DELETE
            elif game.status.rank > GameStatus.RECRUITING.rank:
                rejection = StringKey.GAME_ALREADY_STARTED
            else:
                rejection = None
                self.store.delete_game(game_id)
                self.context.drop_states_for_game(game_id)

        if rejection is not None:
            if rejection == StringKey.ONLY_CREATOR_CAN_DELETE:
                self.logger.warning(f"User {user_id} tried to delete game {game_id} they did not create")
            await self._reject(event, rejection, lang, game=game.name if game else "")
            return

        self.context.forget_game_lock(game_id)
        self.logger.info(f"Game {game_id} deleted by its creator {user_id}")

        for participant_id in game.participants:
            if participant_id != user_id:
                await self._send(
                    participant_id, StringKey.GAME_CANCELLED_NOTIFICATION,
                    self.language_of(participant_id), game=game.name,
                )

        await self.messenger.acknowledge_callback(event.callback_id, self.t(StringKey.GAME_DELETED, lang, game=game.name))
        if event.message_id is not None:
            await self.messenger.delete_message(user_id, event.message_id)
        await self._send(user_id, StringKey.GAME_DELETED_SUCCESS, lang, game=game.name)

    async def _on_start_now(self, event: CallbackEvent, game_id: str):
        user_id = event.sender_id
        lang = self.language_of(user_id)

        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            if game is None:
                rejection = StringKey.GAME_NOT_FOUND
            elif game.creator_id != user_id:
                rejection = StringKey.ONLY_CREATOR_CAN_START
            elif game.status != GameStatus.RECRUITING:
                rejection = StringKey.GAME_ALREADY_STARTED
            else:
                try:
                    game.ensure_startable()
                except NotEnoughParticipants as e:
                    self.logger.info(f"Start of game {game_id} refused: {e}")
                    rejection = StringKey.NOT_ENOUGH_PLAYERS_ERROR
                else:
                    rejection = None
                    self._apply_start(game)

        if rejection is not None:
            if rejection == StringKey.ONLY_CREATOR_CAN_START:
                self.logger.warning(f"User {user_id} tried to start game {game_id} they did not create")
            await self._reject(event, rejection, lang, game=game.name if game else "")
            return

        await self._notify_start(game)
        await self.messenger.acknowledge_callback(event.callback_id, self.t(StringKey.GAME_STARTED_SUCCESS, lang, game=game.name))
        await self.show_game_details(user_id, game_id, lang, event.message_id)

    async def _on_anonymous_message_start(self, event: CallbackEvent, game_id: str):
        lang = self.language_of(event.sender_id)
        self.context.set_state(event.sender_id, AwaitingAnonymousMessage(game_id))
        await self.messenger.acknowledge_callback(event.callback_id)
        await self._send(event.sender_id, StringKey.PROMPT_ANONYMOUS_MESSAGE, lang)

    # ============ GAME VIEWS ============

    async def show_active_games(self, user_id: int, lang: Language):
        games = [g for g in self.store.find_games_for_player(user_id) if g.status != GameStatus.FINISHED]
        if not games:
            await self._send(user_id, StringKey.NO_ACTIVE_GAMES, lang)
            return

        buttons = [Button(html.unescape(game.name), f"view_game_{game.game_id}") for game in games]
        await self._send(user_id, StringKey.SELECT_GAME_DETAILS, lang, Keyboard.columns(buttons, 1))

    def render_game_details(self, game: GameInstance, viewer_id: int, lang: Language) -> str:
        not_set = self.t(StringKey.NOT_SET, lang)
        participants = "\n".join(f"• {user_link(p)}" for p in game.participants.values())

        text = (
            f"<b>{self.t(StringKey.GAME_DETAILS_TITLE, lang)} {game.name}</b>\n\n"
            f"<b>{self.t(StringKey.STATUS_LABEL, lang)}</b> {self.t(_STATUS_KEYS[game.status], lang)}\n"
            f"<b>{self.t(StringKey.START_DATE_LABEL, lang)}</b> {format_date(game.start_date) or not_set}\n"
            f"<b>{self.t(StringKey.END_DATE_LABEL, lang)}</b> {format_date(game.end_date) or not_set}\n\n"
            f"<b>{self.t(StringKey.PARTICIPANTS_LABEL, lang)} ({len(game.participants)})</b>\n{participants}"
        )

        if game.status == GameStatus.IN_PROGRESS:
            giftee = game.participants.get(game.pairings.get(viewer_id))
            if giftee is not None:
                text += f"\n\n🎁 <b>{self.t(StringKey.YOUR_GIFTEE, lang)}</b> {giftee.name}"
        return text

    def game_details_keyboard(self, game: GameInstance, viewer_id: int, lang: Language) -> Optional[Keyboard]:
        buttons: List[Button] = []
        if game.status == GameStatus.RECRUITING:
            wishlist_key = StringKey.EDIT_WISHLIST_BUTTON if viewer_id in game.wishlists else StringKey.ADD_WISHLIST_BUTTON
            buttons.append(Button(self.t(wishlist_key, lang), f"edit_wishlist_{game.game_id}"))
            if viewer_id == game.creator_id:
                buttons.append(Button(self.t(StringKey.START_GAME_NOW_BUTTON, lang), f"start_now_{game.game_id}"))
                buttons.append(Button(self.t(StringKey.DELETE_GAME_BUTTON, lang), f"delete_game_{game.game_id}"))
            else:
                buttons.append(Button(self.t(StringKey.LEAVE_GAME_BUTTON, lang), f"leave_game_{game.game_id}"))
        elif game.status == GameStatus.IN_PROGRESS:
            buttons.append(Button(self.t(StringKey.ANONYMOUS_MESSAGE_BUTTON, lang), f"anon_message_{game.game_id}"))
        return Keyboard.columns(buttons, 1) if buttons else None

    async def show_game_details(self, user_id: int, game_id: str, lang: Language,
                                replace_message_id: Optional[int] = None) -> bool:
        """Send a game's details, replacing the message the request came from"""
        game = self.store.find_game(game_id)
        if game is None:
            return False

        text = self.render_game_details(game, user_id, lang)
        keyboard = self.game_details_keyboard(game, user_id, lang)

        if replace_message_id is not None:
            await self.messenger.delete_message(user_id, replace_message_id)
        await self.messenger.send_text(user_id, text, html=True, keyboard=keyboard)
        return True

    # ============ LIFECYCLE ============

    def _apply_start(self, game: GameInstance):
        """
        Run GameInstance.start() and persist the outcome.
        Caller must hold the game lock.
        """
        game.start()

        if game.status == GameStatus.FINISHED:
            self.store.update_game_status(game.game_id, GameStatus.FINISHED)
            self.store.delete_game(game.game_id)
            self.context.drop_states_for_game(game.game_id)
            self.logger.warning(
                f"Game {game.game_id} failed to start with {len(game.participants)} participants, deleted"
            )
            return

        self.store.save_pairings(game.game_id, game.pairings)
        self.store.update_game_status(game.game_id, GameStatus.IN_PROGRESS)
        self.logger.info(f"Game {game.game_id} started with {len(game.participants)} participants")

    def render_start_notification(self, game: GameInstance, giver_id: int, lang: Language) -> Optional[str]:
        receiver = game.participants.get(game.pairings.get(giver_id))
        if receiver is None:
            return None

        wishlist = game.wishlists.get(receiver.user_id)
        if wishlist:
            wishlist_text = "\n".join(f"• {line}" for line in wishlist.split("\n"))
        else:
            wishlist_text = self.t(StringKey.NOT_SET, lang)

        return self.t(
            StringKey.GAME_START_NOTIFICATION, lang,
            game=game.name, giftee=user_link(receiver), wishlist=wishlist_text,
        )

    async def _notify_start(self, game: GameInstance):
        if game.status == GameStatus.FINISHED:
            for user_id in game.participants:
                await self._send(user_id, StringKey.GAME_FAILED_NOT_ENOUGH_PLAYERS, self.language_of(user_id), game=game.name)
            return

        for giver_id in game.pairings:
            lang = self.language_of(giver_id)
            text = self.render_start_notification(game, giver_id, lang)
            if text is None:
                continue
            keyboard = Keyboard(rows=[[
                Button(self.t(StringKey.ANONYMOUS_MESSAGE_BUTTON, lang), f"anon_message_{game.game_id}"),
            ]], inline=True)
            await self.messenger.send_text(giver_id, text, html=True, keyboard=keyboard)

    async def start_game(self, game_id: str) -> Optional[GameInstance]:
        """
        Start a recruiting game (scheduled start).

        With fewer than MIN_PARTICIPANTS players the game is finished, deleted
        and every participant is told why. Returns None when the game is gone
        or no longer recruiting.
        """
        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            if game is None or game.status != GameStatus.RECRUITING:
                return None
            self._apply_start(game)

        if game.status == GameStatus.FINISHED:
            self.context.forget_game_lock(game_id)
        await self._notify_start(game)
        return game

    async def finish_game(self, game_id: str) -> Optional[GameInstance]:
        """Finish an in-progress game and quietly tell every participant"""
        async with self.context.game_lock(game_id):
            game = self.store.find_game(game_id)
            if game is None or game.status != GameStatus.IN_PROGRESS:
                return None
            game.finish()
            self.store.update_game_status(game_id, GameStatus.FINISHED)
            self.logger.info(f"Game {game_id} finished")

        for user_id in game.participants:
            lang = self.language_of(user_id)
            await self.messenger.send_text(
                user_id, self.t(StringKey.GAME_END_NOTIFICATION, lang, game=game.name),
                html=True, silent=True,
            )
        return game
