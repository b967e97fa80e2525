"""
Shared fixtures for the Secret Santa tests

- RecordingMessenger: in-memory Messenger that records every call
- A JsonSantaStore rooted in pytest's tmp_path
- A FlowContext with a frozen clock
"""

import datetime as dt
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.secret_santa_flow import FlowContext, SantaFlow
from cogs.secret_santa_messenger import Keyboard, Messenger
from cogs.secret_santa_models import CallbackEvent, TextEvent
from cogs.secret_santa_storage import JsonSantaStore

TODAY = dt.date(2026, 12, 1)


@dataclass
class SentMessage:
    user_id: int
    text: str
    html: bool
    keyboard: Optional[Keyboard]
    silent: bool
    message_id: int


class RecordingMessenger(Messenger):
    """Messenger fake: remembers sends, deletions and acknowledgements"""

    def __init__(self):
        self.sent: List[SentMessage] = []
        self.deleted = []
        self.acks = []
        self._next_id = 1000

    async def send_text(self, user_id, text, html=False, keyboard=None, silent=False):
        self._next_id += 1
        self.sent.append(SentMessage(user_id, text, html, keyboard, silent, self._next_id))
        return self._next_id

    async def delete_message(self, user_id, message_id):
        self.deleted.append((user_id, message_id))

    async def acknowledge_callback(self, callback_id, text=None, alert=False):
        self.acks.append((callback_id, text, alert))

    def texts_for(self, user_id: int) -> List[str]:
        return [m.text for m in self.sent if m.user_id == user_id]

    def last_for(self, user_id: int) -> Optional[SentMessage]:
        messages = [m for m in self.sent if m.user_id == user_id]
        return messages[-1] if messages else None

    def clear(self):
        self.sent.clear()
        self.deleted.clear()
        self.acks.clear()


def text_event(user_id: int, text: str, name: Optional[str] = None, locale: Optional[str] = None) -> TextEvent:
    return TextEvent(sender_id=user_id, display_name=name or f"User{user_id}", text=text, locale=locale)


_callback_counter = [0]


def callback_event(user_id: int, data: str, message_id: Optional[int] = None) -> CallbackEvent:
    _callback_counter[0] += 1
    return CallbackEvent(
        sender_id=user_id,
        callback_id=f"cb{_callback_counter[0]}",
        data=data,
        message_id=message_id,
        display_name=f"User{user_id}",
    )


def make_recruiting_game(store: JsonSantaStore, creator_id: int, member_ids: List[int],
                         start: Optional[dt.date] = None, end: Optional[dt.date] = None,
                         name: str = "Office Party"):
    """Create a RECRUITING game with registered participants and one-line wishlists"""
    store.register_player(creator_id, f"Player{creator_id}")
    game = store.create_game(creator_id, name)
    store.update_game_dates(game.game_id, start or TODAY + dt.timedelta(days=1), end or TODAY + dt.timedelta(days=8))
    for user_id in [creator_id] + list(member_ids):
        player, _ = store.register_player(user_id, f"Player{user_id}")
        store.add_participant(game.game_id, player)
        store.update_wishlist(game.game_id, user_id, f"Gift for {user_id}")
    store.issue_invite_code(game.game_id)
    return store.find_game(game.game_id)


@pytest.fixture
def store(tmp_path):
    return JsonSantaStore(tmp_path / "data")


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def context(store):
    ctx = FlowContext(store, today=lambda: TODAY)
    ctx.init()
    return ctx


@pytest.fixture
def flow(context, messenger):
    return SantaFlow(context, messenger)
