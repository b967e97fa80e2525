"""
Secret Santa Messenger Module - Outbound Chat Transport

RESPONSIBILITIES:
- Transport-neutral keyboards (reply buttons / inline buttons)
- Messenger interface the flow controller talks to
- Discord implementation (DMs, button rows, interaction acknowledgement)
- Rendering of the flow's HTML subset into Discord markdown

ISOLATION:
- The flow controller only sees Messenger, Keyboard and Button
- Delivery failures are logged here and never reach the caller
"""

from __future__ import annotations

import html
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import disnake

# Discord hard limits
MAX_MESSAGE_LENGTH = 2000
MAX_BUTTON_LABEL = 80
MAX_ROWS = 5

# custom_id prefix of reply buttons; a click is fed back as a text message
REPLY_BUTTON_PREFIX = "say:"

_TAG_RE = re.compile(r'<a href="([^"]*)">(.*?)</a>|</?[bi]>', re.DOTALL)


@dataclass
class Button:
    label: str
    data: Optional[str] = None


@dataclass
class Keyboard:
    """
    Rows of buttons.

    A reply keyboard (inline=False) holds buttons whose click sends the label
    back as if the user had typed it. An inline keyboard holds buttons that
    carry callback data.
    """
    rows: List[List[Button]] = field(default_factory=list)
    inline: bool = False

    @classmethod
    def columns(cls, buttons: List[Button], columns: int, inline: bool = True) -> "Keyboard":
        rows = [buttons[i:i + columns] for i in range(0, len(buttons), columns)]
        return cls(rows=rows, inline=inline)


class Messenger(ABC):
    """Outbound operations the flow controller needs from the chat transport"""

    @abstractmethod
    async def send_text(self, user_id: int, text: str, html: bool = False,
                        keyboard: Optional[Keyboard] = None, silent: bool = False) -> Optional[int]:
        """Send a private message. Returns the message id, or None if delivery failed."""

    @abstractmethod
    async def delete_message(self, user_id: int, message_id: int): ...

    @abstractmethod
    async def acknowledge_callback(self, callback_id: str, text: Optional[str] = None, alert: bool = False): ...


def _plain(segment: str) -> str:
    return disnake.utils.escape_markdown(html.unescape(segment))


def html_to_markdown(text: str) -> str:
    """
    Render the HTML subset used by the flow (<b>, <i>, <a href>) as Discord
    markdown.

    Text between tags is unescaped and then markdown-escaped, so user text
    can never open a link or change formatting. Links with a "user:<id>"
    target become "name (<@id>)" mentions.
    """
    parts = []
    position = 0
    for match in _TAG_RE.finditer(text):
        parts.append(_plain(text[position:match.start()]))
        position = match.end()

        href, label = match.group(1), match.group(2)
        if href is None:
            parts.append("**" if match.group(0)[-2] == "b" else "*")
        elif href.startswith("user:"):
            parts.append(f"{_plain(label)} (<@{href[len('user:'):]}>)")
        else:
            parts.append(f"[{_plain(label)}]({href})")

    parts.append(_plain(text[position:]))
    return "".join(parts)


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split text into chunks under Discord's limit, preferring line breaks"""
    if len(text) <= limit:
        return [text]

    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def build_components(keyboard: Keyboard) -> List[disnake.ui.ActionRow]:
    """
    Turn a keyboard into action rows of plain buttons.

    The rows are sent as stateless components, so nothing is kept in the
    bot's view store; clicks arrive through the cog's on_button_click
    listener and are routed by custom_id.
    """
    rows = []
    for row in keyboard.rows[:MAX_ROWS]:
        buttons = []
        for button in row:
            if button.data is not None:
                custom_id = button.data
                style = disnake.ButtonStyle.primary
            else:
                custom_id = f"{REPLY_BUTTON_PREFIX}{button.label}"
                style = disnake.ButtonStyle.secondary
            buttons.append(disnake.ui.Button(
                label=button.label[:MAX_BUTTON_LABEL],
                custom_id=custom_id[:100],
                style=style,
            ))
        if buttons:
            rows.append(disnake.ui.ActionRow(*buttons))
    return rows


class DiscordMessenger(Messenger):
    """Messenger that talks to users through Discord DMs"""

    def __init__(self, bot, logger: Optional[logging.Logger] = None):
        self.bot = bot
        self.logger = logger or logging.getLogger("bot.santa.messenger")
        self._pending: Dict[str, disnake.MessageInteraction] = {}

    def register_interaction(self, inter: disnake.MessageInteraction) -> str:
        """Remember a button interaction so the flow can acknowledge it later"""
        callback_id = str(inter.id)
        self._pending[callback_id] = inter
        return callback_id

    async def release_interaction(self, callback_id: str):
        """Acknowledge an interaction the flow left unanswered"""
        if callback_id in self._pending:
            await self.acknowledge_callback(callback_id)

    async def _get_dm_channel(self, user_id: int) -> disnake.DMChannel:
        user = self.bot.get_user(user_id) or await self.bot.fetch_user(user_id)
        return user.dm_channel or await user.create_dm()

    async def send_text(self, user_id: int, text: str, html: bool = False,
                        keyboard: Optional[Keyboard] = None, silent: bool = False) -> Optional[int]:
        content = html_to_markdown(text) if html else text
        chunks = split_message(content)
        kwargs = {}
        if silent:
            kwargs["flags"] = disnake.MessageFlags(suppress_notifications=True)

        try:
            channel = await self._get_dm_channel(user_id)
            message = None
            for index, chunk in enumerate(chunks):
                last = index == len(chunks) - 1
                components = build_components(keyboard) if (keyboard and keyboard.rows and last) else None
                if components:
                    message = await channel.send(chunk, components=components, **kwargs)
                else:
                    message = await channel.send(chunk, **kwargs)
            return message.id if message else None
        except disnake.Forbidden:
            self.logger.warning(f"Cannot DM user {user_id} (DMs closed)")
        except disnake.NotFound:
            self.logger.warning(f"User {user_id} not found")
        except disnake.HTTPException as e:
            self.logger.error(f"Failed to DM {user_id}: {e}")
        return None

    async def delete_message(self, user_id: int, message_id: int):
        try:
            channel = await self._get_dm_channel(user_id)
            await channel.get_partial_message(message_id).delete()
        except disnake.NotFound:
            pass
        except disnake.HTTPException as e:
            self.logger.warning(f"Failed to delete message {message_id} for {user_id}: {e}")

    async def acknowledge_callback(self, callback_id: str, text: Optional[str] = None, alert: bool = False):
        inter = self._pending.pop(callback_id, None)
        if inter is None:
            self.logger.debug(f"No pending interaction {callback_id}")
            return

        content = html_to_markdown(text) if text else None
        if content and alert:
            content = f"⚠️ {content}"

        try:
            if not inter.response.is_done():
                if content:
                    await inter.response.send_message(content, ephemeral=True)
                else:
                    await inter.response.defer()
            elif content:
                await inter.followup.send(content, ephemeral=True)
        except disnake.HTTPException as e:
            self.logger.warning(f"Failed to acknowledge interaction {callback_id}: {e}")
