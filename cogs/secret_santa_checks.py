"""
Secret Santa Checks Module - Permission Checks and Author Helpers

RESPONSIBILITIES:
- Moderator check for the operator-facing slash commands
- Display name / locale extraction from Discord authors and interactions
"""

from __future__ import annotations

from typing import Optional

import disnake
from disnake.ext import commands


def _resolve_member(inter: disnake.Interaction) -> Optional[disnake.Member]:
    """Member object of the interaction author, or None outside a guild"""
    if not inter.guild:
        return None
    if isinstance(inter.author, disnake.Member):
        return inter.author
    return inter.guild.get_member(inter.author.id)


def is_moderator(inter: disnake.Interaction) -> bool:
    member = _resolve_member(inter)
    if member is None:
        return False

    if member.guild_permissions.administrator:
        return True

    mod_role_id = getattr(getattr(inter.bot, "config", None), "DISCORD_MODERATOR_ROLE_ID", 0)
    return bool(mod_role_id) and any(role.id == mod_role_id for role in member.roles)


def mod_check():
    """Allow administrators and holders of the configured moderator role (guild only)"""
    async def predicate(inter: disnake.ApplicationCommandInteraction):
        return is_moderator(inter)

    return commands.check(predicate)


def safe_display_name(author: disnake.User | disnake.Member) -> str:
    """
    Name to register a player under.
    Members use their guild display name, plain users their global name.
    """
    if isinstance(author, disnake.Member):
        return author.display_name
    return getattr(author, "global_name", None) or author.name


def interaction_locale(inter: disnake.Interaction) -> Optional[str]:
    """Client locale of an interaction as a plain code ("en-US", "uk")"""
    locale = getattr(inter, "locale", None)
    if locale is None:
        return None
    return str(getattr(locale, "value", locale))
