"""
Secret Santa Cog - Conversational Gift Exchange Games in DMs

FEATURES:
- 🎄 Anyone can create a game in DMs (name, start/end dates, own wishlist)
- 🔗 Invite code per game; friends join with /start join_<CODE>
- 🎲 Derangement pairing on the start date (or on demand by the creator)
- 💌 Anonymous messages from a Santa to their giftee
- 🌐 Six interface languages (ru, en, cs, uk, uz, kk)

HOW USERS TALK TO THE BOT:
- Plain DM text (including the reply-keyboard buttons, which resend their label)
- Inline buttons (routed by custom_id: view_game_<id>, start_now_<id>, ...)

COMMANDS:
- /santa start - Open the main menu in DMs
- /santa join [code] - Join a game by invite code
- /santa stats - Player and game counts (moderator)

DATA STORAGE:
- <SANTA_DATA_DIR>/santa_state.json - Players, games, conversation states
- <SANTA_DATA_DIR>/santa_state.backup - Written if the main save fails
"""

import asyncio
from pathlib import Path

import disnake
from disnake.ext import commands

from .secret_santa_checks import interaction_locale, mod_check, safe_display_name
from .secret_santa_flow import BOT_USERNAME_SETTING, FlowContext, JOIN_PREFIX, SantaFlow, START_COMMAND
from .secret_santa_i18n import Strings
from .secret_santa_messenger import REPLY_BUTTON_PREFIX, DiscordMessenger
from .secret_santa_models import CallbackEvent, Language, TextEvent
from .secret_santa_scheduler import LifecycleScheduler
from .secret_santa_storage import JsonSantaStore


class SecretSantaCog(commands.Cog):
    """Secret Santa games driven through direct messages"""

    def __init__(self, bot):
        self.bot = bot
        self.logger = bot.logger.getChild("santa")
        config = bot.config

        Strings.preload_all()

        self.store = JsonSantaStore(Path(config.SANTA_DATA_DIR), logger=self.logger.getChild("store"))
        self.context = FlowContext(self.store, default_language=Language.from_code(config.SANTA_DEFAULT_LANGUAGE))
        self.context.init()

        self.messenger = DiscordMessenger(bot, logger=self.logger.getChild("messenger"))
        self.flow = SantaFlow(self.context, self.messenger, logger=self.logger.getChild("flow"))
        self.scheduler = LifecycleScheduler(
            self.flow,
            interval=config.SANTA_SCHEDULER_INTERVAL,
            logger=self.logger.getChild("scheduler"),
        )
        self._unloaded = False

        self.logger.info(f"Secret Santa cog initialized ({len(self.context.states)} open conversations)")

    async def cog_load(self):
        """Start the lifecycle scheduler"""
        self.scheduler.start()
        self.logger.info("Secret Santa cog loaded")

        if hasattr(self.bot, 'send_to_discord_log'):
            await self.bot.send_to_discord_log("🎄 Secret Santa cog loaded successfully", "SUCCESS")

    def cog_unload(self):
        """Flush conversation states and stop the scheduler"""
        if self._unloaded:
            return
        self._unloaded = True
        self.logger.info("Unloading Secret Santa cog...")

        self.context.close()

        try:
            loop = asyncio.get_event_loop()
            if loop.is_running():
                loop.create_task(self.scheduler.stop())
            else:
                self.logger.info("Secret Santa cog unloaded (sync)")
        except RuntimeError:
            self.logger.info("Secret Santa cog unloaded (no loop)")

    async def _dispatch_text(self, user: disnake.abc.User, text: str, locale=None):
        event = TextEvent(
            sender_id=user.id,
            display_name=safe_display_name(user),
            text=text,
            handle=user.name,
            locale=locale,
        )
        try:
            await self.flow.handle_text(event)
        except Exception as e:
            self.logger.error(f"Error handling message from {user.id}: {e}", exc_info=True)

    # ============ LISTENERS ============

    @commands.Cog.listener()
    async def on_ready(self):
        """Remember the bot's name for invite instructions"""
        if self.bot.user:
            self.store.set_setting(BOT_USERNAME_SETTING, self.bot.user.name)

    @commands.Cog.listener()
    async def on_message(self, message: disnake.Message):
        """Plain DM text drives the conversation"""
        if message.author.bot or message.guild is not None:
            return
        if not message.content:
            return
        await self._dispatch_text(message.author, message.content)

    @commands.Cog.listener()
    async def on_button_click(self, inter: disnake.MessageInteraction):
        """Route clicks on the buttons the messenger attached to DMs"""
        if inter.guild is not None:
            return

        custom_id = inter.component.custom_id or ""
        locale = interaction_locale(inter)

        if custom_id.startswith(REPLY_BUTTON_PREFIX):
            await inter.response.defer()
            await self._dispatch_text(inter.author, custom_id[len(REPLY_BUTTON_PREFIX):], locale)
            return

        callback_id = self.messenger.register_interaction(inter)
        # Defer right away; starting a game can take longer than Discord's 3s window
        await inter.response.defer()

        event = CallbackEvent(
            sender_id=inter.author.id,
            callback_id=callback_id,
            data=custom_id,
            message_id=inter.message.id if inter.message else None,
            display_name=safe_display_name(inter.author),
            handle=inter.author.name,
            locale=locale,
        )
        try:
            await self.flow.handle_callback(event)
        except Exception as e:
            self.logger.error(f"Error handling button {custom_id!r} from {inter.author.id}: {e}", exc_info=True)
        finally:
            await self.messenger.release_interaction(callback_id)

    # ============ SLASH COMMANDS ============

    @commands.slash_command(name="santa")
    async def santa_root(self, inter: disnake.ApplicationCommandInteraction):
        """Secret Santa commands"""
        pass

    @santa_root.sub_command(name="start", description="Open the Secret Santa menu in your DMs")
    async def santa_start(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.send_message("📬 Check your DMs!", ephemeral=True)
        await self._dispatch_text(inter.author, START_COMMAND, interaction_locale(inter))

    @santa_root.sub_command(name="join", description="Join a Secret Santa game by invite code")
    async def santa_join(
        self,
        inter: disnake.ApplicationCommandInteraction,
        code: str = commands.Param(description="Invite code from the game creator", min_length=1, max_length=20),
    ):
        await inter.response.send_message("📬 Check your DMs!", ephemeral=True)
        text = f"{START_COMMAND} {JOIN_PREFIX}{code.strip()}"
        await self._dispatch_text(inter.author, text, interaction_locale(inter))

    @santa_root.sub_command(name="stats", description="Secret Santa player and game counts")
    @mod_check()
    async def santa_stats(self, inter: disnake.ApplicationCommandInteraction):
        stats = self.store.stats()

        embed = disnake.Embed(title="🎄 Secret Santa Stats", color=disnake.Color.green())
        embed.add_field(name="👥 Players", value=str(stats.player_count), inline=True)
        embed.add_field(name="📨 Recruiting", value=str(stats.recruiting_games), inline=True)
        embed.add_field(name="🎁 In progress", value=str(stats.active_games), inline=True)
        embed.add_field(name="✅ Finished", value=str(stats.finished_games), inline=True)
        embed.set_footer(text=f"Open conversations: {len(self.context.states)}")

        await inter.response.send_message(embed=embed, ephemeral=True)

    async def cog_slash_command_error(self, inter: disnake.ApplicationCommandInteraction, error: Exception):
        if isinstance(error, commands.CheckFailure):
            self.logger.warning(f"{inter.author} was denied /{inter.application_command.qualified_name}")
            await inter.response.send_message("❌ You don't have permission to use this command", ephemeral=True)
            return
        self.logger.error(f"Slash command error: {error}", exc_info=error)
        if not inter.response.is_done():
            await inter.response.send_message("❌ Something went wrong", ephemeral=True)


def setup(bot):
    """Setup the cog"""
    bot.add_cog(SecretSantaCog(bot))
