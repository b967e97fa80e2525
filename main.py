import asyncio
import logging
import logging.handlers
import os
import signal
import sys
import time
from typing import Optional

import disnake
from disnake.ext import commands
from dotenv import load_dotenv

load_dotenv("config.env", override=True)


# ============ CONFIG ============
class Config:
    """Load config with validation and defaults"""
    _required = {
        "DISCORD_TOKEN": (str, None),
    }
    _optional = {
        "DISCORD_LOG_CHANNEL_ID": (int, 0),
        "DISCORD_MODERATOR_ROLE_ID": (int, 0),
        "DEBUG_MODE": (bool, False),
        "LOG_LEVEL": (str, "INFO"),
        "SANTA_DATA_DIR": (str, "data"),
        "SANTA_DEFAULT_LANGUAGE": (str, "en"),
        "SANTA_SCHEDULER_INTERVAL": (int, 5),
    }

    _int_ranges = {
        "SANTA_SCHEDULER_INTERVAL": (1, 3600),
    }

    def __init__(self):
        self.data = {}
        self._load()

    def _load(self):
        missing = []
        for key, (cast_type, _) in self._required.items():
            val = os.getenv(key)
            if not val:
                missing.append(key)
                continue
            self.data[key] = val.strip() if cast_type == str else cast_type(val)

        if missing:
            print(f"Fatal: Missing env vars: {', '.join(missing)}")
            raise RuntimeError(f"Missing config: {missing}")

        for key, (cast_type, default) in self._optional.items():
            val = os.getenv(key, default)
            if cast_type == bool:
                self.data[key] = str(val).lower() == "true"
            elif cast_type == int:
                self.data[key] = int(val or 0)
                self._validate_int_config(key, self.data[key])
            else:
                self.data[key] = str(val).strip()

        if self.data["DEBUG_MODE"]:
            self.data["LOG_LEVEL"] = "DEBUG"

    def _validate_int_config(self, key: str, value: int):
        """Warn when an integer setting is outside its sane range"""
        if key in self._int_ranges:
            min_val, max_val = self._int_ranges[key]
            if not (min_val <= value <= max_val):
                print(f"Warning: {key}={value} is outside recommended range ({min_val}-{max_val})")

    def __getattr__(self, name: str):
        key = name.upper()
        if key in self.data:
            return self.data[key]
        raise AttributeError(f"Config missing: {key}")


# ============ DISCORD LOGGING ============
class DiscordLogHandler(logging.Handler):
    """Forward WARNING+ records to a Discord log channel"""

    def __init__(self, bot=None, log_channel_id: int = 0):
        super().__init__()
        self.bot = bot
        self.log_channel_id = log_channel_id
        self.message_queue: asyncio.Queue = asyncio.Queue(maxsize=50)
        self.sender_task: Optional[asyncio.Task] = None
        self._last_message = {}

    def set_bot(self, bot):
        self.bot = bot
        if bot and self.log_channel_id and not self.sender_task:
            self.sender_task = asyncio.create_task(self._message_sender())

    def emit(self, record):
        if not self.bot or not self.log_channel_id or record.levelno < logging.WARNING:
            return

        try:
            # Same message at most once a minute
            msg_key = f"{record.levelname}:{record.getMessage()[:50]}"
            now = time.time()
            if now - self._last_message.get(msg_key, 0) < 60:
                return
            self._last_message[msg_key] = now

            emoji = {"WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🚨"}.get(record.levelname, "ℹ️")
            message = f"{emoji} **{record.levelname}** | {record.name}\n```\n{record.getMessage()}\n```"
            if len(message) > 1900:
                message = message[:1900] + "...\n```"

            self.message_queue.put_nowait(message)
        except asyncio.QueueFull:
            pass
        except Exception:
            self.handleError(record)

    async def _message_sender(self):
        while True:
            try:
                message = await self.message_queue.get()
                channel = self.bot.get_channel(self.log_channel_id)
                if channel:
                    await channel.send(message)
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                break
            except disnake.HTTPException:
                continue

    def close(self):
        if self.sender_task:
            self.sender_task.cancel()
        super().close()


# ============ SETUP ============
def setup_logging(config: Config) -> tuple[logging.Logger, DiscordLogHandler]:
    logger = logging.getLogger("bot")
    logger.setLevel(config.LOG_LEVEL)

    # Prevent duplicate handlers
    if logger.handlers:
        discord_handler = next((h for h in logger.handlers if isinstance(h, DiscordLogHandler)), None)
        return logger, discord_handler

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.handlers.RotatingFileHandler(
        "bot.log", maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    discord_handler = DiscordLogHandler(log_channel_id=config.DISCORD_LOG_CHANNEL_ID)
    discord_handler.setLevel(logging.WARNING)
    logger.addHandler(discord_handler)

    return logger, discord_handler


try:
    config = Config()
except RuntimeError as e:
    print(f"Fatal: {e}")
    sys.exit(1)

logger, discord_handler = setup_logging(config)

# DMs and button clicks are all the bot needs
intents = disnake.Intents.default()
intents.dm_messages = True
bot = commands.InteractionBot(intents=intents)
bot.config = config
bot.logger = logger
bot.discord_handler = discord_handler
bot.ready_once = False


async def send_to_discord_log(message: str, level: str = "INFO"):
    """Send a message to the Discord log channel"""
    if not bot.ready_once or not config.DISCORD_LOG_CHANNEL_ID:
        return

    log_channel = bot.get_channel(config.DISCORD_LOG_CHANNEL_ID)
    if not log_channel:
        return

    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🚨", "SUCCESS": "✅"}.get(level, "ℹ️")
    formatted_message = f"{emoji} **{level}** | {message}"
    if len(formatted_message) > 2000:
        formatted_message = formatted_message[:1997] + "..."

    try:
        await log_channel.send(formatted_message)
    except disnake.HTTPException as e:
        logger.debug(f"Failed to send Discord log message: {e}")


bot.send_to_discord_log = send_to_discord_log


@bot.event
async def on_ready():
    if bot.ready_once:
        return
    logger.info(f"Logged in as {bot.user}")

    if discord_handler:
        discord_handler.set_bot(bot)
        logger.info("Discord logging handler connected")

    bot.ready_once = True
    await send_to_discord_log(f"🤖 **Bot Online** | {bot.user.name} is ready!", "SUCCESS")


@bot.event
async def on_disconnect():
    logger.warning("Bot disconnected from Discord")


@bot.event
async def on_resumed():
    logger.info("Bot reconnected to Discord")


@bot.event
async def on_error(event, *args, **kwargs):
    logger.error(f"Error in {event}", exc_info=True)


async def graceful_shutdown():
    """Unload cogs (flushes Secret Santa state) and close the connection"""
    logger.info("Shutting down...")

    for cog_name in list(bot.cogs.keys()):
        try:
            cog = bot.get_cog(cog_name)
            if cog and hasattr(cog, 'cog_unload'):
                cog.cog_unload()
            bot.remove_cog(cog_name)
        except Exception as e:
            logger.debug(f"Cog unload error for {cog_name}: {e}")

    # Let scheduled async cleanup (scheduler stop) run
    await asyncio.sleep(0.5)

    try:
        await bot.close()
    except Exception as e:
        logger.debug(f"Bot close error: {e}")


def load_cogs() -> int:
    """Load cogs and return count of successfully loaded cogs"""
    cogs = ["cogs.SecretSanta_cog"]
    loaded = 0
    for cog in cogs:
        try:
            bot.load_extension(cog)
            logger.info(f"Loaded {cog}")
            loaded += 1
        except Exception as e:
            logger.error(f"Failed to load {cog}: {e}", exc_info=True)
    return loaded


def handle_signal(signum, frame):
    logger.info(f"Received signal {signum}")
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            loop.create_task(graceful_shutdown())
        else:
            asyncio.run(graceful_shutdown())
    except RuntimeError:
        asyncio.run(graceful_shutdown())


if __name__ == "__main__":
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    logger.info("Starting bot...")

    num_loaded = load_cogs()
    if num_loaded == 0:
        logger.critical("No cogs loaded!")
        sys.exit(1)

    max_retries = 5
    retry_count = 0

    while retry_count < max_retries:
        try:
            bot.run(config.DISCORD_TOKEN, reconnect=True)
            break
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            break
        except Exception as e:
            retry_count += 1
            logger.critical(f"Bot failed (attempt {retry_count}/{max_retries}): {e}", exc_info=True)

            if retry_count < max_retries:
                wait_time = min(30, 5 * retry_count)
                logger.info(f"Retrying in {wait_time} seconds...")
                time.sleep(wait_time)
            else:
                logger.critical("Max retries exceeded. Bot will not restart.")
