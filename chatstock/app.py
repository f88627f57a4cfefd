from __future__ import annotations

import asyncio
import logging
import os

import discord

from chatstock.commands import setup_commands
from chatstock.config.runtime import GuildSettingsProvider, ensure_app_config_defaults, get_app_config
from chatstock.config import TOKEN
from chatstock.db import connection_scope, get_connection, init_db, log_price
from chatstock.db.database import ConnectionFactory
from chatstock.services.activity import record_activity
from chatstock.services.events import MarketEventBoard
from chatstock.services.market import MarketProtection
from chatstock.services.streaks import StreakResult
from chatstock.services.trading import TradingDesk
from chatstock.services.valuation import StockValuation

logger = logging.getLogger(__name__)


class ChatStockBot(discord.Client):
    def __init__(self, connection_factory: ConnectionFactory = get_connection) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        super().__init__(intents=intents)
        self.connection_factory = connection_factory
        self.settings = GuildSettingsProvider(connection_factory)
        self.market = MarketProtection(self.settings, connection_factory=connection_factory)
        self.events = MarketEventBoard(connection_factory=connection_factory)
        self.valuation = StockValuation(
            self.settings,
            share_counter=self.market.get_effective_share_count,
            event_multiplier=self.events.get_multiplier,
            connection_factory=connection_factory,
        )
        self.desk = TradingDesk(
            self.valuation,
            self.market,
            self.settings,
            connection_factory=connection_factory,
        )
        self.tree = discord.app_commands.CommandTree(self)
        self._synced = False
        self._maintenance_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        setup_commands(self.tree, self)
        await asyncio.to_thread(init_db, self.connection_factory)
        await asyncio.to_thread(ensure_app_config_defaults, self.connection_factory)
        await asyncio.to_thread(self.events.restore)

    async def on_ready(self) -> None:
        logger.info("Logged in as %s in %s guilds", self.user, len(self.guilds))
        if not self._synced:
            # Guild sync makes commands show up immediately.
            for guild in self.guilds:
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
            self._synced = True
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        try:
            streak = await asyncio.to_thread(
                self._count_message,
                message.guild.id,
                message.author.id,
                message.author.display_name,
            )
        except Exception:
            logger.exception("Failed to record activity for user %s", message.author.id)
            return

        if streak.expired:
            text = (
                f"{message.author.mention} your max streak bonus has run its course "
                "and has been reset. Keep chatting to build it back up!"
            )
        elif streak.new_tier:
            text = (
                f"{message.author.mention} reached streak tier {streak.tier} "
                f"({streak.days} days, +{streak.bonus * 100:.0f}% price bonus)!"
            )
        else:
            return
        try:
            await message.channel.send(text)
        except (discord.Forbidden, discord.HTTPException):
            logger.warning("Could not announce streak change in channel %s", message.channel.id)

    def _count_message(self, guild_id: int, user_id: int, username: str) -> StreakResult:
        user = record_activity(user_id, username, connection_factory=self.connection_factory)
        streak = self.valuation.get_streak_info(user_id)
        log_every = int(get_app_config("PRICE_LOG_EVERY", connection_factory=self.connection_factory))
        if int(user["total_messages"]) % log_every == 0:
            with connection_scope(self.connection_factory) as conn:
                price = self.valuation.calculate_stock_price(user_id, guild_id, conn=conn)
                log_price(conn, user_id, price, float(user["last_message_time"]))
        return streak

    async def _maintenance_loop(self) -> None:
        while not self.is_closed():
            interval = int(
                await asyncio.to_thread(
                    get_app_config,
                    "MAINTENANCE_INTERVAL",
                    connection_factory=self.connection_factory,
                )
            )
            try:
                await asyncio.to_thread(self.market.cleanup_old_impacts)
                await asyncio.to_thread(self.events.expire_due)
            except Exception:
                logger.exception("Maintenance pass failed")
            await asyncio.sleep(interval)


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("CHATSTOCK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not TOKEN:
        raise SystemExit("Set CHATSTOCK_TOKEN or create a TOKEN file before starting the bot.")
    bot = ChatStockBot()
    bot.run(TOKEN, log_handler=None)


if __name__ == "__main__":
    main()
