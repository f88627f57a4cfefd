import asyncio
from typing import TYPE_CHECKING, Optional

from discord import Embed, File, Interaction, Member, app_commands
from discord.errors import NotFound

from chatstock.db import connection_scope, get_connection, get_price_history
from chatstock.db.database import ConnectionFactory
from chatstock.services.charts import build_price_history_chart
from chatstock.services.ranking import get_stock_rank
from chatstock.services.valuation import StockValuation

if TYPE_CHECKING:
    from chatstock.app import ChatStockBot

DEFAULT_POINTS = 50
MAX_POINTS = 200


def build_price_payload(
    valuation: StockValuation,
    *,
    guild_id: int,
    user_id: int,
    display_name: str,
    last: int | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> tuple[Embed | None, File | None, str | None]:
    breakdown = valuation.price_breakdown(user_id, guild_id)
    if breakdown is None:
        return None, None, f"{display_name} has no stock yet. Chatting lists it automatically."

    limit = DEFAULT_POINTS if last is None else max(1, min(int(last), MAX_POINTS))
    with connection_scope(connection_factory) as conn:
        history = get_price_history(conn, user_id, limit)
    rank = get_stock_rank(valuation, user_id, guild_id=guild_id, connection_factory=connection_factory)

    embed = Embed(title=f"{display_name} Stock", description=f"**${breakdown.price:.2f}** per share")
    embed.add_field(name="Shares outstanding", value=str(breakdown.total_shares))
    embed.add_field(name="Streak", value=f"{breakdown.streak.days} days (tier {breakdown.streak.tier})")
    if rank is not None:
        embed.add_field(name="Rank", value=f"#{rank['rank']} of {rank['total']}")
    if breakdown.decay_percent > 0:
        embed.add_field(name="Inactivity decay", value=f"-{breakdown.decay_percent * 100:.0f}%")
    if breakdown.event_multiplier != 1.0:
        embed.add_field(name="Market event", value=f"x{breakdown.event_multiplier:.2f}")

    chart = build_price_history_chart(username=display_name, history=history, tz=valuation.day_policy.tz)
    embed.set_image(url=f"attachment://{chart.filename}")
    return embed, chart, None


def setup_price(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="price", description="Show a member's stock price and chart.")
    @app_commands.describe(
        member="Whose stock to show. Defaults to you.",
        last="How many latest price points to include.",
    )
    async def price(
        interaction: Interaction,
        member: Member | None = None,
        last: Optional[app_commands.Range[int, 1, MAX_POINTS]] = None,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(
                "Please use this command in a server.",
                ephemeral=True,
            )
            return

        target = member or interaction.user
        try:
            await interaction.response.defer(thinking=True)
        except NotFound:
            return

        embed, chart, error = await asyncio.to_thread(
            build_price_payload,
            bot.valuation,
            guild_id=interaction.guild.id,
            user_id=target.id,
            display_name=target.display_name,
            last=last,
            connection_factory=bot.connection_factory,
        )
        if error is not None:
            await interaction.followup.send(error, ephemeral=True)
            return
        await interaction.followup.send(embed=embed, file=chart)
