import asyncio
from typing import TYPE_CHECKING

from discord import Embed, Interaction, Member, app_commands

from chatstock.services.ranking import get_leaderboard, get_portfolio_rank

if TYPE_CHECKING:
    from chatstock.app import ChatStockBot

MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}


def format_leaderboard(rows: list[dict]) -> str:
    lines: list[str] = []
    for idx, row in enumerate(rows, start=1):
        user_id = int(row["user_id"])
        name = str(row.get("username", "")).strip() or f"User {user_id}"
        prefix = MEDALS.get(idx, f"#{idx}")
        lines.append(f"**{prefix}** {name}: `${float(row['price']):.2f}` ({int(row['total_shares'])} shares out)")
    return "\n".join(lines)


def setup_leaderboard(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="leaderboard", description="Show the highest priced stocks.")
    async def leaderboard(interaction: Interaction) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(
                "Please use this command in a server.",
                ephemeral=True,
            )
            return

        rows = await asyncio.to_thread(
            get_leaderboard,
            bot.valuation,
            limit=10,
            guild_id=interaction.guild.id,
            connection_factory=bot.connection_factory,
        )
        if not rows:
            await interaction.response.send_message("No stocks listed yet.")
            return
        embed = Embed(title="Stock Leaderboard", description=format_leaderboard(rows))
        await interaction.response.send_message(embed=embed)


def setup_portfolio(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="portfolio", description="Show where a portfolio ranks by value.")
    @app_commands.describe(member="Whose portfolio to rank. Defaults to you.")
    async def portfolio(interaction: Interaction, member: Member | None = None) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(
                "Please use this command in a server.",
                ephemeral=True,
            )
            return

        target = member or interaction.user
        rank = await asyncio.to_thread(
            get_portfolio_rank,
            bot.valuation,
            target.id,
            guild_id=interaction.guild.id,
            connection_factory=bot.connection_factory,
        )
        if rank is None:
            await interaction.response.send_message(f"{target.display_name} doesn't hold any shares.")
            return
        await interaction.response.send_message(
            f"**{target.display_name}** holds `${rank['value']:.2f}` in stock, "
            f"ranked #{rank['rank']} of {rank['total']}."
        )
