import asyncio
from typing import TYPE_CHECKING

from discord import Interaction, app_commands

if TYPE_CHECKING:
    from chatstock.app import ChatStockBot


def setup_marketevent(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="marketevent", description="Admin: move every price in this server for a while.")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(
        percent="Price change in percent, e.g. 15 or -20. Use 0 to end the current event.",
        minutes="How long the event lasts.",
        name="Event name shown to players.",
    )
    async def marketevent(
        interaction: Interaction,
        percent: app_commands.Range[float, -100.0, 500.0],
        minutes: app_commands.Range[int, 1, 1440] = 30,
        name: str = "Market Event",
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(
                "Please use this command in a server.",
                ephemeral=True,
            )
            return

        if percent == 0:
            ended = await asyncio.to_thread(bot.events.end_event, interaction.guild.id)
            if ended is None:
                await interaction.response.send_message("No market event is running.", ephemeral=True)
            else:
                await interaction.response.send_message(f"**{ended.event_name}** has ended.")
            return

        event = await asyncio.to_thread(bot.events.start_event, interaction.guild.id, percent, minutes, name)
        await interaction.response.send_message(
            f"📈 **{event.event_name}**: every price moves {event.percent_change:+.1f}% for {minutes} min."
        )
