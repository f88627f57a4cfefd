import asyncio
from typing import TYPE_CHECKING

from discord import ButtonStyle, Interaction, Member, app_commands
from discord.ui import Button, View, button

from chatstock.services.market import COOLDOWN_DENIED, INSUFFICIENT_SHARES
from chatstock.services.trading import (
    INSUFFICIENT_FUNDS,
    INVALID_RATIO,
    INVALID_SHARES,
    PRICE_TOO_HIGH,
    PRICE_TOO_LOW,
    SPLIT_COOLDOWN,
    SPLITS_DISABLED,
    STALE_QUOTE,
    SplitResult,
    TradeResult,
    TradingDesk,
)

if TYPE_CHECKING:
    from chatstock.app import ChatStockBot

GUILD_ONLY_MESSAGE = "Please use this command in a server."


def describe_trade_failure(result: TradeResult) -> str:
    reason = result.reason
    if reason == INVALID_SHARES:
        return "Share count must be at least 1."
    if reason == INSUFFICIENT_FUNDS:
        balance = result.balance or 0.0
        return f"Not enough funds: {result.shares} shares cost **${result.gross:.2f}** but you have ${balance:.2f}."
    if reason == INSUFFICIENT_SHARES:
        return f"You don't own {result.shares} shares of that stock."
    if reason == COOLDOWN_DENIED:
        return f"Some of those shares were bought too recently. Try again in {result.wait_minutes} min."
    if reason == STALE_QUOTE:
        return f"The price moved to **${result.price:.2f}** before your order went through. Nothing was traded."
    return "That trade could not be completed."


def describe_split_failure(result: SplitResult) -> str:
    reason = result.reason
    if reason == INVALID_RATIO:
        return "Ratio must look like `2:1` (forward) or `1:2` (reverse)."
    if reason == SPLITS_DISABLED:
        return "That kind of split is disabled in this server."
    if reason == PRICE_TOO_LOW:
        return f"Price **${result.price_before:.2f}** is too low for a forward split."
    if reason == PRICE_TOO_HIGH:
        return f"Price **${result.price_before:.2f}** is too high for a reverse split."
    if reason == SPLIT_COOLDOWN:
        return f"This stock was split recently. Try again in {result.wait_hours} h."
    return "That split could not be completed."


def format_buy_quote(name: str, shares: int, price: float) -> str:
    return (
        f"Confirm buy of {shares} x **{name}** @ **${price:.2f}**:\n"
        f"Total: **${price * shares:.2f}**"
    )


def format_sell_preview(name: str, preview: TradeResult) -> str:
    lines = [
        f"Confirm sell of {preview.shares} x **{name}** @ **${preview.price:.2f}**:",
        f"Gross: ${preview.gross:.2f}",
    ]
    if preview.tax > 0:
        short_term = sum(line.tax for line in preview.tax_breakdown if line.is_short_term)
        lines.append(f"Capital gains tax: -${preview.tax} (short-term: ${short_term})")
    lines.append(f"Net: **${preview.net:.2f}**")
    return "\n".join(lines)


def format_trade_receipt(side: str, name: str, result: TradeResult) -> str:
    if side == "buy":
        text = f"Bought {result.shares} x **{name}** @ ${result.price:.2f} for **${result.gross:.2f}**."
    else:
        text = f"Sold {result.shares} x **{name}** @ ${result.price:.2f} for **${result.net:.2f}**"
        text += f" after ${result.tax} tax." if result.tax > 0 else "."
    if result.balance is not None:
        text += f"\nBalance: ${result.balance:.2f}"
    return text


class TradeConfirmView(View):
    def __init__(
        self,
        desk: TradingDesk,
        *,
        side: str,
        owner_id: int,
        guild_id: int,
        stock_user_id: int,
        stock_name: str,
        shares: int,
        quoted_price: float,
    ) -> None:
        super().__init__(timeout=120)
        self.desk = desk
        self.side = side
        self.owner_id = owner_id
        self.guild_id = guild_id
        self.stock_user_id = stock_user_id
        self.stock_name = stock_name
        self.shares = shares
        self.quoted_price = quoted_price

    async def interaction_check(self, interaction: Interaction) -> bool:
        if interaction.user.id != self.owner_id:
            await interaction.response.send_message("This order isn't yours.", ephemeral=True)
            return False
        return True

    @button(label="Confirm", style=ButtonStyle.green)
    async def confirm(self, interaction: Interaction, _button: Button) -> None:
        trade = self.desk.buy if self.side == "buy" else self.desk.sell
        result = await asyncio.to_thread(
            trade,
            self.guild_id,
            self.owner_id,
            self.stock_user_id,
            self.shares,
            expected_price=self.quoted_price,
        )
        self.stop()
        if result.ok:
            message = format_trade_receipt(self.side, self.stock_name, result)
        else:
            message = describe_trade_failure(result)
        await interaction.response.edit_message(content=message, view=None)

    @button(label="Cancel", style=ButtonStyle.grey)
    async def cancel(self, interaction: Interaction, _button: Button) -> None:
        self.stop()
        await interaction.response.edit_message(content="Order cancelled.", view=None)


def setup_buy(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="buy", description="Buy shares of a member's stock.")
    @app_commands.describe(member="Whose stock to buy.", shares="How many shares.")
    async def buy(
        interaction: Interaction,
        member: Member,
        shares: app_commands.Range[int, 1, 10_000] = 1,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        if member.bot:
            await interaction.response.send_message("Bots don't have stock.", ephemeral=True)
            return
        price = await asyncio.to_thread(bot.valuation.calculate_stock_price, member.id, interaction.guild.id)
        view = TradeConfirmView(
            bot.desk,
            side="buy",
            owner_id=interaction.user.id,
            guild_id=interaction.guild.id,
            stock_user_id=member.id,
            stock_name=member.display_name,
            shares=shares,
            quoted_price=price,
        )
        await interaction.response.send_message(
            format_buy_quote(member.display_name, shares, price),
            view=view,
            ephemeral=True,
        )


def setup_sell(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="sell", description="Sell shares of a member's stock.")
    @app_commands.describe(member="Whose stock to sell.", shares="How many shares.")
    async def sell(
        interaction: Interaction,
        member: Member,
        shares: app_commands.Range[int, 1, 10_000] = 1,
    ) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        preview = await asyncio.to_thread(
            bot.desk.preview_sell,
            interaction.guild.id,
            interaction.user.id,
            member.id,
            shares,
        )
        if not preview.ok:
            await interaction.response.send_message(describe_trade_failure(preview), ephemeral=True)
            return
        view = TradeConfirmView(
            bot.desk,
            side="sell",
            owner_id=interaction.user.id,
            guild_id=interaction.guild.id,
            stock_user_id=member.id,
            stock_name=member.display_name,
            shares=shares,
            quoted_price=preview.price,
        )
        await interaction.response.send_message(
            format_sell_preview(member.display_name, preview),
            view=view,
            ephemeral=True,
        )


def setup_split(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    @tree.command(name="split", description="Admin: split a member's stock.")
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    @app_commands.describe(member="Whose stock to split.", ratio="`2:1` for a forward split, `1:2` for a reverse split.")
    async def split(interaction: Interaction, member: Member, ratio: str) -> None:
        if interaction.guild is None:
            await interaction.response.send_message(GUILD_ONLY_MESSAGE, ephemeral=True)
            return
        result = await asyncio.to_thread(bot.desk.split, interaction.guild.id, member.id, ratio)
        if not result.ok:
            await interaction.response.send_message(describe_split_failure(result), ephemeral=True)
            return
        await interaction.response.send_message(
            f"**{member.display_name}** split {result.ratio}: "
            f"${result.price_before:.2f} -> **${result.price_after:.2f}** "
            f"({result.holders_affected} holders adjusted)."
        )
