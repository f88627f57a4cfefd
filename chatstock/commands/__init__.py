from typing import TYPE_CHECKING

from discord import app_commands

from chatstock.commands.events import setup_marketevent
from chatstock.commands.price import setup_price
from chatstock.commands.ranking import setup_leaderboard, setup_portfolio
from chatstock.commands.trade import setup_buy, setup_sell, setup_split

if TYPE_CHECKING:
    from chatstock.app import ChatStockBot


def setup_commands(tree: app_commands.CommandTree, bot: "ChatStockBot") -> None:
    setup_price(tree, bot)
    setup_buy(tree, bot)
    setup_sell(tree, bot)
    setup_split(tree, bot)
    setup_leaderboard(tree, bot)
    setup_portfolio(tree, bot)
    setup_marketevent(tree, bot)
