from chatstock.db.database import connection_scope, get_connection, init_db
from chatstock.db.repositories import (
    add_activity_event,
    add_pending_impact,
    add_purchase_lot,
    add_shares,
    add_to_balance,
    create_user,
    get_activity_timestamps,
    get_all_users,
    get_balance,
    get_holding,
    get_portfolio,
    get_price_history,
    get_price_history_since,
    get_purchase_lots,
    get_state_value,
    get_stock_holders,
    get_total_shares,
    get_user,
    log_price,
    log_transaction,
    set_shares,
    set_state_value,
)

__all__ = [
    "add_activity_event",
    "add_pending_impact",
    "add_purchase_lot",
    "add_shares",
    "add_to_balance",
    "connection_scope",
    "create_user",
    "get_activity_timestamps",
    "get_all_users",
    "get_balance",
    "get_connection",
    "get_holding",
    "get_portfolio",
    "get_price_history",
    "get_price_history_since",
    "get_purchase_lots",
    "get_state_value",
    "get_stock_holders",
    "get_total_shares",
    "get_user",
    "init_db",
    "log_price",
    "log_transaction",
    "set_shares",
    "set_state_value",
]
