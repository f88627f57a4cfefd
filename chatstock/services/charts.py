from __future__ import annotations

import threading
from datetime import datetime, timezone, tzinfo
from io import BytesIO
from typing import Iterable

import matplotlib
from discord import File
from matplotlib import dates as mdates
from matplotlib import pyplot as plt

matplotlib.use("Agg")

# pyplot keeps global figure state; commands render from worker threads.
_RENDER_LOCK = threading.Lock()


def build_price_history_chart(
    *,
    username: str,
    history: Iterable[dict],
    tz: tzinfo = timezone.utc,
) -> File:
    points = sorted(
        ((float(row["timestamp"]), float(row["price"])) for row in history),
        key=lambda point: point[0],
    )
    x_values = [datetime.fromtimestamp(ts, tz=tz) for ts, _price in points]
    y_values = [price for _ts, price in points]

    with _RENDER_LOCK:
        return _render(username, x_values, y_values, tz)


def _render(username: str, x_values: list[datetime], y_values: list[float], tz: tzinfo) -> File:
    fig, ax = plt.subplots(figsize=(8.4, 4.8))
    if y_values:
        rising = y_values[-1] >= y_values[0]
        color = "#2ecc71" if rising else "#e74c3c"
        ax.plot(x_values, y_values, color=color, linewidth=2.2, marker="o", markersize=3)
        ax.fill_between(x_values, y_values, min(y_values), color=color, alpha=0.12)
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%m-%d %H:%M", tz=tz))
        fig.autofmt_xdate()
        change = y_values[-1] - y_values[0]
        pct = (change / y_values[0] * 100.0) if y_values[0] else 0.0
        summary = f"last={y_values[-1]:.2f}  high={max(y_values):.2f}  low={min(y_values):.2f}  change={change:+.2f} ({pct:+.2f}%)"
    else:
        ax.text(0.5, 0.5, "No price history yet", ha="center", va="center", transform=ax.transAxes)
        summary = "points=0"
    ax.set_title(f"{username} Stock Price")
    ax.set_xlabel("Time")
    ax.set_ylabel("Price")
    ax.grid(True, alpha=0.2)
    fig.text(
        0.02,
        0.01,
        summary,
        transform=fig.transFigure,
        va="bottom",
        ha="left",
        fontsize=9,
        color="#444444",
        bbox={"boxstyle": "round,pad=0.25", "facecolor": "#ffffffcc", "edgecolor": "#cccccc"},
    )

    buf = BytesIO()
    fig.tight_layout(rect=(0, 0.04, 1, 0.98))
    fig.savefig(buf, format="png", dpi=140)
    plt.close(fig)
    buf.seek(0)
    safe_name = "".join(ch for ch in username.lower() if ch.isalnum()) or "stock"
    return File(buf, filename=f"{safe_name}_price_history.png")
