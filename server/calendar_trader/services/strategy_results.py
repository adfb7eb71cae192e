"""
P&L summary of a strategy's finished trades
"""
from typing import Iterable

from calendar_trader.schemas.strategy import StrategyResults, StrategyTrade, TradeStatus


def summarize_results(trades: Iterable[StrategyTrade]) -> StrategyResults:
    """
    Aggregate completed trades with a known P&L.

    A trade with pnl > 0 is a win, pnl < 0 a loss; breakeven trades count
    toward total P&L only. avg_loss is reported as a negative number.
    """
    pnls = [
        t.pnl for t in trades
        if t.status == TradeStatus.COMPLETED and t.pnl is not None
    ]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    decided = len(wins) + len(losses)

    return StrategyResults(
        total_pnl=round(sum(pnls), 2),
        win_count=len(wins),
        loss_count=len(losses),
        win_rate=round(len(wins) / decided * 100, 2) if decided else 0.0,
        avg_win=round(sum(wins) / len(wins), 2) if wins else 0.0,
        avg_loss=round(sum(losses) / len(losses), 2) if losses else 0.0,
    )
