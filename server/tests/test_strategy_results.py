"""
Test cases for strategy P&L summaries
"""
from calendar_trader.schemas.strategy import StrategyTrade, TradeStatus
from calendar_trader.services.strategy_results import summarize_results


def _trade(pnl, status=TradeStatus.COMPLETED):
    return StrategyTrade(strategy_id="s1", status=status, pnl=pnl)


def test_summarize_results():
    results = summarize_results([
        _trade(1020.0),
        _trade(500.0),
        _trade(-300.0),
        _trade(0.0),
        _trade(900.0, status=TradeStatus.ERROR),
        _trade(None),
    ])

    assert results.total_pnl == 1220.0
    assert results.win_count == 2
    assert results.loss_count == 1
    assert results.win_rate == 66.67
    assert results.avg_win == 760.0
    assert results.avg_loss == -300.0


def test_summarize_no_trades():
    results = summarize_results([])

    assert results.total_pnl == 0
    assert results.win_count == 0
    assert results.win_rate == 0
    assert results.avg_loss == 0
