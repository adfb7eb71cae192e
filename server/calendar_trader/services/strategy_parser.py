"""
Strategy string codec
Parses and formats the compact strategy format:

    <Day> <Delta> <D1> <D2> <T1> <T2> <TP%> <MaxCost>
    Mon 70 3 4 09-32 15-30 20% 10000
"""
from typing import Optional
from uuid import uuid4

from pydantic import ValidationError

from calendar_trader.core.logging import get_logger
from calendar_trader.schemas.strategy import Strategy
from calendar_trader.services.exceptions import StrategyParseError

logger = get_logger(__name__)

DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

# English three-letter and Russian two-letter abbreviations
DAY_MAP = {
    "sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6,
    "вс": 0, "пн": 1, "вт": 2, "ср": 3, "чт": 4, "пт": 5, "сб": 6,
}

DEFAULT_DAY = 1  # Monday


def _format_number(value: float) -> str:
    """Render 70.0 as '70' and 70.5 as '70.5'"""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def parse_day(token: str) -> int:
    day = DAY_MAP.get(token.strip().lower())
    if day is None:
        logger.warning(f"Unrecognized day '{token}', defaulting to Monday")
        return DEFAULT_DAY
    return day


def parse_strategy_string(
    strategy_string: str,
    strategy_id: Optional[str] = None,
    name: str = "SPX Strategy",
) -> Strategy:
    """
    Parse a strategy string into a Strategy

    Raises:
        StrategyParseError: wrong token count, non-numeric fields or
            values the Strategy model rejects
    """
    parts = strategy_string.strip().split()
    if len(parts) != 8:
        raise StrategyParseError(
            f"Expected 8 fields '<Day> <Delta> <D1> <D2> <T1> <T2> <TP%> <MaxCost>', got {len(parts)}"
        )

    day_token, delta, d1, d2, t1, t2, tp, max_cost = parts

    try:
        fields = {
            "day_of_week": parse_day(day_token),
            "delta": float(delta),
            "d1": int(d1),
            "d2": int(d2),
            "t1": t1,
            "t2": t2,
            "tp": float(tp.rstrip("%")),
            "max_cost": int(max_cost),
        }
    except ValueError as e:
        raise StrategyParseError(f"Invalid numeric field in '{strategy_string}': {e}") from e

    try:
        return Strategy(
            id=strategy_id or str(uuid4()),
            name=name,
            is_active=True,
            description=f"SPX strategy: {' '.join(parts)}",
            **fields,
        )
    except ValidationError as e:
        raise StrategyParseError(f"Invalid strategy '{strategy_string}': {e}") from e


def format_strategy_string(strategy: Strategy) -> str:
    """Format a Strategy back into the compact string"""
    return " ".join([
        DAY_NAMES[strategy.day_of_week],
        _format_number(strategy.delta),
        str(strategy.d1),
        str(strategy.d2),
        strategy.t1,
        strategy.t2,
        f"{_format_number(strategy.tp)}%",
        _format_number(strategy.max_cost),
    ])
