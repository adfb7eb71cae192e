"""
Strategy and trade persistence

StrategyRepository is the contract the executor and the HTTP layer use.
Three implementations:

- SQLStrategyRepository: SQLAlchemy async sessions (the remote store)
- LocalJSONRepository: a single JSON file on local disk
- FallbackStrategyRepository: remote first, mirrored to local, local when
  the remote store is unreachable
"""
import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from calendar_trader.core.logging import get_logger
from calendar_trader.models.strategy import StrategyRow
from calendar_trader.models.trade import TradeRow
from calendar_trader.schemas.strategy import Strategy, StrategyTrade, utcnow
from calendar_trader.services.exceptions import RepositoryError, StrategyImportError
from calendar_trader.services.strategy_parser import parse_strategy_string

logger = get_logger(__name__)

IMPORT_REQUIRED_FIELDS = ("dayOfWeek", "delta", "t1")


class StrategyRepository(ABC):
    """Async persistence contract for strategies and trade records"""

    name = "repository"

    @abstractmethod
    async def list_strategies(self) -> List[Strategy]:
        pass

    @abstractmethod
    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        pass

    @abstractmethod
    async def list_trades(self, strategy_id: Optional[str] = None) -> List[StrategyTrade]:
        pass

    @abstractmethod
    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        pass

    @abstractmethod
    async def delete_strategy(self, strategy_id: str) -> bool:
        pass

    @abstractmethod
    async def upsert_trade(self, trade: StrategyTrade) -> StrategyTrade:
        pass

    @abstractmethod
    async def mark_executed(self, strategy_id: str, stamp: str) -> Optional[Strategy]:
        """
        Set last_executed alone, leaving every other field as stored

        Returns:
            The stored strategy after the update, or None when it does not exist
        """
        pass

    async def toggle_strategy_active(self, strategy_id: str, is_active: bool) -> Optional[Strategy]:
        """Set is_active; returns None when the strategy does not exist"""
        strategy = await self.get_strategy(strategy_id)
        if strategy is None:
            return None
        strategy.is_active = is_active
        return await self.upsert_strategy(strategy)

    async def create_strategy_from_string(self, strategy_string: str, name: Optional[str] = None) -> Strategy:
        strategy = parse_strategy_string(
            strategy_string,
            strategy_id=str(uuid4()),
            name=name or "SPX Strategy",
        )
        return await self.upsert_strategy(strategy)

    async def export_strategies(self) -> str:
        """All strategies as a camelCase JSON array"""
        strategies = await self.list_strategies()
        return json.dumps(
            [s.to_wire() for s in strategies],
            indent=2,
        )

    async def import_strategies(self, text: str) -> int:
        """
        Import a JSON array of strategies.

        Every accepted item gets a fresh id. Items missing dayOfWeek, delta
        or t1, or failing validation, are skipped.

        Returns:
            Number of strategies imported

        Raises:
            StrategyImportError: text is not a JSON array
        """
        try:
            data = json.loads(text)
        except ValueError as e:
            raise StrategyImportError(f"Imported data is not valid JSON: {e}") from e

        if not isinstance(data, list):
            raise StrategyImportError("Imported data is not an array")

        imported = 0
        for index, item in enumerate(data):
            if not isinstance(item, dict) or any(field not in item for field in IMPORT_REQUIRED_FIELDS):
                logger.warning("Skipping import item without required fields", index=index)
                continue

            payload = {**item, "id": str(uuid4())}
            try:
                strategy = Strategy.model_validate(payload)
            except ValidationError as e:
                logger.warning("Skipping invalid import item", index=index, error_message=str(e))
                continue

            await self.upsert_strategy(strategy)
            imported += 1

        logger.info("Strategies imported", count=imported, total=len(data))
        return imported


class SQLStrategyRepository(StrategyRepository):
    """Repository over SQLAlchemy async sessions"""

    name = "database"

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def list_strategies(self) -> List[Strategy]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(StrategyRow).order_by(StrategyRow.created_at))
                return [row.to_schema() for row in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to list strategies: {e}") from e

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        try:
            async with self._session_factory() as session:
                row = await session.get(StrategyRow, strategy_id)
                return row.to_schema() if row else None
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to load strategy {strategy_id}: {e}") from e

    async def list_trades(self, strategy_id: Optional[str] = None) -> List[StrategyTrade]:
        query = select(TradeRow).order_by(TradeRow.created_at)
        if strategy_id:
            query = query.where(TradeRow.strategy_id == strategy_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [row.to_schema() for row in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to list trades: {e}") from e

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        try:
            async with self._session_factory() as session:
                row = await session.get(StrategyRow, strategy.id)
                if row is None:
                    row = StrategyRow()
                    session.add(row)
                row.apply(strategy)
                await session.commit()
            return strategy
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to save strategy {strategy.id}: {e}") from e

    async def delete_strategy(self, strategy_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(delete(StrategyRow).where(StrategyRow.id == strategy_id))
                await session.commit()
                return result.rowcount > 0
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to delete strategy {strategy_id}: {e}") from e

    async def upsert_trade(self, trade: StrategyTrade) -> StrategyTrade:
        trade.updated_at = utcnow()
        try:
            async with self._session_factory() as session:
                row = await session.get(TradeRow, trade.id)
                if row is None:
                    row = TradeRow()
                    session.add(row)
                row.apply(trade)
                await session.commit()
            return trade
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to save trade {trade.id}: {e}") from e

    async def mark_executed(self, strategy_id: str, stamp: str) -> Optional[Strategy]:
        try:
            async with self._session_factory() as session:
                row = await session.get(StrategyRow, strategy_id)
                if row is None:
                    return None
                row.last_executed = stamp
                strategy = row.to_schema()
                await session.commit()
            return strategy
        except (SQLAlchemyError, OSError) as e:
            raise RepositoryError(f"Failed to stamp strategy {strategy_id}: {e}") from e


class LocalJSONRepository(StrategyRepository):
    """
    Repository over one JSON file: {"strategies": [...], "trades": [...]}

    Records are stored in camelCase. Writes go to a temporary file first
    and replace the store in one step.
    """

    name = "local"

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {"strategies": [], "trades": []}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RepositoryError(f"Failed to read local store {self.path}: {e}") from e
        return {
            "strategies": data.get("strategies", []),
            "trades": data.get("trades", []),
        }

    def _write(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise RepositoryError(f"Failed to write local store {self.path}: {e}") from e

    @staticmethod
    def _upsert_record(records: List[Dict[str, Any]], record: Dict[str, Any]) -> None:
        for index, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[index] = record
                return
        records.append(record)

    async def list_strategies(self) -> List[Strategy]:
        async with self._lock:
            data = self._read()
        return [Strategy.model_validate(item) for item in data["strategies"]]

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        for strategy in await self.list_strategies():
            if strategy.id == strategy_id:
                return strategy
        return None

    async def list_trades(self, strategy_id: Optional[str] = None) -> List[StrategyTrade]:
        async with self._lock:
            data = self._read()
        trades = [StrategyTrade.model_validate(item) for item in data["trades"]]
        if strategy_id:
            trades = [t for t in trades if t.strategy_id == strategy_id]
        return trades

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        async with self._lock:
            data = self._read()
            self._upsert_record(data["strategies"], strategy.to_wire())
            self._write(data)
        return strategy

    async def delete_strategy(self, strategy_id: str) -> bool:
        async with self._lock:
            data = self._read()
            remaining = [s for s in data["strategies"] if s.get("id") != strategy_id]
            if len(remaining) == len(data["strategies"]):
                return False
            data["strategies"] = remaining
            self._write(data)
        return True

    async def upsert_trade(self, trade: StrategyTrade) -> StrategyTrade:
        trade.updated_at = utcnow()
        async with self._lock:
            data = self._read()
            self._upsert_record(data["trades"], trade.to_wire())
            self._write(data)
        return trade

    async def mark_executed(self, strategy_id: str, stamp: str) -> Optional[Strategy]:
        async with self._lock:
            data = self._read()
            record = next((s for s in data["strategies"] if s.get("id") == strategy_id), None)
            if record is None:
                return None
            record["lastExecuted"] = stamp
            self._write(data)
        return Strategy.model_validate(record)


class FallbackStrategyRepository(StrategyRepository):
    """
    Remote store first, local store when the remote one fails.

    Successful remote writes are mirrored to the local store so it can
    serve reads during an outage. RepositoryError is raised only when
    every backend fails.
    """

    name = "fallback"

    def __init__(self, remote: StrategyRepository, local: StrategyRepository):
        self.remote = remote
        self.local = local

    async def _read(self, operation: str, *args):
        try:
            return await getattr(self.remote, operation)(*args)
        except RepositoryError as e:
            logger.warning(
                f"Remote store unavailable, falling back to {self.local.name}",
                operation=operation,
                error_message=str(e)
            )
        return await getattr(self.local, operation)(*args)

    async def _write(self, operation: str, *args):
        try:
            result = await getattr(self.remote, operation)(*args)
        except RepositoryError as e:
            logger.warning(
                f"Remote store write failed, writing to {self.local.name} only",
                operation=operation,
                error_message=str(e)
            )
            return await getattr(self.local, operation)(*args)

        try:
            await getattr(self.local, operation)(*args)
        except RepositoryError as e:
            logger.warning("Local mirror write failed", operation=operation, error_message=str(e))
        return result

    async def list_strategies(self) -> List[Strategy]:
        return await self._read("list_strategies")

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return await self._read("get_strategy", strategy_id)

    async def list_trades(self, strategy_id: Optional[str] = None) -> List[StrategyTrade]:
        return await self._read("list_trades", strategy_id)

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        return await self._write("upsert_strategy", strategy)

    async def delete_strategy(self, strategy_id: str) -> bool:
        return await self._write("delete_strategy", strategy_id)

    async def upsert_trade(self, trade: StrategyTrade) -> StrategyTrade:
        return await self._write("upsert_trade", trade)

    async def mark_executed(self, strategy_id: str, stamp: str) -> Optional[Strategy]:
        return await self._write("mark_executed", strategy_id, stamp)


def build_repository(
    session_factory: Optional[Callable[[], AsyncSession]],
    local_store_path: str,
) -> StrategyRepository:
    """Remote-with-local-fallback when a database is configured, local file otherwise"""
    local = LocalJSONRepository(local_store_path)
    if session_factory is None:
        logger.info("Database disabled, using local strategy store", path=local_store_path)
        return local
    return FallbackStrategyRepository(SQLStrategyRepository(session_factory), local)
