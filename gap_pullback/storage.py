"""
Persistence for watch records, positions, signals and trades.

The engine depends only on the TradingStore contract. InMemoryTradingStore
keeps the trading day in process; archive_day writes a finished day to
date-partitioned parquet files for audit.
"""
import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd
from loguru import logger

from gap_pullback.models import (
    ACTIVE_WATCH_STATES,
    Position,
    PositionStatus,
    Signal,
    Trade,
    WatchRecord,
    WatchState,
)


class TradingStore(ABC):
    """Repository contract used by the engine components."""

    @abstractmethod
    def save_watch_record(self, record: WatchRecord) -> WatchRecord:
        pass

    @abstractmethod
    def find_watch_record(self, code: str, trading_date: date) -> Optional[WatchRecord]:
        pass

    @abstractmethod
    def find_watch_record_by_id(self, record_id: str) -> Optional[WatchRecord]:
        pass

    @abstractmethod
    def find_watch_records_by_state(
        self,
        trading_date: date,
        states: Iterable[WatchState]
    ) -> List[WatchRecord]:
        pass

    @abstractmethod
    def find_watch_records(self, trading_date: date) -> List[WatchRecord]:
        pass

    @abstractmethod
    def save_position(self, position: Position) -> Position:
        pass

    @abstractmethod
    def find_position(self, position_id: str) -> Optional[Position]:
        pass

    @abstractmethod
    def find_open_positions(self) -> List[Position]:
        pass

    @abstractmethod
    def find_positions_by_date(self, trading_date: date) -> List[Position]:
        pass

    @abstractmethod
    def save_signal(self, signal: Signal) -> Signal:
        pass

    @abstractmethod
    def find_signals(self, trading_date: date, code: Optional[str] = None) -> List[Signal]:
        pass

    @abstractmethod
    def save_trade(self, trade: Trade) -> Trade:
        pass

    @abstractmethod
    def find_trades(self, position_id: Optional[str] = None) -> List[Trade]:
        pass

    def find_active_watch_records(self, trading_date: date) -> List[WatchRecord]:
        return self.find_watch_records_by_state(trading_date, ACTIVE_WATCH_STATES)

    def count_open_positions(self) -> int:
        return len(self.find_open_positions())


class InMemoryTradingStore(TradingStore):
    """
    Thread-safe in-process store.

    Entities are stored as copies so callers only see changes they save.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._watch_records: Dict[str, WatchRecord] = {}
        self._positions: Dict[str, Position] = {}
        self._signals: Dict[str, Signal] = {}
        self._trades: Dict[str, Trade] = {}
        logger.info("InMemoryTradingStore initialized")

    def save_watch_record(self, record: WatchRecord) -> WatchRecord:
        record.updated_at = datetime.now()
        with self._lock:
            self._watch_records[record.id] = copy.deepcopy(record)
        return record

    def find_watch_record(self, code: str, trading_date: date) -> Optional[WatchRecord]:
        with self._lock:
            for record in self._watch_records.values():
                if record.code == code and record.trading_date == trading_date:
                    return copy.deepcopy(record)
        return None

    def find_watch_record_by_id(self, record_id: str) -> Optional[WatchRecord]:
        with self._lock:
            record = self._watch_records.get(record_id)
            return copy.deepcopy(record) if record else None

    def find_watch_records_by_state(
        self,
        trading_date: date,
        states: Iterable[WatchState]
    ) -> List[WatchRecord]:
        wanted = set(states)
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._watch_records.values()
                if r.trading_date == trading_date and r.state in wanted
            ]

    def find_watch_records(self, trading_date: date) -> List[WatchRecord]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._watch_records.values()
                if r.trading_date == trading_date
            ]

    def save_position(self, position: Position) -> Position:
        with self._lock:
            self._positions[position.id] = copy.deepcopy(position)
        return position

    def find_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(position_id)
            return copy.deepcopy(position) if position else None

    def find_open_positions(self) -> List[Position]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._positions.values()
                if p.status != PositionStatus.CLOSED
            ]

    def find_positions_by_date(self, trading_date: date) -> List[Position]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._positions.values()
                if p.trading_date == trading_date
            ]

    def save_signal(self, signal: Signal) -> Signal:
        with self._lock:
            self._signals[signal.id] = copy.deepcopy(signal)
        return signal

    def find_signals(self, trading_date: date, code: Optional[str] = None) -> List[Signal]:
        with self._lock:
            signals = [
                copy.deepcopy(s) for s in self._signals.values()
                if s.trading_date == trading_date and (code is None or s.code == code)
            ]
        return sorted(signals, key=lambda s: s.signal_time)

    def save_trade(self, trade: Trade) -> Trade:
        with self._lock:
            self._trades[trade.id] = copy.deepcopy(trade)
        return trade

    def find_trades(self, position_id: Optional[str] = None) -> List[Trade]:
        with self._lock:
            trades = [
                copy.deepcopy(t) for t in self._trades.values()
                if position_id is None or t.position_id == position_id
            ]
        return sorted(trades, key=lambda t: t.created_at)


def flatten_entity(entity) -> Dict:
    """Turn a dataclass entity into a flat row of plain values."""
    row = {}
    for key, value in asdict(entity).items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items())
        row[key] = value
    return row


def archive_day(store: TradingStore, trading_date: date, archive_dir: str) -> Dict[str, int]:
    """
    Write one trading day to parquet, partitioned by date.

    Args:
        store: Store to read from
        trading_date: Day to archive
        archive_dir: Root directory of the archive

    Returns:
        Number of rows written per table
    """
    partition = Path(archive_dir) / f"date={trading_date.isoformat()}"
    partition.mkdir(parents=True, exist_ok=True)

    positions = store.find_positions_by_date(trading_date)
    position_ids = {p.id for p in positions}
    tables = {
        'watch_records': store.find_watch_records(trading_date),
        'positions': positions,
        'signals': store.find_signals(trading_date),
        'trades': [t for t in store.find_trades() if t.position_id in position_ids],
    }

    written = {}
    for name, rows in tables.items():
        if not rows:
            written[name] = 0
            continue
        df = pd.DataFrame([flatten_entity(row) for row in rows])
        df.to_parquet(partition / f"{name}.parquet", index=False)
        written[name] = len(df)

    logger.info(f"Archived {trading_date} to {partition} | {written}")
    return written
