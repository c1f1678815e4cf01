"""
Currency Lot Inventory

USD bought in discrete lots and sold first-in first-out. Each sell records
which lots it consumed (the FIFO breakdown) so a void can put the stock back
exactly. Lots are walked through a paged cursor that falls back to a full
ordered scan when the store cannot serve the indexed query.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from enum import Enum
import uuid

from .config import get_config
from .errors import ConflictError, IndexUnavailableError, LendingError, ValidationError
from .logging_config import get_logger, log_action
from .money import ZERO, month_key, parse_date, round_money, to_decimal
from .movements import MovementLog, MovementType
from .storage import StorageInterface, StorageRecord, Transaction


logger = get_logger("lending.currency")

LOTS_TABLE = "usd_lots"
TRADES_TABLE = "usd_movements"
SUMMARY_TABLE = "usd_summary"
SUMMARY_ID = "summary"


class TradeType(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass
class FifoAllocation:
    """Quantity taken from one lot by a sell"""
    lot_id: str
    lot_seq: int
    qty: Decimal
    cost_price: Decimal
    sell_price: Decimal
    profit: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"lot_id": self.lot_id, "lot_seq": self.lot_seq, "qty": str(self.qty),
                "cost_price": str(self.cost_price), "sell_price": str(self.sell_price),
                "profit": str(self.profit)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FifoAllocation':
        return cls(data['lot_id'], int(data.get('lot_seq') or 0), round_money(data['qty']),
                   to_decimal(data['cost_price']), to_decimal(data['sell_price']),
                   round_money(data.get('profit')))


@dataclass
class CurrencyLot(StorageRecord):
    seq: int
    quantity: Decimal
    remaining_qty: Decimal
    unit_price: Decimal
    occurred_at: date
    movement_id: str
    note: str = ""
    voided: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CurrencyLot':
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            seq=int(data.get('seq') or 0),
            quantity=round_money(data.get('quantity')),
            remaining_qty=round_money(data.get('remaining_qty')),
            unit_price=to_decimal(data.get('unit_price')),
            occurred_at=parse_date(data['occurred_at']),
            movement_id=data.get('movement_id', ''),
            note=data.get('note', ''),
            voided=bool(data.get('voided')),
        )


@dataclass
class CurrencyTrade(StorageRecord):
    """A buy or sell of USD"""
    trade_type: TradeType
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    occurred_at: date
    trade_month: str
    note: str = ""
    actor_id: Optional[str] = None
    lot_id: Optional[str] = None                      # Buys
    fifo_breakdown: List[FifoAllocation] = field(default_factory=list)  # Sells
    profit_total: Decimal = ZERO
    voided: bool = False
    voided_at: Optional[datetime] = None
    void_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['fifo_breakdown'] = [item.to_dict() for item in self.fifo_breakdown]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CurrencyTrade':
        occurred = parse_date(data['occurred_at'])
        voided_at = data.get('voided_at')
        return cls(
            id=data['id'],
            **cls._timestamps(data),
            trade_type=TradeType(data['trade_type']),
            quantity=round_money(data.get('quantity')),
            unit_price=to_decimal(data.get('unit_price')),
            total=round_money(data.get('total')),
            occurred_at=occurred,
            trade_month=data.get('trade_month') or month_key(occurred),
            note=data.get('note', ''),
            actor_id=data.get('actor_id'),
            lot_id=data.get('lot_id'),
            fifo_breakdown=[FifoAllocation.from_dict(item) for item in data.get('fifo_breakdown') or []],
            profit_total=round_money(data.get('profit_total')),
            voided=bool(data.get('voided')),
            voided_at=datetime.fromisoformat(voided_at) if voided_at else None,
            void_reason=data.get('void_reason', ''),
        )


@dataclass
class CurrencySummary:
    available_qty: Decimal = ZERO
    month_key: Optional[str] = None
    month_profit: Decimal = ZERO
    next_lot_seq: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CurrencySummary':
        data = data or {}
        return cls(round_money(data.get('available_qty')), data.get('month_key'),
                   round_money(data.get('month_profit')), int(data.get('next_lot_seq') or 1))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": SUMMARY_ID, "available_qty": str(self.available_qty),
                "month_key": self.month_key, "month_profit": str(self.month_profit),
                "next_lot_seq": self.next_lot_seq}


@dataclass
class BuyResult:
    lot_id: str
    movement_id: str
    available_qty: Decimal


@dataclass
class SellResult:
    movement_id: str
    fifo_breakdown: List[FifoAllocation]
    profit_total: Decimal
    available_qty: Decimal


class LotCursor:
    """
    Resumable FIFO iterator over lots that still hold stock.

    Pages through `remaining_qty > 0 ORDER BY seq` and resumes each page
    after the last document seen. When the store lacks the index for that
    query, or the very first indexed page comes back empty, it switches to
    an unfiltered ordered scan from the same position and filters in memory.
    Construct it inside the transaction function so a retried attempt walks
    the lots again from their current state.
    """

    def __init__(self, tx: Transaction, page_size: Optional[int] = None,
                 start_after: Optional[Dict[str, Any]] = None, use_fallback: bool = False,
                 table: str = LOTS_TABLE):
        self.tx = tx
        self.table = table
        self.page_size = page_size or get_config().lot_page_size
        self.last_doc = start_after
        self.use_fallback = use_fallback
        self.pages_read = 0
        self._buffer: List[Dict[str, Any]] = []
        self._exhausted = False

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return self

    def __next__(self) -> Dict[str, Any]:
        while True:
            if self._buffer:
                doc = self._buffer.pop(0)
                self.last_doc = doc
                if not doc.get('voided') and to_decimal(doc.get('remaining_qty')) > ZERO:
                    return doc
                continue
            if self._exhausted:
                raise StopIteration
            self._fill()

    @property
    def position(self) -> Optional[Tuple[int, str]]:
        """(seq, id) of the last lot handed out or skipped"""
        if self.last_doc is None:
            return None
        return int(self.last_doc.get('seq') or 0), self.last_doc['id']

    def _fill(self) -> None:
        if not self.use_fallback:
            try:
                page = self.tx.query(self.table, [("remaining_qty", ">", 0)], order_by="seq",
                                     start_after=self.last_doc, limit=self.page_size)
            except IndexUnavailableError:
                log_action(logger, "warning", "Lot index unavailable, scanning all lots",
                           action="lot_scan_fallback", resource=self.table)
                self.use_fallback = True
                return
            if not page and self.pages_read == 0:
                self.use_fallback = True
                return
        else:
            page = self.tx.query(self.table, order_by="seq", start_after=self.last_doc,
                                 limit=self.page_size)
        self.pages_read += 1
        if len(page) < self.page_size:
            self._exhausted = True
        self._buffer = list(page)


def allocate_fifo(lots: Iterable[Dict[str, Any]], qty: Any,
                  sell_price: Any) -> Tuple[List[FifoAllocation], Decimal]:
    """
    Consume lots oldest first until qty is covered.

    Returns the breakdown and the quantity left unallocated (zero unless the
    lots ran out).
    """
    remaining = round_money(qty)
    sell_price = to_decimal(sell_price)
    allocations = []
    iterator = iter(lots)
    while remaining > ZERO:
        doc = next(iterator, None)
        if doc is None:
            break
        available = round_money(doc.get('remaining_qty'))
        take = min(available, remaining)
        if take <= ZERO:
            continue
        cost = to_decimal(doc.get('unit_price'))
        allocations.append(FifoAllocation(
            lot_id=doc['id'],
            lot_seq=int(doc.get('seq') or 0),
            qty=take,
            cost_price=cost,
            sell_price=sell_price,
            profit=round_money((sell_price - cost) * take),
        ))
        remaining = round_money(remaining - take)
    return allocations, remaining


class CurrencyInventory:
    """Owner of USD lots, trades and the stock summary"""

    def __init__(self, storage: StorageInterface, movements: MovementLog,
                 clock: Optional[Callable[[], date]] = None):
        self.storage = storage
        self.movements = movements
        self.clock = clock or date.today

    @staticmethod
    def _validate(qty: Any, unit_price: Any) -> Tuple[Decimal, Decimal]:
        qty = round_money(qty)
        unit_price = to_decimal(unit_price)
        if qty <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Quantity must be > 0")
        if unit_price <= ZERO:
            raise ValidationError("INVALID_AMOUNT", "Unit price must be > 0")
        return qty, unit_price

    def buy(self, qty: Any, unit_price: Any, note: str = "", occurred_at: Any = None,
            actor_id: Optional[str] = None) -> BuyResult:
        """Create a lot holding qty at unit_price"""
        qty, unit_price = self._validate(qty, unit_price)
        occurred = parse_date(occurred_at) if occurred_at else self.clock()
        movement_id, lot_id = str(uuid.uuid4()), str(uuid.uuid4())

        def _tx(tx: Transaction) -> BuyResult:
            summary = CurrencySummary.from_dict(tx.get(SUMMARY_TABLE, SUMMARY_ID))
            now = datetime.now(timezone.utc)
            lot = CurrencyLot(id=lot_id, created_at=now, updated_at=now, seq=summary.next_lot_seq,
                              quantity=qty, remaining_qty=qty, unit_price=unit_price,
                              occurred_at=occurred, movement_id=movement_id, note=note or "")
            trade = CurrencyTrade(id=movement_id, created_at=now, updated_at=now,
                                  trade_type=TradeType.BUY, quantity=qty, unit_price=unit_price,
                                  total=round_money(qty * unit_price), occurred_at=occurred,
                                  trade_month=month_key(occurred), note=note or "",
                                  actor_id=actor_id, lot_id=lot_id)
            summary.available_qty = round_money(summary.available_qty + qty)
            summary.next_lot_seq += 1

            tx.set(LOTS_TABLE, lot.id, lot.to_dict())
            tx.set(TRADES_TABLE, trade.id, trade.to_dict())
            tx.set(SUMMARY_TABLE, SUMMARY_ID, summary.to_dict())
            self.movements.record(tx, MovementType.USD_BUY, "usd_movement", trade.id,
                                  actor_id=actor_id, occurred_at=occurred, note=note,
                                  metadata={"usd": qty, "price": unit_price, "total": trade.total,
                                            "lot_id": lot_id})
            return BuyResult(lot_id, movement_id, summary.available_qty)

        result = self.storage.run_transaction(_tx)
        log_action(logger, "info", "USD bought", user_id=actor_id, action="usd_buy",
                   resource=f"usd_lot:{result.lot_id}",
                   extra={"qty": str(qty), "unit_price": str(unit_price)})
        return result

    def sell(self, qty: Any, unit_price: Any, note: str = "", occurred_at: Any = None,
             actor_id: Optional[str] = None) -> SellResult:
        """
        Sell qty at unit_price, consuming the oldest lots first

        Raises:
            ConflictError: INSUFFICIENT_STOCK with {available, requested}
        """
        qty, unit_price = self._validate(qty, unit_price)
        occurred = parse_date(occurred_at) if occurred_at else self.clock()
        trade_month = month_key(occurred)
        movement_id = str(uuid.uuid4())

        def _tx(tx: Transaction) -> SellResult:
            summary = CurrencySummary.from_dict(tx.get(SUMMARY_TABLE, SUMMARY_ID))
            if summary.available_qty < qty:
                raise ConflictError("INSUFFICIENT_STOCK", "Not enough USD available",
                                    {"available": summary.available_qty, "requested": qty})

            breakdown, missing = allocate_fifo(LotCursor(tx), qty, unit_price)
            if missing > ZERO:
                log_action(logger, "error", "Lots do not cover the available summary",
                           action="usd_sell", resource=LOTS_TABLE,
                           extra={"available": str(summary.available_qty),
                                  "missing": str(missing)})
                raise ConflictError("INSUFFICIENT_STOCK", "Lots do not cover the requested quantity",
                                    {"available": round_money(qty - missing), "requested": qty})

            now = datetime.now(timezone.utc)
            for item in breakdown:
                lot = CurrencyLot.from_dict(tx.get(LOTS_TABLE, item.lot_id))
                lot.remaining_qty = round_money(lot.remaining_qty - item.qty)
                lot.updated_at = now
                tx.set(LOTS_TABLE, lot.id, lot.to_dict())

            profit = round_money(sum((item.profit for item in breakdown), ZERO))
            trade = CurrencyTrade(id=movement_id, created_at=now, updated_at=now,
                                  trade_type=TradeType.SELL, quantity=qty, unit_price=unit_price,
                                  total=round_money(qty * unit_price), occurred_at=occurred,
                                  trade_month=trade_month, note=note or "", actor_id=actor_id,
                                  fifo_breakdown=breakdown, profit_total=profit)

            summary.available_qty = round_money(summary.available_qty - qty)
            if summary.month_key != trade_month:
                summary.month_key = trade_month
                summary.month_profit = ZERO
            summary.month_profit = round_money(summary.month_profit + profit)

            tx.set(TRADES_TABLE, trade.id, trade.to_dict())
            tx.set(SUMMARY_TABLE, SUMMARY_ID, summary.to_dict())
            self.movements.record(tx, MovementType.USD_SELL, "usd_movement", trade.id,
                                  actor_id=actor_id, occurred_at=occurred, note=note,
                                  metadata={"usd": qty, "price": unit_price, "total": trade.total,
                                            "profit": profit,
                                            "fifo_breakdown": [i.to_dict() for i in breakdown]})
            return SellResult(movement_id, breakdown, profit, summary.available_qty)

        try:
            result = self.storage.run_transaction(_tx)
        except LendingError as e:
            log_action(logger, "warning", "USD sell rejected", user_id=actor_id,
                       action="usd_sell", resource=TRADES_TABLE,
                       extra={"code": e.code, "requested": str(qty)})
            raise
        log_action(logger, "info", "USD sold", user_id=actor_id, action="usd_sell",
                   resource=f"usd_movement:{result.movement_id}",
                   extra={"qty": str(qty), "profit": str(result.profit_total),
                          "lots": len(result.fifo_breakdown)})
        return result

    def restore_sell(self, tx: Transaction, trade: CurrencyTrade) -> CurrencySummary:
        """Put a sell's consumed quantities back into their lots"""
        summary = CurrencySummary.from_dict(tx.get(SUMMARY_TABLE, SUMMARY_ID))
        now = datetime.now(timezone.utc)
        for item in trade.fifo_breakdown:
            data = tx.get(LOTS_TABLE, item.lot_id)
            if data is None:
                raise ConflictError("LOT_NOT_FOUND", f"Lot {item.lot_id} no longer exists")
            lot = CurrencyLot.from_dict(data)
            lot.remaining_qty = min(lot.quantity, round_money(lot.remaining_qty + item.qty))
            lot.updated_at = now
            tx.set(LOTS_TABLE, lot.id, lot.to_dict())
        summary.available_qty = round_money(summary.available_qty + trade.quantity)
        if summary.month_key == trade.trade_month:
            summary.month_profit = round_money(summary.month_profit - trade.profit_total)
        tx.set(SUMMARY_TABLE, SUMMARY_ID, summary.to_dict())
        return summary

    def retract_buy(self, tx: Transaction, trade: CurrencyTrade) -> CurrencySummary:
        """Empty an untouched lot created by a buy"""
        summary = CurrencySummary.from_dict(tx.get(SUMMARY_TABLE, SUMMARY_ID))
        data = tx.get(LOTS_TABLE, trade.lot_id) if trade.lot_id else None
        if data is None:
            raise ConflictError("LOT_NOT_FOUND", f"Lot for movement {trade.id} not found")
        lot = CurrencyLot.from_dict(data)
        if lot.voided or lot.remaining_qty != lot.quantity:
            raise ConflictError("LOT_ALREADY_USED", "Lot has already been partially sold",
                                {"lot_id": lot.id, "remaining": lot.remaining_qty,
                                 "quantity": lot.quantity})
        lot.remaining_qty = ZERO
        lot.voided = True
        lot.updated_at = datetime.now(timezone.utc)
        tx.set(LOTS_TABLE, lot.id, lot.to_dict())
        summary.available_qty = round_money(summary.available_qty - lot.quantity)
        tx.set(SUMMARY_TABLE, SUMMARY_ID, summary.to_dict())
        return summary

    def summary(self) -> CurrencySummary:
        return CurrencySummary.from_dict(self.storage.load(SUMMARY_TABLE, SUMMARY_ID))

    def get_trade(self, movement_id: str) -> Optional[CurrencyTrade]:
        data = self.storage.load(TRADES_TABLE, movement_id)
        return CurrencyTrade.from_dict(data) if data else None

    def list_movements(self, include_voided: bool = False) -> List[CurrencyTrade]:
        """Trades newest first"""
        trades = [CurrencyTrade.from_dict(row) for row in self.storage.load_all(TRADES_TABLE)]
        if not include_voided:
            trades = [t for t in trades if not t.voided]
        return sorted(trades, key=lambda t: (t.occurred_at, t.created_at), reverse=True)

    def list_lots(self, include_empty: bool = False) -> List[CurrencyLot]:
        lots = [CurrencyLot.from_dict(row) for row in self.storage.load_all(LOTS_TABLE)]
        if not include_empty:
            lots = [lot for lot in lots if lot.remaining_qty > ZERO]
        return sorted(lots, key=lambda lot: lot.seq)

    def month_profit(self, month: str) -> Decimal:
        """Realized profit of non-voided sells in month, recomputed from trades"""
        rows = self.storage.find(TRADES_TABLE, {"trade_type": TradeType.SELL.value,
                                                "trade_month": month, "voided": False})
        return round_money(sum((round_money(r.get('profit_total')) for r in rows), ZERO))
