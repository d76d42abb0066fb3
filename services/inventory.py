"""
Inventory ledger: the single writer of ``Product.available_quantity``.

Stock is protected with optimistic concurrency control instead of row locks:
read the observed quantity, compute the new one, then write it only if the row
still holds the observed value. A lost race is retried once; a second loss is
reported as ``CONCURRENT_MODIFICATION`` so hot products never spin.
"""
import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.errors import ConcurrentModification, InsufficientStock, ProductNotFound, ValidationError
from models.product import Product

logger = logging.getLogger(__name__)

# First compare-and-swap plus exactly one retry
CAS_ATTEMPTS = 2

products_table = Product.__table__


@dataclass(frozen=True)
class StockLine:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class Shortfall:
    product_id: int
    name: Optional[str]
    requested: int
    available: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "product_id": self.product_id,
            "product_name": self.name,
            "requested": self.requested,
            "available": self.available,
        }


class ConsumeStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


@dataclass(frozen=True)
class ConsumeResult:
    status: ConsumeStatus
    product_id: int
    quantity: int
    product_name: Optional[str] = None
    observed: Optional[int] = None
    remaining: Optional[int] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status == ConsumeStatus.SUCCESS

    def shortfall(self) -> Shortfall:
        return Shortfall(self.product_id, self.product_name, self.quantity, self.observed or 0)

    def raise_for_status(self) -> None:
        if self.status == ConsumeStatus.INSUFFICIENT_STOCK:
            raise InsufficientStock([self.shortfall()])
        if self.status == ConsumeStatus.CONCURRENT_MODIFICATION:
            raise ConcurrentModification(
                f"Stock for product {self.product_id} changed concurrently, please try again",
                product_id=self.product_id,
            )


@dataclass
class _Observation:
    quantity: int
    name: Optional[str] = field(default=None)


def merge_lines(lines: Iterable[StockLine]) -> List[StockLine]:
    """Sum quantities of repeated products, keeping first-seen order."""
    totals: "OrderedDict[int, int]" = OrderedDict()
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return [StockLine(pid, qty) for pid, qty in totals.items()]


class InventoryLedger:
    """Validate, consume and release product stock.

    Every write is its own unit of work: the ledger commits the session after
    each compare-and-swap, so callers must not hold uncommitted changes when
    they call ``consume`` or ``release``.
    """

    def validate_availability(self, db: Session, lines: Iterable[StockLine]) -> List[Shortfall]:
        """Return every shortfall, not just the first one."""
        shortfalls: List[Shortfall] = []
        for line in merge_lines(lines):
            observation = self._read_quantity(db, line.product_id)
            if observation.quantity < line.quantity:
                shortfalls.append(Shortfall(line.product_id, observation.name, line.quantity, observation.quantity))
        return shortfalls

    def consume(self, db: Session, product_id: int, quantity: int) -> ConsumeResult:
        _check_quantity(quantity)
        attempt = 0
        observation = None
        while attempt < CAS_ATTEMPTS:
            attempt += 1
            observation = self._read_quantity(db, product_id)
            observed = observation.quantity
            if observed < quantity:
                return ConsumeResult(
                    ConsumeStatus.INSUFFICIENT_STOCK,
                    product_id,
                    quantity,
                    product_name=observation.name,
                    observed=observed,
                    attempts=attempt,
                )
            new_quantity = max(0, observed - quantity)
            if self._compare_and_swap(db, product_id, observed, new_quantity):
                logger.info(
                    "Consumed %s of product %s (%s -> %s, attempt %s)",
                    quantity, product_id, observed, new_quantity, attempt,
                )
                return ConsumeResult(
                    ConsumeStatus.SUCCESS,
                    product_id,
                    quantity,
                    product_name=observation.name,
                    observed=observed,
                    remaining=new_quantity,
                    attempts=attempt,
                )
            logger.warning("Lost stock race on product %s (observed %s, attempt %s)", product_id, observed, attempt)

        return ConsumeResult(
            ConsumeStatus.CONCURRENT_MODIFICATION,
            product_id,
            quantity,
            product_name=observation.name if observation else None,
            observed=observation.quantity if observation else None,
            attempts=attempt,
        )

    def consume_all(self, db: Session, lines: Iterable[StockLine]) -> List[ConsumeResult]:
        """Consume every line or none: earlier lines are released when a later one fails."""
        merged = merge_lines(lines)
        shortfalls = self.validate_availability(db, merged)
        if shortfalls:
            raise InsufficientStock(shortfalls)

        consumed: List[ConsumeResult] = []
        for line in merged:
            result = self.consume(db, line.product_id, line.quantity)
            if not result.ok:
                for done in reversed(consumed):
                    self.release(db, done.product_id, done.quantity)
                result.raise_for_status()
            consumed.append(result)
        return consumed

    def release(self, db: Session, product_id: int, quantity: int) -> int:
        """Add stock back; an atomic increment needs no compare-and-swap."""
        _check_quantity(quantity)
        result = db.execute(
            update(products_table)
            .where(products_table.c.id == product_id)
            .values(
                available_quantity=products_table.c.available_quantity + quantity,
                updated_at=datetime.utcnow(),
            )
        )
        if result.rowcount != 1:
            db.rollback()
            raise ProductNotFound(product_id)
        db.commit()
        self._expire_cached(db, product_id)
        remaining = self._read_quantity(db, product_id).quantity
        logger.info("Released %s of product %s (now %s)", quantity, product_id, remaining)
        return remaining

    def _read_quantity(self, db: Session, product_id: int) -> _Observation:
        row = db.execute(
            select(products_table.c.available_quantity, products_table.c.name).where(products_table.c.id == product_id)
        ).one_or_none()
        if row is None:
            raise ProductNotFound(product_id)
        return _Observation(quantity=int(row.available_quantity or 0), name=row.name)

    def _compare_and_swap(self, db: Session, product_id: int, observed: int, new_quantity: int) -> bool:
        result = db.execute(
            update(products_table)
            .where(
                products_table.c.id == product_id,
                products_table.c.available_quantity == observed,
            )
            .values(available_quantity=new_quantity, updated_at=datetime.utcnow())
        )
        swapped = result.rowcount == 1
        # Commit either way so a zero-row UPDATE does not keep the write lock
        db.commit()
        if swapped:
            self._expire_cached(db, product_id)
        return swapped

    @staticmethod
    def _expire_cached(db: Session, product_id: int) -> None:
        cached = db.identity_map.get(db.identity_key(Product, product_id))
        if cached is not None:
            db.expire(cached, ["available_quantity", "updated_at"])


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", quantity=quantity)
