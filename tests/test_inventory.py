import threading

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from core.errors import ConcurrentModification, InsufficientStock, ProductNotFound, ValidationError
from models.enums import UserRole
from models.product import Product
from models.shop import Shop
from models.user import User
from services.inventory import ConsumeStatus, InventoryLedger, StockLine, merge_lines


products_table = Product.__table__


class InterferingLedger(InventoryLedger):
    """Lets another writer take one unit right after each read, so the next compare-and-swap loses."""

    def __init__(self, interferences: int, product_id=None):
        self.interferences = interferences
        self.product_id = product_id

    def _read_quantity(self, db, product_id):
        observation = super()._read_quantity(db, product_id)
        if self.interferences and self.product_id in (None, product_id):
            self.interferences -= 1
            db.execute(
                update(products_table)
                .where(products_table.c.id == product_id)
                .values(available_quantity=products_table.c.available_quantity - 1)
            )
            db.commit()
        return observation


def _stock(db, product_id):
    return db.execute(select(products_table.c.available_quantity).where(products_table.c.id == product_id)).scalar_one()


class TestValidateAvailability:
    def test_reports_every_shortfall(self, db, rice, ghee):
        ledger = InventoryLedger()
        shortfalls = ledger.validate_availability(db, [StockLine(rice.id, 11), StockLine(ghee.id, 6)])

        assert [s.product_id for s in shortfalls] == [rice.id, ghee.id]
        assert shortfalls[0].requested == 11
        assert shortfalls[0].available == 10
        assert shortfalls[1].name == "Ghee 500ml"

    def test_no_shortfall_when_stock_suffices(self, db, rice, ghee):
        assert InventoryLedger().validate_availability(db, [StockLine(rice.id, 10), StockLine(ghee.id, 1)]) == []

    def test_repeated_products_are_summed(self, db, rice):
        shortfalls = InventoryLedger().validate_availability(db, [StockLine(rice.id, 6), StockLine(rice.id, 6)])

        assert len(shortfalls) == 1
        assert shortfalls[0].requested == 12

    def test_merge_lines_keeps_first_seen_order(self):
        merged = merge_lines([StockLine(2, 1), StockLine(1, 2), StockLine(2, 3)])
        assert merged == [StockLine(2, 4), StockLine(1, 2)]


class TestConsume:
    def test_consume_decrements_stock(self, db, rice):
        result = InventoryLedger().consume(db, rice.id, 3)

        assert result.ok
        assert result.status == ConsumeStatus.SUCCESS
        assert result.observed == 10
        assert result.remaining == 7
        assert result.attempts == 1
        assert _stock(db, rice.id) == 7

    def test_cached_product_is_refreshed(self, db, rice):
        InventoryLedger().consume(db, rice.id, 4)
        assert rice.available_quantity == 6

    def test_insufficient_stock_leaves_quantity_alone(self, db, ghee):
        result = InventoryLedger().consume(db, ghee.id, 6)

        assert result.status == ConsumeStatus.INSUFFICIENT_STOCK
        assert result.observed == 5
        assert _stock(db, ghee.id) == 5
        with pytest.raises(InsufficientStock) as exc_info:
            result.raise_for_status()
        assert exc_info.value.to_dict()["shortfalls"] == [
            {"product_id": ghee.id, "product_name": "Ghee 500ml", "requested": 6, "available": 5}
        ]

    def test_consume_exact_stock_reaches_zero(self, db, ghee):
        result = InventoryLedger().consume(db, ghee.id, 5)
        assert result.ok
        assert _stock(db, ghee.id) == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_is_rejected(self, db, rice, quantity):
        with pytest.raises(ValidationError):
            InventoryLedger().consume(db, rice.id, quantity)

    def test_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            InventoryLedger().consume(db, 999, 1)

    def test_lost_race_is_retried_once(self, db, rice):
        ledger = InterferingLedger(interferences=1)
        result = ledger.consume(db, rice.id, 2)

        assert result.ok
        assert result.attempts == 2
        # 10 - 1 taken by the competing writer - 2 consumed
        assert _stock(db, rice.id) == 7

    def test_second_lost_race_gives_up(self, db, rice):
        ledger = InterferingLedger(interferences=5)
        result = ledger.consume(db, rice.id, 2)

        assert result.status == ConsumeStatus.CONCURRENT_MODIFICATION
        assert result.attempts == 2
        assert ledger.interferences == 3
        assert _stock(db, rice.id) == 8
        with pytest.raises(ConcurrentModification) as exc_info:
            result.raise_for_status()
        assert exc_info.value.to_dict()["retryable"] is True

    def test_retry_sees_stock_run_out(self, db, shop):
        product = Product(shop_id=shop.id, name="Curd", price=15, available_quantity=1)
        db.add(product)
        db.commit()

        result = InterferingLedger(interferences=1).consume(db, product.id, 1)

        assert result.status == ConsumeStatus.INSUFFICIENT_STOCK
        assert result.attempts == 2
        assert _stock(db, product.id) == 0


class TestConsumeAllAndRelease:
    def test_consume_all(self, db, rice, ghee):
        results = InventoryLedger().consume_all(db, [StockLine(rice.id, 3), StockLine(ghee.id, 1)])

        assert [r.remaining for r in results] == [7, 4]

    def test_shortfalls_reported_before_anything_is_consumed(self, db, rice, ghee):
        with pytest.raises(InsufficientStock) as exc_info:
            InventoryLedger().consume_all(db, [StockLine(rice.id, 3), StockLine(ghee.id, 6)])

        assert len(exc_info.value.shortfalls) == 1
        assert _stock(db, rice.id) == 10

    def test_failure_on_later_line_releases_earlier_ones(self, db, rice, ghee):
        # One interference is spent during validation, two more during consume
        ledger = InterferingLedger(interferences=3, product_id=ghee.id)

        with pytest.raises(ConcurrentModification):
            ledger.consume_all(db, [StockLine(rice.id, 3), StockLine(ghee.id, 1)])

        assert _stock(db, rice.id) == 10
        assert _stock(db, ghee.id) == 2

    def test_release_adds_stock_back(self, db, rice):
        ledger = InventoryLedger()
        ledger.consume(db, rice.id, 4)

        assert ledger.release(db, rice.id, 4) == 10
        assert rice.available_quantity == 10

    def test_release_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            InventoryLedger().release(db, 12345, 1)


class TestConcurrentConsume:
    @pytest.mark.parametrize("workers, stock", [(12, 5), (3, 5)])
    def test_exactly_min_of_demand_and_stock_succeed(self, file_engine, workers, stock):
        Session = sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)
        with Session() as setup:
            owner = User(name="Owner", role=UserRole.SHOPKEEPER)
            setup.add(owner)
            setup.flush()
            shop = Shop(owner_id=owner.id, name="Corner Shop", address="1 Main St", delivery_fee=0)
            setup.add(shop)
            setup.flush()
            product = Product(shop_id=shop.id, name="Milk", price=30, available_quantity=stock)
            setup.add(product)
            setup.commit()
            product_id = product.id

        barrier = threading.Barrier(workers)
        outcomes = []
        calls = []
        errors = []
        guard = threading.Lock()

        def worker():
            session = Session()
            ledger = InventoryLedger()
            try:
                barrier.wait()
                result = ledger.consume(session, product_id, 1)
                mine = [result]
                # A lost race is a "try again"; every loss means another consumer won
                while result.status == ConsumeStatus.CONCURRENT_MODIFICATION:
                    result = ledger.consume(session, product_id, 1)
                    mine.append(result)
                with guard:
                    outcomes.append(result)
                    calls.extend(mine)
            except Exception as exc:  # surfaced through the assertion below
                with guard:
                    errors.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        expected = min(workers, stock)
        successes = [r for r in outcomes if r.ok]
        failures = [r for r in outcomes if not r.ok]
        with Session() as check:
            final = _stock(check, product_id)

        assert len(successes) == expected
        assert len(failures) == workers - expected
        assert all(r.status == ConsumeStatus.INSUFFICIENT_STOCK for r in failures)
        assert final == max(0, stock - workers)
        # Each call gives up after its single retry
        assert all(r.attempts <= 2 for r in calls)
