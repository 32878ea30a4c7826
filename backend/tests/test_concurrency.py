"""
Threaded concurrency tests on a temporary SQLite file.

Each worker runs in its own app context (its own session and connection), so
write units genuinely contend for the database lock.
"""

import os
import sqlite3
import tempfile
import threading
import unittest
from decimal import Decimal

from erp import create_app
from erp.errors import InsufficientStock, LockTimeout
from erp.extensions import db
from erp.models import Customer, Product, StockMovement
from erp.services import inventory_service, ledger_service, order_service, workflow_service

ACTOR_ID = 1


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "LOCK_TIMEOUT_SECONDS": 15,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            customer = Customer(name="Concurrent Customer")
            product = Product(code="CONCUR-1", name="Concurrent Product", unit_price=Decimal("10.00"))
            db.session.add_all([customer, product])
            db.session.commit()
            self.customer_id = customer.id
            self.product_id = product.id

            inventory_service.adjust_inventory(
                product_id=self.product_id,
                quantity="10",
                movement_type="opening_balance",
                actor_id=ACTOR_ID,
            )

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, args_list):
        results = []
        lock = threading.Lock()

        def worker(*args):
            with self.app.app_context():
                try:
                    value = target(*args)
                    with lock:
                        results.append(value)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=args) for args in args_list]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _confirmed_order(self, quantity):
        order = order_service.create_order(
            "sales_order",
            {"customer_id": self.customer_id, "lines": [{"product_id": self.product_id, "quantity": str(quantity)}]},
            ACTOR_ID,
        )
        workflow_service.transition(order.id, "pending", ACTOR_ID)
        workflow_service.transition(order.id, "confirmed", ACTOR_ID)
        return order.id

    def test_concurrent_shipments_never_oversell(self):
        with self.app.app_context():
            first = self._confirmed_order(6)
            second = self._confirmed_order(6)

        results = self._run_threads(
            lambda order_id: workflow_service.transition(order_id, "shipped", ACTOR_ID).status,
            [(first,), (second,)],
        )

        shipped = [r for r in results if r == "shipped"]
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(shipped), 1)
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], InsufficientStock)

        with self.app.app_context():
            self.assertEqual(ledger_service.current_stock(self.product_id), Decimal("4"))
            product = db.session.get(Product, self.product_id)
            self.assertEqual(Decimal(product.quantity_on_hand), Decimal("4"))

    def test_concurrent_order_numbers_are_unique(self):
        def create(_):
            order = order_service.create_order(
                "sales_order",
                {"customer_id": self.customer_id, "lines": [{"product_id": self.product_id, "quantity": "1"}]},
                ACTOR_ID,
            )
            return order.order_number

        results = self._run_threads(create, [(i,) for i in range(8)])

        errors = [r for r in results if isinstance(r, Exception)]
        self.assertFalse(errors)
        self.assertEqual(len(results), len(set(results)))

    def test_concurrent_adjustments_keep_ledger_chain(self):
        def take_one(_):
            return inventory_service.adjust_inventory(
                product_id=self.product_id,
                quantity="3",
                movement_type="adjustment_out",
                actor_id=ACTOR_ID,
            )["new_stock"]

        results = self._run_threads(take_one, [(i,) for i in range(5)])

        successes = [r for r in results if not isinstance(r, Exception)]
        self.assertEqual(len(successes), 3)
        self.assertTrue(all(isinstance(r, InsufficientStock) for r in results if isinstance(r, Exception)))

        with self.app.app_context():
            self.assertEqual(ledger_service.current_stock(self.product_id), Decimal("1"))
            rows = (
                db.session.query(StockMovement)
                .filter_by(product_id=self.product_id)
                .order_by(StockMovement.id.asc())
                .all()
            )
            for previous, current in zip(rows, rows[1:]):
                self.assertEqual(Decimal(current.quantity_before), Decimal(previous.quantity_after))
            refs = [r.reference_number for r in rows]
            self.assertEqual(len(refs), len(set(refs)))

    def test_held_write_lock_times_out_as_retryable(self):
        app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{self.db_path}",
            "LOCK_TIMEOUT_SECONDS": 0.3,
        })
        holder = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            holder.execute("BEGIN IMMEDIATE")

            with app.app_context():
                with self.assertRaises(LockTimeout):
                    inventory_service.adjust_inventory(
                        product_id=self.product_id,
                        quantity="1",
                        movement_type="adjustment_out",
                        actor_id=ACTOR_ID,
                    )
                db.session.remove()

            response = app.test_client().post(
                "/api/inventory/movements",
                json={"product_id": self.product_id, "quantity": "1", "movement_type": "adjustment_out"},
                headers={"X-Actor-Id": str(ACTOR_ID), "X-Actor-Role": "warehouse"},
            )
            self.assertEqual(response.status_code, 503)
            body = response.get_json()
            self.assertEqual(body["error"], "lock_timeout")
            self.assertTrue(body["retryable"])
        finally:
            holder.execute("ROLLBACK")
            holder.close()
            with app.app_context():
                db.session.remove()
                db.engine.dispose()

        with self.app.app_context():
            self.assertEqual(ledger_service.current_stock(self.product_id), Decimal("10"))
            self.assertEqual(db.session.query(StockMovement).count(), 1)


if __name__ == "__main__":
    unittest.main()
