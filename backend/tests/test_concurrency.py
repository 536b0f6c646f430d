"""
Concurrency tests against a file-backed SQLite database.

Each worker runs in its own thread with its own app context (and so its
own session and connection), the way concurrent requests do.
"""
import os
import tempfile
import threading
import unittest
from datetime import timedelta

from keyledger import create_app
from keyledger.config import Config
from keyledger.errors import Conflict, InsufficientBalance, LedgerError
from keyledger.extensions import db
from keyledger.models import Key, KeyDevice, LedgerTransaction, ReferralCode, ReferralRedemption
from keyledger.services import key_service, ledger_service, referral_service
from keyledger.services.key_validation_service import validate_key
from keyledger.services.pricing import MILLIS_PER_HOUR, PricingCatalog, PricingTier
from keyledger.time_utils import utcnow


CATALOG = PricingCatalog([PricingTier("short", 10, MILLIS_PER_HOUR)])


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")

        class ConcurrencyConfig(Config):
            TESTING = True
            SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
            LEDGER_RETRY_ATTEMPTS = 10
            LEDGER_RETRY_BACKOFF = 0.01

        self.app = create_app(ConcurrencyConfig)

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            account = ledger_service.create_account("concurrent_user", 100)
            self.account_id = account.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_workers(self, targets):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(targets))

        def worker(target):
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome = target()
                except Exception as exc:
                    outcome = exc
                finally:
                    db.session.remove()
                with lock:
                    results.append(outcome)

        threads = [threading.Thread(target=worker, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _issue_key(self, device_limit):
        with self.app.app_context():
            key = key_service.issue_key(self.account_id, "short", device_limit, catalog=CATALOG)
            return key.code

    def test_device_cap_under_concurrent_validation(self):
        code = self._issue_key(device_limit=2)

        results = self._run_workers([
            (lambda i=i: validate_key(code, f"device-{i}"))
            for i in range(12)
        ])

        errors = [r for r in results if isinstance(r, Exception) and not isinstance(r, Conflict)]
        self.assertFalse(errors)
        accepted = [r for r in results if getattr(r, "ok", False)]
        self.assertLessEqual(len(accepted), 2)

        with self.app.app_context():
            key = db.session.query(Key).filter_by(code=code).one()
            bound = db.session.query(KeyDevice).filter_by(key_id=key.id).count()
            self.assertLessEqual(bound, 2)
            self.assertEqual(bound, key.bound_device_count)
            self.assertEqual(bound, len(accepted))

    def test_same_device_binds_once(self):
        code = self._issue_key(device_limit=1)

        results = self._run_workers([(lambda: validate_key(code, "device-A")) for _ in range(8)])

        rejected = [r for r in results if not isinstance(r, Exception) and not r.ok]
        self.assertFalse(rejected)
        newly_bound = [r for r in results if getattr(r, "newly_bound", False)]
        self.assertEqual(len(newly_bound), 1)

        with self.app.app_context():
            key = db.session.query(Key).filter_by(code=code).one()
            self.assertEqual(db.session.query(KeyDevice).filter_by(key_id=key.id).count(), 1)
            self.assertEqual(key.bound_device_count, 1)

    def test_concurrent_debits_never_overdraw(self):
        results = self._run_workers([
            (lambda: ledger_service.debit(self.account_id, 30, "TEST"))
            for _ in range(10)
        ])

        unexpected = [r for r in results if isinstance(r, Exception) and not isinstance(r, (InsufficientBalance, Conflict))]
        self.assertFalse(unexpected)
        succeeded = [r for r in results if isinstance(r, LedgerTransaction)]
        self.assertLessEqual(len(succeeded), 3)

        with self.app.app_context():
            balance = ledger_service.get_balance(self.account_id)
            self.assertGreaterEqual(balance, 0)
            self.assertEqual(balance, 100 - 30 * len(succeeded))
            self.assertEqual(balance, ledger_service.reconcile_balance(self.account_id))

    def test_concurrent_issuance_is_all_or_nothing(self):
        results = self._run_workers([
            (lambda: key_service.issue_key(self.account_id, "short", catalog=CATALOG).code)
            for _ in range(15)
        ])

        issued = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if not isinstance(r, str)]
        self.assertLessEqual(len(issued), 10)
        self.assertTrue(all(isinstance(f, LedgerError) for f in failures))

        with self.app.app_context():
            keys = db.session.query(Key).count()
            self.assertEqual(keys, len(issued))
            self.assertEqual(ledger_service.get_balance(self.account_id), 100 - 10 * keys)
            self.assertEqual(
                ledger_service.get_balance(self.account_id),
                ledger_service.reconcile_balance(self.account_id),
            )

    def test_usage_limit_under_concurrent_redemption(self):
        with self.app.app_context():
            referral = referral_service.create_referral_code(5, 3)
            code = referral.code
            account_ids = [ledger_service.create_account(f"redeemer{i}").id for i in range(10)]

        results = self._run_workers([
            (lambda account_id=account_id: referral_service.redeem_code(account_id, code))
            for account_id in account_ids
        ])

        unexpected = [r for r in results if isinstance(r, Exception) and not isinstance(r, LedgerError)]
        self.assertFalse(unexpected)
        succeeded = [r for r in results if not isinstance(r, Exception)]
        self.assertLessEqual(len(succeeded), 3)

        with self.app.app_context():
            referral = db.session.query(ReferralCode).filter_by(code=code).one()
            self.assertLessEqual(referral.uses_consumed, referral.usage_limit)
            self.assertEqual(referral.uses_consumed, len(succeeded))
            self.assertEqual(db.session.query(ReferralRedemption).count(), len(succeeded))
            credited = sum(ledger_service.get_balance(a) for a in account_ids)
            self.assertEqual(credited, 5 * len(succeeded))

    def test_once_per_account_under_concurrency(self):
        with self.app.app_context():
            code = referral_service.create_referral_code(5, 10).code

        results = self._run_workers([
            (lambda: referral_service.redeem_code(self.account_id, code, once_per_account=True))
            for _ in range(6)
        ])

        succeeded = [r for r in results if not isinstance(r, Exception)]
        self.assertLessEqual(len(succeeded), 1)

        with self.app.app_context():
            self.assertEqual(db.session.query(ReferralRedemption).count(), len(succeeded))
            self.assertEqual(ledger_service.get_balance(self.account_id), 100 + 5 * len(succeeded))

    def test_deadline_abort_leaves_no_partial_state(self):
        with self.app.app_context():
            with self.assertRaises(LedgerError):
                key_service.issue_key(
                    self.account_id, "short", catalog=CATALOG, deadline=utcnow() - timedelta(seconds=1)
                )
            self.assertEqual(db.session.query(Key).count(), 0)
            self.assertEqual(ledger_service.get_balance(self.account_id), 100)


if __name__ == "__main__":
    unittest.main()
