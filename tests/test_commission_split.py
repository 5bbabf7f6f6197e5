from __future__ import annotations

import os
import unittest
from decimal import Decimal

from app import create_app
from app.errors import ValidationError
from app.extensions import db
from app.services.commission_service import (
    calculate_commission,
    get_platform_fee_percentage,
    set_platform_fee_percentage,
)
from app.utils.money import money_major_to_minor, money_minor_to_major


class CommissionSplitTestCase(unittest.TestCase):
    def test_default_twenty_percent_split(self):
        split = calculate_commission("14500", 20)
        self.assertEqual(split.platform_fee, Decimal("2900.00"))
        self.assertEqual(split.net_earnings, Decimal("11600.00"))
        self.assertEqual(split.to_dict()["platform_fee_percentage"], "20.00")

    def test_fee_plus_net_equals_gross(self):
        for gross, pct in (("0.05", "12.5"), ("999.99", "17"), ("1", "33.33"), ("123456.78", "0"), ("10", "100")):
            split = calculate_commission(gross, pct)
            self.assertEqual(split.platform_fee + split.net_earnings, split.gross_amount)
            self.assertGreaterEqual(split.platform_fee, Decimal("0"))
            self.assertGreaterEqual(split.net_earnings, Decimal("0"))

    def test_half_cent_rounds_up(self):
        split = calculate_commission("0.25", "10")
        self.assertEqual(split.platform_fee, Decimal("0.03"))
        self.assertEqual(split.net_earnings, Decimal("0.22"))

    def test_invalid_percentage_and_amount(self):
        with self.assertRaises(ValidationError):
            calculate_commission("100", "101")
        with self.assertRaises(ValidationError):
            calculate_commission("100", "-1")
        with self.assertRaises(ValidationError):
            calculate_commission("-5", "20")
        with self.assertRaises(ValidationError):
            calculate_commission("abc", "20")


class MoneyMinorUnitsTestCase(unittest.TestCase):
    def test_major_to_minor_rounds_half_up(self):
        self.assertEqual(money_major_to_minor("4000"), 400000)
        self.assertEqual(money_major_to_minor("0.005"), 1)
        self.assertEqual(money_major_to_minor(None), 0)

    def test_minor_to_major(self):
        self.assertEqual(money_minor_to_major(250000), Decimal("2500.00"))
        self.assertEqual(money_minor_to_major(99), Decimal("0.99"))
        self.assertEqual(money_minor_to_major("junk"), Decimal("0.00"))


class PlatformFeeSettingTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_fee = os.getenv("PLATFORM_FEE_PERCENTAGE")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        os.environ.pop("PLATFORM_FEE_PERCENTAGE", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_fee is not None:
            os.environ["PLATFORM_FEE_PERCENTAGE"] = cls._prev_fee

    def test_setting_overrides_default_rate(self):
        with self.app.app_context():
            self.assertEqual(get_platform_fee_percentage(), Decimal("20"))
            set_platform_fee_percentage("15", updated_by=None)
            db.session.commit()
            self.assertEqual(get_platform_fee_percentage(), Decimal("15.00"))
            split = calculate_commission("1000")
            self.assertEqual(split.platform_fee, Decimal("150.00"))
            self.assertEqual(split.net_earnings, Decimal("850.00"))

            with self.assertRaises(ValidationError):
                set_platform_fee_percentage("120")
            db.session.rollback()
            self.assertEqual(get_platform_fee_percentage(), Decimal("15.00"))


if __name__ == "__main__":
    unittest.main()
