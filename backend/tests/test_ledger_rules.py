"""Tests for sign normalization, account codes and ledger sign rules (pure functions)."""

from decimal import Decimal

import pytest

from pawnshop.exceptions import SignMismatch, ValidationFailed
from pawnshop.models.ledger import InventoryTxnType, LedgerCategory
from pawnshop.services.ledger.rules import (
    check_ledger_sign,
    coerce_category,
    coerce_txn_type,
    default_account_code,
    signed_amount,
    to_money,
)


class TestSignedAmount:

    @pytest.mark.parametrize("txn_type", [
        InventoryTxnType.REPAYMENT,
        InventoryTxnType.INTEREST_INCOME,
        InventoryTxnType.STORAGE_INCOME,
        InventoryTxnType.PENALTY_INCOME,
        InventoryTxnType.ASSET_SALE,
    ])
    def test_inflows_are_positive(self, txn_type):
        assert signed_amount(txn_type, "-30") == Decimal("30.00")
        assert signed_amount(txn_type, 30) == Decimal("30.00")

    @pytest.mark.parametrize("txn_type", [
        InventoryTxnType.LOAN_DISBURSEMENT,
        InventoryTxnType.ASSET_PURCHASE,
        InventoryTxnType.EXPENSE,
    ])
    def test_outflows_are_negative(self, txn_type):
        assert signed_amount(txn_type, 100) == Decimal("-100.00")
        assert signed_amount(txn_type, -100) == Decimal("-100.00")

    def test_adjustment_keeps_sign(self):
        assert signed_amount(InventoryTxnType.ADJUSTMENT, "-5.5") == Decimal("-5.50")
        assert signed_amount(InventoryTxnType.ADJUSTMENT, "5.5") == Decimal("5.50")

    def test_zero_is_rejected(self):
        with pytest.raises(ValidationFailed, match="zero"):
            signed_amount(InventoryTxnType.REPAYMENT, 0)


class TestToMoney:

    def test_rounds_half_up_to_cents(self):
        assert to_money("10.005") == Decimal("10.01")

    def test_float_goes_through_str(self):
        assert to_money(0.1) == Decimal("0.10")

    @pytest.mark.parametrize("bad", ["abc", None, "NaN", "Infinity"])
    def test_rejects_non_numbers(self, bad):
        with pytest.raises(ValidationFailed):
            to_money(bad)


class TestCoercion:

    def test_txn_type(self):
        assert coerce_txn_type("asset_sale") == InventoryTxnType.ASSET_SALE
        with pytest.raises(ValidationFailed):
            coerce_txn_type("refund")

    def test_category(self):
        assert coerce_category("write_off") == LedgerCategory.WRITE_OFF
        with pytest.raises(ValidationFailed):
            coerce_category("fees")


class TestLedgerSign:

    @pytest.mark.parametrize("category", [
        LedgerCategory.INTEREST_INCOME,
        LedgerCategory.STORAGE_INCOME,
        LedgerCategory.PENALTY_INCOME,
        LedgerCategory.ASSET_SALE_REVENUE,
    ])
    def test_income_must_be_positive(self, category):
        check_ledger_sign(category, Decimal("1"))
        with pytest.raises(SignMismatch):
            check_ledger_sign(category, Decimal("-1"))

    @pytest.mark.parametrize("category", [
        LedgerCategory.LOAN_DISBURSEMENT,
        LedgerCategory.ASSET_SALE_COGS,
        LedgerCategory.WRITE_OFF,
    ])
    def test_expense_must_be_negative(self, category):
        check_ledger_sign(category, Decimal("-1"))
        with pytest.raises(SignMismatch):
            check_ledger_sign(category, Decimal("1"))

    @pytest.mark.parametrize("category", [
        LedgerCategory.ADJUSTMENT, LedgerCategory.OTHER, LedgerCategory.LOAN_PRINCIPAL_REPAYMENT,
    ])
    def test_neutral_accepts_either_sign(self, category):
        check_ledger_sign(category, Decimal("-1"))
        check_ledger_sign(category, Decimal("1"))

    def test_zero_is_rejected(self):
        with pytest.raises(ValidationFailed):
            check_ledger_sign(LedgerCategory.OTHER, Decimal("0"))

    def test_sign_mismatch_is_a_validation_failure(self):
        assert issubclass(SignMismatch, ValidationFailed)
        assert SignMismatch("x").status_code == 400


class TestAccountCodes:

    @pytest.mark.parametrize("txn_type,code", [
        (InventoryTxnType.LOAN_DISBURSEMENT, "1100"),
        (InventoryTxnType.REPAYMENT, "1200"),
        (InventoryTxnType.INTEREST_INCOME, "2100"),
        (InventoryTxnType.STORAGE_INCOME, "2200"),
        (InventoryTxnType.PENALTY_INCOME, "2300"),
        (InventoryTxnType.ASSET_SALE, "3100"),
    ])
    def test_fixed_codes(self, txn_type, code):
        assert default_account_code(txn_type) == code

    @pytest.mark.parametrize("category,code", [
        ("rent", "4100"), ("utilities", "4200"), ("salaries", "4300"),
        ("maintenance", "4400"), ("marketing", "4500"), ("insurance", "4600"),
        ("other", "4700"), (None, "4700"),
    ])
    def test_expense_codes(self, category, code):
        assert default_account_code(InventoryTxnType.EXPENSE, category) == code

    def test_adjustment_has_no_default(self):
        assert default_account_code(InventoryTxnType.ADJUSTMENT) is None
