"""Sign, account-code and derivation rules for the journal.

Inventory rows carry the sign of the cash movement: inflow positive,
outflow negative.  The sign is a function of the row type (adjustments
carry their own).  Ledger categories split into income (must be > 0),
expense (must be < 0) and neutral (either sign).
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from pawnshop.exceptions import SignMismatch, ValidationFailed
from pawnshop.models.ledger import (
    InventoryTxnType,
    LedgerCategory,
    INCOME_CATEGORIES,
    EXPENSE_CATEGORIES,
)

CENT = Decimal("0.01")

# +1 inflow, -1 outflow, 0 sign supplied by the caller
INVENTORY_SIGN: dict[InventoryTxnType, int] = {
    InventoryTxnType.LOAN_DISBURSEMENT: -1,
    InventoryTxnType.REPAYMENT: 1,
    InventoryTxnType.INTEREST_INCOME: 1,
    InventoryTxnType.STORAGE_INCOME: 1,
    InventoryTxnType.PENALTY_INCOME: 1,
    InventoryTxnType.ASSET_SALE: 1,
    InventoryTxnType.ASSET_PURCHASE: -1,
    InventoryTxnType.EXPENSE: -1,
    InventoryTxnType.ADJUSTMENT: 0,
}

ACCOUNT_CODES: dict[InventoryTxnType, str] = {
    InventoryTxnType.LOAN_DISBURSEMENT: "1100",
    InventoryTxnType.REPAYMENT: "1200",
    InventoryTxnType.INTEREST_INCOME: "2100",
    InventoryTxnType.STORAGE_INCOME: "2200",
    InventoryTxnType.PENALTY_INCOME: "2300",
    InventoryTxnType.ASSET_SALE: "3100",
}

EXPENSE_ACCOUNT_CODES: dict[str, str] = {
    "rent": "4100",
    "utilities": "4200",
    "salaries": "4300",
    "maintenance": "4400",
    "marketing": "4500",
    "insurance": "4600",
    "other": "4700",
}

# Single ledger category per inventory type; asset_sale expands to a pair
LEDGER_CATEGORY_FOR: dict[InventoryTxnType, LedgerCategory] = {
    InventoryTxnType.LOAN_DISBURSEMENT: LedgerCategory.LOAN_DISBURSEMENT,
    InventoryTxnType.REPAYMENT: LedgerCategory.LOAN_PRINCIPAL_REPAYMENT,
    InventoryTxnType.INTEREST_INCOME: LedgerCategory.INTEREST_INCOME,
    InventoryTxnType.STORAGE_INCOME: LedgerCategory.STORAGE_INCOME,
    InventoryTxnType.PENALTY_INCOME: LedgerCategory.PENALTY_INCOME,
    InventoryTxnType.ASSET_PURCHASE: LedgerCategory.ASSET_SALE_COGS,
    InventoryTxnType.EXPENSE: LedgerCategory.OTHER,
    InventoryTxnType.ADJUSTMENT: LedgerCategory.ADJUSTMENT,
}

# (payment attribute, inventory type) in posting order
PAYMENT_COMPONENTS: tuple[tuple[str, InventoryTxnType], ...] = (
    ("principal_component", InventoryTxnType.REPAYMENT),
    ("interest_component", InventoryTxnType.INTEREST_INCOME),
    ("storage_component", InventoryTxnType.STORAGE_INCOME),
    ("penalty_component", InventoryTxnType.PENALTY_INCOME),
)


def to_money(value: Any, field_name: str = "amount") -> Decimal:
    """Coerce *value* to a two-decimal Decimal or raise ValidationFailed."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailed(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationFailed(f"{field_name} must be finite")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def coerce_txn_type(value: Any) -> InventoryTxnType:
    try:
        return InventoryTxnType(value)
    except ValueError:
        raise ValidationFailed(f"Invalid transaction type: {value!r}")


def coerce_category(value: Any) -> LedgerCategory:
    try:
        return LedgerCategory(value)
    except ValueError:
        raise ValidationFailed(f"Invalid ledger category: {value!r}")


def signed_amount(txn_type: InventoryTxnType, amount: Any) -> Decimal:
    """Return *amount* re-signed for *txn_type*.

    A value arriving with the wrong sign is normalized rather than rejected;
    adjustments keep the caller's sign.  Zero is never a valid posting.
    """
    value = to_money(amount)
    if value == 0:
        raise ValidationFailed("Transaction amount must not be zero")
    sign = INVENTORY_SIGN[txn_type]
    if sign == 0:
        return value
    return abs(value) * sign


def check_ledger_sign(category: LedgerCategory, amount: Decimal) -> None:
    if amount == 0:
        raise ValidationFailed("Ledger amount must not be zero")
    if category in INCOME_CATEGORIES and amount < 0:
        raise SignMismatch(f"{category.value} entries must be positive, got {amount}")
    if category in EXPENSE_CATEGORIES and amount > 0:
        raise SignMismatch(f"{category.value} entries must be negative, got {amount}")


def default_account_code(txn_type: InventoryTxnType, expense_category: str | None = None) -> str | None:
    if txn_type == InventoryTxnType.EXPENSE:
        return EXPENSE_ACCOUNT_CODES.get(expense_category or "other", EXPENSE_ACCOUNT_CODES["other"])
    return ACCOUNT_CODES.get(txn_type)
