"""SQLAlchemy models for the pawn-shop posting core."""

from pawnshop.models.user import User, UserRole
from pawnshop.models.loan import Loan, LoanStatus, Asset, AssetStatus, AssetCategory, Currency
from pawnshop.models.payment import Payment, PaymentProvider, PaymentStatus
from pawnshop.models.ledger import (
    InventoryTransaction,
    InventoryTxnType,
    LedgerEntry,
    LedgerCategory,
)
from pawnshop.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "User", "UserRole",
    "Loan", "LoanStatus", "Asset", "AssetStatus", "AssetCategory", "Currency",
    "Payment", "PaymentProvider", "PaymentStatus",
    "InventoryTransaction", "InventoryTxnType", "LedgerEntry", "LedgerCategory",
    "ErrorLog", "ErrorSeverity",
]
