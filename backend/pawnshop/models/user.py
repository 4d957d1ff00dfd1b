"""User model for customers and staff."""

import enum
from datetime import datetime

from sqlalchemy import String, Boolean, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from pawnshop.database import Base, value_enum


class UserRole(str, enum.Enum):
    SUPER_ADMIN_VENDOR = "super_admin_vendor"
    ADMIN_PAWN_LIMITED = "admin_pawn_limited"
    CALL_CENTRE_SUPPORT = "call_centre_support"
    LOAN_OFFICER_PROCESSOR = "loan_officer_processor"
    LOAN_OFFICER_APPROVAL = "loan_officer_approval"
    MANAGEMENT = "management"
    CUSTOMER = "customer"


# Roles allowed to move money or post to the journal
STAFF_ROLES = (
    UserRole.SUPER_ADMIN_VENDOR,
    UserRole.ADMIN_PAWN_LIMITED,
    UserRole.LOAN_OFFICER_PROCESSOR,
    UserRole.LOAN_OFFICER_APPROVAL,
    UserRole.MANAGEMENT,
)
FINANCE_ROLES = (
    UserRole.SUPER_ADMIN_VENDOR,
    UserRole.ADMIN_PAWN_LIMITED,
    UserRole.MANAGEMENT,
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        value_enum(UserRole), default=UserRole.CUSTOMER, nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
