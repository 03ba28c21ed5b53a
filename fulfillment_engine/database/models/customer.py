"""
Customer model holding the account data the fulfillment engine reads.

Only the fields needed for credit checks live here; contact details and
portal profiles belong to the surrounding product.
"""

from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_engine.database.base import BaseModel

if TYPE_CHECKING:
    from fulfillment_engine.database.models.order import Order


class Customer(BaseModel):
    """
    B2B customer account.

    Attributes:
        name: Business name
        credit_limit: Credit limit in cents, NULL for unlimited credit
        is_active: Whether the account may place and confirm orders
    """

    __tablename__ = "customers"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Business name",
    )

    credit_limit: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Credit limit in cents; NULL means unlimited",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the account is active",
    )

    orders: Mapped[list["Order"]] = relationship(
        "Order",
        back_populates="customer",
        lazy="raise",
    )

    __table_args__ = (
        CheckConstraint(
            "credit_limit IS NULL OR credit_limit >= 0",
            name="ck_customers_credit_limit_non_negative",
        ),
    )
