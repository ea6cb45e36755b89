from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    String,
)

from .status import ORDER_PENDING, PAYMENT_PENDING


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    payer_email = Column(String, nullable=False)

    # [{"product_id", "name", "price", "quantity"}], snapshot at checkout
    items = Column(JSON, nullable=False)
    subtotal = Column(BigInteger, nullable=False)
    shipping_cost = Column(BigInteger, nullable=False)
    total = Column(BigInteger, nullable=False)
    currency = Column(String, nullable=False, default="IDR")

    # PENDING | PAID | EXPIRED | FAILED
    status = Column(String, nullable=False, default=ORDER_PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "(status = 'SUCCESS') = (paid_at IS NOT NULL)",
            name="ck_payments_paid_at_iff_success",
        ),
    )

    # provider invoice id
    invoice_id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String, nullable=False, default="IDR")
    invoice_url = Column(String, nullable=True)

    # PENDING | SUCCESS | EXPIRED | FAILED
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    payment_method = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
