from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class InventoryItem(Base):
    __tablename__ = "inventory"
    ticket_type = Column(String, primary_key=True)
    available = Column(Integer, nullable=False)
    sold_count = Column(Integer, nullable=False, default=0)
    # bumped on every debit; writers commit only against the version
    # they read
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("available >= 0", name="inventory_available_ck"),
        CheckConstraint("sold_count >= 0", name="inventory_sold_ck"),
    )


class Order(Base):
    __tablename__ = "orders"
    # provider-assigned order id, also the payment idempotency key
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    email = Column(String, nullable=False, default="")
    ticket_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, nullable=False)

    # CREATED | PAID | OVERSOLD_ERROR | FAILED | ERROR
    status = Column(String, nullable=False, default="CREATED")
    tickets_generated = Column(Boolean, nullable=False, default=False)
    ticket_ids = Column(Text, nullable=True)  # JSON array, set once

    payment_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    error_message = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    tickets_generated_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    ticket_type = Column(String, nullable=False)
    ticket_number = Column(Integer, nullable=False)
    owner_name = Column(String, nullable=False)
    owner_phone = Column(String, nullable=False)
    owner_email = Column(String, nullable=False, default="")
    qr_url = Column(String, nullable=False)

    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
    scanned_at = Column(Float, nullable=True)
    scanned_by = Column(String, nullable=True)
