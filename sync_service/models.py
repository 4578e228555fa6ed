from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, Numeric, String, Text, func

from .db import Base, ToDictMixIn

class User(Base, ToDictMixIn):
    __tablename__ = "users"
    # Clerk user id, never generated locally
    id = Column(String, primary_key=True, index=True)
    email = Column(String, index=True, nullable=True)
    name = Column(String, nullable=False, default="")
    image_url = Column(String, nullable=True)
    # item id -> quantity, owned by the storefront, never touched by the sync handlers after creation
    cart_items = Column(JSON, nullable=False, default=dict)


class Order(Base, ToDictMixIn):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    # Event fields are stored verbatim, so a missing field ends up as NULL
    # rather than rejecting the whole batch.
    user_id = Column(String, index=True, nullable=True)
    items = Column(JSON, nullable=True)
    amount = Column(Numeric, nullable=True) # unscaled, kept as sent
    address = Column(JSON, nullable=True)
    date = Column(BigInteger, nullable=True) # epoch millis


class FailedRun(Base, ToDictMixIn):
    __tablename__ = "failed_runs"
    id = Column(Integer, primary_key=True, index=True)
    function_id = Column(String, index=True, nullable=False)
    event_name = Column(String, nullable=False)
    events = Column(JSON, nullable=False)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False)
    failed_at = Column(DateTime(timezone=True), server_default=func.now())
