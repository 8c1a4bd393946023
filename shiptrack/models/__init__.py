"""
SQLAlchemy models for shipment tracking.
All model and enum definitions live here for simplicity and to avoid circular imports.

Tables owned by the tracking engine: shipments (projection), tracking_events,
rto_tracking. Read-only collaborator tables: stores, shipment_status_mappings,
utility_settings, order_lines, customer_info, customer_messages.
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from shiptrack.database import Base
import enum
import uuid


# Enums
class LifecycleClass(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class StoreStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# Models
class Store(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_code = Column("account_code", String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    status = Column(String, default=StoreStatus.ACTIVE.value, nullable=False)
    auth_token_encrypted = Column("auth_token_encrypted", String, nullable=True)  # Encrypted
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())


class StatusMapping(Base):
    __tablename__ = "shipment_status_mappings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    raw_status = Column("raw_status", String, unique=True, nullable=False, index=True)
    renamed = Column("renamed", String, nullable=False)
    is_handover = Column("is_handover", Boolean, default=False, nullable=False)
    is_return = Column("is_return", Boolean, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())


class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, nullable=False, index=True)
    account_code = Column("account_code", String, nullable=False, index=True)
    carrier_id = Column("carrier_id", String, nullable=True)
    awb = Column("awb", String, nullable=True, index=True)
    current_shipment_status = Column("current_shipment_status", String, nullable=True)
    is_handover = Column("is_handover", Boolean, default=False, nullable=False)
    handover_at = Column("handover_at", DateTime, nullable=True)
    lifecycle = Column("lifecycle", String, default=LifecycleClass.ACTIVE.value, nullable=False, index=True)
    last_synced_at = Column("last_synced_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    events = relationship("TrackingEvent", back_populates="shipment", cascade="all, delete-orphan")
    rto_record = relationship("ReturnWarehouseRecord", back_populates="shipment", uselist=False)

    __table_args__ = (
        UniqueConstraint("order_id", "account_code", name="shipments_order_account_unique"),
    )


class TrackingEvent(Base):
    __tablename__ = "tracking_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shipment_id = Column("shipment_id", String, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column("order_id", String, nullable=False)
    account_code = Column("account_code", String, nullable=False)
    status = Column("status", String, nullable=False)
    event_time = Column("event_time", DateTime, nullable=False)
    # Per-shipment write order; breaks ties between events at the same time
    sequence = Column("sequence", Integer, default=0, nullable=False)
    activity = Column("activity", String, nullable=True)
    location = Column("location", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    shipment = relationship("Shipment", back_populates="events")

    __table_args__ = (
        UniqueConstraint("shipment_id", "status", "event_time", name="tracking_events_dedup_unique"),
    )


class ReturnWarehouseRecord(Base):
    __tablename__ = "rto_tracking"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shipment_id = Column("shipment_id", String, ForeignKey("shipments.id", ondelete="CASCADE"), unique=True, nullable=False)
    order_id = Column("order_id", String, nullable=False)
    account_code = Column("account_code", String, nullable=False)
    rto_status = Column("rto_status", String, nullable=True)
    rto_wh = Column("rto_wh", String, nullable=True)
    activity_date = Column("activity_date", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    shipment = relationship("Shipment", back_populates="rto_record")


class UtilitySetting(Base):
    __tablename__ = "utility_settings"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    key = Column("key", String, unique=True, nullable=False, index=True)
    value = Column("value", String, nullable=True)
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())


class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, nullable=False, index=True)
    account_code = Column("account_code", String, nullable=False, index=True)
    product_code = Column("product_code", String, nullable=False)
    quantity = Column(Integer, default=1, nullable=False)


class CustomerInfo(Base):
    __tablename__ = "customer_info"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, nullable=False, index=True)
    account_code = Column("account_code", String, nullable=False, index=True)
    shipping_phone = Column("shipping_phone", String, nullable=True)
    shipping_firstname = Column("shipping_firstname", String, nullable=True)
    shipping_lastname = Column("shipping_lastname", String, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "account_code", name="customer_info_order_account_unique"),
    )


class CustomerMessage(Base):
    __tablename__ = "customer_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, nullable=False, index=True)
    account_code = Column("account_code", String, nullable=False, index=True)
    message_status = Column("message_status", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
