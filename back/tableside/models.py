from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ============ ENUMS ============

class SessionStatus(str, Enum):
    open = "open"
    closed = "closed"


class OrderSource(str, Enum):
    qr = "qr"
    walk_in = "walk_in"
    reservation = "reservation"


class PaymentMethod(str, Enum):
    card = "card"
    venue = "venue"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    not_required = "not_required"


class OrderStatus(str, Enum):
    new = "new"
    accepted = "accepted"
    cancelled = "cancelled"


class KitchenStatus(str, Enum):
    new = "new"
    preparing = "preparing"
    ready = "ready"
    delivered = "delivered"


KITCHEN_FLOW = [
    KitchenStatus.new,
    KitchenStatus.preparing,
    KitchenStatus.ready,
    KitchenStatus.delivered,
]


class ServiceRequestType(str, Enum):
    waiter = "waiter"
    bill = "bill"
    order_ready = "order_ready"


class ServiceRequestStatus(str, Enum):
    open = "open"
    handled = "handled"


class ReservationStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    arrived = "arrived"
    no_show = "no_show"
    cancelled = "cancelled"


class DepositStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"


class AttemptStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class DeliveryOrderStatus(str, Enum):
    new = "new"
    accepted = "accepted"
    on_the_way = "on_the_way"
    delivered = "delivered"
    cancelled = "cancelled"


# ============ RESTAURANT & STAFF ============

class Restaurant(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    region: str | None = None  # e.g. "TR", "UK"; drives the default currency
    currency: str | None = None  # ISO code override, e.g. "EUR"
    stripe_secret_key: str | None = Field(default=None)
    stripe_publishable_key: str | None = Field(default=None)

    # Delivery pricing snapshot source (zone geometry lives elsewhere)
    delivery_fee_cents: int = Field(default=0)
    delivery_min_order_cents: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)

    users: list["User"] = Relationship(back_populates="restaurant")


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    full_name: str | None = None

    # Staff belong to a restaurant; diners do not
    restaurant_id: int | None = Field(default=None, foreign_key="restaurant.id")
    restaurant: Restaurant | None = Relationship(back_populates="users")


class RestaurantMixin(SQLModel):
    restaurant_id: int = Field(foreign_key="restaurant.id", index=True)


class Table(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str  # e.g., "Table 5"
    token: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    seat_count: int = Field(default=4)
    is_active: bool = Field(default=True)
    # Layout only
    floor: str | None = None
    x_position: float = Field(default=0)
    y_position: float = Field(default=0)


# ============ CATALOG (read-only input) ============

class MenuItemModifierGroup(SQLModel, table=True):
    menu_item_id: int = Field(foreign_key="menuitem.id", primary_key=True)
    group_id: int = Field(foreign_key="modifiergroup.id", primary_key=True)
    sort_order: int = Field(default=0)


class MenuItem(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    title: str
    price_cents: int
    is_active: bool = Field(default=True)
    is_available: bool = Field(default=True)


class ModifierGroup(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    title: str
    min_select: int = Field(default=0)
    max_select: int = Field(default=1)
    is_active: bool = Field(default=True)

    options: list["ModifierOption"] = Relationship(back_populates="group")


class ModifierOption(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    group_id: int = Field(foreign_key="modifiergroup.id", index=True)
    title: str
    price_delta_cents: int = Field(default=0)
    is_active: bool = Field(default=True)
    sort_order: int = Field(default=0)

    group: ModifierGroup = Relationship(back_populates="options")


# ============ RESERVATIONS (linked, never scheduled here) ============

class Reservation(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    date_time_utc: datetime = Field(index=True)
    party_size: int = Field(default=2)
    status: ReservationStatus = Field(default=ReservationStatus.pending, index=True)

    deposit_amount_cents: int = Field(default=0)
    deposit_status: DepositStatus = Field(default=DepositStatus.pending)
    deposit_paid: bool = Field(default=False)
    paid_amount_cents: int = Field(default=0)
    paid_currency: str | None = None
    payment_intent_id: str | None = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=utcnow)


# ============ LEDGER ============

class TableSession(RestaurantMixin, table=True):
    """The open commercial tab of one table."""

    __table_args__ = (
        # At most one open session per table
        Index(
            "uq_tablesession_open_per_table",
            "restaurant_id",
            "table_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    reservation_id: int | None = Field(default=None, foreign_key="reservation.id")
    status: SessionStatus = Field(default=SessionStatus.open, index=True)
    currency: str = Field(default="TRY")

    card_total_cents: int = Field(default=0)
    pay_at_venue_total_cents: int = Field(default=0)
    grand_total_cents: int = Field(default=0)

    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: datetime | None = None
    last_order_at: datetime | None = None

    def totals(self) -> dict:
        return {
            "card_total_cents": self.card_total_cents,
            "pay_at_venue_total_cents": self.pay_at_venue_total_cents,
            "grand_total_cents": self.grand_total_cents,
        }


class Order(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    session_id: int = Field(foreign_key="tablesession.id", index=True)
    source: OrderSource = Field(default=OrderSource.qr, index=True)

    user_id: int | None = Field(default=None, foreign_key="user.id")
    guest_name: str | None = None
    notes: str | None = None

    currency: str
    total_cents: int = Field(default=0)

    payment_method: PaymentMethod
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending)
    payment_intent_id: str | None = Field(default=None, index=True)

    status: OrderStatus = Field(default=OrderStatus.new, index=True)
    kitchen_status: KitchenStatus = Field(default=KitchenStatus.new, index=True)

    created_at: datetime = Field(default_factory=utcnow, index=True)
    kitchen_status_updated_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None  # 'customer' or 'staff'

    items: list["OrderItem"] = Relationship(back_populates="order")

    def is_counted(self) -> bool:
        """Whether this order's total is part of its session totals."""
        if self.payment_method == PaymentMethod.venue:
            return True
        return self.payment_status == PaymentStatus.paid


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int = Field(foreign_key="menuitem.id")
    # Snapshot of the catalog at order time
    title: str
    base_price_cents: int
    quantity: int
    note: str | None = None
    selected_modifiers: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    unit_modifiers_total_cents: int = Field(default=0)
    unit_total_cents: int
    line_total_cents: int

    order: Order = Relationship(back_populates="items")


class ServiceRequest(RestaurantMixin, table=True):
    __table_args__ = (
        # At most one open order_ready flag per session
        Index(
            "uq_servicerequest_open_ready_per_session",
            "session_id",
            unique=True,
            postgresql_where=text("type = 'order_ready' AND status = 'open'"),
            sqlite_where=text("type = 'order_ready' AND status = 'open'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="table.id", index=True)
    session_id: int | None = Field(default=None, foreign_key="tablesession.id", index=True)
    type: ServiceRequestType
    status: ServiceRequestStatus = Field(default=ServiceRequestStatus.open, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    handled_at: datetime | None = None


# ============ DELIVERY ============

class DeliveryPaymentAttempt(RestaurantMixin, table=True):
    """Card checkout that exists before the gateway confirms payment."""
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    delivery_address: str
    currency: str
    items: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    subtotal_cents: int = Field(default=0)
    delivery_fee_cents: int = Field(default=0)
    total_cents: int = Field(default=0)
    payment_intent_id: str | None = Field(default=None, index=True)
    status: AttemptStatus = Field(default=AttemptStatus.pending, index=True)
    delivery_order_id: int | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryOrder(RestaurantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    attempt_id: int = Field(foreign_key="deliverypaymentattempt.id", unique=True)
    delivery_address: str
    currency: str
    items: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    subtotal_cents: int = Field(default=0)
    delivery_fee_cents: int = Field(default=0)
    total_cents: int = Field(default=0)
    payment_method: PaymentMethod = Field(default=PaymentMethod.card)
    payment_status: PaymentStatus = Field(default=PaymentStatus.paid)
    payment_intent_id: str | None = Field(default=None, index=True)
    status: DeliveryOrderStatus = Field(default=DeliveryOrderStatus.new, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class PaymentEvent(SQLModel, table=True):
    """Gateway events already applied; a replayed event id is skipped."""
    event_id: str = Field(primary_key=True)
    intent_id: str | None = Field(default=None, index=True)
    kind: str | None = None
    outcome: str
    received_at: datetime = Field(default_factory=utcnow)


# Request/Response Models

def normalize_modifier_payload(raw: Any) -> list[dict]:
    """
    Fold every accepted modifier payload shape into one list form.

    Accepted shapes:
    - list of {"group_id": g, "option_ids": [o, ...]} or {"group_id": g, "option_id": o}
    - mapping {g: o} or {g: [o, ...]}
    Anything else is rejected.
    """
    if raw is None:
        return []

    if isinstance(raw, dict):
        out = []
        for group_id, options in raw.items():
            if isinstance(options, (list, tuple)):
                option_ids = list(options)
            elif options is None:
                option_ids = []
            else:
                option_ids = [options]
            out.append({"group_id": group_id, "option_ids": option_ids})
        return out

    if isinstance(raw, (list, tuple)):
        out = []
        for entry in raw:
            if isinstance(entry, ModifierSelection):
                out.append({"group_id": entry.group_id, "option_ids": list(entry.option_ids)})
                continue
            if not isinstance(entry, dict) or "group_id" not in entry:
                raise ValueError("each modifier selection needs a group_id")
            if "option_ids" in entry and "option_id" in entry:
                raise ValueError("give either option_id or option_ids, not both")
            if "option_ids" in entry:
                option_ids = entry["option_ids"] or []
                if not isinstance(option_ids, (list, tuple)):
                    raise ValueError("option_ids must be a list")
                option_ids = list(option_ids)
            elif entry.get("option_id") is not None:
                option_ids = [entry["option_id"]]
            else:
                option_ids = []
            out.append({"group_id": entry["group_id"], "option_ids": option_ids})
        return out

    raise ValueError("selected_modifiers must be a list or a mapping")


class ModifierSelection(SQLModel):
    group_id: int
    option_ids: list[int] = Field(default_factory=list)


class OrderItemCreate(SQLModel):
    item_id: int
    quantity: int = Field(default=1, ge=1)
    note: str | None = None
    selected_modifiers: list[ModifierSelection] = Field(default_factory=list)

    @field_validator("selected_modifiers", mode="before")
    @classmethod
    def _normalize_modifiers(cls, value: Any) -> list[dict]:
        return normalize_modifier_payload(value)


class OrderCreate(SQLModel):
    items: list[OrderItemCreate]
    payment_method: PaymentMethod = PaymentMethod.venue
    source: OrderSource = OrderSource.qr
    guest_name: str | None = None
    notes: str | None = None
    reservation_id: int | None = None  # explicit link; otherwise matched by time


class WalkInOrderCreate(SQLModel):
    items: list[OrderItemCreate]
    guest_name: str | None = None
    notes: str | None = None


class SessionOpen(SQLModel):
    reservation_id: int | None = None


class KitchenStatusUpdate(SQLModel):
    kitchen_status: KitchenStatus


class OrderCancel(SQLModel):
    cancelled_by: str = "staff"


class ServiceRequestCreate(SQLModel):
    type: ServiceRequestType


class DeliveryAttemptCreate(SQLModel):
    items: list[OrderItemCreate]
    delivery_address: str
