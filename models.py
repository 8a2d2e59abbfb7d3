from typing import List, Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)

MONEY = dict(max_digits=14, decimal_places=2)

class BillStatus(str, Enum):
    active = "active"
    completed = "completed"
    expired = "expired"

class PaymentStatus(str, Enum):
    pending = "pending"
    scheduled = "scheduled"
    completed = "completed"
    completed_scheduled = "completed_scheduled"
    completed_late = "completed_late"
    failed = "failed"

SETTLED_STATUSES = (PaymentStatus.completed, PaymentStatus.completed_scheduled, PaymentStatus.completed_late)
OPEN_STATUSES = (PaymentStatus.pending, PaymentStatus.scheduled)

class PaymentType(str, Enum):
    instant = "instant"
    scheduled = "scheduled"

class ScheduleStatus(str, Enum):
    scheduled = "scheduled"
    executed = "executed"
    cancelled = "cancelled"

# ============== Users ==============
class UserBase(SQLModel):
    name: str
    account_number: Optional[str] = Field(default=None, index=True)

class User(UserBase, table=True):
    __tablename__ = "app_user"
    id: Optional[int] = Field(default=None, primary_key=True)
    pin_hash: str = ""
    created_at: datetime = Field(default_factory=utcnow)

# ============== Simulated bank accounts ==============
class LedgerAccount(SQLModel, table=True):
    __tablename__ = "ledger_account"
    account_number: str = Field(primary_key=True)
    holder_name: Optional[str] = None
    balance: Decimal = Field(default=Decimal("0.00"), **MONEY)
    updated_at: datetime = Field(default_factory=utcnow)

# ============== Bills ==============
class BillBase(SQLModel):
    bill_name: str
    currency: str = "IDR"
    max_payment_date: Optional[datetime] = None
    allow_scheduled_payment: bool = True

class Bill(BillBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_code: str = Field(index=True, unique=True)
    host_id: int = Field(foreign_key="app_user.id")
    total_amount: Decimal = Field(**MONEY)
    sub_total: Decimal = Field(**MONEY)
    tax_pct: Decimal = Field(default=Decimal("0"), max_digits=8, decimal_places=4)
    tax_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    service_pct: Decimal = Field(default=Decimal("0"), max_digits=8, decimal_places=4)
    service_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    discount_pct: Decimal = Field(default=Decimal("0"), max_digits=8, decimal_places=4)
    discount_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    split_method: str = "custom"
    status: BillStatus = BillStatus.active
    created_at: datetime = Field(default_factory=utcnow)

# ============== Items ==============
class BillItemBase(SQLModel):
    item_name: str
    price: Decimal = Field(**MONEY)  # unit price
    quantity: int = 1
    is_sharing: bool = False  # divided by fractional share instead of units

class BillItem(BillItemBase, table=True):
    __tablename__ = "bill_item"
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)

# ============== Participants ==============
class BillParticipant(SQLModel, table=True):
    __tablename__ = "bill_participant"
    __table_args__ = (UniqueConstraint("bill_id", "user_id", name="uq_bill_participant_bill_user"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    user_id: int = Field(foreign_key="app_user.id", index=True)
    amount_share: Decimal = Field(default=Decimal("0.00"), **MONEY)  # final total owed
    subtotal: Decimal = Field(default=Decimal("0.00"), **MONEY)
    tax_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    service_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    discount_amount: Decimal = Field(default=Decimal("0.00"), **MONEY)
    payment_status: PaymentStatus = PaymentStatus.pending
    paid_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None  # None until the user joins a host-added row

# ============== Item assignments ==============
class ItemAssignment(SQLModel, table=True):
    __tablename__ = "item_assignment"
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    item_id: int = Field(foreign_key="bill_item.id")
    participant_id: int = Field(foreign_key="bill_participant.id")
    # unit count for non-shared items, fraction in [0, 1] for shared ones
    quantity_assigned: Decimal = Field(max_digits=12, decimal_places=6)
    amount_assigned: Decimal = Field(**MONEY)

# ============== Payments ==============
class Payment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    user_id: int = Field(foreign_key="app_user.id")
    participant_id: int = Field(foreign_key="bill_participant.id")
    amount: Decimal = Field(**MONEY)
    payment_type: PaymentType = PaymentType.instant
    status: PaymentStatus = PaymentStatus.completed
    transaction_id: str = Field(index=True, unique=True)
    reference_number: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    paid_at: datetime = Field(default_factory=utcnow)

class ScheduledPayment(SQLModel, table=True):
    __tablename__ = "scheduled_payment"
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    user_id: int = Field(foreign_key="app_user.id")
    participant_id: int = Field(foreign_key="bill_participant.id")
    amount: Decimal = Field(**MONEY)
    scheduled_date: datetime
    status: ScheduleStatus = ScheduleStatus.scheduled
    pin_verified_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

# ============== Invitations ==============
class BillInvitation(SQLModel, table=True):
    __tablename__ = "bill_invitation"
    __table_args__ = (UniqueConstraint("bill_id", "user_id", name="uq_bill_invitation_bill_user"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_id: int = Field(foreign_key="bill.id", index=True)
    user_id: int = Field(foreign_key="app_user.id")
    invited_by: int = Field(foreign_key="app_user.id")
    created_at: datetime = Field(default_factory=utcnow)

# ============== Inputs ==============
class FeeConfig(SQLModel):
    tax_pct: Decimal = Decimal("0")
    service_pct: Decimal = Decimal("0")
    discount_pct: Decimal = Decimal("0")
    discount_nominal: Optional[Decimal] = None  # wins over discount_pct when set

class AssignmentIn(SQLModel):
    item_index: int  # position in the bill's item list
    quantity: Decimal
    amount: Optional[Decimal] = None

class BreakdownIn(SQLModel):
    user_id: int
    subtotal: Decimal
    tax_amount: Decimal = Decimal("0")
    service_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    amount_share: Optional[Decimal] = None
    items: List[AssignmentIn] = []

def naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
