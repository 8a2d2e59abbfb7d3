from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlmodel import Session, SQLModel

import access
from access import hash_pin
from bills import BillService
from config import Settings
from db import create_db_and_tables, make_engine
from models import AssignmentIn, BillItemBase, BreakdownIn, FeeConfig, User
from settlement import SettlementSimulator

PIN = "123456"


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def cheap_bcrypt(monkeypatch):
    monkeypatch.setattr(access, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 15, 12, 0, 0))


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://")


@pytest.fixture
def make_user(session):
    def _make(name, account_number=None, balance=None, pin=PIN):
        user = User(name=name, account_number=account_number, pin_hash=hash_pin(pin))
        session.add(user)
        session.commit()
        session.refresh(user)
        if account_number and balance is not None:
            SettlementSimulator(session).open_account(account_number, Decimal(balance), name)
        return user
    return _make


@pytest.fixture
def users(make_user):
    return {
        "andra": make_user("Andra", "1000000001", "0"),
        "aulia": make_user("Aulia", "1000000002", "500000"),
        "ilham": make_user("Ilham", "1000000003", "500000"),
        "ivan": make_user("Ivan", "1000000004", "10000"),
    }


@pytest.fixture
def service(session, settings, clock):
    return BillService(session, settings=settings, clock=clock)


@pytest.fixture
def payments(service):
    return service.payments


def dinner_items():
    return [
        BillItemBase(item_name="Grilled Fish", price=Decimal("180000"), quantity=1),
        BillItemBase(item_name="Fried Rice", price=Decimal("60000"), quantity=2),
        BillItemBase(item_name="Iced Tea", price=Decimal("20000"), quantity=3),
    ]


@pytest.fixture
def items():
    return dinner_items()


@pytest.fixture
def dinner(service, users):
    """Subtotal 360000, tax 10%: shares 132000 (host) / 198000 / 66000."""
    breakdowns = [
        BreakdownIn(user_id=users["andra"].id, subtotal=Decimal("120000"), tax_amount=Decimal("12000"),
                    amount_share=Decimal("132000"), items=[AssignmentIn(item_index=1, quantity=Decimal("2"))]),
        BreakdownIn(user_id=users["aulia"].id, subtotal=Decimal("180000"), tax_amount=Decimal("18000"),
                    amount_share=Decimal("198000"),
                    items=[AssignmentIn(item_index=0, quantity=Decimal("1"), amount=Decimal("180000"))]),
        BreakdownIn(user_id=users["ilham"].id, subtotal=Decimal("60000"), tax_amount=Decimal("6000"),
                    amount_share=Decimal("66000"), items=[AssignmentIn(item_index=2, quantity=Decimal("3"))]),
    ]
    return service.create_bill(users["andra"].id, "Team Dinner", dinner_items(), FeeConfig(tax_pct=Decimal("10")),
                               breakdowns)


@pytest.fixture
def participant(service, dinner):
    def _find(user):
        return service.ledger.find(dinner.id, user.id)
    return _find
