"""
Simulated bank ledger.

Balances live in the ``ledger_account`` table. A transfer debits the payer and
credits the payee inside the caller's transaction; it never commits on its
own, so the payment flow can roll the whole thing back.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import update
from sqlmodel import Session, select

from compute import round2, to_dec
from errors import ConflictError, InsufficientFundsError, NotFoundError, ValidationError
from models import LedgerAccount, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferReceipt:
    transaction_id: str
    reference_number: str
    amount: Decimal
    from_balance: Decimal


def new_transaction_id(scheduled: bool = False, now: datetime = None) -> str:
    now = now or utcnow()
    prefix = "SCH" if scheduled else "TXN"
    return f"{prefix}{now.strftime('%Y%m%d%H%M%S')}{secrets.token_hex(3).upper()}"


class SettlementSimulator:
    def __init__(self, session: Session):
        self.session = session

    def _account(self, account_number: str, lock: bool = False) -> LedgerAccount:
        stmt = select(LedgerAccount).where(LedgerAccount.account_number == account_number)
        if lock:
            stmt = stmt.with_for_update()
        return self.session.exec(stmt).first()

    def open_account(self, account_number: str, balance=0, holder_name: str = None) -> LedgerAccount:
        if self.session.get(LedgerAccount, account_number) is not None:
            raise ConflictError(f"Account {account_number} already exists")
        opening = round2(balance)
        if opening < 0:
            raise ValidationError("Opening balance cannot be negative")
        account = LedgerAccount(account_number=account_number, balance=opening, holder_name=holder_name)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(f"Opened account {account_number} with balance {opening}")
        return account

    def balance(self, account_number: str) -> Decimal:
        account = self._account(account_number)
        if account is None:
            raise NotFoundError(f"Account {account_number} not found")
        return to_dec(account.balance)

    def deposit(self, account_number: str, amount) -> Decimal:
        amount = round2(amount)
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive")
        account = self._account(account_number, lock=True)
        if account is None:
            raise NotFoundError(f"Account {account_number} not found")
        account.balance = round2(to_dec(account.balance) + amount)
        account.updated_at = utcnow()
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return to_dec(account.balance)

    def transfer(self, from_account: str, to_account: str, amount, scheduled: bool = False) -> TransferReceipt:
        """
        Move amount from payer to payee. Does not commit.
        A missing payee aborts before anything is debited.
        """
        amount = round2(amount)
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive")
        payer = self._account(from_account, lock=True) if from_account else None
        if payer is None or to_dec(payer.balance) < amount:
            logger.warning(f"Insufficient balance on {from_account} for {amount}")
            raise InsufficientFundsError("Insufficient balance")
        payee = self._account(to_account, lock=True) if to_account else None
        if payee is None:
            raise NotFoundError(f"Payee account {to_account} not found")

        now = utcnow()
        # guarded debit: concurrent transfers cannot push the balance below zero
        debited = self.session.connection().execute(
            update(LedgerAccount)
            .where(LedgerAccount.account_number == from_account, LedgerAccount.balance >= amount)
            .values(balance=LedgerAccount.balance - amount, updated_at=now)
        )
        if debited.rowcount != 1:
            raise InsufficientFundsError("Insufficient balance")
        self.session.connection().execute(
            update(LedgerAccount)
            .where(LedgerAccount.account_number == to_account)
            .values(balance=LedgerAccount.balance + amount, updated_at=now)
        )
        self.session.expire(payer)
        self.session.expire(payee)
        receipt = TransferReceipt(
            transaction_id=new_transaction_id(scheduled, now),
            reference_number=f"BNI{secrets.token_hex(4).upper()}",
            amount=amount,
            from_balance=to_dec(payer.balance),
        )
        logger.info(f"Transfer {receipt.transaction_id}: {amount} {from_account} -> {to_account}")
        return receipt
