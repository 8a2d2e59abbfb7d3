"""
Credential verification and join admission.

Both are collaborators of the core: services receive them by constructor and
only ever ask a yes/no question.
"""
import logging
from typing import Callable, Optional

import bcrypt
from sqlmodel import Session, select

from models import Bill, BillInvitation, User

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()


def check_pin(pin: str, pin_hash: str) -> bool:
    if not pin or not pin_hash:
        return False
    try:
        return bcrypt.checkpw(pin.encode(), pin_hash.encode())
    except ValueError:
        # not a bcrypt hash
        return False


class PinVerifier:
    """Checks a user's payment PIN against the stored hash."""

    def __init__(self, session: Session):
        self.session = session

    def verify(self, user_id: int, pin: str) -> bool:
        user = self.session.get(User, user_id)
        if user is None:
            return False
        ok = check_pin(pin, user.pin_hash)
        if not ok:
            logger.warning(f"PIN verification failed for user {user_id}")
        return ok


class InvitationAdmission:
    """
    Admits a user to a bill when the host invited them or when the
    friendship lookup says they are a friend of the host.
    """

    def __init__(self, session: Session, are_friends: Optional[Callable[[int, int], bool]] = None):
        self.session = session
        self.are_friends = are_friends or (lambda host_id, user_id: False)

    def may_join(self, bill: Bill, user_id: int) -> bool:
        invited = self.session.exec(
            select(BillInvitation).where(BillInvitation.bill_id == bill.id, BillInvitation.user_id == user_id)
        ).first()
        if invited is not None:
            return True
        return bool(self.are_friends(bill.host_id, user_id))
