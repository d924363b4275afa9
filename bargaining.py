"""
Bargain thread state machine.

A thread moves ongoing -> accepted | rejected. Messages and counter offers keep
the current status. Accepted and rejected are terminal: every action on them
raises InvalidTransition. Functions here work on plain thread documents and
return a MongoDB update document; persistence is left to the caller, which
should match on source_statuses(action) so a concurrent finish is not overwritten.
"""
import logging
from typing import Any, Dict, List, Optional

from schemas import Bargain, BargainMessage, BargainStatus, Role, Sender

logger = logging.getLogger(__name__)

MESSAGE = "message"
COUNTER = "counter"
ACCEPT = "accept"
REJECT = "reject"

# status -> {action: next status}; None keeps the current status
TRANSITIONS = {
    BargainStatus.pending.value: {MESSAGE: None, COUNTER: None, ACCEPT: BargainStatus.accepted, REJECT: BargainStatus.rejected},
    BargainStatus.ongoing.value: {MESSAGE: None, COUNTER: None, ACCEPT: BargainStatus.accepted, REJECT: BargainStatus.rejected},
    BargainStatus.accepted.value: {},
    BargainStatus.rejected.value: {},
}


def source_statuses(action: str) -> List[str]:
    """Statuses a thread may be in for `action` to apply."""
    return [status for status, actions in TRANSITIONS.items() if action in actions]


OPENING_TEXT = "Proposed a price"
COUNTER_TEXT = "Counter Offer"


class BargainError(Exception):
    status_code = 400

    def __init__(self, msg: str):
        super().__init__(msg)
        self.msg = msg


class InvalidTransition(BargainError):
    pass


class MissingPrice(BargainError):
    pass


class NotParticipant(BargainError):
    status_code = 403


def start_thread(product_id: str, customer_id: str, vendor_id: str, price: Optional[float]) -> Bargain:
    return Bargain(
        product_id=product_id,
        customer_id=customer_id,
        vendor_id=vendor_id,
        messages=[BargainMessage(sender=Sender.customer, text=OPENING_TEXT, price=price)],
        status=BargainStatus.ongoing,
    )


def sender_for(role: str) -> Sender:
    """Vendors write as the vendor; every other role writes as the customer."""
    return Sender.vendor if role == Role.vendor.value else Sender.customer


def ensure_participant(thread: Dict[str, Any], user: Dict[str, Any]) -> None:
    if user["id"] not in (thread.get("customer_id"), thread.get("vendor_id")):
        raise NotParticipant("Not authorized to access this bargain")


def last_offer(thread: Dict[str, Any]) -> Optional[float]:
    messages = thread.get("messages") or []
    if not messages:
        return None
    return messages[-1].get("price")


def resolve_final_price(thread: Dict[str, Any], price: Optional[float]) -> float:
    """Explicit price wins over the last message's price. Zero counts as no price."""
    final_price = price if price else last_offer(thread)
    if not final_price or final_price <= 0:
        raise MissingPrice("Final price is required")
    return final_price


def transition(
    thread: Dict[str, Any],
    action: str,
    sender: Optional[Sender] = None,
    text: Optional[str] = None,
    price: Optional[float] = None,
) -> Dict[str, Any]:
    """Validate `action` against the thread's status and return the MongoDB update.

    New messages go through $push so concurrent appends are never lost.
    """
    status = thread.get("status", BargainStatus.pending.value)
    allowed = TRANSITIONS.get(status, {})
    if action not in allowed:
        raise InvalidTransition(f"Bargain is already {status}")

    updates: Dict[str, Any] = {}
    update: Dict[str, Any] = {}
    if action in (MESSAGE, COUNTER):
        if action == COUNTER:
            if price is None:
                raise MissingPrice("Counter offer price is required")
            text = text or COUNTER_TEXT
        if text is None and price is None:
            raise BargainError("Message text or price is required")
        message = BargainMessage(sender=sender or Sender.customer, text=text, price=price)
        update["$push"] = {"messages": message.model_dump()}
    elif action == ACCEPT:
        updates["final_price"] = resolve_final_price(thread, price)

    next_status = allowed[action]
    if next_status is not None:
        updates["status"] = next_status.value
    if updates:
        update["$set"] = updates
    logger.debug("Bargain %s: %s from %s", thread.get("_id"), action, status)
    return update
