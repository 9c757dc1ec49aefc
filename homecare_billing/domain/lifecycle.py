"""Receipt lifecycle state machine"""

from enum import Enum

from homecare_billing.domain.exceptions import IllegalTransitionError

HAS_ERRORS = "hasErrors"
ALREADY_CONFIRMED = "alreadyConfirmed"
NOT_CONFIRMED = "notConfirmed"
ALREADY_SENT = "alreadySent"
RECEIPT_CONFIRMED = "receiptConfirmed"


class ReceiptState(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    SENT = "sent"


def derive_state(is_confirmed: bool, is_sent: bool) -> ReceiptState:
    """Sent wins over confirmed; anything unconfirmed is a draft"""
    if is_sent:
        return ReceiptState.SENT
    if is_confirmed:
        return ReceiptState.CONFIRMED
    return ReceiptState.DRAFT


def ensure_can_recalculate(is_confirmed: bool, is_sent: bool) -> None:
    state = derive_state(is_confirmed, is_sent)
    if state is ReceiptState.SENT:
        raise IllegalTransitionError(ALREADY_SENT, ["Receipt has been sent and cannot be recalculated"])
    if state is ReceiptState.CONFIRMED:
        raise IllegalTransitionError(RECEIPT_CONFIRMED, ["Reopen the receipt before recalculating"])


def ensure_can_finalize(is_confirmed: bool, is_sent: bool, has_errors: bool, error_messages=()) -> None:
    """
    Confirmation requires a draft with no validation errors.

    Raises:
        IllegalTransitionError: alreadySent, alreadyConfirmed or hasErrors
    """
    state = derive_state(is_confirmed, is_sent)
    if state is ReceiptState.SENT:
        raise IllegalTransitionError(ALREADY_SENT, ["Receipt has already been sent"])
    if state is ReceiptState.CONFIRMED:
        raise IllegalTransitionError(ALREADY_CONFIRMED, ["Receipt is already confirmed"])
    if has_errors:
        raise IllegalTransitionError(HAS_ERRORS, list(error_messages) or ["Receipt has validation errors"])


def ensure_can_reopen(is_confirmed: bool, is_sent: bool) -> None:
    # A sent receipt is final even for administrators
    if is_sent:
        raise IllegalTransitionError(ALREADY_SENT, ["Sent receipts cannot be reopened"])
    if not is_confirmed:
        raise IllegalTransitionError(NOT_CONFIRMED, ["Receipt is not confirmed"])


def ensure_can_mark_sent(is_confirmed: bool, is_sent: bool) -> None:
    if is_sent:
        raise IllegalTransitionError(ALREADY_SENT, ["Receipt has already been sent"])
    if not is_confirmed:
        raise IllegalTransitionError(NOT_CONFIRMED, ["Only confirmed receipts can be sent"])


def ensure_can_delete(is_sent: bool) -> None:
    if is_sent:
        raise IllegalTransitionError(ALREADY_SENT, ["Sent receipts cannot be deleted"])
