from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Union

from .errors import InvalidSplit
from .models import Participant, ParticipantStatus, PaymentFlow, derive_status


Weight = Union[int, Decimal]


def equal_split(total_units: int, n: int) -> List[int]:
    if n < 1:
        raise InvalidSplit("At least one participant is required")
    if total_units < 0:
        raise InvalidSplit("Total must not be negative")
    base, remainder = divmod(total_units, n)
    # remainder goes to the lowest indices
    return [base + 1 if index < remainder else base for index in range(n)]


def weighted_split(total_units: int, weights: Sequence[Weight]) -> List[int]:
    """Proportional shares, each floored.

    The sum never exceeds ``total_units``; any shortfall stays unallocated
    and is reported by :func:`unallocated` rather than redistributed.
    """
    if not weights:
        raise InvalidSplit("At least one weight is required")
    if total_units < 0:
        raise InvalidSplit("Total must not be negative")
    exact = [Decimal(w) for w in weights]
    if any(w < 0 for w in exact):
        raise InvalidSplit("Weights must not be negative")
    weight_sum = sum(exact)
    if weight_sum <= 0:
        raise InvalidSplit("Weights must sum to more than zero")
    return [int((total_units * w) // weight_sum) for w in exact]


def validate_split(total_units: int, shares: Iterable[int]) -> bool:
    allocated = sum(shares)
    return 0 < allocated <= total_units


def unallocated(total_units: int, shares: Iterable[int]) -> int:
    return total_units - sum(shares)


def check_allocation(
    n: int,
    flow: PaymentFlow,
    weights: Optional[Sequence[Weight]] = None,
) -> None:
    """Reject split shapes that no total could satisfy."""
    if n < 1:
        raise InvalidSplit("At least one participant is required")
    if flow == PaymentFlow.OTHERS_COVER_ALL and n < 2:
        raise InvalidSplit("others-cover-all needs at least one other participant")
    if weights is None:
        return
    if len(weights) != n:
        raise InvalidSplit("weights must have one entry per participant")
    if flow == PaymentFlow.PAYER_COVERS_ALL:
        return
    used = [Decimal(w) for w in weights]
    if flow == PaymentFlow.OTHERS_COVER_ALL:
        used = used[1:]
    if any(w < 0 for w in used):
        raise InvalidSplit("Weights must not be negative")
    if sum(used) <= 0:
        raise InvalidSplit("Weights must sum to more than zero")


def allocate(
    total_units: int,
    n: int,
    flow: PaymentFlow,
    weights: Optional[Sequence[Weight]] = None,
) -> List[int]:
    # slot 0 is the payer's own seat
    check_allocation(n, flow, weights)

    if flow == PaymentFlow.PAYER_COVERS_ALL:
        return [total_units] + [0] * (n - 1)
    if flow == PaymentFlow.OTHERS_COVER_ALL:
        if weights is not None:
            return [0] + weighted_split(total_units, list(weights)[1:])
        return [0] + equal_split(total_units, n - 1)
    if weights is not None:
        return weighted_split(total_units, weights)
    return equal_split(total_units, n)


def payment_status(share_units: int, paid_units: int) -> ParticipantStatus:
    return derive_status(share_units, paid_units)


def total_owed(participants: Iterable[Participant]) -> int:
    return sum(p.share_units for p in participants)


def total_paid(participants: Iterable[Participant]) -> int:
    return sum(p.paid_units for p in participants)


def overall_status(participants: Sequence[Participant]) -> str:
    owed = total_owed(participants)
    paid = total_paid(participants)
    if paid == 0:
        return "open"
    if paid < owed:
        return "partial"
    if paid == owed:
        return "settled"
    return "overpaid"
