"""
Tagged result variants.

Matching and driver registration have more than two outcomes, and the
caller's obligation differs per outcome (a ``NotMatched`` booking simply stays
PENDING and may be retried, a ``MatchError`` means the store was unreachable,
a ``RegistrationPending`` applicant must wait for an admin).  They are
therefore returned as distinct frozen dataclasses rather than booleans.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from .entities import Driver


class MatchFailureReason(str, enum.Enum):
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    BOOKING_NOT_PENDING = "BOOKING_NOT_PENDING"
    QUEUE_EMPTY = "QUEUE_EMPTY"
    NO_ELIGIBLE_DRIVER = "NO_ELIGIBLE_DRIVER"
    CLAIM_CONFLICT = "CLAIM_CONFLICT"

    @property
    def no_driver_available(self) -> bool:
        return self in (
            MatchFailureReason.QUEUE_EMPTY,
            MatchFailureReason.NO_ELIGIBLE_DRIVER,
        )


@dataclass(frozen=True)
class Matched:
    booking_id: str
    queue_key: str
    driver_rfid: str
    driver_name: str
    driver_id: Optional[str] = None


@dataclass(frozen=True)
class NotMatched:
    booking_id: str
    reason: MatchFailureReason


@dataclass(frozen=True)
class MatchError:
    booking_id: str
    error: str


MatchResult = Union[Matched, NotMatched, MatchError]


@dataclass(frozen=True)
class RegistrationSuccess:
    driver: Driver
    message: str


@dataclass(frozen=True)
class RegistrationPending:
    application_id: str
    message: str


@dataclass(frozen=True)
class RegistrationError:
    message: str


RegistrationResult = Union[RegistrationSuccess, RegistrationPending, RegistrationError]
