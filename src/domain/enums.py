"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    # written by older clients when a driver turned a booking down
    REJECTED = "REJECTED"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.ACCEPTED, BookingStatus.CANCELLED},
    BookingStatus.ACCEPTED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
    BookingStatus.REJECTED: set(),
}

ACTIVE_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS}
)
HISTORY_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
        BookingStatus.REJECTED,
    }
)
DISPATCH_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED})


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    LOCATION = "LOCATION"
    SYSTEM = "SYSTEM"


class RatedBy(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"


class NotificationKind(str, enum.Enum):
    BOOKING_STATUS = "BOOKING_STATUS"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    EMERGENCY_ALERT = "EMERGENCY_ALERT"


QUEUE_WAITING = "waiting"
