# backend/portal/services/appointment_rules.py
"""
Appointment lifecycle rules.

Every entry point (client routes, admin routes, scheduled jobs) asks this
module whether a status change is allowed and what it implies. The module is
pure: it never touches the database or any collaborator, it only takes the
current state, the requested state, the clock and the actor, and returns a
``TransitionDecision`` or raises.

Money is computed with ``Decimal`` and rounded half-up to whole euros, so a
no-show on an Initial consultation (75 * 0.5 = 37.5) costs 38.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union

from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleException,
    IllegalTransitionException,
    ModificationWindowClosedException,
    ValidationException,
)
from ..core.timezone_utils import get_practice_timezone, hours_until, practice_today
from ..models.appointment import AppointmentStatus, AppointmentType

S = AppointmentStatus


class Actor(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"


ALLOWED_TRANSITIONS: Dict[Tuple[AppointmentStatus, Actor], FrozenSet[AppointmentStatus]] = {
    (S.PENDING, Actor.ADMIN): frozenset({S.CONFIRMED, S.CANCELLED}),
    (S.CONFIRMED, Actor.ADMIN): frozenset(
        {S.DONE, S.CANCELLED, S.VEE_RESCHEDULE_REQUEST, S.NO_SHOW}
    ),
    (S.CONFIRMED, Actor.CLIENT): frozenset({S.CLIENT_RESCHEDULE_REQUESTED}),
    (S.CLIENT_RESCHEDULE_REQUESTED, Actor.ADMIN): frozenset(
        {S.CONFIRM_RESCHEDULE_REQUEST, S.CANCELLED_RESCHEDULE, S.CANCELLED}
    ),
    (S.VEE_RESCHEDULE_REQUEST, Actor.CLIENT): frozenset(
        {S.CONFIRM_RESCHEDULE_REQUEST, S.CANCELLED_RESCHEDULE}
    ),
    (S.VEE_RESCHEDULE_REQUEST, Actor.ADMIN): frozenset({S.CANCELLED}),
    (S.CONFIRM_RESCHEDULE_REQUEST, Actor.ADMIN): frozenset({S.CONFIRMED, S.CANCELLED}),
}

# Client-initiated reschedule steps that are checked for lateness
LATE_CHECKED_TRANSITIONS: FrozenSet[Tuple[AppointmentStatus, AppointmentStatus]] = frozenset(
    {
        (S.CONFIRMED, S.CLIENT_RESCHEDULE_REQUESTED),
        (S.CLIENT_RESCHEDULE_REQUESTED, S.CONFIRM_RESCHEDULE_REQUEST),
    }
)

StatusLike = Union[str, AppointmentStatus]


@dataclass(frozen=True)
class TransitionDecision:
    """An accepted status change and the side effects it implies."""

    current: AppointmentStatus
    target: AppointmentStatus
    actor: Actor
    hours_until_start: float
    late_reschedule: bool = False
    late_fee: Optional[Decimal] = None
    request_meeting: bool = False

    @property
    def is_cancellation(self) -> bool:
        return self.target in (S.CANCELLED, S.CANCELLED_CLIENT, S.CANCELLED_RESCHEDULE)


@dataclass(frozen=True)
class NoShowDecision:
    current: AppointmentStatus
    target: AppointmentStatus
    penalty: Decimal
    base_price: Decimal


def round_euros(value: Decimal) -> Decimal:
    """Round to whole euros, halves away from zero."""
    return Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def parse_actor(actor: Union[str, Actor]) -> Actor:
    try:
        return Actor(actor)
    except ValueError:
        raise ValidationException(f"Unknown actor '{actor}'", code="UNKNOWN_ACTOR")


def parse_appointment_type(value: Union[str, AppointmentType]) -> AppointmentType:
    try:
        return AppointmentType(value)
    except ValueError:
        raise ValidationException(
            f"Unknown appointment type '{value}'",
            code="UNKNOWN_APPOINTMENT_TYPE",
            details={"allowed": [t.value for t in AppointmentType]},
        )


def base_price(appointment_type: Union[str, AppointmentType]) -> Decimal:
    """Per-session fee for pay-as-you-go clients."""
    kind = parse_appointment_type(appointment_type)
    if kind is AppointmentType.INITIAL:
        return Decimal(settings.session_price_initial)
    return Decimal(settings.session_price_follow_up)


def no_show_penalty(appointment_type: Union[str, AppointmentType]) -> Decimal:
    rate = Decimal(str(settings.no_show_penalty_rate))
    return round_euros(base_price(appointment_type) * rate)


def late_reschedule_fee() -> Decimal:
    return Decimal(settings.late_reschedule_fee)


def is_late_reschedule(
    appointment_start: datetime,
    now: datetime,
    new_start: Optional[datetime] = None,
) -> bool:
    """True when the current or the proposed start is within the late window."""
    window = settings.late_reschedule_window_hours
    if hours_until(appointment_start, now) <= window:
        return True
    return new_start is not None and hours_until(new_start, now) <= window


def ensure_modifiable(
    current: StatusLike,
    *,
    appointment_start: datetime,
    now: datetime,
    actor: Union[str, Actor],
) -> AppointmentStatus:
    """Reject changes to terminal appointments and client changes inside the cutoff."""
    status = AppointmentStatus.parse(current)
    who = parse_actor(actor)
    if status.is_terminal:
        raise ModificationWindowClosedException(
            f"Appointment is '{status.value}' and can no longer be changed",
            details={"status": status.value},
        )
    if who is Actor.CLIENT:
        minutes_left = hours_until(appointment_start, now) * 60
        if minutes_left < settings.modification_cutoff_minutes:
            raise ModificationWindowClosedException(
                f"Appointments can only be changed up to "
                f"{settings.modification_cutoff_minutes} minutes before the start",
                details={
                    "status": status.value,
                    "minutes_until_start": round(minutes_left, 1),
                    "cutoff_minutes": settings.modification_cutoff_minutes,
                },
            )
    return status


def evaluate_transition(
    current: StatusLike,
    requested: StatusLike,
    *,
    appointment_start: datetime,
    now: datetime,
    actor: Union[str, Actor],
    new_start: Optional[datetime] = None,
) -> TransitionDecision:
    """
    Decide whether ``current -> requested`` is allowed for ``actor`` at ``now``.

    Args:
        current: Current status (legacy spellings accepted)
        requested: Requested status
        appointment_start: Aware start of the appointment as currently booked
        now: Aware reference instant
        actor: ``client`` or ``admin``
        new_start: Proposed new start for reschedule steps

    Returns:
        TransitionDecision with the derived side-effect flags

    Raises:
        ModificationWindowClosedException: terminal appointment or client inside the cutoff
        IllegalTransitionException: the move is not part of the lifecycle
        ValidationException: unknown status or actor
    """
    who = parse_actor(actor)
    target = AppointmentStatus.parse(requested)
    status = ensure_modifiable(current, appointment_start=appointment_start, now=now, actor=who)
    hours_left = hours_until(appointment_start, now)

    if target is S.CANCELLED_CLIENT:
        if who is not Actor.CLIENT:
            raise IllegalTransitionException(status.value, target.value, who.value)
        return TransitionDecision(status, target, who, hours_left)

    if target not in ALLOWED_TRANSITIONS.get((status, who), frozenset()):
        raise IllegalTransitionException(status.value, target.value, who.value)

    late = False
    if (status, target) in LATE_CHECKED_TRANSITIONS:
        late = is_late_reschedule(appointment_start, now, new_start)

    return TransitionDecision(
        current=status,
        target=target,
        actor=who,
        hours_until_start=hours_left,
        late_reschedule=late,
        late_fee=late_reschedule_fee() if late else None,
        request_meeting=target is S.CONFIRMED,
    )


def evaluate_no_show(
    current: StatusLike,
    appointment_type: Union[str, AppointmentType],
    *,
    appointment_start: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> NoShowDecision:
    """
    Admin-only no-show marking.

    Independent of the transition table: any non-terminal appointment can be
    marked once its day has come; it ends up ``cancelled`` with the penalty
    recorded.
    """
    status = AppointmentStatus.parse(current)
    if status.is_terminal:
        raise ModificationWindowClosedException(
            f"Appointment is '{status.value}' and can no longer be changed",
            details={"status": status.value},
        )
    if appointment_start is not None and now is not None:
        tz = get_practice_timezone()
        if appointment_start.astimezone(tz).date() > practice_today(now):
            raise BusinessRuleException(
                "A no-show can only be recorded on or after the appointment day",
                code="NO_SHOW_TOO_EARLY",
                details={"appointment_start": appointment_start.isoformat()},
            )
    return NoShowDecision(
        current=status,
        target=S.CANCELLED,
        penalty=no_show_penalty(appointment_type),
        base_price=base_price(appointment_type),
    )
