# backend/trafikskola/services/booking_service.py
"""
Booking lifecycle.

Creation validates the request, checks the slot, binds a teacher and then
hands off to a payment branch picked from a dispatch table keyed by
(payment method, actor kind):

- ``credits``: one credit is consumed in the same transaction that inserts a
  ``confirmed``/``paid`` booking;
- ``qliro``: a ``temp``/``unpaid`` booking is stored and a gateway checkout
  is requested; gateway trouble degrades to a booking without checkout URL;
- ``swish``, ``pay_at_location``, ``temp``: a ``temp``/``unpaid`` hold;
- admin/teacher booking for a student: ``confirmed`` immediately.

Manual payments then move ``temp`` -> ``on_hold`` (reserve) -> ``booked`` /
``pending`` (Swish confirm) -> ``confirmed``/``paid`` or ``cancelled``/
``failed`` via the admin action. Holds never promoted are removed by
``expire_stale_holds``. ``cancel_booking`` cancels a lesson for its owner,
its teacher or an admin and returns a consumed credit.

Conflict checks are serialized per date by a Redis slot lock and repeated
inside the write transaction.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
import logging
import secrets
from typing import Any, Callable, Dict, Literal, Optional, Tuple, Union

from sqlalchemy.orm import Session

from ..auth import get_password_hash
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    RejectionReason,
    RoleName,
)
from ..core.exceptions import (
    BookingNotAvailableError,
    BookingNotFoundError,
    BookingRejection,
    CapacityExceededError,
    DateBlockedError,
    ForbiddenException,
    GuestEmailExistsError,
    InsufficientCreditsError,
    LoginRequiredError,
    MissingFieldsError,
    NotFoundException,
    RepositoryException,
    ServiceException,
    SessionSelectionRequiredError,
    SlotConflictError,
    ValidationException,
)
from ..core.slot_lock import slot_lock
from ..core.timezone_utils import ensure_utc, get_school_today, utc_now
from ..integrations.qliro_client import QliroError
from ..models.booking import Booking
from ..models.handledar import HandledarBooking, HandledarSession
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import HandledarBookingRequest, LessonBookingRequest
from .base import BaseService
from .credit_service import CreditService
from .notification_service import NotificationService, NotificationTrigger
from .qliro_service import CheckoutCustomer, PaymentCorrelation, QliroService
from .teacher_allocator import AllocationResult, TeacherAllocator
from .time_ranges import any_booking_overlaps, hold_window, is_hold_expired, parse_time

logger = logging.getLogger(__name__)

ActorKind = Literal["guest", "user", "privileged"]
BookingRequest = Union[LessonBookingRequest, HandledarBookingRequest]
AnyBooking = Union[Booking, HandledarBooking]

# Placeholder guest values for "temp" bookings made before the guest form
TEMP_GUEST_NAME = "Temporary booking"
TEMP_GUEST_EMAIL = "temp@booking.local"
TEMP_GUEST_PHONE = "0000000000"

HANDLEDAR_PENDING = "pending"


@dataclass(frozen=True)
class BookingOwner:
    user_id: Optional[str] = None
    is_guest: bool = False
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class BookingContext:
    request: BookingRequest
    actor: Optional[User]
    actor_kind: ActorKind
    owner: BookingOwner
    now: datetime
    session: Optional[HandledarSession] = None

    @property
    def is_handledar(self) -> bool:
        return isinstance(self.request, HandledarBookingRequest)


@dataclass
class BookingCreateResult:
    booking: AnyBooking
    message: str
    checkout_url: Optional[str] = None
    used_fallback_teacher: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking": self.booking.to_dict(),
            "message": self.message,
            "checkoutUrl": self.checkout_url,
            "usedFallbackTeacher": self.used_fallback_teacher,
        }


def split_full_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "Guest", ""
    return parts[0], " ".join(parts[1:])


def new_payment_reference() -> str:
    """Short reference the customer quotes in the Swish message."""
    return secrets.token_hex(5).upper()


class BookingService(BaseService):
    """Creates bookings and drives them through the payment state machine."""

    def __init__(
        self,
        db: Session,
        *,
        notification_service: Optional[NotificationService] = None,
        qliro_service: Optional[QliroService] = None,
        config: Settings = default_settings,
    ):
        super().__init__(db)
        self.config = config
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.availability_repository = RepositoryFactory.create_availability_repository(db)
        self.handledar_repository = RepositoryFactory.create_handledar_repository(db)
        self.order_repository = RepositoryFactory.create_qliro_order_repository(db)
        self.credit_service = CreditService(db)
        self.allocator = TeacherAllocator(db)
        self.notification_service = notification_service or NotificationService(db)
        self.qliro_service = qliro_service

        self._handlers: Dict[
            Tuple[PaymentMethod, ActorKind], Callable[[BookingContext], BookingCreateResult]
        ] = {
            (PaymentMethod.CREDITS, "user"): self._book_with_credits,
            (PaymentMethod.CREDITS, "guest"): self._reject_guest_credits,
            (PaymentMethod.QLIRO, "user"): self._book_with_gateway,
            (PaymentMethod.QLIRO, "guest"): self._book_with_gateway,
        }
        for method in (PaymentMethod.SWISH, PaymentMethod.PAY_AT_LOCATION, PaymentMethod.TEMP):
            self._handlers[(method, "user")] = self._book_provisional
            self._handlers[(method, "guest")] = self._book_provisional
        for method in PaymentMethod:
            self._handlers[(method, "privileged")] = self._book_for_student

    # Creation

    @BaseService.measure_operation("create_booking")
    def create(
        self,
        request: BookingRequest,
        actor: Optional[User] = None,
        *,
        now: Optional[datetime] = None,
    ) -> BookingCreateResult:
        now = ensure_utc(now or utc_now())
        method = request.payment_method.value if request.payment_method else "unknown"
        try:
            ctx = self._prepare(request, actor, now)
            result = self._handlers[(request.payment_method, ctx.actor_kind)](ctx)
        except BookingRejection as exc:
            prometheus_metrics.record_booking_outcome(method, exc.reason.value)
            self.logger.info(
                "Booking rejected",
                extra={"reason": exc.reason.value, "payment_method": method},
            )
            raise
        prometheus_metrics.record_booking_outcome(method, "created")
        self.log_operation(
            "create_booking",
            booking_id=result.booking.id,
            payment_method=method,
            actor_kind=ctx.actor_kind,
        )
        return result

    def _actor_kind(self, actor: Optional[User], request: BookingRequest) -> ActorKind:
        if actor is None:
            return "guest"
        if actor.is_privileged and request.student_id:
            return "privileged"
        return "user"

    def _prepare(
        self, request: BookingRequest, actor: Optional[User], now: datetime
    ) -> BookingContext:
        if request.payment_method is None:
            raise MissingFieldsError(["paymentMethod"])

        actor_kind = self._actor_kind(actor, request)
        session: Optional[HandledarSession] = None
        if isinstance(request, HandledarBookingRequest):
            session = self._validate_handledar(request)
            self._check_date_rules(session.date, session.start_time, session.end_time)
        else:
            start, end = self._validate_lesson(request)
            self._check_date_rules(request.scheduled_date, start, end)

        owner = self._resolve_owner(request, actor, actor_kind)
        return BookingContext(
            request=request,
            actor=actor,
            actor_kind=actor_kind,
            owner=owner,
            now=now,
            session=session,
        )

    def _validate_lesson(self, request: LessonBookingRequest) -> Tuple[time, time]:
        required = {
            "lessonTypeId": request.lesson_type_id,
            "scheduledDate": request.scheduled_date,
            "startTime": request.start_time,
            "endTime": request.end_time,
            "durationMinutes": request.duration_minutes,
            "totalPrice": request.total_price,
        }
        missing = [name for name, value in required.items() if value is None or value == ""]
        if missing:
            raise MissingFieldsError(missing)
        try:
            start, end = parse_time(request.start_time), parse_time(request.end_time)
        except ValueError:
            raise MissingFieldsError(["startTime", "endTime"], "Invalid time format") from None
        if start >= end:
            raise MissingFieldsError(["startTime", "endTime"], "Start time must be before end time")
        return start, end

    def _validate_handledar(self, request: HandledarBookingRequest) -> HandledarSession:
        if not request.session_id:
            raise MissingFieldsError(["sessionId"])
        if request.session_id in self.config.grouped_handledar_ids:
            raise SessionSelectionRequiredError()
        session = self.handledar_repository.get_active_session(request.session_id)
        if session is None:
            raise NotFoundException(
                "Session not found",
                code=RejectionReason.NOT_FOUND.value,
                details={"session_id": request.session_id},
            )
        if not session.has_capacity:
            raise CapacityExceededError()
        return session

    def _resolve_owner(
        self, request: BookingRequest, actor: Optional[User], actor_kind: ActorKind
    ) -> BookingOwner:
        if actor_kind == "privileged":
            student = self.user_repository.get_by_id(request.student_id)
            if student is None:
                raise NotFoundException(
                    "Student not found",
                    code=RejectionReason.NOT_FOUND.value,
                    details={"student_id": request.student_id},
                )
            return BookingOwner(
                user_id=student.id, name=student.full_name, email=student.email, phone=student.phone
            )

        if actor_kind == "user":
            return BookingOwner(
                user_id=actor.id, name=actor.full_name, email=actor.email, phone=actor.phone
            )

        if request.payment_method == PaymentMethod.TEMP:
            return BookingOwner(
                is_guest=True, name=TEMP_GUEST_NAME, email=TEMP_GUEST_EMAIL, phone=TEMP_GUEST_PHONE
            )

        missing = [
            name
            for name, value in (
                ("guestName", request.guest_name),
                ("guestEmail", request.guest_email),
                ("guestPhone", request.guest_phone),
            )
            if not value
        ]
        if missing:
            raise MissingFieldsError(missing, "Guest bookings need name, email and phone")

        email = request.guest_email.strip().lower()
        if self.user_repository.get_by_email(email) is not None:
            raise GuestEmailExistsError(email)
        return BookingOwner(
            is_guest=True, name=request.guest_name, email=email, phone=request.guest_phone
        )

    def _check_date_rules(self, target_date: date, start: time, end: time) -> None:
        opens_from = self.config.booking_opens_from
        if opens_from is not None and target_date < opens_from:
            raise DateBlockedError(
                f"Bookings open from {opens_from.isoformat()}",
                details={"opens_from": opens_from.isoformat()},
            )
        if target_date < get_school_today():
            raise DateBlockedError("Cannot book a date in the past")

        for block in self.availability_repository.get_blocks_for_date(target_date):
            if block.is_all_day or block.time_start is None or block.time_end is None:
                raise DateBlockedError("This date is blocked for bookings")
            if start < block.time_end and block.time_start < end:
                raise DateBlockedError("This time is blocked for bookings")

    # Payment branches

    def _reject_guest_credits(self, ctx: BookingContext) -> BookingCreateResult:
        raise LoginRequiredError("Please log in to pay with credits")

    def _book_with_credits(self, ctx: BookingContext) -> BookingCreateResult:
        lesson_type_id = None if ctx.is_handledar else ctx.request.lesson_type_id
        if self.credit_service.has_credit(user_id=ctx.owner.user_id, lesson_type_id=lesson_type_id) < 1:
            raise InsufficientCreditsError()

        if ctx.is_handledar:
            booking = self._insert_handledar(
                ctx,
                status=BookingStatus.CONFIRMED.value,
                payment_status=PaymentStatus.PAID.value,
                price=ctx.request.total_price or ctx.session.price_per_participant,
                consume_credit=True,
            )
            allocation = None
        else:
            booking, allocation = self._insert_lesson(
                ctx,
                status=BookingStatus.CONFIRMED,
                payment_status=PaymentStatus.PAID,
                price=ctx.request.total_price,
                consume_credit=True,
            )

        self._notify(NotificationTrigger.BOOKING_CONFIRMED, booking)
        return BookingCreateResult(
            booking=booking,
            message="Booking confirmed and paid with credits",
            used_fallback_teacher=bool(allocation and allocation.used_fallback),
        )

    def _book_with_gateway(self, ctx: BookingContext) -> BookingCreateResult:
        booking, allocation = self._insert_unpaid(ctx)
        checkout_url = self._start_checkout(booking, ctx)
        if checkout_url:
            message = "Booking reserved. Complete the payment to confirm it."
        else:
            message = "Booking reserved, but the payment could not be started. Please try again."
        return BookingCreateResult(
            booking=booking,
            message=message,
            checkout_url=checkout_url,
            used_fallback_teacher=bool(allocation and allocation.used_fallback),
        )

    def _book_provisional(self, ctx: BookingContext) -> BookingCreateResult:
        booking, allocation = self._insert_unpaid(ctx)
        return BookingCreateResult(
            booking=booking,
            message="Booking reserved. Complete the payment to confirm it.",
            used_fallback_teacher=bool(allocation and allocation.used_fallback),
        )

    def _book_for_student(self, ctx: BookingContext) -> BookingCreateResult:
        """Admin/teacher booking: confirmed at once, free unless already paid."""
        already_paid = ctx.request.already_paid
        payment_status = PaymentStatus.PAID if already_paid else PaymentStatus.UNPAID
        if ctx.is_handledar:
            price = (ctx.request.total_price or ctx.session.price_per_participant) if already_paid else 0
            booking = self._insert_handledar(
                ctx,
                status=BookingStatus.CONFIRMED.value,
                payment_status=payment_status.value,
                price=price,
            )
            allocation = None
        else:
            booking, allocation = self._insert_lesson(
                ctx,
                status=BookingStatus.CONFIRMED,
                payment_status=payment_status,
                price=ctx.request.total_price if already_paid else Decimal("0"),
            )
        self._notify(NotificationTrigger.BOOKING_CONFIRMED, booking)
        return BookingCreateResult(
            booking=booking,
            message="Booking created for student",
            used_fallback_teacher=bool(allocation and allocation.used_fallback),
        )

    def _insert_unpaid(self, ctx: BookingContext) -> Tuple[AnyBooking, Optional[AllocationResult]]:
        if ctx.is_handledar:
            booking = self._insert_handledar(
                ctx,
                status=HANDLEDAR_PENDING,
                payment_status=PaymentStatus.UNPAID.value,
                price=ctx.request.total_price or ctx.session.price_per_participant,
            )
            return booking, None
        return self._insert_lesson(
            ctx,
            status=BookingStatus.TEMP,
            payment_status=PaymentStatus.UNPAID,
            price=ctx.request.total_price,
        )

    # Writes

    def _ensure_slot_free(
        self,
        target_date: date,
        start: time,
        end: time,
        now: datetime,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        bookings = [
            b
            for b in self.booking_repository.get_bookings_for_date(target_date)
            if b.id != exclude_id
        ]
        if any_booking_overlaps(start, end, bookings, False, now=now):
            raise SlotConflictError()

    def _insert_lesson(
        self,
        ctx: BookingContext,
        *,
        status: BookingStatus,
        payment_status: PaymentStatus,
        price: Decimal,
        consume_credit: bool = False,
    ) -> Tuple[Booking, AllocationResult]:
        request: LessonBookingRequest = ctx.request  # type: ignore[assignment]
        start, end = parse_time(request.start_time), parse_time(request.end_time)
        owner = ctx.owner

        with slot_lock(
            request.scheduled_date, None, ttl_s=self.config.slot_lock_ttl_seconds
        ) as acquired:
            if not acquired:
                raise SlotConflictError(
                    "This time slot is being booked right now. Please choose another time."
                )
            self._ensure_slot_free(request.scheduled_date, start, end, ctx.now)
            allocation = self.allocator.select_teacher(
                request.scheduled_date, start, end, now=ctx.now
            )

            with self.transaction():
                # The slot may have been taken between the check above and this write
                self._ensure_slot_free(request.scheduled_date, start, end, ctx.now)
                if consume_credit and not self.credit_service.consume_one(
                    user_id=owner.user_id,
                    lesson_type_id=request.lesson_type_id,
                    use_transaction=False,
                ):
                    raise InsufficientCreditsError()
                booking = self.booking_repository.create(
                    user_id=owner.user_id,
                    lesson_type_id=request.lesson_type_id,
                    teacher_id=allocation.teacher_id,
                    car_id=request.car_id,
                    scheduled_date=request.scheduled_date,
                    start_time=start,
                    end_time=end,
                    duration_minutes=request.duration_minutes,
                    transmission_type=(
                        request.transmission_type.value if request.transmission_type else None
                    ),
                    status=status.value,
                    payment_status=payment_status.value,
                    payment_method=request.payment_method.value,
                    total_price=price,
                    is_guest_booking=owner.is_guest,
                    guest_name=owner.name if owner.is_guest else None,
                    guest_email=owner.email if owner.is_guest else None,
                    guest_phone=owner.phone if owner.is_guest else None,
                    swish_uuid=new_payment_reference(),
                    created_at=ctx.now,
                )

        if not allocation.assigned:
            self.logger.warning(
                "Booking stored without a teacher",
                extra={"booking_id": booking.id, "strategy": allocation.strategy},
            )
        return booking, allocation

    def _insert_handledar(
        self,
        ctx: BookingContext,
        *,
        status: str,
        payment_status: str,
        price: Union[Decimal, int],
        consume_credit: bool = False,
    ) -> HandledarBooking:
        request: HandledarBookingRequest = ctx.request  # type: ignore[assignment]
        owner = ctx.owner
        with self.transaction():
            if not self.handledar_repository.take_seat(ctx.session.id):
                raise CapacityExceededError()
            if consume_credit and not self.credit_service.consume_one(
                user_id=owner.user_id, lesson_type_id=None, use_transaction=False
            ):
                raise InsufficientCreditsError()
            return self.handledar_repository.create_booking(
                session_id=ctx.session.id,
                student_id=owner.user_id,
                supervisor_name=request.supervisor_name or owner.name or TEMP_GUEST_NAME,
                supervisor_email=owner.email,
                supervisor_phone=owner.phone,
                status=status,
                payment_status=payment_status,
                payment_method=request.payment_method.value,
                price=price,
                created_at=ctx.now,
            )

    def _start_checkout(self, booking: AnyBooking, ctx: BookingContext) -> Optional[str]:
        """Ask the gateway for a checkout; None when it cannot be started."""
        if self.qliro_service is None:
            self.logger.warning(
                "Qliro checkout requested but no gateway is configured",
                extra={"booking_id": booking.id},
            )
            return None

        if isinstance(booking, HandledarBooking):
            reference = f"handledar_{booking.id}"
            correlation = PaymentCorrelation(handledar_booking_id=booking.id)
            amount = booking.price
            description = f"Handledarutbildning {ctx.session.date.isoformat()}"
            return_path = f"/handledar/confirmation/{booking.id}"
        else:
            reference = f"booking_{booking.id}"
            correlation = PaymentCorrelation(booking_id=booking.id)
            amount = booking.total_price
            description = (
                f"Körlektion {booking.scheduled_date.isoformat()} "
                f"{booking.start_time.strftime('%H:%M')}"
            )
            return_path = f"/booking/confirmation/{booking.id}"

        first_name, last_name = split_full_name(ctx.owner.name)
        try:
            checkout = self.qliro_service.get_or_create_checkout(
                amount=amount,
                reference=reference,
                description=description,
                return_url=ctx.request.return_url or f"{self.config.public_url}{return_path}",
                correlation=correlation,
                customer=CheckoutCustomer(
                    email=ctx.owner.email,
                    first_name=first_name,
                    last_name=last_name,
                    phone=ctx.owner.phone,
                ),
            )
        except QliroError as exc:
            self.logger.warning(
                "Qliro checkout failed; booking kept without checkout",
                extra={"booking_id": booking.id, "error": str(exc), "error_type": type(exc).__name__},
            )
            return None

        self._notify(
            NotificationTrigger.BOOKING_CHECKOUT_CREATED,
            booking,
            checkout_url=checkout.checkout_url,
        )
        return checkout.checkout_url

    # Transitions

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_for_update(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def _ensure_may_act(self, booking: Booking, actor: Optional[User]) -> None:
        # Guest holds are addressed by id alone; account bookings need their owner
        if booking.user_id is None:
            return
        if actor is None:
            raise LoginRequiredError()
        if booking.user_id != actor.id and not actor.is_privileged:
            raise ForbiddenException(
                "You cannot change this booking", code=RejectionReason.UNAUTHORIZED.value
            )

    @BaseService.measure_operation("hold_booking")
    def hold_booking(
        self, booking_id: str, actor: Optional[User] = None, *, now: Optional[datetime] = None
    ) -> Booking:
        """Reserve a ``temp`` booking (``on_hold``) while a manual payment is made."""
        with self.transaction():
            booking = self._get_booking(booking_id)
            self._ensure_may_act(booking, actor)
            if booking.status != BookingStatus.TEMP.value or is_hold_expired(booking, now):
                raise BookingNotAvailableError()
            booking.status = BookingStatus.ON_HOLD.value
        self.log_operation("hold_booking", booking_id=booking.id)
        return booking

    @BaseService.measure_operation("confirm_swish")
    def confirm_swish(self, booking_id: str, *, now: Optional[datetime] = None) -> Booking:
        """
        Customer reports a Swish payment: ``on_hold`` -> ``booked``/``pending``.

        Guests are promoted to a student account and the admin is asked to
        verify the payment.
        """
        now = ensure_utc(now or utc_now())
        with self.transaction():
            booking = self._get_booking(booking_id)
            if booking.status != BookingStatus.ON_HOLD.value:
                raise BookingNotAvailableError()
            if is_hold_expired(booking, now):
                # The hold lapsed; only proceed if nobody took the slot meanwhile
                try:
                    self._ensure_slot_free(
                        booking.scheduled_date,
                        booking.start_time,
                        booking.end_time,
                        now,
                        exclude_id=booking.id,
                    )
                except SlotConflictError:
                    raise BookingNotAvailableError()
            booking.status = BookingStatus.BOOKED.value
            booking.payment_status = PaymentStatus.PENDING.value
            booking.payment_method = PaymentMethod.SWISH.value

        if booking.is_guest_booking and booking.user_id is None:
            self._promote_guest(booking)

        links = self.admin_action_links(booking.id)
        self._notify(
            NotificationTrigger.SWISH_PAYMENT_PENDING,
            booking,
            recipient=self.config.admin_email,
            confirm_url=links["confirm"],
            reject_url=links["reject"],
        )
        self.log_operation("confirm_swish", booking_id=booking.id)
        return booking

    def admin_action_links(self, booking_id: str) -> Dict[str, str]:
        base = f"{self.config.public_url}/api/v1/bookings/admin-confirm?bookingId={booking_id}"
        return {"confirm": f"{base}&action=confirm", "reject": f"{base}&action=reject"}

    def _promote_guest(self, booking: Booking) -> Optional[User]:
        """Create (or link) a student account for a guest booking; never raises."""
        email = (booking.guest_email or "").strip().lower()
        if not email or email == TEMP_GUEST_EMAIL:
            return None

        password = secrets.token_urlsafe(12)
        first_name, last_name = split_full_name(booking.guest_name)
        created = False
        try:
            with self.transaction():
                user = self.user_repository.get_by_email(email)
                if user is None:
                    user = self.user_repository.create(
                        email=email,
                        hashed_password=get_password_hash(password),
                        first_name=first_name,
                        last_name=last_name,
                        phone=booking.guest_phone,
                        role=RoleName.STUDENT.value,
                    )
                    created = True
                booking.user_id = user.id
        except (ServiceException, RepositoryException) as exc:
            self.logger.error(
                f"Guest promotion failed: {str(exc)}",
                extra={"booking_id": booking.id},
            )
            return self._link_existing_user(booking, email)

        if created:
            self._notify(
                NotificationTrigger.GUEST_ACCOUNT_CREATED,
                booking,
                recipient=email,
                temporary_password=password,
            )
        self.log_operation(
            "promote_guest", booking_id=booking.id, user_id=user.id, account_created=created
        )
        return user

    def _link_existing_user(self, booking: Booking, email: str) -> Optional[User]:
        """Fallback after a concurrent signup won the unique email."""
        try:
            with self.transaction():
                user = self.user_repository.get_by_email(email)
                if user is not None:
                    booking.user_id = user.id
                return user
        except (ServiceException, RepositoryException) as exc:
            self.logger.error(
                f"Linking guest booking to existing user failed: {str(exc)}",
                extra={"booking_id": booking.id},
            )
            return None

    @BaseService.measure_operation("admin_payment_action")
    def apply_admin_action(self, booking_id: str, action: str) -> Booking:
        if action == "confirm":
            return self.admin_confirm_payment(booking_id)
        if action == "reject":
            return self.admin_reject_payment(booking_id)
        raise ValidationException(f"Unknown action: {action}", code="invalid-action")

    def admin_confirm_payment(self, booking_id: str) -> Booking:
        with self.transaction():
            booking = self._get_pending_booking(booking_id)
            booking.status = BookingStatus.CONFIRMED.value
            booking.payment_status = PaymentStatus.PAID.value
        self._notify(NotificationTrigger.PAYMENT_CONFIRMED, booking)
        self.log_operation("admin_confirm_payment", booking_id=booking.id)
        return booking

    def admin_reject_payment(self, booking_id: str) -> Booking:
        with self.transaction():
            booking = self._get_pending_booking(booking_id)
            booking.status = BookingStatus.CANCELLED.value
            booking.payment_status = PaymentStatus.FAILED.value
        self._notify(NotificationTrigger.PAYMENT_REJECTED, booking)
        self.log_operation("admin_reject_payment", booking_id=booking.id)
        return booking

    def _get_pending_booking(self, booking_id: str) -> Booking:
        booking = self._get_booking(booking_id)
        if booking.payment_status != PaymentStatus.PENDING.value or booking.is_cancelled:
            raise BookingNotAvailableError("Booking is not pending confirmation")
        return booking

    @BaseService.measure_operation("pay_with_credits")
    def pay_with_credits(self, booking_id: str, user: User) -> Booking:
        """Settle an existing unpaid booking with one of the owner's credits."""
        with self.transaction():
            booking = self._get_booking(booking_id)
            if booking.user_id is not None and booking.user_id != user.id and not user.is_privileged:
                raise ForbiddenException(
                    "You cannot pay for this booking", code=RejectionReason.UNAUTHORIZED.value
                )
            if booking.payment_status == PaymentStatus.PAID.value or booking.is_cancelled:
                raise BookingNotAvailableError("Booking is already paid or cancelled")

            payer_id = booking.user_id or user.id
            if not self.credit_service.consume_one(
                user_id=payer_id,
                lesson_type_id=booking.lesson_type_id,
                use_transaction=False,
            ):
                raise InsufficientCreditsError()
            booking.user_id = payer_id
            booking.status = BookingStatus.CONFIRMED.value
            booking.payment_status = PaymentStatus.PAID.value
            booking.payment_method = PaymentMethod.CREDITS.value

        self._notify(NotificationTrigger.BOOKING_CONFIRMED, booking)
        self.log_operation("pay_with_credits", booking_id=booking.id, user_id=payer_id)
        return booking

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(self, booking_id: str, actor: User, *, soft_delete: bool = False) -> Booking:
        """
        Cancel a lesson and give back what was paid for it.

        A booking paid with a credit gets that credit back in the same
        transaction and is marked ``refunded``; money paid through Swish or
        Qliro is flagged to the admin for a manual refund. Admins may also
        soft-delete the row, including one that is already cancelled.
        """
        soft_delete = soft_delete and self._may_delete(actor)
        manual_refund = False
        with self.transaction():
            booking = self._get_booking(booking_id)
            self._ensure_may_cancel(booking, actor)
            if booking.is_completed:
                raise BookingNotAvailableError("Booking is already completed")
            if booking.is_cancelled and not soft_delete:
                raise BookingNotAvailableError("Booking is already cancelled")

            if not booking.is_cancelled:
                manual_refund = self._refund_for_cancellation(booking)
                booking.status = BookingStatus.CANCELLED.value
            if soft_delete:
                booking.deleted_at = utc_now()

        self._notify(NotificationTrigger.BOOKING_CANCELLED, booking, cancelled_by=actor.id)
        if manual_refund:
            self._notify(
                NotificationTrigger.PAYMENT_REFUND_REQUIRED,
                booking,
                recipient=self.config.admin_email,
            )
        self.log_operation(
            "cancel_booking",
            booking_id=booking.id,
            actor_id=actor.id,
            payment_status=booking.payment_status,
            soft_deleted=soft_delete,
        )
        return booking

    def _may_delete(self, actor: User) -> bool:
        if actor.role != RoleName.ADMIN.value:
            raise ForbiddenException(
                "Only admins can delete bookings", code=RejectionReason.UNAUTHORIZED.value
            )
        return True

    def _ensure_may_cancel(self, booking: Booking, actor: User) -> None:
        if actor.role == RoleName.ADMIN.value:
            return
        if actor.role == RoleName.TEACHER.value and booking.teacher_id == actor.id:
            return
        if booking.user_id is not None and booking.user_id == actor.id:
            return
        raise ForbiddenException(
            "You cannot cancel this booking", code=RejectionReason.UNAUTHORIZED.value
        )

    def _refund_for_cancellation(self, booking: Booking) -> bool:
        """Return the credit of a credit-paid booking; True when money needs a manual refund."""
        if booking.payment_status != PaymentStatus.PAID.value:
            return False
        if booking.payment_method == PaymentMethod.CREDITS.value and booking.user_id:
            self.credit_service.grant_credits(
                user_id=booking.user_id,
                credits=1,
                lesson_type_id=booking.lesson_type_id,
                use_transaction=False,
            )
            booking.payment_status = PaymentStatus.REFUNDED.value
            return False
        return bool(booking.total_price)

    # Cleanup

    @BaseService.measure_operation("expire_stale_holds")
    def expire_stale_holds(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Remove unpromoted holds and stale cancellations.

        Rows still referenced by a gateway order are cancelled rather than
        deleted, since payment orders are kept for reconciliation.
        """
        cutoff = ensure_utc(now or utc_now()) - hold_window()
        counts = {"deleted": 0, "cancelled": 0, "handledar_released": 0}

        with self.transaction():
            for booking in self.booking_repository.get_expired_holds(cutoff):
                if self.order_repository.exists_for(booking_id=booking.id):
                    booking.status = BookingStatus.CANCELLED.value
                    counts["cancelled"] += 1
                else:
                    self.db.delete(booking)
                    counts["deleted"] += 1

            for booking in self.booking_repository.get_stale_cancelled(cutoff):
                if not self.order_repository.exists_for(booking_id=booking.id):
                    self.db.delete(booking)
                    counts["deleted"] += 1

            for hb in self.handledar_repository.get_expired_pending_bookings(cutoff):
                self.handledar_repository.release_seat(hb.session_id)
                if self.order_repository.exists_for(handledar_booking_id=hb.id):
                    hb.status = BookingStatus.CANCELLED.value
                else:
                    self.db.delete(hb)
                counts["handledar_released"] += 1

        if any(counts.values()):
            self.log_operation("expire_stale_holds", **counts)
        return counts

    def _notify(self, trigger: str, booking: AnyBooking, **context: Any) -> None:
        self.notification_service.dispatch(
            trigger, {"booking_id": booking.id, "booking": booking.to_dict(), **context}
        )