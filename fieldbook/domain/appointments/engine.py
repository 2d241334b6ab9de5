"""
Appointment lifecycle engine.

    PENDING     → CONFIRMED, REJECTED, RESCHEDULED, CANCELLED
    RESCHEDULED → CONFIRMED, CANCELLED
    CONFIRMED   → COMPLETED, CANCELLED, RESCHEDULED

COMPLETED, REJECTED and CANCELLED are terminal. Every operation takes an
appointment snapshot and returns a ``TransitionResult`` (new snapshot +
effects); the input snapshot is never modified and nothing is sent from
here. Validation always runs before the first write (token consumption),
so a failed operation leaves both the appointment and its tokens intact.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ...config import (
    ACTION_BASE_URL,
    ADMIN_EMAIL,
    ALLOW_EARLY_COMPLETION,
    CANCELLATION_WINDOW_HOURS,
)
from ...errors import (
    CancellationWindowClosed,
    IllegalTransition,
    MissingReasonDetail,
    TokenInvalid,
)
from ...models import generate_public_id
from ...shared.clock import utcnow
from ...shared.effects import Effect
from ...shared.validators import strip_or_none
from ..contacts.schemas import Contact
from ..scheduling import time_windows
from ..scheduling.reminders import ReminderScheduler
from ..scheduling.schemas import TargetType, TokenAction
from ..scheduling.token_service import TokenService, build_action_link, secrets_match
from .schemas import (
    Appointment,
    AppointmentReason,
    AppointmentStatus,
    CancellationStatus,
    TransitionResult,
)

logger = logging.getLogger(__name__)

TRANSITIONS = {
    AppointmentStatus.PENDING: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.REJECTED,
        AppointmentStatus.RESCHEDULED,
        AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.RESCHEDULED: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.REJECTED: set(),
    AppointmentStatus.CANCELLED: set(),
}

CLIENT_REJECTED_RESCHEDULE = "client rejected reschedule"
CLIENT_CANCELLED = "cancelled by client"


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return AppointmentStatus(target) in TRANSITIONS[AppointmentStatus(current)]


class AppointmentEngine:
    """Owns the appointment state machine"""

    def __init__(
        self,
        tokens: TokenService,
        reminders: ReminderScheduler,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = generate_public_id,
        admin_email: str = ADMIN_EMAIL,
        base_url: str = ACTION_BASE_URL,
        allow_early_completion: bool = ALLOW_EARLY_COMPLETION,
        cancellation_window_hours: int = CANCELLATION_WINDOW_HOURS,
    ):
        self.tokens = tokens
        self.reminders = reminders
        self.clock = clock
        self.id_factory = id_factory
        self.admin_email = admin_email
        self.base_url = base_url
        self.allow_early_completion = allow_early_completion
        self.cancellation_window_hours = cancellation_window_hours

    # ------------------------------------------------------------------
    # Public submission
    # ------------------------------------------------------------------

    def submit(
        self,
        contact: Contact,
        requested_at: datetime,
        timezone: str,
        reason: AppointmentReason,
        reason_other: Optional[str] = None,
        message: Optional[str] = None,
        created_ip: Optional[str] = None,
    ) -> TransitionResult:
        """Create a PENDING appointment from the public booking form"""
        now = self.clock()
        reason = AppointmentReason(reason)
        reason_other = strip_or_none(reason_other)

        time_windows.validate(requested_at, timezone, now)
        if reason == AppointmentReason.OTHER and not reason_other:
            raise MissingReasonDetail("Please describe the reason for your appointment")

        appointment = Appointment(
            id=self.id_factory(),
            contact=contact,
            reason=reason,
            reason_other=reason_other if reason == AppointmentReason.OTHER else None,
            message=strip_or_none(message),
            requested_at=requested_at,
            timezone=timezone,
            status=AppointmentStatus.PENDING,
            confirmation_token=self.tokens.mint_single(),
            cancellation_token=self.tokens.mint_single(),
            created_ip=created_ip,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"📥 Appointment {appointment.id} requested for {requested_at.isoformat()}")

        variables = {**self._variables(appointment), **self._links(appointment)}
        return TransitionResult(
            appointment=appointment,
            effects=[
                Effect.email("appointment_request", contact.email, **variables),
                Effect.email(
                    "admin_appointment_notification",
                    self.admin_email,
                    contact_email=contact.email,
                    contact_phone=contact.phone,
                    message=appointment.message,
                    **self._variables(appointment),
                ),
            ],
        )

    # ------------------------------------------------------------------
    # Staff actions
    # ------------------------------------------------------------------

    def confirm_directly(
        self, appointment: Appointment, scheduled_at: Optional[datetime] = None
    ) -> TransitionResult:
        """PENDING → CONFIRMED; the slot defaults to the requested one"""
        self._require(appointment, AppointmentStatus.CONFIRMED, {AppointmentStatus.PENDING})
        now = self.clock()
        slot = scheduled_at or appointment.requested_at
        time_windows.validate(slot, appointment.timezone, now)

        updated = self._copy(
            appointment,
            status=AppointmentStatus.CONFIRMED,
            scheduled_at=slot,
            confirmed_at=now,
        )
        logger.info(f"✅ Appointment {appointment.id} confirmed by staff for {slot.isoformat()}")
        return self._confirmed(appointment, updated)

    def propose_reschedule(
        self, appointment: Appointment, new_scheduled_at: datetime
    ) -> TransitionResult:
        """PENDING/CONFIRMED → RESCHEDULED with an accept/reject token pair"""
        self._require(
            appointment,
            AppointmentStatus.RESCHEDULED,
            {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED},
        )
        now = self.clock()
        time_windows.validate(new_scheduled_at, appointment.timezone, now)

        expires_at = min(now + self.tokens.ttl, new_scheduled_at)
        accept, reject = self.tokens.mint_pair(
            TargetType.APPOINTMENT,
            appointment.id,
            TokenAction.ACCEPT_RESCHEDULE,
            TokenAction.REJECT_RESCHEDULE,
            expires_at=expires_at,
        )
        updated = self._copy(
            appointment,
            status=AppointmentStatus.RESCHEDULED,
            proposed_at=new_scheduled_at,
        )

        effects = []
        if appointment.status == AppointmentStatus.CONFIRMED:
            # The old slot is no longer firm until the client answers
            effects.append(Effect.cancel_reminder(appointment.id))
        effects.append(
            Effect.email(
                "reschedule_proposal",
                appointment.contact.email,
                proposed_at=self._local_iso(updated, new_scheduled_at),
                accept_url=self._pair_link(updated, accept.action, accept.secret),
                reject_url=self._pair_link(updated, reject.action, reject.secret),
                expires_at=expires_at.isoformat(),
                **self._variables(updated),
            )
        )
        logger.info(
            f"🔄 Reschedule proposed for appointment {appointment.id}: {new_scheduled_at.isoformat()}"
        )
        return TransitionResult(appointment=updated, effects=effects, tokens=[accept, reject])

    def reject(self, appointment: Appointment, reason: Optional[str] = None) -> TransitionResult:
        """PENDING → REJECTED"""
        self._require(appointment, AppointmentStatus.REJECTED, {AppointmentStatus.PENDING})
        updated = self._copy(
            appointment,
            status=AppointmentStatus.REJECTED,
            rejection_reason=strip_or_none(reason),
            **self._cleared_tokens(),
        )
        logger.info(f"❌ Appointment {appointment.id} rejected by staff")
        return TransitionResult(
            appointment=updated,
            effects=[
                Effect.email(
                    "appointment_rejected",
                    appointment.contact.email,
                    rejection_reason=updated.rejection_reason,
                    **self._variables(updated),
                )
            ],
        )

    def mark_completed(self, appointment: Appointment) -> TransitionResult:
        """CONFIRMED → COMPLETED, once the slot has started unless early completion is allowed"""
        self._require(appointment, AppointmentStatus.COMPLETED, {AppointmentStatus.CONFIRMED})
        now = self.clock()
        if not self.allow_early_completion:
            if appointment.scheduled_at is None or appointment.scheduled_at > now:
                raise IllegalTransition(
                    appointment.status.value,
                    AppointmentStatus.COMPLETED.value,
                    "Cannot complete an appointment that has not taken place yet",
                )

        updated = self._copy(
            appointment,
            status=AppointmentStatus.COMPLETED,
            completed_at=now,
            **self._cleared_tokens(),
        )
        logger.info(f"🏁 Appointment {appointment.id} completed")
        return TransitionResult(appointment=updated)

    def cancel_by_staff(
        self, appointment: Appointment, reason: Optional[str] = None
    ) -> TransitionResult:
        """Any non-terminal state → CANCELLED, without the client notice window"""
        self._require(appointment, AppointmentStatus.CANCELLED)
        updated = self._cancelled(appointment, strip_or_none(reason) or "cancelled by staff")
        self.tokens.revoke_for_target(TargetType.APPOINTMENT, appointment.id)
        logger.info(f"🚫 Appointment {appointment.id} cancelled by staff")
        return TransitionResult(
            appointment=updated,
            effects=[
                Effect.cancel_reminder(appointment.id),
                Effect.email("appointment_cancelled", appointment.contact.email, **self._variables(updated)),
            ],
        )

    def send_manual_reminder(self, appointment: Appointment, sent_by: str = "admin") -> TransitionResult:
        """Reminder email for a confirmed appointment (staff button or the scheduled sweep)"""
        if appointment.status != AppointmentStatus.CONFIRMED or appointment.scheduled_at is None:
            raise IllegalTransition(
                appointment.status.value,
                AppointmentStatus.CONFIRMED.value,
                "Appointment must be confirmed and scheduled to send a reminder",
            )
        return TransitionResult(
            appointment=appointment,
            effects=[
                Effect.email(
                    "appointment_reminder",
                    appointment.contact.email,
                    sent_by=sent_by,
                    **self._variables(appointment),
                    **self._links(appointment),
                )
            ],
        )

    # ------------------------------------------------------------------
    # Client actions (email links)
    # ------------------------------------------------------------------

    def accept_reschedule(self, appointment: Appointment, secret: str) -> TransitionResult:
        """RESCHEDULED → CONFIRMED at the proposed slot; consumes both sibling tokens"""
        self.tokens.verify(secret, TokenAction.ACCEPT_RESCHEDULE, appointment.id)
        self._require(appointment, AppointmentStatus.CONFIRMED, {AppointmentStatus.RESCHEDULED})
        if appointment.proposed_at is None:
            raise IllegalTransition(
                appointment.status.value,
                AppointmentStatus.CONFIRMED.value,
                "No reschedule proposal is pending",
            )
        self.tokens.consume(secret, TokenAction.ACCEPT_RESCHEDULE, appointment.id)

        now = self.clock()
        updated = self._copy(
            appointment,
            status=AppointmentStatus.CONFIRMED,
            scheduled_at=appointment.proposed_at,
            proposed_at=None,
            confirmed_at=now,
        )
        logger.info(f"✅ Appointment {appointment.id} reschedule accepted by client")
        return self._confirmed(appointment, updated)

    def reject_reschedule(self, appointment: Appointment, secret: str) -> TransitionResult:
        """RESCHEDULED → CANCELLED; consumes both sibling tokens"""
        self.tokens.verify(secret, TokenAction.REJECT_RESCHEDULE, appointment.id)
        self._require(appointment, AppointmentStatus.CANCELLED, {AppointmentStatus.RESCHEDULED})
        self.tokens.consume(secret, TokenAction.REJECT_RESCHEDULE, appointment.id)

        updated = self._cancelled(appointment, CLIENT_REJECTED_RESCHEDULE)
        logger.info(f"🚫 Appointment {appointment.id} cancelled: {CLIENT_REJECTED_RESCHEDULE}")
        return TransitionResult(appointment=updated, effects=self._client_cancel_effects(updated))

    def cancel_by_token(self, appointment: Appointment, secret: str) -> TransitionResult:
        """Client cancellation link; refused within the notice window before the slot"""
        if not secrets_match(appointment.cancellation_token, secret):
            raise TokenInvalid("Cancellation token does not match")
        self._require(appointment, AppointmentStatus.CANCELLED)

        status = self.cancellation_status(appointment)
        if not status.can_cancel:
            raise CancellationWindowClosed(status.message)

        updated = self._cancelled(appointment, CLIENT_CANCELLED)
        self.tokens.revoke_for_target(TargetType.APPOINTMENT, appointment.id)
        logger.info(f"🚫 Appointment {appointment.id} cancelled by client")
        return TransitionResult(appointment=updated, effects=self._client_cancel_effects(updated))

    def confirm_by_token(self, appointment: Appointment, secret: str) -> TransitionResult:
        """Client confirmation link: PENDING/RESCHEDULED → CONFIRMED"""
        if not secrets_match(appointment.confirmation_token, secret):
            raise TokenInvalid("Confirmation token does not match")
        self._require(
            appointment,
            AppointmentStatus.CONFIRMED,
            {AppointmentStatus.PENDING, AppointmentStatus.RESCHEDULED},
        )
        now = self.clock()
        slot = appointment.proposed_at or appointment.scheduled_at or appointment.requested_at
        if slot <= now:
            raise IllegalTransition(
                appointment.status.value,
                AppointmentStatus.CONFIRMED.value,
                "This slot has already passed",
            )

        updated = self._copy(
            appointment,
            status=AppointmentStatus.CONFIRMED,
            scheduled_at=slot,
            proposed_at=None,
            confirmation_token=None,
            confirmed_at=now,
        )
        self.tokens.revoke_for_target(TargetType.APPOINTMENT, appointment.id)
        logger.info(f"✅ Appointment {appointment.id} confirmed by client")
        return self._confirmed(appointment, updated)

    def cancellation_status(self, appointment: Appointment) -> CancellationStatus:
        """Whether the client may still cancel, and how long until the slot"""
        if appointment.is_terminal:
            return CancellationStatus(can_cancel=False, message="This appointment can no longer be cancelled")
        if appointment.scheduled_at is None:
            return CancellationStatus(can_cancel=True, message="You can cancel this request")

        remaining = time_windows.hours_until(appointment.scheduled_at, self.clock())
        if remaining > self.cancellation_window_hours:
            return CancellationStatus(
                can_cancel=True,
                remaining_hours=round(remaining, 2),
                message="You can cancel this appointment",
            )
        return CancellationStatus(
            can_cancel=False,
            remaining_hours=round(max(remaining, 0), 2),
            message=(
                f"Appointments cannot be cancelled less than {self.cancellation_window_hours}h "
                "in advance. Please contact us directly."
            ),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        allowed_from: Optional[set] = None,
    ) -> None:
        current = appointment.status
        if not can_transition(current, target) or (allowed_from and current not in allowed_from):
            logger.warning(
                f"⚠️ Illegal transition for appointment {appointment.id}: {current.value} → {target.value}"
            )
            raise IllegalTransition(current.value, target.value)

    def _copy(self, appointment: Appointment, **changes) -> Appointment:
        changes["updated_at"] = self.clock()
        return appointment.model_copy(update=changes)

    @staticmethod
    def _cleared_tokens() -> dict:
        return {"confirmation_token": None, "cancellation_token": None}

    def _cancelled(self, appointment: Appointment, reason: str) -> Appointment:
        return self._copy(
            appointment,
            status=AppointmentStatus.CANCELLED,
            cancelled_at=self.clock(),
            cancellation_reason=reason,
            proposed_at=None,
            **self._cleared_tokens(),
        )

    def _confirmed(self, previous: Appointment, updated: Appointment) -> TransitionResult:
        effects = []
        if previous.scheduled_at is not None:
            effects.append(Effect.cancel_reminder(updated.id))
        effects.append(
            Effect.email(
                "appointment_confirmation",
                updated.contact.email,
                **self._variables(updated),
                **self._links(updated),
            )
        )
        reminder = self.reminders.schedule_for(updated)
        if reminder:
            effects.append(Effect.schedule_reminder(reminder))
        return TransitionResult(appointment=updated, effects=effects, reminder=reminder)

    def _client_cancel_effects(self, appointment: Appointment) -> list[Effect]:
        variables = self._variables(appointment)
        return [
            Effect.cancel_reminder(appointment.id),
            Effect.email("appointment_cancelled", appointment.contact.email, **variables),
            Effect.email(
                "admin_appointment_cancelled",
                self.admin_email,
                cancellation_reason=appointment.cancellation_reason,
                **variables,
            ),
        ]

    def _variables(self, appointment: Appointment) -> dict:
        return {
            "appointment_id": appointment.id,
            "first_name": appointment.contact.first_name,
            "last_name": appointment.contact.last_name,
            "reason": appointment.reason.value,
            "reason_other": appointment.reason_other,
            "requested_at": self._local_iso(appointment, appointment.requested_at),
            "scheduled_at": self._local_iso(appointment, appointment.scheduled_at),
            "timezone": appointment.timezone,
        }

    def _links(self, appointment: Appointment) -> dict:
        links = {}
        if appointment.confirmation_token and appointment.status in (
            AppointmentStatus.PENDING,
            AppointmentStatus.RESCHEDULED,
        ):
            links["confirm_url"] = build_action_link(
                "appointment", appointment.id, "confirm", appointment.confirmation_token, self.base_url
            )
        if appointment.cancellation_token:
            links["cancel_url"] = build_action_link(
                "appointment", appointment.id, "cancel", appointment.cancellation_token, self.base_url
            )
        return links

    def _pair_link(self, appointment: Appointment, action: TokenAction, secret: str) -> str:
        return build_action_link("appointment", appointment.id, action.value, secret, self.base_url)

    @staticmethod
    def _local_iso(appointment: Appointment, value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        return time_windows.to_local(value, appointment.timezone).isoformat()
