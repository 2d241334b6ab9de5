"""
Quote lifecycle engine.

    PENDING    → PROCESSING, REJECTED
    PROCESSING → SENT, REJECTED
    SENT       → ACCEPTED, REJECTED, EXPIRED

ACCEPTED, REJECTED and EXPIRED are terminal. Staff may also accept a quote
straight from PENDING or PROCESSING (offline agreement). A quote only
enters SENT with both a validity date and a document; entering SENT mints
the accept/reject link pair for the client.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from ...config import ACTION_BASE_URL, ADMIN_EMAIL, BUSINESS_TIMEZONE
from ...errors import IllegalTransition, IncompleteQuoteDocument, MissingQuoteMessage, TermsNotAccepted
from ...models import generate_public_id
from ...shared.clock import utcnow
from ...shared.effects import Effect
from ...shared.validators import filter_blank_fields, strip_or_none
from ..contacts.schemas import Contact
from ..scheduling.schemas import TargetType, TokenAction
from ..scheduling.time_windows import get_zone, to_local
from ..scheduling.token_service import TokenService, build_action_link
from .schemas import Quote, QuoteStatus, QuoteTransitionResult

logger = logging.getLogger(__name__)

QUOTE_TRANSITIONS = {
    QuoteStatus.PENDING: {QuoteStatus.PROCESSING, QuoteStatus.REJECTED},
    QuoteStatus.PROCESSING: {QuoteStatus.SENT, QuoteStatus.REJECTED},
    QuoteStatus.SENT: {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED},
    QuoteStatus.ACCEPTED: set(),
    QuoteStatus.REJECTED: set(),
    QuoteStatus.EXPIRED: set(),
}

STAFF_ACCEPTABLE = {QuoteStatus.PENDING, QuoteStatus.PROCESSING, QuoteStatus.SENT}
UPDATABLE_FIELDS = {"quote_valid_until", "quote_document", "rejection_reason"}
REJECTED_VIA_EMAIL = "Rejected via email"


def can_transition(current: QuoteStatus, target: QuoteStatus) -> bool:
    return QuoteStatus(target) in QUOTE_TRANSITIONS[QuoteStatus(current)]


def filter_update_fields(payload: Optional[dict]) -> dict:
    """Drop None / blank values and anything that is not a staff-editable column"""
    return {k: v for k, v in filter_blank_fields(payload).items() if k in UPDATABLE_FIELDS}


class QuoteEngine:
    """Owns the quote state machine"""

    def __init__(
        self,
        tokens: TokenService,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = generate_public_id,
        admin_email: str = ADMIN_EMAIL,
        base_url: str = ACTION_BASE_URL,
        business_timezone: str = BUSINESS_TIMEZONE,
    ):
        self.tokens = tokens
        self.clock = clock
        self.id_factory = id_factory
        self.admin_email = admin_email
        self.base_url = base_url
        self.business_timezone = business_timezone

    def submit(
        self,
        contact: Contact,
        message: str,
        accept_phone: bool,
        accept_terms: bool,
        created_ip: Optional[str] = None,
    ) -> QuoteTransitionResult:
        if not accept_terms:
            raise TermsNotAccepted("Terms and conditions must be accepted")
        message = strip_or_none(message)
        if not message:
            raise MissingQuoteMessage("Please describe your project")

        now = self.clock()
        quote = Quote(
            id=self.id_factory(),
            contact=contact,
            message=message,
            accept_phone=bool(accept_phone),
            accept_terms=True,
            status=QuoteStatus.PENDING,
            created_ip=created_ip,
            created_at=now,
            updated_at=now,
        )
        logger.info(f"📥 Quote {quote.id} requested by {contact.email}")
        return QuoteTransitionResult(
            quote=quote,
            effects=[
                Effect.email("quote_request", contact.email, **self._variables(quote)),
                Effect.email(
                    "admin_quote_notification",
                    self.admin_email,
                    contact_email=contact.email,
                    contact_phone=contact.phone if accept_phone else None,
                    message=message,
                    **self._variables(quote),
                ),
            ],
        )

    def transition_to(
        self, quote: Quote, new_status: QuoteStatus, fields: Optional[dict] = None
    ) -> QuoteTransitionResult:
        """
        Staff status change along the graph.

        Raises:
            IllegalTransition: edge not in the graph
            IncompleteQuoteDocument: SENT without validity date or document
        """
        new_status = QuoteStatus(new_status)
        self._require(quote, new_status)
        changes = filter_update_fields(fields)
        # A rejection reason is only ever stored by a move to REJECTED
        rejection_reason = changes.pop("rejection_reason", None)
        merged = quote.model_copy(update=changes)

        if new_status == QuoteStatus.SENT:
            self._check_sendable(merged)
        if new_status == QuoteStatus.ACCEPTED:
            return self._accepted(quote, changes)
        if new_status == QuoteStatus.REJECTED:
            return self.reject_by_staff(quote, rejection_reason)
        if new_status == QuoteStatus.EXPIRED:
            return self._expired(quote)

        now = self.clock()
        if new_status == QuoteStatus.PROCESSING:
            updated = self._copy(quote, status=new_status, processed_at=now, **changes)
            logger.info(f"🛠️ Quote {quote.id} is being processed")
            return QuoteTransitionResult(quote=updated)

        # SENT
        expires_at = self._end_of_validity(merged.quote_valid_until)
        accept, reject = self.tokens.mint_pair(
            TargetType.QUOTE,
            quote.id,
            TokenAction.ACCEPT_QUOTE,
            TokenAction.REJECT_QUOTE,
            expires_at=expires_at,
        )
        updated = self._copy(quote, status=new_status, sent_at=now, **changes)
        logger.info(f"📤 Quote {quote.id} sent, valid until {updated.quote_valid_until}")
        return QuoteTransitionResult(
            quote=updated,
            effects=[
                Effect.email(
                    "quote_sent",
                    quote.contact.email,
                    quote_document=updated.quote_document,
                    accept_url=self._link(updated, accept.action, accept.secret),
                    reject_url=self._link(updated, reject.action, reject.secret),
                    **self._variables(updated),
                )
            ],
            tokens=[accept, reject],
        )

    def accept_by_staff(
        self,
        quote: Quote,
        document: Optional[str] = None,
        valid_until: Optional[date] = None,
    ) -> QuoteTransitionResult:
        """Accept from PENDING, PROCESSING or SENT"""
        changes = filter_update_fields(
            {"quote_document": document, "quote_valid_until": valid_until}
        )
        return self._accepted(quote, changes)

    def reject_by_staff(self, quote: Quote, rejection_reason: Optional[str]) -> QuoteTransitionResult:
        """Any non-terminal state → REJECTED; the reason is stored as given"""
        self._require(quote, QuoteStatus.REJECTED)
        updated = self._copy(
            quote,
            status=QuoteStatus.REJECTED,
            rejection_reason=rejection_reason,
            responded_at=self.clock(),
        )
        self.tokens.revoke_for_target(TargetType.QUOTE, quote.id)
        logger.info(f"❌ Quote {quote.id} rejected by staff")
        return QuoteTransitionResult(
            quote=updated,
            effects=[
                Effect.email(
                    "quote_rejected",
                    quote.contact.email,
                    rejection_reason=rejection_reason,
                    **self._variables(updated),
                )
            ],
        )

    def accept_by_token(self, quote: Quote, secret: str) -> QuoteTransitionResult:
        """Client accepts a SENT quote from the email link"""
        self.tokens.verify(secret, TokenAction.ACCEPT_QUOTE, quote.id)
        self._require(quote, QuoteStatus.ACCEPTED, {QuoteStatus.SENT})
        self.tokens.consume(secret, TokenAction.ACCEPT_QUOTE, quote.id)

        updated = self._copy(quote, status=QuoteStatus.ACCEPTED, responded_at=self.clock())
        logger.info(f"✅ Quote {quote.id} accepted by client")
        return QuoteTransitionResult(
            quote=updated,
            effects=[
                Effect.email("quote_accepted", quote.contact.email, **self._variables(updated)),
                Effect.email(
                    "admin_quote_response",
                    self.admin_email,
                    response="accepted",
                    **self._variables(updated),
                ),
            ],
        )

    def reject_by_token(
        self, quote: Quote, secret: str, reason: Optional[str] = None
    ) -> QuoteTransitionResult:
        """Client rejects a SENT quote from the email link"""
        self.tokens.verify(secret, TokenAction.REJECT_QUOTE, quote.id)
        self._require(quote, QuoteStatus.REJECTED, {QuoteStatus.SENT})
        self.tokens.consume(secret, TokenAction.REJECT_QUOTE, quote.id)

        updated = self._copy(
            quote,
            status=QuoteStatus.REJECTED,
            rejection_reason=strip_or_none(reason) or REJECTED_VIA_EMAIL,
            responded_at=self.clock(),
        )
        logger.info(f"❌ Quote {quote.id} rejected by client")
        return QuoteTransitionResult(
            quote=updated,
            effects=[
                Effect.email(
                    "admin_quote_response",
                    self.admin_email,
                    response="rejected",
                    rejection_reason=updated.rejection_reason,
                    **self._variables(updated),
                )
            ],
        )

    def expire(self, quote: Quote, today: date) -> QuoteTransitionResult:
        """SENT → EXPIRED once the validity date is behind ``today``"""
        self._require(quote, QuoteStatus.EXPIRED)
        if quote.quote_valid_until is None or quote.quote_valid_until >= today:
            raise IllegalTransition(
                quote.status.value,
                QuoteStatus.EXPIRED.value,
                "Quote is still within its validity period",
            )
        return self._expired(quote)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, quote: Quote, target: QuoteStatus, allowed_from: Optional[set] = None) -> None:
        current = quote.status
        if not can_transition(current, target) or (allowed_from and current not in allowed_from):
            logger.warning(f"⚠️ Illegal transition for quote {quote.id}: {current.value} → {target.value}")
            raise IllegalTransition(current.value, target.value)

    def _copy(self, quote: Quote, **changes) -> Quote:
        changes["updated_at"] = self.clock()
        return quote.model_copy(update=changes)

    def _check_sendable(self, quote: Quote) -> None:
        if quote.quote_valid_until is None or not quote.quote_document:
            raise IncompleteQuoteDocument("A validity date and a quote document are required to send a quote")
        today = to_local(self.clock(), self.business_timezone).date()
        if quote.quote_valid_until < today:
            raise IncompleteQuoteDocument("The validity date is already past")

    def _end_of_validity(self, valid_until: date) -> datetime:
        """First instant after ``valid_until`` in the business timezone"""
        zone = get_zone(self.business_timezone)
        return datetime.combine(valid_until + timedelta(days=1), time.min, tzinfo=zone)

    def _accepted(self, quote: Quote, changes: dict) -> QuoteTransitionResult:
        if quote.status not in STAFF_ACCEPTABLE:
            logger.warning(f"⚠️ Illegal transition for quote {quote.id}: {quote.status.value} → ACCEPTED")
            raise IllegalTransition(quote.status.value, QuoteStatus.ACCEPTED.value)
        updated = self._copy(
            quote,
            status=QuoteStatus.ACCEPTED,
            responded_at=self.clock(),
            **changes,
        )
        self.tokens.revoke_for_target(TargetType.QUOTE, quote.id)
        logger.info(f"✅ Quote {quote.id} accepted by staff")
        return QuoteTransitionResult(
            quote=updated,
            effects=[Effect.email("quote_accepted", quote.contact.email, **self._variables(updated))],
        )

    def _expired(self, quote: Quote) -> QuoteTransitionResult:
        updated = self._copy(quote, status=QuoteStatus.EXPIRED)
        self.tokens.revoke_for_target(TargetType.QUOTE, quote.id)
        logger.info(f"⌛ Quote {quote.id} expired")
        return QuoteTransitionResult(quote=updated)

    def _variables(self, quote: Quote) -> dict:
        return {
            "quote_id": quote.id,
            "first_name": quote.contact.first_name,
            "last_name": quote.contact.last_name,
            "quote_valid_until": quote.quote_valid_until.isoformat() if quote.quote_valid_until else None,
        }

    def _link(self, quote: Quote, action: TokenAction, secret: str) -> str:
        return build_action_link("quote", quote.id, action.value, secret, self.base_url)
