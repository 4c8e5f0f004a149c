"""
Batch issuance: turn paid, eligible registrations into tickets.

Each selected registration goes through the same gates in order:
membership presence, membership allowance, payment (OCR, when asked
for), ticket generation, registration update, email. Rows are processed
one after another, oldest first; a failure in one row is recorded on that
row and never stops the batch. Only configuration problems abort a run.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Settings
from errors import BlobStoreError, EmailDeliveryError, TicketNumberExhausted
from models import (
    FLAGGED_REVIEW,
    PaymentStatus,
    Registration,
    ReviewStatus,
    Ticket,
    TicketStatus,
    TicketType,
    utcnow,
)
from ticket_utils import is_ticket_no_collision, make_number_generator, retry_on_collision

logger = logging.getLogger(__name__)

MEMBERSHIP_NOT_FOUND = "membership_not_found"
ALREADY_ISSUED = "already_issued"
RESEND_EMAIL = "will_resend_email"
CLAIMED_ELSEWHERE = "claimed_by_another_run"

ISSUED = "issued"
SKIPPED = "skipped"
FAILED = "failed"
RESENT = "resent"


@dataclass
class BatchFilters:
    only_unissued: bool = True
    only_pending: bool = False
    only_flagged: bool = False
    only_member_issues: bool = False
    only_ocr_issues: bool = False
    dry_run: bool = False
    use_ocr: bool = False
    limit: Optional[int] = None


def _row(registration, status, reason=None, issued_count=0, email_sent=False, email_error=None,
         expected=None, detected=None):
    return {
        "registrationId": registration.id,
        "name": registration.name,
        "email": registration.email,
        "issuedCount": issued_count,
        "emailSent": email_sent,
        "emailError": email_error,
        "status": status,
        "reason": reason,
        "expected": expected,
        "detected": detected,
    }


class BatchIssuanceEngine:
    def __init__(self, settings: Settings, resolver, verifier, credentials, mailer, numbers=None):
        self.settings = settings
        self.resolver = resolver
        self.verifier = verifier
        self.credentials = credentials
        self.mailer = mailer
        self.numbers = numbers or make_number_generator(settings)

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.settings.batch_default_limit
        return max(1, min(self.settings.batch_max_limit, int(limit)))

    def select(self, db: Session, filters: BatchFilters):
        query = db.query(Registration)
        if filters.only_unissued:
            query = query.filter(Registration.ticket_status == TicketStatus.NOT_ISSUED)
        if filters.only_pending:
            query = query.filter(Registration.payment_status == PaymentStatus.PENDING)
        if filters.only_flagged:
            query = query.filter(Registration.review_status.in_(FLAGGED_REVIEW))
        if filters.only_member_issues:
            query = query.filter(Registration.review_status == ReviewStatus.NEEDS_MEMBER)
        if filters.only_ocr_issues:
            query = query.filter(Registration.review_status == ReviewStatus.NEEDS_OCR)
        return (
            query.order_by(Registration.created_at.asc(), Registration.id.asc())
            .limit(self.clamp_limit(filters.limit))
            .all()
        )

    def check_membership(self, db: Session, registration: Registration):
        """Return (member type or None, skip reason or None)"""
        member_type = self.resolver.resolve(db, registration.name)
        claimed = registration.tickets_member or 0
        if claimed > 0 and member_type is None:
            return None, MEMBERSHIP_NOT_FOUND
        if member_type is not None:
            limit = self.resolver.limit_for(member_type)
            if claimed > limit:
                return member_type, f"member_limit_exceeded:{member_type.value}:{limit}"
        return member_type, None

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, db: Session, filters: BatchFilters):
        """What a commit would do, without writing anything"""
        rows = []
        for registration in self.select(db, filters):
            member_type, member_reason = self.check_membership(db, registration)
            ocr_ok = None
            if filters.use_ocr:
                ocr_ok = registration.payment_status == PaymentStatus.CONFIRMED or self.verifier.within_tolerance(
                    registration.ocr_amount_detected, registration.total_amount
                )
            already_issued = registration.ticket_status == TicketStatus.ISSUED
            will_issue = member_reason is None and ocr_ok is not False and not already_issued
            # commit re-sends the email of issued rows whose delivery failed
            will_resend = already_issued and not registration.tickets_email_sent
            if already_issued:
                member_reason, ocr_ok = None, None
            reason = member_reason
            if reason is None and ocr_ok is False:
                reason = "payment_ocr_unverified"
            if reason is None and already_issued:
                reason = RESEND_EMAIL if will_resend else ALREADY_ISSUED
            rows.append({
                "registrationId": registration.id,
                "name": registration.name,
                "email": registration.email,
                "isMember": member_type is not None,
                "memberType": member_type.value if member_type else None,
                "claimedMemberTickets": registration.tickets_member,
                "allowedMemberTickets": self.resolver.limit_for(member_type),
                "memberOK": member_reason is None,
                "ocrOK": ocr_ok,
                "expected": registration.total_amount,
                "detected": registration.ocr_amount_detected,
                "willIssueTickets": will_issue,
                "willResendEmail": will_resend,
                "reason": reason,
            })
        return rows

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def ensure_configured(self, use_ocr: bool):
        self.settings.require_signing()
        self.mailer.ensure_configured()
        if use_ocr:
            self.verifier.ensure_configured()

    def commit(self, db: Session, filters: BatchFilters):
        self.ensure_configured(filters.use_ocr)
        registrations = self.select(db, filters)
        logger.info("Batch issue: %d registration(s) selected (useOCR=%s)", len(registrations), filters.use_ocr)

        results = []
        for registration in registrations:
            results.append(self.process(db, registration, use_ocr=filters.use_ocr))
        return results

    def process(self, db: Session, registration: Registration, use_ocr: bool = False):
        """Run one registration through the gates and return its result row"""
        if registration.ticket_status == TicketStatus.ISSUED:
            return self.redeliver(db, registration)

        if not self.claim(db, registration):
            logger.warning("Registration %s is being processed by another run", registration.id)
            return _row(registration, SKIPPED, CLAIMED_ELSEWHERE)

        try:
            return self._process_claimed(db, registration, use_ocr)
        finally:
            registration.claimed_at = None
            db.commit()

    def claim(self, db: Session, registration: Registration) -> bool:
        """Mark the row as ours unless another run holds a fresh claim or it is already issued"""
        now = utcnow()
        cutoff = now - timedelta(seconds=self.settings.claim_ttl)
        claimed = (
            db.query(Registration)
            .filter(
                Registration.id == registration.id,
                Registration.ticket_status == TicketStatus.NOT_ISSUED,
                or_(Registration.claimed_at.is_(None), Registration.claimed_at < cutoff),
            )
            .update({Registration.claimed_at: now}, synchronize_session=False)
        )
        db.commit()
        return claimed == 1

    def _process_claimed(self, db: Session, registration: Registration, use_ocr: bool):
        member_type, member_reason = self.check_membership(db, registration)
        registration.member_type_detected = member_type
        registration.member_checked_at = utcnow()
        if member_reason:
            registration.set_review(ReviewStatus.NEEDS_MEMBER, member_reason)
            db.commit()
            logger.warning("Skipped %s: %s", registration.id, member_reason)
            return _row(registration, SKIPPED, member_reason)
        db.commit()

        expected = detected = None
        if use_ocr:
            expected = registration.total_amount
            if registration.payment_status == PaymentStatus.CONFIRMED:
                detected = registration.ocr_amount_detected
            else:
                check = self.verifier.verify(registration.proof_url, registration.total_amount)
                detected = check.detected_amount
                registration.ocr_expected_amount = expected
                registration.ocr_amount_detected = detected
                registration.ocr_checked_at = utcnow()
                if not check.matched:
                    reason = f"payment_ocr_{check.reason}"
                    registration.set_review(ReviewStatus.NEEDS_OCR, reason)
                    db.commit()
                    logger.warning("Skipped %s: %s", registration.id, reason)
                    return _row(registration, SKIPPED, reason, expected=expected, detected=detected)
                registration.set_payment(PaymentStatus.CONFIRMED)
                db.commit()

        try:
            issued = self.issue_tickets(db, registration)
        except (TicketNumberExhausted, BlobStoreError) as e:
            db.rollback()
            reason = f"ticket_issue_failed:{e}"
            registration.set_review(ReviewStatus.RECHECK, reason)
            db.commit()
            logger.warning("Failed %s: %s", registration.id, reason)
            return _row(registration, FAILED, reason, expected=expected, detected=detected)

        registration.mark_issued()
        registration.set_review(ReviewStatus.OK, None)
        db.commit()
        logger.info("Issued %d ticket(s) for %s", len(issued), registration.id)

        email_sent, email_error = self.deliver(db, registration)
        return _row(
            registration,
            ISSUED,
            None if email_sent else f"tickets_email_failed:{email_error}",
            issued_count=len(issued),
            email_sent=email_sent,
            email_error=email_error,
            expected=expected,
            detected=detected,
        )

    def remaining_plan(self, db: Session, registration: Registration):
        """Tickets still owed per type, after counting the ones already persisted"""
        existing = {}
        for (ticket_type,) in db.query(Ticket.type).filter(Ticket.registration_id == registration.id):
            ticket_type = TicketType(ticket_type)
            existing[ticket_type] = existing.get(ticket_type, 0) + 1
        return [
            (ticket_type, count - existing.get(ticket_type, 0))
            for ticket_type, count in registration.counts_by_type().items()
            if count - existing.get(ticket_type, 0) > 0
        ]

    def issue_tickets(self, db: Session, registration: Registration):
        issued = []
        for ticket_type, count in self.remaining_plan(db, registration):
            for _ in range(count):
                ticket = retry_on_collision(
                    generate=lambda: self.numbers.next(db),
                    persist=lambda ticket_no, t=ticket_type: self._persist_ticket(db, registration, t, ticket_no),
                    is_collision=is_ticket_no_collision,
                    max_attempts=self.settings.ticket_max_attempts,
                )
                issued.append(ticket)
        return issued

    def _persist_ticket(self, db: Session, registration: Registration, ticket_type: TicketType, ticket_no: str):
        ticket = Ticket(
            ticket_no=ticket_no,
            registration_id=registration.id,
            type=ticket_type,
            qr_url="",
            status=TicketStatus.ISSUED.value,
        )
        db.add(ticket)
        credential = None
        try:
            # Number clashes surface at flush, before any QR is written
            db.flush()
            credential = self.credentials.issue(registration.id, ticket_no)
            ticket.qr_url = credential.qr_url
            db.commit()
        except Exception:
            db.rollback()
            if credential is not None:
                self.credentials.discard(credential)
            raise
        return ticket

    def deliver(self, db: Session, registration: Registration):
        """Email every ticket of the registration; returns (sent, error text)"""
        tickets = db.query(Ticket).filter(Ticket.registration_id == registration.id).order_by(Ticket.id).all()
        registration.tickets_email_last_attempt = utcnow()
        try:
            self.mailer.send_tickets_email(registration.email, registration.name, tickets)
        except EmailDeliveryError as e:
            error = str(e) or "email_send_failed"
            registration.tickets_email_sent = False
            registration.tickets_email_last_error = error
            registration.set_review(ReviewStatus.RECHECK, f"tickets_email_failed:{error}")
            db.commit()
            return False, error

        registration.tickets_email_sent = True
        registration.tickets_email_last_error = None
        db.commit()
        return True, None

    def redeliver(self, db: Session, registration: Registration):
        if registration.tickets_email_sent:
            return _row(registration, SKIPPED, ALREADY_ISSUED)

        email_sent, email_error = self.deliver(db, registration)
        if email_sent and registration.review_status == ReviewStatus.RECHECK:
            registration.set_review(ReviewStatus.OK, None)
            db.commit()
        return _row(
            registration,
            RESENT,
            None if email_sent else f"tickets_email_failed:{email_error}",
            email_sent=email_sent,
            email_error=email_error,
        )
