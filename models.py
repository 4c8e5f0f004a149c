import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Enum
from sqlalchemy.orm import declarative_base, relationship

from errors import InvalidTransition

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, matching what the DateTime columns store"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class ReviewStatus(str, enum.Enum):
    OK = "ok"
    PENDING = "pending"
    NEEDS_MEMBER = "needs_member"
    NEEDS_OCR = "needs_ocr"
    RECHECK = "recheck"


class TicketStatus(str, enum.Enum):
    NOT_ISSUED = "not_issued"
    ISSUED = "issued"


class MemberType(str, enum.Enum):
    SINGLE = "single"
    FAMILY = "family"
    STUDENT = "student"
    PENSIONER = "pensioner"


class TicketType(str, enum.Enum):
    REGULAR = "regular"
    MEMBER = "member"
    STUDENT = "student"
    CHILDREN = "children"


# proof_url sentinels for registrations entered at the desk
MANUAL_PROOF_PREFIX = "manual:"
MANUAL_PROOF_VERIFIED = "manual:verified"
MANUAL_PROOF_UNVERIFIED = "manual:unverified"

FLAGGED_REVIEW = (ReviewStatus.NEEDS_MEMBER, ReviewStatus.NEEDS_OCR, ReviewStatus.RECHECK)

# Nothing returns a registration to "pending" review once the engine has looked at it
_REVIEWED = frozenset({ReviewStatus.OK, ReviewStatus.NEEDS_MEMBER, ReviewStatus.NEEDS_OCR, ReviewStatus.RECHECK})
REVIEW_TRANSITIONS = {status: _REVIEWED for status in ReviewStatus}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PENDING, PaymentStatus.CONFIRMED},
    PaymentStatus.CONFIRMED: {PaymentStatus.CONFIRMED},
}

TICKET_STATUS_TRANSITIONS = {
    TicketStatus.NOT_ISSUED: {TicketStatus.ISSUED},
    TicketStatus.ISSUED: set(),
}


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


class Registration(Base):
    """One attendee order: ticket counts, payment evidence and review state"""
    __tablename__ = "registrations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    email = Column(String(200), nullable=False, index=True)

    tickets_regular = Column(Integer, nullable=False, default=0)
    tickets_member = Column(Integer, nullable=False, default=0)
    tickets_student = Column(Integer, nullable=False, default=0)
    tickets_children = Column(Integer, nullable=False, default=0)
    total_tickets = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    proof_url = Column(String(1000), nullable=False, default="")
    payment_status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    ocr_expected_amount = Column(Integer, nullable=True)
    ocr_amount_detected = Column(Integer, nullable=True)
    ocr_checked_at = Column(DateTime, nullable=True)

    review_status = _enum_column(ReviewStatus, nullable=False, default=ReviewStatus.PENDING)
    review_reason = Column(Text, nullable=True)
    member_type_detected = _enum_column(MemberType, nullable=True)
    member_checked_at = Column(DateTime, nullable=True)

    ticket_status = _enum_column(TicketStatus, nullable=False, default=TicketStatus.NOT_ISSUED)
    claimed_at = Column(DateTime, nullable=True)
    invoice_sent = Column(Boolean, nullable=False, default=False)
    tickets_email_sent = Column(Boolean, nullable=False, default=False)
    tickets_email_last_error = Column(Text, nullable=True)
    tickets_email_last_attempt = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tickets = relationship("Ticket", back_populates="registration", order_by="Ticket.id")

    def counts_by_type(self):
        return {
            TicketType.REGULAR: self.tickets_regular or 0,
            TicketType.MEMBER: self.tickets_member or 0,
            TicketType.STUDENT: self.tickets_student or 0,
            TicketType.CHILDREN: self.tickets_children or 0,
        }

    def set_review(self, status: ReviewStatus, reason=None):
        current = ReviewStatus(self.review_status or ReviewStatus.PENDING)
        if status not in REVIEW_TRANSITIONS[current]:
            raise InvalidTransition(f"review_status {current.value} -> {status.value} not allowed")
        self.review_status = status
        self.review_reason = reason

    def set_payment(self, status: PaymentStatus):
        current = PaymentStatus(self.payment_status or PaymentStatus.PENDING)
        if status not in PAYMENT_TRANSITIONS[current]:
            raise InvalidTransition(f"payment_status {current.value} -> {status.value} not allowed")
        self.payment_status = status

    def mark_issued(self):
        current = TicketStatus(self.ticket_status or TicketStatus.NOT_ISSUED)
        if TicketStatus.ISSUED not in TICKET_STATUS_TRANSITIONS[current]:
            raise InvalidTransition(f"ticket_status {current.value} -> issued not allowed")
        self.ticket_status = TicketStatus.ISSUED

    def __repr__(self):
        return f"<Registration(id={self.id}, name={self.name})>"


class Member(Base):
    """Member directory entry keyed by normalized name"""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    name_key = Column(String(200), unique=True, nullable=False, index=True)
    type = _enum_column(MemberType, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Member(name_key={self.name_key}, type={self.type})>"


class Ticket(Base):
    """One issued, individually scannable credential belonging to a registration"""
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    ticket_no = Column(String(50), unique=True, nullable=False, index=True)
    registration_id = Column(String(36), ForeignKey("registrations.id"), nullable=False, index=True)
    type = _enum_column(TicketType, nullable=False)
    qr_url = Column(String(1000), nullable=False)
    status = Column(String(20), nullable=False, default=TicketStatus.ISSUED.value)
    checked_in = Column(Boolean, nullable=False, default=False, index=True)
    checked_in_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    registration = relationship("Registration", back_populates="tickets")

    def to_dict(self):
        return {
            "id": self.id,
            "ticketNo": self.ticket_no,
            "registrationId": self.registration_id,
            "type": TicketType(self.type).value,
            "qrUrl": self.qr_url,
            "status": self.status,
            "checkedIn": bool(self.checked_in),
            "checkedInAt": self.checked_in_at.isoformat() if self.checked_in_at else None,
        }

    def __repr__(self):
        return f"<Ticket(id={self.id}, ticket_no={self.ticket_no})>"


class TicketSequence(Base):
    """Per-prefix counter for sequential ticket numbers"""
    __tablename__ = "ticket_sequences"

    prefix = Column(String(20), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
