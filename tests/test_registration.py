import pytest

from errors import RegistrationError
from models import PaymentStatus, Registration, ReviewStatus, TicketStatus, TicketType
from registration import create_manual_registration, create_registration, order_totals


def _counts(regular=0, member=0, student=0, children=0):
    return {
        TicketType.REGULAR: regular,
        TicketType.MEMBER: member,
        TicketType.STUDENT: student,
        TicketType.CHILDREN: children,
    }


def test_order_totals(settings):
    assert order_totals(settings, _counts(regular=2, member=1)) == (3, 330)
    assert order_totals(settings, _counts(student=1, children=3)) == (4, 80)


@pytest.mark.parametrize("counts", [_counts(), _counts(regular=-1, member=2)])
def test_order_totals_rejects_bad_quantities(settings, counts):
    with pytest.raises(RegistrationError):
        order_totals(settings, counts)


def test_registration_is_pending_and_receipt_sent(db, settings, mailer):
    registration = create_registration(db, settings, mailer, " Anna Berg ", "Anna@Example.com",
                                       _counts(regular=2, member=1), "payment-proofs/p.jpg")

    assert registration.name == "Anna Berg"
    assert registration.email == "anna@example.com"
    assert registration.total_amount == 330
    assert registration.payment_status == PaymentStatus.PENDING
    assert registration.review_status == ReviewStatus.PENDING
    assert registration.ticket_status == TicketStatus.NOT_ISSUED
    assert registration.invoice_sent is True
    assert mailer.receipts == ["anna@example.com"]


def test_receipt_failure_keeps_registration(db, settings, mailer):
    mailer.fail_with = "SMTP down"
    registration = create_registration(db, settings, mailer, "Anna Berg", "anna@example.com",
                                       _counts(regular=1), "payment-proofs/p.jpg")

    assert db.query(Registration).count() == 1
    assert registration.invoice_sent is False


@pytest.mark.parametrize("name, email, counts, proof", [
    ("", "anna@example.com", _counts(regular=1), "payment-proofs/p.jpg"),
    ("Anna", "", _counts(regular=1), "payment-proofs/p.jpg"),
    ("Anna", "anna@example.com", _counts(), "payment-proofs/p.jpg"),
    ("Anna", "anna@example.com", _counts(regular=1), "  "),
])
def test_invalid_registration_creates_nothing(db, settings, mailer, name, email, counts, proof):
    with pytest.raises(RegistrationError):
        create_registration(db, settings, mailer, name, email, counts, proof)
    assert db.query(Registration).count() == 0
    assert mailer.receipts == []


def test_manual_registration(db, settings):
    verified = create_manual_registration(db, settings, "Desk Guest", "desk@example.com",
                                          _counts(children=2, regular=1), payment_verified=True)
    assert verified.proof_url == "manual:verified"
    assert verified.payment_status == PaymentStatus.CONFIRMED
    assert verified.review_status == ReviewStatus.OK

    unverified = create_manual_registration(db, settings, "Desk Guest", "desk2@example.com",
                                            _counts(regular=1), payment_verified=False)
    assert unverified.proof_url == "manual:unverified"
    assert unverified.payment_status == PaymentStatus.PENDING
