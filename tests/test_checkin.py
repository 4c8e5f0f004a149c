import pytest
from sqlalchemy.orm import sessionmaker

from checkin import ALREADY_CHECKED_IN, CHECKED_IN, CheckinService
from errors import InvalidTicketCode, TicketNotFound
from models import Ticket, TicketType


@pytest.fixture
def service(settings):
    return CheckinService(settings)


@pytest.fixture
def ticket(db, make_registration):
    registration = make_registration(regular=2)
    ticket = Ticket(ticket_no="SIS25-ABCD", registration_id=registration.id, type=TicketType.REGULAR,
                    qr_url="http://testserver/files/qr/x.png")
    db.add(ticket)
    db.commit()
    return ticket


def test_second_scan_reports_already_checked_in(db, service, ticket):
    status, first = service.check_in(db, "SIS25-ABCD")
    assert status == CHECKED_IN
    assert first.checked_in is True
    stamped = first.checked_in_at
    assert stamped is not None

    status, second = service.check_in(db, "sis25-abcd")
    assert status == ALREADY_CHECKED_IN
    assert second.checked_in_at == stamped


def test_unknown_ticket(db, service):
    with pytest.raises(TicketNotFound):
        service.check_in(db, "SIS25-ZZZZ")


def test_scan_of_signed_qr_payload(db, service, credentials, ticket):
    token = credentials.sign(ticket.registration_id, ticket.ticket_no)
    status, scanned = service.check_in(db, credentials.qr_payload(ticket.ticket_no, token))
    assert status == CHECKED_IN
    assert scanned.id == ticket.id


def test_tampered_payload_is_rejected(db, service, credentials, ticket):
    token = credentials.sign(ticket.registration_id, "SIS25-OTHR")
    with pytest.raises(InvalidTicketCode):
        service.check_in(db, f"SIS25|SIS25-ABCD|{token}")
    db.refresh(ticket)
    assert ticket.checked_in is False


def test_lookup_does_not_check_in(db, service, ticket):
    found = service.lookup(db, "SIS25-ABCD")
    assert found.id == ticket.id
    assert found.checked_in is False


def test_stats(db, service, make_registration, ticket):
    make_registration(regular=1, children=2)
    assert service.stats(db) == {"totalRegistrants": 5, "checkedIn": 0}

    service.check_in(db, "SIS25-ABCD")
    assert service.stats(db) == {"totalRegistrants": 5, "checkedIn": 1}


def test_concurrent_scans_have_one_winner(db, db_engine, service, ticket):
    other = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    try:
        stale = other.query(Ticket).filter(Ticket.ticket_no == "SIS25-ABCD").one()
        assert stale.checked_in is False

        status, winner = service.check_in(db, "SIS25-ABCD")
        assert status == CHECKED_IN

        status, loser = service.check_in(other, "SIS25-ABCD")
        assert status == ALREADY_CHECKED_IN
        assert loser.checked_in is True
        assert loser.checked_in_at == winner.checked_in_at
    finally:
        other.close()
