import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Settings
from errors import TicketNotFound
from models import Registration, Ticket, utcnow
from ticket_utils import extract_ticket_no

logger = logging.getLogger(__name__)

CHECKED_IN = "checked_in"
ALREADY_CHECKED_IN = "already_checked_in"


class CheckinService:
    """Door check-in: one-way transition of a ticket from unused to used"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def lookup(self, db: Session, code) -> Ticket:
        ticket_no = extract_ticket_no(code, self.settings)
        ticket = db.query(Ticket).filter(Ticket.ticket_no == ticket_no).first()
        if not ticket:
            raise TicketNotFound(ticket_no)
        return ticket

    def check_in(self, db: Session, code):
        """
        Check a ticket in. Returns (status, ticket) where status is
        "checked_in" for the first successful scan and "already_checked_in"
        for every later one; the first timestamp is never overwritten.
        """
        ticket_no = extract_ticket_no(code, self.settings)

        # Conditional update so two simultaneous scans cannot both win
        updated = (
            db.query(Ticket)
            .filter(Ticket.ticket_no == ticket_no, Ticket.checked_in.is_(False))
            .update({Ticket.checked_in: True, Ticket.checked_in_at: utcnow()}, synchronize_session=False)
        )
        db.commit()

        ticket = db.query(Ticket).filter(Ticket.ticket_no == ticket_no).first()
        if not ticket:
            raise TicketNotFound(ticket_no)

        if updated:
            logger.info("✓ Checked in %s", ticket_no)
            return CHECKED_IN, ticket
        logger.info("Repeat scan of %s (checked in at %s)", ticket_no, ticket.checked_in_at)
        return ALREADY_CHECKED_IN, ticket

    def stats(self, db: Session):
        total_registrants = db.query(func.coalesce(func.sum(Registration.total_tickets), 0)).scalar()
        checked_in = db.query(func.count(Ticket.id)).filter(Ticket.checked_in.is_(True)).scalar()
        return {"totalRegistrants": int(total_registrants or 0), "checkedIn": int(checked_in or 0)}
