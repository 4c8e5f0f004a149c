class TicketingError(Exception):
    """Base class for errors raised by the ticketing core"""

    status_code = 500


class ConfigurationError(TicketingError):
    """Required configuration or credentials are missing; aborts the whole request"""


class RegistrationError(TicketingError):
    status_code = 400


class InvalidTransition(TicketingError):
    status_code = 409


class TicketNotFound(TicketingError):
    status_code = 404

    def __init__(self, ticket_no: str):
        super().__init__("Ticket not found")
        self.ticket_no = ticket_no


class InvalidTicketCode(TicketingError):
    status_code = 400


class TicketNumberExhausted(TicketingError):
    """No unique ticket number could be produced within the allowed attempts"""


class BlobStoreError(TicketingError):
    pass


class OcrServiceError(TicketingError):
    status_code = 502


class EmailDeliveryError(TicketingError):
    pass
