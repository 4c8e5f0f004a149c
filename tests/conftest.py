"""
Pytest configuration and fixtures.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta

import pytest

# Keep the app module away from the working directory before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="ticketing-test-"))

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__) + '/..'))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from errors import EmailDeliveryError, OcrServiceError
from issuance import BatchIssuanceEngine
from membership import MembershipResolver
from models import Base, Member, MemberType, Registration, TicketType
from ocr import PaymentVerifier
from registration import order_totals
from storage import LocalBlobStore
from ticket_utils import TicketCredentials


class FakeMailer:
    def __init__(self):
        self.fail_with = None
        self.ticket_emails = []
        self.receipts = []

    def ensure_configured(self):
        pass

    def send_registration_email(self, registration):
        if self.fail_with:
            raise EmailDeliveryError(self.fail_with)
        self.receipts.append(registration.email)

    def send_tickets_email(self, to_email, name, tickets, subject="Your Tickets"):
        if self.fail_with:
            raise EmailDeliveryError(self.fail_with)
        self.ticket_emails.append((to_email, [t.ticket_no for t in tickets]))


class FakeOcr:
    def __init__(self, text=""):
        self.text = text
        self.error = None
        self.calls = 0

    def ensure_configured(self):
        pass

    def extract_text(self, image):
        self.calls += 1
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        storage_dir=str(tmp_path / "storage"),
        public_base_url="http://testserver",
        ticket_signing_secret="test-signing-secret",
        smtp_user="mailer@example.com",
        smtp_password="app-password",
        ocrspace_api_key="test-key",
        member_cache_ttl=0,
    )


@pytest.fixture
def db_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def store(settings):
    return LocalBlobStore(settings.storage_dir, settings.public_base_url, settings.public_files_path)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def fake_ocr():
    return FakeOcr()


@pytest.fixture
def resolver(settings):
    return MembershipResolver(settings)


@pytest.fixture
def verifier(settings, store, fake_ocr):
    return PaymentVerifier(settings, store, fake_ocr)


@pytest.fixture
def credentials(settings, store):
    return TicketCredentials(settings, store)


@pytest.fixture
def issuer(settings, resolver, verifier, credentials, mailer):
    return BatchIssuanceEngine(settings, resolver, verifier, credentials, mailer)


@pytest.fixture
def add_member(db, resolver):
    def _add(name_key, member_type):
        db.add(Member(name_key=name_key, type=MemberType(member_type)))
        db.commit()
        resolver.invalidate()
    return _add


@pytest.fixture
def make_registration(db, settings):
    """Create a pending registration; ``age`` orders rows oldest-first"""
    counter = {"n": 0}

    def _make(name="Test User", email=None, regular=0, member=0, student=0, children=0,
              proof_url="payment-proofs/proof.jpg", age=None, **fields):
        counter["n"] += 1
        counts = {
            TicketType.REGULAR: regular,
            TicketType.MEMBER: member,
            TicketType.STUDENT: student,
            TicketType.CHILDREN: children,
        }
        total_tickets, total_amount = order_totals(settings, counts)
        created_at = datetime(2025, 9, 1) + timedelta(minutes=counter["n"] if age is None else age)
        registration = Registration(
            name=name,
            email=email or f"user{counter['n']}@example.com",
            tickets_regular=regular,
            tickets_member=member,
            tickets_student=student,
            tickets_children=children,
            total_tickets=total_tickets,
            total_amount=total_amount,
            proof_url=proof_url,
            created_at=created_at,
            **fields,
        )
        db.add(registration)
        db.commit()
        return registration
    return _make


@pytest.fixture
def client(db, settings, store, mailer, fake_ocr, resolver):
    from fastapi.testclient import TestClient

    import main
    from config import get_settings
    from database import get_db
    from email_service import get_mailer
    from membership import get_membership_resolver
    from ocr import get_ocr_client
    from storage import get_blob_store

    def override_get_db():
        yield db

    main.app.dependency_overrides.update({
        get_db: override_get_db,
        get_settings: lambda: settings,
        get_blob_store: lambda: store,
        get_mailer: lambda: mailer,
        get_ocr_client: lambda: fake_ocr,
        get_membership_resolver: lambda: resolver,
    })
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_auth():
    return ("admin", "password")
