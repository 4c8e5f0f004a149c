import logging
import os
import secrets
import time
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request, status, UploadFile, File
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from auth import get_current_user
from checkin import CheckinService
from config import Settings, get_settings
from database import get_db, init_db
from email_service import get_mailer
from errors import BlobStoreError, ConfigurationError, OcrServiceError, TicketingError
from issuance import BatchFilters, BatchIssuanceEngine
from membership import get_membership_resolver, upsert_members
from models import MemberType, PaymentStatus, TicketType
from normalize import extract_amount
from ocr import PaymentVerifier, get_ocr_client
from registration import create_manual_registration, create_registration
from storage import get_blob_store
from ticket_utils import TicketCredentials

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Ticketing API", version="1.0.0")

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

os.makedirs(settings.storage_dir, exist_ok=True)
app.mount(settings.public_files_path, StaticFiles(directory=settings.storage_dir), name="files")


class TicketCounts(BaseModel):
    tickets_regular: int = Field(0, ge=0)
    tickets_member: int = Field(0, ge=0)
    tickets_student: int = Field(0, ge=0)
    tickets_children: int = Field(0, ge=0)

    def as_counts(self):
        return {
            TicketType.REGULAR: self.tickets_regular,
            TicketType.MEMBER: self.tickets_member,
            TicketType.STUDENT: self.tickets_student,
            TicketType.CHILDREN: self.tickets_children,
        }


class RegistrationCreate(TicketCounts):
    name: str
    email: EmailStr
    proof_url: str


class ManualRegistrationCreate(TicketCounts):
    name: str
    email: EmailStr
    payment_verified: bool = False
    issue_now: bool = False


class RegistrationSummary(BaseModel):
    id: str
    name: str
    email: str
    total_tickets: int
    total_amount: int
    payment_status: PaymentStatus

    class Config:
        from_attributes = True


class CheckinRequest(BaseModel):
    code: Optional[str] = None
    ticketNo: Optional[str] = None


class MemberEntry(BaseModel):
    name: str
    type: MemberType


class MembersUpsert(BaseModel):
    members: List[MemberEntry]


class OcrProbeRequest(BaseModel):
    path: str


# ==================== DEPENDENCIES ====================

def get_checkin_service(settings: Settings = Depends(get_settings)) -> CheckinService:
    return CheckinService(settings)


def get_verifier(settings: Settings = Depends(get_settings), store=Depends(get_blob_store),
                 ocr_client=Depends(get_ocr_client)) -> PaymentVerifier:
    return PaymentVerifier(settings, store, ocr_client)


def get_engine(settings: Settings = Depends(get_settings), resolver=Depends(get_membership_resolver),
               verifier: PaymentVerifier = Depends(get_verifier), store=Depends(get_blob_store),
               mailer=Depends(get_mailer)) -> BatchIssuanceEngine:
    return BatchIssuanceEngine(settings, resolver, verifier, TicketCredentials(settings, store), mailer)


# ==================== ERROR HANDLERS ====================

@app.exception_handler(TicketingError)
async def ticketing_error_handler(request: Request, exc: TicketingError):
    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.on_event("startup")
async def startup_event():
    init_db()


@app.get("/")
async def root():
    return {"message": "Ticketing API", "status": "running"}

# ==================== PUBLIC ROUTES ====================

@app.post("/api/register")
def register(data: RegistrationCreate, db: Session = Depends(get_db),
             settings: Settings = Depends(get_settings), mailer=Depends(get_mailer)):
    """Submit a registration with payment proof"""
    registration = create_registration(
        db, settings, mailer, data.name, data.email, data.as_counts(), data.proof_url
    )
    return {"ok": True, "registrationId": registration.id, "amount": registration.total_amount}


@app.post("/api/upload")
async def upload_proof(file: UploadFile = File(...), store=Depends(get_blob_store)):
    """Upload a payment proof image"""
    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be an image")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")

    extension = file.content_type.split("/", 1)[1].lower() or "bin"
    key = f"payment-proofs/{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"
    url = store.put(key, data, file.content_type)
    return {"url": url}

# ==================== ADMIN ROUTES ====================

@app.post("/api/admin/manual-register")
def manual_register(data: ManualRegistrationCreate, current_user: str = Depends(get_current_user),
                    db: Session = Depends(get_db), settings: Settings = Depends(get_settings),
                    engine: BatchIssuanceEngine = Depends(get_engine)):
    """Register an attendee at the desk, optionally issuing tickets right away"""
    registration = create_manual_registration(
        db, settings, data.name, data.email, data.as_counts(), data.payment_verified
    )
    response = {"ok": True, "registration": RegistrationSummary.model_validate(registration).model_dump(mode="json")}
    if data.issue_now:
        engine.ensure_configured(use_ocr=False)
        response["issued"] = engine.process(db, registration)
    return response


@app.get("/api/admin/batch-issue")
def batch_issue(only_unissued: bool = Query(True, alias="onlyUnissued"),
                only_pending: bool = Query(False, alias="onlyPending"),
                only_flagged: bool = Query(False, alias="onlyFlagged"),
                only_member_issues: bool = Query(False, alias="onlyMemberIssues"),
                only_ocr_issues: bool = Query(False, alias="onlyOcrIssues"),
                dry_run: bool = Query(False, alias="dryRun"),
                use_ocr: bool = Query(False, alias="useOCR"),
                limit: Optional[int] = Query(None),
                current_user: str = Depends(get_current_user),
                db: Session = Depends(get_db),
                engine: BatchIssuanceEngine = Depends(get_engine)):
    """Preview or run ticket issuance for a page of registrations, oldest first"""
    filters = BatchFilters(
        only_unissued=only_unissued,
        only_pending=only_pending,
        only_flagged=only_flagged,
        only_member_issues=only_member_issues,
        only_ocr_issues=only_ocr_issues,
        dry_run=dry_run,
        use_ocr=use_ocr,
        limit=limit,
    )
    if dry_run:
        rows = engine.preview(db, filters)
        return {"ok": True, "mode": "dryRun", "count": len(rows), "rows": rows}

    results = engine.commit(db, filters)
    return {"ok": True, "processed": len(results), "results": results}


@app.post("/api/admin/checkin")
def check_in(data: CheckinRequest, current_user: str = Depends(get_current_user),
             db: Session = Depends(get_db), service: CheckinService = Depends(get_checkin_service)):
    """Check a ticket in from a scanned code or a typed ticket number"""
    code = data.code or data.ticketNo
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="code or ticketNo required")
    result, ticket = service.check_in(db, code)
    return {"ok": True, "status": result, "ticket": ticket.to_dict()}


@app.get("/api/admin/checkin")
def get_ticket(ticket_no: str = Query(..., alias="ticketNo"), current_user: str = Depends(get_current_user),
               db: Session = Depends(get_db), service: CheckinService = Depends(get_checkin_service)):
    """Look a ticket up without checking it in"""
    ticket = service.lookup(db, ticket_no)
    return {"ok": True, "ticket": ticket.to_dict()}


@app.get("/api/admin/checkin/stats")
def checkin_stats(current_user: str = Depends(get_current_user), db: Session = Depends(get_db),
                  service: CheckinService = Depends(get_checkin_service)):
    """Live door statistics"""
    stats = service.stats(db)
    return JSONResponse({"ok": True, **stats}, headers={"Cache-Control": "no-store"})


@app.post("/api/admin/members")
def add_members(data: MembersUpsert, current_user: str = Depends(get_current_user),
                db: Session = Depends(get_db), resolver=Depends(get_membership_resolver)):
    """Add or update member directory entries"""
    count = upsert_members(db, [(m.name, m.type) for m in data.members], resolver)
    return {"ok": True, "count": count}


@app.post("/api/admin/ocr-proof")
def ocr_proof(data: OcrProbeRequest, current_user: str = Depends(get_current_user),
              verifier: PaymentVerifier = Depends(get_verifier)):
    """Run OCR on a stored proof and show what amount would be detected"""
    verifier.ensure_configured()
    try:
        key, text = verifier.read_proof(data.path)
    except BlobStoreError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"file_not_found: {e}")
    except OcrServiceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"ok": True, "amount": extract_amount(text), "raw": text, "key": key}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
