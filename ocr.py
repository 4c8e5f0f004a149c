"""
Payment verification from uploaded proof images.

``OcrSpaceClient`` turns image bytes into free text; ``PaymentVerifier``
finds the paid amount in that text and compares it to what the order
costs.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional

import requests
from PIL import Image, ImageOps

from config import Settings
from errors import BlobStoreError, ConfigurationError, OcrServiceError
from models import MANUAL_PROOF_PREFIX
from normalize import extract_amount, to_storage_key

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 900 * 1024

NO_PROOF = "no_proof"
EXTRACTION_FAILED = "extraction_failed"
NO_AMOUNT = "no_amount"
AMOUNT_MISMATCH = "amount_mismatch"


def shrink_image(data: bytes, max_bytes: int = MAX_UPLOAD_BYTES) -> bytes:
    """Re-encode a proof image as JPEG, stepping quality then width down until it fits"""
    with Image.open(io.BytesIO(data)) as source:
        image = ImageOps.exif_transpose(source).convert("RGB")

    width, quality = 900, 70

    def encode():
        copy = image.copy()
        if copy.width > width:
            copy = copy.resize((width, max(1, round(copy.height * width / copy.width))), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        copy.save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()

    out = encode()
    while len(out) > max_bytes and (quality > 40 or width > 600):
        if quality > 40:
            quality -= 5
        else:
            width -= 50
        out = encode()
    logger.debug("Proof image %d -> %d bytes (width %d, quality %d)", len(data), len(out), width, quality)
    return out


class OcrSpaceClient:
    """Text extraction through the OCR.space HTTP API"""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def ensure_configured(self):
        self.settings.require_ocr()

    def extract_text(self, image: bytes) -> str:
        self.ensure_configured()
        try:
            payload = shrink_image(image)
        except OSError as e:
            raise OcrServiceError(f"Unreadable image: {e}") from e

        try:
            response = self.session.post(
                self.settings.ocrspace_url,
                headers={"apikey": self.settings.ocrspace_api_key},
                data={
                    "isOverlayRequired": "false",
                    "detectOrientation": "true",
                    "scale": "true",
                    "language": "swe,eng",
                    "OCREngine": "2",
                },
                files={"file": ("proof.jpg", payload, "image/jpeg")},
                timeout=self.settings.ocr_timeout,
            )
        except requests.exceptions.Timeout as e:
            raise OcrServiceError(f"OCR timeout after {self.settings.ocr_timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise OcrServiceError(f"OCR request failed: {e}") from e

        if response.status_code != 200:
            raise OcrServiceError(f"ocrspace_http_{response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise OcrServiceError("OCR response was not JSON") from e

        results = body.get("ParsedResults") or []
        if body.get("OCRExitCode") != 1 or not results:
            logger.info("OCR returned no text: %s", body.get("ErrorMessage") or body.get("OCRExitCode"))
            return ""
        return str(results[0].get("ParsedText") or "")


@dataclass
class VerificationResult:
    matched: bool
    detected_amount: Optional[int] = None
    reason: Optional[str] = None


class PaymentVerifier:
    def __init__(self, settings: Settings, store, ocr_client):
        self.settings = settings
        self.store = store
        self.ocr = ocr_client

    def ensure_configured(self):
        self.ocr.ensure_configured()

    def read_proof(self, proof_ref: str):
        """Fetch a proof image and run OCR on it. Returns (storage key, text)"""
        key = to_storage_key(proof_ref, self.settings.public_files_path)
        image = self.store.get(key)
        return key, self.ocr.extract_text(image)

    def within_tolerance(self, detected: Optional[int], expected: int) -> bool:
        return detected is not None and abs(detected - expected) <= self.settings.ocr_tolerance

    def verify(self, proof_ref: Optional[str], expected_amount: int) -> VerificationResult:
        """
        Compare the amount on the proof with the expected total. A mismatch
        of any kind is a result, not an exception; only missing OCR
        configuration raises.
        """
        if not proof_ref or proof_ref.startswith(MANUAL_PROOF_PREFIX):
            return VerificationResult(False, None, NO_PROOF)

        try:
            key, text = self.read_proof(proof_ref)
        except ConfigurationError:
            raise
        except (BlobStoreError, OcrServiceError) as e:
            logger.warning("✗ OCR extraction failed for %s: %s", proof_ref, e)
            return VerificationResult(False, None, EXTRACTION_FAILED)

        detected = extract_amount(text)
        if detected is None:
            return VerificationResult(False, None, NO_AMOUNT)
        if not self.within_tolerance(detected, expected_amount):
            logger.info("Amount mismatch for %s: expected %d, detected %d", key, expected_amount, detected)
            return VerificationResult(False, detected, AMOUNT_MISMATCH)
        return VerificationResult(True, detected, None)


_client: Optional[OcrSpaceClient] = None


def get_ocr_client() -> OcrSpaceClient:
    """Dependency for FastAPI routes to get the OCR client"""
    global _client
    if _client is None:
        from config import get_settings

        _client = OcrSpaceClient(get_settings())
    return _client
