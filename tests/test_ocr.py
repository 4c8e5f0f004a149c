import io
from unittest.mock import Mock

import pytest
import requests
from PIL import Image

from errors import BlobStoreError, ConfigurationError, OcrServiceError
from ocr import OcrSpaceClient, PaymentVerifier, shrink_image


def _png(size=(40, 20)):
    buffer = io.BytesIO()
    Image.new("RGB", size, "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def proof_url(store):
    return store.put("payment-proofs/proof.png", _png(), "image/png")


@pytest.mark.parametrize("text, matched, detected, reason", [
    ("Belopp: 625,00 kr", True, 625, None),
    ("Swish 622 kr", True, 622, None),
    ("Swish 628 kr", True, 628, None),
    ("Swish 621 kr", False, 621, "amount_mismatch"),
    ("Kvitto utan summa", False, None, "no_amount"),
])
def test_verify_against_expected_amount(verifier, fake_ocr, proof_url, text, matched, detected, reason):
    fake_ocr.text = text
    result = verifier.verify(proof_url, 625)
    assert (result.matched, result.detected_amount, result.reason) == (matched, detected, reason)


@pytest.mark.parametrize("proof", [None, "", "manual:verified", "manual:unverified"])
def test_missing_proof(verifier, fake_ocr, proof):
    result = verifier.verify(proof, 625)
    assert not result.matched
    assert result.reason == "no_proof"
    assert fake_ocr.calls == 0


def test_missing_file_is_extraction_failure(verifier):
    result = verifier.verify("payment-proofs/missing.png", 625)
    assert (result.matched, result.reason) == (False, "extraction_failed")


def test_ocr_service_error_is_extraction_failure(verifier, fake_ocr, proof_url):
    fake_ocr.error = OcrServiceError("ocrspace_http_503")
    result = verifier.verify(proof_url, 625)
    assert (result.matched, result.reason) == (False, "extraction_failed")


def test_configuration_error_escapes(verifier, fake_ocr, proof_url):
    fake_ocr.error = ConfigurationError("OCRSPACE_API_KEY must be set")
    with pytest.raises(ConfigurationError):
        verifier.verify(proof_url, 625)


def test_shrink_image_outputs_jpeg_under_limit():
    out = shrink_image(_png((2000, 1000)))
    assert out[:2] == b"\xff\xd8"
    assert len(out) <= 900 * 1024
    with Image.open(io.BytesIO(out)) as image:
        assert image.width == 900


def _client(settings, response=None, error=None):
    session = Mock(spec=requests.Session)
    if error:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    return OcrSpaceClient(settings, session=session), session


def test_ocr_client_returns_parsed_text(settings):
    response = Mock(status_code=200)
    response.json.return_value = {"OCRExitCode": 1, "ParsedResults": [{"ParsedText": "Belopp 625 kr"}]}
    client, session = _client(settings, response)

    assert client.extract_text(_png()) == "Belopp 625 kr"
    _, kwargs = session.post.call_args
    assert kwargs["headers"] == {"apikey": "test-key"}
    assert kwargs["timeout"] == settings.ocr_timeout
    assert kwargs["data"]["language"] == "swe,eng"


def test_ocr_client_no_text(settings):
    response = Mock(status_code=200)
    response.json.return_value = {"OCRExitCode": 3, "ErrorMessage": ["bad image"]}
    client, _ = _client(settings, response)
    assert client.extract_text(_png()) == ""


def test_ocr_client_http_error(settings):
    client, _ = _client(settings, Mock(status_code=503))
    with pytest.raises(OcrServiceError):
        client.extract_text(_png())


def test_ocr_client_timeout(settings):
    client, _ = _client(settings, error=requests.exceptions.Timeout())
    with pytest.raises(OcrServiceError):
        client.extract_text(_png())


def test_ocr_client_requires_api_key(settings):
    client, session = _client(settings.model_copy(update={"ocrspace_api_key": None}))
    with pytest.raises(ConfigurationError):
        client.extract_text(_png())
    session.post.assert_not_called()


def test_read_proof_uses_storage_key(settings, store, fake_ocr, proof_url):
    fake_ocr.text = "625 kr"
    verifier = PaymentVerifier(settings, store, fake_ocr)
    assert verifier.read_proof(proof_url) == ("payment-proofs/proof.png", "625 kr")
    with pytest.raises(BlobStoreError):
        verifier.read_proof("payment-proofs/none.png")
