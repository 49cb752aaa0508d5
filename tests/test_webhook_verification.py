import hashlib
import hmac

from app.services.channels import webhook_verification as verification


def _sign(payload: bytes, secret: str, algorithm=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), payload, algorithm).hexdigest()


def test_verify_signature_accepts_prefixed_and_bare_hex():
    payload = b'{"object":"whatsapp_business_account"}'
    digest = _sign(payload, "s3cret")
    assert verification.verify_webhook_signature(payload, f"sha256={digest}", "s3cret") is True
    assert verification.verify_webhook_signature(payload, digest, "s3cret") is True
    assert verification.verify_webhook_signature(payload, f"sha256={digest.upper()}", "s3cret") is True


def test_verify_signature_rejects_wrong_secret_and_tampering():
    payload = b'{"a":1}'
    digest = _sign(payload, "s3cret")
    assert verification.verify_webhook_signature(payload, f"sha256={digest}", "other") is False
    assert verification.verify_webhook_signature(b'{"a": 1}', f"sha256={digest}", "s3cret") is False


def test_verify_signature_handles_missing_and_malformed_input():
    assert verification.verify_webhook_signature(b"{}", None, "s3cret") is False
    assert verification.verify_webhook_signature(b"{}", "sha256=abc", None) is False
    assert verification.verify_webhook_signature(b"{}", "sha256=abc", "s3cret") is False
    assert verification.verify_webhook_signature(b"{}", "sha256=éé", "s3cret") is False


def test_verify_signature_str_payload_matches_bytes():
    payload = '{"text":"olá"}'
    digest = _sign(payload.encode("utf-8"), "key")
    assert verification.verify_webhook_signature(payload, digest, "key") is True


def test_sha1_prefix_selects_sha1():
    payload = b"legacy"
    digest = _sign(payload, "key", hashlib.sha1)
    signature = f"sha1={digest}"
    assert verification.signature_algorithm(signature) == "sha1"
    assert verification.signature_algorithm("sha256=abc") == "sha256"
    assert verification.verify_webhook_signature(payload, signature, "key", algorithm="sha1") is True


def test_platform_helpers():
    payload = b"{}"
    digest = _sign(payload, "app")
    assert verification.verify_meta_webhook(payload, f"sha256={digest}", "app") is True
    assert verification.verify_tiktok_webhook(payload, digest, "app") is True


def test_extract_signature_from_headers_is_case_insensitive():
    assert verification.extract_signature_from_headers({"X-Hub-Signature-256": "sha256=1"}) == "sha256=1"
    assert verification.extract_signature_from_headers({"x-hub-signature": "sha1=2"}) == "sha1=2"
    assert verification.extract_signature_from_headers({"X-TikTok-Signature": "3"}) == "3"
    assert verification.extract_signature_from_headers({"content-type": "application/json"}) is None


def test_sha256_header_wins_over_sha1():
    headers = {"x-hub-signature": "sha1=old", "x-hub-signature-256": "sha256=new"}
    assert verification.extract_signature_from_headers(headers) == "sha256=new"
