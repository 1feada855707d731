"""
Document sealing: hash round-trip, tamper detection, and the vault's
issue/register/discard/verify cycle.
"""

import base64
import hashlib
import os

import pytest

from apps.api.services.document_integrity import (
    assert_document_intact,
    build_verification_url,
    file_digest,
    qr_code_base64,
    seal,
    verify_document,
)
from apps.api.services.errors import DocumentGenerationError, IntegrityMismatch, NotFound


# =========================================================================
# seal / verify
# =========================================================================

class TestSealAndVerify:

    @pytest.mark.parametrize("payload", [b"", b"x", b"%PDF-1.7\n" + bytes(range(256)) * 40])
    def test_round_trip_and_single_byte_tamper(self, tmp_path, payload):
        path = tmp_path / "doc.pdf"
        path.write_bytes(payload)
        digest = seal(payload)
        assert digest == hashlib.sha256(payload).hexdigest()
        assert verify_document(str(path), digest) is True

        if payload:
            tampered = bytearray(payload)
            tampered[len(tampered) // 2] ^= 0x01
            path.write_bytes(bytes(tampered))
            assert verify_document(str(path), digest) is False

    def test_missing_file_is_false_not_error(self, tmp_path):
        assert verify_document(str(tmp_path / "nope.pdf"), seal(b"abc")) is False
        assert file_digest(str(tmp_path / "nope.pdf")) is None

    def test_uppercase_expected_hash_accepted(self, tmp_path):
        path = tmp_path / "doc.pdf"
        path.write_bytes(b"hello")
        assert verify_document(str(path), seal(b"hello").upper()) is True

    def test_assert_intact_raises_with_both_hashes(self, tmp_path):
        path = tmp_path / "doc.pdf"
        path.write_bytes(b"changed")
        with pytest.raises(IntegrityMismatch) as exc:
            assert_document_intact(str(path), seal(b"original"))
        assert exc.value.details["expected_hash"] == seal(b"original")
        assert exc.value.details["actual_hash"] == seal(b"changed")


class TestVerificationPointer:

    def test_url_keyed_by_uuid(self):
        url = build_verification_url("https://lams.test/", "0b7c")
        assert url == "https://lams.test/api/documents/0b7c/verify/"

    def test_qr_code_is_png(self):
        data = base64.b64decode(qr_code_base64("https://lams.test/api/documents/1/verify/"))
        assert data.startswith(b"\x89PNG")

    def test_qr_code_empty_url(self):
        assert qr_code_base64("") is None


# =========================================================================
# Vault
# =========================================================================

class TestDocumentVault:

    def test_issue_writes_once_and_seals_final_bytes(self, vault):
        seen = {}

        def render(url):
            seen["url"] = url
            return b"%PDF body " + url.encode()

        doc = vault.issue("award", render, entity_kind="award", entity_id=3)
        with open(doc.file_path, "rb") as f:
            data = f.read()
        assert doc.hash_sha256 == seal(data)
        assert doc.qr_verification_url == seen["url"]
        assert doc.document_uuid in seen["url"]
        assert doc.hash_sha256 not in data.decode()
        assert os.path.basename(doc.file_path) == f"{doc.document_uuid}.pdf"
        assert doc.id is None

    def test_register_then_verify_by_hash_and_uuid(self, vault):
        doc = vault.register(vault.issue("receipt", lambda url: b"receipt", entity_kind="payment", entity_id=1))
        result = vault.verify_by_hash("receipt", doc.hash_sha256)
        assert result["verified"] is True
        assert result["pdfVerified"] is True
        assert result["metadata"]["documentUuid"] == doc.document_uuid
        assert vault.verify_by_uuid(doc.document_uuid)["verified"] is True
        assert vault.get_by_uuid(doc.document_uuid).hash_sha256 == doc.hash_sha256

    def test_verify_by_hash_wrong_type_or_unknown(self, vault):
        doc = vault.register(vault.issue("receipt", lambda url: b"receipt"))
        assert vault.verify_by_hash("award", doc.hash_sha256)["verified"] is False
        assert vault.verify_by_hash("receipt", "0" * 64) == {"verified": False, "pdfVerified": False, "metadata": None}

    def test_tampered_file_reported_not_repaired(self, vault):
        doc = vault.register(vault.issue("loi", lambda url: b"letter of intent"))
        with open(doc.file_path, "wb") as f:
            f.write(b"letter of intent (edited)")
        result = vault.verify_by_hash("loi", doc.hash_sha256)
        assert result["verified"] is True
        assert result["pdfVerified"] is False
        with pytest.raises(IntegrityMismatch):
            vault.check(doc)

    def test_discard_voids_record_and_removes_file(self, vault):
        doc = vault.register(vault.issue("award", lambda url: b"award order"))
        vault.discard(doc)
        assert not os.path.exists(doc.file_path)
        assert vault.verify_by_hash("award", doc.hash_sha256)["verified"] is False
        with pytest.raises(NotFound):
            vault.get_by_uuid(doc.document_uuid)

    def test_renderer_failure_is_wrapped(self, vault):
        def render(url):
            raise RuntimeError("font missing")

        with pytest.raises(DocumentGenerationError):
            vault.issue("award", render)
        assert not os.path.exists(os.path.join(vault.documents_dir, "award")) or \
            os.listdir(os.path.join(vault.documents_dir, "award")) == []

    def test_empty_render_rejected(self, vault):
        with pytest.raises(DocumentGenerationError):
            vault.issue("award", lambda url: b"")
