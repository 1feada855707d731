# apps/api/services/document_integrity.py
"""
Sealing and verification of issued documents.

A document is rendered with a verification pointer (URL keyed by the
document UUID), written once to its own file, and sealed by the SHA-256 of
the final bytes. The hash never appears inside the hashed bytes; it lives
in the detached document record and is what the public endpoint checks.
"""

import base64
import hashlib
import io
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from .errors import DocumentGenerationError, IntegrityMismatch, LamsError, NotFound
from .store import _now_iso

_logger = logging.getLogger(__name__)

DOCUMENT_TYPES = (
    "notification",
    "sia_report",
    "loi",
    "award",
    "receipt",
    "possession_certificate",
)

_CHUNK = 1024 * 1024


def seal(data: bytes) -> str:
    """SHA-256 hex digest over the exact document bytes."""
    return hashlib.sha256(data).hexdigest()


def file_digest(file_path: str) -> Optional[str]:
    if not file_path or not os.path.isfile(file_path):
        return None
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_document(file_path: str, expected_hash: str) -> bool:
    """Re-read ``file_path`` and compare its digest. A missing file is False, not an error."""
    actual = file_digest(file_path)
    return actual is not None and actual == (expected_hash or "").lower()


def assert_document_intact(file_path: str, expected_hash: str) -> None:
    actual = file_digest(file_path)
    if actual is None or actual != (expected_hash or "").lower():
        _logger.warning(f"Integrity mismatch for {file_path}: expected {expected_hash}, got {actual}")
        raise IntegrityMismatch(
            "Document does not match its recorded hash",
            file_path=file_path,
            expected_hash=expected_hash,
            actual_hash=actual,
        )


def build_verification_url(base_url: str, document_uuid: str) -> str:
    """Public page the QR code points at, keyed by document UUID."""
    return f"{base_url.rstrip('/')}/api/documents/{document_uuid}/verify/"


def qr_code_png(url: str) -> bytes:
    """PNG QR code image for ``url``."""
    import qrcode

    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=3,
        border=2,
    )
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def qr_code_base64(url: str) -> Optional[str]:
    """PNG QR code for ``url`` as base64 text, for embedding in HTML."""
    if not url:
        return None
    return base64.b64encode(qr_code_png(url)).decode()


@dataclass
class VerifiableDocument:
    document_uuid: str
    document_type: str
    file_path: str
    hash_sha256: str
    qr_verification_url: Optional[str] = None
    entity_kind: Optional[str] = None
    entity_id: Optional[int] = None
    issued_at: str = ""
    id: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record.pop("id")
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "VerifiableDocument":
        fields = {k: record.get(k) for k in cls.__dataclass_fields__}
        fields["issued_at"] = fields.get("issued_at") or ""
        return cls(**fields)


# render(verification_url) -> document bytes
Renderer = Callable[[str], bytes]


class DocumentVault:
    def __init__(self, store, documents_dir: str, public_base_url: str):
        self.store = store
        self.documents_dir = os.path.abspath(documents_dir)
        self.public_base_url = public_base_url

    def issue(self, document_type: str, render: Renderer,
              entity_kind: Optional[str] = None, entity_id: Optional[int] = None) -> VerifiableDocument:
        """
        Render, write and seal a new document. The written file is re-read and
        checked before returning, so a returned document is always intact.
        The document is not registered; call ``register`` once the owning
        state change has been committed, or ``discard`` if it was not.
        """
        doc_uuid = str(uuid.uuid4())
        url = build_verification_url(self.public_base_url, doc_uuid)

        try:
            data = render(url)
        except LamsError:
            raise
        except Exception as e:
            _logger.error(f"Error generating {document_type} for {entity_kind} {entity_id}: {str(e)}", exc_info=True)
            raise DocumentGenerationError(
                f"Could not generate {document_type} document: {e}",
                document_type=document_type,
            ) from e
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise DocumentGenerationError(
                f"Renderer returned no content for {document_type}", document_type=document_type
            )

        target_dir = os.path.join(self.documents_dir, document_type)
        os.makedirs(target_dir, exist_ok=True)
        file_path = os.path.join(target_dir, f"{doc_uuid}.pdf")
        # "xb": issued files are never overwritten
        with open(file_path, "xb") as f:
            f.write(bytes(data))

        document = VerifiableDocument(
            document_uuid=doc_uuid,
            document_type=document_type,
            file_path=file_path,
            hash_sha256=seal(bytes(data)),
            qr_verification_url=url,
            entity_kind=str(getattr(entity_kind, "value", entity_kind)) if entity_kind else None,
            entity_id=entity_id,
            issued_at=_now_iso(),
        )
        try:
            assert_document_intact(file_path, document.hash_sha256)
        except IntegrityMismatch:
            self.discard(document)
            raise
        _logger.info(f"Sealed {document_type} {doc_uuid} sha256={document.hash_sha256}")
        return document

    def register(self, document: VerifiableDocument) -> VerifiableDocument:
        record = self.store.create_entity("document", document.to_record())
        document.id = record["id"]
        return document

    def discard(self, document: VerifiableDocument) -> None:
        """
        Withdraw a document whose owning state change did not commit: the
        file is removed and a registered record is marked void.
        """
        if document.id is not None:
            self.store.update_entity("document", document.id, {"voided": True})
        try:
            os.remove(document.file_path)
        except FileNotFoundError:
            pass
        _logger.info(f"Discarded document {document.document_uuid}")

    def _find(self, **filters) -> Optional[Dict[str, Any]]:
        for record in self.store.list_entities("document", **filters):
            if not record.get("voided"):
                return record
        return None

    def get_by_uuid(self, document_uuid: str) -> VerifiableDocument:
        record = self._find(document_uuid=document_uuid)
        if not record:
            raise NotFound("Document not found", document_uuid=document_uuid)
        return VerifiableDocument.from_record(record)

    def check(self, document: VerifiableDocument) -> None:
        assert_document_intact(document.file_path, document.hash_sha256)

    def _verification_payload(self, record: Optional[Dict[str, Any]], expected_hash: str) -> Dict[str, Any]:
        if not record:
            return {"verified": False, "pdfVerified": False, "metadata": None}
        pdf_verified = verify_document(record.get("file_path"), expected_hash)
        if not pdf_verified:
            _logger.warning(f"Stored file for document {record.get('document_uuid')} failed verification")
        return {
            "verified": True,
            "pdfVerified": pdf_verified,
            "metadata": {
                "documentUuid": record.get("document_uuid"),
                "documentType": record.get("document_type"),
                "entityKind": record.get("entity_kind"),
                "entityId": record.get("entity_id"),
                "issuedAt": record.get("issued_at"),
                "hashSha256": record.get("hash_sha256"),
            },
        }

    def verify_by_hash(self, document_type: str, hash_sha256: str) -> Dict[str, Any]:
        """Public verification: is there an issued document with this hash, and is its file intact?"""
        hash_sha256 = (hash_sha256 or "").lower()
        record = self._find(hash_sha256=hash_sha256, document_type=document_type)
        return self._verification_payload(record, hash_sha256)

    def verify_by_uuid(self, document_uuid: str) -> Dict[str, Any]:
        record = self._find(document_uuid=document_uuid)
        return self._verification_payload(record, record.get("hash_sha256") if record else "")
