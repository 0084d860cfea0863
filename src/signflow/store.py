"""Filesystem-backed store for SignFlow.

Everything lives on disk as JSON + PDF files under ``~/.signflow/``.
No database required: each record is one JSON file, so concurrent fills
of different fields never touch the same file.

Directory layout::

    ~/.signflow/
    ├── users/                  # Identities (JSON)
    ├── requests/               # Signing requests (JSON)
    ├── documents/
    │   ├── <doc-id>/
    │   │   ├── document.json
    │   │   ├── source.pdf      (immutable once attached)
    │   │   ├── signed/         (finalized artifacts)
    │   │   ├── fields/<field-id>.json
    │   │   ├── signatures/<signature-id>.json
    │   │   └── recipients/<recipient-id>.json
    └── audit/                  # Append-only audit logs (JSONL)
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, TypeVar

from pydantic import BaseModel

from .models import (
    AuditEntry,
    Document,
    DocumentRecipient,
    DocumentStatus,
    Identity,
    Signature,
    SignatureField,
    SigningRequest,
)

logger = logging.getLogger("signflow.store")

DEFAULT_SIGNFLOW_DIR = Path.home() / ".signflow"

GLOBAL_AUDIT_LOG = "_global"

M = TypeVar("M", bound=BaseModel)


def _safe_id(value: str) -> str:
    """Reject ids that could escape their directory."""
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise FileNotFoundError(f"Invalid identifier: {value!r}")
    return value


class DocumentStore:
    """Filesystem-backed CRUD for documents, fields, signatures, recipients,
    signing requests, identities and audit logs.

    Also implements the storage collaborator contract used by the
    finalization engine (``read_original_bytes`` / ``write_artifact``).

    Args:
        base_dir: Root directory for all signflow data.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base = Path(base_dir) if base_dir else DEFAULT_SIGNFLOW_DIR
        self._users_dir = self.base / "users"
        self._requests_dir = self.base / "requests"
        self._documents_dir = self.base / "documents"
        self._audit_dir = self.base / "audit"

        for d in (
            self._users_dir,
            self._requests_dir,
            self._documents_dir,
            self._audit_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._audit_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Hold the re-entrant lock for ``key`` for the duration of the block."""
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield

    def document_lock(self, document_id: str):
        """Single-writer lock for one document's fields and status."""
        return self.lock(f"document:{document_id}")

    def request_lock(self, request_id: str):
        """Lock serializing signer updates of one signing request."""
        return self.lock(f"request:{request_id}")

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _write_model(path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(model.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def _read_model(path: Path, model: type[M]) -> M:
        data = json.loads(path.read_text(encoding="utf-8"))
        return model.model_validate(data)

    def _read_all(self, directory: Path, model: type[M]) -> list[M]:
        items: list[M] = []
        if not directory.exists():
            return items
        for f in sorted(directory.glob("*.json")):
            try:
                items.append(self._read_model(f, model))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping invalid record %s: %s", f.name, exc)
        return items

    def _doc_dir(self, document_id: str) -> Path:
        return self._documents_dir / _safe_id(document_id)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document) -> Path:
        """Persist a document's metadata.

        Returns:
            Path to the document directory.
        """
        doc_dir = self._doc_dir(document.document_id)
        self._write_model(doc_dir / "document.json", document)
        logger.debug("Saved document %s (%s)", document.title, document.document_id[:8])
        return doc_dir

    def attach_source(self, document: Document, pdf_data: bytes) -> Path:
        """Store the original PDF for a document.

        The original is immutable: attaching twice is refused.

        Raises:
            FileExistsError: If the document already has a source PDF.
        """
        pdf_path = self._doc_dir(document.document_id) / "source.pdf"
        pdf_path.parent.mkdir(parents=True, exist_ok=True)
        with open(pdf_path, "xb") as f:
            f.write(pdf_data)
        logger.info("Attached source PDF to document %s", document.document_id[:8])
        return pdf_path

    def load_document(self, document_id: str) -> Document:
        """Load a document by ID.

        Raises:
            FileNotFoundError: If the document doesn't exist.
        """
        json_path = self._doc_dir(document_id) / "document.json"
        if not json_path.exists():
            raise FileNotFoundError(f"Document not found: {document_id}")
        return self._read_model(json_path, Document)

    def list_documents(
        self,
        status: Optional[DocumentStatus] = None,
        owner_id: Optional[str] = None,
    ) -> list[Document]:
        """List documents, newest first, optionally filtered."""
        documents = []
        for doc_dir in self._documents_dir.iterdir():
            json_path = doc_dir / "document.json"
            if not json_path.exists():
                continue
            try:
                doc = self._read_model(json_path, Document)
            except (OSError, ValueError) as exc:
                logger.warning("Skipping invalid document %s: %s", doc_dir.name, exc)
                continue
            if status is not None and doc.status != status:
                continue
            if owner_id is not None and doc.owner_id != owner_id:
                continue
            documents.append(doc)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents

    def delete_document(self, document_id: str) -> bool:
        """Delete a document with everything it owns.

        Returns:
            True if deleted, False if not found.
        """
        doc_dir = self._doc_dir(document_id)
        if not doc_dir.exists():
            return False
        shutil.rmtree(doc_dir)
        for request in self.list_requests(document_id=document_id):
            (self._requests_dir / f"{request.request_id}.json").unlink(missing_ok=True)
        logger.info("Deleted document %s", document_id[:8])
        return True

    # ------------------------------------------------------------------
    # Storage collaborator
    # ------------------------------------------------------------------

    def read_original_bytes(self, document: Document) -> bytes:
        """Read the original uploaded PDF.

        Raises:
            FileNotFoundError: If no source PDF was attached.
        """
        pdf_path = self._doc_dir(document.document_id) / "source.pdf"
        if not pdf_path.exists():
            raise FileNotFoundError(f"No source PDF for document {document.document_id}")
        return pdf_path.read_bytes()

    def write_artifact(self, document: Document, data: bytes, name: str) -> str:
        """Write a finalized PDF next to (never over) the original.

        Args:
            document: Owning document.
            data: Rendered PDF bytes.
            name: File name for the artifact.

        Returns:
            Artifact reference, relative to the documents directory.
        """
        signed_dir = self._doc_dir(document.document_id) / "signed"
        signed_dir.mkdir(parents=True, exist_ok=True)
        path = signed_dir / _safe_id(name)
        path.write_bytes(data)
        return f"{document.document_id}/signed/{path.name}"

    def read_artifact(self, artifact_ref: str) -> bytes:
        """Read a finalized PDF by reference.

        Raises:
            FileNotFoundError: If the artifact doesn't exist.
        """
        path = (self._documents_dir / artifact_ref).resolve()
        if self._documents_dir.resolve() not in path.parents or not path.exists():
            raise FileNotFoundError(f"Artifact not found: {artifact_ref}")
        return path.read_bytes()

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def save_field(self, field: SignatureField) -> None:
        path = self._doc_dir(field.document_id) / "fields" / f"{field.field_id}.json"
        self._write_model(path, field)

    def load_field(self, field_id: str) -> SignatureField:
        """Load a field by ID from whichever document owns it.

        Raises:
            FileNotFoundError: If the field doesn't exist.
        """
        path = next(
            self._documents_dir.glob(f"*/fields/{_safe_id(field_id)}.json"), None
        )
        if path is None:
            raise FileNotFoundError(f"Field not found: {field_id}")
        return self._read_model(path, SignatureField)

    def list_fields(self, document_id: str) -> list[SignatureField]:
        """All fields of a document, sorted by (page, y, x)."""
        fields = self._read_all(self._doc_dir(document_id) / "fields", SignatureField)
        fields.sort(key=lambda f: (f.page, f.y, f.x, f.field_id))
        return fields

    def delete_field(self, field: SignatureField) -> bool:
        path = self._doc_dir(field.document_id) / "fields" / f"{field.field_id}.json"
        if path.exists():
            path.unlink()
            return True
        return False

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def save_signature(self, signature: Signature) -> None:
        path = (
            self._doc_dir(signature.document_id)
            / "signatures"
            / f"{signature.signature_id}.json"
        )
        self._write_model(path, signature)

    def list_signatures(self, document_id: str) -> list[Signature]:
        """All signatures of a document, oldest first."""
        sigs = self._read_all(self._doc_dir(document_id) / "signatures", Signature)
        sigs.sort(key=lambda s: s.created_at)
        return sigs

    def find_signature(self, document_id: str, signer_id: str) -> Optional[Signature]:
        """The live workflow signature of one signer on one document, if any.

        Signatures appended by field fills are history, not the signer's
        live signature, and are ignored here.
        """
        for sig in self.list_signatures(document_id):
            if sig.signer_id != signer_id:
                continue
            if sig.signing_request_id is not None or sig.recipient_id is not None:
                return sig
        return None

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    def save_recipient(self, recipient: DocumentRecipient) -> None:
        path = (
            self._doc_dir(recipient.document_id)
            / "recipients"
            / f"{recipient.recipient_id}.json"
        )
        self._write_model(path, recipient)

    def load_recipient(self, recipient_id: str) -> DocumentRecipient:
        """Raises FileNotFoundError if the recipient doesn't exist."""
        path = next(
            self._documents_dir.glob(f"*/recipients/{_safe_id(recipient_id)}.json"),
            None,
        )
        if path is None:
            raise FileNotFoundError(f"Recipient not found: {recipient_id}")
        return self._read_model(path, DocumentRecipient)

    def list_recipients(self, document_id: str) -> list[DocumentRecipient]:
        """Recipients of a document, in signing order."""
        recipients = self._read_all(
            self._doc_dir(document_id) / "recipients", DocumentRecipient
        )
        recipients.sort(key=lambda r: (r.order, r.created_at))
        return recipients

    def delete_recipient(self, recipient: DocumentRecipient) -> bool:
        path = (
            self._doc_dir(recipient.document_id)
            / "recipients"
            / f"{recipient.recipient_id}.json"
        )
        if path.exists():
            path.unlink()
            return True
        return False

    # ------------------------------------------------------------------
    # Signing requests
    # ------------------------------------------------------------------

    def save_request(self, request: SigningRequest) -> None:
        self._write_model(self._requests_dir / f"{request.request_id}.json", request)

    def load_request(self, request_id: str) -> SigningRequest:
        """Raises FileNotFoundError if the request doesn't exist."""
        path = self._requests_dir / f"{_safe_id(request_id)}.json"
        if not path.exists():
            raise FileNotFoundError(f"Signing request not found: {request_id}")
        return self._read_model(path, SigningRequest)

    def find_request_by_token(self, token: str) -> SigningRequest:
        """Raises FileNotFoundError if no request carries this token."""
        for request in self._read_all(self._requests_dir, SigningRequest):
            if request.token == token:
                return request
        raise FileNotFoundError("Signing request not found for token")

    def list_requests(
        self,
        owner_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> list[SigningRequest]:
        """Signing requests, newest first, optionally filtered."""
        requests = [
            r
            for r in self._read_all(self._requests_dir, SigningRequest)
            if (owner_id is None or r.owner_id == owner_id)
            and (document_id is None or r.document_id == document_id)
        ]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def save_identity(self, identity: Identity) -> None:
        self._write_model(self._users_dir / f"{identity.user_id}.json", identity)

    def load_identity(self, user_id: str) -> Identity:
        """Raises FileNotFoundError if the identity doesn't exist."""
        path = self._users_dir / f"{_safe_id(user_id)}.json"
        if not path.exists():
            raise FileNotFoundError(f"Identity not found: {user_id}")
        return self._read_model(path, Identity)

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        wanted = email.strip().lower()
        for identity in self._read_all(self._users_dir, Identity):
            if identity.email.lower() == wanted:
                return identity
        return None

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the log (JSONL format)."""
        log_name = entry.document_id or GLOBAL_AUDIT_LOG
        log_path = self._audit_dir / f"{_safe_id(log_name)}.jsonl"
        with self._audit_guard, open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, document_id: Optional[str] = None) -> list[AuditEntry]:
        """Load the full audit trail for a document (or the global log).

        Returns:
            Chronological list of audit entries.
        """
        log_path = self._audit_dir / f"{_safe_id(document_id or GLOBAL_AUDIT_LOG)}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValueError:
                continue
        return sorted(entries, key=lambda e: e.timestamp)
