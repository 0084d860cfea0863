"""Wires the SignFlow services together.

``SignFlow`` is what the API, CLI and MCP server hold on to: one store,
one set of collaborators, and the services built on them. It also carries
the thin document operations (upload, listing, download) that sit around
the signing core.
"""

import logging
from io import BytesIO
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .access import RecipientAccess, SignatureLedger, TokenAccess
from .audit import AuditTrail
from .config import Settings
from .engine import FinalizationEngine
from .errors import ForbiddenError, NotFoundError, ValidationError
from .fields import FieldRegistry
from .identity import IdentityDirectory
from .models import AuditAction, AuditEntry, Document, DocumentStatus, Identity
from .notifications import NotificationService, Notifier, notifier_from_settings
from .recipients import RecipientService
from .store import DocumentStore
from .workflow import SigningCoordinator

logger = logging.getLogger("signflow.core")


class SignFlow:
    """The assembled signing system.

    Args:
        settings: Runtime settings; read from the environment if omitted.
        notifier: Notification transport; chosen from settings if omitted.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.store = DocumentStore(self.settings.data_dir)
        self.identities = IdentityDirectory(self.store)
        self.audit = AuditTrail(self.store)
        self.notifier = notifier or notifier_from_settings(self.settings)
        self.notifications = NotificationService(self.notifier, self.settings.frontend_url)

        self.ledger = SignatureLedger(self.store, self.identities)
        self.token_access = TokenAccess(self.store)
        self.recipient_access = RecipientAccess(self.store)

        self.fields = FieldRegistry(self.store, self.audit, self.settings)
        self.engine = FinalizationEngine(self.store, self.audit, self.settings)
        self.workflow = SigningCoordinator(
            self.store,
            self.identities,
            self.audit,
            self.notifications,
            self.ledger,
            self.token_access,
            self.settings,
            finalizer=self.engine.finalize,
        )
        self.recipients = RecipientService(
            self.store,
            self.identities,
            self.audit,
            self.notifications,
            self.ledger,
            self.recipient_access,
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upload(
        self,
        pdf_data: bytes,
        title: str,
        owner: Identity,
        file_name: str = "document.pdf",
    ) -> Document:
        """Register a new PDF owned by ``owner``.

        Raises:
            ValidationError: If the bytes are not a readable PDF.
        """
        try:
            page_count = len(PdfReader(BytesIO(pdf_data)).pages)
        except (PdfReadError, ValueError, OSError) as exc:
            raise ValidationError(f"Not a readable PDF: {exc}") from exc

        document = Document(
            title=title,
            owner_id=owner.user_id,
            file_name=file_name,
            page_count=page_count,
            pdf_hash=FinalizationEngine.hash_bytes(pdf_data),
        )
        self.store.save_document(document)
        self.store.attach_source(document, pdf_data)

        self.audit.record(
            AuditAction.DOCUMENT_CREATED,
            document_id=document.document_id,
            user_id=owner.user_id,
            details={"title": title, "pages": page_count, "pdf_hash": document.pdf_hash},
        )
        logger.info(
            "Uploaded %s (%s, %d page(s))", title, document.document_id[:8], page_count
        )
        return document

    def get_document(self, document_id: str, caller: Identity) -> Document:
        try:
            document = self.store.load_document(document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None
        if document.owner_id != caller.user_id:
            raise ForbiddenError("Not authorized to access this document")
        return document

    def list_documents(
        self, caller: Identity, status: Optional[DocumentStatus] = None
    ) -> list[Document]:
        return self.store.list_documents(status=status, owner_id=caller.user_id)

    def delete_document(self, document_id: str, caller: Identity) -> None:
        with self.store.document_lock(document_id):
            self.get_document(document_id, caller)
            self.store.delete_document(document_id)

    def download(self, document_id: str, caller: Identity) -> bytes:
        """Owner download: the signed artifact when present, else the original."""
        document = self.get_document(document_id, caller)
        try:
            if document.signed_artifact:
                data = self.store.read_artifact(document.signed_artifact)
            else:
                data = self.store.read_original_bytes(document)
        except FileNotFoundError:
            raise NotFoundError("Document file not found") from None
        self.audit.record(
            AuditAction.DOCUMENT_DOWNLOADED,
            document_id=document_id,
            user_id=caller.user_id,
            details={"signed": bool(document.signed_artifact)},
        )
        return data

    def audit_trail(self, document_id: str, caller: Identity) -> list[AuditEntry]:
        self.get_document(document_id, caller)
        return self.audit.trail(document_id)
