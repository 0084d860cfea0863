"""SignFlow finalization engine — bakes filled fields into a signed PDF.

Finalization is one-way: the original upload is read, every filled field
is drawn onto a per-page overlay and merged in, and the result is stored
as a new artifact next to the original. Preview runs the exact same
pipeline without persisting anything.

Fields are captured top-left in document space; PDF pages grow upward
from the bottom, so every box is flipped through
``signflow.geometry.to_page_space`` before drawing.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional

from pypdf import PdfReader, PdfWriter
from reportlab.pdfgen import canvas

from .audit import AuditTrail
from .config import RefinalizePolicy, Settings
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .geometry import Box, to_page_space
from .models import AuditAction, Document, DocumentStatus, Identity, SignatureField
from .render import render_field
from .store import DocumentStore

logger = logging.getLogger("signflow.engine")


@dataclass
class FinalizeResult:
    """Outcome of a successful finalize.

    Attributes:
        document: The document, now completed.
        artifact_ref: Storage reference of the signed PDF.
        fields_embedded: Number of filled fields drawn into the artifact.
    """

    document: Document
    artifact_ref: str
    fields_embedded: int


def _render_order(field: SignatureField) -> tuple:
    return (field.page, field.y, field.x, field.field_id)


class FinalizationEngine:
    """Renders filled fields into the original PDF.

    Args:
        store: Storage collaborator for original bytes and artifacts.
        audit: Audit trail.
        settings: Runtime settings (re-finalize policy).
    """

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditTrail,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings or Settings()

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Compute SHA-256 hash of raw bytes.

        Args:
            data: Bytes to hash.

        Returns:
            Hex-encoded SHA-256 digest.
        """
        return hashlib.sha256(data).hexdigest()

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    @staticmethod
    def check_gate(fields: list[SignatureField]) -> None:
        """Fail unless every required field has a value.

        Raises:
            ValidationError: With ``count`` set to the number of unfilled
                required fields.
        """
        missing = [f for f in fields if f.required and not f.is_filled]
        if missing:
            raise ValidationError(
                f"{len(missing)} required field(s) not filled", count=len(missing)
            )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @staticmethod
    def _make_overlay(
        page_left: float,
        page_bottom: float,
        page_w: float,
        page_h: float,
        fields: list[SignatureField],
    ) -> bytes:
        """Draw one page's fields on a transparent overlay page."""
        buf = BytesIO()
        c = canvas.Canvas(
            buf, pagesize=(page_left + page_w, page_bottom + page_h), invariant=1
        )
        for field in fields:
            box = to_page_space(
                Box(x=field.x, y=field.y, width=field.width, height=field.height),
                page_h,
                origin_x=page_left,
                origin_y=page_bottom,
            )
            render_field(c, field, box)
        c.showPage()
        c.save()
        return buf.getvalue()

    def render(self, pdf_data: bytes, fields: list[SignatureField]) -> tuple[bytes, int]:
        """Render the filled subset of ``fields`` into ``pdf_data``.

        Args:
            pdf_data: Original PDF bytes.
            fields: Field snapshot; unfilled fields are not drawn.

        Returns:
            (rendered PDF bytes, number of fields embedded)

        Raises:
            ValidationError: If any field sits on a page the PDF lacks.
        """
        writer = PdfWriter(clone_from=PdfReader(BytesIO(pdf_data)))
        page_count = len(writer.pages)

        for field in fields:
            if field.page > page_count:
                raise ValidationError(
                    f"Field {field.field_id[:8]} is on page {field.page} "
                    f"but the document has {page_count} page(s)"
                )

        by_page: dict[int, list[SignatureField]] = {}
        for field in sorted((f for f in fields if f.is_filled), key=_render_order):
            by_page.setdefault(field.page, []).append(field)

        embedded = 0
        for number, page in enumerate(writer.pages, start=1):
            page_fields = by_page.get(number)
            if page_fields:
                box = page.mediabox
                overlay_pdf = self._make_overlay(
                    float(box.left),
                    float(box.bottom),
                    float(box.width),
                    float(box.height),
                    page_fields,
                )
                overlay_reader = PdfReader(BytesIO(overlay_pdf))
                page.merge_page(overlay_reader.pages[0])
                embedded += len(page_fields)

        out = BytesIO()
        writer.write(out)
        return out.getvalue(), embedded

    # ------------------------------------------------------------------
    # Finalize / preview
    # ------------------------------------------------------------------

    def _load_owned(self, document_id: str, caller: Identity) -> Document:
        try:
            document = self._store.load_document(document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None
        if document.owner_id != caller.user_id:
            raise ForbiddenError("Only the document owner can finalize it")
        return document

    def _original_bytes(self, document: Document) -> bytes:
        try:
            return self._store.read_original_bytes(document)
        except FileNotFoundError:
            raise NotFoundError("Document has no source PDF") from None

    def finalize(self, document_id: str, caller: Identity) -> FinalizeResult:
        """Produce the signed artifact for a document.

        Runs under the document lock, so no fill can land between the
        gate and the render.

        Args:
            document_id: Document to finalize.
            caller: Acting identity; must own the document.

        Returns:
            FinalizeResult with the completed document and artifact ref.

        Raises:
            NotFoundError: Document or its source PDF missing.
            ForbiddenError: Caller is not the owner.
            ConflictError: Already finalized under the ``reject`` policy,
                or archived.
            ValidationError: Required fields unfilled, or a field beyond
                the last page.
        """
        with self._store.document_lock(document_id):
            document = self._load_owned(document_id, caller)
            if document.status == DocumentStatus.ARCHIVED:
                raise ConflictError("Document is archived")
            if (
                document.signed_artifact
                and self._settings.refinalize == RefinalizePolicy.REJECT
            ):
                raise ConflictError("Document has already been finalized")

            fields = self._store.list_fields(document_id)
            self.check_gate(fields)

            data, embedded = self.render(self._original_bytes(document), fields)
            digest = self.hash_bytes(data)
            artifact_ref = self._store.write_artifact(
                document, data, f"signed-{digest[:12]}.pdf"
            )

            now = datetime.now(timezone.utc)
            previous_artifact = document.signed_artifact
            document.status = DocumentStatus.COMPLETED
            document.signed_artifact = artifact_ref
            document.signed_hash = digest
            document.completed_at = now
            self._store.save_document(document)

        self._audit.record(
            AuditAction.DOCUMENT_FINALIZED,
            document_id=document_id,
            user_id=caller.user_id,
            details={
                "artifact": artifact_ref,
                "signed_hash": digest,
                "fields_embedded": embedded,
                "regenerated": previous_artifact is not None,
            },
        )
        logger.info(
            "Finalized document %s (%d field(s) embedded, sha256 %s)",
            document_id[:8],
            embedded,
            digest[:16],
        )
        return FinalizeResult(
            document=document, artifact_ref=artifact_ref, fields_embedded=embedded
        )

    def preview(self, document_id: str, caller: Identity) -> bytes:
        """Render the document as finalize would, without persisting.

        No gate is applied: unfilled fields are simply left blank.
        """
        with self._store.document_lock(document_id):
            document = self._load_owned(document_id, caller)
            fields = self._store.list_fields(document_id)
            pdf_data = self._original_bytes(document)
        data, embedded = self.render(pdf_data, fields)
        logger.debug("Rendered preview of %s (%d field(s))", document_id[:8], embedded)
        return data
