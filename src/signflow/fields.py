"""Field registry — placing, editing and filling signature fields.

Only a document's owner authors fields. Filling is the one mutation open
to other parties: the identity a field is assigned to may fill it. Every
position coming in from a client is normalized through
``signflow.geometry`` so stored coordinates never depend on the zoom level
the field was placed at.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .audit import AuditTrail
from .config import Settings
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .geometry import Box, to_display, to_document_space
from .models import (
    AuditAction,
    Document,
    DocumentStatus,
    FieldStatus,
    FieldType,
    Identity,
    Signature,
    SignatureField,
    SignatureStatus,
    SignatureType,
)
from .store import DocumentStore

logger = logging.getLogger("signflow.fields")

# Fill kinds that also leave a durable Signature behind, and the signature
# type each one is recorded as.
SIGNATURE_KINDS: dict[str, SignatureType] = {
    "signature": SignatureType.DRAWN,
    "drawn": SignatureType.DRAWN,
    "initials": SignatureType.TYPED,
}

_LOCKED_STATUSES = (DocumentStatus.COMPLETED, DocumentStatus.ARCHIVED)


class FieldSpec(BaseModel):
    """Input for creating one field, in display space at the given scale."""

    page: int = Field(1, ge=1)
    x: float
    y: float
    width: Optional[float] = None
    height: Optional[float] = None
    type: FieldType
    label: Optional[str] = None
    placeholder: Optional[str] = None
    required: bool = True
    assigned_to: Optional[str] = None


class FieldChanges(BaseModel):
    """Partial update of a field; only explicitly set attributes apply."""

    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    label: Optional[str] = None
    placeholder: Optional[str] = None
    required: Optional[bool] = None
    assigned_to: Optional[str] = None


def _matches_caller(assigned_to: Optional[str], caller: Identity) -> bool:
    if not assigned_to:
        return False
    wanted = assigned_to.strip().lower()
    return wanted in (caller.email.lower(), caller.user_id.lower())


class FieldRegistry:
    """Owns SignatureField records and their one recipient-facing mutation.

    Args:
        store: Persistent store.
        audit: Audit trail.
        settings: Runtime settings (default field size).
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
    # Lookups
    # ------------------------------------------------------------------

    def _load_document(self, document_id: str) -> Document:
        try:
            return self._store.load_document(document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None

    def _load_field(self, field_id: str) -> SignatureField:
        try:
            return self._store.load_field(field_id)
        except FileNotFoundError:
            raise NotFoundError("Field not found") from None

    @staticmethod
    def _require_owner(document: Document, caller: Identity) -> None:
        if document.owner_id != caller.user_id:
            raise ForbiddenError("Only the document owner can edit its fields")

    @staticmethod
    def _require_editable(document: Document) -> None:
        if document.status in _LOCKED_STATUSES:
            raise ConflictError(f"Document is {document.status.value}")

    def get(self, field_id: str) -> SignatureField:
        return self._load_field(field_id)

    def list_for_document(self, document_id: str, caller: Identity) -> list[SignatureField]:
        """Fields of a document, visible to its owner, assignees and recipients."""
        document = self._load_document(document_id)
        fields = self._store.list_fields(document_id)
        if document.owner_id == caller.user_id:
            return fields
        if any(_matches_caller(f.assigned_to, caller) for f in fields):
            return fields
        email = caller.email.lower()
        if any(r.email == email for r in self._store.list_recipients(document_id)):
            return fields
        raise ForbiddenError("Not authorized to view this document's fields")

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def _build_field(
        self, document: Document, spec: FieldSpec, scale: float
    ) -> SignatureField:
        if document.page_count and spec.page > document.page_count:
            raise ValidationError(
                f"Page {spec.page} is outside the document (1-{document.page_count})"
            )
        display = Box(
            x=spec.x,
            y=spec.y,
            width=spec.width if spec.width is not None else self._settings.default_field_width * scale,
            height=spec.height if spec.height is not None else self._settings.default_field_height * scale,
        )
        box = to_document_space(display, scale)
        if box.width <= 0 or box.height <= 0:
            raise ValidationError("Field width and height must be positive")
        return SignatureField(
            document_id=document.document_id,
            page=spec.page,
            x=box.x,
            y=box.y,
            width=box.width,
            height=box.height,
            type=spec.type,
            label=spec.label,
            placeholder=spec.placeholder,
            required=spec.required,
            status=FieldStatus.PENDING if spec.required else FieldStatus.OPTIONAL,
            assigned_to=spec.assigned_to.strip().lower() if spec.assigned_to else None,
        )

    def create(
        self,
        document_id: str,
        spec: FieldSpec,
        caller: Identity,
        scale: float = 1.0,
    ) -> SignatureField:
        """Place a new field on a document.

        Args:
            document_id: Target document.
            spec: Field attributes in display space.
            caller: Acting identity; must own the document.
            scale: Display zoom the coordinates were captured at.

        Raises:
            NotFoundError: Document missing.
            ForbiddenError: Caller is not the owner.
            ConflictError: Document already completed or archived.
            ValidationError: Page out of range or non-positive size.
        """
        with self._store.document_lock(document_id):
            document = self._load_document(document_id)
            self._require_owner(document, caller)
            self._require_editable(document)
            field = self._build_field(document, spec, scale)
            self._store.save_field(field)

        self._audit.record(
            AuditAction.SIGNATURE_ADDED,
            document_id=document_id,
            user_id=caller.user_id,
            details={
                "field_id": field.field_id,
                "type": field.type.value,
                "page": field.page,
                "x": field.x,
                "y": field.y,
            },
        )
        logger.info(
            "Created %s field %s on page %d of %s",
            field.type.value,
            field.field_id[:8],
            field.page,
            document_id[:8],
        )
        return field

    def create_from_template(
        self,
        document_id: str,
        specs: Iterable[FieldSpec],
        caller: Identity,
        scale: float = 1.0,
    ) -> list[SignatureField]:
        """Create many fields at once; nothing is written unless all are valid."""
        specs = list(specs)
        with self._store.document_lock(document_id):
            document = self._load_document(document_id)
            self._require_owner(document, caller)
            self._require_editable(document)
            fields = []
            for i, spec in enumerate(specs):
                try:
                    fields.append(self._build_field(document, spec, scale))
                except ValidationError as exc:
                    raise ValidationError(f"Field {i}: {exc.message}") from exc
            for field in fields:
                self._store.save_field(field)

        self._audit.record(
            AuditAction.SIGNATURE_ADDED,
            document_id=document_id,
            user_id=caller.user_id,
            details={"fields_count": len(fields), "source": "template"},
        )
        return fields

    def update(
        self,
        field_id: str,
        changes: FieldChanges,
        caller: Identity,
        scale: float = 1.0,
    ) -> SignatureField:
        """Move, resize or relabel a field. Owner only."""
        field = self._load_field(field_id)
        with self._store.document_lock(field.document_id):
            field = self._load_field(field_id)
            document = self._load_document(field.document_id)
            self._require_owner(document, caller)
            self._require_editable(document)

            given = changes.model_fields_set
            if given & {"x", "y", "width", "height"}:
                display = to_display(
                    Box(x=field.x, y=field.y, width=field.width, height=field.height),
                    scale,
                )
                moved = display.model_copy(
                    update={
                        k: getattr(changes, k)
                        for k in ("x", "y", "width", "height")
                        if k in given and getattr(changes, k) is not None
                    }
                )
                box = to_document_space(moved, scale)
                if box.width <= 0 or box.height <= 0:
                    raise ValidationError("Field width and height must be positive")
                field.x, field.y = box.x, box.y
                field.width, field.height = box.width, box.height

            if "label" in given:
                field.label = changes.label
            if "placeholder" in given:
                field.placeholder = changes.placeholder
            if "required" in given and changes.required is not None:
                field.required = changes.required
                if not field.is_filled:
                    field.status = (
                        FieldStatus.PENDING if field.required else FieldStatus.OPTIONAL
                    )
            if "assigned_to" in given:
                field.assigned_to = (
                    changes.assigned_to.strip().lower() if changes.assigned_to else None
                )

            field.updated_at = datetime.now(timezone.utc)
            self._store.save_field(field)

        self._audit.record(
            AuditAction.SIGNATURE_UPDATED,
            document_id=field.document_id,
            user_id=caller.user_id,
            details={"field_id": field_id, "changed": sorted(given)},
        )
        return field

    def delete(self, field_id: str, caller: Identity) -> None:
        """Remove a field; signatures made through it lose their linkage."""
        field = self._load_field(field_id)
        with self._store.document_lock(field.document_id):
            document = self._load_document(field.document_id)
            self._require_owner(document, caller)
            self._require_editable(document)
            self._store.delete_field(field)
            for signature in self._store.list_signatures(field.document_id):
                if signature.field_id == field_id:
                    signature.field_id = None
                    self._store.save_signature(signature)

        self._audit.record(
            AuditAction.SIGNATURE_REMOVED,
            document_id=field.document_id,
            user_id=caller.user_id,
            details={"field_id": field_id},
        )

    def link_across_pages(
        self,
        field_id: str,
        target_pages: Iterable[int],
        caller: Identity,
    ) -> tuple[SignatureField, list[SignatureField]]:
        """Duplicate a field onto other pages, sharing one link group.

        Pages that are the source page or already carry a member of the
        group are skipped.

        Returns:
            (source field, newly created copies)
        """
        source = self._load_field(field_id)
        with self._store.document_lock(source.document_id):
            source = self._load_field(field_id)
            document = self._load_document(source.document_id)
            self._require_owner(document, caller)
            self._require_editable(document)

            group_id = source.linked_field_id or source.field_id
            occupied = {
                f.page
                for f in self._store.list_fields(document.document_id)
                if f.linked_field_id == group_id or f.field_id == group_id
            }
            occupied.add(source.page)

            pages = sorted(set(target_pages))
            for page in pages:
                if page < 1 or (document.page_count and page > document.page_count):
                    raise ValidationError(
                        f"Page {page} is outside the document (1-{document.page_count})"
                    )

            copies = []
            for page in pages:
                if page in occupied:
                    continue
                copy = source.model_copy(
                    update={
                        "page": page,
                        "linked_field_id": group_id,
                        "value": None,
                        "filled_by": None,
                        "status": (
                            FieldStatus.PENDING if source.required else FieldStatus.OPTIONAL
                        ),
                    }
                )
                copy = SignatureField.model_validate(
                    copy.model_dump(exclude={"field_id", "created_at", "updated_at"})
                )
                self._store.save_field(copy)
                copies.append(copy)

            if source.linked_field_id is None:
                source.linked_field_id = group_id
                self._store.save_field(source)

        logger.info("Linked field %s to %d page(s)", field_id[:8], len(copies))
        return source, copies

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def fill(
        self,
        field_id: str,
        value: str,
        caller: Identity,
        kind: Optional[str] = None,
        signature_data: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignatureField:
        """Write a value into a field and mark it completed.

        The owner may fill any field; the identity in ``assigned_to`` may
        fill its own. A required field cannot be filled by anyone else.
        Signature-like fills also append a durable Signature record.

        Args:
            field_id: Field to fill.
            value: New value (text, ``checked``, or an image data URL).
            caller: Acting identity.
            kind: How the value was produced (``signature``, ``initials``,
                ``drawn``, ...). Defaults to the field's type.
            signature_data: Raw signature payload, if different from ``value``.
            ip_address: Caller IP for the audit trail.
            user_agent: Caller client for the audit trail.

        Raises:
            NotFoundError: Field or document missing.
            ForbiddenError: Caller may not fill this field.
            ConflictError: Document finalized, or a non-owner re-filling a
                completed field.
            ValidationError: Empty value.
        """
        field = self._load_field(field_id)
        with self._store.document_lock(field.document_id):
            field = self._load_field(field_id)
            document = self._load_document(field.document_id)
            self._require_editable(document)

            is_owner = document.owner_id == caller.user_id
            is_assigned = _matches_caller(field.assigned_to, caller)
            if not is_owner and not is_assigned and field.required:
                raise ForbiddenError("Not authorized to fill this field")
            if value is None or value == "":
                raise ValidationError("A value is required to fill a field")
            if field.status == FieldStatus.COMPLETED and field.is_filled and not is_owner:
                raise ConflictError("Field has already been filled")

            now = datetime.now(timezone.utc)
            field.value = value
            field.status = FieldStatus.COMPLETED
            field.filled_by = caller.user_id
            field.updated_at = now
            self._store.save_field(field)

            fill_kind = (kind or field.type.value).lower()
            if fill_kind in SIGNATURE_KINDS:
                self._store.save_signature(
                    Signature(
                        document_id=document.document_id,
                        signer_id=caller.user_id,
                        field_id=field.field_id,
                        page=field.page,
                        x=field.x,
                        y=field.y,
                        width=field.width,
                        height=field.height,
                        type=SIGNATURE_KINDS[fill_kind],
                        signature_data=signature_data or value,
                        status=SignatureStatus.SIGNED,
                        signed_at=now,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )

            if document.status in (DocumentStatus.DRAFT, DocumentStatus.PENDING):
                document.status = DocumentStatus.PARTIALLY_SIGNED
                self._store.save_document(document)

        self._audit.record(
            AuditAction.SIGNATURE_SIGNED,
            document_id=document.document_id,
            user_id=caller.user_id,
            details={"field_id": field_id, "type": fill_kind, "page": field.page},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "Field %s on %s filled by %s",
            field_id[:8],
            document.document_id[:8],
            caller.email,
        )
        return field
