"""Role-aware direct document signing.

The owner lists recipients on a document (signers, witnesses, reviewers);
each recipient then opens the document with its id and their email, no
signing request involved. Access checks live in
``signflow.access.RecipientAccess``; signatures go through the shared
``SignatureLedger``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from pydantic import BaseModel

from .access import RecipientAccess, SignatureLedger, SignaturePayload, SigningAction
from .audit import AuditTrail
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .identity import IdentityDirectory, normalize_email
from .models import (
    AuditAction,
    Document,
    DocumentRecipient,
    DocumentStatus,
    FieldStatus,
    FieldType,
    Identity,
    RecipientRole,
    RecipientStatus,
    Signature,
    SignatureField,
)
from .notifications import NotificationService
from .store import DocumentStore

logger = logging.getLogger("signflow.recipients")


class RecipientSpec(BaseModel):
    """One recipient as given by the owner.

    ``witness_for`` names the witnessed recipient by id or by email; it may
    point at a recipient added in the same call.
    """

    email: str
    name: str
    role: RecipientRole = RecipientRole.SIGNER
    order: Optional[int] = None
    witness_for: Optional[str] = None
    message: str = ""


@dataclass
class RecipientView:
    """What a recipient sees when opening a document."""

    document: Document
    recipient: DocumentRecipient
    fields: list[SignatureField] = field(default_factory=list)
    signatures: list[Signature] = field(default_factory=list)


@dataclass
class RecipientSignResult:
    document: Document
    recipient: DocumentRecipient
    signature: Signature


class RecipientService:
    """Owner-managed recipient lists and the recipient signing flow.

    Args:
        store: Persistent store.
        identities: Identity collaborator.
        audit: Audit trail.
        notifications: Outbound notifications.
        ledger: Durable signature write path.
        access: Recipient access adapter.
    """

    def __init__(
        self,
        store: DocumentStore,
        identities: IdentityDirectory,
        audit: AuditTrail,
        notifications: NotificationService,
        ledger: SignatureLedger,
        access: RecipientAccess,
    ) -> None:
        self._store = store
        self._identities = identities
        self._audit = audit
        self._notifications = notifications
        self._ledger = ledger
        self._access = access

    def _load_owned(self, document_id: str, caller: Identity) -> Document:
        try:
            document = self._store.load_document(document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None
        if document.owner_id != caller.user_id:
            raise ForbiddenError("Only the document owner can manage recipients")
        return document

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    def add(
        self,
        document_id: str,
        recipients: Iterable[Union[RecipientSpec, dict]],
        caller: Identity,
    ) -> list[DocumentRecipient]:
        """Add recipients to a document and invite them.

        Nothing is written unless every recipient is valid.

        Raises:
            NotFoundError: Document missing.
            ForbiddenError: Caller is not the owner.
            ConflictError: Document completed or archived.
            ValidationError: Bad email, blank name, duplicate email, or an
                unresolvable ``witness_for``.
        """
        specs = [
            s if isinstance(s, RecipientSpec) else RecipientSpec.model_validate(s)
            for s in recipients
        ]
        if not specs:
            raise ValidationError("At least one recipient is required")

        with self._store.document_lock(document_id):
            document = self._load_owned(document_id, caller)
            if document.status in (DocumentStatus.COMPLETED, DocumentStatus.ARCHIVED):
                raise ConflictError(f"Document is {document.status.value}")

            existing = self._store.list_recipients(document_id)
            by_email = {r.email: r for r in existing}
            by_id = {r.recipient_id: r for r in existing}

            added: list[DocumentRecipient] = []
            for i, spec in enumerate(specs):
                email = normalize_email(spec.email)
                name = spec.name.strip()
                if not name:
                    raise ValidationError(f"Recipient {email} has no name")
                if email in by_email:
                    raise ValidationError(f"Recipient {email} is already on this document")
                recipient = DocumentRecipient(
                    document_id=document_id,
                    email=email,
                    name=name,
                    role=spec.role,
                    order=spec.order if spec.order is not None else len(existing) + i,
                    message=spec.message,
                )
                by_email[email] = recipient
                by_id[recipient.recipient_id] = recipient
                added.append(recipient)

            for spec, recipient in zip(specs, added):
                if not spec.witness_for:
                    continue
                if recipient.role != RecipientRole.WITNESS:
                    raise ValidationError(
                        f"Only witnesses can witness another recipient ({recipient.email})"
                    )
                target = by_id.get(spec.witness_for) or by_email.get(
                    spec.witness_for.strip().lower()
                )
                if target is None or target.recipient_id == recipient.recipient_id:
                    raise ValidationError(
                        f"Unknown witnessed recipient: {spec.witness_for}"
                    )
                recipient.witness_for = target.recipient_id

            for recipient in added:
                self._store.save_recipient(recipient)

        for recipient in added:
            self._notifications.recipient_invite(
                to=recipient.email,
                recipient_name=recipient.name,
                role=recipient.role.value,
                document_title=document.title,
                link=self._notifications.recipient_url(document_id, recipient.email),
                message=recipient.message,
            )

        self._audit.record(
            AuditAction.DOCUMENT_RECIPIENTS_ADDED,
            document_id=document_id,
            user_id=caller.user_id,
            details={
                "recipients": [
                    {"email": r.email, "role": r.role.value} for r in added
                ]
            },
        )
        logger.info("Added %d recipient(s) to %s", len(added), document_id[:8])
        return added

    def list(self, document_id: str, caller: Identity) -> list[DocumentRecipient]:
        self._load_owned(document_id, caller)
        return self._store.list_recipients(document_id)

    def delete(self, recipient_id: str, caller: Identity) -> None:
        try:
            recipient = self._store.load_recipient(recipient_id)
        except FileNotFoundError:
            raise NotFoundError("Recipient not found") from None
        with self._store.document_lock(recipient.document_id):
            self._load_owned(recipient.document_id, caller)
            self._store.delete_recipient(recipient)
        self._audit.record(
            AuditAction.RECIPIENT_REMOVED,
            document_id=recipient.document_id,
            user_id=caller.user_id,
            details={"email": recipient.email},
        )

    # ------------------------------------------------------------------
    # Recipient operations
    # ------------------------------------------------------------------

    def resolve(self, document_id: str, email: str) -> RecipientView:
        """Open a document as one of its recipients.

        Raises:
            ForbiddenError: Unknown document or email.
        """
        grant = self._access.resolve(document_id, email)
        self._access.authorize_action(grant, SigningAction.VIEW)
        document = self._store.load_document(document_id)
        self._audit.record(
            AuditAction.DOCUMENT_VIEWED,
            document_id=document_id,
            details={"email": grant.email},
        )
        return RecipientView(
            document=document,
            recipient=grant.recipient,
            fields=self._store.list_fields(document_id),
            signatures=self._store.list_signatures(document_id),
        )

    def sign(
        self,
        document_id: str,
        email: str,
        payload: SignaturePayload,
    ) -> RecipientSignResult:
        """Sign a document as a pending recipient.

        Raises:
            ForbiddenError: Unknown document or email, or a witness whose
                principal has not signed.
            ConflictError: Recipient already signed or declined.
            ValidationError: Empty signature or page out of range.
        """
        if not payload.signature_data:
            raise ValidationError("Signature data is required")

        with self._store.document_lock(document_id):
            grant = self._access.resolve(document_id, email)
            self._access.authorize_action(grant, SigningAction.SIGN)
            document = self._store.load_document(document_id)
            position = payload.position
            if document.page_count and position.page > document.page_count:
                raise ValidationError(
                    f"Page {position.page} is outside the document (1-{document.page_count})"
                )

            recipient = grant.recipient
            signature = self._ledger.record(grant, payload)
            self._upsert_display_field(document, recipient, signature)

            now = datetime.now(timezone.utc)
            recipient.status = RecipientStatus.SIGNED
            recipient.signed_at = now
            recipient.ip_address = payload.ip_address
            recipient.user_agent = payload.user_agent
            self._store.save_recipient(recipient)

            if document.status not in (DocumentStatus.COMPLETED, DocumentStatus.ARCHIVED):
                everyone = self._store.list_recipients(document_id)
                signers = [r for r in everyone if r.role == RecipientRole.SIGNER]
                if signers and all(r.status == RecipientStatus.SIGNED for r in signers):
                    document.status = DocumentStatus.COMPLETED
                    document.completed_at = now
                elif any(r.status == RecipientStatus.SIGNED for r in everyone):
                    document.status = DocumentStatus.PARTIALLY_SIGNED
                self._store.save_document(document)

        self._audit.record(
            AuditAction.SIGNATURE_SIGNED,
            document_id=document_id,
            user_id=signature.signer_id,
            details={
                "email": recipient.email,
                "role": recipient.role.value,
                "document_status": document.status.value,
            },
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
        )
        logger.info(
            "Recipient %s signed %s as %s", recipient.email, document_id[:8], recipient.role.value
        )
        return RecipientSignResult(document=document, recipient=recipient, signature=signature)

    def _upsert_display_field(
        self,
        document: Document,
        recipient: DocumentRecipient,
        signature: Signature,
    ) -> SignatureField:
        """Keep one filled field showing this recipient's signature per page."""
        field_type = (
            FieldType.WITNESS if recipient.role == RecipientRole.WITNESS else FieldType.SIGNATURE
        )
        existing = next(
            (
                f
                for f in self._store.list_fields(document.document_id)
                if f.type == field_type
                and f.assigned_to == recipient.email
                and f.page == signature.page
            ),
            None,
        )
        now = datetime.now(timezone.utc)
        display = existing or SignatureField(
            document_id=document.document_id,
            page=signature.page,
            x=signature.x,
            y=signature.y,
            type=field_type,
            label=recipient.name,
            assigned_to=recipient.email,
            required=False,
        )
        display.x, display.y = signature.x, signature.y
        display.width, display.height = signature.width, signature.height
        display.value = signature.signature_data
        display.status = FieldStatus.COMPLETED
        display.filled_by = signature.signer_id
        display.updated_at = now
        self._store.save_field(display)
        return display

    def decline(self, document_id: str, email: str, reason: str) -> DocumentRecipient:
        """Refuse to sign; the owner is told why."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to decline")

        with self._store.document_lock(document_id):
            grant = self._access.resolve(document_id, email)
            self._access.authorize_action(grant, SigningAction.DECLINE)
            recipient = grant.recipient
            recipient.status = RecipientStatus.DECLINED
            recipient.decline_reason = reason.strip()
            self._store.save_recipient(recipient)
            document = self._store.load_document(document_id)

        owner = self._identities.get(document.owner_id)
        if owner is not None:
            self._notifications.rejection(
                owner_email=owner.email,
                document_title=document.title,
                signer_name=recipient.name,
                signer_email=recipient.email,
                reason=recipient.decline_reason,
            )
        self._audit.record(
            AuditAction.SIGNATURE_REJECTED,
            document_id=document_id,
            details={"email": recipient.email, "reason": recipient.decline_reason},
        )
        return recipient

    def download(self, document_id: str, email: str) -> bytes:
        """The signed artifact if one exists, else the original PDF."""
        grant = self._access.resolve(document_id, email)
        self._access.authorize_action(grant, SigningAction.DOWNLOAD)
        document = self._store.load_document(document_id)
        try:
            if document.signed_artifact:
                data = self._store.read_artifact(document.signed_artifact)
            else:
                data = self._store.read_original_bytes(document)
        except FileNotFoundError:
            raise NotFoundError("Document file not found") from None
        self._audit.record(
            AuditAction.DOCUMENT_DOWNLOADED,
            document_id=document_id,
            details={"email": grant.email, "signed": bool(document.signed_artifact)},
        )
        return data
