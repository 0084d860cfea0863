"""Core data models for SignFlow field-based document signing.

A Document is the root: it owns the signature fields placed on its pages,
the durable Signature records produced when parties sign, the signing
requests that coordinate token-addressed signers, and the recipients of
the direct document-signing flow.

Field coordinates are stored in *document space*: PDF points measured
from the top-left corner of the page at scale 1.0. The same field
renders identically at any display zoom. See ``signflow.geometry``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FieldType(str, Enum):
    """Kinds of fields that can be placed on a page."""

    SIGNATURE = "signature"
    INITIALS = "initials"
    NAME = "name"
    DATE = "date"
    TEXT = "text"
    INPUT = "input"
    CHECKBOX = "checkbox"
    WITNESS = "witness"
    STAMP = "stamp"


class FieldStatus(str, Enum):
    """Fill state of a single field."""

    PENDING = "pending"
    COMPLETED = "completed"
    OPTIONAL = "optional"


class DocumentStatus(str, Enum):
    """Lifecycle states for a document."""

    DRAFT = "draft"
    PENDING = "pending"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class SignatureType(str, Enum):
    """How a durable signature was produced."""

    DRAWN = "drawn"
    TYPED = "typed"
    UPLOADED = "uploaded"


class SignatureStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


class SigningOrder(str, Enum):
    """Whether signers act in a fixed sequence or in any order."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SigningRequestStatus(str, Enum):
    """Lifecycle states for a signing request.

    ``completed``, ``cancelled`` and ``expired`` are terminal.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SigningRequestStatus.COMPLETED,
            SigningRequestStatus.EXPIRED,
            SigningRequestStatus.CANCELLED,
        )


class RequestRole(str, Enum):
    """Role of a signer inside a signing request."""

    SIGNER = "signer"
    VIEWER = "viewer"
    APPROVER = "approver"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    REJECTED = "rejected"


class RecipientRole(str, Enum):
    """Role of a recipient in the direct document-signing flow."""

    SIGNER = "signer"
    WITNESS = "witness"
    REVIEWER = "reviewer"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"
    COMPLETED = "completed"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    DOCUMENT_CREATED = "document_created"
    DOCUMENT_VIEWED = "document_viewed"
    DOCUMENT_DOWNLOADED = "document_downloaded"
    DOCUMENT_RECIPIENTS_ADDED = "document_recipients_added"
    RECIPIENT_REMOVED = "recipient_removed"
    SIGNATURE_ADDED = "signature_added"
    SIGNATURE_UPDATED = "signature_updated"
    SIGNATURE_REMOVED = "signature_removed"
    SIGNATURE_SIGNED = "signature_signed"
    SIGNATURE_REJECTED = "signature_rejected"
    SIGNING_REQUEST_CREATED = "signing_request_created"
    SIGNING_REQUEST_SENT = "signing_request_sent"
    SIGNING_REQUEST_VIEWED = "signing_request_viewed"
    SIGNING_REQUEST_CANCELLED = "signing_request_cancelled"
    SIGNING_REQUEST_COMPLETED = "signing_request_completed"
    DOCUMENT_FINALIZED = "document_finalized"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class Identity(BaseModel):
    """A durable user or external-signer identity.

    External signers never register an account; the identity directory
    creates an *ephemeral* identity for them the first time their email is
    seen so that their signatures have a stable owner.
    """

    user_id: str = Field(default_factory=lambda: str(uuid4()))
    email: str
    name: str = ""
    ephemeral: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """An uploaded PDF in the signing workflow.

    Attributes:
        document_id: Unique identifier.
        title: Human-readable title.
        owner_id: Identity that uploaded the document and authors its fields.
        file_name: Original file name of the upload.
        page_count: Number of pages in the original PDF.
        status: Current lifecycle status.
        pdf_hash: SHA-256 of the original PDF bytes.
        signed_artifact: Reference to the finalized PDF, once produced.
        signed_hash: SHA-256 of the finalized PDF.
        created_at: Creation timestamp.
        completed_at: When the document reached ``completed``.
    """

    document_id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    owner_id: str
    file_name: str = "document.pdf"
    page_count: int = 0
    status: DocumentStatus = DocumentStatus.DRAFT
    pdf_hash: Optional[str] = None
    signed_artifact: Optional[str] = None
    signed_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Fields and signatures
# ---------------------------------------------------------------------------

class SignatureField(BaseModel):
    """A positioned placeholder on one page of a document.

    Attributes:
        field_id: Unique identifier.
        document_id: Owning document.
        page: 1-based page number.
        x: Left edge in document space.
        y: Top edge in document space (grows downward).
        width: Field width in document space.
        height: Field height in document space.
        type: Field type, selects the rendering policy at finalize time.
        label: Display label.
        placeholder: Hint shown while the field is empty.
        value: Filled value; None until filled.
        status: Fill state.
        required: Whether finalize must see a value here.
        assigned_to: Email or identity id of the party expected to fill it.
        linked_field_id: Group id shared by copies of this field on other pages.
        filled_by: Identity id of whoever filled the field last.
    """

    field_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    page: int = Field(1, ge=1)
    x: float
    y: float
    width: float = 150.0
    height: float = 50.0
    type: FieldType
    label: Optional[str] = None
    placeholder: Optional[str] = None
    value: Optional[str] = None
    status: FieldStatus = FieldStatus.PENDING
    required: bool = True
    assigned_to: Optional[str] = None
    linked_field_id: Optional[str] = None
    filled_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_filled(self) -> bool:
        return self.value is not None and self.value != ""


class Signature(BaseModel):
    """Append-style record of what a party actually signed.

    Unlike ``SignatureField.value``, which is mutable, a Signature captures
    the payload, position and signer at a point in time.
    """

    signature_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    signer_id: str
    field_id: Optional[str] = None
    signing_request_id: Optional[str] = None
    recipient_id: Optional[str] = None
    page: int = Field(1, ge=1)
    x: float = 0.0
    y: float = 0.0
    width: float = 150.0
    height: float = 50.0
    type: SignatureType = SignatureType.DRAWN
    signature_data: str
    status: SignatureStatus = SignatureStatus.SIGNED
    signed_at: Optional[datetime] = None
    reject_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class SignaturePosition(BaseModel):
    """Where a signer placed their signature, in document space."""

    page: int = Field(1, ge=1)
    x: float = 0.0
    y: float = 0.0
    width: float = 150.0
    height: float = 50.0


# ---------------------------------------------------------------------------
# Signing request
# ---------------------------------------------------------------------------

class SignerInfo(BaseModel):
    """One party of a signing request."""

    email: str
    name: str
    role: RequestRole = RequestRole.SIGNER
    order: int = 0
    status: SignerStatus = SignerStatus.PENDING
    signed_at: Optional[datetime] = None
    reject_reason: Optional[str] = None


class SequentialTurn(BaseModel):
    """Signers act one at a time; ``index`` points at whose turn it is."""

    mode: Literal["sequential"] = "sequential"
    index: int = 0


class ParallelTurn(BaseModel):
    """Any pending signer may act."""

    mode: Literal["parallel"] = "parallel"


SigningTurn = Annotated[
    Union[SequentialTurn, ParallelTurn], Field(discriminator="mode")
]


class SigningRequest(BaseModel):
    """A token-addressable round of multi-party signing over one document.

    Attributes:
        request_id: Unique identifier.
        document_id: Document being signed.
        owner_id: Identity that created the request.
        token: Unguessable bearer token shared with the signers.
        signers: Ordered signer list; order is fixed at creation.
        turn: Sequential (with the current index) or parallel turn state.
        status: Request lifecycle status.
        message: Optional note included in notifications.
        subject: Optional notification subject.
        expires_at: Deadline, checked lazily on access.
        completed_at: When every signer had signed.
        reminder_sent_at: Last time pending signers were re-notified.
    """

    request_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    owner_id: str
    token: str
    signers: list[SignerInfo] = Field(default_factory=list)
    turn: SigningTurn = Field(default_factory=ParallelTurn)
    status: SigningRequestStatus = SigningRequestStatus.PENDING
    message: Optional[str] = None
    subject: Optional[str] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def signing_order(self) -> SigningOrder:
        return SigningOrder(self.turn.mode)

    @property
    def current_signer_index(self) -> Optional[int]:
        """Index of the signer whose turn it is; None in parallel mode."""
        if isinstance(self.turn, SequentialTurn):
            return self.turn.index
        return None

    @property
    def all_signed(self) -> bool:
        return bool(self.signers) and all(
            s.status == SignerStatus.SIGNED for s in self.signers
        )

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) > self.expires_at

    def find_signer(self, email: str) -> Optional[int]:
        """Index of the signer with this email (case-insensitive), or None."""
        wanted = email.strip().lower()
        for i, s in enumerate(self.signers):
            if s.email.lower() == wanted:
                return i
        return None


def is_signers_turn(request: SigningRequest, index: int) -> bool:
    """Whether the signer at ``index`` may act on ``request`` right now."""
    if not 0 <= index < len(request.signers):
        return False
    if isinstance(request.turn, SequentialTurn):
        return index == request.turn.index
    return True


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

class DocumentRecipient(BaseModel):
    """A party granted access to a document by email, outside any request."""

    recipient_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    email: str
    name: str
    role: RecipientRole = RecipientRole.SIGNER
    status: RecipientStatus = RecipientStatus.PENDING
    order: int = 0
    witness_for: Optional[str] = None
    message: str = ""
    signed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Immutable audit log entry.

    Attributes:
        entry_id: Unique identifier.
        action: What happened.
        document_id: Related document, if any.
        user_id: Acting identity, if known.
        signing_request_id: Related signing request, if any.
        timestamp: When it happened.
        details: Free-form structured details.
        ip_address: Caller IP, if known.
        user_agent: Caller client, if known.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    action: AuditAction
    document_id: Optional[str] = None
    user_id: Optional[str] = None
    signing_request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
