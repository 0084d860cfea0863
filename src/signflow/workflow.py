"""Signing workflow coordinator.

Owns the SigningRequest state machine::

    pending -> in_progress -> completed
    pending | in_progress -> cancelled
    pending | in_progress -> expired     (checked lazily on access)

Terminal states are never left. Signer updates of one request are
serialized by the store's request lock, so when several signers finish at
the same moment exactly one of them observes the flip to ``completed``.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel

from .access import SignatureLedger, SignaturePayload, SigningAction, TokenAccess
from .audit import AuditTrail
from .config import Settings
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SignFlowError,
    ValidationError,
)
from .identity import IdentityDirectory, normalize_email
from .models import (
    AuditAction,
    Document,
    DocumentStatus,
    Identity,
    ParallelTurn,
    RequestRole,
    SequentialTurn,
    Signature,
    SignaturePosition,
    SignatureType,
    SignerInfo,
    SignerStatus,
    SigningOrder,
    SigningRequest,
    SigningRequestStatus,
)
from .notifications import NotificationService
from .store import DocumentStore

logger = logging.getLogger("signflow.workflow")

MAX_MESSAGE_LENGTH = 1000
MAX_SUBJECT_LENGTH = 200
TOKEN_BYTES = 32

Finalizer = Callable[[str, Identity], Any]


class SignerSpec(BaseModel):
    """One signer as given when creating a request."""

    email: str
    name: str
    role: RequestRole = RequestRole.SIGNER


@dataclass
class TokenView:
    """What a token holder sees of a signing request."""

    request: SigningRequest
    document: Document
    current_signer: Optional[SignerInfo]
    signatures: list[Signature] = field(default_factory=list)


@dataclass
class SignOutcome:
    """Result of one signer acting on a request.

    Attributes:
        request: The request after the update.
        completed: True only for the call that completed the request.
        signature: The signer's live signature (None on rejection).
        rejected: True when the signer refused to sign.
    """

    request: SigningRequest
    completed: bool
    signature: Optional[Signature] = None
    rejected: bool = False


class SigningCoordinator:
    """Creates, drives and terminates signing requests.

    Args:
        store: Persistent store.
        identities: Identity collaborator.
        audit: Audit trail.
        notifications: Outbound notifications.
        ledger: Durable signature write path.
        tokens: Token access adapter.
        settings: Runtime settings.
        finalizer: Called as ``finalizer(document_id, owner)`` when a
            request completes and ``auto_finalize`` is on.
    """

    def __init__(
        self,
        store: DocumentStore,
        identities: IdentityDirectory,
        audit: AuditTrail,
        notifications: NotificationService,
        ledger: SignatureLedger,
        tokens: TokenAccess,
        settings: Optional[Settings] = None,
        finalizer: Optional[Finalizer] = None,
    ) -> None:
        self._store = store
        self._identities = identities
        self._audit = audit
        self._notifications = notifications
        self._ledger = ledger
        self._tokens = tokens
        self._settings = settings or Settings()
        self._finalizer = finalizer

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    def _owner_name(self, owner: Optional[Identity]) -> str:
        if owner is None:
            return "The document owner"
        return owner.name or owner.email

    def create(
        self,
        document_id: str,
        signers: Iterable[Union[SignerSpec, dict]],
        caller: Identity,
        signing_order: Union[SigningOrder, str] = SigningOrder.PARALLEL,
        message: Optional[str] = None,
        subject: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> SigningRequest:
        """Start a signing round over a document.

        Args:
            document_id: Document to sign.
            signers: Signers in the order they must sign (sequential mode).
            caller: Acting identity; must own the document.
            signing_order: ``sequential`` or ``parallel``.
            message: Note included in every notification.
            subject: Notification subject override.
            expires_in_days: Lifetime of the request; None for no deadline.

        Returns:
            The new request (status ``pending``).

        Raises:
            NotFoundError: Document missing.
            ForbiddenError: Caller is not the owner.
            ConflictError: Document completed or archived.
            ValidationError: Malformed signer list, message or subject.
        """
        try:
            document = self._store.load_document(document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None
        if document.owner_id != caller.user_id:
            raise ForbiddenError("Only the document owner can request signatures")
        if document.status in (DocumentStatus.COMPLETED, DocumentStatus.ARCHIVED):
            raise ConflictError(f"Document is {document.status.value}")

        order = SigningOrder(signing_order)
        specs = [s if isinstance(s, SignerSpec) else SignerSpec.model_validate(s) for s in signers]
        if not specs:
            raise ValidationError("At least one signer is required")

        infos: list[SignerInfo] = []
        seen: set[str] = set()
        for i, spec in enumerate(specs):
            email = normalize_email(spec.email)
            name = spec.name.strip()
            if not name:
                raise ValidationError(f"Signer {i + 1} has no name")
            if email in seen:
                raise ValidationError(f"Duplicate signer email: {email}")
            seen.add(email)
            infos.append(
                SignerInfo(
                    email=email,
                    name=name,
                    role=spec.role,
                    order=i if order == SigningOrder.SEQUENTIAL else 0,
                )
            )

        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
        if subject is not None and len(subject) > MAX_SUBJECT_LENGTH:
            raise ValidationError(f"Subject exceeds {MAX_SUBJECT_LENGTH} characters")
        if expires_in_days is not None and expires_in_days <= 0:
            raise ValidationError("expires_in_days must be positive")

        now = datetime.now(timezone.utc)
        request = SigningRequest(
            document_id=document_id,
            owner_id=caller.user_id,
            token=secrets.token_urlsafe(TOKEN_BYTES),
            signers=infos,
            turn=SequentialTurn() if order == SigningOrder.SEQUENTIAL else ParallelTurn(),
            message=message,
            subject=subject,
            expires_at=(now + timedelta(days=expires_in_days)) if expires_in_days else None,
            created_at=now,
        )

        with self._store.document_lock(document_id):
            self._store.save_request(request)
            document = self._store.load_document(document_id)
            if document.status == DocumentStatus.DRAFT:
                document.status = DocumentStatus.PENDING
                self._store.save_document(document)

        notified = 0
        for signer in request.signers:
            if self._notifications.signing_request(
                to=signer.email,
                signer_name=signer.name,
                document_title=document.title,
                owner_name=self._owner_name(caller),
                signing_url=self._notifications.signing_url(request.token, signer.email),
                message=message,
                subject=subject,
            ):
                notified += 1

        self._audit.record(
            AuditAction.SIGNING_REQUEST_CREATED,
            document_id=document_id,
            user_id=caller.user_id,
            signing_request_id=request.request_id,
            details={
                "signers_count": len(infos),
                "signing_order": order.value,
                "notified": notified,
            },
        )
        logger.info(
            "Created %s signing request %s for %s (%d signer(s), %d notified)",
            order.value,
            request.request_id[:8],
            document_id[:8],
            len(infos),
            notified,
        )
        return request

    def list(
        self,
        caller: Identity,
        status: Optional[SigningRequestStatus] = None,
        document_id: Optional[str] = None,
    ) -> list[SigningRequest]:
        """Requests owned by the caller, newest first."""
        requests = [
            self._tokens.expire_if_due(r)
            for r in self._store.list_requests(owner_id=caller.user_id, document_id=document_id)
        ]
        if status is not None:
            requests = [r for r in requests if r.status == status]
        return requests

    def get(self, request_id: str, caller: Identity) -> SigningRequest:
        try:
            request = self._store.load_request(request_id)
        except FileNotFoundError:
            raise NotFoundError("Signing request not found") from None
        if request.owner_id != caller.user_id:
            raise ForbiddenError("Only the request owner can manage it")
        return self._tokens.expire_if_due(request)

    def resend(self, request_id: str, caller: Identity) -> int:
        """Remind signers who have not acted yet.

        Returns:
            Number of reminders delivered.
        """
        with self._store.request_lock(request_id):
            request = self.get(request_id, caller)
            if request.status.is_terminal:
                raise ConflictError(f"Signing request is {request.status.value}")
            try:
                title = self._store.load_document(request.document_id).title
            except FileNotFoundError:
                raise NotFoundError("Document not found") from None

            pending = [s for s in request.signers if s.status == SignerStatus.PENDING]
            delivered = 0
            for signer in pending:
                if self._notifications.signing_request(
                    to=signer.email,
                    signer_name=signer.name,
                    document_title=title,
                    owner_name=self._owner_name(caller),
                    signing_url=self._notifications.signing_url(request.token, signer.email),
                    message=request.message,
                    subject=request.subject,
                ):
                    delivered += 1

            request.reminder_sent_at = datetime.now(timezone.utc)
            self._store.save_request(request)

        self._audit.record(
            AuditAction.SIGNING_REQUEST_SENT,
            document_id=request.document_id,
            user_id=caller.user_id,
            signing_request_id=request_id,
            details={"reminded": len(pending), "delivered": delivered},
        )
        return delivered

    def cancel(self, request_id: str, caller: Identity) -> SigningRequest:
        """Cancel a non-terminal request. Cancellation is final."""
        with self._store.request_lock(request_id):
            request = self.get(request_id, caller)
            if request.status.is_terminal:
                raise ConflictError(f"Signing request is already {request.status.value}")
            request.status = SigningRequestStatus.CANCELLED
            self._store.save_request(request)

        self._audit.record(
            AuditAction.SIGNING_REQUEST_CANCELLED,
            document_id=request.document_id,
            user_id=caller.user_id,
            signing_request_id=request_id,
        )
        logger.info("Cancelled signing request %s", request_id[:8])
        return request

    # ------------------------------------------------------------------
    # Token holder operations
    # ------------------------------------------------------------------

    def resolve_by_token(self, token: str, email: Optional[str] = None) -> TokenView:
        """Open a signing request through its token.

        Raises:
            NotFoundError: Unknown token.
            GoneError: Expired.
            ConflictError: Completed or cancelled.
            ForbiddenError: ``email`` is not a signer, or not the signer
                whose turn it is in sequential mode.
        """
        if email:
            grant = self._tokens.resolve(token, email)
            self._tokens.authorize_action(grant, SigningAction.VIEW)
            request, current = grant.request, grant.signer
        else:
            request = self._tokens.load(token)
            index = request.current_signer_index
            current = (
                request.signers[index]
                if index is not None and index < len(request.signers)
                else None
            )

        try:
            document = self._store.load_document(request.document_id)
        except FileNotFoundError:
            raise NotFoundError("Document not found") from None
        signatures = [
            s
            for s in self._store.list_signatures(request.document_id)
            if s.signing_request_id == request.request_id
        ]

        self._audit.record(
            AuditAction.SIGNING_REQUEST_VIEWED,
            document_id=request.document_id,
            signing_request_id=request.request_id,
            details={"email": email} if email else {},
        )
        return TokenView(
            request=request,
            document=document,
            current_signer=current,
            signatures=signatures,
        )

    def sign_by_token(
        self,
        token: str,
        email: str,
        signature_data: Optional[str] = None,
        position: Optional[SignaturePosition] = None,
        signature_type: Union[SignatureType, str] = SignatureType.DRAWN,
        reject_reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignOutcome:
        """Sign, or refuse to sign, as one signer of a request.

        Passing ``reject_reason`` takes the rejection branch: the signer is
        marked rejected, the owner is told, and the request stalls in
        ``in_progress`` until the owner cancels it.

        Returns:
            SignOutcome; ``completed`` is True for exactly one call per
            request.

        Raises:
            NotFoundError: Unknown token.
            GoneError: Expired.
            ConflictError: Request terminal, or this signer already acted.
            ForbiddenError: Not a signer, or not this signer's turn.
            ValidationError: Missing signature data or empty reason.
        """
        rejecting = reject_reason is not None
        if rejecting and not reject_reason.strip():
            raise ValidationError("A reason is required to reject")
        if not rejecting and not signature_data:
            raise ValidationError("Signature data is required")

        request_id = self._tokens.load(token).request_id
        signature: Optional[Signature] = None
        completed = False

        with self._store.request_lock(request_id):
            grant = self._tokens.resolve(token, email)
            self._tokens.authorize_action(
                grant, SigningAction.DECLINE if rejecting else SigningAction.SIGN
            )
            request = grant.request
            signer = grant.signer
            now = datetime.now(timezone.utc)

            if rejecting:
                signer.status = SignerStatus.REJECTED
                signer.reject_reason = reject_reason
                request.status = SigningRequestStatus.IN_PROGRESS
                self._store.save_request(request)
            else:
                signature = self._ledger.record(
                    grant,
                    SignaturePayload(
                        signature_data=signature_data,
                        type=SignatureType(signature_type),
                        position=position or SignaturePosition(),
                        ip_address=ip_address,
                        user_agent=user_agent,
                    ),
                )
                signer.status = SignerStatus.SIGNED
                signer.signed_at = now
                if isinstance(request.turn, SequentialTurn):
                    request.turn.index += 1
                if request.all_signed:
                    request.status = SigningRequestStatus.COMPLETED
                    request.completed_at = now
                    completed = True
                else:
                    request.status = SigningRequestStatus.IN_PROGRESS
                self._store.save_request(request)
                self._mark_partially_signed(request.document_id)

        if rejecting:
            self._on_rejected(request, signer, ip_address, user_agent)
            return SignOutcome(request=request, completed=False, rejected=True)

        self._audit.record(
            AuditAction.SIGNATURE_SIGNED,
            document_id=request.document_id,
            user_id=signature.signer_id,
            signing_request_id=request.request_id,
            details={"email": signer.email, "page": signature.page},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "%s signed request %s (%d/%d)",
            signer.email,
            request.request_id[:8],
            sum(1 for s in request.signers if s.status == SignerStatus.SIGNED),
            len(request.signers),
        )
        if completed:
            self._on_completed(request)
        return SignOutcome(request=request, completed=completed, signature=signature)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _mark_partially_signed(self, document_id: str) -> None:
        with self._store.document_lock(document_id):
            try:
                document = self._store.load_document(document_id)
            except FileNotFoundError:
                logger.warning("Document %s vanished during signing", document_id[:8])
                return
            if document.status in (DocumentStatus.DRAFT, DocumentStatus.PENDING):
                document.status = DocumentStatus.PARTIALLY_SIGNED
                self._store.save_document(document)

    def _on_rejected(
        self,
        request: SigningRequest,
        signer: SignerInfo,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        owner = self._identities.get(request.owner_id)
        try:
            title = self._store.load_document(request.document_id).title
        except FileNotFoundError:
            title = request.document_id
        if owner is not None:
            self._notifications.rejection(
                owner_email=owner.email,
                document_title=title,
                signer_name=signer.name,
                signer_email=signer.email,
                reason=signer.reject_reason or "",
            )
        self._audit.record(
            AuditAction.SIGNATURE_REJECTED,
            document_id=request.document_id,
            signing_request_id=request.request_id,
            details={"email": signer.email, "reason": signer.reject_reason},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("%s rejected request %s", signer.email, request.request_id[:8])

    def _on_completed(self, request: SigningRequest) -> None:
        owner = self._identities.get(request.owner_id)
        try:
            title = self._store.load_document(request.document_id).title
        except FileNotFoundError:
            title = request.document_id

        self._audit.record(
            AuditAction.SIGNING_REQUEST_COMPLETED,
            document_id=request.document_id,
            user_id=request.owner_id,
            signing_request_id=request.request_id,
            details={"signers": [s.email for s in request.signers]},
        )
        if owner is not None:
            self._notifications.completion(
                to=owner.email,
                document_title=title,
                signer_names=[s.name for s in request.signers],
            )

        if not (self._settings.auto_finalize and self._finalizer and owner):
            return
        try:
            self._finalizer(request.document_id, owner)
        except SignFlowError as exc:
            logger.warning(
                "Automatic finalization of %s skipped: %s",
                request.document_id[:8],
                exc.message,
            )
        except Exception:
            # the signature is already stored; the owner can finalize by hand
            logger.exception("Automatic finalization of %s failed", request.document_id[:8])
