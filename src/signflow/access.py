"""Access gateway for parties without an account.

Two bearer-credential schemes reach the same signing action:

* a signing-request **token** plus the signer's email;
* a **document id** plus an email listed among the document's recipients.

Both resolve the caller to a ``SignerGrant`` and check it against one
``SigningAction``. Whichever scheme was used, durable signatures are
written through ``SignatureLedger`` so there is one live Signature per
signer per document.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConflictError, ForbiddenError, GoneError, NotFoundError
from .identity import IdentityDirectory
from .models import (
    DocumentRecipient,
    DocumentStatus,
    RecipientRole,
    RecipientStatus,
    Signature,
    SignaturePosition,
    SignatureStatus,
    SignatureType,
    SignerInfo,
    SignerStatus,
    SigningRequest,
    SigningRequestStatus,
    is_signers_turn,
)
from .store import DocumentStore

logger = logging.getLogger("signflow.access")


class SigningAction(str, Enum):
    VIEW = "view"
    SIGN = "sign"
    DECLINE = "decline"
    DOWNLOAD = "download"


@dataclass
class SignerGrant:
    """A caller resolved to one signer of one document.

    Exactly one of ``request`` (token scheme) or ``recipient`` (recipient
    scheme) is set.
    """

    scheme: str
    document_id: str
    email: str
    name: str
    request: Optional[SigningRequest] = None
    signer_index: Optional[int] = None
    recipient: Optional[DocumentRecipient] = None

    @property
    def signer(self) -> Optional[SignerInfo]:
        if self.request is None or self.signer_index is None:
            return None
        return self.request.signers[self.signer_index]


class SignaturePayload(BaseModel):
    """What a signer submits when signing."""

    signature_data: str
    type: SignatureType = SignatureType.DRAWN
    position: SignaturePosition = Field(default_factory=SignaturePosition)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AccessAdapter:
    """Resolve a bearer credential to a grant and check actions against it."""

    scheme = ""

    def resolve(self, key: str, email: str) -> SignerGrant:
        raise NotImplementedError

    def authorize_action(self, grant: SignerGrant, action: SigningAction) -> None:
        raise NotImplementedError


class TokenAccess(AccessAdapter):
    """Token + email scheme over signing requests.

    Args:
        store: Store holding signing requests.
    """

    scheme = "token"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def expire_if_due(self, request: SigningRequest) -> SigningRequest:
        """Flip a non-terminal request past its deadline to ``expired``."""
        if request.status.is_terminal or not request.is_past_expiry():
            return request
        with self._store.request_lock(request.request_id):
            current = self._store.load_request(request.request_id)
            if not current.status.is_terminal and current.is_past_expiry():
                current.status = SigningRequestStatus.EXPIRED
                self._store.save_request(current)
                logger.info("Signing request %s expired", current.request_id[:8])
        return current

    def check_live(self, request: SigningRequest) -> SigningRequest:
        """Raise unless the request can still be acted on.

        Expiry wins over every stored status, including ``completed``.

        Raises:
            GoneError: Expired, by status or by deadline.
            ConflictError: Completed or cancelled.
        """
        if request.status == SigningRequestStatus.EXPIRED or request.is_past_expiry():
            self.expire_if_due(request)
            raise GoneError("Signing request has expired")
        if request.status in (
            SigningRequestStatus.COMPLETED,
            SigningRequestStatus.CANCELLED,
        ):
            raise ConflictError(f"Signing request is {request.status.value}")
        return request

    def load(self, token: str) -> SigningRequest:
        """Look up a live request by token.

        Raises:
            NotFoundError: Unknown token.
            GoneError: Expired.
            ConflictError: Completed or cancelled.
        """
        try:
            request = self._store.find_request_by_token(token)
        except FileNotFoundError:
            raise NotFoundError("Signing request not found") from None
        return self.check_live(request)

    def resolve(self, key: str, email: str) -> SignerGrant:
        request = self.load(key)
        index = request.find_signer(email)
        if index is None:
            raise ForbiddenError("Email is not a signer of this request")
        signer = request.signers[index]
        return SignerGrant(
            scheme=self.scheme,
            document_id=request.document_id,
            email=signer.email,
            name=signer.name,
            request=request,
            signer_index=index,
        )

    def authorize_action(self, grant: SignerGrant, action: SigningAction) -> None:
        request, index, signer = grant.request, grant.signer_index, grant.signer
        if request is None or index is None or signer is None:
            raise ForbiddenError("Grant does not belong to a signing request")
        if action == SigningAction.DOWNLOAD:
            return
        if not is_signers_turn(request, index):
            raise ForbiddenError("It is not this signer's turn")
        if action in (SigningAction.SIGN, SigningAction.DECLINE):
            if signer.status != SignerStatus.PENDING:
                raise ConflictError(f"Signer has already {signer.status.value}")


class RecipientAccess(AccessAdapter):
    """Document id + email scheme over document recipients.

    A missing document and a missing recipient are indistinguishable to
    the caller: both are Forbidden.

    Args:
        store: Store holding documents and recipients.
    """

    scheme = "recipient"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def resolve(self, key: str, email: str) -> SignerGrant:
        denied = ForbiddenError("Not authorized to access this document")
        try:
            self._store.load_document(key)
        except FileNotFoundError:
            raise denied from None
        wanted = (email or "").strip().lower()
        for recipient in self._store.list_recipients(key):
            if recipient.email == wanted:
                return SignerGrant(
                    scheme=self.scheme,
                    document_id=key,
                    email=recipient.email,
                    name=recipient.name,
                    recipient=recipient,
                )
        raise denied

    def authorize_action(self, grant: SignerGrant, action: SigningAction) -> None:
        recipient = grant.recipient
        if recipient is None:
            raise ForbiddenError("Grant does not belong to a recipient")

        if action in (SigningAction.SIGN, SigningAction.DECLINE):
            if recipient.status != RecipientStatus.PENDING:
                raise ConflictError(f"Recipient has already {recipient.status.value}")
            try:
                document = self._store.load_document(grant.document_id)
            except FileNotFoundError:
                raise ForbiddenError("Not authorized to access this document") from None
            if document.status == DocumentStatus.ARCHIVED or (
                document.status == DocumentStatus.COMPLETED and document.signed_artifact
            ):
                raise ConflictError("Document has already been finalized")
            if (
                action == SigningAction.SIGN
                and recipient.role == RecipientRole.WITNESS
                and recipient.witness_for
            ):
                principal = next(
                    (
                        r
                        for r in self._store.list_recipients(recipient.document_id)
                        if r.recipient_id == recipient.witness_for
                    ),
                    None,
                )
                if principal is None or principal.status != RecipientStatus.SIGNED:
                    raise ForbiddenError("The witnessed party has not signed yet")
        elif action == SigningAction.DOWNLOAD:
            if recipient.status not in (RecipientStatus.SIGNED, RecipientStatus.COMPLETED):
                raise ConflictError("Document can be downloaded only after signing")


class SignatureLedger:
    """Single write path for durable signatures of either scheme.

    Args:
        store: Store holding signatures.
        identities: Identity collaborator for email-to-identity resolution.
    """

    def __init__(self, store: DocumentStore, identities: IdentityDirectory) -> None:
        self._store = store
        self._identities = identities

    def record(self, grant: SignerGrant, payload: SignaturePayload) -> Signature:
        """Create or replace the signer's live Signature on the document."""
        identity = self._identities.resolve(grant.email, grant.name)
        position = payload.position
        now = datetime.now(timezone.utc)

        signature = self._store.find_signature(grant.document_id, identity.user_id)
        if signature is None:
            signature = Signature(
                document_id=grant.document_id,
                signer_id=identity.user_id,
                signature_data=payload.signature_data,
            )
        signature.signing_request_id = (
            grant.request.request_id if grant.request is not None else None
        )
        signature.recipient_id = (
            grant.recipient.recipient_id if grant.recipient is not None else None
        )
        signature.page = position.page
        signature.x = position.x
        signature.y = position.y
        signature.width = position.width
        signature.height = position.height
        signature.type = payload.type
        signature.signature_data = payload.signature_data
        signature.status = SignatureStatus.SIGNED
        signature.signed_at = now
        signature.ip_address = payload.ip_address
        signature.user_agent = payload.user_agent
        self._store.save_signature(signature)

        logger.info(
            "Recorded %s signature of %s on %s",
            grant.scheme,
            grant.email,
            grant.document_id[:8],
        )
        return signature
