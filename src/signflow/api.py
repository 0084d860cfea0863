"""SignFlow REST API — FastAPI server for field-based document signing.

Owners identify themselves with an ``X-User-Email`` header. External
signers carry no header: they reach a signing request through its token,
or a document through its id plus their recipient email.

Handlers are plain ``def`` functions: the services block on file I/O and
per-document locks, so FastAPI runs them in its threadpool.
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from . import __version__
from .access import SignaturePayload
from .config import Settings
from .core import SignFlow
from .errors import SignFlowError, ValidationError
from .fields import FieldChanges, FieldSpec
from .models import (
    AuditEntry,
    Document,
    DocumentRecipient,
    DocumentStatus,
    Identity,
    Signature,
    SignatureField,
    SignaturePosition,
    SignatureType,
    SignerInfo,
    SigningOrder,
    SigningRequest,
    SigningRequestStatus,
)
from .notifications import Notifier
from .recipients import RecipientSpec
from .workflow import SignerSpec

logger = logging.getLogger("signflow.api")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class FillRequest(BaseModel):
    """Request body for filling a field."""

    value: str
    kind: Optional[str] = None
    signature_data: Optional[str] = None


class LinkRequest(BaseModel):
    """Request body for duplicating a field onto other pages."""

    pages: list[int]


class LinkResponse(BaseModel):
    source: SignatureField
    linked: list[SignatureField]


class FinalizeResponse(BaseModel):
    document: Document
    artifact_ref: str
    fields_embedded: int


class CreateSigningRequest(BaseModel):
    """Request body for starting a signing round."""

    document_id: str
    signers: list[SignerSpec]
    signing_order: SigningOrder = SigningOrder.PARALLEL
    message: Optional[str] = None
    subject: Optional[str] = None
    expires_in_days: Optional[int] = None


class TokenViewResponse(BaseModel):
    request: SigningRequest
    document: Document
    current_signer: Optional[SignerInfo] = None
    signatures: list[Signature] = []


class TokenSignRequest(BaseModel):
    """Request body for signing (or rejecting) through a token.

    Set ``reject_reason`` to refuse; otherwise ``signature_data`` is
    required.
    """

    email: str
    signature_data: Optional[str] = None
    signature_type: SignatureType = SignatureType.DRAWN
    position: Optional[SignaturePosition] = None
    reject_reason: Optional[str] = None


class SignResponse(BaseModel):
    completed: bool
    rejected: bool = False
    request: SigningRequest
    signature: Optional[Signature] = None


class RecipientViewResponse(BaseModel):
    document: Document
    recipient: DocumentRecipient
    fields: list[SignatureField] = []
    signatures: list[Signature] = []


class RecipientSignRequest(BaseModel):
    """Request body for a recipient signing a document."""

    email: str
    signature_data: str
    signature_type: SignatureType = SignatureType.DRAWN
    position: SignaturePosition = Field(default_factory=SignaturePosition)


class RecipientSignResponse(BaseModel):
    document: Document
    recipient: DocumentRecipient
    signature: Signature


class DeclineRequest(BaseModel):
    email: str
    reason: str


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _pdf_response(data: bytes, filename: str) -> Response:
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the SignFlow API around one ``SignFlow`` instance.

    Args:
        settings: Runtime settings; read from ``SIGNFLOW_*`` if omitted.
        notifier: Notification transport override (tests use LogNotifier).
    """
    flow = SignFlow(settings, notifier=notifier)

    app = FastAPI(
        title="SignFlow",
        description="Field-based multi-party document signing.",
        version=__version__,
    )
    app.state.flow = flow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SignFlowError)
    async def _signflow_error(request: Request, exc: SignFlowError) -> JSONResponse:
        body = {"detail": exc.message}
        if isinstance(exc, ValidationError) and exc.count is not None:
            body["count"] = exc.count
        return JSONResponse(status_code=exc.status_code, content=body)

    def current_user(
        x_user_email: Optional[str] = Header(None),
        x_user_name: Optional[str] = Header(None),
    ) -> Identity:
        if not x_user_email:
            raise HTTPException(status_code=401, detail="X-User-Email header required")
        return flow.identities.register(x_user_email, x_user_name or "")

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    @app.post("/api/documents", response_model=Document, status_code=201)
    def upload_document(
        file: UploadFile = File(...),
        title: Optional[str] = Form(None),
        caller: Identity = Depends(current_user),
    ) -> Document:
        """Upload a PDF; the document starts in DRAFT."""
        pdf_data = file.file.read()
        file_name = file.filename or "document.pdf"
        return flow.upload(pdf_data, title or file_name, caller, file_name=file_name)

    @app.get("/api/documents", response_model=list[Document])
    def list_documents(
        status: Optional[DocumentStatus] = Query(None, description="Filter by status"),
        caller: Identity = Depends(current_user),
    ) -> list[Document]:
        return flow.list_documents(caller, status=status)

    @app.get("/api/documents/{document_id}", response_model=Document)
    def get_document(document_id: str, caller: Identity = Depends(current_user)) -> Document:
        return flow.get_document(document_id, caller)

    @app.delete("/api/documents/{document_id}", status_code=204)
    def delete_document(document_id: str, caller: Identity = Depends(current_user)) -> None:
        """Delete a document with its fields, signatures and requests."""
        flow.delete_document(document_id, caller)

    @app.get("/api/documents/{document_id}/pdf")
    def download_pdf(document_id: str, caller: Identity = Depends(current_user)) -> Response:
        """Download the signed PDF if finalized, else the original."""
        document = flow.get_document(document_id, caller)
        return _pdf_response(flow.download(document_id, caller), document.file_name)

    @app.get("/api/documents/{document_id}/audit", response_model=list[AuditEntry])
    def get_audit_trail(
        document_id: str, caller: Identity = Depends(current_user)
    ) -> list[AuditEntry]:
        return flow.audit_trail(document_id, caller)

    # -----------------------------------------------------------------------
    # Fields
    # -----------------------------------------------------------------------

    @app.get("/api/documents/{document_id}/fields", response_model=list[SignatureField])
    def list_fields(
        document_id: str, caller: Identity = Depends(current_user)
    ) -> list[SignatureField]:
        return flow.fields.list_for_document(document_id, caller)

    @app.post(
        "/api/documents/{document_id}/fields",
        response_model=SignatureField,
        status_code=201,
    )
    def create_field(
        document_id: str,
        spec: FieldSpec,
        scale: float = Query(1.0, gt=0),
        caller: Identity = Depends(current_user),
    ) -> SignatureField:
        """Place a field; coordinates are in display space at ``scale``."""
        return flow.fields.create(document_id, spec, caller, scale=scale)

    @app.post(
        "/api/documents/{document_id}/fields/template",
        response_model=list[SignatureField],
        status_code=201,
    )
    def create_fields_from_template(
        document_id: str,
        specs: list[FieldSpec],
        scale: float = Query(1.0, gt=0),
        caller: Identity = Depends(current_user),
    ) -> list[SignatureField]:
        """Place many fields at once, all or nothing."""
        return flow.fields.create_from_template(document_id, specs, caller, scale=scale)

    @app.patch("/api/fields/{field_id}", response_model=SignatureField)
    def update_field(
        field_id: str,
        changes: FieldChanges,
        scale: float = Query(1.0, gt=0),
        caller: Identity = Depends(current_user),
    ) -> SignatureField:
        return flow.fields.update(field_id, changes, caller, scale=scale)

    @app.delete("/api/fields/{field_id}", status_code=204)
    def delete_field(field_id: str, caller: Identity = Depends(current_user)) -> None:
        flow.fields.delete(field_id, caller)

    @app.post("/api/fields/{field_id}/fill", response_model=SignatureField)
    def fill_field(
        field_id: str,
        req: FillRequest,
        request: Request,
        caller: Identity = Depends(current_user),
    ) -> SignatureField:
        """Fill a field as its owner or assignee."""
        return flow.fields.fill(
            field_id,
            req.value,
            caller,
            kind=req.kind,
            signature_data=req.signature_data,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )

    @app.post("/api/fields/{field_id}/link", response_model=LinkResponse)
    def link_field(
        field_id: str, req: LinkRequest, caller: Identity = Depends(current_user)
    ) -> LinkResponse:
        source, linked = flow.fields.link_across_pages(field_id, req.pages, caller)
        return LinkResponse(source=source, linked=linked)

    # -----------------------------------------------------------------------
    # Finalization
    # -----------------------------------------------------------------------

    @app.post("/api/documents/{document_id}/finalize", response_model=FinalizeResponse)
    def finalize_document(
        document_id: str, caller: Identity = Depends(current_user)
    ) -> FinalizeResponse:
        """Bake every filled field into a new signed PDF."""
        result = flow.engine.finalize(document_id, caller)
        return FinalizeResponse(
            document=result.document,
            artifact_ref=result.artifact_ref,
            fields_embedded=result.fields_embedded,
        )

    @app.get("/api/documents/{document_id}/preview")
    def preview_document(
        document_id: str, caller: Identity = Depends(current_user)
    ) -> Response:
        """Render the document as it would be finalized, without saving."""
        return Response(
            content=flow.engine.preview(document_id, caller),
            media_type="application/pdf",
        )

    # -----------------------------------------------------------------------
    # Signing requests (owner)
    # -----------------------------------------------------------------------

    @app.post("/api/signing-requests", response_model=SigningRequest, status_code=201)
    def create_signing_request(
        req: CreateSigningRequest, caller: Identity = Depends(current_user)
    ) -> SigningRequest:
        return flow.workflow.create(
            req.document_id,
            req.signers,
            caller,
            signing_order=req.signing_order,
            message=req.message,
            subject=req.subject,
            expires_in_days=req.expires_in_days,
        )

    @app.get("/api/signing-requests", response_model=list[SigningRequest])
    def list_signing_requests(
        status: Optional[SigningRequestStatus] = Query(None),
        document_id: Optional[str] = Query(None),
        caller: Identity = Depends(current_user),
    ) -> list[SigningRequest]:
        return flow.workflow.list(caller, status=status, document_id=document_id)

    @app.get("/api/signing-requests/{request_id}", response_model=SigningRequest)
    def get_signing_request(
        request_id: str, caller: Identity = Depends(current_user)
    ) -> SigningRequest:
        return flow.workflow.get(request_id, caller)

    @app.post("/api/signing-requests/{request_id}/resend")
    def resend_signing_request(
        request_id: str, caller: Identity = Depends(current_user)
    ) -> dict:
        """Remind signers who have not signed yet."""
        return {"request_id": request_id, "reminded": flow.workflow.resend(request_id, caller)}

    @app.post("/api/signing-requests/{request_id}/cancel", response_model=SigningRequest)
    def cancel_signing_request(
        request_id: str, caller: Identity = Depends(current_user)
    ) -> SigningRequest:
        return flow.workflow.cancel(request_id, caller)

    # -----------------------------------------------------------------------
    # Token signing (external signers)
    # -----------------------------------------------------------------------

    @app.get("/api/sign/{token}", response_model=TokenViewResponse)
    def view_by_token(token: str, email: Optional[str] = Query(None)) -> TokenViewResponse:
        view = flow.workflow.resolve_by_token(token, email)
        return TokenViewResponse(
            request=view.request,
            document=view.document,
            current_signer=view.current_signer,
            signatures=view.signatures,
        )

    @app.post("/api/sign/{token}", response_model=SignResponse)
    def sign_by_token(token: str, req: TokenSignRequest, request: Request) -> SignResponse:
        """Sign, or reject with a reason, as one signer of the request."""
        outcome = flow.workflow.sign_by_token(
            token,
            req.email,
            signature_data=req.signature_data,
            position=req.position,
            signature_type=req.signature_type,
            reject_reason=req.reject_reason,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return SignResponse(
            completed=outcome.completed,
            rejected=outcome.rejected,
            request=outcome.request,
            signature=outcome.signature,
        )

    # -----------------------------------------------------------------------
    # Recipients
    # -----------------------------------------------------------------------

    @app.post(
        "/api/documents/{document_id}/recipients",
        response_model=list[DocumentRecipient],
        status_code=201,
    )
    def add_recipients(
        document_id: str,
        recipients: list[RecipientSpec],
        caller: Identity = Depends(current_user),
    ) -> list[DocumentRecipient]:
        return flow.recipients.add(document_id, recipients, caller)

    @app.get(
        "/api/documents/{document_id}/recipients",
        response_model=list[DocumentRecipient],
    )
    def list_recipients(
        document_id: str, caller: Identity = Depends(current_user)
    ) -> list[DocumentRecipient]:
        return flow.recipients.list(document_id, caller)

    @app.delete("/api/recipients/{recipient_id}", status_code=204)
    def delete_recipient(recipient_id: str, caller: Identity = Depends(current_user)) -> None:
        flow.recipients.delete(recipient_id, caller)

    @app.get("/api/recipient/{document_id}", response_model=RecipientViewResponse)
    def view_as_recipient(document_id: str, email: str = Query(...)) -> RecipientViewResponse:
        view = flow.recipients.resolve(document_id, email)
        return RecipientViewResponse(
            document=view.document,
            recipient=view.recipient,
            fields=view.fields,
            signatures=view.signatures,
        )

    @app.post("/api/recipient/{document_id}/sign", response_model=RecipientSignResponse)
    def sign_as_recipient(
        document_id: str, req: RecipientSignRequest, request: Request
    ) -> RecipientSignResponse:
        result = flow.recipients.sign(
            document_id,
            req.email,
            SignaturePayload(
                signature_data=req.signature_data,
                type=req.signature_type,
                position=req.position,
                ip_address=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            ),
        )
        return RecipientSignResponse(
            document=result.document,
            recipient=result.recipient,
            signature=result.signature,
        )

    @app.post("/api/recipient/{document_id}/decline", response_model=DocumentRecipient)
    def decline_as_recipient(document_id: str, req: DeclineRequest) -> DocumentRecipient:
        return flow.recipients.decline(document_id, req.email, req.reason)

    @app.get("/api/recipient/{document_id}/download")
    def download_as_recipient(document_id: str, email: str = Query(...)) -> Response:
        return _pdf_response(
            flow.recipients.download(document_id, email), f"{document_id}.pdf"
        )

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    @app.get("/api/health")
    def health() -> dict:
        """Health check."""
        return {"status": "ok", "service": "signflow", "version": __version__}

    return app
