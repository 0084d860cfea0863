"""SignFlow MCP Server — document signing tools for AI agents.

Exposes the SignFlow workflow as MCP tools so an agent can upload a PDF,
place and fill fields, send it out for signature and finalize it.

Tools:
    upload_document          — Register a PDF from disk
    list_documents           — List the acting user's documents
    list_fields              — List the fields placed on a document
    add_field                — Place a field on a page
    fill_field               — Fill a field with a value
    create_signing_request   — Send a document to signers
    list_signing_requests    — List signing requests
    sign_by_token            — Sign or reject as an external signer
    cancel_signing_request   — Cancel a signing request
    add_recipients           — Add role-aware recipients to a document
    finalize_document        — Bake filled fields into the signed PDF
    preview_document         — Render a preview PDF to disk
    get_audit_trail          — Audit history of a document

The acting user is taken from ``SIGNFLOW_USER``.

Invocation:
    python -m signflow.mcp_server
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .core import SignFlow
from .errors import SignFlowError
from .fields import FieldSpec
from .models import DocumentStatus, Identity, SignaturePosition, SigningRequestStatus
from .recipients import RecipientSpec
from .workflow import SignerSpec

logger = logging.getLogger("signflow.mcp")

DEFAULT_USER = "owner@localhost.localdomain"

_flow: SignFlow | None = None

server = Server("signflow")


def _get_flow() -> SignFlow:
    global _flow
    if _flow is None:
        _flow = SignFlow()
    return _flow


def _caller() -> Identity:
    return _get_flow().identities.register(os.environ.get("SIGNFLOW_USER", DEFAULT_USER))


# ─────────────────────────────────────────────────────────────
# Response helpers
# ─────────────────────────────────────────────────────────────


def _json(data: Any) -> list[TextContent]:
    """Wrap data as a JSON TextContent response."""
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _error(message: str) -> list[TextContent]:
    """Return an error payload as a JSON TextContent response."""
    return [TextContent(type="text", text=json.dumps({"error": message}))]


def _object(properties: dict, required: list[str]) -> dict:
    return {"type": "object", "properties": properties, "required": required}


_STR = {"type": "string"}
_NUM = {"type": "number"}


# ─────────────────────────────────────────────────────────────
# Tool Definitions
# ─────────────────────────────────────────────────────────────


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Register all SignFlow tools with the MCP server."""
    return [
        Tool(
            name="upload_document",
            description="Register a PDF from the local filesystem for signing.",
            inputSchema=_object(
                {
                    "path": {"type": "string", "description": "Path to the PDF."},
                    "title": {"type": "string", "description": "Document title."},
                },
                ["path"],
            ),
        ),
        Tool(
            name="list_documents",
            description="List documents owned by the acting user.",
            inputSchema=_object(
                {
                    "status": {
                        "type": "string",
                        "enum": [s.value for s in DocumentStatus],
                    }
                },
                [],
            ),
        ),
        Tool(
            name="list_fields",
            description="List the fields placed on a document.",
            inputSchema=_object({"document_id": _STR}, ["document_id"]),
        ),
        Tool(
            name="add_field",
            description=(
                "Place a field on a document page. Coordinates are PDF points "
                "from the top-left corner of the page."
            ),
            inputSchema=_object(
                {
                    "document_id": _STR,
                    "type": {
                        "type": "string",
                        "description": (
                            "signature, initials, name, date, text, input, "
                            "checkbox, witness or stamp."
                        ),
                    },
                    "page": {"type": "integer", "minimum": 1},
                    "x": _NUM,
                    "y": _NUM,
                    "width": _NUM,
                    "height": _NUM,
                    "label": _STR,
                    "assigned_to": {"type": "string", "description": "Email of the filler."},
                    "required": {"type": "boolean"},
                },
                ["document_id", "type", "x", "y"],
            ),
        ),
        Tool(
            name="fill_field",
            description="Fill a field with text, 'checked', or an image data URL.",
            inputSchema=_object(
                {"field_id": _STR, "value": _STR, "kind": _STR},
                ["field_id", "value"],
            ),
        ),
        Tool(
            name="create_signing_request",
            description="Send a document to one or more signers by email.",
            inputSchema=_object(
                {
                    "document_id": _STR,
                    "signers": {
                        "type": "array",
                        "items": _object({"email": _STR, "name": _STR}, ["email", "name"]),
                    },
                    "signing_order": {"type": "string", "enum": ["sequential", "parallel"]},
                    "message": _STR,
                    "subject": _STR,
                    "expires_in_days": {"type": "integer", "minimum": 1},
                },
                ["document_id", "signers"],
            ),
        ),
        Tool(
            name="list_signing_requests",
            description="List the acting user's signing requests.",
            inputSchema=_object(
                {
                    "status": {
                        "type": "string",
                        "enum": [s.value for s in SigningRequestStatus],
                    },
                    "document_id": _STR,
                },
                [],
            ),
        ),
        Tool(
            name="sign_by_token",
            description=(
                "Sign a signing request as one of its signers, or reject it by "
                "passing reject_reason."
            ),
            inputSchema=_object(
                {
                    "token": _STR,
                    "email": _STR,
                    "signature_data": _STR,
                    "page": {"type": "integer", "minimum": 1},
                    "x": _NUM,
                    "y": _NUM,
                    "reject_reason": _STR,
                },
                ["token", "email"],
            ),
        ),
        Tool(
            name="cancel_signing_request",
            description="Cancel a pending or in-progress signing request.",
            inputSchema=_object({"request_id": _STR}, ["request_id"]),
        ),
        Tool(
            name="add_recipients",
            description="Add signers, witnesses or reviewers to a document.",
            inputSchema=_object(
                {
                    "document_id": _STR,
                    "recipients": {
                        "type": "array",
                        "items": _object(
                            {
                                "email": _STR,
                                "name": _STR,
                                "role": {
                                    "type": "string",
                                    "enum": ["signer", "witness", "reviewer"],
                                },
                                "witness_for": _STR,
                            },
                            ["email", "name"],
                        ),
                    },
                },
                ["document_id", "recipients"],
            ),
        ),
        Tool(
            name="finalize_document",
            description="Bake every filled field into a new signed PDF.",
            inputSchema=_object({"document_id": _STR}, ["document_id"]),
        ),
        Tool(
            name="preview_document",
            description="Render the document with its current field values to a PDF file.",
            inputSchema=_object(
                {"document_id": _STR, "output_path": _STR},
                ["document_id", "output_path"],
            ),
        ),
        Tool(
            name="get_audit_trail",
            description="Get the audit history of a document.",
            inputSchema=_object({"document_id": _STR}, ["document_id"]),
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Dispatch incoming tool calls to the appropriate handler."""
    handlers = {
        "upload_document": _handle_upload_document,
        "list_documents": _handle_list_documents,
        "list_fields": _handle_list_fields,
        "add_field": _handle_add_field,
        "fill_field": _handle_fill_field,
        "create_signing_request": _handle_create_signing_request,
        "list_signing_requests": _handle_list_signing_requests,
        "sign_by_token": _handle_sign_by_token,
        "cancel_signing_request": _handle_cancel_signing_request,
        "add_recipients": _handle_add_recipients,
        "finalize_document": _handle_finalize_document,
        "preview_document": _handle_preview_document,
        "get_audit_trail": _handle_get_audit_trail,
    }
    handler = handlers.get(name)
    if handler is None:
        return _error(f"Unknown tool: {name}")
    try:
        return await handler(arguments or {})
    except SignFlowError as exc:
        return _error(exc.message)
    except Exception as exc:
        logger.exception("Tool '%s' failed", name)
        return _error(f"{name} failed: {exc}")


# ─────────────────────────────────────────────────────────────
# Tool Handlers
# ─────────────────────────────────────────────────────────────


async def _handle_upload_document(args: dict) -> list[TextContent]:
    path = Path(args.get("path", ""))
    if not path.is_file():
        return _error(f"File not found: {path}")
    doc = _get_flow().upload(
        path.read_bytes(), args.get("title") or path.stem, _caller(), file_name=path.name
    )
    return _json({
        "document_id": doc.document_id,
        "title": doc.title,
        "page_count": doc.page_count,
        "status": doc.status.value,
    })


async def _handle_list_documents(args: dict) -> list[TextContent]:
    status_str: str | None = args.get("status")
    try:
        status = DocumentStatus(status_str) if status_str else None
    except ValueError:
        return _error(
            f"Invalid status '{status_str}'. Valid values: "
            + ", ".join(s.value for s in DocumentStatus)
        )
    docs = _get_flow().list_documents(_caller(), status=status)
    return _json([
        {
            "document_id": d.document_id,
            "title": d.title,
            "status": d.status.value,
            "page_count": d.page_count,
            "signed_artifact": d.signed_artifact,
            "created_at": d.created_at.isoformat(),
        }
        for d in docs
    ])


async def _handle_list_fields(args: dict) -> list[TextContent]:
    fields = _get_flow().fields.list_for_document(args.get("document_id", ""), _caller())
    return _json([f.model_dump(mode="json") for f in fields])


async def _handle_add_field(args: dict) -> list[TextContent]:
    spec = FieldSpec.model_validate(
        {k: v for k, v in args.items() if k != "document_id" and v is not None}
    )
    field = _get_flow().fields.create(args.get("document_id", ""), spec, _caller())
    return _json(field.model_dump(mode="json"))


async def _handle_fill_field(args: dict) -> list[TextContent]:
    field = _get_flow().fields.fill(
        args.get("field_id", ""), args.get("value", ""), _caller(), kind=args.get("kind")
    )
    return _json({
        "field_id": field.field_id,
        "type": field.type.value,
        "status": field.status.value,
    })


async def _handle_create_signing_request(args: dict) -> list[TextContent]:
    flow = _get_flow()
    request = flow.workflow.create(
        args.get("document_id", ""),
        [SignerSpec.model_validate(s) for s in args.get("signers", [])],
        _caller(),
        signing_order=args.get("signing_order", "parallel"),
        message=args.get("message"),
        subject=args.get("subject"),
        expires_in_days=args.get("expires_in_days"),
    )
    return _json({
        "request_id": request.request_id,
        "token": request.token,
        "signing_order": request.signing_order.value,
        "status": request.status.value,
        "links": {
            s.email: flow.notifications.signing_url(request.token, s.email)
            for s in request.signers
        },
    })


async def _handle_list_signing_requests(args: dict) -> list[TextContent]:
    status_str = args.get("status")
    requests = _get_flow().workflow.list(
        _caller(),
        status=SigningRequestStatus(status_str) if status_str else None,
        document_id=args.get("document_id"),
    )
    return _json([
        {
            "request_id": r.request_id,
            "document_id": r.document_id,
            "status": r.status.value,
            "signing_order": r.signing_order.value,
            "current_signer_index": r.current_signer_index,
            "signers": [
                {"email": s.email, "name": s.name, "status": s.status.value}
                for s in r.signers
            ],
        }
        for r in requests
    ])


async def _handle_sign_by_token(args: dict) -> list[TextContent]:
    position = SignaturePosition(
        page=args.get("page", 1), x=args.get("x", 0.0), y=args.get("y", 0.0)
    )
    outcome = _get_flow().workflow.sign_by_token(
        args.get("token", ""),
        args.get("email", ""),
        signature_data=args.get("signature_data"),
        position=position,
        reject_reason=args.get("reject_reason"),
    )
    return _json({
        "completed": outcome.completed,
        "rejected": outcome.rejected,
        "request_status": outcome.request.status.value,
        "current_signer_index": outcome.request.current_signer_index,
    })


async def _handle_cancel_signing_request(args: dict) -> list[TextContent]:
    request = _get_flow().workflow.cancel(args.get("request_id", ""), _caller())
    return _json({"request_id": request.request_id, "status": request.status.value})


async def _handle_add_recipients(args: dict) -> list[TextContent]:
    added = _get_flow().recipients.add(
        args.get("document_id", ""),
        [RecipientSpec.model_validate(r) for r in args.get("recipients", [])],
        _caller(),
    )
    return _json([
        {
            "recipient_id": r.recipient_id,
            "email": r.email,
            "role": r.role.value,
            "order": r.order,
            "witness_for": r.witness_for,
        }
        for r in added
    ])


async def _handle_finalize_document(args: dict) -> list[TextContent]:
    result = _get_flow().engine.finalize(args.get("document_id", ""), _caller())
    return _json({
        "document_id": result.document.document_id,
        "status": result.document.status.value,
        "artifact_ref": result.artifact_ref,
        "signed_hash": result.document.signed_hash,
        "fields_embedded": result.fields_embedded,
    })


async def _handle_preview_document(args: dict) -> list[TextContent]:
    output = Path(args.get("output_path", ""))
    data = _get_flow().engine.preview(args.get("document_id", ""), _caller())
    output.write_bytes(data)
    return _json({"output_path": str(output), "bytes": len(data)})


async def _handle_get_audit_trail(args: dict) -> list[TextContent]:
    entries = _get_flow().audit_trail(args.get("document_id", ""), _caller())
    return _json([
        {
            "timestamp": e.timestamp.isoformat(),
            "action": e.action.value,
            "user_id": e.user_id,
            "signing_request_id": e.signing_request_id,
            "details": e.details,
        }
        for e in entries
    ])


# ─────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────


def main() -> None:
    """Run the SignFlow MCP server on stdio transport."""
    logging.basicConfig(level=logging.WARNING, format="%(name)s: %(message)s")
    asyncio.run(_run_server())


async def _run_server() -> None:
    """Async entry point for the stdio MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream, write_stream, server.create_initialization_options()
        )


if __name__ == "__main__":
    main()
