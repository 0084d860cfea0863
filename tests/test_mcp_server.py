"""Tests for the SignFlow MCP tool handlers."""

import asyncio
import json

import pytest

from signflow import mcp_server

from .conftest import OWNER_EMAIL


@pytest.fixture(autouse=True)
def bound_flow(flow, monkeypatch):
    """Point the MCP server at the test SignFlow instance."""
    monkeypatch.setattr(mcp_server, "_flow", flow)
    monkeypatch.setenv("SIGNFLOW_USER", OWNER_EMAIL)
    return flow


def call(name, **arguments):
    result = asyncio.run(mcp_server.call_tool(name, arguments))
    return json.loads(result[0].text)


@pytest.fixture
def doc_id(tmp_path, sample_pdf):
    pdf = tmp_path / "lease.pdf"
    pdf.write_bytes(sample_pdf)
    return call("upload_document", path=str(pdf), title="Lease")["document_id"]


class TestTools:
    def test_lists_all_tools(self):
        tools = asyncio.run(mcp_server.list_tools())
        assert {t.name for t in tools} == {
            "upload_document",
            "list_documents",
            "list_fields",
            "add_field",
            "fill_field",
            "create_signing_request",
            "list_signing_requests",
            "sign_by_token",
            "cancel_signing_request",
            "add_recipients",
            "finalize_document",
            "preview_document",
            "get_audit_trail",
        }

    def test_unknown_tool(self):
        assert call("no_such_tool") == {"error": "Unknown tool: no_such_tool"}


class TestDocumentTools:
    def test_upload_and_list(self, doc_id):
        (doc,) = call("list_documents")
        assert doc["document_id"] == doc_id
        assert doc["title"] == "Lease"
        assert doc["page_count"] == 2

    def test_upload_missing_file(self, tmp_path):
        assert "error" in call("upload_document", path=str(tmp_path / "nope.pdf"))

    def test_invalid_status(self):
        assert "Invalid status" in call("list_documents", status="bogus")["error"]

    def test_field_fill_finalize(self, doc_id, tmp_path):
        field = call("add_field", document_id=doc_id, type="name", page=1, x=72, y=100, width=300)
        assert field["type"] == "name"

        blocked = call("finalize_document", document_id=doc_id)
        assert blocked == {"error": "1 required field(s) not filled"}

        assert call("fill_field", field_id=field["field_id"], value="Jane Doe")["status"] == "completed"
        (listed,) = call("list_fields", document_id=doc_id)
        assert listed["value"] == "Jane Doe"

        preview = tmp_path / "preview.pdf"
        assert call("preview_document", document_id=doc_id, output_path=str(preview))["bytes"] > 0
        assert preview.read_bytes().startswith(b"%PDF")

        result = call("finalize_document", document_id=doc_id)
        assert result["status"] == "completed"
        assert result["fields_embedded"] == 1

        actions = [e["action"] for e in call("get_audit_trail", document_id=doc_id)]
        assert "document_finalized" in actions


class TestSigningTools:
    def test_request_and_sign(self, doc_id):
        created = call(
            "create_signing_request",
            document_id=doc_id,
            signers=[{"email": "alice@example.com", "name": "Alice"}, {"email": "bob@example.com", "name": "Bob"}],
            signing_order="sequential",
        )
        token = created["token"]
        assert set(created["links"]) == {"alice@example.com", "bob@example.com"}

        early = call("sign_by_token", token=token, email="bob@example.com", signature_data="Bob")
        assert "error" in early

        first = call("sign_by_token", token=token, email="alice@example.com", signature_data="Alice")
        assert first == {
            "completed": False,
            "rejected": False,
            "request_status": "in_progress",
            "current_signer_index": 1,
        }

        (listed,) = call("list_signing_requests", document_id=doc_id)
        assert [s["status"] for s in listed["signers"]] == ["signed", "pending"]

        cancelled = call("cancel_signing_request", request_id=created["request_id"])
        assert cancelled["status"] == "cancelled"

    def test_add_recipients(self, doc_id):
        added = call(
            "add_recipients",
            document_id=doc_id,
            recipients=[
                {"email": "sam@example.com", "name": "Sam"},
                {"email": "wes@example.com", "name": "Wes", "role": "witness", "witness_for": "sam@example.com"},
            ],
        )
        assert [r["role"] for r in added] == ["signer", "witness"]
        assert added[1]["witness_for"] == added[0]["recipient_id"]
