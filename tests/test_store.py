"""Tests for the SignFlow filesystem store."""

import threading

import pytest

from signflow.models import (
    AuditAction,
    AuditEntry,
    Document,
    DocumentRecipient,
    DocumentStatus,
    FieldType,
    Identity,
    Signature,
    SignatureField,
    SigningRequest,
)


class TestDocumentStore:
    """Document CRUD with PDF storage."""

    def test_save_and_load_document(self, tmp_store):
        doc = Document(title="My Agreement", owner_id="u1")
        tmp_store.save_document(doc)
        loaded = tmp_store.load_document(doc.document_id)
        assert loaded.title == "My Agreement"
        assert loaded.status == DocumentStatus.DRAFT

    def test_source_is_immutable(self, tmp_store, sample_pdf):
        doc = Document(title="PDF Test", owner_id="u1")
        tmp_store.save_document(doc)
        tmp_store.attach_source(doc, sample_pdf)
        assert tmp_store.read_original_bytes(doc) == sample_pdf
        with pytest.raises(FileExistsError):
            tmp_store.attach_source(doc, b"%PDF-overwrite")
        assert tmp_store.read_original_bytes(doc) == sample_pdf

    def test_list_with_filters(self, tmp_store):
        tmp_store.save_document(Document(title="Draft", owner_id="u1"))
        tmp_store.save_document(
            Document(title="Complete", owner_id="u1", status=DocumentStatus.COMPLETED)
        )
        tmp_store.save_document(Document(title="Other", owner_id="u2"))

        drafts = tmp_store.list_documents(status=DocumentStatus.DRAFT)
        assert {d.title for d in drafts} == {"Draft", "Other"}
        mine = tmp_store.list_documents(owner_id="u1")
        assert {d.title for d in mine} == {"Draft", "Complete"}

    def test_load_missing_document(self, tmp_store):
        with pytest.raises(FileNotFoundError):
            tmp_store.load_document("nonexistent")

    def test_rejects_path_traversal(self, tmp_store):
        with pytest.raises(FileNotFoundError):
            tmp_store.load_document("../users")

    def test_delete_removes_children_and_requests(self, tmp_store):
        doc = Document(title="Gone", owner_id="u1")
        tmp_store.save_document(doc)
        tmp_store.save_field(
            SignatureField(document_id=doc.document_id, x=0, y=0, type=FieldType.TEXT)
        )
        request = SigningRequest(document_id=doc.document_id, owner_id="u1", token="t")
        tmp_store.save_request(request)

        assert tmp_store.delete_document(doc.document_id) is True
        assert tmp_store.delete_document(doc.document_id) is False
        with pytest.raises(FileNotFoundError):
            tmp_store.load_request(request.request_id)


class TestArtifacts:
    """Finalized artifacts live beside the original."""

    def test_write_and_read_artifact(self, tmp_store, sample_pdf):
        doc = Document(title="Signed", owner_id="u1")
        tmp_store.save_document(doc)
        tmp_store.attach_source(doc, sample_pdf)
        ref = tmp_store.write_artifact(doc, b"%PDF-signed", "signed-abc.pdf")
        assert ref == f"{doc.document_id}/signed/signed-abc.pdf"
        assert tmp_store.read_artifact(ref) == b"%PDF-signed"
        assert tmp_store.read_original_bytes(doc) == sample_pdf

    def test_read_artifact_outside_store(self, tmp_store):
        with pytest.raises(FileNotFoundError):
            tmp_store.read_artifact("../../etc/passwd")


class TestFieldStore:
    """Field records, one file each."""

    def test_list_sorted_by_position(self, tmp_store):
        doc_id = "doc-1"
        for page, y in [(2, 10), (1, 300), (1, 20)]:
            tmp_store.save_field(
                SignatureField(document_id=doc_id, page=page, x=0, y=y, type=FieldType.TEXT)
            )
        fields = tmp_store.list_fields(doc_id)
        assert [(f.page, f.y) for f in fields] == [(1, 20), (1, 300), (2, 10)]

    def test_load_field_by_id(self, tmp_store):
        field = SignatureField(document_id="doc-1", x=1, y=2, type=FieldType.DATE)
        tmp_store.save_field(field)
        assert tmp_store.load_field(field.field_id).type == FieldType.DATE
        assert tmp_store.delete_field(field) is True
        with pytest.raises(FileNotFoundError):
            tmp_store.load_field(field.field_id)


class TestSignatureStore:
    def test_find_signature_ignores_fill_history(self, tmp_store):
        tmp_store.save_signature(
            Signature(document_id="d", signer_id="u1", signature_data="fill")
        )
        assert tmp_store.find_signature("d", "u1") is None
        live = Signature(
            document_id="d", signer_id="u1", signature_data="live", recipient_id="r1"
        )
        tmp_store.save_signature(live)
        assert tmp_store.find_signature("d", "u1").signature_id == live.signature_id
        assert tmp_store.find_signature("d", "u2") is None


class TestRecipientStore:
    def test_list_in_order(self, tmp_store):
        for order, email in [(2, "c@example.com"), (0, "a@example.com"), (1, "b@example.com")]:
            tmp_store.save_recipient(
                DocumentRecipient(document_id="d", email=email, name=email, order=order)
            )
        assert [r.email for r in tmp_store.list_recipients("d")] == [
            "a@example.com",
            "b@example.com",
            "c@example.com",
        ]


class TestRequestStore:
    def test_find_by_token(self, tmp_store):
        request = SigningRequest(document_id="d", owner_id="u1", token="secret-token")
        tmp_store.save_request(request)
        assert tmp_store.find_request_by_token("secret-token").request_id == request.request_id
        with pytest.raises(FileNotFoundError):
            tmp_store.find_request_by_token("nope")


class TestIdentityStore:
    def test_find_by_email_case_insensitive(self, tmp_store):
        identity = Identity(email="ada@example.com", name="Ada")
        tmp_store.save_identity(identity)
        assert tmp_store.find_identity_by_email(" ADA@example.com ").user_id == identity.user_id
        assert tmp_store.find_identity_by_email("bob@example.com") is None


class TestAuditLog:
    """Append-only JSONL audit logs."""

    def test_append_and_read(self, tmp_store):
        tmp_store.append_audit(
            AuditEntry(action=AuditAction.DOCUMENT_CREATED, document_id="doc-1")
        )
        tmp_store.append_audit(
            AuditEntry(action=AuditAction.SIGNATURE_SIGNED, document_id="doc-1")
        )
        trail = tmp_store.get_audit_trail("doc-1")
        assert [e.action for e in trail] == [
            AuditAction.DOCUMENT_CREATED,
            AuditAction.SIGNATURE_SIGNED,
        ]

    def test_global_log(self, tmp_store):
        tmp_store.append_audit(AuditEntry(action=AuditAction.SIGNING_REQUEST_SENT))
        assert len(tmp_store.get_audit_trail()) == 1
        assert tmp_store.get_audit_trail("doc-x") == []


class TestLocks:
    def test_lock_is_reentrant(self, tmp_store):
        with tmp_store.document_lock("d"):
            with tmp_store.document_lock("d"):
                pass

    def test_lock_excludes_other_threads(self, tmp_store):
        events = []

        def worker():
            with tmp_store.request_lock("r"):
                events.append("worker")

        with tmp_store.request_lock("r"):
            t = threading.Thread(target=worker)
            t.start()
            t.join(timeout=0.2)
            assert t.is_alive()
            events.append("main")
        t.join(timeout=5)
        assert events == ["main", "worker"]
