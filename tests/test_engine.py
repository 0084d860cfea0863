"""Tests for the SignFlow finalization engine."""

import base64
import struct
import time
import zlib
from io import BytesIO

import pytest
from pypdf import PdfReader

from signflow.config import RefinalizePolicy
from signflow.engine import FinalizationEngine
from signflow.errors import ConflictError, ForbiddenError, ValidationError
from signflow.fields import FieldSpec
from signflow.models import AuditAction, DocumentStatus, FieldType, SignatureField
from signflow.render import MONO_FONT, fit_text

from .conftest import PAGE_HEIGHT

engine = FinalizationEngine


def _text_positions(page) -> list[tuple[str, float]]:
    """(text, page-space y) for every text run on a page."""
    runs = []

    def visitor(text, cm, tm, font_dict, font_size):
        if text.strip():
            runs.append((text, tm[4] * cm[1] + tm[5] * cm[3] + cm[5]))

    page.extract_text(visitor_text=visitor)
    return runs


def _png_claiming(width: int, height: int) -> str:
    """A data URL whose PNG header declares the given pixel size."""

    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    png = (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(b"\x00"))
        + chunk(b"IEND", b"")
    )
    return "data:image/png;base64," + base64.b64encode(png).decode()


def _add(flow, document, owner, **spec):
    spec.setdefault("x", 72)
    spec.setdefault("y", 100)
    return flow.fields.create(document.document_id, FieldSpec(**spec), owner)


class TestHashing:
    """SHA-256 hashing of documents."""

    def test_hash_bytes(self, sample_pdf):
        h = engine.hash_bytes(sample_pdf)
        assert len(h) == 64
        assert h == engine.hash_bytes(sample_pdf)  # deterministic

    def test_different_content_different_hash(self, sample_pdf):
        assert engine.hash_bytes(sample_pdf) != engine.hash_bytes(sample_pdf + b"modified")


class TestGate:
    """Required-field completeness."""

    def test_reports_unfilled_count(self, flow, document, owner):
        fields = [_add(flow, document, owner, type=FieldType.TEXT, y=100 + 60 * i) for i in range(3)]
        _add(flow, document, owner, type=FieldType.TEXT, y=400, required=False)
        flow.fields.fill(fields[0].field_id, "one", owner)

        with pytest.raises(ValidationError) as exc_info:
            flow.engine.finalize(document.document_id, owner)
        assert exc_info.value.count == 2
        assert "2 required field(s)" in exc_info.value.message
        stored = flow.store.load_document(document.document_id)
        assert stored.signed_artifact is None
        assert stored.status != DocumentStatus.COMPLETED

    def test_passes_when_all_filled(self, flow, document, owner):
        fields = [_add(flow, document, owner, type=FieldType.TEXT, y=100 + 60 * i) for i in range(2)]
        for f in fields:
            flow.fields.fill(f.field_id, "ok", owner)
        result = flow.engine.finalize(document.document_id, owner)
        assert result.fields_embedded == 2

    def test_static_gate_ignores_optional(self):
        fields = [
            SignatureField(document_id="d", x=0, y=0, type=FieldType.TEXT, required=False),
            SignatureField(document_id="d", x=0, y=0, type=FieldType.TEXT, value="v"),
        ]
        engine.check_gate(fields)


class TestFinalize:
    """Baking fields into a new artifact."""

    def test_renders_text_and_completes(self, flow, document, owner, sample_pdf):
        name = _add(flow, document, owner, type=FieldType.NAME, y=100, width=300)
        flow.fields.fill(name.field_id, "Jane Doe", owner)

        result = flow.engine.finalize(document.document_id, owner)
        doc = result.document
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.completed_at is not None
        assert doc.signed_artifact == result.artifact_ref

        data = flow.store.read_artifact(result.artifact_ref)
        assert doc.signed_hash == engine.hash_bytes(data)
        assert flow.store.read_original_bytes(doc) == sample_pdf

        reader = PdfReader(BytesIO(data))
        assert len(reader.pages) == 2
        assert "Jane Doe" in reader.pages[0].extract_text()
        assert "Jane Doe" not in reader.pages[1].extract_text()

    def test_vertical_axis_is_flipped(self, flow, document, owner):
        top = _add(flow, document, owner, type=FieldType.TEXT, y=100, width=300)
        flow.fields.fill(top.field_id, "Jane Doe", owner)
        result = flow.engine.finalize(document.document_id, owner)

        page = PdfReader(BytesIO(flow.store.read_artifact(result.artifact_ref))).pages[0]
        ys = [y for text, y in _text_positions(page) if "Jane Doe" in text]
        assert ys
        # a field near the top of the page lands near the top in PDF space
        assert max(ys) > PAGE_HEIGHT - 200

    def test_corrupt_image_falls_back_to_text(self, flow, document, owner):
        sig = _add(flow, document, owner, type=FieldType.SIGNATURE, width=400)
        flow.fields.fill(sig.field_id, "data:image/png;base64,BROKEN", owner)

        result = flow.engine.finalize(document.document_id, owner)
        assert result.fields_embedded == 1
        text = PdfReader(BytesIO(flow.store.read_artifact(result.artifact_ref))).pages[0].extract_text()
        assert "BROKEN" in text

    def test_oversized_image_header_falls_back_to_text(self, flow, document, owner):
        sig = _add(flow, document, owner, type=FieldType.SIGNATURE, width=400)
        flow.fields.fill(sig.field_id, _png_claiming(30000, 30000), owner)

        assert flow.engine.preview(document.document_id, owner).startswith(b"%PDF")
        result = flow.engine.finalize(document.document_id, owner)
        assert result.fields_embedded == 1
        text = PdfReader(BytesIO(flow.store.read_artifact(result.artifact_ref))).pages[0].extract_text()
        assert "data:image/png" in text

    def test_large_corrupt_payload_stays_fast(self, flow, document, owner):
        sig = _add(flow, document, owner, type=FieldType.SIGNATURE, width=400)
        flow.fields.fill(sig.field_id, "data:image/png;base64," + "A" * 59999 + "!", owner)

        started = time.monotonic()
        result = flow.engine.finalize(document.document_id, owner)
        assert time.monotonic() - started < 5
        assert result.fields_embedded == 1

    def test_fit_text_truncates_long_runs(self):
        fitted = fit_text("A" * 60000, MONO_FONT, 12, 100)
        assert fitted
        assert set(fitted) == {"A"}
        # Courier advances 0.6 em per glyph
        assert len(fitted) == int(100 / (12 * 0.6))

    def test_image_is_embedded(self, flow, document, owner, png_data_url):
        sig = _add(flow, document, owner, type=FieldType.SIGNATURE, page=2)
        flow.fields.fill(sig.field_id, png_data_url, owner)

        result = flow.engine.finalize(document.document_id, owner)
        reader = PdfReader(BytesIO(flow.store.read_artifact(result.artifact_ref)))
        assert len(reader.pages[1].images) >= 1

    def test_checkbox_and_date(self, flow, document, owner):
        box = _add(flow, document, owner, type=FieldType.CHECKBOX, width=20, height=20)
        date = _add(flow, document, owner, type=FieldType.DATE, y=200)
        flow.fields.fill(box.field_id, "checked", owner)
        flow.fields.fill(date.field_id, "2026-10-18", owner)
        result = flow.engine.finalize(document.document_id, owner)
        assert result.fields_embedded == 2
        text = PdfReader(BytesIO(flow.store.read_artifact(result.artifact_ref))).pages[0].extract_text()
        assert "2026-10-18" in text

    def test_field_beyond_last_page(self, flow, document, owner):
        flow.store.save_field(
            SignatureField(
                document_id=document.document_id, page=5, x=0, y=0, type=FieldType.TEXT, value="x"
            )
        )
        with pytest.raises(ValidationError):
            flow.engine.finalize(document.document_id, owner)
        assert flow.store.load_document(document.document_id).signed_artifact is None

    def test_unfilled_field_beyond_last_page(self, flow, document, owner):
        flow.store.save_field(
            SignatureField(
                document_id=document.document_id, page=5, x=0, y=0, type=FieldType.TEXT, required=False
            )
        )
        with pytest.raises(ValidationError):
            flow.engine.finalize(document.document_id, owner)
        assert flow.store.load_document(document.document_id).signed_artifact is None

    def test_only_owner(self, flow, document, stranger):
        with pytest.raises(ForbiddenError):
            flow.engine.finalize(document.document_id, stranger)

    def test_audited(self, flow, document, owner):
        flow.engine.finalize(document.document_id, owner)
        (entry,) = [
            e for e in flow.audit.trail(document.document_id)
            if e.action == AuditAction.DOCUMENT_FINALIZED
        ]
        assert entry.details["fields_embedded"] == 0
        assert entry.details["regenerated"] is False


class TestRefinalize:
    """Second finalize follows the configured policy."""

    def test_reject_policy(self, flow, document, owner):
        flow.engine.finalize(document.document_id, owner)
        with pytest.raises(ConflictError):
            flow.engine.finalize(document.document_id, owner)

    def test_regenerate_policy(self, flow, document, owner):
        flow.settings.refinalize = RefinalizePolicy.REGENERATE
        first = flow.engine.finalize(document.document_id, owner)
        second = flow.engine.finalize(document.document_id, owner)
        assert second.document.status == DocumentStatus.COMPLETED
        assert flow.store.read_artifact(second.artifact_ref).startswith(b"%PDF")
        regenerated = [
            e.details["regenerated"]
            for e in flow.audit.trail(document.document_id)
            if e.action == AuditAction.DOCUMENT_FINALIZED
        ]
        assert regenerated == [False, True]
        assert first.document.document_id == second.document.document_id


class TestPreview:
    def test_preview_is_not_persisted(self, flow, document, owner):
        name = _add(flow, document, owner, type=FieldType.NAME, width=300)
        _add(flow, document, owner, type=FieldType.TEXT, y=300)
        flow.fields.fill(name.field_id, "Jane Doe", owner)

        data = flow.engine.preview(document.document_id, owner)
        assert "Jane Doe" in PdfReader(BytesIO(data)).pages[0].extract_text()

        stored = flow.store.load_document(document.document_id)
        assert stored.signed_artifact is None
        assert stored.status == DocumentStatus.PARTIALLY_SIGNED
