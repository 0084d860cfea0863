"""Tests for placing, editing and filling signature fields."""

import math

import pytest

from signflow.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from signflow.fields import FieldChanges, FieldSpec
from signflow.models import (
    AuditAction,
    DocumentStatus,
    FieldStatus,
    FieldType,
    SignatureType,
)


@pytest.fixture
def signer(flow):
    return flow.identities.register("sam@example.com", "Sam Signer")


@pytest.fixture
def field(flow, document, owner, signer):
    """A required signature field on page 1 assigned to ``signer``."""
    return flow.fields.create(
        document.document_id,
        FieldSpec(page=1, x=72, y=600, type=FieldType.SIGNATURE, assigned_to=signer.email),
        owner,
    )


class TestCreate:
    """Authoring fields."""

    def test_normalizes_display_coordinates(self, flow, document, owner):
        field = flow.fields.create(
            document.document_id,
            FieldSpec(page=2, x=150, y=300, width=300, height=75, type=FieldType.TEXT),
            owner,
            scale=1.5,
        )
        assert (field.x, field.y, field.width, field.height) == (100, 200, 200, 50)
        assert field.page == 2
        assert field.status == FieldStatus.PENDING

    def test_default_size_is_scale_independent(self, flow, document, owner, settings):
        field = flow.fields.create(
            document.document_id,
            FieldSpec(x=0, y=0, type=FieldType.DATE),
            owner,
            scale=2.0,
        )
        assert math.isclose(field.width, settings.default_field_width)
        assert math.isclose(field.height, settings.default_field_height)

    def test_optional_field_status(self, flow, document, owner):
        field = flow.fields.create(
            document.document_id,
            FieldSpec(x=0, y=0, type=FieldType.CHECKBOX, required=False),
            owner,
        )
        assert field.status == FieldStatus.OPTIONAL

    def test_assignee_is_normalized(self, flow, document, owner):
        field = flow.fields.create(
            document.document_id,
            FieldSpec(x=0, y=0, type=FieldType.NAME, assigned_to="  Sam@Example.com "),
            owner,
        )
        assert field.assigned_to == "sam@example.com"

    def test_page_out_of_range(self, flow, document, owner):
        with pytest.raises(ValidationError):
            flow.fields.create(
                document.document_id, FieldSpec(page=3, x=0, y=0, type=FieldType.TEXT), owner
            )

    def test_zero_size_rejected(self, flow, document, owner):
        with pytest.raises(ValidationError):
            flow.fields.create(
                document.document_id,
                FieldSpec(x=0, y=0, width=0, height=10, type=FieldType.TEXT),
                owner,
            )

    def test_only_owner(self, flow, document, stranger):
        with pytest.raises(ForbiddenError):
            flow.fields.create(
                document.document_id, FieldSpec(x=0, y=0, type=FieldType.TEXT), stranger
            )

    def test_unknown_document(self, flow, owner):
        with pytest.raises(NotFoundError):
            flow.fields.create("missing", FieldSpec(x=0, y=0, type=FieldType.TEXT), owner)

    def test_audited(self, flow, document, field):
        actions = [e.action for e in flow.audit.trail(document.document_id)]
        assert AuditAction.SIGNATURE_ADDED in actions


class TestTemplate:
    """Bulk creation is all-or-nothing."""

    def test_creates_all(self, flow, document, owner):
        fields = flow.fields.create_from_template(
            document.document_id,
            [
                FieldSpec(page=1, x=10, y=10, type=FieldType.NAME),
                FieldSpec(page=2, x=10, y=10, type=FieldType.DATE),
            ],
            owner,
        )
        assert len(fields) == 2
        assert len(flow.store.list_fields(document.document_id)) == 2

    def test_one_bad_spec_writes_nothing(self, flow, document, owner):
        with pytest.raises(ValidationError, match="Field 1"):
            flow.fields.create_from_template(
                document.document_id,
                [
                    FieldSpec(page=1, x=10, y=10, type=FieldType.NAME),
                    FieldSpec(page=9, x=10, y=10, type=FieldType.DATE),
                ],
                owner,
            )
        assert flow.store.list_fields(document.document_id) == []


class TestUpdate:
    """Move, resize, relabel."""

    def test_move_at_scale(self, flow, owner, field):
        updated = flow.fields.update(field.field_id, FieldChanges(x=200), owner, scale=2.0)
        assert updated.x == 100
        assert updated.y == field.y
        assert updated.width == field.width

    def test_relabel_keeps_position(self, flow, owner, field):
        updated = flow.fields.update(field.field_id, FieldChanges(label="Buyer"), owner)
        assert updated.label == "Buyer"
        assert (updated.x, updated.y) == (field.x, field.y)

    def test_make_optional(self, flow, owner, field):
        updated = flow.fields.update(field.field_id, FieldChanges(required=False), owner)
        assert updated.required is False
        assert updated.status == FieldStatus.OPTIONAL

    def test_negative_size_rejected(self, flow, owner, field):
        with pytest.raises(ValidationError):
            flow.fields.update(field.field_id, FieldChanges(width=-5), owner)

    def test_not_owner(self, flow, signer, field):
        with pytest.raises(ForbiddenError):
            flow.fields.update(field.field_id, FieldChanges(label="x"), signer)

    def test_missing_field(self, flow, owner):
        with pytest.raises(NotFoundError):
            flow.fields.update("nope", FieldChanges(label="x"), owner)


class TestDelete:
    def test_unlinks_signatures(self, flow, owner, signer, field, png_data_url):
        flow.fields.fill(field.field_id, png_data_url, signer)
        flow.fields.delete(field.field_id, owner)
        with pytest.raises(NotFoundError):
            flow.fields.get(field.field_id)
        signatures = flow.store.list_signatures(field.document_id)
        assert len(signatures) == 1
        assert signatures[0].field_id is None

    def test_not_owner(self, flow, signer, field):
        with pytest.raises(ForbiddenError):
            flow.fields.delete(field.field_id, signer)


class TestLinkAcrossPages:
    """Repeating a field on other pages."""

    def test_copies_share_group(self, flow, owner, field):
        source, copies = flow.fields.link_across_pages(field.field_id, [1, 2], owner)
        assert len(copies) == 1
        assert copies[0].page == 2
        assert copies[0].field_id != source.field_id
        assert copies[0].linked_field_id == source.linked_field_id == source.field_id
        assert copies[0].assigned_to == source.assigned_to
        assert (copies[0].x, copies[0].y) == (source.x, source.y)

    def test_relinking_is_idempotent(self, flow, owner, field):
        flow.fields.link_across_pages(field.field_id, [2], owner)
        _, copies = flow.fields.link_across_pages(field.field_id, [2], owner)
        assert copies == []
        assert len(flow.store.list_fields(field.document_id)) == 2

    def test_page_out_of_range(self, flow, owner, field):
        with pytest.raises(ValidationError):
            flow.fields.link_across_pages(field.field_id, [5], owner)


class TestFill:
    """The recipient-facing mutation."""

    def test_assignee_fills_and_signature_recorded(self, flow, document, signer, field, png_data_url):
        filled = flow.fields.fill(field.field_id, png_data_url, signer, ip_address="10.0.0.1")
        assert filled.value == png_data_url
        assert filled.status == FieldStatus.COMPLETED
        assert filled.filled_by == signer.user_id

        signatures = flow.store.list_signatures(document.document_id)
        assert len(signatures) == 1
        sig = signatures[0]
        assert sig.signer_id == signer.user_id
        assert sig.field_id == field.field_id
        assert sig.type == SignatureType.DRAWN
        assert (sig.page, sig.x, sig.y) == (field.page, field.x, field.y)
        assert sig.ip_address == "10.0.0.1"

    def test_moves_document_to_partially_signed(self, flow, document, signer, field):
        flow.fields.fill(field.field_id, "Sam", signer)
        assert flow.store.load_document(document.document_id).status == DocumentStatus.PARTIALLY_SIGNED

    def test_text_fill_records_no_signature(self, flow, document, owner):
        text = flow.fields.create(
            document.document_id, FieldSpec(x=0, y=0, type=FieldType.TEXT), owner
        )
        flow.fields.fill(text.field_id, "hello", owner)
        assert flow.store.list_signatures(document.document_id) == []

    def test_initials_kind_records_typed_signature(self, flow, document, owner):
        initials = flow.fields.create(
            document.document_id, FieldSpec(x=0, y=0, type=FieldType.INITIALS), owner
        )
        flow.fields.fill(initials.field_id, "OO", owner)
        (sig,) = flow.store.list_signatures(document.document_id)
        assert sig.type == SignatureType.TYPED

    def test_owner_may_fill_any_field(self, flow, owner, field):
        assert flow.fields.fill(field.field_id, "by owner", owner).value == "by owner"

    def test_stranger_cannot_fill_required(self, flow, stranger, field):
        with pytest.raises(ForbiddenError):
            flow.fields.fill(field.field_id, "x", stranger)

    def test_stranger_may_fill_optional(self, flow, document, owner, stranger):
        optional = flow.fields.create(
            document.document_id,
            FieldSpec(x=0, y=0, type=FieldType.CHECKBOX, required=False),
            owner,
        )
        assert flow.fields.fill(optional.field_id, "checked", stranger).is_filled

    def test_assignee_cannot_refill(self, flow, signer, field):
        flow.fields.fill(field.field_id, "first", signer)
        with pytest.raises(ConflictError):
            flow.fields.fill(field.field_id, "second", signer)

    def test_empty_value(self, flow, signer, field):
        with pytest.raises(ValidationError):
            flow.fields.fill(field.field_id, "", signer)

    def test_completed_document_is_locked(self, flow, document, owner, signer, field):
        flow.fields.fill(field.field_id, "Sam", signer)
        flow.engine.finalize(document.document_id, owner)
        with pytest.raises(ConflictError):
            flow.fields.fill(field.field_id, "late", owner)


class TestVisibility:
    def test_owner_and_assignee_see_fields(self, flow, document, owner, signer, field):
        assert len(flow.fields.list_for_document(document.document_id, owner)) == 1
        assert len(flow.fields.list_for_document(document.document_id, signer)) == 1

    def test_stranger_cannot_list(self, flow, document, stranger, field):
        with pytest.raises(ForbiddenError):
            flow.fields.list_for_document(document.document_id, stranger)
