"""Tests for SignFlow data models."""

from datetime import datetime, timedelta, timezone

from signflow.models import (
    DocumentRecipient,
    FieldStatus,
    FieldType,
    ParallelTurn,
    RecipientRole,
    RecipientStatus,
    SequentialTurn,
    SignatureField,
    SignerInfo,
    SignerStatus,
    SigningOrder,
    SigningRequest,
    SigningRequestStatus,
    is_signers_turn,
)


def _request(turn, statuses=("pending", "pending")) -> SigningRequest:
    return SigningRequest(
        document_id="doc-1",
        owner_id="owner-1",
        token="tok",
        signers=[
            SignerInfo(email=f"s{i}@example.com", name=f"S{i}", status=SignerStatus(st))
            for i, st in enumerate(statuses)
        ],
        turn=turn,
    )


class TestSignatureField:
    """Field defaults and fill state."""

    def test_defaults(self):
        field = SignatureField(document_id="d", x=10, y=20, type=FieldType.SIGNATURE)
        assert field.page == 1
        assert (field.width, field.height) == (150.0, 50.0)
        assert field.status == FieldStatus.PENDING
        assert field.required is True
        assert field.is_filled is False

    def test_is_filled(self):
        field = SignatureField(document_id="d", x=0, y=0, type=FieldType.TEXT, value="x")
        assert field.is_filled
        field.value = ""
        assert not field.is_filled


class TestTurnState:
    """Tagged sequential/parallel turn state."""

    def test_sequential_round_trips_through_json(self):
        request = _request(SequentialTurn(index=1))
        loaded = SigningRequest.model_validate_json(request.model_dump_json())
        assert isinstance(loaded.turn, SequentialTurn)
        assert loaded.current_signer_index == 1
        assert loaded.signing_order == SigningOrder.SEQUENTIAL

    def test_parallel_has_no_index(self):
        request = _request(ParallelTurn())
        loaded = SigningRequest.model_validate_json(request.model_dump_json())
        assert isinstance(loaded.turn, ParallelTurn)
        assert loaded.current_signer_index is None
        assert loaded.signing_order == SigningOrder.PARALLEL

    def test_is_signers_turn_sequential(self):
        request = _request(SequentialTurn(index=0))
        assert is_signers_turn(request, 0)
        assert not is_signers_turn(request, 1)

    def test_is_signers_turn_parallel(self):
        request = _request(ParallelTurn())
        assert is_signers_turn(request, 0)
        assert is_signers_turn(request, 1)

    def test_is_signers_turn_out_of_range(self):
        assert not is_signers_turn(_request(ParallelTurn()), 5)
        assert not is_signers_turn(_request(ParallelTurn()), -1)


class TestSigningRequest:
    """Derived request state."""

    def test_all_signed(self):
        assert not _request(ParallelTurn(), ("signed", "pending")).all_signed
        assert _request(ParallelTurn(), ("signed", "signed")).all_signed

    def test_empty_signer_list_is_not_all_signed(self):
        assert not _request(ParallelTurn(), ()).all_signed

    def test_find_signer_case_insensitive(self):
        request = _request(ParallelTurn())
        assert request.find_signer("S1@Example.COM") == 1
        assert request.find_signer("nobody@example.com") is None

    def test_expiry(self):
        request = _request(ParallelTurn())
        assert not request.is_past_expiry()
        now = datetime.now(timezone.utc)
        request.expires_at = now - timedelta(seconds=1)
        assert request.is_past_expiry()
        assert not request.is_past_expiry(now - timedelta(days=1))

    def test_terminal_statuses(self):
        terminal = {s for s in SigningRequestStatus if s.is_terminal}
        assert terminal == {
            SigningRequestStatus.COMPLETED,
            SigningRequestStatus.EXPIRED,
            SigningRequestStatus.CANCELLED,
        }


class TestDocumentRecipient:
    def test_defaults(self):
        r = DocumentRecipient(document_id="d", email="a@example.com", name="A")
        assert r.role == RecipientRole.SIGNER
        assert r.status == RecipientStatus.PENDING
        assert r.witness_for is None
