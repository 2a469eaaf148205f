import uuid

import pytest

from geofoncier.documents import DocumentService, document_to_dict
from geofoncier.errors import DocumentNotFound, Forbidden, InvalidTransition, ParcelNotFound, ValidationError
from geofoncier.schemas import DocumentTarget, ParcelCreate

from conftest import parcel_coords


@pytest.fixture
def documents(session, store):
    return DocumentService(session, store)


@pytest.fixture
def parcel(registry, owner, divisions):
    return registry.create(owner.id, ParcelCreate(matricule="TF-DOC", coordinates=parcel_coords(4.1, 9.1)))


def upload_deed(documents, user_id, parcel_id, **overrides):
    args = {
        "document_type": "land_deed",
        "file_name": "deed.pdf",
        "content_type": "application/pdf",
        "data": b"%PDF-1.7",
    }
    args.update(overrides)
    return documents.upload(user_id, DocumentTarget.PARCEL, parcel_id, **args)


def test_owner_uploads_pending_document(documents, store, owner, parcel):
    document = upload_deed(documents, owner.id, parcel.id)
    assert document.status == "pending"
    assert document.size_bytes == 8
    assert document.url.startswith(f"memory://documents/parcel/{parcel.id}/")
    assert len(store.objects) == 1
    assert [d.id for d in documents.list_for(DocumentTarget.PARCEL, parcel.id)] == [document.id]


@pytest.mark.parametrize(
    "overrides",
    [
        {"document_type": "identity_document"},
        {"content_type": "text/html"},
        {"data": b""},
    ],
)
def test_upload_validation(documents, store, owner, parcel, overrides):
    with pytest.raises(ValidationError):
        upload_deed(documents, owner.id, parcel.id, **overrides)
    assert store.objects == {}


def test_only_the_owner_uploads(documents, buyer, parcel):
    with pytest.raises(Forbidden):
        upload_deed(documents, buyer.id, parcel.id)
    with pytest.raises(ParcelNotFound):
        upload_deed(documents, buyer.id, uuid.uuid4())


def test_review_is_one_way(documents, owner, parcel):
    document = upload_deed(documents, owner.id, parcel.id)
    assert [d.id for d in documents.pending()] == [document.id]

    verified = documents.verify(document.id, "Stamp checked")
    assert verified.status == "verified"
    assert verified.review_notes == "Stamp checked"
    assert documents.pending() == []

    with pytest.raises(InvalidTransition):
        documents.reject(document.id)
    with pytest.raises(DocumentNotFound):
        documents.verify(uuid.uuid4())

    data = document_to_dict(verified)
    assert data["status"] == "verified"
    assert data["reviewed_at"] is not None


def test_completeness_follows_required_types(documents, owner, parcel):
    report = documents.check_completeness(DocumentTarget.PARCEL, parcel.id)
    assert report["is_complete"] is False
    assert report["required"] == ["land_deed"]
    assert report["missing"] == ["land_deed"]

    upload_deed(documents, owner.id, parcel.id, document_type="cadastral_plan")
    assert documents.check_completeness(DocumentTarget.PARCEL, parcel.id)["missing"] == ["land_deed"]

    deed = upload_deed(documents, owner.id, parcel.id)
    assert documents.check_completeness(DocumentTarget.PARCEL, parcel.id)["is_complete"] is True

    documents.reject(deed.id, "Illegible scan")
    assert documents.check_completeness(DocumentTarget.PARCEL, parcel.id)["is_complete"] is False


def test_completeness_of_unknown_target(documents, divisions):
    with pytest.raises(ParcelNotFound):
        documents.check_completeness(DocumentTarget.PARCEL, uuid.uuid4())


def test_statistics(documents, owner, parcel):
    assert documents.statistics() == {"total": 0, "by_status": {}, "by_target": {}, "total_bytes": 0}

    deed = upload_deed(documents, owner.id, parcel.id)
    upload_deed(documents, owner.id, parcel.id, document_type="cadastral_plan", data=b"plan")
    documents.verify(deed.id)

    stats = documents.statistics()
    assert stats["total"] == 2
    assert stats["by_status"] == {"verified": 1, "pending": 1}
    assert stats["by_target"] == {"parcel": {"verified": 1, "pending": 1}}
    assert stats["total_bytes"] == 12
