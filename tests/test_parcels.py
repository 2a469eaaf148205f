import dataclasses
import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest

from geofoncier.errors import InvalidGeometry, NotFound, ParcelNotFound, SubscriptionRequired, ValidationError
from geofoncier.geometry import centroid_of
from geofoncier.models import Subscription
from geofoncier.parcels import ImageUpload, ParcelRegistry, parcel_to_dict
from geofoncier.schemas import ParcelActivity, ParcelCreate, ParcelFilters, ParcelUpdate

from conftest import parcel_coords


def new_parcel(matricule, lat=4.1, lng=9.1, **fields):
    return ParcelCreate(matricule=matricule, coordinates=parcel_coords(lat, lng), **fields)


def jpeg(name="photo.jpg", size=16):
    return ImageUpload(file_name=name, content_type="image/jpeg", data=b"\xff" * size)


# =============================================================================
# Registration
# =============================================================================


def test_create_stores_lng_lat_and_locates_arrondissement(registry, owner, divisions):
    parcel = registry.create(owner.id, new_parcel("TF-001234", price_per_m2=Decimal("15000")))

    assert parcel.is_active is True
    assert parcel.arrondissement_id == divisions["douala"].id
    assert centroid_of(parcel.boundary) == pytest.approx((9.105, 4.105))

    data = parcel_to_dict(parcel)
    assert data["arrondissement_name"] == "Douala I"
    assert data["boundary"]["coordinates"][0][0] == pytest.approx([9.1, 4.1])
    assert data["price_per_m2"] == 15000.0
    assert data["images"] == []


def test_create_outside_every_division_is_unlocated(registry, owner, divisions):
    parcel = registry.create(owner.id, new_parcel("TF-FAR", lat=-10, lng=20))
    assert parcel.arrondissement_id is None


def test_create_in_region_without_arrondissement_is_unlocated(registry, owner, divisions):
    parcel = registry.create(owner.id, new_parcel("TF-CTR", lat=4.5, lng=10.5))
    assert parcel.arrondissement_id is None


def test_create_rejects_bad_boundary_before_anything_else(registry, divisions):
    with pytest.raises(InvalidGeometry):
        registry.create(uuid.uuid4(), ParcelCreate(matricule="TF-1", coordinates=[[4.1, 9.1], [4.2, 9.2]]))


def test_create_requires_a_known_owner(registry, divisions):
    with pytest.raises(NotFound):
        registry.create(uuid.uuid4(), new_parcel("TF-1"))


def test_subscription_gate(session, spatial, store, settings, owner, divisions):
    gated = ParcelRegistry(
        session, spatial, store, dataclasses.replace(settings, require_subscription_for_listing=True)
    )
    with pytest.raises(SubscriptionRequired):
        gated.create(owner.id, new_parcel("TF-GATED"))

    session.add(Subscription(
        user_id=owner.id, plan_type="owner_area", amount=Decimal("2000"), status="active",
        gateway_reference="geofoncier_gate", ends_on=date.today() + timedelta(days=10),
    ))
    session.commit()
    assert gated.create(owner.id, new_parcel("TF-GATED")).is_active


# =============================================================================
# Listing and search
# =============================================================================


@pytest.fixture
def listed(registry, owner, divisions):
    return [
        registry.create(owner.id, new_parcel(
            "TF-100", price_per_m2=Decimal("5000"), activity=ParcelActivity.LAND_SALE, is_titled=True,
        )),
        registry.create(owner.id, new_parcel(
            "TF-200", lat=4.15, lng=9.15, price_per_m2=Decimal("20000"),
            activity=ParcelActivity.CONSTRUCTION_LEASE,
        )),
        registry.create(owner.id, new_parcel("TF-300", lat=4.5, lng=10.5, price_per_m2=Decimal("1000"))),
    ]


def matricules(parcels):
    return sorted(p.matricule for p in parcels)


def test_list_filters(registry, listed):
    assert matricules(registry.list_parcels(ParcelFilters())) == ["TF-100", "TF-200", "TF-300"]
    assert matricules(registry.list_parcels(ParcelFilters(division="douala i"))) == ["TF-100", "TF-200"]
    assert matricules(registry.list_parcels(ParcelFilters(division="Littoral"))) == ["TF-100", "TF-200"]
    assert registry.list_parcels(ParcelFilters(division="Adamaoua")) == []
    assert matricules(registry.list_parcels(ParcelFilters(activity=ParcelActivity.LAND_SALE))) == ["TF-100"]
    assert matricules(registry.list_parcels(ParcelFilters(is_titled=False))) == ["TF-200", "TF-300"]
    assert matricules(registry.list_parcels(ParcelFilters(price_min=4000, price_max=10000))) == ["TF-100"]
    assert len(registry.list_parcels(ParcelFilters(limit=2))) == 2


def test_soft_delete_hides_from_listings_only(registry, listed):
    removed = registry.soft_delete(listed[0].id)
    assert removed.is_active is False

    assert "TF-100" not in matricules(registry.list_parcels(ParcelFilters()))
    assert registry.search_by_matricule("TF-1") == []
    assert registry.get_by_id(listed[0].id).is_active is False

    # Repeating is harmless
    assert registry.soft_delete(listed[0].id).is_active is False


def test_search_by_matricule(registry, listed):
    assert matricules(registry.search_by_matricule("tf-")) == ["TF-100", "TF-200", "TF-300"]
    assert matricules(registry.search_by_matricule("200")) == ["TF-200"]
    assert registry.search_by_matricule("%") == []
    with pytest.raises(ValidationError):
        registry.search_by_matricule("   ")


def test_get_unknown_parcel(registry):
    with pytest.raises(ParcelNotFound):
        registry.get_by_id(uuid.uuid4())


# =============================================================================
# Updates
# =============================================================================


def test_update_is_partial(registry, listed):
    parcel = registry.update(listed[0].id, ParcelUpdate(price_per_m2=Decimal("7500")))
    assert parcel.price_per_m2 == Decimal("7500")
    assert parcel.matricule == "TF-100"
    assert parcel.activity == ParcelActivity.LAND_SALE.value


def test_update_boundary_relocates(registry, listed, divisions):
    parcel = registry.update(listed[2].id, ParcelUpdate(coordinates=parcel_coords(4.2, 9.2)))
    assert parcel.arrondissement_id == divisions["douala"].id


def test_update_rejects_clearing_required_fields(registry, listed):
    with pytest.raises(ValidationError):
        registry.update(listed[0].id, ParcelUpdate(coordinates=None))
    with pytest.raises(ValidationError):
        registry.update(listed[0].id, ParcelUpdate(matricule=None))


def test_update_of_removed_parcel(registry, listed):
    registry.soft_delete(listed[0].id)
    with pytest.raises(ParcelNotFound):
        registry.update(listed[0].id, ParcelUpdate(neighborhood="Bonapriso"))


# =============================================================================
# Images
# =============================================================================


def test_attach_images_continues_positions(registry, store, listed):
    first = registry.attach_images(listed[0].id, [jpeg("a.jpg"), jpeg("b.jpg")])
    assert [image.position for image in first] == [1, 2]

    second = registry.attach_images(listed[0].id, [jpeg("c.jpg")])
    assert [image.position for image in second] == [3]
    assert second[0].url.startswith(f"memory://parcels/{listed[0].id}/")
    assert len(store.objects) == 3

    data = parcel_to_dict(registry.get_by_id(listed[0].id))
    assert [image["position"] for image in data["images"]] == [1, 2, 3]


@pytest.mark.parametrize(
    "files",
    [
        [],
        [jpeg("1.jpg"), jpeg("2.jpg"), jpeg("3.jpg"), jpeg("4.jpg")],
        [ImageUpload("deed.pdf", "application/pdf", b"%PDF")],
        [jpeg("empty.jpg", size=0)],
        [jpeg("huge.jpg", size=5 * 1024 * 1024 + 1)],
    ],
)
def test_attach_images_rejects_bad_uploads(registry, store, listed, files):
    with pytest.raises(ValidationError):
        registry.attach_images(listed[0].id, files)
    assert store.objects == {}


def test_check_overlaps_delegates_to_spatial_engine(registry, owner, listed):
    registry.create(owner.id, new_parcel("TF-101", lat=4.105, lng=9.105))
    result = registry.check_overlaps(listed[0].id)
    assert [item["matricule"] for item in result.items] == ["TF-101"]
