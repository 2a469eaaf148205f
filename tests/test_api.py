import importlib.util
import json
import uuid

import pytest

from geofoncier.payments import generate_signature

from conftest import ADMIN_HEADERS, WEBHOOK_SECRET, parcel_coords, square


def as_user(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def parcel_id(client, owner, divisions):
    response = client.post(
        "/api/parcels",
        json={"matricule": "TF-API-1", "coordinates": parcel_coords(4.1, 9.1), "price_per_m2": 12000},
        headers=as_user(owner),
    )
    assert response.status_code == 201
    return response.json()["parcel"]["id"]


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "GéoFoncier API", "spatial_backend": "shapely"}


# =============================================================================
# Auth and error envelope
# =============================================================================


def test_admin_routes_need_the_admin_token(client):
    payload = {"name": "Sud", "boundary": square(11, 2, 12, 3)}

    missing = client.post("/api/regions", json=payload)
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": "Admin token required", "code": "unauthorized"}

    wrong = client.post("/api/regions", json=payload, headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 403
    assert wrong.json()["code"] == "forbidden"


@pytest.mark.parametrize("headers", [{}, {"X-User-Id": "not-a-uuid"}])
def test_user_routes_need_an_identity(client, divisions, headers):
    response = client.post(
        "/api/parcels", json={"matricule": "TF-1", "coordinates": parcel_coords(4.1, 9.1)}, headers=headers
    )
    assert response.status_code == 401
    assert response.json()["success"] is False
    assert response.json()["code"] == "unauthorized"


def test_request_validation_uses_the_envelope(client):
    response = client.post("/api/regions", json={"name": ""}, headers=ADMIN_HEADERS)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "validation_error"
    assert "name" in body["error"]


def test_domain_errors_map_to_status_codes(client, divisions):
    assert client.get("/api/regions/9999").json()["code"] == "division_not_found"
    assert client.get("/api/regions/9999").status_code == 404

    response = client.get("/api/spatial/parcels-in-bounds", params={"north": 4, "south": 5, "east": 10, "west": 9})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_bounds"

    response = client.delete(f"/api/regions/{divisions['littoral'].id}", headers=ADMIN_HEADERS)
    assert response.status_code == 409
    assert response.json()["code"] == "has_dependents"


# =============================================================================
# Users and divisions
# =============================================================================


def test_profile_round_trip(client):
    user_id = str(uuid.uuid4())
    headers = {"X-User-Id": user_id}
    assert client.get("/api/users/me", headers=headers).status_code == 404

    response = client.put(
        "/api/users/me",
        json={"full_name": "Chantal Owner", "email": "chantal@example.cm", "user_type": "owner"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["user"]["id"] == user_id

    assert client.get("/api/users/me", headers=headers).json()["user"]["user_type"] == "owner"


def test_region_crud(client):
    created = client.post(
        "/api/regions", json={"name": "Sud", "boundary": square(11, 2, 12, 3)}, headers=ADMIN_HEADERS
    )
    assert created.status_code == 201
    region = created.json()["region"]
    assert region["boundary"]["type"] == "Polygon"

    duplicate = client.post("/api/regions", json={"name": "SUD"}, headers=ADMIN_HEADERS)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_name"

    renamed = client.put(f"/api/regions/{region['id']}", json={"name": "Sud-Ouest"}, headers=ADMIN_HEADERS)
    assert renamed.json()["region"]["name"] == "Sud-Ouest"
    assert renamed.json()["region"]["boundary"] is not None

    listing = client.get("/api/regions").json()
    assert listing["count"] == 1

    deleted = client.delete(f"/api/regions/{region['id']}", headers=ADMIN_HEADERS)
    assert deleted.json() == {"success": True, "deleted": region["id"]}
    assert client.get("/api/regions").json()["count"] == 0


def test_region_detail_and_lists(client, divisions):
    detail = client.get(f"/api/regions/{divisions['littoral'].id}").json()["region"]
    assert detail["departments"][0]["arrondissements"][0]["name"] == "Douala I"

    departments = client.get("/api/departments", params={"region_id": divisions["littoral"].id}).json()
    assert [d["name"] for d in departments["departments"]] == ["Wouri"]

    arrondissements = client.get("/api/arrondissements", params={"department_id": divisions["wouri"].id}).json()
    assert arrondissements["count"] == 1

    assert client.get("/api/divisions").json()["count"] == 2
    assert client.get("/api/regions/cached").json()["source"] == "live"


# =============================================================================
# Spatial
# =============================================================================


def test_locate_and_nearest(client, divisions):
    located = client.get("/api/spatial/locate", params={"longitude": 9.1, "latitude": 4.1}).json()
    assert located["arrondissement"]["name"] == "Douala I"

    outside = client.get("/api/spatial/locate", params={"longitude": 0, "latitude": 0})
    assert outside.status_code == 404
    assert outside.json()["code"] == "no_containing_division"

    nearest = client.get("/api/spatial/nearest", params={"longitude": 9.5, "latitude": 4.5}).json()
    assert nearest["division"]["name"] == "Littoral"


def test_parcel_searches(client, parcel_id):
    in_bounds = client.get(
        "/api/spatial/parcels-in-bounds", params={"north": 5, "south": 4, "east": 10, "west": 9}
    ).json()
    assert in_bounds["count"] == 1
    assert in_bounds["dropped"] == 0
    assert in_bounds["items"][0]["id"] == parcel_id

    in_region = client.get("/api/regions/by-name/littoral/parcels").json()
    assert in_region["region"]["name"] == "Littoral"
    assert in_region["count"] == 1

    assert client.get("/api/spatial/border-parcels", params={"distance": 100}).json()["count"] == 0
    assert client.get(f"/api/parcels/{parcel_id}/overlaps").json()["count"] == 0


def test_export_is_geojson(client, divisions):
    response = client.get("/api/export/regions")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/geo+json")
    assert response.json()["metadata"]["total_features"] == 2


def test_import_reports_each_feature(client, divisions):
    collection = {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "geometry": square(11, 2, 12, 3), "properties": {"name": "Sud"}},
            {"type": "Feature", "geometry": square(9, 4, 10, 5.5), "properties": {"name": "littoral"}},
            {"type": "Feature", "geometry": square(0, 0, 1, 1), "properties": {}},
        ],
    }
    body = client.post("/api/import/regions", json=collection, headers=ADMIN_HEADERS).json()
    assert body["success"] is False
    assert [r["name"] for r in body["created"]] == ["Sud"]
    assert [r["name"] for r in body["updated"]] == ["Littoral"]
    assert body["failed"] == [{"index": 2, "name": None, "error": body["failed"][0]["error"], "code": "missing_name"}]


def test_admin_maintenance(client, parcel_id):
    refreshed = client.post("/api/admin/refresh-cache", headers=ADMIN_HEADERS).json()
    assert refreshed == {"success": True, "regions": 2, "source": "in_process"}
    assert client.get("/api/regions/cached").json()["source"] == "cache"

    optimized = client.post("/api/admin/optimize-geometries", headers=ADMIN_HEADERS).json()
    assert optimized["tolerance"] == 0.001
    assert optimized["count"] == 2

    assert client.get("/api/admin/validate", headers=ADMIN_HEADERS).json()["count"] == 0
    report = client.get("/api/admin/report", headers=ADMIN_HEADERS).json()["report"]
    assert report["totals"]["active_parcels"] == 1
    assert client.get("/api/admin/cleanup-report", headers=ADMIN_HEADERS).json()["total_issues"] == 0
    assert client.get("/api/admin/stats", headers=ADMIN_HEADERS).json()["stats"]["divisions"]["regions"] == 2


def test_regions_near_point(client, divisions):
    body = client.post(
        "/api/spatial/search/regions-near-point", json={"longitude": 9.1, "latitude": 4.1, "radius_km": 150}
    ).json()
    assert body["radius_km"] == 150
    assert [r["name"] for r in body["items"]] == ["Littoral", "Centre"]
    assert body["dropped"] == 0

    default = client.post("/api/spatial/search/regions-near-point", json={"longitude": 9.1, "latitude": 4.1})
    assert [r["name"] for r in default.json()["items"]] == ["Littoral"]

    bad = client.post(
        "/api/spatial/search/regions-near-point", json={"longitude": 9.1, "latitude": 4.1, "radius_km": 0}
    )
    assert bad.status_code == 400
    assert bad.json()["code"] == "validation_error"


def test_compare_regions(client, parcel_id, divisions):
    ids = [divisions["centre"].id, divisions["littoral"].id]
    assert client.post("/api/admin/compare-regions", json={"region_ids": ids}).status_code == 401

    comparison = client.post(
        "/api/admin/compare-regions", json={"region_ids": ids}, headers=ADMIN_HEADERS
    ).json()["comparison"]
    assert [r["name"] for r in comparison] == ["Centre", "Littoral"]
    assert comparison[1]["active_parcel_count"] == 1

    single = client.post("/api/admin/compare-regions", json={"region_ids": ids[:1]}, headers=ADMIN_HEADERS)
    assert single.status_code == 400
    unknown = client.post(
        "/api/admin/compare-regions", json={"region_ids": [ids[0], 9999]}, headers=ADMIN_HEADERS
    )
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "division_not_found"


# =============================================================================
# Parcels
# =============================================================================


def test_only_owner_or_admin_edits_a_parcel(client, owner, buyer, parcel_id):
    forbidden = client.put(f"/api/parcels/{parcel_id}", json={"neighborhood": "Akwa"}, headers=as_user(buyer))
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden"

    updated = client.put(f"/api/parcels/{parcel_id}", json={"neighborhood": "Akwa"}, headers=as_user(owner))
    assert updated.json()["parcel"]["neighborhood"] == "Akwa"

    by_admin = client.put(f"/api/parcels/{parcel_id}", json={"price_per_m2": 9000}, headers=ADMIN_HEADERS)
    assert by_admin.json()["parcel"]["price_per_m2"] == 9000.0


def test_soft_delete_over_http(client, owner, parcel_id):
    deleted = client.delete(f"/api/parcels/{parcel_id}", headers=as_user(owner))
    assert deleted.json()["parcel"]["is_active"] is False

    assert client.get("/api/parcels").json()["count"] == 0
    assert client.get(f"/api/parcels/{parcel_id}").json()["parcel"]["is_active"] is False


def test_list_and_search(client, parcel_id):
    assert client.get("/api/parcels", params={"division": "Wouri"}).json()["count"] == 1
    assert client.get("/api/parcels", params={"division": "Centre"}).json()["count"] == 0
    assert client.get("/api/parcels/search", params={"q": "api"}).json()["parcels"][0]["id"] == parcel_id


def test_image_upload(client, store, owner, parcel_id):
    response = client.post(
        f"/api/parcels/{parcel_id}/images",
        files=[
            ("files", ("front.jpg", b"\xff\xd8\xff", "image/jpeg")),
            ("files", ("back.png", b"\x89PNG", "image/png")),
        ],
        headers=as_user(owner),
    )
    assert response.status_code == 201
    assert [image["position"] for image in response.json()["images"]] == [1, 2]
    assert len(store.objects) == 2

    rejected = client.post(
        f"/api/parcels/{parcel_id}/images",
        files=[("files", ("notes.txt", b"hello", "text/plain"))],
        headers=as_user(owner),
    )
    assert rejected.status_code == 400


# =============================================================================
# Brokerage
# =============================================================================


def test_contact_flow(client, notifier, buyer, owner, parcel_id):
    created = client.post("/api/contacts", json={"parcel_id": parcel_id}, headers=as_user(buyer))
    assert created.status_code == 201
    contact = created.json()["contact"]
    assert contact["status"] == "pending"
    assert notifier.sent[-1]["to"] == "admin@geofoncier.test"

    approved = client.post(f"/api/contacts/{contact['id']}/approve", headers=ADMIN_HEADERS)
    assert approved.status_code == 200
    assert approved.json()["contact"]["status"] == "accepted"
    assert approved.json()["fees"] == {"client_percent": 3, "owner_percent": 2}
    assert notifier.sent[-1]["to"] == "client@example.cm"

    again = client.post(f"/api/contacts/{contact['id']}/reject", headers=ADMIN_HEADERS)
    assert again.status_code == 409
    assert again.json()["code"] == "already_resolved"

    assert client.get("/api/contacts/history", headers=as_user(owner)).json()["count"] == 1
    pending = client.get("/api/admin/contacts", params={"status": "pending"}, headers=ADMIN_HEADERS).json()
    assert pending["count"] == 0


# =============================================================================
# Payments
# =============================================================================


def initiate(client, user):
    response = client.post(
        "/api/payments/initiate",
        json={
            "plan_type": "owner_area",
            "declared_area_m2": 500,
            "customer": {"email": user.email, "name": user.full_name},
        },
        headers=as_user(user),
    )
    assert response.status_code == 201
    return response.json()["payment_config"]["tx_ref"]


def post_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode()
    signature = signature or generate_signature(body, WEBHOOK_SECRET)
    return client.post(
        "/api/payments/webhook",
        content=body,
        headers={"verif-hash": signature, "Content-Type": "application/json"},
    )


def test_webhook_activates_subscription(client, gateway, owner):
    tx_ref = initiate(client, owner)
    gateway.verified.add("4242")

    response = post_webhook(client, {"data": {"id": 4242, "tx_ref": tx_ref, "status": "successful"}})
    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert response.json()["changed"] is True

    replay = post_webhook(client, {"data": {"id": 4242, "tx_ref": tx_ref, "status": "successful"}})
    assert replay.json()["changed"] is False

    history = client.get("/api/payments/history", headers=as_user(owner)).json()
    assert history["active"] is True
    assert history["count"] == 1


def test_webhook_rejects_bad_signature(client, gateway, owner):
    tx_ref = initiate(client, owner)
    forged = generate_signature(b"something else", WEBHOOK_SECRET)

    response = post_webhook(client, {"data": {"id": 1, "tx_ref": tx_ref, "status": "successful"}}, forged)
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_signature"
    assert gateway.calls == []


def test_payment_needs_a_profile(client):
    response = client.post(
        "/api/payments/initiate",
        json={"plan_type": "client_monthly_africa", "customer": {"email": "x@example.cm", "name": "X"}},
        headers={"X-User-Id": str(uuid.uuid4())},
    )
    assert response.status_code == 404


def test_pricing_endpoints(client):
    owner = client.get("/api/pricing/owner", params={"area_m2": 500}).json()["pricing"]
    assert owner["monthly_price"] == 2000

    plans = client.get("/api/pricing/client").json()["plans"]
    assert plans["world"]["monthly"]["price"] == 50000

    simulation = client.post(
        "/api/pricing/simulate", json={"user_type": "owner", "period": "annual", "area_m2": 8000}
    ).json()["simulation"]
    assert simulation["amount"] == 97200


# =============================================================================
# Documents
# =============================================================================


def test_document_upload_and_review(client, owner, buyer, parcel_id):
    form = {"target": "parcel", "target_id": parcel_id, "document_type": "land_deed"}
    uploaded = client.post(
        "/api/documents",
        data=form,
        files={"file": ("deed.pdf", b"%PDF-1.7", "application/pdf")},
        headers=as_user(owner),
    )
    assert uploaded.status_code == 201
    document = uploaded.json()["document"]

    stranger = client.get(f"/api/documents/parcel/{parcel_id}", headers=as_user(buyer))
    assert stranger.status_code == 403
    assert client.get(f"/api/documents/parcel/{parcel_id}", headers=as_user(owner)).json()["count"] == 1

    assert client.get("/api/admin/documents/pending", headers=ADMIN_HEADERS).json()["count"] == 1
    verified = client.post(
        f"/api/admin/documents/{document['id']}/verify", json={"notes": "OK"}, headers=ADMIN_HEADERS
    )
    assert verified.json()["document"]["status"] == "verified"
    assert verified.json()["document"]["review_notes"] == "OK"

    types = client.get("/api/documents/types").json()["types"]
    assert "land_deed" in {t["value"] for t in types["parcel"]}


def test_document_completeness_and_statistics(client, owner, buyer, parcel_id):
    path = f"/api/documents/check-completeness/parcel/{parcel_id}"
    assert client.get(path, headers=as_user(buyer)).status_code == 403

    before = client.get(path, headers=as_user(owner)).json()
    assert before["is_complete"] is False
    assert before["missing"] == ["land_deed"]

    client.post(
        "/api/documents",
        data={"target": "parcel", "target_id": parcel_id, "document_type": "land_deed"},
        files={"file": ("deed.pdf", b"%PDF-1.7", "application/pdf")},
        headers=as_user(owner),
    )
    assert client.get(path, headers=as_user(owner)).json()["is_complete"] is True

    assert client.get("/api/documents/statistics").status_code == 401
    stats = client.get("/api/documents/statistics", headers=ADMIN_HEADERS).json()["statistics"]
    assert stats["total"] == 1
    assert stats["by_status"] == {"pending": 1}


def test_importing_the_app_module_builds_nothing(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "nosuchdialect://nowhere")
    found = importlib.util.find_spec("geofoncier.main")
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)
    assert not hasattr(module, "app")
    assert callable(module.create_app)
