"""API tests for the stock service, run against a throwaway SQLite file."""

import uuid


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert r.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_stock_snapshot_omits_unknown_ids(client, seeded):
    unknown = uuid.uuid4()
    r = client.get(
        "/stock",
        params=[("variant_id", str(seeded["tee_m"])), ("variant_id", str(seeded["tee_xl"])), ("variant_id", str(unknown))],
    )
    assert r.status_code == 200
    assert r.json()["stock"] == {str(seeded["tee_m"]): 20, str(seeded["tee_xl"]): 0}


def test_stock_snapshot_without_ids_is_empty(client, seeded):
    r = client.get("/stock")
    assert r.status_code == 200
    assert r.json() == {"stock": {}}


def test_inventory_requires_admin_token(client, seeded):
    assert client.get("/inventory").status_code == 401
    assert client.get("/inventory", headers={"X-Admin-Token": "wrong"}).status_code == 401


def test_inventory_listing_status_and_stats(client, seeded, admin_headers):
    r = client.get("/inventory", headers=admin_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["stats"] == {"total": 4, "ok": 2, "low": 1, "out": 1}

    rows = {row["variantId"]: row for row in data["inventory"]}
    assert rows[str(seeded["tee_m"])]["variantLabel"] == "M / Black"
    assert rows[str(seeded["tee_l"])]["status"] == "low"
    assert rows[str(seeded["tee_xl"])]["status"] == "out"
    assert rows[str(seeded["mug"])]["variantLabel"] == "Default"
    # ordered by product name
    assert data["inventory"][0]["productName"] == "Mug"


def test_inventory_filter_low(client, seeded, admin_headers):
    r = client.get("/inventory", params={"filter": "low"}, headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert [row["variantId"] for row in body["inventory"]] == [str(seeded["tee_l"])]
    # stats always describe the whole catalogue
    assert body["stats"]["total"] == 4


def test_inventory_filter_rejects_unknown_value(client, seeded, admin_headers):
    r = client.get("/inventory", params={"filter": "nope"}, headers=admin_headers)
    assert r.status_code == 422


def test_patch_levels(client, seeded, admin_headers, inventory):
    r = client.patch(
        "/inventory",
        json={"updates": [
            {"variantId": str(seeded["tee_xl"]), "stock": 12},
            {"variantId": str(seeded["mug"]), "minStock": 10},
        ]},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json() == {"updated": 2, "message": "Updated 2 variant(s)"}
    assert inventory.snapshot([seeded["tee_xl"], seeded["mug"]]) == {
        str(seeded["tee_xl"]): 12,
        str(seeded["mug"]): 7,
    }


def test_patch_levels_rejects_negative_stock(client, seeded, admin_headers):
    r = client.patch(
        "/inventory",
        json={"updates": [{"variantId": str(seeded["tee_m"]), "stock": -1}]},
        headers=admin_headers,
    )
    assert r.status_code == 422


def test_patch_levels_unknown_variant_writes_nothing(client, seeded, admin_headers, inventory):
    r = client.patch(
        "/inventory",
        json={"updates": [
            {"variantId": str(seeded["tee_m"]), "stock": 1},
            {"variantId": str(uuid.uuid4()), "stock": 1},
        ]},
        headers=admin_headers,
    )
    assert r.status_code == 404
    assert inventory.snapshot([seeded["tee_m"]]) == {str(seeded["tee_m"]): 20}


def test_restock_adds_units(client, seeded, admin_headers):
    r = client.post("/restock", json={"variantId": str(seeded["tee_xl"]), "quantity": 5}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"variantId": str(seeded["tee_xl"]), "stock": 5}


def test_restock_unknown_variant(client, seeded, admin_headers):
    r = client.post("/restock", json={"variantId": str(uuid.uuid4()), "quantity": 5}, headers=admin_headers)
    assert r.status_code == 404


def test_restock_requires_positive_quantity(client, seeded, admin_headers):
    r = client.post("/restock", json={"variantId": str(seeded["tee_m"]), "quantity": 0}, headers=admin_headers)
    assert r.status_code == 422
