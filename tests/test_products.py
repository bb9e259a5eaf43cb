def _make_admin(mongo_db):
    mongo_db["user"].update_one({"email": "alice@example.com"}, {"$set": {"role": 1}})


def test_create_product_requires_admin(client, auth_headers):
    res = client.post("/products", json={"title": "Lamp", "price": 30}, headers=auth_headers)
    assert res.status_code == 403


def test_admin_creates_product(client, auth_headers, mongo_db):
    _make_admin(mongo_db)
    res = client.post("/products", json={"title": "Lamp", "price": 30}, headers=auth_headers)
    assert res.status_code == 201
    body = res.json()
    assert body["sold"] == 0
    assert body["writer"] == str(mongo_db["user"].find_one()["_id"])

    res = client.get(f"/products/{body['_id']}")
    assert res.status_code == 200
    assert res.json()["title"] == "Lamp"
    assert res.json()["views"] == 1
    assert res.json()["writer"]["name"] == "Alice"


def test_get_unknown_product(client, mongo_db):
    assert client.get("/products/64b000000000000000000000").status_code == 404


def test_list_products_by_ids_keeps_order(client, products):
    res = client.get("/products", params={"ids": "B,missing,A"})
    assert res.status_code == 200
    assert [p["_id"] for p in res.json()] == ["B", "A"]


def test_list_all_products(client, products):
    res = client.get("/products")
    assert sorted(p["_id"] for p in res.json()) == ["A", "B"]


def test_unique_email_index(client, mongo_db):
    info = mongo_db["user"].index_information()
    assert any(idx.get("unique") for idx in info.values())


def test_get_product_stored_with_string_hex_id(client, mongo_db):
    hex_id = "c" * 24
    mongo_db["product"].insert_one({"_id": hex_id, "title": "Hex", "price": 1})
    res = client.get(f"/products/{hex_id}")
    assert res.status_code == 200
    assert res.json()["_id"] == hex_id
