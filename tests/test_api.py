import pytest

from database import get_db_connection


@pytest.fixture
def dorm(make_community, make_user, communities, library):
    community, owner = make_community(access_code="DORM1", name="Dorm")
    carol = communities.join_community(make_user("Carol", phone="+7 701 555 12 34"), "DORM1")
    book = library.add_book(owner, community.id, "Dune", borrow_days=7)
    return community, owner, carol, book


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "ok"


def test_register_login_and_me(client):
    response = client.post(
        "/api/users/register",
        json={"name": "Alice", "email": "Alice@Example.com", "password": "secret123"},
    )
    assert response.status_code == 201
    assert response.json()["user"]["email"] == "alice@example.com"
    assert "password" not in response.json()["user"]

    login = client.post("/api/users/login", json={"email": "alice@example.com", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["token"]

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Alice"


def test_wrong_password(client, make_user):
    user = make_user("Alice")
    response = client.post("/api/users/login", json={"email": user.email, "password": "nope"})
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_credentials"


def test_duplicate_registration(client, make_user):
    user = make_user("Alice")
    response = client.post("/api/users/register", json={"name": "A", "email": user.email, "password": "x"})
    assert response.status_code == 400
    assert response.json() == {"detail": "This email is already registered.", "code": "email_taken"}


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nonsense"}])
def test_protected_routes_need_a_token(client, headers):
    response = client.get("/api/books", headers=headers)
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"


def test_borrow_and_return(client, auth, dorm):
    _, owner, carol, book = dorm

    borrowed = client.post("/api/books/borrow", json={"book_id": book.id}, headers=auth(carol))
    assert borrowed.status_code == 200
    assert borrowed.json()["holder"]["name"] == "Carol"
    assert borrowed.json()["days_remaining"] == 7

    again = client.post("/api/books/borrow", json={"book_id": book.id}, headers=auth(owner))
    assert again.status_code == 400
    assert again.json()["code"] == "already_borrowed"

    returned = client.post("/api/books/return-my-book", json={"book_id": book.id}, headers=auth(carol))
    assert returned.status_code == 200
    assert returned.json()["is_available"] is True

    history = client.get(f"/api/books/{book.id}/history", headers=auth(owner))
    assert [h["borrower"]["name"] for h in history.json()] == ["Carol"]


def test_return_by_non_holder(client, auth, dorm):
    _, owner, _, book = dorm
    response = client.post("/api/books/return-my-book", json={"book_id": book.id}, headers=auth(owner))
    assert response.status_code == 403
    assert response.json()["code"] == "not_holder"


def test_add_book_permissions(client, auth, dorm):
    community, owner, carol, _ = dorm
    payload = {"community_id": community.id, "title": "Emma", "author": "Jane Austen"}

    assert client.post("/api/books/add", json=payload, headers=auth(carol)).status_code == 403
    created = client.post("/api/books/add", json=payload, headers=auth(owner))
    assert created.status_code == 201
    assert created.json()["borrow_days"] == 14

    missing = client.post("/api/books/add", json={**payload, "community_id": 999}, headers=auth(carol))
    assert missing.status_code == 404


def test_list_books_for_member(client, auth, dorm, clock):
    community, _, carol, book = dorm

    books = client.get("/api/books", headers=auth(carol)).json()
    assert [b["id"] for b in books] == [book.id]

    by_community = client.get(f"/api/books/community/{community.id}", headers=auth(carol))
    assert by_community.status_code == 200
    assert by_community.json()[0]["title"] == "Dune"

    detail = client.get(f"/api/books/{book.id}", headers=auth(carol))
    assert detail.json()["community"]["name"] == "Dorm"


def test_overdue_route_is_admin_only(client, auth, dorm, admin, library, clock):
    _, _, carol, book = dorm
    library.borrow(carol, book.id)
    clock.advance(days=8)

    assert client.get("/api/books/overdue", headers=auth(carol)).status_code == 403
    response = client.get("/api/books/overdue", headers=auth(admin))
    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [book.id]
    assert response.json()[0]["days_remaining"] == -1


def test_admin_assign_return_and_messages(client, auth, dorm, admin):
    _, _, carol, book = dorm

    assigned = client.post("/api/books/assign", json={"book_id": book.id, "user_id": carol.id}, headers=auth(admin))
    assert assigned.status_code == 200
    assert assigned.json()["current_holder_id"] == carol.id

    returned = client.post("/api/books/return", json={"book_id": book.id}, headers=auth(admin))
    assert returned.json()["current_holder_id"] is None

    assert client.get("/api/messages/unread-count", headers=auth(carol)).json() == {"count": 2}
    messages = client.get("/api/messages", headers=auth(carol)).json()
    assert len(messages) == 2

    read = client.put(f"/api/messages/{messages[0]['id']}/read", headers=auth(carol))
    assert read.json()["is_read"] is True
    assert client.get("/api/messages/unread-count", headers=auth(carol)).json() == {"count": 1}
    assert client.put(f"/api/messages/{messages[1]['id']}/read", headers=auth(admin)).status_code == 403


def test_community_lifecycle(client, auth, make_user):
    alice = make_user("Alice")
    bob = make_user("Bob")

    created = client.post(
        "/api/communities/create", json={"name": "Dorm", "access_code": "dorm1"}, headers=auth(alice)
    )
    assert created.status_code == 201
    community_id = created.json()["community"]["id"]
    assert created.json()["user"]["community_id"] == community_id

    duplicate = client.post(
        "/api/communities/create", json={"name": "Copy", "access_code": "DORM1"}, headers=auth(bob)
    )
    assert duplicate.json()["code"] == "duplicate_access_code"

    joined = client.post("/api/users/join-community", json={"access_code": "Dorm1"}, headers=auth(bob))
    assert joined.json()["community_id"] == community_id

    members = client.get(f"/api/communities/{community_id}/members", headers=auth(alice)).json()
    assert [m["name"] for m in members] == ["Alice", "Bob"]

    removed = client.delete(f"/api/communities/{community_id}/members/{bob.id}", headers=auth(alice))
    assert removed.json()["community_id"] is None

    bad_code = client.post("/api/users/join-community", json={"access_code": "NOPE"}, headers=auth(bob))
    assert bad_code.status_code == 404
    assert bad_code.json()["code"] == "invalid_code"

    assert client.delete(f"/api/communities/{community_id}", headers=auth(bob)).status_code == 403
    assert client.delete(f"/api/communities/{community_id}", headers=auth(alice)).status_code == 200


def test_public_communities_need_no_token(client, make_community):
    make_community(name="Dorm", access_code="DORM1")
    response = client.get("/api/communities/public")
    assert response.status_code == 200
    assert response.json()[0]["name"] == "Dorm"
    assert "access_code" not in response.json()[0]


def test_leave_community_while_holding(client, auth, dorm, library):
    _, _, carol, book = dorm
    library.borrow(carol, book.id)
    response = client.post("/api/users/leave-community", headers=auth(carol))
    assert response.status_code == 400
    assert response.json()["code"] == "has_active_loan"


def test_admin_routes(client, auth, dorm, admin):
    _, _, carol, _ = dorm

    added = client.post(
        "/api/users/add",
        json={"name": "Dan", "email": "dan@example.com", "password": "secret123"},
        headers=auth(admin),
    )
    assert added.status_code == 201

    legacy = client.post("/api/communities/add", json={"name": "Old", "access_code": "OLD1"}, headers=auth(admin))
    assert legacy.json()["owner_id"] is None

    found = client.get("/api/search/users", params={"phone": "555 12"}, headers=auth(admin))
    assert [u["name"] for u in found.json()] == ["Carol"]
    assert client.get("/api/search/users", params={"phone": "555"}, headers=auth(carol)).status_code == 403

    stats = client.get("/api/stats", headers=auth(admin))
    assert stats.json()["total_books"] == 1
    assert client.get("/api/stats", headers=auth(carol)).status_code == 403

    users = client.get("/api/users", headers=auth(admin)).json()
    assert "Dan" in [u["name"] for u in users]
    assert client.get("/api/communities", headers=auth(admin)).json()[-1]["name"] == "Old"


def test_profile_and_account_deletion(client, auth, make_user):
    alice = make_user("Alice")

    updated = client.put("/api/users/profile", json={"phone": "+1 555 0100"}, headers=auth(alice))
    assert updated.json()["phone"] == "+1 555 0100"

    assert client.delete(f"/api/users/{alice.id}", headers=auth(alice)).status_code == 200
    assert client.get("/api/users/me", headers=auth(alice)).status_code == 401


def test_delete_book_route(client, auth, dorm):
    _, owner, carol, book = dorm
    assert client.delete(f"/api/books/{book.id}", headers=auth(carol)).status_code == 403
    assert client.delete(f"/api/books/{book.id}", headers=auth(owner)).status_code == 200
    assert client.get(f"/api/books/{book.id}", headers=auth(owner)).status_code == 404


def test_oversized_borrow_period_rejected(client, auth, dorm):
    community, owner, carol, _ = dorm
    payload = {"community_id": community.id, "title": "Emma", "borrow_days": 5_000_000}

    response = client.post("/api/books/add", json=payload, headers=auth(owner))
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert len(client.get("/api/books", headers=auth(carol)).json()) == 1


def test_listing_survives_out_of_range_stored_period(client, auth, dorm, db_file, library):
    _, _, carol, book = dorm
    conn = get_db_connection(db_file)
    try:
        conn.execute("UPDATE books SET borrow_days = ? WHERE id = ?", (5_000_000, book.id))
    finally:
        conn.close()
    library.borrow(carol, book.id)

    response = client.get("/api/books", headers=auth(carol))
    assert response.status_code == 200
    assert response.json()[0]["due_at"] is None
    assert client.get(f"/api/books/{book.id}", headers=auth(carol)).status_code == 200


@pytest.mark.parametrize("book_id", [0, 2 ** 63])
def test_out_of_range_ids_rejected(client, auth, dorm, book_id):
    _, _, carol, _ = dorm

    borrowed = client.post("/api/books/borrow", json={"book_id": book_id}, headers=auth(carol))
    assert borrowed.status_code == 400
    assert borrowed.json()["code"] == "validation_error"

    detail = client.get(f"/api/books/{book_id}", headers=auth(carol))
    assert detail.status_code == 400
    assert detail.json()["code"] == "validation_error"


def test_malformed_payload_uses_error_body(client, auth, dorm):
    community, owner, _, _ = dorm
    response = client.post("/api/books/add", json={"community_id": community.id}, headers=auth(owner))

    assert response.status_code == 400
    assert set(response.json()) == {"detail", "code"}
    assert response.json()["code"] == "validation_error"
    assert response.json()["detail"].startswith("title: ")
