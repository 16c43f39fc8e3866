"""End-to-end lending flows across accounts, communities and the catalog."""

import pytest

from database import get_db_connection
from errors import AlreadyBorrowed, AlreadyHoldingBook, Forbidden, HasActiveLoan


def test_dorm_lending_round(accounts, communities, library, clock):
    alice = accounts.register("Alice", "alice@example.com", "secret123")
    community, alice = communities.create_community(alice, "Dorm", "DORM1")
    assert community.owner_id == alice.id
    assert alice.community_id == community.id

    b1 = library.add_book(alice, community.id, "B1", borrow_days=7)
    b2 = library.add_book(alice, community.id, "B2")

    carol = communities.join_community(accounts.register("Carol", "carol@example.com", "secret123"), "DORM1")
    borrowed = library.borrow(carol, b1.id)
    assert borrowed.current_holder_id == carol.id
    assert borrowed.borrowed_at == clock().isoformat()

    with pytest.raises(AlreadyHoldingBook):
        library.borrow(carol, b2.id)
    assert library.get_book(carol, b2.id).current_holder_id is None

    clock.advance(days=2)
    returned = library.return_my_book(carol, b1.id)
    assert returned.current_holder_id is None
    history = library.book_history(alice, b1.id)
    assert len(history) == 1
    assert history[0].user_id == carol.id

    assert library.borrow(carol, b2.id).current_holder_id == carol.id


def test_outsider_cannot_stock_a_community(accounts, communities, library, db_file):
    alice = accounts.register("Alice", "alice@example.com", "secret123")
    community, _ = communities.create_community(alice, "Dorm", "DORM1")
    ursula = accounts.register("Ursula", "ursula@example.com", "secret123")

    with pytest.raises(Forbidden):
        library.add_book(ursula, community.id, "Contraband")

    conn = get_db_connection(db_file)
    try:
        assert conn.execute("SELECT COUNT(*) FROM books").fetchone()[0] == 0
    finally:
        conn.close()


def test_loan_pins_membership_until_returned(accounts, communities, library):
    alice = accounts.register("Alice", "alice@example.com", "secret123")
    community, alice = communities.create_community(alice, "Dorm", "DORM1")
    bob = communities.join_community(accounts.register("Bob", "bob@example.com", "secret123"), "dorm1")
    book = library.add_book(alice, community.id, "Dune")
    library.borrow(bob, book.id)

    with pytest.raises(HasActiveLoan):
        communities.leave_community(bob)
    with pytest.raises(HasActiveLoan):
        communities.remove_member(alice, community.id, bob.id)
    with pytest.raises(HasActiveLoan):
        communities.delete_community(alice, community.id)

    library.return_my_book(bob, book.id)
    assert communities.leave_community(bob).community_id is None


def test_at_most_one_holder_per_book(accounts, communities, library):
    alice = accounts.register("Alice", "alice@example.com", "secret123")
    community, alice = communities.create_community(alice, "Dorm", "DORM1")
    members = [
        communities.join_community(accounts.register(name, f"{name.lower()}@example.com", "secret123"), "DORM1")
        for name in ("Bob", "Carol", "Dave")
    ]
    book = library.add_book(alice, community.id, "Dune")

    library.borrow(members[0], book.id)
    for member in members[1:]:
        with pytest.raises(AlreadyBorrowed):
            library.borrow(member, book.id)

    holders = {b.current_holder_id for b in library.all_books()}
    assert holders == {members[0].id}
