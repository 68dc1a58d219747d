import pytest

from boxoffice.load_client import Result, Stats


@pytest.fixture
def stats():
    s = Stats()
    s.add(Result(outcome="CREATED", quantity=2))
    s.add(Result(outcome="CREATED", quantity=1))
    s.add(Result(outcome="SOLD_OUT"))
    return s


def test_ledger_holds_when_sold_matches_created(stats):
    assert stats.ledger_holds({"sold": 3, "capacity": 3})


@pytest.mark.parametrize("sold,capacity", [
    (4, 5),  # phantom reservation
    (2, 5),  # lost reservation
    (3, 2),  # oversold
])
def test_ledger_mismatch(stats, sold, capacity):
    assert not stats.ledger_holds({"sold": sold, "capacity": capacity})
