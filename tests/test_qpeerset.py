import hashlib

import pytest

from kaddht.qpeerset import PeerState, QueryPeerset, key_distance, xor_key

KEY = "test"


def _ordered_peers(count):
    target = xor_key(KEY)
    candidates = [f"peer-{i}".encode() for i in range(64)]
    candidates.sort(key=lambda p: key_distance(xor_key(p), target))
    return candidates[:count]


def test_qpeerset():
    qp = QueryPeerset(KEY)
    # KEY < peer3 < peer1 < peer4 < peer2
    peer3, peer1, peer4, peer2 = _ordered_peers(4)
    oracle = b"oracle"

    with pytest.raises(KeyError):
        qp.get_state(peer2)

    assert qp.try_add(peer2, oracle) is True
    assert qp.get_state(peer2) == PeerState.HEARD
    assert qp.try_add(peer2, oracle) is False
    assert qp.num_waiting() == 0

    assert qp.try_add(peer4, oracle) is True
    states = (PeerState.HEARD, PeerState.WAITING, PeerState.QUERIED)
    assert qp.closest_n_in_states(2, *states) == [peer4, peer2]
    assert qp.closest_n_in_states(3, *states) == [peer4, peer2]
    assert qp.closest_n_in_states(1, *states) == [peer4]

    qp.set_state(peer4, PeerState.UNREACHABLE)
    assert qp.closest_n_in_states(1, *states) == [peer2]

    assert qp.try_add(peer1, oracle) is True
    assert qp.closest_n_in_states(1, *states) == [peer1]
    assert qp.closest_n_in_states(2, *states) == [peer1, peer2]

    qp.set_state(peer2, PeerState.WAITING)
    assert qp.closest_in_states(PeerState.WAITING) == [peer2]

    assert qp.closest_in_states(PeerState.HEARD) == [peer1]
    assert qp.try_add(peer3, oracle) is True
    assert qp.closest_in_states(PeerState.HEARD) == [peer3, peer1]
    assert qp.num_heard() == 2


def test_referrer_is_kept():
    qp = QueryPeerset(KEY)
    qp.try_add(b"a", b"referrer")
    qp.try_add(b"a", b"other")
    assert qp.get_referrer(b"a") == b"referrer"
    assert len(qp) == 1
    assert b"a" in qp


def test_missing_peer_errors():
    qp = QueryPeerset(KEY)
    with pytest.raises(KeyError):
        qp.set_state(b"missing", PeerState.WAITING)
    with pytest.raises(KeyError):
        qp.get_referrer(b"missing")


def test_negative_count_rejected():
    qp = QueryPeerset(KEY)
    with pytest.raises(ValueError):
        qp.closest_n_in_states(-1, PeerState.HEARD)


def test_no_states_gives_nothing():
    qp = QueryPeerset(KEY)
    qp.try_add(b"a", b"r")
    assert qp.closest_in_states() == []


def test_xor_key_is_sha256():
    assert xor_key(b"").hex() == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert xor_key("abc") == xor_key(b"abc") == hashlib.sha256(b"abc").digest()


def test_key_distance_properties():
    a, b = xor_key(b"a"), xor_key(b"b")
    assert key_distance(a, a) == 0
    assert key_distance(a, b) == key_distance(b, a)
    assert key_distance(a, b) > 0
    with pytest.raises(ValueError):
        key_distance(a, b"short")