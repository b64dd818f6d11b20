"""
Tests for session serialization.
"""

from aad_signin.auth.session import deserialize_user, serialize_user
from aad_signin.auth.verify import verify_user
from aad_signin.models import UserProfile
from aad_signin.users import InMemoryUserRepository


def test_serialize_returns_oid():
    assert serialize_user(UserProfile(oid="abc", display_name="Test User")) == "abc"


def test_round_trip_for_registered_user():
    repository = InMemoryUserRepository()
    user = repository.insert(UserProfile(oid="abc"))

    assert deserialize_user(serialize_user(user), repository) is user


def test_unknown_oid_deserializes_to_none():
    repository = InMemoryUserRepository()

    assert deserialize_user("not-registered", repository) is None
    assert deserialize_user(None, repository) is None
    assert deserialize_user("", repository) is None


def test_sign_in_scenario():
    """{oid: "abc"} -> verify -> one entry -> session "abc" -> same profile back"""
    repository = InMemoryUserRepository()

    result = verify_user(repository, "https://issuer", "sub", {"oid": "abc"})
    assert [user.oid for user in repository.all()] == ["abc"]

    session_value = serialize_user(result.user)
    assert session_value == "abc"

    assert deserialize_user(session_value, repository) is result.user
