"""
Tests for the user directory and the verify callback.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from aad_signin.auth.exceptions import IdentityClaimMissing
from aad_signin.auth.verify import AuthResult, build_verify_callback, verify_user
from aad_signin.models import UserProfile
from aad_signin.users import InMemoryUserRepository, find_user


ISSUER = "https://login.microsoftonline.com/test-tenant-id/v2.0"


def make_profile(oid="abc", **extra):
    profile = {
        "oid": oid,
        "sub": "sub-" + str(oid),
        "displayName": "Test User",
        "name": {"givenName": "Test", "familyName": "User"},
        "email": "test.user@contoso.com",
    }
    profile.update(extra)
    return profile


# ============================================================================
# User Directory
# ============================================================================

class TestInMemoryUserRepository:
    """Test suite for the in-memory directory"""

    def test_starts_empty(self):
        repository = InMemoryUserRepository()

        assert len(repository) == 0
        assert repository.find("abc") is None
        assert find_user(repository, "abc") is None

    def test_insert_then_find_returns_stored_instance(self):
        repository = InMemoryUserRepository()
        user = UserProfile(oid="abc")

        repository.insert(user)

        assert repository.find("abc") is user

    def test_duplicate_insert_is_rejected(self):
        repository = InMemoryUserRepository()
        repository.insert(UserProfile(oid="abc"))

        with pytest.raises(ValueError):
            repository.insert(UserProfile(oid="abc", display_name="Other"))

        assert len(repository) == 1

    def test_find_or_insert(self):
        repository = InMemoryUserRepository()
        first = UserProfile(oid="abc")

        assert repository.find_or_insert(first) == (first, True)
        assert repository.find_or_insert(UserProfile(oid="abc")) == (first, False)
        assert repository.all() == [first]

    def test_insertion_order_is_kept(self):
        repository = InMemoryUserRepository()
        for oid in ["c", "a", "b"]:
            repository.insert(UserProfile(oid=oid))

        assert [user.oid for user in repository.all()] == ["c", "a", "b"]

    def test_concurrent_registrations_are_not_lost(self):
        repository = InMemoryUserRepository()
        profiles = [UserProfile(oid=f"user-{i}") for i in range(200)]

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(repository.find_or_insert, profiles))

        assert len(repository) == 200

    def test_concurrent_registrations_of_same_user(self):
        repository = InMemoryUserRepository()

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(repository.find_or_insert, [UserProfile(oid="abc") for _ in range(50)]))

        assert len(repository) == 1
        assert sum(1 for _, created in results if created) == 1

    def test_stored_profile_is_immutable(self):
        user = UserProfile(oid="abc")

        with pytest.raises(Exception):
            user.oid = "changed"


# ============================================================================
# Verify Callback
# ============================================================================

class TestVerifyUser:
    """Test suite for the verify callback"""

    def test_first_sign_in_registers_user(self):
        repository = InMemoryUserRepository()

        result = verify_user(repository, ISSUER, "sub-abc", make_profile("abc"))

        assert result.ok
        assert result.created
        assert result.user.oid == "abc"
        assert result.user.display_name == "Test User"
        assert result.user.given_name == "Test"
        assert repository.find("abc") is result.user

    def test_registration_is_idempotent(self):
        repository = InMemoryUserRepository()

        first = verify_user(repository, ISSUER, "sub-abc", make_profile("abc"))
        second = verify_user(repository, ISSUER, "sub-abc", make_profile("abc", displayName="Renamed"))

        assert first.ok and second.ok
        assert not second.created
        assert len(repository) == 1
        assert second.user is first.user
        assert second.user.display_name == "Test User"

    @pytest.mark.parametrize("oid", [None, ""])
    def test_missing_oid_fails_without_touching_directory(self, oid):
        repository = InMemoryUserRepository()

        result = verify_user(repository, ISSUER, "sub", make_profile(oid))

        assert not result.ok
        assert isinstance(result.error, IdentityClaimMissing)
        assert result.user is None
        assert len(repository) == 0

    def test_profile_without_oid_key(self):
        repository = Mock()

        result = verify_user(repository, ISSUER, "sub", {"sub": "sub"})

        assert isinstance(result.error, IdentityClaimMissing)
        repository.find_or_insert.assert_not_called()

    def test_raw_claims_are_kept(self):
        repository = InMemoryUserRepository()
        claims = {"oid": "abc", "tid": "tenant", "roles": ["reader"]}

        result = verify_user(repository, ISSUER, "sub", make_profile("abc"), claims=claims)

        assert result.user.claims == claims
        assert "claims" not in result.user.to_public_dict()

    def test_plain_claim_set(self):
        """In an id_token claim set 'name' is a string, not a name mapping."""
        repository = InMemoryUserRepository()
        claims = {
            "oid": "abc",
            "name": "Alice Smith",
            "given_name": "Alice",
            "family_name": "Smith",
            "preferred_username": "alice@contoso.com",
        }

        result = verify_user(repository, ISSUER, "sub", claims)

        assert result.ok
        assert result.user.display_name == "Alice Smith"
        assert result.user.given_name == "Alice"
        assert result.user.family_name == "Smith"
        assert result.user.upn == "alice@contoso.com"

    def test_minimal_claim_set_with_name(self):
        result = verify_user(InMemoryUserRepository(), ISSUER, "sub", {"oid": "abc", "name": "Alice"})

        assert result.ok
        assert result.user.display_name == "Alice"
        assert result.user.given_name is None

    def test_repository_errors_propagate(self):
        repository = Mock()
        repository.find_or_insert.side_effect = RuntimeError("directory unavailable")

        with pytest.raises(RuntimeError):
            verify_user(repository, ISSUER, "sub", make_profile("abc"))

    def test_callback_shapes(self):
        repository = InMemoryUserRepository()

        verify = build_verify_callback(repository)
        verify_with_request = build_verify_callback(repository, pass_request=True)

        assert verify(ISSUER, "sub", make_profile("one")).ok
        assert verify_with_request(Mock(), ISSUER, "sub", make_profile("two")).ok
        assert len(repository) == 2

    def test_auth_result_tags(self):
        user = UserProfile(oid="abc")

        assert AuthResult.success(user).ok
        assert not AuthResult.failure(IdentityClaimMissing()).ok
        assert str(AuthResult.failure(IdentityClaimMissing()).error) == "No oid found"
