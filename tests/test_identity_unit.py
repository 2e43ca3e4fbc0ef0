"""Unit tests for the identity provider: accounts, passwords, lockout, 2FA and roles."""

from datetime import datetime, timedelta, timezone

import pytest

from storekeep.service.identity import IdentityService, SignInResult


@pytest.fixture
def identity(store, settings):
    return IdentityService(store, settings)


def _create(identity, user_name="alice", email=None, password="Passw0rd!", **kwargs):
    result, user = identity.create_user(
        user_name, email or f"{user_name}@example.com", password, **kwargs
    )
    assert result.succeeded, result.messages
    return user


class TestPasswordPolicy:
    def test_strong_password_passes(self, identity):
        assert identity.validate_password("Passw0rd!") == []

    def test_weak_password_reports_every_rule(self, identity):
        codes = [error.code for error in identity.validate_password("abc")]
        assert codes == [
            "PasswordTooShort",
            "PasswordRequiresNonAlphanumeric",
            "PasswordRequiresDigit",
            "PasswordRequiresUpper",
        ]

    def test_messages_are_user_facing(self, identity):
        messages = [error.description for error in identity.validate_password("")]
        assert "Passwords must be at least 6 characters." in messages
        assert "Passwords must have at least one lowercase ('a'-'z')." in messages


class TestCreateUser:
    def test_create_hashes_password(self, identity, store):
        user = _create(identity, name="Alice A", location_id=3)
        pwd_hash, algo = store.get_password_record(user.id)
        assert algo == "argon2id"
        assert "Passw0rd!" not in pwd_hash
        assert identity.verify_password(user.id, "Passw0rd!")
        assert not identity.verify_password(user.id, "wrong")
        assert user.name == "Alice A"
        assert user.location_id == 3

    def test_duplicate_user_name_is_case_insensitive(self, identity):
        _create(identity, "alice")
        result, user = identity.create_user("ALICE", "other@example.com", "Passw0rd!")
        assert user is None
        assert result.messages == ["Username 'ALICE' is already taken."]

    def test_duplicate_email_rejected(self, identity):
        _create(identity, "alice", email="shared@example.com")
        result, _ = identity.create_user("bob", "Shared@Example.com", "Passw0rd!")
        assert not result.succeeded
        assert result.errors[0].code == "DuplicateEmail"

    def test_invalid_user_name_and_password_reported_together(self, identity):
        result, _ = identity.create_user("bad name", "bad@example.com", "short")
        codes = [error.code for error in result.errors]
        assert codes[0] == "InvalidUserName"
        assert "PasswordTooShort" in codes

    def test_security_answer_stored_encrypted(self, identity, store):
        user = _create(identity, security_question="First pet?", security_answer="Rex")
        assert user.security_question == "First pet?"
        assert identity.get_security_answer(user) == "Rex"
        assert store.security_answers[user.id] != "Rex"


class TestPasswordSignIn:
    def test_success_resets_failure_count(self, identity):
        user = _create(identity)
        assert identity.check_password_sign_in(user, "nope") is SignInResult.FAILED
        assert user.access_failed_count == 1
        assert identity.check_password_sign_in(user, "Passw0rd!") is SignInResult.SUCCEEDED
        assert user.access_failed_count == 0

    def test_lockout_after_max_failures(self, identity, settings):
        user = _create(identity)
        results = [
            identity.check_password_sign_in(user, "nope")
            for _ in range(settings.lockout_max_failed_attempts)
        ]
        assert results[-1] is SignInResult.LOCKED_OUT
        assert all(r is SignInResult.FAILED for r in results[:-1])
        assert identity.is_locked_out(user)
        # correct password is refused while locked
        assert identity.check_password_sign_in(user, "Passw0rd!") is SignInResult.LOCKED_OUT

    def test_expired_lockout_allows_sign_in(self, identity, store):
        user = _create(identity)
        store.update_user(user.id, lockout_end=datetime.now(timezone.utc) - timedelta(seconds=1))
        assert identity.check_password_sign_in(user, "Passw0rd!") is SignInResult.SUCCEEDED

    def test_reset_password_clears_lockout(self, identity, store):
        user = _create(identity)
        store.update_user(user.id, lockout_end=datetime.now(timezone.utc) + timedelta(minutes=5))
        assert identity.reset_password(user, "N3w-Secret").succeeded
        assert not identity.is_locked_out(user)
        assert identity.verify_password(user.id, "N3w-Secret")

    def test_reset_password_enforces_policy(self, identity):
        user = _create(identity)
        result = identity.reset_password(user, "weak")
        assert not result.succeeded
        assert identity.verify_password(user.id, "Passw0rd!")


class TestTwoFactor:
    def test_requires_two_factor_when_enabled(self, identity):
        user = _create(identity)
        identity.set_two_factor_enabled(user, True)
        result = identity.check_password_sign_in(user, "Passw0rd!")
        assert result is SignInResult.REQUIRES_TWO_FACTOR

    def test_generated_code_verifies(self, identity):
        user = _create(identity)
        identity.set_two_factor_enabled(user, True)
        code = identity.generate_two_factor_code(user)
        assert len(code) == 6 and code.isdigit()
        assert identity.two_factor_sign_in(user, code) is SignInResult.SUCCEEDED

    def test_wrong_code_counts_as_failure(self, identity):
        user = _create(identity)
        identity.set_two_factor_enabled(user, True)
        code = identity.generate_two_factor_code(user)
        wrong = "000000" if code != "000000" else "111111"
        assert identity.two_factor_sign_in(user, wrong) is SignInResult.FAILED
        assert user.access_failed_count == 1

    def test_not_allowed_when_disabled(self, identity):
        user = _create(identity)
        assert identity.two_factor_sign_in(user, "123456") is SignInResult.NOT_ALLOWED

    def test_remembered_client_skips_second_factor(self, identity):
        user = _create(identity)
        identity.set_two_factor_enabled(user, True)
        token = identity.remember_client(user)
        assert identity.is_client_remembered(user, token)
        result = identity.check_password_sign_in(
            user, "Passw0rd!", remembered_client_token=token
        )
        assert result is SignInResult.SUCCEEDED

    def test_remembered_client_bound_to_user(self, identity):
        alice = _create(identity, "alice")
        bob = _create(identity, "bob")
        token = identity.remember_client(alice)
        assert not identity.is_client_remembered(bob, token)

    def test_disabling_two_factor_forgets_clients(self, identity):
        user = _create(identity)
        identity.set_two_factor_enabled(user, True)
        token = identity.remember_client(user)
        identity.set_two_factor_enabled(user, False)
        assert not identity.is_client_remembered(user, token)


class TestRoles:
    def test_create_and_assign(self, identity):
        user = _create(identity)
        result, role = identity.create_role("Manager")
        assert result.succeeded and role.name == "Manager"
        assert identity.add_to_role(user, "Manager").succeeded
        assert identity.get_roles(user) == ["Manager"]

    def test_empty_and_duplicate_names(self, identity):
        identity.create_role("Admin")
        empty, _ = identity.create_role("")
        dup, _ = identity.create_role("admin")
        assert empty.messages == ["Role name '' is invalid."]
        assert dup.messages == ["Role name 'admin' is already taken."]

    def test_add_to_missing_role(self, identity):
        user = _create(identity)
        result = identity.add_to_role(user, "Ghost")
        assert not result.succeeded
        assert result.errors[0].code == "InvalidRoleName"

    def test_add_twice_rejected(self, identity):
        user = _create(identity)
        identity.create_role("Admin")
        identity.add_to_role(user, "Admin")
        result = identity.add_to_role(user, "Admin")
        assert result.errors[0].code == "UserAlreadyInRole"

    def test_update_role_keeps_own_name(self, identity):
        _, role = identity.create_role("Admin")
        assert identity.update_role(role, "Admin").succeeded
        assert identity.update_role(role, "Administrators").succeeded
        assert identity.find_role_by_id(role.id).name == "Administrators"

    def test_delete_role_drops_memberships(self, identity):
        user = _create(identity)
        _, role = identity.create_role("Manager")
        identity.add_to_role(user, "Manager")
        assert identity.delete_role(role).succeeded
        assert identity.get_roles(user) == []
        assert not identity.delete_role(role).succeeded
