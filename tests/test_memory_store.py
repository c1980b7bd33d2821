from datetime import datetime, timedelta, timezone

import pytest

from brewstore.storage.errors import ConstraintViolation, UnknownField
from brewstore.storage.memory import MemoryStore
from brewstore.storage.models import EmailAddress


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="memory-store-test-key")


def test_create_user_normalizes_and_seeds_history(store):
    user = store.create_user("Jane Doe", "  Jane@X.com ", "hash-1")
    assert user.email == "jane@x.com"
    assert user.password_history == ["hash-1"]
    assert [(e.address, e.verified) for e in user.emails] == [("jane@x.com", True)]
    assert user.failed_login_attempts == 0
    assert not user.is_admin


def test_duplicate_email_rejected(store):
    store.create_user("Jane Doe", "jane@x.com", "h")
    with pytest.raises(ConstraintViolation):
        store.create_user("Other", "JANE@x.com", "h")


def test_returned_records_are_copies(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    user.failed_login_attempts = 99
    user.emails.append(EmailAddress(address="sneaky@x.com"))
    fresh = store.get_user(user.id)
    assert fresh.failed_login_attempts == 0
    assert len(fresh.emails) == 1


def test_lookup_by_verified_secondary_only(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    emails = user.emails + [
        EmailAddress(address="pending@x.com"),
        EmailAddress(address="alt@x.com", verified=True),
    ]
    store.update_user(user.id, emails=emails)
    assert store.get_user_by_email("ALT@x.com").id == user.id
    assert store.get_user_by_email("pending@x.com") is None
    assert store.email_in_use("pending@x.com")
    assert store.get_user_by_email("nobody@x.com") is None


def test_update_user_rejects_unknown_fields(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    with pytest.raises(UnknownField):
        store.update_user(user.id, id="other")
    assert store.update_user("missing", name="X") is None


def test_totp_secret_encrypted_at_rest(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    store.update_user(user.id, two_factor_secret="JBSWY3DPEHPK3PXP")
    assert store.users[user.id].two_factor_secret != "JBSWY3DPEHPK3PXP"
    assert store.get_user(user.id).two_factor_secret == "JBSWY3DPEHPK3PXP"


def test_swap_refresh_token_is_compare_and_swap(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    assert store.swap_refresh_token(user.id, None, "r1")
    assert not store.swap_refresh_token(user.id, None, "r2")
    assert store.get_user_by_refresh_token("r1").id == user.id
    assert store.swap_refresh_token(user.id, "r1", None)
    assert store.get_user_by_refresh_token("r1") is None
    assert not store.swap_refresh_token("missing", None, "r3")


def test_token_hash_lookups(store):
    user = store.create_user("Jane Doe", "jane@x.com", "h")
    later = datetime.now(timezone.utc) + timedelta(hours=1)
    store.update_user(
        user.id,
        reset_password_token_hash="reset-hash",
        reset_password_expires_at=later,
        emails=user.emails
        + [EmailAddress(address="alt@x.com", verify_token_hash="verify-hash", verify_expires_at=later)],
    )
    assert store.get_user_by_reset_token("reset-hash").id == user.id
    assert store.get_user_by_reset_token("other") is None
    assert store.get_user_by_email_token("verify-hash").id == user.id


def test_list_users_in_creation_order(store):
    first = store.create_user("Ann Lee", "ann@x.com", "h")
    second = store.create_user("Bob Ray", "bob@x.com", "h")
    assert [u.id for u in store.list_users()] == [first.id, second.id]
    assert len(store.list_users(limit=1)) == 1


def test_pending_secondary_does_not_block_signup(store):
    owner = store.create_user("Jane Doe", "jane@x.com", "h")
    store.update_user(
        owner.id, emails=owner.emails + [EmailAddress(address="pending@x.com")]
    )
    other = store.create_user("Pat Kim", "pending@x.com", "h")
    assert store.get_user_by_email("pending@x.com").id == other.id

    store.update_user(
        owner.id, emails=owner.emails + [EmailAddress(address="alt@x.com", verified=True)]
    )
    with pytest.raises(ConstraintViolation):
        store.create_user("Pat Kim", "alt@x.com", "h")


def test_activity_log_newest_first_and_filtered(store):
    store.record_activity("u1", "login")
    store.record_activity("u2", "register", "Signed up")
    store.record_activity("u1", "logout")
    assert [e.action for e in store.list_activity()] == ["logout", "register", "login"]
    assert [e.action for e in store.list_activity("u1")] == ["logout", "login"]
    assert [e.action for e in store.list_activity(limit=1)] == ["logout"]
    assert store.list_activity("u2")[0].info == "Signed up"
