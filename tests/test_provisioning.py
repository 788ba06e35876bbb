import asyncio
import time

import pytest

from classhub import identity, services
from classhub.errors import ConflictError, DependencyFailure, Forbidden, ValidationError
from classhub.models.user import Identity
from classhub.provisioning import (
    AccountRequest,
    ProvisioningPipeline,
    ProvisionState,
)


def run(coro):
    return asyncio.run(coro)


def identity_count(session_local, login):
    session = session_local()
    try:
        return session.query(Identity).filter(Identity.login == login).count()
    finally:
        session.close()


def test_provision_commits_all_three_records(admin_id):
    outcome = run(
        ProvisioningPipeline().provision(
            admin_id, AccountRequest("JDoe", "pw1", "John Doe")
        )
    )
    assert outcome.state is ProvisionState.COMMITTED
    assert outcome.warnings == []
    profile = services.get_profile(outcome.identity_id)
    assert profile.username == "jdoe"
    assert profile.display_name == "John Doe"
    assert profile.is_online is False
    assert services.resolve_role(outcome.identity_id) == services.ROLE_STUDENT
    assert identity.authenticate("jdoe@college.local", "pw1") == outcome.identity_id


def test_second_provision_of_same_username_conflicts(admin_id):
    pipeline = ProvisioningPipeline()
    first = run(pipeline.provision(admin_id, AccountRequest("jdoe", "pw1")))
    with pytest.raises(ConflictError):
        run(pipeline.provision(admin_id, AccountRequest("JDOE", "pw2")))
    assert identity.authenticate(identity.login_for("jdoe"), "pw1") == first.identity_id
    assert services.get_profile(first.identity_id).username == "jdoe"


def test_profile_failure_rolls_back_identity(admin_id, session_local, monkeypatch):
    real_insert = services.insert_profile
    attempts = []

    def collide_once(user_id, username, display_name=None):
        attempts.append(username)
        if len(attempts) == 1:
            raise ConflictError(f"Username {username} is already taken")
        return real_insert(user_id, username, display_name)

    monkeypatch.setattr(services, "insert_profile", collide_once)
    pipeline = ProvisioningPipeline()

    with pytest.raises(ConflictError):
        run(pipeline.provision(admin_id, AccountRequest("jdoe", "pw1")))
    assert identity_count(session_local, "jdoe@college.local") == 0

    outcome = run(pipeline.provision(admin_id, AccountRequest("jdoe", "pw1")))
    assert outcome.state is ProvisionState.COMMITTED
    assert identity_count(session_local, "jdoe@college.local") == 1


def test_username_collision_at_insert_is_not_overwritten(admin_id, make_user, session_local, monkeypatch):
    existing = make_user("jdoe")
    # The collision is only caught by the unique constraint, after the identity exists.
    monkeypatch.setattr(services, "username_taken", lambda username: False)
    monkeypatch.setattr(identity, "login_for", lambda username: f"{username}@elsewhere.test")

    pipeline = ProvisioningPipeline()
    outcome = run(pipeline._run(AccountRequest("jdoe", "pw"), services.ROLE_STUDENT))

    assert outcome.state is ProvisionState.ROLLED_BACK
    assert isinstance(outcome.error, ConflictError)
    assert identity_count(session_local, "jdoe@elsewhere.test") == 0
    assert services.get_profile(existing).username == "jdoe"


def test_role_grant_failure_keeps_account(admin_id, monkeypatch):
    def broken(user_id, role):
        raise DependencyFailure("Database error")

    monkeypatch.setattr(services, "insert_role_grant", broken)
    outcome = run(ProvisioningPipeline().provision(admin_id, AccountRequest("kim", "pw")))

    assert outcome.state is ProvisionState.COMMITTED
    assert outcome.warnings
    assert services.get_profile(outcome.identity_id) is not None
    assert services.resolve_role(outcome.identity_id) == services.ROLE_STUDENT


def test_non_admin_is_forbidden(make_user, session_local):
    student = make_user("stu", role=services.ROLE_STUDENT)
    plain = make_user("plain")
    pipeline = ProvisioningPipeline()

    for caller in (student, plain, None):
        with pytest.raises(Forbidden):
            run(pipeline.provision(caller, AccountRequest("newbie", "pw")))
    assert identity_count(session_local, "newbie@college.local") == 0


@pytest.mark.parametrize(
    "request_",
    [AccountRequest("", "pw"), AccountRequest("   ", "pw"), AccountRequest("lee", "")],
)
def test_invalid_input_is_rejected(admin_id, request_):
    with pytest.raises(ValidationError):
        run(ProvisioningPipeline().provision(admin_id, request_))


def slowly(func, delay):
    def wrapper(*args):
        time.sleep(delay)
        return func(*args)

    return wrapper


def test_late_identity_is_removed_after_timeout(admin_id, session_local, monkeypatch):
    real_create = identity.create_identity
    monkeypatch.setattr(identity, "create_identity", slowly(real_create, 0.6))
    pipeline = ProvisioningPipeline(timeout=0.2)

    outcome = run(pipeline._run(AccountRequest("kate", "pw"), services.ROLE_STUDENT))
    assert outcome.state is ProvisionState.REJECTED
    assert isinstance(outcome.error, DependencyFailure)
    assert identity_count(session_local, "kate@college.local") == 0

    monkeypatch.setattr(identity, "create_identity", real_create)
    retry = run(pipeline._run(AccountRequest("kate", "pw"), services.ROLE_STUDENT))
    assert retry.state is ProvisionState.COMMITTED
    assert identity_count(session_local, "kate@college.local") == 1


def test_profile_timeout_rolls_back_both_records(admin_id, session_local, monkeypatch):
    real_insert = services.insert_profile
    monkeypatch.setattr(services, "insert_profile", slowly(real_insert, 0.6))
    pipeline = ProvisioningPipeline(timeout=0.2)

    outcome = run(pipeline._run(AccountRequest("jdoe", "pw"), services.ROLE_STUDENT))
    assert outcome.state is ProvisionState.ROLLED_BACK
    assert isinstance(outcome.error, DependencyFailure)
    assert services.username_taken("jdoe") is False
    assert identity_count(session_local, "jdoe@college.local") == 0

    monkeypatch.setattr(services, "insert_profile", real_insert)
    retry = run(pipeline._run(AccountRequest("jdoe", "pw"), services.ROLE_STUDENT))
    assert retry.state is ProvisionState.COMMITTED
    assert services.get_profile(retry.identity_id).username == "jdoe"


def test_slow_role_grant_that_lands_is_not_a_warning(admin_id, monkeypatch):
    monkeypatch.setattr(services, "insert_role_grant", slowly(services.insert_role_grant, 0.5))
    pipeline = ProvisioningPipeline(timeout=0.2)

    outcome = run(pipeline._run(AccountRequest("tina", "pw"), services.ROLE_ADMIN))
    assert outcome.state is ProvisionState.COMMITTED
    assert outcome.warnings == []
    assert services.resolve_role(outcome.identity_id) == services.ROLE_ADMIN


def test_bulk_continues_past_duplicates(admin_id, make_user):
    make_user("bob")
    rows = [
        AccountRequest("alice", "pw-a"),
        AccountRequest("bob", "pw-b"),
        AccountRequest("carol", "pw-c"),
    ]
    result = run(ProvisioningPipeline().provision_bulk(admin_id, rows))

    assert (result.created, result.failed, result.skipped) == (2, 1, 0)
    assert len(result.errors) == 1
    assert result.errors[0].startswith("bob:")
    assert identity.authenticate(identity.login_for("alice"), "pw-a")
    assert identity.authenticate(identity.login_for("carol"), "pw-c")


def test_bulk_duplicate_inside_batch(admin_id):
    rows = [AccountRequest("amy", "pw"), AccountRequest("Amy", "pw"), AccountRequest("ben", "pw")]
    result = run(ProvisioningPipeline(concurrency=2).provision_bulk(admin_id, rows))

    assert result.created == 2
    assert result.failed == 1


def test_bulk_error_list_is_capped(admin_id):
    rows = [AccountRequest(f"user{i}", "") for i in range(12)]
    result = run(ProvisioningPipeline().provision_bulk(admin_id, rows))

    assert result.failed == 12
    assert len(result.errors) == 10


def test_bulk_requires_admin(make_user):
    student = make_user("stu")
    with pytest.raises(Forbidden):
        run(ProvisioningPipeline().provision_bulk(student, [AccountRequest("x", "pw")]))


def test_bulk_abort_keeps_committed_accounts(admin_id, monkeypatch):
    abort = asyncio.Event()
    real_grant = services.insert_role_grant

    def grant_then_abort(user_id, role):
        real_grant(user_id, role)
        abort.set()

    monkeypatch.setattr(services, "insert_role_grant", grant_then_abort)
    rows = [AccountRequest(name, "pw") for name in ("one", "two", "three")]
    result = run(ProvisioningPipeline(concurrency=1).provision_bulk(admin_id, rows, abort=abort))

    assert (result.created, result.failed, result.skipped) == (1, 0, 2)
    assert identity.authenticate(identity.login_for("one"), "pw")


def test_bootstrap_admin(session_local):
    pipeline = ProvisioningPipeline()
    with pytest.raises(Forbidden):
        run(pipeline.bootstrap_admin("root", "pw", "wrong-key"))

    outcome = run(pipeline.bootstrap_admin("root", "pw", "test-setup-key"))
    assert services.resolve_role(outcome.identity_id) == services.ROLE_ADMIN
    assert services.get_profile(outcome.identity_id).display_name == "Administrator"

    with pytest.raises(ValidationError):
        run(pipeline.bootstrap_admin("root2", "pw", "test-setup-key"))
