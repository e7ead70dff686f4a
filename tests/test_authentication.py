from datetime import timedelta

import jwt

from conftest import PASSWORD, FakeEmailSender
from guias.authentication import ResetOutcome, generate_reset_code
from guias.database import PasswordReset, SessionLocal
from guias.repositories import ResetCodeRepository
from guias import services

NEW_PASSWORD = "Another2@pass"


def codes(*values):
    return iter(values)


def test_authenticate_returns_token_with_user_claims(make_auth_service, make_user):
    user = make_user("alice", role="ADMIN")
    auth = make_auth_service()

    result = auth.authenticate("alice", PASSWORD)

    assert result.ok
    assert result.role == "ADMIN"
    assert result.user_id == user.id
    claims = jwt.decode(result.token, options={"verify_signature": False})
    assert claims["id"] == str(user.id)
    assert claims["role"] == "ADMIN"
    assert auth.validate_token(result.token)


def test_authenticate_fails_the_same_way_for_unknown_user_and_bad_password(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service()

    unknown = auth.authenticate("nobody", PASSWORD)
    wrong = auth.authenticate("alice", "Wrong1!password")

    assert unknown == wrong
    assert not unknown.ok and unknown.token == ""


def test_username_lookup_is_case_sensitive(make_auth_service, make_user):
    make_user("alice")
    assert not make_auth_service().authenticate("ALICE", PASSWORD).ok


def test_inactive_users_cannot_log_in(make_auth_service, make_user):
    user = make_user("alice")
    services.update_status(user.id, "0")
    assert not make_auth_service().authenticate("alice", PASSWORD).ok


def test_logout_revokes_the_token(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service()
    token = auth.authenticate("alice", PASSWORD).token

    assert auth.revoke_token(token)
    assert not auth.validate_token(token)


def test_reset_code_has_six_digits():
    code = generate_reset_code()
    assert len(code) == 6 and code.isdigit()


def test_request_then_verify_with_emailed_code(make_auth_service, make_user):
    make_user("alice")
    sender = FakeEmailSender()
    auth = make_auth_service(sender, codes("004217"))

    assert auth.request_password_reset("alice@example.com") is ResetOutcome.OK
    assert len(sender.sent) == 1
    to, _, body = sender.sent[0]
    assert to == "alice@example.com"
    assert "004217" in body

    assert auth.verify_reset_code("alice@example.com", "004217")
    assert not auth.verify_reset_code("alice@example.com", "999999")
    # Verification does not consume the code.
    assert auth.verify_reset_code("alice@example.com", "004217")


def test_unknown_email_sends_nothing(make_auth_service):
    sender = FakeEmailSender()
    auth = make_auth_service(sender)

    outcome = auth.request_password_reset("ghost@example.com")

    assert outcome is ResetOutcome.NOT_FOUND
    assert not outcome
    assert sender.sent == []


def test_second_request_invalidates_the_first_code(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service(codes=codes("111111", "222222"))

    auth.request_password_reset("alice@example.com")
    auth.request_password_reset("alice@example.com")

    assert not auth.verify_reset_code("alice@example.com", "111111")
    assert auth.verify_reset_code("alice@example.com", "222222")


def test_code_expires_thirty_minutes_after_creation(make_auth_service, make_user, clock):
    make_user("alice")
    auth = make_auth_service(codes=codes("123456"))
    auth.request_password_reset("alice@example.com")

    clock.advance(minutes=29, seconds=59)
    assert auth.verify_reset_code("alice@example.com", "123456")
    clock.advance(seconds=1)
    assert not auth.verify_reset_code("alice@example.com", "123456")
    clock.advance(seconds=1)
    assert not auth.verify_reset_code("alice@example.com", "123456")


def test_failed_delivery_leaves_no_code_behind(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service(codes=codes("111111"))
    auth.request_password_reset("alice@example.com")

    failing = make_auth_service(FakeEmailSender(succeed=False), codes("222222"))
    assert failing.request_password_reset("alice@example.com") is ResetOutcome.DELIVERY_FAILED

    # The rollback also keeps the earlier code usable.
    assert auth.verify_reset_code("alice@example.com", "111111")
    session = SessionLocal()
    try:
        assert session.query(PasswordReset).filter(PasswordReset.code == "222222").count() == 0
    finally:
        session.close()


def test_sender_exceptions_count_as_delivery_failure(make_auth_service, make_user):
    make_user("alice")

    class ExplodingSender:
        def send_email(self, to, subject, html_body):
            raise RuntimeError("relay down")

    auth = make_auth_service(ExplodingSender())
    assert auth.request_password_reset("alice@example.com") is ResetOutcome.DELIVERY_FAILED


def test_reset_password_scenario(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service(codes=codes("654321"))
    auth.request_password_reset("alice@example.com")

    assert auth.reset_password("alice@example.com", "654321", NEW_PASSWORD) is ResetOutcome.OK

    assert auth.authenticate("alice", NEW_PASSWORD).ok
    assert not auth.authenticate("alice", PASSWORD).ok
    # The code is single use.
    assert not auth.verify_reset_code("alice@example.com", "654321")
    assert auth.reset_password("alice@example.com", "654321", "Third3#pass") is ResetOutcome.INVALID_CODE


def test_reset_with_wrong_code_changes_nothing(make_auth_service, make_user):
    make_user("alice")
    auth = make_auth_service(codes=codes("654321"))
    auth.request_password_reset("alice@example.com")

    assert auth.reset_password("alice@example.com", "000000", NEW_PASSWORD) is ResetOutcome.INVALID_CODE
    assert auth.authenticate("alice", PASSWORD).ok


def test_reset_code_can_only_be_consumed_once(clock):
    session = SessionLocal()
    try:
        repo = ResetCodeRepository(session)
        repo.insert_code("alice@example.com", "123456", clock(), clock() + timedelta(minutes=15))
        session.commit()

        row = repo.find_active_code("alice@example.com", "123456", clock(), for_update=True)
        assert repo.consume(row)
        assert not repo.consume(row)
        session.commit()
        assert repo.find_active_code("alice@example.com", "123456", clock()) is None
    finally:
        session.close()


def test_reset_loses_to_concurrent_consumer(make_auth_service, make_user, monkeypatch):
    make_user("alice")
    auth = make_auth_service(codes=codes("654321"))
    auth.request_password_reset("alice@example.com")

    original = ResetCodeRepository.consume

    def consumed_elsewhere(self, row):
        other = SessionLocal()
        try:
            assert original(ResetCodeRepository(other), row)
            other.commit()
        finally:
            other.close()
        return original(self, row)

    monkeypatch.setattr(ResetCodeRepository, "consume", consumed_elsewhere)

    assert auth.reset_password("alice@example.com", "654321", NEW_PASSWORD) is ResetOutcome.INVALID_CODE
    assert auth.authenticate("alice", PASSWORD).ok
