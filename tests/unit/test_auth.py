"""Tests for passwords, sessions, API tokens and login lockout."""

import time

from cloudy import globals as g
from cloudy.constants import MAX_SESSIONS_PER_USER
from cloudy.utils.auth import (
    hash_password, verify_password, validate_password_policy,
    create_session, validate_session, invalidate_session, invalidate_all_user_sessions,
    create_api_token, validate_api_token, revoke_api_token,
    create_auth_token, consume_auth_token, PURPOSE_RESET_PASSWORD, PURPOSE_VERIFY_EMAIL,
    check_login_lockout, record_failed_login, clear_failed_logins, prune_rate_state,
)


class TestPasswords:
    def test_hash_and_verify(self):
        salt, password_hash = hash_password('Secret123')

        assert salt == 'argon2'
        assert password_hash.startswith('$argon2')
        assert verify_password('Secret123', salt, password_hash)
        assert not verify_password('secret123', salt, password_hash)

    def test_verify_empty_hash(self):
        assert not verify_password('anything', '', '')

    def test_policy_defaults(self):
        assert validate_password_policy('Secret123') == (True, None)

        valid, message = validate_password_policy('short')
        assert not valid
        assert 'at least 8 characters' in message
        assert 'uppercase' in message
        assert 'number' in message


class TestSessions:
    def test_create_and_validate(self, alice):
        sid = create_session(alice)

        session = validate_session(sid)

        assert session['user_id'] == alice['id']
        assert session['role'] == 'USER'

    def test_unknown_session(self):
        assert validate_session('does-not-exist') is None
        assert validate_session(None) is None

    def test_session_survives_restart(self, alice):
        sid = create_session(alice)
        g.active_sessions.clear()

        assert validate_session(sid)['user'] == 'alice'

    def test_expired_session_is_rejected(self, alice, db):
        sid = create_session(alice)
        g.active_sessions[sid]['last_activity'] = time.time() - 10 * 24 * 3600

        assert validate_session(sid) is None
        assert db.get_session(sid) is None

    def test_invalidate(self, alice):
        sid = create_session(alice)

        invalidate_session(sid)

        assert validate_session(sid) is None

    def test_rotation_keeps_max_sessions(self, alice):
        sids = [create_session(alice) for _ in range(MAX_SESSIONS_PER_USER + 2)]

        live = [sid for sid, s in g.active_sessions.items() if s['user_id'] == alice['id']]

        assert len(live) == MAX_SESSIONS_PER_USER
        assert sids[-1] in live
        assert sids[0] not in live

    def test_invalidate_all_except_current(self, alice):
        keep = create_session(alice)
        drop = create_session(alice)

        removed = invalidate_all_user_sessions(alice['id'], except_session=keep)

        assert removed == 1
        assert validate_session(keep) is not None
        assert validate_session(drop) is None


class TestApiTokens:
    def test_create_and_validate(self, alice):
        result = create_api_token(alice, 'ci')

        assert result['token'].startswith('cld_')
        session = validate_api_token(result['token'])
        assert session['user_id'] == alice['id']
        assert session['api_token'] is True

    def test_token_is_stored_hashed(self, alice, db):
        result = create_api_token(alice, 'ci')

        row = db.query_one('SELECT token_hash FROM api_tokens WHERE id = ?', (result['token_id'],))

        assert row['token_hash'] != result['token']

    def test_cannot_escalate_role(self, alice):
        result = create_api_token(alice, 'sneaky', role='ADMIN')

        assert 'error' in result

    def test_revoke(self, alice, bob):
        result = create_api_token(alice, 'ci')

        assert revoke_api_token(result['token_id'], bob['id']) is False
        assert revoke_api_token(result['token_id'], alice['id']) is True
        assert validate_api_token(result['token']) is None

    def test_expired_token(self, alice, db):
        result = create_api_token(alice, 'ci', expires_days=1)
        db.execute("UPDATE api_tokens SET expires_at = '2000-01-01T00:00:00' WHERE id = ?", (result['token_id'],))

        assert validate_api_token(result['token']) is None


class TestOneTimeTokens:
    def test_token_can_be_used_once(self, alice):
        token = create_auth_token(alice['id'], PURPOSE_RESET_PASSWORD, 3600)

        assert consume_auth_token(token, PURPOSE_RESET_PASSWORD) == alice['id']
        assert consume_auth_token(token, PURPOSE_RESET_PASSWORD) is None

    def test_purpose_must_match(self, alice):
        token = create_auth_token(alice['id'], PURPOSE_VERIFY_EMAIL, 3600)

        assert consume_auth_token(token, PURPOSE_RESET_PASSWORD) is None

    def test_expired(self, alice):
        token = create_auth_token(alice['id'], PURPOSE_RESET_PASSWORD, -1)

        assert consume_auth_token(token, PURPOSE_RESET_PASSWORD) is None


class TestLoginLockout:
    def test_ip_locks_after_max_attempts(self):
        results = [record_failed_login('10.0.0.1') for _ in range(5)]

        assert results[-1] is True
        assert not any(results[:-1])
        assert check_login_lockout('10.0.0.1') > 0
        assert check_login_lockout('10.0.0.2') == 0

    def test_user_threshold_is_doubled(self):
        # spread over many ips so only the username bucket fills up
        for i in range(9):
            record_failed_login(f'10.0.1.{i}', 'alice')
        assert check_login_lockout('10.0.2.1', 'alice') == 0

        record_failed_login('10.0.1.99', 'alice')
        assert check_login_lockout('10.0.2.1', 'alice') > 0

    def test_clear(self):
        for _ in range(5):
            record_failed_login('10.0.0.1', 'alice')

        clear_failed_logins('10.0.0.1', 'alice')

        assert check_login_lockout('10.0.0.1', 'alice') == 0


class TestPruneRateState:
    def test_drops_expired_rate_windows(self):
        now = time.time()
        g.api_request_counts['198.51.100.1'] = {'count': 5, 'window_start': now - 3600}
        g.api_request_counts['198.51.100.2'] = {'count': 5, 'window_start': now}

        prune_rate_state(now)

        assert list(g.api_request_counts) == ['198.51.100.2']

    def test_drops_old_login_attempts_keeps_lockouts(self):
        record_failed_login('10.0.0.1', 'alice')
        for _ in range(5):
            record_failed_login('10.0.0.2')

        # an hour later the single miss is stale, the lockout has expired too
        later = time.time() + 3600
        assert prune_rate_state(later) == 3
        assert g.login_attempts_by_ip == {}
        assert g.login_attempts_by_user == {}

    def test_active_lockout_survives(self):
        for _ in range(5):
            record_failed_login('10.0.0.2')

        prune_rate_state(time.time() + 60)

        assert '10.0.0.2' in g.login_attempts_by_ip
        assert check_login_lockout('10.0.0.2') > 0
