"""Tests for the SQLite layer."""

import pytest

from cloudy.core.db import get_db, reset_db


class TestUsers:
    def test_create_user_gets_default_quotas(self, make_user):
        user = make_user('carol')

        assert user['role'] == 'USER'
        assert user['enabled'] is True
        assert user['max_cpu'] == 4
        assert user['max_memory'] == 8192
        assert user['max_disk'] == 100
        assert user['max_instances'] == 3
        assert user['allowed_nodes'] == []

    def test_lookup_is_case_insensitive(self, db, make_user):
        user = make_user('Carol')

        assert db.get_user_by_username('carol')['id'] == user['id']
        assert db.get_user_by_email('CAROL@example.com')['id'] == user['id']

    def test_update_user_serializes_allowed_nodes(self, db, make_user):
        user = make_user('carol')

        updated = db.update_user(user['id'], allowed_nodes=['pve1', 'pve2'], enabled=False)

        assert updated['allowed_nodes'] == ['pve1', 'pve2']
        assert updated['enabled'] is False

    def test_update_user_rejects_unknown_columns(self, db, make_user):
        user = make_user('carol')

        with pytest.raises(ValueError):
            db.update_user(user['id'], id='hijacked')

    def test_delete_user_removes_sessions(self, db, make_user):
        user = make_user('carol')
        db.save_session('sid-1', {'user_id': user['id'], 'user': 'carol', 'role': 'USER'})

        db.delete_user(user['id'])

        assert db.get_user(user['id']) is None
        assert db.get_session('sid-1') is None


class TestSessions:
    def test_session_id_is_stored_hashed(self, db, make_user):
        user = make_user('carol')
        db.save_session('plain-session-id', {'user_id': user['id'], 'user': 'carol', 'role': 'USER'})

        row = db.query_one('SELECT token FROM sessions')

        assert row['token'] != 'plain-session-id'
        assert db.get_session('plain-session-id')['user_id'] == user['id']


class TestSecrets:
    def test_secret_setting_is_encrypted_at_rest(self, db):
        db.save_secret_setting('pve_token_secret', 'top-secret')

        raw = db.get_server_setting('pve_token_secret')

        assert raw.startswith('aes256:')
        assert 'top-secret' not in raw
        assert db.get_secret_setting('pve_token_secret') == 'top-secret'

    def test_secret_survives_reopen(self, db):
        db.save_secret_setting('smtp_password', 'hunter2')

        reset_db()

        assert get_db().get_secret_setting('smtp_password') == 'hunter2'

    def test_plain_legacy_value_is_returned_as_is(self, db):
        db.save_server_setting('smtp_password', 'not-encrypted')

        assert db.get_secret_setting('smtp_password') == 'not-encrypted'


class TestServerSettings:
    def test_values_round_trip_as_json(self, db):
        db.save_server_settings({'billing_enabled': True, 'smtp_port': 465, 'mail_from': 'a@b.c'})

        settings = db.get_server_settings()

        assert settings['billing_enabled'] is True
        assert settings['smtp_port'] == 465
        assert db.get_server_setting('missing', 'fallback') == 'fallback'


class TestAuditIntegrity:
    def test_untouched_log_verifies(self, db):
        db.add_audit_entry({'user': 'admin', 'action': 'user.login', 'details': 'ok'})
        db.add_audit_entry({'user': 'admin', 'action': 'settings.updated', 'details': 'x'})

        result = db.verify_audit_log_integrity()

        assert result['total_entries'] == 2
        assert result['verified'] == 2
        assert result['potentially_tampered'] == 0
        assert result['integrity_percentage'] == 100

    def test_modified_row_is_detected(self, db):
        db.add_audit_entry({'user': 'admin', 'action': 'user.login'})
        entry_id = db.add_audit_entry({'user': 'mallory', 'action': 'instance.delete', 'target_id': '101'})

        db.execute("UPDATE audit_log SET user = 'someone-else' WHERE id = ?", (entry_id,))
        result = db.verify_audit_log_integrity()

        assert result['tampered_ids'] == [entry_id]
        assert result['verified'] == 1
        assert result['integrity_percentage'] == 50.0

    def test_unsigned_rows_are_counted_separately(self, db):
        db.add_audit_entry({'user': 'admin', 'action': 'user.login'})
        db.execute("UPDATE audit_log SET hmac_signature = NULL")

        result = db.verify_audit_log_integrity()

        assert result['unsigned'] == 1
        assert result['potentially_tampered'] == 0
