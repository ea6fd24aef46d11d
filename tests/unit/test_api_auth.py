"""Tests for the auth routes and the request pipeline."""

from unittest.mock import patch

from cloudy import globals as g
from cloudy.core.db import get_db
from conftest import auth_headers


def _register(client, username, password='Secret123'):
    return client.post('/api/auth/register', json={
        'username': username, 'email': f'{username}@example.com', 'password': password,
    })


class TestRegister:
    def test_first_user_becomes_admin(self, client):
        first = _register(client, 'root')
        second = _register(client, 'alice')

        assert first.status_code == 201
        assert first.get_json()['user']['role'] == 'ADMIN'
        assert second.get_json()['user']['role'] == 'USER'
        assert 'password_hash' not in second.get_json()['user']

    def test_duplicates(self, client):
        _register(client, 'alice')

        assert _register(client, 'alice').status_code == 409
        dup_email = client.post('/api/auth/register', json={
            'username': 'alice2', 'email': 'ALICE@example.com', 'password': 'Secret123',
        })
        assert dup_email.status_code == 409

    def test_weak_password(self, client):
        response = _register(client, 'alice', password='weak')

        assert response.status_code == 400
        assert 'Password must contain' in response.get_json()['error']

    def test_invalid_email(self, client):
        response = client.post('/api/auth/register', json={
            'username': 'alice', 'email': 'nope', 'password': 'Secret123',
        })

        assert response.status_code == 400
        assert response.get_json()['code'] == 'VALIDATION_ERROR'


class TestLogin:
    def test_login_sets_cookie_and_session_works(self, client, alice):
        response = client.post('/api/auth/login', json={'username': 'alice', 'password': 'Secret123'})

        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['user']['username'] == 'alice'
        assert 'session_id=' in response.headers['Set-Cookie']
        assert 'HttpOnly' in response.headers['Set-Cookie']

        me = client.get('/api/auth/me', headers={'X-Session-ID': body['session_id']})
        assert me.status_code == 200
        assert me.get_json()['user']['id'] == alice['id']
        assert me.get_json()['apiToken'] is False

    def test_login_with_email(self, client, alice):
        response = client.post('/api/auth/login', json={'email': 'Alice@Example.com', 'password': 'Secret123'})

        assert response.status_code == 200

    def test_wrong_password(self, client, alice):
        response = client.post('/api/auth/login', json={'username': 'alice', 'password': 'Wrong1234'})

        assert response.status_code == 401
        assert response.get_json()['error'] == 'Invalid credentials'

    def test_lockout(self, client, alice):
        statuses = [
            client.post('/api/auth/login', json={'username': 'alice', 'password': 'Wrong1234'}).status_code
            for _ in range(5)
        ]
        after = client.post('/api/auth/login', json={'username': 'alice', 'password': 'Secret123'})

        assert statuses == [401, 401, 401, 401, 429]
        assert after.status_code == 429
        assert after.get_json()['locked'] is True

    def test_disabled_account(self, client, make_user):
        make_user('carol', enabled=False)

        response = client.post('/api/auth/login', json={'username': 'carol', 'password': 'Secret123'})

        assert response.status_code == 401
        assert response.get_json()['code'] == 'ACCOUNT_DISABLED'

    def test_logout(self, client, alice):
        headers = auth_headers(alice)

        client.post('/api/auth/logout', headers=headers)

        assert client.get('/api/auth/me', headers=headers).status_code == 401


class TestRequireAuth:
    def test_no_credential(self, client):
        response = client.get('/api/auth/me')

        assert response.status_code == 401
        assert response.get_json()['code'] == 'AUTH_REQUIRED'

    def test_admin_route_as_user(self, client, alice):
        response = client.get('/api/users', headers=auth_headers(alice))

        assert response.status_code == 403
        assert response.get_json()['code'] == 'INSUFFICIENT_PERMISSIONS'

    def test_disabled_while_logged_in(self, client, alice):
        headers = auth_headers(alice)
        get_db().update_user(alice['id'], enabled=False)

        assert client.get('/api/auth/me', headers=headers).status_code == 401

    def test_cookie_credential(self, client, alice):
        headers = auth_headers(alice)
        client.set_cookie('session_id', headers['X-Session-ID'])

        assert client.get('/api/auth/me').status_code == 200


class TestApiTokens:
    def test_create_use_and_revoke(self, client, alice):
        headers = auth_headers(alice)

        created = client.post('/api/auth/tokens', json={'name': 'ci', 'expiresDays': 30}, headers=headers)
        assert created.status_code == 201
        token = created.get_json()['token']
        bearer = {'Authorization': f'Bearer {token}'}

        me = client.get('/api/auth/me', headers=bearer)
        assert me.get_json()['apiToken'] is True

        # tokens cant mint tokens
        assert client.post('/api/auth/tokens', json={'name': 'x'}, headers=bearer).status_code == 403

        token_id = created.get_json()['token_id']
        assert client.delete(f'/api/auth/tokens/{token_id}', headers=headers).status_code == 200
        assert client.get('/api/auth/me', headers=bearer).status_code == 401

    def test_duplicate_name_and_bad_expiry(self, client, alice):
        headers = auth_headers(alice)
        client.post('/api/auth/tokens', json={'name': 'ci'}, headers=headers)

        assert client.post('/api/auth/tokens', json={'name': 'ci'}, headers=headers).status_code == 400
        assert client.post('/api/auth/tokens', json={'name': 'x', 'expiresDays': 0},
                           headers=headers).status_code == 400

    def test_user_cannot_mint_admin_token(self, client, alice):
        response = client.post('/api/auth/tokens', json={'name': 'x', 'role': 'ADMIN'},
                               headers=auth_headers(alice))

        assert response.status_code == 400


class TestPasswords:
    def test_change_password_kicks_other_sessions(self, client, alice):
        current = auth_headers(alice)
        other = auth_headers(alice)

        response = client.post('/api/auth/change-password', headers=current, json={
            'currentPassword': 'Secret123', 'newPassword': 'Better456',
        })

        assert response.status_code == 200
        assert response.get_json()['sessions_invalidated'] == 1
        assert client.get('/api/auth/me', headers=current).status_code == 200
        assert client.get('/api/auth/me', headers=other).status_code == 401

    def test_change_password_wrong_current(self, client, alice):
        response = client.post('/api/auth/change-password', headers=auth_headers(alice), json={
            'currentPassword': 'nope', 'newPassword': 'Better456',
        })

        assert response.status_code == 401

    def test_reset_flow(self, client, alice):
        with patch('cloudy.core.mail.send_password_reset_email') as send:
            response = client.post('/api/auth/forgot-password', json={'email': 'alice@example.com'})
        assert response.status_code == 200
        token = send.call_args[0][2]

        reset = client.post('/api/auth/reset-password', json={'token': token, 'password': 'Better456'})
        again = client.post('/api/auth/reset-password', json={'token': token, 'password': 'Better789'})
        login = client.post('/api/auth/login', json={'username': 'alice', 'password': 'Better456'})

        assert reset.status_code == 200
        assert again.status_code == 400
        assert login.status_code == 200

    def test_forgot_password_does_not_reveal_accounts(self, client):
        known = client.post('/api/auth/forgot-password', json={'email': 'nobody@example.com'})

        assert known.status_code == 200
        assert known.get_json()['success'] is True


class TestRequestPipeline:
    def test_security_headers(self, client):
        response = client.get('/api/status')

        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['Cache-Control'] == 'no-store'

    def test_non_json_body_is_rejected(self, client):
        response = client.post('/api/auth/login', data='username=alice', content_type='text/plain')

        assert response.status_code == 415

    def test_unknown_api_path_is_json(self, client):
        response = client.get('/api/nope')

        assert response.status_code == 404
        assert response.get_json()['code'] == 'NOT_FOUND'

    def test_rate_limit(self, client, monkeypatch):
        from cloudy import app as app_module
        monkeypatch.setattr(app_module, 'API_RATE_LIMIT', 2)

        codes = [client.get('/api/config/auth').status_code for _ in range(3)]

        assert codes == [200, 200, 429]

    def test_rate_limit_ignores_forwarded_for_from_remote_clients(self, client, monkeypatch):
        from cloudy import app as app_module
        monkeypatch.setattr(app_module, 'API_RATE_LIMIT', 2)
        remote = {'REMOTE_ADDR': '203.0.113.7'}

        codes = [
            client.get('/api/config/auth', headers={'X-Forwarded-For': f'10.9.9.{i}'},
                       environ_base=remote).status_code
            for i in range(3)
        ]

        assert codes == [200, 200, 429]
        assert list(g.api_request_counts) == ['203.0.113.7']

    def test_rate_limit_trusts_forwarded_for_from_local_proxy(self, client, monkeypatch):
        from cloudy import app as app_module
        monkeypatch.setattr(app_module, 'API_RATE_LIMIT', 2)

        codes = [
            client.get('/api/config/auth', headers={'X-Forwarded-For': f'10.9.9.{i}'},
                       environ_base={'REMOTE_ADDR': '127.0.0.1'}).status_code
            for i in range(3)
        ]

        assert codes == [200, 200, 200]

    def test_login_origin_is_not_auto_allowed(self, client, alice, monkeypatch):
        from cloudy.app import get_allowed_origins
        monkeypatch.setattr(g, '_cors_origins_env', '')

        login = client.post('/api/auth/login', json={'username': 'alice', 'password': 'Secret123'},
                            headers={'Origin': 'https://evil.example'})
        preflight = client.options('/api/auth/me', headers={
            'Origin': 'https://evil.example', 'Access-Control-Request-Method': 'GET',
        })

        assert login.status_code == 200
        assert get_allowed_origins() is None
        assert 'Access-Control-Allow-Origin' not in preflight.headers
