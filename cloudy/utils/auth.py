# -*- coding: utf-8 -*-
"""
Cloudy Authentication - Layer 4
Password hashing, sessions, API tokens, require_auth decorator.
"""

import os
import time
import logging
import hashlib
import hmac
import secrets
import base64
from datetime import datetime, timedelta
from functools import wraps

import argon2
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, InvalidHashError
from flask import request, jsonify, has_request_context

from cloudy.constants import SESSION_TIMEOUT, MAX_SESSIONS_PER_USER, API_RATE_WINDOW
from cloudy.globals import (
    active_sessions, sessions_lock,
    login_attempts_by_ip, login_attempts_by_user, login_attempts_lock,
    api_request_counts, api_rate_limit_lock,
)
from cloudy.core.db import get_db
from cloudy.models.permissions import ROLE_USER, ROLE_HIERARCHY

API_TOKEN_PREFIX = 'cld_'

# MK: 64mb memory cost makes gpu cracking hard, still ~50ms per login on the vps
_password_hasher = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID
)


def get_session_timeout():
    """late import, helpers imports db which is fine but keeps this module light"""
    try:
        from cloudy.api.helpers import load_server_settings
        return load_server_settings().get('session_timeout', SESSION_TIMEOUT)
    except Exception as e:
        logging.debug(f"session timeout lookup failed, using default: {e}")
        return SESSION_TIMEOUT


def hash_password(password: str) -> tuple:
    """argon2id, returns ('argon2', hash) to keep the (salt, hash) column layout"""
    return 'argon2', _password_hasher.hash(password)


def verify_password(password: str, salt_b64: str, hash_b64: str) -> bool:
    """verify pw - handles argon2 and imported pbkdf2 hashes

    NS: Order matters! salt first, then hash
    """
    if not hash_b64:
        return False
    try:
        if salt_b64 == 'argon2' or hash_b64.startswith('$argon2'):
            try:
                return _password_hasher.verify(hash_b64, password)
            except VerifyMismatchError:
                return False
            except InvalidHashError as e:
                logging.error(f"argon2 hash invalid: {e}")
                return False

        # pbkdf2-sha256, 600k iterations (accounts imported from older installs)
        salt = base64.b64decode(salt_b64)
        stored_hash = base64.b64decode(hash_b64)
        key = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, 600000)
        return hmac.compare_digest(key, stored_hash)
    except (ValueError, TypeError) as e:
        logging.error(f"pw verify error: {e}")
        return False


def needs_password_rehash(salt_b64: str, hash_b64: str) -> bool:
    """check if pw needs upgrade to argon2 (or to new argon2 params)"""
    if not salt_b64 or not hash_b64:
        return False
    if salt_b64 == 'argon2' or hash_b64.startswith('$argon2'):
        return _password_hasher.check_needs_rehash(hash_b64)
    return True


def validate_password_policy(password: str) -> tuple:
    """check pw against configured policy, returns (valid, error_msg)"""
    from cloudy.api.helpers import load_server_settings
    settings = load_server_settings()

    min_length = settings.get('password_min_length', 8)
    require_upper = settings.get('password_require_uppercase', True)
    require_lower = settings.get('password_require_lowercase', True)
    require_numbers = settings.get('password_require_numbers', True)
    require_special = settings.get('password_require_special', False)

    errors = []

    if len(password or '') < min_length:
        errors.append(f"at least {min_length} characters")
    if require_upper and not any(c.isupper() for c in password):
        errors.append("at least one uppercase letter")
    if require_lower and not any(c.islower() for c in password):
        errors.append("at least one lowercase letter")
    if require_numbers and not any(c.isdigit() for c in password):
        errors.append("at least one number")
    if require_special and not any(c in '!@#$%^&*()_+-=[]{}|;:,.<>?' for c in password):
        errors.append("at least one special character")

    if errors:
        return False, "Password must contain: " + ", ".join(errors)
    return True, None


def public_user(user: dict) -> dict:
    """user dict without secrets, in the shape the dashboard expects"""
    if not user:
        return None
    return {
        'id': user['id'],
        'username': user['username'],
        'email': user['email'],
        'role': user['role'],
        'enabled': user.get('enabled', True),
        'emailVerified': user.get('email_verified', False),
        'mustChangePassword': user.get('must_change_password', False),
        'maxCpu': user.get('max_cpu'),
        'maxMemory': user.get('max_memory'),
        'maxDisk': user.get('max_disk'),
        'maxInstances': user.get('max_instances'),
        'allowedNodes': user.get('allowed_nodes', []),
        'createdAt': user.get('created_at'),
        'lastLogin': user.get('last_login'),
    }


# =============================================================================
# SESSIONS
# in-memory dict is the fast path, the sessions table (hashed ids) lets a
# session survive a restart - client still holds the plaintext id
# =============================================================================

def generate_session_id() -> str:
    return base64.urlsafe_b64encode(os.urandom(32)).decode('utf-8')


def create_session(user: dict) -> str:
    """Create a new session for a user

    NS: also rotates - a user keeps at most MAX_SESSIONS_PER_USER sessions
    """
    session_id = generate_session_id()
    now = time.time()
    evicted = []

    with sessions_lock:
        user_sessions = [(sid, sess) for sid, sess in active_sessions.items()
                         if sess.get('user_id') == user['id']]
        if len(user_sessions) >= MAX_SESSIONS_PER_USER:
            user_sessions.sort(key=lambda x: x[1].get('last_activity', 0))
            for sid, _ in user_sessions[:len(user_sessions) - MAX_SESSIONS_PER_USER + 1]:
                del active_sessions[sid]
                evicted.append(sid)

        session = {
            'user': user['username'],
            'user_id': user['id'],
            'role': user['role'],
            'created_at': now,
            'last_activity': now,
            'ip': request.remote_addr if has_request_context() else None,
            'user_agent': request.headers.get('User-Agent', '')[:200] if has_request_context() else None,
        }
        active_sessions[session_id] = session

    # I/O outside the lock
    db = get_db()
    for sid in evicted:
        db.delete_session(sid)
        logging.debug(f"Session rotation: removed old session for {user['username']}")
    db.save_session(session_id, session)

    return session_id


def validate_session(session_id: str) -> dict:
    """Validate a session and return its info if valid"""
    if not session_id:
        return None

    timeout = get_session_timeout()
    now = time.time()
    session = None
    expired = False

    with sessions_lock:
        session = active_sessions.get(session_id)
        if session is not None:
            if now - session['last_activity'] > timeout:
                del active_sessions[session_id]
                expired = True
                session = None
            else:
                session['last_activity'] = now

    db = get_db()
    if expired:
        db.delete_session(session_id)
        return None

    if session is None:
        # not in memory - maybe we restarted, check the table
        stored = db.get_session(session_id)
        if not stored:
            return None
        if now - (stored.get('last_activity') or 0) > timeout:
            db.delete_session(session_id)
            return None
        stored['last_activity'] = now
        with sessions_lock:
            session = active_sessions.setdefault(session_id, stored)

    db.touch_session(session_id, now)
    return session


def invalidate_session(session_id: str):
    """logout"""
    with sessions_lock:
        active_sessions.pop(session_id, None)
    get_db().delete_session(session_id)


def invalidate_all_user_sessions(user_id: str, except_session: str = None) -> int:
    """kill all sessions of a user (password change, disable, delete)"""
    removed = 0
    with sessions_lock:
        for sid in list(active_sessions.keys()):
            if active_sessions[sid].get('user_id') == user_id and sid != except_session:
                del active_sessions[sid]
                removed += 1

    db = get_db()
    if except_session:
        db.execute('DELETE FROM sessions WHERE user_id = ? AND token != ?',
                   (user_id, db._hash_token(except_session)))
    else:
        db.delete_user_sessions(user_id)

    if removed:
        logging.info(f"Invalidated {removed} sessions for user id '{user_id}'")
    return removed


def update_user_sessions_role(user_id: str, role: str):
    """role change takes effect on live sessions too"""
    with sessions_lock:
        for sess in active_sessions.values():
            if sess.get('user_id') == user_id:
                sess['role'] = role
    get_db().execute('UPDATE sessions SET role = ? WHERE user_id = ?', (role, user_id))


def cleanup_expired_sessions():
    """Remove expired sessions from memory and db"""
    timeout = get_session_timeout()
    now = time.time()
    with sessions_lock:
        expired = [sid for sid, sess in list(active_sessions.items())
                   if now - sess.get('last_activity', 0) > timeout]
        for sid in expired:
            active_sessions.pop(sid, None)
    deleted = get_db().delete_expired_sessions(timeout)
    if expired or deleted:
        logging.debug(f"Cleaned up {len(expired)} in-memory / {deleted} stored expired sessions")


# =============================================================================
# API TOKENS
# Format: cld_<4hex>_<random>. Only the sha256 is stored, token shown once.
# =============================================================================

def generate_api_token() -> tuple:
    """Returns (token_string, token_hash, prefix)"""
    prefix = secrets.token_hex(2)
    token = f"{API_TOKEN_PREFIX}{prefix}_{secrets.token_urlsafe(32)}"
    token_hash = hashlib.sha256(token.encode()).hexdigest()
    return token, token_hash, prefix


def create_api_token(user: dict, token_name: str, role: str = None, expires_days: int = None) -> dict:
    """Create a new API token for a user

    NS: Don't allow creating tokens with higher privileges than the user
    """
    if not role:
        role = user.get('role', ROLE_USER)
    if role not in ROLE_HIERARCHY:
        return {'error': f'Invalid role: {role}'}
    if ROLE_HIERARCHY[role] > ROLE_HIERARCHY.get(user.get('role'), 0):
        return {'error': 'Cannot create token with higher privileges than your own role'}

    token, token_hash, prefix = generate_api_token()

    expires_at = None
    if expires_days:
        expires_at = (datetime.now() + timedelta(days=int(expires_days))).isoformat()

    db = get_db()
    cursor = db.execute('''
        INSERT INTO api_tokens (token_hash, token_prefix, user_id, username, name, role, expires_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (token_hash, prefix, user['id'], user['username'], token_name, role,
          expires_at, datetime.now().isoformat()))

    logging.info(f"[APIToken] Created token '{token_name}' ({API_TOKEN_PREFIX}{prefix}_...) for user '{user['username']}' role={role}")
    return {
        'success': True,
        'token': token,  # only returned once!
        'token_id': cursor.lastrowid,
        'prefix': prefix,
        'name': token_name,
        'role': role,
        'expires_at': expires_at,
    }


def validate_api_token(token: str) -> dict:
    """Validate an API token, returns the same shape as validate_session"""
    if not token or not token.startswith(API_TOKEN_PREFIX):
        return None

    token_hash = hashlib.sha256(token.encode()).hexdigest()
    db = get_db()
    row = db.query_one('''
        SELECT id, user_id, username, name, role, expires_at, revoked, created_at
        FROM api_tokens WHERE token_hash = ?
    ''', (token_hash,))
    if not row or row['revoked']:
        return None

    if row['expires_at'] and datetime.now() > datetime.fromisoformat(row['expires_at']):
        return None

    db.execute('UPDATE api_tokens SET last_used_at = ?, last_used_ip = ? WHERE id = ?',
               (datetime.now().isoformat(), request.remote_addr if has_request_context() else None, row['id']))

    return {
        'user': row['username'],
        'user_id': row['user_id'],
        'role': row['role'],
        'created_at': row['created_at'],
        'last_activity': time.time(),
        'api_token': True,
        'token_name': row['name'],
        'token_id': row['id'],
    }


def list_user_tokens(user_id: str) -> list:
    rows = get_db().query('''
        SELECT id, token_prefix, name, role, expires_at, last_used_at, last_used_ip, created_at, revoked
        FROM api_tokens WHERE user_id = ? ORDER BY created_at DESC
    ''', (user_id,))
    return [dict(row) for row in rows]


def revoke_api_token(token_id: int, user_id: str) -> bool:
    """soft delete, the row stays for the audit trail"""
    cursor = get_db().execute('UPDATE api_tokens SET revoked = 1 WHERE id = ? AND user_id = ?',
                              (token_id, user_id))
    if cursor.rowcount > 0:
        logging.info(f"[APIToken] Revoked token id={token_id} for user id '{user_id}'")
        return True
    return False


# =============================================================================
# REQUEST AUTH
# =============================================================================

def get_request_credential():
    """first credential found on the request, in priority order

    Bearer header (API token or session id), X-Session-ID, session_id cookie,
    token cookie (what the dashboard middleware sets)
    """
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        value = auth_header[7:].strip()
        if value:
            return value
    return (request.headers.get('X-Session-ID')
            or request.cookies.get('session_id')
            or request.cookies.get('token'))


def authenticate_credential(credential: str) -> dict:
    if not credential:
        return None
    if credential.startswith(API_TOKEN_PREFIX):
        return validate_api_token(credential)
    return validate_session(credential)


def require_auth(roles: list = None):
    """auth decorator for protected routes - use on everything under /api except login/register"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            session = authenticate_credential(get_request_credential())
            if not session:
                return jsonify({'error': 'Unauthorized', 'code': 'AUTH_REQUIRED'}), 401

            # user may have been disabled/deleted while the session was alive
            user = get_db().get_user(session.get('user_id'))
            if not user:
                return jsonify({'error': 'Unauthorized', 'code': 'AUTH_REQUIRED'}), 401
            if not user.get('enabled', True):
                return jsonify({'error': 'Account is disabled', 'code': 'ACCOUNT_DISABLED'}), 401

            # token minted as ADMIN by someone who got demoted since
            if ROLE_HIERARCHY.get(session['role'], 0) > ROLE_HIERARCHY.get(user['role'], 0):
                session['role'] = user['role']

            if roles and session['role'] not in roles:
                return jsonify({'error': 'Forbidden', 'code': 'INSUFFICIENT_PERMISSIONS'}), 403

            request.session = session
            request.user = user
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# =============================================================================
# ONE-TIME AUTH TOKENS (email verification, password reset)
# =============================================================================

PURPOSE_VERIFY_EMAIL = 'verify_email'
PURPOSE_RESET_PASSWORD = 'reset_password'


def create_auth_token(user_id: str, purpose: str, ttl: int) -> str:
    """plaintext goes into the mail link, only the sha256 is stored

    a new token replaces any unused one with the same purpose
    """
    token = secrets.token_urlsafe(32)
    db = get_db()
    db.execute('DELETE FROM auth_tokens WHERE user_id = ? AND purpose = ?', (user_id, purpose))
    db.execute('''
        INSERT INTO auth_tokens (token_hash, user_id, purpose, expires_at, used, created_at)
        VALUES (?, ?, ?, ?, 0, ?)
    ''', (hashlib.sha256(token.encode()).hexdigest(), user_id, purpose,
          (datetime.now() + timedelta(seconds=ttl)).isoformat(), datetime.now().isoformat()))
    return token


def consume_auth_token(token: str, purpose: str) -> str:
    """mark the token used and return its user id, None if invalid/expired/used"""
    if not token:
        return None
    token_hash = hashlib.sha256(token.encode()).hexdigest()
    db = get_db()
    row = db.query_one('SELECT * FROM auth_tokens WHERE token_hash = ? AND purpose = ?', (token_hash, purpose))
    if not row or row['used']:
        return None
    if datetime.now() > datetime.fromisoformat(row['expires_at']):
        return None
    cursor = db.execute('UPDATE auth_tokens SET used = 1 WHERE token_hash = ? AND used = 0', (token_hash,))
    if cursor.rowcount == 0:
        # raced with another request using the same link
        return None
    return row['user_id']


# =============================================================================
# LOGIN LOCKOUT
# per IP and per username, username threshold is doubled so one attacker
# cant lock a user out by guessing from a single address
# =============================================================================

def check_login_lockout(client_ip: str, username: str = None) -> int:
    """seconds until unlock, 0 if not locked"""
    from cloudy.api.helpers import get_login_settings
    window = get_login_settings()['attempt_window']
    now = time.time()
    with login_attempts_lock:
        for bucket, key in ((login_attempts_by_ip, client_ip), (login_attempts_by_user, username)):
            if not key or key not in bucket:
                continue
            info = bucket[key]
            if info.get('locked_until', 0) > now:
                return int(info['locked_until'] - now) or 1
            info['attempts'] = [t for t in info.get('attempts', []) if now - t < window]
    return 0


def record_failed_login(client_ip: str, username: str = None) -> bool:
    """returns True if this attempt triggered a lockout"""
    from cloudy.api.helpers import get_login_settings
    settings = get_login_settings()
    max_attempts = settings['max_attempts']
    lockout_time = settings['lockout_time']
    window = settings['attempt_window']
    now = time.time()
    locked = False

    with login_attempts_lock:
        info = login_attempts_by_ip.setdefault(client_ip, {'attempts': [], 'locked_until': 0})
        info['attempts'] = [t for t in info['attempts'] if now - t < window] + [now]
        if len(info['attempts']) >= max_attempts:
            info['locked_until'] = now + lockout_time
            logging.warning(f"IP {client_ip} locked out after {len(info['attempts'])} failed attempts")
            locked = True

        if username:
            info = login_attempts_by_user.setdefault(username, {'attempts': [], 'locked_until': 0})
            info['attempts'] = [t for t in info['attempts'] if now - t < window] + [now]
            if len(info['attempts']) >= max_attempts * 2:
                info['locked_until'] = now + lockout_time
                logging.warning(f"User '{username}' locked out after {len(info['attempts'])} failed attempts")
                locked = True

    return locked


def clear_failed_logins(client_ip: str, username: str = None):
    with login_attempts_lock:
        login_attempts_by_ip.pop(client_ip, None)
        if username:
            login_attempts_by_user.pop(username, None)


def prune_rate_state(now: float = None) -> int:
    """drop rate limit windows and lockout entries nobody can hit anymore"""
    now = time.time() if now is None else now
    removed = 0

    with api_rate_limit_lock:
        for key in [k for k, v in api_request_counts.items() if now - v['window_start'] > API_RATE_WINDOW]:
            del api_request_counts[key]
            removed += 1

    from cloudy.api.helpers import get_login_settings
    window = get_login_settings()['attempt_window']

    with login_attempts_lock:
        for bucket in (login_attempts_by_ip, login_attempts_by_user):
            stale = [
                k for k, v in bucket.items()
                if v.get('locked_until', 0) <= now and all(now - t >= window for t in v.get('attempts', []))
            ]
            for key in stale:
                del bucket[key]
            removed += len(stale)

    if removed:
        logging.debug(f"[Auth] Pruned {removed} stale rate limit entries")
    return removed
