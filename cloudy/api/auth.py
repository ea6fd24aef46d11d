# -*- coding: utf-8 -*-
"""auth routes (register, login, logout, email verification, password reset, API tokens)"""

import logging
from datetime import datetime

from flask import Blueprint, jsonify, request

from cloudy.constants import EMAIL_VERIFY_TTL, PASSWORD_RESET_TTL
from cloudy.core.db import get_db
from cloudy.core.errors import ValidationError
from cloudy.core import mail
from cloudy.models.permissions import ROLE_ADMIN, ROLE_USER
from cloudy.utils.auth import (
    hash_password, verify_password, needs_password_rehash, validate_password_policy,
    create_session, validate_session, invalidate_session, invalidate_all_user_sessions,
    create_api_token, list_user_tokens, revoke_api_token, require_auth, public_user,
    get_request_credential, create_auth_token, consume_auth_token,
    check_login_lockout, record_failed_login, clear_failed_logins,
    PURPOSE_VERIFY_EMAIL, PURPOSE_RESET_PASSWORD,
)
from cloudy.utils.audit import log_audit, get_client_ip, STATUS_ERROR
from cloudy.utils.sanitization import validate_email, validate_username, sanitize_identifier
from cloudy.api.helpers import load_server_settings, get_session_timeout, safe_error, get_json_body, error_response

bp = Blueprint('auth', __name__)

FORGOT_PASSWORD_MESSAGE = 'If an account with that email exists, a reset link has been sent.'


def _set_session_cookie(response, session_id):
    # NS: Secure flag only when using HTTPS (important for production!)
    is_secure = request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https'
    response.set_cookie(
        'session_id',
        session_id,
        httponly=True,       # JS cant access this cookie
        samesite='Strict',   # CSRF protection
        secure=is_secure,
        max_age=get_session_timeout()
    )
    return response


def _local_auth_disabled():
    if not load_server_settings().get('enable_local_auth', True):
        return jsonify({'error': 'Local authentication is disabled', 'code': 'LOCAL_AUTH_DISABLED'}), 403
    return None


@bp.route('/api/auth/register', methods=['POST'])
def auth_register():
    """create an account - the very first account becomes ADMIN"""
    disabled = _local_auth_disabled()
    if disabled:
        return disabled

    data = get_json_body()
    try:
        username = validate_username(data.get('username'))
        email = validate_email(data.get('email'))
    except ValidationError as e:
        return error_response(e)

    password = str(data.get('password') or '')[:256]
    is_valid, error_msg = validate_password_policy(password)
    if not is_valid:
        return jsonify({'error': error_msg}), 400

    db = get_db()
    if db.get_user_by_username(username):
        return jsonify({'error': 'Username already taken'}), 409
    if db.get_user_by_email(email):
        return jsonify({'error': 'Email already registered'}), 409

    settings = load_server_settings()
    first_user = db.count_users() == 0
    role = ROLE_ADMIN if first_user else ROLE_USER
    needs_verification = bool(settings.get('require_email_verification')) and not first_user

    salt, password_hash = hash_password(password)
    try:
        user = db.create_user(username, email, salt, password_hash, role=role,
                              email_verified=not needs_verification)
    except Exception as e:
        # unique constraint race between the checks above and the insert
        return jsonify({'error': safe_error(e, 'Registration failed')}), 409

    if needs_verification:
        token = create_auth_token(user['id'], PURPOSE_VERIFY_EMAIL, EMAIL_VERIFY_TTL)
        mail.send_verification_email(email, username, token)

    logging.info(f"User '{username}' registered (role={role})")
    log_audit(username, 'user.registered', {'email': email, 'role': role}, user_id=user['id'],
              target_id=user['id'], target_name=username, target_type='user')

    return jsonify({
        'success': True,
        'user': public_user(user),
        'emailVerificationRequired': needs_verification,
    }), 201


@bp.route('/api/auth/login', methods=['POST'])
def auth_login():
    """login endpoint - MK"""
    disabled = _local_auth_disabled()
    if disabled:
        return disabled

    client_ip = get_client_ip()

    remaining = check_login_lockout(client_ip)
    if remaining:
        logging.warning(f"locked ip tried to login: {client_ip}")
        return jsonify({
            'error': f'Too many failed attempts. Try again in {remaining} seconds.',
            'locked': True,
            'retry_after': remaining
        }), 429

    data = get_json_body()
    # username or email both work
    identifier = str(data.get('username') or data.get('email') or '').strip().lower()[:254]
    password = str(data.get('password') or '')[:256]  # limit to prevent DoS

    if not identifier or not password:
        return jsonify({'error': 'Username and password required'}), 400

    db = get_db()
    user = db.get_user_by_email(identifier) if '@' in identifier else \
        db.get_user_by_username(sanitize_identifier(identifier))
    username_key = user['username'].lower() if user else None

    remaining = check_login_lockout(client_ip, username_key)
    if remaining:
        logging.warning(f"Login attempt for locked user: {identifier} from {client_ip}, {remaining}s remaining")
        return jsonify({
            'error': f'Account temporarily locked. Try again in {remaining} seconds.',
            'locked': True,
            'retry_after': remaining
        }), 429

    if not user or not verify_password(password, user['password_salt'], user['password_hash']):
        logging.warning(f"Failed login attempt for: {identifier} from {client_ip}")
        # unknown users only count against the IP
        if record_failed_login(client_ip, username_key):
            lockout_time = load_server_settings().get('login_lockout_time')
            return jsonify({
                'error': f'Too many failed attempts. Try again in {lockout_time} seconds.',
                'locked': True,
                'retry_after': lockout_time
            }), 429
        log_audit(identifier, 'auth.login_failed', None, ip_address=client_ip, status=STATUS_ERROR,
                  error_message='Invalid credentials')
        return jsonify({'error': 'Invalid credentials'}), 401

    if not user['enabled']:
        logging.warning(f"Login attempt for disabled user: {user['username']} from {client_ip}")
        return jsonify({'error': 'Account is disabled', 'code': 'ACCOUNT_DISABLED'}), 401

    if load_server_settings().get('require_email_verification') and not user['email_verified']:
        return jsonify({'error': 'Please verify your email address first', 'code': 'EMAIL_NOT_VERIFIED'}), 403

    clear_failed_logins(client_ip, username_key)

    # NS: upgrade legacy pbkdf2 hashes on the fly
    updates = {'last_login': datetime.now().isoformat()}
    if needs_password_rehash(user['password_salt'], user['password_hash']):
        updates['password_salt'], updates['password_hash'] = hash_password(password)
        logging.info(f"Migrated password for user '{user['username']}' to Argon2id")
    user = db.update_user(user['id'], **updates)

    session_id = create_session(user)

    logging.info(f"User '{user['username']}' logged in successfully")
    log_audit(user['username'], 'user.login', 'User logged in', user_id=user['id'], ip_address=client_ip)

    response = jsonify({
        'success': True,
        'user': public_user(user),
        'session_id': session_id,
        'requires_password_change': user['must_change_password'],
    })
    return _set_session_cookie(response, session_id)


@bp.route('/api/auth/logout', methods=['POST'])
def auth_logout():
    """Logout user and invalidate session"""
    session_id = get_request_credential()

    if session_id:
        session = validate_session(session_id)
        if session:
            logging.info(f"User '{session['user']}' logged out")
            log_audit(session['user'], 'user.logout', 'User logged out', user_id=session.get('user_id'))
        invalidate_session(session_id)

    response = jsonify({'success': True})
    response.delete_cookie('session_id')
    response.delete_cookie('token')
    return response


@bp.route('/api/auth/me', methods=['GET'])
@require_auth()
def auth_me():
    return jsonify({
        'user': public_user(request.user),
        'apiToken': bool(request.session.get('api_token')),
    })


@bp.route('/api/auth/change-password', methods=['POST'])
@require_auth()
def auth_change_password():
    """Change current user's password

    NS: invalidates all other sessions, if someone stole your session
    changing password kicks them out
    """
    data = get_json_body()
    current_password = data.get('currentPassword') or data.get('current_password') or ''
    new_password = data.get('newPassword') or data.get('new_password') or ''

    if not current_password or not new_password:
        return jsonify({'error': 'Current and new password required'}), 400

    is_valid, error_msg = validate_password_policy(new_password)
    if not is_valid:
        return jsonify({'error': error_msg}), 400

    user = request.user
    if not verify_password(current_password, user['password_salt'], user['password_hash']):
        log_audit(user['username'], 'user.password_change_failed', 'Incorrect current password',
                  user_id=user['id'], status=STATUS_ERROR)
        return jsonify({'error': 'Current password is incorrect'}), 401

    salt, password_hash = hash_password(new_password)
    get_db().update_user(user['id'], password_salt=salt, password_hash=password_hash, must_change_password=False)

    current_session_id = get_request_credential()
    sessions_removed = invalidate_all_user_sessions(user['id'], except_session=current_session_id)

    logging.info(f"User '{user['username']}' changed their password")
    log_audit(user['username'], 'user.password_changed',
              f"Password changed, {sessions_removed} other sessions invalidated", user_id=user['id'])

    return jsonify({'success': True, 'sessions_invalidated': sessions_removed})


@bp.route('/api/auth/verify-email', methods=['GET', 'POST'])
def auth_verify_email():
    token = request.args.get('token') or get_json_body().get('token')
    if not token:
        return jsonify({'error': 'Verification token is required'}), 400

    user_id = consume_auth_token(token, PURPOSE_VERIFY_EMAIL)
    if not user_id:
        return jsonify({'error': 'Invalid or expired verification link'}), 400

    user = get_db().update_user(user_id, email_verified=True)
    if not user:
        return jsonify({'error': 'Invalid or expired verification link'}), 400

    log_audit(user['username'], 'user.email_verified', None, user_id=user_id)
    return jsonify({'success': True, 'message': 'Email verified, you can now log in.'})


@bp.route('/api/auth/resend-verification', methods=['POST'])
def auth_resend_verification():
    email = str(get_json_body().get('email') or '').strip().lower()
    user = get_db().get_user_by_email(email) if email else None
    if user and not user['email_verified']:
        token = create_auth_token(user['id'], PURPOSE_VERIFY_EMAIL, EMAIL_VERIFY_TTL)
        mail.send_verification_email(user['email'], user['username'], token)
    # same answer either way
    return jsonify({'success': True, 'message': 'If the account exists and is unverified, a new link has been sent.'})


@bp.route('/api/auth/forgot-password', methods=['POST'])
def auth_forgot_password():
    email = str(get_json_body().get('email') or '').strip().lower()
    if not email:
        return jsonify({'error': 'Email is required'}), 400

    user = get_db().get_user_by_email(email)
    if user and user['enabled']:
        token = create_auth_token(user['id'], PURPOSE_RESET_PASSWORD, PASSWORD_RESET_TTL)
        mail.send_password_reset_email(user['email'], user['username'], token)
        log_audit(user['username'], 'user.password_reset_requested', None, user_id=user['id'])
    else:
        logging.info(f"Password reset requested for unknown/disabled email from {get_client_ip()}")

    # LW: never reveal whether the address exists
    return jsonify({'success': True, 'message': FORGOT_PASSWORD_MESSAGE})


@bp.route('/api/auth/reset-password', methods=['POST'])
def auth_reset_password():
    data = get_json_body()
    token = data.get('token')
    new_password = data.get('password') or data.get('newPassword') or ''
    if not token or not new_password:
        return jsonify({'error': 'Token and new password are required'}), 400

    is_valid, error_msg = validate_password_policy(new_password)
    if not is_valid:
        return jsonify({'error': error_msg}), 400

    user_id = consume_auth_token(token, PURPOSE_RESET_PASSWORD)
    if not user_id:
        return jsonify({'error': 'Invalid or expired reset link'}), 400

    salt, password_hash = hash_password(new_password)
    user = get_db().update_user(user_id, password_salt=salt, password_hash=password_hash,
                                must_change_password=False)
    if not user:
        return jsonify({'error': 'Invalid or expired reset link'}), 400

    sessions_removed = invalidate_all_user_sessions(user_id)
    log_audit(user['username'], 'user.password_reset', f"{sessions_removed} sessions invalidated", user_id=user_id)
    return jsonify({'success': True, 'message': 'Password has been reset, please log in.'})


# =============================================================================
# MK: API tokens for CI/CD, scripts, monitoring integrations
# =============================================================================

@bp.route('/api/auth/tokens', methods=['GET'])
@require_auth()
def list_api_tokens():
    """List API tokens for current user (or all users for admin with ?all=true)"""
    if request.session.get('role') == ROLE_ADMIN and request.args.get('all') == 'true':
        rows = get_db().query('''
            SELECT id, token_prefix, username, name, role, expires_at,
                   last_used_at, last_used_ip, created_at, revoked
            FROM api_tokens ORDER BY created_at DESC
        ''')
        return jsonify({'tokens': [dict(r) for r in rows]})

    return jsonify({'tokens': list_user_tokens(request.user['id'])})


@bp.route('/api/auth/tokens', methods=['POST'])
@require_auth()
def create_api_token_endpoint():
    """Create a new API token for the current user"""
    data = get_json_body()
    token_name = str(data.get('name') or '').strip()
    if not token_name:
        return jsonify({'error': 'Token name is required'}), 400
    if len(token_name) > 64:
        return jsonify({'error': 'Token name too long (max 64 chars)'}), 400

    # tokens cant mint tokens
    if request.session.get('api_token'):
        return jsonify({'error': 'API tokens cannot create other tokens'}), 403

    existing = list_user_tokens(request.user['id'])
    if token_name in [t['name'] for t in existing if not t['revoked']]:
        return jsonify({'error': f'Token name "{token_name}" already exists'}), 400

    expires_days = data.get('expiresDays', data.get('expires_days'))
    if expires_days is not None:
        try:
            expires_days = int(expires_days)
        except (ValueError, TypeError):
            return jsonify({'error': 'Invalid expiresDays value'}), 400
        if expires_days < 1 or expires_days > 365:
            return jsonify({'error': 'Expiry must be between 1 and 365 days'}), 400

    result = create_api_token(request.user, token_name, role=data.get('role'), expires_days=expires_days)
    if 'error' in result:
        return jsonify(result), 400

    log_audit(request.user['username'], 'token.created', f"API token '{token_name}' created",
              user_id=request.user['id'], target_id=result['token_id'], target_name=token_name,
              target_type='api_token')
    return jsonify(result), 201


@bp.route('/api/auth/tokens/<int:token_id>', methods=['DELETE'])
@require_auth()
def revoke_api_token_endpoint(token_id):
    """Revoke an API token, admins can revoke anyones"""
    user = request.user
    db = get_db()

    if request.session.get('role') == ROLE_ADMIN:
        row = db.query_one('SELECT username, name FROM api_tokens WHERE id = ?', (token_id,))
        if not row:
            return jsonify({'error': 'Token not found'}), 404
        db.execute('UPDATE api_tokens SET revoked = 1 WHERE id = ?', (token_id,))
        log_audit(user['username'], 'token.revoked',
                  f"Revoked API token '{row['name']}' (user: {row['username']})",
                  user_id=user['id'], target_id=token_id, target_type='api_token')
        return jsonify({'success': True})

    if revoke_api_token(token_id, user['id']):
        log_audit(user['username'], 'token.revoked', f"Revoked API token id={token_id}",
                  user_id=user['id'], target_id=token_id, target_type='api_token')
        return jsonify({'success': True})
    return jsonify({'error': 'Token not found or not owned by you'}), 404
