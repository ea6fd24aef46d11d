# -*- coding: utf-8 -*-
"""
Cloudy App Config - Layer 4
camelCase app config <-> snake_case server_settings, Proxmox/PBS client lookup.
"""

import os
import logging

from cloudy import globals as g
from cloudy.core.db import get_db
from cloudy.core.errors import ValidationError

MASK = '********'

# API name -> server_settings key
APP_CONFIG_FIELDS = {
    'pveHost': 'pve_host',
    'pveTokenId': 'pve_token_id',
    'pveTokenSecret': 'pve_token_secret',
    'pbsHost': 'pbs_host',
    'pbsTokenId': 'pbs_token_id',
    'pbsTokenSecret': 'pbs_token_secret',
    'enableLocalAuth': 'enable_local_auth',
    'enableDiscordAuth': 'enable_discord_auth',
    'discordClientId': 'discord_client_id',
    'discordClientSecret': 'discord_client_secret',
    'requireEmailVerification': 'require_email_verification',
    'billingEnabled': 'billing_enabled',
    'billingInterval': 'billing_interval',
    'smtpHost': 'smtp_host',
    'smtpPort': 'smtp_port',
    'smtpUser': 'smtp_user',
    'smtpPassword': 'smtp_password',
    'smtpSecure': 'smtp_secure',
    'mailFrom': 'mail_from',
    'frontendUrl': 'frontend_url',
    'apiUrl': 'api_url',
    'sessionTimeout': 'session_timeout',
    'passwordMinLength': 'password_min_length',
    'loginMaxAttempts': 'login_max_attempts',
    'loginLockoutTime': 'login_lockout_time',
}

# stored encrypted, never returned in clear
SECRET_FIELDS = {'pve_token_secret', 'pbs_token_secret', 'smtp_password', 'discord_client_secret'}

BOOL_FIELDS = {'enable_local_auth', 'enable_discord_auth', 'require_email_verification',
               'billing_enabled', 'smtp_secure'}
INT_FIELDS = {'smtp_port', 'billing_interval', 'session_timeout', 'password_min_length',
              'login_max_attempts', 'login_lockout_time'}

PVE_FIELDS = {'pve_host', 'pve_token_id', 'pve_token_secret'}
PBS_FIELDS = {'pbs_host', 'pbs_token_id', 'pbs_token_secret'}

PUBLIC_AUTH_FIELDS = ('enableLocalAuth', 'enableDiscordAuth', 'requireEmailVerification')


def _settings():
    from cloudy.api.helpers import load_server_settings
    return load_server_settings()


def get_app_config(masked: bool = True) -> dict:
    """full app config in API naming, secrets masked unless masked=False"""
    settings = _settings()
    db = get_db()
    config = {}
    for api_key, key in APP_CONFIG_FIELDS.items():
        if key in SECRET_FIELDS:
            secret = db.get_secret_setting(key)
            if masked:
                config[api_key] = MASK if secret else ''
            else:
                config[api_key] = secret
        else:
            config[api_key] = settings.get(key, '')
    return config


def get_public_auth_config() -> dict:
    config = get_app_config()
    return {k: bool(config.get(k)) for k in PUBLIC_AUTH_FIELDS}


def _coerce(key, value):
    if key in BOOL_FIELDS:
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)
    if key in INT_FIELDS:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be an integer")
        if number < 0:
            raise ValidationError(f"{key} must not be negative")
        return number
    return str(value).strip()


def update_app_config(data: dict) -> list:
    """apply a partial config update, returns the API keys that changed

    unknown keys and nulls are ignored, a masked secret keeps the stored one
    """
    db = get_db()
    current = _settings()
    changed = []
    touched = set()

    for api_key, value in (data or {}).items():
        key = APP_CONFIG_FIELDS.get(api_key)
        if key is None or value is None:
            continue
        if key in SECRET_FIELDS:
            if value == MASK:
                continue
            db.save_secret_setting(key, str(value))
        else:
            value = _coerce(key, value)
            if current.get(key) == value:
                continue
            db.save_server_setting(key, value)
        changed.append(api_key)
        touched.add(key)

    if touched & (PVE_FIELDS | PBS_FIELDS):
        # LW: new credentials, drop the cached clients so next call rebuilds
        reinit_clients()
    if changed:
        logging.info(f"[Config] Updated: {', '.join(changed)}")
    return changed


def _split_token(token: str):
    """'user@realm!name=secret' -> ('user@realm!name', 'secret')"""
    if not token or '=' not in token:
        return None, None
    token_id, _, secret = token.partition('=')
    return token_id.strip(), secret.strip()


def _client_credentials(prefix: str, env_url: str, env_token: str):
    """(host, token_id, secret) from settings, env as fallback"""
    settings = _settings()
    host = settings.get(f'{prefix}_host') or ''
    token_id = settings.get(f'{prefix}_token_id') or ''
    secret = get_db().get_secret_setting(f'{prefix}_token_secret')
    if host and token_id and secret:
        return host, token_id, secret

    host = os.environ.get(env_url, '')
    token_id, secret = _split_token(os.environ.get(env_token, ''))
    if host and token_id and secret:
        return host, token_id, secret
    return None, None, None


def get_proxmox_client():
    """cached ProxmoxClient, None when nothing is configured"""
    from cloudy.core.proxmox import ProxmoxClient

    with g.clients_lock:
        if g.proxmox_client is not None:
            return g.proxmox_client
        host, token_id, secret = _client_credentials('pve', 'PROXMOX_API_URL', 'PROXMOX_API_TOKEN')
        if not host:
            return None
        try:
            g.proxmox_client = ProxmoxClient(host, token_id, secret)
        except ValidationError as e:
            logging.error(f"[Config] Invalid Proxmox host configured: {e.message}")
            return None
        logging.info(f"[Config] Proxmox client ready: {g.proxmox_client.base_url} ({token_id})")
        return g.proxmox_client


def get_pbs_client():
    from cloudy.core.pbs import PBSClient

    with g.clients_lock:
        if g.pbs_client is not None:
            return g.pbs_client
        host, token_id, secret = _client_credentials('pbs', 'PBS_API_URL', 'PBS_API_TOKEN')
        if not host:
            return None
        try:
            g.pbs_client = PBSClient(host, token_id, secret)
        except ValidationError as e:
            logging.error(f"[Config] Invalid PBS host configured: {e.message}")
            return None
        logging.info(f"[Config] PBS client ready: {g.pbs_client.base_url}")
        return g.pbs_client


def reinit_clients():
    with g.clients_lock:
        g.proxmox_client = None
        g.pbs_client = None
    logging.info("[Config] Proxmox/PBS clients reset")


def is_setup_completed() -> bool:
    return bool(_settings().get('setup_completed'))


def complete_setup(data: dict) -> list:
    """first-run wizard - store everything and flip setup_completed"""
    if not data.get('pveHost') or not data.get('pveTokenId') or not data.get('pveTokenSecret'):
        raise ValidationError('pveHost, pveTokenId and pveTokenSecret are required')
    changed = update_app_config(data)
    get_db().save_server_setting('setup_completed', True)
    logging.info("[Config] Setup completed")
    return changed


def test_proxmox_connection(host: str, token_id: str, token_secret: str) -> dict:
    from cloudy.core.proxmox import ProxmoxClient
    if not host or not token_id or not token_secret:
        return {'success': False, 'message': 'Connection failed: host, tokenId and tokenSecret are required'}
    return ProxmoxClient.test_connection(host, token_id, token_secret)
