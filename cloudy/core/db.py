# -*- coding: utf-8 -*-
"""
Cloudy Database - Layer 2
SQLite database wrapper with encryption support.
"""

import os
import json
import time
import logging
import threading
import hashlib
import hmac
import base64
import uuid
import sqlite3
from datetime import datetime, timedelta

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cloudy import constants


class CloudyDB:
    """
    SQLite database wrapper

    one connection per thread (sqlite doesnt like sharing), WAL so the
    console relay and the billing thread dont block each other.
    secrets (proxmox token, smtp password) are AES-256-GCM encrypted.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        # singleton - only one db per process
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.config_dir = constants.CONFIG_DIR
        self.db_path = constants.DATABASE_FILE
        self.aesgcm = None
        self.aes_key = None  # raw key, also used for audit HMAC
        self._local = threading.local()

        os.makedirs(self.config_dir, exist_ok=True)
        self._init_encryption()
        self._init_db()

        self._initialized = True
        logging.info(f"DB initialized: {self.db_path}")

    def _init_encryption(self):
        """load or generate the AES-256 key"""
        key_file = constants.KEY_FILE

        aes_key = None
        if os.path.exists(key_file):
            with open(key_file, 'rb') as f:
                aes_key = f.read()
            if len(aes_key) != 32:
                # NS: a truncated key file means every secret is unreadable anyway
                raise RuntimeError(f"Invalid encryption key in {key_file} ({len(aes_key)} bytes, expected 32)")
        else:
            aes_key = os.urandom(32)
            with open(key_file, 'wb') as f:
                f.write(aes_key)
            try:
                os.chmod(key_file, 0o600)
            except OSError as e:
                logging.warning(f"Could not chmod key file: {e}")
            logging.info("Generated new AES-256-GCM encryption key")

        self.aesgcm = AESGCM(aes_key)
        self.aes_key = aes_key

    def _get_connection(self):
        """Get thread-local database connection"""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn.execute("PRAGMA journal_mode = WAL")
        return self._local.conn

    @property
    def conn(self):
        return self._get_connection()

    def close(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def _init_db(self):
        """Initialize database schema"""
        conn = self.conn
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL UNIQUE,
                password_salt TEXT NOT NULL DEFAULT '',
                password_hash TEXT NOT NULL DEFAULT '',
                role TEXT DEFAULT 'USER',
                enabled INTEGER DEFAULT 1,
                email_verified INTEGER DEFAULT 0,
                must_change_password INTEGER DEFAULT 0,
                max_cpu INTEGER DEFAULT 4,
                max_memory INTEGER DEFAULT 8192,
                max_disk INTEGER DEFAULT 100,
                max_instances INTEGER DEFAULT 3,
                allowed_nodes TEXT DEFAULT '[]',
                created_at TEXT,
                last_login TEXT
            )
        ''')

        # token column holds sha256(session_id), never the session id itself
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                username TEXT NOT NULL,
                role TEXT NOT NULL,
                created_at REAL,
                last_activity REAL,
                ip_address TEXT,
                user_agent TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS api_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_hash TEXT NOT NULL UNIQUE,
                token_prefix TEXT NOT NULL,
                user_id TEXT NOT NULL,
                username TEXT NOT NULL,
                name TEXT NOT NULL,
                role TEXT DEFAULT 'USER',
                expires_at TEXT,
                last_used_at TEXT,
                last_used_ip TEXT,
                created_at TEXT NOT NULL,
                revoked INTEGER DEFAULT 0
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_api_tokens_user ON api_tokens(user_id)')

        # email verification + password reset
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS auth_tokens (
                token_hash TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                purpose TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                used INTEGER DEFAULT 0,
                created_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user TEXT,
                user_id TEXT,
                action TEXT NOT NULL,
                category TEXT,
                status TEXT DEFAULT 'SUCCESS',
                target_id TEXT,
                target_name TEXT,
                target_type TEXT,
                details TEXT,
                error_message TEXT,
                ip_address TEXT,
                user_agent TEXT,
                hmac_signature TEXT
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS server_settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                type TEXT DEFAULT 'info',
                read INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at DESC)')

        # Billing
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS credit_balances (
                user_id TEXT PRIMARY KEY,
                balance REAL NOT NULL DEFAULT 0,
                currency TEXT DEFAULT 'EUR',
                updated_at TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                amount REAL NOT NULL,
                balance_after REAL NOT NULL,
                description TEXT,
                metadata TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at DESC)')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS pricing (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                cpu_hourly REAL NOT NULL,
                memory_hourly REAL NOT NULL,
                disk_hourly REAL NOT NULL,
                cpu_monthly REAL NOT NULL,
                memory_monthly REAL NOT NULL,
                disk_monthly REAL NOT NULL,
                is_default INTEGER DEFAULT 0,
                updated_at TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS usage_records (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                vmid INTEGER NOT NULL,
                node TEXT NOT NULL,
                vm_type TEXT DEFAULT 'qemu',
                billing_type TEXT DEFAULT 'PAYG',
                cores INTEGER,
                memory INTEGER,
                disk INTEGER,
                hourly_rate REAL NOT NULL,
                monthly_rate REAL,
                started_at TEXT NOT NULL,
                stopped_at TEXT,
                last_billed_at TEXT,
                total_cost REAL DEFAULT 0,
                active INTEGER DEFAULT 1
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_usage_active ON usage_records(active, vmid, node)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS instance_shares (
                id TEXT PRIMARY KEY,
                vmid INTEGER NOT NULL,
                node TEXT NOT NULL,
                vm_type TEXT DEFAULT 'qemu',
                vm_name TEXT,
                owner_id TEXT NOT NULL,
                shared_with_id TEXT NOT NULL,
                permission TEXT NOT NULL DEFAULT 'READONLY',
                expires_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(vmid, node, shared_with_id)
            )
        ''')

        conn.commit()

        try:
            os.chmod(self.db_path, 0o600)
        except OSError as e:
            logging.warning(f"Could not set database file permissions: {e}")

    # ========================================
    # ENCRYPTION
    # ========================================

    def _encrypt(self, data: str) -> str:
        """encrypt sensitive stuff"""
        if not data:
            return data
        nonce = os.urandom(12)
        ciphertext = self.aesgcm.encrypt(nonce, data.encode('utf-8'), None)
        encrypted = base64.b64encode(nonce + ciphertext).decode('utf-8')
        return f"aes256:{encrypted}"

    def _decrypt(self, data: str) -> str:
        """decrypt - plain values (pre-encryption rows) come back as-is"""
        if not data or not data.startswith('aes256:'):
            return data
        try:
            encrypted = base64.b64decode(data[7:])
            nonce = encrypted[:12]
            ciphertext = encrypted[12:]
            return self.aesgcm.decrypt(nonce, ciphertext, None).decode('utf-8')
        except Exception as e:
            logging.error(f"AES-256-GCM decryption failed: {e}")
            return ''

    # ========================================
    # USER OPERATIONS
    # ========================================

    def _row_to_user(self, row) -> dict:
        row_dict = dict(row)
        return {
            'id': row_dict['id'],
            'username': row_dict['username'],
            'email': row_dict['email'],
            'password_salt': row_dict.get('password_salt', ''),
            'password_hash': row_dict.get('password_hash', ''),
            'role': row_dict.get('role', 'USER'),
            'enabled': bool(row_dict.get('enabled', 1)),
            'email_verified': bool(row_dict.get('email_verified', 0)),
            'must_change_password': bool(row_dict.get('must_change_password', 0)),
            'max_cpu': row_dict.get('max_cpu'),
            'max_memory': row_dict.get('max_memory'),
            'max_disk': row_dict.get('max_disk'),
            'max_instances': row_dict.get('max_instances'),
            'allowed_nodes': json.loads(row_dict.get('allowed_nodes') or '[]'),
            'created_at': row_dict.get('created_at'),
            'last_login': row_dict.get('last_login'),
        }

    def get_all_users(self) -> list:
        cursor = self.conn.cursor()
        cursor.execute('SELECT * FROM users ORDER BY created_at ASC')
        return [self._row_to_user(row) for row in cursor.fetchall()]

    def count_users(self) -> int:
        row = self.query_one('SELECT COUNT(*) AS n FROM users')
        return row['n'] if row else 0

    def get_user(self, user_id: str) -> dict:
        row = self.query_one('SELECT * FROM users WHERE id = ?', (user_id,))
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> dict:
        row = self.query_one('SELECT * FROM users WHERE lower(username) = lower(?)', (username,))
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> dict:
        row = self.query_one('SELECT * FROM users WHERE lower(email) = lower(?)', (email,))
        return self._row_to_user(row) if row else None

    def create_user(self, username: str, email: str, password_salt: str, password_hash: str,
                    role: str = 'USER', email_verified: bool = False) -> dict:
        user_id = uuid.uuid4().hex
        cursor = self.conn.cursor()
        cursor.execute('''
            INSERT INTO users (id, username, email, password_salt, password_hash, role,
                               email_verified, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, username, email, password_salt, password_hash, role,
              1 if email_verified else 0, datetime.now().isoformat()))
        self.conn.commit()
        return self.get_user(user_id)

    # MK: whitelist so nobody can sneak "id" or "password_hash" in through update_user
    _USER_COLUMNS = {
        'username', 'email', 'password_salt', 'password_hash', 'role', 'enabled',
        'email_verified', 'must_change_password', 'max_cpu', 'max_memory', 'max_disk',
        'max_instances', 'allowed_nodes', 'last_login',
    }

    def update_user(self, user_id: str, **fields) -> dict:
        sets = []
        params = []
        for key, value in fields.items():
            if key not in self._USER_COLUMNS:
                raise ValueError(f"Unknown user field: {key}")
            if key == 'allowed_nodes':
                value = json.dumps(value or [])
            elif isinstance(value, bool):
                value = 1 if value else 0
            sets.append(f"{key} = ?")
            params.append(value)
        if sets:
            params.append(user_id)
            self.execute(f"UPDATE users SET {', '.join(sets)} WHERE id = ?", tuple(params))
        return self.get_user(user_id)

    def delete_user(self, user_id: str):
        cursor = self.conn.cursor()
        cursor.execute('DELETE FROM sessions WHERE user_id = ?', (user_id,))
        cursor.execute('UPDATE api_tokens SET revoked = 1 WHERE user_id = ?', (user_id,))
        cursor.execute('DELETE FROM auth_tokens WHERE user_id = ?', (user_id,))
        cursor.execute('DELETE FROM instance_shares WHERE owner_id = ? OR shared_with_id = ?', (user_id, user_id))
        cursor.execute('DELETE FROM notifications WHERE user_id = ?', (user_id,))
        cursor.execute('DELETE FROM users WHERE id = ?', (user_id,))
        self.conn.commit()

    # ========================================
    # SESSION OPERATIONS
    # ========================================

    @staticmethod
    def _hash_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def get_session(self, token: str) -> dict:
        """Look up a persisted session by its plaintext id (we only store the hash)"""
        row = self.query_one('SELECT * FROM sessions WHERE token = ?', (self._hash_token(token),))
        if not row:
            return None
        return {
            'user': row['username'],
            'user_id': row['user_id'],
            'role': row['role'],
            'created_at': row['created_at'],
            'last_activity': row['last_activity'],
            'ip': row['ip_address'],
            'user_agent': row['user_agent'],
        }

    def save_session(self, token: str, data: dict):
        # NS: hashed so a stolen db file doesnt hand out live sessions
        self.execute('''
            INSERT OR REPLACE INTO sessions
            (token, user_id, username, role, created_at, last_activity, ip_address, user_agent)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            self._hash_token(token),
            data.get('user_id', ''),
            data.get('user', ''),
            data.get('role', ''),
            data.get('created_at', time.time()),
            data.get('last_activity', time.time()),
            data.get('ip', ''),
            data.get('user_agent', ''),
        ))

    def touch_session(self, token: str, last_activity: float):
        self.execute('UPDATE sessions SET last_activity = ? WHERE token = ?',
                     (last_activity, self._hash_token(token)))

    def delete_session(self, token: str):
        self.execute('DELETE FROM sessions WHERE token = ?', (self._hash_token(token),))

    def delete_user_sessions(self, user_id: str):
        self.execute('DELETE FROM sessions WHERE user_id = ?', (user_id,))

    def delete_expired_sessions(self, timeout: int) -> int:
        cursor = self.conn.cursor()
        cursor.execute('DELETE FROM sessions WHERE last_activity < ?', (time.time() - timeout,))
        deleted = cursor.rowcount
        self.conn.commit()
        return deleted

    # ========================================
    # AUDIT LOG OPERATIONS (with HMAC Integrity)
    # ========================================

    def _generate_audit_hmac(self, entry: dict) -> str:
        """HMAC over the fields that matter for tamper detection"""
        data = '|'.join([
            entry.get('timestamp') or '',
            entry.get('user') or '',
            entry.get('action') or '',
            entry.get('details') or '',
            entry.get('ip_address') or '',
            entry.get('status') or '',
            entry.get('target_id') or '',
        ])
        return hmac.new(self.aes_key, data.encode('utf-8'), hashlib.sha256).hexdigest()

    def _verify_audit_hmac(self, entry: dict) -> bool:
        stored_sig = entry.get('hmac_signature') or ''
        if not stored_sig:
            return False
        return hmac.compare_digest(stored_sig, self._generate_audit_hmac(entry))

    def add_audit_entry(self, entry: dict) -> int:
        """Insert an audit row. `entry` uses the column names of audit_log."""
        entry = dict(entry)
        entry.setdefault('timestamp', datetime.now().isoformat())
        entry.setdefault('status', 'SUCCESS')
        entry['hmac_signature'] = self._generate_audit_hmac(entry)

        cursor = self.conn.cursor()
        cursor.execute('''
            INSERT INTO audit_log (timestamp, user, user_id, action, category, status,
                                   target_id, target_name, target_type, details,
                                   error_message, ip_address, user_agent, hmac_signature)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            entry['timestamp'], entry.get('user'), entry.get('user_id'), entry['action'],
            entry.get('category'), entry['status'], entry.get('target_id'),
            entry.get('target_name'), entry.get('target_type'), entry.get('details'),
            entry.get('error_message'), entry.get('ip_address'), entry.get('user_agent'),
            entry['hmac_signature'],
        ))
        self.conn.commit()
        return cursor.lastrowid

    def verify_audit_log_integrity(self) -> dict:
        """Verify integrity of entire audit log - returns statistics"""
        total = 0
        verified = 0
        unsigned = 0
        tampered_ids = []

        for row in self.query('SELECT * FROM audit_log ORDER BY id ASC'):
            entry = dict(row)
            total += 1
            if not entry.get('hmac_signature'):
                unsigned += 1
            elif self._verify_audit_hmac(entry):
                verified += 1
            else:
                tampered_ids.append(entry['id'])
                logging.warning(f"AUDIT LOG INTEGRITY VIOLATION: Entry ID {entry['id']} may have been tampered!")

        return {
            'total_entries': total,
            'verified': verified,
            'unsigned': unsigned,
            'potentially_tampered': len(tampered_ids),
            'tampered_ids': tampered_ids,
            'integrity_percentage': round((verified / total * 100) if total > 0 else 100, 2),
        }

    def cleanup_audit_log(self, days: int = 180) -> int:
        cursor = self.conn.cursor()
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        cursor.execute('DELETE FROM audit_log WHERE timestamp < ?', (cutoff,))
        deleted = cursor.rowcount
        self.conn.commit()
        return deleted

    # ========================================
    # SERVER SETTINGS
    # ========================================

    def get_server_settings(self) -> dict:
        settings = {}
        for row in self.query('SELECT * FROM server_settings'):
            try:
                settings[row['key']] = json.loads(row['value'])
            except (TypeError, ValueError):
                settings[row['key']] = row['value']
        return settings

    def get_server_setting(self, key: str, default=None):
        row = self.query_one('SELECT value FROM server_settings WHERE key = ?', (key,))
        if not row:
            return default
        try:
            return json.loads(row['value'])
        except (TypeError, ValueError):
            return row['value']

    def save_server_setting(self, key: str, value):
        """always JSON encode so reads are consistent"""
        self.execute('INSERT OR REPLACE INTO server_settings (key, value) VALUES (?, ?)',
                     (key, json.dumps(value)))

    def save_server_settings(self, settings: dict):
        for key, value in settings.items():
            self.save_server_setting(key, value)

    def get_secret_setting(self, key: str) -> str:
        return self._decrypt(self.get_server_setting(key, '') or '')

    def save_secret_setting(self, key: str, value: str):
        self.save_server_setting(key, self._encrypt(value) if value else '')

    # Generic query methods
    def execute(self, sql: str, params: tuple = ()):
        """Execute SQL statement (INSERT, UPDATE, DELETE)"""
        cursor = self.conn.cursor()
        cursor.execute(sql, params)
        self.conn.commit()
        return cursor

    def query(self, sql: str, params: tuple = ()) -> list:
        cursor = self.conn.cursor()
        cursor.execute(sql, params)
        return cursor.fetchall()

    def query_one(self, sql: str, params: tuple = ()):
        cursor = self.conn.cursor()
        cursor.execute(sql, params)
        return cursor.fetchone()


# Global database instance
_db = None


def get_db() -> CloudyDB:
    """Get database instance (singleton)"""
    global _db
    if _db is None:
        _db = CloudyDB()
    return _db


def reset_db():
    """Drop the singleton so the next get_db() reopens - tests and config-dir changes"""
    global _db
    if _db is not None:
        _db.close()
    _db = None
    CloudyDB._instance = None
