# -*- coding: utf-8 -*-
"""
Cloudy Constants - Layer 0
Paths, limits and defaults. No imports from the rest of the package here.
"""

import os

CLOUDY_VERSION = "1.4.0"
CLOUDY_BUILD = "2026.10"

# Config / data paths
# NS: everything lives in one dir so docker volumes are simple
CONFIG_DIR = os.environ.get('CLOUDY_CONFIG_DIR', os.path.join(os.getcwd(), 'config'))
DATABASE_FILE = os.path.join(CONFIG_DIR, 'cloudy.db')
KEY_FILE = os.path.join(CONFIG_DIR, '.cloudy.key')

# built frontend (served for the page routes if present)
WEB_DIR = os.environ.get('CLOUDY_WEB_DIR', os.path.join(os.getcwd(), 'web'))

DEFAULT_PORT = int(os.environ.get('CLOUDY_PORT', 5000))
DEFAULT_HOST = os.environ.get('CLOUDY_HOST', '0.0.0.0')

# Sessions
SESSION_TIMEOUT = 8 * 3600  # 8h
MAX_SESSIONS_PER_USER = 5

# Brute force protection (defaults, overridable in server settings)
LOGIN_MAX_ATTEMPTS = 5
LOGIN_LOCKOUT_TIME = 300
LOGIN_ATTEMPT_WINDOW = 600

# API rate limit per IP
API_RATE_LIMIT = 1200
API_RATE_WINDOW = 60

MAX_REQUEST_SIZE = 16 * 1024 * 1024

# One-time auth tokens
EMAIL_VERIFY_TTL = 24 * 3600
PASSWORD_RESET_TTL = 3600

# Audit
AUDIT_RETENTION_DAYS = 180
AUDIT_MAX_PAGE_SIZE = 100

# Proxmox
PROXMOX_DEFAULT_PORT = 8006
PBS_DEFAULT_PORT = 8007
PROXMOX_API_TIMEOUT = 15
PROXMOX_TEST_TIMEOUT = 10
PROXMOX_MAX_FAILURES = 3  # consecutive connection errors before we call it offline

VM_TYPES = ('qemu', 'lxc')
VM_ACTIONS = ('start', 'stop', 'shutdown', 'reboot', 'reset', 'suspend', 'resume')
RRD_TIMEFRAMES = ('hour', 'day', 'week', 'month', 'year')

# MK: clone is async on the PVE side, config PUT fails until the lock is released
CLONE_CONFIG_RETRY_DELAYS = (3, 5, 8, 12, 15)
DELETE_STOP_WAIT = 2

OWNER_TAG_PREFIX = 'owner-'

# Console relay
CONSOLE_RECEIVE_TIMEOUT = 0.1
CONSOLE_CONNECT_TIMEOUT = 5
CONSOLE_SESSION_RETENTION = 15 * 60

# Billing
BILLING_CURRENCY = 'EUR'
BILLING_INTERVAL = 3600
DEFAULT_PRICING = {
    'name': 'Standard',
    'cpu_hourly': 0.01,
    'memory_hourly': 0.005,  # per GB
    'disk_hourly': 0.001,  # per GB
    'cpu_monthly': 5.0,
    'memory_monthly': 2.5,
    'disk_monthly': 0.5,
}
HOURS_PER_MONTH = 24 * 30

NOTIFICATION_LIST_LIMIT = 50
