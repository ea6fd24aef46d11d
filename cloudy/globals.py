# -*- coding: utf-8 -*-
"""
Cloudy Global State - Layer 0
Shared mutable state. Everything here is process-local and guarded by its lock.
"""

import os
import threading

# Sessions - session_id -> {user, user_id, role, created_at, last_activity, ip, user_agent}
active_sessions = {}
sessions_lock = threading.Lock()

# Brute force tracking - key -> {'attempts': [ts, ...], 'locked_until': ts}
login_attempts_by_ip = {}
login_attempts_by_user = {}
login_attempts_lock = threading.Lock()

# API rate limiting - ip -> {'count', 'window_start'}
api_request_counts = {}
api_rate_limit_lock = threading.Lock()

# CORS
_cors_origins_env = os.environ.get('CLOUDY_CORS_ORIGINS', '')

# Console relay sessions - id -> ConsoleSession
console_sessions = {}
console_sessions_lock = threading.Lock()

# Proxmox / PBS clients, built lazily from settings (see core.config)
proxmox_client = None
pbs_client = None
clients_lock = threading.Lock()

# Balance mutations must not interleave
billing_lock = threading.Lock()
# One hourly billing pass at a time (background thread vs admin trigger)
billing_run_lock = threading.Lock()


def reset_state():
    """Clear all in-memory state. Used on shutdown and by the test suite."""
    global proxmox_client, pbs_client
    with sessions_lock:
        active_sessions.clear()
    with login_attempts_lock:
        login_attempts_by_ip.clear()
        login_attempts_by_user.clear()
    with api_rate_limit_lock:
        api_request_counts.clear()
    with console_sessions_lock:
        console_sessions.clear()
    with clients_lock:
        proxmox_client = None
        pbs_client = None
