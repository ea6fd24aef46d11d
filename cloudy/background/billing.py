# -*- coding: utf-8 -*-
"""hourly PAYG billing loop"""

import time
import logging
import threading

from cloudy.constants import BILLING_INTERVAL
from cloudy.core.billing import process_hourly_billing
from cloudy.core.db import get_db
from cloudy.core.notifications import notify
from cloudy.core.console import prune_sessions
from cloudy.utils.auth import cleanup_expired_sessions, prune_rate_state

_stop_event = threading.Event()
_billing_thread = None


def _billing_settings():
    from cloudy.api.helpers import load_server_settings
    settings = load_server_settings()
    return bool(settings.get('billing_enabled')), int(settings.get('billing_interval') or BILLING_INTERVAL)


def run_billing_cycle() -> list:
    """one pass - charge, then tell users whose charge bounced"""
    results = process_hourly_billing()
    db = get_db()
    for result in results:
        if result['success']:
            continue
        row = db.query_one('SELECT user_id, vmid FROM usage_records WHERE id = ?', (result['id'],))
        if row:
            notify(row['user_id'], 'Billing failed',
                   f"Could not charge usage of instance {row['vmid']}: {result['error']}", 'error')
    return results


def billing_loop():
    logging.info("[Billing] Billing thread started")
    last_run = 0.0
    while not _stop_event.is_set():
        try:
            enabled, interval = _billing_settings()
            # housekeeping runs regardless of billing
            cleanup_expired_sessions()
            prune_sessions()
            prune_rate_state()
            if enabled and time.time() - last_run >= interval:
                last_run = time.time()
                run_billing_cycle()
        except Exception as e:
            logging.error(f"[Billing] Error in billing loop: {e}")

        # check once a minute, interval changes apply without restart
        _stop_event.wait(60)
    logging.info("[Billing] Billing thread stopped")


def start_billing_thread():
    global _billing_thread
    if _billing_thread is not None and _billing_thread.is_alive():
        return _billing_thread
    _stop_event.clear()
    _billing_thread = threading.Thread(target=billing_loop, name='cloudy-billing', daemon=True)
    _billing_thread.start()
    return _billing_thread


def stop_billing_thread(timeout: float = 5):
    _stop_event.set()
    if _billing_thread is not None and _billing_thread.is_alive():
        _billing_thread.join(timeout)
