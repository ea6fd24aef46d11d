# -*- coding: utf-8 -*-
"""
Cloudy Billing - Layer 4
Credit balances, transactions, pricing and per-instance usage tracking.

Balance changes hold billing_lock and run inside one sqlite transaction,
so balance_after always matches the running sum of transactions.
"""

import json
import math
import uuid
import logging
from datetime import datetime, timedelta

from cloudy import globals as g
from cloudy.constants import BILLING_CURRENCY, DEFAULT_PRICING, HOURS_PER_MONTH
from cloudy.core.db import get_db
from cloudy.core.errors import InsufficientCreditsError, ValidationError, NotFoundError

TX_CREDIT = 'CREDIT'
TX_DEBIT = 'DEBIT'
TX_REFUND = 'REFUND'

BILLING_PAYG = 'PAYG'
BILLING_RESERVED = 'RESERVED'
BILLING_TYPES = (BILLING_PAYG, BILLING_RESERVED)


def _now() -> str:
    return datetime.now().isoformat()


def _money(value) -> float:
    return round(float(value), 4)


def _positive_amount(amount) -> float:
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise ValidationError('Amount must be a number')
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError('Amount must be positive')
    return amount


# =====================================================
# PRICING
# =====================================================

def _pricing_to_dict(row) -> dict:
    return {
        'id': row['id'],
        'name': row['name'],
        'cpuHourly': row['cpu_hourly'],
        'memoryHourly': row['memory_hourly'],
        'diskHourly': row['disk_hourly'],
        'cpuMonthly': row['cpu_monthly'],
        'memoryMonthly': row['memory_monthly'],
        'diskMonthly': row['disk_monthly'],
        'isDefault': bool(row['is_default']),
        'updatedAt': row['updated_at'],
    }


def get_pricing() -> dict:
    """default plan, created on first use"""
    db = get_db()
    row = db.query_one('SELECT * FROM pricing WHERE is_default = 1 ORDER BY updated_at DESC LIMIT 1')
    if row is None:
        row = db.query_one('SELECT * FROM pricing WHERE name = ?', (DEFAULT_PRICING['name'],))
    if row is None:
        db.execute('''
            INSERT INTO pricing (id, name, cpu_hourly, memory_hourly, disk_hourly,
                                 cpu_monthly, memory_monthly, disk_monthly, is_default, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
        ''', (str(uuid.uuid4()), DEFAULT_PRICING['name'],
              DEFAULT_PRICING['cpu_hourly'], DEFAULT_PRICING['memory_hourly'], DEFAULT_PRICING['disk_hourly'],
              DEFAULT_PRICING['cpu_monthly'], DEFAULT_PRICING['memory_monthly'], DEFAULT_PRICING['disk_monthly'],
              _now()))
        logging.info("[Billing] Created default pricing plan")
        row = db.query_one('SELECT * FROM pricing WHERE name = ?', (DEFAULT_PRICING['name'],))
    return _pricing_to_dict(row)


def list_pricing() -> list:
    get_pricing()
    return [_pricing_to_dict(r) for r in get_db().query('SELECT * FROM pricing ORDER BY name')]


def upsert_pricing(data: dict) -> dict:
    """create or update a plan by name, isDefault moves the default flag"""
    name = str(data.get('name') or DEFAULT_PRICING['name']).strip()
    fields = {}
    for api_key, column in (('cpuHourly', 'cpu_hourly'), ('memoryHourly', 'memory_hourly'),
                            ('diskHourly', 'disk_hourly'), ('cpuMonthly', 'cpu_monthly'),
                            ('memoryMonthly', 'memory_monthly'), ('diskMonthly', 'disk_monthly')):
        value = data.get(api_key)
        if value is None:
            continue
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{api_key} must be a number")
        if value < 0:
            raise ValidationError(f"{api_key} must not be negative")
        fields[column] = value

    db = get_db()
    existing = db.query_one('SELECT * FROM pricing WHERE name = ?', (name,))
    is_default = bool(data.get('isDefault', existing['is_default'] if existing else False))

    if existing:
        if fields:
            sets = ', '.join(f'{col} = ?' for col in fields)
            db.execute(f'UPDATE pricing SET {sets}, updated_at = ? WHERE id = ?',
                       tuple(fields.values()) + (_now(), existing['id']))
        pricing_id = existing['id']
    else:
        base = {k: DEFAULT_PRICING[k] for k in DEFAULT_PRICING if k != 'name'}
        base.update(fields)
        pricing_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO pricing (id, name, cpu_hourly, memory_hourly, disk_hourly,
                                 cpu_monthly, memory_monthly, disk_monthly, is_default, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
        ''', (pricing_id, name, base['cpu_hourly'], base['memory_hourly'], base['disk_hourly'],
              base['cpu_monthly'], base['memory_monthly'], base['disk_monthly'], _now()))

    if is_default:
        db.execute('UPDATE pricing SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END', (pricing_id,))

    logging.info(f"[Billing] Pricing '{name}' saved")
    return _pricing_to_dict(db.query_one('SELECT * FROM pricing WHERE id = ?', (pricing_id,)))


def estimate(cores: int = 1, memory: int = 1024, disk: int = 20, billing_type: str = BILLING_PAYG) -> dict:
    """cost estimate - memory in MB, disk in GB"""
    pricing = get_pricing()
    memory_gb = memory / 1024

    hourly = {
        'cpu': cores * pricing['cpuHourly'],
        'memory': memory_gb * pricing['memoryHourly'],
        'disk': disk * pricing['diskHourly'],
    }
    monthly = {
        'cpu': cores * pricing['cpuMonthly'],
        'memory': memory_gb * pricing['memoryMonthly'],
        'disk': disk * pricing['diskMonthly'],
    }
    hourly_total = sum(hourly.values())
    monthly_total = sum(monthly.values())
    payg_monthly = hourly_total * HOURS_PER_MONTH
    savings = round((payg_monthly - monthly_total) / payg_monthly * 100) if payg_monthly > 0 else 0

    return {
        'billingType': billing_type,
        'currency': BILLING_CURRENCY,
        'hourly': {**{k: _money(v) for k, v in hourly.items()}, 'total': _money(hourly_total)},
        'monthly': {**{k: _money(v) for k, v in monthly.items()}, 'total': _money(monthly_total)},
        'paygEstimatedMonthly': _money(payg_monthly),
        'savingsPercent': savings,
    }


# =====================================================
# BALANCES
# =====================================================

def _balance_row(db, user_id):
    row = db.query_one('SELECT * FROM credit_balances WHERE user_id = ?', (user_id,))
    if row is None:
        db.execute('INSERT OR IGNORE INTO credit_balances (user_id, balance, currency, updated_at) VALUES (?, 0, ?, ?)',
                   (user_id, BILLING_CURRENCY, _now()))
        row = db.query_one('SELECT * FROM credit_balances WHERE user_id = ?', (user_id,))
    return row


def get_balance(user_id: str) -> dict:
    row = _balance_row(get_db(), user_id)
    return {'userId': user_id, 'balance': _money(row['balance']), 'currency': row['currency'],
            'updatedAt': row['updated_at']}


def _tx_to_dict(row) -> dict:
    try:
        metadata = json.loads(row['metadata'] or '{}')
    except (TypeError, ValueError):
        metadata = {}
    return {
        'id': row['id'],
        'userId': row['user_id'],
        'type': row['type'],
        'amount': _money(row['amount']),
        'balanceAfter': _money(row['balance_after']),
        'description': row['description'],
        'metadata': metadata,
        'createdAt': row['created_at'],
    }


def _apply(user_id: str, tx_type: str, delta: float, description: str, metadata: dict = None,
           require_funds: bool = False) -> dict:
    """move the balance by delta and write the transaction, atomically"""
    db = get_db()
    with g.billing_lock:
        _balance_row(db, user_id)
        conn = db.conn
        try:
            cursor = conn.cursor()
            cursor.execute('SELECT balance FROM credit_balances WHERE user_id = ?', (user_id,))
            balance = cursor.fetchone()['balance']
            if require_funds and balance < -delta:
                raise InsufficientCreditsError(
                    f"Insufficient credits. Balance: €{balance:.2f}, Required: €{-delta:.2f}")
            new_balance = balance + delta
            now = _now()
            tx_id = str(uuid.uuid4())
            cursor.execute('UPDATE credit_balances SET balance = ?, updated_at = ? WHERE user_id = ?',
                           (new_balance, now, user_id))
            cursor.execute('''
                INSERT INTO transactions (id, user_id, type, amount, balance_after, description, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (tx_id, user_id, tx_type, delta, new_balance, description,
                  json.dumps(metadata or {}, default=str), now))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        row = db.query_one('SELECT * FROM transactions WHERE id = ?', (tx_id,))

    logging.info(f"[Billing] {tx_type} {delta:+.4f} {BILLING_CURRENCY} for {user_id}, balance {new_balance:.4f}")
    return _tx_to_dict(row)


def add_credits(user_id: str, amount, description: str = None, admin_id: str = None) -> dict:
    amount = _positive_amount(amount)
    metadata = {'addedBy': admin_id} if admin_id else {}
    return _apply(user_id, TX_CREDIT, amount, description or 'Credits added', metadata)


def deduct_credits(user_id: str, amount, description: str = None, metadata: dict = None) -> dict:
    amount = _positive_amount(amount)
    return _apply(user_id, TX_DEBIT, -amount, description or 'Usage charge', metadata, require_funds=True)


def refund_credits(user_id: str, amount, description: str = None, metadata: dict = None) -> dict:
    amount = _positive_amount(amount)
    return _apply(user_id, TX_REFUND, amount, description or 'Refund', metadata)


def check_credits(user_id: str, cores: int, memory: int, disk: int, billing_type: str = BILLING_PAYG):
    """raise InsufficientCreditsError unless the balance covers one hour of the estimate"""
    required = estimate(cores, memory, disk, billing_type)['hourly']['total']
    balance = get_balance(user_id)['balance']
    if balance < required:
        raise InsufficientCreditsError(
            f"Insufficient credits. Balance: €{balance:.2f}, Required: €{required:.2f}")
    return required


def get_transactions(user_id: str, limit: int = 50) -> list:
    limit = max(1, min(200, int(limit or 50)))
    rows = get_db().query('SELECT * FROM transactions WHERE user_id = ? ORDER BY created_at DESC LIMIT ?',
                          (user_id, limit))
    return [_tx_to_dict(r) for r in rows]


def get_all_balances() -> list:
    rows = get_db().query('''
        SELECT b.*, u.username, u.email FROM credit_balances b
        LEFT JOIN users u ON u.id = b.user_id
        ORDER BY b.balance DESC
    ''')
    return [{
        'userId': r['user_id'],
        'username': r['username'],
        'email': r['email'],
        'balance': _money(r['balance']),
        'currency': r['currency'],
        'updatedAt': r['updated_at'],
    } for r in rows]


# =====================================================
# USAGE TRACKING
# =====================================================

def _usage_to_dict(row) -> dict:
    return {
        'id': row['id'],
        'userId': row['user_id'],
        'vmid': row['vmid'],
        'node': row['node'],
        'vmType': row['vm_type'],
        'billingType': row['billing_type'],
        'cores': row['cores'],
        'memory': row['memory'],
        'disk': row['disk'],
        'hourlyRate': row['hourly_rate'],
        'monthlyRate': row['monthly_rate'],
        'startedAt': row['started_at'],
        'stoppedAt': row['stopped_at'],
        'lastBilledAt': row['last_billed_at'],
        'totalCost': _money(row['total_cost'] or 0),
        'active': bool(row['active']),
    }


def start_usage_tracking(user_id: str, vmid: int, node: str, cores: int, memory: int, disk: int,
                         billing_type: str = BILLING_PAYG, vm_type: str = 'qemu') -> dict:
    billing_type = (billing_type or BILLING_PAYG).upper()
    if billing_type not in BILLING_TYPES:
        raise ValidationError(f"Invalid billing type: {billing_type}")

    est = estimate(cores, memory, disk, billing_type)
    db = get_db()
    now = _now()
    # a vmid can be reused after delete, only one active record per guest
    db.execute('UPDATE usage_records SET active = 0, stopped_at = ? WHERE vmid = ? AND node = ? AND active = 1',
               (now, vmid, node))
    record_id = str(uuid.uuid4())
    db.execute('''
        INSERT INTO usage_records (id, user_id, vmid, node, vm_type, billing_type, cores, memory, disk,
                                   hourly_rate, monthly_rate, started_at, total_cost, active)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 1)
    ''', (record_id, user_id, vmid, node, vm_type, billing_type, cores, memory, disk,
          est['hourly']['total'], est['monthly']['total'] if billing_type == BILLING_RESERVED else None, now))
    logging.info(f"[Billing] Tracking {vm_type}/{vmid}@{node} for {user_id} ({billing_type})")
    return _usage_to_dict(db.query_one('SELECT * FROM usage_records WHERE id = ?', (record_id,)))


def stop_usage_tracking(vmid: int, node: str):
    """close the active record, None when the guest wasnt tracked"""
    db = get_db()
    row = db.query_one('SELECT * FROM usage_records WHERE vmid = ? AND node = ? AND active = 1', (vmid, node))
    if row is None:
        return None

    now = datetime.now()
    hours_used = (now - datetime.fromisoformat(row['started_at'])).total_seconds() / 3600
    final_cost = hours_used * row['hourly_rate'] if row['billing_type'] == BILLING_PAYG else 0
    db.execute('UPDATE usage_records SET active = 0, stopped_at = ? WHERE id = ?', (now.isoformat(), row['id']))
    logging.info(f"[Billing] Stopped tracking {row['vm_type']}/{vmid}@{node} after {hours_used:.2f}h")
    return {'hoursUsed': round(hours_used, 2), 'finalCost': _money(final_cost)}


def get_active_usage(user_id: str = None, limit: int = 50) -> list:
    if user_id:
        rows = get_db().query('SELECT * FROM usage_records WHERE user_id = ? AND active = 1 '
                              'ORDER BY started_at DESC LIMIT ?', (user_id, limit))
    else:
        rows = get_db().query('SELECT * FROM usage_records WHERE active = 1 ORDER BY started_at DESC LIMIT ?',
                              (limit,))
    return [_usage_to_dict(r) for r in rows]


def get_usage_history(user_id: str, limit: int = 50) -> list:
    rows = get_db().query('SELECT * FROM usage_records WHERE user_id = ? ORDER BY started_at DESC LIMIT ?',
                          (user_id, limit))
    return [_usage_to_dict(r) for r in rows]


def get_summary(user_id: str) -> dict:
    balance = get_balance(user_id)
    active = get_active_usage(user_id)
    burn_rate = sum(u['hourlyRate'] for u in active if u['billingType'] == BILLING_PAYG)
    return {
        'balance': balance['balance'],
        'currency': balance['currency'],
        'activeInstances': len(active),
        'hourlyBurnRate': _money(burn_rate),
        'estimatedRemainingHours': round(balance['balance'] / burn_rate, 1) if burn_rate > 0 else None,
        'recentTransactions': get_transactions(user_id, 10),
        'activeUsage': active,
    }


def process_hourly_billing(now: datetime = None) -> list:
    """charge every active PAYG record for its whole unbilled hours

    Each record claims its hours with a compare-and-set on last_billed_at
    before any money moves, so overlapping runs never bill the same hour twice.
    """
    now = now or datetime.now()
    db = get_db()
    results = []
    with g.billing_run_lock:
        for row in db.query('SELECT * FROM usage_records WHERE active = 1 AND billing_type = ?', (BILLING_PAYG,)):
            previous = row['last_billed_at']
            since = datetime.fromisoformat(previous or row['started_at'])
            hours = math.floor((now - since).total_seconds() / 3600)
            if hours < 1:
                continue
            charge = hours * row['hourly_rate']
            billed_until = (since + timedelta(hours=hours)).isoformat()

            claimed = db.execute('UPDATE usage_records SET last_billed_at = ? '
                                 'WHERE id = ? AND active = 1 AND last_billed_at IS ?',
                                 (billed_until, row['id'], previous))
            if claimed.rowcount == 0:
                logging.info(f"[Billing] Usage {row['id']} already billed by another run")
                continue

            try:
                if charge > 0:
                    deduct_credits(row['user_id'], charge,
                                   f"Usage {row['vm_type']}/{row['vmid']} ({hours}h)",
                                   {'usageId': row['id'], 'vmid': row['vmid'], 'node': row['node'], 'hours': hours})
            except InsufficientCreditsError as e:
                # give the hours back so the next run retries them
                db.execute('UPDATE usage_records SET last_billed_at = ? WHERE id = ? AND last_billed_at = ?',
                           (previous, row['id'], billed_until))
                logging.warning(f"[Billing] {row['user_id']} cannot pay for {row['vmid']}: {e.message}")
                results.append({'id': row['id'], 'success': False, 'error': e.message})
                continue

            db.execute('UPDATE usage_records SET total_cost = total_cost + ? WHERE id = ?', (charge, row['id']))
            results.append({'id': row['id'], 'success': True, 'charged': _money(charge)})
    if results:
        logging.info(f"[Billing] Processed {len(results)} usage record(s)")
    return results


def require_user(user_id: str) -> dict:
    user = get_db().get_user(user_id)
    if not user:
        raise NotFoundError('User not found')
    return user
