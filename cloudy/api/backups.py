# -*- coding: utf-8 -*-
"""backup routes - PBS datastores/snapshots and PVE backup jobs"""

import re

from flask import Blueprint, jsonify, request

from cloudy.core.config import get_pbs_client
from cloudy.core.errors import CloudyError, ValidationError
from cloudy.models.permissions import ROLE_ADMIN, SHARE_MAINTENANCE, SHARE_ADMIN
from cloudy.utils.auth import require_auth
from cloudy.utils.audit import log_request_audit, STATUS_ERROR
from cloudy.utils.sanitization import (
    validate_node, validate_storage, parse_instance_id, detect_vm_type, sanitize_identifier,
)
from cloudy.api.helpers import get_proxmox, error_response, safe_error, get_json_body, check_instance_access

bp = Blueprint('backups', __name__)

BACKUP_MODES = ('snapshot', 'suspend', 'stop')
BACKUP_TYPES = ('vm', 'ct', 'host')
_JOB_ID_RE = re.compile(r'^[a-zA-Z0-9_-]{1,64}$')
# vzdump archive volid, e.g. pbs:backup/vm/101/2026-01-01T00:00:00Z or local:backup/vzdump-qemu-101-....vma.zst
_ARCHIVE_RE = re.compile(r'^[a-zA-Z0-9_.-]+:[a-zA-Z0-9_./:+-]+$')


def _pbs():
    client = get_pbs_client()
    if client is None:
        return None, (jsonify({'error': 'PBS is not configured', 'code': 'PBS_NOT_CONFIGURED'}), 503)
    return client, None


# =====================================================
# PBS
# =====================================================

@bp.route('/api/backups/pbs/status', methods=['GET'])
@require_auth()
def pbs_status():
    client = get_pbs_client()
    if client is None:
        return jsonify({'configured': False, 'online': False})
    return jsonify(client.get_status())


@bp.route('/api/backups/pbs/datastores', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def pbs_datastores():
    client, err = _pbs()
    if err:
        return err
    try:
        return jsonify(client.get_datastores())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list datastores')}), 500


@bp.route('/api/backups/pbs/datastores/<datastore>/groups', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def pbs_groups(datastore):
    client, err = _pbs()
    if err:
        return err
    try:
        return jsonify(client.get_groups(validate_storage(datastore)))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list backup groups')}), 500


@bp.route('/api/backups/pbs/datastores/<datastore>/snapshots', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def pbs_snapshots(datastore):
    client, err = _pbs()
    if err:
        return err
    try:
        backup_type = request.args.get('backup-type')
        if backup_type and backup_type not in BACKUP_TYPES:
            raise ValidationError(f"Invalid backup-type. Must be one of {', '.join(BACKUP_TYPES)}")
        backup_id = sanitize_identifier(request.args.get('backup-id')) or None
        return jsonify(client.get_snapshots(validate_storage(datastore), backup_type, backup_id))
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list backup snapshots')}), 500


@bp.route('/api/backups/pbs/datastores/<datastore>/snapshots', methods=['DELETE'])
@require_auth(roles=[ROLE_ADMIN])
def pbs_delete_snapshot(datastore):
    client, err = _pbs()
    if err:
        return err
    data = get_json_body()
    backup_type = data.get('backupType') or request.args.get('backup-type')
    backup_id = sanitize_identifier(data.get('backupId') or request.args.get('backup-id'))
    backup_time = data.get('backupTime') or request.args.get('backup-time')
    try:
        datastore = validate_storage(datastore)
        if backup_type not in BACKUP_TYPES or not backup_id:
            raise ValidationError('backupType and backupId are required')
        try:
            backup_time = int(backup_time)
        except (TypeError, ValueError):
            raise ValidationError('backupTime must be a unix timestamp')
        client.delete_snapshot(datastore, backup_type, backup_id, backup_time)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete backup snapshot')}), 500

    log_request_audit('backup.snapshot_delete', {'datastore': datastore, 'time': backup_time},
                      target_id=f"{backup_type}/{backup_id}", target_type='backup')
    return jsonify({'success': True})


# =====================================================
# PVE BACKUP JOBS
# =====================================================

@bp.route('/api/backups/jobs', methods=['GET'])
@require_auth(roles=[ROLE_ADMIN])
def list_jobs():
    client, err = get_proxmox()
    if err:
        return err
    try:
        return jsonify(client.get_backup_jobs())
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to list backup jobs')}), 500


@bp.route('/api/backups/jobs', methods=['POST'])
@require_auth(roles=[ROLE_ADMIN])
def create_job():
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        storage = validate_storage(data.get('storage'))
        schedule = str(data.get('schedule') or '').strip()
        if not schedule or len(schedule) > 128:
            raise ValidationError('schedule is required')
        mode = str(data.get('mode') or 'snapshot')
        if mode not in BACKUP_MODES:
            raise ValidationError(f"Invalid mode. Must be one of {', '.join(BACKUP_MODES)}")
        job = {'storage': storage, 'schedule': schedule, 'mode': mode, 'enabled': 1 if data.get('enabled', True) else 0}
        if data.get('all'):
            job['all'] = 1
        elif data.get('vmid'):
            vmids = data['vmid'] if isinstance(data['vmid'], list) else str(data['vmid']).split(',')
            job['vmid'] = ','.join(str(parse_instance_id(v)) for v in vmids)
        else:
            raise ValidationError('Either all or vmid is required')
        if data.get('node'):
            job['node'] = validate_node(data['node'])
        if data.get('comment'):
            job['comment'] = str(data['comment'])[:255]
        client.create_backup_job(job)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to create backup job')}), 500

    log_request_audit('backup.job_create', job, target_type='backup')
    return jsonify({'success': True, 'job': job}), 201


@bp.route('/api/backups/jobs/<job_id>', methods=['DELETE'])
@require_auth(roles=[ROLE_ADMIN])
def delete_job(job_id):
    client, err = get_proxmox()
    if err:
        return err
    if not _JOB_ID_RE.match(job_id):
        return jsonify({'error': 'Invalid job id'}), 400
    try:
        client.delete_backup_job(job_id)
    except CloudyError as e:
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to delete backup job')}), 500

    log_request_audit('backup.job_delete', None, target_id=job_id, target_type='backup')
    return jsonify({'success': True})


@bp.route('/api/backups/instances/<instance_id>', methods=['POST'])
@require_auth()
def trigger_backup(instance_id):
    """vzdump now - owner or MAINTENANCE share"""
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        vmid = parse_instance_id(instance_id)
        node = data.get('node')
        resource = check_instance_access(client, request.session, vmid,
                                         validate_node(node) if node else None, SHARE_MAINTENANCE)
        storage = validate_storage(data.get('storage'))
        mode = str(data.get('mode') or 'snapshot')
        if mode not in BACKUP_MODES:
            raise ValidationError(f"Invalid mode. Must be one of {', '.join(BACKUP_MODES)}")
        task = client.trigger_backup(resource['node'], vmid, storage, mode)
    except CloudyError as e:
        log_request_audit('backup.create', None, target_id=instance_id, target_type='instance',
                          status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to start backup')}), 500

    log_request_audit('backup.create', {'storage': storage, 'mode': mode}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task}), 202


@bp.route('/api/backups/instances/<instance_id>/restore', methods=['POST'])
@require_auth()
def restore_backup(instance_id):
    """restore over an existing guest needs force and an ADMIN share"""
    client, err = get_proxmox()
    if err:
        return err
    data = get_json_body()
    try:
        vmid = parse_instance_id(instance_id)
        archive = str(data.get('archive') or '').strip()
        if not _ARCHIVE_RE.match(archive):
            raise ValidationError('Invalid archive')
        node = data.get('node')
        force = bool(data.get('force'))
        resource = check_instance_access(client, request.session, vmid,
                                         validate_node(node) if node else None, SHARE_ADMIN)
        vm_type = resource.get('type') or detect_vm_type(instance_id, data.get('type'))
        storage = validate_storage(data['storage']) if data.get('storage') else None
        task = client.restore_backup(resource['node'], vmid, vm_type, archive, storage, force)
    except CloudyError as e:
        log_request_audit('backup.restore', None, target_id=instance_id, target_type='instance',
                          status=STATUS_ERROR, error_message=e.message)
        return error_response(e)
    except Exception as e:
        return jsonify({'error': safe_error(e, 'Failed to restore backup')}), 500

    log_request_audit('backup.restore', {'archive': archive, 'force': force}, target_id=vmid,
                      target_name=resource.get('name'), target_type='instance')
    return jsonify({'success': True, 'task': task}), 202
