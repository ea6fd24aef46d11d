# -*- coding: utf-8 -*-
"""page routes for the web client + public status"""

import os
import logging

from flask import Blueprint, jsonify, request, redirect, send_from_directory

from cloudy import constants
from cloudy.constants import CLOUDY_VERSION, CLOUDY_BUILD
from cloudy.core.config import get_proxmox_client, get_pbs_client, is_setup_completed
from cloudy.utils.auth import authenticate_credential, get_request_credential

bp = Blueprint('web', __name__)


def _serve_index():
    index = os.path.join(constants.WEB_DIR, 'index.html')
    if not os.path.isfile(index):
        return jsonify({'error': 'Web client not installed'}), 404
    return send_from_directory(constants.WEB_DIR, 'index.html')


@bp.route('/')
@bp.route('/login')
@bp.route('/register')
@bp.route('/setup')
@bp.route('/auth/<path:subpath>')
def index(subpath=None):
    """public pages of the SPA (login, register, verify-email, reset-password)"""
    return _serve_index()


@bp.route('/dashboard')
@bp.route('/dashboard/<path:subpath>')
def dashboard(subpath=None):
    # only checks that a cookie is there, the API does the real auth
    if not (request.cookies.get('session_id') or request.cookies.get('token')):
        return redirect('/login', code=302)
    return _serve_index()


# SECURITY: never serve anything from the config dir
@bp.route('/config')
@bp.route('/config/<path:filename>')
def block_config_access(filename=None):
    logging.warning(f"Blocked attempt to access config path {filename or '/'} from {request.remote_addr}")
    return jsonify({'error': 'Access denied'}), 403


@bp.route('/api/status', methods=['GET'])
def get_status():
    """health check - unauthenticated callers only get version + build"""
    status = {
        'status': 'ok',
        'version': CLOUDY_VERSION,
        'build': CLOUDY_BUILD,
    }
    # MK: backend details only for logged in users
    if authenticate_credential(get_request_credential()):
        status.update({
            'setupCompleted': is_setup_completed(),
            'proxmoxConfigured': get_proxmox_client() is not None,
            'pbsConfigured': get_pbs_client() is not None,
        })
    return jsonify(status)
