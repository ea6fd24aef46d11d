# -*- coding: utf-8 -*-
"""
Cloudy Flask App Factory - Layer 8
Creates and configures the Flask application.
"""

import os
import time
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_compress import Compress

from cloudy.constants import (
    CLOUDY_VERSION, CLOUDY_BUILD, DEFAULT_HOST, DEFAULT_PORT,
    API_RATE_LIMIT, API_RATE_WINDOW, MAX_REQUEST_SIZE,
)
from cloudy import globals as g
from cloudy.api import register_blueprints
from cloudy.utils.audit import get_client_ip


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    origins = set()

    # only what the operator configured, never request-derived
    if g._cors_origins_env:
        for origin in g._cors_origins_env.split(','):
            origin = origin.strip()
            if origin and origin != '*':
                origins.add(origin)

    # nothing configured -> same-origin only
    if not origins:
        return None

    return list(origins)


def create_app():
    """Flask application factory."""
    app = Flask(__name__)

    # NS: only enable CORS if origins are explicitly set
    allowed_origins = get_allowed_origins()
    if allowed_origins:
        CORS(app, supports_credentials=True, resources={
            r"/api/*": {
                "origins": allowed_origins,
                "methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
                "allow_headers": ["Content-Type", "Authorization", "X-Session-ID"],
                "expose_headers": ["Content-Type"],
                "supports_credentials": True
            }
        })
    # else: no CORS init = browser same-origin policy applies

    # Gzip compression
    app.config['COMPRESS_MIMETYPES'] = [
        'text/html', 'text/css', 'text/plain',
        'application/json', 'application/javascript',
    ]
    app.config['COMPRESS_LEVEL'] = 6
    app.config['COMPRESS_MIN_SIZE'] = 500
    Compress(app)

    app.config['MAX_CONTENT_LENGTH'] = MAX_REQUEST_SIZE
    # noVNC negotiates the binary subprotocol
    app.config['SOCK_SERVER_OPTIONS'] = {'subprotocols': ['binary'], 'ping_interval': 25}

    # Request validation & rate limiting
    @app.before_request
    def validate_request():
        if request.path.startswith('/api/ws/'):
            return None

        if request.content_length and request.content_length > MAX_REQUEST_SIZE:
            return jsonify({'error': f'Request too large. Max {MAX_REQUEST_SIZE // (1024 * 1024)} MB'}), 413

        if request.path.startswith('/api/'):
            skip_paths = ['/api/status']
            if not any(request.path.startswith(p) for p in skip_paths):
                client_ip = get_client_ip()

                if not _check_api_rate_limit(client_ip):
                    logging.warning(f"Rate limit exceeded for {client_ip}")
                    return jsonify({
                        'error': 'Rate limit exceeded. Please slow down.',
                        'retry_after': API_RATE_WINDOW
                    }), 429

            if request.method in ('POST', 'PUT', 'PATCH') and request.content_length:
                if not request.is_json:
                    return jsonify({'error': 'Invalid Content-Type, expected application/json'}), 415

        return None

    # Security headers
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
        if request.path.startswith('/api/'):
            response.headers['Cache-Control'] = 'no-store'

        if request.is_secure or request.headers.get('X-Forwarded-Proto') == 'https':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        return response

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Not found', 'code': 'NOT_FOUND'}), 404
        return e

    @app.errorhandler(405)
    def method_not_allowed(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Method not allowed', 'code': 'METHOD_NOT_ALLOWED'}), 405
        return e

    @app.errorhandler(413)
    def too_large(e):
        return jsonify({'error': f'Request too large. Max {MAX_REQUEST_SIZE // (1024 * 1024)} MB'}), 413

    @app.errorhandler(500)
    def internal_error(e):
        logging.error(f"[API] Unhandled error on {request.method} {request.path}: {e}")
        if request.path.startswith('/api/'):
            return jsonify({'error': 'An internal error occurred', 'code': 'INTERNAL_ERROR'}), 500
        return e

    # Register all API blueprints
    register_blueprints(app)

    return app


def _check_api_rate_limit(client_ip: str) -> bool:
    """Simple fixed window rate limiter."""
    if API_RATE_LIMIT <= 0:
        return True

    current_time = time.time()

    with g.api_rate_limit_lock:
        if client_ip not in g.api_request_counts:
            g.api_request_counts[client_ip] = {'count': 1, 'window_start': current_time}
            return True

        info = g.api_request_counts[client_ip]

        if current_time - info['window_start'] > API_RATE_WINDOW:
            info['count'] = 1
            info['window_start'] = current_time
            return True

        if info['count'] >= API_RATE_LIMIT:
            return False

        info['count'] += 1
        return True


def _gevent_active() -> bool:
    """True if the entry script monkey-patched us"""
    from gevent import monkey
    return monkey.is_module_patched('socket')


def main(debug_mode=False):
    """Start the server - called from cloudy_server.py"""
    from cloudy.core.db import get_db
    from cloudy.utils.auth import cleanup_expired_sessions
    from cloudy.utils.audit import cleanup_audit_log
    from cloudy.background.billing import start_billing_thread, stop_billing_thread

    log_level = logging.DEBUG if debug_mode else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not debug_mode:
        logging.getLogger('werkzeug').setLevel(logging.ERROR)
        logging.getLogger('urllib3').setLevel(logging.ERROR)
        logging.getLogger('gevent').setLevel(logging.ERROR)
        logging.getLogger('geventwebsocket').setLevel(logging.ERROR)
        logging.getLogger('websocket').setLevel(logging.ERROR)

    logging.info(f"Cloudy {CLOUDY_VERSION} (build {CLOUDY_BUILD}) starting")

    # opens the DB, creates the key file and runs migrations
    db = get_db()
    logging.info(f"Database ready, {db.count_users()} user(s)")
    if db.count_users() == 0:
        logging.info("No users yet - the first account registered becomes ADMIN")

    cleanup_expired_sessions()
    cleanup_audit_log()

    app = create_app()
    start_billing_thread()

    host = DEFAULT_HOST
    port = DEFAULT_PORT

    try:
        if _gevent_active():
            from gevent.pywsgi import WSGIServer
            logging.info(f"Starting Cloudy with gevent WSGIServer on http://{host}:{port}")
            server = WSGIServer((host, port), app, log=None if not debug_mode else 'default')
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                logging.info("Shutting down")
                server.stop()
            return

        # Fallback to Flask's threaded server (CLOUDY_NO_GEVENT)
        logging.warning("Starting Cloudy with Flask development server - not recommended for production!")
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        stop_billing_thread()


if __name__ == '__main__':
    main(debug_mode=os.environ.get('CLOUDY_DEBUG', '').lower() in ('1', 'true', 'yes'))
