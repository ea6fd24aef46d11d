# -*- coding: utf-8 -*-
"""
Cloudy API - Layer 5
All Flask blueprints. register_blueprints() wires them into the app.
"""


def register_blueprints(app):
    """Register all API blueprints + the console websocket with the Flask app"""
    from cloudy.api.auth import bp as auth_bp
    from cloudy.api.users import bp as users_bp
    from cloudy.api.compute import bp as compute_bp
    from cloudy.api.storage import bp as storage_bp
    from cloudy.api.network import bp as network_bp
    from cloudy.api.monitoring import bp as monitoring_bp
    from cloudy.api.security import bp as security_bp
    from cloudy.api.backups import bp as backups_bp
    from cloudy.api.billing import bp as billing_bp
    from cloudy.api.sharing import bp as sharing_bp
    from cloudy.api.notifications import bp as notifications_bp
    from cloudy.api.audit import bp as audit_bp
    from cloudy.api.config import bp as config_bp
    from cloudy.api.console import bp as console_bp, sock
    from cloudy.api.web import bp as web_bp

    for blueprint in (auth_bp, users_bp, compute_bp, storage_bp, network_bp, monitoring_bp,
                      security_bp, backups_bp, billing_bp, sharing_bp, notifications_bp,
                      audit_bp, config_bp, console_bp, web_bp):
        app.register_blueprint(blueprint)

    # flask-sock keeps its routes on its own blueprint, register it once per app
    sock.init_app(app)
