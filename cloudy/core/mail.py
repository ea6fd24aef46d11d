# -*- coding: utf-8 -*-
"""
Cloudy Mail - Layer 4
Verification / password reset mails over SMTP.
"""

import os
import ssl
import smtplib
import logging
from email.message import EmailMessage
from urllib.parse import quote as url_quote

SMTP_TIMEOUT = 15


def _settings():
    from cloudy.api.helpers import load_server_settings
    from cloudy.core.db import get_db
    settings = load_server_settings()
    settings['smtp_password'] = get_db().get_secret_setting('smtp_password')
    return settings


def is_configured(settings: dict = None) -> bool:
    settings = settings if settings is not None else _settings()
    return bool(settings.get('smtp_host') and settings.get('smtp_user') and settings.get('mail_from'))


def _connect(settings: dict):
    host = settings['smtp_host']
    port = int(settings.get('smtp_port') or 587)
    context = ssl.create_default_context()
    # port 465 is implicit TLS, everything else upgrades with STARTTLS
    if settings.get('smtp_secure') or port == 465:
        server = smtplib.SMTP_SSL(host, port, timeout=SMTP_TIMEOUT, context=context)
    else:
        server = smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT)
        server.ehlo()
        if server.has_extn('starttls'):
            server.starttls(context=context)
            server.ehlo()
    if settings.get('smtp_user'):
        server.login(settings['smtp_user'], settings.get('smtp_password') or '')
    return server


def send_mail(to: str, subject: str, text: str, html: str = None) -> bool:
    """True if handed to the SMTP server, False if not configured or failed"""
    settings = _settings()
    if not is_configured(settings):
        logging.warning(f"[Mail] SMTP not configured, not sending '{subject}' to {to}")
        return False

    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = settings['mail_from']
    msg['To'] = to
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype='html')

    try:
        server = _connect(settings)
        try:
            server.send_message(msg)
        finally:
            server.quit()
        logging.info(f"[Mail] Sent '{subject}' to {to}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logging.error(f"[Mail] Failed to send '{subject}' to {to}: {e}")
        return False


def _frontend_url() -> str:
    from cloudy.api.helpers import load_server_settings
    return (load_server_settings().get('frontend_url') or os.environ.get('FRONTEND_URL', '')).rstrip('/')


def send_verification_email(to: str, username: str, token: str) -> bool:
    link = f"{_frontend_url()}/auth/verify-email?token={url_quote(token, safe='')}"
    text = (f"Hi {username},\n\n"
            f"please confirm your email address by opening the link below:\n\n{link}\n\n"
            f"The link is valid for 24 hours.\n")
    html = (f"<p>Hi {username},</p><p>please confirm your email address:</p>"
            f"<p><a href=\"{link}\">Verify email</a></p><p>The link is valid for 24 hours.</p>")
    return send_mail(to, 'Verify your email address', text, html)


def send_password_reset_email(to: str, username: str, token: str) -> bool:
    link = f"{_frontend_url()}/auth/reset-password?token={url_quote(token, safe='')}"
    text = (f"Hi {username},\n\n"
            f"somebody requested a password reset for your account. Open the link below to set a new one:\n\n"
            f"{link}\n\nThe link is valid for 1 hour. If this wasnt you, ignore this mail.\n")
    html = (f"<p>Hi {username},</p><p>somebody requested a password reset for your account.</p>"
            f"<p><a href=\"{link}\">Reset password</a></p>"
            f"<p>The link is valid for 1 hour. If this wasnt you, ignore this mail.</p>")
    return send_mail(to, 'Reset your password', text, html)


def test_connection() -> dict:
    settings = _settings()
    if not is_configured(settings):
        return {'success': False, 'message': 'SMTP is not configured (smtpHost, smtpUser and mailFrom are required)'}
    try:
        server = _connect(settings)
        server.noop()
        server.quit()
        return {'success': True, 'message': f"Connected to {settings['smtp_host']}"}
    except (smtplib.SMTPException, OSError) as e:
        logging.warning(f"[Mail] SMTP test failed: {e}")
        return {'success': False, 'message': f'SMTP connection failed: {e}'}


def send_test_email(to: str) -> dict:
    ok = send_mail(to, 'Cloudy test mail', 'If you can read this, SMTP is set up correctly.')
    return {'success': ok, 'message': 'Test email sent' if ok else 'Failed to send test email'}
