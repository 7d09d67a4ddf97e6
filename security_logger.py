"""
Security Audit Logging

Every sign-in attempt and every movement of escrowed money is written as one
JSON object per line to logs/security.log (rotated), and optionally pushed to
a SIEM webhook.

Configuration:
- SECURITY_LOG_DIR: directory for security.log (defaults to ./logs)
- SIEM_WEBHOOK_URL: endpoint that receives each event as a JSON POST
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime
from typing import Optional, Dict, Any

import requests
from flask import request, session, has_request_context

SEVERITY_LEVELS = {
    'low': logging.INFO,
    'medium': logging.WARNING,
    'high': logging.ERROR,
    'critical': logging.CRITICAL
}


class JsonLineFormatter(logging.Formatter):
    """Render the event dict attached to a record as a single JSON line"""

    def format(self, record):
        event = getattr(record, 'event', None) or {'message': record.getMessage()}
        return json.dumps(dict(event, level=record.levelname), default=str)


def client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr


class SecurityLogger:
    """Audit trail for authentication and escrow events"""

    def __init__(self, app=None):
        self.app = app
        self.logger = logging.getLogger('security')
        self.siem_webhook_url = None
        self.log_path = None

        if app:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.siem_webhook_url = os.environ.get('SIEM_WEBHOOK_URL')
        self._configure_handlers()

    def _configure_handlers(self):
        log_dir = os.environ.get('SECURITY_LOG_DIR') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'logs'
        )
        os.makedirs(log_dir, exist_ok=True)
        self.log_path = os.path.join(log_dir, 'security.log')

        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            if getattr(handler, 'baseFilename', None) == os.path.abspath(self.log_path):
                return

        # 20MB per file, 5 backups
        file_handler = logging.handlers.RotatingFileHandler(
            self.log_path,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(JsonLineFormatter())
        self.logger.addHandler(file_handler)

        if self.app and self.app.debug:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(JsonLineFormatter())
            self.logger.addHandler(console_handler)

    def _request_fields(self) -> Dict[str, Any]:
        if not has_request_context():
            return {'user_id': None, 'ip_address': None, 'endpoint': None}
        return {
            'user_id': session.get('user_id'),
            'ip_address': client_ip(),
            'endpoint': f"{request.method} {request.path}",
            'user_agent': request.headers.get('User-Agent', '')
        }

    def log_event(
        self,
        event_category: str,
        event_type: str,
        action: str,
        severity: str = 'medium',
        status: str = 'success',
        message: str = '',
        resource_type: Optional[str] = None,
        resource_id=None,
        details: Optional[Dict] = None,
        user_id: Optional[int] = None,
        email: Optional[str] = None
    ):
        """
        Write one audit event

        Args:
            event_category: authentication, financial or system
            event_type: e.g. login_failure, payment_released, dispute_opened
            action: human-readable description
            severity: low, medium, high or critical; selects the log level
            resource_type / resource_id: the order, user or withdrawal involved
            details: extra JSON-serializable context
            user_id: acting user when there is no session (scheduler, callbacks)
        """
        event = self._request_fields()
        if user_id:
            event['user_id'] = user_id
        event.update({
            'timestamp': datetime.utcnow().isoformat(),
            'category': event_category,
            'event_type': event_type,
            'action': action,
            'severity': severity,
            'status': status,
            'message': message,
            'email': email,
            'resource': {'type': resource_type, 'id': str(resource_id)} if resource_type else None,
            'details': details or {}
        })

        try:
            self.logger.log(SEVERITY_LEVELS.get(severity, logging.INFO), action, extra={'event': event})
        except Exception as e:
            if self.app:
                self.app.logger.error(f"Security log write failed for {event_category}/{event_type}: {str(e)}")

        self._forward_to_siem(event)
        return event

    def _forward_to_siem(self, event):
        if not self.siem_webhook_url:
            return
        try:
            requests.post(self.siem_webhook_url, json=event, timeout=5)
        except requests.exceptions.RequestException as e:
            if self.app:
                self.app.logger.warning(f"SIEM webhook failed: {str(e)}")

    def log_authentication(self, event_type: str, email: str, status: str, message: str = '', **kwargs):
        """Sign-up, sign-in and OAuth events; failures are logged as high severity"""
        return self.log_event(
            event_category='authentication',
            event_type=event_type,
            action=f"Authentication {event_type}",
            severity='high' if status == 'failure' else 'low',
            status=status,
            message=message,
            email=email,
            **kwargs
        )

    def log_financial(self, event_type: str, action: str, amount: float, resource_type: str, resource_id, **kwargs):
        """Captures, releases, refunds and withdrawals"""
        return self.log_event(
            event_category='financial',
            event_type=event_type,
            action=action,
            severity='high',
            resource_type=resource_type,
            resource_id=resource_id,
            details={'amount': amount},
            **kwargs
        )


def init_security_logger(app):
    """Attach a SecurityLogger to the app and return it"""
    security_logger = SecurityLogger(app)
    app.extensions['security_logger'] = security_logger
    return security_logger
