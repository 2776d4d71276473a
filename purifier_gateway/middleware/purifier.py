# middleware/purifier.py
"""
Flask integration for the sanitization gateway
"""

import logging
from functools import wraps
from typing import Optional

from flask import Flask, current_app, g, request
from markupsafe import Markup

from purifier_gateway.config.purifier import ConfigRepository, PurifierConfig
from purifier_gateway.core.gateway import SanitizationGateway
from purifier_gateway.widgets.timeline import Timeline

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'purifier'


class PurifierExtension:
    """
    Flask extension holding one SanitizationGateway per application

    Reads ``PURIFIER_*`` config keys (``PURIFIER_CACHE_PATH``,
    ``PURIFIER_SETTINGS``, ...), falling back to PurifierConfig.
    """

    def __init__(self, app: Optional[Flask] = None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> SanitizationGateway:
        repository = ConfigRepository.from_flask_config(app.config, defaults=PurifierConfig)
        gateway = SanitizationGateway.from_config(repository)

        app.extensions[EXTENSION_KEY] = gateway
        app.add_template_filter(_purify_filter, 'purify')
        app.add_template_global(_timeline_global, 'timeline')

        app.logger.info(f"Purifier extension initialized with profiles {gateway.profiles}")
        return gateway


def current_gateway() -> SanitizationGateway:
    """Gateway of the current application"""
    try:
        return current_app.extensions[EXTENSION_KEY]
    except KeyError:
        raise RuntimeError("PurifierExtension is not initialized on this application") from None


def _timeline_global(items=None, **kwargs) -> Timeline:
    """Template helper: timeline whose item content is cleaned by the app's gateway"""
    kwargs.setdefault('gateway', current_gateway())
    return Timeline(items, **kwargs)


def _purify_filter(value, profile: Optional[str] = None) -> Markup:
    if value is None:
        return Markup('')
    return Markup(current_gateway().clean(str(value), profile))


def sanitize_request(*fields: str, profile: Optional[str] = None):
    """
    Decorator cleaning named form/JSON fields into ``g.purified``
    Absent fields are skipped; non-text JSON values are left out
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            gateway = current_gateway()

            # Prepare request data
            request_data = {}
            if request.is_json and isinstance(request.get_json(silent=True), dict):
                request_data.update(request.get_json(silent=True))
            if request.form:
                request_data.update(request.form.to_dict())

            purified = {}
            for field in fields:
                value = request_data.get(field)
                if isinstance(value, str):
                    purified[field] = gateway.clean(value, profile)
                elif value is not None:
                    logger.warning(f"Skipping non-text field '{field}' on {request.endpoint}")

            g.purified = purified
            return f(*args, **kwargs)
        return decorated_function
    return decorator
