# app.py
"""
Flask application factory for the purifier gateway

Provides:
- Logging setup with level and format from config
- The purifier extension (gateway, ``purify`` filter, ``timeline`` global)
- JSON error handlers for gateway errors
- Health check and a purify preview endpoint
"""

import os
import sys
import logging
from datetime import datetime
from typing import Optional

from flask import Flask, abort, jsonify, g
from werkzeug.exceptions import HTTPException

from purifier_gateway.config.purifier import AppConfig, DevelopmentConfig, TestingConfig
from purifier_gateway.core.errors import PurifierError, UnsupportedInputError
from purifier_gateway.middleware.purifier import PurifierExtension, current_gateway, sanitize_request

CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': AppConfig,
}


def setup_logging(app: Flask) -> None:
    """
    Configure application logging

    Purifier modules log under ``purifier_gateway.*``; both that logger and
    the Flask app logger get the same stream handler.
    """
    # Remove default Flask handlers to avoid duplicate logs
    app.logger.handlers.clear()

    formatter = logging.Formatter(
        fmt=app.config.get('LOG_FORMAT', '%(levelname)s:%(name)s:%(message)s'),
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(log_level)

    for logger in (app.logger, logging.getLogger('purifier_gateway')):
        logger.setLevel(log_level)
        if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
            logger.addHandler(handler)

    # Suppress verbose third-party logs in production
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)


def configure_error_handlers(app: Flask) -> None:
    """JSON responses for gateway errors"""
    @app.errorhandler(UnsupportedInputError)
    def unsupported_input(error):
        app.logger.warning(f"Unsupported purify input: {error}")
        return jsonify({
            'error': 'Bad Request',
            'message': str(error),
            'status_code': 400
        }), 400

    @app.errorhandler(PurifierError)
    def purifier_error(error):
        app.logger.error(f"Purifier error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'Sanitization is unavailable',
            'status_code': 500
        }), 500

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': 'The requested resource was not found',
            'status_code': 404
        }), 404

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
            'status_code': 500
        }), 500


def configure_routes(app: Flask) -> None:
    @app.route('/health')
    def health_check():
        """Basic health check endpoint"""
        gateway = current_gateway()
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'profiles': gateway.profiles,
            'finalized': gateway.finalized,
            'cache': gateway.cache_stats(),
        })

    @app.route('/purify', methods=['POST'])
    @sanitize_request('html')
    def purify_preview():
        """Return the default-profile rendition of the posted ``html`` field"""
        return jsonify({'html': g.purified.get('html', '')})

    @app.route('/purify/<profile>', methods=['POST'])
    def purify_profile(profile):
        if profile not in current_gateway().profiles:
            abort(404)

        @sanitize_request('html', profile=profile)
        def _purify():
            return jsonify({'html': g.purified.get('html', ''), 'profile': profile})
        return _purify()


def create_app(config_name: Optional[str] = None, overrides: Optional[dict] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: 'development', 'testing' or 'production'
        overrides: Extra config values applied last (e.g. PURIFIER_CACHE_PATH)

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(CONFIGS.get(config_name, AppConfig))
    if overrides:
        app.config.update(overrides)

    setup_logging(app)
    app.logger.info(f"Starting purifier gateway in {config_name} mode")

    PurifierExtension(app)
    configure_error_handlers(app)
    configure_routes(app)

    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='127.0.0.1', port=5000, debug=True)
