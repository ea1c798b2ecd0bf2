#!/usr/bin/env python3
"""
Flask-based WebUI for the stale sweeper.

This module provides a web interface for:
- Viewing sweep run statistics on a dashboard
- Managing configuration
- Monitoring system health
"""

import logging
import os
import secrets
import sqlite3
import tempfile
from datetime import datetime, timezone
from functools import wraps

import yaml
from flask import Flask, jsonify, render_template, request
from jinja2 import TemplateSyntaxError

# Import from the main module for shared functionality
import stale_sweeper

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Application version
VERSION = '1.0.0'

INTEGER_FIELDS = {
    # field: minimum allowed value
    'days_before_stale': 0,
    'days_before_close': 1,
    'max_workers': 1,
}
BOOLEAN_FIELDS = ('apply_label_filter_to_prs', 'exempt_draft_pr', 'delete_branch')
LABEL_FIELDS = stale_sweeper.LABEL_LIST_KEYS
MESSAGE_FIELDS = stale_sweeper.MESSAGE_KEYS
OPTIONAL_LABEL_FIELDS = ('close_issue_label', 'close_pr_label')


def create_app(config_path=None, test_config=None):
    """
    Create and configure the Flask application.

    Args:
        config_path: Path to the YAML configuration file
        test_config: Optional test configuration dictionary

    Returns:
        Configured Flask application
    """
    app = Flask(
        __name__,
        template_folder='templates',
        static_folder='static'
    )

    # Generate a random secret key if not provided
    app.config['SECRET_KEY'] = os.environ.get('WEBUI_SECRET_KEY') or secrets.token_hex(32)
    app.config['WEBUI_USERNAME'] = os.environ.get('WEBUI_USERNAME', 'admin')
    app.config['WEBUI_PASSWORD'] = os.environ.get('WEBUI_PASSWORD', 'admin')

    if test_config:
        app.config.update(test_config)
    else:
        config_path = config_path or os.environ.get('CONFIG_PATH', 'config.yaml')
        app.config['CONFIG_PATH'] = config_path
        try:
            if os.path.exists(config_path):
                with open(config_path, 'r', encoding='utf-8') as f:
                    main_config = yaml.safe_load(f)
                app.config['MAIN_CONFIG'] = main_config or {}
            else:
                logger.warning(f"Configuration file not found: {config_path}")
                app.config['MAIN_CONFIG'] = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading configuration: {e}")
            app.config['MAIN_CONFIG'] = {}

    register_routes(app)

    return app


def check_auth(username, password):
    """Check if a username/password combination is valid."""
    return (username == os.environ.get('WEBUI_USERNAME', 'admin') and
            password == os.environ.get('WEBUI_PASSWORD', 'admin'))


def authenticate():
    """Send a 401 response that enables basic auth."""
    return jsonify({
        'error': 'Authentication required',
        'message': 'Please provide valid credentials'
    }), 401, {'WWW-Authenticate': 'Basic realm="stale-sweeper"'}


def requires_auth(f):
    """Decorator to require HTTP basic authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth = request.authorization
        if not auth or not check_auth(auth.username, auth.password):
            return authenticate()
        return f(*args, **kwargs)
    return decorated


def _validate_update(field, value):
    """Return an error message for an invalid config update, or None."""
    if field in INTEGER_FIELDS:
        minimum = INTEGER_FIELDS[field]
        if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
            if minimum == 0:
                return f'{field} must be a non-negative integer'
            return f'{field} must be a positive integer'
        if field == 'max_workers' and value > 32:
            return 'max_workers must be between 1 and 32'

    elif field in BOOLEAN_FIELDS:
        if not isinstance(value, bool):
            return f'{field} must be a boolean'

    elif field in LABEL_FIELDS:
        if not isinstance(value, list) or not all(isinstance(label, str) for label in value):
            return f'{field} must be a list of label names'

    elif field in MESSAGE_FIELDS:
        if not isinstance(value, str):
            return f'{field} must be a string'
        try:
            stale_sweeper.render_message(value, days_before_stale=1, days_before_close=1, kind='issue')
        except TemplateSyntaxError as e:
            return f'{field} is not a valid message template: {e}'

    elif field == 'stale_label':
        if not isinstance(value, str) or not value.strip():
            return 'stale_label must be a non-empty string'

    elif field in OPTIONAL_LABEL_FIELDS:
        if value is not None and not isinstance(value, str):
            return f'{field} must be a string or null'

    elif field == 'projects':
        if not isinstance(value, list):
            return 'projects must be a list'
        for item in value:
            if isinstance(item, bool) or not isinstance(item, (int, str)):
                return 'All projects must be repository names or project IDs'

    return None


def register_routes(app):
    """Register all routes for the application."""

    @app.route('/')
    @requires_auth
    def index():
        """Render the main dashboard."""
        return render_template('dashboard.html')

    @app.route('/config')
    @requires_auth
    def config_page():
        """Render the configuration page."""
        return render_template('config.html')

    @app.route('/api/health')
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': VERSION
        })

    @app.route('/api/stats')
    @requires_auth
    def get_stats():
        """Get statistics from the sweep history database."""
        config = app.config.get('MAIN_CONFIG', {})
        db_path = config.get('database_path', stale_sweeper.DEFAULT_DATABASE_PATH)

        stats = {
            'runs': {
                'total': 0,
                'recent': []
            },
            'totals': {
                'staled': 0,
                'closed': 0,
                'branches_deleted': 0,
                'failed': 0
            },
            'recent_items': [],
            'config': {
                'platform': config.get('platform', stale_sweeper.DEFAULT_PLATFORM),
                'days_before_stale': config.get(
                    'days_before_stale', stale_sweeper.DEFAULT_DAYS_BEFORE_STALE
                ),
                'days_before_close': config.get(
                    'days_before_close', stale_sweeper.DEFAULT_DAYS_BEFORE_CLOSE
                ),
                'delete_branch': config.get('delete_branch', stale_sweeper.DEFAULT_DELETE_BRANCH),
                'projects_count': len(config.get('projects', []))
            }
        }

        try:
            if os.path.exists(db_path):
                with sqlite3.connect(db_path) as conn:
                    cursor = conn.cursor()

                    cursor.execute('''
                        SELECT COUNT(*),
                               COALESCE(SUM(entities_staled), 0),
                               COALESCE(SUM(entities_closed), 0),
                               COALESCE(SUM(branches_deleted), 0),
                               COALESCE(SUM(entities_failed), 0)
                        FROM sweep_runs
                    ''')
                    total, staled, closed, deleted, failed = cursor.fetchone()
                    stats['runs']['total'] = total
                    stats['totals'] = {
                        'staled': staled,
                        'closed': closed,
                        'branches_deleted': deleted,
                        'failed': failed
                    }

                    stats['runs']['recent'] = stale_sweeper.get_recent_runs(db_path, limit=10)

                    cursor.execute('''
                        SELECT r.project, i.entity_key, i.title, i.outcome, i.detail, r.started_at
                        FROM sweep_items i
                        JOIN sweep_runs r ON r.id = i.run_id
                        ORDER BY r.started_at DESC, i.id DESC
                        LIMIT 20
                    ''')
                    stats['recent_items'] = [
                        {
                            'project': row[0],
                            'entity': row[1],
                            'title': row[2],
                            'outcome': row[3],
                            'detail': row[4],
                            'swept_at': row[5]
                        }
                        for row in cursor.fetchall()
                    ]

        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            stats['error'] = f"Database error: {str(e)}"

        return jsonify(stats)

    @app.route('/api/config', methods=['GET'])
    @requires_auth
    def get_config():
        """Get the current configuration (sanitized)."""
        config = app.config.get('MAIN_CONFIG', {})
        github_config = config.get('github') or {}
        gitlab_config = config.get('gitlab') or {}

        # Return sanitized config (no tokens)
        safe_config = {
            'platform': config.get('platform', stale_sweeper.DEFAULT_PLATFORM),
            'github': {
                'api_url': github_config.get('api_url', ''),
                'has_token': bool(github_config.get('token'))
            },
            'gitlab': {
                'url': gitlab_config.get('url', ''),
                'has_token': bool(gitlab_config.get('private_token'))
            },
            'projects': config.get('projects', []),
            'days_before_stale': config.get(
                'days_before_stale', stale_sweeper.DEFAULT_DAYS_BEFORE_STALE
            ),
            'days_before_close': config.get(
                'days_before_close', stale_sweeper.DEFAULT_DAYS_BEFORE_CLOSE
            ),
            'stale_label': config.get('stale_label', stale_sweeper.DEFAULT_STALE_LABEL),
            'apply_label_filter_to_prs': config.get('apply_label_filter_to_prs', False),
            'exempt_draft_pr': config.get('exempt_draft_pr', False),
            'delete_branch': config.get('delete_branch', stale_sweeper.DEFAULT_DELETE_BRANCH),
            'close_issue_label': config.get('close_issue_label'),
            'close_pr_label': config.get('close_pr_label'),
            'max_workers': config.get('max_workers', stale_sweeper.DEFAULT_MAX_WORKERS),
            'database_path': config.get('database_path', stale_sweeper.DEFAULT_DATABASE_PATH),
        }
        for field in LABEL_FIELDS:
            safe_config[field] = sorted(stale_sweeper.as_label_set(config.get(field)))
        for field in MESSAGE_FIELDS:
            safe_config[field] = config.get(field, '')

        return jsonify(safe_config)

    @app.route('/api/config', methods=['PUT'])
    @requires_auth
    def update_config():
        """Update non-sensitive configuration values."""
        config_path = app.config.get('CONFIG_PATH', 'config.yaml')
        current_config = app.config.get('MAIN_CONFIG', {}).copy()

        if not request.is_json:
            received_content_type = request.headers.get('Content-Type')
            return jsonify({
                'error': "Invalid Content-Type header. Expected 'application/json'.",
                'received_content_type': received_content_type,
                'hint': "Set the HTTP header 'Content-Type: application/json' and send a valid JSON body."
            }), 400

        updates = request.get_json(silent=True)
        if not isinstance(updates, dict):
            return jsonify({'error': 'Request body must be a JSON object'}), 400

        allowed_fields = (
            list(INTEGER_FIELDS) + list(BOOLEAN_FIELDS) + list(LABEL_FIELDS)
            + list(MESSAGE_FIELDS) + list(OPTIONAL_LABEL_FIELDS) + ['stale_label', 'projects']
        )

        changes = {}
        for field in allowed_fields:
            if field not in updates:
                continue
            new_value = updates[field]
            error = _validate_update(field, new_value)
            if error:
                return jsonify({'error': error}), 400
            changes[field] = new_value
            current_config[field] = new_value

        if not changes:
            return jsonify({'message': 'No changes to apply', 'changes': {}}), 200

        # Save to file using atomic write (write to temp file, then rename)
        temp_path = None
        try:
            config_dir = os.path.dirname(config_path) or '.'
            with tempfile.NamedTemporaryFile(
                mode='w',
                encoding='utf-8',
                dir=config_dir,
                suffix='.yaml',
                delete=False
            ) as temp_file:
                temp_path = temp_file.name
                yaml.safe_dump(current_config, temp_file, default_flow_style=False)

            os.replace(temp_path, config_path)

            app.config['MAIN_CONFIG'] = current_config

            return jsonify({
                'message': 'Configuration updated successfully',
                'changes': changes
            })

        except OSError as e:
            logger.error(f"Error saving configuration: {e}")
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            return jsonify({
                'error': f'Failed to save configuration: {str(e)}'
            }), 500


def main():
    """Run the WebUI server."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the stale sweeper WebUI')
    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '-p', '--port',
        type=int,
        default=int(os.environ.get('WEBUI_PORT', 5000)),
        help='Port to run the server on (default: 5000)'
    )
    parser.add_argument(
        '-H', '--host',
        default=os.environ.get('WEBUI_HOST', '127.0.0.1'),
        help=(
            'Host to bind the server to (default: 127.0.0.1). '
            'Use 0.0.0.0 only when explicitly required, for example in '
            'containerized deployments, as it exposes the server on all '
            'network interfaces.'
        )
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Run in debug mode'
    )

    args = parser.parse_args()

    app = create_app(config_path=args.config)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == '__main__':
    main()
