"""Tests for the WebUI module."""

import base64
import json
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timezone

import yaml

import stale_sweeper
from webui.app import create_app


class TestWebUIApp(unittest.TestCase):
    """Tests for the Flask application."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        self.db_path = os.path.join(self.temp_dir, 'test.db')

        # Create a test config
        self.test_config = {
            'platform': 'github',
            'github': {
                'token': 'ghp-test-token'
            },
            'projects': ['octo/one', 'octo/two'],
            'days_before_stale': 30,
            'days_before_close': 5,
            'any_of_issue_labels': ['bug'],
            'delete_branch': True,
            'database_path': self.db_path,
        }

        with open(self.config_path, 'w') as f:
            yaml.safe_dump(self.test_config, f)

        # Initialize the database
        stale_sweeper.init_database(self.db_path)

        # Create the app with test config
        self.app = create_app(config_path=self.config_path)
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()

        # Auth header for protected routes
        credentials = base64.b64encode(b'admin:admin').decode('utf-8')
        self.auth_header = {'Authorization': f'Basic {credentials}'}
        self.json_headers = {**self.auth_header, 'Content-Type': 'application/json'}

    def tearDown(self):
        """Clean up test fixtures."""
        if os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir)

    def _put(self, updates):
        return self.client.put('/api/config', headers=self.json_headers, data=json.dumps(updates))

    def test_health_check_no_auth_required(self):
        """Test that health check doesn't require authentication."""
        response = self.client.get('/api/health')
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['status'], 'healthy')
        self.assertIn('timestamp', data)
        self.assertIn('version', data)

    def test_dashboard_requires_auth(self):
        """Test that dashboard requires authentication."""
        response = self.client.get('/')
        self.assertEqual(response.status_code, 401)

    def test_dashboard_with_auth(self):
        """Test that dashboard works with authentication."""
        response = self.client.get('/', headers=self.auth_header)
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Dashboard', response.data)

    def test_config_page_requires_auth(self):
        response = self.client.get('/config')
        self.assertEqual(response.status_code, 401)

    def test_config_page_with_auth(self):
        response = self.client.get('/config', headers=self.auth_header)
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Configuration', response.data)

    def test_get_stats_empty_history(self):
        """Test getting statistics before any sweep ran."""
        response = self.client.get('/api/stats', headers=self.auth_header)
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)

        self.assertEqual(data['runs']['total'], 0)
        self.assertEqual(data['runs']['recent'], [])
        self.assertEqual(data['totals']['closed'], 0)
        self.assertEqual(data['recent_items'], [])

        # Check config summary
        self.assertEqual(data['config']['days_before_stale'], 30)
        self.assertEqual(data['config']['days_before_close'], 5)
        self.assertTrue(data['config']['delete_branch'])
        self.assertEqual(data['config']['projects_count'], 2)

    def test_stats_with_data(self):
        """Test stats endpoint with recorded sweep runs."""
        summary = stale_sweeper._empty_summary()
        summary.update(entities_evaluated=4, entities_staled=1, entities_closed=2, branches_deleted=1)
        summary['staled_items'] = [{'entity_key': 'issue#1', 'title': 'Crash on start'}]
        summary['closed_items'] = [
            {'entity_key': 'issue#2', 'title': 'Old bug'},
            {'entity_key': 'pull_request#3', 'title': 'Old PR'},
        ]
        started_at = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)
        stale_sweeper.record_sweep_run(self.db_path, 'octo/one', summary, started_at)
        stale_sweeper.record_sweep_run(
            self.db_path, 'octo/two', stale_sweeper._empty_summary(), started_at
        )

        response = self.client.get('/api/stats', headers=self.auth_header)
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)

        self.assertEqual(data['runs']['total'], 2)
        self.assertEqual(len(data['runs']['recent']), 2)
        self.assertEqual(data['totals'], {
            'staled': 1,
            'closed': 2,
            'branches_deleted': 1,
            'failed': 0,
        })
        self.assertEqual(len(data['recent_items']), 3)
        self.assertEqual(
            {item['outcome'] for item in data['recent_items']}, {'staled', 'closed'}
        )
        self.assertEqual(data['recent_items'][0]['project'], 'octo/one')

    def test_get_config_sanitized(self):
        """Test that config endpoint returns sanitized data."""
        response = self.client.get('/api/config', headers=self.auth_header)
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)

        # Check that sensitive data is not exposed
        self.assertNotIn('token', data['github'])
        self.assertTrue(data['github']['has_token'])
        self.assertFalse(data['gitlab']['has_token'])
        self.assertNotIn('ghp-test-token', response.get_data(as_text=True))

        # Check non-sensitive data is present
        self.assertEqual(data['days_before_stale'], 30)
        self.assertEqual(data['projects'], ['octo/one', 'octo/two'])
        self.assertEqual(data['any_of_issue_labels'], ['bug'])
        self.assertEqual(data['stale_label'], 'Stale')
        self.assertEqual(data['stale_issue_message'], '')

    def test_update_config_valid(self):
        """Test updating configuration with valid data."""
        updates = {
            'days_before_stale': 60,
            'days_before_close': 7,
            'exempt_issue_labels': ['pinned', 'security'],
            'exempt_draft_pr': True,
        }

        response = self._put(updates)

        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['changes']['days_before_stale'], 60)
        self.assertEqual(data['changes']['exempt_draft_pr'], True)

        # Verify the file was updated
        with open(self.config_path, 'r') as f:
            saved_config = yaml.safe_load(f)
        self.assertEqual(saved_config['days_before_stale'], 60)
        self.assertEqual(saved_config['exempt_issue_labels'], ['pinned', 'security'])
        self.assertEqual(saved_config['github']['token'], 'ghp-test-token')

    def test_saved_config_is_still_valid(self):
        """Test that a saved configuration loads in the sweeper."""
        self._put({'days_before_stale': 0, 'stale_label': 'inactive'})

        config = stale_sweeper.load_config(self.config_path)
        sweep_config = stale_sweeper.build_sweep_config(config)

        self.assertEqual(sweep_config.days_before_stale, 0)
        self.assertEqual(sweep_config.stale_label, 'inactive')

    def test_unknown_fields_are_ignored(self):
        """Test that tokens and unknown fields cannot be changed."""
        response = self._put({'github': {'token': 'stolen'}, 'unknown': 1})

        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['changes'], {})
        with open(self.config_path, 'r') as f:
            saved_config = yaml.safe_load(f)
        self.assertEqual(saved_config['github']['token'], 'ghp-test-token')

    def test_update_config_invalid_type(self):
        """Test updating configuration with invalid data type."""
        response = self._put({'days_before_stale': 'not a number'})

        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data)
        self.assertIn('error', data)

    def test_update_config_negative_value(self):
        """Test updating configuration with negative value."""
        response = self._put({'days_before_stale': -5})

        self.assertEqual(response.status_code, 400)
        self.assertIn('non-negative', json.loads(response.data)['error'])

    def test_update_config_zero_close_delay(self):
        response = self._put({'days_before_close': 0})

        self.assertEqual(response.status_code, 400)
        self.assertIn('positive', json.loads(response.data)['error'])

    def test_update_config_boolean_field(self):
        response = self._put({'delete_branch': 'yes'})
        self.assertEqual(response.status_code, 400)

    def test_update_config_labels_must_be_list(self):
        response = self._put({'any_of_issue_labels': 'bug'})
        self.assertEqual(response.status_code, 400)

    def test_update_config_invalid_template(self):
        """Test that broken message templates are rejected."""
        response = self._put({'stale_issue_message': 'Stale for {{ days_before_stale'})

        self.assertEqual(response.status_code, 400)
        self.assertIn('template', json.loads(response.data)['error'])

    def test_update_config_valid_template(self):
        response = self._put({
            'stale_pr_message': 'This {{ kind }} has been idle for {{ days_before_stale }} days.'
        })
        self.assertEqual(response.status_code, 200)

    def test_update_config_close_label(self):
        response = self._put({'close_issue_label': 'closed-as-stale', 'close_pr_label': None})

        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        self.assertEqual(data['changes']['close_issue_label'], 'closed-as-stale')
        self.assertIsNone(data['changes']['close_pr_label'])

    def test_update_config_empty_stale_label(self):
        response = self._put({'stale_label': '  '})
        self.assertEqual(response.status_code, 400)

    def test_update_config_max_workers_range(self):
        response = self._put({'max_workers': 64})
        self.assertEqual(response.status_code, 400)

    def test_update_config_projects(self):
        """Test updating project list."""
        response = self._put({'projects': ['octo/one', 42]})

        self.assertEqual(response.status_code, 200)

        # Verify
        response = self.client.get('/api/config', headers=self.auth_header)
        data = json.loads(response.data)
        self.assertEqual(data['projects'], ['octo/one', 42])

    def test_update_config_invalid_projects(self):
        """Test updating with invalid project entries."""
        response = self._put({'projects': ['octo/one', {'name': 'x'}]})

        self.assertEqual(response.status_code, 400)
        data = json.loads(response.data)
        self.assertIn('error', data)

    def test_update_config_requires_json(self):
        """Test that config update requires JSON content type."""
        response = self.client.put(
            '/api/config',
            headers=self.auth_header,
            data='not json'
        )

        self.assertEqual(response.status_code, 400)

    def test_update_config_requires_object(self):
        response = self.client.put(
            '/api/config', headers=self.json_headers, data=json.dumps([1, 2])
        )
        self.assertEqual(response.status_code, 400)

    def test_wrong_credentials(self):
        """Test that wrong credentials are rejected."""
        bad_credentials = base64.b64encode(b'wrong:wrong').decode('utf-8')
        bad_header = {'Authorization': f'Basic {bad_credentials}'}

        response = self.client.get('/', headers=bad_header)
        self.assertEqual(response.status_code, 401)
        self.assertIn('stale-sweeper', response.headers['WWW-Authenticate'])


class TestWebUIAppWithMissingConfig(unittest.TestCase):
    """Tests for the Flask application with missing config."""

    def test_app_handles_missing_config(self):
        """Test that app handles missing config file gracefully."""
        app = create_app(config_path='/nonexistent/config.yaml')
        app.config['TESTING'] = True
        client = app.test_client()

        # Health check should still work
        response = client.get('/api/health')
        self.assertEqual(response.status_code, 200)

        # Authenticated routes should return empty/default config
        credentials = base64.b64encode(b'admin:admin').decode('utf-8')
        auth_header = {'Authorization': f'Basic {credentials}'}

        response = client.get('/api/config', headers=auth_header)
        self.assertEqual(response.status_code, 200)
        data = json.loads(response.data)
        # Should have defaults
        self.assertEqual(data['days_before_stale'], 30)
        self.assertEqual(data['days_before_close'], 5)
        self.assertEqual(data['platform'], 'github')


if __name__ == '__main__':
    unittest.main()
