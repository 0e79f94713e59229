#!/usr/bin/env python3
"""
Integration tests for the identity manager and the store factory.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_store.credentials import SHASaltedPasswordEncoder
from identity_store.manager import IdentityManager
from identity_store.stores import create_identity_store, load_store_class
from identity_store.stores.file_store import FileIdentityStore
from identity_store.stores.sql_store import SQLIdentityStore


class TestStoreFactory(unittest.TestCase):
    """Test backend selection from configuration."""

    def setUp(self):
        self.working_dir = tempfile.mkdtemp(prefix='identity_store_test_')

    def tearDown(self):
        shutil.rmtree(self.working_dir, ignore_errors=True)

    def test_load_store_class(self):
        self.assertIs(load_store_class('file'), FileIdentityStore)
        self.assertIs(load_store_class('sql'), SQLIdentityStore)

    def test_unknown_store_type(self):
        with self.assertRaises(ValueError):
            load_store_class('mongodb')

    def test_create_store_with_configured_encoder(self):
        store = create_identity_store({
            'store': {'type': 'file'},
            'file': {'working_dir': self.working_dir},
            'credentials': {'encoder': 'sha_salted', 'strength': 512},
        })

        self.assertIsInstance(store, FileIdentityStore)
        self.assertIsInstance(store.password_encoder, SHASaltedPasswordEncoder)
        self.assertEqual(store.password_encoder.strength, 512)
        self.assertEqual(store.working_dir, self.working_dir)


class ManagerScenario:
    """End-to-end scenario run through the manager for each backend."""

    manager = None

    def test_end_to_end(self):
        user = self.manager.create_user('asaldhana')
        user.first_name = 'Anil'
        user.last_name = 'Saldhana'
        user.email = 'myemail@company.com'
        role = self.manager.create_role('admin')
        group = self.manager.create_group('Administrators')
        self.manager.create_membership(role, user, group)

        by_role = self.manager.create_user_query().set_role('admin').execute()
        self.assertIn('asaldhana', [u.key for u in by_role])

        by_email = self.manager.execute_query(self.manager.create_user_query().set_email('myemail@company.com'))
        self.assertEqual([u.key for u in by_email], ['asaldhana'])

        self.manager.remove_user(user)
        self.assertIsNone(self.manager.get_user('asaldhana'))

    def test_attributes_through_manager(self):
        group = self.manager.create_group('Administrators')
        self.manager.set_attribute(group, 'a1', ['v1', 'v2', 'v3'])

        self.assertEqual(self.manager.get_attribute_values(group, 'a1'), ['v1', 'v2', 'v3'])
        self.assertEqual(self.manager.get_attributes(self.manager.get_group('Administrators')),
                         {'a1': ['v1', 'v2', 'v3']})

        matches = self.manager.create_group_query().set_attribute_filter('a1', ['v1', 'v2', 'v3']).execute()
        self.assertEqual([g.key for g in matches], ['Administrators'])
        self.assertEqual(self.manager.create_group_query().set_attribute_filter('a1', ['v1', 'v2']).execute(), [])

        self.manager.remove_attribute(group, 'a1')
        self.assertIsNone(self.manager.get_attribute_values(group, 'a1'))

    def test_memberships_through_manager(self):
        role = self.manager.create_role('admin')
        user = self.manager.create_user('asaldhana')
        group = self.manager.create_group('Administrators')
        self.manager.create_membership(role, user, group)

        self.assertIsNotNone(self.manager.get_membership('admin', 'asaldhana', 'Administrators'))
        self.manager.remove_membership(role, user, group)
        self.manager.remove_membership(role, user, group)
        self.assertEqual(self.manager.create_membership_query().execute(), [])

        self.manager.remove_role(role)
        self.manager.remove_group(group)
        self.assertIsNone(self.manager.get_role('admin'))
        self.assertIsNone(self.manager.get_group('Administrators'))

    def test_passwords_through_manager(self):
        user = self.manager.create_user('asaldhana')
        self.manager.update_password(user, 'secret')

        self.assertTrue(self.manager.validate_password(user, 'secret'))
        self.assertFalse(self.manager.validate_password(user, 'wrong'))

    def test_lifecycle_is_audited(self):
        with self.assertLogs('security', level='INFO') as captured:
            self.manager.remove_user(self.manager.create_user('asaldhana'))

        self.assertTrue(any(f'create user=asaldhana store={self.store_type}' in line for line in captured.output))
        self.assertTrue(any(f'remove user=asaldhana store={self.store_type}' in line for line in captured.output))


class TestFileManager(ManagerScenario, unittest.TestCase):
    store_type = 'file'

    def setUp(self):
        self.working_dir = tempfile.mkdtemp(prefix='identity_store_test_')
        self.manager = IdentityManager.from_config({
            'store': {'type': 'file'},
            'file': {'working_dir': self.working_dir},
            'credentials': {'encoder': 'sha_salted'},
        })

    def tearDown(self):
        self.manager.close()
        shutil.rmtree(self.working_dir, ignore_errors=True)


class TestSQLManager(ManagerScenario, unittest.TestCase):
    store_type = 'sql'

    def setUp(self):
        self.manager = IdentityManager.from_config({'store': {'type': 'sql'}, 'sql': {'url': 'sqlite://'}})

    def tearDown(self):
        self.manager.close()


class TestManagerFromConfigFile(unittest.TestCase):
    """Test building a manager from a YAML configuration file."""

    def setUp(self):
        self.working_dir = tempfile.mkdtemp(prefix='identity_store_test_')
        self.config_path = os.path.join(self.working_dir, 'config.yaml')
        with open(self.config_path, 'w') as f:
            yaml.dump({
                'store': {'type': 'file'},
                'file': {'working_dir': os.path.join(self.working_dir, 'data')},
            }, f)

    def tearDown(self):
        shutil.rmtree(self.working_dir, ignore_errors=True)

    def test_from_config_path(self):
        with IdentityManager.from_config(config_path=self.config_path) as manager:
            self.assertEqual(manager.store_type, 'file')
            manager.create_user('asaldhana')

        self.assertTrue(os.path.exists(os.path.join(self.working_dir, 'data', 'identity-users.json')))

    @patch('identity_store.manager.setup_logging')
    def test_logging_configured_on_request(self, mock_setup_logging):
        IdentityManager.from_config(config_path=self.config_path, configure_logging=True)
        mock_setup_logging.assert_called_once()

    def test_delegates_to_store(self):
        store = MagicMock()
        manager = IdentityManager(store)

        manager.get_user('asaldhana')
        manager.create_role_query()

        store.get_user.assert_called_once_with('asaldhana')
        store.create_role_query.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()
