#!/usr/bin/env python3
"""
Unit tests for the LDAP identity store.

The store runs against ldap3's MOCK_SYNC strategy with the offline OpenLDAP
schema, so managed attribute detection uses a real schema.
"""

import json
import os
import sys
import unittest
from unittest.mock import MagicMock

from ldap3 import MOCK_SYNC, MODIFY_REPLACE, OFFLINE_SLAPD_2_4, Connection, Server

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_store.model import User
from identity_store.stores.base import SchemaMismatchError
from identity_store.stores.ldap_store import LDAPIdentityStore, LDAPUser, ManagedAttributeCache
from store_contract import IdentityStoreContract

ADMIN_DN = 'cn=admin,dc=example,dc=org'
ADMIN_PASSWORD = 'admin-secret'


def ldap_config(**overrides):
    config = {
        'server_url': 'ldap://directory.example.org',
        'bind_dn': ADMIN_DN,
        'bind_password': ADMIN_PASSWORD,
        'client_strategy': MOCK_SYNC,
        'user_dn_suffix': 'ou=People,dc=example,dc=org',
        'role_dn_suffix': 'ou=Roles,dc=example,dc=org',
        'group_dn_suffix': 'ou=Groups,dc=example,dc=org',
    }
    config.update(overrides)
    return config


class LDAPStoreTestCase(unittest.TestCase):
    """Creates a store bound to a fresh mock directory."""

    def setUp(self):
        self.server = Server('directory.example.org', get_info=OFFLINE_SLAPD_2_4)
        seed = Connection(self.server, user=ADMIN_DN, password=ADMIN_PASSWORD, client_strategy=MOCK_SYNC)
        seed.strategy.add_entry(ADMIN_DN, {'objectClass': ['person'], 'cn': 'admin', 'sn': 'admin',
                                           'userPassword': ADMIN_PASSWORD})
        self.store = self.create_store()

    def tearDown(self):
        self.store.close()

    def create_store(self, **overrides):
        return LDAPIdentityStore(ldap_config(**overrides), server=self.server)


class TestLDAPIdentityStoreContract(IdentityStoreContract, LDAPStoreTestCase):
    """Shared identity store behaviour on the directory backend."""
    pass


class TestLDAPIdentityStore(LDAPStoreTestCase):
    """Directory backend specific behaviour."""

    def test_dn_construction(self):
        self.assertEqual(self.store.user_dn('asaldhana'), 'uid=asaldhana,ou=People,dc=example,dc=org')
        self.assertEqual(self.store.role_dn('admin'), 'cn=admin,ou=Roles,dc=example,dc=org')
        self.assertEqual(self.store.group_dn('Administrators'), 'cn=Administrators,ou=Groups,dc=example,dc=org')
        self.assertEqual(self.store.membership_dn('admin', 'Administrators'),
                         'cn=admin,cn=Administrators,ou=Groups,dc=example,dc=org')
        self.assertEqual(self.store.user_dn('doe, john'), 'uid=doe\\, john,ou=People,dc=example,dc=org')

    def test_generated_user_id_targets_expected_dn(self):
        store = self.create_store(generate_user_ids=True)

        user = store.create_user('Anil Saldhana')

        self.assertEqual(user.key, 'asaldhana')
        self.assertEqual(user.dn, 'uid=asaldhana,ou=People,dc=example,dc=org')
        self.assertEqual((user.first_name, user.last_name, user.full_name), ('Anil', 'Saldhana', 'Anil Saldhana'))
        self.assertTrue(store.client.exists('uid=asaldhana,ou=People,dc=example,dc=org'))

        store.update_password(user, 'secret')
        self.assertTrue(store.validate_password(user, 'secret'))

        store.remove_user(user)
        self.assertFalse(store.client.exists('uid=asaldhana,ou=People,dc=example,dc=org'))

    def test_generated_user_id_truncated(self):
        store = self.create_store(generate_user_ids=True, max_user_id_length=5)
        self.assertEqual(store.create_user('Anil Kumar Saldhana').key, 'asald')

    def test_containers_created_on_demand(self):
        self.assertFalse(self.store.client.exists('ou=Roles,dc=example,dc=org'))
        self.store.create_role('admin')
        self.assertTrue(self.store.client.exists('ou=Roles,dc=example,dc=org'))

    def test_managed_attribute_stored_on_entry(self):
        user = self.store.create_user('asaldhana')

        self.store.set_attribute(user, 'title', ['Engineer'])

        entry = self.store.client.get_entry(user.dn)
        self.assertEqual(entry['attributes']['title'], ['Engineer'])
        self.assertFalse(self.store.client.exists(self.store.overlay_dn(user.dn)))
        self.assertEqual(self.store.get_user('asaldhana').get_attribute_values('title'), ['Engineer'])

    def test_custom_attribute_stored_in_overlay(self):
        user = self.store.create_user('asaldhana')

        self.store.set_attribute(user, 'favoriteColor', ['blue', 'green'])

        entry = self.store.client.get_entry(user.dn)
        self.assertNotIn('favoriteColor', entry['attributes'])
        overlay = self.store.client.get_entry(self.store.overlay_dn(user.dn))
        document = json.loads(overlay['attributes']['description'][0])
        self.assertEqual(document['attributes'], {'favoriteColor': ['blue', 'green']})
        self.assertEqual(self.store.get_user('asaldhana').get_attribute_values('favoriteColor'), ['blue', 'green'])

    def test_overlay_removed_when_empty(self):
        user = self.store.create_user('asaldhana')
        self.store.set_attribute(user, 'favoriteColor', 'blue')
        self.store.remove_attribute(user, 'favoriteColor')

        self.assertFalse(self.store.client.exists(self.store.overlay_dn(user.dn)))

    def test_empty_managed_attribute_kept_in_overlay(self):
        user = self.store.create_user('asaldhana')

        self.store.set_attribute(user, 'title', [])

        entry = self.store.client.get_entry(user.dn)
        self.assertNotIn('title', entry['attributes'])
        overlay = self.store.client.get_entry(self.store.overlay_dn(user.dn))
        self.assertEqual(json.loads(overlay['attributes']['description'][0])['empty'], ['title'])
        self.assertEqual(self.store.get_user('asaldhana').get_attribute_values('title'), [])

        self.store.remove_attribute(user, 'title')
        self.assertFalse(self.store.client.exists(self.store.overlay_dn(user.dn)))
        self.assertIsNone(self.store.get_user('asaldhana').get_attribute_values('title'))

    def test_managed_and_custom_filters(self):
        first = self.store.create_user('first')
        second = self.store.create_user('second')
        self.store.set_attribute(first, 'title', 'Engineer')
        self.store.set_attribute(second, 'title', 'Engineer')
        self.store.set_attribute(first, 'favoriteColor', ['blue'])

        by_title = self.store.create_user_query().set_attribute_filter('title', 'Engineer').execute()
        self.assertEqual(sorted(u.key for u in by_title), ['first', 'second'])

        query = self.store.create_user_query()
        query.set_attribute_filter('title', 'Engineer').set_attribute_filter('favoriteColor', ['blue'])
        self.assertEqual([u.key for u in query.execute()], ['first'])

    def test_enabled_flag_kept_in_overlay(self):
        user = self.store.create_user('asaldhana')
        self.store.create_user('other')

        user.enabled = False

        self.assertFalse(self.store.get_user('asaldhana').enabled)
        disabled = self.store.create_user_query().set_enabled(False).execute()
        self.assertEqual([u.key for u in disabled], ['asaldhana'])

    def test_reserved_attribute_rejected(self):
        user = self.store.create_user('asaldhana')

        with self.assertRaises(ValueError):
            self.store.set_attribute(user, 'mail', 'myemail@company.com')
        self.assertIsNone(user.get_attribute_values('mail'))

    def test_reserved_attribute_filter_rejected(self):
        user = self.store.create_user('asaldhana')
        user.email = 'myemail@company.com'

        with self.assertRaises(ValueError):
            self.store.create_user_query().set_attribute_filter('mail', 'myemail@company.com').execute()
        with self.assertRaises(ValueError):
            self.store.create_group_query().set_attribute_filter('cn', 'Administrators').execute()

        by_email = self.store.create_user_query().set_email('myemail@company.com').execute()
        self.assertEqual([u.key for u in by_email], ['asaldhana'])

    def test_remove_group_removes_children_and_parent_reference(self):
        company = self.store.create_group('Company')
        engineering = self.store.create_group('Engineering', company)
        role = self.store.create_role('admin')
        user = self.store.create_user('asaldhana')
        self.store.create_membership(role, user, engineering)
        self.store.set_attribute(engineering, 'location', 'HQ')

        self.store.remove_group(engineering)

        self.assertIsNone(self.store.get_group('Engineering'))
        self.assertEqual(self.store.create_membership_query().execute(), [])
        members = self.store.client.get_entry(self.store.group_dn('Company'), ['member'])['attributes']['member']
        self.assertEqual(members, [self.store.group_dn('Company')])

    def test_membership_entry_holds_user_dns(self):
        role = self.store.create_role('admin')
        group = self.store.create_group('Administrators')
        for name in ('alice', 'bob'):
            self.store.create_membership(role, self.store.create_user(name), group)

        entry = self.store.client.get_entry(self.store.membership_dn('admin', 'Administrators'), ['member'])
        self.assertEqual(sorted(entry['attributes']['member']),
                         [self.store.user_dn('alice'), self.store.user_dn('bob')])

        self.store.remove_membership('admin', 'alice', 'Administrators')
        self.assertIsNone(self.store.get_membership('admin', 'alice', 'Administrators'))
        self.assertIsNotNone(self.store.get_membership('admin', 'bob', 'Administrators'))

    def test_foreign_entity_rejected(self):
        with self.assertRaises(SchemaMismatchError):
            self.store.set_attribute(User('asaldhana'), 'title', 'Engineer')
        with self.assertRaises(SchemaMismatchError):
            self.store.update_password(User('asaldhana'), 'secret')


class TestLDAPIdentityStoreWithMockClient(unittest.TestCase):
    """Behaviour checked against a mocked LDAP client."""

    def setUp(self):
        self.client = MagicMock()
        self.client.connected = True

    def test_active_directory_password(self):
        store = LDAPIdentityStore(ldap_config(active_directory=True), client=self.client)
        user = LDAPUser('asaldhana')

        store.update_password(user, 'secret')

        self.client.modify.assert_called_once_with(
            'uid=asaldhana,ou=People,dc=example,dc=org',
            {'unicodePwd': [(MODIFY_REPLACE, ['"secret"'.encode('utf-16-le')])]}
        )

    def test_validate_password_requires_single_match(self):
        store = LDAPIdentityStore(ldap_config(), client=self.client)
        self.client.search.return_value = []
        self.assertFalse(store.validate_password(LDAPUser('asaldhana'), 'secret'))

        self.client.search.return_value = [{'dn': 'uid=asaldhana,ou=A'}, {'dn': 'uid=asaldhana,ou=B'}]
        self.assertFalse(store.validate_password(LDAPUser('asaldhana'), 'secret'))
        self.client.probe_bind.assert_not_called()

    def test_managed_attribute_cache_asks_once(self):
        self.client.has_attribute_type.return_value = True
        cache = ManagedAttributeCache(self.client)

        self.assertTrue(cache.is_managed('title'))
        self.assertTrue(cache.is_managed('Title'))
        self.client.has_attribute_type.assert_called_once_with('title')

        cache.clear()
        cache.is_managed('title')
        self.assertEqual(self.client.has_attribute_type.call_count, 2)

    def test_connects_when_client_is_not_connected(self):
        self.client.connected = False
        LDAPIdentityStore(ldap_config(), client=self.client)
        self.client.connect.assert_called_once()


if __name__ == '__main__':
    unittest.main()
