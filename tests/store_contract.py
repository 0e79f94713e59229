"""
Behaviour every identity store backend must share.

Mixed into backend test cases that provide self.store in setUp.
"""

from identity_store.query import Range
from identity_store.stores.base import DuplicateKeyError


class IdentityStoreContract:
    """Contract checks run against each backend."""

    store = None

    def test_get_after_create(self):
        self.assertEqual(self.store.create_user('asaldhana').key, 'asaldhana')
        self.store.create_group('Administrators')
        self.store.create_role('admin')

        self.assertEqual(self.store.get_user('asaldhana').key, 'asaldhana')
        self.assertEqual(self.store.get_group('Administrators').key, 'Administrators')
        self.assertEqual(self.store.get_role('admin').key, 'admin')

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.store.get_user('nobody'))
        self.assertIsNone(self.store.get_group('nothing'))
        self.assertIsNone(self.store.get_role('none'))

    def test_remove_then_get_returns_none(self):
        user = self.store.create_user('asaldhana')
        group = self.store.create_group('Administrators')
        role = self.store.create_role('admin')

        self.store.remove_user(user)
        self.store.remove_group(group)
        self.store.remove_role(role)

        self.assertIsNone(self.store.get_user('asaldhana'))
        self.assertIsNone(self.store.get_group('Administrators'))
        self.assertIsNone(self.store.get_role('admin'))

    def test_duplicate_keys_rejected(self):
        self.store.create_user('asaldhana')
        self.store.create_role('admin')
        self.store.create_group('Administrators')

        with self.assertRaises(DuplicateKeyError):
            self.store.create_user('asaldhana')
        with self.assertRaises(DuplicateKeyError):
            self.store.create_role('admin')
        with self.assertRaises(DuplicateKeyError):
            self.store.create_group('Administrators')

    def test_set_attribute_preserves_order(self):
        user = self.store.create_user('asaldhana')
        self.store.set_attribute(user, 'a1', ['v3', 'v1', 'v2'])

        self.assertEqual(self.store.get_attribute_values(user, 'a1'), ['v3', 'v1', 'v2'])
        reloaded = self.store.get_user('asaldhana')
        self.assertEqual(self.store.get_attribute_values(reloaded, 'a1'), ['v3', 'v1', 'v2'])

    def test_attributes_on_groups_and_roles(self):
        group = self.store.create_group('Administrators')
        role = self.store.create_role('admin')
        self.store.set_attribute(group, 'location', 'HQ')
        self.store.set_attribute(role, 'level', ['1', '2'])

        self.assertEqual(self.store.get_group('Administrators').get_attribute_values('location'), ['HQ'])
        self.assertEqual(self.store.get_attributes(self.store.get_role('admin')), {'level': ['1', '2']})

    def test_remove_attribute(self):
        user = self.store.create_user('asaldhana')
        self.store.set_attribute(user, 'a1', ['v1'])
        self.store.remove_attribute(user, 'a1')

        self.assertIsNone(self.store.get_attribute_values(user, 'a1'))
        self.assertIsNone(self.store.get_user('asaldhana').get_attribute_values('a1'))

    def test_empty_attribute_distinct_from_absent(self):
        user = self.store.create_user('asaldhana')
        self.store.set_attribute(user, 'telephoneNumber', [])
        self.store.set_attribute(user, 'a1', [])

        reloaded = self.store.get_user('asaldhana')
        self.assertEqual(reloaded.get_attribute_values('telephoneNumber'), [])
        self.assertEqual(reloaded.get_attribute_values('a1'), [])
        self.assertIsNone(reloaded.get_attribute_values('a2'))

        self.store.set_attribute(user, 'telephoneNumber', ['555-0100'])
        self.assertEqual(self.store.get_user('asaldhana').get_attribute_values('telephoneNumber'),
                         ['555-0100'])

        self.store.remove_attribute(user, 'telephoneNumber')
        self.assertIsNone(self.store.get_user('asaldhana').get_attribute_values('telephoneNumber'))

    def test_user_fields_persist(self):
        user = self.store.create_user('asaldhana')
        user.first_name = 'Anil'
        user.last_name = 'Saldhana'
        user.email = 'myemail@company.com'
        user.enabled = False

        reloaded = self.store.get_user('asaldhana')
        self.assertEqual(reloaded.first_name, 'Anil')
        self.assertEqual(reloaded.last_name, 'Saldhana')
        self.assertEqual(reloaded.email, 'myemail@company.com')
        self.assertFalse(reloaded.enabled)

    def test_attribute_filter_exact_sequence(self):
        user = self.store.create_user('asaldhana')
        self.store.create_user('other')
        self.store.set_attribute(user, 'a1', ['v1', 'v2', 'v3'])

        exact = self.store.create_user_query().set_attribute_filter('a1', ['v1', 'v2', 'v3'])
        subset = self.store.create_user_query().set_attribute_filter('a1', ['v1', 'v2'])

        self.assertEqual([u.key for u in exact.execute()], ['asaldhana'])
        self.assertEqual(subset.execute(), [])

    def test_query_by_role_and_group(self):
        admin = self.store.create_role('admin')
        auditor = self.store.create_role('auditor')
        administrators = self.store.create_group('Administrators')
        staff = self.store.create_group('Staff')
        alice = self.store.create_user('alice')
        bob = self.store.create_user('bob')
        carol = self.store.create_user('carol')

        self.store.create_membership(admin, alice, administrators)
        self.store.create_membership(admin, bob, staff)
        self.store.create_membership(auditor, carol, staff)

        users = self.store.create_user_query().set_role(admin).execute()
        self.assertEqual(sorted(u.key for u in users), ['alice', 'bob'])

        users = self.store.create_user_query().set_role(admin).set_related_group(staff).execute()
        self.assertEqual([u.key for u in users], ['bob'])

        groups = self.store.create_group_query().set_role('auditor').execute()
        self.assertEqual([g.key for g in groups], ['Staff'])

        groups = self.store.create_group_query().set_related_user('alice').execute()
        self.assertEqual([g.key for g in groups], ['Administrators'])

        roles = self.store.create_role_query().set_owner(carol).execute()
        self.assertEqual([r.key for r in roles], ['auditor'])

        roles = self.store.create_role_query().set_group(staff).execute()
        self.assertEqual(sorted(r.key for r in roles), ['admin', 'auditor'])

    def test_membership_lookup_and_query(self):
        admin = self.store.create_role('admin')
        user = self.store.create_user('asaldhana')
        group = self.store.create_group('Administrators')
        self.store.create_membership(admin, user, group)

        membership = self.store.get_membership(admin, user, group)
        self.assertIsNotNone(membership)
        self.assertEqual(membership.triple, ('admin', 'asaldhana', 'Administrators'))
        self.assertIsNone(self.store.get_membership('admin', 'asaldhana', 'Staff'))

        results = self.store.create_membership_query().set_user('asaldhana').execute()
        self.assertEqual([m.triple for m in results], [('admin', 'asaldhana', 'Administrators')])
        self.assertEqual(self.store.create_membership_query().set_role('auditor').execute(), [])

    def test_remove_membership(self):
        admin = self.store.create_role('admin')
        user = self.store.create_user('asaldhana')
        group = self.store.create_group('Administrators')
        self.store.create_membership(admin, user, group)

        self.store.remove_membership(admin, user, group)

        self.assertIsNone(self.store.get_membership(admin, user, group))
        self.assertEqual(self.store.create_user_query().set_role('admin').execute(), [])

    def test_remove_missing_membership_is_noop(self):
        admin = self.store.create_role('admin')
        user = self.store.create_user('asaldhana')
        group = self.store.create_group('Administrators')
        self.store.create_membership(admin, user, group)

        self.store.remove_membership('admin', 'asaldhana', 'Staff')
        self.store.remove_membership('auditor', 'nobody', 'Administrators')

        results = self.store.create_membership_query().execute()
        self.assertEqual([m.triple for m in results], [('admin', 'asaldhana', 'Administrators')])

    def test_group_parent(self):
        company = self.store.create_group('Company')
        self.store.create_group('Engineering', company)
        self.store.create_group('Sales', company)
        self.store.create_group('Other')

        engineering = self.store.get_group('Engineering')
        self.assertEqual(engineering.parent_group.key, 'Company')
        self.assertIsNone(self.store.get_group('Company').parent_group)

        children = self.store.create_group_query().set_parent_group(company).execute()
        self.assertEqual(sorted(g.key for g in children), ['Engineering', 'Sales'])

    def test_query_range(self):
        for name in ('u1', 'u2', 'u3', 'u4'):
            self.store.create_user(name)

        page = self.store.execute_query(self.store.create_user_query(), Range.of(1, 2))
        self.assertEqual(len(page), 2)

        all_users = self.store.create_user_query().execute()
        self.assertEqual(len(all_users), 4)
        self.assertEqual([u.key for u in page], [u.key for u in all_users][1:3])

    def test_end_to_end_scenario(self):
        user = self.store.create_user('asaldhana')
        user.first_name = 'Anil'
        user.last_name = 'Saldhana'
        user.email = 'myemail@company.com'
        role = self.store.create_role('admin')
        group = self.store.create_group('Administrators')
        self.store.create_membership(role, user, group)

        by_role = self.store.create_user_query().set_role('admin').execute()
        self.assertIn('asaldhana', [u.key for u in by_role])

        by_email = self.store.create_user_query().set_email('myemail@company.com').execute()
        self.assertEqual([u.key for u in by_email], ['asaldhana'])

        self.store.remove_user(user)
        self.assertIsNone(self.store.get_user('asaldhana'))

    def test_password_update_and_validate(self):
        user = self.store.create_user('asaldhana')
        self.assertFalse(self.store.validate_password(user, 'secret'))

        self.store.update_password(user, 'secret')

        self.assertTrue(self.store.validate_password(user, 'secret'))
        self.assertFalse(self.store.validate_password(user, 'wrong'))
        self.assertTrue(self.store.validate_password(self.store.get_user('asaldhana'), 'secret'))
