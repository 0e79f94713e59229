"""
Identity Store - Persistence layer for users, groups, roles and memberships.

This package provides a uniform identity store contract with interchangeable
backends (LDAP directory, relational database and flat files), a query engine
for filtering identities, and an identity manager facade for applications.
"""

__version__ = "1.0.0"
__author__ = "Identity Store Team"
