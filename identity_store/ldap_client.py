"""
LDAP client used by the directory identity store.

This module manages the shared ldap3 connection (TLS, bind, reconnect) and
wraps the search, add, modify and delete operations the store needs, turning
ldap3 failures into identity store errors.
"""

import logging
import ssl
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from ldap3 import ALL, BASE, LEVEL, SUBTREE, SYNC, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPCommunicationError, LDAPException
from ldap3.utils.conv import escape_filter_chars

from identity_store.stores.base import BackendUnavailableError, DuplicateKeyError, IdentityStoreError

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32
RESULT_ENTRY_ALREADY_EXISTS = 68

SCOPES = {'base': BASE, 'level': LEVEL, 'subtree': SUBTREE}


class LDAPConnectionError(BackendUnavailableError):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(IdentityStoreError):
    """Raised when an LDAP operation fails."""
    pass


def escape_value(value: str) -> str:
    """Escape a value for use inside an LDAP search filter."""
    return escape_filter_chars(str(value))


class LDAPClient:
    """
    LDAP client holding one shared connection.

    All operations on the connection run under a reentrant lock so a
    password probe (rebind as the user, then reconnect) never interleaves
    with other requests.
    """

    def __init__(self, config: Dict[str, Any], server: Optional[Server] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
            server: Pre-built ldap3 Server, used instead of one created from server_url
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')

        # SSL/TLS configuration
        protocol = str(config.get('protocol') or '').lower()
        self.use_ssl = config.get('use_ssl', protocol == 'ssl' or self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', protocol == 'tls')
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.client_strategy = config.get('client_strategy', SYNC)
        self.additional_properties = dict(config.get('additional_properties') or {})

        self.server = server
        self.connection: Optional[Connection] = None
        self._connected = False
        self.lock = threading.RLock()

    def connect(self) -> bool:
        """
        Establish and bind the shared connection. A single attempt is made.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the server cannot be reached or the bind fails
        """
        with self.lock:
            if self.server is None:
                self.server = self._create_server()

            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    client_strategy=self.client_strategy,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout,
                    **self.additional_properties
                )

                # open() raises LDAPSocketOpenError when the server is unreachable
                self.connection.open()

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPConnectionError(f"Bind failed for {self.bind_dn}: {self.connection.result}")

            except LDAPConnectionError:
                self._discard_connection()
                raise
            except LDAPException as e:
                self._discard_connection()
                raise LDAPConnectionError(f"Failed to connect to LDAP server {self.server_url}: {e}") from e

            self._connected = True
            logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
            return True

    def _create_server(self) -> Server:
        try:
            server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}") from e
        logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        return server

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config: Dict[str, Any] = {
            'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE
        }
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}") from e

    def _discard_connection(self) -> None:
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self) -> None:
        """Close LDAP connection."""
        with self.lock:
            if self.connection is not None and self._connected:
                self._discard_connection()
                logger.debug("LDAP connection closed")

    def reconnect(self) -> None:
        """Drop the shared connection and bind a fresh one with the service credentials."""
        with self.lock:
            self._discard_connection()
            self.connect()

    @property
    def connected(self) -> bool:
        return self._connected

    @contextmanager
    def _operation(self, description: str) -> Iterator[Connection]:
        """Run one request on the shared connection, translating ldap3 errors."""
        with self.lock:
            if not self._connected:
                self.connect()
            try:
                yield self.connection
            except LDAPCommunicationError as e:
                self._connected = False
                raise LDAPConnectionError(f"{description} failed, connection lost: {e}") from e
            except LDAPException as e:
                raise LDAPQueryError(f"{description} failed: {e}") from e

    def search(self, base: str, search_filter: str = '(objectClass=*)', scope: str = 'subtree',
               attributes: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Search the directory.

        Args:
            base: Search base DN
            search_filter: LDAP filter string with values already escaped
            scope: 'base', 'level' or 'subtree'
            attributes: Attributes to return (all user attributes when None)

        Returns:
            List of {'dn': str, 'attributes': {name: [str, ...]}}; empty when the base does not exist

        Raises:
            LDAPQueryError: If the search fails
        """
        with self._operation(f"Search {search_filter} under {base}") as connection:
            connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=SCOPES[scope],
                attributes=attributes or ['*']
            )
            code = connection.result.get('result', RESULT_SUCCESS)
            if code == RESULT_NO_SUCH_OBJECT:
                return []
            if code != RESULT_SUCCESS:
                raise LDAPQueryError(f"Search {search_filter} under {base} failed: {connection.result}")

            return [{'dn': entry['dn'], 'attributes': self._normalize_attributes(entry)}
                    for entry in connection.response or []
                    if entry.get('type') == 'searchResEntry']

    @staticmethod
    def _normalize_attributes(entry: Dict[str, Any]) -> Dict[str, List[str]]:
        """Convert entry attributes to lists of strings, preferring the raw values."""
        raw = entry.get('raw_attributes') or {}
        formatted = entry.get('attributes') or {}
        attributes = {}
        for name in raw or formatted:
            values = raw.get(name) if raw else formatted.get(name)
            if not isinstance(values, (list, tuple)):
                values = [values]
            attributes[name] = [value.decode('utf-8', errors='replace') if isinstance(value, bytes) else str(value)
                                for value in values]
        return attributes

    def get_entry(self, dn: str, attributes: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        entries = self.search(dn, '(objectClass=*)', 'base', attributes)
        return entries[0] if entries else None

    def exists(self, dn: str) -> bool:
        return self.get_entry(dn, ['objectClass']) is not None

    def add(self, dn: str, object_class: List[str], attributes: Dict[str, Any]) -> None:
        """
        Add an entry.

        Raises:
            DuplicateKeyError: If an entry with the DN already exists
            LDAPQueryError: If the server rejects the entry
        """
        with self._operation(f"Add {dn}") as connection:
            if connection.add(dn, object_class, attributes):
                logger.debug(f"Added LDAP entry {dn}")
                return
            if connection.result.get('result') == RESULT_ENTRY_ALREADY_EXISTS:
                raise DuplicateKeyError(f"LDAP entry already exists: {dn}")
            raise LDAPQueryError(f"Add {dn} failed: {connection.result}")

    def modify(self, dn: str, changes: Dict[str, Any]) -> None:
        """
        Apply ldap3 modify changes, e.g. {'mail': [(MODIFY_REPLACE, ['a@b.c'])]}.

        Raises:
            LDAPQueryError: If the modification is rejected
        """
        with self._operation(f"Modify {dn}") as connection:
            if not connection.modify(dn, changes):
                raise LDAPQueryError(f"Modify {dn} failed: {connection.result}")
            logger.debug(f"Modified LDAP entry {dn}: {', '.join(changes)}")

    def delete(self, dn: str, missing_ok: bool = True) -> bool:
        """
        Delete an entry.

        Returns:
            True if the entry was deleted, False if it did not exist and missing_ok is set
        """
        with self._operation(f"Delete {dn}") as connection:
            if connection.delete(dn):
                logger.debug(f"Deleted LDAP entry {dn}")
                return True
            if missing_ok and connection.result.get('result') == RESULT_NO_SUCH_OBJECT:
                return False
            raise LDAPQueryError(f"Delete {dn} failed: {connection.result}")

    def probe_bind(self, dn: str, password: str) -> bool:
        """
        Check credentials by rebinding the shared connection as the given DN.

        The connection is always rebuilt with the service credentials
        afterwards. The lock is held for the whole sequence.

        Returns:
            True if the directory accepted the bind
        """
        if not password:
            return False
        with self.lock:
            if not self._connected:
                self.connect()
            try:
                accepted = bool(self.connection.rebind(user=dn, password=password))
            except LDAPBindError:
                accepted = False
            except LDAPException as e:
                logger.warning(f"Bind probe for {dn} failed: {e}")
                accepted = False
            finally:
                self.reconnect()
            logger.debug(f"Bind probe for {dn}: {'accepted' if accepted else 'rejected'}")
            return accepted

    def has_attribute_type(self, name: str) -> bool:
        """Check whether the server schema defines an attribute type."""
        with self.lock:
            if not self._connected:
                self.connect()
            schema = self.server.schema if self.server is not None else None
            if schema is None:
                logger.warning("LDAP server schema not available, treating attributes as custom")
                return False
            return name in schema.attribute_types

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
        }
        if self.connection is not None:
            stats.update({
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })
        return stats

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
