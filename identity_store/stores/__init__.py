"""
Identity store backends.

Backends are loaded on demand so an application using only the file store
does not need a directory server or a database driver.
"""

import importlib
import logging
from typing import Any, Dict, Optional, Type

from identity_store.credentials import PasswordEncoder, create_password_encoder
from identity_store.stores.base import IdentityStore

logger = logging.getLogger(__name__)

STORE_MODULES = {
    'file': 'file_store',
    'sql': 'sql_store',
    'ldap': 'ldap_store',
}


def load_store_class(store_type: str) -> Type[IdentityStore]:
    """
    Import the backend module for a store type and find its IdentityStore subclass.

    Raises:
        ValueError: If the store type is unknown or its module defines no store
    """
    if store_type not in STORE_MODULES:
        raise ValueError(f"Unknown identity store type: {store_type} "
                         f"(expected one of {', '.join(sorted(STORE_MODULES))})")

    module = importlib.import_module(f"identity_store.stores.{STORE_MODULES[store_type]}")
    for attr_name in dir(module):
        attr = getattr(module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, IdentityStore) and
                getattr(attr, 'store_type', None) == store_type):
            return attr

    raise ValueError(f"No IdentityStore subclass found for store type {store_type}")


def create_identity_store(config: Dict[str, Any],
                          password_encoder: Optional[PasswordEncoder] = None) -> IdentityStore:
    """
    Create the identity store selected by a loaded configuration.

    Args:
        config: Full configuration with a 'store' section and one section per backend
        password_encoder: Encoder to use instead of the one built from 'credentials'

    Returns:
        Connected identity store
    """
    store_type = config.get('store', {}).get('type', 'file')
    store_class = load_store_class(store_type)
    encoder = password_encoder or create_password_encoder(config.get('credentials'))

    logger.info(f"Creating {store_class.__name__} identity store")
    return store_class(config.get(store_type, {}), password_encoder=encoder)
