"""
rapidstore: resource router and dynamic-schema data access for
SMS surveys (messages, monitors, forms, fields and per-form data tables).
"""

from rapidstore.errors import InvalidResource, NotFound, RapidStoreError, StorageError, ValidationError
from rapidstore.notifications import ChangeNotifier, ResultSet
from rapidstore.provider import DataProvider, create_provider
from rapidstore.registry import SchemaRegistry
from rapidstore.resources import ResourceKind, ResourceMatch, ResourceMatcher
from rapidstore.storage import create_storage_engine, init_db
from rapidstore.validation import Validator

__all__ = [
    "ChangeNotifier",
    "DataProvider",
    "InvalidResource",
    "NotFound",
    "RapidStoreError",
    "ResourceKind",
    "ResourceMatch",
    "ResourceMatcher",
    "ResultSet",
    "SchemaRegistry",
    "StorageError",
    "ValidationError",
    "Validator",
    "create_provider",
    "create_storage_engine",
    "init_db",
]
