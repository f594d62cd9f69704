"""
Process-wide service providers for route dependencies.

Clients are built once per process from Settings. Missing configuration
surfaces as 503 on the routes that need it, not at import time. Tests replace
these through `app.dependency_overrides`.
"""
from functools import lru_cache
from typing import Optional

from core.exceptions import ConfigurationError, ServiceUnavailableError
from services.notifications import Notifier, build_notifier
from services.object_storage import StorageService, build_s3_storage
from services.stripe_service import StripeService


@lru_cache(maxsize=1)
def _stripe_service() -> StripeService:
    return StripeService()


@lru_cache(maxsize=1)
def _storage() -> StorageService:
    return build_s3_storage()


@lru_cache(maxsize=1)
def _notifier() -> Notifier:
    return build_notifier()


def get_stripe_service() -> StripeService:
    try:
        return _stripe_service()
    except ConfigurationError as e:
        raise ServiceUnavailableError(str(e))


def get_optional_stripe_service() -> Optional[StripeService]:
    """For routes where only some inputs need Stripe."""
    try:
        return _stripe_service()
    except ConfigurationError:
        return None


def get_storage() -> StorageService:
    try:
        return _storage()
    except ConfigurationError as e:
        raise ServiceUnavailableError(str(e))


def get_notifier() -> Notifier:
    return _notifier()
