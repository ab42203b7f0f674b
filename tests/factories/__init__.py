"""
Data factories for test data generation.

Factories use factory-boy to create realistic test data with sensible defaults.
All factories support async creation via create_async() method.

Usage:
    from tests.factories import TenantFactory, UserFactory

    tenant = await TenantFactory.create_async(db_session)
    user = await UserFactory.create_async(db_session, tenant_id=tenant.id)
"""

from tests.factories.tenant import TenantFactory
from tests.factories.user import UserFactory

__all__ = [
    "TenantFactory",
    "UserFactory",
]
