# trip_engine/infra/gateways/__init__.py
"""
Шлюзы к внешним сервисам: профили пользователей и водители.
"""

from trip_engine.infra.gateways.base import DriverMatcher, GatewayResult, UserDirectory
from trip_engine.infra.gateways.drivers import HttpDriverMatcher
from trip_engine.infra.gateways.users import HttpUserDirectory

__all__ = [
    "GatewayResult",
    "UserDirectory",
    "DriverMatcher",
    "HttpUserDirectory",
    "HttpDriverMatcher",
]
