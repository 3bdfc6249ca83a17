from .client import PortalClient, PortalCredentials, PortalSession
from .endpoints import PortalEndpoints
from .statements import StatementSync, select_new

__all__ = [
    "PortalClient",
    "PortalCredentials",
    "PortalEndpoints",
    "PortalSession",
    "StatementSync",
    "select_new",
]
