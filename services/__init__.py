from .auth_service import AuthorizationGateway, DenyReason, Verdict
from .cache_service import MemoryCache, RedisCache, create_cache
from .encryption_service import EncryptionService
from .entitlement_service import EntitlementCache
from .request_counter import RequestCounter
from .session_service import SessionAccountant

__all__ = [
    "AuthorizationGateway",
    "DenyReason",
    "Verdict",
    "MemoryCache",
    "RedisCache",
    "create_cache",
    "EncryptionService",
    "EntitlementCache",
    "SessionAccountant",
    "RequestCounter",
]
