from .closeio_client import ServiceClient, BASE_API_URL
from .platform_client import PlatformClient
from .throttle import Throttle, ThrottleRegistry

__all__ = [
    "ServiceClient", "BASE_API_URL",
    "PlatformClient",
    "Throttle", "ThrottleRegistry",
]
