"""Per-client HTTP throttling using slowapi.

This sits in front of the generation gateway's own usage quota and only
protects the process from a single client flooding the routes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

# Rate limiter instance: use remote address as key
limiter = Limiter(key_func=get_remote_address, default_limits=[])

generation_limit = settings.generation_rate_limit
