from slowapi import Limiter
from slowapi.util import get_remote_address

from cash_snapshot.core.config import settings

# memory:// in development; point RATE_LIMIT_STORAGE_URI at redis:// when running several workers
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)
