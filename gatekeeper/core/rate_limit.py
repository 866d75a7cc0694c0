"""
Request rate limiting (slowapi).

The limiter is attached to ``app.state`` in main.py and applied per route with
``@limiter.limit(...)``.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from gatekeeper.core import config


limiter = Limiter(key_func=get_remote_address, enabled=config.RATE_LIMIT_ENABLED)
