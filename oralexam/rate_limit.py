"""
Shared slowapi limiter.

Attached to the app in main.py; routes decorate their public endpoints with
@limiter.limit(...).
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
