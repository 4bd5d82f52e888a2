"""
Authentication Module
=====================
Login identities for session-gated crawling.

    - ``CredentialPool``       identities, error budgets, context binding
    - ``Credential``           one identity (opaque payload + counters)
    - ``CredentialStateStore`` counter persistence across restarts

Usage::

    from feedcrawler.auth import CredentialPool

    pool = CredentialPool(max_error_count=3)
    pool.load([[cookie_a1, cookie_a2], [cookie_b1]], required=True)
    cred = pool.acquire(context)
"""

from .credential_pool import Credential, CredentialPool
from .session_store import CredentialStateStore

__all__ = [
    "Credential",
    "CredentialPool",
    "CredentialStateStore",
]
