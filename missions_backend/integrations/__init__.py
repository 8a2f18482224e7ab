"""External integrations used by the backend."""

from __future__ import annotations

SUPPORTED_SERVICES = {
    'supabase',
}

__all__ = ['SUPPORTED_SERVICES']
