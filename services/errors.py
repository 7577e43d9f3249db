"""
Infrastructure-level failures.

Domain outcomes (no slot, no match, bad input) are returned as values with
`success: False`; only failures the voice agent cannot talk its way around
are raised as ServiceError and rendered as non-2xx responses.
"""

from __future__ import annotations


class ServiceError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
