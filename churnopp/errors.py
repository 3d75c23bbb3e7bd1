"""
Error taxonomy for ChurnOpp.

Authorization, entitlement and computation errors surface to API callers
with distinct payloads. Transport and notification errors are recovered or
logged where they happen and never reach the caller.
"""


class ChurnOppError(Exception):
    """Base class for ChurnOpp errors."""
    code = "churnopp_error"
    status_code = 500


class AuthorizationError(ChurnOppError):
    """Unknown account, or a missing/invalid dashboard credential."""
    code = "authorization_error"
    status_code = 401


class EntitlementError(ChurnOppError):
    """Event type not allowed for the account's tier."""
    code = "entitlement_error"
    status_code = 403


class ComputationError(ChurnOppError):
    """A score could not be built, e.g. the store is unavailable."""
    code = "computation_error"
    status_code = 500


class TransportError(ChurnOppError):
    """Client-side network failure while delivering an event."""
    code = "transport_error"


class NotificationError(ChurnOppError):
    """Alert dispatch failed."""
    code = "notification_error"
