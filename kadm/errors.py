#!/usr/bin/env python3
#
# This module contains the exception hierarchy shared by every kadm package.
# Callers should catch KadmError at the outermost layer and the narrower types
# where they need to make a decision (e.g. retry or give up).

import typing


class KadmError(Exception):
    "Base class for all errors raised by kadm"


class ConfigurationError(KadmError, ValueError):
    """
    Raised for malformed operator input: bad tokens, empty endpoint lists,
    missing discovery inputs. Never retried automatically.
    """


class AssetIOError(KadmError, OSError):
    "Raised when a PKI asset or configuration file cannot be read or written"


class DiscoveryIOError(AssetIOError):
    "Raised when discovery cannot read its trust anchor"


class CryptoError(KadmError):
    "Raised when key or certificate generation fails"


class ProtocolError(KadmError):
    "Raised when the signing request exchange fails"


class SigningRequestDeniedError(ProtocolError):
    """
    Raised when an administrator or policy denies the signing request. This
    error is terminal and must never be retried automatically.
    """

    def __init__(self, name: str, *, reason: str = "", message: str = ""):
        self.name = name
        self.reason = reason
        self.message = message
        super().__init__(
            f"certificate signing request {name} is not approved: {reason}, {message}"
        )


class TransientProtocolError(ProtocolError):
    "Protocol failures that may succeed when the join is attempted again"


class ApprovalConnectionError(TransientProtocolError):
    "Raised when the approval authority endpoint is unreachable"


class WatchClosedError(TransientProtocolError):
    "Raised when a watch stream ends before a decision or the deadline"


class BootstrapCancelledError(ProtocolError):
    "Raised when a running bootstrap is cancelled by an external signal"


class BootstrapTimeoutError(KadmError, TimeoutError):
    "Raised when no decision arrives before the watch deadline"

    def __init__(self, name: str, *, timeout_seconds: typing.Union[int, float]):
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"no decision for certificate signing request {name} within {timeout_seconds}s"
        )


class UnimplementedError(KadmError, NotImplementedError):
    "Raised by capabilities which are declared but not implemented"


class InvalidTransitionError(KadmError):
    "Raised when the join state machine is asked to move backwards"
