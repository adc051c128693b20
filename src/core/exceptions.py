"""
Domain exceptions.

Business outcomes (a rule hitting its cap, a duplicate payment callback) are
return values, not exceptions. These cover lookups that fail, rejected input,
and the cache being unreachable.
"""


class RelayError(Exception):
    """Base class for backend errors"""


class CacheUnavailableError(RelayError):
    """Redis is disabled, unreachable or failed mid-operation"""


class NodeNotFoundError(RelayError):
    pass


class NodeAuthError(RelayError):
    """Node id / secret pair did not match"""


class RuleNotFoundError(RelayError):
    pass


class PackageNotFoundError(RelayError):
    pass


class OrderNotFoundError(RelayError):
    pass


class InsufficientBalanceError(RelayError):
    pass


class PaymentVerificationError(RelayError):
    """Provider callback failed signature or format checks"""


class PackageUnavailableError(RelayError):
    """Package is hidden, or not renewable and already bought"""
