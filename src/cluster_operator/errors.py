"""Error taxonomy shared by the engine, the resolver and the provisioners.

The engine turns every exception raised during a pass into exactly one of
three outcomes: a bounded requeue (transient), a Failure condition
(permission, configuration, unclassified), or success (not-found during
deletion, which the provisioners handle themselves).
"""

from __future__ import annotations

from botocore.exceptions import ClientError


class OperatorError(Exception):
    """Base class for errors raised by the operator."""

    pass


class PermissionDeniedError(OperatorError):
    """Raised when a team is not allocated the credentials it references."""

    pass


class FatalConfigurationError(OperatorError):
    """Raised for input or cloud state that requires human correction.

    Duplicate tagged resources, an invalid CIDR and malformed specs all
    land here. Never retried before the next change or resync.
    """

    pass


class TransientError(OperatorError):
    """Raised when an operation should simply be retried later."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NotReadyError(OperatorError):
    """Raised when a dependency exists but has not finished provisioning."""

    pass


class PassCancelledError(OperatorError):
    """Raised when a reconciliation pass is cancelled or exceeds its deadline."""

    pass


# =============================================================================
# AWS error classification
# =============================================================================

NOT_FOUND_CODES = frozenset(
    {
        "ResourceNotFoundException",
        "NoSuchEntity",
        "InvalidVpcID.NotFound",
        "InvalidSubnetID.NotFound",
        "InvalidInternetGatewayID.NotFound",
        "InvalidRouteTableID.NotFound",
        "InvalidNatGatewayID.NotFound",
        "NatGatewayNotFound",
        "InvalidGroup.NotFound",
        "InvalidAllocationID.NotFound",
        "InvalidAssociationID.NotFound",
    }
)

TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServerException",
        "InternalError",
        "InternalFailure",
        "ResourceInUseException",
        "DependencyViolation",
        "IncorrectState",
        "InvalidNatGatewayID.NotFound",
        "InvalidRouteTableID.NotFound",
        "InvalidSubnetID.NotFound",
    }
)

FATAL_CODES = frozenset(
    {
        "UnauthorizedOperation",
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "UnrecognizedClientException",
        "InvalidVpcRange",
        "InvalidSubnet.Range",
        "InvalidSubnet.Conflict",
        "VpcLimitExceeded",
        "AddressLimitExceeded",
    }
)


def error_code(err: BaseException) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Code", ""))
    return ""


def error_message(err: BaseException) -> str:
    """Return the AWS error message of a ClientError, or str(err)."""
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Message", ""))
    return str(err)


def is_not_found(err: BaseException) -> bool:
    """Check if an error says the resource does not exist."""
    return error_code(err) in NOT_FOUND_CODES


def is_transient(err: BaseException) -> bool:
    """Check if an error is worth a bounded requeue rather than a Failure.

    Eventual consistency on freshly created EC2 resources surfaces as
    NotFound codes on dependent calls, so those count as transient too.
    """
    if isinstance(err, (TransientError, NotReadyError, PassCancelledError)):
        return True
    return error_code(err) in TRANSIENT_CODES


def is_role_not_assumable(err: BaseException) -> bool:
    """Check for EKS rejecting an IAM role that has not propagated yet."""
    if error_code(err) != "InvalidParameterException":
        return False
    message = error_message(err).lower()
    return "does not exist" in message or "could not be assumed" in message


def is_fatal(err: BaseException) -> bool:
    """Check if an error can only be resolved by human correction."""
    if isinstance(err, (PermissionDeniedError, FatalConfigurationError)):
        return True
    return error_code(err) in FATAL_CODES


def classify(err: BaseException) -> str:
    """Classify an error as "transient", "fatal" or "unknown"."""
    if is_transient(err):
        return "transient"
    if is_fatal(err):
        return "fatal"
    return "unknown"
