"""AWS API Mock for Integration Testing.

In-memory fakes for the EC2, EKS, IAM and STS calls the operator makes,
so reconciliation can be exercised end to end without an AWS account.

Key Features:
- Resources stored as the dicts boto3 returns, with tag and field filters
- NAT gateway, cluster and node group state machines advanced by the test
- DependencyViolation on out-of-order deletes
- Call counters for idempotence assertions

Usage:
    from aws_mock import MockAWSContext

    with MockAWSContext() as aws:
        reconciler.reconcile(key)
        assert aws.ec2.mutating_calls == 0
"""

from .context import MockAWSContext, MockSession
from .ec2 import MockEC2Client
from .eks import MockEKSClient
from .errors import client_error
from .iam import MockIAMClient
from .sts import MockSTSClient

__all__ = [
    "MockAWSContext",
    "MockEC2Client",
    "MockEKSClient",
    "MockIAMClient",
    "MockSTSClient",
    "MockSession",
    "client_error",
]
