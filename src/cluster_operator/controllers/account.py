"""Verification of static AccountCredentials."""

from __future__ import annotations

import logging
from typing import cast

from botocore.exceptions import ClientError

from ..engine import MARK_DELETING, KindHandler, ReconcileContext, ReconcileResult, Step
from ..errors import FatalConfigurationError
from ..models import AccountCredentials, Status

logger = logging.getLogger(__name__)

FINALIZER = "accountcredentials.cluster-operator.io"

COMPONENT_VERIFICATION = "Credentials Verification"


def ensure_credentials_verified(ctx: ReconcileContext) -> ReconcileResult:
    """Check the keys work and belong to the declared account."""
    account = cast(AccountCredentials, ctx.resource)

    try:
        identity = ctx.aws().sts.get_caller_identity()
    except ClientError:
        account.status.verified = False
        raise

    if identity.get("Account") != account.spec.account_id:
        account.status.verified = False
        raise FatalConfigurationError(
            f"credentials belong to account {identity.get('Account')}, "
            f"expected {account.spec.account_id}"
        )

    account.status.verified = True
    account.status.caller_arn = identity.get("Arn", "")
    logger.info("Credentials verified", extra={**ctx.log_fields, "caller_arn": account.status.caller_arn})
    ctx.set_component(Status.SUCCESS, "Credentials have been verified")
    return ReconcileResult.done()


HANDLER = KindHandler(
    kind="AccountCredentials",
    finalizer=FINALIZER,
    ensure_steps=(
        Step("ensure-credentials-verified", ensure_credentials_verified, COMPONENT_VERIFICATION),
    ),
    delete_steps=(MARK_DELETING,),
    credentials_ref=lambda r: r.ownership() if isinstance(r, AccountCredentials) else None,
)
