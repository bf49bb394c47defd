"""
Premium gating.

A model is premium unless it is on the free list. Premium access needs an
active subscription or the user's own provider key; tools flagged
requires_premium are hidden from everyone else.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .auth import Principal
from .models.tools import Tool

logger = logging.getLogger(__name__)

PREMIUM_REQUIRED = "premium_required"

FREE_MODELS = frozenset({
    "gpt-3.5-turbo",
    "gpt-3.5",
    "gemini-pro",
    "gemini-1.5-pro",
    "gemini-flash",
    "gemini-1.5-flash",
    "gemini-1.5-flash-8b",
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-2.5-flash-preview",
    "gemini-2.5-flash-preview-05-20",
    "gemini-2.5-pro-preview",
    "gemini-2.5-pro-preview-06-05",
    "text-embedding-004",
    "gemini-embedding-exp-03-07",
    "aqa",
    "gemma-3",
    "gemma-3n",
})


def is_premium(model_id: str) -> bool:
    return model_id not in FREE_MODELS


@dataclass(frozen=True)
class Decision:
    """
    Outcome of an entitlement check.

    Attributes:
        allowed: Request may proceed
        billable: Usage is charged to the user's credits
        entitled: User has premium access (subscriber, own key or service)
        uses_custom_key: Request is served with the user's own provider key
        reason: Machine-readable denial reason
    """
    allowed: bool
    billable: bool
    entitled: bool
    uses_custom_key: bool = False
    reason: Optional[str] = None


def uses_custom_key(principal: Principal, custom_api_key: Optional[str]) -> bool:
    """A custom key counts only when the account has one and the request carries it."""
    return principal.has_custom_key and bool(custom_api_key and custom_api_key.strip())


def authorize(
    principal: Principal,
    model_id: str,
    custom_api_key: Optional[str] = None,
) -> Decision:
    """
    Decide whether a principal may use a model and whether usage is billed.

    Args:
        principal: Authenticated caller
        model_id: Requested model
        custom_api_key: Provider key supplied with the request

    Returns:
        Decision; denied with PREMIUM_REQUIRED for a premium model without
        subscription or own key
    """
    own_key = uses_custom_key(principal, custom_api_key)

    if principal.is_service:
        return Decision(allowed=True, billable=False, entitled=True, uses_custom_key=own_key)

    premium = is_premium(model_id)
    entitled = principal.is_subscriber or own_key

    if premium and not entitled:
        logger.info(f"Denied premium model {model_id} for user {principal.user_id}")
        return Decision(
            allowed=False,
            billable=False,
            entitled=False,
            reason=PREMIUM_REQUIRED,
        )

    # Subscribers get premium models included; free models are always metered
    billable = not own_key and not (premium and principal.is_subscriber)
    return Decision(allowed=True, billable=billable, entitled=entitled, uses_custom_key=own_key)


def filter_tools(tools: Iterable[Tool], entitled: bool) -> List[Tool]:
    """Drop premium tools for callers without premium access."""
    if entitled:
        return list(tools)
    return [t for t in tools if not t.requires_premium]
