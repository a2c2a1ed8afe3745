"""Engagement metric sets computed from product analytics events."""

from __future__ import annotations

import typing as typ

from cairn.silver.metrics import MetricCatalog, MetricKind, MetricSetSpec, MetricSpec

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from cairn.silver.metrics import AttributePredicate

PORTFOLIO_VIEW = "Viewed Portfolio Details"
CREATOR_PROFILE_VIEW = "Viewed Creator Profile"
COPY_INITIATED = "DubAutoCopyInitiated"
SUBSCRIPTION_CREATED = "SubscriptionCreated"
PAYWALL_VIEW = "Viewed Creator Paywall"
DEPOSIT_INITIATED = "AchTransferInitiated"
BANK_ACCOUNT_LINKED = "BankAccountLinked"
APP_SESSION = "$ae_session"
STRIPE_MODAL_VIEW = "Viewed Stripe Modal"
CREATOR_CARD_TAP = "Tapped Creator Card"
PORTFOLIO_CARD_TAP = "Tapped Portfolio Card"

CREATOR_TYPE_ATTRIBUTE = "creatorType"
PREMIUM_CREATOR_TYPE = "premiumCreator"
PORTFOLIO_TICKER_ATTRIBUTE = "portfolioTicker"
CREATOR_ID_ATTRIBUTE = "creatorId"
DEPOSIT_AMOUNT_ATTRIBUTE = "amount"

USER_ENGAGEMENT = "user_engagement"
PORTFOLIO_ENGAGEMENT = "portfolio_engagement"
CREATOR_ENGAGEMENT = "creator_engagement"


def is_premium(attributes: cabc.Mapping[str, typ.Any]) -> bool:
    """Return True when the event concerns a premium creator."""
    return attributes.get(CREATOR_TYPE_ATTRIBUTE) == PREMIUM_CREATOR_TYPE


def is_regular(attributes: cabc.Mapping[str, typ.Any]) -> bool:
    """Return True when the event concerns a non-premium creator."""
    return not is_premium(attributes)


def _count(
    name: str, *events: str, predicate: AttributePredicate | None = None
) -> MetricSpec:
    return MetricSpec(name, MetricKind.COUNT, frozenset(events), predicate=predicate)


def _flag(name: str, *events: str) -> MetricSpec:
    return MetricSpec(name, MetricKind.FLAG, frozenset(events))


USER_ENGAGEMENT_SET = MetricSetSpec(
    name=USER_ENGAGEMENT,
    metrics=(
        _count("total_copies", COPY_INITIATED),
        _count("total_regular_copies", COPY_INITIATED, predicate=is_regular),
        _count("total_premium_copies", COPY_INITIATED, predicate=is_premium),
        _count("regular_pdp_views", PORTFOLIO_VIEW, predicate=is_regular),
        _count("premium_pdp_views", PORTFOLIO_VIEW, predicate=is_premium),
        _count(
            "regular_creator_profile_views",
            CREATOR_PROFILE_VIEW,
            predicate=is_regular,
        ),
        _count(
            "premium_creator_profile_views",
            CREATOR_PROFILE_VIEW,
            predicate=is_premium,
        ),
        _count("paywall_views", PAYWALL_VIEW),
        _count("total_subscriptions", SUBSCRIPTION_CREATED),
        _count("total_deposits", DEPOSIT_INITIATED),
        MetricSpec(
            "total_deposit_amount",
            MetricKind.SUM,
            frozenset({DEPOSIT_INITIATED}),
            attribute=DEPOSIT_AMOUNT_ATTRIBUTE,
        ),
        _count("app_sessions", APP_SESSION),
        _count("stripe_modal_views", STRIPE_MODAL_VIEW),
        _count("creator_card_taps", CREATOR_CARD_TAP),
        _count("portfolio_card_taps", PORTFOLIO_CARD_TAP),
        _flag("did_copy", COPY_INITIATED),
        _flag("did_subscribe", SUBSCRIPTION_CREATED),
        _flag("linked_bank_account", BANK_ACCOUNT_LINKED),
    ),
)

PORTFOLIO_ENGAGEMENT_SET = MetricSetSpec(
    name=PORTFOLIO_ENGAGEMENT,
    metrics=(
        _count("pdp_view_count", PORTFOLIO_VIEW),
        _count("portfolio_card_taps", PORTFOLIO_CARD_TAP),
        _count("copy_count", COPY_INITIATED),
        _flag("did_copy", COPY_INITIATED),
    ),
    dimensions=(PORTFOLIO_TICKER_ATTRIBUTE, CREATOR_ID_ATTRIBUTE),
)

CREATOR_ENGAGEMENT_SET = MetricSetSpec(
    name=CREATOR_ENGAGEMENT,
    metrics=(
        _count("profile_view_count", CREATOR_PROFILE_VIEW),
        _count("paywall_view_count", PAYWALL_VIEW),
        _count("creator_card_taps", CREATOR_CARD_TAP),
        _count("subscription_count", SUBSCRIPTION_CREATED),
        _count("copy_count", COPY_INITIATED),
        _flag("did_subscribe", SUBSCRIPTION_CREATED),
        _flag("did_copy", COPY_INITIATED),
    ),
    dimensions=(CREATOR_ID_ATTRIBUTE,),
)


def build_engagement_catalog() -> MetricCatalog:
    """Return the metric sets maintained for product engagement."""
    return MetricCatalog(
        (USER_ENGAGEMENT_SET, PORTFOLIO_ENGAGEMENT_SET, CREATOR_ENGAGEMENT_SET)
    )
