"""Tier feature matrix and access checks.

Three tiers control access to dating features:

* **Discover** -- Free tier: basic messaging and discovery, read-only forum.
* **Connect** -- Adds audio calls, voice messages, advanced filters and
  travel mode.
* **Community** -- Full feature set including video calls, unlimited likes,
  incognito mode and AI coaching.

Numeric limits use ``-1`` for "unlimited".
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from billing_core.errors import InvalidRequestError
from billing_core.models.enums import LOWEST_TIER, SubscriptionStatus, Tier, coerce_tier, tier_rank

UNLIMITED = -1


class FeatureMatrix(BaseModel):
    """Feature permissions and limits granted by one tier."""

    model_config = ConfigDict(frozen=True)

    # Calls
    can_make_video_calls: bool
    can_make_audio_calls: bool
    max_call_duration: int
    max_video_quality: Literal["sd", "hd", "fhd"]
    has_virtual_backgrounds: bool
    has_beauty_filters: bool
    has_ar_effects: bool
    has_call_recording: bool
    has_screen_sharing: bool
    has_group_calls: bool
    max_group_participants: int
    has_call_scheduling: bool

    # Messaging
    daily_unmatched_messages: int
    unlimited_unmatched_messages: bool
    voice_messages: bool
    video_messages: bool
    message_reactions: bool
    read_receipts: bool

    # Discovery
    daily_likes: int
    unlimited_likes: bool
    see_who_liked_you: bool
    advanced_filters: bool
    travel_mode: bool
    incognito_mode: bool

    # Profile
    max_photos: int
    video_intro: bool
    profile_boost_count: int
    super_like_allowance: int
    profile_analytics: bool

    # Community
    group_audio_rooms: bool
    forum_access: Literal["none", "read", "write", "vip"]
    virtual_events: bool
    ai_coaching: bool
    community_matchmaking: bool

    # Priority
    search_priority: Literal["normal", "high", "ultra"]
    message_priority: Literal["normal", "high", "vip"]
    support_priority: Literal["normal", "priority", "vip"]


_DISCOVER = FeatureMatrix(
    can_make_video_calls=False,
    can_make_audio_calls=False,
    max_call_duration=0,
    max_video_quality="sd",
    has_virtual_backgrounds=False,
    has_beauty_filters=False,
    has_ar_effects=False,
    has_call_recording=False,
    has_screen_sharing=False,
    has_group_calls=False,
    max_group_participants=0,
    has_call_scheduling=False,
    daily_unmatched_messages=5,
    unlimited_unmatched_messages=False,
    voice_messages=False,
    video_messages=False,
    message_reactions=False,
    read_receipts=False,
    daily_likes=10,
    unlimited_likes=False,
    see_who_liked_you=False,
    advanced_filters=False,
    travel_mode=False,
    incognito_mode=False,
    max_photos=3,
    video_intro=False,
    profile_boost_count=0,
    super_like_allowance=1,
    profile_analytics=False,
    group_audio_rooms=False,
    forum_access="read",
    virtual_events=False,
    ai_coaching=False,
    community_matchmaking=False,
    search_priority="normal",
    message_priority="normal",
    support_priority="normal",
)

_CONNECT = FeatureMatrix(
    can_make_video_calls=False,
    can_make_audio_calls=True,
    max_call_duration=30,
    max_video_quality="hd",
    has_virtual_backgrounds=False,
    has_beauty_filters=False,
    has_ar_effects=False,
    has_call_recording=False,
    has_screen_sharing=False,
    has_group_calls=False,
    max_group_participants=0,
    has_call_scheduling=False,
    daily_unmatched_messages=25,
    unlimited_unmatched_messages=False,
    voice_messages=True,
    video_messages=False,
    message_reactions=True,
    read_receipts=True,
    daily_likes=50,
    unlimited_likes=False,
    see_who_liked_you=True,
    advanced_filters=True,
    travel_mode=True,
    incognito_mode=False,
    max_photos=6,
    video_intro=False,
    profile_boost_count=3,
    super_like_allowance=3,
    profile_analytics=True,
    group_audio_rooms=True,
    forum_access="write",
    virtual_events=True,
    ai_coaching=False,
    community_matchmaking=True,
    search_priority="high",
    message_priority="high",
    support_priority="priority",
)

_COMMUNITY = FeatureMatrix(
    can_make_video_calls=True,
    can_make_audio_calls=True,
    max_call_duration=120,
    max_video_quality="fhd",
    has_virtual_backgrounds=True,
    has_beauty_filters=True,
    has_ar_effects=True,
    has_call_recording=True,
    has_screen_sharing=True,
    has_group_calls=True,
    max_group_participants=8,
    has_call_scheduling=True,
    daily_unmatched_messages=UNLIMITED,
    unlimited_unmatched_messages=True,
    voice_messages=True,
    video_messages=True,
    message_reactions=True,
    read_receipts=True,
    daily_likes=UNLIMITED,
    unlimited_likes=True,
    see_who_liked_you=True,
    advanced_filters=True,
    travel_mode=True,
    incognito_mode=True,
    max_photos=10,
    video_intro=True,
    profile_boost_count=10,
    super_like_allowance=5,
    profile_analytics=True,
    group_audio_rooms=True,
    forum_access="vip",
    virtual_events=True,
    ai_coaching=True,
    community_matchmaking=True,
    search_priority="ultra",
    message_priority="vip",
    support_priority="vip",
)

TIER_MATRIX: dict[Tier, FeatureMatrix] = {
    Tier.DISCOVER: _DISCOVER,
    Tier.CONNECT: _CONNECT,
    Tier.COMMUNITY: _COMMUNITY,
}

FEATURE_NAMES: tuple[str, ...] = tuple(FeatureMatrix.model_fields)

# Human-readable labels used in denial reasons.
FEATURE_LABELS: dict[str, str] = {
    "has_screen_sharing": "Screen sharing",
    "has_virtual_backgrounds": "Virtual backgrounds",
    "has_beauty_filters": "Beauty filters",
    "has_ar_effects": "AR effects",
    "has_call_recording": "Call recording",
    "has_group_calls": "Group calls",
    "has_call_scheduling": "Call scheduling",
    "can_make_video_calls": "Video calls",
    "can_make_audio_calls": "Audio calls",
    "voice_messages": "Voice messages",
    "video_messages": "Video messages",
    "message_reactions": "Message reactions",
    "read_receipts": "Read receipts",
    "see_who_liked_you": "See who liked you",
    "advanced_filters": "Advanced filters",
    "travel_mode": "Travel mode",
    "incognito_mode": "Incognito mode",
    "video_intro": "Video intro",
    "profile_analytics": "Profile analytics",
    "group_audio_rooms": "Group audio rooms",
    "virtual_events": "Virtual events",
    "ai_coaching": "AI coaching",
    "community_matchmaking": "Community matchmaking",
}


class Allowed(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: Literal[True] = True
    time_remaining: int | None = None


class Denied(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: Literal[False] = False
    reason: str
    upgrade_required: bool = False
    required_tier: Tier | None = None


AccessDecision = Allowed | Denied


def resolve(tier: Tier | str | None) -> FeatureMatrix:
    """Return the feature matrix for *tier*.

    Unrecognized values resolve to the lowest tier's matrix.
    """
    return TIER_MATRIX.get(coerce_tier(tier), TIER_MATRIX[LOWEST_TIER])


def _is_granted(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    return value != "none"


def get_required_tier(feature_name: str) -> Tier | None:
    """Return the lowest tier that grants *feature_name*, if any does."""
    for tier in sorted(TIER_MATRIX, key=tier_rank):
        if _is_granted(getattr(TIER_MATRIX[tier], feature_name)):
            return tier
    return None


def validate_access(tier: Tier | str | None, feature_name: str) -> AccessDecision:
    """Decide whether *tier* may use *feature_name*.

    Parameters
    ----------
    tier:
        The user's effective tier.
    feature_name:
        A :class:`FeatureMatrix` field name, e.g. ``"travel_mode"``.

    Returns
    -------
    Allowed | Denied
        ``Denied`` carries a reason naming the feature and whether an
        upgrade would grant it.

    Raises
    ------
    InvalidRequestError
        If *feature_name* is not a known feature.
    """
    if feature_name not in FeatureMatrix.model_fields:
        raise InvalidRequestError(f"Unknown feature: {feature_name}")

    if _is_granted(getattr(resolve(tier), feature_name)):
        return Allowed()

    required = get_required_tier(feature_name)
    upgrade = required is not None and tier_rank(required) > tier_rank(coerce_tier(tier))
    label = FEATURE_LABELS.get(feature_name, "This feature")
    return Denied(
        reason=f"{label} requires a higher subscription tier",
        upgrade_required=upgrade,
        required_tier=required if upgrade else None,
    )


_CALL_TYPE_RULES: dict[str, tuple[str, str]] = {
    "audio": ("can_make_audio_calls", "Audio calls require Connect subscription or higher"),
    "video": ("can_make_video_calls", "Video calls require Community subscription"),
    "screen_share": ("has_screen_sharing", "Screen sharing requires Community subscription"),
}


def validate_call_access(tier: Tier | str | None, call_type: str) -> AccessDecision:
    """Check whether *tier* may start a call of *call_type*."""
    rule = _CALL_TYPE_RULES.get(call_type)
    if rule is None:
        raise InvalidRequestError(f"Unknown call type: {call_type}")
    field, reason = rule
    if getattr(resolve(tier), field):
        return Allowed()
    required = get_required_tier(field)
    return Denied(reason=reason, upgrade_required=True, required_tier=required)


def validate_call_duration(tier: Tier | str | None, current_minutes: int) -> AccessDecision:
    """Check a running call against the tier's duration limit."""
    limit = resolve(tier).max_call_duration
    if limit == 0:
        return Denied(reason="Calls not available on your current plan", upgrade_required=True)
    if current_minutes >= limit:
        return Denied(reason=f"Call duration limit ({limit} minutes) reached")
    return Allowed(time_remaining=limit - current_minutes)


def has_tier_access(current: Tier | str | None, required: Tier | str) -> bool:
    """Return ``True`` when *current* is at or above *required*."""
    return tier_rank(coerce_tier(current)) >= tier_rank(required)


def effective_tier(
    tier: Tier | str | None,
    status: SubscriptionStatus | str,
    current_period_end: datetime | None,
    *,
    now: datetime | None = None,
) -> Tier:
    """Return the tier a subscription currently entitles its owner to.

    ``ACTIVE`` keeps the stored tier.  ``BILLING_RETRY`` keeps it only
    while the paid period has not ended.  Every other status collapses to
    the lowest tier.
    """
    now = now or datetime.now(UTC)
    status = SubscriptionStatus(status)
    if status == SubscriptionStatus.ACTIVE:
        return coerce_tier(tier)
    if status == SubscriptionStatus.BILLING_RETRY:
        if current_period_end is not None and current_period_end > now:
            return coerce_tier(tier)
    return LOWEST_TIER
