"""
Ad eligibility and placement-based selection.

``eligible_ads`` filters ad documents for a slot; ``select_ad`` then ranks them
through the active, targeting-matched placements that reference them.
"""

from datetime import datetime
from typing import Iterable, List, Optional


def is_ad_free(user: Optional[dict]) -> bool:
    """Anyone on a plan other than FREE gets no ads."""
    if not user:
        return False
    return (user.get("plan") or "FREE").upper() != "FREE"


def is_eligible(ad: dict, placement: Optional[str], now: datetime) -> bool:
    if ad.get("status") != "ACTIVE" or not ad.get("approved") or ad.get("is_deleted"):
        return False
    if placement and placement not in (ad.get("placements") or []):
        return False
    start_at, end_at = ad.get("start_at"), ad.get("end_at")
    if start_at and now < start_at:
        return False
    if end_at and now > end_at:
        return False
    remaining = ad.get("remaining_budget")
    if remaining is not None and remaining <= 0:
        return False
    return True


def eligible_ads(ads: Iterable[dict], placement: Optional[str], now: datetime) -> List[dict]:
    return [ad for ad in ads if is_eligible(ad, placement, now)]


def _matches(targets: Optional[List[str]], value: Optional[str]) -> bool:
    if not targets:
        return True
    return value is not None and value in targets


def matching_placements(placements: Iterable[dict], user_type: Optional[str], device_type: Optional[str]) -> List[dict]:
    return [
        p for p in placements
        if p.get("is_active", False)
        and _matches(p.get("user_types"), user_type)
        and _matches(p.get("device_types"), device_type)
    ]


def select_ad(
    ads: Iterable[dict],
    placements: Iterable[dict],
    user_type: Optional[str] = None,
    device_type: Optional[str] = None,
) -> Optional[dict]:
    """
    Pick the ad with the highest placement priority.

    An ad takes the best priority among the matching placements that list it;
    ads no matching placement lists are dropped. Ties go to the newest ad.
    With no placements configured at all, the newest ad wins.
    """
    ads = list(ads)
    placements = list(placements)
    if not placements:
        return max(ads, key=lambda ad: ad.get("created_at") or datetime.min, default=None)

    priority_by_ad = {}
    for placement in matching_placements(placements, user_type, device_type):
        for ad_id in placement.get("ad_ids") or []:
            priority = placement.get("priority", 0)
            if priority > priority_by_ad.get(ad_id, float("-inf")):
                priority_by_ad[ad_id] = priority

    candidates = [ad for ad in ads if str(ad["_id"]) in priority_by_ad]
    if not candidates:
        return None

    candidates.sort(
        key=lambda ad: (priority_by_ad[str(ad["_id"])], ad.get("created_at") or datetime.min),
        reverse=True,
    )
    return candidates[0]
