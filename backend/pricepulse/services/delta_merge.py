"""Delta merge of a cached result set against a freshly scraped one.

Pure computation: nothing here touches the cache or the store. Items are
plain dicts, either validated product dumps (``price_amount``,
``image_url``) or raw adapter records (``price``, ``image``).
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import structlog

from pricepulse.config import Settings
from pricepulse.scrapers.utils.normalizer import clean_price_string

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Field groups
# ---------------------------------------------------------------------------
PRICE_FIELDS = ("price_amount", "price")
NAME_FIELDS = ("product_name", "name", "title")
IMAGE_FIELDS = ("image_url", "image")
# Fields the fresh side always wins on when prioritize_new_prices is set
PRIORITY_FIELDS = PRICE_FIELDS + IMAGE_FIELDS + ("url",)
# Bookkeeping that never counts as a change
IGNORED_FIELDS = {"last_checked_at", "_removed"}

REMOVED_FLAG = "_removed"

Item = Dict[str, Any]


def _first(item: Mapping[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = item.get(name)
        if value is not None and value != "":
            return value
    return None


def item_price(item: Mapping[str, Any]) -> Optional[Decimal]:
    """Positive price of an item, whichever field carries it."""
    return clean_price_string(_first(item, PRICE_FIELDS))


def product_key(item: Mapping[str, Any]) -> Optional[str]:
    """Identity of an item within a result set.

    ``site:scheme://host/path`` when the item has a URL, otherwise
    ``site:lowercased trimmed name``; None when neither is available.
    """
    site = item.get("site") or "unknown"
    url = item.get("url")
    if url:
        try:
            parts = urlsplit(str(url).strip())
        except ValueError:
            return f"{site}:{url}"
        if parts.scheme and parts.netloc:
            return f"{site}:{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"
        return f"{site}:{url}"

    name = _first(item, NAME_FIELDS)
    if name:
        return f"{site}:{str(name).strip().lower()}"
    return None


@dataclass
class MergeOptions:
    """Knobs for merge_results.

    Attributes:
        keep_removed_items: Retain cached items missing from the fresh set
        prioritize_new_prices: Fresh price/url/image always win
        remove_stale_threshold: Max removal ratio (0..1) at which removed
            items are still retained; 0 means always retain
        price_change_threshold: Relative price move counted as significant
        removal_ratio_threshold: Removed share of the cache counted as
            significant
    """

    keep_removed_items: bool = False
    prioritize_new_prices: bool = True
    remove_stale_threshold: float = 0.0
    price_change_threshold: float = 0.05
    removal_ratio_threshold: float = 0.10

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "MergeOptions":
        values = {
            "price_change_threshold": settings.DELTA_PRICE_CHANGE_THRESHOLD,
            "removal_ratio_threshold": settings.DELTA_REMOVAL_RATIO_THRESHOLD,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class PriceChange:
    key: str
    old_price: Optional[Decimal]
    new_price: Optional[Decimal]

    @property
    def ratio(self) -> Optional[float]:
        if self.old_price is None or self.new_price is None or self.old_price == 0:
            return None
        return float(abs(self.new_price - self.old_price) / self.old_price)

    def is_significant(self, threshold: float) -> bool:
        if self.old_price == self.new_price:
            return False
        ratio = self.ratio
        # Gaining or losing a price altogether is always significant
        return ratio is None or ratio > threshold


@dataclass
class DeltaComparison:
    """Result of comparing a cached set to a fresh set."""

    new_items: List[Item] = field(default_factory=list)
    updated_items: List[Item] = field(default_factory=list)
    removed_items: List[Item] = field(default_factory=list)
    unchanged_items: List[Item] = field(default_factory=list)
    price_changes: List[PriceChange] = field(default_factory=list)
    merged: List[Item] = field(default_factory=list)
    has_changes: bool = False
    reason: str = ""
    removal_ratio: float = 0.0


def _values_differ(name: str, old: Any, new: Any) -> bool:
    if name in PRICE_FIELDS:
        return clean_price_string(old) != clean_price_string(new)
    return old != new


def _differs(cached: Mapping[str, Any], fresh: Mapping[str, Any]) -> bool:
    for name, value in fresh.items():
        if name in IGNORED_FIELDS or value is None:
            continue
        if _values_differ(name, cached.get(name), value):
            return True
    return False


def _merge_item(cached: Mapping[str, Any], fresh: Mapping[str, Any], prioritize_new_prices: bool) -> Item:
    merged: Item = dict(cached)
    for name, value in fresh.items():
        if value is None:
            continue
        if not prioritize_new_prices and name in PRIORITY_FIELDS and cached.get(name) is not None:
            continue
        merged[name] = value
    merged.pop(REMOVED_FLAG, None)
    return merged


def _sort_key(item: Mapping[str, Any]) -> Tuple[int, int, Decimal]:
    price = item_price(item)
    return (
        1 if item.get(REMOVED_FLAG) else 0,
        1 if price is None else 0,
        price if price is not None else Decimal(0),
    )


def sort_by_price(items: List[Item]) -> List[Item]:
    """Ascending price; missing prices, then removed items, last."""
    return sorted(items, key=_sort_key)


def merge_results(
    cached_set: Optional[List[Mapping[str, Any]]],
    fresh_set: Optional[List[Mapping[str, Any]]],
    options: Optional[MergeOptions] = None,
) -> DeltaComparison:
    """Partition fresh vs cached items and build the merged set.

    Args:
        cached_set: Previously served items
        fresh_set: Just-scraped items
        options: Merge and rebuild-decision settings

    Returns:
        DeltaComparison with new/updated/removed partitions, the merged
        set sorted by price, and the rebuild decision in has_changes
    """
    options = options or MergeOptions()
    cached = [dict(item) for item in (cached_set or [])]
    fresh = [dict(item) for item in (fresh_set or [])]
    result = DeltaComparison()

    cached_by_key: Dict[str, Item] = {}
    for item in cached:
        key = product_key(item)
        if key and key not in cached_by_key:
            cached_by_key[key] = item

    matched_keys = set()
    seen_fresh_keys = set()
    merged: List[Item] = []

    for item in fresh:
        key = product_key(item)
        if key is None:
            result.new_items.append(item)
            merged.append(item)
            continue
        if key in seen_fresh_keys:
            logger.debug("delta_duplicate_fresh_item", key=key)
            continue
        seen_fresh_keys.add(key)

        cached_item = cached_by_key.get(key)
        if cached_item is None:
            result.new_items.append(item)
            merged.append(item)
            continue

        matched_keys.add(key)
        merged_item = _merge_item(cached_item, item, options.prioritize_new_prices)
        merged.append(merged_item)

        if _differs(cached_item, item):
            result.updated_items.append(merged_item)
            old_price, new_price = item_price(cached_item), item_price(item)
            if old_price != new_price:
                result.price_changes.append(PriceChange(key, old_price, new_price))
        else:
            result.unchanged_items.append(merged_item)

    result.removed_items = [item for key, item in cached_by_key.items() if key not in matched_keys]
    result.removal_ratio = len(result.removed_items) / len(cached) if cached else 0.0

    if options.keep_removed_items and result.removed_items:
        threshold = options.remove_stale_threshold
        if threshold == 0 or result.removal_ratio <= threshold:
            merged.extend({**item, REMOVED_FLAG: True} for item in result.removed_items)
        else:
            logger.debug(
                "delta_dropping_removed_items",
                count=len(result.removed_items),
                removal_ratio=round(result.removal_ratio, 4),
                threshold=threshold,
            )

    result.merged = sort_by_price(merged)
    result.has_changes, result.reason = _rebuild_decision(result, options)

    logger.debug(
        "delta_merge_completed",
        cached_count=len(cached),
        fresh_count=len(fresh),
        merged_count=len(result.merged),
        new=len(result.new_items),
        updated=len(result.updated_items),
        removed=len(result.removed_items),
        has_changes=result.has_changes,
    )
    return result


def _rebuild_decision(result: DeltaComparison, options: MergeOptions) -> Tuple[bool, str]:
    if result.new_items:
        return True, f"found {len(result.new_items)} new item(s)"

    significant = [c for c in result.price_changes if c.is_significant(options.price_change_threshold)]
    if significant:
        return True, f"found {len(significant)} item(s) with significant price changes"

    if result.removal_ratio > options.removal_ratio_threshold:
        return True, (
            f"found {len(result.removed_items)} removed item(s) "
            f"({result.removal_ratio:.0%} of cache)"
        )

    return False, "no significant changes detected"


def should_rebuild(
    cached_set: Optional[List[Mapping[str, Any]]],
    fresh_set: Optional[List[Mapping[str, Any]]],
    options: Optional[MergeOptions] = None,
) -> Tuple[bool, str]:
    """Whether the fresh set differs enough to rewrite the cache entry.

    Returns:
        (decision, human-readable reason)
    """
    comparison = merge_results(cached_set, fresh_set, options)
    return comparison.has_changes, comparison.reason
