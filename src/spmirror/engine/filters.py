"""
Filter Engine

Pure matching logic between declarative repository filters and catalog
records, plus the OS-selector semantics used when creating, searching and
normalizing filters.
"""

from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from spmirror.constants import (
    CATALOG_DISPLAY_CATEGORY,
    CATALOG_DRIVER_PACK_CATEGORY,
    CATALOG_DRIVER_PREFIX,
    CATALOG_UWP_PACK_CATEGORY,
    CATEGORY_DRIVER,
    CATEGORY_DRIVER_GRAPHICS,
    CATEGORY_DRIVERPACK,
    CATEGORY_MANAGEABILITY,
    CATEGORY_UWPPACK,
    CHARACTERISTIC_DPB,
    CHARACTERISTIC_SSM,
    CHARACTERISTIC_UWP,
    WILDCARD,
)
from spmirror.exceptions import UsageError

from .interfaces import ALL, CatalogRecord, Filter, OsSpec, Selection, is_wildcard

CurrentOsProvider = Callable[[], OsSpec]

_CHARACTERISTIC_FLAGS: Dict[str, Callable[[CatalogRecord], bool]] = {
    CHARACTERISTIC_SSM: lambda r: r.ssm_compliant,
    CHARACTERISTIC_DPB: lambda r: r.dpb_compliant,
    CHARACTERISTIC_UWP: lambda r: r.is_uwp,
}


def _starts_with(value: str, prefix: str) -> bool:
    return value.lower().startswith(prefix.lower())


def category_matches(record_category: str, filter_value: str) -> bool:
    """
    Decide whether a catalog category satisfies one filter category value.

    Categories are matched by prefix rules rather than string equality:
    - `Driver` takes every `Driver - *` sub-category.
    - `Driver - <Sub>` takes only its own sub-category; `Driver - Display`
      counts as `Driver - Graphics`.
    - `Driverpack` and `UWPPack` take the two Manageability packs, which are
      therefore excluded from the generic `Manageability` value.
    - Every other value matches categories that start with it.
    """
    category = (record_category or "").strip()
    if filter_value == WILDCARD:
        return True

    if filter_value == CATEGORY_DRIVER:
        return category.lower() == CATEGORY_DRIVER.lower() or _starts_with(
            category, CATALOG_DRIVER_PREFIX
        )

    if filter_value == CATEGORY_DRIVERPACK:
        return _starts_with(category, CATALOG_DRIVER_PACK_CATEGORY)

    if filter_value == CATEGORY_UWPPACK:
        return _starts_with(category, CATALOG_UWP_PACK_CATEGORY)

    if filter_value == CATEGORY_MANAGEABILITY:
        return (
            _starts_with(category, CATEGORY_MANAGEABILITY)
            and not _starts_with(category, CATALOG_DRIVER_PACK_CATEGORY)
            and not _starts_with(category, CATALOG_UWP_PACK_CATEGORY)
        )

    if filter_value == CATEGORY_DRIVER_GRAPHICS and _starts_with(
        category, CATALOG_DISPLAY_CATEGORY
    ):
        return True

    return _starts_with(category, filter_value)


def categories_match(record: CatalogRecord, categories: Selection) -> bool:
    if is_wildcard(categories):
        return True
    return any(category_matches(record.category, value) for value in categories)


def release_type_matches(record: CatalogRecord, release_types: Selection) -> bool:
    if is_wildcard(release_types):
        return True
    wanted = {r.lower() for r in release_types}
    return (record.release_type or "").strip().lower() in wanted


def characteristics_match(record: CatalogRecord, characteristics: Selection) -> bool:
    """Every requested characteristic must hold at once."""
    if is_wildcard(characteristics):
        return True
    return all(_CHARACTERISTIC_FLAGS[c](record) for c in characteristics)


def matches(record: CatalogRecord, flt: Filter) -> bool:
    """Whether `record` passes the category, release-type and characteristic dimensions of `flt`."""
    return (
        categories_match(record, flt.categories)
        and release_type_matches(record, flt.release_types)
        and characteristics_match(record, flt.characteristics)
    )


def select_records(
    records: Iterable[CatalogRecord], flt: Filter
) -> List[CatalogRecord]:
    """Return records matching `flt`, de-duplicated by id, in catalog order."""
    selected: "OrderedDict[int, CatalogRecord]" = OrderedDict()
    for record in records:
        if record.id.number in selected:
            continue
        if matches(record, flt):
            selected[record.id.number] = record
    return list(selected.values())


def merge_records(*groups: Iterable[CatalogRecord]) -> List[CatalogRecord]:
    """Concatenate record groups keeping the first occurrence of every id."""
    merged: "OrderedDict[int, CatalogRecord]" = OrderedDict()
    for group in groups:
        for record in group:
            merged.setdefault(record.id.number, record)
    return list(merged.values())


def normalize_filter_set(filters: Iterable[Filter]) -> List[Filter]:
    """
    Collapse per-platform filter groups before catalog scans.

    Filters are grouped by platform. Within a group, any dimension
    (categories, release types, characteristics) that one filter leaves as
    wildcard is widened to wildcard for every filter of the group, because the
    wider filter already selects whatever the narrower ones would. Exact
    duplicates produced by the widening are dropped; declared order is kept.
    """
    ordered = list(filters)
    wide: Dict[str, Dict[str, bool]] = {}
    for flt in ordered:
        dims = wide.setdefault(
            flt.platform,
            {"categories": False, "release_types": False, "characteristics": False},
        )
        dims["categories"] |= is_wildcard(flt.categories)
        dims["release_types"] |= is_wildcard(flt.release_types)
        dims["characteristics"] |= is_wildcard(flt.characteristics)

    result: List[Filter] = []
    seen = set()
    for flt in ordered:
        changes = {dim: ALL for dim, widen in wide[flt.platform].items() if widen}
        normalized = flt.replace(**changes) if changes else flt
        if normalized in seen:
            continue
        seen.add(normalized)
        result.append(normalized)
    return result


def resolve_os_for_request(
    os_spec: OsSpec, current_os: Optional[CurrentOsProvider]
) -> OsSpec:
    """
    Turn a stored OS selector into the concrete OS used to request a catalog.

    Here "*" means the OS of the machine evaluating the filter.

    Raises:
        UsageError: If the selector is not concrete and no current OS is known.
    """
    if os_spec.has_concrete_version:
        return os_spec

    if current_os is None:
        raise UsageError(
            f"Cannot resolve OS '{os_spec}' without knowing the running OS",
            details="Set CURRENT_OS in the configuration on non-Windows hosts",
        )
    running = current_os()
    if os_spec.is_wildcard:
        return running
    if running.name != os_spec.name or not running.has_concrete_version:
        raise UsageError(
            f"An OS version is required for '{os_spec.name}'",
            details=f"The running OS is {running}",
        )
    return OsSpec(os_spec.name, running.version)


def os_matches_query(stored: OsSpec, query: OsSpec) -> bool:
    """
    Search semantics for OS selectors, used when finding filters to remove.

    Here "*" in the query means any OS already on file, and `"<os>:*"` (or a
    bare OS name) means any version of that OS.
    """
    if query.is_wildcard:
        return True
    if stored.name != query.name:
        return False
    if query.version in (None, WILDCARD):
        return True
    return stored.version == query.version


def _selection_matches_query(stored: Selection, query: Selection) -> bool:
    if is_wildcard(query):
        return True
    return tuple(sorted(stored)) == tuple(sorted(query))


def filter_matches_query(
    stored: Filter,
    platform: str,
    os_query: OsSpec,
    categories: Selection = ALL,
    release_types: Selection = ALL,
    characteristics: Selection = ALL,
    prefer_ltsc: Optional[bool] = None,
) -> bool:
    """Permissive search used by filter removal; wildcard query dimensions match anything."""
    return (
        stored.platform == platform
        and os_matches_query(stored.os, os_query)
        and _selection_matches_query(stored.categories, categories)
        and _selection_matches_query(stored.release_types, release_types)
        and _selection_matches_query(stored.characteristics, characteristics)
        and (prefer_ltsc is None or stored.prefer_ltsc == prefer_ltsc)
    )


def group_by_platform(filters: Iterable[Filter]) -> List[Tuple[str, List[Filter]]]:
    """Group filters by platform preserving first-seen platform order."""
    groups: "OrderedDict[str, List[Filter]]" = OrderedDict()
    for flt in filters:
        groups.setdefault(flt.platform, []).append(flt)
    return list(groups.items())
