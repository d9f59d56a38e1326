"""
Tests for the Filter Engine

Covers category prefix rules, release-type and characteristic matching,
record selection and de-duplication, filter-set normalization and the two
meanings of the "*" OS selector.
"""

import pytest

from spmirror.engine.filters import (
    category_matches,
    filter_matches_query,
    group_by_platform,
    matches,
    merge_records,
    normalize_filter_set,
    os_matches_query,
    resolve_os_for_request,
    select_records,
)
from spmirror.engine.interfaces import ALL, CatalogRecord, Filter, OsSpec, SoftPaqId
from spmirror.exceptions import ConfigValidationError, UsageError

pytestmark = [pytest.mark.unit]


def _record(number, category="Driver - Network", release_type="Recommended", **flags):
    return CatalogRecord(
        id=SoftPaqId(number),
        name=f"Package {number}",
        category=category,
        version="1.0",
        vendor="HP",
        release_type=release_type,
        ssm_compliant=flags.get("ssm", False),
        dpb_compliant=flags.get("dpb", False),
        is_uwp=flags.get("uwp", False),
        url=f"https://ftp.hp.com/pub/softpaq/sp{number}.exe",
    )


class TestCategoryMatches:
    @pytest.mark.parametrize(
        "category",
        ["Driver - Network", "Driver - Audio", "Driver - Display", "driver - storage"],
    )
    def test_driver_takes_every_sub_category(self, category):
        assert category_matches(category, "Driver")

    def test_driver_does_not_take_driver_packs(self):
        assert not category_matches("Manageability - Driver Pack", "Driver")

    def test_sub_category_is_exclusive(self):
        assert category_matches("Driver - Network", "Driver - Network")
        assert not category_matches("Driver - Audio", "Driver - Network")

    def test_display_counts_as_graphics(self):
        assert category_matches("Driver - Display", "Driver - Graphics")
        assert category_matches("Driver - Graphics", "Driver - Graphics")

    def test_pack_categories(self):
        assert category_matches("Manageability - Driver Pack", "Driverpack")
        assert category_matches("Manageability - UWP Pack", "UWPPack")
        assert not category_matches("Manageability - Driver Pack", "Manageability")
        assert not category_matches("Manageability - UWP Pack", "Manageability")
        assert category_matches("Manageability - Software", "Manageability")

    def test_prefix_match_for_other_values(self):
        assert category_matches("BIOS", "BIOS")
        assert category_matches("BIOS - Utility", "BIOS")
        assert not category_matches("Firmware", "BIOS")

    def test_wildcard(self):
        assert category_matches("Anything", "*")


class TestMatches:
    def test_wildcard_filter_matches_everything(self):
        assert matches(_record(1, category="Software"), Filter.create("83b2"))

    def test_release_type_is_case_insensitive(self):
        flt = Filter.create("83b2", release_types=["critical"])
        assert matches(_record(1, release_type="Critical"), flt)
        assert not matches(_record(2, release_type="Routine"), flt)

    def test_characteristics_require_all_flags(self):
        flt = Filter.create("83b2", characteristics=["SSM", "DPB"])
        assert matches(_record(1, ssm=True, dpb=True), flt)
        assert not matches(_record(2, ssm=True, dpb=False), flt)

    def test_all_dimensions_must_hold(self):
        flt = Filter.create(
            "83b2", categories=["BIOS"], release_types=["Critical"], characteristics=["SSM"]
        )
        assert matches(_record(1, category="BIOS", release_type="Critical", ssm=True), flt)
        assert not matches(_record(2, category="BIOS", release_type="Routine", ssm=True), flt)

    def test_invalid_selection_value_is_rejected(self):
        with pytest.raises(ConfigValidationError):
            Filter.create("83b2", categories=["Printers"])

    def test_invalid_platform_is_rejected(self):
        with pytest.raises(ConfigValidationError):
            Filter.create("83b")


class TestSelection:
    def test_select_records_keeps_catalog_order_and_dedupes(self):
        records = [
            _record(3, category="BIOS"),
            _record(1),
            _record(1),
            _record(2, category="Driver - Audio"),
        ]
        selected = select_records(records, Filter.create("83b2", categories=["Driver"]))
        assert [r.id.number for r in selected] == [1, 2]

    def test_merge_records_keeps_first_occurrence(self):
        first = _record(1, category="BIOS")
        second = _record(1, category="Driver - Audio")
        merged = merge_records([first], [second, _record(2)])
        assert merged[0] is first
        assert [r.id.number for r in merged] == [1, 2]


class TestNormalizeFilterSet:
    def test_wildcard_dimension_widens_the_group(self):
        narrow = Filter.create("83b2", os="win10:2009", categories=["BIOS"])
        wide = Filter.create("83b2", os="win10:2009")
        result = normalize_filter_set([narrow, wide])
        assert result == [wide]

    def test_groups_are_per_platform(self):
        narrow = Filter.create("83b2", os="win10:2009", categories=["BIOS"])
        other = Filter.create("8549", os="win10:2009")
        result = normalize_filter_set([narrow, other])
        assert result == [narrow, other]

    def test_specific_dimensions_are_kept(self):
        a = Filter.create("83b2", os="win10:2009", categories=["BIOS"], release_types=["Critical"])
        b = Filter.create("83b2", os="win10:2009", categories=["Driver"])
        result = normalize_filter_set([a, b])
        assert result[0].categories == ("BIOS",)
        assert result[0].release_types == ALL
        assert result[1].categories == ("Driver",)

    def test_group_by_platform_preserves_first_seen_order(self):
        filters = [Filter.create("8549"), Filter.create("83b2"), Filter.create("8549", categories="BIOS")]
        groups = group_by_platform(filters)
        assert [platform for platform, _ in groups] == ["8549", "83b2"]
        assert len(groups[0][1]) == 2


class TestOsSelectors:
    def test_parse_forms(self):
        assert OsSpec.parse("*") == OsSpec("*", None)
        assert OsSpec.parse("WIN10") == OsSpec("win10", None)
        assert OsSpec.parse("win11:22h2") == OsSpec("win11", "22H2")
        assert OsSpec.parse("win10:*") == OsSpec("win10", "*")

    def test_parse_rejects_unknown_os(self):
        with pytest.raises(ConfigValidationError):
            OsSpec.parse("win7:sp1")

    def test_catalog_token(self):
        assert OsSpec("win10", "2009").catalog_token() == "10.0.2009"
        assert OsSpec("win11", "22H2").catalog_token() == "11.0.22h2"

    def test_request_wildcard_means_running_os(self):
        running = OsSpec("win11", "23H2")
        assert resolve_os_for_request(OsSpec("*"), lambda: running) == running

    def test_request_bare_os_takes_running_version(self):
        resolved = resolve_os_for_request(OsSpec("win10"), lambda: OsSpec("win10", "22H2"))
        assert resolved == OsSpec("win10", "22H2")

    def test_request_without_running_os_is_a_usage_error(self):
        with pytest.raises(UsageError):
            resolve_os_for_request(OsSpec("*"), None)

    def test_request_concrete_os_is_unchanged(self):
        concrete = OsSpec("win10", "2009")
        assert resolve_os_for_request(concrete, None) is concrete

    def test_search_wildcard_means_any_stored_os(self):
        assert os_matches_query(OsSpec("win10", "2009"), OsSpec("*"))
        assert os_matches_query(OsSpec("win11", "22H2"), OsSpec("*"))

    def test_search_any_version_of_one_os(self):
        assert os_matches_query(OsSpec("win10", "2009"), OsSpec("win10", "*"))
        assert not os_matches_query(OsSpec("win11", "22H2"), OsSpec("win10", "*"))
        assert not os_matches_query(OsSpec("win10", "1909"), OsSpec("win10", "2009"))

    def test_filter_query_is_permissive(self):
        stored = Filter.create("83b2", os="win10:2009", categories=["BIOS", "Driver"])
        assert filter_matches_query(stored, "83b2", OsSpec("*"))
        assert filter_matches_query(
            stored, "83b2", OsSpec("*"), categories=("Driver", "BIOS")
        )
        assert not filter_matches_query(stored, "83b2", OsSpec("*"), categories=("BIOS",))
        assert not filter_matches_query(stored, "8549", OsSpec("*"))
