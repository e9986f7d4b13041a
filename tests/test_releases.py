from conftest import local_ts
from fleetdeploy.modules.releases import (
    Release,
    find_releases,
    format_release_name,
    parse_release_name,
    previous_and_last,
)


def test_release_name_uses_local_time():
    assert format_release_name("shop", local_ts("2024-03-15 14:30:05")) == "shop_2024-03-15_143005"


def test_parse_release_name():
    release = parse_release_name("shop", "shop_2024-03-15_143005")
    assert release == Release(timestamp=local_ts("2024-03-15 14:30:05"), name="shop_2024-03-15_143005")


def test_parse_rejects_foreign_directories():
    assert parse_release_name("shop", "production") is None
    assert parse_release_name("shop", "shop_2024-03-15_143005.tmp") is None
    assert parse_release_name("shop", "webshop_2024-03-15_143005") is None
    assert parse_release_name("shop", "shop_2024-02-30_143005") is None
    assert parse_release_name("shop.v2", "shopxv2_2024-03-15_143005") is None


def test_find_releases_sorts_oldest_first():
    listing = [
        "production",
        "shop_2024-03-15_143005",
        "shop_2023-12-01_090000",
        "data",
        "shop_2024-01-20_120000",
    ]
    assert [release.name for release in find_releases(listing, "shop")] == [
        "shop_2023-12-01_090000",
        "shop_2024-01-20_120000",
        "shop_2024-03-15_143005",
    ]


def test_previous_and_last():
    releases = find_releases(["shop_2024-03-15_143005", "shop_2024-01-20_120000", "shop_2023-12-01_090000"], "shop")
    previous, last = previous_and_last(releases)
    assert previous.name == "shop_2024-01-20_120000"
    assert last.name == "shop_2024-03-15_143005"


def test_previous_and_last_with_few_releases():
    only = Release(timestamp=1, name="shop_1970-01-01_010001")
    assert previous_and_last([only]) == (None, only)
    assert previous_and_last([]) == (None, None)
