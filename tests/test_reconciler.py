from __future__ import annotations

from geoanalyst_monitor.models import OverlayFamily
from geoanalyst_monitor.overlays.families import build_reconciler, build_reconcilers

from tests.conftest import RecordingSurface, mine_block, tile


def _imagery(surface: RecordingSurface):
    return build_reconciler(OverlayFamily.imagery, surface)


def test_reconcile_converges_to_latest_tile_list(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    first = [tile("a", index=0), tile("b", index=1, lon=11), tile("c", index=2, lon=12)]
    second = [tile("b", index=1, lon=11), tile("d", index=3, lon=13)]

    reconciler.reconcile(first, visible=True, opacity=0.8)
    report = reconciler.reconcile(second, visible=True, opacity=0.8)

    assert sorted(reconciler.keys()) == ["b", "d"]
    assert len(surface) == 2
    assert report.created == 1
    assert report.disposed == 2
    assert report.updated == 0


def test_second_identical_pass_is_a_no_op(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    tiles = [tile("a"), tile("b", lon=11)]

    reconciler.reconcile(tiles, visible=True, opacity=0.8)
    calls_after_first = len(surface.calls)
    report = reconciler.reconcile(tiles, visible=True, opacity=0.8)

    assert len(surface.calls) == calls_after_first
    assert not report.changed


def test_hidden_family_disposes_everything_and_round_trips(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    tiles = [tile("a"), tile("b", lon=11)]
    reconciler.reconcile(tiles, visible=True, opacity=0.8)

    hidden = reconciler.reconcile(tiles, visible=False, opacity=0.8)
    assert hidden.disposed == 2
    assert len(reconciler) == 0
    assert len(surface) == 0

    shown = reconciler.reconcile(tiles, visible=True, opacity=0.8)
    assert shown.created == 2
    assert sorted(reconciler.keys()) == ["a", "b"]


def test_opacity_change_updates_in_place(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    tiles = [tile("a")]
    reconciler.reconcile(tiles, visible=True, opacity=0.8)
    handle = reconciler.entry("a").handle

    report = reconciler.reconcile(tiles, visible=True, opacity=0.4)

    assert report.updated == 1
    assert reconciler.entry("a").handle == handle
    assert surface.layers()[0].opacity == 0.4
    assert surface.count("add") == 1


def test_content_or_bounds_change_updates_existing_entry(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    reconciler.reconcile([tile("a", image="b2xk")], visible=True, opacity=0.8)

    report = reconciler.reconcile([tile("a", image="bmV3")], visible=True, opacity=0.8)
    assert report.updated == 1
    assert surface.layers()[0].content["url"].endswith("bmV3")

    report = reconciler.reconcile([tile("a", image="bmV3", lon=40)], visible=True, opacity=0.8)
    assert report.updated == 1
    assert surface.layers()[0].extent.west == 40


def test_degenerate_and_missing_bounds_are_skipped(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    flat = tile("flat", bounds=[[1, 1], [2, 1], [3, 1], [4, 1]])
    missing = tile("missing", bounds=[])

    report = reconciler.reconcile([flat, missing, tile("ok")], visible=True, opacity=0.8)

    assert report.skipped == 2
    assert reconciler.keys() == ["ok"]


def test_tile_losing_valid_bounds_releases_its_overlay(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    reconciler.reconcile([tile("a")], visible=True, opacity=0.8)

    reconciler.reconcile([tile("a", bounds=[[1, 1]])], visible=True, opacity=0.8)

    assert len(reconciler) == 0
    assert len(surface) == 0


def test_duplicate_ids_last_record_wins(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)

    report = reconciler.reconcile(
        [tile("dup", image="Zmlyc3Q="), tile("dup", image="c2Vjb25k")],
        visible=True,
        opacity=0.8,
    )

    assert report.created == 1
    assert len(surface) == 1
    assert surface.layers()[0].content["url"].endswith("c2Vjb25k")


def test_render_failure_is_isolated_per_tile(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    surface.fail_add_for = {"Tile 2<"}
    tiles = [tile("a", index=1), tile("b", index=2, lon=11), tile("c", index=3, lon=12)]

    report = reconciler.reconcile(tiles, visible=True, opacity=0.8)

    assert report.failed == 1
    assert report.created == 2
    assert sorted(reconciler.keys()) == ["a", "c"]

    surface.fail_add_for = set()
    retry = reconciler.reconcile(tiles, visible=True, opacity=0.8)
    assert retry.created == 1
    assert sorted(reconciler.keys()) == ["a", "b", "c"]


def test_failed_update_is_retried_on_next_pass(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    reconciler.reconcile([tile("a")], visible=True, opacity=0.8)

    surface.fail_update = True
    failed = reconciler.reconcile([tile("a")], visible=True, opacity=0.5)
    assert failed.failed == 1
    assert reconciler.entry("a").last_opacity == 0.8

    surface.fail_update = False
    retried = reconciler.reconcile([tile("a")], visible=True, opacity=0.5)
    assert retried.updated == 1


def test_failed_dispose_still_drops_entry(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    reconciler.reconcile([tile("a"), tile("b", lon=11)], visible=True, opacity=0.8)

    surface.fail_remove = True
    report = reconciler.reconcile([tile("b", lon=11)], visible=True, opacity=0.8)

    assert report.disposed == 1
    assert reconciler.keys() == ["b"]
    assert surface.count("remove") == 1


def test_families_use_their_own_presence_predicate(surface: RecordingSurface) -> None:
    reconcilers = build_reconcilers(surface)
    tiles = [
        tile("img-only"),
        tile("heat", lon=11, image=None, heatmap="aGVhdA=="),
        tile("blocks", lon=12, image=None, blocks=[mine_block(12.2, 20.2)]),
    ]

    for reconciler in reconcilers.values():
        reconciler.reconcile(tiles, visible=True, opacity=0.5)

    assert reconcilers[OverlayFamily.imagery].keys() == ["img-only"]
    assert reconcilers[OverlayFamily.heatmap].keys() == ["heat"]
    assert reconcilers[OverlayFamily.polygon].keys() == ["blocks"]
    assert surface.counts() == {"imagery": 1, "heatmap": 1, "polygon": 1}


def test_polygon_overlay_content_is_geojson(surface: RecordingSurface) -> None:
    reconciler = build_reconciler(OverlayFamily.polygon, surface)
    reconciler.reconcile(
        [tile("blocks", blocks=[mine_block(10.2, 20.2), mine_block(10.5, 20.5, name="Block B")])],
        visible=True,
        opacity=0.3,
    )

    content = surface.layers("polygon")[0].content
    assert content["type"] == "FeatureCollection"
    assert [feature["properties"]["name"] for feature in content["features"]] == [
        "Block A",
        "Block B",
    ]
    first = content["features"][0]
    assert first["geometry"]["type"] == "Polygon"
    assert first["properties"]["area_ha"] == 2.5
    assert first["properties"]["confidence_pct"] == 82.0
    assert first["properties"]["tile_id"] == "blocks"


def test_release_disposes_all_entries(surface: RecordingSurface) -> None:
    reconciler = _imagery(surface)
    reconciler.reconcile([tile("a"), tile("b", lon=11)], visible=True, opacity=0.8)

    assert reconciler.release() == 2
    assert len(surface) == 0
    assert surface.count("remove") == 2
