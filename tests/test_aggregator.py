"""Tests for the alert aggregator's edge detection."""
from fallwatch.aggregator import AlertAggregator

from conftest import make_room


def _ward(**rooms):
    return {"ward_A": rooms}


class TestAlertAggregator:
    def test_counts_and_any_fall(self):
        wards = {
            "ward_A": {
                "room_301": make_room(status="Fall Down"),
                "room_302": make_room(status="Fall", acknowledged=True),
                "room_303": make_room(status="Normal"),
            },
            "ward_B": {"room_401": make_room(fall="true")},
        }
        summary = AlertAggregator().evaluate(wards)
        assert summary.any_fall
        assert summary.unacknowledged_count == 2

    def test_rearm_follows_count_increases(self):
        # Unacknowledged counts 0, 1, 1, 2, 1.
        snapshots = [
            _ward(room_301=make_room(status="Normal"), room_302=make_room(status="Normal")),
            _ward(room_301=make_room(status="Fall Down"), room_302=make_room(status="Normal")),
            _ward(room_301=make_room(status="Fall Down"), room_302=make_room(status="Normal")),
            _ward(room_301=make_room(status="Fall Down"), room_302=make_room(status="Fall Down")),
            _ward(
                room_301=make_room(status="Fall Down", acknowledged=True),
                room_302=make_room(status="Fall Down"),
            ),
        ]
        aggregator = AlertAggregator()
        results = [aggregator.evaluate(wards) for wards in snapshots]
        assert [r.unacknowledged_count for r in results] == [0, 1, 1, 2, 1]
        assert [r.rearm for r in results] == [False, True, False, True, False]

    def test_rising_edge_only_once(self):
        aggregator = AlertAggregator()
        fallen = _ward(room_301=make_room(status="Fall Down"))
        assert aggregator.evaluate(fallen).rising_edge
        assert not aggregator.evaluate(fallen).rising_edge
        assert not aggregator.evaluate(_ward(room_301=make_room(status="Normal"))).rising_edge
        assert aggregator.evaluate(fallen).rising_edge

    def test_fall_logged_once_per_incident(self):
        aggregator = AlertAggregator()
        fallen = _ward(room_301=make_room(status="Fall Down"))
        quiet = _ward(room_301=make_room(status="Normal"))

        assert aggregator.evaluate(fallen).new_falls == ["ward_A/room_301"]
        assert aggregator.evaluate(fallen).new_falls == []
        cleared = aggregator.evaluate(quiet)
        assert cleared.cleared == ["ward_A/room_301"]
        assert aggregator.fall_seen == set()
        assert aggregator.evaluate(fallen).new_falls == ["ward_A/room_301"]

    def test_label_tracks_latest_unacknowledged_room(self):
        aggregator = AlertAggregator()
        first = aggregator.evaluate(_ward(room_301=make_room(status="Fall Down")))
        assert first.label == "ward_A/room_301"

        second = aggregator.evaluate(
            _ward(room_301=make_room(status="Fall Down"), room_302=make_room(status="Fall Down"))
        )
        assert second.label == "ward_A/room_302"

        third = aggregator.evaluate(
            _ward(
                room_301=make_room(status="Fall Down"),
                room_302=make_room(status="Fall Down", acknowledged=True),
            )
        )
        assert third.label == "ward_A/room_301"

        quiet = aggregator.evaluate(_ward(room_301=make_room(status="Normal")))
        assert quiet.label is None

    def test_missing_or_malformed_trees(self):
        aggregator = AlertAggregator()
        for wards in (None, {}, {"ward_A": None}, {"ward_A": "oops"}):
            summary = aggregator.evaluate(wards)
            assert not summary.any_fall
            assert summary.unacknowledged_count == 0
