import pytest

from src.api.access import can_observe, ensure_can_ingest, ensure_can_observe, visible_buses
from src.api.errors import Forbidden, NotFound


def test_admin_observes_any_bus(db, fleet):
    for bus_id in (3, 5, 7, 8):
        assert ensure_can_observe(db, fleet.admin, bus_id).id == bus_id


def test_driver_observes_only_assigned_bus(db, fleet):
    assert ensure_can_observe(db, fleet.driver, 3).id == 3
    with pytest.raises(Forbidden):
        ensure_can_observe(db, fleet.driver, 5)
    with pytest.raises(Forbidden):
        ensure_can_observe(db, fleet.idle_driver, 3)


def test_parent_observes_buses_of_their_students(db, fleet):
    assert ensure_can_observe(db, fleet.parent, 5).id == 5
    assert ensure_can_observe(db, fleet.parent, 3).id == 3
    with pytest.raises(Forbidden):
        ensure_can_observe(db, fleet.other_parent, 5)
    with pytest.raises(Forbidden):
        ensure_can_observe(db, fleet.parent, 8)


def test_unknown_bus_is_not_found(db, fleet):
    with pytest.raises(NotFound):
        ensure_can_observe(db, fleet.admin, 404)
    with pytest.raises(NotFound):
        ensure_can_observe(db, fleet.parent, 404)


def test_ingest_requires_assigned_driver(db, fleet):
    assert ensure_can_ingest(db, fleet.driver, 3).id == 3
    with pytest.raises(Forbidden):
        ensure_can_ingest(db, fleet.driver, 5)
    with pytest.raises(Forbidden):
        ensure_can_ingest(db, fleet.admin, 3)
    with pytest.raises(Forbidden):
        ensure_can_ingest(db, fleet.parent, 3)
    # unknown bus is indistinguishable from someone else's bus
    with pytest.raises(Forbidden):
        ensure_can_ingest(db, fleet.driver, 404)


def test_ingest_refused_while_tracking_is_off_but_observation_still_allowed(db, fleet):
    fleet.buses[3].tracking_enabled = False
    db.commit()

    with pytest.raises(Forbidden, match="disabled"):
        ensure_can_ingest(db, fleet.driver, 3)
    assert ensure_can_observe(db, fleet.parent, 3).id == 3


def test_reassignment_moves_access(db, fleet):
    bus = fleet.buses[3]
    bus.driver_id = fleet.idle_driver.id
    db.commit()

    assert not can_observe(db, fleet.driver, bus)
    assert ensure_can_ingest(db, fleet.idle_driver, 3).id == 3
    with pytest.raises(Forbidden):
        ensure_can_ingest(db, fleet.driver, 3)


def test_visible_buses_matches_observation_rule(db, fleet):
    assert [b.id for b in visible_buses(db, fleet.admin)] == [3, 5, 7, 8]
    assert [b.id for b in visible_buses(db, fleet.driver)] == [3]
    assert [b.id for b in visible_buses(db, fleet.idle_driver)] == []
    assert [b.id for b in visible_buses(db, fleet.parent)] == [3, 5]
    assert [b.id for b in visible_buses(db, fleet.other_parent)] == [7]
