import pytest

from tripfinder.collisions import COLLISION_THRESHOLD, check_collisions, distance_to_segment, first_hit
from tripfinder.models import Coordinate, DelayReport, RouteConnection, ShapePoint


def point(lat, lng):
    return Coordinate(lat=lat, lng=lng)


def delay_at(lat, lng, report_id="1"):
    return DelayReport(
        id=report_id,
        cause="Awaria tramwaju",
        vehicle_number="RP901",
        location=point(lat, lng),
        timestamp="2026-10-19T08:00:00+00:00",
    )


def route(route_id="R1", shape=(), from_stop=None, to_stop=None):
    return RouteConnection(
        route_id=route_id,
        source="krakow1",
        trip_id=f"trip-{route_id}",
        from_stop_id="A",
        to_stop_id="B",
        shape_points=[ShapePoint(lat=lat, lng=lng, sequence=i) for i, (lat, lng) in enumerate(shape)],
        from_stop=from_stop,
        to_stop=to_stop,
    )


# Straight east-west line through the Old Town
LINE = [(50.06, 19.93), (50.06, 19.94), (50.06, 19.95)]


class TestDistanceToSegment:
    def test_perpendicular_projection(self):
        d = distance_to_segment(point(50.061, 19.935), point(50.06, 19.93), point(50.06, 19.94))
        assert d == pytest.approx(0.001)

    def test_clamped_to_start(self):
        d = distance_to_segment(point(50.06, 19.92), point(50.06, 19.93), point(50.06, 19.94))
        assert d == pytest.approx(0.01)

    def test_clamped_to_end(self):
        d = distance_to_segment(point(50.06, 19.96), point(50.06, 19.93), point(50.06, 19.94))
        assert d == pytest.approx(0.02)

    def test_zero_length_segment_uses_the_start(self):
        d = distance_to_segment(point(50.063, 19.934), point(50.06, 19.93), point(50.06, 19.93))
        assert d == pytest.approx(0.005)


class TestFirstHit:
    def test_delay_on_the_route(self):
        assert first_hit(point(50.0605, 19.945), route(shape=LINE)) == pytest.approx(0.0005)

    def test_delay_far_away(self):
        # Roughly 5 km north
        assert first_hit(point(50.105, 19.94), route(shape=LINE)) is None

    def test_just_outside_the_threshold(self):
        assert first_hit(point(50.06 + COLLISION_THRESHOLD * 1.5, 19.94), route(shape=LINE)) is None

    def test_first_segment_within_threshold_wins(self):
        # Near both segments; the first one reports its own distance
        hit = first_hit(point(50.062, 19.9401), route(shape=LINE))
        assert hit == pytest.approx(distance_to_segment(point(50.062, 19.9401), point(*LINE[0]), point(*LINE[1])))

    def test_route_without_shape_uses_its_stops(self):
        straight = route(from_stop=point(50.06, 19.93), to_stop=point(50.06, 19.95))
        assert first_hit(point(50.061, 19.94), straight) == pytest.approx(0.001)

    def test_single_shape_point_falls_back_to_stops(self):
        straight = route(shape=[(50.0, 19.0)], from_stop=point(50.06, 19.93), to_stop=point(50.06, 19.95))
        assert first_hit(point(50.061, 19.94), straight) is not None

    def test_route_without_geometry_never_collides(self):
        assert first_hit(point(50.06, 19.94), route()) is None


class TestCheckCollisions:
    def test_one_entry_per_delay_and_route(self):
        near = route("R1", shape=LINE)
        also_near = route("R2", from_stop=point(50.059, 19.93), to_stop=point(50.059, 19.95))
        far = route("R3", shape=[(50.1, 19.9), (50.1, 20.0)])

        collisions = check_collisions(
            [delay_at(50.0601, 19.94, "1"), delay_at(50.2, 19.94, "2")],
            [near, also_near, far],
        )

        assert [(c.delay.id, c.route.route_id) for c in collisions] == [("1", "R1"), ("1", "R2")]
        assert collisions[0].distance == pytest.approx(0.0001)

    def test_no_delays(self):
        assert check_collisions([], [route(shape=LINE)]) == []

    def test_custom_threshold(self):
        collisions = check_collisions([delay_at(50.065, 19.94)], [route(shape=LINE)], threshold=0.01)
        assert len(collisions) == 1

    def test_serialises_camel_case(self):
        collision = check_collisions([delay_at(50.0601, 19.94)], [route(shape=LINE)])[0]
        payload = collision.to_json()
        assert payload["delay"]["vehicleNumber"] == "RP901"
        assert payload["route"]["routeId"] == "R1"
