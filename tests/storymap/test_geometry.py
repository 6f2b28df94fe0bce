"""Tests for geographic helpers — parsing, bounds, projection, path prefixes."""

from __future__ import annotations

import json

import pytest

from storymap.geometry import (
    Bounds,
    GeometryError,
    fit_zoom,
    geometry_bounds,
    haversine_m,
    line_coordinates,
    parse_geometry,
    path_length_m,
    path_prefix,
    point_coordinates,
    project,
    projected_center,
    unproject,
    viewport_bounds,
)
from tests.lib.payloads import square

pytestmark = pytest.mark.unit


class TestParseGeometry:

    def test_parses_json_string(self):
        geom = parse_geometry(json.dumps({"type": "Point", "coordinates": [1, 2]}))
        assert geom == {"type": "Point", "coordinates": [1, 2]}

    def test_unwraps_feature(self):
        feature = {"type": "Feature", "geometry": square(0, 0), "properties": {}}
        assert parse_geometry(feature)["type"] == "Polygon"

    def test_feature_collection_becomes_geometry_collection(self):
        fc = {"type": "FeatureCollection", "features": [
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0, 0]}},
            {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 1]}},
        ]}
        geom = parse_geometry(fc)
        assert geom["type"] == "GeometryCollection"
        assert len(geom["geometries"]) == 2

    @pytest.mark.parametrize("raw", [None, "", "   ", "{not json", "[1, 2]"])
    def test_rejects_unusable_payloads(self, raw):
        with pytest.raises(GeometryError):
            parse_geometry(raw)

    def test_rejects_unknown_type(self):
        with pytest.raises(GeometryError):
            parse_geometry({"type": "Circle", "coordinates": [0, 0]})

    def test_rejects_missing_coordinates(self):
        with pytest.raises(GeometryError):
            parse_geometry({"type": "Polygon"})


class TestBounds:

    def test_polygon_bounds(self):
        b = geometry_bounds(square(10, 50, 0.5))
        assert b == Bounds(9.5, 49.5, 10.5, 50.5)

    def test_from_points_empty_raises(self):
        with pytest.raises(GeometryError):
            Bounds.from_points([])

    def test_union_all(self):
        a = Bounds(0, 0, 1, 1)
        b = Bounds(2, -1, 3, 0.5)
        assert Bounds.union_all([a, b]) == Bounds(0, -1, 3, 1)
        assert Bounds.union_all([]) is None

    def test_contains(self):
        outer = Bounds(0, 0, 10, 10)
        assert outer.contains(Bounds(1, 1, 2, 2))
        assert not outer.contains(Bounds(-1, 1, 2, 2))
        assert outer.contains_point(5, 5)

    def test_pad_grows_each_side(self):
        assert Bounds(0, 0, 10, 10).pad(0.1) == Bounds(-1, -1, 11, 11)

    def test_point_coordinates(self):
        assert point_coordinates({"type": "Point", "coordinates": [3, 4]}) == (3.0, 4.0)
        with pytest.raises(GeometryError):
            point_coordinates(square(0, 0))


class TestProjection:

    def test_project_unproject_inverse(self):
        x, y = project(13.4, 52.5, 10)
        lng, lat = unproject(x, y, 10)
        assert lng == pytest.approx(13.4)
        assert lat == pytest.approx(52.5)

    def test_fit_zoom_respects_max_zoom_for_points(self):
        assert fit_zoom(Bounds(1, 1, 1, 1), 1280, 800, 80, 15) == 15.0

    def test_fit_zoom_shrinks_for_large_bounds(self):
        small = fit_zoom(Bounds(10, 50, 10.1, 50.1), 1280, 800, 80, 18)
        large = fit_zoom(Bounds(0, 40, 20, 60), 1280, 800, 80, 18)
        assert large < small

    def test_fitted_viewport_contains_bounds(self):
        target = Bounds(9.99, 49.99, 12.01, 51.01)
        zoom = fit_zoom(target, 1280, 800, 80, 15)
        view = viewport_bounds(projected_center(target), zoom, 1280, 800)
        assert view.contains(target)


class TestPaths:

    PATH = [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)]

    def test_haversine_one_degree_at_equator(self):
        assert haversine_m((0, 0), (1, 0)) == pytest.approx(111_195, rel=1e-3)

    def test_prefix_endpoints(self):
        assert path_prefix(self.PATH, 0) == [(0.0, 0.0)]
        assert path_prefix(self.PATH, 1) == self.PATH

    def test_prefix_interpolates_inside_leg(self):
        prefix = path_prefix(self.PATH, 0.75)
        assert prefix[:2] == [(0.0, 0.0), (1.0, 0.0)]
        assert prefix[-1][0] == pytest.approx(1.5)

    def test_path_length(self):
        assert path_length_m(self.PATH) == pytest.approx(2 * haversine_m((0, 0), (1, 0)))

    def test_line_coordinates_from_geojson_and_list(self):
        line = {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}
        assert line_coordinates(json.dumps(line)) == [(0.0, 0.0), (1.0, 1.0)]
        assert line_coordinates([[0, 0], [1, 1]]) == [(0.0, 0.0), (1.0, 1.0)]

    def test_line_coordinates_needs_two_points(self):
        with pytest.raises(GeometryError):
            line_coordinates([[0, 0]])
        with pytest.raises(GeometryError):
            line_coordinates({"type": "Point", "coordinates": [0, 0]})
