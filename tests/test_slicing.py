"""
Tests for plane slices, refinement onto a raster and line sampling.
"""
import numpy as np
import pytest

from xvlsv.exceptions import OutOfBoundsError
from xvlsv.mesh import MeshIndex
from xvlsv.slicing import axis_index, cells_in_line, refine, slice_cells

from conftest import AMR_BASE, AMR_CELL_IDS, AMR_CHILDREN, AMR_MAX, AMR_MIN


@pytest.fixture
def amr_mesh():
    ids = np.random.default_rng(11).permutation(np.array(AMR_CELL_IDS, dtype=np.uint64))
    return MeshIndex(AMR_BASE, AMR_MIN, AMR_MAX, ids)


class TestSlice:
    """Plane selections through a two-level mesh."""

    def test_slice_on_unrefined_axis_selects_all(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        assert len(selection) == len(AMR_CELL_IDS)
        assert set(selection.cell_ids.tolist()) == set(AMR_CELL_IDS)
        assert selection.max_level == 1
        assert selection.raster_shape == (8, 8)
        assert selection.plane_axes == (0, 1)

    def test_index_list_points_into_storage(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        np.testing.assert_array_equal(amr_mesh.cell_ids[selection.index_list], selection.cell_ids)

    def test_finest_level_raster_order(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        # Row-major over the finest raster by lower corner: b (y) slowest, a (x) fastest
        keys = selection.raster_lo[:, 1] * 8 + selection.raster_lo[:, 0]
        assert np.all(np.diff(keys) > 0)
        assert selection.cell_ids[0] == 1
        assert selection.cell_ids[-1] == 16

    def test_slice_on_refined_axis(self, amr_mesh):
        # x = 1.2 crosses base column i=1 and the left children of cell 6
        selection = slice_cells(amr_mesh, 'x', 1.2)
        assert set(selection.cell_ids.tolist()) == {2, 10, 14, 35, 43}
        assert selection.plane_axes == (1, 2)
        assert selection.raster_shape == (1, 8)

    def test_slice_on_face_selects_positive_side(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'x', 1.5)
        assert set(selection.cell_ids.tolist()) == {2, 10, 14, 36, 44}

    def test_slice_upper_domain_face(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'x', 4.0)
        assert set(selection.cell_ids.tolist()) == {4, 8, 12, 16}

    def test_slice_bounds(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5, bounds=[(1.0, 2.0), (1.0, 2.0)])
        assert set(selection.cell_ids.tolist()) == set(AMR_CHILDREN)

    def test_slice_outside_domain(self, amr_mesh):
        with pytest.raises(OutOfBoundsError):
            slice_cells(amr_mesh, 'z', 1.5)

    def test_axis_names(self):
        assert axis_index('X') == 0
        assert axis_index(2) == 2
        with pytest.raises(ValueError):
            axis_index('w')


class TestRefine:
    """Uniform rasters from mixed-level selections."""

    def test_refine_gap_free(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        raster = refine(selection.cell_ids.astype(float), selection)
        assert raster.shape == (8, 8)
        assert not np.any(np.isnan(raster))

    def test_refine_places_cells(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        raster = refine(selection.cell_ids.astype(float), selection)
        # Coarse cell 1 fills the 2x2 block at the origin
        np.testing.assert_array_equal(raster[0:2, 0:2], 1.0)
        # Children of cell 6 occupy one raster element each
        assert raster[2, 2] == 35
        assert raster[2, 3] == 36
        assert raster[3, 2] == 43
        assert raster[3, 3] == 44
        np.testing.assert_array_equal(raster[6:8, 6:8], 16.0)

    def test_refine_vectors(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        values = np.stack([selection.cell_ids.astype(float)] * 3, axis=1)
        raster = refine(values, selection)
        assert raster.shape == (8, 8, 3)
        assert raster[2, 3, 1] == 36

    def test_refine_bounded_window_gap_free(self, amr_mesh):
        # Cell 2 spans x in [1, 2]; its centre lies outside the bounds but it
        # still covers the raster column centred at x = 1.75
        selection = slice_cells(amr_mesh, 'z', 0.5, bounds=[(1.6, 2.6), (-np.inf, np.inf)])
        raster = refine(selection.cell_ids.astype(float), selection)
        assert raster.shape == (8, 2)
        assert not np.any(np.isnan(raster))
        np.testing.assert_array_equal(raster[:, 0], [2, 2, 36, 44, 10, 10, 14, 14])
        np.testing.assert_array_equal(raster[:, 1], [3, 3, 7, 7, 11, 11, 15, 15])
        coord_a, _ = selection.raster_coordinates(amr_mesh)
        np.testing.assert_allclose(coord_a, [1.75, 2.25])

    def test_bounds_outside_domain(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5, bounds=[(5.0, 6.0), (0.0, 4.0)])
        assert len(selection) == 0
        assert refine(np.zeros(0), selection).size == 0

    def test_refine_length_mismatch(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        with pytest.raises(ValueError):
            refine(np.zeros(3), selection)

    def test_raster_coordinates(self, amr_mesh):
        selection = slice_cells(amr_mesh, 'z', 0.5)
        coord_a, coord_b = selection.raster_coordinates(amr_mesh)
        np.testing.assert_allclose(coord_a, 0.25 + 0.5 * np.arange(8))
        np.testing.assert_allclose(coord_b, 0.25 + 0.5 * np.arange(8))


class TestLine:
    """Cells crossed by a segment."""

    def test_line_along_x(self, amr_mesh):
        ids, distances, coords = cells_in_line(amr_mesh, [0.1, 1.25, 0.5], [3.9, 1.25, 0.5])
        np.testing.assert_array_equal(ids, [5, 35, 36, 7, 8])
        assert distances[0] == 0.0
        assert np.all(np.diff(distances) > 0)
        assert coords.shape == (5, 3)

    def test_line_ids_are_contiguous_cells(self, amr_mesh):
        ids, _, coords = cells_in_line(amr_mesh, [0.2, 0.3, 0.5], [3.7, 3.9, 0.5])
        assert len(ids) == len(set(ids.tolist()))
        for cell_id, point in zip(ids, coords):
            assert amr_mesh.locate(point) == cell_id

    def test_line_outside_domain_on_opposite_sides(self, amr_mesh):
        ids, distances, coords = cells_in_line(amr_mesh, [-2.0, 0.5, 0.5], [6.0, 0.5, 0.5])
        np.testing.assert_array_equal(ids, [1, 2, 3, 4])
        # Distances are measured from the first point
        np.testing.assert_allclose(distances[0], 2.0)
        np.testing.assert_allclose(coords[0], [0.0, 0.5, 0.5])

    def test_line_missing_domain(self, amr_mesh):
        ids, distances, coords = cells_in_line(amr_mesh, [-2.0, 5.0, 0.5], [6.0, 5.0, 0.5])
        assert ids.size == 0
        assert distances.size == 0
        assert coords.shape == (0, 3)
