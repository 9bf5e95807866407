"""
Tests for box grids and the aggregation hierarchy.

Tests cover:
1. Box-grid geometry and symmetric face adjacency
2. Partition invariant on every level
3. Pairwise merging (at most two members per aggregate)
4. Smallest-first visiting order and quality-based partner choice
5. Identity aggregation of a grid without mergeable neighbours
6. max_depth handling and termination of build_sequence
7. Aggregate colouring
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from dgsolve.constants import MAX_AGGREGATE_MEMBERS
from dgsolve.exceptions import PreconditionError
from dgsolve.grid import (
    box_grid, isolated_cells, zero_aggregation, coarsen, build_sequence,
)


class TestBoxGrid:
    """Geometry and topology of tensor-product box grids."""

    def test_cell_count_and_volumes(self, grid_2d):
        assert grid_2d.n_cells == 16
        assert grid_2d.dim == 2
        assert_allclose(grid_2d.volumes.sum(), 2.0)

    def test_adjacency_is_symmetric(self, grid_2d):
        A = grid_2d.adjacency_matrix()
        assert (A - A.T).nnz == 0
        assert A.diagonal().sum() == 0

    def test_corner_and_interior_neighbours(self, grid_2d):
        # C order, last axis fastest: cell 0 is a corner, cell 5 is interior
        assert sorted(grid_2d.neighbours(0).tolist()) == [1, 4]
        assert sorted(grid_2d.neighbours(5).tolist()) == [1, 4, 6, 9]

    def test_bounding_boxes(self):
        grid = box_grid([0.0, 1.0, 3.0])
        assert_allclose(grid.bbox[1, 0], [1.0, 3.0])
        assert_allclose(grid.volumes, [1.0, 2.0])

    def test_rejects_four_dimensions(self):
        with pytest.raises(PreconditionError):
            box_grid([0, 1], [0, 1], [0, 1], [0, 1])


class TestCoarsening:
    """Greedy pairwise coarsening."""

    def test_partition_invariant(self, grid_2d):
        seq = build_sequence(grid_2d)
        for level in seq:
            level.check_partition()
            members = np.concatenate(level.coarse_to_fine())
            n_parent = grid_2d.n_cells if level.parent is None else level.parent.n_cells
            assert np.array_equal(np.sort(members), np.arange(n_parent))

    def test_base_cells_partition_base_grid(self, grid_2d):
        for level in build_sequence(grid_2d):
            cells = np.concatenate([level.base_cells(j) for j in range(level.n_cells)])
            assert np.array_equal(np.sort(cells), np.arange(grid_2d.n_cells))

    def test_at_most_two_members(self, grid_2d):
        level = coarsen(zero_aggregation(grid_2d))
        sizes = np.diff(level.c2f_ptr)
        assert sizes.max() <= MAX_AGGREGATE_MEMBERS
        assert sizes.min() >= 1

    def test_volumes_and_boxes_are_unions(self, grid_2d):
        level = coarsen(zero_aggregation(grid_2d))
        for j in range(level.n_cells):
            m = level.members(j)
            assert_allclose(level.volumes[j], grid_2d.volumes[m].sum())
            assert_allclose(level.bbox[j, :, 0], grid_2d.bbox[m, :, 0].min(axis=0))
            assert_allclose(level.bbox[j, :, 1], grid_2d.bbox[m, :, 1].max(axis=0))

    def test_smallest_cell_picks_best_partner(self):
        # Volumes [1, 0.1, 0.5, 1]: cell 1 is visited first and prefers the smaller cell 2
        grid = box_grid([0.0, 1.0, 1.1, 1.6, 2.6])
        level = coarsen(zero_aggregation(grid))
        assert level.fine_to_coarse.tolist() == [1, 0, 0, 2]
        assert level.n_cells == 3

    def test_coarse_adjacency(self, grid_1d):
        level = coarsen(zero_aggregation(grid_1d))
        A = level.adjacency_matrix()
        assert (A - A.T).nnz == 0
        assert A.diagonal().sum() == 0
        assert level.n_cells == 4
        assert sorted(level.neighbours(1).tolist()) == [0, 2]

    def test_identity_aggregation_of_isolated_cells(self):
        grid = isolated_cells([1.0, 0.5, 2.0, 0.25])
        level0 = zero_aggregation(grid)
        level1 = coarsen(level0)
        assert level1.n_cells == grid.n_cells
        assert all(level1.members(j).size == 1 for j in range(level1.n_cells))
        assert_allclose(np.sort(level1.volumes), np.sort(grid.volumes))

    def test_sequence_stops_without_reduction(self):
        seq = build_sequence(isolated_cells([1.0, 2.0, 3.0]))
        assert len(seq) == 1

    def test_max_depth_counts_all_levels(self, grid_2d):
        assert len(build_sequence(grid_2d, max_depth=1)) == 1
        assert len(build_sequence(grid_2d, max_depth=2)) == 2

    def test_unlimited_depth_reaches_single_cell(self, grid_1d):
        seq = build_sequence(grid_1d, max_depth=-1)
        assert [g.n_cells for g in seq] == [8, 4, 2, 1]
        assert [g.level for g in seq] == [0, 1, 2, 3]

    def test_check_partition_detects_corruption(self, grid_1d):
        level = coarsen(zero_aggregation(grid_1d))
        level.c2f_idx = level.c2f_idx.copy()
        level.c2f_idx[0] = level.c2f_idx[1]
        with pytest.raises(PreconditionError):
            level.check_partition()


class TestColoring:
    """Greedy colouring of aggregates."""

    def test_neighbours_have_distinct_colours(self, grid_2d):
        level = coarsen(zero_aggregation(grid_2d))
        colors = level.color_cells()
        for j in range(level.n_cells):
            assert np.all(colors[level.neighbours(j)] != colors[j])

    def test_chain_needs_two_colours(self, grid_1d):
        colors = zero_aggregation(grid_1d).color_cells()
        assert colors.tolist() == [0, 1] * 4
