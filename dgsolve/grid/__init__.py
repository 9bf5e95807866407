"""
Grid and aggregation module.

This module provides tools for:
- Axis-aligned box-cell grids with CSR face adjacency
- Greedy pairwise agglomeration into a hierarchy of aggregation grids
"""

from .cells import (
    CellGrid,
    box_grid,
    isolated_cells,
)

from .aggregation import (
    AggregationGrid,
    greedy_pairing,
    zero_aggregation,
    coarsen,
    build_sequence,
)

__all__ = [
    # Cells
    'CellGrid',
    'box_grid',
    'isolated_cells',
    # Aggregation
    'AggregationGrid',
    'greedy_pairing',
    'zero_aggregation',
    'coarsen',
    'build_sequence',
]
