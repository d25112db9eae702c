import numpy as np

from mpm2d.kernel import (
    GridInterpolation,
    bspline_weights,
    cell_from_position,
    compute_stencils,
    inv_d,
)


def test_weights_partition_of_unity():
    """The 9 stencil weights sum to one for any position."""
    rng = np.random.default_rng(0)
    positions = rng.uniform(-50.0, 50.0, size=(200, 2))
    for cell_width in (1.0, 0.25, 3.0):
        _, weights, _ = compute_stencils(positions, cell_width)
        assert np.allclose(weights.sum(axis=1), 1.0)
        assert np.all(weights >= 0.0)


def test_first_moment_vanishes_and_second_moment_matches_inv_d():
    rng = np.random.default_rng(1)
    positions = rng.uniform(0.0, 20.0, size=(50, 2))
    cell_width = 0.5
    _, weights, distances = compute_stencils(positions, cell_width)

    first = np.einsum("nk,nki->ni", weights, distances)
    assert np.allclose(first, 0.0)

    second = np.einsum("nk,nki,nkj->nij", weights, distances, distances) * inv_d(cell_width)
    assert np.allclose(second, np.eye(2))


def test_base_cell_and_neighbour_layout():
    interpolation = GridInterpolation.compute_for_particle(np.array([2.3, 5.7]), 1.0)
    assert tuple(interpolation.base) == (1, 4)
    # slot k = gy * 3 + gx
    assert tuple(interpolation.coords[0]) == (1, 4)
    assert tuple(interpolation.coords[2]) == (3, 4)
    assert tuple(interpolation.coords[6]) == (1, 6)
    assert tuple(interpolation.coords[8]) == (3, 6)


def test_distances_point_from_particle_to_node_centre():
    position = np.array([1.2, 0.9])
    cell_width = 0.5
    interpolation = GridInterpolation.compute_for_particle(position, cell_width)
    for (x, y), _, distance in interpolation.iter_neighbors():
        node = (np.array([x, y]) + 0.5) * cell_width
        assert np.allclose(distance, node - position)


def test_bspline_weights_at_cell_centre():
    assert np.allclose(bspline_weights(0.0), [0.125, 0.75, 0.125])
    assert np.allclose(bspline_weights(np.array([0.5, -0.5])).sum(axis=-1), 1.0)


def test_cell_from_position_handles_negative_coordinates():
    assert tuple(cell_from_position(np.array([-0.5, 3.99]), 1.0)) == (-1, 3)
    assert tuple(cell_from_position(np.array([1.0, 1.0]), 0.5)) == (2, 2)


def test_weight_for_neighbor_matches_weights():
    interpolation = GridInterpolation.compute_for_particle(np.array([4.4, 4.6]))
    assert interpolation.weight_for_neighbor(4) == float(interpolation.weights[4])
    assert len(list(interpolation.iter_neighbors())) == 9
