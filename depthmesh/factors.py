"""Linear Gaussian factors over vertex inverse depths.

This module implements the sparse linear factor graph of the mesh
optimizer and its assembly from per-triangle depth samples: one ternary
data factor per sample and, optionally, one binary spring factor per mesh
edge.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from tqdm import tqdm

from depthmesh.config import ConfigurationError, MeshOptimizationParams, MeshOptimizerType
from depthmesh.geometry import barycentric_coordinates, bearing_vector_from_pixel
from depthmesh.mesh import Mesh2D, VertexId
from depthmesh.rasterize import TriangleCorrespondences

logger = logging.getLogger(__name__)

# Fewest samples a triangle needs to constrain its three vertices
MIN_DATAPOINTS_PER_TRIANGLE = 3


@dataclass(frozen=True)
class GaussianFactor:
    """Scalar linear measurement sum_i(jacobians[i] * y[keys[i]]) = rhs.

    Attributes:
        keys: Vertex ids of the unknowns involved
        jacobians: Scalar Jacobian of each unknown
        rhs: Measured value
        sigma: Standard deviation of the measurement noise
    """

    keys: Tuple[int, ...]
    jacobians: Tuple[float, ...]
    rhs: float
    sigma: float

    def __post_init__(self) -> None:
        if len(self.keys) != len(self.jacobians):
            raise ValueError("Need one Jacobian per key")
        if len(set(self.keys)) != len(self.keys):
            raise ValueError(f"Factor keys must be distinct, got {self.keys}")
        if self.sigma <= 0:
            raise ValueError(f"Noise sigma must be positive, got {self.sigma}")


class GaussianFactorGraph:
    """Ordered collection of linear Gaussian factors."""

    def __init__(self, factors: Optional[Sequence[GaussianFactor]] = None):
        self._factors: List[GaussianFactor] = list(factors) if factors else []

    def add(self, factor: GaussianFactor) -> None:
        self._factors.append(factor)

    def __iadd__(self, factor: GaussianFactor) -> "GaussianFactorGraph":
        self.add(factor)
        return self

    def __len__(self) -> int:
        return len(self._factors)

    def __iter__(self) -> Iterator[GaussianFactor]:
        return iter(self._factors)

    def __getitem__(self, i: int) -> GaussianFactor:
        return self._factors[i]

    def keys(self) -> List[int]:
        """Sorted unique keys referenced by the factors."""
        return sorted({k for factor in self._factors for k in factor.keys})

    def ordering(self) -> Dict[int, int]:
        """Map each key to a column, in order of first appearance."""
        ordering: Dict[int, int] = {}
        for factor in self._factors:
            for key in factor.keys:
                if key not in ordering:
                    ordering[key] = len(ordering)
        return ordering

    def whitened_system(
        self,
        ordering: Optional[Dict[int, int]] = None
    ) -> Tuple[sparse.csr_matrix, np.ndarray]:
        """Stack the factors into a whitened sparse system A y = b.

        Row i holds factor i divided by its sigma.

        Args:
            ordering: Column of each key, defaults to ordering()

        Returns:
            Tuple of (A, b) with A of shape (n_factors, n_keys)
        """
        if ordering is None:
            ordering = self.ordering()

        rows, cols, data = [], [], []
        b = np.zeros(len(self._factors))
        for i, factor in enumerate(self._factors):
            for key, jacobian in zip(factor.keys, factor.jacobians):
                rows.append(i)
                cols.append(ordering[key])
                data.append(jacobian / factor.sigma)
            b[i] = factor.rhs / factor.sigma

        A = sparse.csr_matrix(
            (data, (rows, cols)), shape=(len(self._factors), len(ordering))
        )
        return A, b

    def hessian_diagonal(self) -> Dict[int, float]:
        """Diagonal of the information matrix A^T A for each key."""
        diagonal: Dict[int, float] = {}
        for factor in self._factors:
            for key, jacobian in zip(factor.keys, factor.jacobians):
                diagonal[key] = diagonal.get(key, 0.0) + (jacobian / factor.sigma) ** 2
        return diagonal


@dataclass
class FactorAssembly:
    """Factor graph of one optimization with the bookkeeping of its assembly.

    Attributes:
        graph: Data and spring factors
        vertex_supports: Number of data factors referencing each vertex id
        bearing_vectors: Unit bearing vector of each vertex id in the body frame
        vertex_pixels: Pixel of each vertex id
        n_data_factors: Number of data factors
        n_spring_factors: Number of spring factors
        skipped_triangles: Indices of triangles that added no data factor
    """

    graph: GaussianFactorGraph = field(default_factory=GaussianFactorGraph)
    vertex_supports: Counter = field(default_factory=Counter)
    bearing_vectors: Dict[VertexId, np.ndarray] = field(default_factory=dict)
    vertex_pixels: Dict[VertexId, np.ndarray] = field(default_factory=dict)
    n_data_factors: int = 0
    n_spring_factors: int = 0
    skipped_triangles: List[int] = field(default_factory=list)

    @property
    def max_vertex_support(self) -> int:
        return max(self.vertex_supports.values(), default=0)


def add_spring_factors(
    graph: GaussianFactorGraph,
    adjacency_matrix: np.ndarray,
    spring_noise_sigma: float,
    spring_constant: float = 1.0,
    spring_rest_length: float = 0.0
) -> int:
    """Add one spring factor per edge of the mesh.

    Only the strict lower triangle of the adjacency matrix is visited, so
    each undirected edge yields exactly one spring.

    Args:
        graph: Factor graph to extend
        adjacency_matrix: Symmetric boolean matrix indexed by vertex id
        spring_noise_sigma: Sigma of the spring factors
        spring_constant: Jacobian magnitude of both endpoints
        spring_rest_length: Right hand side of the springs

    Returns:
        Number of springs added
    """
    adjacency_matrix = np.asarray(adjacency_matrix)
    rows, cols = np.nonzero(np.tril(adjacency_matrix, k=-1))
    for i, j in zip(rows, cols):
        graph.add(GaussianFactor(
            keys=(int(i), int(j)),
            jacobians=(spring_constant, -spring_constant),
            rhs=spring_rest_length,
            sigma=spring_noise_sigma,
        ))
    return len(rows)


def assemble_factor_graph(
    mesh_2d: Mesh2D,
    corresp: TriangleCorrespondences,
    stereo_camera,
    params: MeshOptimizationParams
) -> FactorAssembly:
    """Build the inverse depth factor graph from per-triangle samples.

    Each sample (p, X) of a triangle (v0, v1, v2) adds the measurement
    b0 y_v0 + b1 y_v1 + b2 y_v2 = 1 / |X|, with (b0, b1, b2) the barycentric
    coordinates of p. Triangles with fewer than three samples are skipped.

    Args:
        mesh_2d: 2D mesh over the image
        corresp: Samples bound to each triangle
        stereo_camera: Camera used to compute vertex bearing vectors
        params: Optimization parameters

    Returns:
        Factor graph and assembly bookkeeping
    """
    if params.solver_type is not MeshOptimizerType.GTSAM_MESH:
        raise ConfigurationError(f"Unknown mesh optimization type: {params.solver_type}")
    if len(corresp) != mesh_2d.number_of_polygons:
        logger.error("There are some undetermined triangles in the 2d mesh.")

    start_time = time.perf_counter()
    assembly = FactorAssembly()
    n_polys = mesh_2d.number_of_polygons

    range_obj = tqdm(range(n_polys), desc="Building factors") if params.verbose else range(n_polys)
    for tri_idx in range_obj:
        polygon = mesh_2d.get_polygon(tri_idx)

        # Cache vertex pixels and bearing vectors
        vtx_ids = []
        for vtx in polygon:
            vtx_id = mesh_2d.get_vtx_id_for_lmk_id(vtx.lmk_id)
            if vtx_id not in assembly.bearing_vectors:
                assembly.bearing_vectors[vtx_id] = bearing_vector_from_pixel(stereo_camera, vtx.position)
                assembly.vertex_pixels[vtx_id] = vtx.position
            vtx_ids.append(vtx_id)

        if len(set(vtx_ids)) != 3:
            logger.error(f"Triangle {tri_idx} has repeated vertices {vtx_ids}, skipping it.")
            assembly.skipped_triangles.append(tri_idx)
            continue

        if tri_idx >= len(corresp):
            assembly.skipped_triangles.append(tri_idx)
            continue

        datapoints_xyz = corresp.datapoints_xyz[tri_idx]
        datapoints_pixels = corresp.datapoints_pixels[tri_idx]
        if len(datapoints_xyz) != len(datapoints_pixels):
            raise ValueError(f"Triangle {tri_idx} has mismatched samples and pixels")

        # Skip under-constrained triangles, neighbours or springs may still fix them
        if len(datapoints_xyz) < MIN_DATAPOINTS_PER_TRIANGLE:
            logger.error(
                f"Degenerate case optimization problem, we need at least "
                f"{MIN_DATAPOINTS_PER_TRIANGLE} datapoints: offending triangle idx: {tri_idx} "
                f"({len(datapoints_xyz)} datapoints)"
            )
            assembly.skipped_triangles.append(tri_idx)
            continue

        logger.debug(f"Adding {len(datapoints_xyz)} datapoints to triangle with idx: {tri_idx}")

        px0 = assembly.vertex_pixels[vtx_ids[0]]
        px1 = assembly.vertex_pixels[vtx_ids[1]]
        px2 = assembly.vertex_pixels[vtx_ids[2]]
        inv_depth_meas = 1.0 / np.linalg.norm(datapoints_xyz, axis=1)

        n_added = 0
        for pixel, b in zip(datapoints_pixels, inv_depth_meas):
            bary = barycentric_coordinates(px0, px1, px2, pixel)
            if bary is None:
                logger.error(
                    f"Barycentric coordinates failed for query pixel {tuple(pixel)} in "
                    f"triangle {tri_idx} with vertices {tuple(px0)}, {tuple(px1)}, {tuple(px2)}"
                )
                continue

            assembly.graph.add(GaussianFactor(
                keys=tuple(vtx_ids),
                jacobians=bary,
                rhs=float(b),
                sigma=params.depth_meas_noise_sigma,
            ))
            assembly.vertex_supports.update(vtx_ids)
            n_added += 1

        if n_added == 0:
            assembly.skipped_triangles.append(tri_idx)
        assembly.n_data_factors += n_added

    if params.use_spring_energies:
        assembly.n_spring_factors = add_spring_factors(
            assembly.graph,
            mesh_2d.get_adjacency_matrix(),
            params.spring_noise_sigma,
            spring_constant=params.spring_constant,
            spring_rest_length=params.spring_rest_length,
        )

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Built factor graph: {assembly.n_data_factors} data factors, "
        f"{assembly.n_spring_factors} spring factors, "
        f"{len(assembly.skipped_triangles)} skipped triangles "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )
    return assembly
