"""Triangular mesh containers.

This module implements the 2D mesh over image pixels that the optimizer
consumes and the 3D mesh it produces, together with Delaunay meshing of
image keypoints and conversion/saving through Open3D.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import open3d as o3d
from scipy import spatial

logger = logging.getLogger(__name__)

LandmarkId = int
VertexId = int

# RGBA used for vertices that are not colored otherwise
DEFAULT_VERTEX_COLOR = (0, 0, 0, 255)


@dataclass
class Vertex2D:
    """Pixel vertex of a 2D mesh."""

    lmk_id: LandmarkId
    position: np.ndarray


@dataclass
class Vertex3D:
    """Vertex of a 3D mesh with an RGBA color."""

    lmk_id: LandmarkId
    position: np.ndarray
    color: Tuple[int, int, int, int] = DEFAULT_VERTEX_COLOR


class _TriangleMesh:
    """Landmark-indexed triangle mesh storage shared by Mesh2D and Mesh3D."""

    dim = 0

    def __init__(self):
        self._positions: List[np.ndarray] = []
        self._lmk_ids: List[LandmarkId] = []
        self._lmk_id_to_vtx_id: Dict[LandmarkId, VertexId] = {}
        self._polygons: List[Tuple[VertexId, VertexId, VertexId]] = []

    def _add_vertex(self, lmk_id: LandmarkId, position: Sequence[float]) -> VertexId:
        position = np.asarray(position, dtype=np.float64).reshape(self.dim)
        vtx_id = self._lmk_id_to_vtx_id.get(lmk_id)
        if vtx_id is None:
            vtx_id = len(self._positions)
            self._lmk_id_to_vtx_id[lmk_id] = vtx_id
            self._positions.append(position)
            self._lmk_ids.append(lmk_id)
        else:
            # Latest observation of a landmark wins
            self._positions[vtx_id] = position
        return vtx_id

    def _add_triangle(self, vtx_ids: Sequence[VertexId]) -> None:
        if len(vtx_ids) != 3:
            raise ValueError(f"Only triangular polygons are supported, got {len(vtx_ids)} vertices")
        self._polygons.append((vtx_ids[0], vtx_ids[1], vtx_ids[2]))

    @property
    def number_of_polygons(self) -> int:
        return len(self._polygons)

    @property
    def number_of_unique_vertices(self) -> int:
        return len(self._positions)

    def __len__(self) -> int:
        return self.number_of_polygons

    def get_vtx_id_for_lmk_id(self, lmk_id: LandmarkId) -> VertexId:
        """Return the vertex id of a landmark.

        Raises:
            KeyError: If the landmark is not part of the mesh
        """
        try:
            return self._lmk_id_to_vtx_id[lmk_id]
        except KeyError:
            raise KeyError(f"Landmark {lmk_id} is not in the mesh") from None

    def contains_lmk_id(self, lmk_id: LandmarkId) -> bool:
        return lmk_id in self._lmk_id_to_vtx_id

    def get_lmk_id_for_vtx_id(self, vtx_id: VertexId) -> LandmarkId:
        return self._lmk_ids[vtx_id]

    def get_polygon_vertex_ids(self, k: int) -> Tuple[VertexId, VertexId, VertexId]:
        return self._polygons[k]

    def get_polygons_mesh(self) -> np.ndarray:
        """Kx3 array of vertex ids, one row per polygon."""
        if not self._polygons:
            return np.zeros((0, 3), dtype=np.int64)
        return np.array(self._polygons, dtype=np.int64)

    def get_vertices_mesh(self) -> np.ndarray:
        """NxD array of vertex positions indexed by vertex id."""
        if not self._positions:
            return np.zeros((0, self.dim))
        return np.vstack(self._positions)

    def get_adjacency_matrix(self) -> np.ndarray:
        """Symmetric boolean adjacency matrix indexed by vertex id."""
        n = self.number_of_unique_vertices
        adjacency = np.zeros((n, n), dtype=bool)
        for a, b, c in self._polygons:
            for i, j in ((a, b), (b, c), (c, a)):
                if i != j:
                    adjacency[i, j] = True
                    adjacency[j, i] = True
        return adjacency


class Mesh2D(_TriangleMesh):
    """Triangular mesh whose vertices are image pixels."""

    dim = 2

    def add_polygon(self, polygon: Iterable[Union[Vertex2D, Tuple[LandmarkId, Sequence[float]]]]) -> None:
        """Append a triangle given as three (lmk_id, (x, y)) pairs or Vertex2D."""
        vtx_ids = []
        for vertex in polygon:
            if isinstance(vertex, Vertex2D):
                lmk_id, position = vertex.lmk_id, vertex.position
            else:
                lmk_id, position = vertex
            vtx_ids.append(self._add_vertex(lmk_id, position))
        self._add_triangle(vtx_ids)

    def get_polygon(self, k: int) -> List[Vertex2D]:
        return [
            Vertex2D(self._lmk_ids[vtx_id], self._positions[vtx_id])
            for vtx_id in self._polygons[k]
        ]

    @classmethod
    def from_delaunay(
        cls,
        pixels: np.ndarray,
        lmk_ids: Optional[Sequence[LandmarkId]] = None
    ) -> "Mesh2D":
        """Build a 2D mesh by Delaunay triangulation of keypoints.

        Args:
            pixels: Nx2 array of keypoint pixel coordinates
            lmk_ids: Landmark id of each keypoint, defaults to 0..N-1

        Returns:
            2D mesh with one polygon per Delaunay simplex
        """
        pixels = np.asarray(pixels, dtype=np.float64)
        if pixels.ndim != 2 or pixels.shape[1] != 2:
            raise ValueError(f"Expected Nx2 keypoints array, got shape {pixels.shape}")
        if lmk_ids is None:
            lmk_ids = list(range(len(pixels)))
        if len(lmk_ids) != len(pixels):
            raise ValueError("Need exactly one landmark id per keypoint")

        mesh = cls()
        if len(pixels) < 3:
            logger.warning(f"Cannot triangulate {len(pixels)} keypoints")
            return mesh

        tri = spatial.Delaunay(pixels)
        for simplex in tri.simplices:
            mesh.add_polygon([(lmk_ids[i], pixels[i]) for i in simplex])

        logger.debug(
            f"Delaunay 2D mesh: {mesh.number_of_unique_vertices} vertices, "
            f"{mesh.number_of_polygons} polygons"
        )
        return mesh


class Mesh3D(_TriangleMesh):
    """Triangular mesh of body-frame 3D vertices with RGBA colors."""

    dim = 3

    def __init__(self):
        super().__init__()
        self._colors: List[Tuple[int, int, int, int]] = []

    def add_polygon(self, polygon: Iterable[Vertex3D]) -> None:
        """Append a triangle of three Vertex3D."""
        vtx_ids = []
        for vertex in polygon:
            vtx_id = self._add_vertex(vertex.lmk_id, vertex.position)
            if vtx_id == len(self._colors):
                self._colors.append(tuple(vertex.color))
            else:
                self._colors[vtx_id] = tuple(vertex.color)
            vtx_ids.append(vtx_id)
        self._add_triangle(vtx_ids)

    def get_polygon(self, k: int) -> List[Vertex3D]:
        return [
            Vertex3D(self._lmk_ids[vtx_id], self._positions[vtx_id], self._colors[vtx_id])
            for vtx_id in self._polygons[k]
        ]

    def get_colors_mesh(self) -> np.ndarray:
        """Nx4 uint8 array of RGBA vertex colors indexed by vertex id."""
        if not self._colors:
            return np.zeros((0, 4), dtype=np.uint8)
        return np.array(self._colors, dtype=np.uint8)

    def to_open3d(self) -> o3d.geometry.TriangleMesh:
        """Convert to an Open3D triangle mesh (alpha is dropped)."""
        o3d_mesh = o3d.geometry.TriangleMesh()
        o3d_mesh.vertices = o3d.utility.Vector3dVector(self.get_vertices_mesh())
        o3d_mesh.triangles = o3d.utility.Vector3iVector(self.get_polygons_mesh().astype(np.int32))
        if self._colors:
            o3d_mesh.vertex_colors = o3d.utility.Vector3dVector(
                self.get_colors_mesh()[:, :3].astype(np.float64) / 255.0
            )
        return o3d_mesh


def save_mesh(
    mesh: Union[Mesh3D, o3d.geometry.TriangleMesh],
    output_path: str,
    file_format: str = "ply"
) -> bool:
    """Save mesh to file.

    Args:
        mesh: Mesh to save
        output_path: Output file path
        file_format: Output file format (ply, obj, ...)

    Returns:
        True if successful, False otherwise
    """
    if isinstance(mesh, Mesh3D):
        mesh = mesh.to_open3d()

    mesh.compute_vertex_normals()

    if file_format.lower() == "obj":
        ok = o3d.io.write_triangle_mesh(output_path, mesh, write_vertex_colors=True)
    else:
        ok = o3d.io.write_triangle_mesh(output_path, mesh)

    if ok:
        logger.info(f"Mesh saved to {output_path}")
    else:
        logger.error(f"Failed to save mesh to {output_path}")
    return ok
