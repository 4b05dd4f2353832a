"""Mesh depth optimization from dense noisy depth.

Turns a 2D triangular mesh over a calibrated image plus a per-pixel noisy
point cloud into a 3D mesh, by solving a linear least-squares problem over
the inverse depths of the mesh vertices.
"""

from __future__ import annotations

__version__ = "0.1.0"
