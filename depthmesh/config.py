"""Configuration for mesh optimization.

This module defines the solver and color options, the parameter set of the
mesh optimizer, the YAML configuration loader and the exceptions raised
when configuration or input preconditions are violated.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


class MeshOptimizationError(Exception):
    """Base class for errors raised by the mesh optimizer."""


class ConfigurationError(MeshOptimizationError, ValueError):
    """Unknown or inconsistent configuration value."""


class PreconditionError(MeshOptimizationError, ValueError):
    """Input data that the optimizer cannot work with."""


class MeshOptimizerType(enum.Enum):
    """Linear solver backing the optimization."""

    GTSAM_MESH = "GtsamMesh"

    @classmethod
    def parse(cls, value: Union[str, "MeshOptimizerType"]) -> "MeshOptimizerType":
        if isinstance(value, cls):
            return value
        for member in cls:
            if value == member.value or value == member.name:
                return member
        raise ConfigurationError(f"Unknown mesh optimization type: {value!r}")


class MeshColorType(enum.Enum):
    """How vertices of the reconstructed mesh are colored."""

    VERTEX_FLAT_COLOR = "VertexFlatColor"
    VERTEX_RGB = "VertexRGB"
    VERTEX_DEPTH_VARIANCE = "VertexDepthVariance"
    VERTEX_SUPPORT = "VertexSupport"

    @classmethod
    def parse(cls, value: Union[str, "MeshColorType"]) -> "MeshColorType":
        if isinstance(value, cls):
            return value
        for member in cls:
            if value == member.value or value == member.name:
                return member
        raise ConfigurationError(f"Unrecognized mesh color type: {value!r}")


@dataclass
class MeshOptimizationParams:
    """Parameters of the mesh optimizer.

    Attributes:
        solver_type: Linear solver to use
        mesh_color_type: Vertex coloring of the output mesh
        use_spring_energies: Add spring factors between adjacent vertices
        min_z: Smallest accepted depth (z) of a point cloud sample
        max_z: Largest accepted depth (z) of a point cloud sample
        depth_meas_noise_sigma: Sigma of the inverse depth measurements
        spring_noise_sigma: Sigma of the spring factors
        spring_rest_length: Rest length of the springs (in inverse depth)
        spring_constant: Stiffness multiplying both spring Jacobians
        min_valid_datapoints: Fewest valid samples an input must provide
        verbose: Show progress bars for the per-triangle loops
    """

    solver_type: MeshOptimizerType = MeshOptimizerType.GTSAM_MESH
    mesh_color_type: MeshColorType = MeshColorType.VERTEX_FLAT_COLOR
    use_spring_energies: bool = False
    min_z: float = 0.3
    max_z: float = 5.0
    depth_meas_noise_sigma: float = 0.1
    spring_noise_sigma: float = 0.1
    spring_rest_length: float = 0.0
    spring_constant: float = 1.0
    min_valid_datapoints: int = 4
    verbose: bool = False

    def __post_init__(self) -> None:
        self.solver_type = MeshOptimizerType.parse(self.solver_type)
        self.mesh_color_type = MeshColorType.parse(self.mesh_color_type)
        self.validate()

    def validate(self) -> None:
        """Check the numeric parameters for consistency.

        Raises:
            ConfigurationError: If a parameter is out of range
        """
        if not 0.0 < self.min_z <= self.max_z:
            raise ConfigurationError(
                f"Depth gate must satisfy 0 < min_z <= max_z, got "
                f"min_z={self.min_z}, max_z={self.max_z}"
            )
        if self.depth_meas_noise_sigma <= 0:
            raise ConfigurationError(
                f"depth_meas_noise_sigma must be positive, got {self.depth_meas_noise_sigma}"
            )
        if self.spring_noise_sigma <= 0:
            raise ConfigurationError(
                f"spring_noise_sigma must be positive, got {self.spring_noise_sigma}"
            )
        if self.min_valid_datapoints < 0:
            raise ConfigurationError(
                f"min_valid_datapoints must be non-negative, got {self.min_valid_datapoints}"
            )

    @classmethod
    def from_dict(cls, config: Optional[Dict]) -> "MeshOptimizationParams":
        """Build parameters from a configuration dictionary.

        Unknown keys are ignored with a warning.

        Args:
            config: The ``mesh_optimization`` section of the configuration

        Returns:
            Validated parameters
        """
        if config is None:
            config = {}

        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(config) - known)
        if unknown:
            logger.warning(f"Ignoring unknown mesh optimization options: {unknown}")

        return cls(**{k: v for k, v in config.items() if k in known})

    def to_dict(self) -> Dict:
        params = asdict(self)
        params["solver_type"] = self.solver_type.value
        params["mesh_color_type"] = self.mesh_color_type.value
        return params


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file, defaults to the repository config.yaml

    Returns:
        Configuration dictionary
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    with open(config_path, "r") as f:
        config = yaml.safe_load(f)

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration in {config_path} must be a mapping")

    logger.debug(f"Loaded configuration from {config_path}")
    return config
