"""
Configuration management for the SfM core.

This module provides centralized configuration handling with validation,
defaults, and YAML overrides.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, TextIO
from dataclasses import dataclass, field, asdict

logger = logging.getLogger(__name__)


@dataclass
class SiftOptions:
    """Options for the SIFT detector. Negative values mean "not set"."""
    max_working_dimension: int = -1
    first_octave: int = -1
    max_octaves: int = -1
    dog_levels_in_an_octave: int = -1
    dog_thresh: float = -1.0
    edge_thresh: float = -1.0
    detect_upright_sift: bool = False
    verbosity_level: int = 0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_working_dimension == 0:
            raise ValueError("max_working_dimension must be positive or unset (-1)")
        if self.max_octaves == 0:
            raise ValueError("max_octaves must be positive or unset (-1)")
        if self.dog_levels_in_an_octave == 0:
            raise ValueError("dog_levels_in_an_octave must be positive or unset (-1)")
        if self.verbosity_level < 0:
            raise ValueError("verbosity_level must be non-negative")

    def is_set_max_working_dimension(self) -> bool:
        return self.max_working_dimension >= 0

    def is_set_max_octaves(self) -> bool:
        return self.max_octaves >= 0

    def is_set_dog_levels_in_an_octave(self) -> bool:
        return self.dog_levels_in_an_octave >= 0

    def is_set_dog_thresh(self) -> bool:
        return self.dog_thresh >= 0

    def is_set_edge_thresh(self) -> bool:
        return self.edge_thresh >= 0

    def write(self, stream: TextIO) -> None:
        """Write the options one per line."""
        for key, value in asdict(self).items():
            stream.write(f" {key}: {value}\n")


@dataclass
class CameraConfig:
    """Configuration for camera models."""
    camera_type: str = "radial"  # Options: standard, radial
    inverse_distortion_tolerance: float = 1e-3  # Normalized image units
    inverse_distortion_samples: int = 100

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_types = ["standard", "radial"]
        if self.camera_type not in valid_types:
            raise ValueError(f"Invalid camera_type: {self.camera_type}. Must be one of {valid_types}")
        if self.inverse_distortion_tolerance <= 0:
            raise ValueError("inverse_distortion_tolerance must be positive")
        if self.inverse_distortion_samples < 8:
            raise ValueError("inverse_distortion_samples must be at least 8")


@dataclass
class BundleAdjustmentConfig:
    """Configuration for bundle adjustment."""
    max_nfev: int = 100
    loss: str = "huber"  # Options: linear, huber, soft_l1, cauchy
    f_scale: float = 2.0  # Robust loss scale in pixels
    ftol: float = 1e-8
    verbose: int = 0
    show_progress: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_nfev <= 0:
            raise ValueError("max_nfev must be positive")
        valid_losses = ["linear", "huber", "soft_l1", "cauchy"]
        if self.loss not in valid_losses:
            raise ValueError(f"Invalid loss: {self.loss}. Must be one of {valid_losses}")
        if self.f_scale <= 0:
            raise ValueError("f_scale must be positive")
        if self.ftol <= 0:
            raise ValueError("ftol must be positive")
        if self.verbose not in (0, 1, 2):
            raise ValueError("verbose must be 0, 1 or 2")


@dataclass
class SfMConfig:
    """Complete configuration for the SfM core."""
    sift: SiftOptions = field(default_factory=SiftOptions)
    camera: CameraConfig = field(default_factory=CameraConfig)
    bundle_adjustment: BundleAdjustmentConfig = field(default_factory=BundleAdjustmentConfig)

    # Runtime options
    show_progress: bool = True
    verbose: bool = False


class ConfigManager:
    """Manager for loading and merging configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to user configuration file, or None for defaults
        """
        self.default_config_path = Path(__file__).parent.parent.parent.parent / "config" / "sfm_core.yaml"
        self.config_path = Path(config_path) if config_path is not None else None
        self.config = self._load_config()

    def _load_config(self) -> SfMConfig:
        """Load and merge configuration from files."""
        # Start with default configuration
        config_dict = self._get_default_config_dict()

        # Load default YAML if it exists
        if self.default_config_path.exists():
            default_yaml = self._load_yaml(self.default_config_path)
            config_dict = self._merge_configs(config_dict, default_yaml)
            logger.debug(f"Loaded default config from {self.default_config_path}")

        # Load user YAML if provided
        if self.config_path is not None:
            if self.config_path.exists():
                user_yaml = self._load_yaml(self.config_path)
                config_dict = self._merge_configs(config_dict, user_yaml)
                logger.info(f"Loaded user config from {self.config_path}")
            else:
                logger.warning(f"Config file {self.config_path} does not exist, using defaults")

        return self._dict_to_config(config_dict)

    def _get_default_config_dict(self) -> Dict[str, Any]:
        """Get default configuration as dictionary."""
        return asdict(SfMConfig())

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping at top level")
        return data

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively merge configuration dictionaries.

        Args:
            base: Base configuration
            override: Configuration to override with

        Returns:
            Merged configuration
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _dict_to_config(self, config_dict: Dict[str, Any]) -> SfMConfig:
        """Convert dictionary to structured configuration object."""
        return SfMConfig(
            sift=SiftOptions(**config_dict.get('sift', {})),
            camera=CameraConfig(**config_dict.get('camera', {})),
            bundle_adjustment=BundleAdjustmentConfig(**config_dict.get('bundle_adjustment', {})),
            show_progress=config_dict.get('show_progress', True),
            verbose=config_dict.get('verbose', False)
        )

    def save_config(self, path: Path) -> None:
        """Save current configuration to YAML file."""
        with open(path, 'w') as f:
            yaml.dump(asdict(self.config), f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration to {path}")

    def update_from_args(self, **kwargs) -> None:
        """Update configuration from command-line arguments."""
        for key, value in kwargs.items():
            if value is None:
                continue
            if '.' in key:
                parts = key.split('.')
                obj = self.config
                for part in parts[:-1]:
                    obj = getattr(obj, part)
                setattr(obj, parts[-1], value)
            elif hasattr(self.config, key):
                setattr(self.config, key, value)

    def validate(self) -> None:
        """Validate the complete configuration."""
        self.config.sift.__post_init__()
        self.config.camera.__post_init__()
        self.config.bundle_adjustment.__post_init__()
