# Copyright 2025 boltzkit Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Configuration management for training runs.

This module loads, validates and saves run configurations:
- YAML or JSON files
- Dotted-key overrides (e.g. {'optimizer.lr': 0.01})
- Schema validation with jsonschema
- Conversion to a TrainingConfig and to an RBM

Usage:
    from boltzkit.config import ConfigManager, TrainingConfig

    config = ConfigManager.load('configs/cd_default.yaml',
                                overrides={'training.iterations': 500})
    options = TrainingConfig.from_dict(config)
    rbm = ConfigManager.build_model(config)
"""

import yaml
import json
import copy
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import torch
from jsonschema import validate, ValidationError

from .models.layers import LAYER_TYPES
from .models.rbm import RBM
from .models.utils import ConfigValidationError

logger = logging.getLogger(__name__)


_LAYER_SCHEMA = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": sorted(LAYER_TYPES)},
        "shape": {
            "type": "array",
            "items": {"type": "integer", "minimum": 1},
            "minItems": 1
        }
    },
    "required": ["type", "shape"]
}


@dataclass
class TrainingConfig:
    """
    Options of a contrastive divergence run.

    Attributes:
        iterations: Number of parameter updates (> 0)
        steps: Block Gibbs round trips per iteration (>= 1)
        persistent: Carry the negative chain across iterations
        batch_size: Minibatch size
        lr: Adam step size
        betas: Adam decay rates of the first and second moments
        eps: Adam denominator offset
        weight_decay: L2 penalty applied by the optimizer
        reseed_every: Re-seed the persistent chain from the current batch
            every this many iterations (0 = never)
        seed: Seed of the sampling stream (if None, non-deterministic)
        log_interval: Iterations between metric logs
    """

    iterations: int = 1000
    steps: int = 1
    persistent: bool = False
    batch_size: int = 64
    lr: float = 1e-3
    betas: Tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    weight_decay: float = 0.0
    reseed_every: int = 0
    seed: Optional[int] = None
    log_interval: int = 100

    def __post_init__(self):
        self.betas = tuple(self.betas)
        if not isinstance(self.iterations, int) or self.iterations <= 0:
            raise ConfigValidationError(f"iterations must be a positive integer, got {self.iterations}")
        if not isinstance(self.steps, int) or self.steps < 1:
            raise ConfigValidationError(f"steps must be an integer >= 1, got {self.steps}")
        if self.batch_size < 1:
            raise ConfigValidationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.lr <= 0:
            raise ConfigValidationError(f"lr must be positive, got {self.lr}")
        if len(self.betas) != 2 or not all(0 <= b < 1 for b in self.betas):
            raise ConfigValidationError(f"betas must be two values in [0, 1), got {self.betas}")
        if self.reseed_every < 0:
            raise ConfigValidationError(f"reseed_every must be >= 0, got {self.reseed_every}")
        if self.log_interval < 1:
            raise ConfigValidationError(f"log_interval must be >= 1, got {self.log_interval}")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'TrainingConfig':
        """Build options from the 'training' and 'optimizer' sections of a config."""
        options = dict(config.get('training', {}))
        options.update(config.get('optimizer', {}))
        known = set(cls.__dataclass_fields__)
        unknown = set(options) - known
        if unknown:
            raise ConfigValidationError(f"Unknown training options: {sorted(unknown)}")
        return cls(**options)

    def to_dict(self) -> Dict[str, Any]:
        options = asdict(self)
        options['betas'] = list(self.betas)
        return options


class ConfigManager:
    """Configuration loading and validation for training runs."""

    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "description": {"type": "string"},
            "model": {
                "type": "object",
                "properties": {
                    "visible": _LAYER_SCHEMA,
                    "hidden": _LAYER_SCHEMA,
                    "weight_std": {"type": "number", "exclusiveMinimum": 0}
                },
                "required": ["visible", "hidden"]
            },
            "training": {
                "type": "object",
                "properties": {
                    "iterations": {"type": "integer", "minimum": 1},
                    "steps": {"type": "integer", "minimum": 1},
                    "persistent": {"type": "boolean"},
                    "batch_size": {"type": "integer", "minimum": 1},
                    "reseed_every": {"type": "integer", "minimum": 0},
                    "seed": {"type": ["integer", "null"]},
                    "log_interval": {"type": "integer", "minimum": 1}
                },
                "required": ["iterations"]
            },
            "optimizer": {
                "type": "object",
                "properties": {
                    "lr": {"type": "number", "exclusiveMinimum": 0},
                    "betas": {
                        "type": "array",
                        "items": {"type": "number", "minimum": 0, "exclusiveMaximum": 1},
                        "minItems": 2,
                        "maxItems": 2
                    },
                    "eps": {"type": "number", "exclusiveMinimum": 0},
                    "weight_decay": {"type": "number", "minimum": 0}
                }
            }
        },
        "required": ["training"]
    }

    @classmethod
    def load(
        cls,
        config_path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
        validate_config: bool = True
    ) -> Dict[str, Any]:
        """
        Load configuration with optional overrides.

        Args:
            config_path: Path to a .yaml, .yml or .json file
            overrides: Dotted-key parameter overrides
            validate_config: Whether to validate the configuration

        Returns:
            Loaded configuration dictionary
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                config = yaml.safe_load(f) or {}
            elif config_path.suffix.lower() == '.json':
                config = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path.suffix}")

        logger.info(f"Loaded configuration from {config_path}")

        if overrides:
            config = cls._apply_overrides(config, overrides)
            logger.info(f"Applied {len(overrides)} parameter overrides")

        if validate_config:
            cls.validate(config)

        return config

    @classmethod
    def validate(cls, config: Dict[str, Any]) -> None:
        """
        Validate configuration against the schema.

        Raises:
            ConfigValidationError: If the configuration is invalid
        """
        try:
            validate(instance=config, schema=cls.CONFIG_SCHEMA)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e.message}")
            raise ConfigValidationError(e.message) from e
        logger.debug("Configuration validation passed")

    @classmethod
    def save(
        cls,
        config: Dict[str, Any],
        output_path: Union[str, Path],
        format: str = 'yaml'
    ) -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration dictionary to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            if format.lower() == 'yaml':
                yaml.safe_dump(config, f, default_flow_style=False, indent=2)
            elif format.lower() == 'json':
                json.dump(config, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Saved configuration to {output_path}")

    @classmethod
    def build_model(
        cls,
        config: Dict[str, Any],
        dtype: torch.dtype = torch.float64,
        device: Optional[torch.device] = None
    ) -> RBM:
        """Create an RBM from the 'model' section of a configuration."""
        if 'model' not in config:
            raise ConfigValidationError("Configuration has no 'model' section")
        model_config = config['model']
        vis_config, hid_config = model_config['visible'], model_config['hidden']
        rbm = RBM.from_shapes(
            LAYER_TYPES[vis_config['type']], tuple(vis_config['shape']),
            LAYER_TYPES[hid_config['type']], tuple(hid_config['shape']),
            dtype=dtype, device=device,
        )
        if 'weight_std' in model_config:
            rbm.initialize(weight_std=model_config['weight_std'])
        return rbm

    @staticmethod
    def _apply_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Apply parameter overrides using dot notation."""
        result = copy.deepcopy(config)

        for key, value in overrides.items():
            ConfigManager._set_nested_value(result, key, value)

        return result

    @staticmethod
    def _set_nested_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
        """Set nested value using dot notation."""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value


def load_config(config_path: Union[str, Path], **kwargs) -> Dict[str, Any]:
    """Convenience function to load configuration."""
    return ConfigManager.load(config_path, **kwargs)
