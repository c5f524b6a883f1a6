import logging

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


class DefaultConfig:
    """
    Default configuration values for the pgls package.
    """
    def __init__(self):
        # Model defaults
        self.estimation_method = 'REML'  # 'REML' or 'ML'
        self.correlation_model = 'brownian'  # 'independence', 'brownian', 'pagel', 'ou'

        # Covariance normalisation
        self.normalization = 'height'  # 'height' (ultrametric only) or 'per_tip'
        self.ultrametric_tolerance = 1.4901161193847656e-08  # relative to tree height

        # Numerical checks
        self.positive_definite_tolerance = 1e-10  # smallest/largest eigenvalue
        self.rank_tolerance = None  # None lets numpy pick from the matrix size

        # Shape parameters
        self.allow_lambda_above_one = False
        self.lambda_bounds = [0.0, 1.0]
        self.ou_alpha_bounds = [1e-3, 50.0]

        # Optimiser
        self.optimizer_xatol = 1e-6
        self.optimizer_maxiter = 500
        self.strict_convergence = False

        # Data input
        self.id_column = 'species'
        self.tree_format = 'newick'  # 'newick' or 'nexus'
        self.separator = ','

        # Logging
        self.log_level = 'INFO'

    def update(self, values):
        """
        Overrides defaults with the given mapping. Unknown keys are logged and ignored.

        Args:
            values (dict): Configuration values keyed by attribute name.

        Returns:
            DefaultConfig: self, for chaining.
        """
        for key, value in values.items():
            if not hasattr(self, key):
                logger.warning("Ignoring unknown configuration key %r", key)
                continue
            setattr(self, key, value)
        return self

    def as_dict(self):
        return dict(self.__dict__)

    def __str__(self):
        return str(self.__dict__)


def load_config(config_path: str) -> DefaultConfig:
    """
    Loads a configuration from a YAML file and merges it with default settings.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        A DefaultConfig whose attributes carry the user's overrides.

    Raises:
        ConfigError: If the YAML cannot be parsed or is not a mapping.
    """
    config = DefaultConfig()

    try:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning("Configuration file not found at '%s'. Using default configuration.", config_path)
        return config
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML configuration file at '{config_path}': {e}") from e

    if user_config:  # If the user file is not empty
        if not isinstance(user_config, dict):
            raise ConfigError(
                f"Configuration file '{config_path}' must hold a mapping, got {type(user_config).__name__}"
            )
        config.update(user_config)

    return config
