"""
YAML-based configuration module for stax

This module is responsible for loading and managing configuration
from YAML files, with support for nested sections and .env overrides.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values

from stax.models import ENVIRONMENTS, RetentionPolicy

PROJECT_CONFIG_NAME = ".stax.yml"
STAX_HOME = Path(os.environ.get("STAX_HOME", Path.home() / ".stax"))

DEFAULTS: Dict[str, Any] = {
    "project": {
        "type": "wordpress",
        "table_prefix": "wp_",
    },
    "wpengine": {
        "environment": "production",
        "ssh_gateway": "ssh.wpengine.net",
        "ssh_port": 22,
        "api_base_url": "https://api.wpengineapi.com/v1",
        "domains": {},
    },
    "urls": {},
    "network": {
        "sites": [],
    },
    "snapshots": {
        "retention": {
            "auto": 7,
            "manual": 30,
        },
        "auto_prune": True,
    },
    "transfer": {
        "bandwidth_limit": 0,
        "workers": 4,
        "include": [],
        "exclude": [],
        "verify": False,
    },
    "replace": {
        "batch_size": 500,
        "skip_tables": [],
        "skip_columns": [],
    },
    "timeouts": {
        "export": 600,
        "file_sync": 1800,
        "import": 600,
    },
    "ddev": {
        "base_path": "/var/www/html",
        "docroot": "",
    },
    "wp_cli": {
        "memory_limit": "512M",
    },
}

# .env variable -> configuration path
ENV_MAPPINGS = {
    "STAX_PROJECT": ("project", "name"),
    "WPENGINE_INSTALL": ("wpengine", "install"),
    "WPENGINE_ENVIRONMENT": ("wpengine", "environment"),
    "STAX_LOCAL_URL": ("urls", "local"),
    "STAX_SNAPSHOT_DIR": ("snapshots", "directory"),
}


class YAMLConfig:
    """
    Class for managing YAML-based configuration of a single project
    """

    def __init__(self, verbose=False, project_root: Optional[Path] = None,
                 global_config_file: Optional[Path] = None):
        """
        Initializes configuration from YAML files

        Args:
            verbose (bool): Enable detailed mode
            project_root: Directory of the project (detected when omitted)
            global_config_file: Path of the user-wide configuration file
        """
        self.verbose = verbose
        self.config: Dict[str, Any] = copy.deepcopy(DEFAULTS)
        self.project_root = Path(project_root) if project_root else self._detect_project_root()
        self.global_config_file = Path(global_config_file) if global_config_file else STAX_HOME / "config.yml"
        self.project_config_file = self.project_root / PROJECT_CONFIG_NAME

        self._load_config()
        self._load_env_vars()

        if not self.get("project", "name"):
            self._set_nested_value(self.config, ("project", "name"), self.project_root.name)

    def _detect_project_root(self) -> Path:
        """
        Walks up from the working directory looking for a project configuration file

        Returns:
            Path: Directory holding .stax.yml, or the working directory
        """
        current = Path.cwd().resolve()
        for candidate in [current, *current.parents]:
            if (candidate / PROJECT_CONFIG_NAME).exists():
                if self.verbose:
                    print(f"Detected project directory: {candidate}")
                return candidate
        return current

    def _load_config(self):
        """
        Loads the global file first, then the project file on top of it
        """
        for config_file in (self.global_config_file, self.project_config_file):
            data = self._load_yaml_file(config_file)
            if data:
                self.merge_config(data)
                if self.verbose:
                    print(f"Configuration loaded from: {config_file}")

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """
        Loads a YAML file

        Args:
            file_path: Path to the YAML file

        Returns:
            Dict: Parsed mapping, empty when the file does not exist

        Raises:
            ValueError: If the file is not valid YAML or not a mapping
        """
        if not file_path.exists():
            return {}
        try:
            with open(file_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {file_path} must contain a mapping")
        return data

    def _update_dict_recursive(self, target: Dict, source: Dict):
        """
        Updates a dictionary recursively

        Args:
            target: Destination dictionary
            source: Source dictionary
        """
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._update_dict_recursive(target[key], value)
            else:
                target[key] = value

    def _load_env_vars(self):
        """
        Applies values from the project's .env file, then from the process environment
        """
        env_file = self.project_root / ".env"
        values: Dict[str, Optional[str]] = {}
        if env_file.exists():
            values.update(dotenv_values(env_file))
            if self.verbose:
                print(f"Environment file loaded: {env_file}")

        for name in ENV_MAPPINGS:
            if os.environ.get(name):
                values[name] = os.environ[name]

        for name, path in ENV_MAPPINGS.items():
            value = values.get(name)
            if value:
                self._set_nested_value(self.config, path, value)

    def _set_nested_value(self, target: Dict, path: tuple, value: Any):
        """
        Sets a value in a nested dictionary according to a path

        Args:
            target: Destination dictionary
            path: Tuple with key path to access the value
            value: Value to set
        """
        current = target
        for i, key in enumerate(path):
            if i == len(path) - 1:
                current[key] = value
            else:
                if key not in current or not isinstance(current[key], dict):
                    current[key] = {}
                current = current[key]

    def get(self, *path: str, default: Any = None) -> Any:
        """
        Gets a configuration value according to a key path

        Args:
            *path: Key path to access the value
            default: Default value if the path is not found

        Returns:
            The configuration value or the default value
        """
        current = self.config
        for key in path:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
        return current

    def get_strict(self, *path: str) -> Any:
        """
        Gets a configuration value following the fail-fast principle

        Args:
            *path: Key path to access the value

        Returns:
            Any: The configuration value

        Raises:
            ValueError: If the path does not exist in the configuration
        """
        current = self.config
        for i, key in enumerate(path):
            if not isinstance(current, dict):
                path_str = " -> ".join(path[:i])
                raise ValueError(f"Configuration path '{path_str}' is not a dictionary")
            if key not in current or current[key] in (None, ""):
                path_str = " -> ".join(path[: i + 1])
                raise ValueError(f"Key '{key}' does not exist in path '{path_str}'")
            current = current[key]
        return current

    def set(self, *path: str, value: Any):
        self._set_nested_value(self.config, tuple(path), value)

    def merge_config(self, config: Dict[str, Any]):
        """
        Merges the provided configuration with the current configuration

        Args:
            config: Dictionary with configuration to merge
        """
        if not config:
            return
        self._update_dict_recursive(self.config, config)

    # Typed accessors used by the pipeline

    @property
    def project_name(self) -> str:
        return self.get_strict("project", "name")

    @property
    def is_multisite(self) -> bool:
        return self.get("project", "type") == "wordpress-multisite"

    @property
    def table_prefix(self) -> str:
        return self.get("project", "table_prefix", default="wp_") or "wp_"

    def get_install(self, environment: Optional[str] = None) -> str:
        """
        Gets the provider install name, optionally overridden per environment

        Args:
            environment: production, staging or development

        Returns:
            str: Install name

        Raises:
            ValueError: If no install is configured
        """
        if environment:
            per_env = self.get("wpengine", "installs", environment)
            if per_env:
                return per_env
        return self.get_strict("wpengine", "install")

    def get_environment(self, override: Optional[str] = None) -> str:
        environment = override or self.get("wpengine", "environment", default="production")
        if environment not in ENVIRONMENTS:
            raise ValueError(f"Unknown environment '{environment}', expected one of {', '.join(ENVIRONMENTS)}")
        return environment

    def get_snapshot_dir(self) -> Path:
        configured = self.get("snapshots", "directory")
        if configured:
            return Path(os.path.expanduser(str(configured)))
        return STAX_HOME / "snapshots"

    def get_retention(self) -> RetentionPolicy:
        return RetentionPolicy(
            auto_days=int(self.get("snapshots", "retention", "auto", default=7)),
            manual_days=int(self.get("snapshots", "retention", "manual", default=30)),
        )

    def get_network_sites(self) -> List[Dict[str, Any]]:
        sites = self.get("network", "sites", default=[]) or []
        return [site for site in sites if isinstance(site, dict) and site.get("active", True)]

    def get_wp_memory_limit(self) -> str:
        return self.get_strict("wp_cli", "memory_limit")

    def display(self):
        """
        Displays the current configuration in a structured format
        """
        print("\n🔧 Loaded configuration:")
        self._display_dict(self.config)
        print()

    def _display_dict(self, data: Dict, indent: int = 1):
        for key, value in data.items():
            if "password" in key.lower() or "pass" in key.lower() or "key" in key.lower():
                display_value = "***********"
            elif isinstance(value, dict):
                print(f"{'   ' * indent}- {key}:")
                self._display_dict(value, indent + 1)
                continue
            else:
                display_value = value
            print(f"{'   ' * indent}- {key}: {display_value}")


# Global function to get the configuration
_config_instance = None


def get_yaml_config(verbose=False) -> YAMLConfig:
    """
    Gets the unique instance of the configuration

    Args:
        verbose: If True, shows additional information

    Returns:
        YAMLConfig: Configuration instance
    """
    global _config_instance

    if not _config_instance:
        _config_instance = YAMLConfig(verbose=verbose)

    return _config_instance


def reset_yaml_config():
    """
    Drops the cached instance so the next call reloads from disk
    """
    global _config_instance
    _config_instance = None
