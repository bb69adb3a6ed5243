"""Pipeline configuration loader and validator."""

import re
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from ..errors import ConfigurationError
from .stage import Stage

TEMPLATE_PATTERN = re.compile(r"\{([^{}]+)\}")


class PipelineConfig:
    """Loads and manages a pipeline definition from YAML.

    The file has three sections: ``pipeline`` (name, version),
    ``global`` (shared values such as ``output_dir`` or ``seed``) and
    ``stages`` (mapping of stage id to stage definition). String values
    in stage params, inputs and outputs may reference other values as
    ``{global.output_dir}`` or ``{stages.qc.outputs.report}``. A value
    that is exactly one reference keeps the referenced type, so
    ``random_seed: "{global.seed}"`` resolves to an int.

    Parameters
    ----------
    config_path : str
        Path to the YAML configuration file

    Attributes
    ----------
    config_path : Path
        Path to the configuration file
    raw_config : Dict[str, Any]
        Raw configuration dictionary loaded from YAML
    stages : Dict[str, Stage]
        Stage objects keyed by stage id, in file order
    global_settings : Dict[str, Any]
        ``pipeline`` and ``global`` sections

    Example
    -------
    >>> config = PipelineConfig("pipeline.yaml")
    >>> config.load()
    >>> config.parse_stages()
    >>> valid, errors = config.validate_dependencies()
    >>> order = config.get_execution_order()
    """

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self.raw_config: Dict[str, Any] = {}
        self.stages: Dict[str, Stage] = {}
        self.global_settings: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return str(self.global_settings.get("pipeline", {}).get("name", "cellscope"))

    @property
    def version(self) -> str:
        return str(self.global_settings.get("pipeline", {}).get("version", "1.0"))

    def load(self) -> None:
        """Load YAML configuration file.

        Raises
        ------
        FileNotFoundError
            If config file doesn't exist
        yaml.YAMLError
            If YAML is malformed
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, "r") as f:
            self.raw_config = yaml.safe_load(f) or {}

        self.global_settings = {
            "pipeline": self.raw_config.get("pipeline", {}),
            "global": self.raw_config.get("global", {}),
        }

    def parse_stages(self) -> None:
        """Convert stage definitions to Stage objects with templates resolved.

        Raises
        ------
        ConfigurationError
            If there is no ``stages`` section or a stage lacks ``operation``
        """
        stage_defs = self.raw_config.get("stages")
        if not stage_defs:
            raise ConfigurationError("No 'stages' section in configuration")

        self.stages = {}
        for stage_id, stage_def in stage_defs.items():
            stage_def = dict(stage_def or {})
            for section in ("params", "inputs", "outputs"):
                stage_def[section] = self.resolve_value(stage_def.get(section) or {})
            self.stages[str(stage_id)] = Stage.from_dict(stage_def, str(stage_id))

    def _lookup(self, reference: str) -> Any:
        value: Any = self.raw_config
        for part in reference.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def resolve_paths(self, path_template: str) -> str:
        """Resolve ``{a.b.c}`` references inside a string.

        Unknown references and references to mappings are left as
        written. Resolved text is resolved again so references may chain.

        Parameters
        ----------
        path_template : str
            String possibly containing {...} templates

        Returns
        -------
        str
            Resolved string
        """
        if "{" not in path_template:
            return path_template

        def replace_template(match):
            value = self._lookup(match.group(1))
            if value is None or isinstance(value, (dict, list)):
                return match.group(0)
            return str(value)

        resolved = TEMPLATE_PATTERN.sub(replace_template, path_template)

        if resolved != path_template and "{" in resolved:
            return self.resolve_paths(resolved)

        return resolved

    def resolve_value(self, value: Any) -> Any:
        """Resolve templates in nested params, keeping types of whole references."""
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        if not isinstance(value, str):
            return value
        whole = TEMPLATE_PATTERN.fullmatch(value)
        if whole:
            target = self._lookup(whole.group(1))
            if target is not None and not isinstance(target, str):
                return target
        return self.resolve_paths(value)

    def validate_dependencies(self) -> Tuple[bool, List[str]]:
        """Validate stage dependencies.

        Checks that all dependency stage ids exist and there are no
        circular dependencies.

        Returns
        -------
        Tuple[bool, List[str]]
            (valid, errors) where valid is True if all dependencies are valid
        """
        errors = []

        for stage_id, stage in self.stages.items():
            for dep in stage.depends_on:
                if dep not in self.stages:
                    errors.append(f"Stage '{stage_id}' depends on unknown stage '{dep}'")

        if not errors and self._has_cycle():
            errors.append("Circular dependency detected in stage dependencies")

        return (len(errors) == 0, errors)

    def _has_cycle(self) -> bool:
        visited = set()
        rec_stack = set()

        def visit(node: str) -> bool:
            visited.add(node)
            rec_stack.add(node)
            for dep in self.stages[node].depends_on:
                if dep not in self.stages:
                    continue
                if dep not in visited:
                    if visit(dep):
                        return True
                elif dep in rec_stack:
                    return True
            rec_stack.remove(node)
            return False

        return any(visit(sid) for sid in self.stages if sid not in visited)

    def validate_operations(self, known: Iterable[str]) -> Tuple[bool, List[str]]:
        """Check that every stage names a known operation."""
        known = set(known)
        errors = [
            f"Stage '{stage_id}' uses unknown operation '{stage.operation}'"
            for stage_id, stage in self.stages.items()
            if stage.operation not in known
        ]
        return (len(errors) == 0, errors)

    def get_execution_order(self) -> List[str]:
        """Compute stage execution order via topological sort.

        Uses Kahn's algorithm; stages that become ready together keep
        their file order.

        Returns
        -------
        List[str]
            Stage ids in execution order

        Raises
        ------
        ConfigurationError
            If circular dependencies are detected
        """
        in_degree = {stage_id: len(stage.depends_on) for stage_id, stage in self.stages.items()}

        queue = deque([sid for sid, degree in in_degree.items() if degree == 0])
        order = []

        while queue:
            stage_id = queue.popleft()
            order.append(stage_id)

            for other_id, other_stage in self.stages.items():
                if stage_id in other_stage.depends_on:
                    in_degree[other_id] -= 1
                    if in_degree[other_id] == 0:
                        queue.append(other_id)

        if len(order) != len(self.stages):
            raise ConfigurationError(
                "Circular dependency detected - cannot compute execution order"
            )

        return order

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        """Get a stage by its id, or None if not found."""
        return self.stages.get(stage_id)

    def list_stages(self) -> List[str]:
        """List all stage ids."""
        return list(self.stages.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "pipeline": self.global_settings.get("pipeline", {}),
            "global": self.global_settings.get("global", {}),
            "stages": {
                stage_id: stage.to_dict()
                for stage_id, stage in self.stages.items()
            },
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "PipelineConfig":
        """Create a parsed PipelineConfig from a dictionary.

        Parameters
        ----------
        config_dict : Dict[str, Any]
            Configuration with ``pipeline``, ``global`` and ``stages``

        Returns
        -------
        PipelineConfig
            Config with stages parsed and templates resolved
        """
        config = cls.__new__(cls)
        config.config_path = Path(".")
        config.raw_config = config_dict
        config.global_settings = {
            "pipeline": config_dict.get("pipeline", {}),
            "global": config_dict.get("global", {}),
        }
        config.stages = {}
        config.parse_stages()
        return config
