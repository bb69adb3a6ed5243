"""Stage representation for pipeline execution."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

from ..errors import ConfigurationError


@dataclass
class Stage:
    """A single pipeline step applied to the working Dataset.

    Attributes
    ----------
    name : str
        Human-readable stage name (e.g., "Quality control")
    stage_id : str
        Short identifier used in ``depends_on`` and checkpoints
    operation : str
        Registered operation name (e.g., "qc", "cluster")
    depends_on : List[str]
        Stage IDs that must complete first
    params : Dict[str, Any]
        Keyword parameters for the operation
    inputs : Dict[str, str]
        Files read by the stage; checked before execution
    outputs : Dict[str, str]
        Files written by the stage; checked after execution
    optional : bool
        Skip the stage instead of failing when an input is missing

    Example
    -------
    >>> stage = Stage(
    ...     name="Quality control",
    ...     stage_id="qc",
    ...     operation="qc",
    ...     depends_on=["load"],
    ...     params={"min_features_per_cell": 200, "max_pct": {"mt": 5}},
    ... )
    >>> stage.describe()
    "qc(max_pct={'mt': 5}, min_features_per_cell=200)"
    """

    name: str
    stage_id: str
    operation: str
    depends_on: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    optional: bool = False

    def missing_inputs(self) -> List[str]:
        """Describe every declared input that does not exist."""
        return [
            f"Input '{name}' not found: {path}"
            for name, path in self.inputs.items()
            if not Path(path).exists()
        ]

    def validate_outputs(self) -> Tuple[bool, List[str]]:
        """Check if all declared outputs exist after execution.

        Returns
        -------
        Tuple[bool, List[str]]
            (success, errors) where errors lists the missing outputs
        """
        errors = [
            f"Output '{name}' not found: {path}"
            for name, path in self.outputs.items()
            if not Path(path).exists()
        ]
        return (len(errors) == 0, errors)

    def describe(self) -> str:
        """One-line call description used in dry-run plans."""
        parts = []
        for key in sorted(self.params):
            value = self.params[key]
            if isinstance(value, (dict, list)) and len(str(value)) > 40:
                value = "{...}" if isinstance(value, dict) else "[...]"
            parts.append(f"{key}={value}")
        return f"{self.operation}({', '.join(parts)})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage to dictionary for serialization."""
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "operation": self.operation,
            "depends_on": list(self.depends_on),
            "params": dict(self.params),
            "inputs": dict(self.inputs),
            "outputs": dict(self.outputs),
            "optional": self.optional,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], stage_id: str) -> "Stage":
        """Create Stage from a stage definition.

        Parameters
        ----------
        data : Dict[str, Any]
            Stage definition; ``operation`` is required
        stage_id : str
            Stage identifier

        Raises
        ------
        ConfigurationError
            If ``operation`` is missing
        """
        if "operation" not in data:
            raise ConfigurationError(f"Stage '{stage_id}' missing required field 'operation'")
        return cls(
            name=data.get("name", stage_id),
            stage_id=stage_id,
            operation=data["operation"],
            depends_on=list(data.get("depends_on") or []),
            params=dict(data.get("params") or {}),
            inputs=dict(data.get("inputs") or {}),
            outputs=dict(data.get("outputs") or {}),
            optional=bool(data.get("optional", False)),
        )
