"""Pipeline execution engine with checkpoint support."""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.dataset import Dataset
from ..errors import ConfigurationError
from ..io import to_builtin
from .config import PipelineConfig
from .logger import PipelineLogger
from .operations import OPERATIONS, PipelineContext, get_operation
from .stage import Stage


class PipelineExecutor:
    """Runs pipeline stages in dependency order over one in-memory Dataset.

    After every completed stage the executor records the stage id and its
    summary in a JSON state file and, when a snapshot directory is set,
    writes the working Dataset to ``<snapshot_dir>/<stage_id>.h5ad``. A
    later run with the same state file skips completed stages and
    restores the Dataset from the newest snapshot.

    Stage failures are logged and re-raised; the state file keeps every
    stage completed before the failure.

    Parameters
    ----------
    config : PipelineConfig
        Parsed pipeline configuration
    logger : PipelineLogger
        Initialized PipelineLogger instance
    state_file : str, optional
        Path to the checkpoint state file. None disables checkpoints.
    snapshot_dir : str, optional
        Directory for per-stage Dataset snapshots. None disables them.

    Attributes
    ----------
    completed_stages : List[str]
        Successfully completed stage ids, in completion order
    context : PipelineContext
        Working dataset and stage summaries

    Example
    -------
    >>> config = PipelineConfig("pipeline.yaml")
    >>> config.load()
    >>> config.parse_stages()
    >>> logger = PipelineLogger("logs/")
    >>> logger.setup()
    >>> executor = PipelineExecutor(
    ...     config, logger, state_file="out/.state.json", snapshot_dir="out/checkpoints"
    ... )
    >>> dataset = executor.run()
    """

    def __init__(
        self,
        config: PipelineConfig,
        logger: PipelineLogger,
        state_file: Optional[str] = None,
        snapshot_dir: Optional[str] = None,
    ):
        self.config = config
        self.logger = logger
        self.state_file = Path(state_file) if state_file else None
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self.completed_stages: List[str] = []
        self.snapshots: Dict[str, str] = {}
        self.context = PipelineContext(logger=logger.logger)

    def validate(self) -> None:
        """Check dependencies and operation names.

        Raises
        ------
        ConfigurationError
            Listing every problem found
        """
        errors: List[str] = []
        for check in (
            self.config.validate_dependencies(),
            self.config.validate_operations(OPERATIONS),
        ):
            errors.extend(check[1])
        if errors:
            for error in errors:
                self.logger.log_error(error)
            raise ConfigurationError("Invalid pipeline: " + "; ".join(errors))

    def load_state(self) -> None:
        """Load checkpoint state from a previous run.

        A missing state file starts fresh; an unreadable one raises.
        """
        if self.state_file is None or not self.state_file.exists():
            self.logger.log_debug("No checkpoint file found, starting fresh")
            return

        with open(self.state_file, "r") as f:
            try:
                state = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"Checkpoint {self.state_file} is not valid JSON: {e}"
                ) from e

        self.completed_stages = list(state.get("completed_stages", []))
        self.snapshots = dict(state.get("snapshots", {}))
        self.context.summaries = dict(state.get("summaries", {}))
        self.logger.log_info(
            f"Loaded checkpoint: {len(self.completed_stages)} stages completed"
        )
        if self.completed_stages:
            self.logger.log_info(f"Last completed: {self.completed_stages[-1]}")

    def save_state(self) -> None:
        """Write completed stages, snapshots and summaries to the state file."""
        if self.state_file is None:
            return
        state = {
            "pipeline": self.config.name,
            "pipeline_version": self.config.version,
            "completed_stages": self.completed_stages,
            "snapshots": self.snapshots,
            "summaries": self.context.summaries,
            "timestamp": datetime.now().isoformat(),
        }

        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self.state_file, "w") as f:
            json.dump(to_builtin(state), f, indent=2, default=str)

    def clear_state(self) -> None:
        """Clear checkpoint state (for fresh run)."""
        if self.state_file is not None and self.state_file.exists():
            self.state_file.unlink()
            self.logger.log_info("Cleared checkpoint state")

        self.completed_stages = []
        self.snapshots = {}
        self.context.summaries = {}

    def _restore_dataset(self, order: List[str]) -> None:
        """Reload the newest snapshot among completed stages of this run."""
        for stage_id in reversed(self.completed_stages):
            if stage_id in order and stage_id in self.snapshots:
                path = Path(self.snapshots[stage_id])
                if not path.exists():
                    raise ConfigurationError(
                        f"Checkpoint snapshot for stage '{stage_id}' is missing: {path}; "
                        "rerun with force"
                    )
                self.context.dataset = Dataset.load(path)
                self.logger.log_info(f"Restored dataset from stage {stage_id} snapshot")
                return

    def _snapshot(self, stage: Stage) -> None:
        if self.snapshot_dir is None or self.context.dataset is None:
            return
        path = self.snapshot_dir / f"{stage.stage_id}.h5ad"
        self.context.dataset.save(path)
        self.snapshots[stage.stage_id] = str(path)

    def should_skip_stage(self, stage: Stage) -> bool:
        """True for optional stages with a missing input."""
        if not stage.optional:
            return False
        missing = stage.missing_inputs()
        if missing:
            self.logger.log_stage_skip(stage.stage_id, f"optional, {missing[0]}")
            return True
        return False

    def execute_stage(self, stage: Stage, dry_run: bool = False) -> Dict[str, Any]:
        """Execute a single pipeline stage.

        Parameters
        ----------
        stage : Stage
            Stage to execute
        dry_run : bool
            If True, only log what would be executed

        Returns
        -------
        Dict[str, Any]
            Operation summary (empty for skipped and dry-run stages)

        Raises
        ------
        ConfigurationError
            If inputs are missing or declared outputs were not written
        CellscopeError
            Whatever the operation raised, after logging it
        """
        if dry_run:
            self.logger.log_info(f"[DRY RUN] {stage.stage_id}: {stage.describe()}")
            return {}

        if self.should_skip_stage(stage):
            self.completed_stages.append(stage.stage_id)
            self.save_state()
            return {}

        missing = stage.missing_inputs()
        if missing:
            for error in missing:
                self.logger.log_error(f"  - {error}")
            raise ConfigurationError(
                f"Input validation failed for stage {stage.stage_id}: {'; '.join(missing)}"
            )

        operation = get_operation(stage.operation)
        self.logger.log_stage_start(stage.stage_id, stage.name)
        start_time = time.time()

        try:
            summary = operation(self.context, stage)
        except Exception as e:
            self.logger.log_stage_error(stage.stage_id, f"{type(e).__name__}: {e}")
            raise

        valid, errors = stage.validate_outputs()
        if not valid:
            self.logger.log_stage_error(stage.stage_id, "; ".join(errors))
            raise ConfigurationError(
                f"Output validation failed for stage {stage.stage_id}: {'; '.join(errors)}"
            )

        summary = to_builtin(summary or {})
        self.context.summaries[stage.stage_id] = summary
        self._snapshot(stage)
        self.logger.log_stage_complete(stage.stage_id, time.time() - start_time, summary)
        self.completed_stages.append(stage.stage_id)
        self.save_state()
        return summary

    def _select(self, start_stage: Optional[str], end_stage: Optional[str]) -> List[str]:
        order = self.config.get_execution_order()
        for label, stage_id in (("Start", start_stage), ("End", end_stage)):
            if stage_id and stage_id not in order:
                raise ConfigurationError(f"{label} stage '{stage_id}' not found")
        if start_stage:
            order = order[order.index(start_stage):]
        if end_stage:
            if end_stage not in order:
                raise ConfigurationError(
                    f"End stage '{end_stage}' runs before start stage '{start_stage}'"
                )
            order = order[: order.index(end_stage) + 1]
        return order

    def run(
        self,
        start_stage: Optional[str] = None,
        end_stage: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> Optional[Dataset]:
        """Execute the pipeline from start_stage to end_stage.

        Parameters
        ----------
        start_stage : str, optional
            Stage id to start from (default: first stage)
        end_stage : str, optional
            Stage id to end at (default: last stage)
        dry_run : bool
            If True, log the execution plan without running
        force : bool
            If True, ignore the checkpoint and re-run all stages

        Returns
        -------
        Dataset or None
            Working dataset after the last stage (None for dry runs)
        """
        self.validate()
        order = self._select(start_stage, end_stage)

        if force:
            self.clear_state()
        else:
            self.load_state()

        self.logger.log_info(f"Pipeline execution plan: {' -> '.join(order)}")

        if dry_run:
            self.logger.log_info("DRY RUN MODE - No stages will be executed")
            for stage_id in order:
                self.execute_stage(self.config.stages[stage_id], dry_run=True)
            return None

        pending = [sid for sid in order if sid not in self.completed_stages]
        if len(pending) < len(order) and pending:
            self._restore_dataset(order)

        for stage_id in order:
            if stage_id not in pending:
                self.logger.log_stage_skip(stage_id, "already completed")
                continue
            try:
                self.execute_stage(self.config.stages[stage_id])
            except Exception:
                self.logger.log_error(f"Pipeline failed at stage {stage_id}")
                raise

        self.logger.log_info("Pipeline completed successfully")
        return self.context.dataset

    def get_resume_stage(self) -> Optional[str]:
        """Next stage to run according to the checkpoint, or None."""
        self.load_state()

        for stage_id in self.config.get_execution_order():
            if stage_id not in self.completed_stages:
                return stage_id if self.completed_stages else None
        return None
