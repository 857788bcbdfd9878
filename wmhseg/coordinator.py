"""Run coordinator: workspace, preprocessing, then the selected backends.

No backend starts before preprocessing has completed or has been confirmed
complete. Backends share only read-only inputs and write disjoint
directories, so a failing backend is recorded and the others still run.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Type
import logging

from wmhseg.config import PipelineConfig
from wmhseg.errors import BackendFailed, PreprocessingFailed, UsageError
from wmhseg.preprocessing import PreprocessingStage
from wmhseg.reporting import BackendRunRecord, RunSummary
from wmhseg.segmentation import BACKENDS, BaseSegmentationBackend
from wmhseg.tools.runner import ToolRunner
from wmhseg.workspace import Workspace

logger = logging.getLogger(__name__)


class RunCoordinator:
    """Sequences one invocation of the pipeline.

    Attributes:
        config: Pipeline configuration
        runner: ToolRunner shared by all stages
        backends: Backend classes by id
        cwd: Base directory for relative paths (defaults to the process cwd)
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: Optional[ToolRunner] = None,
        backends: Optional[Dict[str, Type[BaseSegmentationBackend]]] = None,
        cwd: Optional[Path] = None,
    ) -> None:
        self.config = config
        self.runner = runner or ToolRunner(
            threads=config.threads,
            timeout=config.tool_timeout,
            dry_run=config.dry_run,
        )
        self.backends = backends if backends is not None else BACKENDS
        self.cwd = cwd
        self.workspace: Optional[Workspace] = None

    def run(self) -> RunSummary:
        """Run preprocessing and every selected backend.

        Returns:
            RunSummary with one record per selected backend.

        Raises:
            UsageError: If no backend is selected.
            InputNotFound: If an input image cannot be resolved.
            PreprocessingFailed: If preprocessing fails (no backend runs).
        """
        config = self.config
        if not config.backends:
            raise UsageError("No segmentation backend selected")

        workspace = Workspace.create(config.output_dir, config.t1, config.flair, cwd=self.cwd)
        self.workspace = workspace

        self._log_configuration(workspace)

        summary = RunSummary(
            t1=str(workspace.t1),
            flair=str(workspace.flair),
            output_dir=str(workspace.root),
            threads=config.threads,
            config=config.to_dict(),
        )

        try:
            summary.preprocessing = PreprocessingStage(workspace, config, self.runner).run()
        except PreprocessingFailed:
            summary.preprocessing = "failed"
            summary.save(workspace.summary_path)
            raise

        summary.backends = self.run_backends(workspace)

        summary.save(workspace.summary_path)
        summary.log()
        return summary

    def run_backends(self, workspace: Workspace) -> List[BackendRunRecord]:
        """Run the selected backends and return their records in canonical order."""
        selected = list(self.config.backends)
        records: Dict[str, BackendRunRecord] = {}

        workers = min(self.config.max_parallel_backends, len(selected))
        if workers > 1:
            logger.info(f"Running {len(selected)} backend(s) in parallel (workers={workers})")
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_backend = {
                    executor.submit(self.run_backend, workspace, backend_id): backend_id
                    for backend_id in selected
                }
                for future in as_completed(future_to_backend):
                    backend_id = future_to_backend[future]
                    records[backend_id] = future.result()
        else:
            for backend_id in selected:
                records[backend_id] = self.run_backend(workspace, backend_id)

        return [records[backend_id] for backend_id in selected]

    def run_backend(self, workspace: Workspace, backend_id: str) -> BackendRunRecord:
        """Run one backend, converting its failure into a failed record."""
        backend_cls = self.backends[backend_id]
        backend = backend_cls(workspace, self.config, self.runner)

        logger.info("=" * 60)
        logger.info(f"SEGMENTATION: {backend_cls.label}")
        logger.info("=" * 60)

        try:
            return backend.run()
        except BackendFailed as e:
            logger.error(str(e))
            return BackendRunRecord(
                backend=backend_id,
                label=backend_cls.label,
                status="failed",
                output_dir=str(backend.output_dir),
                error=str(e),
                returncode=e.returncode,
            )

    def _log_configuration(self, workspace: Workspace) -> None:
        config = self.config
        logger.info("=" * 60)
        logger.info("WMH SEGMENTATION")
        logger.info("=" * 60)
        logger.info(f"T1 Image: {workspace.t1}")
        logger.info(f"FLAIR Image: {workspace.flair}")
        logger.info(f"Output Folder: {workspace.root}")
        logger.info(f"Threads: {config.threads}")
        for backend_id in self.backends:
            logger.info(f"{backend_id}: {str(backend_id in config.backends).lower()}")
        if config.dry_run:
            logger.info("Dry run: external commands are logged, not executed")
