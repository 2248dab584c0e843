"""
Analysis pipeline orchestrator.

A Pipeline owns an ordered list of stages. ``validate`` checks that each
stage's requirements are produced by an earlier stage (or already present
in a starting dataset) before anything runs; ``run`` threads one Dataset
through the stages and stops at the first failure.
"""

import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from cellpipe.config.pipeline_config import PipelineConfig
from cellpipe.core.dataset import DATASET_FIELDS, Dataset
from cellpipe.core.exceptions import (
    CellpipeCoreError,
    DegenerateFeature,
    ExportError,
    StageDependencyError,
)
from cellpipe.core.exporter import ArtifactExporter
from cellpipe.core.stages import (
    AnnotationStage,
    ClusterStage,
    LoadStage,
    MarkerStage,
    NeighborStage,
    NormalizeStage,
    PCAStage,
    QCFilterStage,
    ScaleStage,
    Stage,
    UMAPStage,
    VariableFeatureStage,
)
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PipelineResult:
    """
    Outcome of a pipeline run.

    Attributes:
        status: "completed" or "failed"
        failed_stage: Name of the stage that raised, if any
        error: The exception that stopped the run, if any
        dataset: Dataset after the last successful stage
        snapshot_path: Written snapshot (None if the run failed or the
            snapshot could not be written)
        export_errors: Artifacts that could not be written
        artifacts: Written files by artifact name
        stage_stats: Stats returned by each executed stage
        warnings: Messages of warnings raised while stages ran
    """

    status: str
    failed_stage: Optional[str] = None
    error: Optional[BaseException] = None
    dataset: Optional[Dataset] = None
    snapshot_path: Optional[Path] = None
    export_errors: List[ExportError] = field(default_factory=list)
    artifacts: Dict[str, List[Path]] = field(default_factory=dict)
    stage_stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class Pipeline:
    """
    Ordered stage plan over one Dataset.

    Example:
        pipeline = Pipeline(build_stages(config, data_dir))
        result = pipeline.run()
    """

    def __init__(self, stages: Sequence[Stage]):
        self.stages = list(stages)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def validate(self, dataset: Optional[Dataset] = None) -> None:
        """
        Check the declared dependency chain.

        Args:
            dataset: Starting dataset; fields it already holds count as
                produced

        Raises:
            StageDependencyError: If a stage requires a field that no
                earlier stage produces
        """
        available = set()
        if dataset is not None:
            available.update(f for f in DATASET_FIELDS if dataset.has(f))
            available.update(f"reductions.{key}" for key in dataset.reductions)

        for position, stage in enumerate(self.stages):
            missing = [name for name in stage.requires if name not in available]
            if missing:
                raise StageDependencyError(
                    f"Stage '{stage.name}' (position {position + 1}) requires "
                    f"{', '.join(missing)}, which no earlier stage produces",
                    details={
                        "stage": stage.name,
                        "missing": missing,
                        "plan": self.stage_names,
                    },
                )
            available.update(stage.produces)

        logger.debug(f"Stage plan validated: {' -> '.join(self.stage_names)}")

    def run(self, dataset: Optional[Dataset] = None) -> PipelineResult:
        """
        Run every stage in order.

        A stage exception ends the run: the result reports the failing
        stage and the error, and no later stage runs. Warnings raised by
        stages (e.g. DegenerateFeature) are recorded and logged.

        Args:
            dataset: Starting dataset (None when the plan starts with loading)

        Returns:
            PipelineResult: Status, final dataset and per-stage stats

        Raises:
            StageDependencyError: If the plan is invalid; raised before any
                stage runs
        """
        self.validate(dataset)
        result = PipelineResult(status="running")
        start = time.time()

        for index, stage in enumerate(self.stages, start=1):
            logger.info(f"[{index}/{len(self.stages)}] Running stage '{stage.name}'")
            stage_start = time.time()
            try:
                with warnings.catch_warnings(record=True) as caught:
                    warnings.simplefilter("always", DegenerateFeature)
                    dataset, stats = stage.run(dataset)
            except Exception as e:
                if isinstance(e, CellpipeCoreError):
                    logger.error(f"Stage '{stage.name}' failed: {e}")
                else:
                    logger.exception(f"Stage '{stage.name}' failed unexpectedly: {e}")
                result.status = "failed"
                result.failed_stage = stage.name
                result.error = e
                result.dataset = dataset
                result.duration_seconds = time.time() - start
                return result

            for warning in caught:
                if issubclass(warning.category, DegenerateFeature):
                    result.warnings.append(str(warning.message))
                else:
                    warnings.showwarning(
                        warning.message, warning.category, warning.filename, warning.lineno
                    )

            result.stage_stats[stage.name] = stats
            logger.info(
                f"Stage '{stage.name}' completed in {time.time() - stage_start:.1f}s: "
                f"{dataset.n_observations} cells × {dataset.n_features} genes"
            )

        result.status = "completed"
        result.dataset = dataset
        result.duration_seconds = time.time() - start
        logger.info(f"Pipeline completed in {result.duration_seconds:.1f}s")
        return result


def build_stages(config: PipelineConfig, data_dir: Union[str, Path]) -> List[Stage]:
    """
    Stage plan for a configuration, in dependency order.

    Args:
        config: Pipeline configuration
        data_dir: Cache directory for downloads

    Returns:
        List[Stage]: Stages matching ``config.stage_plan()``
    """
    seed = config.seed
    stages = [
        LoadStage(config.loader, data_dir=data_dir, dataset_name=config.name),
        QCFilterStage(config.qc),
        NormalizeStage(config.normalization),
        VariableFeatureStage(config.variable_features),
        ScaleStage(config.scaling),
        PCAStage(config.pca, seed=seed),
        NeighborStage(config.neighbors, seed=seed),
        ClusterStage(config.clustering, seed=seed),
        UMAPStage(config.umap, seed=seed),
        MarkerStage(config.markers),
    ]
    if config.annotation is not None:
        stages.append(AnnotationStage(config.annotation))
    return stages


def run_pipeline(
    config: PipelineConfig,
    output_dir: Optional[Union[str, Path]] = None,
    data_dir: Optional[Union[str, Path]] = None,
    plots: Optional[bool] = None,
) -> PipelineResult:
    """
    Run a configuration end to end and export its artifacts.

    Artifacts are only written when every stage succeeded; export
    failures are collected in ``result.export_errors`` and leave the
    status "completed".

    Args:
        config: Pipeline configuration
        output_dir: Override for ``config.output.output_dir``
        data_dir: Override for ``config.output.data_dir``
        plots: Override for ``config.output.plots``

    Returns:
        PipelineResult: Outcome of the run

    Raises:
        StageDependencyError: If the stage plan is invalid
    """
    output = config.output
    output_dir = Path(output_dir or output.output_dir)
    data_dir = Path(data_dir or output.data_dir)
    plots = output.plots if plots is None else plots

    logger.info(
        f"Starting pipeline '{config.name}': {' -> '.join(config.stage_plan())}"
    )
    pipeline = Pipeline(build_stages(config, data_dir))
    result = pipeline.run()

    if not result.ok:
        logger.error(
            f"Pipeline '{config.name}' failed at stage '{result.failed_stage}'; "
            "no snapshot written"
        )
        return result

    exporter = ArtifactExporter(
        output_dir,
        plots=plots,
        save_html=output.save_html,
        width=output.width,
        height=output.height,
        scale=output.scale,
        marker_features=output.marker_features,
        compression=output.compression,
    )
    report = exporter.export(result.dataset, config=config.model_dump(mode="json"))
    result.snapshot_path = report.snapshot_path
    result.export_errors = report.errors
    result.artifacts = report.artifacts

    if result.export_errors:
        logger.warning(f"{len(result.export_errors)} artifacts could not be written")
    return result
