"""
Artifact export for completed pipeline runs.

Writes figures, the marker table, the H5AD snapshot and a session report
under one output directory. Every artifact is written independently; a
failure is collected as an ExportError and never touches the in-memory
dataset or the other artifacts.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from cellpipe.core.backends import H5ADBackend
from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import ExportError
from cellpipe.tools.marker_service import MarkerService
from cellpipe.tools.visualization_service import VisualizationError, VisualizationService
from cellpipe.utils.atomic import atomic_path, atomic_write_json
from cellpipe.utils.logger import get_logger
from cellpipe.utils.system import session_info

logger = get_logger(__name__)

# upper bound on automatically chosen marker features
MAX_AUTO_MARKER_FEATURES = 9


@dataclass
class ExportReport:
    """Files written by an export and the errors collected on the way."""

    artifacts: Dict[str, List[Path]] = field(default_factory=dict)
    errors: List[ExportError] = field(default_factory=list)
    snapshot_path: Optional[Path] = None


class ArtifactExporter:
    """
    Write the output artifacts of a run.

    Figures are only built when the fields they show exist, so a dataset
    from a shortened plan exports what it can. Image size comes from each
    figure's layout, which starts at the configured width and height.
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        plots: bool = True,
        save_html: bool = False,
        width: int = 800,
        height: int = 600,
        scale: float = 2.0,
        marker_features: Optional[Sequence[str]] = None,
        compression: Optional[str] = "gzip",
        backend: Optional[H5ADBackend] = None,
        visualizer: Optional[VisualizationService] = None,
    ):
        self.output_dir = Path(output_dir)
        self.plots = plots
        self.save_html = save_html
        self.scale = scale
        self.marker_features = list(marker_features) if marker_features else None
        self.backend = backend or H5ADBackend(compression=compression)
        self.visualizer = visualizer or VisualizationService(width=width, height=height)
        self.marker_service = MarkerService()

    def snapshot_path(self, dataset: Dataset) -> Path:
        return self.output_dir / f"{dataset.name}_final.h5ad"

    def export(
        self, dataset: Dataset, config: Optional[Dict[str, Any]] = None
    ) -> ExportReport:
        """
        Write every artifact for ``dataset``.

        Args:
            dataset: Final dataset of a completed run
            config: Effective configuration, recorded in the session report

        Returns:
            ExportReport: Written files, snapshot path and collected errors
        """
        report = ExportReport()
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Output directory {self.output_dir} is not writable: {e}")
            report.errors.append(
                ExportError(
                    f"Could not create output directory {self.output_dir}: {e}",
                    details={"artifact": "output_dir", "path": str(self.output_dir)},
                )
            )
            return report

        if self.plots:
            self.export_figures(dataset, report)
        else:
            logger.info("Figure export disabled")

        if dataset.markers is not None:
            self._collect(report, "markers", lambda: [self.export_markers(dataset)])

        snapshot = self.snapshot_path(dataset)
        # recorded before the write so the snapshot carries it
        saving_id = dataset.provenance.log_data_saving(
            output_path=str(snapshot),
            backend_name=type(self.backend).__name__,
            parameters={"compression": self.backend.compression},
        )
        try:
            report.snapshot_path = self.backend.save(dataset, snapshot)
            report.artifacts["snapshot"] = [report.snapshot_path]
        except ExportError as e:
            logger.error(f"Snapshot not written: {e}")
            dataset.provenance.discard_activity(saving_id)
            report.errors.append(e)

        self._collect(
            report,
            "session_info",
            lambda: [self.export_session_info(dataset, config, report)],
        )

        logger.info(
            f"Exported {sum(len(v) for v in report.artifacts.values())} files to "
            f"{self.output_dir} ({len(report.errors)} errors)"
        )
        return report

    def figure_features(self, dataset: Dataset) -> List[str]:
        """Marker features to plot: configured ones, else the top marker per cluster."""
        if self.marker_features:
            return self.marker_features
        if dataset.markers is None:
            return []
        features = self.marker_service.top_features(dataset.markers, n=1)
        return features[:MAX_AUTO_MARKER_FEATURES]

    def figure_plan(self, dataset: Dataset) -> Dict[str, Callable]:
        """Figure builders whose inputs are present in ``dataset``."""
        viz = self.visualizer
        plan = {}
        if "mito_fraction" in dataset.metadata.columns:
            plan["qc_violin"] = lambda: viz.create_qc_violin(dataset)
            plan["qc_scatter"] = lambda: viz.create_qc_scatter(dataset)
        if dataset.has("variable_features") and dataset.has("normalized"):
            plan["variable_features"] = lambda: viz.create_variable_features_plot(dataset)
        if dataset.has("reductions.pca"):
            plan["pca_loadings"] = lambda: viz.create_pca_loadings_plot(dataset)
            plan["pca_scatter"] = lambda: viz.create_pca_plot(dataset)
            plan["elbow"] = lambda: viz.create_elbow_plot(dataset)
        if dataset.has("reductions.umap") and dataset.has("cluster_labels"):
            plan["umap_clusters"] = lambda: viz.create_umap_plot(dataset, "cluster")
            if "cell_type" in dataset.metadata.columns:
                plan["umap_cell_types"] = lambda: viz.create_umap_plot(dataset, "cell_type")

        features = self.figure_features(dataset)
        if features and dataset.has("cluster_labels") and dataset.has("normalized"):
            plan["marker_violin"] = lambda: viz.create_marker_violin(dataset, features)
            plan["marker_heatmap"] = lambda: viz.create_marker_heatmap(dataset, features)
            if dataset.has("reductions.umap"):
                plan["marker_features"] = lambda: viz.create_feature_plot(dataset, features)
        return plan

    def export_figures(self, dataset: Dataset, report: ExportReport) -> None:
        for name, build in self.figure_plan(dataset).items():
            try:
                fig = build()
                report.artifacts[name] = self.visualizer.save_figure(
                    fig,
                    self.output_dir,
                    name,
                    scale=self.scale,
                    save_html=self.save_html,
                )
            except VisualizationError as e:
                logger.error(f"Figure '{name}' could not be built: {e}")
                report.errors.append(
                    ExportError(
                        f"Could not build figure '{name}': {e}",
                        details={"artifact": name},
                    )
                )
            except ExportError as e:
                report.errors.append(e)

    def export_markers(self, dataset: Dataset) -> Path:
        """Write the marker table as CSV."""
        path = self.output_dir / "markers.csv"
        try:
            with atomic_path(path, suffix=".csv") as temp_file:
                dataset.markers.to_csv(temp_file, index=False)
        except OSError as e:
            raise ExportError(
                f"Could not write marker table: {e}",
                details={"artifact": "markers", "path": str(path)},
            ) from e
        logger.info(f"Saved {len(dataset.markers)} markers to {path}")
        return path

    def export_session_info(
        self,
        dataset: Dataset,
        config: Optional[Dict[str, Any]],
        report: ExportReport,
    ) -> Path:
        """Write interpreter, library versions, configuration and provenance."""
        path = self.output_dir / "session_info.json"
        info = {
            "session": session_info(),
            "dataset": {
                "name": dataset.name,
                "n_observations": dataset.n_observations,
                "n_features": dataset.n_features,
                "n_clusters": len(dataset.cluster_ids()),
            },
            "config": config,
            "params": dataset.params,
            "provenance": dataset.provenance.to_dict(),
            "artifacts": {
                name: [str(p) for p in paths] for name, paths in report.artifacts.items()
            },
            "export_errors": [str(e) for e in report.errors],
        }
        try:
            atomic_write_json(path, info)
        except (OSError, TypeError, ValueError) as e:
            raise ExportError(
                f"Could not write session report: {e}",
                details={"artifact": "session_info", "path": str(path)},
            ) from e
        return path

    @staticmethod
    def _collect(report: ExportReport, name: str, write: Callable[[], List[Path]]) -> None:
        try:
            report.artifacts[name] = write()
        except ExportError as e:
            logger.error(str(e))
            report.errors.append(e)
