"""
Pipeline stages.

A stage is a thin object wrapping one stateless service call. It declares
the Dataset fields it requires and produces so the orchestrator can check
the whole plan before anything runs, records its effective parameters in
``dataset.params[name]`` and logs one provenance activity.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from cellpipe.config.pipeline_config import (
    AnnotationConfig,
    ClusteringConfig,
    LoaderConfig,
    MarkerConfig,
    NeighborConfig,
    NormalizationConfig,
    PCAConfig,
    QCThresholds,
    ScalingConfig,
    UMAPConfig,
    VariableFeatureConfig,
)
from cellpipe.core.dataset import Dataset
from cellpipe.core.provenance import ProvenanceTracker
from cellpipe.services.data_access import TenXDownloader, TenXLoader
from cellpipe.tools.annotation_service import AnnotationService
from cellpipe.tools.clustering_service import ClusteringService
from cellpipe.tools.marker_service import MarkerService
from cellpipe.tools.preprocessing_service import PreprocessingService
from cellpipe.tools.quality_service import QualityService
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

StageResult = Tuple[Dataset, Dict[str, Any]]


class Stage(ABC):
    """
    Abstract base class for pipeline stages.

    Subclasses set ``name``, ``requires``, ``produces`` and ``agent`` and
    implement ``execute``. Field names follow ``Dataset.has``; a single
    embedding is addressed as ``"reductions.<name>"``.
    """

    name: str = ""
    requires: Tuple[str, ...] = ()
    produces: Tuple[str, ...] = ()
    agent: str = ""
    description: str = ""

    @abstractmethod
    def execute(self, dataset: Optional[Dataset]) -> StageResult:
        """
        Do the stage's work.

        Args:
            dataset: Current dataset (None only for the first stage)

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Updated dataset and stats
        """
        pass

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """Effective parameters recorded in ``dataset.params`` and provenance."""
        pass

    def run(self, dataset: Optional[Dataset]) -> StageResult:
        """Execute the stage, then record its parameters and provenance."""
        dataset, stats = self.execute(dataset)
        params = self.parameters()
        dataset.params[self.name] = params
        self.log_provenance(dataset, params)
        return dataset, stats

    def log_provenance(self, dataset: Dataset, params: Dict[str, Any]) -> None:
        dataset.provenance.log_stage(
            stage_name=self.name,
            agent_name=self.agent,
            parameters=params,
            shape=dataset.shape,
            description=self.description,
        )

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"


class LoadStage(Stage):
    """Fetch and parse the 10x matrix, then pre-filter it."""

    name = "load"
    produces = ("counts", "metadata")
    agent = "TenXLoader"

    def __init__(
        self,
        config: LoaderConfig,
        data_dir: Union[str, Path],
        dataset_name: str = "dataset",
        loader: Optional[TenXLoader] = None,
    ):
        self.config = config
        self.dataset_name = dataset_name
        self.loader = loader or TenXLoader(TenXDownloader(cache_dir=Path(data_dir)))

    def parameters(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def execute(self, dataset: Optional[Dataset]) -> StageResult:
        if dataset is not None:
            logger.warning("LoadStage replaces the dataset it was given")
        return self.loader.load(
            self.config.source,
            min_cells=self.config.min_cells,
            min_features=self.config.min_features,
            name=self.dataset_name,
            provenance=ProvenanceTracker(),
        )

    def log_provenance(self, dataset: Dataset, params: Dict[str, Any]) -> None:
        dataset.provenance.log_data_loading(
            source=self.config.source,
            loader_name=self.agent,
            parameters=params,
            shape=dataset.shape,
        )


class QCFilterStage(Stage):
    """Compute QC metrics and drop observations outside the thresholds."""

    name = "qc_filter"
    requires = ("counts", "metadata")
    produces = ("metadata",)
    agent = "QualityService"
    description = "Quality-control filtering of observations"

    def __init__(self, thresholds: QCThresholds, service: Optional[QualityService] = None):
        self.thresholds = thresholds
        self.service = service or QualityService()

    def parameters(self) -> Dict[str, Any]:
        return self.thresholds.model_dump(mode="json")

    def execute(self, dataset: Dataset) -> StageResult:
        dataset, metric_stats = self.service.calculate_qc_metrics(
            dataset, mito_prefix=self.thresholds.mito_prefix
        )
        dataset, stats = self.service.filter_observations(
            dataset,
            min_features=self.thresholds.min_features,
            max_features=self.thresholds.max_features,
            max_mito_fraction=self.thresholds.max_mito_fraction,
        )
        stats["metrics_before_qc"] = metric_stats
        return dataset, stats


class NormalizeStage(Stage):
    name = "normalize"
    requires = ("counts",)
    produces = ("normalized",)
    agent = "PreprocessingService"
    description = "Log-normalization"

    def __init__(
        self, config: NormalizationConfig, service: Optional[PreprocessingService] = None
    ):
        self.config = config
        self.service = service or PreprocessingService()

    def parameters(self) -> Dict[str, Any]:
        return {"method": "LogNormalize", **self.config.model_dump(mode="json")}

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.normalize(dataset, scale_factor=self.config.scale_factor)


class VariableFeatureStage(Stage):
    name = "variable_features"
    requires = ("normalized",)
    produces = ("variable_features",)
    agent = "PreprocessingService"
    description = "Variable feature selection"

    def __init__(
        self, config: VariableFeatureConfig, service: Optional[PreprocessingService] = None
    ):
        self.config = config
        self.service = service or PreprocessingService()

    def parameters(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.select_variable_features(
            dataset, n_features=self.config.n_features, flavor=self.config.flavor
        )


class ScaleStage(Stage):
    name = "scale"
    requires = ("normalized", "variable_features")
    produces = ("scaled_matrix",)
    agent = "PreprocessingService"
    description = "Feature standardization"

    def __init__(self, config: ScalingConfig, service: Optional[PreprocessingService] = None):
        self.config = config
        self.service = service or PreprocessingService()

    def parameters(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.scale(dataset, max_value=self.config.max_value)


class PCAStage(Stage):
    name = "pca"
    requires = ("scaled_matrix",)
    produces = ("reductions.pca",)
    agent = "ClusteringService"
    description = "Principal component analysis"

    def __init__(
        self, config: PCAConfig, seed: int = 0, service: Optional[ClusteringService] = None
    ):
        self.config = config
        self.seed = seed
        self.service = service or ClusteringService()

    def parameters(self) -> Dict[str, Any]:
        return {**self.config.model_dump(mode="json"), "random_state": self.seed}

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.run_pca(
            dataset,
            n_components=self.config.n_components,
            random_state=self.seed,
            svd_solver=self.config.svd_solver,
        )


class NeighborStage(Stage):
    """
    kNN graph in the leading dimensions of an embedding.

    The library's own graph parameters are kept under
    ``params["neighbors"]["scanpy"]`` so clustering and UMAP can rebuild
    the graph context they expect.
    """

    name = "neighbors"
    produces = ("graph",)
    agent = "ClusteringService"
    description = "kNN neighbor graph"

    def __init__(
        self, config: NeighborConfig, seed: int = 0, service: Optional[ClusteringService] = None
    ):
        self.config = config
        self.seed = seed
        self.service = service or ClusteringService()
        self.requires = (f"reductions.{config.use_rep}",)
        self._library_params: Dict[str, Any] = {}

    def parameters(self) -> Dict[str, Any]:
        return {
            **self.config.model_dump(mode="json"),
            "random_state": self.seed,
            "scanpy": self._library_params,
        }

    def execute(self, dataset: Dataset) -> StageResult:
        dataset, stats = self.service.build_neighbor_graph(
            dataset,
            n_neighbors=self.config.n_neighbors,
            n_dims=self.config.n_dims,
            use_rep=self.config.use_rep,
            random_state=self.seed,
        )
        self._library_params = stats.get("scanpy", {})
        return dataset, stats


class ClusterStage(Stage):
    name = "cluster"
    requires = ("graph",)
    produces = ("cluster_labels",)
    agent = "ClusteringService"
    description = "Leiden clustering"

    def __init__(
        self, config: ClusteringConfig, seed: int = 0, service: Optional[ClusteringService] = None
    ):
        self.config = config
        self.seed = seed
        self.service = service or ClusteringService()

    def parameters(self) -> Dict[str, Any]:
        return {
            "method": "leiden",
            **self.config.model_dump(mode="json"),
            "random_state": self.seed,
        }

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.assign_clusters(
            dataset,
            resolution=self.config.resolution,
            random_state=self.seed,
            n_iterations=self.config.n_iterations,
        )


class UMAPStage(Stage):
    """UMAP layout of the neighbor graph, initialized from the PCA space."""

    name = "umap"
    requires = ("reductions.pca", "graph")
    produces = ("reductions.umap",)
    agent = "ClusteringService"
    description = "UMAP embedding"

    def __init__(
        self, config: UMAPConfig, seed: int = 0, service: Optional[ClusteringService] = None
    ):
        self.config = config
        self.seed = seed
        self.service = service or ClusteringService()

    def parameters(self) -> Dict[str, Any]:
        return {**self.config.model_dump(mode="json"), "random_state": self.seed}

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.run_umap(
            dataset,
            n_components=self.config.n_components,
            min_dist=self.config.min_dist,
            spread=self.config.spread,
            random_state=self.seed,
            init_pos=self.config.init_pos,
        )


class MarkerStage(Stage):
    name = "markers"
    requires = ("normalized", "cluster_labels")
    produces = ("markers",)
    agent = "MarkerService"
    description = "One-vs-rest marker detection"

    def __init__(self, config: MarkerConfig, service: Optional[MarkerService] = None):
        self.config = config
        self.service = service or MarkerService()

    def parameters(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def execute(self, dataset: Dataset) -> StageResult:
        return self.service.find_all_markers(
            dataset,
            min_detection_fraction=self.config.min_detection_fraction,
            min_log2_fold_change=self.config.min_log2_fold_change,
            only_positive=self.config.only_positive,
            method=self.config.method,
        )


class AnnotationStage(Stage):
    name = "annotate"
    requires = ("cluster_labels", "markers")
    produces = ("cluster_labels",)
    agent = "AnnotationService"
    description = "Cluster to cell-type annotation"

    def __init__(self, config: AnnotationConfig, service: Optional[AnnotationService] = None):
        self.config = config
        self.service = service or AnnotationService()
        self._mapping: Dict[str, str] = {}

    def parameters(self) -> Dict[str, Any]:
        return {"mapping": self._mapping}

    def execute(self, dataset: Dataset) -> StageResult:
        dataset, stats = self.service.annotate(dataset, self.config.labels)
        self._mapping = stats["mapping"]
        return dataset, stats
