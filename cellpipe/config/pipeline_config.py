"""
Pipeline configuration models.

Every scientific parameter of a run is declared explicitly in a JSON file
parsed into these pydantic models. Thresholds, feature counts, component
counts, clustering resolution, marker cut-offs and the annotation mapping
have no defaults; only non-scientific settings (paths, figure sizes,
seed, library flavors) do.
"""

import json
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from cellpipe.config.settings import get_settings
from cellpipe.core.exceptions import ConfigurationError
from cellpipe.utils.atomic import atomic_write_text
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

PBMC3K_URL = (
    "https://cf.10xgenomics.com/samples/cell/pbmc3k/"
    "pbmc3k_filtered_gene_bc_matrices.tar.gz"
)


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LoaderConfig(_StrictModel):
    """
    Input source and pre-filtering.

    Attributes:
        source: Remote http(s) URL or local path to a 10x directory/archive
        min_cells: Keep features detected in at least this many observations
        min_features: Keep observations with at least this many detected features
    """

    source: str = Field(..., description="URL or local path of the 10x matrix")
    min_cells: int = Field(..., ge=0)
    min_features: int = Field(..., ge=0)

    @field_validator("source")
    @classmethod
    def validate_source(cls, v):
        if not v.strip():
            raise ValueError("source must not be empty")
        return v.strip()


class QCThresholds(_StrictModel):
    """
    Quality-control bounds.

    An observation is retained iff
    ``min_features < n_features < max_features`` and
    ``mito_fraction < max_mito_fraction``.
    """

    min_features: int = Field(..., ge=0)
    max_features: int = Field(..., gt=0)
    max_mito_fraction: float = Field(..., gt=0.0, le=1.0)
    mito_prefix: str = Field("MT-", min_length=1)

    @model_validator(mode="after")
    def validate_bounds(self):
        if self.min_features >= self.max_features:
            raise ValueError(
                f"min_features ({self.min_features}) must be smaller than "
                f"max_features ({self.max_features})"
            )
        return self


class NormalizationConfig(_StrictModel):
    scale_factor: float = Field(10_000.0, gt=0)


class VariableFeatureConfig(_StrictModel):
    """Number of variable features and the dispersion flavor used to rank them."""

    n_features: int = Field(..., ge=1)
    flavor: Literal["seurat", "cell_ranger", "seurat_v3"] = "seurat"


class ScalingConfig(_StrictModel):
    max_value: Optional[float] = Field(10.0, gt=0)


class PCAConfig(_StrictModel):
    n_components: int = Field(..., ge=1)
    svd_solver: Literal["arpack", "randomized", "full", "auto"] = "arpack"


class NeighborConfig(_StrictModel):
    """
    kNN graph parameters.

    Attributes:
        n_neighbors: Neighbors per observation (including itself)
        n_dims: Leading embedding dimensions used for distances
        use_rep: Embedding the graph is built in
    """

    n_neighbors: int = Field(..., ge=2)
    n_dims: int = Field(..., ge=1)
    use_rep: str = "pca"


class ClusteringConfig(_StrictModel):
    resolution: float = Field(..., gt=0)
    n_iterations: int = -1


class UMAPConfig(_StrictModel):
    n_components: int = 2
    min_dist: float = Field(0.5, ge=0)
    spread: float = Field(1.0, gt=0)
    init_pos: Literal["spectral", "random", "pca"] = "spectral"

    @field_validator("n_components")
    @classmethod
    def validate_n_components(cls, v):
        if v not in (2, 3):
            raise ValueError("UMAP n_components must be 2 or 3")
        return v


class MarkerConfig(_StrictModel):
    """
    Marker detection thresholds.

    Attributes:
        min_detection_fraction: Minimum fraction of observations expressing
            the feature, in the cluster or in the rest
        min_log2_fold_change: Minimum absolute log2 fold change
        only_positive: Keep only features up-regulated in the cluster
        method: Test passed to ``scanpy.tl.rank_genes_groups``
        n_top: Markers per cluster used for figures
    """

    min_detection_fraction: float = Field(..., ge=0.0, le=1.0)
    min_log2_fold_change: float = Field(..., ge=0.0)
    only_positive: bool = True
    method: Literal["wilcoxon", "t-test", "t-test_overestim_var"] = "wilcoxon"
    n_top: int = Field(5, ge=1)


class AnnotationConfig(_StrictModel):
    """
    Cluster to cell-type mapping.

    ``labels`` is either a mapping ``{cluster_id: label}`` or a list of
    labels assigned in order to the sorted distinct cluster IDs.
    """

    labels: Union[Dict[str, str], List[str]]

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v):
        if len(v) == 0:
            raise ValueError("annotation labels must not be empty")
        values = v.values() if isinstance(v, dict) else v
        if any(not str(label).strip() for label in values):
            raise ValueError("annotation labels must not be blank")
        return v


class OutputConfig(_StrictModel):
    """Artifact locations and figure export settings."""

    output_dir: Path = Field(default_factory=lambda: get_settings().OUTPUT_DIR)
    data_dir: Path = Field(default_factory=lambda: get_settings().DATA_DIR)
    plots: bool = True
    save_html: bool = False
    width: int = Field(800, gt=0)
    height: int = Field(600, gt=0)
    scale: float = Field(2.0, gt=0)
    marker_features: Optional[List[str]] = None
    compression: Optional[Literal["gzip", "lzf"]] = "gzip"


class PipelineConfig(_StrictModel):
    """
    Complete configuration of one pipeline run.

    ``annotation`` has no default: skipping annotation requires writing
    ``"annotation": null`` explicitly.
    """

    name: str = "dataset"
    seed: int = 0
    loader: LoaderConfig
    qc: QCThresholds
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    variable_features: VariableFeatureConfig
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    pca: PCAConfig
    neighbors: NeighborConfig
    clustering: ClusteringConfig
    umap: UMAPConfig = Field(default_factory=UMAPConfig)
    markers: MarkerConfig
    annotation: Optional[AnnotationConfig]
    output: OutputConfig = Field(default_factory=OutputConfig)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or any(sep in v for sep in ("/", "\\")):
            raise ValueError(f"Invalid dataset name: '{v}'")
        return v

    @model_validator(mode="after")
    def validate_dimensions(self):
        uses_pca = self.neighbors.use_rep == "pca"
        if uses_pca and self.neighbors.n_dims > self.pca.n_components:
            raise ValueError(
                f"neighbors.n_dims ({self.neighbors.n_dims}) exceeds "
                f"pca.n_components ({self.pca.n_components})"
            )
        if self.pca.n_components > self.variable_features.n_features:
            raise ValueError(
                f"pca.n_components ({self.pca.n_components}) cannot exceed "
                f"variable_features.n_features ({self.variable_features.n_features})"
            )
        return self

    def stage_plan(self) -> List[str]:
        """Names of the stages this configuration runs, in order."""
        plan = [
            "load",
            "qc_filter",
            "normalize",
            "variable_features",
            "scale",
            "pca",
            "neighbors",
            "cluster",
            "umap",
            "markers",
        ]
        if self.annotation is not None:
            plan.append("annotate")
        return plan

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PipelineConfig":
        """
        Load a configuration file.

        Args:
            path: JSON configuration file

        Returns:
            PipelineConfig: Parsed configuration

        Raises:
            ConfigurationError: If the file is missing, not JSON or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}", details={"path": str(path)}
            )

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Configuration file {path} is not valid JSON: {e}",
                details={"path": str(path)},
            ) from e

        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: Dict, source: str = "<dict>") -> "PipelineConfig":
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ConfigurationError(
                f"Invalid configuration in {source}: " + "; ".join(errors),
                details={"path": source, "errors": errors},
            ) from e

        logger.debug(f"Loaded pipeline configuration from {source}")
        return config

    def save(self, path: Union[str, Path]) -> None:
        """Write the configuration as indented JSON (atomically)."""
        atomic_write_text(Path(path), self.model_dump_json(indent=2))
        logger.info(f"Saved pipeline configuration to {path}")


def pbmc3k_template() -> PipelineConfig:
    """
    Configuration for the 10x PBMC 3k tutorial dataset.

    Returns:
        PipelineConfig: Thresholds and labels of the standard PBMC 3k walkthrough
    """
    return PipelineConfig(
        name="pbmc3k",
        seed=0,
        loader=LoaderConfig(source=PBMC3K_URL, min_cells=3, min_features=200),
        qc=QCThresholds(min_features=200, max_features=2500, max_mito_fraction=0.05),
        normalization=NormalizationConfig(scale_factor=10_000),
        variable_features=VariableFeatureConfig(n_features=2000, flavor="seurat"),
        scaling=ScalingConfig(max_value=10.0),
        pca=PCAConfig(n_components=50),
        neighbors=NeighborConfig(n_neighbors=20, n_dims=10),
        clustering=ClusteringConfig(resolution=0.5),
        umap=UMAPConfig(n_components=2),
        markers=MarkerConfig(min_detection_fraction=0.25, min_log2_fold_change=0.25),
        annotation=AnnotationConfig(
            labels=[
                "Naive CD4 T",
                "CD14+ Mono",
                "Memory CD4 T",
                "B",
                "CD8 T",
                "FCGR3A+ Mono",
                "NK",
                "DC",
                "Platelet",
            ]
        ),
        output=OutputConfig(
            marker_features=[
                "MS4A1",
                "GNLY",
                "CD3E",
                "CD14",
                "FCER1A",
                "FCGR3A",
                "LYZ",
                "PPBP",
                "CD8A",
            ]
        ),
    )
