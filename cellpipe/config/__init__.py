"""Configuration for cellpipe: environment settings and pipeline models."""

from cellpipe.config.pipeline_config import (
    AnnotationConfig,
    ClusteringConfig,
    LoaderConfig,
    MarkerConfig,
    NeighborConfig,
    NormalizationConfig,
    OutputConfig,
    PCAConfig,
    PipelineConfig,
    QCThresholds,
    ScalingConfig,
    UMAPConfig,
    VariableFeatureConfig,
    pbmc3k_template,
)
from cellpipe.config.settings import Settings, get_settings

__all__ = [
    "AnnotationConfig",
    "ClusteringConfig",
    "LoaderConfig",
    "MarkerConfig",
    "NeighborConfig",
    "NormalizationConfig",
    "OutputConfig",
    "PCAConfig",
    "PipelineConfig",
    "QCThresholds",
    "ScalingConfig",
    "Settings",
    "UMAPConfig",
    "VariableFeatureConfig",
    "get_settings",
    "pbmc3k_template",
]
