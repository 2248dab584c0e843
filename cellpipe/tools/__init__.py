"""
Analysis services for the single-cell pipeline.

Each service is stateless and returns ``(dataset, stats)``:
- Quality control service (QC metrics and observation filtering)
- Preprocessing service (normalization, variable features, scaling)
- Clustering service (PCA, neighbor graph, Leiden, UMAP)
- Marker service (differential expression between clusters)
- Annotation service (cluster to cell-type mapping)
- Visualization service (Plotly figures and PNG export)
"""

from cellpipe.tools.annotation_service import AnnotationService
from cellpipe.tools.clustering_service import ClusteringService
from cellpipe.tools.marker_service import MarkerService
from cellpipe.tools.preprocessing_service import PreprocessingService
from cellpipe.tools.quality_service import QualityService
from cellpipe.tools.visualization_service import VisualizationService

__all__ = [
    "AnnotationService",
    "ClusteringService",
    "MarkerService",
    "PreprocessingService",
    "QualityService",
    "VisualizationService",
]
