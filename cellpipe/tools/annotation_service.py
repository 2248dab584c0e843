"""
Cell-type annotation service.

Maps cluster IDs to human-readable cell-type labels supplied by the user
(typically chosen by inspecting the marker table). The mapping must cover
every observed cluster; it is validated completely before anything is
rewritten so a failed annotation leaves the dataset untouched.
"""

from typing import Any, Dict, List, Mapping, Sequence, Tuple, Union

from cellpipe.core.dataset import Dataset, sorted_cluster_ids
from cellpipe.core.exceptions import CellpipeCoreError, IncompleteMapping
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

LabelInput = Union[Mapping[str, str], Sequence[str]]


class AnnotationError(Exception):
    """Base exception for annotation operations."""

    pass


class AnnotationService:
    """
    Stateless service applying a cluster to cell-type mapping.

    The mapping is either a dict ``{cluster_id: label}`` or a list of labels
    assigned in order to the sorted distinct cluster IDs. Several clusters
    may share a label.
    """

    def __init__(self):
        logger.debug("Initializing stateless AnnotationService")

    def resolve_mapping(self, dataset: Dataset, labels: LabelInput) -> Dict[str, str]:
        """
        Turn ``labels`` into a total ``{cluster_id: label}`` mapping.

        Args:
            dataset: Dataset with cluster_labels
            labels: Mapping or positional list of labels

        Returns:
            Dict[str, str]: Label for every observed cluster

        Raises:
            IncompleteMapping: If an observed cluster has no label
        """
        observed = dataset.cluster_ids()

        if isinstance(labels, Mapping):
            mapping = {str(k): str(v) for k, v in labels.items()}
            extra = sorted(set(mapping) - set(observed))
            if extra:
                logger.warning(
                    f"Ignoring labels for clusters that were not observed: {extra}"
                )
        else:
            labels = list(labels)
            if len(labels) > len(observed):
                logger.warning(
                    f"{len(labels)} labels given for {len(observed)} clusters; "
                    f"ignoring {labels[len(observed):]}"
                )
            mapping = dict(zip(observed, (str(label) for label in labels)))

        missing = [c for c in observed if c not in mapping]
        if missing:
            raise IncompleteMapping(
                f"No cell-type label for cluster(s): {', '.join(missing)}",
                details={"missing": missing, "observed": observed},
            )

        return {c: mapping[c] for c in observed}

    def annotate(
        self, dataset: Dataset, labels: LabelInput
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Rewrite cluster labels to cell-type names.

        The original IDs are kept in ``metadata["cluster_id"]``, the names
        are written to ``metadata["cell_type"]`` and ``cluster_labels``.

        Args:
            dataset: Dataset with cluster_labels
            labels: Mapping or positional list of labels

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Annotated dataset and stats

        Raises:
            IncompleteMapping: If an observed cluster has no label; nothing
                is modified in that case
            AnnotationError: If annotation fails otherwise
        """
        try:
            if dataset.cluster_labels is None:
                raise AnnotationError("Dataset has no cluster labels to annotate")

            mapping = self.resolve_mapping(dataset, labels)

            original = dataset.cluster_labels.astype(str)
            annotated = original.map(mapping)
            annotated.name = "cell_type"

            dataset.metadata["cluster_id"] = original.reindex(dataset.metadata.index)
            dataset.metadata["cell_type"] = annotated.reindex(dataset.metadata.index)
            dataset.cluster_labels = annotated.rename("cluster")

            counts = annotated.value_counts()
            stats = {
                "analysis_type": "annotation",
                "mapping": mapping,
                "n_clusters": len(mapping),
                "n_cell_types": int(counts.size),
                "cell_type_counts": {str(k): int(v) for k, v in counts.items()},
            }
            logger.info(
                f"Annotated {len(mapping)} clusters as {counts.size} cell types"
            )
            return dataset, stats

        except (CellpipeCoreError, AnnotationError):
            raise
        except Exception as e:
            logger.exception(f"Error in annotation: {e}")
            raise AnnotationError(f"Annotation failed: {str(e)}") from e

    def cell_type_order(self, dataset: Dataset) -> List[str]:
        """Cell types in the order of the clusters they were assigned to."""
        if "cell_type" not in dataset.metadata.columns:
            return []
        pairs = dataset.metadata[["cluster_id", "cell_type"]].drop_duplicates()
        order = {
            c: i for i, c in enumerate(sorted_cluster_ids(pairs["cluster_id"]))
        }
        first_cluster = {}
        for cluster_id, cell_type in pairs.itertuples(index=False):
            rank = order[str(cluster_id)]
            first_cluster[cell_type] = min(rank, first_cluster.get(cell_type, rank))
        return sorted(first_cluster, key=first_cluster.get)
