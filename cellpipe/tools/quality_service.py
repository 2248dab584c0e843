"""
Quality-control service for single-cell RNA-seq data.

This service computes per-observation QC metrics (detected features,
total counts, mitochondrial fraction) and removes observations outside
the configured bounds.
"""

from typing import Any, Dict, Tuple

import numpy as np
import pandas as pd

from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import CellpipeCoreError, InsufficientData
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)


class QualityError(Exception):
    """Base exception for quality assessment operations."""

    pass


def _summary(values: pd.Series) -> Dict[str, float]:
    return {
        "min": float(values.min()),
        "max": float(values.max()),
        "mean": float(values.mean()),
        "median": float(values.median()),
    }


class QualityService:
    """
    Stateless service for single-cell quality control.

    The retained-if predicate is strict on every bound:
    ``min_features < n_features < max_features`` and
    ``mito_fraction < max_mito_fraction``.
    """

    def __init__(self):
        logger.debug("Initializing stateless QualityService")

    def calculate_qc_metrics(
        self, dataset: Dataset, mito_prefix: str = "MT-"
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Add ``n_features``, ``total_counts`` and ``mito_fraction`` to metadata.

        Args:
            dataset: Dataset with raw counts
            mito_prefix: Prefix identifying mitochondrial features (case-sensitive)

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with QC columns and metric stats

        Raises:
            QualityError: If the metrics cannot be computed
        """
        try:
            logger.info("Calculating quality metrics")
            counts = dataset.counts

            total_counts = np.asarray(counts.sum(axis=1)).ravel().astype(float)
            n_features = np.asarray((counts > 0).sum(axis=1)).ravel().astype(int)

            mito_mask = np.asarray(dataset.features.str.startswith(mito_prefix))
            if mito_mask.any():
                mito_counts = np.asarray(counts[:, mito_mask].sum(axis=1)).ravel()
            else:
                logger.warning(
                    f"No features start with '{mito_prefix}'. "
                    "Setting mitochondrial fraction to 0."
                )
                mito_counts = np.zeros(dataset.n_observations)

            # empty observations have no mitochondrial signal
            mito_fraction = np.divide(
                mito_counts,
                total_counts,
                out=np.zeros_like(total_counts),
                where=total_counts > 0,
            )

            metadata = dataset.metadata
            metadata["n_features"] = n_features
            metadata["total_counts"] = total_counts
            metadata["mito_fraction"] = mito_fraction

            stats = {
                "analysis_type": "qc_metrics",
                "mito_prefix": mito_prefix,
                "n_mito_features": int(mito_mask.sum()),
                "n_features_stats": _summary(metadata["n_features"]),
                "total_counts_stats": _summary(metadata["total_counts"]),
                "mito_fraction_stats": _summary(metadata["mito_fraction"]),
            }
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error calculating QC metrics: {e}")
            raise QualityError(f"QC metric calculation failed: {str(e)}") from e

    def filter_observations(
        self,
        dataset: Dataset,
        min_features: int,
        max_features: int,
        max_mito_fraction: float,
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Remove observations failing the QC predicate.

        Args:
            dataset: Dataset with QC metrics in metadata
            min_features: Exclusive lower bound on detected features
            max_features: Exclusive upper bound on detected features
            max_mito_fraction: Exclusive upper bound on mitochondrial fraction

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Filtered dataset and filtering stats

        Raises:
            InsufficientData: If no observation passes
            QualityError: If filtering fails otherwise
        """
        try:
            metadata = dataset.metadata
            missing = {"n_features", "mito_fraction"} - set(metadata.columns)
            if missing:
                raise QualityError(
                    f"QC metrics missing from metadata: {sorted(missing)}"
                )

            passing = (
                (metadata["n_features"] > min_features)
                & (metadata["n_features"] < max_features)
                & (metadata["mito_fraction"] < max_mito_fraction)
            )
            metadata["qc_pass"] = passing.to_numpy()

            cells_before = dataset.n_observations
            cells_after = int(passing.sum())

            if cells_after == 0:
                raise InsufficientData(
                    f"No observation passes QC ({min_features} < n_features < "
                    f"{max_features}, mito_fraction < {max_mito_fraction})",
                    details={
                        "stage": "qc_filter",
                        "required": 1,
                        "available": 0,
                    },
                )

            filtered = dataset.subset_observations(passing.to_numpy())

            stats = {
                "analysis_type": "qc_filter",
                "min_features": min_features,
                "max_features": max_features,
                "max_mito_fraction": max_mito_fraction,
                "cells_before_qc": cells_before,
                "cells_after_qc": cells_after,
                "cells_removed": cells_before - cells_after,
                "cells_retained_pct": (cells_after / cells_before) * 100,
                "removed_by_min_features": int(
                    (metadata["n_features"] <= min_features).sum()
                ),
                "removed_by_max_features": int(
                    (metadata["n_features"] >= max_features).sum()
                ),
                "removed_by_mito": int(
                    (metadata["mito_fraction"] >= max_mito_fraction).sum()
                ),
            }

            logger.info(
                f"QC filtering completed: {cells_after}/{cells_before} cells pass QC "
                f"({stats['cells_retained_pct']:.1f}%)"
            )
            return filtered, stats

        except (CellpipeCoreError, QualityError):
            raise
        except Exception as e:
            logger.exception(f"Error in QC filtering: {e}")
            raise QualityError(f"QC filtering failed: {str(e)}") from e
