"""
Single-cell RNA-seq preprocessing service.

This service implements the normalization, variable-feature selection and
scaling steps of the standard clustering workflow, delegating the
numerical work to scanpy.
"""

import warnings
from typing import Any, Dict, Tuple

import anndata
import numpy as np
import scanpy as sc
import scipy.sparse as spr

from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import (
    CellpipeCoreError,
    DegenerateFeature,
    InsufficientData,
)
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

# dispersion column reported by scanpy for each flavor
_SCORE_COLUMNS = {
    "seurat": "dispersions_norm",
    "cell_ranger": "dispersions_norm",
    "seurat_v3": "variances_norm",
}


class PreprocessingError(Exception):
    """Base exception for preprocessing operations."""

    pass


def normalized_anndata(dataset: Dataset) -> anndata.AnnData:
    """AnnData view of the log-normalized matrix, as scanpy expects it after log1p."""
    adata = anndata.AnnData(X=dataset.normalized.copy())
    adata.obs_names = dataset.observation_ids.astype(str)
    adata.var_names = dataset.features.astype(str)
    adata.uns["log1p"] = {"base": None}
    return adata


class PreprocessingService:
    """
    Stateless preprocessing service for single-cell RNA-seq data.

    Each method takes a Dataset, fills in the field it produces and returns
    ``(dataset, stats)``.
    """

    def __init__(self):
        logger.debug("Initializing stateless PreprocessingService")

    def normalize(
        self, dataset: Dataset, scale_factor: float = 1e4
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Log-normalize counts: ``log1p(count / total * scale_factor)``.

        ``counts`` is left untouched; the result is stored in
        ``dataset.normalized`` with the same shape and order.

        Args:
            dataset: Dataset with raw counts
            scale_factor: Target total per observation before log1p

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Normalized dataset and stats

        Raises:
            PreprocessingError: If normalization fails
        """
        try:
            logger.info(f"Log-normalizing with scale factor {scale_factor:g}")

            adata = anndata.AnnData(X=dataset.counts.astype(np.float64))
            sc.pp.normalize_total(adata, target_sum=scale_factor)
            sc.pp.log1p(adata)

            dataset.normalized = spr.csr_matrix(adata.X)

            n_empty = int((np.asarray(dataset.counts.sum(axis=1)).ravel() == 0).sum())
            if n_empty:
                logger.warning(f"{n_empty} observations have zero total counts")

            stats = {
                "analysis_type": "normalization",
                "method": "LogNormalize",
                "scale_factor": scale_factor,
                "n_observations": dataset.n_observations,
                "n_features": dataset.n_features,
                "n_empty_observations": n_empty,
            }
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error in normalization: {e}")
            raise PreprocessingError(f"Normalization failed: {str(e)}") from e

    def select_variable_features(
        self, dataset: Dataset, n_features: int, flavor: str = "seurat"
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Select exactly ``n_features`` features by dispersion rank.

        Features are ranked by the normalized dispersion (``seurat``,
        ``cell_ranger``) or normalized variance (``seurat_v3``) reported by
        ``scanpy.pp.highly_variable_genes``. Undefined scores rank last;
        ties keep feature order.

        Args:
            dataset: Normalized dataset
            n_features: Number of features to select (k)
            flavor: Dispersion flavor

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with variable_features and stats

        Raises:
            InsufficientData: If k < 1 or k exceeds the feature universe
            PreprocessingError: If the dispersion computation fails
        """
        if n_features < 1 or n_features > dataset.n_features:
            raise InsufficientData(
                f"Cannot select {n_features} variable features from "
                f"{dataset.n_features} features",
                details={
                    "stage": "variable_features",
                    "required": n_features,
                    "available": dataset.n_features,
                },
            )
        if flavor not in _SCORE_COLUMNS:
            raise PreprocessingError(
                f"Unknown flavor '{flavor}'. Must be one of {sorted(_SCORE_COLUMNS)}"
            )

        try:
            logger.info(f"Finding {n_features} variable features (flavor: {flavor})")

            if flavor == "seurat_v3":
                # variance-stabilizing flavor works on raw counts
                adata = anndata.AnnData(X=dataset.counts.astype(np.float64))
                adata.var_names = dataset.features.astype(str)
                sc.pp.highly_variable_genes(
                    adata, flavor=flavor, n_top_genes=n_features, inplace=True
                )
            else:
                adata = normalized_anndata(dataset)
                sc.pp.highly_variable_genes(adata, flavor=flavor, inplace=True)

            scores = adata.var[_SCORE_COLUMNS[flavor]].to_numpy(dtype=float)
            rank_key = np.where(np.isnan(scores), np.inf, -scores)
            order = np.argsort(rank_key, kind="stable")[:n_features]

            dataset.variable_features = [str(f) for f in dataset.features[order]]

            n_undefined = int(np.isnan(scores[order]).sum())
            if n_undefined:
                logger.warning(
                    f"{n_undefined} selected features have an undefined dispersion"
                )

            stats = {
                "analysis_type": "variable_features",
                "flavor": flavor,
                "n_variable_features": len(dataset.variable_features),
                "top_features": dataset.variable_features[:10],
                "score_column": _SCORE_COLUMNS[flavor],
                "scores": {
                    f: (None if np.isnan(s) else float(s))
                    for f, s in zip(dataset.variable_features, scores[order])
                },
                "means": adata.var["means"].to_numpy(dtype=float).tolist(),
                "dispersions": scores.tolist(),
            }

            logger.info(
                f"Selected {len(dataset.variable_features)} variable features, "
                f"top: {', '.join(dataset.variable_features[:5])}"
            )
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error in variable feature selection: {e}")
            raise PreprocessingError(
                f"Variable feature selection failed: {str(e)}"
            ) from e

    def scale(
        self, dataset: Dataset, max_value: float = None
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Center and standardize each variable feature across observations.

        Zero-variance features get the standardized value 0 for every
        observation; a DegenerateFeature warning names them.

        Args:
            dataset: Dataset with normalized data and variable_features
            max_value: Clip standardized values to [-max_value, max_value]

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with scaled_matrix and stats

        Raises:
            PreprocessingError: If scaling fails
        """
        try:
            logger.info(
                f"Scaling {len(dataset.variable_features)} variable features "
                f"across {dataset.n_observations} observations"
            )

            positions = dataset.features.get_indexer(dataset.variable_features)
            if (positions < 0).any():
                missing = [
                    f for f, p in zip(dataset.variable_features, positions) if p < 0
                ]
                raise PreprocessingError(f"Variable features not in dataset: {missing}")

            data = dataset.normalized[:, positions].toarray().astype(np.float64)

            zero_variance = np.var(data, axis=0) == 0
            degenerate = [
                dataset.variable_features[i] for i in np.flatnonzero(zero_variance)
            ]
            if degenerate:
                warnings.warn(
                    DegenerateFeature(
                        f"{len(degenerate)} variable features have zero variance; "
                        f"their scaled values are set to 0: {', '.join(degenerate[:10])}",
                        details={"features": degenerate},
                    ),
                    stacklevel=2,
                )
                logger.warning(f"Zero-variance features scaled to 0: {degenerate}")

            adata = anndata.AnnData(X=data)
            sc.pp.scale(adata, zero_center=True, max_value=max_value)

            scaled = np.asarray(adata.X, dtype=np.float64)
            scaled[:, zero_variance] = 0.0
            dataset.scaled_matrix = scaled

            stats = {
                "analysis_type": "scaling",
                "max_value": max_value,
                "shape": list(scaled.shape),
                "degenerate_features": degenerate,
            }
            return dataset, stats

        except (CellpipeCoreError, PreprocessingError):
            raise
        except Exception as e:
            logger.exception(f"Error in scaling: {e}")
            raise PreprocessingError(f"Scaling failed: {str(e)}") from e
