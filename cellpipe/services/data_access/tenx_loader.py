"""
10x Genomics matrix loader.

Reads a 10x trio (matrix.mtx, barcodes.tsv, genes.tsv/features.tsv, each
optionally gzipped) into a Dataset, applying the min_cells/min_features
pre-filter.

- Uses scanpy for standard multi-column feature files
- Falls back to a scipy reader for single-column feature files, which
  ``scanpy.read_10x_mtx`` cannot parse
"""

import gzip
from pathlib import Path
from typing import List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr
from scipy.io import mmread

from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import DataUnavailable, InsufficientData
from cellpipe.core.provenance import ProvenanceTracker
from cellpipe.services.data_access.tenx_downloader import TenXDownloader
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)


def _open_text(path: Path):
    if path.name.endswith(".gz"):
        return gzip.open(path, "rt")
    return open(path, "r")


def _first_match(directory: Path, patterns: List[str]) -> Optional[Path]:
    for pattern in patterns:
        matches = sorted(directory.glob(pattern))
        if matches:
            return matches[0]
    return None


class TenXLoader:
    """
    Load 10x matrices into a Dataset.

    Format detection inspects the feature file:
    - Standard: 2+ columns (gene_id, gene_name[, feature_type])
    - Non-standard: 1 column (symbols or IDs only)
    """

    def __init__(self, downloader: TenXDownloader):
        """
        Initialize the loader.

        Args:
            downloader: Downloader used to resolve remote or archived sources
        """
        self.downloader = downloader
        logger.debug("TenXLoader initialized")

    def load(
        self,
        source: Union[str, Path],
        min_cells: int,
        min_features: int,
        name: str = "dataset",
        provenance: Optional[ProvenanceTracker] = None,
    ) -> Tuple[Dataset, dict]:
        """
        Fetch (if needed), parse and pre-filter a 10x matrix.

        Observations are pre-filtered first (at least ``min_features``
        detected features), then features (detected in at least
        ``min_cells`` of the remaining observations).

        Args:
            source: URL, archive or directory
            min_cells: Minimum observations a feature must be detected in
            min_features: Minimum detected features per observation
            name: Dataset name
            provenance: Tracker to attach to the Dataset (new one if None)

        Returns:
            Tuple[Dataset, dict]: Loaded dataset and loading stats

        Raises:
            DataUnavailable: If the source cannot be fetched or parsed
            InsufficientData: If nothing survives pre-filtering
        """
        matrix_dir = self.downloader.fetch(source)
        adata, features_format = self.read_matrix_dir(matrix_dir, source=str(source))

        n_obs_raw, n_vars_raw = adata.shape
        logger.info(
            f"Read {n_obs_raw} cells × {n_vars_raw} genes from {matrix_dir} "
            f"(format: {features_format})"
        )

        sc.pp.filter_cells(adata, min_genes=min_features)
        if adata.n_obs == 0:
            raise InsufficientData(
                f"No observation has at least {min_features} detected features",
                details={"stage": "load", "required": min_features, "available": 0},
            )
        sc.pp.filter_genes(adata, min_cells=min_cells)
        if adata.n_vars == 0:
            raise InsufficientData(
                f"No feature is detected in at least {min_cells} observations",
                details={"stage": "load", "required": min_cells, "available": 0},
            )

        counts = spr.csr_matrix(adata.X)
        metadata = pd.DataFrame(index=pd.Index(adata.obs_names.astype(str), name="barcode"))
        metadata["n_features"] = np.asarray((counts > 0).sum(axis=1)).ravel().astype(int)
        metadata["total_counts"] = np.asarray(counts.sum(axis=1)).ravel()

        dataset = Dataset(
            counts=counts,
            features=pd.Index(adata.var_names.astype(str)),
            metadata=metadata,
            provenance=provenance or ProvenanceTracker(),
            name=name,
        )

        stats = {
            "source": str(source),
            "matrix_dir": str(matrix_dir),
            "features_format": features_format,
            "n_observations_raw": int(n_obs_raw),
            "n_features_raw": int(n_vars_raw),
            "n_observations": dataset.n_observations,
            "n_features": dataset.n_features,
            "min_cells": min_cells,
            "min_features": min_features,
        }
        logger.info(
            f"Loaded dataset '{name}': {dataset.n_observations} cells × "
            f"{dataset.n_features} genes after pre-filtering"
        )
        return dataset, stats

    def read_matrix_dir(
        self, matrix_dir: Path, source: str = None
    ) -> Tuple[anndata.AnnData, str]:
        """
        Parse the trio in ``matrix_dir``.

        Returns:
            Tuple[anndata.AnnData, str]: Counts (cells × genes) and the
            detected features format
        """
        features_path = _first_match(
            matrix_dir, ["features.tsv*", "genes.tsv*", "*features*", "*genes*"]
        )
        if features_path is None:
            raise DataUnavailable(
                f"No features/genes file in {matrix_dir}",
                details={"source": source or str(matrix_dir), "reason": "missing features"},
            )

        try:
            features_format = self.detect_features_format(features_path)
            if features_format == "standard_10x":
                adata = sc.read_10x_mtx(matrix_dir, var_names="gene_symbols", cache=False)
            else:
                adata = self.load_10x_manual(matrix_dir, features_format)
        except (OSError, ValueError, IndexError, KeyError) as e:
            raise DataUnavailable(
                f"Failed to parse 10x matrix in {matrix_dir}: {e}",
                details={"source": source or str(matrix_dir), "reason": str(e)},
            ) from e

        adata.var_names_make_unique()
        adata.obs_names_make_unique()
        if not spr.issparse(adata.X):
            adata.X = spr.csr_matrix(adata.X)
        return adata, features_format

    def detect_features_format(self, features_path: Path) -> str:
        """
        Detect 10X features file format by inspecting column count.

        Args:
            features_path: Path to features/genes file (compressed or uncompressed)

        Returns:
            Format type: "standard_10x", "symbols_only", or "ids_only"
        """
        with _open_text(features_path) as f:
            first_line = f.readline().strip()

        n_cols = first_line.count("\t") + 1
        if n_cols >= 2:
            return "standard_10x"
        if first_line.startswith("ENS"):
            return "ids_only"
        return "symbols_only"

    def load_10x_manual(self, matrix_dir: Path, features_format: str) -> anndata.AnnData:
        """
        Load a trio whose feature file has a single column.

        Args:
            matrix_dir: Directory containing the trio
            features_format: Format detected by detect_features_format()

        Returns:
            AnnData object (cells × genes)
        """
        logger.info(f"Using manual 10X loader for non-standard format: {features_format}")

        matrix_path = _first_match(matrix_dir, ["matrix.mtx*", "*.mtx*"])
        barcodes_path = _first_match(matrix_dir, ["barcodes.tsv*", "*barcode*"])
        features_path = _first_match(
            matrix_dir, ["features.tsv*", "genes.tsv*", "*features*", "*genes*"]
        )
        if not (matrix_path and barcodes_path and features_path):
            raise FileNotFoundError(f"Could not find complete 10X trio in {matrix_dir}")

        # MTX is genes × cells
        if matrix_path.name.endswith(".gz"):
            with gzip.open(matrix_path, "rb") as f:
                X = mmread(f).T.tocsr()
        else:
            X = mmread(matrix_path).T.tocsr()

        with _open_text(barcodes_path) as f:
            barcodes = [line.strip().split("\t")[0] for line in f if line.strip()]
        with _open_text(features_path) as f:
            gene_names = [line.strip() for line in f if line.strip()]

        if X.shape[0] != len(barcodes):
            raise ValueError(
                f"Dimension mismatch: Matrix has {X.shape[0]} rows but {len(barcodes)} barcodes"
            )
        if X.shape[1] != len(gene_names):
            raise ValueError(
                f"Dimension mismatch: Matrix has {X.shape[1]} columns but {len(gene_names)} genes"
            )

        var_df = pd.DataFrame(
            {"gene_ids": gene_names, "feature_types": "Gene Expression"},
            index=gene_names,
        )
        return anndata.AnnData(X=X, obs=pd.DataFrame(index=barcodes), var=var_df)
