"""
Dimensionality reduction and clustering service for single-cell RNA-seq data.

This service wraps scanpy's PCA, kNN graph, Leiden and UMAP
implementations. Each step validates the rank and size constraints of
its inputs up front so that a misconfigured run fails with
InsufficientData rather than a deep library error.
"""

from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr
from scipy.sparse.csgraph import connected_components

from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import CellpipeCoreError, InsufficientData
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)


class ClusteringError(Exception):
    """Base exception for clustering operations."""

    pass


def _graph_anndata(dataset: Dataset) -> anndata.AnnData:
    """Minimal AnnData carrying the PCA embedding and neighbor graph."""
    adata = anndata.AnnData(
        X=np.zeros((dataset.n_observations, 0), dtype=np.float32),
        obs=pd.DataFrame(index=dataset.observation_ids.astype(str)),
    )
    for key, embedding in dataset.reductions.items():
        adata.obsm[f"X_{key}"] = np.asarray(embedding)
    if dataset.graph is not None:
        adata.obsp["connectivities"] = dataset.graph
        adata.obsp["distances"] = dataset.graph_distances
        adata.uns["neighbors"] = {
            "connectivities_key": "connectivities",
            "distances_key": "distances",
            "params": dict(dataset.params.get("neighbors", {}).get("scanpy", {})),
        }
    return adata


class ClusteringService:
    """
    Stateless service for PCA, neighbor graphs, Leiden clustering and UMAP.
    """

    def __init__(self):
        logger.debug("Initializing stateless ClusteringService")

    def run_pca(
        self,
        dataset: Dataset,
        n_components: int,
        random_state: int = 0,
        svd_solver: str = "arpack",
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Run PCA on the scaled matrix.

        Args:
            dataset: Dataset with scaled_matrix
            n_components: Number of principal components to keep
            random_state: Seed for the solver
            svd_solver: SVD solver passed to scanpy

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with reductions["pca"] and stats

        Raises:
            InsufficientData: If n_components exceeds min(n_observations, n_variable_features)
            ClusteringError: If PCA fails
        """
        n_obs, n_vars = dataset.scaled_matrix.shape
        max_rank = min(n_obs, n_vars)
        if n_components < 1 or n_components > max_rank:
            raise InsufficientData(
                f"Cannot compute {n_components} principal components from "
                f"{n_obs} observations × {n_vars} features "
                f"(at most {max_rank})",
                details={
                    "stage": "pca",
                    "required": n_components,
                    "available": max_rank,
                },
            )
        if n_components == max_rank and svd_solver == "arpack":
            # arpack only computes fewer singular vectors than the smaller dimension
            logger.info(f"Using the full SVD solver for all {max_rank} components")
            svd_solver = "full"

        try:
            logger.info(f"Running PCA with {n_components} components ({svd_solver})")

            adata = anndata.AnnData(X=np.asarray(dataset.scaled_matrix))
            sc.tl.pca(
                adata,
                n_comps=n_components,
                svd_solver=svd_solver,
                random_state=random_state,
                zero_center=True,
            )

            dataset.reductions["pca"] = np.asarray(adata.obsm["X_pca"])
            dataset.pca_loadings = np.asarray(adata.varm["PCs"])
            dataset.pca_variance_ratio = np.asarray(adata.uns["pca"]["variance_ratio"])

            stats = {
                "analysis_type": "pca",
                "n_components": n_components,
                "svd_solver": svd_solver,
                "random_state": random_state,
                "variance_ratio": dataset.pca_variance_ratio.tolist(),
                "cumulative_variance": float(dataset.pca_variance_ratio.sum()),
            }
            logger.info(
                f"PCA completed: {stats['cumulative_variance']:.1%} variance explained"
            )
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error in PCA: {e}")
            raise ClusteringError(f"PCA failed: {str(e)}") from e

    def build_neighbor_graph(
        self,
        dataset: Dataset,
        n_neighbors: int,
        n_dims: int,
        use_rep: str = "pca",
        random_state: int = 0,
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Build a kNN graph over the leading ``n_dims`` embedding dimensions.

        Args:
            dataset: Dataset with reductions[use_rep]
            n_neighbors: Neighbors per observation, including itself
            n_dims: Leading dimensions of the embedding to use
            use_rep: Embedding name
            random_state: Seed for the approximate neighbor search

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with graph and stats

        Raises:
            InsufficientData: If n_dims exceeds the embedding or n_neighbors
                is not smaller than the number of observations
            ClusteringError: If graph construction fails
        """
        if use_rep not in dataset.reductions:
            raise ClusteringError(f"Embedding '{use_rep}' has not been computed")

        width = dataset.reductions[use_rep].shape[1]
        if n_dims < 1 or n_dims > width:
            raise InsufficientData(
                f"Requested {n_dims} dimensions of '{use_rep}' but it has {width}",
                details={"stage": "neighbors", "required": n_dims, "available": width},
            )
        if n_neighbors >= dataset.n_observations:
            raise InsufficientData(
                f"n_neighbors ({n_neighbors}) must be smaller than the number of "
                f"observations ({dataset.n_observations})",
                details={
                    "stage": "neighbors",
                    "required": n_neighbors + 1,
                    "available": dataset.n_observations,
                },
            )

        try:
            logger.info(
                f"Building neighbor graph: {n_neighbors} neighbors on "
                f"{n_dims} dimensions of '{use_rep}'"
            )

            adata = _graph_anndata(dataset)
            key = f"X_{use_rep}"
            # only the leading n_dims columns take part in distances
            adata.obsm[key] = np.asarray(dataset.reductions[use_rep])[:, :n_dims]
            sc.pp.neighbors(
                adata,
                n_neighbors=n_neighbors,
                use_rep=key,
                random_state=random_state,
            )

            dataset.graph = spr.csr_matrix(adata.obsp["connectivities"])
            dataset.graph_distances = spr.csr_matrix(adata.obsp["distances"])
            # clustering and UMAP rebuild the neighbors context from these
            library_params = dict(adata.uns["neighbors"]["params"])
            dataset.params.setdefault("neighbors", {})["scanpy"] = library_params

            n_components, _ = connected_components(dataset.graph, directed=False)
            stats = {
                "analysis_type": "neighbors",
                "n_neighbors": n_neighbors,
                "n_dims": n_dims,
                "use_rep": use_rep,
                "random_state": random_state,
                "n_edges": int(dataset.graph.nnz // 2),
                "n_connected_components": int(n_components),
                "scanpy": library_params,
            }
            logger.info(
                f"Neighbor graph built: {stats['n_edges']} edges, "
                f"{n_components} connected components"
            )
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error building neighbor graph: {e}")
            raise ClusteringError(f"Neighbor graph construction failed: {str(e)}") from e

    def assign_clusters(
        self,
        dataset: Dataset,
        resolution: float,
        random_state: int = 0,
        n_iterations: int = -1,
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        Leiden community detection on the neighbor graph.

        Labels are strings "0".."n-1" ordered by decreasing cluster size.

        Args:
            dataset: Dataset with graph
            resolution: Higher values give more, smaller clusters
            random_state: Seed for Leiden
            n_iterations: Leiden iterations (-1 runs until convergence)

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with cluster_labels and stats

        Raises:
            ClusteringError: If clustering fails
        """
        try:
            logger.info(
                f"Running Leiden clustering (resolution={resolution}, seed={random_state})"
            )

            adata = _graph_anndata(dataset)
            sc.tl.leiden(
                adata,
                resolution=resolution,
                random_state=random_state,
                n_iterations=n_iterations,
                key_added="leiden",
            )

            labels = adata.obs["leiden"].astype(str)
            labels.index = dataset.observation_ids
            labels.name = "cluster"
            dataset.cluster_labels = labels

            sizes = labels.value_counts()
            stats = {
                "analysis_type": "clustering",
                "method": "leiden",
                "resolution": resolution,
                "random_state": random_state,
                "n_iterations": n_iterations,
                "n_clusters": int(sizes.size),
                "cluster_sizes": {str(k): int(v) for k, v in sizes.items()},
            }
            logger.info(f"Leiden found {stats['n_clusters']} clusters")
            return dataset, stats

        except Exception as e:
            logger.exception(f"Error in Leiden clustering: {e}")
            raise ClusteringError(f"Clustering failed: {str(e)}") from e

    def run_umap(
        self,
        dataset: Dataset,
        n_components: int = 2,
        min_dist: float = 0.5,
        spread: float = 1.0,
        random_state: int = 0,
        init_pos: Optional[str] = "spectral",
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        UMAP embedding over the neighbor graph.

        Args:
            dataset: Dataset with graph and reductions["pca"]
            n_components: 2 or 3
            min_dist: Minimum distance between embedded points
            spread: Scale of embedded points
            random_state: Seed for the layout
            init_pos: "spectral", "random" or "pca" (leading PCA coordinates)

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with reductions["umap"] and stats

        Raises:
            ClusteringError: If the embedding fails
        """
        try:
            logger.info(
                f"Running UMAP ({n_components}D, min_dist={min_dist}, spread={spread})"
            )

            adata = _graph_anndata(dataset)
            if init_pos == "pca":
                pca = np.asarray(dataset.reductions["pca"])
                if pca.shape[1] < n_components:
                    raise InsufficientData(
                        f"PCA initialization needs {n_components} components, "
                        f"embedding has {pca.shape[1]}",
                        details={
                            "stage": "umap",
                            "required": n_components,
                            "available": pca.shape[1],
                        },
                    )
                init = pca[:, :n_components]
            else:
                init = init_pos

            sc.tl.umap(
                adata,
                n_components=n_components,
                min_dist=min_dist,
                spread=spread,
                random_state=random_state,
                init_pos=init,
            )

            dataset.reductions["umap"] = np.asarray(adata.obsm["X_umap"])

            stats = {
                "analysis_type": "umap",
                "n_components": n_components,
                "min_dist": min_dist,
                "spread": spread,
                "random_state": random_state,
                "init_pos": init_pos,
            }
            return dataset, stats

        except CellpipeCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in UMAP: {e}")
            raise ClusteringError(f"UMAP failed: {str(e)}") from e
