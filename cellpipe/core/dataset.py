"""
The Dataset record threaded through every pipeline stage.

A Dataset is an explicit record with named, typed fields. Stages read the
fields they declare as requirements and fill in the fields they produce;
nothing is attached dynamically. Matrices follow the AnnData convention of
observations (cells) in rows and features (genes) in columns.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as spr

from cellpipe.core.provenance import ProvenanceTracker

# Fields a stage may declare in ``requires``/``produces``. Reductions are
# addressed as "reductions.<name>".
DATASET_FIELDS = (
    "counts",
    "metadata",
    "normalized",
    "variable_features",
    "scaled_matrix",
    "reductions",
    "graph",
    "cluster_labels",
    "markers",
)

MARKER_COLUMNS = [
    "cluster",
    "feature",
    "log2_fold_change",
    "p_value",
    "p_value_adj",
    "score",
    "pct_in",
    "pct_out",
]


def sorted_cluster_ids(values) -> List[str]:
    """Sort cluster IDs numerically where possible, then lexically."""
    ids = {str(v) for v in values}
    return sorted(ids, key=lambda c: (0, int(c), "") if c.isdigit() else (1, 0, c))


@dataclass
class Dataset:
    """
    Single-cell dataset owned by one pipeline run.

    Attributes:
        counts: Raw counts, observations x features (csr)
        features: Unique feature identifiers, column order of ``counts``
        metadata: Per-observation attributes indexed by observation ID
        normalized: Log-normalized counts, same shape and order as ``counts``
        variable_features: Selected features, decreasing dispersion rank
        scaled_matrix: Dense standardized matrix over ``variable_features``
        reductions: Embeddings by name ("pca", "umap"), append-only
        pca_loadings: Feature loadings (variable_features x components)
        pca_variance_ratio: Explained variance ratio per component
        graph: kNN connectivities (observations x observations)
        graph_distances: kNN distances (observations x observations)
        cluster_labels: Cluster ID (later cell type) per observation
        markers: Marker table with MARKER_COLUMNS
        params: Effective parameters per stage
        provenance: Activity record of the run
        name: Dataset name used for artifact file names
    """

    counts: spr.csr_matrix
    features: pd.Index
    metadata: pd.DataFrame
    normalized: Optional[spr.csr_matrix] = None
    variable_features: Optional[List[str]] = None
    scaled_matrix: Optional[np.ndarray] = None
    reductions: Dict[str, np.ndarray] = field(default_factory=dict)
    pca_loadings: Optional[np.ndarray] = None
    pca_variance_ratio: Optional[np.ndarray] = None
    graph: Optional[spr.csr_matrix] = None
    graph_distances: Optional[spr.csr_matrix] = None
    cluster_labels: Optional[pd.Series] = None
    markers: Optional[pd.DataFrame] = None
    params: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    provenance: ProvenanceTracker = field(default_factory=ProvenanceTracker)
    name: str = "dataset"

    def __post_init__(self):
        if not spr.isspmatrix_csr(self.counts):
            self.counts = spr.csr_matrix(self.counts)
        self.features = pd.Index(self.features)
        if self.counts.shape != (len(self.metadata), len(self.features)):
            raise ValueError(
                f"counts shape {self.counts.shape} does not match "
                f"{len(self.metadata)} observations x {len(self.features)} features"
            )
        if not self.features.is_unique:
            raise ValueError("Feature identifiers must be unique")

    @property
    def observation_ids(self) -> pd.Index:
        return self.metadata.index

    @property
    def n_observations(self) -> int:
        return self.counts.shape[0]

    @property
    def n_features(self) -> int:
        return self.counts.shape[1]

    @property
    def shape(self) -> tuple:
        return self.counts.shape

    def cluster_ids(self) -> List[str]:
        """Distinct cluster labels in natural order ("2" before "10")."""
        if self.cluster_labels is None:
            return []
        return sorted_cluster_ids(self.cluster_labels.unique())

    def has(self, name: str) -> bool:
        """
        Whether a field has been produced.

        Args:
            name: Field name, or "reductions.<name>" for one embedding

        Returns:
            bool: True if the field holds data
        """
        if name.startswith("reductions."):
            return name.split(".", 1)[1] in self.reductions
        if name not in DATASET_FIELDS:
            raise KeyError(f"Unknown dataset field: {name}")
        value = getattr(self, name)
        if name == "reductions":
            return bool(value)
        return value is not None

    def subset_observations(self, mask) -> "Dataset":
        """
        Keep only the observations selected by ``mask``.

        Every observation-indexed field is subset jointly so no structure
        refers to a removed observation.

        Args:
            mask: Boolean array (or Series aligned to metadata) of length
                n_observations

        Returns:
            Dataset: A new Dataset sharing params and provenance
        """
        if isinstance(mask, pd.Series):
            mask = mask.reindex(self.metadata.index).fillna(False).to_numpy()
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_observations,):
            raise ValueError(
                f"Mask length {mask.shape[0]} does not match "
                f"{self.n_observations} observations"
            )

        idx = np.flatnonzero(mask)

        def _rows(matrix):
            return None if matrix is None else matrix[idx]

        def _square(matrix):
            return None if matrix is None else matrix[idx][:, idx]

        return replace(
            self,
            counts=self.counts[idx],
            metadata=self.metadata.iloc[idx].copy(),
            normalized=_rows(self.normalized),
            scaled_matrix=_rows(self.scaled_matrix),
            reductions={key: value[idx] for key, value in self.reductions.items()},
            graph=_square(self.graph),
            graph_distances=_square(self.graph_distances),
            cluster_labels=(
                None
                if self.cluster_labels is None
                else self.cluster_labels.iloc[idx].copy()
            ),
        )

    def to_anndata(self) -> anndata.AnnData:
        """
        Convert to an AnnData object.

        ``X`` holds the raw counts; the normalized matrix goes to
        ``layers["normalized"]``, embeddings to ``obsm["X_<name>"]``, the
        graph to ``obsp`` and markers, params and provenance to ``uns``.
        """
        obs = self.metadata.copy()
        if self.cluster_labels is not None:
            obs["cluster"] = pd.Categorical(
                self.cluster_labels.reindex(obs.index).astype(str)
            )

        var = pd.DataFrame(index=self.features.astype(str))
        adata = anndata.AnnData(X=self.counts.copy(), obs=obs, var=var)

        if self.normalized is not None:
            adata.layers["normalized"] = self.normalized.copy()

        if self.variable_features is not None:
            adata.var["highly_variable"] = adata.var_names.isin(self.variable_features)
            adata.uns["variable_features"] = list(self.variable_features)

        if self.scaled_matrix is not None:
            adata.obsm["X_scaled"] = np.asarray(self.scaled_matrix)

        for key, embedding in self.reductions.items():
            adata.obsm[f"X_{key}"] = np.asarray(embedding)

        if self.pca_loadings is not None and self.variable_features is not None:
            loadings = np.zeros((self.n_features, self.pca_loadings.shape[1]))
            positions = self.features.get_indexer(self.variable_features)
            loadings[positions] = self.pca_loadings
            adata.varm["PCs"] = loadings
        if self.pca_variance_ratio is not None:
            adata.uns["pca"] = {"variance_ratio": np.asarray(self.pca_variance_ratio)}

        if self.graph is not None:
            adata.obsp["connectivities"] = self.graph.copy()
        if self.graph_distances is not None:
            adata.obsp["distances"] = self.graph_distances.copy()

        if self.markers is not None:
            adata.uns["markers"] = self.markers.reset_index(drop=True)

        adata.uns["params"] = json.dumps(self.params, default=str)
        adata.uns["name"] = self.name
        self.provenance.add_to_anndata(adata)

        return adata

    @classmethod
    def from_anndata(cls, adata: anndata.AnnData) -> "Dataset":
        """Rebuild a Dataset from an AnnData written by ``to_anndata``."""
        metadata = adata.obs.copy()
        cluster_labels = None
        if "cluster" in metadata.columns:
            cluster_labels = metadata.pop("cluster").astype(str)
            cluster_labels.name = "cluster"

        variable_features = None
        if "variable_features" in adata.uns:
            variable_features = [str(f) for f in adata.uns["variable_features"]]
        elif "highly_variable" in adata.var.columns:
            variable_features = list(adata.var_names[adata.var["highly_variable"]])

        reductions = {
            key[2:]: np.asarray(value)
            for key, value in adata.obsm.items()
            if key.startswith("X_") and key != "X_scaled"
        }

        pca_loadings = None
        if "PCs" in adata.varm and variable_features is not None:
            positions = adata.var_names.get_indexer(variable_features)
            pca_loadings = np.asarray(adata.varm["PCs"])[positions]

        pca_variance_ratio = None
        if "pca" in adata.uns and "variance_ratio" in adata.uns["pca"]:
            pca_variance_ratio = np.asarray(adata.uns["pca"]["variance_ratio"])

        def _csr(value):
            return None if value is None else spr.csr_matrix(value)

        markers = adata.uns.get("markers")
        if markers is not None:
            markers = pd.DataFrame(markers)

        params = adata.uns.get("params", "{}")
        if isinstance(params, str):
            params = json.loads(params)

        provenance = ProvenanceTracker()
        provenance.extract_from_anndata(adata)

        return cls(
            counts=spr.csr_matrix(adata.X),
            features=pd.Index(adata.var_names),
            metadata=metadata,
            normalized=_csr(adata.layers.get("normalized")),
            variable_features=variable_features,
            scaled_matrix=(
                np.asarray(adata.obsm["X_scaled"]) if "X_scaled" in adata.obsm else None
            ),
            reductions=reductions,
            pca_loadings=pca_loadings,
            pca_variance_ratio=pca_variance_ratio,
            graph=_csr(adata.obsp.get("connectivities")),
            graph_distances=_csr(adata.obsp.get("distances")),
            cluster_labels=cluster_labels,
            markers=markers,
            params=dict(params),
            provenance=provenance,
            name=str(adata.uns.get("name", "dataset")),
        )
