"""
Marker gene identification service.

Finds features differentially elevated in each cluster with
``scanpy.tl.rank_genes_groups`` on the log-normalized matrix, then applies
detection-fraction and fold-change thresholds. Clusters with a single
observation have no defined test statistic; they are skipped and produce
no markers.
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import scanpy as sc

from cellpipe.core.dataset import MARKER_COLUMNS, Dataset, sorted_cluster_ids
from cellpipe.core.exceptions import CellpipeCoreError
from cellpipe.tools.preprocessing_service import normalized_anndata
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)


class MarkerError(Exception):
    """Base exception for marker identification operations."""

    pass


def empty_markers() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "cluster": pd.Series(dtype=str),
            "feature": pd.Series(dtype=str),
            "log2_fold_change": pd.Series(dtype=float),
            "p_value": pd.Series(dtype=float),
            "p_value_adj": pd.Series(dtype=float),
            "score": pd.Series(dtype=float),
            "pct_in": pd.Series(dtype=float),
            "pct_out": pd.Series(dtype=float),
        }
    )[MARKER_COLUMNS]


def sort_markers(markers: pd.DataFrame) -> pd.DataFrame:
    """Sort by cluster (natural order), then by decreasing fold change."""
    if markers.empty:
        return markers.reset_index(drop=True)
    order = {c: i for i, c in enumerate(sorted_cluster_ids(markers["cluster"]))}
    return (
        markers.assign(_rank=markers["cluster"].map(order))
        .sort_values(["_rank", "log2_fold_change"], ascending=[True, False], kind="stable")
        .drop(columns="_rank")
        .reset_index(drop=True)
    )


class MarkerService:
    """
    Stateless service for differential expression between clusters.
    """

    def __init__(self):
        logger.debug("Initializing stateless MarkerService")

    def find_all_markers(
        self,
        dataset: Dataset,
        min_detection_fraction: float,
        min_log2_fold_change: float,
        only_positive: bool = True,
        method: str = "wilcoxon",
    ) -> Tuple[Dataset, Dict[str, Any]]:
        """
        One-vs-rest markers for every cluster.

        Args:
            dataset: Dataset with normalized data and cluster_labels
            min_detection_fraction: The larger of the in-cluster and
                out-of-cluster detection fractions must reach this value
            min_log2_fold_change: Minimum absolute log2 fold change
            only_positive: Keep only features up-regulated in the cluster
            method: Test used by rank_genes_groups

        Returns:
            Tuple[Dataset, Dict[str, Any]]: Dataset with markers and stats

        Raises:
            MarkerError: If the test fails
        """
        try:
            clusters = dataset.cluster_ids()
            sizes = dataset.cluster_labels.astype(str).value_counts()
            singletons = [c for c in clusters if sizes[c] < 2]
            testable = [c for c in clusters if sizes[c] >= 2]

            if singletons:
                logger.warning(
                    f"Skipping marker detection for single-observation clusters: "
                    f"{', '.join(singletons)}"
                )

            if len(clusters) < 2 or not testable:
                logger.warning(
                    f"Marker detection needs at least two clusters with a testable "
                    f"group; found {len(clusters)} clusters"
                )
                markers = empty_markers()
            else:
                logger.info(
                    f"Finding markers for {len(testable)} clusters ({method}, one-vs-rest)"
                )
                results = self._rank(dataset, groups=testable, reference="rest", method=method)
                markers = self._filter(
                    results,
                    min_detection_fraction=min_detection_fraction,
                    min_log2_fold_change=min_log2_fold_change,
                    only_positive=only_positive,
                )

            dataset.markers = markers

            per_cluster = markers["cluster"].value_counts()
            stats = {
                "analysis_type": "markers",
                "method": method,
                "min_detection_fraction": min_detection_fraction,
                "min_log2_fold_change": min_log2_fold_change,
                "only_positive": only_positive,
                "n_clusters_tested": len(testable) if len(clusters) >= 2 else 0,
                "skipped_clusters": singletons,
                "n_markers": int(len(markers)),
                "markers_per_cluster": {c: int(per_cluster.get(c, 0)) for c in clusters},
            }
            logger.info(f"Found {len(markers)} markers across {len(clusters)} clusters")
            return dataset, stats

        except CellpipeCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in marker detection: {e}")
            raise MarkerError(f"Marker detection failed: {str(e)}") from e

    def find_markers(
        self,
        dataset: Dataset,
        ident_1: str,
        ident_2: Optional[str] = None,
        min_detection_fraction: float = 0.1,
        min_log2_fold_change: float = 0.25,
        only_positive: bool = False,
        method: str = "wilcoxon",
    ) -> pd.DataFrame:
        """
        Markers of one cluster against another cluster or the rest.

        Args:
            dataset: Dataset with normalized data and cluster_labels
            ident_1: Cluster to characterize
            ident_2: Comparison cluster (None compares against all others)
            min_detection_fraction: Detection threshold (see find_all_markers)
            min_log2_fold_change: Minimum absolute log2 fold change
            only_positive: Keep only features up-regulated in ident_1
            method: Test used by rank_genes_groups

        Returns:
            pd.DataFrame: Markers with MARKER_COLUMNS, cluster set to ident_1

        Raises:
            MarkerError: If a cluster does not exist or the test fails
        """
        ident_1 = str(ident_1)
        ident_2 = None if ident_2 is None else str(ident_2)
        clusters = dataset.cluster_ids()

        for ident in (ident_1, ident_2):
            if ident is not None and ident not in clusters:
                raise MarkerError(
                    f"Cluster '{ident}' not found. Available: {', '.join(clusters)}"
                )
        if ident_1 == ident_2:
            raise MarkerError("ident_1 and ident_2 must differ")

        sizes = dataset.cluster_labels.astype(str).value_counts()
        compared = [ident_1] + ([ident_2] if ident_2 is not None else [])
        too_small = [c for c in compared if sizes[c] < 2]
        if len(clusters) < 2 or too_small:
            logger.warning(
                f"Cannot test {ident_1} vs {ident_2 or 'rest'}: "
                f"single-observation clusters {too_small}"
            )
            return empty_markers()

        try:
            results = self._rank(
                dataset,
                groups=[ident_1],
                reference=ident_2 if ident_2 is not None else "rest",
                method=method,
            )
            return self._filter(
                results,
                min_detection_fraction=min_detection_fraction,
                min_log2_fold_change=min_log2_fold_change,
                only_positive=only_positive,
            )
        except Exception as e:
            logger.exception(f"Error comparing {ident_1} vs {ident_2 or 'rest'}: {e}")
            raise MarkerError(f"Marker comparison failed: {str(e)}") from e

    def top_markers(self, markers: pd.DataFrame, n: int = 10) -> pd.DataFrame:
        """
        Top ``n`` markers per cluster by fold change.

        Args:
            markers: Marker table with MARKER_COLUMNS
            n: Markers per cluster

        Returns:
            pd.DataFrame: Sorted subset of ``markers``
        """
        if markers is None or markers.empty:
            return empty_markers()
        ranked = sort_markers(markers)
        return ranked.groupby("cluster", sort=False).head(n).reset_index(drop=True)

    def top_features(self, markers: pd.DataFrame, n: int = 1) -> List[str]:
        """Unique features of the top ``n`` markers per cluster, in cluster order."""
        features = self.top_markers(markers, n)["feature"].tolist()
        return list(dict.fromkeys(features))

    def _rank(
        self, dataset: Dataset, groups: List[str], reference: str, method: str
    ) -> pd.DataFrame:
        adata = normalized_anndata(dataset)
        adata.obs["cluster"] = pd.Categorical(
            dataset.cluster_labels.astype(str).to_numpy(),
            categories=dataset.cluster_ids(),
        )

        sc.tl.rank_genes_groups(
            adata,
            groupby="cluster",
            groups=groups,
            reference=reference,
            method=method,
            pts=True,
            use_raw=False,
            key_added="rank_genes_groups",
        )

        frames = []
        for group in groups:
            df = sc.get.rank_genes_groups_df(adata, group=group, key="rank_genes_groups")
            df = df.rename(
                columns={
                    "names": "feature",
                    "logfoldchanges": "log2_fold_change",
                    "pvals": "p_value",
                    "pvals_adj": "p_value_adj",
                    "scores": "score",
                    "pct_nz_group": "pct_in",
                    "pct_nz_reference": "pct_out",
                }
            )
            if "pct_out" not in df.columns:
                # scanpy only reports the reference fraction against "rest"
                reference_fraction = self._detection_fraction(
                    adata, (adata.obs["cluster"] == reference).to_numpy()
                )
                df["pct_out"] = reference_fraction.reindex(
                    df["feature"].astype(str)
                ).to_numpy()
            df["cluster"] = group
            frames.append(df[MARKER_COLUMNS])

        results = pd.concat(frames, ignore_index=True)
        # undefined statistics count as non-significant
        results["p_value"] = results["p_value"].fillna(1.0)
        results["p_value_adj"] = results["p_value_adj"].fillna(1.0)
        results["feature"] = results["feature"].astype(str)
        return results

    @staticmethod
    def _detection_fraction(adata, mask: np.ndarray) -> pd.Series:
        """Fraction of the masked observations with a nonzero value, per feature."""
        detected = adata.X[mask] > 0
        counts = np.asarray(detected.sum(axis=0)).ravel()
        return pd.Series(counts / max(int(mask.sum()), 1), index=adata.var_names.astype(str))

    @staticmethod
    def _filter(
        results: pd.DataFrame,
        min_detection_fraction: float,
        min_log2_fold_change: float,
        only_positive: bool,
    ) -> pd.DataFrame:
        lfc = results["log2_fold_change"].to_numpy(dtype=float)
        detected = (
            np.maximum(results["pct_in"].to_numpy(), results["pct_out"].to_numpy())
            >= min_detection_fraction
        )
        effect = np.abs(lfc) >= min_log2_fold_change
        keep = detected & effect & np.isfinite(lfc)
        if only_positive:
            keep &= lfc > 0
        return sort_markers(results.loc[keep])
