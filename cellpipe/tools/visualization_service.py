"""
Visualization service for single-cell RNA-seq pipeline results.

This service builds the interactive Plotly figures reported by a pipeline
run (QC distributions, variable features, PCA, UMAP and marker plots) from
a Dataset, and exports them as static PNG images through kaleido.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from cellpipe.core.dataset import Dataset, sorted_cluster_ids
from cellpipe.core.exceptions import ExportError
from cellpipe.tools.annotation_service import AnnotationService
from cellpipe.utils.atomic import atomic_path
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

QC_METRICS = {
    "n_features": "Features per cell",
    "total_counts": "Total counts",
    "mito_fraction": "Mitochondrial fraction",
}


class SuppressKaleidoLogging:
    """Context manager to silence kaleido and plotly chatter during PNG export."""

    def __enter__(self):
        loggers = ("kaleido", "plotly", "choreographer")
        self.levels = {name: logging.getLogger(name).level for name in loggers}
        for name in self.levels:
            logging.getLogger(name).setLevel(logging.ERROR)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for name, level in self.levels.items():
            logging.getLogger(name).setLevel(level)
        return False


class VisualizationError(Exception):
    """Base exception for visualization operations."""

    pass


class VisualizationService:
    """
    Plotly figures for every stage of the clustering workflow.

    Each ``create_*`` method takes a Dataset and returns a ``go.Figure``;
    a missing input field raises VisualizationError so callers can skip
    the figure and carry on.
    """

    def __init__(self, width: int = 800, height: int = 600):
        logger.debug("Initializing VisualizationService")

        self.cluster_colors = px.colors.qualitative.Set1 + px.colors.qualitative.Set2
        self.continuous_colors = px.colors.sequential.Viridis
        self.diverging_colors = px.colors.diverging.RdBu_r

        self.default_width = width
        self.default_height = height
        self.default_opacity = 0.8

        self.expression_colorscale = [
            [0, "lightgray"],
            [0.01, "lightblue"],
            [0.1, "blue"],
            [0.5, "red"],
            [0.8, "darkred"],
            [1.0, "black"],
        ]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _point_size(self, n_cells: int) -> int:
        if n_cells < 1000:
            return 8
        if n_cells < 10000:
            return 5
        if n_cells < 50000:
            return 3
        return 2

    def _style(self, fig: go.Figure, title: str) -> go.Figure:
        fig.update_layout(
            title=title,
            width=self.default_width,
            height=self.default_height,
            plot_bgcolor="white",
            hovermode="closest",
        )
        fig.update_xaxes(showgrid=True, gridcolor="lightgray")
        fig.update_yaxes(showgrid=True, gridcolor="lightgray")
        return fig

    @staticmethod
    def _cluster_series(dataset: Dataset) -> pd.Series:
        """Original cluster IDs, also after annotation rewrote cluster_labels."""
        if "cluster_id" in dataset.metadata.columns:
            return dataset.metadata["cluster_id"].astype(str)
        if dataset.cluster_labels is None:
            raise VisualizationError("Dataset has no cluster labels. Run clustering first.")
        return dataset.cluster_labels.reindex(dataset.observation_ids).astype(str)

    @staticmethod
    def _expression(dataset: Dataset, features: Sequence[str]) -> np.ndarray:
        """Dense log-normalized expression, observations x ``features``."""
        if dataset.normalized is None:
            raise VisualizationError("Dataset is not normalized. Run normalization first.")
        positions = dataset.features.get_indexer(list(features))
        missing = [f for f, p in zip(features, positions) if p < 0]
        if missing:
            raise VisualizationError(f"Features not found: {missing}")
        return dataset.normalized[:, positions].toarray()

    def _valid_features(self, dataset: Dataset, features: Sequence[str]) -> List[str]:
        present = [f for f in features if f in dataset.features]
        dropped = [f for f in features if f not in dataset.features]
        if dropped:
            logger.warning(f"Features not found, skipping: {dropped}")
        if not present:
            raise VisualizationError("No valid features to plot")
        return present

    def _embedding_scatter(
        self,
        coords: np.ndarray,
        color: pd.Series,
        title: str,
        axis_prefix: str,
        color_label: str,
        categories: Optional[List[str]] = None,
    ) -> go.Figure:
        labels = {"x": f"{axis_prefix} 1", "y": f"{axis_prefix} 2", "color": color_label}
        common = dict(
            color=color.to_numpy(),
            title=title,
            width=self.default_width,
            height=self.default_height,
        )
        if categories is not None:
            common["category_orders"] = {"color": categories}
            common["color_discrete_sequence"] = self.cluster_colors
        else:
            common["color_continuous_scale"] = self.continuous_colors

        if coords.shape[1] >= 3:
            labels["z"] = f"{axis_prefix} 3"
            fig = px.scatter_3d(
                x=coords[:, 0], y=coords[:, 1], z=coords[:, 2], labels=labels, **common
            )
        else:
            fig = px.scatter(x=coords[:, 0], y=coords[:, 1], labels=labels, **common)

        fig.update_traces(
            marker=dict(size=self._point_size(len(coords)), opacity=self.default_opacity)
        )
        fig.update_layout(plot_bgcolor="white", hovermode="closest")
        return fig

    # ------------------------------------------------------------------
    # QC
    # ------------------------------------------------------------------

    def create_qc_violin(self, dataset: Dataset, title: Optional[str] = None) -> go.Figure:
        """
        Violin plots of the three QC metrics over the retained observations.

        Threshold lines are drawn when the QC stage recorded its parameters.

        Args:
            dataset: Dataset with QC metrics in metadata
            title: Plot title

        Returns:
            go.Figure: One violin per metric
        """
        try:
            missing = [m for m in QC_METRICS if m not in dataset.metadata.columns]
            if missing:
                raise VisualizationError(f"QC metrics not found: {missing}. Run QC first.")

            fig = make_subplots(
                rows=1,
                cols=len(QC_METRICS),
                subplot_titles=list(QC_METRICS.values()),
                horizontal_spacing=0.08,
            )
            thresholds = dataset.params.get("qc_filter", {})
            lines = {
                "n_features": [
                    thresholds.get("min_features"),
                    thresholds.get("max_features"),
                ],
                "mito_fraction": [thresholds.get("max_mito_fraction")],
            }

            for col, metric in enumerate(QC_METRICS, start=1):
                fig.add_trace(
                    go.Violin(
                        y=dataset.metadata[metric].to_numpy(),
                        name=metric,
                        box_visible=True,
                        meanline_visible=True,
                        points="all" if dataset.n_observations < 5000 else False,
                        jitter=0.4,
                        marker=dict(size=2, opacity=0.5),
                        showlegend=False,
                    ),
                    row=1,
                    col=col,
                )
                for value in lines.get(metric, []):
                    if value is not None:
                        fig.add_hline(
                            y=value, line_dash="dash", line_color="red", row=1, col=col
                        )

            self._style(fig, title or f"QC metrics ({dataset.n_observations} cells)")
            fig.update_layout(width=max(self.default_width, 350 * len(QC_METRICS)))
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating QC violin plot: {e}")
            raise VisualizationError(f"Failed to create QC violin plot: {str(e)}") from e

    def create_qc_scatter(self, dataset: Dataset, title: Optional[str] = None) -> go.Figure:
        """Total counts vs detected features, colored by mitochondrial fraction."""
        try:
            missing = [m for m in QC_METRICS if m not in dataset.metadata.columns]
            if missing:
                raise VisualizationError(f"QC metrics not found: {missing}. Run QC first.")

            meta = dataset.metadata
            fig = px.scatter(
                x=meta["total_counts"].to_numpy(),
                y=meta["n_features"].to_numpy(),
                color=meta["mito_fraction"].to_numpy(),
                labels={
                    "x": QC_METRICS["total_counts"],
                    "y": QC_METRICS["n_features"],
                    "color": "mito fraction",
                },
                color_continuous_scale=self.continuous_colors,
                hover_name=meta.index.astype(str),
            )
            fig.update_traces(
                marker=dict(size=self._point_size(len(meta)), opacity=self.default_opacity)
            )
            return self._style(fig, title or "Counts vs detected features")

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating QC scatter plot: {e}")
            raise VisualizationError(f"Failed to create QC scatter plot: {str(e)}") from e

    # ------------------------------------------------------------------
    # variable features and PCA
    # ------------------------------------------------------------------

    def create_variable_features_plot(
        self, dataset: Dataset, n_labels: int = 10, title: Optional[str] = None
    ) -> go.Figure:
        """
        Mean expression vs dispersion with the selected features highlighted.

        Mean and dispersion (variance / mean) are taken on the
        de-logged normalized values, both on log scale.

        Args:
            dataset: Dataset with normalized data and variable_features
            n_labels: Number of top variable features to label
            title: Plot title

        Returns:
            go.Figure: Dispersion scatter plot
        """
        try:
            if dataset.variable_features is None or dataset.normalized is None:
                raise VisualizationError(
                    "Variable features not found. Run variable feature selection first."
                )

            expm1 = dataset.normalized.expm1()
            means = np.asarray(expm1.mean(axis=0)).ravel()
            sq_means = np.asarray(expm1.multiply(expm1).mean(axis=0)).ravel()
            variances = sq_means - means**2
            with np.errstate(divide="ignore", invalid="ignore"):
                dispersion = np.where(means > 0, variances / means, np.nan)
                log_dispersion = np.log(dispersion)

            selected = dataset.features.isin(dataset.variable_features)
            frame = pd.DataFrame(
                {
                    "feature": dataset.features.astype(str),
                    "log_mean": np.log1p(means),
                    "log_dispersion": log_dispersion,
                    "status": np.where(selected, "variable", "other"),
                }
            ).replace([np.inf, -np.inf], np.nan).dropna()

            fig = px.scatter(
                frame,
                x="log_mean",
                y="log_dispersion",
                color="status",
                hover_name="feature",
                color_discrete_map={"variable": "red", "other": "lightgray"},
                category_orders={"status": ["other", "variable"]},
                labels={"log_mean": "log(1 + mean)", "log_dispersion": "log(dispersion)"},
            )
            fig.update_traces(marker=dict(size=4))

            top = frame.set_index("feature").reindex(dataset.variable_features[:n_labels])
            for feature, row in top.dropna().iterrows():
                fig.add_annotation(
                    x=row["log_mean"],
                    y=row["log_dispersion"],
                    text=feature,
                    showarrow=False,
                    yshift=10,
                    font=dict(size=10),
                )

            return self._style(
                fig,
                title
                or f"Variable features ({len(dataset.variable_features)} of "
                f"{dataset.n_features})",
            )

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating variable features plot: {e}")
            raise VisualizationError(
                f"Failed to create variable features plot: {str(e)}"
            ) from e

    def create_pca_loadings_plot(
        self,
        dataset: Dataset,
        n_components: int = 2,
        n_features: int = 15,
        title: Optional[str] = None,
    ) -> go.Figure:
        """
        Top features by absolute loading for the first principal components.

        Args:
            dataset: Dataset with pca_loadings
            n_components: Number of components to show
            n_features: Features per component
            title: Plot title

        Returns:
            go.Figure: One horizontal bar chart per component
        """
        try:
            if dataset.pca_loadings is None or dataset.variable_features is None:
                raise VisualizationError("PCA loadings not found. Run PCA first.")

            loadings = np.asarray(dataset.pca_loadings)
            n_components = min(n_components, loadings.shape[1])
            features = np.asarray(dataset.variable_features)

            fig = make_subplots(
                rows=1,
                cols=n_components,
                subplot_titles=[f"PC{i + 1}" for i in range(n_components)],
                horizontal_spacing=0.15,
            )
            for pc in range(n_components):
                order = np.argsort(-np.abs(loadings[:, pc]), kind="stable")[:n_features]
                order = order[::-1]
                fig.add_trace(
                    go.Bar(
                        x=loadings[order, pc],
                        y=features[order],
                        orientation="h",
                        marker_color=np.where(loadings[order, pc] >= 0, "indianred", "steelblue"),
                        showlegend=False,
                    ),
                    row=1,
                    col=pc + 1,
                )
                fig.update_xaxes(title_text="Loading", row=1, col=pc + 1)

            self._style(fig, title or "PCA loadings")
            fig.update_layout(height=max(self.default_height, 25 * n_features))
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating PCA loadings plot: {e}")
            raise VisualizationError(f"Failed to create PCA loadings plot: {str(e)}") from e

    def create_pca_plot(self, dataset: Dataset, title: Optional[str] = None) -> go.Figure:
        """PC1 vs PC2, colored by cluster when clusters exist."""
        try:
            if "pca" not in dataset.reductions:
                raise VisualizationError("PCA coordinates not found. Run PCA first.")

            coords = np.asarray(dataset.reductions["pca"])[:, :2]
            axis = "PC"
            if dataset.pca_variance_ratio is not None and len(dataset.pca_variance_ratio) >= 2:
                ratio = dataset.pca_variance_ratio
                title = title or (
                    f"PCA - PC1 ({ratio[0] * 100:.1f}%) vs PC2 ({ratio[1] * 100:.1f}%)"
                )

            if dataset.cluster_labels is not None:
                clusters = self._cluster_series(dataset)
                return self._embedding_scatter(
                    coords,
                    clusters,
                    title or "PCA",
                    axis,
                    "cluster",
                    categories=sorted_cluster_ids(clusters),
                )
            return self._embedding_scatter(
                coords,
                pd.Series(["all"] * len(coords)),
                title or "PCA",
                axis,
                "cells",
                categories=["all"],
            )

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating PCA plot: {e}")
            raise VisualizationError(f"Failed to create PCA plot: {str(e)}") from e

    def create_elbow_plot(self, dataset: Dataset, title: Optional[str] = None) -> go.Figure:
        """
        Variance explained per principal component.

        Args:
            dataset: Dataset with pca_variance_ratio
            title: Plot title

        Returns:
            go.Figure: Elbow plot with cumulative variance on a secondary axis
        """
        try:
            if dataset.pca_variance_ratio is None:
                raise VisualizationError("PCA variance information not found")

            var_ratio = np.asarray(dataset.pca_variance_ratio)
            components = list(range(1, len(var_ratio) + 1))

            fig = make_subplots(specs=[[{"secondary_y": True}]])
            fig.add_trace(
                go.Scatter(
                    x=components,
                    y=var_ratio * 100,
                    mode="lines+markers",
                    name="Individual variance",
                    marker=dict(size=6),
                ),
                secondary_y=False,
            )
            fig.add_trace(
                go.Scatter(
                    x=components,
                    y=np.cumsum(var_ratio) * 100,
                    mode="lines+markers",
                    name="Cumulative variance",
                    marker=dict(size=6),
                    line=dict(dash="dash"),
                ),
                secondary_y=True,
            )

            n_dims = dataset.params.get("neighbors", {}).get("n_dims")
            if n_dims:
                fig.add_vline(x=n_dims, line_dash="dot", line_color="gray")

            fig.update_xaxes(title_text="Principal Component")
            fig.update_yaxes(title_text="Variance Explained (%)", secondary_y=False)
            fig.update_yaxes(title_text="Cumulative Variance (%)", secondary_y=True)
            self._style(fig, title or "PCA Elbow Plot - Variance Explained")
            fig.update_layout(hovermode="x unified")
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating elbow plot: {e}")
            raise VisualizationError(f"Failed to create elbow plot: {str(e)}") from e

    # ------------------------------------------------------------------
    # UMAP
    # ------------------------------------------------------------------

    def create_umap_plot(
        self, dataset: Dataset, color_by: str = "cluster", title: Optional[str] = None
    ) -> go.Figure:
        """
        UMAP embedding colored by cluster ID or cell type.

        Args:
            dataset: Dataset with reductions["umap"]
            color_by: "cluster" or "cell_type"
            title: Plot title

        Returns:
            go.Figure: UMAP scatter plot

        Raises:
            VisualizationError: If the embedding or the coloring is missing
        """
        try:
            if "umap" not in dataset.reductions:
                raise VisualizationError("UMAP coordinates not found. Run UMAP first.")

            if color_by == "cluster":
                color = self._cluster_series(dataset)
                categories = sorted_cluster_ids(color)
            elif color_by == "cell_type":
                if "cell_type" not in dataset.metadata.columns:
                    raise VisualizationError("Cell types not found. Run annotation first.")
                color = dataset.metadata["cell_type"].astype(str)
                categories = AnnotationService().cell_type_order(dataset)
            else:
                raise VisualizationError(f"Unknown color_by '{color_by}'")

            return self._embedding_scatter(
                np.asarray(dataset.reductions["umap"]),
                color,
                title or f"UMAP colored by {color_by.replace('_', ' ')}",
                "UMAP",
                color_by,
                categories=categories,
            )

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating UMAP plot: {e}")
            raise VisualizationError(f"Failed to create UMAP plot: {str(e)}") from e

    # ------------------------------------------------------------------
    # markers
    # ------------------------------------------------------------------

    def create_marker_violin(
        self, dataset: Dataset, features: Sequence[str], title: Optional[str] = None
    ) -> go.Figure:
        """
        Violin plots of normalized expression per cluster, one panel per feature.

        Args:
            dataset: Dataset with normalized data and cluster labels
            features: Features to plot
            title: Plot title

        Returns:
            go.Figure: Grid of violin plots
        """
        try:
            features = self._valid_features(dataset, features)
            clusters = self._cluster_series(dataset)
            groups = sorted_cluster_ids(clusters)
            expression = self._expression(dataset, features)

            n_cols = min(3, len(features))
            n_rows = int(np.ceil(len(features) / n_cols))
            fig = make_subplots(
                rows=n_rows,
                cols=n_cols,
                subplot_titles=features,
                vertical_spacing=0.12 if n_rows > 1 else 0.1,
            )

            cluster_values = clusters.to_numpy()
            for i, feature in enumerate(features):
                row, col = divmod(i, n_cols)
                for g, group in enumerate(groups):
                    fig.add_trace(
                        go.Violin(
                            y=expression[cluster_values == group, i],
                            x=[group] * int((cluster_values == group).sum()),
                            name=group,
                            legendgroup=group,
                            line_color=self.cluster_colors[g % len(self.cluster_colors)],
                            box_visible=True,
                            scalemode="width",
                            showlegend=(i == 0),
                        ),
                        row=row + 1,
                        col=col + 1,
                    )

            self._style(fig, title or f"Marker expression - {', '.join(features[:6])}")
            fig.update_layout(
                width=max(self.default_width, 350 * n_cols),
                height=max(self.default_height, 300 * n_rows),
                violinmode="overlay",
            )
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating marker violin plot: {e}")
            raise VisualizationError(f"Failed to create marker violin plot: {str(e)}") from e

    def create_feature_plot(
        self, dataset: Dataset, features: Sequence[str], title: Optional[str] = None
    ) -> go.Figure:
        """Grid of UMAP panels colored by normalized expression of each feature."""
        try:
            if "umap" not in dataset.reductions:
                raise VisualizationError("UMAP coordinates not found. Run UMAP first.")
            features = self._valid_features(dataset, features)
            expression = self._expression(dataset, features)
            coords = np.asarray(dataset.reductions["umap"])

            n_cols = min(3, len(features))
            n_rows = int(np.ceil(len(features) / n_cols))
            fig = make_subplots(rows=n_rows, cols=n_cols, subplot_titles=features)

            vmax = float(expression.max()) if expression.size else 1.0
            for i, feature in enumerate(features):
                row, col = divmod(i, n_cols)
                order = np.argsort(expression[:, i], kind="stable")
                fig.add_trace(
                    go.Scattergl(
                        x=coords[order, 0],
                        y=coords[order, 1],
                        mode="markers",
                        marker=dict(
                            size=self._point_size(len(coords)) - 1,
                            color=expression[order, i],
                            colorscale=self.expression_colorscale,
                            cmin=0,
                            cmax=vmax or 1.0,
                            showscale=(i == 0),
                            colorbar=dict(title="log expr"),
                        ),
                        name=feature,
                        showlegend=False,
                    ),
                    row=row + 1,
                    col=col + 1,
                )

            self._style(fig, title or "Marker features on UMAP")
            fig.update_layout(
                width=max(self.default_width, 350 * n_cols),
                height=max(self.default_height, 320 * n_rows),
            )
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating feature plot: {e}")
            raise VisualizationError(f"Failed to create feature plot: {str(e)}") from e

    def create_marker_heatmap(
        self,
        dataset: Dataset,
        features: Sequence[str],
        standard_scale: bool = True,
        title: Optional[str] = None,
    ) -> go.Figure:
        """
        Mean expression of marker features per cluster.

        Args:
            dataset: Dataset with normalized data and cluster labels
            features: Features (rows of the heatmap)
            standard_scale: Z-score each feature across clusters
            title: Plot title

        Returns:
            go.Figure: Features x clusters heatmap
        """
        try:
            features = self._valid_features(dataset, features)
            clusters = self._cluster_series(dataset).to_numpy()
            groups = sorted_cluster_ids(clusters)
            expression = self._expression(dataset, features)

            means = np.array(
                [expression[clusters == group].mean(axis=0) for group in groups]
            ).T

            if standard_scale:
                std = means.std(axis=1, keepdims=True)
                centered = means - means.mean(axis=1, keepdims=True)
                means = np.divide(centered, std, out=np.zeros_like(centered), where=std > 0)

            if "cell_type" in dataset.metadata.columns:
                lookup = (
                    dataset.metadata.assign(_cluster=clusters)
                    .drop_duplicates("_cluster")
                    .set_index("_cluster")["cell_type"]
                )
                x_labels = [f"{g}: {lookup[g]}" for g in groups]
            else:
                x_labels = groups

            fig = go.Figure(
                data=go.Heatmap(
                    z=means,
                    x=x_labels,
                    y=features,
                    colorscale=self.diverging_colors if standard_scale else self.continuous_colors,
                    colorbar=dict(
                        title="Expression<br>(z-score)" if standard_scale else "Expression"
                    ),
                    hovertemplate=(
                        "Feature: %{y}<br>Cluster: %{x}<br>Value: %{z:.2f}<extra></extra>"
                    ),
                )
            )
            fig.update_layout(
                title=title or "Top marker expression per cluster",
                xaxis=dict(title="cluster", tickmode="linear"),
                yaxis=dict(title="feature", tickmode="linear", autorange="reversed"),
                width=max(self.default_width, 60 * len(groups)),
                height=max(self.default_height, 20 * len(features)),
                plot_bgcolor="white",
            )
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating marker heatmap: {e}")
            raise VisualizationError(f"Failed to create marker heatmap: {str(e)}") from e

    # ------------------------------------------------------------------
    # export
    # ------------------------------------------------------------------

    def save_figure(
        self,
        fig: go.Figure,
        output_dir: Path,
        name: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        scale: float = 2.0,
        save_html: bool = False,
    ) -> List[Path]:
        """
        Export a figure as PNG (and optionally HTML).

        Each file is written to a temporary sibling and renamed into place.

        Args:
            fig: Figure to export
            output_dir: Target directory
            name: File stem
            width: Image width in pixels (default: figure or service width)
            height: Image height in pixels (default: figure or service height)
            scale: Resolution multiplier
            save_html: Also write an interactive HTML file

        Returns:
            List[Path]: Written files

        Raises:
            ExportError: If any file cannot be written
        """
        output_dir = Path(output_dir)
        width = width or fig.layout.width or self.default_width
        height = height or fig.layout.height or self.default_height
        saved = []

        try:
            png_path = output_dir / f"{name}.png"
            with atomic_path(png_path, suffix=".png") as temp_file, SuppressKaleidoLogging():
                fig.write_image(
                    str(temp_file), format="png", width=width, height=height, scale=scale
                )
            saved.append(png_path)
            logger.info(f"Saved PNG: {png_path}")

            if save_html:
                html_path = output_dir / f"{name}.html"
                with atomic_path(html_path, suffix=".html") as temp_file:
                    fig.write_html(str(temp_file), include_plotlyjs="cdn")
                saved.append(html_path)
                logger.info(f"Saved HTML: {html_path}")

        except Exception as e:
            logger.error(f"Failed to save figure '{name}': {e}")
            raise ExportError(
                f"Could not export figure '{name}': {e}",
                details={"artifact": name, "path": str(output_dir)},
            ) from e

        return saved

