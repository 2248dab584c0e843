"""
H5AD backend for Dataset snapshots.

Snapshots are written to a temporary sibling file and moved into place
only once ``write_h5ad`` has completed, so an interrupted write never
leaves a truncated snapshot where a later run would look for one.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import anndata
import pandas as pd

from cellpipe.core.backends.base import BaseBackend
from cellpipe.core.dataset import Dataset
from cellpipe.core.exceptions import ExportError
from cellpipe.utils.atomic import atomic_path

logger = logging.getLogger(__name__)


class H5ADBackend(BaseBackend):
    """
    Backend for H5AD file storage.

    Accepts either a Dataset or an AnnData object on save and always
    returns a Dataset on load.
    """

    format_name = "h5ad"

    def __init__(
        self,
        base_path: Optional[Union[str, Path]] = None,
        compression: str = "gzip",
        compression_opts: Optional[int] = None,
    ):
        """
        Initialize the H5AD backend.

        Args:
            base_path: Optional base path for all operations
            compression: Compression method for H5AD files
            compression_opts: Compression level (1-9 for gzip)
        """
        super().__init__(base_path=base_path)
        self.compression = compression
        self.compression_opts = compression_opts or 6

    def load(self, path: Union[str, Path], **kwargs) -> Dataset:
        """
        Load a Dataset from an H5AD snapshot.

        Args:
            path: Path to H5AD file

        Returns:
            Dataset: The restored dataset

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file format is invalid
        """
        resolved_path = self._resolve_path(path)

        if not resolved_path.exists():
            raise FileNotFoundError(f"H5AD file not found: {resolved_path}")

        try:
            adata = anndata.read_h5ad(resolved_path)
        except Exception as e:
            raise ValueError(f"Failed to load H5AD file {resolved_path}: {e}") from e

        self._log_operation(
            "load", resolved_path, size_mb=resolved_path.stat().st_size / 1024**2
        )
        return Dataset.from_anndata(adata)

    def save(
        self, data: Union[Dataset, anndata.AnnData], path: Union[str, Path], **kwargs
    ) -> Path:
        """
        Save a Dataset (or AnnData) to an H5AD file atomically.

        Args:
            data: Dataset or AnnData object to save
            path: Destination path
            **kwargs: Additional saving parameters:
                - compression: Override default compression
                - compression_opts: Override compression level

        Returns:
            Path: The written file

        Raises:
            ExportError: If the data cannot be serialized or written
        """
        resolved_path = self._resolve_path(path)

        compression = kwargs.get("compression", self.compression)
        compression_opts = kwargs.get("compression_opts", self.compression_opts)
        if compression != "gzip":
            # only gzip takes a level
            compression_opts = None

        try:
            adata = data.to_anndata() if isinstance(data, Dataset) else data.copy()
            adata = self.sanitize_anndata(adata)

            with atomic_path(resolved_path, suffix=".h5ad") as temp_file:
                adata.write_h5ad(
                    temp_file,
                    compression=compression,
                    compression_opts=compression_opts,
                )
        except Exception as e:
            raise ExportError(
                f"Failed to save H5AD file {resolved_path}: {e}",
                details={"path": str(resolved_path), "reason": str(e)},
            ) from e

        self._log_operation(
            "save",
            resolved_path,
            compression=compression,
            shape=adata.shape,
            size_mb=resolved_path.stat().st_size / 1024**2,
        )
        return resolved_path

    @staticmethod
    def sanitize_anndata(adata: anndata.AnnData) -> anndata.AnnData:
        """
        Make obs/var writable by h5py.

        Object columns are converted to strings, boolean columns stay
        boolean and empty index names are replaced with "index".
        """
        for frame in (adata.obs, adata.var):
            for column in frame.columns:
                series = frame[column]
                if series.dtype == object:
                    frame[column] = series.astype(str)
                elif isinstance(series.dtype, pd.CategoricalDtype):
                    frame[column] = series.cat.rename_categories(
                        [str(c) for c in series.cat.categories]
                    )
            if not frame.index.name:
                frame.index.name = "index"
        adata.obs_names = adata.obs_names.astype(str)
        adata.var_names = adata.var_names.astype(str)
        return adata

    def get_storage_info(self) -> Dict[str, Any]:
        info = super().get_storage_info()
        info.update(
            {"compression": self.compression, "compression_opts": self.compression_opts}
        )
        return info
