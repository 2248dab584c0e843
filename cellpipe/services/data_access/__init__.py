"""
Data access for 10x Genomics matrices.

TenXDownloader fetches and unpacks sources into the cache directory;
TenXLoader parses the matrix into a Dataset.
"""

from cellpipe.services.data_access.tenx_downloader import TenXDownloader
from cellpipe.services.data_access.tenx_loader import TenXLoader

__all__ = ["TenXDownloader", "TenXLoader"]
