"""
Downloader for 10x Genomics matrix archives.

Fetches a remote archive over HTTP(S) into a local cache directory and
extracts it next to the download. Both steps are idempotent: a cached
archive or extraction directory is reused without touching the network,
and partial downloads or extractions never become visible under their
final names.
"""

import gzip
import os
import re
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import requests
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from cellpipe.config.settings import get_settings
from cellpipe.core.exceptions import DataUnavailable
from cellpipe.utils.atomic import atomic_path
from cellpipe.utils.logger import get_logger

logger = get_logger(__name__)

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar")
MATRIX_NAMES = ("matrix.mtx", "matrix.mtx.gz")


def is_remote(source: Union[str, Path]) -> bool:
    return urlparse(str(source)).scheme.lower() in ("http", "https")


def archive_stem(name: str) -> str:
    """Archive file name without its archive suffix."""
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


class TenXDownloader:
    """
    Fetch and unpack 10x matrices into a cache directory.

    Layout under ``cache_dir``::

        <archive name>            downloaded archive
        <archive stem>/           extracted contents
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        console: Optional[Console] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        ssl_verify: Optional[bool] = None,
    ):
        """
        Initialize the downloader.

        Args:
            cache_dir: Directory for downloaded archives and extractions
            console: Rich console for progress bars (creates new if None)
            session: requests session (creates new if None)
            timeout: HTTP timeout in seconds (default: CELLPIPE_HTTP_TIMEOUT)
            ssl_verify: Verify TLS certificates (default: CELLPIPE_SSL_VERIFY)
        """
        settings = get_settings()
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "cellpipe/10x-downloader"})
        self.console = console or Console(stderr=True)
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self.ssl_verify = ssl_verify if ssl_verify is not None else settings.SSL_VERIFY
        self.chunk_size = settings.DOWNLOAD_CHUNK_SIZE

    def fetch(self, source: Union[str, Path]) -> Path:
        """
        Make ``source`` available locally and return the matrix directory.

        Args:
            source: http(s) URL of an archive, local archive or local directory

        Returns:
            Path: Directory holding matrix.mtx[.gz], barcodes and features files

        Raises:
            DataUnavailable: If the source cannot be fetched or extracted, or
                no 10x matrix is found in it
        """
        if is_remote(source):
            archive = self.download(str(source))
        else:
            archive = Path(source).expanduser()
            if not archive.exists():
                raise DataUnavailable(
                    f"Source not found: {archive}",
                    details={"source": str(source), "reason": "path does not exist"},
                )
            if archive.is_dir():
                return self.find_matrix_dir(archive, source=str(source))

        if archive.name.endswith(ARCHIVE_SUFFIXES):
            extracted = self.extract(archive)
            return self.find_matrix_dir(extracted, source=str(source))

        if archive.name.endswith(MATRIX_NAMES):
            return archive.parent

        raise DataUnavailable(
            f"Unsupported source format: {archive.name}",
            details={"source": str(source), "reason": "not a 10x archive or directory"},
        )

    def cached_archive_path(self, url: str) -> Path:
        name = Path(urlparse(url).path).name
        if not name:
            raise DataUnavailable(
                f"Cannot derive a file name from URL: {url}",
                details={"source": url, "reason": "empty path"},
            )
        return self.cache_dir / re.sub(r"[^A-Za-z0-9._-]", "_", name)

    def download(self, url: str) -> Path:
        """
        Download ``url`` into the cache unless it is already there.

        Args:
            url: HTTP/HTTPS URL to download from

        Returns:
            Path: Cached archive path
        """
        target = self.cached_archive_path(url)
        extracted = self.cache_dir / archive_stem(target.name)

        if target.exists():
            logger.info(f"Using cached archive: {target}")
            return target
        if extracted.is_dir() and any(extracted.iterdir()):
            # Archive was removed after extraction; the extraction is still valid
            logger.info(f"Using cached extraction: {extracted}")
            return target

        self.download_file(url, target)
        return target

    def download_file(self, url: str, local_path: Path, description: str = None) -> Path:
        """
        Stream ``url`` to ``local_path`` through a temporary file.

        Args:
            url: HTTP/HTTPS URL to download from
            local_path: Final path of the file
            description: Optional description for the progress bar

        Returns:
            Path: ``local_path``

        Raises:
            DataUnavailable: On any HTTP error, interrupted transfer or
                corrupt gzip payload. Nothing is left at ``local_path``.
        """
        local_path = Path(local_path)
        if not description:
            filename = local_path.name
            if len(filename) > 40:
                filename = filename[:37] + "..."
            description = f"Downloading {filename}"

        logger.info(f"Downloading {url}")
        try:
            with atomic_path(local_path, suffix=".part") as temp_file:
                response = self.session.get(
                    url, stream=True, timeout=self.timeout, verify=self.ssl_verify
                )
                response.raise_for_status()
                file_size = int(response.headers.get("content-length", 0)) or None

                progress_columns = [
                    BarColumn(),
                    DownloadColumn(),
                    TransferSpeedColumn(),
                    "•",
                    TimeElapsedColumn(),
                    "•",
                    TimeRemainingColumn(),
                ]

                with Progress(*progress_columns, console=self.console) as progress:
                    task_id = progress.add_task(description, total=file_size)

                    with open(temp_file, "wb") as f:
                        downloaded = 0
                        for chunk in response.iter_content(chunk_size=self.chunk_size):
                            if chunk:
                                f.write(chunk)
                                downloaded += len(chunk)
                                progress.update(task_id, completed=downloaded)

                if file_size is not None and downloaded != file_size:
                    raise DataUnavailable(
                        f"Incomplete download of {url}: "
                        f"{downloaded} of {file_size} bytes",
                        details={"source": url, "reason": "truncated transfer"},
                    )

                if local_path.name.endswith(".gz") and not self._validate_gzip_integrity(
                    temp_file
                ):
                    raise DataUnavailable(
                        f"Downloaded file is not a valid gzip stream: {url}",
                        details={"source": url, "reason": "corrupt gzip"},
                    )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to download {url}: {e}")
            raise DataUnavailable(
                f"Failed to download {url}: {e}",
                details={"source": url, "reason": str(e)},
            ) from e

        logger.info(f"Downloaded to: {local_path}")
        return local_path

    def extract(self, archive: Path) -> Path:
        """
        Extract a tar archive into the cache directory, once.

        Members are unpacked into a temporary directory that is renamed to
        the final location only after every member was written. Members
        that would escape the extraction directory are skipped.

        Args:
            archive: Path to a .tar/.tar.gz/.tgz file

        Returns:
            Path: Extraction directory
        """
        extract_dir = self.cache_dir / archive_stem(archive.name)
        if extract_dir.is_dir() and any(extract_dir.iterdir()):
            logger.info(f"Using cached extracted data: {extract_dir}")
            return extract_dir

        temp_dir = Path(
            tempfile.mkdtemp(prefix=f".{extract_dir.name}.", dir=self.cache_dir)
        )
        try:
            logger.info(f"Extracting {archive.name} to: {extract_dir}")
            with tarfile.open(archive, "r:*") as tar:
                safe_members = [
                    m for m in tar.getmembers() if self._is_safe_member(m, temp_dir)
                ]
                logger.debug(f"Extracting {len(safe_members)} validated members")

                progress_columns = [
                    BarColumn(),
                    "•",
                    "{task.completed}/{task.total} files",
                    "•",
                    TimeElapsedColumn(),
                ]
                with Progress(*progress_columns, console=self.console) as progress:
                    extract_task = progress.add_task(
                        f"Extracting {archive.name}", total=len(safe_members)
                    )
                    for i, member in enumerate(safe_members):
                        tar.extract(member, path=temp_dir)
                        progress.update(extract_task, completed=i + 1)

            if extract_dir.exists():
                shutil.rmtree(extract_dir)
            os.replace(temp_dir, extract_dir)
        except (tarfile.TarError, OSError, EOFError) as e:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise DataUnavailable(
                f"Failed to extract {archive}: {e}",
                details={"source": str(archive), "reason": str(e)},
            ) from e

        logger.info(f"Successfully extracted archive to: {extract_dir}")
        return extract_dir

    def find_matrix_dir(self, root: Path, source: str = None) -> Path:
        """
        Locate the directory holding a 10x matrix below ``root``.

        Args:
            root: Directory to search recursively
            source: Original source, for the error message

        Returns:
            Path: Shallowest directory containing matrix.mtx[.gz]
        """
        candidates = sorted(
            (p.parent for name in MATRIX_NAMES for p in root.rglob(name)),
            key=lambda p: (len(p.parts), str(p)),
        )
        if not candidates:
            raise DataUnavailable(
                f"No 10x matrix (matrix.mtx[.gz]) found in {root}",
                details={"source": source or str(root), "reason": "missing matrix"},
            )
        return candidates[0]

    @staticmethod
    def _is_safe_member(member: tarfile.TarInfo, extract_dir: Path) -> bool:
        """Reject absolute paths, path traversal and links."""
        if member.issym() or member.islnk() or member.isdev():
            logger.warning(f"Skipping link or device member: {member.name}")
            return False
        try:
            target_path = (extract_dir / member.name).resolve()
            common_path = Path(
                os.path.commonpath([extract_dir.resolve(), target_path])
            )
        except (ValueError, RuntimeError):
            logger.warning(f"Skipping invalid path in TAR: {member.name}")
            return False
        is_safe = common_path == extract_dir.resolve()
        if not is_safe:
            logger.warning(f"Skipping potentially unsafe member: {member.name}")
        return is_safe

    @staticmethod
    def _validate_gzip_integrity(file_path: Path) -> bool:
        try:
            with gzip.open(file_path, "rb") as f:
                while f.read(1024 * 1024):
                    pass
        except (OSError, EOFError) as e:
            logger.error(f"Gzip validation failed for {file_path}: {e}")
            return False
        return True
