# kiln/fetcher.py
"""
fetcher.py - source resolution for kiln recipes

Features:
- classify_source(): git+URL references, name::URL custom downloads, plain URLs, local paths
- HTTP(S) downloads with requests: streamed to a .part file, resumed with a Range
  request when a partial file is present, rich progress bar, atomic rename
- git clones via the git CLI (progress goes straight to the terminal)
- Local copies relative to the recipe directory
- Archive sniffing (tar in any tarfile compression, zip, zstd-compressed tar) and
  extraction into the work directory, skipped for NOEXTRACT sources or when the
  extracted directory is already populated
- IntermediatePaths: everything fetched or copied, for --clean
"""

from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests
import zstandard as zstd
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from kiln.config import BuildOptions
from kiln.errors import SourceError
from kiln.logging import get_logger

logger = get_logger("fetcher")

ARCHIVE_SUFFIXES = (".tar.xz", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.zst", ".zip")
NOEXTRACT_MARKER = "NOEXTRACT"
DEFAULT_DOWNLOAD_NAME = "source.tar"
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

GIT = "git"
CUSTOM = "custom"
URL = "url"
LOCAL = "local"

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _is_nonempty_dir(path: str) -> bool:
    if not os.path.isdir(path):
        return False
    with os.scandir(path) as it:
        return any(True for _ in it)

def archive_base_name(filename: str) -> str:
    """foo-1.2.tar.xz -> foo-1.2; names without a known suffix are returned unchanged."""
    base = os.path.basename(filename)
    for ext in ARCHIVE_SUFFIXES:
        if len(base) > len(ext) and base.endswith(ext):
            return base[: -len(ext)]
    return base

def _last_segment(url: str) -> str:
    return url.rstrip("/").rsplit("/", 1)[-1] if "/" in url else url

# -----------------------------------------------------------------------
# Source classification
# -----------------------------------------------------------------------
@dataclass
class SourceSpec:
    kind: str
    raw: str
    url: str = ""
    filename: str = ""      # destination name inside the work directory
    ref: str = ""           # git fragment (#branch=..., ?rev=...), informative only
    no_extract: bool = False

def classify_source(raw: str) -> SourceSpec:
    src = raw.strip()
    no_extract = NOEXTRACT_MARKER in src

    if src.startswith("git+"):
        url = src[len("git+"):]
        ref = ""
        cut = min([i for i in (url.find("#"), url.find("?")) if i != -1], default=-1)
        if cut != -1:
            url, ref = url[:cut], url[cut + 1:]
        name = _last_segment(url)
        if name.endswith(".git"):
            name = name[: -len(".git")]
        if not name:
            raise SourceError(f"cannot derive a checkout directory from {raw!r}")
        return SourceSpec(kind=GIT, raw=raw, url=url, filename=name, ref=ref, no_extract=no_extract)

    if "::" in src:
        name, _, url = src.partition("::")
        name = name.strip()
        url = url.strip()
        if "://" not in url or not name:
            raise SourceError(f"malformed custom source {raw!r}: expected name::scheme://url")
        return SourceSpec(kind=CUSTOM, raw=raw, url=url, filename=name, no_extract=no_extract)

    if "://" in src:
        name = src.rsplit("/", 1)[-1] or DEFAULT_DOWNLOAD_NAME
        return SourceSpec(kind=URL, raw=raw, url=src, filename=name, no_extract=no_extract)

    return SourceSpec(kind=LOCAL, raw=raw, url=src, filename=os.path.basename(src.rstrip("/")), no_extract=no_extract)

# -----------------------------------------------------------------------
# Intermediate path set
# -----------------------------------------------------------------------
class IntermediatePaths:
    """Append-only record of paths created while resolving sources."""

    def __init__(self):
        self._paths: List[str] = []

    def add(self, path: str):
        path = os.path.abspath(path)
        if path not in self._paths:
            self._paths.append(path)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and os.path.abspath(path) in self._paths

    def as_list(self) -> List[str]:
        return list(self._paths)

# -----------------------------------------------------------------------
# Fetch implementations for protocols
# -----------------------------------------------------------------------
def _progress(opts: BuildOptions) -> Progress:
    return Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=Console(stderr=True),
        disable=not opts.show_progress,
        transient=True,
    )

def _fetch_http(url: str, dest: str, opts: BuildOptions) -> None:
    """
    Download url to dest. Data lands in dest + '.part' first; a leftover .part
    file is resumed with a Range request when the server honours it.
    """
    part = dest + ".part"
    headers = {"User-Agent": opts.user_agent}
    existing = os.path.getsize(part) if os.path.exists(part) else 0
    if existing:
        headers["Range"] = f"bytes={existing}-"
        logger.info("Resuming download of %s at byte %d", url, existing)
    try:
        with requests.get(url, headers=headers, stream=True, timeout=opts.http_timeout, allow_redirects=True) as resp:
            if resp.status_code == 416 and existing:
                # the partial file is already complete (or stale); start over
                logger.warning("Server rejected resume for %s, restarting download", url)
                os.remove(part)
                return _fetch_http(url, dest, opts)
            resp.raise_for_status()
            resumed = existing and resp.status_code == 206
            mode = "ab" if resumed else "wb"
            done = existing if resumed else 0
            length = resp.headers.get("Content-Length")
            total = int(length) + done if length and length.isdigit() else None
            with _progress(opts) as progress, open(part, mode) as fh:
                task = progress.add_task(os.path.basename(dest), total=total, completed=done)
                for chunk in resp.iter_content(chunk_size=opts.chunk_size):
                    if chunk:
                        fh.write(chunk)
                        progress.update(task, advance=len(chunk))
    except requests.RequestException as e:
        raise SourceError(f"download failed for {url}: {e}") from e
    except OSError as e:
        raise SourceError(f"cannot write {part} while downloading {url}: {e}") from e
    os.replace(part, dest)
    logger.info("Downloaded %s -> %s (%d bytes)", url, dest, os.path.getsize(dest))

def _fetch_git(url: str, dest: str, opts: BuildOptions) -> None:
    cmd = [opts.git_cmd, "clone", "--progress", url, dest]
    logger.debug("RUN: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd)
    except OSError as e:
        raise SourceError(f"cannot run {opts.git_cmd} to clone {url}: {e}") from e
    if proc.returncode != 0:
        raise SourceError(f"git clone of {url} into {dest} exited with {proc.returncode}")
    logger.info("Cloned %s -> %s", url, dest)

def _fetch_local(src: str, dest: str) -> None:
    try:
        if os.path.isdir(src):
            shutil.copytree(src, dest, symlinks=True)
        else:
            shutil.copy2(src, dest)
    except OSError as e:
        raise SourceError(f"failed to copy local source {src} -> {dest}: {e}") from e
    logger.info("Copied local source %s -> %s", src, dest)

# -----------------------------------------------------------------------
# Archive detection and extraction
# -----------------------------------------------------------------------
def _is_zstd(path: str) -> bool:
    with open(path, "rb") as fh:
        return fh.read(4) == _ZSTD_MAGIC

def _is_zstd_tar(path: str) -> bool:
    """A zstd frame whose first decompressed block is a valid tar header."""
    if not _is_zstd(path):
        return False
    dctx = zstd.ZstdDecompressor()
    try:
        with open(path, "rb") as fh, dctx.stream_reader(fh) as reader:
            head = b""
            while len(head) < tarfile.BLOCKSIZE:
                chunk = reader.read(tarfile.BLOCKSIZE - len(head))
                if not chunk:
                    break
                head += chunk
        tarfile.TarInfo.frombuf(head, tarfile.ENCODING, "surrogateescape")
    except (zstd.ZstdError, tarfile.HeaderError):
        return False
    return True

def _extract_zip(path: str, dest_dir: str):
    """extractall() drops Unix modes; reapply them from each entry's external_attr."""
    with zipfile.ZipFile(path) as zf:
        for info in zf.infolist():
            target = zf.extract(info, dest_dir)
            mode = (info.external_attr >> 16) & 0o7777
            if mode and not info.is_dir():
                os.chmod(target, mode)

def is_archive(path: str) -> bool:
    """Sniff file content: tar (plain/gz/bz2/xz), zip, or a zstd-compressed tar."""
    if not os.path.isfile(path) or os.path.islink(path):
        return False
    try:
        return zipfile.is_zipfile(path) or _is_zstd_tar(path) or tarfile.is_tarfile(path)
    except OSError:
        logger.debug("Cannot sniff %s", path, exc_info=True)
        return False

def extract_archive(path: str, dest_dir: str) -> bool:
    """
    Extract path into dest_dir. Returns False when nothing was extracted because
    the expected directory (<dest_dir>/<archive_base_name>) is already populated.
    Raises SourceError on a corrupt or unreadable archive.
    """
    expected = os.path.join(dest_dir, archive_base_name(path))
    if expected != os.path.join(dest_dir, os.path.basename(path)) and _is_nonempty_dir(expected):
        logger.info("Archive already extracted, skipping: %s", path)
        return False
    logger.info("Extracting archive: %s", path)
    try:
        if zipfile.is_zipfile(path):
            _extract_zip(path, dest_dir)
        elif _is_zstd(path):
            dctx = zstd.ZstdDecompressor()
            with open(path, "rb") as fh, dctx.stream_reader(fh) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(dest_dir, filter="tar")
        else:
            with tarfile.open(path, "r:*") as tar:
                tar.extractall(dest_dir, filter="tar")
    except (tarfile.TarError, zipfile.BadZipFile, zstd.ZstdError, OSError) as e:
        raise SourceError(f"failed to extract {path}: {e}") from e
    return True

# -----------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------
class SourceResolver:
    """
    Places every declared source into work_dir (the recipe directory) in
    declaration order and extracts recognized archives.
    """

    def __init__(self, recipe_dir: str, options: BuildOptions, work_dir: Optional[str] = None):
        self.recipe_dir = os.path.abspath(recipe_dir)
        self.work_dir = os.path.abspath(work_dir or recipe_dir)
        self.options = options
        self.intermediates = IntermediatePaths()

    def resolve(self, sources: List[str]) -> Dict[str, Any]:
        res: Dict[str, Any] = {"ok": True, "paths": [], "error": None, "source": None}
        for raw in sources:
            try:
                spec = classify_source(raw)
                path = self._place(spec)
                if path is not None:
                    res["paths"].append(path)
                    self._maybe_extract(spec, path)
            except (SourceError, OSError) as e:
                logger.error("Source %r failed: %s", raw, e)
                res.update(ok=False, error=str(e), source=raw)
                return res
        return res

    def _place(self, spec: SourceSpec) -> Optional[str]:
        dest = os.path.join(self.work_dir, spec.filename)
        if spec.kind == GIT:
            if _is_nonempty_dir(dest):
                logger.info("Repository already present, skipping clone: %s", dest)
            else:
                logger.info("Cloning %s%s", spec.url, f" ({spec.ref})" if spec.ref else "")
                _fetch_git(spec.url, dest, self.options)
            self.intermediates.add(dest)
            return dest

        if spec.kind in (CUSTOM, URL):
            if os.path.exists(dest):
                logger.info("File already exists, skipping download: %s", dest)
            else:
                logger.info("Downloading %s -> %s", spec.url, dest)
                _fetch_http(spec.url, dest, self.options)
            self.intermediates.add(dest)
            return dest

        src = os.path.join(self.recipe_dir, spec.url)
        if not os.path.exists(src):
            raise SourceError(f"local source does not exist: {src}")
        if os.path.exists(dest) and os.path.samefile(src, dest):
            # already lives in the work directory; nothing was created
            return dest
        if os.path.exists(dest):
            logger.info("Local source already present: %s", dest)
        else:
            _fetch_local(src, dest)
        self.intermediates.add(dest)
        return dest

    def _maybe_extract(self, spec: SourceSpec, path: str):
        if spec.no_extract:
            logger.info("NOEXTRACT flag found; skipping extraction: %s", path)
            return
        if not is_archive(path):
            logger.debug("Not an archive, leaving as is: %s", path)
            return
        extract_archive(path, self.work_dir)


def resolve_sources(sources: List[str], recipe_dir: str, options: BuildOptions) -> Dict[str, Any]:
    """Convenience wrapper; result carries the IntermediatePaths under 'intermediates'."""
    resolver = SourceResolver(recipe_dir, options)
    res = resolver.resolve(sources)
    res["intermediates"] = resolver.intermediates
    return res
