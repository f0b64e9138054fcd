"""Scan certificate source directories and resolve them into an anchor set.

Sources are scanned vendor first, then local. Duplicates are collapsed by
fingerprint (first occurrence wins) and anything whose fingerprint appears
in the distrusted directory is dropped.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

import cert_lib
from trust_config import TrustConfig
from trust_errors import InputError, NotACertificateError, StructuralStateError

LOGGER = logging.getLogger(__name__)

VENDOR_TRUSTED = "vendor"
LOCAL_TRUSTED = "local"
LOCAL_DISTRUSTED = "distrusted"


@dataclass(frozen=True)
class CertificateRecord:
    path: Path
    fingerprint: str
    source: str = ""

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class ResolvedAnchorSet:
    """Ordered anchors, unique by fingerprint, none of them distrusted."""

    anchors: list[CertificateRecord]
    duplicates: list[CertificateRecord] = field(default_factory=list)
    distrusted: list[CertificateRecord] = field(default_factory=list)
    _by_fingerprint: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._by_fingerprint = {r.fingerprint: r for r in self.anchors}

    def __iter__(self) -> Iterator[CertificateRecord]:
        return iter(self.anchors)

    def __len__(self) -> int:
        return len(self.anchors)

    def __contains__(self, fp: str) -> bool:
        return fp in self._by_fingerprint

    def fingerprints(self) -> list[str]:
        return [r.fingerprint for r in self.anchors]

    def get(self, fp: str) -> Optional[CertificateRecord]:
        return self._by_fingerprint.get(fp)


def _list_files(directory: Path, required: bool) -> list[Path]:
    if not directory.exists():
        if required:
            raise InputError(f"{directory}: no such directory")
        return []
    if not directory.is_dir():
        raise StructuralStateError(f"{directory} exists but is not a directory")
    return sorted((entry for entry in directory.iterdir() if entry.is_file()), key=lambda p: p.name)


def scan(
    directory: os.PathLike,
    *,
    source: str = "",
    required: bool = False,
    fingerprint_func: Callable[[Path], str] = cert_lib.fingerprint,
    workers: int = 1,
) -> list[CertificateRecord]:
    """Scan a directory (non-recursively) for certificate files.

    Files that do not parse as certificates are logged and skipped. A
    missing directory scans as empty unless ``required`` is set, in which
    case it raises InputError.

    Parameters
    ----------
    directory : path
        Directory to scan.
    source : str, optional
        Source role recorded on every record.
    required : bool, optional
        Treat a missing directory as an input error (default: False).
    fingerprint_func : callable, optional
        Identity function, ``cert_lib.fingerprint`` by default.
    workers : int, optional
        Inspect files on a thread pool of this size (default: 1). Results
        keep directory order regardless of completion order.

    Returns
    -------
    list of CertificateRecord
        Records in file-name order.
    """
    files = _list_files(Path(directory), required)

    def inspect(path: Path) -> Optional[CertificateRecord]:
        try:
            return CertificateRecord(path=path, fingerprint=fingerprint_func(path), source=source)
        except NotACertificateError as e:
            LOGGER.warning("Skipping %s: %s", path, e.reason)
            return None

    if workers > 1 and len(files) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(inspect, files))
    else:
        results = [inspect(path) for path in files]
    return [r for r in results if r is not None]


def resolve(
    vendor_trusted: Iterable[CertificateRecord],
    local_trusted: Iterable[CertificateRecord],
    local_distrusted: Iterable[CertificateRecord],
) -> ResolvedAnchorSet:
    """Merge scanned sources into the final anchor set.

    Parameters
    ----------
    vendor_trusted, local_trusted : iterable of CertificateRecord
        Scans of the trusted sources, in precedence order.
    local_distrusted : iterable of CertificateRecord
        Scan of the distrust markers.

    Returns
    -------
    ResolvedAnchorSet
        Anchors in first-seen order, deduplicated by fingerprint and with
        every distrusted fingerprint removed.
    """
    unique: dict[str, CertificateRecord] = {}
    duplicates = []
    for record in [*vendor_trusted, *local_trusted]:
        if record.fingerprint in unique:
            LOGGER.debug("%s duplicates %s", record.path, unique[record.fingerprint].path)
            duplicates.append(record)
            continue
        unique[record.fingerprint] = record

    distrust = {record.fingerprint for record in local_distrusted}
    anchors = []
    dropped = []
    for record in unique.values():
        if record.fingerprint in distrust:
            dropped.append(record)
        else:
            anchors.append(record)
    return ResolvedAnchorSet(anchors=anchors, duplicates=duplicates, distrusted=dropped)


@dataclass
class SourceScan:
    """Scans of all three source roles for one configuration."""

    vendor: list[CertificateRecord]
    local: list[CertificateRecord]
    distrusted: list[CertificateRecord]
    _trusted_by_fingerprint: dict = field(init=False, repr=False, compare=False)
    _distrusted_by_fingerprint: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._trusted_by_fingerprint = _group(self.trusted())
        self._distrusted_by_fingerprint = _group(self.distrusted)

    @classmethod
    def from_config(cls, config: TrustConfig, workers: int = 1) -> "SourceScan":
        return cls(
            vendor=scan(config.vendor_trusted, source=VENDOR_TRUSTED, workers=workers),
            local=scan(config.local_trusted, source=LOCAL_TRUSTED, workers=workers),
            distrusted=scan(config.local_distrusted, source=LOCAL_DISTRUSTED, workers=workers),
        )

    def resolve(self) -> ResolvedAnchorSet:
        return resolve(self.vendor, self.local, self.distrusted)

    def trusted(self) -> list[CertificateRecord]:
        return [*self.vendor, *self.local]

    def find(self, fp: str) -> list[CertificateRecord]:
        """All trusted records carrying fingerprint ``fp``, in scan order."""
        return list(self._trusted_by_fingerprint.get(fp, ()))

    def markers(self, fp: str) -> list[CertificateRecord]:
        """Distrust markers carrying fingerprint ``fp``."""
        return list(self._distrusted_by_fingerprint.get(fp, ()))

    def is_distrusted(self, fp: str) -> bool:
        return fp in self._distrusted_by_fingerprint


def _group(records: Iterable[CertificateRecord]) -> dict[str, list[CertificateRecord]]:
    grouped: dict[str, list[CertificateRecord]] = {}
    for record in records:
        grouped.setdefault(record.fingerprint, []).append(record)
    return grouped
