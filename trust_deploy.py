"""Deploy a resolved anchor set as the trust store.

The store is staged beside its final location, indexed, and swapped into
place by directory renames, so readers see either the old or the new store
in full. Compat bundles are derived from the deployed anchors afterwards
and are best effort.

Staging and store must live on the same filesystem for the swap to be
atomic; the staging directory is always created in the store's parent
directory.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import re
import shutil
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

import cert_lib
from trust_config import KEYSTORE_NAME, PEM_BUNDLE_NAME, TrustConfig
from trust_errors import DeploymentError, ExtractionWarning
from trust_sources import CertificateRecord

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o644

INDEX_NAME_RE = re.compile(r"\A[0-9a-f]{8}\.\d+\Z")

Indexer = Callable[[Path], None]
Extractor = Callable[[Path, Path], None]


@dataclass
class DeployResult:
    store_path: Path
    anchors: list[Path]
    warnings: list[ExtractionWarning] = field(default_factory=list)


def anchor_files(anchors_dir: Path) -> list[Path]:
    """Certificate files of an anchors directory, index links excluded."""
    return sorted(
        (p for p in anchors_dir.iterdir() if p.is_file() and not p.is_symlink()),
        key=lambda p: p.name,
    )


def build_index(anchors_dir: Path) -> None:
    """Create ``<subject hash>.<n>`` links to every anchor, like c_rehash."""
    counters: dict[str, int] = {}
    for path in anchor_files(anchors_dir):
        h = cert_lib.subject_hash(path)
        n = counters.get(h, 0)
        counters[h] = n + 1
        os.symlink(path.name, anchors_dir / f"{h}.{n}")


def extract_pem_bundle(anchors_dir: Path, output: Path) -> None:
    """Concatenate all anchors into one PEM bundle."""
    with output.open("wb") as f:
        for path in anchor_files(anchors_dir):
            f.write(cert_lib.pem_encode(path))


def keytool_extractor(keytool: str = "keytool", password: str = "changeit") -> Extractor:
    """Return an extractor building a JKS keystore with ``keytool``."""

    def extract_keystore(anchors_dir: Path, output: Path) -> None:
        if output.exists():
            output.unlink()
        for path in anchor_files(anchors_dir):
            proc = subprocess.run(
                [
                    keytool, "-importcert", "-noprompt",
                    "-storetype", "JKS",
                    "-keystore", str(output),
                    "-storepass", password,
                    "-alias", path.name,
                    "-file", str(path),
                ],
                capture_output=True,
                text=True,
            )
            if proc.returncode != 0:
                raise RuntimeError(
                    f"keytool failed for {path.name}: {(proc.stderr or proc.stdout).strip()}"
                )

    return extract_keystore


def numbered_name(name: str, n: int) -> str:
    """Insert a counter after the first name component: root.pem -> root.1.pem."""
    stem, dot, suffix = name.partition(".")
    return f"{stem}.{n}{dot}{suffix}" if dot else f"{stem}.{n}"


def _copy_name(record: CertificateRecord, taken: set) -> str:
    # <hash>.<n> names belong to the index, so c_rehash-style sources are renamed
    name = record.name
    n = 1
    while name in taken or INDEX_NAME_RE.match(name):
        name = numbered_name(record.name, n)
        n += 1
    taken.add(name)
    return name


@contextlib.contextmanager
def store_lock(config: TrustConfig):
    """Hold an exclusive lock on the store for the duration of the block."""
    config.lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config.lock_path, "a") as f:
        fcntl.flock(f, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


class StoreDeployer:
    """Stage, index and swap a trust store, then write compat bundles."""

    def __init__(
        self,
        config: TrustConfig,
        indexer: Indexer = build_index,
        extractors: Optional[Sequence[tuple[str, Extractor]]] = None,
    ):
        self.config = config
        self.indexer = indexer
        if extractors is None:
            extractors = [
                (KEYSTORE_NAME, keytool_extractor(config.keytool, config.keystore_password)),
                (PEM_BUNDLE_NAME, extract_pem_bundle),
            ]
        self.extractors = list(extractors)

    def deploy(self, anchors: Iterable[CertificateRecord]) -> DeployResult:
        store = self.config.store_path
        staging = self._stage(list(anchors))
        self._swap(staging, store)
        LOGGER.info("Deployed trust store at %s", store)

        warnings = self._extract(self.config.anchors_dir, self.config.compat_dir)
        return DeployResult(
            store_path=store,
            anchors=anchor_files(self.config.anchors_dir),
            warnings=warnings,
        )

    def _stage(self, anchors: list[CertificateRecord]) -> Path:
        store = self.config.store_path
        try:
            store.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{store.name}.staging-", dir=store.parent))
        except OSError as e:
            raise DeploymentError(f"cannot create staging directory for {store}: {e}") from e

        try:
            os.chmod(staging, DIR_MODE)
            anchors_dir = staging / "anchors"
            compat_dir = staging / "compat"
            anchors_dir.mkdir(mode=DIR_MODE)
            compat_dir.mkdir(mode=DIR_MODE)
            os.chmod(anchors_dir, DIR_MODE)
            os.chmod(compat_dir, DIR_MODE)

            taken: set = set()
            for record in anchors:
                dest = anchors_dir / _copy_name(record, taken)
                shutil.copyfile(record.path, dest)
                os.chmod(dest, FILE_MODE)

            self.indexer(anchors_dir)
        except Exception as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise DeploymentError(f"failed to stage trust store: {e}") from e
        return staging

    def _swap(self, staging: Path, store: Path) -> None:
        aside = None
        if store.exists():
            aside = store.with_name(f".{store.name}.old-{uuid.uuid4().hex}")
            try:
                os.rename(store, aside)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise DeploymentError(f"cannot move {store} aside: {e}") from e
        try:
            os.rename(staging, store)
        except OSError as e:
            if aside is not None:
                os.rename(aside, store)
            shutil.rmtree(staging, ignore_errors=True)
            raise DeploymentError(f"cannot move staged store into {store}: {e}") from e

        if aside is not None:
            try:
                shutil.rmtree(aside)
            except OSError as e:
                LOGGER.warning("Could not remove previous store %s: %s", aside, e)

    def _extract(self, anchors_dir: Path, compat_dir: Path) -> list[ExtractionWarning]:
        warnings = []
        compat_dir.mkdir(mode=DIR_MODE, exist_ok=True)
        for name, extractor in self.extractors:
            output = compat_dir / name
            tmp = compat_dir / f".{name}.tmp"
            try:
                extractor(anchors_dir, tmp)
                os.chmod(tmp, FILE_MODE)
                os.replace(tmp, output)
            except Exception as e:
                with contextlib.suppress(FileNotFoundError):
                    tmp.unlink()
                warning = ExtractionWarning(name, str(e))
                LOGGER.warning("Compat bundle %s", warning)
                warnings.append(warning)
        return warnings
