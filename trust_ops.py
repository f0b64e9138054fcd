"""Operator-facing trust-store operations.

Add, Remove and Restore are planners: each first computes the file edits
to LocalTrusted / LocalDistrusted (and the per-item failures), then commits
the edits and regenerates the store once. The deployed store is always a
function of the source directories, never patched in place.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse

import cert_lib
from trust_config import TrustConfig
from trust_deploy import FILE_MODE, DeployResult, StoreDeployer, anchor_files, numbered_name, store_lock
from trust_errors import (
    InputError,
    NotACertificateError,
    StructuralStateError,
    TrustPermissionError,
)
from trust_sources import (
    LOCAL_TRUSTED,
    VENDOR_TRUSTED,
    CertificateRecord,
    ResolvedAnchorSet,
    SourceScan,
)

LOGGER = logging.getLogger(__name__)

FINGERPRINT_RE = re.compile(r"\A[0-9a-f]{64}\Z")


def normalize_identity(value: str) -> Optional[str]:
    """Return ``value`` as a bare lowercase fingerprint, or None."""
    candidate = value.strip().lower().replace(":", "")
    return candidate if FINGERPRINT_RE.match(candidate) else None


def require_privilege(config: TrustConfig) -> None:
    """Only root may write the default (system wide) store."""
    if config.store_is_default and os.geteuid() != 0:
        raise TrustPermissionError(
            f"must be root to modify {config.store_path} (or set another store path)"
        )


def _unique_name(directory: Path, name: str, taken: set) -> str:
    candidate = name
    n = 1
    while candidate in taken or (directory / candidate).exists():
        candidate = numbered_name(name, n)
        n += 1
    taken.add(candidate)
    return candidate


@dataclass(frozen=True)
class Candidate:
    """A file offered to Add; ``label`` is what the operator typed."""

    path: Path
    label: str

    @classmethod
    def of(cls, item) -> "Candidate":
        return item if isinstance(item, cls) else cls(Path(item), str(item))


@dataclass
class GenerateResult:
    anchor_set: ResolvedAnchorSet
    deployment: DeployResult


@dataclass
class AddPlan:
    copies: list[tuple[Path, Path]] = field(default_factory=list)
    undistrust: list[Path] = field(default_factory=list)
    satisfied: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changes(self) -> bool:
        return bool(self.copies or self.undistrust)


@dataclass
class RemovePlan:
    markers: list[tuple[Path, Path]] = field(default_factory=list)
    deletions: list[Path] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changes(self) -> bool:
        return bool(self.markers or self.deletions)


@dataclass
class RestorePlan:
    deletions: list[Path] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class MutationResult:
    plan: object
    generated: Optional[GenerateResult] = None


@dataclass(frozen=True)
class ListEntry:
    path: Path
    info: cert_lib.CertificateInfo


class TrustManager:
    """Run trust-store operations against one configuration."""

    def __init__(self, config: TrustConfig, deployer: Optional[StoreDeployer] = None, workers: int = 1):
        self.config = config
        self.deployer = deployer or StoreDeployer(config)
        self.workers = workers

    def scan(self) -> SourceScan:
        return SourceScan.from_config(self.config, workers=self.workers)

    def generate(self) -> GenerateResult:
        with store_lock(self.config):
            anchor_set = self.scan().resolve()
            LOGGER.info(
                "Resolved %d anchors (%d duplicates, %d distrusted)",
                len(anchor_set), len(anchor_set.duplicates), len(anchor_set.distrusted),
            )
            deployment = self.deployer.deploy(anchor_set)
        return GenerateResult(anchor_set=anchor_set, deployment=deployment)

    # add

    def plan_add(self, files: Iterable, force: bool = False) -> AddPlan:
        """Validate every candidate and compute the edits to make.

        Nothing is written here. Any entry in ``errors`` means the batch
        must be rejected as a whole.
        """
        self.check()
        scan = self.scan()
        plan = AddPlan()
        dest_dir = self.config.local_trusted
        planned: dict[str, str] = {}
        seen: set = set()

        for item in files:
            candidate = Candidate.of(item)
            path, label = candidate.path, candidate.label
            if not path.is_file():
                plan.errors.append(f"{label}: no such file")
                continue
            try:
                fp = cert_lib.fingerprint(path)
                self_signed = cert_lib.is_self_signed(path)
            except NotACertificateError as e:
                plan.errors.append(f"{label}: {e.reason}")
                continue
            if not self_signed and not force:
                plan.errors.append(f"{label}: not a self-signed root CA (use --force to add anyway)")
                continue
            if fp in seen:
                plan.satisfied.append(label)
                continue
            seen.add(fp)

            in_sources = bool(scan.find(fp))
            markers = [r.path for r in scan.markers(fp)]
            if markers:
                plan.undistrust.extend(markers)
            if in_sources:
                if not markers:
                    plan.satisfied.append(label)
                continue

            name = path.name
            dest = dest_dir / name
            if name in planned:
                plan.errors.append(f"{label}: file name {name} already used by {planned[name]}")
                continue
            if dest.exists():
                plan.errors.append(f"{label}: {dest} already exists")
                continue
            planned[name] = label
            plan.copies.append((path, dest))
        return plan

    def add(self, files: Iterable[str], force: bool = False) -> MutationResult:
        """Add certificate files (or http(s) URLs) to the local trusted source.

        Raises
        ------
        InputError
            If any candidate is invalid; nothing is changed in that case.
        """
        files = list(files)
        with tempfile.TemporaryDirectory(prefix="ca-trust-") as tmp:
            candidates = [self._fetch(item, Path(tmp)) for item in files]
            plan = self.plan_add(candidates, force=force)
            if plan.errors:
                raise InputError(
                    f"{len(plan.errors)} of {len(files)} certificate(s) rejected, nothing was added",
                    details=plan.errors,
                )
            if not plan.changes:
                LOGGER.info("All certificates already trusted, nothing to do")
                return MutationResult(plan=plan)

            if plan.copies:
                self.config.local_trusted.mkdir(parents=True, exist_ok=True)
            for src, dest in plan.copies:
                shutil.copyfile(src, dest)
                os.chmod(dest, FILE_MODE)
                LOGGER.info("Added %s", dest)
            for marker in plan.undistrust:
                marker.unlink()
                LOGGER.info("Removed distrust marker %s", marker)
        return MutationResult(plan=plan, generated=self.generate())

    def _fetch(self, item: str, tmp: Path) -> Candidate:
        """Download URL candidates into ``tmp``; local paths pass through."""
        if not str(item).lower().startswith(("http://", "https://")):
            return Candidate.of(item)
        name = os.path.basename(urlparse(item).path) or "downloaded.crt"
        target = tmp / str(len(list(tmp.iterdir()))) / name
        target.parent.mkdir()
        data = cert_lib.download_with_retry(item)
        if data is None:
            LOGGER.warning("Download of %s failed", item)
        else:
            target.write_bytes(data)
        return Candidate(target, item)

    # remove

    def _lookup(
        self, item: str, records: list[CertificateRecord], deployed: Optional[Path] = None
    ) -> Optional[str]:
        """Map a path, identity string or file name to a fingerprint.

        File names are matched against the source files first, then against
        the file names in ``deployed`` (the names shown by list).
        """
        if os.path.exists(item):
            return cert_lib.fingerprint(item)
        fp = normalize_identity(item)
        if fp is not None:
            return fp
        for record in records:
            if record.name == item:
                return record.fingerprint
        if deployed is not None and os.path.basename(item) == item:
            candidate = deployed / item
            if candidate.is_file() and not candidate.is_symlink():
                return cert_lib.fingerprint(candidate)
        return None

    def plan_remove(self, items: Iterable[str], force: bool = False) -> RemovePlan:
        self.check()
        scan = self.scan()
        anchor_set = scan.resolve()
        plan = RemovePlan()
        handled: set = set()
        taken: set = set()

        for item in items:
            try:
                fp = self._lookup(item, anchor_set.anchors, deployed=self.config.anchors_dir)
            except NotACertificateError as e:
                plan.errors.append(f"{item}: {e.reason}")
                continue
            if fp is None or fp in handled:
                if fp is None:
                    plan.errors.append(f"{item}: no trusted certificate matches")
                continue
            trusted = scan.find(fp)
            if not trusted or (fp not in anchor_set and not force):
                state = "already distrusted" if scan.is_distrusted(fp) else "not trusted"
                plan.errors.append(f"{item}: certificate is {state}")
                continue
            handled.add(fp)

            vendor = [r for r in trusted if r.source == VENDOR_TRUSTED]
            local = [r.path for r in trusted if r.source == LOCAL_TRUSTED]
            if scan.is_distrusted(fp) and not local:
                plan.errors.append(f"{item}: certificate is already distrusted")
                continue
            if vendor and not scan.is_distrusted(fp):
                name = _unique_name(self.config.local_distrusted, vendor[0].name, taken)
                plan.markers.append((vendor[0].path, self.config.local_distrusted / name))
            plan.deletions.extend(local)
            plan.removed.append(fp)
        return plan

    def remove(self, items: Iterable[str], force: bool = False) -> MutationResult:
        """Withdraw trust from certificates given by path, identity or file name.

        Vendor certificates are distrusted by a marker copy; local ones are
        deleted. Unresolvable items are reported in ``plan.errors`` and do
        not stop the others.
        """
        plan = self.plan_remove(items, force=force)
        for error in plan.errors:
            LOGGER.warning("%s", error)
        if not plan.changes:
            LOGGER.info("Nothing to do")
            return MutationResult(plan=plan)

        if plan.markers:
            self.config.local_distrusted.mkdir(parents=True, exist_ok=True)
        for src, marker in plan.markers:
            shutil.copyfile(src, marker)
            os.chmod(marker, FILE_MODE)
            LOGGER.info("Distrusted %s", src)
        for path in plan.deletions:
            path.unlink()
            LOGGER.info("Deleted %s", path)
        return MutationResult(plan=plan, generated=self.generate())

    # restore

    def plan_restore(self, items: Iterable[str]) -> RestorePlan:
        self.check()
        scan = self.scan()
        markers = scan.distrusted
        plan = RestorePlan()
        for item in items:
            try:
                fp = self._lookup(item, markers)
            except NotACertificateError as e:
                plan.errors.append(f"{item}: {e.reason}")
                continue
            if fp is not None and fp in plan.restored:
                continue
            matches = [r.path for r in scan.markers(fp)] if fp is not None else []
            if not matches:
                plan.errors.append(f"{item}: no distrusted certificate matches")
                continue
            plan.deletions.extend(matches)
            plan.restored.append(fp)
        return plan

    def restore(self, items: Iterable[str]) -> MutationResult:
        """Delete distrust markers so vendor certificates are trusted again."""
        plan = self.plan_restore(items)
        for error in plan.errors:
            LOGGER.warning("%s", error)
        if not plan.deletions:
            LOGGER.info("Nothing to do")
            return MutationResult(plan=plan)
        for path in plan.deletions:
            path.unlink()
            LOGGER.info("Restored trust in %s", path.name)
        return MutationResult(plan=plan, generated=self.generate())

    # inspection

    def list_anchors(self) -> list[ListEntry]:
        anchors_dir = self.config.anchors_dir
        if not self.config.store_path.is_dir() or not anchors_dir.is_dir():
            raise StructuralStateError(
                f"trust store {self.config.store_path} is missing or malformed, run 'generate' first"
            )
        entries = []
        for path in anchor_files(anchors_dir):
            try:
                entries.append(ListEntry(path=path, info=cert_lib.describe(path)))
            except NotACertificateError as e:
                LOGGER.warning("Skipping %s: %s", path, e.reason)
        return entries

    def check(self) -> None:
        """Raise StructuralStateError if a local source is not a directory."""
        problems = [
            f"{path} exists but is not a directory"
            for path in (self.config.local_trusted, self.config.local_distrusted)
            if path.exists() and not path.is_dir()
        ]
        if problems:
            raise StructuralStateError("invalid local source layout", details=problems)

