"""Disk artifact handling around a provisioning run.

Before a fresh deployment, stale per-VM disk images are removed so the
provisioning script cannot attach a leftover disk to a recreated VM. After a
successful run, disk images are checked for presence and plausible size:
the script can exit 0 even when no operating system was installed, and an
almost-empty VHDX is the cheapest reliable sign of that.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from hvlab.config import settings

if TYPE_CHECKING:
    from hvlab.schemas import LabTopology

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Receives operator-facing lines: (message, is_error)
LogFn = Callable[[str, bool], None]


def _noop(message: str, is_error: bool = False) -> None:
    pass


def working_directory(topology: LabTopology, root: str | None = None) -> Path:
    """Derive a lab's working directory.

    The folder holding its definition file when `path` points at a .json
    file, `path` itself when it is a directory, else the lab sources root.
    """
    fallback = Path(root or settings.lab_sources_root)
    if not topology.path:
        return fallback
    path = Path(topology.path)
    if path.suffix.lower() == ".json":
        return path.parent if str(path.parent) else fallback
    return path


def stale_disk_paths(topology: LabTopology, roots: list[Path]) -> list[Path]:
    """Per-VM disk images (<root>/<vm>/<vm>.vhdx) that already exist."""
    found = []
    seen: set[Path] = set()
    for root in roots:
        for vm in topology.machines:
            disk = root / vm.name / f"{vm.name}.vhdx"
            if disk in seen:
                continue
            seen.add(disk)
            if disk.is_file():
                found.append(disk)
    return found


def clean_stale_disks(
    topology: LabTopology,
    roots: list[Path],
    log: LogFn = _noop,
) -> dict:
    """Delete stale per-VM disk images under each root.

    Returns:
        Dict with 'deleted' (paths) and 'errors' keys
    """
    deleted: list[str] = []
    errors: list[str] = []

    for disk in stale_disk_paths(topology, roots):
        log(f"  Removing: {disk}", False)
        try:
            disk.unlink()
            deleted.append(str(disk))
            logger.info(f"Deleted stale disk image: {disk}")
        except OSError as e:
            errors.append(f"Failed to delete {disk}: {e}")
            log(f"  WARNING: Could not delete {disk}: {e}", True)
            logger.warning(f"Failed to delete stale disk image {disk}: {e}")

    return {"deleted": deleted, "errors": errors}


@dataclass
class DiskImage:
    path: Path
    size_bytes: int

    @property
    def size_mb(self) -> int:
        return self.size_bytes // MB


@dataclass
class VMArtifactCheck:
    """Disk artifact check for one machine."""
    vm_name: str
    directory: Path
    directory_found: bool = False
    images: list[DiskImage] = field(default_factory=list)
    undersized: list[DiskImage] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.directory_found and bool(self.images) and not self.undersized


@dataclass
class ArtifactReport:
    checks: list[VMArtifactCheck] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(c.ok for c in self.checks)

    @property
    def failed_vms(self) -> list[str]:
        return [c.vm_name for c in self.checks if not c.ok]


def validate_disk_artifacts(
    topology: LabTopology,
    vm_root: Path,
    min_size_mb: int | None = None,
    pattern: str | None = None,
    log: LogFn = _noop,
) -> ArtifactReport:
    """Check every machine has a disk directory with plausibly sized images.

    Logs one line per image (size when OK, a warning otherwise) so the run
    log has per-VM sizes for diagnosis either way.
    """
    min_mb = min_size_mb if min_size_mb is not None else settings.min_disk_image_mb
    glob = pattern or settings.disk_image_pattern
    report = ArtifactReport()

    try:
        for vm in topology.machines:
            vm_dir = vm_root / vm.name
            check = VMArtifactCheck(vm_name=vm.name, directory=vm_dir)
            report.checks.append(check)

            if not vm_dir.is_dir():
                log(f"WARNING: VM disk directory not found: {vm_dir}", True)
                continue
            check.directory_found = True

            for image_path in sorted(vm_dir.glob(glob)):
                if not image_path.is_file():
                    continue
                check.images.append(DiskImage(image_path, image_path.stat().st_size))

            if not check.images:
                log(f"WARNING: No disk images found for VM '{vm.name}' in {vm_dir}", True)
                continue

            for image in check.images:
                if image.size_bytes < min_mb * MB:
                    check.undersized.append(image)
                    log(
                        f"WARNING: '{vm.name}' disk is only {image.size_mb}MB "
                        f"({image.path.name}) - OS installation may have failed!",
                        True,
                    )
                    log(f"  Expected: >{min_mb}MB for an installed operating system.", False)
                else:
                    log(
                        f"  '{vm.name}' disk OK: {image.size_bytes / (1024 * MB):.1f}GB "
                        f"({image.path.name})",
                        False,
                    )
    except OSError as e:
        report.error = str(e)
        log(f"Disk validation error: {e}", True)
        logger.warning(f"Disk validation error: {e}")

    return report
