"""Workspace layout and published artifacts.

The workspace is the output root of a run. It owns ``proc/orig`` (inputs in
canonical orientation), ``proc/pre`` (aligned, preprocessed volumes) and
``proc/seg`` (one directory per backend). Results are published at the root
under stable names so downstream consumers never address ``proc/`` paths.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union
import logging
import os

from wmhseg.errors import InputNotFound, WorkspaceStateError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Names published at the workspace root
FLAIR_PREPROCESSED = "FLAIR_preprocessed.nii.gz"
T1_ALIGNED = "T1Volume_aligned.nii.gz"
SYNTH_T1 = "FLAIR_synthT1.nii"
REG_FLAIR_TO_3DT1 = "reg_FLAIR_to_3DT1.txt"
REG_3DT1_TO_FLAIR = "reg_3DT1_to_FLAIR.txt"
RUN_SUMMARY = "run_summary.json"


def resolve_input(path: PathLike, label: str, cwd: Optional[Path] = None) -> Path:
    """Resolve an input image path against ``cwd`` and check it is a file.

    Args:
        path: Absolute or relative path.
        label: Human-readable name used in the error ("T1", "FLAIR").
        cwd: Base for relative paths (defaults to the current directory).

    Raises:
        InputNotFound: If the path does not resolve to a regular file.
    """
    if not str(path):
        raise InputNotFound(f"{label} image path is empty")
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = (cwd or Path.cwd()) / candidate
    candidate = Path(os.path.abspath(candidate))
    if not candidate.is_file():
        raise InputNotFound(f"{label} image file not found: {candidate}")
    return candidate


def resolve_output(path: PathLike, cwd: Optional[Path] = None) -> Path:
    """Resolve the output root against ``cwd`` without creating it."""
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = (cwd or Path.cwd()) / candidate
    return Path(os.path.abspath(candidate))


class ArtifactRegistry:
    """Maps stable names at the workspace root to canonical artifact paths.

    Publication uses relative symbolic links, so the workspace can be moved
    as a whole without breaking them.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.logger = logging.getLogger(__name__)

    def publish(self, name: str, target: Path) -> Path:
        """Create or replace ``root/name`` pointing at ``target``.

        Raises:
            WorkspaceStateError: If the target does not exist.
        """
        target = Path(target)
        if not target.exists():
            raise WorkspaceStateError(f"Cannot publish {name}: target missing: {target}")

        link = self.root / name
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(os.path.relpath(target, self.root))
        self.logger.debug(f"Published {name} -> {target}")
        return link

    def withdraw(self, name: str) -> None:
        """Remove a published name if present."""
        link = self.root / name
        if link.is_symlink() or link.exists():
            link.unlink()
            self.logger.debug(f"Withdrew {name}")

    def resolve(self, name: str) -> Optional[Path]:
        """Return the canonical path behind a published name, if any."""
        link = self.root / name
        if not link.is_symlink():
            return None
        return Path(os.path.normpath(self.root / os.readlink(link)))

    def published(self) -> Dict[str, Path]:
        """Return all symlinks at the workspace root and their targets."""
        links: Dict[str, Path] = {}
        if not self.root.is_dir():
            return links
        for entry in sorted(self.root.iterdir()):
            if entry.is_symlink():
                links[entry.name] = self.resolve(entry.name)
        return links


@dataclass
class Workspace:
    """Deterministic on-disk layout for one run.

    Attributes:
        root: Absolute output root.
        t1: Absolute path to the original T1 image.
        flair: Absolute path to the original FLAIR image.
    """

    root: Path
    t1: Path
    flair: Path

    @classmethod
    def create(
        cls,
        output_dir: PathLike,
        t1: PathLike,
        flair: PathLike,
        cwd: Optional[Path] = None,
    ) -> "Workspace":
        """Resolve paths, validate inputs and build the directory layout.

        Inputs are validated before anything is created on disk.

        Raises:
            InputNotFound: If either input image cannot be resolved.
        """
        flair_path = resolve_input(flair, "FLAIR", cwd=cwd)
        t1_path = resolve_input(t1, "T1", cwd=cwd)
        root = resolve_output(output_dir, cwd=cwd)

        workspace = cls(root=root, t1=t1_path, flair=flair_path)
        workspace.ensure()
        return workspace

    @property
    def proc(self) -> Path:
        return self.root / "proc"

    @property
    def orig(self) -> Path:
        return self.proc / "orig"

    @property
    def pre(self) -> Path:
        return self.proc / "pre"

    @property
    def seg(self) -> Path:
        return self.proc / "seg"

    @property
    def pre_flair(self) -> Path:
        return self.pre / "FLAIR.nii.gz"

    @property
    def pre_t1(self) -> Path:
        return self.pre / "T1.nii.gz"

    @property
    def pre_3dt1(self) -> Path:
        return self.pre / "3DT1.nii.gz"

    @property
    def summary_path(self) -> Path:
        return self.proc / RUN_SUMMARY

    @property
    def registry(self) -> ArtifactRegistry:
        return ArtifactRegistry(self.root)

    def is_preprocessed(self) -> bool:
        """The canonical FLAIR is the idempotency flag for preprocessing."""
        return self.pre_flair.exists()

    def backend_dir(self, dirname: str) -> Path:
        return self.seg / dirname

    def ensure(self) -> None:
        """Create the directory layout and link the inputs into the root."""
        for folder in (self.orig, self.pre, self.seg):
            folder.mkdir(parents=True, exist_ok=True)

        for source in (self.flair, self.t1):
            self._link_input(source)

    def require(self, *paths: Path) -> None:
        """Raise WorkspaceStateError unless every path exists."""
        missing = [str(p) for p in paths if not Path(p).exists()]
        if missing:
            raise WorkspaceStateError(f"Expected workspace artifact(s) missing: {', '.join(missing)}")

    def _link_input(self, source: Path) -> None:
        # Inputs already inside the output root are not linked onto themselves
        if source.parent == self.root:
            return
        link = self.root / source.name
        if link.is_symlink() or link.exists():
            return
        link.symlink_to(os.path.relpath(source, self.root))
        logger.info(f"Linked input {source} -> {link}")
