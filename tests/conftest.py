"""Shared fixtures: synthetic NIfTI volumes and a ToolRunner that runs nothing.

``FakeRunner`` goes through the real ToolRunner input/output checks but,
instead of starting a process, fabricates every declared output: NIfTI
outputs are copies of the first NIfTI input (or of the ``-ref`` image for
FLIRT), or an 8-voxel cube on the reference grid when the tool has no
image input (containers, MATLAB) or is a segmenter listed in CUBE_VALUES;
anything else gets an identity matrix.
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional

import nibabel as nib
import numpy as np
import pytest

from wmhseg.config import PipelineConfig
from wmhseg.errors import ExternalToolFailure
from wmhseg.imaging import load_image, save_image
from wmhseg.tools.runner import ToolInvocation, ToolResult, ToolRunner

SHAPE = (10, 12, 8)
# 1 x 1 x 3 mm voxels: an 8-voxel cube is 24 mm^3 = 0.024 ml
FLAIR_AFFINE = np.diag([1.0, 1.0, 3.0, 1.0])
T1_AFFINE = np.diag([1.0, 1.0, 3.0, 1.0])

CUBE = (slice(2, 4), slice(2, 4), slice(2, 4))
CUBE_VOLUME_ML = 0.024

IDENTITY_MATRIX = "1 0 0 0\n0 1 0 0\n0 0 1 0\n0 0 0 1\n"

# Value the fabricated cube carries, per tool
CUBE_VALUES = {"mri_WMHsynthseg": 77.0}

CONTAINER_IMAGES = [
    "LST-AI.sif",
    "pgs_latest.sif",
    "sysu_media_2_latest.sif",
    "fmrib-truenet_2_latest.sif",
    "UCDWMH/UCD_WMHkit.sif",
]


def make_nifti(
    path: Path,
    shape: tuple = SHAPE,
    affine: Optional[np.ndarray] = None,
    data: Optional[np.ndarray] = None,
) -> Path:
    """Write a NIfTI with smooth positive intensities (or the given data)."""
    if data is None:
        grid = np.indices(shape).sum(axis=0).astype(np.float32)
        data = 100.0 + grid
    img = nib.Nifti1Image(data, FLAIR_AFFINE if affine is None else affine)
    path.parent.mkdir(parents=True, exist_ok=True)
    nib.save(img, str(path))
    return path


def make_cube(reference: Optional[Path], value: float = 1.0) -> nib.Nifti1Image:
    """An 8-voxel cube of ``value`` on the reference grid."""
    if reference is not None and reference.exists():
        ref = nib.load(str(reference))
        shape, affine = ref.shape[:3], ref.affine
    else:
        shape, affine = SHAPE, FLAIR_AFFINE
    data = np.zeros(shape, dtype=np.float32)
    data[CUBE] = value
    return nib.Nifti1Image(data, affine)


def _is_nifti(path: Path) -> bool:
    return str(path).endswith((".nii", ".nii.gz"))


def write_default_outputs(invocation: ToolInvocation, runner: "FakeRunner") -> str:
    """Fabricate every declared output of an invocation."""
    source = None
    if invocation.name in CUBE_VALUES:
        pass
    elif "-ref" in invocation.argv and "-applyxfm" in invocation.argv:
        source = Path(invocation.argv[invocation.argv.index("-ref") + 1])
    else:
        images = [Path(p) for p in invocation.inputs if _is_nifti(p)]
        source = images[0] if images else None

    for output in invocation.outputs:
        output = Path(output)
        output.parent.mkdir(parents=True, exist_ok=True)
        if not _is_nifti(output):
            output.write_text(IDENTITY_MATRIX)
        elif source is not None:
            save_image(load_image(source), output)
        else:
            value = CUBE_VALUES.get(invocation.name, 1.0)
            save_image(make_cube(runner.reference, value), output)
    return ""


Handler = Callable[[ToolInvocation, "FakeRunner"], Optional[str]]


class FakeRunner(ToolRunner):
    """ToolRunner that records invocations and fabricates their outputs.

    Attributes:
        reference: Image whose grid fabricated masks use.
        handlers: Per-tool output writers overriding the default.
        failures: Tool name -> exit status to fail with.
        calls: Invocations executed so far.
    """

    def __init__(
        self,
        threads: int = 1,
        reference: Optional[Path] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        failures: Optional[Dict[str, int]] = None,
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            threads=threads,
            dry_run=dry_run,
            base_env={"PATH": "/usr/local/freesurfer/current/bin:/usr/bin:/bin"},
        )
        self.reference = reference
        self.handlers = handlers or {}
        self.failures = failures or {}
        self.calls: List[ToolInvocation] = []

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.calls]

    def _execute(self, invocation: ToolInvocation) -> ToolResult:
        self.calls.append(invocation)
        if invocation.name in self.failures:
            code = self.failures[invocation.name]
            raise ExternalToolFailure(
                f"{invocation.name} failed with exit code {code}",
                tool=invocation.name,
                returncode=code,
            )
        handler = self.handlers.get(invocation.name, write_default_outputs)
        stdout = handler(invocation, self) or ""
        return ToolResult(name=invocation.name, returncode=0, stdout=stdout)


@pytest.fixture
def inputs(tmp_path: Path) -> Dict[str, Path]:
    """Synthetic T1 and FLAIR outside the output folder."""
    return {
        "t1": make_nifti(tmp_path / "inputs" / "t1.nii.gz", affine=T1_AFFINE),
        "flair": make_nifti(tmp_path / "inputs" / "flair.nii.gz"),
    }


@pytest.fixture
def container_dir(tmp_path: Path) -> Path:
    """Directory holding empty stand-ins for the container images."""
    root = tmp_path / "containers"
    for name in CONTAINER_IMAGES:
        image = root / name
        image.parent.mkdir(parents=True, exist_ok=True)
        image.write_bytes(b"")
    return root


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def make_config(inputs: Dict[str, Path], output_dir: Path, container_dir: Path):
    """Factory for a PipelineConfig pointing at the synthetic inputs."""

    def _make(**kwargs) -> PipelineConfig:
        values = dict(
            t1=str(inputs["t1"]),
            flair=str(inputs["flair"]),
            output_dir=str(output_dir),
            threads=1,
            backends=["LPA"],
            container_location=str(container_dir),
        )
        values.update(kwargs)
        return PipelineConfig(**values)

    return _make


@pytest.fixture
def fake_runner(output_dir: Path) -> FakeRunner:
    return FakeRunner(reference=output_dir / "proc" / "pre" / "FLAIR.nii.gz")
