"""Command builders for the external neuroimaging tools.

Each function returns a :class:`ToolInvocation` with its declared inputs and
outputs. Nothing here runs a process; execution goes through a ToolRunner.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from wmhseg.tools.runner import ToolInvocation

# FSL writes compressed NIfTI unless told otherwise; pin it so output names are predictable
FSL_ENV = {"FSLOUTPUTTYPE": "NIFTI_GZ"}

Bind = Tuple[Path, str, str]


def afni_resample(
    in_file: Path,
    out_file: Path,
    orient: str,
    voxel_size: Optional[Sequence[float]] = None,
) -> ToolInvocation:
    """AFNI 3dresample to an orientation code and, optionally, a voxel size."""
    argv = ["3dresample", "-orient", orient]
    if voxel_size is not None:
        argv += ["-dxyz"] + [f"{v:g}" for v in voxel_size]
    argv += ["-input", str(in_file), "-prefix", str(out_file)]
    return ToolInvocation(
        name="3dresample",
        argv=argv,
        cwd=out_file.parent,
        inputs=[in_file],
        outputs=[out_file],
    )


def n4_bias_field_correction(in_file: Path, out_file: Path) -> ToolInvocation:
    """ANTs N4BiasFieldCorrection with default parameters."""
    return ToolInvocation(
        name="N4BiasFieldCorrection",
        argv=["N4BiasFieldCorrection", "-d", "3", "-i", str(in_file), "-o", str(out_file)],
        cwd=out_file.parent,
        inputs=[in_file],
        outputs=[out_file],
    )


def mri_synthsr(in_file: Path, out_file: Path, threads: int) -> ToolInvocation:
    """FreeSurfer SynthSR: synthesize a 1 mm T1-like image on the CPU."""
    return ToolInvocation(
        name="mri_synthsr",
        argv=[
            "mri_synthsr",
            "--i", str(in_file),
            "--o", str(out_file),
            "--cpu",
            "--threads", str(threads),
        ],
        cwd=out_file.parent,
        inputs=[in_file],
        outputs=[out_file],
    )


def flirt_estimate(in_file: Path, ref_file: Path, out_matrix: Path, dof: int = 6) -> ToolInvocation:
    """FSL FLIRT registration writing only the affine matrix."""
    return ToolInvocation(
        name="flirt",
        argv=[
            "flirt",
            "-in", str(in_file),
            "-ref", str(ref_file),
            "-dof", str(dof),
            "-omat", str(out_matrix),
        ],
        cwd=out_matrix.parent,
        inputs=[in_file, ref_file],
        outputs=[out_matrix],
        env=dict(FSL_ENV),
    )


def flirt_apply(in_file: Path, ref_file: Path, out_file: Path, matrix: Path) -> ToolInvocation:
    """FSL FLIRT applying an existing matrix."""
    return ToolInvocation(
        name="flirt",
        argv=[
            "flirt",
            "-in", str(in_file),
            "-ref", str(ref_file),
            "-out", str(out_file),
            "-init", str(matrix),
            "-applyxfm",
        ],
        cwd=out_file.parent,
        inputs=[in_file, ref_file, matrix],
        outputs=[out_file],
        env=dict(FSL_ENV),
    )


def convert_xfm_inverse(in_matrix: Path, out_matrix: Path) -> ToolInvocation:
    """FSL convert_xfm matrix inversion."""
    return ToolInvocation(
        name="convert_xfm",
        argv=["convert_xfm", "-omat", str(out_matrix), "-inverse", str(in_matrix)],
        cwd=out_matrix.parent,
        inputs=[in_matrix],
        outputs=[out_matrix],
        env=dict(FSL_ENV),
    )


def fsl_bet(in_file: Path, out_base: Path, frac: float = 0.3) -> ToolInvocation:
    """FSL BET robust brain extraction with a binary mask.

    ``out_base`` is the output name without extension; BET writes
    ``<out_base>.nii.gz`` and ``<out_base>_mask.nii.gz``.
    """
    brain = out_base.parent / f"{out_base.name}.nii.gz"
    mask = out_base.parent / f"{out_base.name}_mask.nii.gz"
    return ToolInvocation(
        name="bet",
        argv=["bet", str(in_file), str(out_base), "-R", "-m", "-f", f"{frac:g}"],
        cwd=out_base.parent,
        inputs=[in_file],
        outputs=[brain, mask],
        env=dict(FSL_ENV),
    )


def container_exec(
    runtime: str,
    image: Path,
    command: List[str],
    binds: Sequence[Bind],
    cwd: Path,
    outputs: Optional[List[Path]] = None,
    gpu: bool = False,
    name: Optional[str] = None,
) -> ToolInvocation:
    """Run a command inside a Singularity/Apptainer image with a clean environment.

    Args:
        runtime: Container executable ("singularity" or "apptainer").
        image: Path to the SIF image.
        command: Command executed inside the container.
        binds: (host_path, container_path, mode) triples; mode "" or "ro".
        cwd: Host working directory for the runtime process.
        outputs: Host files the container must produce.
        gpu: Pass ``--nv`` to expose NVIDIA devices.
        name: Tool name for logs (defaults to the image stem).
    """
    argv = [runtime, "exec"]
    if gpu:
        argv.append("--nv")
    argv.append("-e")
    for host, target, mode in binds:
        mount = f"{host}:{target}"
        if mode:
            mount += f":{mode}"
        argv += ["-B", mount]
    argv.append(str(image))
    argv += command
    return ToolInvocation(
        name=name or image.stem,
        argv=argv,
        cwd=cwd,
        inputs=[image],
        outputs=list(outputs or []),
    )


def matlab_batch(matlab_command: str, script: str, cwd: Path, outputs: List[Path]) -> ToolInvocation:
    """Run a MATLAB statement block headless; the script must call exit itself."""
    return ToolInvocation(
        name="matlab",
        argv=[matlab_command, "-nodisplay", "-nosplash", "-r", script],
        cwd=cwd,
        outputs=outputs,
    )


def mri_wmhsynthseg(
    in_file: Path,
    out_file: Path,
    csv_file: Path,
    threads: int,
    env: Dict[str, str],
) -> ToolInvocation:
    """FreeSurfer WMH-SynthSeg with cropping and lesion probability output."""
    probs = out_file.parent / out_file.name.replace(".nii.gz", ".lesion_probs.nii.gz")
    return ToolInvocation(
        name="mri_WMHsynthseg",
        argv=[
            "mri_WMHsynthseg",
            "--i", str(in_file),
            "--o", str(out_file),
            "--csv_vols", str(csv_file),
            "--threads", str(threads),
            "--crop",
            "--save_lesion_probabilities",
        ],
        cwd=out_file.parent,
        inputs=[in_file],
        outputs=[out_file, probs],
        env=env,
    )
