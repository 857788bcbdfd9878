"""Quality-control figures for segmentation masks."""

from pathlib import Path
import logging

import nibabel as nib
import numpy as np

from wmhseg.imaging import load_image

logger = logging.getLogger(__name__)


def plot_mask_overlay(
    flair_path: Path,
    mask: nib.Nifti1Image,
    output_path: Path,
    title: str = "",
) -> Path:
    """Overlay a lesion mask on three orthogonal mid-slices of the FLAIR.

    Args:
        flair_path: Canonical FLAIR the mask lives on.
        mask: Binary mask on the FLAIR grid.
        output_path: PNG destination.
        title: Figure title (backend label).

    Returns:
        The written PNG path.

    Raises:
        ValueError: If the mask and FLAIR grids differ.
    """
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    flair_data = load_image(flair_path).get_fdata()
    mask_data = np.asanyarray(mask.dataobj)
    if flair_data.shape[:3] != mask_data.shape[:3]:
        raise ValueError(
            f"Mask grid {mask_data.shape[:3]} does not match FLAIR grid {flair_data.shape[:3]}"
        )

    mid_x = flair_data.shape[0] // 2
    mid_y = flair_data.shape[1] // 2
    mid_z = flair_data.shape[2] // 2

    views = [
        ("Axial", flair_data[:, :, mid_z], mask_data[:, :, mid_z]),
        ("Coronal", flair_data[:, mid_y, :], mask_data[:, mid_y, :]),
        ("Sagittal", flair_data[mid_x, :, :], mask_data[mid_x, :, :]),
    ]

    # Clip display range to robust percentiles of the brain signal
    nonzero = flair_data[flair_data > 0]
    vmin, vmax = (np.percentile(nonzero, [1, 99]) if nonzero.size else (0.0, 1.0))

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    fig.suptitle(f"WMH mask: {title}", fontsize=16, fontweight='bold')

    for ax, (name, background, overlay) in zip(axes, views):
        ax.imshow(background.T, cmap='gray', origin='lower', vmin=vmin, vmax=vmax)
        masked = np.ma.masked_where(overlay.T == 0, overlay.T)
        ax.imshow(masked, cmap='autumn', origin='lower', alpha=0.6, interpolation='nearest')
        ax.set_title(name)
        ax.axis('off')

    plt.tight_layout()
    output_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"QC figure saved to {output_path}")
    return output_path
