"""
Overview plot of a catalog: tile extents and ROI footprints on one map.

ROIs are drawn green when they were extracted, red when their batch failed
and grey when no results are given.
"""

from pathlib import Path
from typing import Optional, Sequence

from .catalog import Catalog
from .roi import CIRCLE, Roi


def plot_catalog(catalog: Catalog, rois: Sequence[Roi], output_png: Path,
                 results: Optional[Sequence] = None) -> Path:
    """
    Save a PNG with the tile extents and the ROIs.

    Args:
        catalog: Tile catalog
        rois: ROIs in query order
        output_png: Output image path
        results: Optional roi_query() output, aligned with rois

    Returns:
        Path of the written image
    """
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import matplotlib.patches as mpatches
    from matplotlib.collections import PatchCollection

    output_png = Path(output_png)

    # Overall extent over tiles and ROI envelopes
    boxes = [tile.bbox for tile in catalog] + [roi.envelope for roi in rois]
    if not boxes:
        raise ValueError("Nothing to plot: empty catalog and no ROIs")
    overall_xmin = min(b[0] for b in boxes)
    overall_ymin = min(b[1] for b in boxes)
    overall_xmax = max(b[2] for b in boxes)
    overall_ymax = max(b[3] for b in boxes)

    x_padding = max((overall_xmax - overall_xmin) * 0.05, 1.0)
    y_padding = max((overall_ymax - overall_ymin) * 0.05, 1.0)

    fig, ax = plt.subplots(1, 1, figsize=(12, 10))

    # Tile extents
    tile_patches = []
    for tile in catalog:
        xmin, ymin, xmax, ymax = tile.bbox
        tile_patches.append(mpatches.Rectangle((xmin, ymin), xmax - xmin, ymax - ymin,
                                               edgecolor='blue', facecolor='lightblue',
                                               alpha=0.4, linewidth=1.5))
        ax.text((xmin + xmax) / 2, (ymin + ymax) / 2, tile.name,
                ha='center', va='center', fontsize=7, color='darkblue',
                bbox=dict(boxstyle='round,pad=0.3', facecolor='white', alpha=0.7))
    ax.add_collection(PatchCollection(tile_patches, match_original=True))

    # ROI footprints
    n_ok = n_failed = 0
    roi_patches = []
    for i, roi in enumerate(rois):
        if results is None:
            color = 'grey'
        elif results[i].points is None:
            color = 'red'
            n_failed += 1
        else:
            color = 'green'
            n_ok += 1

        if roi.shape == CIRCLE:
            patch = mpatches.Circle((roi.x, roi.y), roi.radius)
        else:
            patch = mpatches.Rectangle((roi.x - roi.half_width, roi.y - roi.half_height),
                                       2 * roi.half_width, 2 * roi.half_height)
        patch.set_edgecolor(color)
        patch.set_facecolor('none')
        patch.set_linewidth(1.5)
        roi_patches.append(patch)
        ax.annotate(roi.name, (roi.x, roi.y), fontsize=7, color=color, ha='center', va='center')
    ax.add_collection(PatchCollection(roi_patches, match_original=True))

    crs_label = str(catalog.crs)
    ax.set_xlim(overall_xmin - x_padding, overall_xmax + x_padding)
    ax.set_ylim(overall_ymin - y_padding, overall_ymax + y_padding)
    ax.set_aspect('equal')
    ax.set_xlabel(f'X ({crs_label})', fontsize=11)
    ax.set_ylabel(f'Y ({crs_label})', fontsize=11)
    ax.set_title('Catalog Tiles and ROIs', fontsize=13, weight='bold')
    ax.grid(True, alpha=0.3)

    legend = [
        mpatches.Patch(facecolor='lightblue', edgecolor='blue', alpha=0.4, label='Tile extent'),
        mpatches.Patch(facecolor='none', edgecolor='green', label='ROI extracted'),
        mpatches.Patch(facecolor='none', edgecolor='red', label='ROI failed'),
    ]
    ax.legend(handles=legend, loc='upper right', fontsize=9)

    stats_text = f'Tiles: {len(catalog)}\nROIs: {len(rois)}'
    if results is not None:
        stats_text += f'\nExtracted: {n_ok}\nFailed: {n_failed}'
    ax.text(0.02, 0.98, stats_text, transform=ax.transAxes,
            fontsize=9, verticalalignment='top',
            bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.5))

    plt.tight_layout()
    output_png.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_png, dpi=150, bbox_inches='tight')
    plt.close(fig)

    print(f"  ✓ Overview plot saved to: {output_png}")
    return output_png
