"""
Exporters for solved transform stacks.

Every exporter collapses the stack to a single affine first, so a stack
holding a homography or spline stage fails with UnsupportedForProjExport
instead of writing an approximation.
"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import rasterio
from affine import Affine
from rasterio.crs import CRS

from errors import MissingCrs
from geodesy import Georef, affine_to_world_file

logger = logging.getLogger(__name__)


def write_world_file(path, aff: Affine, extension: str = '.tfw') -> Path:
    """Write a pixel-corner Affine as an ESRI world file (centre of the upper-left pixel)."""
    out = Path(path).with_suffix(extension)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(''.join(f"{float(v)!r}\n" for v in affine_to_world_file(aff)))
    logger.info(f"  Wrote world file: {out}")
    return out


def write_prj(path, wkt: str) -> Path:
    out = Path(path).with_suffix('.prj')
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(wkt)
    logger.info(f"  Wrote PRJ: {out}")
    return out


def write_proj_pipeline(path, stack) -> Path:
    """Write the stack's PROJ pipeline text to a file."""
    text = stack.to_proj_pipeline()
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text + '\n')
    logger.info(f"  Wrote PROJ pipeline: {out}")
    return out


def export_world_file(stack, path) -> Path:
    """World file of the source -> reference pixel mapping."""
    return write_world_file(path, stack.to_affine())


def composed_affine(stack, georef: Georef) -> Affine:
    """Source pixel -> reference world: the reference affine applied after the stack."""
    return stack.compose_with(georef.transform).to_affine()


def export_georeferenced_world_file(stack, georef: Optional[Georef], path) -> Path:
    """
    World file (plus .prj when the reference has a CRS) placing the source
    document directly in reference world coordinates.

    Raises:
        MissingCrs: no reference georef
        UnsupportedForProjExport: the stack is not affine
    """
    if georef is None:
        raise MissingCrs("Georeferenced export needs a reference georef")
    out = write_world_file(path, composed_affine(stack, georef))
    if georef.wkt:
        write_prj(path, georef.wkt)
    return out


def export_geotiff(stack, georef: Optional[Georef], source_path, output_path) -> Path:
    """
    Copy the source raster into a GeoTIFF carrying the composed affine and
    the reference CRS. Pixels are not resampled.

    Raises:
        MissingCrs: no reference georef
        UnsupportedForProjExport: the stack is not affine
    """
    if georef is None:
        raise MissingCrs("GeoTIFF export needs a reference georef")
    transform = composed_affine(stack, georef)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with rasterio.open(source_path) as src:
        data = src.read()
        profile = {
            'driver': 'GTiff',
            'height': src.height,
            'width': src.width,
            'count': src.count,
            'dtype': data.dtype,
            'transform': transform,
            'crs': CRS.from_wkt(georef.wkt) if georef.wkt else None,
            'compress': 'deflate',
        }
        if src.nodata is not None:
            profile['nodata'] = src.nodata

    with rasterio.open(output_path, 'w', **profile) as dst:
        dst.write(np.asarray(data))

    logger.info(f"  Wrote georeferenced GeoTIFF: {output_path} ({profile['width']}x{profile['height']}, "
                f"{profile['count']} band(s))")
    return output_path
