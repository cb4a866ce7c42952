"""
Shared fixtures for unit tests.
"""

import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest
import rasterio
from pyproj import CRS
from rasterio.transform import from_origin

sys.path.insert(0, str(Path(__file__).parent.parent))

from geodesy import Georef


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def true_affine():
    """Ground-truth source -> reference affine, rows [[a, b, c], [d, e, f]]."""
    return np.array([[1.2, 0.1, 15.0],
                     [-0.05, 0.9, -7.5]])


@pytest.fixture
def affine_pairs(true_affine):
    """Noise-free (src, dst) correspondences generated from true_affine."""
    src = np.array([[10.0, 12.0], [90.0, 8.0], [55.0, 85.0], [20.0, 70.0],
                    [75.0, 45.0], [40.0, 30.0]])
    dst = src @ true_affine[:, :2].T + true_affine[:, 2]
    return src, dst


@pytest.fixture
def utm_wkt():
    return CRS.from_epsg(32610).to_wkt()


@pytest.fixture
def utm_georef(utm_wkt):
    """1 m pixels in UTM zone 10N, upper-left corner at (500000, 5430000)."""
    return Georef(affine=(1.0, 0.0, 500000.0, 0.0, -1.0, 5430000.0), wkt=utm_wkt,
                  width=200, height=200)


@pytest.fixture
def plain_georef():
    """Affine-only georef (no CRS), 2 units per pixel."""
    return Georef(affine=(2.0, 0.0, 1000.0, 0.0, -2.0, 2000.0))


@pytest.fixture
def utm_geotiff(temp_dir):
    """200x200 single-band GeoTIFF in EPSG:32610 with 1 m pixels."""
    output_path = temp_dir / "reference.tif"
    height, width = 200, 200
    transform = from_origin(500000.0, 5430000.0, 1.0, 1.0)
    data = np.random.randint(0, 255, (1, height, width), dtype=np.uint8)

    with rasterio.open(
        output_path,
        'w',
        driver='GTiff',
        height=height,
        width=width,
        count=1,
        dtype=data.dtype,
        crs='EPSG:32610',
        transform=transform,
    ) as dst:
        dst.write(data)

    return output_path


@pytest.fixture
def source_raster(temp_dir):
    """Un-georeferenced 3-band 120x100 raster standing in for a scanned map."""
    output_path = temp_dir / "scan.tif"
    height, width = 100, 120
    data = np.random.randint(0, 255, (3, height, width), dtype=np.uint8)

    with rasterio.open(output_path, 'w', driver='GTiff', height=height, width=width,
                       count=3, dtype=data.dtype) as dst:
        dst.write(data)

    return output_path
