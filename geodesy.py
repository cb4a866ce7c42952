"""
Geodesy adapter: reference pixel -> world / geographic / projected / local metric coordinates.

The reference Georef follows the rasterio convention: an affine.Affine
mapping pixel corners (u, v) to world (x, y). World files store the centre
of the upper-left pixel, so reading and writing them applies a half-pixel
shift.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import rasterio
from affine import Affine
from pyproj import CRS, Geod, Transformer
from pyproj.exceptions import CRSError, ProjError
from rasterio.errors import RasterioIOError

from defaults import DATUM_POLICIES, DEFAULT_DATUM_POLICY
from errors import MissingCrs

logger = logging.getLogger(__name__)

COORDINATE_MODES = ('pixel', 'lonlat', 'local_m', 'utm')
WORLD_FILE_EXTENSIONS = ('.tfw', '.tifw', '.wld')

WGS84 = 'EPSG:4326'
_GEOD = Geod(ellps='WGS84')


@dataclass
class Georef:
    """Pixel-corner affine of the reference raster plus its CRS as WKT."""
    affine: Tuple[float, float, float, float, float, float]
    wkt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def __post_init__(self):
        self.affine = tuple(float(v) for v in list(self.affine)[:6])

    @property
    def transform(self) -> Affine:
        return Affine(*self.affine)

    def to_dict(self) -> Dict:
        return {'affine': list(self.affine), 'wkt': self.wkt, 'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: Dict) -> 'Georef':
        return cls(affine=tuple(data['affine']), wkt=data.get('wkt'),
                   width=data.get('width'), height=data.get('height'))


@dataclass
class Coordinate:
    """A converted reference location."""
    x: float
    y: float
    mode: str
    crs: Optional[str] = None
    low_confidence: bool = False


@dataclass
class CrsSuggestion:
    """Suggested projected output CRS for the reference area."""
    epsg: Optional[str]
    proj: str
    name: str
    datum: str
    zone: int
    notice: Optional[str] = None


def detect_utm_zone(lon: float, lat: float) -> Tuple[int, str]:
    """
    UTM zone number and hemisphere for a lon/lat, including the Norway and
    Svalbard exceptions.
    """
    zone_number = int((lon + 180) / 6) + 1
    zone_number = min(max(zone_number, 1), 60)

    if 56.0 <= lat < 64.0 and 3.0 <= lon < 12.0:
        zone_number = 32
    elif 72.0 <= lat < 84.0:
        if 0.0 <= lon < 9.0:
            zone_number = 31
        elif 9.0 <= lon < 21.0:
            zone_number = 33
        elif 21.0 <= lon < 33.0:
            zone_number = 35
        elif 33.0 <= lon < 42.0:
            zone_number = 37

    hemisphere = 'north' if lat >= 0 else 'south'
    return zone_number, hemisphere


def utm_crs_for(lon: float, lat: float, policy: str = DEFAULT_DATUM_POLICY) -> CrsSuggestion:
    """UTM CRS covering a lon/lat under a datum policy."""
    if policy not in DATUM_POLICIES:
        raise ValueError(f"Unknown datum policy: {policy}")
    zone, hemisphere = detect_utm_zone(lon, lat)
    north = hemisphere == 'north'
    if policy == 'NAD83_2011':
        south = '' if north else ' +south'
        return CrsSuggestion(
            epsg=None,
            proj=f"+proj=utm +zone={zone}{south} +ellps=GRS80 +units=m +no_defs +type=crs",
            name=f"NAD83(2011) / UTM zone {zone}{'N' if north else 'S'}",
            datum='NAD83(2011)',
            zone=zone,
            notice='Using NAD83(2011) UTM on the GRS80 ellipsoid (no EPSG code)')
    epsg = f"EPSG:{32600 + zone if north else 32700 + zone}"
    south = '' if north else ' +south'
    return CrsSuggestion(
        epsg=epsg,
        proj=f"+proj=utm +zone={zone}{south} +datum=WGS84 +units=m +no_defs +type=crs",
        name=f"WGS 84 / UTM zone {zone}{'N' if north else 'S'}",
        datum='WGS84',
        zone=zone)


# ---------------------------------------------------------------------------
# World files and .prj
# ---------------------------------------------------------------------------

def world_file_to_affine(values) -> Affine:
    """ESRI world file lines (A, D, B, E, C, F; pixel centre) -> pixel-corner Affine."""
    A, D, B, E, C, F = [float(v) for v in values]
    return Affine(A, B, C - A / 2.0 - B / 2.0, D, E, F - D / 2.0 - E / 2.0)


def affine_to_world_file(aff: Affine) -> Tuple[float, ...]:
    """Pixel-corner Affine -> ESRI world file lines (A, D, B, E, C, F)."""
    a, b, c, d, e, f = aff[:6]
    return (a, d, b, e, c + a / 2.0 + b / 2.0, f + d / 2.0 + e / 2.0)


def find_world_file(path) -> Optional[Path]:
    path = Path(path)
    if path.suffix.lower() in WORLD_FILE_EXTENSIONS and path.exists():
        return path
    for ext in WORLD_FILE_EXTENSIONS:
        candidate = path.with_suffix(ext)
        if candidate.exists():
            return candidate
    return None


def read_world_file(path) -> Affine:
    """
    Read a world file.

    Args:
        path: The world file itself, or the raster / base path next to it

    Raises:
        FileNotFoundError: no world file found
        ValueError: fewer than six numeric lines
    """
    world = find_world_file(path)
    if world is None:
        raise FileNotFoundError(f"No world file found for {path}")
    lines = [line.strip() for line in world.read_text().splitlines() if line.strip()]
    if len(lines) < 6:
        raise ValueError(f"World file {world} has {len(lines)} lines, expected 6")
    return world_file_to_affine(lines[:6])


def read_prj(path) -> Optional[str]:
    """WKT from the .prj next to `path`, or None."""
    prj = Path(path).with_suffix('.prj')
    if not prj.exists():
        return None
    text = prj.read_text().strip()
    return text or None


def load_reference_georef(path) -> Georef:
    """
    Read the reference Georef from a GeoTIFF, falling back to a world file
    (plus optional .prj) next to it.

    Raises:
        MissingCrs: neither the raster nor a world file provides georeferencing
    """
    path = Path(path)
    width = height = None
    if path.exists() and path.suffix.lower() not in WORLD_FILE_EXTENSIONS:
        try:
            with rasterio.open(path) as src:
                width, height = src.width, src.height
                if not src.transform.is_identity:
                    wkt = src.crs.to_wkt() if src.crs else read_prj(path)
                    logger.info(f"Loaded reference georef from {path.name} "
                                f"({width}x{height}, CRS: {src.crs or 'none'})")
                    return Georef(affine=tuple(src.transform)[:6], wkt=wkt, width=width, height=height)
        except RasterioIOError as e:
            logger.debug(f"rasterio could not open {path}: {e}")

    try:
        aff = read_world_file(path)
    except FileNotFoundError:
        raise MissingCrs(f"No georeferencing found for {path}")
    wkt = read_prj(path)
    logger.info(f"Loaded reference georef from world file for {path.name} (PRJ: {'yes' if wkt else 'no'})")
    return Georef(affine=tuple(aff)[:6], wkt=wkt, width=width, height=height)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class GeodesyAdapter:
    """
    Converts reference pixels to other coordinate systems.

    Args:
        georef: Reference Georef, or None when the reference is not georeferenced
        datum_policy: Default UTM policy ('WGS84' or 'NAD83_2011')
    """

    def __init__(self, georef: Optional[Georef] = None, datum_policy: str = DEFAULT_DATUM_POLICY):
        if datum_policy not in DATUM_POLICIES:
            raise ValueError(f"Unknown datum policy: {datum_policy}")
        self.georef = georef
        self.datum_policy = datum_policy
        self._crs = None
        if georef is not None and georef.wkt:
            try:
                self._crs = CRS.from_user_input(georef.wkt)
            except CRSError as e:
                logger.warning(f"Reference CRS could not be parsed: {e}")

    @property
    def has_georef(self) -> bool:
        return self.georef is not None

    @property
    def has_crs(self) -> bool:
        return self._crs is not None

    @property
    def crs(self) -> Optional[CRS]:
        return self._crs

    def _require_georef(self) -> Georef:
        if self.georef is None:
            raise MissingCrs("Reference raster has no georeferencing")
        return self.georef

    def _require_crs(self) -> CRS:
        self._require_georef()
        if self._crs is None:
            raise MissingCrs("Reference CRS is missing or could not be parsed")
        return self._crs

    def pixel_to_world(self, u: float, v: float) -> Tuple[float, float]:
        x, y = self._require_georef().transform * (u, v)
        return float(x), float(y)

    def pixel_size(self) -> float:
        """Mean length of the affine column vectors (world units per pixel)."""
        a, b, _, d, e, _ = self._require_georef().affine
        return (math.hypot(a, d) + math.hypot(b, e)) / 2.0

    def origin_pixel(self) -> Tuple[float, float]:
        """Local-meters origin: raster centre, or pixel (0, 0) when the size is unknown."""
        g = self.georef
        if g is not None and g.width and g.height:
            return g.width / 2.0, g.height / 2.0
        return 0.0, 0.0

    def pixel_to_lonlat(self, u: float, v: float) -> Tuple[float, float]:
        crs = self._require_crs()
        x, y = self.pixel_to_world(u, v)
        transformer = Transformer.from_crs(crs, WGS84, always_xy=True)
        lon, lat = transformer.transform(x, y)
        if not (math.isfinite(lon) and math.isfinite(lat)):
            raise MissingCrs(f"Reference CRS cannot map ({x}, {y}) to lon/lat")
        return float(lon), float(lat)

    def pixel_to(self, u: float, v: float, mode: str = 'pixel', policy: Optional[str] = None) -> Coordinate:
        """
        Convert a reference pixel.

        Args:
            u, v: Reference pixel (corner convention)
            mode: 'pixel', 'lonlat', 'local_m' or 'utm'
            policy: Datum policy for 'utm' (defaults to the adapter's)

        Raises:
            MissingCrs: 'lonlat' or 'utm' without a usable CRS
        """
        if mode not in COORDINATE_MODES:
            raise ValueError(f"Unknown coordinate mode: {mode}")
        if mode == 'pixel':
            return Coordinate(float(u), float(v), mode)
        if mode == 'lonlat':
            lon, lat = self.pixel_to_lonlat(u, v)
            return Coordinate(lon, lat, mode, WGS84)
        if mode == 'local_m':
            return self._pixel_to_local(u, v)
        return self._pixel_to_utm(u, v, policy or self.datum_policy)

    def _pixel_to_local(self, u: float, v: float) -> Coordinate:
        ou, ov = self.origin_pixel()
        if self.georef is None:
            return Coordinate(float(u - ou), float(v - ov), 'local_m', None, low_confidence=True)
        if self._crs is None:
            x, y = self.pixel_to_world(u, v)
            x0, y0 = self.pixel_to_world(ou, ov)
            return Coordinate(x - x0, y - y0, 'local_m', None, low_confidence=True)
        lon0, lat0 = self.pixel_to_lonlat(ou, ov)
        lon, lat = self.pixel_to_lonlat(u, v)
        aeqd = CRS.from_proj4(f"+proj=aeqd +lat_0={lat0} +lon_0={lon0} +datum=WGS84 +units=m +no_defs")
        x, y = Transformer.from_crs(WGS84, aeqd, always_xy=True).transform(lon, lat)
        return Coordinate(float(x), float(y), 'local_m', aeqd.to_string())

    def _pixel_to_utm(self, u: float, v: float, policy: str) -> Coordinate:
        lon, lat = self.pixel_to_lonlat(u, v)
        suggestion = utm_crs_for(lon, lat, policy)
        target = suggestion.epsg or suggestion.proj
        try:
            x, y = Transformer.from_crs(WGS84, CRS.from_user_input(target), always_xy=True).transform(lon, lat)
        except (CRSError, ProjError) as e:
            raise MissingCrs(f"Could not build UTM transform for {suggestion.name}: {e}")
        return Coordinate(float(x), float(y), 'utm', target)

    def metric_scale_at(self, u: float, v: float) -> float:
        """
        Ground meters per reference pixel around (u, v).

        Geodesic lengths of one-pixel steps along u and v, averaged. Without a
        CRS the affine pixel size is returned as is (affine units assumed to
        be meters).
        """
        self._require_georef()
        if self._crs is None:
            return self.pixel_size()
        lon0, lat0 = self.pixel_to_lonlat(u, v)
        lon_u, lat_u = self.pixel_to_lonlat(u + 1.0, v)
        lon_v, lat_v = self.pixel_to_lonlat(u, v + 1.0)
        _, _, du = _GEOD.inv(lon0, lat0, lon_u, lat_u)
        _, _, dv = _GEOD.inv(lon0, lat0, lon_v, lat_v)
        return (du + dv) / 2.0

    def suggest_output_crs(self, policy: Optional[str] = None) -> CrsSuggestion:
        """UTM CRS for the reference centre under a datum policy."""
        lon, lat = self.pixel_to_lonlat(*self.origin_pixel())
        suggestion = utm_crs_for(lon, lat, policy or self.datum_policy)
        logger.debug(f"Suggested output CRS: {suggestion.name}")
        return suggestion

    def reference_crs_info(self) -> Optional[Dict]:
        """Name, EPSG code, PROJ string and WKT of the reference CRS (None without a georef)."""
        if self.georef is None:
            return None
        if self._crs is None:
            return {'name': 'Unknown', 'code': None, 'proj': None, 'wkt': self.georef.wkt}
        code = self._crs.to_epsg()
        return {
            'name': self._crs.name,
            'code': f"EPSG:{code}" if code else None,
            'proj': self._crs.to_string(),
            'wkt': self.georef.wkt,
        }
