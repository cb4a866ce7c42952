"""
Default values for the georeferencing engine.

These defaults define the parameters used by the registration pipeline:
seeded RANSAC for the global model, IRLS refinement, and the optional local
warp. They can be overridden by user input via command-line arguments,
config files, or programmatic API (see RegistrationConfig).
"""

# Global model families accepted by solve_global
DEFAULT_METHOD = 'affine'
GLOBAL_METHODS = ['similarity', 'affine']

# Local warp models accepted by solve_local
LOCAL_MODELS = ['tps', 'ffd']

# Error units for quality metrics
ERROR_UNITS = ['pixels', 'meters', 'mapmm']
DEFAULT_ERROR_UNIT = 'pixels'

# RANSAC
DEFAULT_RANSAC_THRESHOLD = 3.0        # inlier threshold in reference pixels
DEFAULT_RANSAC_ITERATIONS = 500
DEFAULT_RANSAC_SEED = 42
DEFAULT_DEGENERACY_THRESHOLD = 1e-6   # normalized triangle area / min separation
DEFAULT_HIGH_TRUST_WEIGHT = 2.0       # line/area constraints at or above this feed RANSAC

# Refinement
DEFAULT_ROBUST_LOSS = 'huber'
ROBUST_LOSSES = ['huber', 'tukey']
DEFAULT_ROBUST_SCALE = 3.0            # pixels
DEFAULT_REFINE_TOLERANCE = 1e-10
DEFAULT_REFINE_MAX_ITERATIONS = 50
DEFAULT_RIDGE = 1e-9
DEFAULT_LINE_SAMPLES = 16             # samples along each source polyline
DEFAULT_AREA_SAMPLES = 32             # samples along each source polygon boundary

# Local warp
DEFAULT_TPS_LAMBDA = 0.0
DEFAULT_TPS_MAX_CONTROL_POINTS = 400
DEFAULT_MIN_CONTROL_SEPARATION = 1e-3  # pixels
DEFAULT_MAX_CONDITION_NUMBER = 1e12
DEFAULT_ANCHOR_SPACING = 10.0         # pixels between anchor samples, tightened to half the data spacing
DEFAULT_ANCHOR_MAX_SAMPLES = 900      # per anchor; spacing widens beyond this
DEFAULT_ANCHOR_TOLERANCE = 1e-2       # pixels of local displacement allowed inside an anchor
DEFAULT_ANCHOR_REFINE_ROUNDS = 4
DEFAULT_FFD_GRID_SIZE = 8             # cells along the longest side
DEFAULT_INVERSE_MAX_ITERATIONS = 50
DEFAULT_INVERSE_TOLERANCE = 1e-9

# Geodesy
DEFAULT_DATUM_POLICY = 'WGS84'
DATUM_POLICIES = ['WGS84', 'NAD83_2011']

# Default debug level
DEFAULT_DEBUG_LEVEL = 'none'

# Default output directory
DEFAULT_OUTPUT_DIR = 'outputs'
