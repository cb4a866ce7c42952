"""
Error kinds raised by the registration engine.

Every error is recoverable at the session boundary: a failed solve leaves the
previously published transform stack and metrics untouched.
"""


class RegistrationError(Exception):
    """Base class for all engine errors."""


class InvalidConstraint(RegistrationError):
    """Malformed geometry, non-finite or out-of-bounds coordinates, bad weight."""


class InsufficientConstraints(RegistrationError):
    """Fewer usable correspondences than the model's minimal count."""


class DegenerateGeometry(RegistrationError):
    """Every RANSAC sample was coincident or collinear."""


class DegenerateControlPoints(RegistrationError):
    """Local warp control points are near-duplicate or the system is ill-conditioned."""


class InverseDidNotConverge(RegistrationError):
    """Newton inversion of a spline stage did not reach tolerance."""


class UnsupportedForProjExport(RegistrationError):
    """The transform stack contains a stage the export format cannot express."""


class MissingMapScale(RegistrationError):
    """Map-millimeter errors requested without a map scale denominator."""


class MissingCrs(RegistrationError):
    """Reference CRS is missing or cannot be parsed."""


class MissingGlobalSolution(RegistrationError):
    """A local warp was requested before a global model was solved."""


class AnchorViolation(RegistrationError):
    """Local warp displacement inside an anchor region stays above tolerance."""

    def __init__(self, message, max_displacement=None):
        super().__init__(message)
        self.max_displacement = max_displacement


class RegistrationWarning(UserWarning):
    """Base class for flags attached to a result that is still returned."""


class DidNotConverge(RegistrationWarning):
    """Refinement hit its iteration cap; the best-so-far model is returned."""


class LowConfidenceScale(RegistrationWarning):
    """Metric scale derived without a usable CRS (affine units assumed to be meters)."""


class LowSourceVariance(RegistrationWarning):
    """Source points are nearly coincident; results may be unstable."""
