"""
Error taxonomy for robust triaxial calibration.

Invalid configuration values are reported with the built-in ``ValueError`` at
the call site that supplied them. Everything else that can go wrong while a
calibration session is configured or executed derives from
``CalibrationError`` so callers can catch the whole family at once.
"""


class CalibrationError(RuntimeError):
    """Base class for all calibration failures."""


class NotReadyError(CalibrationError):
    """Raised when calibrate() is invoked before the session is ready.

    The session is left untouched: no state transition, no notification.
    """


class LockedError(CalibrationError):
    """Raised on any mutation (or re-entrant calibrate()) while running."""


class DegenerateSubsetError(CalibrationError):
    """Raised when a measurement subset does not determine the parameters.

    The robust loop recovers from this internally by drawing another subset.
    """


class EstimationFailedError(CalibrationError):
    """Raised when no candidate could be scored within the resampling budget."""


class RefinementError(CalibrationError):
    """Raised when the non-linear refinement does not converge.

    Non-fatal for a calibration session: the pre-refinement candidate is kept.
    """
