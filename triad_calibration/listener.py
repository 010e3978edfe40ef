"""
Listener interface for calibration progress notifications.

All callbacks run synchronously inside CalibrationSession.calibrate() while
the session is locked; any attempt to reconfigure the session from a callback
raises LockedError. Subclass and override only the events of interest.

Usage Example:
    >>> class PrintingListener(CalibrationListener):
    ...     def on_calibrate_progress_change(self, session, progress):
    ...         print(f"{progress:.0%}")
    >>>
    >>> session = create_session(RobustMethod.RANSAC, listener=PrintingListener())
"""


class CalibrationListener:
    """Receives lifecycle events from a calibration session."""

    def on_calibrate_start(self, session) -> None:
        """Called once before the robust search begins."""

    def on_calibrate_end(self, session) -> None:
        """Called once when calibrate() finishes, successfully or not."""

    def on_calibrate_next_iteration(self, session, iteration: int) -> None:
        """Called after every scored iteration of the robust search."""

    def on_calibrate_progress_change(self, session, progress: float) -> None:
        """Called when progress (in [0, 1]) has advanced by progress_delta."""
