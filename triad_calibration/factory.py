"""
Factory for robust calibration sessions.

Maps a RobustMethod to its scoring strategy and builds a CalibrationSession
around it. Omitting the method selects LMedS, which needs no threshold tuning
and tolerates up to 50% outliers.

Usage Example:
    >>> session = SessionFactory.create(RobustMethod.PROSAC,
    ...                                 measurements=measurements,
    ...                                 quality_scores=scores)
    >>> session = create_session()   # LMedS
    >>> session = SessionFactory.from_config(CalibrationConfig.from_yaml('cal.yaml'),
    ...                                      measurements=measurements)
"""

from typing import Dict, List, Optional, Sequence, Type
import logging

from triad_calibration.config import DEFAULT_METHOD, CalibrationConfig
from triad_calibration.scoring import (
    LMedSStrategy,
    MSACStrategy,
    PROMedSStrategy,
    PROSACStrategy,
    RANSACStrategy,
    RobustMethod,
    ScoringStrategy,
)
from triad_calibration.session import CalibrationSession

logger = logging.getLogger(__name__)


class SessionFactory:
    """Create calibration sessions by robust method.

    Attributes:
        _registry: Dictionary mapping RobustMethod to strategy classes
    """

    _registry: Dict[RobustMethod, Type[ScoringStrategy]] = {
        RobustMethod.RANSAC: RANSACStrategy,
        RobustMethod.LMEDS: LMedSStrategy,
        RobustMethod.MSAC: MSACStrategy,
        RobustMethod.PROSAC: PROSACStrategy,
        RobustMethod.PROMEDS: PROMedSStrategy,
    }

    @classmethod
    def create(
        cls,
        method: RobustMethod = DEFAULT_METHOD,
        quality_scores: Optional[Sequence[float]] = None,
        **kwargs
    ) -> CalibrationSession:
        """Create a calibration session for the given method.

        Args:
            method: Robust method (default LMedS)
            quality_scores: Per-measurement quality. Forwarded only to methods
                that use them (PROSAC, PROMedS).
            **kwargs: Forwarded unchanged to CalibrationSession (measurements,
                model, config, listener, initial_bias, initial_matrix, refiner)

        Returns:
            CalibrationSession using the method's scoring strategy

        Raises:
            ValueError: If the method is not registered or arguments are invalid
        """
        if not isinstance(method, RobustMethod):
            method = CalibrationConfig._parse_method(method)

        if method not in cls._registry:
            registered = ', '.join(m.value for m in cls._registry)
            raise ValueError(
                f"Method '{method.value}' not registered. Available methods: {registered}"
            )

        strategy = cls._registry[method]()
        if not strategy.requires_quality_scores:
            quality_scores = None

        try:
            session = CalibrationSession(strategy, quality_scores=quality_scores, **kwargs)
        except TypeError as e:
            raise ValueError(
                f"Invalid parameters for {method.value} session: {e}\n"
                f"Parameters: kwargs={sorted(kwargs)}"
            ) from e

        logger.debug(f"Created {method.value} session (strategy: {type(strategy).__name__})")
        return session

    @classmethod
    def from_config(cls, config: CalibrationConfig, **kwargs) -> CalibrationSession:
        """Create a session whose method and settings come from ``config``."""
        return cls.create(config.method, config=config, **kwargs)

    @classmethod
    def register(cls, method: RobustMethod, strategy_class: Type[ScoringStrategy]) -> None:
        """Register (or replace) the strategy class used for a method.

        Raises:
            ValueError: If strategy_class is not a ScoringStrategy subclass
        """
        if not isinstance(strategy_class, type):
            raise ValueError(f"strategy_class must be a class, got {type(strategy_class)}")
        if not issubclass(strategy_class, ScoringStrategy):
            raise ValueError(
                f"strategy_class must be a subclass of ScoringStrategy, "
                f"got {strategy_class.__name__}"
            )
        if method in cls._registry:
            logger.warning(
                f"Replacing {cls._registry[method].__name__} with "
                f"{strategy_class.__name__} for method '{method.value}'"
            )
        cls._registry[method] = strategy_class

    @classmethod
    def get_registered_methods(cls) -> List[RobustMethod]:
        return list(cls._registry.keys())


def create_session(
    method: RobustMethod = DEFAULT_METHOD,
    **kwargs
) -> CalibrationSession:
    """Shortcut for SessionFactory.create()."""
    return SessionFactory.create(method, **kwargs)
