"""Storage layer - Database schemas, repositories and caching."""

from calibr.storage.cache import LeaderboardCache, create_redis
from calibr.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from calibr.storage.models import (
    AttestationModel,
    Base,
    ForecastModel,
    MarketModel,
    UserAchievementModel,
    UserCalibrationModel,
)
from calibr.storage.repos import (
    AchievementRepository,
    AttestationDTO,
    AttestationRepository,
    CalibrationRepository,
    ForecastCounts,
    ForecastRepository,
    MarketDTO,
    MarketRepository,
    UserCalibrationDTO,
)

__all__ = [
    "AchievementRepository",
    "AttestationDTO",
    "AttestationModel",
    "AttestationRepository",
    "Base",
    "CalibrationRepository",
    "DatabaseManager",
    "ForecastCounts",
    "ForecastModel",
    "ForecastRepository",
    "LeaderboardCache",
    "MarketDTO",
    "MarketModel",
    "MarketRepository",
    "UserAchievementModel",
    "UserCalibrationDTO",
    "UserCalibrationModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "create_redis",
    "init_async_db",
]
