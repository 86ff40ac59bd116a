# backend/trafikskola/repositories/factory.py
"""
Repository Factory

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .availability_repository import AvailabilityRepository
from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .credit_repository import CreditRepository
from .handledar_repository import HandledarRepository
from .package_repository import PackageRepository
from .qliro_order_repository import QliroOrderRepository
from .site_setting_repository import SiteSettingRepository
from .user_repository import UserRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        return BaseRepository(db, model)

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> UserRepository:
        return UserRepository(db)

    @staticmethod
    def create_availability_repository(db: Session) -> AvailabilityRepository:
        return AvailabilityRepository(db)

    @staticmethod
    def create_credit_repository(db: Session) -> CreditRepository:
        return CreditRepository(db)

    @staticmethod
    def create_handledar_repository(db: Session) -> HandledarRepository:
        return HandledarRepository(db)

    @staticmethod
    def create_package_repository(db: Session) -> PackageRepository:
        return PackageRepository(db)

    @staticmethod
    def create_qliro_order_repository(db: Session) -> QliroOrderRepository:
        return QliroOrderRepository(db)

    @staticmethod
    def create_site_setting_repository(db: Session) -> SiteSettingRepository:
        return SiteSettingRepository(db)
