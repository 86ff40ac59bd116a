# backend/trafikskola/repositories/package_repository.py
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.package import PackageContent, PackagePurchase
from .base_repository import BaseRepository


class PackageRepository(BaseRepository[PackagePurchase]):
    """Package purchases and the credit contents they unlock."""

    def __init__(self, db: Session):
        super().__init__(db, PackagePurchase)

    def get_purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        return self.get_by_id(purchase_id)

    def get_contents(self, package_id: str) -> List[PackageContent]:
        try:
            return (
                self.db.query(PackageContent)
                .filter(PackageContent.package_id == package_id, PackageContent.credits > 0)
                .order_by(PackageContent.id)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting contents for package {package_id}: {str(e)}")
            raise RepositoryException(f"Failed to get package contents: {str(e)}")
