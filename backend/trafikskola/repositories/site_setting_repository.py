# backend/trafikskola/repositories/site_setting_repository.py
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.site_setting import SiteSetting
from .base_repository import BaseRepository


class SiteSettingRepository(BaseRepository[SiteSetting]):
    def __init__(self, db: Session):
        super().__init__(db, SiteSetting)

    def get_category(self, category: str) -> Dict[str, Optional[str]]:
        """Return ``{key: value}`` for every setting in the category."""
        try:
            rows = self.db.query(SiteSetting).filter(SiteSetting.category == category).all()
            return {row.key: row.value for row in rows}
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading settings category {category}: {str(e)}")
            raise RepositoryException(f"Failed to load settings: {str(e)}")
