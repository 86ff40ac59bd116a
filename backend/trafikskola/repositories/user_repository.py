# backend/trafikskola/repositories/user_repository.py
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import RoleName
from ..core.exceptions import RepositoryException
from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive email lookup."""
        try:
            return (
                self.db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting user by email: {str(e)}")
            raise RepositoryException(f"Failed to get user: {str(e)}")

    def get_active_teachers(self) -> List[User]:
        """Active teacher accounts in a stable discovery order."""
        try:
            return (
                self.db.query(User)
                .filter(User.role == RoleName.TEACHER.value, User.is_active.is_(True))
                .order_by(User.created_at, User.id)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting active teachers: {str(e)}")
            raise RepositoryException(f"Failed to get teachers: {str(e)}")
