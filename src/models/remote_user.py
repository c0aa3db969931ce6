"""
SQLAlchemy model for cached third-party user profiles.

Profiles are keyed per identity pair, since the same third-party user ID can
mean different people on different networks.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, DateTime, Index

from src.models.database import Base, get_session_maker


class RemoteUser(Base):
    __tablename__ = 'remote_users'

    identity_pair_id = Column(String, primary_key=True)
    third_party_user_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_remote_users_pair', 'identity_pair_id'),
    )

    def __repr__(self):
        return f"<RemoteUser {self.identity_pair_id}/{self.third_party_user_id} ({self.display_name})>"


class RemoteUserDB:
    """Helper class for database operations on remote user profiles"""

    def __init__(self, database_url: Optional[str] = None):
        self.Session = get_session_maker(database_url)

    def get(self, identity_pair_id: str, third_party_user_id: str) -> Optional[RemoteUser]:
        session = self.Session()
        try:
            user = session.get(RemoteUser, (identity_pair_id, third_party_user_id))
            if user:
                session.expunge(user)
            return user
        finally:
            session.close()

    def upsert(self, identity_pair_id: str, third_party_user_id: str,
               display_name: Optional[str] = None, avatar_url: Optional[str] = None) -> RemoteUser:
        session = self.Session()
        try:
            user = session.get(RemoteUser, (identity_pair_id, third_party_user_id))
            if user is None:
                user = RemoteUser(
                    identity_pair_id=identity_pair_id,
                    third_party_user_id=third_party_user_id,
                )
                session.add(user)
            user.display_name = display_name
            user.avatar_url = avatar_url
            user.updated_at = datetime.utcnow()
            session.commit()
            session.refresh(user)
            session.expunge(user)
            return user
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

