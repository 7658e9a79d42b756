import logging
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import Unauthorized
from models import User


logger = logging.getLogger(__name__)


class SessionTokens:
    def __init__(self, secret: str, max_age_hours: int = 24) -> None:
        self.max_age_secs = max_age_hours * 3600
        self._serializer = URLSafeTimedSerializer(secret, salt="session-token")

    def issue(self, external_id: str) -> str:
        return self._serializer.dumps({"sub": external_id})

    def verify(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            data = self._serializer.loads(token, max_age=self.max_age_secs)
        except BadSignature:
            # SignatureExpired is a BadSignature
            return None
        subject = data.get("sub") if isinstance(data, dict) else None
        return subject or None


class IdentityResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find(self, external_id: str) -> Optional[User]:
        stmt = select(User).where(User.external_id == external_id)
        return self.session.scalar(stmt)

    def resolve(self, external_id: Optional[str]) -> User:
        if not external_id:
            raise Unauthorized("Unauthorized")
        user = self.find(external_id)
        if not user:
            raise Unauthorized("User not found")
        return user

    def register(
        self,
        external_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> User:
        user = self.find(external_id)
        if user:
            return user
        user = User(external_id=external_id, email=email, name=name)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user
