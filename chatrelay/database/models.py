from sqlalchemy import BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .session import Base


class Message(Base):
    __tablename__ = "messages"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user: Mapped[str] = mapped_column(String(64), index=True)
    message: Mapped[str] = mapped_column(Text)
    # epoch ms, same clock as the abuse gate
    timestamp: Mapped[int] = mapped_column(BigInteger, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user": self.user,
            "message": self.message,
            "timestamp": self.timestamp,
        }
