from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Enum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailsync.database import Base
from mailsync.models.email_account import _enum_values
import enum


class ThreadStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"
    SPAM = "spam"


class ThreadType(str, enum.Enum):
    CONVERSATION = "conversation"
    NOTIFICATION = "notification"
    MARKETING = "marketing"
    SYSTEM = "system"


class Thread(Base):
    __tablename__ = "threads"
    __table_args__ = (
        UniqueConstraint("account_id", "thread_id", name="uq_threads_account_thread"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False, index=True)
    # Provider-native thread id when one exists, otherwise generated
    thread_id = Column(String, nullable=False, index=True)
    subject = Column(Text)
    normalized_subject = Column(Text, index=True)
    snippet = Column(Text)
    participants = Column(JSON, default=list)
    message_count = Column(Integer, default=0, nullable=False)
    unread_count = Column(Integer, default=0, nullable=False)
    first_message_at = Column(DateTime(timezone=True))
    last_message_at = Column(DateTime(timezone=True), index=True)
    status = Column(Enum(ThreadStatus, values_callable=_enum_values), default=ThreadStatus.ACTIVE, nullable=False)
    thread_type = Column(
        Enum(ThreadType, values_callable=_enum_values),
        default=ThreadType.CONVERSATION,
        nullable=False,
    )
    folder = Column(String)
    has_attachments = Column(Boolean, default=False, nullable=False)
    total_size = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    account = relationship("EmailAccount", back_populates="threads")
