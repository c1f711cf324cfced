from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailsync.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("account_id", "message_id", name="uq_messages_account_message"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id"), nullable=False, index=True)
    message_id = Column(String, nullable=False, index=True)
    # RFC822 Message-ID without angle brackets
    internet_message_id = Column(String, index=True)
    thread_id = Column(String, nullable=False, index=True)
    subject = Column(Text)
    from_addr = Column(JSON)
    to_addrs = Column(JSON, default=list)
    cc_addrs = Column(JSON, default=list)
    bcc_addrs = Column(JSON, default=list)
    date = Column(DateTime(timezone=True), index=True)
    body_text = Column(Text)
    body_html = Column(Text)
    snippet = Column(Text)
    is_read = Column(Boolean, default=False, nullable=False)
    in_reply_to = Column(String)
    references = Column(JSON, default=list)
    labels = Column(JSON, default=list)
    category = Column(String)
    folder = Column(String)
    order_reference = Column(String)
    has_attachments = Column(Boolean, default=False, nullable=False)
    size = Column(Integer, default=0, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    attachments = relationship("Attachment", back_populates="message", cascade="all, delete-orphan")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String, nullable=False)
    size = Column(Integer)
    mime_type = Column(String)
    provider_attachment_id = Column(String)
    content_id = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    message = relationship("Message", back_populates="attachments")
