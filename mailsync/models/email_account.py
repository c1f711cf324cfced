from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Enum, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mailsync.database import Base
import enum


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AccountType(str, enum.Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    IMAP = "imap"
    EXCHANGE = "exchange"
    CUSTOM = "custom"


class OAuthProvider(str, enum.Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SyncStatus(str, enum.Enum):
    INITIAL = "initial"
    HISTORICAL = "historical"
    COMPLETE = "complete"
    ERROR = "error"


class EmailAccount(Base):
    __tablename__ = "email_accounts"
    # Server-side timestamps are read back on flush; async sessions cannot lazy-load them
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    account_name = Column(String)
    email_address = Column(String, nullable=False, index=True)
    display_name = Column(String)
    account_type = Column(Enum(AccountType, values_callable=_enum_values), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    status = Column(Enum(AccountStatus, values_callable=_enum_values), default=AccountStatus.ACTIVE, nullable=False)
    connection_status = Column(
        Enum(ConnectionStatus, values_callable=_enum_values),
        default=ConnectionStatus.DISCONNECTED,
        nullable=False,
    )
    requires_reauth = Column(Boolean, default=False, nullable=False)

    # {host, port, security, username, password (encrypted), requires_auth}
    incoming_server = Column(JSON)
    outgoing_server = Column(JSON)

    # OAuth bundle, secrets encrypted by the credential vault
    oauth_provider = Column(Enum(OAuthProvider, values_callable=_enum_values))
    oauth_client_id = Column(String)
    encrypted_client_secret = Column(Text)
    encrypted_refresh_token = Column(Text)
    encrypted_access_token = Column(Text)
    token_expiry = Column(DateTime(timezone=True))

    # camelCase keys: syncStatus, lastHistoryId, isProcessing, nextPageToken, ...
    # Always reassigned as a whole so the JSON column is flagged dirty.
    sync_state = Column(JSON, default=dict)

    total_messages = Column(Integer, default=0, nullable=False)
    unread_messages = Column(Integer, default=0, nullable=False)
    last_synced_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    last_error_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    threads = relationship("Thread", back_populates="account")

    @property
    def uses_oauth(self) -> bool:
        return self.oauth_provider is not None and bool(self.encrypted_refresh_token or self.encrypted_access_token)
