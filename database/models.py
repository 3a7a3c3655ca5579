"""Database models - help-desk conversations and chat-flow automations."""
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# BIGINT ids on Postgres; SQLite only autoincrements INTEGER primary keys.
BigId = BigInteger().with_variant(Integer(), "sqlite")


client_tags = Table(
    "client_tags",
    Base.metadata,
    Column("client_id", BigId, ForeignKey("clients.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", BigId, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Channel(Base):
    """Messaging channel (one Telegram bot per row)."""
    __tablename__ = "channels"

    id = Column(BigId, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="telegram")
    credentials = Column(JSON, nullable=True)  # {"bot_token": "..."}
    settings = Column(JSON, nullable=True)  # {"disable_automations": bool}
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    conversations = relationship("Conversation", back_populates="channel")

    @property
    def bot_token(self) -> str:
        return str((self.credentials or {}).get("bot_token") or "")

    @property
    def automations_disabled(self) -> bool:
        return bool((self.settings or {}).get("disable_automations", False))

    def __repr__(self):
        return f"<Channel(id={self.id}, name={self.name})>"


class Operator(Base):
    """Member of the operating team a conversation can be assigned to."""
    __tablename__ = "operators"

    id = Column(BigId, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Operator(id={self.id}, name={self.name})>"


class Tag(Base):
    __tablename__ = "tags"

    id = Column(BigId, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    color = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Tag(id={self.id}, name={self.name})>"


class Client(Base):
    """End client writing to one or more channels."""
    __tablename__ = "clients"

    id = Column(BigId, primary_key=True, autoincrement=True)
    external_id = Column(String, nullable=True, unique=True)  # e.g. "tg_123456"
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tags = relationship("Tag", secondary=client_tags, order_by="Tag.id")
    conversations = relationship("Conversation", back_populates="client")

    def __repr__(self):
        return f"<Client(id={self.id}, name={self.name})>"


class Conversation(Base):
    """
    Channel-scoped thread between a client and the operating team.

    `meta` hosts the provider chat id and the single `paused_automation` slot.
    """
    __tablename__ = "conversations"

    id = Column(BigId, primary_key=True, autoincrement=True)
    channel_id = Column(BigId, ForeignKey("channels.id"), nullable=False)
    client_id = Column(BigId, ForeignKey("clients.id"), nullable=True)
    operator_id = Column(BigId, ForeignKey("operators.id"), nullable=True)
    status = Column(String, nullable=False, default="new")  # new|open|resolved|closed
    priority = Column(String, nullable=False, default="normal")
    meta = Column("metadata", JSON, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channel = relationship("Channel", back_populates="conversations")
    client = relationship("Client", back_populates="conversations")
    operator = relationship("Operator")
    messages = relationship("Message", back_populates="conversation")

    __table_args__ = (
        Index("idx_conversation_channel_client", "channel_id", "client_id"),
        Index("idx_conversation_status", "status", "last_message_at"),
    )

    @property
    def provider_chat_id(self) -> int | None:
        value = (self.meta or {}).get("telegram_chat_id")
        return int(value) if value is not None else None

    def __repr__(self):
        return f"<Conversation(id={self.id}, channel_id={self.channel_id}, status={self.status})>"


class Message(Base):
    __tablename__ = "messages"

    id = Column(BigId, primary_key=True, autoincrement=True)
    conversation_id = Column(BigId, ForeignKey("conversations.id"), nullable=False)
    channel_id = Column(BigId, ForeignKey("channels.id"), nullable=False)
    client_id = Column(BigId, ForeignKey("clients.id"), nullable=True)
    operator_id = Column(BigId, ForeignKey("operators.id"), nullable=True)
    direction = Column(String, nullable=False)  # incoming|outgoing
    type = Column(String, nullable=False, default="text")  # text|image|video|file|voice|sticker
    content = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="sent")
    attachments = Column(JSON, nullable=True)  # [{"url": ..., "type": ...}]
    provider_message_id = Column(BigInteger, nullable=True)  # Telegram message_id
    meta = Column("metadata", JSON, nullable=True)  # sent_by, system_action, edited, ...
    created_at = Column(DateTime, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("idx_message_conversation", "conversation_id", "direction", "created_at"),
        Index("idx_message_provider", "conversation_id", "provider_message_id"),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, conversation_id={self.conversation_id}, direction={self.direction})>"


class Automation(Base):
    """Trigger + ordered steps. Managed externally, read-only to the engine."""
    __tablename__ = "automations"

    id = Column(BigId, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    channel_id = Column(BigId, ForeignKey("channels.id", ondelete="SET NULL"), nullable=True)
    trigger = Column(String, nullable=False, default="new_conversation")
    trigger_config = Column(JSON, nullable=True)  # keywords, tag_id, ...
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship(
        "AutomationStep",
        back_populates="automation",
        order_by="AutomationStep.order",
        cascade="all, delete-orphan",
    )
    runs = relationship("AutomationRun", back_populates="automation")

    __table_args__ = (
        Index("idx_automation_lookup", "is_active", "trigger", "channel_id"),
    )

    def __repr__(self):
        return f"<Automation(id={self.id}, name={self.name}, trigger={self.trigger})>"


class AutomationStep(Base):
    """
    One step of an automation.

    `order` is the only sequencing input. The next/true/false pointers are
    stored for the flow editor and never read by the interpreter.
    """
    __tablename__ = "automation_steps"

    id = Column(BigId, primary_key=True, autoincrement=True)
    automation_id = Column(BigId, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False)
    step_id = Column(String, nullable=False)  # stable id from the flow editor
    type = Column(String, nullable=False)
    config = Column(JSON, nullable=True)
    position = Column(JSON, nullable=True)  # x/y in the flow editor
    order = Column(Integer, nullable=False, default=0)
    next_step_id = Column(String, nullable=True)
    condition_true_step_id = Column(String, nullable=True)
    condition_false_step_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    automation = relationship("Automation", back_populates="steps")

    __table_args__ = (
        Index("idx_automation_step_order", "automation_id", "order"),
        Index("idx_automation_step_step_id", "step_id"),
    )

    def __repr__(self):
        return f"<AutomationStep(id={self.id}, type={self.type}, order={self.order})>"


class AutomationRun(Base):
    """Append-only log of one automation execution against a conversation."""
    __tablename__ = "automation_runs"

    id = Column(BigId, primary_key=True, autoincrement=True)
    automation_id = Column(BigId, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False)
    conversation_id = Column(BigId, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(BigId, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    status = Column(String, nullable=False, default="running")  # running|completed|failed
    trigger_data = Column(JSON, nullable=True)
    steps_executed = Column(JSON, nullable=True)  # [{"step_id", "type", "started_at"}]
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    automation = relationship("Automation", back_populates="runs")

    __table_args__ = (
        Index("idx_automation_run_automation", "automation_id", "started_at"),
        Index("idx_automation_run_conversation", "conversation_id", "started_at"),
    )

    def __repr__(self):
        return f"<AutomationRun(id={self.id}, automation_id={self.automation_id}, status={self.status})>"
