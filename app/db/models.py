"""Database models."""
import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Numeric
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    """Phone intake conversation model."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_new_id)
    call_sid = Column(String, unique=True, index=True, nullable=False)
    phone_number = Column(String, nullable=True)
    status = Column(String, default="active", nullable=False, index=True)  # active, completed, incomplete, failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    clinical_data = Column(JSON, default=dict, nullable=False)
    summary = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, default=dict, nullable=False)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )
    extractions = relationship(
        "ClinicalExtraction",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ClinicalExtraction.id",
    )


class Message(Base):
    """Conversation message model."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)  # user, assistant, system
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    meta = Column("metadata", JSON, default=dict, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")


class ClinicalExtraction(Base):
    """Structured clinical field extracted from the conversation."""

    __tablename__ = "clinical_extractions"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    field_name = Column(String, nullable=False, index=True)  # e.g. chief_complaint, medications
    field_value = Column(Text, nullable=False)
    confidence_score = Column(Numeric(3, 2), nullable=True)
    extracted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    meta = Column("metadata", JSON, default=dict, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="extractions")
