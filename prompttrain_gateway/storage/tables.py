from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class CredentialRow(Base):
    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(16))
    provider_kind: Mapped[str] = mapped_column(String(32))
    encrypted_api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    scopes: Mapped[str] = mapped_column(Text, default="")
    region: Mapped[str | None] = mapped_column(String(32), nullable=True)
    secret_suffix: Mapped[str | None] = mapped_column(String(16), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_used_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_refresh_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)


class RoutingEntityRow(Base):
    __tablename__ = "routing_entities"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    client_token_hashes: Mapped[str] = mapped_column(Text, default="")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[float] = mapped_column(Float)

    links: Mapped[list[RoutingEntityCredentialRow]] = relationship(
        back_populates="routing_entity",
        cascade="all, delete-orphan",
        order_by="RoutingEntityCredentialRow.priority",
    )


class RoutingEntityCredentialRow(Base):
    __tablename__ = "routing_entity_credentials"
    __table_args__ = (UniqueConstraint("routing_entity_id", "credential_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    routing_entity_id: Mapped[str] = mapped_column(
        ForeignKey("routing_entities.id", ondelete="CASCADE"), index=True
    )
    credential_id: Mapped[str] = mapped_column(
        ForeignKey("credentials.id", ondelete="CASCADE"), index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=0)

    routing_entity: Mapped[RoutingEntityRow] = relationship(back_populates="links")
