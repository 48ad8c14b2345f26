"""Data models for automated evidence and outbound gateways."""

from datetime import datetime, timezone, date
from typing import Optional, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EvidenceEntry(BaseModel):
    """One evidence snapshot fetched for a control."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: datetime = Field(..., description="When the fetch completed (UTC)")
    success: bool = Field(..., description="Whether the fetch succeeded")
    status: Optional[int] = Field(None, description="HTTP status reported by the proxy")
    data: Optional[Any] = Field(None, description="Payload returned on success")
    error: Optional[str] = Field(None, description="Error message on failure")

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def date_key(self) -> date:
        """Calendar day (UTC) this entry belongs to."""
        return self.timestamp.date()

    @classmethod
    def succeeded(
        cls, data: Any, status: Optional[int] = None, timestamp: Optional[datetime] = None
    ) -> "EvidenceEntry":
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            success=True,
            status=status,
            data=data,
        )

    @classmethod
    def failed(
        cls, error: str, status: Optional[int] = None, timestamp: Optional[datetime] = None
    ) -> "EvidenceEntry":
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            success=False,
            status=status,
            error=error,
            data=None,
        )


class GatewayEndpoint(BaseModel):
    """A single API gateway setting."""

    enabled: bool = False
    url: Optional[str] = ""

    @property
    def usable(self) -> bool:
        return self.enabled and bool((self.url or "").strip())


class GatewayConfig(BaseModel):
    """Configured outbound gateways for evidence fetches."""

    aws: GatewayEndpoint = Field(default_factory=GatewayEndpoint)
    azure: GatewayEndpoint = Field(default_factory=GatewayEndpoint)
